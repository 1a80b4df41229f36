"""Deterministic identifier extraction from publication metadata.

Every field is upper-cased and scanned against a fixed pattern table. Matches
are emitted in (field order, text offset) order and collapsed on
``(kind, normalized value)``, so the first occurrence wins and repeated calls on
the same metadata give the same list.
"""

from ..core.identifiers import SCAN_ORDER, SCAN_PATTERNS, normalize_identifier
from ..core.models import CandidateIdentifier, IdentifierKind, SourceMetadata


def _scan(text: str) -> list[tuple[int, int, IdentifierKind, str]]:
    upper = text.upper()
    # some characters change length when upper-cased; offsets into ``text`` are then unusable
    source = text if len(upper) == len(text) else upper
    hits = []
    for rank, kind in enumerate(SCAN_ORDER):
        for match in SCAN_PATTERNS[kind].finditer(upper):
            hits.append((match.start(), rank, kind, source[match.start() : match.end()]))
    hits.sort(key=lambda hit: (hit[0], hit[1]))
    return hits


def extract(metadata: SourceMetadata) -> list[CandidateIdentifier]:
    """Return the ordered, duplicate-free candidate identifiers found in ``metadata``."""
    seen: set[tuple[IdentifierKind, str]] = set()
    candidates: list[CandidateIdentifier] = []
    for field, text in metadata.iter_fields():
        for _, _, kind, raw in _scan(text):
            value = normalize_identifier(raw)
            if (kind, value) in seen:
                continue
            seen.add((kind, value))
            candidates.append(CandidateIdentifier(kind=kind, value=value, raw=raw, field=field))
    return candidates
