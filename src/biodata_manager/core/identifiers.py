"""Pattern table for the registry identifiers recognized in publication metadata."""

import re

from .models import IdentifierKind

# Bodies without anchors; scanning wraps them in word boundaries, format checks use fullmatch.
_BODIES: dict[IdentifierKind, str] = {
    IdentifierKind.GEO_SERIES: r"GSE\d+",
    IdentifierKind.GEO_SAMPLE: r"GSM\d+",
    IdentifierKind.SRA_RUN: r"(?:SRR|ERR|DRR)\d+",
    IdentifierKind.BIOPROJECT: r"PRJ(?:NA|EB|DB)\d+",
    IdentifierKind.ENA_PROJECT: r"ERP\d+",
    IdentifierKind.ASSEMBLY: r"GC[AF]_\d+\.\d+",
    # At least one letter: bare four-digit tokens are years, not structures
    IdentifierKind.PDB: r"[0-9](?=[0-9]{0,2}[A-Z])[A-Z0-9]{3}",
    IdentifierKind.UNIPROT: r"[OPQ][0-9][A-Z0-9]{3}[0-9]|[A-NR-Z][0-9](?:[A-Z][A-Z0-9]{2}[0-9]){1,2}",
}

# Scan order; ties at the same text offset resolve in this order
SCAN_ORDER: tuple[IdentifierKind, ...] = tuple(_BODIES)

SCAN_PATTERNS: dict[IdentifierKind, re.Pattern[str]] = {
    kind: re.compile(rf"\b(?:{body})\b") for kind, body in _BODIES.items()
}

_EXACT_PATTERNS: dict[IdentifierKind, re.Pattern[str]] = {
    kind: re.compile(rf"(?:{body})") for kind, body in _BODIES.items()
}


def normalize_identifier(value: str) -> str:
    return "".join(value.split()).upper()


def is_well_formed(kind: IdentifierKind, value: str) -> bool:
    """Whether ``value`` (already normalized) is syntactically an identifier of ``kind``."""
    return _EXACT_PATTERNS[kind].fullmatch(value) is not None


def classify(value: str) -> IdentifierKind | None:
    """Return the identifier kind ``value`` is a well-formed instance of, if any."""
    normalized = normalize_identifier(value)
    for kind in SCAN_ORDER:
        if is_well_formed(kind, normalized):
            return kind
    return None
