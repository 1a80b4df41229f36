"""Parsing of dataset specifiers given on the command line.

``protein:1ABC``, ``genome:GCF_000001405.40``, ``srr:SRR123``,
``uniprot:P69905``, ``expression:GSE102902``, ``expression10x:GSE102902``,
``doi:10.1038/...`` and the bare knowledge-base names ``go``, ``kegg`` and
``reactome``. A bare DOI (``10.x/...`` or a doi.org URL) is accepted too.
"""

from dataclasses import dataclass

from .errors import InvalidSpecifier
from .hashing import normalize_doi
from .identifiers import is_well_formed, normalize_identifier
from .models import ALLOWED_FORMATS, DatasetKind, IdentifierKind, ResolvedTarget

KNOWLEDGE_BASES = (DatasetKind.GO, DatasetKind.KEGG, DatasetKind.REACTOME)
KNOWLEDGE_RELEASE = "current"

# dataset kind -> identifier grammar its id must satisfy
_ID_KINDS: dict[DatasetKind, IdentifierKind] = {
    DatasetKind.PROTEIN: IdentifierKind.PDB,
    DatasetKind.GENOME: IdentifierKind.ASSEMBLY,
    DatasetKind.SRR: IdentifierKind.SRA_RUN,
    DatasetKind.UNIPROT: IdentifierKind.UNIPROT,
    DatasetKind.EXPRESSION: IdentifierKind.GEO_SERIES,
    DatasetKind.EXPRESSION10X: IdentifierKind.GEO_SERIES,
}


@dataclass(frozen=True)
class Specifier:
    """Either a DOI to resolve or a concrete target to fetch."""

    doi: str | None = None
    target: ResolvedTarget | None = None

    @property
    def is_doi(self) -> bool:
        return self.doi is not None


def _parse_doi(value: str, original: str) -> Specifier:
    doi = normalize_doi(value)
    if not doi or not doi.startswith("10.") or "/" not in doi:
        raise InvalidSpecifier(f"Invalid DOI: {original!r}", specifier=original)
    return Specifier(doi=doi)


def parse_specifier(text: str, format: str | None = None) -> Specifier:
    """Parse ``text`` into a DOI or a ``ResolvedTarget``.

    Args:
        text: The specifier as typed by the user
        format: Optional format override (protein: cif|pdb|bcif, srr: fastq|fasta)

    Raises:
        InvalidSpecifier: unknown prefix, malformed id or unsupported format.
    """
    raw = (text or "").strip()
    if not raw:
        raise InvalidSpecifier("Empty dataset specifier", specifier=text)

    lowered = raw.lower()
    if lowered.startswith("10.") or "doi.org/" in lowered:
        return _parse_doi(raw, raw)

    for kb in KNOWLEDGE_BASES:
        if lowered == str(kb):
            if format is not None:
                raise InvalidSpecifier(f"{kb} takes no format option", specifier=raw, format=format)
            return Specifier(target=ResolvedTarget.for_kind(kb, KNOWLEDGE_RELEASE))

    prefix, sep, value = raw.partition(":")
    if not sep or not value.strip():
        raise InvalidSpecifier(f"Unrecognized dataset specifier: {raw!r}", specifier=raw)
    prefix = prefix.strip().lower()

    if prefix == "doi":
        return _parse_doi(value.strip(), raw)

    try:
        dataset_kind = DatasetKind(prefix)
    except ValueError:
        raise InvalidSpecifier(f"Unknown dataset kind {prefix!r}", specifier=raw) from None
    if dataset_kind not in _ID_KINDS:
        raise InvalidSpecifier(f"{dataset_kind} takes no identifier", specifier=raw)

    identifier = normalize_identifier(value)
    if not is_well_formed(_ID_KINDS[dataset_kind], identifier):
        raise InvalidSpecifier(f"Invalid {dataset_kind} identifier: {value.strip()!r}", specifier=raw)

    if format is not None:
        format = format.lower()
        allowed = ALLOWED_FORMATS.get(dataset_kind, ())
        if format not in allowed:
            raise InvalidSpecifier(
                f"Format {format!r} is not supported for {dataset_kind}",
                specifier=raw,
                allowed=list(allowed),
            )
    return Specifier(target=ResolvedTarget.for_kind(dataset_kind, identifier, format))
