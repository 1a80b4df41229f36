from collections.abc import Iterator
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class IdentifierKind(StrEnum):
    GEO_SERIES = "gse"
    GEO_SAMPLE = "gsm"
    SRA_RUN = "srr"  # SRR/ERR/DRR runs
    BIOPROJECT = "bioproject"
    ENA_PROJECT = "ena_project"
    ASSEMBLY = "assembly"
    PDB = "pdb"
    UNIPROT = "uniprot"


class SourceField(StrEnum):
    TITLE = "title"
    ABSTRACT = "abstract_text"
    REFERENCES = "references"
    LINKS = "links"
    DATA_AVAILABILITY = "data_availability"


class DatasetKind(StrEnum):
    PROTEIN = "protein"
    GENOME = "genome"
    SRR = "srr"
    UNIPROT = "uniprot"
    EXPRESSION = "expression"
    EXPRESSION10X = "expression10x"
    GO = "go"
    KEGG = "kegg"
    REACTOME = "reactome"


class ValidationStatus(StrEnum):
    VALID = "valid"
    INVALID = "invalid"
    UNREACHABLE = "unreachable"


class UnresolvedReason(StrEnum):
    INVALID_FORMAT = "invalid_format"
    VALIDATION_FAILED = "validation_failed"
    UNREACHABLE = "unreachable"
    NO_KNOWN_HYDRATION_PATH = "no_known_hydration_path"


class RelationKind(StrEnum):
    SERIES_SAMPLE = "series_sample"
    SERIES_RUN = "series_run"
    SAMPLE_RUN = "sample_run"
    STUDY_RUN = "study_run"
    STUDY_ASSEMBLY = "study_assembly"


class ResolutionStatus(StrEnum):
    RESOLVED = "resolved"
    NO_SUPPORTED_IDENTIFIERS = "no_supported_identifiers"
    NO_SUPPORTED_TARGETS = "no_supported_targets"


class StoreTier(StrEnum):
    PROJECT = "project"
    CACHE = "cache"


class EntryState(StrEnum):
    ABSENT = "absent"
    CACHED = "cached"
    STORED = "stored"
    BOTH = "both"


# Identifier kinds that are expanded into member identifiers before resolution
CONTAINER_KINDS = frozenset(
    {
        IdentifierKind.GEO_SERIES,
        IdentifierKind.GEO_SAMPLE,
        IdentifierKind.BIOPROJECT,
        IdentifierKind.ENA_PROJECT,
    }
)

# Leaf identifier kind -> dataset kind fetched for it
LEAF_DATASETS: dict[IdentifierKind, DatasetKind] = {
    IdentifierKind.PDB: DatasetKind.PROTEIN,
    IdentifierKind.UNIPROT: DatasetKind.UNIPROT,
    IdentifierKind.ASSEMBLY: DatasetKind.GENOME,
    IdentifierKind.SRA_RUN: DatasetKind.SRR,
}

# Containers that are still fetchable on their own when no member resolves
CONTAINER_FALLBACK_DATASETS: dict[IdentifierKind, DatasetKind] = {
    IdentifierKind.GEO_SERIES: DatasetKind.EXPRESSION,
}

DEFAULT_FORMATS: dict[DatasetKind, str] = {
    DatasetKind.PROTEIN: "cif",
    DatasetKind.GENOME: "ncbi_dataset",
    DatasetKind.SRR: "fastq",
    DatasetKind.UNIPROT: "json",
    DatasetKind.EXPRESSION: "soft",
    DatasetKind.EXPRESSION10X: "10x",
    DatasetKind.GO: "obo",
    DatasetKind.KEGG: "tsv",
    DatasetKind.REACTOME: "tsv",
}

ALLOWED_FORMATS: dict[DatasetKind, tuple[str, ...]] = {
    DatasetKind.PROTEIN: ("cif", "pdb", "bcif"),
    DatasetKind.SRR: ("fastq", "fasta"),
}


class IdentifierRef(BaseModel):
    """A (kind, normalized value) pair; the unit of identity across all stages."""

    model_config = ConfigDict(frozen=True)

    kind: IdentifierKind
    value: str

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.value}"

    def __str__(self) -> str:
        return self.key


class CandidateIdentifier(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: IdentifierKind
    value: str  # normalized (upper-cased, trimmed)
    raw: str  # text as matched in the source field
    field: SourceField

    @property
    def ref(self) -> IdentifierRef:
        return IdentifierRef(kind=self.kind, value=self.value)


class SourceMetadata(BaseModel):
    """Structured fields of a publication scanned for dataset identifiers."""

    model_config = ConfigDict(frozen=True)

    title: str | None = None
    abstract_text: str | None = None
    references: tuple[str, ...] = ()
    links: tuple[str, ...] = ()
    data_availability: tuple[str, ...] = ()

    def iter_fields(self) -> Iterator[tuple[SourceField, str]]:
        """Yield (field, text) pairs in a fixed scan order."""
        if self.title:
            yield SourceField.TITLE, self.title
        if self.abstract_text:
            yield SourceField.ABSTRACT, self.abstract_text
        for text in self.references:
            yield SourceField.REFERENCES, text
        for text in self.links:
            yield SourceField.LINKS, text
        for text in self.data_availability:
            yield SourceField.DATA_AVAILABILITY, text


class ValidationOutcome(BaseModel):
    identifier: IdentifierRef
    status: ValidationStatus
    digest: str | None = None  # sha1 of the registry response body
    detail: str | None = None
    registry_ids: list[str] = Field(default_factory=list)  # internal UIDs returned by the registry
    origin: str = "extracted"  # 'extracted' | 'hydrated'

    @property
    def is_valid(self) -> bool:
        return self.status == ValidationStatus.VALID


class HydratedNode(BaseModel):
    parent: IdentifierRef
    child: IdentifierRef
    relation: RelationKind


class ResolvedTarget(BaseModel):
    dataset_kind: DatasetKind
    id: str
    format: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_kind(
        cls, dataset_kind: DatasetKind, id: str, format: str | None = None, **options: Any
    ) -> "ResolvedTarget":
        return cls(
            dataset_kind=dataset_kind,
            id=id,
            format=format or DEFAULT_FORMATS.get(dataset_kind),
            options=options,
        )

    @property
    def key(self) -> tuple[str, str, str]:
        return (str(self.dataset_kind), self.id, self.format or "")

    @property
    def specifier(self) -> str:
        return f"{self.dataset_kind}:{self.id}"


class UnresolvedIdentifier(BaseModel):
    identifier: IdentifierRef
    reason: UnresolvedReason
    detail: str | None = None


class DoiResolutionRecord(BaseModel):
    """Provenance aggregate of one resolution run; replaced wholesale on re-run."""

    doi: str
    resolved_at: str
    tool: str
    status: ResolutionStatus
    message: str | None = None
    source: SourceMetadata
    extracted: list[CandidateIdentifier] = Field(default_factory=list)
    validation: dict[str, ValidationOutcome] = Field(default_factory=dict)
    hydrated: list[HydratedNode] = Field(default_factory=list)
    resolved_targets: list[ResolvedTarget] = Field(default_factory=list)
    unresolved: list[UnresolvedIdentifier] = Field(default_factory=list)


class FetchOptions(BaseModel):
    force: bool = False
    no_cache: bool = False
    dry_run: bool = False


class StoreEntry(BaseModel):
    dataset_kind: DatasetKind
    id: str
    format: str | None = None
    files: list[str] = Field(default_factory=list)  # relative to the entry's files/ directory
    metadata: dict[str, Any] = Field(default_factory=dict)
    fingerprint: str
    written_at: str
    origin: str = "fetch"  # 'fetch' | 'cache'
    tier: StoreTier = StoreTier.PROJECT
    path: str | None = None


class MaterializeResult(BaseModel):
    target: ResolvedTarget
    action: str  # 'project' | 'cache' | 'download' | 'failed'
    entry: StoreEntry | None = None
    project_path: str | None = None
    cache_path: str | None = None
    error: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StoreListing(BaseModel):
    dataset_kind: DatasetKind
    id: str
    format: str | None = None
    registry: str | None = None
    state: EntryState
    project_path: str | None = None
    cache_path: str | None = None
