"""Persistence of DOI resolution records.

One ``doi_resolution.json`` per DOI under ``<doi_root>/<percent-encoded doi>/``.
A re-run replaces the whole document atomically; fields are never patched in place.
"""

from datetime import UTC, datetime
from pathlib import Path

from .. import __version__
from ..utils.files import read_json, write_json_atomic
from ..utils.log import get_logger
from .errors import DatasetNotFound, StoreWriteFailed
from .hashing import encode_doi, normalize_doi
from .models import (
    CandidateIdentifier,
    DoiResolutionRecord,
    HydratedNode,
    ResolutionStatus,
    ResolvedTarget,
    SourceMetadata,
    UnresolvedIdentifier,
    ValidationOutcome,
)

log = get_logger(__name__)

RECORD_FILENAME = "doi_resolution.json"


class ProvenanceRecorder:
    def __init__(self, doi_root: Path) -> None:
        self.doi_root = doi_root

    def path_for(self, doi: str) -> Path:
        """Deterministic record path for ``doi`` (normalized, then percent-encoded)."""
        return self.doi_root / encode_doi(normalize_doi(doi) or doi) / RECORD_FILENAME

    def record(
        self,
        doi: str,
        source: SourceMetadata,
        extracted: list[CandidateIdentifier],
        validation: dict[str, ValidationOutcome],
        hydrated: list[HydratedNode],
        resolved: list[ResolvedTarget],
        unresolved: list[UnresolvedIdentifier],
        status: ResolutionStatus,
        message: str | None = None,
    ) -> DoiResolutionRecord:
        """Build the record for one resolution run and persist it, replacing any earlier one."""
        record = DoiResolutionRecord(
            doi=doi,
            resolved_at=datetime.now(UTC).isoformat(),
            tool=f"biodata_manager/{__version__}",
            status=status,
            message=message,
            source=source,
            extracted=list(extracted),
            validation=dict(validation),
            hydrated=list(hydrated),
            resolved_targets=list(resolved),
            unresolved=list(unresolved),
        )
        self.save(record)
        return record

    def save(self, record: DoiResolutionRecord) -> Path:
        path = self.path_for(record.doi)
        try:
            write_json_atomic(path, record.model_dump(mode="json"))
        except OSError as e:
            log.error("provenance_write_failed", doi=record.doi, path=str(path), error=str(e))
            raise StoreWriteFailed(f"Could not write resolution record for {record.doi}", path=str(path)) from e
        log.info(
            "provenance_recorded",
            doi=record.doi,
            path=str(path),
            resolved=len(record.resolved_targets),
            unresolved=len(record.unresolved),
        )
        return path

    def load(self, doi: str) -> DoiResolutionRecord:
        path = self.path_for(doi)
        if not path.is_file():
            raise DatasetNotFound(f"No resolution record for {doi}", doi=doi, path=str(path))
        return DoiResolutionRecord.model_validate(read_json(path))
