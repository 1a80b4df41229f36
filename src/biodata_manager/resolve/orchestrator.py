from ..core.errors import InvalidSpecifier, NoSupportedIdentifiers
from ..core.hashing import normalize_doi
from ..core.models import CandidateIdentifier, DoiResolutionRecord, ResolutionStatus, SourceMetadata
from ..core.provenance import ProvenanceRecorder
from ..utils.log import get_logger
from .crossref import fetch_source_metadata
from .extractor import extract
from .hydrator import hydrate
from .registries import RegistryClient
from .resolver import resolve
from .validator import validate

log = get_logger(__name__)

NO_IDENTIFIERS_MESSAGE = (
    "DOI resolved successfully, but no supported public dataset identifiers were found"
)
NO_TARGETS_MESSAGE = "DOI resolved successfully, but no supported targets were found"


class DoiResolutionPipeline:
    """
    Resolve a DOI into fetchable dataset targets and persist the provenance record.

    Stages run in order: metadata fetch, extraction, validation, hydration
    (which validates the identifiers it discovers), resolution, recording.
    Only a failure to fetch the metadata propagates; per-identifier and
    per-branch failures end up in the record.
    """

    def __init__(
        self,
        registry: RegistryClient,
        recorder: ProvenanceRecorder,
        max_concurrent: int = 8,
    ):
        self.registry = registry
        self.recorder = recorder
        self.max_concurrent = max_concurrent

    def _extract(self, doi: str, source: SourceMetadata) -> list[CandidateIdentifier]:
        """
        Extract candidate identifiers from the DOI metadata.

        Raises:
            NoSupportedIdentifiers: the metadata names no supported identifier.
        """
        extracted = extract(source)
        log.info("identifiers_extracted", doi=doi, count=len(extracted))
        if not extracted:
            raise NoSupportedIdentifiers(NO_IDENTIFIERS_MESSAGE, doi=doi)
        return extracted

    async def run(self, doi: str) -> DoiResolutionRecord:
        """
        Run the full resolution for ``doi``.

        Raises:
            InvalidSpecifier: ``doi`` is empty or not a DOI.
            MetadataSourceUnavailable: structured metadata could not be fetched;
                nothing is persisted in that case.
        """
        doi_norm = normalize_doi(doi)
        if not doi_norm or not doi_norm.startswith("10."):
            raise InvalidSpecifier(f"Not a DOI: {doi!r}", value=doi)

        log.info("doi_resolution_started", doi=doi_norm)
        source = await fetch_source_metadata(doi_norm, self.registry)
        try:
            extracted = self._extract(doi_norm, source)
        except NoSupportedIdentifiers as e:
            log.info("doi_no_supported_identifiers", doi=doi_norm)
            return self.recorder.record(
                doi_norm,
                source,
                extracted=[],
                validation={},
                hydrated=[],
                resolved=[],
                unresolved=[],
                status=ResolutionStatus.NO_SUPPORTED_IDENTIFIERS,
                message=e.message,
            )

        validation = await validate(
            (c.ref for c in extracted), self.registry, max_concurrent=self.max_concurrent
        )
        hydration = await hydrate(
            validation.values(), self.registry, max_concurrent=self.max_concurrent
        )
        merged = {**validation, **hydration.validation}
        targets, unresolved = resolve(merged, hydration.nodes, hydration.failed)

        status = ResolutionStatus.RESOLVED if targets else ResolutionStatus.NO_SUPPORTED_TARGETS
        record = self.recorder.record(
            doi_norm,
            source,
            extracted=extracted,
            validation=merged,
            hydrated=hydration.nodes,
            resolved=targets,
            unresolved=unresolved,
            status=status,
            message=None if targets else NO_TARGETS_MESSAGE,
        )
        log.info(
            "doi_resolution_completed",
            doi=doi_norm,
            status=str(status),
            extracted=len(extracted),
            resolved=len(targets),
            unresolved=len(unresolved),
        )
        return record
