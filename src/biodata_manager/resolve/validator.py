"""Point-in-time existence checks of candidate identifiers against their registries.

Each identifier is checked independently and concurrently. A registry that
cannot be reached yields ``Unreachable`` for its own identifiers only; nothing
here raises past ``validate``.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable

import httpx

from ..core.errors import BiodataError, IdentifierInvalid, IdentifierUnreachable
from ..core.identifiers import is_well_formed
from ..core.models import IdentifierKind, IdentifierRef, ValidationOutcome, ValidationStatus
from ..utils.log import get_logger
from .registries import RegistryClient, RegistryReply

log = get_logger(__name__)

MALFORMED = "malformed"

Check = Callable[[RegistryClient, str], Awaitable[RegistryReply]]


async def _check_pdb(registry: RegistryClient, value: str) -> RegistryReply:
    return await registry.rcsb_entry(value)


async def _check_uniprot(registry: RegistryClient, value: str) -> RegistryReply:
    return await registry.uniprot_entry(value)


async def _check_assembly(registry: RegistryClient, value: str) -> RegistryReply:
    return await registry.assembly_report(value)


def _esearch_check(db: str) -> Check:
    async def check(registry: RegistryClient, value: str) -> RegistryReply:
        reply = await registry.esearch(db, f"{value}[Accession]")
        # esearch answers 200 with an empty idlist for unknown accessions
        if reply.ok and not reply.ids:
            reply.status_code = 404
        return reply

    return check


async def _check_ena_project(registry: RegistryClient, value: str) -> RegistryReply:
    rows = await registry.ena_filereport(value)
    runs = [row["run_accession"] for row in rows if row.get("run_accession")]
    body = "\n".join(runs).encode()
    return RegistryReply(status_code=200 if runs else 404, body=body, ids=runs)


CHECKS: dict[IdentifierKind, Check] = {
    IdentifierKind.PDB: _check_pdb,
    IdentifierKind.UNIPROT: _check_uniprot,
    IdentifierKind.ASSEMBLY: _check_assembly,
    IdentifierKind.SRA_RUN: _esearch_check("sra"),
    IdentifierKind.GEO_SERIES: _esearch_check("gds"),
    IdentifierKind.GEO_SAMPLE: _esearch_check("gds"),
    IdentifierKind.BIOPROJECT: _esearch_check("bioproject"),
    IdentifierKind.ENA_PROJECT: _check_ena_project,
}


async def confirm(ref: IdentifierRef, registry: RegistryClient) -> RegistryReply:
    """Ask the registry that owns ``ref`` whether it exists.

    Raises:
        IdentifierInvalid: the registry answered that ``ref`` does not exist.
        IdentifierUnreachable: the registry could not be asked.
    """
    try:
        reply = await CHECKS[ref.kind](registry, ref.value)
    except (httpx.HTTPError, BiodataError, ValueError) as e:
        raise IdentifierUnreachable(f"{type(e).__name__}: {e}", identifier=ref.key) from e
    if not reply.ok:
        raise IdentifierInvalid(
            f"not found (status {reply.status_code})",
            identifier=ref.key,
            status_code=reply.status_code,
            digest=reply.digest,
        )
    return reply


async def validate_one(
    ref: IdentifierRef, registry: RegistryClient, origin: str = "extracted"
) -> ValidationOutcome:
    """Judge a single identifier; never raises."""
    if not is_well_formed(ref.kind, ref.value):
        log.info("identifier_malformed", identifier=ref.key)
        return ValidationOutcome(
            identifier=ref, status=ValidationStatus.INVALID, detail=MALFORMED, origin=origin
        )

    try:
        reply = await confirm(ref, registry)
    except IdentifierUnreachable as e:
        log.warning(
            "identifier_unreachable",
            identifier=ref.key,
            error=e.message,
            error_type=type(e.__cause__).__name__,
        )
        return ValidationOutcome(
            identifier=ref, status=ValidationStatus.UNREACHABLE, detail=e.message, origin=origin
        )
    except IdentifierInvalid as e:
        log.debug("identifier_validated", identifier=ref.key, status="invalid", http=e.context["status_code"])
        return ValidationOutcome(
            identifier=ref,
            status=ValidationStatus.INVALID,
            digest=e.context["digest"],
            detail=e.message,
            origin=origin,
        )

    log.debug("identifier_validated", identifier=ref.key, status="valid", http=reply.status_code)
    return ValidationOutcome(
        identifier=ref,
        status=ValidationStatus.VALID,
        digest=reply.digest,
        registry_ids=reply.ids,
        origin=origin,
    )


async def validate(
    refs: Iterable[IdentifierRef],
    registry: RegistryClient,
    max_concurrent: int = 8,
    origin: str = "extracted",
) -> dict[str, ValidationOutcome]:
    """Validate every identifier once; the result is keyed by ``kind:value`` in input order."""
    unique: dict[str, IdentifierRef] = {}
    for ref in refs:
        unique.setdefault(ref.key, ref)

    semaphore = asyncio.Semaphore(max_concurrent)

    async def bounded(ref: IdentifierRef) -> ValidationOutcome:
        async with semaphore:
            return await validate_one(ref, registry, origin=origin)

    outcomes = await asyncio.gather(*(bounded(ref) for ref in unique.values()))
    result = {outcome.identifier.key: outcome for outcome in outcomes}

    counts: dict[str, int] = {}
    for outcome in outcomes:
        counts[str(outcome.status)] = counts.get(str(outcome.status), 0) + 1
    log.info("validation_completed", total=len(result), **counts)
    return result
