"""Expansion of container identifiers into their member identifiers.

Containers are GEO series (-> samples, or runs via the gds link), GEO samples
(-> runs), BioProjects (-> runs and assemblies) and ENA projects (-> runs).

Branches run concurrently and report back to a single coordinator through a
queue; only the coordinator touches the graph. Every newly discovered child is
validated inside its own branch before it is expanded further, so an edge
always starts at a Valid identifier. Nodes are keyed by ``kind:value`` in an
arena: a child that is already known (diamond) only gains an edge, and a child
that is an ancestor on its own expansion path is refused.
"""

import asyncio
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

import httpx

from ..core.errors import BiodataError, HydrationBranchFailed
from ..core.models import (
    CONTAINER_KINDS,
    HydratedNode,
    IdentifierKind,
    IdentifierRef,
    RelationKind,
    ValidationOutcome,
)
from ..utils.log import get_logger
from .registries import RegistryClient
from .validator import validate_one

log = get_logger(__name__)

_GSM = re.compile(r"\bGSM\d+\b")
_RUN = re.compile(r"\b(?:SRR|ERR|DRR)\d+\b")
_SRX = re.compile(r"\b(?:SRX|ERX|DRX)\d+\b")

Child = tuple[IdentifierRef, RelationKind]
ChildListing = Callable[[RegistryClient, ValidationOutcome], Awaitable[list[Child]]]


def _matches(pattern: re.Pattern[str], text: str) -> list[str]:
    return sorted(set(pattern.findall(text.upper())))


def _runs(values: Iterable[str], relation: RelationKind) -> list[Child]:
    return [(IdentifierRef(kind=IdentifierKind.SRA_RUN, value=v), relation) for v in values]


async def _registry_uids(registry: RegistryClient, db: str, outcome: ValidationOutcome) -> list[str]:
    if outcome.registry_ids:
        return outcome.registry_ids
    reply = await registry.esearch(db, f"{outcome.identifier.value}[Accession]")
    return reply.ids


async def _series_children(registry: RegistryClient, outcome: ValidationOutcome) -> list[Child]:
    accession = outcome.identifier.value
    text = await registry.geo_text(accession)
    samples = _matches(_GSM, text)
    if samples:
        return [
            (IdentifierRef(kind=IdentifierKind.GEO_SAMPLE, value=gsm), RelationKind.SERIES_SAMPLE)
            for gsm in samples
        ]
    # SuperSeries and some older series list no samples; fall back to the gds -> sra link
    uids = await _registry_uids(registry, "gds", outcome)
    sra_ids = await registry.elink("gds", "sra", uids)
    return _runs(await registry.esummary_sra_runs(sra_ids), RelationKind.SERIES_RUN)


async def _sample_children(registry: RegistryClient, outcome: ValidationOutcome) -> list[Child]:
    text = await registry.geo_text(outcome.identifier.value)
    runs = set(_matches(_RUN, text))
    for experiment in _matches(_SRX, text):
        reply = await registry.esearch("sra", f"{experiment}[Accession]")
        runs.update(await registry.esummary_sra_runs(reply.ids))
    return _runs(sorted(runs), RelationKind.SAMPLE_RUN)


async def _bioproject_children(registry: RegistryClient, outcome: ValidationOutcome) -> list[Child]:
    uids = await _registry_uids(registry, "bioproject", outcome)
    sra_ids = await registry.elink("bioproject", "sra", uids)
    assembly_ids = await registry.elink("bioproject", "assembly", uids)
    children = _runs(await registry.esummary_sra_runs(sra_ids), RelationKind.STUDY_RUN)
    for accession in await registry.esummary_assembly_accessions(assembly_ids):
        children.append(
            (IdentifierRef(kind=IdentifierKind.ASSEMBLY, value=accession), RelationKind.STUDY_ASSEMBLY)
        )
    return children


async def _ena_project_children(registry: RegistryClient, outcome: ValidationOutcome) -> list[Child]:
    runs = outcome.registry_ids
    if not runs:
        rows = await registry.ena_filereport(outcome.identifier.value)
        runs = [row["run_accession"] for row in rows if row.get("run_accession")]
    return _runs(sorted(set(runs)), RelationKind.STUDY_RUN)


CHILD_LISTINGS: dict[IdentifierKind, ChildListing] = {
    IdentifierKind.GEO_SERIES: _series_children,
    IdentifierKind.GEO_SAMPLE: _sample_children,
    IdentifierKind.BIOPROJECT: _bioproject_children,
    IdentifierKind.ENA_PROJECT: _ena_project_children,
}


async def list_children(registry: RegistryClient, outcome: ValidationOutcome) -> list[Child]:
    """Members of a Valid container.

    Raises:
        HydrationBranchFailed: the listing could not be obtained or did not parse.
    """
    ref = outcome.identifier
    try:
        return await CHILD_LISTINGS[ref.kind](registry, outcome)
    except (httpx.HTTPError, BiodataError, ValueError, KeyError) as e:
        raise HydrationBranchFailed(f"{type(e).__name__}: {e}", identifier=ref.key) from e


@dataclass
class HydrationGraph:
    """Arena of identifiers; edges are (parent index, child index, relation) triples."""

    nodes: list[IdentifierRef] = field(default_factory=list)
    edges: list[tuple[int, int, RelationKind]] = field(default_factory=list)
    _index: dict[str, int] = field(default_factory=dict)
    _edge_keys: set[tuple[int, int]] = field(default_factory=set)

    def add(self, ref: IdentifierRef) -> tuple[int, bool]:
        """Return the node index for ``ref`` and whether it was newly added."""
        idx = self._index.get(ref.key)
        if idx is not None:
            return idx, False
        self.nodes.append(ref)
        self._index[ref.key] = len(self.nodes) - 1
        return len(self.nodes) - 1, True

    def index_of(self, ref: IdentifierRef) -> int | None:
        return self._index.get(ref.key)

    def link(self, parent: int, child: int, relation: RelationKind) -> bool:
        if (parent, child) in self._edge_keys:
            return False
        self._edge_keys.add((parent, child))
        self.edges.append((parent, child, relation))
        return True

    def children(self, idx: int) -> list[int]:
        return [c for p, c, _ in self.edges if p == idx]

    def hydrated_nodes(self) -> list[HydratedNode]:
        nodes = [
            HydratedNode(parent=self.nodes[p], child=self.nodes[c], relation=relation)
            for p, c, relation in self.edges
        ]
        return sorted(nodes, key=lambda n: (n.parent.key, n.child.key))


@dataclass
class HydrationResult:
    nodes: list[HydratedNode]
    validation: dict[str, ValidationOutcome]  # outcomes of identifiers first seen during hydration
    failed: dict[str, str]  # container key -> error that stopped its branch
    graph: HydrationGraph


@dataclass
class _BranchResult:
    index: int
    path: tuple[int, ...]
    outcome: ValidationOutcome | None = None
    children: list[Child] = field(default_factory=list)
    error: str | None = None


async def hydrate(
    outcomes: Iterable[ValidationOutcome],
    registry: RegistryClient,
    max_concurrent: int = 8,
) -> HydrationResult:
    """Expand every Valid container among ``outcomes`` until no new identifiers appear."""
    graph = HydrationGraph()
    queue: asyncio.Queue[_BranchResult] = asyncio.Queue()
    semaphore = asyncio.Semaphore(max_concurrent)
    tasks: set[asyncio.Task[None]] = set()

    async def run_branch(result: _BranchResult, ref: IdentifierRef) -> None:
        try:
            async with semaphore:
                if result.outcome is None:
                    result.outcome = await validate_one(ref, registry, origin="hydrated")
                if result.outcome.is_valid and ref.kind in CONTAINER_KINDS:
                    result.children = await list_children(registry, result.outcome)
        except HydrationBranchFailed as e:
            result.error = e.message
        except Exception as e:
            log.exception("hydration_branch_crashed", identifier=ref.key)
            result.error = f"{type(e).__name__}: {e}"
        finally:
            queue.put_nowait(result)

    def spawn(idx: int, ref: IdentifierRef, path: tuple[int, ...], outcome: ValidationOutcome | None) -> None:
        task = asyncio.create_task(run_branch(_BranchResult(index=idx, path=path, outcome=outcome), ref))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    pending = 0
    for outcome in outcomes:
        idx, created = graph.add(outcome.identifier)
        if created and outcome.is_valid and outcome.identifier.kind in CONTAINER_KINDS:
            spawn(idx, outcome.identifier, (idx,), outcome)
            pending += 1

    discovered: dict[str, ValidationOutcome] = {}
    failed: dict[str, str] = {}
    try:
        while pending:
            result = await queue.get()
            pending -= 1
            ref = graph.nodes[result.index]
            if result.outcome is not None and result.outcome.origin == "hydrated":
                discovered[ref.key] = result.outcome
            if result.error is not None:
                failed[ref.key] = result.error
                log.warning("hydration_branch_failed", identifier=ref.key, error=result.error)
                continue
            if result.children:
                log.debug("hydration_branch_expanded", identifier=ref.key, children=len(result.children))
            for child, relation in result.children:
                child_idx, created = graph.add(child)
                if child_idx in result.path:
                    log.warning("hydration_cycle_refused", parent=ref.key, child=child.key)
                    continue
                graph.link(result.index, child_idx, relation)
                if created:
                    spawn(child_idx, child, (*result.path, child_idx), None)
                    pending += 1
    finally:
        for task in tasks:
            task.cancel()

    log.info(
        "hydration_completed",
        edges=len(graph.edges),
        discovered=len(discovered),
        failed_branches=len(failed),
    )
    return HydrationResult(
        nodes=graph.hydrated_nodes(),
        validation={key: discovered[key] for key in sorted(discovered)},
        failed=failed,
        graph=graph,
    )
