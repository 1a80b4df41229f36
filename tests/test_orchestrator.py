"""End-to-end DOI resolution against in-memory registries."""

from pathlib import Path

import pytest

from biodata_manager.core.errors import InvalidSpecifier, MetadataSourceUnavailable
from biodata_manager.core.models import DatasetKind, ResolutionStatus, UnresolvedReason
from biodata_manager.core.provenance import ProvenanceRecorder
from biodata_manager.resolve.orchestrator import (
    NO_IDENTIFIERS_MESSAGE,
    NO_TARGETS_MESSAGE,
    DoiResolutionPipeline,
)

from fakes import FakeRegistry

DOI = "10.1000/example.2024"


@pytest.fixture
def recorder(tmp_path: Path) -> ProvenanceRecorder:
    return ProvenanceRecorder(tmp_path / "doi")


async def _run(registry: FakeRegistry, recorder: ProvenanceRecorder, doi: str = DOI):
    return await DoiResolutionPipeline(registry, recorder, max_concurrent=4).run(doi)


@pytest.mark.asyncio
async def test_series_link_resolves_to_expression_target(recorder: ProvenanceRecorder) -> None:
    """A valid series with no members resolves to its own expression dataset."""
    registry = FakeRegistry(
        known={"GSE102902"},
        crossref={
            "title": ["Single-cell atlas"],
            "link": [{"URL": "https://www.ncbi.nlm.nih.gov/geo/query/acc.cgi?acc=GSE102902"}],
        },
    )

    record = await _run(registry, recorder)

    assert record.status == ResolutionStatus.RESOLVED
    assert [(t.dataset_kind, t.id) for t in record.resolved_targets] == [
        (DatasetKind.EXPRESSION, "GSE102902")
    ]
    assert record.unresolved == []
    assert record.message is None
    assert recorder.path_for(DOI).is_file()


@pytest.mark.asyncio
async def test_no_identifiers_is_terminal_not_an_error(recorder: ProvenanceRecorder) -> None:
    registry = FakeRegistry(
        crossref={
            "title": ["A review without deposited data"],
            "abstract": "<jats:p>We discuss GSE-like identifiers and year 2020 trends.</jats:p>",
        }
    )

    record = await _run(registry, recorder)

    assert record.status == ResolutionStatus.NO_SUPPORTED_IDENTIFIERS
    assert record.message == NO_IDENTIFIERS_MESSAGE
    assert record.extracted == []
    assert record.resolved_targets == []
    assert recorder.load(DOI).status == ResolutionStatus.NO_SUPPORTED_IDENTIFIERS


@pytest.mark.asyncio
async def test_bioproject_with_one_bad_run(recorder: ProvenanceRecorder) -> None:
    registry = FakeRegistry(
        known={"PRJNA396126", "SRR1", "SRR2"},
        links={("uid-PRJNA396126", "sra"): ["s1"]},
        sra_runs={"s1": ["SRR1", "SRR2", "SRR3"]},
        crossref={
            "title": ["Sequencing study"],
            "assertion": [{"label": "Data Availability", "value": "Reads: BioProject PRJNA396126."}],
        },
    )

    record = await _run(registry, recorder)

    assert record.status == ResolutionStatus.RESOLVED
    assert [t.specifier for t in record.resolved_targets] == ["srr:SRR1", "srr:SRR2"]
    assert [(u.identifier.key, u.reason) for u in record.unresolved] == [
        ("srr:SRR3", UnresolvedReason.VALIDATION_FAILED)
    ]
    assert list(record.validation) == [
        "bioproject:PRJNA396126",
        "srr:SRR1",
        "srr:SRR2",
        "srr:SRR3",
    ]
    assert record.validation["srr:SRR1"].origin == "hydrated"
    assert len(record.hydrated) == 3


@pytest.mark.asyncio
async def test_extracted_but_nothing_resolvable(recorder: ProvenanceRecorder) -> None:
    registry = FakeRegistry(crossref={"title": ["Structure 9ZZZ revisited"]})

    record = await _run(registry, recorder)

    assert record.status == ResolutionStatus.NO_SUPPORTED_TARGETS
    assert record.message == NO_TARGETS_MESSAGE
    assert [u.reason for u in record.unresolved] == [UnresolvedReason.VALIDATION_FAILED]


@pytest.mark.asyncio
async def test_metadata_failure_persists_nothing(recorder: ProvenanceRecorder) -> None:
    registry = FakeRegistry(crossref=MetadataSourceUnavailable("Crossref returned status 404", doi=DOI))

    with pytest.raises(MetadataSourceUnavailable):
        await _run(registry, recorder)

    assert not recorder.path_for(DOI).exists()


@pytest.mark.asyncio
async def test_rejects_non_doi(recorder: ProvenanceRecorder) -> None:
    with pytest.raises(InvalidSpecifier):
        await _run(FakeRegistry(), recorder, doi="not-a-doi")


@pytest.mark.asyncio
async def test_rerun_replaces_the_record(recorder: ProvenanceRecorder) -> None:
    registry = FakeRegistry(known={"6VXX"}, crossref={"title": ["Spike 6VXX"]})
    first = await _run(registry, recorder)

    registry.known = set()
    second = await _run(registry, recorder, doi=f"https://doi.org/{DOI.upper()}")

    assert first.status == ResolutionStatus.RESOLVED
    assert second.status == ResolutionStatus.NO_SUPPORTED_TARGETS
    assert recorder.load(DOI).resolved_targets == []
