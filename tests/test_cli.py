"""Command-line behaviour: exit codes, JSON output and store commands."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from biodata_manager import cli
from biodata_manager.core.config import AppConfig
from biodata_manager.core.errors import MetadataSourceUnavailable
from biodata_manager.core.models import (
    DatasetKind,
    DoiResolutionRecord,
    MaterializeResult,
    ResolutionStatus,
    ResolvedTarget,
    SourceMetadata,
)
from biodata_manager.core.provenance import ProvenanceRecorder

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """--test mode roots everything under ./test_data, so run inside tmp_path."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _record(doi: str = "10.1000/xyz") -> DoiResolutionRecord:
    return DoiResolutionRecord(
        doi=doi,
        resolved_at="2024-01-01T00:00:00+00:00",
        tool="biodata_manager/test",
        status=ResolutionStatus.RESOLVED,
        source=SourceMetadata(title="Example"),
        resolved_targets=[ResolvedTarget.for_kind(DatasetKind.PROTEIN, "6VXX")],
    )


def test_list_empty_store() -> None:
    result = runner.invoke(cli.app, ["--quiet", "--test", "list"])
    assert result.exit_code == 0
    assert "No datasets stored or cached." in result.stdout


def test_info_missing_dataset_exits_2() -> None:
    result = runner.invoke(cli.app, ["--quiet", "--test", "info", "protein:6VXX"])
    assert result.exit_code == 2


def test_fetch_invalid_specifier_exits_2() -> None:
    result = runner.invoke(cli.app, ["--quiet", "--test", "fetch", "virus:ABC"])
    assert result.exit_code == 2


def test_resolve_metadata_unavailable_exits_3(monkeypatch: pytest.MonkeyPatch) -> None:
    async def unavailable(config: AppConfig, doi: str) -> DoiResolutionRecord:
        raise MetadataSourceUnavailable("Crossref returned status 503", doi=doi)

    monkeypatch.setattr(cli, "_resolve_doi", unavailable)
    result = runner.invoke(cli.app, ["--quiet", "--test", "--non-interactive", "resolve", "10.1000/xyz"])

    assert result.exit_code == 3
    payload = json.loads(result.stdout)
    assert payload["error"] == "MetadataSourceUnavailable"
    assert payload["doi"] == "10.1000/xyz"


def test_resolve_prints_json_summary(monkeypatch: pytest.MonkeyPatch) -> None:
    async def resolved(config: AppConfig, doi: str) -> DoiResolutionRecord:
        return _record(doi)

    monkeypatch.setattr(cli, "_resolve_doi", resolved)
    result = runner.invoke(
        cli.app, ["--quiet", "--test", "--non-interactive", "resolve", "https://doi.org/10.1000/XYZ"]
    )

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["doi"] == "10.1000/xyz"
    assert payload["status"] == "resolved"
    assert payload["resolved_targets"][0]["id"] == "6VXX"


def test_fetch_exits_1_only_when_everything_failed(monkeypatch: pytest.MonkeyPatch) -> None:
    target = ResolvedTarget.for_kind(DatasetKind.PROTEIN, "6VXX")

    async def all_failed(config, doi, targets, options):
        return None, [
            MaterializeResult(target=t, action="failed", error={"error": "ProviderFetchFailed", "message": "down"})
            for t in targets
        ]

    monkeypatch.setattr(cli, "_fetch_targets", all_failed)
    result = runner.invoke(cli.app, ["--quiet", "--test", "fetch", "protein:6VXX"])
    assert result.exit_code == 1
    assert "✗ protein:6VXX [cif]: down" in result.stdout

    async def succeeded(config, doi, targets, options):
        return None, [MaterializeResult(target=target, action="download", project_path="/p")]

    monkeypatch.setattr(cli, "_fetch_targets", succeeded)
    result = runner.invoke(cli.app, ["--quiet", "--test", "fetch", "protein:6VXX"])
    assert result.exit_code == 0


def test_info_shows_doi_record(isolated_cwd: Path) -> None:
    ProvenanceRecorder(AppConfig(mode="test").doi_root).save(_record())

    result = runner.invoke(cli.app, ["--quiet", "--test", "--non-interactive", "info", "doi:10.1000/xyz"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["resolved_targets"][0]["id"] == "6VXX"


def test_clear_with_yes() -> None:
    result = runner.invoke(cli.app, ["--quiet", "--test", "clear", "--yes"])
    assert result.exit_code == 0
    assert "Removed 0 dataset(s)" in result.stdout
