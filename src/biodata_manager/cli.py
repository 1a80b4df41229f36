import asyncio
import json
import os
from collections.abc import Coroutine
from datetime import datetime
from typing import Any, TypeVar

import structlog
import typer
from dotenv import load_dotenv

from .core.config import AppConfig
from .core.errors import BiodataError, DatasetNotFound, InvalidSpecifier, MetadataSourceUnavailable
from .core.models import DoiResolutionRecord, FetchOptions, MaterializeResult, ResolvedTarget
from .core.provenance import ProvenanceRecorder
from .core.specifiers import parse_specifier
from .core.store import StoreManager
from .providers.base import ProviderRegistry, default_providers
from .resolve.orchestrator import DoiResolutionPipeline
from .resolve.registries import RegistryClient
from .utils.http import get_client
from .utils.log import get_logger, setup_logging
from .utils.provenance import format_fetch_report, format_resolution_report

# Load environment variables from .env file
load_dotenv()

T = TypeVar("T")

# Global state for logging configuration
_log_state: dict[str, Any] = {
    "session_id": datetime.now().strftime("%Y%m%d_%H%M%S"),
    "log_file": None,
    "logger": None,
}

# Per-invocation settings filled in by the callback
_app_state: dict[str, Any] = {
    "config": None,
    "non_interactive": False,
}

EXIT_CODES: dict[type[BiodataError], int] = {
    DatasetNotFound: 2,
    InvalidSpecifier: 2,
    MetadataSourceUnavailable: 3,
}

app = typer.Typer(help="Reproducible bio-data fetch manager.")


@app.callback()
def callback(
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress console log output (logs still written to file)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging"),
    test: bool = typer.Option(
        False, "--test", help="Use test environment (separate project store and cache directories)"
    ),
    non_interactive: bool = typer.Option(
        False, "--non-interactive", help="Print JSON summaries on stdout instead of status text"
    ),
) -> None:
    """Initialize application with structured logging and environment configuration."""
    config = AppConfig(mode="test" if test else "production")
    _app_state["config"] = config
    _app_state["non_interactive"] = non_interactive

    # Determine log level
    log_level = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "INFO")

    console_output = not quiet
    _log_state["log_file"] = setup_logging(
        session_id=_log_state["session_id"],
        log_level=log_level,
        console_output=console_output,
        log_dir=config.log_dir,
    )
    _log_state["logger"] = get_logger(__name__)

    if console_output:
        _log_state["logger"].info(
            "application_started",
            session_id=_log_state["session_id"],
            log_file=str(_log_state["log_file"]),
            quiet=quiet,
            verbose=verbose,
            test_mode=test,
            **config.get_summary(),
        )


def _get_logger() -> structlog.BoundLogger | Any:
    """Get the application logger."""
    if _log_state["logger"] is None:
        # Fallback: initialize with defaults
        _log_state["log_file"] = setup_logging(session_id=_log_state["session_id"])
        _log_state["logger"] = get_logger(__name__)
    return _log_state["logger"]


class _LogProxy:
    """Proxy class that forwards all attribute access to the lazily-initialized logger."""

    def __getattr__(self, name: str) -> Any:
        return getattr(_get_logger(), name)


log = _LogProxy()


def _config() -> AppConfig:
    if _app_state["config"] is None:
        _app_state["config"] = AppConfig()
    return _app_state["config"]


def _emit_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run ``coro`` and turn library errors into exit codes."""
    try:
        return asyncio.run(coro)
    except BiodataError as e:
        code = EXIT_CODES.get(type(e), 1)
        log.error("command_failed", error=type(e).__name__, message=e.message, exit_code=code)
        if _app_state["non_interactive"]:
            _emit_json(e.to_dict())
        else:
            typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code) from e


def _pipeline(client: Any, config: AppConfig) -> DoiResolutionPipeline:
    registry = RegistryClient(client, email=config.contact_email, timeout=config.http_timeout)
    recorder = ProvenanceRecorder(config.doi_root)
    return DoiResolutionPipeline(registry, recorder, max_concurrent=config.max_concurrent)


async def _resolve_doi(config: AppConfig, doi: str) -> DoiResolutionRecord:
    async with get_client(config.contact_email, config.http_timeout) as client:
        return await _pipeline(client, config).run(doi)


async def _fetch_targets(
    config: AppConfig,
    doi: str | None,
    targets: list[ResolvedTarget],
    options: FetchOptions,
) -> tuple[DoiResolutionRecord | None, list[MaterializeResult]]:
    async with get_client(config.contact_email, config.http_timeout) as client:
        record = None
        if doi is not None:
            record = await _pipeline(client, config).run(doi)
            targets = record.resolved_targets
        store = StoreManager.from_config(config, default_providers(client))
        results = await store.materialize_many(targets, options)
        return record, results


def _resolution_summary(record: DoiResolutionRecord) -> dict[str, Any]:
    return {
        "doi": record.doi,
        "status": record.status,
        "message": record.message,
        "resolved_targets": [t.model_dump(mode="json") for t in record.resolved_targets],
        "unresolved": [u.model_dump(mode="json") for u in record.unresolved],
    }


@app.command()
def resolve(doi: str = typer.Argument(..., help="DOI to resolve, e.g. 10.1038/s41586-020-2012-7")) -> None:
    """Resolve a DOI into dataset targets and record its provenance."""
    config = _config()
    try:
        spec = parse_specifier(doi)
        if spec.doi is None:
            raise InvalidSpecifier(f"Not a DOI: {doi!r}", specifier=doi)
    except InvalidSpecifier as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(2) from e
    log.info("resolve_started", doi=spec.doi)
    record = _run(_resolve_doi(config, spec.doi))
    if _app_state["non_interactive"]:
        _emit_json(_resolution_summary(record))
    else:
        typer.echo(format_resolution_report(record))
        typer.echo(f"\nRecord written to {ProvenanceRecorder(config.doi_root).path_for(record.doi)}")


@app.command()
def fetch(
    specifier: str = typer.Argument(..., help="protein:1ABC, genome:GCF_..., srr:SRR..., doi:10.x/..., go, ..."),
    format: str | None = typer.Option(None, "--format", "-f", help="Format override (protein: cif|pdb|bcif, srr: fastq|fasta)"),
    force: bool = typer.Option(False, "--force", help="Re-fetch even if the dataset is stored or cached"),
    no_cache: bool = typer.Option(False, "--no-cache", help="Neither read nor write the global cache"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would happen without writing"),
) -> None:
    """Fetch a dataset (or every dataset a DOI resolves to) into the project store."""
    config = _config()
    try:
        spec = parse_specifier(specifier, format=None if specifier.lower().startswith(("doi:", "10.")) else format)
    except InvalidSpecifier as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(2) from e

    options = FetchOptions(force=force, no_cache=no_cache, dry_run=dry_run)
    targets = [spec.target] if spec.target is not None else []
    record, results = _run(_fetch_targets(config, spec.doi, targets, options))

    failed = [r for r in results if not r.ok]
    if _app_state["non_interactive"]:
        payload: dict[str, Any] = {
            "results": [r.model_dump(mode="json", exclude={"entry"}) for r in results],
            "failed": len(failed),
        }
        if record is not None:
            payload["resolution"] = _resolution_summary(record)
        _emit_json(payload)
    else:
        if record is not None:
            typer.echo(format_resolution_report(record))
            typer.echo("")
        if results:
            typer.echo(format_fetch_report(results))
        elif record is not None and record.message:
            typer.echo("Nothing to fetch.")

    # partial failures are reported above; only an all-failed run is an error exit
    if results and len(failed) == len(results):
        raise typer.Exit(1)


@app.command("list")
def list_datasets() -> None:
    """List datasets held by the project store and the global cache."""
    config = _config()
    store = StoreManager.from_config(config, ProviderRegistry({}))
    rows = store.list()
    if _app_state["non_interactive"]:
        _emit_json([row.model_dump(mode="json") for row in rows])
        return
    if not rows:
        typer.echo("No datasets stored or cached.")
        return
    for row in rows:
        fmt = f" [{row.format}]" if row.format else ""
        typer.echo(f"{row.dataset_kind}:{row.id}{fmt}  {row.state}  ({row.registry or 'unknown'})")


@app.command()
def info(specifier: str = typer.Argument(..., help="Dataset specifier or DOI")) -> None:
    """Show stored/cached entries for a dataset, or the resolution record of a DOI."""
    config = _config()
    try:
        spec = parse_specifier(specifier)
        if spec.doi is not None:
            record = ProvenanceRecorder(config.doi_root).load(spec.doi)
            if _app_state["non_interactive"]:
                _emit_json(record.model_dump(mode="json"))
            else:
                typer.echo(format_resolution_report(record))
            return

        if spec.target is None:
            raise InvalidSpecifier(f"Unrecognized dataset specifier: {specifier!r}", specifier=specifier)
        store = StoreManager.from_config(config, ProviderRegistry({}))
        entries = store.info(spec.target.dataset_kind, spec.target.id)
    except BiodataError as e:
        code = EXIT_CODES.get(type(e), 1)
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code) from e

    if _app_state["non_interactive"]:
        _emit_json([entry.model_dump(mode="json") for entry in entries])
        return
    for entry in entries:
        typer.echo(f"{entry.tier}: {entry.path}")
        typer.echo(f"  format: {entry.format}  files: {len(entry.files)}  origin: {entry.origin}")
        typer.echo(f"  fingerprint: {entry.fingerprint}")
        typer.echo(f"  written_at: {entry.written_at}")


@app.command()
def clear(yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation")) -> None:
    """Remove every dataset from the project store (the global cache is kept)."""
    config = _config()
    if not yes and not _app_state["non_interactive"]:
        typer.confirm(f"Remove all datasets under {config.project_root}?", abort=True)
    store = StoreManager.from_config(config, ProviderRegistry({}))
    removed = _run(store.clear())
    if _app_state["non_interactive"]:
        _emit_json({"removed": removed, "project_root": str(config.project_root)})
    else:
        typer.echo(f"Removed {removed} dataset(s) from {config.project_root}")


if __name__ == "__main__":
    app()
