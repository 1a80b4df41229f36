"""Provider capability consumed by the store.

A provider turns one ``ResolvedTarget`` into a complete file set written into
a directory it is handed (always a private staging directory) plus the
metadata stored beside it. Dispatch is a fixed mapping from dataset kind to
provider; there is no dynamic plugin lookup.
"""

import zipfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import httpx

from ..core.errors import BiodataError, ProviderFetchFailed
from ..core.models import DatasetKind, ResolvedTarget
from ..utils.log import get_logger

log = get_logger(__name__)


@dataclass
class ProviderResult:
    files: list[str]  # relative to the destination directory
    metadata: dict[str, Any] = field(default_factory=dict)


class Provider(Protocol):
    registry: str

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult: ...


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


def base_metadata(registry: str, target: ResolvedTarget, **fields: Any) -> dict[str, Any]:
    return {
        "registry": registry,
        "type": str(target.dataset_kind),
        "id": target.id,
        "format": target.format,
        "downloaded_at": utc_timestamp(),
        **fields,
    }


class ProviderRegistry:
    def __init__(self, providers: Mapping[DatasetKind, Provider]):
        self._providers = dict(providers)

    def __contains__(self, kind: DatasetKind) -> bool:
        return kind in self._providers

    def get(self, kind: DatasetKind) -> Provider:
        try:
            return self._providers[kind]
        except KeyError:
            raise ProviderFetchFailed(f"No provider registered for {kind}", dataset_kind=str(kind)) from None

    def registry_name(self, kind: DatasetKind) -> str | None:
        provider = self._providers.get(kind)
        return provider.registry if provider else None

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        """Fetch ``target`` into ``destination``; every failure surfaces as ``ProviderFetchFailed``."""
        provider = self.get(target.dataset_kind)
        log.info("provider_fetch_started", target=target.specifier, format=target.format, registry=provider.registry)
        try:
            result = await provider.fetch(target, destination)
        except ProviderFetchFailed:
            raise
        except (httpx.HTTPError, OSError, ValueError, KeyError, zipfile.BadZipFile, BiodataError) as e:
            log.error(
                "provider_fetch_failed",
                target=target.specifier,
                registry=provider.registry,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProviderFetchFailed(
                f"{provider.registry} fetch failed for {target.specifier}: {e}",
                target=target.specifier,
                registry=provider.registry,
            ) from e
        if not result.files:
            raise ProviderFetchFailed(
                f"{provider.registry} returned no files for {target.specifier}",
                target=target.specifier,
                registry=provider.registry,
            )
        log.info("provider_fetch_completed", target=target.specifier, files=len(result.files))
        return result


def default_providers(client: httpx.AsyncClient) -> ProviderRegistry:
    """HTTP-backed providers for every dataset kind, sharing ``client``."""
    from .ena import SrrProvider
    from .geo import Expression10xProvider, ExpressionProvider
    from .knowledge import GoProvider, KeggProvider, ReactomeProvider
    from .ncbi import GenomeProvider
    from .rcsb import ProteinProvider
    from .uniprot import UniprotProvider

    return ProviderRegistry(
        {
            DatasetKind.PROTEIN: ProteinProvider(client),
            DatasetKind.GENOME: GenomeProvider(client),
            DatasetKind.SRR: SrrProvider(client),
            DatasetKind.UNIPROT: UniprotProvider(client),
            DatasetKind.EXPRESSION: ExpressionProvider(client),
            DatasetKind.EXPRESSION10X: Expression10xProvider(client),
            DatasetKind.GO: GoProvider(client),
            DatasetKind.KEGG: KeggProvider(client),
            DatasetKind.REACTOME: ReactomeProvider(client),
        }
    )
