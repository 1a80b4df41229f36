"""Release files of the GO, KEGG and Reactome knowledge bases."""

from pathlib import Path

import httpx

from ..core.models import ResolvedTarget
from ..utils.http import download_to_file
from .base import ProviderResult, base_metadata

GO_BASIC_URL = "http://purl.obolibrary.org/obo/go/go-basic.obo"
KEGG_PATHWAYS_URL = "https://rest.kegg.jp/list/pathway"
KEGG_LINKS_URL = "https://rest.kegg.jp/link/pathway/ko"
REACTOME_PATHWAYS_URL = "https://reactome.org/download/current/ReactomePathways.txt"
REACTOME_MAPPINGS_URL = "https://reactome.org/download/current/UniProt2Reactome.txt"


def parse_go_header(content: str) -> tuple[str | None, str | None]:
    """Return (data-version, date) from the first 50 lines of an OBO file."""
    version = date = None
    for line in content.splitlines()[:50]:
        if line.startswith("data-version:"):
            version = line.removeprefix("data-version:").strip()
        elif line.startswith("date:"):
            date = line.removeprefix("date:").strip()
    return version, date


async def _download_all(
    client: httpx.AsyncClient, sources: list[tuple[str, str]], destination: Path
) -> list[str]:
    files = []
    for url, name in sources:
        await download_to_file(url, destination / name, client)
        files.append(name)
    return files


class GoProvider:
    registry = "go"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        files = await _download_all(self.client, [(GO_BASIC_URL, "go-basic.obo")], destination)
        with (destination / "go-basic.obo").open(encoding="utf-8", errors="replace") as handle:
            head = "".join(line for _, line in zip(range(50), handle))
        version, date = parse_go_header(head)
        return ProviderResult(
            files=files,
            metadata=base_metadata(
                self.registry, target, version=version, release_date=date, source_urls=[GO_BASIC_URL]
            ),
        )


class KeggProvider:
    registry = "kegg"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        sources = [(KEGG_PATHWAYS_URL, "pathways.tsv"), (KEGG_LINKS_URL, "ko_pathway_links.tsv")]
        files = await _download_all(self.client, sources, destination)
        return ProviderResult(
            files=files,
            metadata=base_metadata(
                self.registry,
                target,
                version=None,  # the REST listing is unversioned
                release_date=None,
                source_urls=[url for url, _ in sources],
            ),
        )


class ReactomeProvider:
    registry = "reactome"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        sources = [
            (REACTOME_PATHWAYS_URL, "ReactomePathways.txt"),
            (REACTOME_MAPPINGS_URL, "UniProt2Reactome.txt"),
        ]
        files = await _download_all(self.client, sources, destination)
        return ProviderResult(
            files=files,
            metadata=base_metadata(
                self.registry,
                target,
                version="current",
                release_date=None,
                source_urls=[url for url, _ in sources],
            ),
        )
