"""GEO series files: the SOFT family file and 10x supplementary bundles."""

import gzip
import re
from pathlib import Path

import httpx

from ..core.errors import ProviderFetchFailed
from ..core.models import ResolvedTarget
from ..utils.http import download_to_file
from .base import ProviderResult, base_metadata

GEO_FTP_HTTPS = "https://ftp.ncbi.nlm.nih.gov"

_TENX_FILE = re.compile(r"(barcodes|features|genes|matrix)\.(tsv|mtx)(\.gz)?$|\.h5$", re.IGNORECASE)


def series_prefix(accession: str) -> str:
    """GEO FTP bucket of a series: GSE102902 -> GSE102nnn, GSE12 -> GSEnnn."""
    digits = accession.upper().removeprefix("GSE")
    if len(digits) <= 3:
        return "GSEnnn"
    return f"GSE{digits[:-3]}nnn"


def soft_url(accession: str) -> str:
    accession = accession.upper()
    return f"{GEO_FTP_HTTPS}/geo/series/{series_prefix(accession)}/{accession}/soft/{accession}_family.soft.gz"


def normalize_url(url: str) -> str:
    if url.startswith("ftp://ftp.ncbi.nlm.nih.gov/"):
        return GEO_FTP_HTTPS + "/" + url[len("ftp://ftp.ncbi.nlm.nih.gov/") :]
    return url


def _values(soft_text: str, predicate) -> list[str]:
    values = []
    for line in soft_text.splitlines():
        if predicate(line) and "=" in line:
            value = line.split("=", 1)[1].strip()
            if value and value.upper() != "NONE":
                values.append(value)
    return values


def extract_supplementary_urls(soft_text: str) -> list[str]:
    return _values(soft_text, lambda line: "supplementary_file" in line)


def extract_organism(soft_text: str) -> str | None:
    keys = ("!Series_organism_ch1", "!Series_organism", "!Sample_organism_ch1")
    values = _values(soft_text, lambda line: line.startswith(keys))
    return values[0] if values else None


async def _download_soft(client: httpx.AsyncClient, accession: str, destination: Path) -> tuple[str, str]:
    url = soft_url(accession)
    path = destination / f"{accession}_family.soft.gz"
    await download_to_file(url, path, client)
    with gzip.open(path, "rt", encoding="utf-8", errors="replace") as handle:
        text = handle.read()
    return url, text


class ExpressionProvider:
    registry = "geo"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        accession = target.id.upper()
        url, text = await _download_soft(self.client, accession, destination)
        filename = f"{accession}_family.soft.gz"
        return ProviderResult(
            files=[filename],
            metadata=base_metadata(
                self.registry,
                target,
                accession=accession,
                organism=extract_organism(text),
                bundle_format="soft",
                n_bundles=1,
                files=[filename],
                source_urls=[url],
            ),
        )


class Expression10xProvider:
    """10x Genomics count bundles attached to a series as supplementary files."""

    registry = "geo"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        accession = target.id.upper()
        soft_path = destination.parent / "family.soft.gz"
        url = soft_url(accession)
        await download_to_file(url, soft_path, self.client)
        with gzip.open(soft_path, "rt", encoding="utf-8", errors="replace") as handle:
            text = handle.read()
        soft_path.unlink(missing_ok=True)

        bundle_urls = sorted(
            {normalize_url(u) for u in extract_supplementary_urls(text) if _TENX_FILE.search(u)}
        )
        if not bundle_urls:
            raise ProviderFetchFailed(f"{accession} has no 10x supplementary files", accession=accession)

        files = []
        for bundle_url in bundle_urls:
            name = bundle_url.rsplit("/", 1)[-1]
            await download_to_file(bundle_url, destination / name, self.client)
            files.append(name)

        h5 = [f for f in files if f.lower().endswith(".h5")]
        matrices = [f for f in files if "matrix.mtx" in f.lower()]
        return ProviderResult(
            files=files,
            metadata=base_metadata(
                self.registry,
                target,
                accession=accession,
                organism=extract_organism(text),
                bundle_format="h5" if h5 and not matrices else "mtx",
                n_bundles=len(matrices) + len(h5),
                files=files,
                source_urls=[url, *bundle_urls],
            ),
        )
