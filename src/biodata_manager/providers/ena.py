import gzip
import hashlib
from pathlib import Path

import httpx

from ..core.errors import ProviderFetchFailed
from ..core.models import ResolvedTarget
from ..resolve.registries import ENA_PORTAL_BASE, RATE_LIMITERS
from ..utils.http import download_to_file, get_with_retry
from ..utils.log import get_logger
from .base import ProviderResult, base_metadata

log = get_logger(__name__)


def _https(url: str) -> str:
    url = url.strip()
    if url.startswith("ftp://"):
        return "https://" + url[len("ftp://") :]
    if not url.startswith(("http://", "https://")):
        return f"https://{url}"
    return url


def _md5(path: Path) -> str:
    digest = hashlib.md5()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def fastq_to_fasta(source: Path, destination: Path) -> int:
    """Convert a gzipped FASTQ file to gzipped FASTA; returns the number of records."""
    records = 0
    with gzip.open(source, "rt") as fq, gzip.open(destination, "wt") as fa:
        while True:
            header = fq.readline()
            if not header:
                break
            sequence = fq.readline()
            fq.readline()  # '+'
            fq.readline()  # qualities
            if not header.startswith("@"):
                raise ValueError(f"malformed FASTQ record in {source.name}")
            fa.write(">" + header[1:])
            fa.write(sequence)
            records += 1
    return records


class SrrProvider:
    """Sequencing run reads from the ENA mirror of SRA/ENA/DDBJ runs.

    Files are checked against the md5 sums ENA publishes, so a truncated
    transfer fails instead of producing a partial file set.
    """

    registry = "ena"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def _file_report(self, accession: str) -> tuple[list[str], list[str]]:
        await RATE_LIMITERS["ena"].acquire()
        resp = await get_with_retry(
            f"{ENA_PORTAL_BASE}/filereport",
            client=self.client,
            params={
                "accession": accession,
                "result": "read_run",
                "fields": "run_accession,fastq_ftp,fastq_md5",
                "format": "tsv",
            },
        )
        resp.raise_for_status()
        lines = [line for line in resp.text.splitlines()[1:] if line.strip()]
        if not lines:
            raise ProviderFetchFailed(f"ENA lists no run {accession}", accession=accession)
        columns = lines[0].split("\t")
        urls = [u for u in (columns[1] if len(columns) > 1 else "").split(";") if u]
        md5s = [m for m in (columns[2] if len(columns) > 2 else "").split(";") if m]
        if not urls:
            raise ProviderFetchFailed(f"No FASTQ files published for {accession}", accession=accession)
        return [_https(u) for u in urls], md5s

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        accession = target.id.upper()
        urls, md5s = await self._file_report(accession)

        fastq_files: list[str] = []
        for i, url in enumerate(urls):
            name = url.rsplit("/", 1)[-1]
            path = destination / name
            await download_to_file(url, path, self.client)
            if i < len(md5s) and _md5(path) != md5s[i]:
                raise ProviderFetchFailed(f"Checksum mismatch for {name}", accession=accession, url=url)
            fastq_files.append(name)

        files = fastq_files
        if target.format == "fasta":
            files = []
            for name in fastq_files:
                fasta_name = name.replace(".fastq", ".fasta")
                records = fastq_to_fasta(destination / name, destination / fasta_name)
                (destination / name).unlink()
                log.debug("fastq_converted", file=fasta_name, records=records)
                files.append(fasta_name)

        return ProviderResult(
            files=sorted(files),
            metadata=base_metadata(
                self.registry,
                target,
                accession=accession,
                layout="paired" if len(fastq_files) > 1 else "single",
                source_urls=urls,
            ),
        )
