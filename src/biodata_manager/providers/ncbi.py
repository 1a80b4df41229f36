from pathlib import Path

import httpx

from ..core.errors import InvalidSpecifier
from ..core.models import ResolvedTarget
from ..resolve.registries import NCBI_DATASETS_BASE, RATE_LIMITERS
from ..utils.files import extract_zip_safe
from ..utils.http import download_to_file
from .base import ProviderResult, base_metadata

INCLUDE_TYPES = {
    "genome": "GENOME_FASTA",
    "gff3": "GENOME_GFF",
    "gbff": "GENOME_GBFF",
    "gtf": "GENOME_GTF",
    "rna": "RNA_FASTA",
    "protein": "PROT_FASTA",
    "cds": "CDS_FASTA",
    "seq-report": "SEQUENCE_REPORT",
    "default": "DEFAULT",
}
DEFAULT_INCLUDE = ("genome", "gff3")


def map_include(include: list[str] | tuple[str, ...]) -> list[str]:
    try:
        return [INCLUDE_TYPES[item] for item in include]
    except KeyError as e:
        raise InvalidSpecifier(f"Unknown genome include type: {e.args[0]}", include=list(include)) from None


class GenomeProvider:
    """NCBI Datasets genome package, downloaded as a zip and extracted in place."""

    registry = "ncbi"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        accession = target.id.upper()
        include = list(target.options.get("include") or DEFAULT_INCLUDE)
        url = f"{NCBI_DATASETS_BASE}/genome/accession/{accession}/download"
        params = {"include_annotation_type": map_include(include)}

        archive = destination.parent / f"{accession}.zip"
        await RATE_LIMITERS["ncbi"].acquire()
        await download_to_file(url, archive, self.client, params=params)
        try:
            files = extract_zip_safe(archive, destination)
        finally:
            archive.unlink(missing_ok=True)

        return ProviderResult(
            files=files,
            metadata=base_metadata(
                self.registry, target, accession=accession, include=include, source_urls=[url]
            ),
        )
