import json
from pathlib import Path
from typing import Any

import httpx

from ..core.models import ResolvedTarget
from ..resolve.registries import RATE_LIMITERS, UNIPROT_BASE
from ..utils.http import download_to_file, get_with_retry
from .base import ProviderResult, base_metadata


def summarize_entry(raw: dict[str, Any]) -> dict[str, Any]:
    description = raw.get("proteinDescription") or {}
    name = ((description.get("recommendedName") or {}).get("fullName") or {}).get("value")
    if name is None:
        submissions = description.get("submissionNames") or [{}]
        name = (submissions[0].get("fullName") or {}).get("value")

    genes: set[str] = set()
    for gene in raw.get("genes") or []:
        if (gene.get("geneName") or {}).get("value"):
            genes.add(gene["geneName"]["value"])
        genes.update(s["value"] for s in gene.get("synonyms") or [] if s.get("value"))

    return {
        "accession": raw.get("primaryAccession"),
        "protein_name": name,
        "gene_names": sorted(genes),
        "organism": (raw.get("organism") or {}).get("scientificName"),
        "sequence_length": (raw.get("sequence") or {}).get("length"),
    }


class UniprotProvider:
    """Entry JSON plus canonical FASTA from the UniProt REST API."""

    registry = "uniprot"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        accession = target.id.upper()
        json_url = f"{UNIPROT_BASE}/{accession}.json"
        fasta_url = f"{UNIPROT_BASE}/{accession}.fasta"

        await RATE_LIMITERS["uniprot"].acquire()
        resp = await get_with_retry(json_url, client=self.client)
        resp.raise_for_status()
        raw = resp.json()
        destination.mkdir(parents=True, exist_ok=True)
        (destination / f"{accession}.json").write_text(json.dumps(raw, indent=2), encoding="utf-8")

        await RATE_LIMITERS["uniprot"].acquire()
        await download_to_file(fasta_url, destination / f"{accession}.fasta", self.client)

        return ProviderResult(
            files=[f"{accession}.fasta", f"{accession}.json"],
            metadata=base_metadata(
                self.registry, target, **summarize_entry(raw), source_urls=[json_url, fasta_url]
            ),
        )
