from pathlib import Path
from typing import Any

import httpx

from ..core.models import ResolvedTarget
from ..resolve.registries import RATE_LIMITERS, RCSB_ENTRY_BASE
from ..utils.http import download_to_file, get_with_retry
from .base import ProviderResult, base_metadata

FILES_BASE = "https://files.rcsb.org/download"


def structure_url(pdb_id: str, fmt: str) -> str:
    return f"{FILES_BASE}/{pdb_id}.{fmt}"


def summarize_entry(entry: dict[str, Any]) -> dict[str, Any]:
    """Pick the descriptive fields kept in metadata.json from an RCSB core entry."""
    exptl = entry.get("exptl") or [{}]
    resolution = (entry.get("rcsb_entry_info") or {}).get("resolution_combined") or [None]
    accession_info = entry.get("rcsb_accession_info") or {}
    return {
        "title": (entry.get("struct") or {}).get("title"),
        "method": exptl[0].get("method"),
        "resolution": resolution[0],
        "deposit_date": accession_info.get("deposit_date"),
        "release_date": accession_info.get("initial_release_date"),
    }


class ProteinProvider:
    registry = "rcsb"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch(self, target: ResolvedTarget, destination: Path) -> ProviderResult:
        pdb_id = target.id.upper()
        fmt = target.format or "cif"
        url = structure_url(pdb_id, fmt)
        filename = f"{pdb_id}.{fmt}"

        await RATE_LIMITERS["rcsb"].acquire()
        await download_to_file(url, destination / filename, self.client)

        await RATE_LIMITERS["rcsb"].acquire()
        resp = await get_with_retry(f"{RCSB_ENTRY_BASE}/{pdb_id}", client=self.client)
        resp.raise_for_status()

        return ProviderResult(
            files=[filename],
            metadata=base_metadata(
                self.registry,
                target,
                accession=pdb_id,
                **summarize_entry(resp.json()),
                source_urls=[url],
            ),
        )
