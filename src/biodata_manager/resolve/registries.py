"""Thin async client over the public registries consulted during resolution.

Every call goes through ``get_with_retry`` so transient failures (timeouts,
429/5xx) are retried with backoff and then re-raised as ``httpx`` errors.
Callers decide what a failure means for their stage: the validator maps it to
``Unreachable``, the hydrator to a failed branch, metadata fetch to a fatal
``MetadataSourceUnavailable``.
"""

import csv
import io
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from ..core.errors import MetadataSourceUnavailable
from ..core.hashing import sha1_bytes
from ..utils.http import RateLimiter, get_with_retry
from ..utils.log import get_logger

log = get_logger(__name__)

CROSSREF_BASE = "https://api.crossref.org"
EUTILS_BASE = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
RCSB_ENTRY_BASE = "https://data.rcsb.org/rest/v1/core/entry"
UNIPROT_BASE = "https://rest.uniprot.org/uniprotkb"
NCBI_DATASETS_BASE = "https://api.ncbi.nlm.nih.gov/datasets/v2"
ENA_PORTAL_BASE = "https://www.ebi.ac.uk/ena/portal/api"
GEO_TEXT_URL = "https://www.ncbi.nlm.nih.gov/geo/query/acc.cgi"

# Polite per-registry rates (calls per second)
RATE_LIMITERS = {
    "crossref": RateLimiter(calls_per_second=1.0),
    "ncbi": RateLimiter(calls_per_second=3.0),  # E-utilities guideline without API key
    "rcsb": RateLimiter(calls_per_second=5.0),
    "uniprot": RateLimiter(calls_per_second=5.0),
    "ena": RateLimiter(calls_per_second=3.0),
}

_SRA_RUN_ATTR = re.compile(r'acc="((?:SRR|ERR|DRR)\d+)"')


@dataclass
class RegistryReply:
    """Status and body of a registry lookup, kept for validation digests."""

    status_code: int
    body: bytes = b""
    ids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def digest(self) -> str:
        return sha1_bytes(self.body)

    @classmethod
    def from_response(cls, resp: httpx.Response, ids: list[str] | None = None) -> "RegistryReply":
        return cls(status_code=resp.status_code, body=resp.content, ids=ids or [])


def _unique_sorted(values: list[str]) -> list[str]:
    return sorted(set(values))


class RegistryClient:
    """Registry lookups sharing one connection pool.

    The client is owned by the caller; ``RegistryClient`` never closes it.
    """

    def __init__(self, client: httpx.AsyncClient, email: str | None = None, timeout: float = 30.0):
        self.client = client
        self.email = email
        self.timeout = timeout

    async def _get(
        self, registry: str, url: str, params: dict[str, Any] | None = None
    ) -> httpx.Response:
        await RATE_LIMITERS[registry].acquire()
        return await get_with_retry(url, timeout=self.timeout, client=self.client, params=params)

    # -- publication metadata -------------------------------------------------

    async def crossref_work(self, doi: str) -> dict[str, Any]:
        """Return the Crossref ``message`` object for ``doi``."""
        url = f"{CROSSREF_BASE}/works/{quote(doi, safe='')}"
        params = {"mailto": self.email} if self.email else None
        try:
            resp = await self._get("crossref", url, params=params)
        except httpx.HTTPError as e:
            log.error("crossref_unavailable", doi=doi, error=str(e), error_type=type(e).__name__)
            raise MetadataSourceUnavailable(
                f"Crossref request failed for {doi}: {e}", doi=doi
            ) from e

        if resp.status_code != 200:
            log.warning("crossref_non_200", doi=doi, status=resp.status_code, url=url)
            raise MetadataSourceUnavailable(
                f"Crossref returned status {resp.status_code} for {doi}",
                doi=doi,
                status=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            log.error("crossref_json_parse_error", doi=doi, error=str(e))
            raise MetadataSourceUnavailable(
                f"Crossref returned malformed JSON for {doi}", doi=doi
            ) from e
        message = data.get("message")
        if not isinstance(message, dict):
            raise MetadataSourceUnavailable(f"Crossref response for {doi} has no message", doi=doi)
        log.info("crossref_fetched", doi=doi)
        return message

    # -- existence checks -----------------------------------------------------

    async def rcsb_entry(self, pdb_id: str) -> RegistryReply:
        resp = await self._get("rcsb", f"{RCSB_ENTRY_BASE}/{pdb_id}")
        return RegistryReply.from_response(resp)

    async def uniprot_entry(self, accession: str) -> RegistryReply:
        resp = await self._get("uniprot", f"{UNIPROT_BASE}/{accession}.json")
        return RegistryReply.from_response(resp)

    async def assembly_report(self, accession: str) -> RegistryReply:
        url = f"{NCBI_DATASETS_BASE}/genome/accession/{accession}/dataset_report"
        resp = await self._get("ncbi", url)
        return RegistryReply.from_response(resp)

    async def esearch(self, db: str, term: str) -> RegistryReply:
        """E-utilities search; ``ids`` holds the matching internal UIDs."""
        resp = await self._get(
            "ncbi",
            f"{EUTILS_BASE}/esearch.fcgi",
            params={"db": db, "term": term, "retmode": "json"},
        )
        ids: list[str] = []
        if resp.status_code == 200:
            payload = resp.json()
            ids = [str(v) for v in payload.get("esearchresult", {}).get("idlist", [])]
        return RegistryReply.from_response(resp, ids=ids)

    async def ena_filereport(
        self, accession: str, result: str = "read_run", fields: str = "run_accession"
    ) -> list[dict[str, str]]:
        """Rows of an ENA portal ``filereport`` TSV as dicts keyed by column."""
        resp = await self._get(
            "ena",
            f"{ENA_PORTAL_BASE}/filereport",
            params={"accession": accession, "result": result, "fields": fields, "format": "tsv"},
        )
        if resp.status_code != 200:
            resp.raise_for_status()
            return []  # 204/no content
        reader = csv.DictReader(io.StringIO(resp.text), delimiter="\t")
        return [row for row in reader if any((v or "").strip() for v in row.values())]

    # -- child listing --------------------------------------------------------

    async def elink(self, dbfrom: str, db: str, ids: list[str]) -> list[str]:
        if not ids:
            return []
        resp = await self._get(
            "ncbi",
            f"{EUTILS_BASE}/elink.fcgi",
            params={"dbfrom": dbfrom, "db": db, "id": ",".join(ids), "retmode": "json"},
        )
        resp.raise_for_status()
        links: list[str] = []
        for linkset in resp.json().get("linksets", []):
            for linksetdb in linkset.get("linksetdbs", []):
                links.extend(str(link) for link in linksetdb.get("links", []))
        return _unique_sorted(links)

    async def esummary_sra_runs(self, ids: list[str]) -> list[str]:
        """Run accessions listed in the ``runs`` XML fragment of SRA experiment summaries."""
        if not ids:
            return []
        resp = await self._get(
            "ncbi",
            f"{EUTILS_BASE}/esummary.fcgi",
            params={"db": "sra", "id": ",".join(ids), "retmode": "json"},
        )
        resp.raise_for_status()
        result = resp.json().get("result", {})
        runs: list[str] = []
        for uid in result.get("uids", []):
            runs.extend(_SRA_RUN_ATTR.findall(result.get(uid, {}).get("runs", "")))
        return _unique_sorted(runs)

    async def esummary_assembly_accessions(self, ids: list[str]) -> list[str]:
        if not ids:
            return []
        resp = await self._get(
            "ncbi",
            f"{EUTILS_BASE}/esummary.fcgi",
            params={"db": "assembly", "id": ",".join(ids), "retmode": "json"},
        )
        resp.raise_for_status()
        result = resp.json().get("result", {})
        accessions = [
            result[uid]["assemblyaccession"]
            for uid in result.get("uids", [])
            if result.get(uid, {}).get("assemblyaccession")
        ]
        return _unique_sorted(accessions)

    async def geo_text(self, accession: str) -> str:
        """GEO quick text view of a series or sample."""
        resp = await self._get(
            "ncbi",
            GEO_TEXT_URL,
            params={"acc": accession, "targ": "self", "form": "text", "view": "quick"},
        )
        resp.raise_for_status()
        return resp.text
