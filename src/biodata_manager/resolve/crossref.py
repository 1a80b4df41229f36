import re
import xml.etree.ElementTree as ET
from typing import Any

from ..core.models import SourceMetadata
from ..utils.log import get_logger
from .registries import RegistryClient

log = get_logger(__name__)


def _clean_abstract(abstract: str | None) -> str | None:
    """Strip JATS markup from a Crossref abstract."""
    if not abstract:
        return None
    try:
        root = ET.fromstring(f"<root>{abstract}</root>")
        text = "".join(root.itertext())
    except ET.ParseError:
        # Fallback: remove tags using regex
        text = re.sub(r"<[^>]+>", " ", abstract)
    text = re.sub(r"\s+", " ", text).strip()
    return text or None


def parse_crossref_message(message: dict[str, Any]) -> SourceMetadata:
    """Collect the fields scanned for dataset identifiers from a Crossref work."""
    titles = message.get("title") or []
    title = titles[0] if titles else None

    references: list[str] = []
    for item in message.get("reference") or []:
        for key in ("DOI", "unstructured", "article-title", "series-title"):
            if item.get(key):
                references.append(item[key])

    links = [item["URL"] for item in message.get("link") or [] if item.get("URL")]
    primary = (message.get("resource") or {}).get("primary") or {}
    if primary.get("URL"):
        links.append(primary["URL"])

    data_availability: list[str] = []
    for assertion in message.get("assertion") or []:
        label = (assertion.get("label") or assertion.get("name") or "").lower()
        if "data" in label and assertion.get("value"):
            data_availability.append(str(assertion["value"]))

    return SourceMetadata(
        title=title,
        abstract_text=_clean_abstract(message.get("abstract")),
        references=tuple(references),
        links=tuple(links),
        data_availability=tuple(data_availability),
    )


async def fetch_source_metadata(doi: str, registry: RegistryClient) -> SourceMetadata:
    """Fetch and parse the structured metadata for ``doi``.

    Raises:
        MetadataSourceUnavailable: Crossref could not be reached or has no record.
    """
    message = await registry.crossref_work(doi)
    source = parse_crossref_message(message)
    log.info(
        "source_metadata_collected",
        doi=doi,
        has_abstract=bool(source.abstract_text),
        references=len(source.references),
        links=len(source.links),
        data_availability=len(source.data_availability),
    )
    return source
