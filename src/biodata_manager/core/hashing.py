import hashlib
from collections.abc import Iterable
from pathlib import Path
from urllib.parse import quote

_DOI_PREFIXES = (
    "https://doi.org/",
    "https://dx.doi.org/",
    "http://doi.org/",
    "http://dx.doi.org/",
    "doi:",
)


def normalize_doi(s: str | None) -> str | None:
    if not s:
        return None
    s = s.strip().lower()
    for prefix in _DOI_PREFIXES:
        if s.startswith(prefix):
            s = s[len(prefix) :]
            break
    s = s.strip()
    return s or None


def encode_doi(doi: str) -> str:
    """Percent-encode a DOI into a single stable path component."""
    return quote(doi, safe="")


def sha1_bytes(b: bytes) -> str:
    return hashlib.sha1(b).hexdigest()


def sha256_file(path: Path, chunk_size: int = 1 << 20) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def fingerprint_files(root: Path, files: Iterable[str]) -> str:
    """Content fingerprint of a file set: sha256 over sorted (relative path, file digest) pairs."""
    digest = hashlib.sha256()
    for rel in sorted(files):
        digest.update(rel.encode("utf-8"))
        digest.update(b"\0")
        digest.update(sha256_file(root / rel).encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()
