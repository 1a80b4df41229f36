import json
import os
import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath

STAGING_DIRNAME = ".staging"


def write_json_atomic(path: Path, payload: object) -> Path:
    """Persist ``payload`` as JSON via a temp file in the same directory and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=str(path.parent), prefix=f".{path.name}.", delete=False
    ) as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)
        handle.flush()
        os.fsync(handle.fileno())
        temp_name = handle.name
    try:
        os.replace(temp_name, path)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise
    return path


def read_json(path: Path) -> dict:
    with path.open(encoding="utf-8") as handle:
        return json.load(handle)


def make_staging_dir(root: Path, prefix: str = "entry-") -> Path:
    """Create a private directory under ``<root>/.staging`` (same filesystem as ``root``)."""
    staging_root = root / STAGING_DIRNAME
    staging_root.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=prefix, dir=staging_root))


def remove_tree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


def list_files(root: Path) -> list[str]:
    """Relative POSIX paths of every regular file under ``root``, sorted."""
    if not root.is_dir():
        return []
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


def copy_tree(src: Path, dst: Path) -> None:
    """Copy ``src`` into a not-yet-existing ``dst``."""
    shutil.copytree(src, dst, copy_function=shutil.copy2)


def safe_member_path(member_name: str) -> PurePosixPath:
    """Reject archive members that are absolute or escape the extraction root."""
    member = PurePosixPath(member_name)
    if member.is_absolute() or ".." in member.parts or member_name.startswith(("/", "\\")):
        raise ValueError(f"unsafe archive member path: {member_name!r}")
    return member


def extract_zip_safe(archive: Path, destination: Path) -> list[str]:
    """Extract ``archive`` below ``destination`` and return the extracted relative paths."""
    extracted: list[str] = []
    with zipfile.ZipFile(archive) as bundle:
        bad = bundle.testzip()
        if bad is not None:
            raise zipfile.BadZipFile(f"corrupt member in {archive.name}: {bad}")
        for info in bundle.infolist():
            member = safe_member_path(info.filename)
            if info.is_dir():
                continue
            target = destination.joinpath(*member.parts)
            target.parent.mkdir(parents=True, exist_ok=True)
            with bundle.open(info) as src, target.open("wb") as dst:
                shutil.copyfileobj(src, dst)
            extracted.append(member.as_posix())
    return extracted
