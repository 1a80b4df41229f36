"""Project store and global cache.

Both tiers share one layout::

    <root>/<dataset_kind>/<id>/<format>/
        files/          provider output
        metadata.json   provider metadata
        entry.json      StoreEntry manifest (fingerprint, written_at, origin)
    <root>/.staging/    private work directories, same filesystem as <root>

An entry only ever appears through ``os.replace`` of a fully written staging
directory, so readers see either the previous entry, no entry, or the new one.
Writers for the same key serialize on a per-key lock; ``clear`` excludes all
writers through a shared/exclusive gate. Reads take no locks.
"""

import asyncio
import os
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote

from ..providers.base import ProviderRegistry
from ..utils.files import (
    STAGING_DIRNAME,
    copy_tree,
    list_files,
    make_staging_dir,
    read_json,
    remove_tree,
    write_json_atomic,
)
from ..utils.log import get_logger
from .config import AppConfig
from .errors import BiodataError, DatasetNotFound, StoreWriteFailed
from .hashing import fingerprint_files
from .models import (
    DatasetKind,
    EntryState,
    FetchOptions,
    MaterializeResult,
    ResolvedTarget,
    StoreEntry,
    StoreListing,
    StoreTier,
)

log = get_logger(__name__)

FILES_DIRNAME = "files"
ENTRY_FILENAME = "entry.json"
METADATA_FILENAME = "metadata.json"
NO_FORMAT = "default"

Key = tuple[str, str, str]


class _TierGate:
    """Shared/exclusive gate: many concurrent writers, or one clear."""

    def __init__(self) -> None:
        self._cond: asyncio.Condition | None = None
        self._shared = 0
        self._exclusive = False

    def _condition(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    @asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        cond = self._condition()
        async with cond:
            await cond.wait_for(lambda: not self._exclusive)
            self._shared += 1
        try:
            yield
        finally:
            async with cond:
                self._shared -= 1
                cond.notify_all()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        cond = self._condition()
        async with cond:
            await cond.wait_for(lambda: not self._exclusive and self._shared == 0)
            self._exclusive = True
        try:
            yield
        finally:
            async with cond:
                self._exclusive = False
                cond.notify_all()


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _subdirs(path: Path) -> list[Path]:
    """Sorted child directories of ``path``; empty if it vanished under a concurrent clear."""
    try:
        return sorted(p for p in path.iterdir() if p.is_dir())
    except FileNotFoundError:
        return []


class StoreManager:
    def __init__(
        self,
        project_root: Path,
        cache_root: Path,
        providers: ProviderRegistry,
        max_concurrent: int = 4,
    ):
        self.project_root = project_root
        self.cache_root = cache_root
        self.providers = providers
        self.max_concurrent = max_concurrent
        self._locks: dict[Key, asyncio.Lock] = {}
        self._generations: dict[Key, int] = {}
        self._gate = _TierGate()

    @classmethod
    def from_config(cls, config: AppConfig, providers: ProviderRegistry) -> "StoreManager":
        return cls(config.project_root, config.cache_root, providers, max_concurrent=config.max_concurrent)

    # -- layout ---------------------------------------------------------------

    def root(self, tier: StoreTier) -> Path:
        return self.project_root if tier == StoreTier.PROJECT else self.cache_root

    def entry_dir(self, tier: StoreTier, dataset_kind: DatasetKind | str, id: str, format: str | None) -> Path:
        return self.root(tier) / str(dataset_kind) / quote(id, safe="") / (format or NO_FORMAT)

    def _target_dir(self, tier: StoreTier, target: ResolvedTarget) -> Path:
        return self.entry_dir(tier, target.dataset_kind, target.id, target.format)

    # -- reads ----------------------------------------------------------------

    def read_entry(self, tier: StoreTier, target: ResolvedTarget) -> StoreEntry | None:
        return self._read_entry_dir(tier, self._target_dir(tier, target))

    def _read_entry_dir(self, tier: StoreTier, path: Path) -> StoreEntry | None:
        manifest = path / ENTRY_FILENAME
        try:
            data = read_json(manifest)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            log.warning("store_entry_unreadable", path=str(manifest), error=str(e))
            return None
        entry = StoreEntry.model_validate(data)
        entry.tier = tier
        entry.path = str(path)
        return entry

    def state(self, target: ResolvedTarget) -> EntryState:
        stored = self.read_entry(StoreTier.PROJECT, target) is not None
        cached = self.read_entry(StoreTier.CACHE, target) is not None
        if stored and cached:
            return EntryState.BOTH
        if stored:
            return EntryState.STORED
        if cached:
            return EntryState.CACHED
        return EntryState.ABSENT

    def _scan(self, tier: StoreTier) -> Iterable[StoreEntry]:
        root = self.root(tier)
        kinds = {str(k) for k in DatasetKind}
        if not root.is_dir():
            return
        for kind_dir in _subdirs(root):
            if kind_dir.name not in kinds:
                continue
            for id_dir in _subdirs(kind_dir):
                for format_dir in _subdirs(id_dir):
                    entry = self._read_entry_dir(tier, format_dir)
                    if entry is not None:
                        yield entry

    def info(self, dataset_kind: DatasetKind, id: str, format: str | None = None) -> list[StoreEntry]:
        """Entries for ``(kind, id)`` in both tiers, optionally restricted to one format.

        Raises:
            DatasetNotFound: neither tier holds a matching entry.
        """
        entries = [
            entry
            for tier in (StoreTier.PROJECT, StoreTier.CACHE)
            for entry in self._scan(tier)
            if entry.dataset_kind == dataset_kind
            and entry.id == id
            and (format is None or entry.format == format)
        ]
        if not entries:
            raise DatasetNotFound(
                f"{dataset_kind}:{id} is not in the project store or the global cache",
                dataset_kind=str(dataset_kind),
                id=id,
                format=format,
            )
        return entries

    # -- writes ---------------------------------------------------------------

    def _lock_for(self, key: Key) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _install(self, tier: StoreTier, staged: Path, final: Path) -> None:
        """Move a complete staging directory into ``final``, replacing any previous entry."""
        final.parent.mkdir(parents=True, exist_ok=True)
        if final.exists():
            trash = make_staging_dir(self.root(tier), prefix="replaced-")
            try:
                os.replace(final, trash / "entry")
                try:
                    os.replace(staged, final)
                except OSError:
                    os.replace(trash / "entry", final)
                    log.warning("store_entry_restored", path=str(final), tier=str(tier))
                    raise
            finally:
                remove_tree(trash)
        else:
            os.replace(staged, final)

    def _write_manifest(
        self, staged: Path, target: ResolvedTarget, metadata: dict, origin: str, tier: StoreTier
    ) -> StoreEntry:
        files_dir = staged / FILES_DIRNAME
        files = list_files(files_dir)
        entry = StoreEntry(
            dataset_kind=target.dataset_kind,
            id=target.id,
            format=target.format,
            files=files,
            metadata=metadata,
            fingerprint=fingerprint_files(files_dir, files),
            written_at=_now(),
            origin=origin,
            tier=tier,
        )
        write_json_atomic(staged / METADATA_FILENAME, metadata)
        write_json_atomic(staged / ENTRY_FILENAME, entry.model_dump(mode="json", exclude={"path"}))
        return entry

    async def _fetch_into(self, tier: StoreTier, target: ResolvedTarget) -> StoreEntry:
        """Fetch via the provider into ``tier``'s staging area, then install atomically."""
        staged = make_staging_dir(self.root(tier))
        try:
            files_dir = staged / FILES_DIRNAME
            files_dir.mkdir()
            result = await self.providers.fetch(target, files_dir)
            entry = self._write_manifest(staged, target, result.metadata, "fetch", tier)
            final = self._target_dir(tier, target)
            self._install(tier, staged, final)
        except OSError as e:
            raise StoreWriteFailed(
                f"Writing {target.specifier} into the {tier} tier failed: {e}",
                target=target.specifier,
                tier=str(tier),
            ) from e
        finally:
            # no-op after a successful install
            remove_tree(staged)
        entry.path = str(final)
        log.info("store_entry_written", target=target.specifier, tier=str(tier), files=len(entry.files))
        return entry

    def _copy_into(
        self, source: StoreEntry, tier: StoreTier, target: ResolvedTarget, origin: str = "cache"
    ) -> StoreEntry:
        """Copy an entry of the other tier into ``tier`` through staging."""
        source_dir = Path(source.path or "")
        staged = make_staging_dir(self.root(tier))
        try:
            copy_tree(source_dir / FILES_DIRNAME, staged / FILES_DIRNAME)
            entry = self._write_manifest(staged, target, source.metadata, origin, tier)
            if entry.fingerprint != source.fingerprint:
                raise StoreWriteFailed(
                    f"Copy of {target.specifier} does not match its source fingerprint",
                    target=target.specifier,
                    expected=source.fingerprint,
                    actual=entry.fingerprint,
                )
            final = self._target_dir(tier, target)
            self._install(tier, staged, final)
        except OSError as e:
            raise StoreWriteFailed(
                f"Copying {target.specifier} into the {tier} tier failed: {e}",
                target=target.specifier,
                tier=str(tier),
            ) from e
        finally:
            remove_tree(staged)
        entry.path = str(final)
        log.info("store_entry_copied", target=target.specifier, tier=str(tier))
        return entry

    def _result(self, target: ResolvedTarget, action: str, entry: StoreEntry | None) -> MaterializeResult:
        return MaterializeResult(
            target=target,
            action=action,
            entry=entry,
            project_path=str(self._target_dir(StoreTier.PROJECT, target)),
            cache_path=str(self._target_dir(StoreTier.CACHE, target)),
        )

    def _plan(self, target: ResolvedTarget, options: FetchOptions) -> MaterializeResult:
        """Decide the action for ``target`` without touching either tier."""
        if not options.force:
            stored = self.read_entry(StoreTier.PROJECT, target)
            if stored is not None:
                return self._result(target, "project", stored)
            if not options.no_cache:
                cached = self.read_entry(StoreTier.CACHE, target)
                if cached is not None:
                    return self._result(target, "cache", cached)
        return self._result(target, "download", None)

    async def materialize(self, target: ResolvedTarget, options: FetchOptions | None = None) -> MaterializeResult:
        """
        Make ``target`` available in the project store.

        - force: always fetch, then write the project store (and the global
          cache unless no_cache).
        - default: project entry, else copy of the cache entry, else fetch into
          the cache and copy into the project.
        - no_cache: project entry, else fetch into the project only; the global
          cache is neither read nor written.

        Concurrent calls for one key run one at a time; forced calls that were
        waiting behind a successful fetch reuse its result.

        Raises:
            ProviderFetchFailed: the provider could not produce the file set.
            StoreWriteFailed: staging or relocation failed; nothing was installed.
        """
        options = options or FetchOptions()
        if options.dry_run:
            plan = self._plan(target, options)
            log.info("materialize_dry_run", target=target.specifier, action=plan.action)
            return plan

        key = target.key
        async with self._gate.shared():
            seen_generation = self._generations.get(key, 0)
            async with self._lock_for(key):
                if options.force and self._generations.get(key, 0) != seen_generation:
                    # a fetch for this key completed while this call was waiting
                    reused = self.read_entry(StoreTier.PROJECT, target)
                    if reused is not None:
                        log.info("materialize_joined_fetch", target=target.specifier)
                        return self._result(target, "download", reused)

                plan = self._plan(target, options)
                if plan.action == "project":
                    log.info("store_hit", target=target.specifier, tier="project")
                    return plan
                if plan.action == "cache" and plan.entry is not None:
                    log.info("store_hit", target=target.specifier, tier="cache")
                    entry = self._copy_into(plan.entry, StoreTier.PROJECT, target)
                    return self._result(target, "cache", entry)

                if options.no_cache:
                    entry = await self._fetch_into(StoreTier.PROJECT, target)
                else:
                    cached = await self._fetch_into(StoreTier.CACHE, target)
                    entry = self._copy_into(cached, StoreTier.PROJECT, target, origin="fetch")
                self._generations[key] = self._generations.get(key, 0) + 1
                return self._result(target, "download", entry)

    async def materialize_many(
        self, targets: Iterable[ResolvedTarget], options: FetchOptions | None = None
    ) -> list[MaterializeResult]:
        """Materialize independent targets concurrently; one failure never cancels the others."""
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def one(target: ResolvedTarget) -> MaterializeResult:
            async with semaphore:
                try:
                    return await self.materialize(target, options)
                except BiodataError as e:
                    log.error("materialize_failed", target=target.specifier, error=e.message)
                    error = e.to_dict()
                except Exception as e:
                    log.exception("materialize_crashed", target=target.specifier, error_type=type(e).__name__)
                    error = {"error": type(e).__name__, "message": str(e), "target": target.specifier}
                result = self._result(target, "failed", None)
                result.error = error
                return result

        results = await asyncio.gather(*(one(t) for t in targets))
        failed = sum(1 for r in results if not r.ok)
        log.info("materialize_batch_completed", total=len(results), failed=failed)
        return list(results)

    async def clear(self) -> int:
        """Remove every project-store entry and return how many were removed.

        The global cache and the DOI resolution records are left in place.
        """
        async with self._gate.exclusive():
            removed = sum(1 for _ in self._scan(StoreTier.PROJECT))
            if self.project_root.is_dir():
                for kind in DatasetKind:
                    remove_tree(self.project_root / str(kind))
                remove_tree(self.project_root / STAGING_DIRNAME)
            log.info("project_store_cleared", root=str(self.project_root), removed=removed)
            return removed

    # kept last: inside the class body this name shadows the builtin
    def list(self) -> "list[StoreListing]":
        """Every key held by either tier, with where it lives."""
        rows: dict[Key, StoreListing] = {}
        for tier in (StoreTier.PROJECT, StoreTier.CACHE):
            for entry in self._scan(tier):
                key = (str(entry.dataset_kind), entry.id, entry.format or "")
                row = rows.get(key)
                if row is None:
                    row = StoreListing(
                        dataset_kind=entry.dataset_kind,
                        id=entry.id,
                        format=entry.format,
                        registry=entry.metadata.get("registry"),
                        state=EntryState.ABSENT,
                    )
                    rows[key] = row
                if tier == StoreTier.PROJECT:
                    row.project_path = entry.path
                else:
                    row.cache_path = entry.path
        for row in rows.values():
            if row.project_path and row.cache_path:
                row.state = EntryState.BOTH
            elif row.project_path:
                row.state = EntryState.STORED
            else:
                row.state = EntryState.CACHED
        return [rows[k] for k in sorted(rows)]
