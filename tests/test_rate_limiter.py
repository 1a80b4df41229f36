"""Tests for the per-registry RateLimiter, including reuse across event loops."""

import asyncio
import time

import pytest

from biodata_manager.resolve.registries import RATE_LIMITERS
from biodata_manager.utils.http import RateLimiter


@pytest.mark.asyncio
async def test_calls_are_spaced_by_min_interval() -> None:
    limiter = RateLimiter(calls_per_second=5.0)  # 0.2s interval

    start = time.monotonic()
    for _ in range(3):
        await limiter.acquire()
    elapsed = time.monotonic() - start

    # 3 calls, 2 intervals
    assert elapsed >= 0.39, f"Rate limiting too fast: {elapsed}s"
    assert elapsed < 0.8, f"Rate limiting too slow: {elapsed}s"


@pytest.mark.asyncio
async def test_concurrent_tasks_are_serialized() -> None:
    limiter = RateLimiter(calls_per_second=10.0)
    stamps: list[float] = []

    async def lookup() -> None:
        await limiter.acquire()
        stamps.append(time.monotonic())

    start = time.monotonic()
    await asyncio.gather(*(lookup() for _ in range(5)))

    assert len(stamps) == 5
    assert time.monotonic() - start >= 0.39


def test_module_level_limiter_survives_repeated_asyncio_run() -> None:
    """
    Registry limiters are created at import time, then used by one
    ``asyncio.run()`` per CLI command; each run gets a fresh lock.
    """
    limiter = RateLimiter(calls_per_second=50.0)

    async def one_command() -> asyncio.AbstractEventLoop | None:
        await limiter.acquire()
        return limiter._loop

    first_loop = asyncio.run(one_command())
    second_loop = asyncio.run(one_command())

    assert first_loop is not None and second_loop is not None
    assert first_loop is not second_loop


@pytest.mark.asyncio
async def test_lock_is_created_lazily_and_reused() -> None:
    limiter = RateLimiter(calls_per_second=100.0)
    assert limiter._lock is None

    await limiter.acquire()
    lock = limiter._lock
    assert isinstance(lock, asyncio.Lock)

    await limiter.acquire()
    assert limiter._lock is lock


def test_every_registry_has_a_limiter() -> None:
    assert set(RATE_LIMITERS) == {"crossref", "ncbi", "rcsb", "uniprot", "ena"}
    assert RATE_LIMITERS["ncbi"].min_interval == pytest.approx(1 / 3)
