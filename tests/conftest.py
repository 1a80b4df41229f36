"""Shared fixtures for the test suite."""

from pathlib import Path

import pytest

from biodata_manager.core.config import AppConfig
from biodata_manager.resolve import registries
from biodata_manager.utils.http import RateLimiter


@pytest.fixture
def fast_rate_limits(monkeypatch: pytest.MonkeyPatch) -> None:
    """Replace the polite per-registry limiters so tests do not sleep."""
    for name in list(registries.RATE_LIMITERS):
        monkeypatch.setitem(registries.RATE_LIMITERS, name, RateLimiter(calls_per_second=1000.0))


@pytest.fixture
def test_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    """Test-mode config rooted in a temporary directory."""
    for var in ("BIODATA_PROJECT_ROOT", "BIODATA_CACHE_ROOT", "BIODATA_MAX_CONCURRENT", "BIODATA_HTTP_TIMEOUT"):
        monkeypatch.delenv(var, raising=False)
    return AppConfig(
        mode="test",
        project_root=tmp_path / "project",
        cache_root=tmp_path / "cache",
        log_dir=tmp_path / "logs",
    )
