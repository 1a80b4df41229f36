"""Configuration for production and test environments.

An ``AppConfig`` is built once at process start (by the CLI or a test fixture)
and handed explicitly to the store, provenance recorder and registry client.
Test mode points every root at ``test_data/`` so manual runs and tests never
touch the real global cache.
"""

import os
from pathlib import Path
from typing import Literal

from ..utils.log import get_logger

log = get_logger(__name__)

# Environment mode type
EnvironmentMode = Literal["production", "test"]

# Default paths for production environment
_DEFAULT_PRODUCTION_PATHS = {
    "project_root": Path(".biodata"),
    "cache_root": Path("~/.cache/biodata-manager"),
    "log_dir": Path("logs"),
}

# Test paths (completely separate from production)
_DEFAULT_TEST_PATHS = {
    "project_root": Path("test_data/project"),
    "cache_root": Path("test_data/cache"),
    "log_dir": Path("test_data/logs"),
}

_ENV_PATHS = {
    "project_root": "BIODATA_PROJECT_ROOT",
    "cache_root": "BIODATA_CACHE_ROOT",
}


class AppConfig:
    """Paths and request settings for one process.

    Values resolve in order: explicit keyword argument, environment variable,
    mode default.
    """

    def __init__(
        self,
        mode: EnvironmentMode = "production",
        *,
        project_root: Path | None = None,
        cache_root: Path | None = None,
        log_dir: Path | None = None,
        contact_email: str | None = None,
        http_timeout: float | None = None,
        max_concurrent: int | None = None,
    ) -> None:
        self._mode: EnvironmentMode = mode
        defaults = _DEFAULT_TEST_PATHS if mode == "test" else _DEFAULT_PRODUCTION_PATHS
        self._paths: dict[str, Path] = {}
        explicit = {"project_root": project_root, "cache_root": cache_root, "log_dir": log_dir}
        for name, default in defaults.items():
            value = explicit[name]
            if value is None and mode == "production" and name in _ENV_PATHS:
                env_value = os.getenv(_ENV_PATHS[name])
                value = Path(env_value) if env_value else None
            self._paths[name] = Path(value or default).expanduser()

        self.contact_email = contact_email or os.getenv("BIODATA_EMAIL")
        self.http_timeout = http_timeout or float(os.getenv("BIODATA_HTTP_TIMEOUT", "30"))
        self.max_concurrent = max_concurrent or int(os.getenv("BIODATA_MAX_CONCURRENT", "4"))
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        log.debug("app_config_initialized", **self.get_summary())

    @property
    def mode(self) -> EnvironmentMode:
        return self._mode

    @property
    def project_root(self) -> Path:
        """Project-local store root."""
        return self._paths["project_root"]

    @property
    def cache_root(self) -> Path:
        """Global cache root shared across projects."""
        return self._paths["cache_root"]

    @property
    def log_dir(self) -> Path:
        return self._paths["log_dir"]

    @property
    def doi_root(self) -> Path:
        """Directory receiving one provenance record per DOI."""
        return self.project_root / "doi"

    def ensure_directories(self) -> None:
        """Create all configured directories if they don't exist."""
        for path in self._paths.values():
            path.mkdir(parents=True, exist_ok=True)
            log.debug("directory_ensured", path=str(path))

    def get_summary(self) -> dict[str, str]:
        return {
            "mode": self._mode,
            **{k: str(v) for k, v in self._paths.items()},
            "contact_email": self.contact_email or "",
            "http_timeout": str(self.http_timeout),
            "max_concurrent": str(self.max_concurrent),
        }
