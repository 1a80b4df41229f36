import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx
import structlog
from tenacity import (
    after_log,
    before_sleep_log,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .. import __version__

log = structlog.get_logger()
# Get standard logger for tenacity callbacks
std_log = logging.getLogger(__name__)

RETRYABLE_STATUS = (408, 429, 500, 502, 503, 504)
TRANSIENT_ERRORS = (httpx.HTTPStatusError, httpx.TimeoutException, httpx.ConnectError, httpx.ReadTimeout)


def should_retry_on_status(exception: BaseException) -> bool:
    """Determine if we should retry based on exception type or status code."""
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in RETRYABLE_STATUS
    return isinstance(exception, (httpx.TimeoutException, httpx.ConnectError, httpx.ReadTimeout))


def user_agent(email: str | None = None) -> str:
    base = f"biodata_manager/{__version__}"
    return f"{base} (mailto:{email})" if email else base


@retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=2, max=60),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    before_sleep=before_sleep_log(std_log, logging.WARNING),
    after=after_log(std_log, logging.DEBUG),
    reraise=True,
)
async def get_with_retry(
    url: str,
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
    client: httpx.AsyncClient | None = None,
    params: dict[str, Any] | None = None,
) -> httpx.Response:
    """
    Make an HTTP GET request with automatic retry logic.

    Args:
        url: The URL to request
        headers: Optional headers dict
        timeout: Request timeout in seconds (default: 30)
        client: Optional existing client to use (useful for connection pooling)
        params: Optional query parameters

    Returns:
        httpx.Response object. Non-retryable 4xx responses are returned as-is
        so callers can interpret them (404 usually means "does not exist").

    Raises:
        httpx.HTTPStatusError: For retryable status codes after all retries
        httpx.TimeoutException: After all retries exhausted
    """
    should_close = False
    if client is None:
        client = httpx.AsyncClient(http2=True, timeout=timeout)
        should_close = True

    try:
        resp = await client.get(url, headers=headers, params=params)

        log.debug(
            "http_request_success",
            url=url,
            status=resp.status_code,
            content_length=len(resp.content) if resp.content else 0,
        )

        resp.raise_for_status()

        return resp
    except httpx.HTTPStatusError as e:
        if should_retry_on_status(e):
            log.warning("http_status_error", url=url, status=e.response.status_code, error=str(e))
            raise
        log.debug("http_client_error", url=url, status=e.response.status_code)
        return e.response
    except (httpx.TimeoutException, httpx.ConnectError, httpx.ReadTimeout) as e:
        log.error("http_network_error", url=url, error=str(e), error_type=type(e).__name__)
        raise
    finally:
        if should_close and client:
            await client.aclose()


@retry(
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=1, min=2, max=60),
    retry=retry_if_exception(should_retry_on_status),
    before_sleep=before_sleep_log(std_log, logging.WARNING),
    reraise=True,
)
async def download_to_file(
    url: str,
    destination: Path,
    client: httpx.AsyncClient,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> int:
    """Stream ``url`` into ``destination`` and return the number of bytes written.

    Any non-2xx status raises ``httpx.HTTPStatusError``; a partially written
    file is left for the caller's staging area to discard.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    async with client.stream("GET", url, params=params, headers=headers) as resp:
        resp.raise_for_status()
        with destination.open("wb") as handle:
            async for chunk in resp.aiter_bytes():
                handle.write(chunk)
                written += len(chunk)
    log.info("http_download_complete", url=url, path=str(destination), size=written)
    return written


def get_client(email: str | None = None, timeout: float = 30.0) -> httpx.AsyncClient:
    """
    Create an httpx AsyncClient with sensible defaults.

    Args:
        email: Optional email for polite user agent
        timeout: Per-request timeout in seconds (default: 30)

    Returns:
        Configured httpx.AsyncClient
    """
    # Use connection limits to avoid overwhelming registries
    limits = httpx.Limits(
        max_keepalive_connections=10,
        max_connections=20,
        keepalive_expiry=30.0,
    )

    return httpx.AsyncClient(
        http2=True,
        headers={"User-Agent": user_agent(email)},
        timeout=timeout,
        limits=limits,
        follow_redirects=True,
    )


class RateLimiter:
    """Simple rate limiter enforcing a minimum interval between calls."""

    def __init__(self, calls_per_second: float = 1.0) -> None:
        self.min_interval = 1.0 / calls_per_second
        self.last_call = 0.0
        self._lock: asyncio.Lock | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _ensure_lock(self) -> asyncio.Lock:
        """
        Lazily create lock in the current event loop.

        A limiter built at import time outlives the loop of any single
        ``asyncio.run()``; the lock is recreated whenever the loop changes.
        """
        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        if self._lock is None or self._loop is not current_loop:
            self._lock = asyncio.Lock()
            self._loop = current_loop

        return self._lock

    async def acquire(self) -> None:
        """Wait until rate limit allows next call."""
        lock = self._ensure_lock()
        async with lock:
            loop = asyncio.get_running_loop()
            time_since_last = loop.time() - self.last_call

            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                log.debug("rate_limit_wait", wait_time=wait_time)
                await asyncio.sleep(wait_time)

            self.last_call = loop.time()
