"""
HTTP transfer client for web file artifacts.

Downloads stream into <dest>.download and are renamed over dest only once
complete. A .download file left behind by an interrupted run is resumed
with a Range request; servers that ignore the range simply resend the
whole body.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiohttp

from artefactor.connectors.backoff import (
    BackoffConfig,
    BackoffState,
    compute_backoff_delay,
    parse_retry_after,
)
from artefactor.errors import TransferError

logger = logging.getLogger(__name__)

DOWNLOAD_SUFFIX = ".download"
_CHUNK_SIZE = 64 * 1024


def download_path_for(dest: Path) -> Path:
    """Temporary path a download streams into before it is moved to dest."""
    dest = Path(dest)
    return dest.with_name(dest.name + DOWNLOAD_SUFFIX)


class _RetryableError(Exception):
    def __init__(self, message: str, retry_after_ms: int | None = None) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class HttpTransferClient:
    """Async downloader with resume and retry."""

    def __init__(
        self,
        backoff_config: BackoffConfig | None = None,
        request_timeout_s: float = 3600.0,
    ) -> None:
        """
        Initialize the transfer client.

        Args:
            backoff_config: Retry policy for network errors and 5xx/429 replies.
            request_timeout_s: Total timeout for a single download attempt.
        """
        self._backoff_config = backoff_config or BackoffConfig()
        self._request_timeout_s = request_timeout_s
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._request_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> HttpTransferClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def fetch(self, url: str, dest_path: Path) -> Path:
        """
        Download url to dest_path, replacing any existing file.

        Args:
            url: Source URL.
            dest_path: Final location of the file.

        Returns:
            dest_path.

        Raises:
            TransferError: On a non-retryable HTTP status, or once retries
                are exhausted.
        """
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        partial = download_path_for(dest_path)
        state = BackoffState()

        while True:
            try:
                await self._attempt(url, partial)
                break
            except (_RetryableError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                state.record_error()
                logger.warning(
                    "Download attempt failed",
                    extra={"url": url, "error": str(e), "attempt": state.attempt},
                )
                if state.exhausted(self._backoff_config):
                    msg = f"giving up after {state.attempt} attempts: {e}"
                    raise TransferError(url, msg) from e
                retry_after_ms = getattr(e, "retry_after_ms", None)
                delay_ms = compute_backoff_delay(self._backoff_config, state, retry_after_ms)
                if delay_ms > 0:
                    await asyncio.sleep(delay_ms / 1000)

        partial.replace(dest_path)
        logger.info("Downloaded file", extra={"url": url, "path": str(dest_path)})
        return dest_path

    async def _attempt(self, url: str, partial: Path) -> None:
        offset = partial.stat().st_size if partial.exists() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}

        session = await self._get_session()
        async with session.request("GET", url, headers=headers) as response:
            if response.status == 416 and offset:
                # stale partial larger than the resource
                logger.info("Discarding partial download", extra={"url": url})
                partial.unlink()
                raise _RetryableError("range not satisfiable")
            if response.status == 429 or response.status >= 500:
                retry_after_ms = parse_retry_after(response.headers.get("Retry-After"))
                raise _RetryableError(f"HTTP {response.status}", retry_after_ms)
            if response.status >= 400:
                body = await response.text()
                raise TransferError(url, f"HTTP {response.status}: {body[:200]}")

            resumed = response.status == 206
            if offset and resumed:
                logger.debug("Resuming download", extra={"url": url, "offset": offset})
            with partial.open("ab" if resumed else "wb") as out:
                async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
                    out.write(chunk)
