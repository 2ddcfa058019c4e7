"""
Streaming APK fetcher.

Downloads an artifact over HTTP(S) with:
- manual redirect following (301/302/307/308, relative Location supported)
- a size ceiling enforced from Content-Length and from the streamed byte count
- a wall-clock ceiling covering the whole transfer, redirects included

Every call builds its own httpx client, so concurrent fetches share nothing.
"""

import asyncio
import time
from typing import Optional
from urllib.parse import urljoin

import httpx

from config import DEFAULT_MAX_APK_SIZE_BYTES, DEFAULT_FETCH_TIMEOUT_SECONDS
from observability import structured_logger, metrics

USER_AGENT = "QuestNav-Config-Tool/1.0"
REDIRECT_STATUSES = {301, 302, 307, 308}
DEFAULT_MAX_REDIRECTS = 10


class FetchError(Exception):
    """Base class for artifact fetch failures"""
    pass


class FetchStatusError(FetchError):
    """Terminal response was not HTTP 200"""

    def __init__(self, status_code: int, reason: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"HTTP {status_code}: {reason}")


class FetchTooLargeError(FetchError):
    """Artifact exceeded the configured size ceiling"""

    def __init__(self, size: int, limit: int, declared: bool):
        self.size = size
        self.limit = limit
        self.declared = declared
        if declared:
            message = f"APK file too large: {size} bytes (max: {limit} bytes)"
        else:
            message = f"APK download exceeded size limit: {limit} bytes"
        super().__init__(message)


class FetchTimeoutError(FetchError):
    """Transfer did not finish within the wall-clock limit"""
    pass


class FetchTransportError(FetchError):
    """Connection-level failure (DNS, TLS, reset, protocol error)"""
    pass


class ApkFetcher:
    """
    Fetches APK bytes from a URL under size and time limits.

    Args:
        max_size_bytes: Abort once more than this many bytes are announced or received
        timeout_seconds: Wall-clock limit for the whole fetch
        max_redirects: Maximum redirect hops before giving up
        transport: Optional httpx transport (tests inject httpx.MockTransport)
    """

    def __init__(
        self,
        max_size_bytes: int = DEFAULT_MAX_APK_SIZE_BYTES,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        user_agent: str = USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_size_bytes = max_size_bytes
        self.timeout_seconds = timeout_seconds
        self.max_redirects = max_redirects
        self.user_agent = user_agent
        self._transport = transport

    async def fetch(self, url: str) -> bytes:
        """
        Download the artifact at url and return the complete byte string.

        Raises:
            FetchStatusError: Non-200 terminal response
            FetchTooLargeError: Size ceiling exceeded
            FetchTimeoutError: Wall-clock limit exceeded
            FetchTransportError: Network failure
            FetchError: Redirect problems
        """
        start = time.monotonic()
        structured_logger.log_event("apk.fetch.start", url=url)

        try:
            data = await asyncio.wait_for(self._fetch(url), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            error = FetchTimeoutError(f"Download timeout ({self.timeout_seconds:g}s)")
            self._record_failure(url, error, start)
            raise error
        except FetchError as e:
            self._record_failure(url, e, start)
            raise

        elapsed_ms = (time.monotonic() - start) * 1000
        structured_logger.log_event(
            "apk.fetch.success",
            url=url,
            size=len(data),
            elapsed_ms=round(elapsed_ms, 2)
        )
        metrics.inc_counter("apk_fetch_total", {"result": "success"})
        metrics.observe_histogram("apk_fetch_duration_ms", elapsed_ms)
        return data

    def _record_failure(self, url: str, error: FetchError, start: float):
        elapsed_ms = (time.monotonic() - start) * 1000
        structured_logger.log_event(
            "apk.fetch.failed",
            level="WARN",
            url=url,
            error=str(error),
            error_type=type(error).__name__,
            elapsed_ms=round(elapsed_ms, 2)
        )
        metrics.inc_counter("apk_fetch_total", {"result": type(error).__name__})

    async def _fetch(self, url: str) -> bytes:
        headers = {"User-Agent": self.user_agent}
        timeout = httpx.Timeout(self.timeout_seconds)

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                headers=headers,
                timeout=timeout,
                follow_redirects=False,
            ) as client:
                current_url = url
                for _ in range(self.max_redirects + 1):
                    async with client.stream("GET", current_url) as response:
                        if response.status_code in REDIRECT_STATUSES:
                            location = response.headers.get("location")
                            if not location:
                                raise FetchError("Redirect without location header")
                            next_url = urljoin(current_url, location)
                            structured_logger.log_event(
                                "apk.fetch.redirect",
                                status_code=response.status_code,
                                from_url=current_url,
                                to_url=next_url
                            )
                            current_url = next_url
                            continue

                        if response.status_code != 200:
                            raise FetchStatusError(response.status_code, response.reason_phrase)

                        return await self._read_body(response)

                raise FetchError(f"Too many redirects (max: {self.max_redirects})")
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"Download timeout: {str(e) or type(e).__name__}") from e
        except httpx.HTTPError as e:
            raise FetchTransportError(f"Download failed: {str(e) or type(e).__name__}") from e
        except httpx.InvalidURL as e:
            raise FetchError(f"Invalid download URL: {e}") from e

    async def _read_body(self, response: httpx.Response) -> bytes:
        # Pre-flight check; a missing or lying header is caught while streaming
        content_length = response.headers.get("content-length")
        if content_length and content_length.strip().isdigit():
            declared = int(content_length)
            if declared > self.max_size_bytes:
                raise FetchTooLargeError(declared, self.max_size_bytes, declared=True)

        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            if len(buffer) + len(chunk) > self.max_size_bytes:
                raise FetchTooLargeError(len(buffer) + len(chunk), self.max_size_bytes, declared=False)
            buffer.extend(chunk)

        return bytes(buffer)
