"""
Tests for the streaming APK fetcher against an httpx.MockTransport host.
"""
import asyncio

import httpx
import pytest

from apk_fetcher import (
    ApkFetcher, FetchError, FetchStatusError, FetchTooLargeError, FetchTimeoutError, FetchTransportError
)
from conftest import APK_HOST, FakeApkHost

APK_BYTES = b"PK\x03\x04" + b"\x00" * 2048


def make_fetcher(host: FakeApkHost, **kwargs) -> ApkFetcher:
    kwargs.setdefault("max_size_bytes", 1024 * 1024)
    kwargs.setdefault("timeout_seconds", 5)
    return ApkFetcher(transport=httpx.MockTransport(host.handler), **kwargs)


async def _chunks(data: bytes, size: int = 256):
    for i in range(0, len(data), size):
        yield data[i:i + size]


class TestFetchSuccess:

    def test_plain_200(self, apk_host: FakeApkHost):
        url = apk_host.serve("/v1/questnav.apk", APK_BYTES)

        data = asyncio.run(make_fetcher(apk_host).fetch(url))

        assert data == APK_BYTES

    def test_sends_user_agent(self, apk_host: FakeApkHost):
        url = apk_host.serve("/v1/questnav.apk", APK_BYTES)

        asyncio.run(make_fetcher(apk_host).fetch(url))

        assert apk_host.requests[0].headers["user-agent"] == "QuestNav-Config-Tool/1.0"

    def test_follows_absolute_and_relative_redirects(self, apk_host: FakeApkHost):
        final = apk_host.serve("https://objects.example.net/blob/abc", APK_BYTES)
        apk_host.serve("/hop", lambda r: httpx.Response(307, headers={"Location": final}))
        start = apk_host.serve("/start", lambda r: httpx.Response(302, headers={"Location": "/hop"}))

        data = asyncio.run(make_fetcher(apk_host).fetch(start))

        assert data == APK_BYTES
        assert [str(r.url) for r in apk_host.requests] == [start, f"{APK_HOST}/hop", final]

    def test_streams_without_content_length(self, apk_host: FakeApkHost):
        url = apk_host.serve("/chunked.apk", lambda r: httpx.Response(200, content=_chunks(APK_BYTES)))

        data = asyncio.run(make_fetcher(apk_host).fetch(url))

        assert data == APK_BYTES


class TestFetchFailures:

    def test_http_500_is_status_error(self, apk_host: FakeApkHost):
        url = apk_host.serve("/broken.apk", lambda r: httpx.Response(500))

        with pytest.raises(FetchStatusError) as exc_info:
            asyncio.run(make_fetcher(apk_host).fetch(url))

        assert exc_info.value.status_code == 500
        assert "500" in str(exc_info.value)

    def test_404_is_status_error(self, apk_host: FakeApkHost):
        with pytest.raises(FetchStatusError, match="HTTP 404"):
            asyncio.run(make_fetcher(apk_host).fetch(f"{APK_HOST}/missing.apk"))

    def test_redirect_without_location(self, apk_host: FakeApkHost):
        url = apk_host.serve("/bad-redirect", lambda r: httpx.Response(302))

        with pytest.raises(FetchError, match="Redirect without location header"):
            asyncio.run(make_fetcher(apk_host).fetch(url))

    def test_redirect_loop_is_bounded(self, apk_host: FakeApkHost):
        url = apk_host.serve("/loop", lambda r: httpx.Response(301, headers={"Location": "/loop"}))

        with pytest.raises(FetchError, match="Too many redirects"):
            asyncio.run(make_fetcher(apk_host, max_redirects=3).fetch(url))

        assert apk_host.hits(url) == 4

    def test_declared_size_over_limit_rejected_before_body(self, apk_host: FakeApkHost):
        url = apk_host.serve("/big.apk", b"x" * 2000)

        with pytest.raises(FetchTooLargeError) as exc_info:
            asyncio.run(make_fetcher(apk_host, max_size_bytes=1000).fetch(url))

        assert exc_info.value.declared is True
        assert "too large" in str(exc_info.value)

    def test_under_reported_content_length_caught_while_streaming(self, apk_host: FakeApkHost):
        body = b"y" * 5000
        url = apk_host.serve(
            "/liar.apk",
            lambda r: httpx.Response(200, headers={"Content-Length": "10"}, content=_chunks(body))
        )

        with pytest.raises(FetchTooLargeError) as exc_info:
            asyncio.run(make_fetcher(apk_host, max_size_bytes=1000).fetch(url))

        assert exc_info.value.declared is False

    def test_missing_content_length_over_limit(self, apk_host: FakeApkHost):
        url = apk_host.serve("/stream.apk", lambda r: httpx.Response(200, content=_chunks(b"z" * 5000)))

        with pytest.raises(FetchTooLargeError):
            asyncio.run(make_fetcher(apk_host, max_size_bytes=1000).fetch(url))

    def test_body_exactly_at_limit_is_accepted(self, apk_host: FakeApkHost):
        url = apk_host.serve("/exact.apk", b"e" * 1000)

        data = asyncio.run(make_fetcher(apk_host, max_size_bytes=1000).fetch(url))

        assert len(data) == 1000

    def test_wall_clock_timeout(self, apk_host: FakeApkHost):
        async def slow(request):
            await asyncio.sleep(2)
            return httpx.Response(200, content=APK_BYTES)

        url = apk_host.serve("/slow.apk", slow)

        with pytest.raises(FetchTimeoutError, match="timeout"):
            asyncio.run(make_fetcher(apk_host, timeout_seconds=0.1).fetch(url))

    def test_connection_error_is_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        fetcher = ApkFetcher(transport=httpx.MockTransport(refuse))

        with pytest.raises(FetchTransportError, match="connection refused"):
            asyncio.run(fetcher.fetch(f"{APK_HOST}/any.apk"))
