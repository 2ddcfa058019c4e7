"""
Tests for the background download pipeline.

Each test drives the manager inside asyncio.run() and waits for its tasks
with wait_idle(), then inspects the registry and the store.
"""
import asyncio
import hashlib
import time

import httpx
import pytest

from apk_fetcher import ApkFetcher
from conftest import FakeApkHost
from content_store import ApkContentStore
from models import SessionLocal, STATUS_COMPLETED, STATUS_DOWNLOADING, STATUS_FAILED
from release_downloads import ReleaseDownloadManager, CANCELLED_ERROR
from release_registry import ReleaseRegistry, ReleaseNotFoundError, DownloadInProgressError

APK_V1 = b"PK\x03\x04" + b"v1" * 500
APK_V2 = b"PK\x03\x04" + b"v2" * 500


def _register(tag: str, url: str) -> int:
    db = SessionLocal()
    try:
        return ReleaseRegistry(db).create(release_tag=tag, apk_name="questnav.apk", apk_url=url).id
    finally:
        db.close()


def _load(release_id: int):
    db = SessionLocal()
    try:
        return ReleaseRegistry(db).get_by_id(release_id)
    finally:
        db.close()


def _manager(store: ApkContentStore, host: FakeApkHost, **fetcher_kwargs) -> ReleaseDownloadManager:
    fetcher_kwargs.setdefault("max_size_bytes", 1024 * 1024)
    fetcher_kwargs.setdefault("timeout_seconds", 5)
    fetcher = ApkFetcher(transport=httpx.MockTransport(host.handler), **fetcher_kwargs)
    return ReleaseDownloadManager(SessionLocal, store, fetcher, max_concurrent=2)


async def _download(manager: ReleaseDownloadManager, release_id: int):
    release = await manager.trigger_download(release_id)
    await manager.wait_idle()
    return release


class SlowStore(ApkContentStore):
    """Store whose writes take long enough to be cancelled mid-way."""

    def put(self, data, source_url=None, name=None):
        time.sleep(0.3)
        return super().put(data, source_url, name)


class VanishingBlobStore(ApkContentStore):
    """Loses the blob right after one put, as a concurrent release delete would."""

    def __init__(self, root_dir):
        super().__init__(root_dir)
        self.remove_after_next_put = False

    def put(self, data, source_url=None, name=None):
        digest = super().put(data, source_url, name)
        if self.remove_after_next_put:
            self.remove_after_next_put = False
            self.delete(digest)
        return digest


class TestDownloadOutcomes:

    def test_success_records_hash_and_stores_blob(self, store, apk_host):
        url = apk_host.serve("/v1.0.0/questnav.apk", APK_V1)
        release_id = _register("v1.0.0", url)
        manager = _manager(store, apk_host)

        scheduled = asyncio.run(_download(manager, release_id))

        assert scheduled.download_status == STATUS_DOWNLOADING
        release = _load(release_id)
        assert release.download_status == STATUS_COMPLETED
        assert release.apk_hash == hashlib.sha256(APK_V1).hexdigest()
        assert release.apk_size == len(APK_V1)
        assert release.downloaded_at is not None
        assert store.read(release.apk_hash) == APK_V1
        assert store.read_metadata(release.apk_hash)["original_url"] == url

    def test_http_500_marks_failed(self, store, apk_host):
        url = apk_host.serve("/v1.0.0/questnav.apk", lambda r: httpx.Response(500))
        release_id = _register("v1.0.0", url)

        asyncio.run(_download(_manager(store, apk_host), release_id))

        release = _load(release_id)
        assert release.download_status == STATUS_FAILED
        assert "500" in release.download_error
        assert release.apk_hash is None
        assert store.list() == []

    def test_under_reported_size_marks_failed(self, store, apk_host):
        async def body():
            for _ in range(10):
                yield b"x" * 500

        url = apk_host.serve(
            "/huge.apk",
            lambda r: httpx.Response(200, headers={"Content-Length": "100"}, content=body())
        )
        release_id = _register("v-huge", url)

        asyncio.run(_download(_manager(store, apk_host, max_size_bytes=1000), release_id))

        release = _load(release_id)
        assert release.download_status == STATUS_FAILED
        assert "size limit" in release.download_error
        assert store.list() == []

    def test_timeout_marks_failed(self, store, apk_host):
        async def slow(request):
            await asyncio.sleep(2)
            return httpx.Response(200, content=APK_V1)

        url = apk_host.serve("/slow.apk", slow)
        release_id = _register("v-slow", url)

        asyncio.run(_download(_manager(store, apk_host, timeout_seconds=0.1), release_id))

        release = _load(release_id)
        assert release.download_status == STATUS_FAILED
        assert "timeout" in release.download_error.lower()

    def test_identical_artifacts_share_one_blob(self, store, apk_host):
        first = _register("v1.0.0", apk_host.serve("/a/questnav.apk", APK_V1))
        second = _register("v1.0.0-hotfix", apk_host.serve("/b/questnav.apk", APK_V1))
        manager = _manager(store, apk_host)

        async def run():
            await manager.trigger_download(first)
            await manager.trigger_download(second)
            await manager.wait_idle()

        asyncio.run(run())

        assert _load(first).apk_hash == _load(second).apk_hash
        assert len(store.list()) == 1

    def test_shared_blob_removed_before_completion_is_restored(self, tmp_path, apk_host):
        store = VanishingBlobStore(str(tmp_path / "apks"))
        first = _register("v1.0.0", apk_host.serve("/a/questnav.apk", APK_V1))
        second = _register("v1.0.1", apk_host.serve("/b/questnav.apk", APK_V1))
        manager = _manager(store, apk_host)
        asyncio.run(_download(manager, first))

        # v1.0.0 goes away while v1.0.1's put is deduplicating against its blob
        db = SessionLocal()
        try:
            ReleaseRegistry(db).delete(first)
        finally:
            db.close()
        store.remove_after_next_put = True

        asyncio.run(_download(manager, second))

        release = _load(second)
        assert release.download_status == STATUS_COMPLETED
        assert store.read(release.apk_hash) == APK_V1
        assert store.read_metadata(release.apk_hash)["name"] == "questnav.apk"


class TestTriggerRules:

    def test_unknown_release(self, store, apk_host):
        with pytest.raises(ReleaseNotFoundError):
            asyncio.run(_manager(store, apk_host).trigger_download(404))

    def test_concurrent_trigger_rejected(self, store, apk_host):
        async def slow(request):
            await asyncio.sleep(0.2)
            return httpx.Response(200, content=APK_V1)

        url = apk_host.serve("/v1.0.0/questnav.apk", slow)
        release_id = _register("v1.0.0", url)
        manager = _manager(store, apk_host)

        async def run():
            await manager.trigger_download(release_id)
            with pytest.raises(DownloadInProgressError):
                await manager.trigger_download(release_id)
            await manager.wait_idle()

        asyncio.run(run())

        assert apk_host.hits(url) == 1
        assert _load(release_id).download_status == STATUS_COMPLETED

    def test_claim_held_by_another_process_rejected(self, store, apk_host):
        release_id = _register("v1.0.0", apk_host.serve("/v1.0.0/questnav.apk", APK_V1))
        db = SessionLocal()
        try:
            ReleaseRegistry(db).begin_download(release_id)
        finally:
            db.close()

        with pytest.raises(DownloadInProgressError):
            asyncio.run(_manager(store, apk_host).trigger_download(release_id))

        assert apk_host.requests == []

    def test_retry_after_failure(self, store, apk_host):
        responses = [httpx.Response(503), httpx.Response(200, content=APK_V1)]
        url = apk_host.serve("/flaky.apk", lambda r: responses.pop(0))
        release_id = _register("v-flaky", url)
        manager = _manager(store, apk_host)

        asyncio.run(_download(manager, release_id))
        assert _load(release_id).download_status == STATUS_FAILED

        asyncio.run(_download(manager, release_id))
        release = _load(release_id)
        assert release.download_status == STATUS_COMPLETED
        assert release.download_error is None

    def test_redownload_with_new_bytes_releases_old_blob(self, store, apk_host):
        payloads = [APK_V1, APK_V2]
        url = apk_host.serve("/reupload.apk", lambda r: httpx.Response(200, content=payloads.pop(0)))
        release_id = _register("v1.0.0", url)
        manager = _manager(store, apk_host)

        asyncio.run(_download(manager, release_id))
        old_hash = _load(release_id).apk_hash

        asyncio.run(_download(manager, release_id))
        new_hash = _load(release_id).apk_hash

        assert new_hash == hashlib.sha256(APK_V2).hexdigest()
        assert store.get(old_hash) is None
        assert [entry["hash"] for entry in store.list()] == [new_hash]

    def test_failed_retry_keeps_completed_artifact(self, store, apk_host):
        responses = [httpx.Response(200, content=APK_V1), httpx.Response(503)]
        url = apk_host.serve("/v1.0.0/questnav.apk", lambda r: responses.pop(0))
        release_id = _register("v1.0.0", url)
        manager = _manager(store, apk_host)

        asyncio.run(_download(manager, release_id))
        good_hash = _load(release_id).apk_hash

        asyncio.run(_download(manager, release_id))

        release = _load(release_id)
        assert release.download_status == STATUS_FAILED
        assert "503" in release.download_error
        assert release.apk_hash == good_hash
        assert release.apk_size == len(APK_V1)
        assert store.read(good_hash) == APK_V1


class TestCancellation:

    def test_cancel_marks_failed(self, store, apk_host):
        async def hang(request):
            await asyncio.sleep(10)
            return httpx.Response(200, content=APK_V1)

        release_id = _register("v-hang", apk_host.serve("/hang.apk", hang))
        manager = _manager(store, apk_host)

        async def run():
            await manager.trigger_download(release_id)
            await asyncio.sleep(0.05)
            assert manager.active_downloads() == [release_id]
            assert manager.cancel(release_id) is True
            await manager.wait_idle()

        asyncio.run(run())

        release = _load(release_id)
        assert release.download_status == STATUS_FAILED
        assert release.download_error == CANCELLED_ERROR
        assert manager.cancel(release_id) is False

    def test_shutdown_fails_in_flight_downloads(self, store, apk_host):
        async def hang(request):
            await asyncio.sleep(10)
            return httpx.Response(200, content=APK_V1)

        first = _register("v-a", apk_host.serve("/a.apk", hang))
        second = _register("v-b", apk_host.serve("/b.apk", hang))
        manager = _manager(store, apk_host)

        async def run():
            await manager.trigger_download(first)
            await manager.trigger_download(second)
            await asyncio.sleep(0.05)
            await manager.shutdown()

        asyncio.run(run())

        assert _load(first).download_status == STATUS_FAILED
        assert _load(second).download_status == STATUS_FAILED
        assert manager.active_downloads() == []

    def test_cancel_during_store_write_leaves_no_blob(self, tmp_path, apk_host):
        store = SlowStore(str(tmp_path / "apks"))
        release_id = _register("v1.0.0", apk_host.serve("/v1.0.0/questnav.apk", APK_V1))
        manager = _manager(store, apk_host)

        async def run():
            await manager.trigger_download(release_id)
            await asyncio.sleep(0.1)
            assert manager.cancel(release_id) is True
            await manager.wait_idle()

        asyncio.run(run())

        release = _load(release_id)
        assert release.download_status == STATUS_FAILED
        assert release.download_error == CANCELLED_ERROR
        assert store.list() == []
