"""
Background download pipeline for APK releases.

Webhook ingestion, manual triggers and backfill all funnel through
ReleaseDownloadManager.trigger_download(), which claims the release in the
registry and hands the fetch to an asyncio task owned by the manager rather
than by the HTTP request. Every exit path of a task (success, fetch error,
store error, cancellation) ends with the release in a terminal state.
"""
import asyncio
import time
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from apk_fetcher import ApkFetcher
from content_store import ApkContentStore
from models import ApkRelease, STATUS_DOWNLOADING
from observability import structured_logger, metrics
from release_registry import ReleaseRegistry, ReleaseNotFoundError, DownloadInProgressError

CANCELLED_ERROR = "Download cancelled"


class ReleaseDownloadManager:
    """Owns in-flight release downloads, one task per release."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: ApkContentStore,
        fetcher: ApkFetcher,
        max_concurrent: int = 4,
    ):
        self._session_factory = session_factory
        self.store = store
        self.fetcher = fetcher
        self.max_concurrent = max_concurrent
        self._tasks: Dict[int, asyncio.Task] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None

    def _get_semaphore(self) -> asyncio.Semaphore:
        # Created lazily so it binds to the running loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        return self._semaphore

    def active_downloads(self) -> List[int]:
        return [release_id for release_id, task in self._tasks.items() if not task.done()]

    async def trigger_download(self, release_id: int) -> ApkRelease:
        """
        Claim a release for download and start fetching it in the background.

        Returns immediately with the release in 'downloading'.

        Raises:
            ReleaseNotFoundError: Unknown release id
            DownloadInProgressError: The release is already downloading
        """
        db = self._session_factory()
        try:
            registry = ReleaseRegistry(db)
            release = registry.get_by_id(release_id)
            if release is None:
                raise ReleaseNotFoundError(release_id)

            existing = self._tasks.get(release_id)
            if existing is not None and not existing.done():
                raise DownloadInProgressError(release_id)

            previous_hash = release.apk_hash
            if not registry.begin_download(release_id):
                structured_logger.log_event(
                    "release.download.rejected",
                    release_id=release_id,
                    release_tag=release.release_tag,
                    reason="in_progress"
                )
                raise DownloadInProgressError(release_id)

            release = registry.get_by_id(release_id)
        finally:
            db.close()

        task = asyncio.create_task(
            self._run_download(release_id, release.release_tag, release.apk_url, release.apk_name, previous_hash),
            name=f"apk-download-{release_id}"
        )
        self._tasks[release_id] = task
        task.add_done_callback(lambda t, rid=release_id: self._on_task_done(rid, t))

        structured_logger.log_event(
            "release.download.scheduled",
            release_id=release_id,
            release_tag=release.release_tag,
            url=release.apk_url
        )
        metrics.inc_counter("release_downloads_scheduled_total")
        return release

    def _on_task_done(self, release_id: int, task: asyncio.Task):
        if self._tasks.get(release_id) is task:
            del self._tasks[release_id]
        if task.cancelled():
            # Cancelled before its first step, the coroutine body never ran
            self._release_abandoned_claim(release_id, CANCELLED_ERROR)
            return
        exc = task.exception()
        if exc is not None:
            structured_logger.log_event(
                "release.download.task_crashed",
                level="ERROR",
                release_id=release_id,
                error=str(exc),
                error_type=type(exc).__name__
            )
            self._release_abandoned_claim(release_id, str(exc) or type(exc).__name__)

    def _release_abandoned_claim(self, release_id: int, error: str):
        """Fail a release whose task ended without recording an outcome."""
        db = self._session_factory()
        try:
            registry = ReleaseRegistry(db)
            release = registry.get_by_id(release_id)
            if release is not None and release.download_status == STATUS_DOWNLOADING:
                registry.mark_failed(release_id, error)
                structured_logger.log_event(
                    "release.download.abandoned",
                    level="WARN",
                    release_id=release_id,
                    error=error
                )
        except Exception as e:
            structured_logger.log_event(
                "release.download.finalize_error",
                level="ERROR",
                release_id=release_id,
                error=str(e),
                error_type=type(e).__name__
            )
        finally:
            db.close()

    async def _run_download(
        self,
        release_id: int,
        release_tag: str,
        url: str,
        apk_name: str,
        previous_hash: Optional[str],
    ):
        start = time.monotonic()
        structured_logger.log_event("release.download.started", release_id=release_id, release_tag=release_tag)

        put_task: Optional[asyncio.Task] = None
        try:
            async with self._get_semaphore():
                data = await self.fetcher.fetch(url)
                # Disk write off the event loop, shielded so a cancel can still clean up after it
                put_task = asyncio.ensure_future(asyncio.to_thread(self.store.put, data, url, apk_name))
                digest = await asyncio.shield(put_task)
        except asyncio.CancelledError:
            self._finish_failed(release_id, release_tag, CANCELLED_ERROR, "CancelledError")
            if put_task is not None:
                await self._discard_interrupted_write(release_id, put_task)
            raise
        except Exception as e:
            self._finish_failed(release_id, release_tag, str(e) or type(e).__name__, type(e).__name__)
            return

        elapsed_ms = (time.monotonic() - start) * 1000
        self._finish_completed(release_id, release_tag, data, digest, url, apk_name, previous_hash, elapsed_ms)

    async def _discard_interrupted_write(self, release_id: int, put_task: asyncio.Task):
        """Wait out a store write abandoned by cancellation and drop its blob if unused."""
        await asyncio.wait({put_task})
        if put_task.cancelled() or put_task.exception() is not None:
            return
        digest = put_task.result()
        db = self._session_factory()
        try:
            self._drop_unreferenced_blob(ReleaseRegistry(db), digest)
        except Exception as e:
            structured_logger.log_event(
                "release.download.finalize_error",
                level="ERROR",
                release_id=release_id,
                error=str(e),
                error_type=type(e).__name__
            )
        finally:
            db.close()

    def _finish_completed(
        self,
        release_id: int,
        release_tag: str,
        data: bytes,
        digest: str,
        url: str,
        apk_name: str,
        previous_hash: Optional[str],
        elapsed_ms: float,
    ):
        db = self._session_factory()
        try:
            registry = ReleaseRegistry(db)
            release = registry.mark_completed(release_id, digest, len(data))
            if release is None:
                # Deleted by an operator while we were downloading
                structured_logger.log_event(
                    "release.download.orphaned",
                    level="WARN",
                    release_id=release_id,
                    release_tag=release_tag,
                    hash=digest
                )
                self._drop_unreferenced_blob(registry, digest)
                return

            if self.store.get(digest) is None:
                # A deduplicated put found the blob, then a release delete removed it
                # before this reference was recorded
                self.store.put(data, url, apk_name)
                structured_logger.log_event(
                    "release.blob.restored",
                    level="WARN",
                    release_id=release_id,
                    hash=digest
                )

            if previous_hash and previous_hash != digest:
                # Same tag, re-uploaded asset: the old blob may now be unused
                self._drop_unreferenced_blob(registry, previous_hash)

            structured_logger.log_event(
                "release.download.completed",
                release_id=release_id,
                release_tag=release_tag,
                hash=digest,
                size=len(data),
                elapsed_ms=round(elapsed_ms, 2)
            )
            metrics.inc_counter("release_downloads_total", {"result": "completed"})
            metrics.observe_histogram("release_download_duration_ms", elapsed_ms)
        except Exception as e:
            structured_logger.log_event(
                "release.download.finalize_error",
                level="ERROR",
                release_id=release_id,
                error=str(e),
                error_type=type(e).__name__
            )
            raise
        finally:
            db.close()

    def _finish_failed(self, release_id: int, release_tag: str, error: str, error_type: str):
        structured_logger.log_event(
            "release.download.failed",
            level="ERROR",
            release_id=release_id,
            release_tag=release_tag,
            error=error,
            error_type=error_type
        )
        metrics.inc_counter("release_downloads_total", {"result": "failed"})

        db = self._session_factory()
        try:
            # Any artifact from an earlier success stays recorded and cached
            ReleaseRegistry(db).mark_failed(release_id, error)
        except Exception as e:
            structured_logger.log_event(
                "release.download.finalize_error",
                level="ERROR",
                release_id=release_id,
                error=str(e),
                error_type=type(e).__name__
            )
            raise
        finally:
            db.close()

    def _drop_unreferenced_blob(self, registry: ReleaseRegistry, digest: str):
        if registry.count_hash_references(digest) == 0:
            self.store.delete(digest)
            structured_logger.log_event("release.blob.released", hash=digest)

    def cancel(self, release_id: int) -> bool:
        """Cancel one release's in-flight download; other downloads are untouched."""
        task = self._tasks.get(release_id)
        if task is None or task.done():
            return False
        task.cancel()
        structured_logger.log_event("release.download.cancel_requested", release_id=release_id)
        return True

    async def wait_idle(self):
        """Wait until every scheduled download has finished."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self):
        """Cancel and reap all downloads (releases end up 'failed')."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            structured_logger.log_event("release.downloads.shutdown", cancelled=len(tasks))
