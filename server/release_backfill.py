#!/usr/bin/env python3
"""
Backfill historical releases from the GitHub releases API.

Design:
- Idempotent: tags already in the registry are skipped, so re-running is safe
- Isolated: one bad release is recorded and the rest keep going
- Optional download: new releases can be chained straight into the same
  download pipeline the webhook uses

Usage:
    python release_backfill.py [--max-releases N] [--auto-download]
"""

import argparse
import asyncio
import sys
from typing import Callable, List, Optional

import httpx
from pydantic import ValidationError
from sqlalchemy.orm import Session

from models import SOURCE_POLL
from observability import structured_logger, metrics
from release_downloads import ReleaseDownloadManager
from release_registry import ReleaseRegistry, DuplicateReleaseError
from schemas import BackfillResult, BackfillStats, BackfillStatus, GitHubRelease, ReleaseOutcome
from webhook_service import find_apk_asset

MIN_RELEASES = 1
MAX_RELEASES = 100
DEFAULT_MAX_RELEASES = 30
USER_AGENT = "QuestNav-Config-Tool"


class ReleaseSourceError(Exception):
    """The upstream release listing could not be retrieved"""
    pass


class GitHubReleasesClient:
    """Minimal client for GET /repos/{repo}/releases."""

    def __init__(
        self,
        api_url: str = "https://api.github.com",
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/vnd.github.v3+json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def list_releases(self, repo: str, per_page: int = DEFAULT_MAX_RELEASES) -> List[dict]:
        """
        Fetch one page of releases, newest first as GitHub returns them.

        Returns raw release objects; callers validate them one at a time so a
        single malformed entry does not sink the whole page.

        Raises:
            ReleaseSourceError: Network failure, non-200 status or unexpected body
        """
        url = f"{self.api_url}/repos/{repo}/releases"
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                headers=self._headers(),
                timeout=self.timeout,
                follow_redirects=True,
            ) as client:
                response = await client.get(url, params={"per_page": per_page})
        except httpx.HTTPError as e:
            raise ReleaseSourceError(f"GitHub API request failed: {str(e) or type(e).__name__}") from e

        if response.status_code != 200:
            if response.status_code in (403, 429) and response.headers.get("x-ratelimit-remaining") == "0":
                raise ReleaseSourceError(f"GitHub API rate limit exceeded ({response.status_code})")
            raise ReleaseSourceError(f"GitHub API error: {response.status_code} {response.reason_phrase}")

        try:
            body = response.json()
        except ValueError as e:
            raise ReleaseSourceError(f"GitHub API returned invalid JSON: {e}") from e

        if not isinstance(body, list):
            raise ReleaseSourceError("GitHub API returned an unexpected response shape")
        return body


def _release_tag_of(raw) -> str:
    if isinstance(raw, dict) and raw.get("tag_name"):
        return str(raw["tag_name"])
    return "<unknown>"


class ReleaseBackfiller:
    """Reconciles the registry against the upstream release list."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        downloads: ReleaseDownloadManager,
        client: GitHubReleasesClient,
        repo: str,
    ):
        self._session_factory = session_factory
        self.downloads = downloads
        self.client = client
        self.repo = repo

    async def backfill(self, max_releases: int = DEFAULT_MAX_RELEASES, auto_download: bool = False) -> BackfillResult:
        """
        Register releases the registry does not know about yet.

        Returns:
            BackfillResult with success=False only if the upstream listing failed

        Raises:
            ValueError: If max_releases is outside 1-100
        """
        if not isinstance(max_releases, int) or not MIN_RELEASES <= max_releases <= MAX_RELEASES:
            raise ValueError(f"maxReleases must be between {MIN_RELEASES} and {MAX_RELEASES}")

        structured_logger.log_event(
            "backfill.started",
            repo=self.repo,
            max_releases=max_releases,
            auto_download=auto_download
        )

        try:
            raw_releases = await self.client.list_releases(self.repo, per_page=max_releases)
        except ReleaseSourceError as e:
            structured_logger.log_event("backfill.failed", level="ERROR", repo=self.repo, error=str(e))
            metrics.inc_counter("backfill_runs_total", {"status": "error"})
            return BackfillResult(success=False, message=f"Backfill failed: {e}")

        # per_page is a request, not a guarantee
        raw_releases = raw_releases[:max_releases]

        stats = BackfillStats(total=len(raw_releases))
        outcomes: List[ReleaseOutcome] = []

        db = self._session_factory()
        try:
            registry = ReleaseRegistry(db)
            for raw in raw_releases:
                outcome = await self._process_one(registry, raw, auto_download)
                outcomes.append(outcome)
                if outcome.status == "added":
                    stats.added += 1
                elif outcome.status == "skipped":
                    stats.skipped += 1
                else:
                    stats.failed += 1
        finally:
            db.close()

        message = f"Backfill completed: {stats.added} added, {stats.skipped} skipped, {stats.failed} failed"
        structured_logger.log_event(
            "backfill.completed",
            repo=self.repo,
            total=stats.total,
            added=stats.added,
            skipped=stats.skipped,
            failed=stats.failed
        )
        metrics.inc_counter("backfill_runs_total", {"status": "success"})
        metrics.inc_counter("backfill_releases_added_total", value=stats.added)

        return BackfillResult(success=True, message=message, stats=stats, releases=outcomes)

    async def _process_one(self, registry: ReleaseRegistry, raw, auto_download: bool) -> ReleaseOutcome:
        tag = _release_tag_of(raw)
        try:
            release = GitHubRelease.model_validate(raw)

            if registry.exists(release.tag_name):
                return ReleaseOutcome(tag=tag, status="skipped", reason="Already exists")

            apk_asset = find_apk_asset(release.assets)
            if apk_asset is None:
                return ReleaseOutcome(tag=tag, status="skipped", reason="No APK asset found")

            try:
                new_release = registry.create(
                    release_tag=release.tag_name,
                    release_name=release.name or release.tag_name,
                    apk_name=apk_asset.name,
                    apk_url=apk_asset.browser_download_url,
                    published_at=release.published_at,
                    source=SOURCE_POLL,
                )
            except DuplicateReleaseError:
                # A webhook registered it between exists() and create()
                return ReleaseOutcome(tag=tag, status="skipped", reason="Already exists")

            structured_logger.log_event("backfill.release.added", release_id=new_release.id, release_tag=tag)
            outcome = ReleaseOutcome(tag=tag, status="added", release_id=new_release.id)
        except ValidationError as e:
            registry.db.rollback()
            return self._failed(tag, f"Malformed release: {e.error_count()} validation error(s)")
        except Exception as e:
            registry.db.rollback()
            return self._failed(tag, str(e) or type(e).__name__)

        if auto_download:
            try:
                await self.downloads.trigger_download(new_release.id)
                outcome.download_started = True
            except Exception as e:
                # The release is registered; the download can be retried manually
                outcome.reason = f"Download not started: {e}"
                structured_logger.log_event(
                    "backfill.release.download_not_started",
                    level="WARN",
                    release_id=new_release.id,
                    release_tag=tag,
                    error=str(e)
                )
        return outcome

    def _failed(self, tag: str, reason: str) -> ReleaseOutcome:
        structured_logger.log_event("backfill.release.failed", level="ERROR", release_tag=tag, error=reason)
        return ReleaseOutcome(tag=tag, status="failed", reason=reason)

    def status(self) -> BackfillStatus:
        db = self._session_factory()
        try:
            counts = ReleaseRegistry(db).status_counts()
        finally:
            db.close()
        return BackfillStatus(
            has_releases=counts["total"] > 0,
            release_count=counts["total"],
            completed_count=counts["completed"],
        )


async def _run_cli(max_releases: int, auto_download: bool) -> BackfillResult:
    from apk_fetcher import ApkFetcher
    from config import config
    from content_store import ApkContentStore
    from models import SessionLocal, init_db

    init_db()
    downloads = ReleaseDownloadManager(
        SessionLocal,
        ApkContentStore(config.get_apk_storage_dir()),
        ApkFetcher(
            max_size_bytes=config.get_max_apk_size_bytes(),
            timeout_seconds=config.get_fetch_timeout_seconds(),
        ),
        max_concurrent=config.get_max_concurrent_downloads(),
    )
    backfiller = ReleaseBackfiller(
        SessionLocal,
        downloads,
        GitHubReleasesClient(config.get_github_api_url(), config.get_github_token()),
        config.get_expected_repo(),
    )

    result = await backfiller.backfill(max_releases=max_releases, auto_download=auto_download)
    if auto_download and result.success:
        print(f"⏳ Waiting for {len(downloads.active_downloads())} download(s)...")
        await downloads.wait_idle()
    return result


def main():
    parser = argparse.ArgumentParser(description='Backfill APK releases from GitHub')
    parser.add_argument('--max-releases', type=int, default=DEFAULT_MAX_RELEASES,
                        help=f'Releases to fetch, {MIN_RELEASES}-{MAX_RELEASES} (default: {DEFAULT_MAX_RELEASES})')
    parser.add_argument('--auto-download', action='store_true', help='Download APKs for newly added releases')

    args = parser.parse_args()

    if not MIN_RELEASES <= args.max_releases <= MAX_RELEASES:
        print(f"❌ Error: --max-releases must be between {MIN_RELEASES} and {MAX_RELEASES}")
        sys.exit(1)

    result = asyncio.run(_run_cli(args.max_releases, args.auto_download))

    if not result.success:
        print(f"❌ {result.message}")
        sys.exit(1)

    print(f"✅ {result.message}")
    for outcome in result.releases or []:
        marker = {"added": "+", "skipped": "-", "failed": "✗"}[outcome.status]
        line = f"   {marker} {outcome.tag}"
        if outcome.reason:
            line += f" ({outcome.reason})"
        print(line)
    sys.exit(0 if result.stats.failed == 0 else 2)

if __name__ == "__main__":
    main()
