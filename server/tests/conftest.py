"""
Pytest configuration and shared fixtures.

The environment is pointed at a throwaway SQLite file and APK directory
before any server module is imported, because models.py binds its engine at
import time. Upstream HTTP (the APK host and the GitHub API) is replaced
with httpx.MockTransport doubles.
"""
import pytest
import os
import sys
import tempfile
import time
from typing import Callable, Dict, List, Optional

import httpx

_TEST_ROOT = tempfile.mkdtemp(prefix="questnav-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_ROOT, 'questnav-test.db')}"
os.environ["APK_STORAGE_DIR"] = os.path.join(_TEST_ROOT, "apks")
os.environ["ADMIN_KEY"] = "test-admin-key-0123456789"
os.environ["GITHUB_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["QUESTNAV_REPO"] = "QuestNav/QuestNav"
os.environ.pop("APP_ENV", None)
os.environ.pop("GITHUB_TOKEN", None)

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient

from models import Base, engine, SessionLocal, ApkRelease, STATUS_COMPLETED, STATUS_FAILED
from main import app, build_download_manager
from apk_fetcher import ApkFetcher
from content_store import ApkContentStore
from observability import metrics
from release_backfill import GitHubReleasesClient

ADMIN_KEY = os.environ["ADMIN_KEY"]
WEBHOOK_SECRET = os.environ["GITHUB_WEBHOOK_SECRET"]
APK_HOST = "https://downloads.example.com"
GITHUB_API = "https://api.github.test"


class FakeApkHost:
    """
    Stand-in for the artifact host behind browser_download_url.

    Routes map a URL to either raw bytes (served with 200) or a handler
    taking the httpx.Request and returning an httpx.Response.
    """

    def __init__(self):
        self.routes: Dict[str, object] = {}
        self.requests: List[httpx.Request] = []

    def serve(self, path: str, body):
        url = path if path.startswith("http") else f"{APK_HOST}{path}"
        self.routes[url] = body
        return url

    def hits(self, url: str) -> int:
        return sum(1 for request in self.requests if str(request.url) == url)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404)
        if isinstance(route, bytes):
            return httpx.Response(200, content=route)
        response = route(request)
        if hasattr(response, "__await__"):
            response = await response
        return response


class FakeGitHubApi:
    """Serves GET /repos/{repo}/releases from an in-memory list."""

    def __init__(self):
        self.releases: List[dict] = []
        self.status_code = 200
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not request.url.path.endswith("/releases"):
            return httpx.Response(404, json={"message": "Not Found"})
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"message": "upstream error"})
        return httpx.Response(200, json=self.releases)


def github_release(tag: str, apk_name: Optional[str] = "questnav.apk", published_at: str = "2024-01-01T00:00:00Z") -> dict:
    """Release object shaped like the GitHub API / webhook payload."""
    assets = [{"name": "source.zip", "browser_download_url": f"{APK_HOST}/{tag}/source.zip", "size": 10}]
    if apk_name:
        assets.append({
            "name": apk_name,
            "browser_download_url": f"{APK_HOST}/{tag}/{apk_name}",
            "size": 1024
        })
    return {
        "tag_name": tag,
        "name": f"QuestNav {tag}",
        "published_at": published_at,
        "html_url": f"https://github.com/QuestNav/QuestNav/releases/tag/{tag}",
        "assets": assets,
    }


@pytest.fixture(autouse=True)
def reset_state():
    """Fresh tables and metrics for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    metrics.reset()
    yield


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(tmp_path) -> ApkContentStore:
    return ApkContentStore(str(tmp_path / "apks"))


@pytest.fixture
def apk_host() -> FakeApkHost:
    return FakeApkHost()


@pytest.fixture
def fetcher(apk_host: FakeApkHost) -> ApkFetcher:
    return ApkFetcher(
        max_size_bytes=1024 * 1024,
        timeout_seconds=5,
        transport=httpx.MockTransport(apk_host.handler),
    )


@pytest.fixture
def github_api() -> FakeGitHubApi:
    return FakeGitHubApi()


@pytest.fixture
def releases_client(github_api: FakeGitHubApi) -> GitHubReleasesClient:
    return GitHubReleasesClient(GITHUB_API, transport=httpx.MockTransport(github_api.handler))


@pytest.fixture
def client(store, fetcher, releases_client):
    """
    TestClient with the app's services swapped for test doubles.

    Used as a context manager so startup/shutdown run and background
    download tasks share one event loop across requests.
    """
    with TestClient(app) as test_client:
        app.state.content_store = store
        app.state.downloads = build_download_manager(store, fetcher)
        app.state.releases_client = releases_client
        yield test_client


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def wait_for_release() -> Callable[..., ApkRelease]:
    """Poll the database until a release leaves pending/downloading."""

    def _wait(release_id: int, timeout: float = 5.0) -> ApkRelease:
        deadline = time.time() + timeout
        while True:
            db = SessionLocal()
            try:
                release = db.get(ApkRelease, release_id)
                if release is not None and release.download_status in (STATUS_COMPLETED, STATUS_FAILED):
                    db.expunge(release)
                    return release
            finally:
                db.close()
            if time.time() > deadline:
                raise AssertionError(f"Release {release_id} did not finish downloading within {timeout}s")
            time.sleep(0.02)

    return _wait
