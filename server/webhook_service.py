import hmac
import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Iterable

from sqlalchemy.orm import Session

from models import SOURCE_WEBHOOK
from observability import structured_logger, metrics
from release_downloads import ReleaseDownloadManager
from release_registry import ReleaseRegistry, DuplicateReleaseError
from schemas import GitHubAsset, GitHubRelease, GitHubRepository, ReleaseWebhook

APK_EXTENSION = ".apk"
PROCESSED_ACTIONS = {"published", "released"}

_SIGNATURE_RE = re.compile(r"^sha256=([a-fA-F0-9]{64})$")


@dataclass
class WebhookResult:
    accepted: bool
    message: str
    release_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {"accepted": self.accepted, "message": self.message, "releaseId": self.release_id}


def compute_github_signature(payload: bytes, secret: str) -> str:
    """
    Compute the X-Hub-Signature-256 header value for a payload.

    Returns:
        Header value in the form "sha256=<hex>"
    """
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_github_signature(payload: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify a GitHub webhook signature over the raw request body.

    Args:
        payload: Raw body bytes exactly as received
        signature_header: Value of X-Hub-Signature-256 ("sha256=<hex>")
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature_header or not secret:
        return False

    match = _SIGNATURE_RE.match(signature_header.strip())
    if not match:
        return False

    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, match.group(1).lower())


def find_apk_asset(assets: Iterable[GitHubAsset]) -> Optional[GitHubAsset]:
    """First asset whose file name ends in .apk"""
    for asset in assets:
        if asset.name.lower().endswith(APK_EXTENSION):
            return asset
    return None


async def process_release_webhook(
    delivery: ReleaseWebhook,
    db: Session,
    downloads: ReleaseDownloadManager,
    expected_repo: str,
) -> WebhookResult:
    """
    Register the release described by a verified webhook delivery and start
    downloading its APK in the background.

    Deliveries may arrive more than once; a tag we already track is
    acknowledged without writing anything.
    """
    release = delivery.release

    if delivery.action not in PROCESSED_ACTIONS:
        metrics.inc_counter("webhook_deliveries_total", {"outcome": "ignored_action"})
        return WebhookResult(False, f"Ignored action: {delivery.action}")

    if delivery.repository.full_name != expected_repo:
        structured_logger.log_event(
            "webhook.release.wrong_repository",
            level="WARN",
            repository=delivery.repository.full_name,
            expected=expected_repo,
            release_tag=release.tag_name
        )
        metrics.inc_counter("webhook_deliveries_total", {"outcome": "ignored_repository"})
        return WebhookResult(
            False,
            f"Ignored: Not from expected repository (got {delivery.repository.full_name}, expected {expected_repo})"
        )

    registry = ReleaseRegistry(db)
    if registry.exists(release.tag_name):
        structured_logger.log_event("webhook.release.duplicate", release_tag=release.tag_name)
        metrics.inc_counter("webhook_deliveries_total", {"outcome": "duplicate"})
        return WebhookResult(True, f"Release {release.tag_name} already exists")

    apk_asset = find_apk_asset(release.assets)
    if apk_asset is None:
        structured_logger.log_event(
            "webhook.release.no_apk",
            level="WARN",
            release_tag=release.tag_name,
            assets=[asset.name for asset in release.assets]
        )
        metrics.inc_counter("webhook_deliveries_total", {"outcome": "rejected"})
        return WebhookResult(False, "No APK file found in release assets")

    try:
        new_release = registry.create(
            release_tag=release.tag_name,
            release_name=release.name or release.tag_name,
            apk_name=apk_asset.name,
            apk_url=apk_asset.browser_download_url,
            published_at=release.published_at,
            source=SOURCE_WEBHOOK,
        )
    except DuplicateReleaseError:
        # Concurrent redelivery won the insert
        metrics.inc_counter("webhook_deliveries_total", {"outcome": "duplicate"})
        return WebhookResult(True, f"Release {release.tag_name} already exists")

    structured_logger.log_event(
        "webhook.release.registered",
        release_id=new_release.id,
        release_tag=release.tag_name,
        apk_name=apk_asset.name,
        declared_size=apk_asset.size
    )
    metrics.inc_counter("webhook_deliveries_total", {"outcome": "registered"})

    # Returns as soon as the task is scheduled
    await downloads.trigger_download(new_release.id)

    return WebhookResult(
        True,
        f"Release {release.tag_name} registered, download initiated",
        new_release.id
    )


def build_test_delivery(tag_name: str, apk_url: str, apk_name: str, repo: str) -> ReleaseWebhook:
    """Synthetic 'published' delivery for exercising the pipeline without GitHub."""
    return ReleaseWebhook(
        action="published",
        release=GitHubRelease(
            tag_name=tag_name,
            name=tag_name,
            published_at=datetime.now(timezone.utc),
            html_url=f"https://github.com/{repo}/releases/tag/{tag_name}",
            assets=[GitHubAsset(name=apk_name, browser_download_url=apk_url, size=0)],
        ),
        repository=GitHubRepository(full_name=repo),
    )
