from fastapi import FastAPI, Depends, HTTPException, Header, Request, Response
from fastapi.responses import FileResponse, JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy import text
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse
import asyncio
import os
import time
import uuid

from models import ApkRelease, SOURCE_MANUAL, get_db, init_db, SessionLocal
from schemas import (
    ApkReleaseOut, ManualReleaseRequest, BackfillRequest, WebhookTestRequest, ReleaseWebhook,
    CacheApkRequest
)
from auth import require_admin_key
from apk_fetcher import ApkFetcher, FetchError
from content_store import ApkContentStore, StoreError, is_valid_digest
from config import config
from observability import structured_logger, metrics, request_id_var
from release_backfill import GitHubReleasesClient, ReleaseBackfiller
from release_downloads import ReleaseDownloadManager
from release_registry import (
    ReleaseRegistry, DuplicateReleaseError, ReleaseNotFoundError, DownloadInProgressError
)
from webhook_service import (
    WebhookResult, verify_github_signature, process_release_webhook, build_test_delivery
)

APK_MEDIA_TYPE = "application/vnd.android.package-archive"

app = FastAPI(title="QuestNav Config Server")

# Track backend startup time at module level (before startup_event uses it)
backend_start_time = datetime.now(timezone.utc)

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Middleware to generate/extract request_id for correlation across logs.
    Also tracks HTTP request metrics.
    """
    req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(req_id)

    start_time = time.time()

    response = await call_next(request)

    latency_ms = (time.time() - start_time) * 1000

    # Templated path keeps label cardinality bounded (/apks/{digest}, not one label per hash)
    matched_route = request.scope.get("route")
    route = getattr(matched_route, "path", None) or "unmatched"

    metrics.inc_counter("http_requests_total", {
        "route": route,
        "method": request.method,
        "status_code": str(response.status_code)
    })

    metrics.observe_histogram("http_request_latency_ms", latency_ms, {
        "route": route
    })

    response.headers["X-Request-ID"] = req_id

    return response

@app.middleware("http")
async def exception_guard_middleware(request: Request, call_next):
    """
    Global exception handler middleware to prevent process crashes.

    Catches all unhandled exceptions in routes and returns proper 500 responses
    instead of crashing the backend process.
    """
    try:
        return await call_next(request)
    except Exception as e:
        structured_logger.log_event(
            "http.unhandled_exception",
            level="ERROR",
            path=request.url.path,
            method=request.method,
            error=str(e),
            error_type=type(e).__name__
        )

        # Return 500 without exposing internal details to client
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later."
            }
        )

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"

    if config.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    structured_logger.log_event(
        "validation.error",
        level="WARN",
        path=request.url.path,
        method=request.method,
        errors=exc.errors()
    )

    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors()}
    )

def build_download_manager(store: ApkContentStore, fetcher: Optional[ApkFetcher] = None) -> ReleaseDownloadManager:
    if fetcher is None:
        fetcher = ApkFetcher(
            max_size_bytes=config.get_max_apk_size_bytes(),
            timeout_seconds=config.get_fetch_timeout_seconds(),
        )
    return ReleaseDownloadManager(
        SessionLocal,
        store,
        fetcher,
        max_concurrent=config.get_max_concurrent_downloads(),
    )

@app.on_event("startup")
async def startup_event():
    print("=" * 60)
    print("🚀 Starting QuestNav Config Server...")
    print(f"⏰ Startup time: {backend_start_time.isoformat()}")
    print("=" * 60)

    config.print_config_summary()

    try:
        init_db()
        print("✅ Database initialized")
    except Exception as e:
        print(f"⚠️  Database initialization warning: {e}")
        print("⚠️  Attempting to continue with existing database...")

    db = SessionLocal()
    try:
        interrupted = ReleaseRegistry(db).reconcile_interrupted_downloads()
        if interrupted:
            print(f"⚠️  Marked {interrupted} interrupted download(s) as failed")
    except Exception as e:
        structured_logger.log_event(
            "startup.reconcile.failed",
            level="ERROR",
            error=str(e),
            error_type=type(e).__name__
        )
    finally:
        db.close()

    store = ApkContentStore(config.get_apk_storage_dir())
    app.state.content_store = store
    app.state.downloads = build_download_manager(store)
    app.state.releases_client = GitHubReleasesClient(config.get_github_api_url(), config.get_github_token())

    structured_logger.log_event(
        "startup.completed",
        repo=config.get_expected_repo(),
        storage_dir=str(store.root)
    )
    print("=" * 60)
    print("✅ QuestNav Config Server started successfully!")
    print(f"🏥 Health check available at: /healthz")
    print("=" * 60)

@app.on_event("shutdown")
async def shutdown_event():
    downloads = getattr(app.state, "downloads", None)
    if downloads is not None:
        await downloads.shutdown()

def get_content_store(request: Request) -> ApkContentStore:
    return request.app.state.content_store

def get_download_manager(request: Request) -> ReleaseDownloadManager:
    return request.app.state.downloads

def get_backfiller(
    request: Request,
    downloads: ReleaseDownloadManager = Depends(get_download_manager)
) -> ReleaseBackfiller:
    return ReleaseBackfiller(
        SessionLocal,
        downloads,
        request.app.state.releases_client,
        config.get_expected_repo(),
    )

def _release_out(release: Optional[ApkRelease]) -> Optional[dict]:
    if release is None:
        return None
    return ApkReleaseOut.model_validate(release).model_dump(mode="json")

def _require_http_url(url: str):
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise HTTPException(status_code=400, detail="apk_url must be an absolute http(s) URL")

# --- Health & metrics ---

@app.get("/healthz")
async def health_check():
    """
    Liveness check - returns 200 if process is alive.
    Does not check dependencies (use /readyz for that).
    """
    uptime_seconds = (datetime.now(timezone.utc) - backend_start_time).total_seconds()
    return {
        "status": "healthy",
        "uptime_seconds": int(uptime_seconds),
        "uptime_formatted": f"{int(uptime_seconds // 3600)}h {int((uptime_seconds % 3600) // 60)}m",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

@app.get("/readyz")
async def readiness_check(request: Request):
    """
    Readiness check - verifies the database and the APK store.
    Returns 200 if ready, 503 if not ready.
    """
    checks = {
        "database": False,
        "storage": False,
        "overall": False
    }
    errors = []

    try:
        db = SessionLocal()
        try:
            result = db.execute(text("SELECT 1")).scalar()
            checks["database"] = (result == 1)
        finally:
            db.close()
    except Exception as e:
        errors.append(f"database: {str(e)[:100]}")

    store = getattr(request.app.state, "content_store", None)
    if store is None:
        errors.append("storage: not initialized")
    elif not (store.root.is_dir() and os.access(store.root, os.W_OK)):
        errors.append(f"storage: {store.root} is not a writable directory")
    else:
        checks["storage"] = True

    checks["overall"] = checks["database"] and checks["storage"]

    return JSONResponse(
        status_code=200 if checks["overall"] else 503,
        content={
            "ready": checks["overall"],
            "checks": checks,
            "errors": errors if errors else None,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )

@app.get("/metrics")
async def prometheus_metrics(
    downloads: ReleaseDownloadManager = Depends(get_download_manager),
    _: dict = Depends(require_admin_key)
):
    """Prometheus-compatible metrics endpoint (requires admin authentication)"""
    structured_logger.log_event("metrics.scrape")

    metrics.set_gauge("release_downloads_active", len(downloads.active_downloads()))

    return Response(
        content=metrics.get_prometheus_text(),
        media_type="text/plain; version=0.0.4"
    )

# --- GitHub webhook ---

@app.get("/webhooks/github")
async def github_webhook_status():
    return {
        "status": "ready",
        "repository": config.get_expected_repo(),
        "secret_configured": bool(config.get_webhook_secret())
    }

@app.post("/webhooks/github")
async def github_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
    x_github_event: Optional[str] = Header(None, alias="X-GitHub-Event"),
    x_github_delivery: Optional[str] = Header(None, alias="X-GitHub-Delivery"),
    db: Session = Depends(get_db),
    downloads: ReleaseDownloadManager = Depends(get_download_manager)
):
    """
    Receive GitHub release deliveries.

    The signature is checked over the raw body before anything is parsed.
    Every verified delivery is answered with 200 and {accepted, message, releaseId}
    so GitHub does not retry deliveries we chose to ignore.
    """
    secret = config.get_webhook_secret()
    if not secret:
        structured_logger.log_event("webhook.refused.no_secret", level="ERROR", delivery_id=x_github_delivery)
        raise HTTPException(status_code=503, detail="Webhook secret not configured")

    body = await request.body()

    if not verify_github_signature(body, x_hub_signature_256, secret):
        structured_logger.log_event(
            "webhook.signature.invalid",
            level="WARN",
            delivery_id=x_github_delivery,
            header_present=bool(x_hub_signature_256),
            client_ip=request.client.host if request.client else None
        )
        metrics.inc_counter("webhook_deliveries_total", {"outcome": "bad_signature"})
        raise HTTPException(status_code=401, detail="Invalid signature")

    if x_github_event == "ping":
        return WebhookResult(True, "pong").to_dict()

    if x_github_event and x_github_event != "release":
        metrics.inc_counter("webhook_deliveries_total", {"outcome": "ignored_event"})
        return WebhookResult(False, f"Ignored event: {x_github_event}").to_dict()

    try:
        delivery = ReleaseWebhook.model_validate_json(body)
    except ValidationError as e:
        structured_logger.log_event(
            "webhook.payload.invalid",
            level="WARN",
            delivery_id=x_github_delivery,
            error_count=e.error_count()
        )
        metrics.inc_counter("webhook_deliveries_total", {"outcome": "malformed"})
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    structured_logger.log_event(
        "webhook.release.received",
        delivery_id=x_github_delivery,
        action=delivery.action,
        release_tag=delivery.release.tag_name,
        repository=delivery.repository.full_name
    )

    result = await process_release_webhook(delivery, db, downloads, config.get_expected_repo())
    return result.to_dict()

@app.post("/webhooks/github/test")
async def github_webhook_test(
    payload: WebhookTestRequest,
    db: Session = Depends(get_db),
    downloads: ReleaseDownloadManager = Depends(get_download_manager)
):
    """Push a synthetic 'published' delivery through the pipeline (development only)."""
    if config.is_production:
        raise HTTPException(status_code=404, detail="Not found")

    repo = config.get_expected_repo()
    delivery = build_test_delivery(payload.tag_name, payload.apk_url, payload.apk_name, repo)
    structured_logger.log_event("webhook.test.received", release_tag=payload.tag_name)

    result = await process_release_webhook(delivery, db, downloads, repo)
    return result.to_dict()

# --- Release administration ---

@app.get("/admin/apk-releases")
async def list_releases(
    db: Session = Depends(get_db),
    _: dict = Depends(require_admin_key)
):
    releases = ReleaseRegistry(db).get_all()
    return {
        "releases": [_release_out(r) for r in releases],
        "count": len(releases)
    }

@app.get("/admin/apk-releases/latest")
async def admin_latest_release(
    db: Session = Depends(get_db),
    _: dict = Depends(require_admin_key)
):
    return _release_out(ReleaseRegistry(db).get_latest_completed())

@app.post("/admin/apk-releases", status_code=201)
async def register_manual_release(
    payload: ManualReleaseRequest,
    db: Session = Depends(get_db),
    downloads: ReleaseDownloadManager = Depends(get_download_manager),
    _: dict = Depends(require_admin_key)
):
    """Register a release by hand and start downloading its APK."""
    _require_http_url(payload.apk_url)

    registry = ReleaseRegistry(db)
    if registry.exists(payload.release_tag):
        raise HTTPException(status_code=409, detail=f"Release with tag {payload.release_tag} already exists")

    try:
        release = registry.create(
            release_tag=payload.release_tag,
            release_name=payload.release_name,
            apk_name=payload.apk_name,
            apk_url=payload.apk_url,
            source=SOURCE_MANUAL,
        )
    except DuplicateReleaseError as e:
        raise HTTPException(status_code=409, detail=str(e))

    release = await downloads.trigger_download(release.id)
    return _release_out(release)

@app.post("/admin/apk-releases/backfill")
async def run_backfill(
    payload: Optional[BackfillRequest] = None,
    backfiller: ReleaseBackfiller = Depends(get_backfiller),
    _: dict = Depends(require_admin_key)
):
    payload = payload or BackfillRequest()
    try:
        result = await backfiller.backfill(
            max_releases=payload.max_releases,
            auto_download=payload.auto_download
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.success:
        raise HTTPException(status_code=502, detail=result.message)
    return result

@app.get("/admin/apk-releases/backfill/status")
@app.get("/admin/apk-releases/backfill-status")
async def backfill_status(
    backfiller: ReleaseBackfiller = Depends(get_backfiller),
    _: dict = Depends(require_admin_key)
):
    return backfiller.status()

@app.post("/admin/apk-releases/{release_id}/download")
async def trigger_release_download(
    release_id: int,
    downloads: ReleaseDownloadManager = Depends(get_download_manager),
    _: dict = Depends(require_admin_key)
):
    try:
        release = await downloads.trigger_download(release_id)
    except ReleaseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DownloadInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "success": True,
        "message": "Download started",
        "release": _release_out(release)
    }

@app.post("/admin/apk-releases/{release_id}/cancel")
async def cancel_release_download(
    release_id: int,
    db: Session = Depends(get_db),
    downloads: ReleaseDownloadManager = Depends(get_download_manager),
    _: dict = Depends(require_admin_key)
):
    if ReleaseRegistry(db).get_by_id(release_id) is None:
        raise HTTPException(status_code=404, detail="Release not found")

    if not downloads.cancel(release_id):
        raise HTTPException(status_code=409, detail="No download in progress")

    return {"success": True, "message": "Download cancellation requested"}

@app.delete("/admin/apk-releases/{release_id}")
async def delete_release(
    release_id: int,
    db: Session = Depends(get_db),
    store: ApkContentStore = Depends(get_content_store),
    downloads: ReleaseDownloadManager = Depends(get_download_manager),
    _: dict = Depends(require_admin_key)
):
    """Delete a release; its cached APK goes too unless another release shares it."""
    registry = ReleaseRegistry(db)
    release = registry.get_by_id(release_id)
    if release is None:
        raise HTTPException(status_code=404, detail="Release not found")

    release_tag = release.release_tag
    apk_hash = release.apk_hash

    downloads.cancel(release_id)
    registry.delete(release_id)

    blob_deleted = False
    if apk_hash and registry.count_hash_references(apk_hash) == 0:
        try:
            blob_deleted = store.delete(apk_hash)
        except StoreError as e:
            # The record is gone either way; an orphan blob is harmless
            structured_logger.log_event(
                "release.blob.delete_failed",
                level="ERROR",
                release_id=release_id,
                hash=apk_hash,
                error=str(e)
            )

    structured_logger.log_event(
        "release.deleted",
        release_id=release_id,
        release_tag=release_tag,
        hash=apk_hash,
        blob_deleted=blob_deleted
    )
    return {"success": True, "deleted_id": release_id, "blob_deleted": blob_deleted}

# --- APK cache ---

@app.get("/admin/apk-cache")
async def list_apk_cache(
    db: Session = Depends(get_db),
    store: ApkContentStore = Depends(get_content_store),
    _: dict = Depends(require_admin_key)
):
    blobs = store.list()
    tags_by_hash = {}
    for apk_hash, release_tag in db.query(ApkRelease.apk_hash, ApkRelease.release_tag).filter(
        ApkRelease.apk_hash.isnot(None)
    ).all():
        tags_by_hash.setdefault(apk_hash, []).append(release_tag)

    for blob in blobs:
        blob["releases"] = sorted(tags_by_hash.get(blob["hash"], []))

    return {
        "apks": blobs,
        "count": len(blobs),
        "total_size": sum(blob["size"] for blob in blobs)
    }

@app.post("/admin/apk-cache")
async def cache_apk(
    payload: CacheApkRequest,
    store: ApkContentStore = Depends(get_content_store),
    downloads: ReleaseDownloadManager = Depends(get_download_manager),
    _: dict = Depends(require_admin_key)
):
    """
    Fetch an APK by URL straight into the cache, without a release record.

    Used for APKs referenced by profile install commands. Returns {hash, size};
    502 if the upstream fetch fails, 500 if the store cannot write.
    """
    _require_http_url(payload.apk_url)

    try:
        data = await downloads.fetcher.fetch(payload.apk_url)
    except FetchError as e:
        structured_logger.log_event(
            "apk.cache.fetch_failed",
            level="WARN",
            url=payload.apk_url,
            error=str(e),
            error_type=type(e).__name__
        )
        metrics.inc_counter("apk_cache_requests_total", {"result": "fetch_failed"})
        raise HTTPException(status_code=502, detail=f"Failed to fetch APK: {e}")

    try:
        digest = await asyncio.to_thread(store.put, data, payload.apk_url, payload.apk_name)
    except StoreError as e:
        metrics.inc_counter("apk_cache_requests_total", {"result": "store_failed"})
        raise HTTPException(status_code=500, detail=str(e))

    structured_logger.log_event("apk.cache.stored", hash=digest, size=len(data), name=payload.apk_name)
    metrics.inc_counter("apk_cache_requests_total", {"result": "cached"})
    return {"hash": digest, "size": len(data)}

@app.post("/admin/apk-cache/{apk_hash}/verify")
async def verify_cached_apk(
    apk_hash: str,
    store: ApkContentStore = Depends(get_content_store),
    _: dict = Depends(require_admin_key)
):
    if not is_valid_digest(apk_hash):
        raise HTTPException(status_code=400, detail="Invalid hash format")
    if store.get(apk_hash) is None:
        raise HTTPException(status_code=404, detail="APK not found")

    valid = await asyncio.to_thread(store.verify, apk_hash)
    return {"hash": apk_hash.lower(), "valid": valid}

# --- Device side ---

@app.get("/v1/apk-releases/latest")
async def latest_release(db: Session = Depends(get_db)):
    release = ReleaseRegistry(db).get_latest_completed()
    if release is None:
        raise HTTPException(status_code=404, detail="No completed release available")

    body = _release_out(release)
    body["download_url"] = f"/apks/{release.apk_hash}"
    return body

@app.get("/apks/{apk_hash}")
async def serve_apk(
    apk_hash: str,
    store: ApkContentStore = Depends(get_content_store)
):
    """Serve cached APK bytes by digest, re-verifying them first."""
    if not is_valid_digest(apk_hash):
        raise HTTPException(status_code=400, detail="Invalid hash format")

    path = store.get(apk_hash)
    if path is None:
        metrics.inc_counter("apk_serve_total", {"result": "not_found"})
        raise HTTPException(status_code=404, detail="APK not found")

    if not await asyncio.to_thread(store.verify, apk_hash):
        structured_logger.log_event("apk.serve.integrity_failed", level="ERROR", hash=apk_hash)
        metrics.inc_counter("apk_serve_total", {"result": "integrity_failed"})
        raise HTTPException(status_code=500, detail="APK integrity check failed")

    meta = store.read_metadata(apk_hash) or {}
    filename = meta.get("name") or f"{apk_hash.lower()}.apk"

    metrics.inc_counter("apk_serve_total", {"result": "served"})
    return FileResponse(
        path,
        media_type=APK_MEDIA_TYPE,
        filename=filename,
        headers={
            "X-APK-SHA256": apk_hash.lower(),
            "Cache-Control": "public, max-age=31536000, immutable"
        }
    )
