import hmac
from typing import Optional

from fastapi import HTTPException, Header, Request

from config import config
from observability import structured_logger, metrics

# Used only outside production when ADMIN_KEY is unset
DEV_ADMIN_KEY = "admin"


def _expected_admin_key() -> Optional[str]:
    admin_key = config.get_admin_key()
    if admin_key:
        return admin_key
    if config.is_production:
        return None
    return DEV_ADMIN_KEY


def verify_admin_key(admin_key: str) -> bool:
    """Constant-time comparison against the configured admin key"""
    expected_key = _expected_admin_key()
    if not expected_key or not admin_key:
        return False
    return hmac.compare_digest(admin_key.encode("utf-8"), expected_key.encode("utf-8"))


async def require_admin_key(
    request: Request,
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
):
    """
    FastAPI dependency guarding operator routes.

    Raises:
        HTTPException 503: No admin key configured in production
        HTTPException 401: Missing or wrong X-Admin-Key
    """
    if _expected_admin_key() is None:
        raise HTTPException(status_code=503, detail="Admin API disabled: ADMIN_KEY not configured")

    if not verify_admin_key(x_admin_key or ""):
        structured_logger.log_event(
            "auth.admin_key.rejected",
            level="WARN",
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
            header_present=bool(x_admin_key)
        )
        metrics.inc_counter("admin_auth_failures_total")
        raise HTTPException(status_code=401, detail="Invalid or missing admin key")

    return {"admin_key_verified": True}
