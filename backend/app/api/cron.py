"""Cron job endpoints - called by system crontab or scheduler."""

from datetime import datetime
import logging

from fastapi import APIRouter, HTTPException, Request, Header

from app.config import get_settings
from app.jobs.cleanup import sweep_stale_pending

router = APIRouter()
logger = logging.getLogger(__name__)
settings = get_settings()


def verify_cron_auth(
    request: Request,
    authorization: str | None = Header(None),
    x_cron_secret: str | None = Header(None),
) -> bool:
    """Verify cron request is authorized."""
    # Allow if no secret configured (dev mode)
    if not settings.cron_secret:
        return True

    if authorization and authorization == f"Bearer {settings.cron_secret}":
        return True

    if x_cron_secret and x_cron_secret == settings.cron_secret:
        return True

    # Allow localhost requests
    forwarded = request.headers.get("x-forwarded-for", "")
    client_host = request.client.host if request.client else ""
    if not forwarded and client_host in ("127.0.0.1", "::1"):
        return True

    return False


@router.get("/sweep-pending")
async def cron_sweep_pending(
    request: Request,
    authorization: str | None = Header(None),
    x_cron_secret: str | None = Header(None),
):
    """
    Clean up stale pending and failed equivalence adjustments.

    The scheduler already runs this every few minutes; this endpoint is for
    manual triggering or external cron:
    */5 * * * * curl -s http://localhost:8000/api/cron/sweep-pending
    """
    if not verify_cron_auth(request, authorization, x_cron_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")

    logger.info("Sweeping stale adjustments (manual trigger)...")

    result = await sweep_stale_pending()
    if "error" in result:
        raise HTTPException(status_code=503, detail=result["error"])

    return {
        "success": True,
        "found": result["found"],
        "cleaned": result["cleaned"],
        "timestamp": datetime.utcnow().isoformat(),
    }
