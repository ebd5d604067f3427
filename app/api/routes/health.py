from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response
import redis
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.services.mpesa.client import MpesaConfig


router = APIRouter()


@router.get("/health")
@router.get("/api/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """Readiness probe - 503 if the database or Redis is unavailable.
    Missing M-Pesa credentials are reported but do not fail the probe.
    """
    mpesa_missing = MpesaConfig.from_settings().missing_fields()
    try:
        db.execute(text("SELECT 1"))
        redis.Redis.from_url(settings.redis_url, decode_responses=True).ping()
    except Exception as e:
        response.status_code = 503
        return {"status": "not_ready", "error": str(e)}
    return {"status": "ready", "mpesa_configured": not mpesa_missing}
