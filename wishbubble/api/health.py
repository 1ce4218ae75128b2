"""
Health API.

Lightweight liveness check without exposing secrets.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from wishbubble.core.database import check_connection


logger = logging.getLogger("wishbubble")

router = APIRouter(prefix="/api/health", tags=["health"])


class HealthResponse(BaseModel):
    ok: bool
    db: bool
    computed_at: str  # UTC ISO format


@router.get("", response_model=HealthResponse)
def health():
    db_ok = check_connection()
    body = {
        "ok": db_ok,
        "db": db_ok,
        "computed_at": datetime.now(timezone.utc).isoformat(),
    }
    if not db_ok:
        logger.warning("[health] database unreachable")
        return JSONResponse(status_code=503, content=body)
    return body
