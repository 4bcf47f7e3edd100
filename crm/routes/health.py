# crm/routes/health.py
from __future__ import annotations

import time
from typing import Dict

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crm import __version__
from crm.core.config import settings
from crm.core.logging import get_structlog_logger
from crm.db.session import get_session
from crm.utils.time import utcnow

logger = get_structlog_logger(__name__)

router = APIRouter(tags=["health"])

_started = time.monotonic()


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    environment: str
    version: str
    timestamp: str
    uptime: float
    checks: Dict[str, Dict[str, str]]


async def check_database(session: AsyncSession) -> Dict[str, str]:
    start = time.perf_counter()
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return {"status": "unhealthy", "error": str(e)}
    return {
        "status": "healthy",
        "response_time_ms": f"{(time.perf_counter() - start) * 1000:.2f}",
    }


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(session: AsyncSession = Depends(get_session)):
    checks = {"database": await check_database(session)}
    healthy = all(c["status"] == "healthy" for c in checks.values())

    body = HealthCheckResponse(
        status="healthy" if healthy else "unhealthy",
        service="crm_api",
        environment=settings.environment,
        version=__version__,
        timestamp=utcnow().isoformat(),
        uptime=round(time.monotonic() - _started, 2),
        checks=checks,
    )
    if not healthy:
        logger.warning("health.check", status=body.status, checks=checks)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(),
        )
    return body


@router.get("/health/live")
async def liveness_probe():
    return {"status": "alive", "timestamp": utcnow().isoformat()}
