"""
Status Routes - Health check for the API and its integrations.

Public endpoint (no auth). The database is probed; optional integrations
are reported as configured or not, without calling them.
"""

import time
from datetime import UTC, datetime
from enum import Enum

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from chatbot.config import Settings, get_settings
from chatbot.db.session import get_db

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

DEGRADED_LATENCY_THRESHOLD = 1000  # ms


class StatusLevel(str, Enum):
    """Status levels for health checks."""

    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class DatabaseStatus(BaseModel):
    status: StatusLevel
    latency_ms: int | None = None
    message: str | None = None


class HealthResponse(BaseModel):
    """Response for /health."""

    service: str
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    database: DatabaseStatus
    integrations: dict[str, bool]


async def check_database(db: AsyncSession) -> DatabaseStatus:
    start = time.perf_counter()
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("database_health_check_failed", error=str(exc))
        return DatabaseStatus(status=StatusLevel.OUTAGE, message="Connection failed")

    latency_ms = int((time.perf_counter() - start) * 1000)
    if latency_ms > DEGRADED_LATENCY_THRESHOLD:
        return DatabaseStatus(
            status=StatusLevel.DEGRADED, latency_ms=latency_ms, message="High latency"
        )
    return DatabaseStatus(status=StatusLevel.OPERATIONAL, latency_ms=latency_ms)


@router.get("/health", response_model=HealthResponse)
async def health(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> HealthResponse:
    database = await check_database(db)
    return HealthResponse(
        service=settings.service_name,
        status=database.status,
        timestamp=datetime.now(UTC).isoformat(),
        version=settings.api_version,
        database=database,
        integrations={
            "model_gateway": settings.model_gateway_configured,
            "memory": settings.memory_configured,
            "mail": settings.mail_configured,
        },
    )
