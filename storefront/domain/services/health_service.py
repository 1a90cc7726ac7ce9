"""
Health checks.

- liveness: the process answers (no dependency checks)
- readiness: database reachable and webhook credentials configured
"""
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import Settings
from storefront.core.logging import get_logger

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# No infrastructure details in the response body
_ERROR_DB = "error: db_unavailable"
_ERROR_NOT_CONFIGURED = "error: not_configured"


async def _check_db(session_factory: async_sessionmaker[AsyncSession]) -> str:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


def _check_configured(value: str) -> str:
    return _CHECK_OK if value else _ERROR_NOT_CONFIGURED


async def check_readiness(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> dict[str, Any]:
    """Status is ``healthy`` only when every check is ``ok``"""
    checks = {
        "db": await _check_db(session_factory),
        "payment_webhook_secret": _check_configured(settings.MP_WEBHOOK_SECRET),
        "marketplace_application": _check_configured(settings.ML_APPLICATION_ID),
    }
    overall = _STATUS_HEALTHY if all(v == _CHECK_OK for v in checks.values()) else _STATUS_DEGRADED
    if overall != _STATUS_HEALTHY:
        logger.warning("Readiness check degraded", extra_data=checks)
    return {"status": overall, **checks}
