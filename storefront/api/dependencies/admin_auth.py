"""
Admin API key check for operator endpoints.

Usage:
    @router.post("/webhooks/{record_id}/reprocess")
    async def reprocess(
        _: None = Depends(require_admin_api_key),
    ):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from storefront.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


async def require_admin_api_key(
    request: Request,
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    401 when the header is missing, 403 when it does not match.
    With no ADMIN_API_KEY configured every admin call is refused.
    """
    expected = request.app.state.settings.ADMIN_API_KEY
    if not expected:
        logger.warning(
            "Admin endpoint refused: ADMIN_API_KEY is not configured",
            extra_data={"path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY is not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key: X-Admin-API-Key header required",
        )

    if not hmac.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8")):
        logger.warning(
            "Admin endpoint refused: wrong API key",
            extra_data={"path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
