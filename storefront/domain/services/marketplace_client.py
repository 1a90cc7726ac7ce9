"""
Marketplace / Payment Provider API Client

Read-only GETs against Mercado Libre (shipments, orders) and Mercado Pago
(merchant orders, payments). Every call is bearer-authenticated, bounded by
an explicit timeout and retried on 429/5xx or network failures.
"""
from __future__ import annotations

from typing import Any, Protocol

import httpx

from storefront.core.config import Settings
from storefront.core.exceptions import ExternalServiceException, MarketplaceAPIError
from storefront.core.logging import get_logger
from storefront.core.retry import is_retryable_http_error, retry_with_policy

logger = get_logger(__name__)

MERCADOLIBRE = "mercadolibre"
MERCADOPAGO = "mercadopago"


class TokenStore(Protocol):
    """Source of marketplace access tokens; refreshing them happens elsewhere"""

    async def get_access_token(self, user_id: int | None = None) -> str:
        ...


class StaticTokenStore:
    """Single seller token taken from settings"""

    def __init__(self, access_token: str) -> None:
        self._access_token = access_token

    @classmethod
    def from_settings(cls, settings: Settings) -> "StaticTokenStore":
        return cls(settings.ML_ACCESS_TOKEN)

    async def get_access_token(self, user_id: int | None = None) -> str:
        if not self._access_token:
            raise ExternalServiceException(
                service_name=MERCADOLIBRE,
                message="ML_ACCESS_TOKEN is not configured",
            )
        return self._access_token


class MarketplaceClient:
    """
    Thin async wrapper over one shared ``httpx.AsyncClient``.

    Owns the HTTP client only when it created it; ``aclose()`` is called from
    the application lifespan.
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._ml_base_url = settings.ML_API_BASE_URL
        self._mp_base_url = settings.MP_API_BASE_URL
        self._mp_access_token = settings.MP_ACCESS_TOKEN
        self._retry_policy = settings.http_retry_policy()
        self._token_store = token_store
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS)
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Mercado Libre ──

    async def get_shipment(self, shipment_id: str, user_id: int | None = None) -> dict[str, Any]:
        token = await self._token_store.get_access_token(user_id)
        return await self._get_json(
            MERCADOLIBRE,
            f"{self._ml_base_url}/shipments/{shipment_id}",
            token,
            operation=f"GET /shipments/{shipment_id}",
            headers={"x-format-new": "true"},
        )

    async def get_order(self, order_id: str, user_id: int | None = None) -> dict[str, Any]:
        token = await self._token_store.get_access_token(user_id)
        return await self._get_json(
            MERCADOLIBRE,
            f"{self._ml_base_url}/orders/{order_id}",
            token,
            operation=f"GET /orders/{order_id}",
        )

    # ── Mercado Pago ──

    async def get_merchant_order(self, merchant_order_id: str) -> dict[str, Any]:
        return await self._get_json(
            MERCADOPAGO,
            f"{self._mp_base_url}/merchant_orders/{merchant_order_id}",
            self._require_mp_token(),
            operation=f"GET /merchant_orders/{merchant_order_id}",
        )

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._get_json(
            MERCADOPAGO,
            f"{self._mp_base_url}/v1/payments/{payment_id}",
            self._require_mp_token(),
            operation=f"GET /v1/payments/{payment_id}",
        )

    def _require_mp_token(self) -> str:
        if not self._mp_access_token:
            raise ExternalServiceException(
                service_name=MERCADOPAGO,
                message="MP_ACCESS_TOKEN is not configured",
            )
        return self._mp_access_token

    async def _get_json(
        self,
        service_name: str,
        url: str,
        token: str,
        *,
        operation: str,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if headers:
            request_headers.update(headers)

        async def _call() -> dict[str, Any]:
            response = await self._client.get(url, headers=request_headers)
            if response.status_code >= 400:
                raise MarketplaceAPIError.from_response(service_name, operation, response)
            try:
                return response.json()
            except ValueError:
                raise MarketplaceAPIError(
                    service_name=service_name,
                    message=f"{operation} returned a non-JSON body",
                    http_status=response.status_code,
                    body=response.text[:500],
                    details={"operation": operation},
                )

        return await retry_with_policy(
            _call,
            self._retry_policy,
            is_retryable_http_error,
            operation_name=operation,
        )
