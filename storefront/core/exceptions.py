"""
Custom Exception Hierarchy

Structured exceptions shared by the webhook handlers, the order services and
the marketplace client.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Webhook errors (2xxx)
    WEBHOOK_INVALID_PAYLOAD = "ERR_2001"
    WEBHOOK_INVALID_SIGNATURE = "ERR_2002"
    WEBHOOK_UNKNOWN_APPLICATION = "ERR_2003"
    WEBHOOK_NOT_FOUND = "ERR_2004"

    # Order / stock errors (3xxx)
    ORDER_NOT_FOUND = "ERR_3001"
    ORDER_INVALID_METADATA = "ERR_3002"
    PRODUCT_NOT_FOUND = "ERR_3003"
    INSUFFICIENT_STOCK = "ERR_3004"

    # External service errors (5xxx)
    MARKETPLACE_ERROR = "ERR_5001"
    PAYMENT_PROVIDER_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    SHIPMENT_NOT_READY = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "success": False,
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class WebhookAuthenticationError(AppException):
    """Inbound webhook failed transport-level validation (headers, signature, app id)"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.WEBHOOK_INVALID_SIGNATURE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=401,
            details=details
        )


class OrderMaterializationError(AppException):
    """Business-rule violation while turning a payment into an order.

    Never retried: the stored checkout metadata has to be corrected first.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.ORDER_INVALID_METADATA,
        payment_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=422,
            details=details
        )
        if payment_id:
            self.details["payment_id"] = payment_id


class ProductNotFoundError(OrderMaterializationError):
    """Raised when an order line references a missing product"""

    def __init__(self, product_id: Any):
        super().__init__(
            message=f"Product {product_id} not found",
            error_code=ErrorCode.PRODUCT_NOT_FOUND,
            details={"product_id": str(product_id)}
        )


class InsufficientStockError(OrderMaterializationError):
    """Raised when a product cannot cover the requested quantity"""

    def __init__(self, product_id: int, available: int, requested: int):
        super().__init__(
            message=(
                f"Insufficient stock for product {product_id}: "
                f"available {available}, requested {requested}"
            ),
            error_code=ErrorCode.INSUFFICIENT_STOCK,
            details={
                "product_id": product_id,
                "available": available,
                "requested": requested,
            }
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class MarketplaceAPIError(ExternalServiceException):
    """Non-2xx response from the marketplace or payment provider API"""

    def __init__(
        self,
        service_name: str,
        message: str,
        http_status: int | None = None,
        body: str = "",
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name=service_name,
            message=message,
            error_code=(
                ErrorCode.PAYMENT_PROVIDER_ERROR
                if service_name == "mercadopago"
                else ErrorCode.MARKETPLACE_ERROR
            ),
            details=details
        )
        self.http_status = http_status
        self.body = body
        self.details["http_status"] = http_status

    @property
    def is_retryable(self) -> bool:
        """Only rate limiting and upstream server errors are worth retrying"""
        if self.http_status is None:
            return False
        return self.http_status == 429 or self.http_status >= 500

    @classmethod
    def from_response(
        cls,
        service_name: str,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "MarketplaceAPIError":
        """Build the error from an httpx.Response consistently"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            service_name=service_name,
            message=f"{operation} returned HTTP {status_code}: {response_text[:200]}",
            http_status=status_code,
            body=response_text[:max_response_chars],
            details={"operation": operation},
        )


class ShipmentNotReadyError(ExternalServiceException):
    """The merchant order does not list a shipment yet"""

    def __init__(self, merchant_order_id: str):
        super().__init__(
            service_name="mercadopago",
            message="shipment_not_ready",
            error_code=ErrorCode.SHIPMENT_NOT_READY,
            details={"merchant_order_id": merchant_order_id}
        )
        self.merchant_order_id = merchant_order_id
