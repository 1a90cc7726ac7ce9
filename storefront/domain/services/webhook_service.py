"""
Webhook Service - marketplace notification ingestion and dispatch

Every notification is stored before it is processed and updated once
processing finishes. A handler failure is recorded on the row, not raised to
the marketplace: it would only redeliver the same broken notification.
"""
import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import case, delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings
from storefront.core.exceptions import (
    AppException,
    ErrorCode,
    NotFoundException,
    ValidationException,
    WebhookAuthenticationError,
)
from storefront.core.logging import get_logger, webhook_log_context
from storefront.db.models.user import User
from storefront.db.models.webhook_record import WebhookRecord, WebhookStatus
from storefront.db.models.webhook_replay import WebhookReplayEntry
from storefront.domain.services.marketplace_client import MarketplaceClient
from storefront.domain.services.marketplace_order_service import MarketplaceOrderService
from storefront.domain.services.payment_service import PaymentService
from storefront.domain.services.shipment_service import ShipmentReconciler

logger = get_logger(__name__)


def _as_int(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def resource_id_from(resource: str | None) -> str | None:
    """Last path segment of ``/orders/123`` style resources"""
    if not resource:
        return None
    path = resource.split("?", 1)[0].rstrip("/")
    last = path.rsplit("/", 1)[-1].strip()
    return last or None


@dataclass
class IngestResult:
    success: bool
    processed: bool
    webhook_id: str | None = None
    record_id: int | None = None
    error: str | None = None
    replay: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.replay:
            return {"success": self.success, "replay": True}
        data: dict[str, Any] = {
            "success": self.success,
            "webhook_id": self.webhook_id,
            "processed": self.processed,
        }
        if self.error:
            data["error"] = self.error
        return data


class WebhookService:
    """Stores marketplace notifications and routes them to topic handlers"""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        client: MarketplaceClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.settings = settings
        self.client = client
        self._sleep = sleep
        self.max_retries = settings.WEBHOOK_MAX_RETRIES

    async def _resolve_local_user(self, ml_user_id: Any) -> int | None:
        if ml_user_id in (None, ""):
            return None
        result = await self.db.execute(select(User.id).where(User.ml_user_id == str(ml_user_id)))
        return result.scalars().first()

    async def _claim_delivery(self, delivery_id: str | None) -> bool:
        """False when the delivery id was already seen inside the replay TTL"""
        if not delivery_id:
            return True

        now = datetime.now(timezone.utc)
        try:
            await self.db.execute(
                delete(WebhookReplayEntry)
                .where(WebhookReplayEntry.expires_at < now)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(
                insert(WebhookReplayEntry).values(
                    request_id=delivery_id,
                    created_at=now,
                    expires_at=now + timedelta(seconds=self.settings.WEBHOOK_REPLAY_TTL_SECONDS),
                )
            )
            await self.db.commit()
            return True
        except IntegrityError:
            # Primary key taken: the id is still inside its TTL
            await self.db.rollback()
            return False
        except Exception:
            await self.db.rollback()
            raise

    async def ingest(
        self,
        payload: dict[str, Any],
        request_id: str,
        delivery_id: str | None = None,
    ) -> IngestResult:
        """
        Persist and process one notification.

        Raises WebhookAuthenticationError for a foreign application id.
        A ``delivery_id`` seen inside the replay TTL is acknowledged without
        touching anything; everything after the record is stored is
        reported in the result.
        """
        application_id = str(payload.get("application_id") or "")
        if not self.settings.ML_APPLICATION_ID or application_id != self.settings.ML_APPLICATION_ID:
            logger.error(
                "Webhook from unknown application",
                extra_data={"application_id": application_id, "request_id": request_id},
            )
            raise WebhookAuthenticationError(
                "Unknown application",
                error_code=ErrorCode.WEBHOOK_UNKNOWN_APPLICATION,
                details={"application_id": application_id},
            )

        if not await self._claim_delivery(delivery_id):
            logger.info(
                "Duplicate marketplace delivery ignored",
                extra_data={"delivery_id": delivery_id, "request_id": request_id},
            )
            return IngestResult(success=True, processed=False, replay=True)

        topic = str(payload.get("topic") or "")
        resource = str(payload.get("resource") or "")
        source_user_id = payload.get("user_id")
        local_user_id = await self._resolve_local_user(source_user_id)
        attempts = _as_int(payload.get("attempts"))

        record = WebhookRecord(
            webhook_id=str(uuid.uuid4()),
            topic=topic,
            resource=resource,
            resource_id=resource_id_from(resource),
            source_user_id=str(source_user_id) if source_user_id not in (None, "") else None,
            user_id=local_user_id,
            application_id=application_id,
            attempts=attempts,
            # attempts counts this delivery; earlier ones already failed upstream
            retry_count=max(attempts - 1, 0),
            payload=payload,
            request_id=request_id,
            status=WebhookStatus.RECEIVED,
        )
        try:
            self.db.add(record)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Marketplace webhook received",
            extra_data={
                "webhook_id": record.webhook_id,
                "topic": topic,
                "resource": resource,
                "source_user_id": record.source_user_id,
                "attempts": record.attempts,
                "request_id": request_id,
            },
        )
        return await self._process(
            record.id, record.webhook_id, topic, resource, local_user_id, payload, request_id
        )

    async def reprocess(self, record_id: int, request_id: str) -> IngestResult:
        """Operator re-entry into dispatch for a stored notification"""
        record = await self.db.get(WebhookRecord, record_id)
        if record is None:
            raise NotFoundException("Webhook", record_id, error_code=ErrorCode.WEBHOOK_NOT_FOUND)

        logger.info(
            "Reprocessing webhook",
            extra_data={
                "webhook_id": record.webhook_id,
                "topic": record.topic,
                "previous_status": record.status,
                "retry_count": record.retry_count,
                "request_id": request_id,
            },
        )
        return await self._process(
            record.id,
            record.webhook_id,
            record.topic,
            record.resource,
            record.user_id,
            dict(record.payload or {}),
            request_id,
        )

    async def _process(
        self,
        record_id: int,
        webhook_id: str,
        topic: str,
        resource: str,
        local_user_id: int | None,
        payload: dict[str, Any],
        request_id: str,
    ) -> IngestResult:
        # Handlers commit or roll back on their own; after that the record is
        # only touched through UPDATE statements and the captured values.
        error: str | None = None
        try:
            with webhook_log_context(webhook_id=webhook_id, topic=topic, request_id=request_id):
                await self.dispatch(topic, resource, local_user_id, payload, request_id)
        except Exception as e:
            await self.db.rollback()
            error = str(e) or type(e).__name__
            logger.error(
                "Webhook handler failed",
                extra_data={
                    "webhook_id": webhook_id,
                    "topic": topic,
                    "resource": resource,
                    "error_type": type(e).__name__,
                    "error": error,
                    "request_id": request_id,
                },
                exc_info=not isinstance(e, AppException),
            )

        now = datetime.now(timezone.utc)
        if error is None:
            values: dict[str, Any] = {
                "status": WebhookStatus.SUCCESS,
                "processed": True,
                "processed_at": now,
                "error_message": None,
            }
        else:
            values = {
                "status": case(
                    (WebhookRecord.retry_count + 1 >= self.max_retries, WebhookStatus.DEAD_LETTER),
                    else_=WebhookStatus.FAILED,
                ),
                "processed": False,
                "processed_at": now,
                "error_message": error,
                "retry_count": WebhookRecord.retry_count + 1,
            }

        try:
            await self.db.execute(
                update(WebhookRecord)
                .where(WebhookRecord.id == record_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if error is None:
            logger.info(
                "Webhook processed",
                extra_data={"webhook_id": webhook_id, "topic": topic, "request_id": request_id},
            )
        return IngestResult(
            success=error is None,
            webhook_id=webhook_id,
            record_id=record_id,
            processed=error is None,
            error=error,
        )

    async def dispatch(
        self,
        topic: str,
        resource: str,
        local_user_id: int | None,
        payload: dict[str, Any],
        request_id: str,
    ) -> None:
        """Route by topic; unknown topics are accepted without action"""
        if topic not in {"items", "orders", "shipments", "payments", "questions", "claims"}:
            logger.warning(
                "Unsupported webhook topic",
                extra_data={"topic": topic, "resource": resource, "request_id": request_id},
            )
            return

        resource_id = resource_id_from(resource)
        if not resource_id:
            raise ValidationException(f"Invalid resource for topic {topic}: {resource!r}", field="resource")

        if topic == "items":
            service = MarketplaceOrderService(self.db, self.client)
            await service.touch_product(resource_id)
        elif topic == "orders":
            service = MarketplaceOrderService(self.db, self.client)
            await service.sync_order(resource_id, local_user_id)
        elif topic == "shipments":
            reconciler = ShipmentReconciler(self.db, self.client)
            await reconciler.reconcile(resource_id, user_id=local_user_id)
        elif topic == "payments":
            payment_service = PaymentService(
                self.db,
                self.client,
                rollback_policy=self.settings.stock_rollback_policy(),
                sleep=self._sleep,
            )
            result = await payment_service.handle_payment_notification(
                "payment.updated", {"id": resource_id}, request_id
            )
            if not result.success:
                raise AppException(result.error or "Payment processing failed")
        else:
            # questions and claims are answered from the marketplace UI
            logger.info(
                f"Marketplace {topic} notification",
                extra_data={"resource_id": resource_id, "request_id": request_id},
            )

    async def list_records(
        self,
        status: str | None = None,
        topic: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookRecord]:
        query = select(WebhookRecord)
        if status:
            query = query.where(WebhookRecord.status == status)
        if topic:
            query = query.where(WebhookRecord.topic == topic)
        query = query.order_by(WebhookRecord.created_at.desc(), WebhookRecord.id.desc())
        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())
