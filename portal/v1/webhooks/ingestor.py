"""
Idempotent ingestion of payment provider webhooks.

Every delivery is recorded under its (provider, event_id) key before any
processing. Settled events (processed or ignored) acknowledge redeliveries as
duplicates; received or failed ones are processed again, which is how a
provider retry recovers from a transient error. All downstream writes are
conditional updates, so reprocessing never applies a transition twice.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config.settings import Settings
from portal.infra.database import utcnow
from portal.v1.core.exceptions import (
    InvalidSignatureError,
    MalformedPayloadError,
    NotFoundError,
    WebhookProcessingError,
)
from portal.v1.core.registries import WebhookProviderRegistry, webhook_provider_registry
from portal.v1.core.state_machines import (
    PURCHASE_MACHINE,
    WEBHOOK_EVENT_MACHINE,
    PurchaseStatus,
    WebhookEventStatus,
)
from portal.v1.provisioning.models import Purchase
from portal.v1.provisioning.service import ProvisioningService
from portal.v1.webhooks.models import WebhookEvent
from portal.v1.webhooks.providers import ParsedEvent

logger = logging.getLogger(__name__)

PAID_EVENTS = frozenset({"payment.captured", "order.paid"})
PAYMENT_FAILED_EVENTS = frozenset({"payment.failed"})
REFUND_EVENTS = frozenset({"refund.created", "refund.processed"})


@dataclass(frozen=True)
class IngestOutcome:
    """What the webhook endpoint answers for one delivery."""

    status: str
    event_id: str
    http_status: int = 200
    details: dict[str, Any] = field(default_factory=dict)

    def body(self) -> dict[str, Any]:
        return {"status": self.status, "event_id": self.event_id, **self.details}


class WebhookIngestor:
    """Verifies, records and applies provider webhook events."""

    def __init__(
        self,
        settings: Settings,
        registry: WebhookProviderRegistry = webhook_provider_registry,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.registry = registry
        self.clock = clock
        self.provisioning = ProvisioningService(settings, clock=clock)

    async def ingest(
        self,
        session: AsyncSession,
        provider_name: str,
        raw_body: bytes,
        signature: str | None,
    ) -> IngestOutcome:
        if not self.registry.has(provider_name):
            raise NotFoundError(
                f"Unknown webhook provider: {provider_name}",
                details={"provider": provider_name},
            )
        provider = self.registry.get(provider_name)

        # Signature is checked over the exact bytes received, never re-serialized JSON
        if not provider.verify(raw_body, signature):
            logger.warning(
                "Webhook signature verification failed",
                extra={"provider": provider_name, "has_signature": bool(signature)},
            )
            raise InvalidSignatureError()

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise MalformedPayloadError("Invalid JSON payload") from e
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Webhook payload must be a JSON object")

        parsed = provider.parse(payload)

        event = await self._record(session, provider_name, parsed, payload)
        if event is None:
            logger.info(
                "Duplicate webhook event already handled",
                extra={"provider": provider_name, "event_id": parsed.event_id},
            )
            return IngestOutcome(status="duplicate", event_id=parsed.event_id)

        event_pk = event.id
        try:
            outcome = await self._dispatch(session, event, parsed)
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.exception(
                "Webhook processing failed",
                extra={"provider": provider_name, "event_id": parsed.event_id},
            )
            await self._mark_failed(session, event_pk, f"Processing error: {e}")
            raise WebhookProcessingError(
                "Webhook processing failed", details={"event_id": parsed.event_id}
            ) from e

        logger.info(
            "Webhook event handled",
            extra={
                "provider": provider_name,
                "event_id": parsed.event_id,
                "event_type": parsed.event_type,
                "outcome": outcome.status,
            },
        )
        return outcome

    async def _find_event(
        self, session: AsyncSession, provider_name: str, event_id: str
    ) -> WebhookEvent | None:
        result = await session.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider_name,
                WebhookEvent.event_id == event_id,
            )
        )
        return result.scalar_one_or_none()

    async def _record(
        self,
        session: AsyncSession,
        provider_name: str,
        parsed: ParsedEvent,
        payload: dict[str, Any],
    ) -> WebhookEvent | None:
        """
        Store the delivery, or find the stored copy of a redelivery.

        Returns None when the stored copy is already settled.
        """
        event = WebhookEvent(
            provider=provider_name,
            event_id=parsed.event_id,
            event_type=parsed.event_type,
            entity_id=parsed.entity_id,
            payload_json=payload,
            status=WebhookEventStatus.RECEIVED.value,
            received_at=self.clock(),
        )
        try:
            session.add(event)
            await session.commit()
            return event
        except IntegrityError:
            await session.rollback()

        existing = await self._find_event(session, provider_name, parsed.event_id)
        if existing is None or existing.is_settled():
            return None

        logger.info(
            "Reprocessing webhook event",
            extra={
                "provider": provider_name,
                "event_id": parsed.event_id,
                "previous_status": existing.status,
            },
        )
        return existing

    async def _settle(
        self,
        session: AsyncSession,
        event_pk: int,
        target: WebhookEventStatus,
        error: str | None = None,
    ) -> bool:
        """
        Move the stored event to ``target`` if it is still in a legal source state.

        Returns False when a concurrent delivery of the same event settled it first.
        """
        result = await session.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_pk,
                WebhookEvent.status.in_(WEBHOOK_EVENT_MACHINE.sources_for(target)),
            )
            .values(status=target.value, error_message=error, processed_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def _mark_failed(self, session: AsyncSession, event_pk: int, error: str) -> None:
        await self._settle(session, event_pk, WebhookEventStatus.FAILED, error)
        await session.commit()

    def _duplicate(self, parsed: ParsedEvent) -> IngestOutcome:
        logger.info(
            "Webhook event settled by a concurrent delivery",
            extra={"event_id": parsed.event_id, "event_type": parsed.event_type},
        )
        return IngestOutcome(status="duplicate", event_id=parsed.event_id)

    async def _transition_purchase(
        self,
        session: AsyncSession,
        purchase: Purchase,
        target: PurchaseStatus,
        **values: Any,
    ) -> bool:
        """Conditional update that only matches a purchase in a legal source state."""
        result = await session.execute(
            update(Purchase)
            .where(
                Purchase.id == purchase.id,
                Purchase.status.in_(PURCHASE_MACHINE.sources_for(target)),
            )
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def _purchase_by(self, session: AsyncSession, column, value: str) -> Purchase | None:
        result = await session.execute(select(Purchase).where(column == value))
        return result.scalar_one_or_none()

    async def _permanent_failure(
        self, session: AsyncSession, event: WebhookEvent, parsed: ParsedEvent, message: str
    ) -> IngestOutcome:
        logger.error(
            "Webhook event rejected",
            extra={"event_id": parsed.event_id, "event_type": parsed.event_type, "error": message},
        )
        if not await self._settle(session, event.id, WebhookEventStatus.FAILED, message):
            return self._duplicate(parsed)
        return IngestOutcome(
            status="failed",
            event_id=parsed.event_id,
            http_status=400,
            details={"error": message},
        )

    async def _purchase_not_found(
        self, session: AsyncSession, event: WebhookEvent, parsed: ParsedEvent, lookup: str
    ) -> IngestOutcome:
        logger.error(
            "Purchase not found for webhook",
            extra={"event_id": parsed.event_id, "lookup": lookup},
        )
        if not await self._settle(
            session, event.id, WebhookEventStatus.FAILED, "Purchase not found"
        ):
            return self._duplicate(parsed)
        # 200 so the provider stops retrying; the stored event can be replayed
        return IngestOutcome(status="purchase_not_found", event_id=parsed.event_id)

    async def _ignored(
        self,
        session: AsyncSession,
        event: WebhookEvent,
        parsed: ParsedEvent,
        status: str,
        reason: str,
        **details,
    ) -> IngestOutcome:
        if not await self._settle(session, event.id, WebhookEventStatus.IGNORED, reason):
            return self._duplicate(parsed)
        return IngestOutcome(status=status, event_id=parsed.event_id, details=details)

    async def _purchase_unchanged(
        self,
        session: AsyncSession,
        event: WebhookEvent,
        parsed: ParsedEvent,
        purchase: Purchase,
        status: str,
    ) -> IngestOutcome:
        """The conditional purchase update matched nothing: report its current state."""
        await session.refresh(purchase)
        return await self._ignored(
            session,
            event,
            parsed,
            status,
            f"Purchase is {purchase.status}",
            purchase_id=purchase.id,
        )

    async def _dispatch(
        self, session: AsyncSession, event: WebhookEvent, parsed: ParsedEvent
    ) -> IngestOutcome:
        if parsed.event_type in PAID_EVENTS:
            return await self._handle_paid(session, event, parsed)
        if parsed.event_type in PAYMENT_FAILED_EVENTS:
            return await self._handle_payment_failed(session, event, parsed)
        if parsed.event_type in REFUND_EVENTS:
            return await self._handle_refund(session, event, parsed)

        return await self._ignored(
            session,
            event,
            parsed,
            "ignored",
            f"Unhandled event type: {parsed.event_type}",
            event_type=parsed.event_type,
        )

    async def _handle_paid(
        self, session: AsyncSession, event: WebhookEvent, parsed: ParsedEvent
    ) -> IngestOutcome:
        if not parsed.order_id:
            return await self._permanent_failure(session, event, parsed, "Missing order_id")

        purchase = await self._purchase_by(
            session, Purchase.provider_order_id, parsed.order_id
        )
        if purchase is None:
            return await self._purchase_not_found(session, event, parsed, parsed.order_id)

        values: dict[str, Any] = {"paid_at": self.clock()}
        if parsed.payment_id:
            values["provider_payment_id"] = parsed.payment_id

        if not await self._transition_purchase(
            session, purchase, PurchaseStatus.PAID, **values
        ):
            # payment.captured and order.paid both arrive for one payment
            return await self._purchase_unchanged(
                session, event, parsed, purchase, "already_processed"
            )

        creation = await self.provisioning.create_install_for_purchase(session, purchase)
        await self._settle(session, event.id, WebhookEventStatus.PROCESSED)

        logger.info(
            "Purchase paid",
            extra={
                "purchase_id": purchase.id,
                "install_id": creation.install.id,
                "job_id": creation.job.id if creation.job else None,
            },
        )
        return IngestOutcome(
            status="ok",
            event_id=parsed.event_id,
            details={
                "purchase_id": purchase.id,
                "install_id": creation.install.id,
                "job_id": creation.job.id if creation.job else None,
            },
        )

    async def _handle_payment_failed(
        self, session: AsyncSession, event: WebhookEvent, parsed: ParsedEvent
    ) -> IngestOutcome:
        if not parsed.order_id:
            return await self._permanent_failure(session, event, parsed, "Missing order_id")

        purchase = await self._purchase_by(
            session, Purchase.provider_order_id, parsed.order_id
        )
        if purchase is None:
            return await self._purchase_not_found(session, event, parsed, parsed.order_id)

        if not await self._transition_purchase(session, purchase, PurchaseStatus.FAILED):
            return await self._purchase_unchanged(session, event, parsed, purchase, "ignored")

        await self._settle(session, event.id, WebhookEventStatus.PROCESSED)
        logger.info("Purchase payment failed", extra={"purchase_id": purchase.id})
        return IngestOutcome(
            status="payment_failed",
            event_id=parsed.event_id,
            details={"purchase_id": purchase.id},
        )

    async def _handle_refund(
        self, session: AsyncSession, event: WebhookEvent, parsed: ParsedEvent
    ) -> IngestOutcome:
        if not parsed.payment_id:
            return await self._permanent_failure(session, event, parsed, "Missing payment_id")

        purchase = await self._purchase_by(
            session, Purchase.provider_payment_id, parsed.payment_id
        )
        if purchase is None:
            return await self._purchase_not_found(session, event, parsed, parsed.payment_id)

        if not await self._transition_purchase(session, purchase, PurchaseStatus.REFUNDED):
            return await self._purchase_unchanged(session, event, parsed, purchase, "ignored")

        await self._settle(session, event.id, WebhookEventStatus.PROCESSED)
        logger.info("Purchase refunded", extra={"purchase_id": purchase.id})
        return IngestOutcome(
            status="refund_processed",
            event_id=parsed.event_id,
            details={"purchase_id": purchase.id},
        )
