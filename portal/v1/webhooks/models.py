"""
Webhook event log used for idempotent ingestion.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from portal.infra.database import Base, UTCDateTime, utcnow
from portal.v1.core.state_machines import WebhookEventStatus


class WebhookEvent(Base):
    """
    One delivered provider event.

    (provider, event_id) is unique, so a redelivery can never be recorded twice.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(Text, nullable=False, default="razorpay")
    event_id: Mapped[str] = mapped_column(Text, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="payment_id or order_id"
    )

    # Raw payload kept for debugging and replay
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=WebhookEventStatus.RECEIVED.value,
        comment="Event status: received|processed|ignored|failed",
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        CheckConstraint(
            "status IN ('received', 'processed', 'ignored', 'failed')",
            name="webhook_events_status_check",
        ),
        Index("ix_webhook_events_status", "status"),
    )

    def is_settled(self) -> bool:
        """Processed or ignored events are never handled again."""
        return self.status in (
            WebhookEventStatus.PROCESSED.value,
            WebhookEventStatus.IGNORED.value,
        )
