"""
Customer, purchase, install and setup token models.
"""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from portal.infra.database import Base, UTCDateTime, utcnow
from portal.v1.core.state_machines import InstallStatus, PurchaseStatus


class Customer(Base):
    """A paying customer; email is stored lower-cased."""

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )


class Purchase(Base):
    """A payment provider order and its payment state."""

    __tablename__ = "purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("customers.id"), nullable=False
    )

    # Provider identifiers
    provider: Mapped[str] = mapped_column(Text, nullable=False, default="razorpay")
    provider_order_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    provider_payment_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, unique=True
    )

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=PurchaseStatus.PENDING.value,
        comment="Purchase status: pending|paid|failed|refunded",
    )

    # Amount in the smallest currency unit (paise for INR)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="INR")

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'refunded')",
            name="purchases_status_check",
        ),
        Index("ix_purchases_status", "status"),
    )


class Install(Base):
    """
    The customer-dedicated deployment produced by provisioning.

    One install per purchase. Status changes are made by job handlers and the
    setup flow, never by the queue itself.
    """

    __tablename__ = "installs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("customers.id"), nullable=False
    )
    purchase_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("purchases.id"), nullable=False, unique=True
    )

    # Hosting provider resources
    project_id: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    project_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    environment_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    web_service_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    worker_service_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    domain: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_domain: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=InstallStatus.PENDING.value,
        comment="Install status: pending|provisioning|setup_pending|active|failed|suspended",
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    provisioned_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'provisioning', 'setup_pending', 'active', "
            "'failed', 'suspended')",
            name="installs_status_check",
        ),
        Index("ix_installs_customer_id", "customer_id"),
    )


class SetupToken(Base):
    """
    One-time admin setup credential.

    Only a hash of the token is stored; the session secret is encrypted with
    a fresh nonce per row.
    """

    __tablename__ = "setup_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    install_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("installs.id"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    session_secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    session_secret_nonce: Mapped[str] = mapped_column(Text, nullable=False)

    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_setup_tokens_install_id", "install_id"),)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
