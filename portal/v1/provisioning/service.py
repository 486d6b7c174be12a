"""
Checkout and install lifecycle operations outside the job pipeline.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config.settings import Settings
from portal.infra.database import utcnow
from portal.v1.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from portal.v1.core.registries import WebhookProviderRegistry, webhook_provider_registry
from portal.v1.core.state_machines import (
    INSTALL_MACHINE,
    InstallStatus,
    JobStatus,
    PurchaseStatus,
)
from portal.v1.infra.jobs.models import ProvisioningJob
from portal.v1.infra.jobs.store import JobStore
from portal.v1.provisioning.models import Customer, Install, Purchase
from portal.v1.provisioning.setup_tokens import SetupTokenIssuer

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    """Lower-case and sanity check an email address."""
    normalized = email.strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValidationError("Valid email required", details={"email": email})
    return normalized


@dataclass(frozen=True)
class CheckoutOrder:
    """What the payment widget needs to collect payment for a new purchase."""

    purchase_id: int
    provider: str
    order_id: str
    amount: int
    currency: str
    key_id: str
    customer_id: int
    customer_name: str
    customer_email: str


@dataclass(frozen=True)
class InstallCreation:
    install: Install
    job: ProvisioningJob | None
    created: bool


@dataclass(frozen=True)
class SetupCompletion:
    install_id: int
    domain: str | None
    session_secret: str


class ProvisioningService:
    """Service for checkout, install creation and status queries."""

    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        providers: WebhookProviderRegistry = webhook_provider_registry,
    ):
        self.settings = settings
        self.clock = clock
        self.providers = providers
        self.store = JobStore(settings, clock=clock)
        self.issuer = SetupTokenIssuer(settings, clock=clock)

    async def get_or_create_customer(
        self, session: AsyncSession, email: str, name: str
    ) -> Customer:
        """Find the customer by lower-cased email, creating them on first checkout."""
        email = normalize_email(email)
        result = await session.execute(select(Customer).where(Customer.email == email))
        customer = result.scalar_one_or_none()
        if customer is not None:
            return customer

        customer = Customer(email=email, name=name, created_at=self.clock())
        session.add(customer)
        try:
            await session.flush()
        except IntegrityError:
            # A concurrent checkout created the same customer first
            await session.rollback()
            result = await session.execute(select(Customer).where(Customer.email == email))
            return result.scalar_one()

        logger.info("Customer created", extra={"customer_id": customer.id})
        return customer

    async def create_purchase(
        self,
        session: AsyncSession,
        email: str,
        name: str,
        provider_name: str = "razorpay",
    ) -> CheckoutOrder:
        """
        Start a checkout: create the provider order and a pending purchase.

        The customer row is committed before the provider is called; the
        purchase only once the provider has issued an order id.
        """
        name = name.strip()
        if not name:
            raise ValidationError("Name required")
        if not self.providers.has(provider_name):
            raise NotFoundError(
                f"Unknown payment provider: {provider_name}",
                details={"provider": provider_name},
            )
        provider = self.providers.get(provider_name)

        customer = await self.get_or_create_customer(session, email, name)
        await session.commit()
        customer_id, customer_email, customer_name = customer.id, customer.email, customer.name

        order = await provider.create_order(
            amount=self.settings.plan_amount,
            currency=self.settings.currency,
            receipt=f"cust_{customer_id}_{int(self.clock().timestamp())}",
            notes={
                "customer_id": str(customer_id),
                "customer_email": customer_email,
                "customer_name": customer_name,
            },
        )

        purchase = Purchase(
            customer_id=customer_id,
            provider=provider_name,
            provider_order_id=order.order_id,
            status=PurchaseStatus.PENDING.value,
            amount=order.amount,
            currency=order.currency,
            created_at=self.clock(),
        )
        session.add(purchase)
        await session.commit()

        logger.info(
            "Purchase created",
            extra={
                "purchase_id": purchase.id,
                "customer_id": customer_id,
                "provider": provider_name,
                "order_id": order.order_id,
            },
        )
        return CheckoutOrder(
            purchase_id=purchase.id,
            provider=provider_name,
            order_id=order.order_id,
            amount=order.amount,
            currency=order.currency,
            key_id=order.key_id,
            customer_id=customer_id,
            customer_name=customer_name,
            customer_email=customer_email,
        )

    async def _install_for_purchase(
        self, session: AsyncSession, purchase_id: int
    ) -> Install | None:
        result = await session.execute(
            select(Install).where(Install.purchase_id == purchase_id)
        )
        return result.scalar_one_or_none()

    async def create_install_for_purchase(
        self, session: AsyncSession, purchase: Purchase
    ) -> InstallCreation:
        """
        Create the install and its first provision job for a paid purchase.

        Idempotent: an existing install is returned untouched unless it has
        failed, in which case it is reset and provisioning starts over.
        Does not commit.
        """
        existing = await self._install_for_purchase(session, purchase.id)
        if existing is not None:
            if existing.status == InstallStatus.FAILED.value:
                job = await self.reprovision(session, existing)
                return InstallCreation(install=existing, job=job, created=False)
            logger.info(
                "Install already exists for purchase",
                extra={"install_id": existing.id, "purchase_id": purchase.id},
            )
            return InstallCreation(install=existing, job=None, created=False)

        install = Install(
            customer_id=purchase.customer_id,
            purchase_id=purchase.id,
            status=InstallStatus.PENDING.value,
            created_at=self.clock(),
        )
        # The unique purchase_id rejects a concurrent second install; the
        # IntegrityError aborts the caller's transaction and a redelivery
        # then finds the existing row
        session.add(install)
        await session.flush()

        job = await self.store.enqueue(session, install.id, "provision")
        logger.info(
            "Install created",
            extra={"install_id": install.id, "purchase_id": purchase.id, "job_id": job.id},
        )
        return InstallCreation(install=install, job=job, created=True)

    async def reprovision(
        self, session: AsyncSession, install: Install
    ) -> ProvisioningJob:
        """Reset a failed install to pending and start the pipeline again."""
        INSTALL_MACHINE.ensure_transition(install.status, InstallStatus.PENDING)
        install.status = InstallStatus.PENDING.value
        install.error_message = None
        job = await self.store.enqueue(session, install.id, "provision")

        logger.info(
            "Install reprovisioning",
            extra={"install_id": install.id, "job_id": job.id},
        )
        return job

    async def get_install_for_customer(
        self, session: AsyncSession, install_id: int, email: str
    ) -> Install:
        """Look an install up by id, scoped to the customer's email."""
        result = await session.execute(
            select(Install)
            .join(Customer, Customer.id == Install.customer_id)
            .where(
                Install.id == install_id,
                Customer.email == email.strip().lower(),
            )
        )
        install = result.scalar_one_or_none()
        if install is None:
            raise NotFoundError("Install not found", details={"install_id": install_id})
        return install

    async def get_install_by_order(self, session: AsyncSession, order_id: str) -> Install:
        result = await session.execute(
            select(Install)
            .join(Purchase, Purchase.id == Install.purchase_id)
            .where(Purchase.provider_order_id == order_id)
        )
        install = result.scalar_one_or_none()
        if install is None:
            raise NotFoundError("Install not found", details={"order_id": order_id})
        return install

    async def pending_job_count(self, session: AsyncSession, install_id: int) -> int:
        result = await session.execute(
            select(func.count(ProvisioningJob.id)).where(
                ProvisioningJob.install_id == install_id,
                ProvisioningJob.status.in_(
                    [JobStatus.PENDING.value, JobStatus.PROCESSING.value]
                ),
            )
        )
        return result.scalar() or 0

    async def complete_setup(self, session: AsyncSession, token: str) -> SetupCompletion:
        """
        Redeem a setup token and activate its install in one transaction.

        If the install is not awaiting setup the whole transaction is rolled
        back, leaving the token unused.
        """
        redeemed = await self.issuer.redeem(session, token)
        now = self.clock()

        result = await session.execute(
            update(Install)
            .where(
                Install.id == redeemed.install_id,
                Install.status == InstallStatus.SETUP_PENDING.value,
            )
            .values(status=InstallStatus.ACTIVE.value, activated_at=now)
            .returning(Install.domain)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await session.rollback()
            install = await session.get(Install, redeemed.install_id)
            raise InvalidTransitionError(
                "install",
                install.status if install else "missing",
                InstallStatus.ACTIVE.value,
            )

        await session.commit()
        logger.info("Install activated", extra={"install_id": redeemed.install_id})
        return SetupCompletion(
            install_id=redeemed.install_id,
            domain=row.domain,
            session_secret=redeemed.session_secret,
        )

    async def _move_install(
        self,
        session: AsyncSession,
        install_id: int,
        source: InstallStatus,
        target: InstallStatus,
    ) -> Install:
        INSTALL_MACHINE.ensure_transition(source, target)
        install = await session.get(Install, install_id)
        if install is None:
            raise NotFoundError("Install not found", details={"install_id": install_id})

        current = install.status
        result = await session.execute(
            update(Install)
            .where(Install.id == install_id, Install.status == source.value)
            .values(status=target.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await session.rollback()
            raise InvalidTransitionError("install", current, target.value)

        await session.commit()
        await session.refresh(install)
        logger.info(
            "Install status changed",
            extra={"install_id": install_id, "from": source.value, "to": target.value},
        )
        return install

    async def suspend_install(self, session: AsyncSession, install_id: int) -> Install:
        """Take an active install out of service."""
        return await self._move_install(
            session, install_id, InstallStatus.ACTIVE, InstallStatus.SUSPENDED
        )

    async def resume_install(self, session: AsyncSession, install_id: int) -> Install:
        """Return a suspended install to service."""
        return await self._move_install(
            session, install_id, InstallStatus.SUSPENDED, InstallStatus.ACTIVE
        )
