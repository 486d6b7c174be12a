"""
Job handlers for the provisioning pipeline.

provision -> configure -> deploy. Each step calls the ProvisioningExecutor,
records returned resource identifiers on the Install and enqueues the next
step; the last step moves the install to setup_pending and sends the setup
link. The pending->provisioning move is committed on its own before the first
provider call; every other write goes through the worker's session and is
committed together with the job's completion.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config.settings import Settings
from portal.infra.database import utcnow
from portal.v1.core.state_machines import INSTALL_MACHINE, InstallStatus
from portal.v1.infra.jobs.models import ProvisioningJob
from portal.v1.infra.jobs.results import JobResult
from portal.v1.infra.jobs.store import JobStore
from portal.v1.provisioning.executor import (
    RESOURCE_FIELDS,
    ProvisioningExecutor,
    UnconfiguredExecutor,
)
from portal.v1.provisioning.models import Customer, Install
from portal.v1.provisioning.setup_tokens import SetupTokenIssuer

logger = logging.getLogger(__name__)

PIPELINE = ("provision", "configure", "deploy")


class SetupLinkNotifier(Protocol):
    """Delivers the setup link to the customer (email, chat, ...)."""

    async def notify(self, customer: Customer, install: Install, setup_url: str) -> None:
        ...


class LoggingSetupLinkNotifier:
    """Default notifier: writes the link to the log."""

    async def notify(self, customer: Customer, install: Install, setup_url: str) -> None:
        logger.info(
            "Setup link ready",
            extra={
                "install_id": install.id,
                "customer_email": customer.email,
                "setup_url": setup_url,
            },
        )


class ProvisioningStepHandler:
    """
    Handler for one pipeline step.

    Payload is implicit: the job's install_id is all a step needs.
    """

    # Install states from which this step may run
    allowed_states: tuple[InstallStatus, ...] = (InstallStatus.PROVISIONING,)

    def __init__(
        self,
        job_type: str,
        settings: Settings,
        executor: ProvisioningExecutor | None = None,
        notifier: SetupLinkNotifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.job_type = job_type
        self.settings = settings
        self.executor = executor or UnconfiguredExecutor()
        self.notifier = notifier or LoggingSetupLinkNotifier()
        self.clock = clock
        self.store = JobStore(settings, clock=clock)
        self.issuer = SetupTokenIssuer(settings, clock=clock)

    @property
    def next_step(self) -> str | None:
        index = PIPELINE.index(self.job_type)
        return PIPELINE[index + 1] if index + 1 < len(PIPELINE) else None

    async def _load(
        self, session: AsyncSession, job: ProvisioningJob
    ) -> tuple[Install | None, Customer | None]:
        install = await session.get(Install, job.install_id)
        if install is None:
            return None, None
        customer = await session.get(Customer, install.customer_id)
        return install, customer

    async def _before_execute(self, session: AsyncSession, install: Install) -> None:
        """Hook for state changes that precede the provider call."""

    async def _after_execute(
        self, session: AsyncSession, install: Install, customer: Customer
    ) -> None:
        if self.next_step:
            await self.store.enqueue(session, install.id, self.next_step)

    async def handle(self, session: AsyncSession, job: ProvisioningJob) -> JobResult:
        install, customer = await self._load(session, job)
        if install is None or customer is None:
            return JobResult.failure(
                f"Install {job.install_id} not found", retryable=False
            )

        if InstallStatus(install.status) not in self.allowed_states:
            return JobResult.failure(
                f"Install {install.id} is {install.status}; cannot run {self.job_type}",
                retryable=False,
            )

        await self._before_execute(session, install)
        # No transaction stays open across the provider call
        await session.commit()

        timeout = self.settings.job_handler_timeout_s
        try:
            outcome = await asyncio.wait_for(
                self.executor.execute(self.job_type, install, customer),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Provisioning call timed out",
                extra={"install_id": install.id, "job_type": self.job_type},
            )
            return JobResult.failure(f"Provisioning call timed out after {timeout}s")

        if not outcome.success:
            return JobResult.failure(
                outcome.error or f"{self.job_type} failed", retryable=outcome.retryable
            )

        for name, value in outcome.resources.items():
            if name in RESOURCE_FIELDS:
                setattr(install, name, value)
            else:
                logger.debug("Ignoring unknown resource field", extra={"field": name})

        await self._after_execute(session, install, customer)

        logger.info(
            "Provisioning step succeeded",
            extra={
                "install_id": install.id,
                "job_type": self.job_type,
                "next_step": self.next_step,
            },
        )
        return JobResult.success(install_id=install.id, next_step=self.next_step)

    async def on_exhausted(
        self, session: AsyncSession, job: ProvisioningJob, error: str
    ) -> None:
        """Mark the install failed once its job can no longer succeed."""
        install = await session.get(Install, job.install_id)
        # A stray job must not take down an install this step never owned
        if install is None or InstallStatus(install.status) not in self.allowed_states:
            return

        INSTALL_MACHINE.ensure_transition(install.status, InstallStatus.FAILED)
        install.status = InstallStatus.FAILED.value
        install.error_message = error

        logger.error(
            "Install failed",
            extra={
                "install_id": install.id,
                "job_id": job.id,
                "job_type": job.job_type,
                "error": error,
            },
        )


class ProvisionHandler(ProvisioningStepHandler):
    allowed_states = (InstallStatus.PENDING, InstallStatus.PROVISIONING)

    def __init__(self, settings: Settings, **kwargs):
        super().__init__("provision", settings, **kwargs)

    async def _before_execute(self, session: AsyncSession, install: Install) -> None:
        """Move a pending install to provisioning, visible before the provider call."""
        if install.status != InstallStatus.PENDING.value:
            return

        INSTALL_MACHINE.ensure_transition(install.status, InstallStatus.PROVISIONING)
        stmt = (
            update(Install)
            .where(
                Install.id == install.id,
                Install.status == InstallStatus.PENDING.value,
            )
            .values(status=InstallStatus.PROVISIONING.value, error_message=None)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        await session.commit()
        await session.refresh(install)

        if result.rowcount > 0:
            logger.info("Install provisioning started", extra={"install_id": install.id})


class ConfigureHandler(ProvisioningStepHandler):
    def __init__(self, settings: Settings, **kwargs):
        super().__init__("configure", settings, **kwargs)


class DeployHandler(ProvisioningStepHandler):
    """Final step: resources are live, hand the install over to its admin."""

    def __init__(self, settings: Settings, **kwargs):
        super().__init__("deploy", settings, **kwargs)

    async def _after_execute(
        self, session: AsyncSession, install: Install, customer: Customer
    ) -> None:
        INSTALL_MACHINE.ensure_transition(install.status, InstallStatus.SETUP_PENDING)
        install.status = InstallStatus.SETUP_PENDING.value
        install.provisioned_at = self.clock()

        issued = await self.issuer.issue(session, install.id)
        await self.notifier.notify(customer, install, issued.setup_url)
