"""
Job registry initialization.

Registers the provisioning pipeline handlers with the global job registry.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from portal.config.settings import Settings, settings
from portal.infra.database import utcnow
from portal.v1.core.registries import JobRegistry, job_registry
from portal.v1.provisioning.executor import ProvisioningExecutor
from portal.v1.provisioning.handlers import (
    ConfigureHandler,
    DeployHandler,
    ProvisionHandler,
    SetupLinkNotifier,
)

logger = logging.getLogger(__name__)


def register_job_handlers(
    app_settings: Settings | None = None,
    executor: ProvisioningExecutor | None = None,
    notifier: SetupLinkNotifier | None = None,
    registry: JobRegistry = job_registry,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    """Register all job handlers with the job registry."""
    app_settings = app_settings or settings
    logger.info("Registering job handlers")

    for handler_class in (ProvisionHandler, ConfigureHandler, DeployHandler):
        handler = handler_class(
            app_settings, executor=executor, notifier=notifier, clock=clock
        )
        if registry.has(handler.job_type) and registry.is_frozen():
            continue
        registry.register(handler.job_type, handler)

    logger.info(
        "Job handlers registered", extra={"registered_handlers": registry.list()}
    )
