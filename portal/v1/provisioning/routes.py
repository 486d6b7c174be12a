"""
Checkout, install status and setup link endpoints.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config.settings import Settings, SettingsDep
from portal.infra.database import get_session
from portal.v1.core.exceptions import create_success_response
from portal.v1.core.security import AdminDep, AdminPrincipal
from portal.v1.provisioning.models import Install
from portal.v1.provisioning.schemas import (
    CheckoutPrefill,
    CheckoutRequest,
    CheckoutResponse,
    InstallResponse,
    SetupCompleteResponse,
    SetupTokenStatus,
)
from portal.v1.provisioning.service import ProvisioningService

logger = logging.getLogger(__name__)
installs_router = APIRouter(prefix="/installs", tags=["installs"])
setup_router = APIRouter(prefix="/setup", tags=["setup"])
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])


def get_provisioning_service(settings: Settings = SettingsDep) -> ProvisioningService:
    return ProvisioningService(settings)


async def _install_payload(
    session: AsyncSession, service: ProvisioningService, install: Install
) -> dict[str, Any]:
    response = InstallResponse.model_validate(install)
    response.pending_jobs = await service.pending_job_count(session, install.id)
    return response.model_dump(mode="json")


@installs_router.get("/by-order/{order_id}", response_model=dict)
async def get_install_by_order(
    order_id: str,
    session: AsyncSession = Depends(get_session),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> dict[str, Any]:
    """Poll provisioning progress right after checkout."""
    install = await service.get_install_by_order(session, order_id)
    return create_success_response(data=await _install_payload(session, service, install))


@installs_router.get("/{install_id}", response_model=dict)
async def get_install(
    install_id: int,
    email: str = Query(..., min_length=3, description="Customer email"),
    session: AsyncSession = Depends(get_session),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> dict[str, Any]:
    """Get install status; only visible to the owning customer."""
    install = await service.get_install_for_customer(session, install_id, email)
    return create_success_response(data=await _install_payload(session, service, install))


@installs_router.post("/{install_id}/suspend", response_model=dict)
async def suspend_install(
    install_id: int,
    admin: AdminPrincipal = AdminDep,
    session: AsyncSession = Depends(get_session),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> dict[str, Any]:
    """Take an active install out of service (admin only)."""
    install = await service.suspend_install(session, install_id)
    logger.info(
        "Install suspended via API", extra={"install_id": install_id, "admin": admin.name}
    )
    return create_success_response(
        data=await _install_payload(session, service, install), message="Install suspended"
    )


@installs_router.post("/{install_id}/resume", response_model=dict)
async def resume_install(
    install_id: int,
    admin: AdminPrincipal = AdminDep,
    session: AsyncSession = Depends(get_session),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> dict[str, Any]:
    """Return a suspended install to service (admin only)."""
    install = await service.resume_install(session, install_id)
    logger.info(
        "Install resumed via API", extra={"install_id": install_id, "admin": admin.name}
    )
    return create_success_response(
        data=await _install_payload(session, service, install), message="Install resumed"
    )


@setup_router.get("/{token}", response_model=dict)
async def validate_setup_token(
    token: str,
    session: AsyncSession = Depends(get_session),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> dict[str, Any]:
    """Check a setup link before showing the setup form."""
    row = await service.issuer.inspect(session, token)
    status = SetupTokenStatus(valid=True, install_id=row.install_id, expires_at=row.expires_at)
    return create_success_response(data=status.model_dump(mode="json"))


@setup_router.post("/{token}", response_model=dict)
async def complete_setup(
    token: str,
    session: AsyncSession = Depends(get_session),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> dict[str, Any]:
    """Redeem a setup link and activate the install."""
    completion = await service.complete_setup(session, token)
    response = SetupCompleteResponse(
        install_id=completion.install_id,
        domain=completion.domain,
        session_secret=completion.session_secret,
    )
    return create_success_response(data=response.model_dump(), message="Setup complete")


@checkout_router.post("", response_model=dict)
async def checkout(
    request: CheckoutRequest,
    session: AsyncSession = Depends(get_session),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> dict[str, Any]:
    """Create a provider order and a pending purchase for the checkout widget."""
    order = await service.create_purchase(
        session, request.email, request.name, provider_name=request.provider
    )
    response = CheckoutResponse(
        purchase_id=order.purchase_id,
        provider=order.provider,
        order_id=order.order_id,
        amount=order.amount,
        currency=order.currency,
        key_id=order.key_id,
        prefill=CheckoutPrefill(name=order.customer_name, email=order.customer_email),
        notes={"customer_id": str(order.customer_id)},
    )
    return create_success_response(data=response.model_dump(), message="Checkout created")
