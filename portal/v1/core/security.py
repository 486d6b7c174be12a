import hmac
from dataclasses import dataclass

from fastapi import Depends, Header

from portal.config.settings import Settings, get_settings
from portal.v1.core.exceptions import UnauthorizedError


@dataclass
class AdminPrincipal:
    """Represents an operator allowed to administer the job queue."""

    name: str = "admin"


async def get_admin(
    x_admin_token: str | None = Header(None, alias="X-Admin-Token"),
    settings: Settings = Depends(get_settings),
) -> AdminPrincipal:
    """
    Dependency guarding job administration endpoints.

    With no ADMIN_TOKEN configured (development only; production settings
    refuse to load without one) every request is treated as an admin.
    """
    if not settings.admin_token:
        return AdminPrincipal(name="dev-admin")

    if not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode(), settings.admin_token.encode()
    ):
        raise UnauthorizedError("Admin token required")

    return AdminPrincipal()


# Convenience type alias for dependency injection
AdminDep = Depends(get_admin)
