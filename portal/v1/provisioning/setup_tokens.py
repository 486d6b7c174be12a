"""
One-time setup tokens for the first admin login of an install.

The plaintext token only ever exists in the setup link; the database keeps a
BLAKE2b hash of it.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config.settings import Settings
from portal.infra.database import utcnow
from portal.v1.core.exceptions import (
    SetupTokenAlreadyUsed,
    SetupTokenExpired,
    SetupTokenNotFound,
)
from portal.v1.provisioning import crypto
from portal.v1.provisioning.models import SetupToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    install_id: int
    expires_at: datetime
    setup_url: str


@dataclass(frozen=True)
class RedeemedToken:
    install_id: int
    session_secret: str


class SetupTokenIssuer:
    """Issues, inspects and redeems setup tokens.

    Methods flush but never commit: a token is issued inside the provisioning
    job that finishes the install, and redeemed inside the setup completion
    that activates it.
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.clock = clock

    def setup_url(self, token: str) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/setup/{token}"

    async def issue(self, session: AsyncSession, install_id: int) -> IssuedToken:
        now = self.clock()
        token = crypto.generate_token()
        session_secret = crypto.generate_token()
        encrypted, nonce = crypto.encrypt(
            session_secret, self.settings.encryption_master_key
        )
        expires_at = now + timedelta(hours=self.settings.setup_link_expiry_hours)

        # Job retries can mint several tokens; only the newest stays usable
        revoked = await session.execute(
            update(SetupToken)
            .where(SetupToken.install_id == install_id, SetupToken.used.is_(False))
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )

        session.add(
            SetupToken(
                install_id=install_id,
                token_hash=crypto.hash_token(token),
                session_secret_encrypted=encrypted,
                session_secret_nonce=nonce,
                used=False,
                created_at=now,
                expires_at=expires_at,
            )
        )
        await session.flush()

        logger.info(
            "Setup token issued",
            extra={
                "install_id": install_id,
                "expires_at": expires_at.isoformat(),
                "revoked_tokens": revoked.rowcount,
            },
        )
        return IssuedToken(
            token=token,
            install_id=install_id,
            expires_at=expires_at,
            setup_url=self.setup_url(token),
        )

    async def _classify_failure(self, session: AsyncSession, token_hash: str) -> None:
        result = await session.execute(
            select(SetupToken).where(SetupToken.token_hash == token_hash)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise SetupTokenNotFound()
        if row.is_expired(self.clock()):
            raise SetupTokenExpired()
        raise SetupTokenAlreadyUsed()

    async def inspect(self, session: AsyncSession, token: str) -> SetupToken:
        """Validate a token without consuming it."""
        token_hash = crypto.hash_token(token)
        result = await session.execute(
            select(SetupToken).where(SetupToken.token_hash == token_hash)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise SetupTokenNotFound()
        if row.is_expired(self.clock()):
            raise SetupTokenExpired()
        if row.used:
            raise SetupTokenAlreadyUsed()
        return row

    async def redeem(self, session: AsyncSession, token: str) -> RedeemedToken:
        """
        Consume a token exactly once and return its decrypted session secret.

        A single conditional UPDATE marks the token used; when it matches
        nothing the row is re-read only to pick the right error.
        """
        now = self.clock()
        token_hash = crypto.hash_token(token)

        result = await session.execute(
            update(SetupToken)
            .where(
                SetupToken.token_hash == token_hash,
                SetupToken.used.is_(False),
                SetupToken.expires_at > now,
            )
            .values(used=True, used_at=now)
            .returning(
                SetupToken.install_id,
                SetupToken.session_secret_encrypted,
                SetupToken.session_secret_nonce,
            )
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await self._classify_failure(session, token_hash)

        install_id, encrypted, nonce = row
        logger.info("Setup token redeemed", extra={"install_id": install_id})
        return RedeemedToken(
            install_id=install_id,
            session_secret=crypto.decrypt(
                encrypted, nonce, self.settings.encryption_master_key
            ),
        )
