import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from portal.v1.core.exceptions import (
    SetupTokenAlreadyUsed,
    SetupTokenExpired,
    SetupTokenNotFound,
)
from portal.v1.core.state_machines import InstallStatus
from portal.v1.provisioning import crypto
from portal.v1.provisioning.models import SetupToken
from portal.v1.provisioning.setup_tokens import SetupTokenIssuer


@pytest.fixture
def issuer(test_settings, clock) -> SetupTokenIssuer:
    return SetupTokenIssuer(test_settings, clock=clock)


@pytest.fixture
async def install(make_install):
    return await make_install(status=InstallStatus.SETUP_PENDING)


@pytest.fixture
def issue(issuer, session_factory, install):
    async def _issue():
        async with session_factory() as session:
            issued = await issuer.issue(session, install.id)
            await session.commit()
            return issued

    return _issue


async def test_issue_stores_only_a_hash(issue, session_factory, install, clock):
    issued = await issue()

    assert issued.install_id == install.id
    assert issued.setup_url == f"https://portal.test/setup/{issued.token}"
    assert issued.expires_at == clock.now + timedelta(hours=24)

    async with session_factory() as session:
        row = (await session.execute(select(SetupToken))).scalar_one()
    assert row.token_hash == crypto.hash_token(issued.token)
    assert issued.token not in (row.token_hash, row.session_secret_encrypted)
    assert row.used is False


async def test_inspect_valid_token(issue, issuer, session_factory, install):
    issued = await issue()

    async with session_factory() as session:
        row = await issuer.inspect(session, issued.token)

    assert row.install_id == install.id


async def test_redeem_returns_secret_exactly_once(issue, issuer, session_factory):
    issued = await issue()

    async with session_factory() as session:
        redeemed = await issuer.redeem(session, issued.token)
        await session.commit()
    assert len(redeemed.session_secret) == 64

    async with session_factory() as session:
        with pytest.raises(SetupTokenAlreadyUsed):
            await issuer.redeem(session, issued.token)
        with pytest.raises(SetupTokenAlreadyUsed):
            await issuer.inspect(session, issued.token)


async def test_uncommitted_redeem_leaves_token_usable(issue, issuer, session_factory):
    issued = await issue()

    async with session_factory() as session:
        await issuer.redeem(session, issued.token)
        await session.rollback()

    async with session_factory() as session:
        await issuer.inspect(session, issued.token)


async def test_expired_token(issue, issuer, session_factory, clock):
    issued = await issue()

    clock.advance(hours=24)
    async with session_factory() as session:
        with pytest.raises(SetupTokenExpired):
            await issuer.inspect(session, issued.token)
        with pytest.raises(SetupTokenExpired):
            await issuer.redeem(session, issued.token)


async def test_unknown_token(issuer, session_factory):
    async with session_factory() as session:
        with pytest.raises(SetupTokenNotFound):
            await issuer.inspect(session, "nope")
        with pytest.raises(SetupTokenNotFound):
            await issuer.redeem(session, "nope")


async def test_reissue_revokes_previous_token(issue, issuer, session_factory):
    first = await issue()
    second = await issue()

    async with session_factory() as session:
        with pytest.raises(SetupTokenAlreadyUsed):
            await issuer.inspect(session, first.token)
        await issuer.inspect(session, second.token)


async def test_concurrent_redeems_succeed_once(issue, issuer, session_factory):
    issued = await issue()

    async def redeem():
        async with session_factory() as session:
            try:
                result = await issuer.redeem(session, issued.token)
            except SetupTokenAlreadyUsed:
                return None
            await session.commit()
            return result

    results = await asyncio.gather(redeem(), redeem(), redeem())

    assert len([r for r in results if r is not None]) == 1
