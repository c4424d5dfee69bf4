# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Access token claims and refresh token rotation."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from luna_server.auth import decode_token, hash_password
from luna_server.database import async_session_maker
from luna_server.errors import InvalidTokenError, TokenExpiredError
from luna_server.models import RefreshToken
from luna_server.models.timestamp import utcnow
from luna_server.services import credentials, tokens

pytestmark = pytest.mark.anyio


async def _active_user(db):
    user = await credentials.create_user(
        db,
        email="erin@example.com",
        username="erin",
        password_hash=hash_password("pw"),
        is_active=True,
        email_verified=True,
    )
    await db.commit()
    return user


async def _revoked(db, token: str) -> bool:
    return await db.scalar(select(RefreshToken.revoked).where(RefreshToken.token == token))


async def test_access_token_encodes_identity_and_role(db):
    user = await _active_user(db)
    payload = decode_token(tokens.issue_access_token(user))
    assert payload["sub"] == str(user.id)
    assert payload["email"] == "erin@example.com"
    assert payload["role"] == "USER"
    assert decode_token("not-a-jwt") is None


async def test_refresh_token_lasts_seven_days(db):
    user = await _active_user(db)
    record = await tokens.issue_refresh_token(db, user)
    await db.commit()
    lifetime = record.expires_at - utcnow()
    assert timedelta(days=6, hours=23) < lifetime <= timedelta(days=7)
    assert record.revoked is False


async def test_rotate_is_single_use(db):
    user = await _active_user(db)
    pair = await tokens.issue_pair(db, user)
    await db.commit()

    rotated_user, new_pair = await tokens.rotate(db, pair.refresh_token)
    await db.commit()
    assert rotated_user.id == user.id
    assert new_pair.refresh_token != pair.refresh_token
    assert await _revoked(db, pair.refresh_token) is True

    with pytest.raises(TokenExpiredError):
        await tokens.rotate(db, pair.refresh_token)


async def test_rotate_unknown_token_is_invalid(db):
    with pytest.raises(InvalidTokenError):
        await tokens.rotate(db, "no-such-token")


async def test_rotate_expired_token(db):
    user = await _active_user(db)
    record = await tokens.issue_refresh_token(db, user)
    await db.commit()
    await db.execute(
        update(RefreshToken)
        .where(RefreshToken.id == record.id)
        .values(expires_at=utcnow() - timedelta(seconds=1))
    )
    await db.commit()
    with pytest.raises(TokenExpiredError):
        await tokens.rotate(db, record.token)


async def test_reusing_revoked_token_revokes_all_active_tokens(db):
    user = await _active_user(db)
    first = await tokens.issue_pair(db, user)
    other_device = await tokens.issue_pair(db, user)
    await db.commit()
    _, second = await tokens.rotate(db, first.refresh_token)
    await db.commit()

    with pytest.raises(TokenExpiredError):
        await tokens.rotate(db, first.refresh_token)
    await db.commit()
    assert await _revoked(db, second.refresh_token) is True
    assert await _revoked(db, other_device.refresh_token) is True


async def test_revoke_for_logout(db):
    user = await _active_user(db)
    pair = await tokens.issue_pair(db, user)
    await db.commit()
    await tokens.revoke(db, pair.refresh_token)
    await db.commit()
    assert await _revoked(db, pair.refresh_token) is True
    with pytest.raises(InvalidTokenError):
        await tokens.revoke(db, "unknown")


async def test_concurrent_rotation_has_exactly_one_winner(db):
    user = await _active_user(db)
    pair = await tokens.issue_pair(db, user)
    await db.commit()

    async def attempt() -> str:
        async with async_session_maker() as session:
            try:
                await tokens.rotate(session, pair.refresh_token)
                await session.commit()
            except TokenExpiredError:
                await session.commit()
                return "expired"
            return "ok"

    results = await asyncio.gather(attempt(), attempt())
    assert sorted(results) == ["expired", "ok"]
