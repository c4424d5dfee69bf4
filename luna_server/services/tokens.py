# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Token service: signed access tokens and rotating opaque refresh tokens."""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from luna_server.auth import create_access_token
from luna_server.config import settings
from luna_server.errors import InvalidTokenError, TokenExpiredError
from luna_server.models import RefreshToken, User
from luna_server.models.timestamp import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


def issue_access_token(user: User) -> str:
    return create_access_token({"sub": str(user.id), "email": user.email, "role": user.role.value})


async def issue_refresh_token(db: AsyncSession, user: User) -> RefreshToken:
    record = RefreshToken(
        user_id=user.id,
        token=secrets.token_urlsafe(48),
        expires_at=utcnow() + timedelta(days=settings.refresh_token_expire_days),
        revoked=False,
    )
    db.add(record)
    await db.flush()
    return record


async def issue_pair(db: AsyncSession, user: User) -> TokenPair:
    refresh = await issue_refresh_token(db, user)
    return TokenPair(access_token=issue_access_token(user), refresh_token=refresh.token)


async def _find(db: AsyncSession, token: str) -> RefreshToken | None:
    result = await db.execute(
        select(RefreshToken)
        .where(RefreshToken.token == token)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _revoke_record(db: AsyncSession, record: RefreshToken) -> bool:
    """Conditionally revoke. False if it was already revoked (lost a race)."""
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.id == record.id, RefreshToken.revoked.is_(False))
        .values(revoked=True)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    set_committed_value(record, "revoked", True)
    return True


async def revoke_all_for_user(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
        .values(revoked=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def revoke(db: AsyncSession, token: str) -> RefreshToken:
    """Revoke a refresh token (logout). Revoking twice is a no-op."""
    record = await _find(db, token)
    if record is None:
        raise InvalidTokenError("Invalid refresh token")
    await _revoke_record(db, record)
    return record


async def rotate(db: AsyncSession, token: str) -> tuple[User, TokenPair]:
    """
    Revoke `token` and issue its replacement. Raises InvalidTokenError for an unknown
    token and TokenExpiredError for a revoked or expired one.
    """
    record = await _find(db, token)
    if record is None:
        raise InvalidTokenError("Invalid refresh token")
    if record.revoked:
        if settings.refresh_reuse_revokes_all:
            count = await revoke_all_for_user(db, record.user_id)
            logger.warning(
                "Revoked refresh token reused for user %s; revoked %d active token(s)",
                record.user_id,
                count,
            )
        raise TokenExpiredError("Refresh token expired or revoked")
    if record.expires_at <= utcnow():
        raise TokenExpiredError("Refresh token expired or revoked")
    if not await _revoke_record(db, record):
        raise TokenExpiredError("Refresh token expired or revoked")
    user = await db.get(User, record.user_id)
    if user is None or not user.is_active:
        raise InvalidTokenError("Invalid refresh token")
    return user, await issue_pair(db, user)
