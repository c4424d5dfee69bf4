# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Credential store: user identity records."""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from luna_server.errors import ConflictError
from luna_server.models import AuthProvider, User


async def get_user(db: AsyncSession, user_id: int) -> User | None:
    return await db.get(User, user_id)


async def find_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def find_by_username(db: AsyncSession, username: str) -> User | None:
    result = await db.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def find_by_provider_identity(
    db: AsyncSession, provider: AuthProvider, provider_id: str
) -> User | None:
    result = await db.execute(
        select(User).where(User.auth_provider == provider, User.provider_id == provider_id)
    )
    return result.scalar_one_or_none()


async def username_exists(db: AsyncSession, username: str) -> bool:
    result = await db.execute(select(User.id).where(User.username == username))
    return result.first() is not None


async def create_user(
    db: AsyncSession,
    email: str,
    username: str,
    password_hash: str | None = None,
    provider: AuthProvider = AuthProvider.LOCAL,
    provider_id: str | None = None,
    **profile,
) -> User:
    """
    Create and flush a user. Raises ConflictError if the email or username is taken.

    LOCAL users need a password hash; provider users need a provider id. Must be the
    first write of the transaction: a unique violation rolls the session back.
    """
    if provider == AuthProvider.LOCAL and not password_hash:
        raise ValueError("LOCAL accounts require a password hash")
    if provider != AuthProvider.LOCAL and not provider_id:
        raise ValueError("Provider accounts require a provider id")
    if await find_by_email(db, email):
        raise ConflictError("Email already exists")
    if await username_exists(db, username):
        raise ConflictError("Username already exists")
    user = User(
        email=email,
        username=username,
        password_hash=password_hash,
        auth_provider=provider,
        provider_id=provider_id,
        **profile,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as e:
        # Concurrent registration of the same email/username
        await db.rollback()
        raise ConflictError("Email or username already exists") from e
    return user
