# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Device trust registry: which fingerprints a user has signed in from, and which are verified."""

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from luna_server.errors import NotFoundError
from luna_server.models import User, UserDevice
from luna_server.models.timestamp import utcnow


async def lookup(db: AsyncSession, user_id: int, fingerprint: str) -> UserDevice | None:
    result = await db.execute(
        select(UserDevice).where(
            UserDevice.user_id == user_id,
            UserDevice.device_fingerprint == fingerprint,
        )
    )
    return result.scalar_one_or_none()


async def count_verified(db: AsyncSession, user_id: int) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(UserDevice)
        .where(UserDevice.user_id == user_id, UserDevice.verified.is_(True))
    ) or 0


async def claim_first_device(db: AsyncSession, user_id: int) -> bool:
    """
    True for exactly one login of an account with no verified device yet.
    Concurrent first logins race on a conditional UPDATE of the user row; the
    losers get False and go through the new-device challenge.
    """
    if await count_verified(db, user_id) > 0:
        return False
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.first_device_trusted.is_(False))
        .values(first_device_trusted=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _insert(db: AsyncSession, device: UserDevice) -> bool:
    """Insert in a SAVEPOINT. False if a concurrent login already created this fingerprint."""
    try:
        async with db.begin_nested():
            db.add(device)
    except IntegrityError:
        return False
    return True


async def record_login(
    db: AsyncSession,
    user_id: int,
    fingerprint: str,
    ip_address: str | None,
    user_agent: str | None,
    auto_verify: bool,
) -> UserDevice:
    """
    Create the device (verified = auto_verify) or refresh its last-seen/IP/user agent.
    With auto_verify an existing unverified device is promoted; verified devices stay verified.
    """
    now = utcnow()
    device = await lookup(db, user_id, fingerprint)
    if device is None:
        device = UserDevice(
            user_id=user_id,
            device_fingerprint=fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            verified=auto_verify,
            verified_at=now if auto_verify else None,
            first_seen_at=now,
            last_seen_at=now,
        )
        if await _insert(db, device):
            return device
        device = await lookup(db, user_id, fingerprint)

    device.last_seen_at = now
    device.ip_address = ip_address
    if user_agent:
        device.user_agent = user_agent
    if auto_verify and not device.verified:
        device.verified = True
        device.verified_at = now
    await db.flush()
    return device


async def mark_verified(db: AsyncSession, user_id: int, fingerprint: str) -> UserDevice:
    device = await lookup(db, user_id, fingerprint)
    if device is None:
        raise NotFoundError("Device not found")
    now = utcnow()
    if not device.verified:
        device.verified = True
        device.verified_at = now
    device.last_seen_at = now
    await db.flush()
    return device
