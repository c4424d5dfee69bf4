# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
One-time codes: issuance with cooldown, single-use consumption, the two-phase
password reset, and the retention sweep.

Used/verified flags only change through conditional UPDATEs checked by rowcount,
so two callers racing on one code cannot both succeed. Nothing here commits;
the calling flow owns the transaction.
"""

import math
import secrets
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from luna_server.config import settings
from luna_server.errors import InvalidCodeError, TooSoonError
from luna_server.models import CodePurpose, OneTimeCode
from luna_server.models.timestamp import utcnow


def code_lifetime(purpose: CodePurpose) -> timedelta:
    if purpose == CodePurpose.DEVICE_VERIFY:
        return timedelta(minutes=settings.device_otp_expire_minutes)
    if purpose == CodePurpose.PASSWORD_RESET:
        return timedelta(minutes=settings.reset_otp_expire_minutes)
    return timedelta(minutes=settings.email_otp_expire_minutes)


def generate_code() -> str:
    """Six random decimal digits, uniform over 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


async def _mark(db: AsyncSession, record: OneTimeCode, now: datetime, **values) -> bool:
    """Set the given flags on an unused, unexpired record. False if another caller got there first."""
    stmt = (
        update(OneTimeCode)
        .where(
            OneTimeCode.id == record.id,
            OneTimeCode.used.is_(False),
            OneTimeCode.expires_at > now,
        )
        .execution_options(synchronize_session=False)
    )
    if values.get("verified") is True:
        stmt = stmt.where(OneTimeCode.verified.is_(False))
    result = await db.execute(stmt.values(**values))
    if result.rowcount != 1:
        return False
    for key, value in values.items():
        set_committed_value(record, key, value)
    return True


async def latest(db: AsyncSession, user_id: int, purpose: CodePurpose) -> OneTimeCode | None:
    """Most recently issued code of a purpose for a user."""
    result = await db.execute(
        select(OneTimeCode)
        .where(OneTimeCode.user_id == user_id, OneTimeCode.purpose == purpose)
        .order_by(OneTimeCode.created_at.desc(), OneTimeCode.id.desc())
        .limit(1)
    )
    return result.scalars().first()


async def issue(
    db: AsyncSession,
    user_id: int,
    purpose: CodePurpose,
    fingerprint: str | None = None,
) -> OneTimeCode:
    """
    Create a new code. Raises TooSoonError if a live code of the same purpose was
    issued for this user within the cooldown; the wait is measured from that code's
    creation time. Device codes cool down per fingerprint.
    """
    now = utcnow()
    cooldown = settings.otp_cooldown_seconds
    stmt = select(OneTimeCode).where(
        OneTimeCode.user_id == user_id,
        OneTimeCode.purpose == purpose,
        OneTimeCode.created_at > now - timedelta(seconds=cooldown),
        OneTimeCode.expires_at > now,
    )
    if purpose == CodePurpose.DEVICE_VERIFY:
        stmt = stmt.where(OneTimeCode.device_fingerprint == fingerprint)
    result = await db.execute(stmt.order_by(OneTimeCode.created_at.desc()).limit(1))
    recent = result.scalars().first()
    if recent is not None:
        elapsed = (now - recent.created_at).total_seconds()
        raise TooSoonError(max(1, math.ceil(cooldown - elapsed)))

    record = OneTimeCode(
        user_id=user_id,
        purpose=purpose,
        code=generate_code(),
        device_fingerprint=fingerprint if purpose == CodePurpose.DEVICE_VERIFY else None,
        expires_at=now + code_lifetime(purpose),
        created_at=now,
    )
    db.add(record)
    await db.flush()
    return record


async def consume(
    db: AsyncSession,
    code: str,
    user_id: int,
    purpose: CodePurpose,
    fingerprint: str | None = None,
) -> OneTimeCode:
    """Mark a matching unused, unexpired code as used. Raises InvalidCodeError otherwise."""
    if purpose == CodePurpose.DEVICE_VERIFY and not fingerprint:
        raise InvalidCodeError("Invalid code")
    now = utcnow()
    stmt = select(OneTimeCode).where(
        OneTimeCode.code == code,
        OneTimeCode.user_id == user_id,
        OneTimeCode.purpose == purpose,
        OneTimeCode.used.is_(False),
        OneTimeCode.expires_at > now,
    )
    if purpose == CodePurpose.DEVICE_VERIFY:
        stmt = stmt.where(OneTimeCode.device_fingerprint == fingerprint)
    result = await db.execute(stmt.order_by(OneTimeCode.created_at.desc()).limit(1))
    record = result.scalars().first()
    if record is None or not await _mark(db, record, now, used=True):
        raise InvalidCodeError("Invalid or expired code")
    return record


async def verify_reset(db: AsyncSession, code: str, user_id: int) -> OneTimeCode:
    """Password reset, phase one: confirm the code without allowing the password change yet."""
    now = utcnow()
    result = await db.execute(
        select(OneTimeCode)
        .where(
            OneTimeCode.code == code,
            OneTimeCode.user_id == user_id,
            OneTimeCode.purpose == CodePurpose.PASSWORD_RESET,
            OneTimeCode.used.is_(False),
            OneTimeCode.verified.is_(False),
            OneTimeCode.expires_at > now,
        )
        .order_by(OneTimeCode.created_at.desc())
        .limit(1)
    )
    record = result.scalars().first()
    if record is None or not await _mark(db, record, now, verified=True):
        raise InvalidCodeError("Invalid or expired code")
    return record


async def finalize_reset(db: AsyncSession, user_id: int) -> OneTimeCode:
    """
    Password reset, phase two: take the most recent verified, unused code and mark it
    used. Expiry is checked again since time has passed since phase one.
    """
    now = utcnow()
    result = await db.execute(
        select(OneTimeCode)
        .where(
            OneTimeCode.user_id == user_id,
            OneTimeCode.purpose == CodePurpose.PASSWORD_RESET,
            OneTimeCode.verified.is_(True),
            OneTimeCode.used.is_(False),
        )
        .order_by(OneTimeCode.created_at.desc())
        .limit(1)
    )
    record = result.scalars().first()
    if record is None:
        raise InvalidCodeError("No verified code found. Please verify your code first.")
    if record.expires_at <= now:
        raise InvalidCodeError("Code expired. Please request a new password reset.")
    if not await _mark(db, record, now, used=True):
        raise InvalidCodeError("Invalid or expired code")
    return record


async def sweep_expired_codes(db: AsyncSession, before: datetime) -> int:
    """Delete codes created before `before`, whatever their state. Returns the count."""
    result = await db.execute(
        delete(OneTimeCode)
        .where(OneTimeCode.created_at < before)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
