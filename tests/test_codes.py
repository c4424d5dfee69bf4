# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""One-time code issuance, consumption, password reset phases and the sweep."""

from datetime import timedelta

import asyncio

import pytest
from sqlalchemy import func, select, update

from luna_server.auth import hash_password
from luna_server.database import async_session_maker
from luna_server.errors import InvalidCodeError, TooSoonError
from luna_server.models import CodePurpose, OneTimeCode
from luna_server.models.timestamp import utcnow
from luna_server.services import codes, credentials

pytestmark = pytest.mark.anyio


async def _user_id(db, email="carol@example.com", username="carol") -> int:
    user = await credentials.create_user(db, email=email, username=username, password_hash=hash_password("pw"))
    await db.commit()
    return user.id


async def _shift(db, code_id: int, **deltas):
    """Move a code's timestamps into the past."""
    record = await db.get(OneTimeCode, code_id)
    values = {name: getattr(record, name) - delta for name, delta in deltas.items()}
    await db.execute(update(OneTimeCode).where(OneTimeCode.id == code_id).values(**values))
    await db.commit()
    await db.refresh(record)


async def test_issue_creates_six_digit_code_with_purpose_expiry(db):
    user_id = await _user_id(db)
    email_code = await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    device_code = await codes.issue(db, user_id, CodePurpose.DEVICE_VERIFY, "fp-1")
    await db.commit()

    assert len(email_code.code) == 6 and email_code.code.isdigit()
    assert 100000 <= int(email_code.code) <= 999999
    assert email_code.expires_at - email_code.created_at == timedelta(minutes=15)
    assert device_code.expires_at - device_code.created_at == timedelta(minutes=10)
    assert device_code.device_fingerprint == "fp-1"
    assert email_code.device_fingerprint is None


async def test_issue_within_cooldown_is_too_soon(db):
    user_id = await _user_id(db)
    first = await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    await db.commit()
    with pytest.raises(TooSoonError) as exc:
        await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    assert 0 < exc.value.seconds_remaining <= 60

    # Measured from the prior code's creation time
    await _shift(db, first.id, created_at=timedelta(seconds=45))
    with pytest.raises(TooSoonError) as exc:
        await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    assert exc.value.seconds_remaining <= 15

    # Other purposes have their own cooldown
    await codes.issue(db, user_id, CodePurpose.PASSWORD_RESET)


async def test_device_code_cooldown_is_per_fingerprint(db):
    user_id = await _user_id(db)
    await codes.issue(db, user_id, CodePurpose.DEVICE_VERIFY, "fp-phone")
    await db.commit()

    with pytest.raises(TooSoonError):
        await codes.issue(db, user_id, CodePurpose.DEVICE_VERIFY, "fp-phone")
    tablet = await codes.issue(db, user_id, CodePurpose.DEVICE_VERIFY, "fp-tablet")
    assert tablet.device_fingerprint == "fp-tablet"


async def test_issue_after_cooldown_succeeds(db):
    user_id = await _user_id(db)
    first = await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    await db.commit()
    await _shift(db, first.id, created_at=timedelta(seconds=61))
    second = await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    assert second.id != first.id


async def test_consume_is_single_use(db):
    user_id = await _user_id(db)
    record = await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    await db.commit()

    consumed = await codes.consume(db, record.code, user_id, CodePurpose.EMAIL_VERIFY)
    await db.commit()
    assert consumed.used is True
    with pytest.raises(InvalidCodeError):
        await codes.consume(db, record.code, user_id, CodePurpose.EMAIL_VERIFY)

    # Kept for audit until swept
    count = await db.scalar(select(func.count()).select_from(OneTimeCode))
    assert count == 1


async def test_expired_code_is_rejected_and_never_marked_used(db):
    user_id = await _user_id(db)
    record = await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    await db.commit()
    record_id, digits = record.id, record.code
    await _shift(db, record_id, expires_at=timedelta(minutes=16))

    with pytest.raises(InvalidCodeError):
        await codes.consume(db, digits, user_id, CodePurpose.EMAIL_VERIFY)
    await db.rollback()
    stored = await db.scalar(select(OneTimeCode.used).where(OneTimeCode.id == record_id))
    assert stored is False


async def test_code_is_scoped_to_purpose_and_user(db):
    user_id = await _user_id(db)
    other_id = await _user_id(db, "dave@example.com", "dave")
    record = await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    await db.commit()

    with pytest.raises(InvalidCodeError):
        await codes.consume(db, record.code, user_id, CodePurpose.PASSWORD_RESET)
    with pytest.raises(InvalidCodeError):
        await codes.consume(db, record.code, other_id, CodePurpose.EMAIL_VERIFY)


async def test_device_code_requires_matching_fingerprint(db):
    user_id = await _user_id(db)
    record = await codes.issue(db, user_id, CodePurpose.DEVICE_VERIFY, "fp-phone")
    await db.commit()

    with pytest.raises(InvalidCodeError):
        await codes.consume(db, record.code, user_id, CodePurpose.DEVICE_VERIFY, "fp-laptop")
    with pytest.raises(InvalidCodeError):
        await codes.consume(db, record.code, user_id, CodePurpose.DEVICE_VERIFY)
    consumed = await codes.consume(db, record.code, user_id, CodePurpose.DEVICE_VERIFY, "fp-phone")
    assert consumed.id == record.id


async def test_password_reset_is_two_phase(db):
    user_id = await _user_id(db)
    record = await codes.issue(db, user_id, CodePurpose.PASSWORD_RESET)
    await db.commit()

    # Nothing verified yet
    with pytest.raises(InvalidCodeError):
        await codes.finalize_reset(db, user_id)

    verified = await codes.verify_reset(db, record.code, user_id)
    await db.commit()
    assert verified.verified is True and verified.used is False

    # A verified code cannot be verified again
    with pytest.raises(InvalidCodeError):
        await codes.verify_reset(db, record.code, user_id)

    finalized = await codes.finalize_reset(db, user_id)
    await db.commit()
    assert finalized.id == record.id and finalized.used is True
    with pytest.raises(InvalidCodeError):
        await codes.finalize_reset(db, user_id)


async def test_finalize_rechecks_expiry(db):
    user_id = await _user_id(db)
    record = await codes.issue(db, user_id, CodePurpose.PASSWORD_RESET)
    await db.commit()
    await codes.verify_reset(db, record.code, user_id)
    await db.commit()
    await _shift(db, record.id, expires_at=timedelta(minutes=20))

    with pytest.raises(InvalidCodeError, match="expired"):
        await codes.finalize_reset(db, user_id)


async def test_latest_returns_most_recent_code(db):
    user_id = await _user_id(db)
    assert await codes.latest(db, user_id, CodePurpose.DEVICE_VERIFY) is None
    first = await codes.issue(db, user_id, CodePurpose.DEVICE_VERIFY, "fp-a")
    await db.commit()
    await _shift(db, first.id, created_at=timedelta(seconds=90))
    await codes.issue(db, user_id, CodePurpose.DEVICE_VERIFY, "fp-b")
    await db.commit()

    latest = await codes.latest(db, user_id, CodePurpose.DEVICE_VERIFY)
    assert latest.device_fingerprint == "fp-b"


async def test_sweep_deletes_by_age_regardless_of_state(db):
    user_id = await _user_id(db)
    old_unused = await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    old_used = await codes.issue(db, user_id, CodePurpose.PASSWORD_RESET)
    fresh = await codes.issue(db, user_id, CodePurpose.DEVICE_VERIFY, "fp")
    await db.commit()
    await codes.consume(db, old_used.code, user_id, CodePurpose.PASSWORD_RESET)
    await db.commit()
    await _shift(db, old_unused.id, created_at=timedelta(hours=25))
    await _shift(db, old_used.id, created_at=timedelta(hours=30))

    deleted = await codes.sweep_expired_codes(db, utcnow() - timedelta(hours=24))
    await db.commit()
    assert deleted == 2
    remaining = (await db.execute(select(OneTimeCode.id))).scalars().all()
    assert remaining == [fresh.id]


async def test_concurrent_consume_has_exactly_one_winner(db):
    user_id = await _user_id(db)
    record = await codes.issue(db, user_id, CodePurpose.EMAIL_VERIFY)
    await db.commit()
    digits = record.code

    async def attempt() -> str:
        async with async_session_maker() as session:
            try:
                await codes.consume(session, digits, user_id, CodePurpose.EMAIL_VERIFY)
                await session.commit()
            except InvalidCodeError:
                await session.rollback()
                return "invalid"
            return "ok"

    results = await asyncio.gather(attempt(), attempt())
    assert sorted(results) == ["invalid", "ok"]
