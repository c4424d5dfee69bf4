# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Session orchestration: registration, email verification, login with new-device
challenge, device verification, token refresh, password reset and Google sign-in.

Each flow runs its writes in one unit of work (commit on success, rollback on
error). Emails go out after the commit, so a delivery failure fails the request
but leaves the issued code in place for a resend. Activity is recorded last and
best-effort.
"""

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from luna_server.auth import hash_password, verify_password
from luna_server.config import settings
from luna_server.errors import (
    ConflictError,
    ForbiddenError,
    InvalidIdTokenError,
    NotFoundError,
    TokenExpiredError,
    UnauthorizedError,
)
from luna_server.models import AuthProvider, CodePurpose, User
from luna_server.rate_limit import TokenBucketLimiter, build_limiter
from luna_server.services import codes, credentials, devices, tokens
from luna_server.services.activity import ActivityRecorder
from luna_server.services.email import Mailer
from luna_server.services.geoip import GeoIpService
from luna_server.services.google import GoogleTokenVerifier
from luna_server.services.tokens import TokenPair

logger = logging.getLogger(__name__)

USERNAME_MAX_LENGTH = 20
USERNAME_MIN_LENGTH = 3


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair | None = None
    requires_device_verification: bool = False
    message: str | None = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def username_base(email: str, name: str | None) -> str:
    """Username stem from the display name, else the email local part: [a-z0-9], 3-20 chars."""
    source = name if name else email.split("@")[0]
    base = re.sub(r"[^a-z0-9]", "", source.lower())[:USERNAME_MAX_LENGTH]
    if len(base) < USERNAME_MIN_LENGTH:
        base = "user" + base
    return base


class AuthService:
    """Coordinates the credential store, one-time codes, device registry and token service."""

    def __init__(
        self,
        limiter: TokenBucketLimiter | None = None,
        mailer: Mailer | None = None,
        google: GoogleTokenVerifier | None = None,
        geoip: GeoIpService | None = None,
        activity: ActivityRecorder | None = None,
    ) -> None:
        self.limiter = limiter or build_limiter()
        self.mailer = mailer or Mailer()
        self.google = google or GoogleTokenVerifier()
        self.geoip = geoip or GeoIpService()
        self.activity = activity or ActivityRecorder()

    @asynccontextmanager
    async def _unit_of_work(self, db: AsyncSession):
        try:
            yield
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    async def _require_user(self, db: AsyncSession, email: str) -> User:
        user = await credentials.find_by_email(db, email)
        if user is None:
            raise NotFoundError("User not found")
        return user

    # Registration and email verification

    async def register(
        self, db: AsyncSession, email: str, username: str, password: str, ip: str | None = None
    ) -> User:
        """Create an unverified LOCAL account and email it a verification code. No tokens."""
        email = normalize_email(email)
        self.limiter.check("register", ip or "unknown")
        geo = await self.geoip.lookup(ip)
        async with self._unit_of_work(db):
            user = await credentials.create_user(
                db,
                email=email,
                username=username.strip(),
                password_hash=hash_password(password),
                is_active=False,
                email_verified=False,
                country_code=geo.country_code if geo else None,
                country=geo.country if geo else None,
            )
            code = await codes.issue(db, user.id, CodePurpose.EMAIL_VERIFY)
        logger.info("Registered user %s", user.id)
        await self.mailer.send_verification_code(user.email, code.code)
        await self.activity.record(user.id, "REGISTER")
        return user

    async def verify_email(
        self, db: AsyncSession, email: str, code: str, ip: str | None = None
    ) -> User:
        """Consume the email code and activate the account. Happens once per account."""
        email = normalize_email(email)
        self.limiter.check("verify_email", f"{ip}:{email}")
        async with self._unit_of_work(db):
            user = await self._require_user(db, email)
            if user.email_verified:
                raise ConflictError("Email already verified")
            await codes.consume(db, code, user.id, CodePurpose.EMAIL_VERIFY)
            result = await db.execute(
                update(User)
                .where(User.id == user.id, User.email_verified.is_(False))
                .values(email_verified=True, is_active=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Email already verified")
        await db.refresh(user)
        await self.activity.record(user.id, "EMAIL_VERIFIED")
        return user

    async def resend_otp(self, db: AsyncSession, email: str, ip: str | None = None) -> None:
        email = normalize_email(email)
        self.limiter.check("resend_otp", f"{ip}:{email}")
        async with self._unit_of_work(db):
            user = await self._require_user(db, email)
            if user.email_verified:
                raise ConflictError("Email already verified")
            code = await codes.issue(db, user.id, CodePurpose.EMAIL_VERIFY)
        await self.mailer.send_verification_code(user.email, code.code)

    # Login and device verification

    async def login(
        self,
        db: AsyncSession,
        email: str,
        password: str,
        fingerprint: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        """
        Check credentials, then admit the device:

        - no verified device on the account yet: this is the first login, trust the device;
        - device unknown or unverified: email a device code, return no tokens;
        - device verified: refresh last-seen and return tokens.
        """
        email = normalize_email(email)
        self.limiter.check("login", f"{ip}:{email}")
        challenge = None
        async with self._unit_of_work(db):
            user = await credentials.find_by_email(db, email)
            if user is None:
                raise UnauthorizedError("Invalid email or password")
            if not user.has_password_login:
                raise UnauthorizedError(
                    "This account uses Google Sign-In. Please sign in with Google."
                )
            if not verify_password(password, user.password_hash):
                raise UnauthorizedError("Invalid email or password")
            if not user.email_verified:
                raise ForbiddenError("Email not verified. Please verify your email first.")
            if not user.is_active:
                raise ForbiddenError("Account is disabled")

            if not settings.device_verification_enabled:
                pair = await tokens.issue_pair(db, user)
            elif await devices.claim_first_device(db, user.id):
                await devices.record_login(db, user.id, fingerprint, ip, user_agent, auto_verify=True)
                pair = await tokens.issue_pair(db, user)
            else:
                device = await devices.lookup(db, user.id, fingerprint)
                if device is None or not device.verified:
                    challenge = await codes.issue(db, user.id, CodePurpose.DEVICE_VERIFY, fingerprint)
                    await devices.record_login(db, user.id, fingerprint, ip, user_agent, auto_verify=False)
                    pair = None
                else:
                    await devices.record_login(db, user.id, fingerprint, ip, user_agent, auto_verify=False)
                    pair = await tokens.issue_pair(db, user)

        if challenge is not None:
            logger.info("New device for user %s from %s; verification required", user.id, ip)
            await self.mailer.send_device_code(
                user.email, challenge.code, f"IP: {ip}\nBrowser: {user_agent}"
            )
            await self.activity.record(user.id, "DEVICE_CHALLENGE", ip=ip)
            return LoginResult(
                requires_device_verification=True,
                message="New device detected. Please check your email for verification code.",
            )
        await self.activity.record(user.id, "LOGIN", ip=ip)
        return LoginResult(tokens=pair)

    async def verify_device(
        self, db: AsyncSession, email: str, fingerprint: str, code: str, ip: str | None = None
    ) -> TokenPair:
        """Consume the device code for this fingerprint, trust the device and return tokens."""
        email = normalize_email(email)
        self.limiter.check("verify_device", f"{ip}:{email}")
        async with self._unit_of_work(db):
            user = await self._require_user(db, email)
            await codes.consume(db, code, user.id, CodePurpose.DEVICE_VERIFY, fingerprint)
            await devices.mark_verified(db, user.id, fingerprint)
            pair = await tokens.issue_pair(db, user)
        await self.activity.record(user.id, "DEVICE_VERIFIED")
        return pair

    async def resend_device_otp(self, db: AsyncSession, email: str, ip: str | None = None) -> None:
        """Re-send a device code for the most recently challenged fingerprint."""
        email = normalize_email(email)
        self.limiter.check("resend_device_otp", f"{ip}:{email}")
        async with self._unit_of_work(db):
            user = await self._require_user(db, email)
            if not user.email_verified:
                raise ForbiddenError("Please verify your email first")
            pending = await codes.latest(db, user.id, CodePurpose.DEVICE_VERIFY)
            if pending is None or not pending.device_fingerprint:
                raise NotFoundError("No pending device verification found")
            fingerprint = pending.device_fingerprint
            device = await devices.lookup(db, user.id, fingerprint)
            if device is not None and device.verified:
                raise ConflictError("Device already verified")
            code = await codes.issue(db, user.id, CodePurpose.DEVICE_VERIFY, fingerprint)
        device_info = (
            f"IP: {device.ip_address}\nBrowser: {device.user_agent}" if device else f"Device: {fingerprint}"
        )
        await self.mailer.send_device_code(user.email, code.code, device_info)

    # Tokens

    async def refresh(self, db: AsyncSession, refresh_token: str) -> TokenPair:
        """Rotate a refresh token. A revoked token presented again may revoke the whole account's tokens."""
        rejected = None
        async with self._unit_of_work(db):
            try:
                _, pair = await tokens.rotate(db, refresh_token)
            except TokenExpiredError as e:
                # Keep any reuse-detection revocations
                rejected = e
        if rejected is not None:
            raise rejected
        return pair

    async def logout(self, db: AsyncSession, refresh_token: str) -> None:
        async with self._unit_of_work(db):
            record = await tokens.revoke(db, refresh_token)
        await self.activity.record(record.user_id, "LOGOUT")

    # Password reset

    async def forgot_password(self, db: AsyncSession, email: str, ip: str | None = None) -> None:
        email = normalize_email(email)
        self.limiter.check("forgot_password", f"{ip}:{email}")
        async with self._unit_of_work(db):
            user = await self._require_user(db, email)
            if not user.has_password_login:
                raise ConflictError(
                    "This account uses Google Sign-In. Password reset is not available."
                )
            code = await codes.issue(db, user.id, CodePurpose.PASSWORD_RESET)
        await self.mailer.send_password_reset_code(user.email, code.code)

    async def verify_reset_otp(
        self, db: AsyncSession, email: str, code: str, ip: str | None = None
    ) -> None:
        email = normalize_email(email)
        self.limiter.check("verify_reset_otp", f"{ip}:{email}")
        async with self._unit_of_work(db):
            user = await self._require_user(db, email)
            await codes.verify_reset(db, code, user.id)

    async def reset_password(
        self, db: AsyncSession, email: str, new_password: str, ip: str | None = None
    ) -> None:
        """Set the new password once a reset code was verified. Signs out every session."""
        email = normalize_email(email)
        self.limiter.check("reset_password", f"{ip}:{email}")
        async with self._unit_of_work(db):
            user = await self._require_user(db, email)
            if not user.has_password_login:
                raise ConflictError(
                    "This account uses Google Sign-In. Password reset is not available."
                )
            await codes.finalize_reset(db, user.id)
            user.password_hash = hash_password(new_password)
            revoked = await tokens.revoke_all_for_user(db, user.id)
        logger.info("Password reset for user %s; revoked %d refresh token(s)", user.id, revoked)
        await self.activity.record(user.id, "PASSWORD_RESET")

    # Google sign-in

    async def _unique_username(self, db: AsyncSession, email: str, name: str | None) -> str:
        base = username_base(email, name)
        candidate = base
        suffix = 1
        while await credentials.username_exists(db, candidate):
            suffix_str = str(suffix)
            candidate = base[: USERNAME_MAX_LENGTH - len(suffix_str)] + suffix_str
            suffix += 1
        return candidate

    async def google_auth(self, db: AsyncSession, id_token: str, ip: str | None = None) -> TokenPair:
        """
        Sign in with a Google ID token: by provider identity, else by linking the account
        with the same email, else by creating a new verified account.
        """
        self.limiter.check("google", ip or "unknown")
        identity = await self.google.verify(id_token)
        if not identity.email or not identity.email_verified:
            raise InvalidIdTokenError("Google account email is not verified")
        email = normalize_email(identity.email)

        async with self._unit_of_work(db):
            user = await credentials.find_by_provider_identity(db, AuthProvider.GOOGLE, identity.subject)
            if user is not None:
                event = "GOOGLE_LOGIN"
                if not user.is_active:
                    raise ForbiddenError("Account is disabled")
            else:
                user = await credentials.find_by_email(db, email)
                if user is not None:
                    # Google attests the email; the local password no longer signs in
                    user.auth_provider = AuthProvider.GOOGLE
                    user.provider_id = identity.subject
                    user.password_hash = None
                    user.email_verified = True
                    user.is_active = True
                    if not user.avatar_url and identity.picture:
                        user.avatar_url = identity.picture
                    event = "GOOGLE_LINKED"
                    logger.info("Linked Google identity to user %s", user.id)
                else:
                    geo = await self.geoip.lookup(ip)
                    user = await credentials.create_user(
                        db,
                        email=email,
                        username=await self._unique_username(db, email, identity.name),
                        provider=AuthProvider.GOOGLE,
                        provider_id=identity.subject,
                        is_active=True,
                        email_verified=True,
                        display_name=identity.name,
                        avatar_url=identity.picture,
                        country_code=geo.country_code if geo else None,
                        country=geo.country if geo else None,
                    )
                    event = "GOOGLE_SIGNUP"
                    logger.info("Created user %s from Google sign-in", user.id)
            pair = await tokens.issue_pair(db, user)
        await self.activity.record(user.id, event)
        return pair


_service: AuthService | None = None


def get_auth_service() -> AuthService:
    """FastAPI dependency: the process-wide AuthService."""
    global _service
    if _service is None:
        _service = AuthService()
    return _service
