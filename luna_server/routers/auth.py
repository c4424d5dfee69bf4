# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication API routes."""

from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from luna_server.api.schemas import (
    EmailRequest,
    GoogleAuthRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    VerifyDeviceRequest,
    VerifyEmailRequest,
    VerifyResetPasswordOtpRequest,
)
from luna_server.auth import get_current_user_id
from luna_server.database import get_db
from luna_server.errors import NotFoundError
from luna_server.rate_limit import client_ip
from luna_server.services import credentials
from luna_server.services.sessions import AuthService, get_auth_service
from luna_server.services.tokens import TokenPair

router = APIRouter(prefix="/auth", tags=["auth"])


def _tokens(pair: TokenPair) -> TokenResponse:
    return TokenResponse(access_token=pair.access_token, refresh_token=pair.refresh_token)


@router.post("/register", response_model=MessageResponse)
async def register(
    data: RegisterRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Create an account. The user must verify their email before logging in."""
    await service.register(db, data.email, data.username, data.password, client_ip(request))
    return MessageResponse(
        message="Registration successful. Please check your email for verification code."
    )


@router.post("/verify-email", response_model=MessageResponse)
async def verify_email(
    data: VerifyEmailRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Verify email with the one-time code. Enables login."""
    await service.verify_email(db, data.email, data.otp, client_ip(request))
    return MessageResponse(message="Email verified successfully. You can now login.")


@router.post("/resend-otp", response_model=MessageResponse)
async def resend_otp(
    data: EmailRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await service.resend_otp(db, data.email, client_ip(request))
    return MessageResponse(message="Verification code sent to your email.")


@router.post("/login", response_model=LoginResponse)
async def login(
    data: LoginRequest,
    request: Request,
    x_device_fingerprint: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """Authenticate. New devices get an emailed code instead of tokens."""
    ip = client_ip(request)
    fingerprint = x_device_fingerprint or f"unknown-{ip}"
    result = await service.login(
        db,
        data.email,
        data.password,
        fingerprint,
        ip,
        request.headers.get("user-agent"),
    )
    if result.requires_device_verification:
        return LoginResponse(requires_device_verification=True, message=result.message)
    return LoginResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        message="Login successful",
    )


@router.post("/verify-device", response_model=TokenResponse)
async def verify_device(
    data: VerifyDeviceRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Verify a new device with the emailed code and return tokens."""
    pair = await service.verify_device(
        db, data.email, data.device_fingerprint, data.otp, client_ip(request)
    )
    return _tokens(pair)


@router.post("/resend-device-otp", response_model=MessageResponse)
async def resend_device_otp(
    data: EmailRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await service.resend_device_otp(db, data.email, client_ip(request))
    return MessageResponse(message="Device verification code sent to your email.")


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    data: RefreshTokenRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Exchange a refresh token for a new access/refresh pair. The old refresh token is revoked."""
    pair = await service.refresh(db, data.refresh_token)
    return _tokens(pair)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    data: RefreshTokenRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await service.logout(db, data.refresh_token)
    return MessageResponse(message="Logged out.")


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    data: EmailRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Request a password reset code by email."""
    await service.forgot_password(db, data.email, client_ip(request))
    return MessageResponse(message="Password reset code sent to your email.")


@router.post("/verify-reset-password-otp", response_model=MessageResponse)
async def verify_reset_password_otp(
    data: VerifyResetPasswordOtpRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await service.verify_reset_otp(db, data.email, data.otp, client_ip(request))
    return MessageResponse(message="Code verified. You can now set a new password.")


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    data: ResetPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Set a new password after verifying the reset code."""
    await service.reset_password(db, data.email, data.new_password, client_ip(request))
    return MessageResponse(message="Password reset successfully.")


@router.post("/google", response_model=TokenResponse)
async def google_auth(
    data: GoogleAuthRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Sign in (or sign up) with a Google ID token."""
    pair = await service.google_auth(db, data.id_token, client_ip(request))
    return _tokens(pair)


@router.get("/me", response_model=UserResponse, status_code=status.HTTP_200_OK)
async def get_me(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    """Get current user profile."""
    user = await credentials.get_user(db, user_id)
    if not user:
        raise NotFoundError("User not found")
    return UserResponse.model_validate(user)
