# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pydantic schemas for API request/response."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from luna_server.models import AuthProvider, Role


# Requests
class RegisterRequest(BaseModel):
    email: EmailStr
    username: str = Field(min_length=3, max_length=64)
    password: str = Field(min_length=8, max_length=72)


class LoginRequest(BaseModel):
    email: str
    password: str


class VerifyEmailRequest(BaseModel):
    email: str
    otp: str = Field(min_length=6, max_length=6)


class EmailRequest(BaseModel):
    email: str


class VerifyDeviceRequest(BaseModel):
    email: str
    device_fingerprint: str = Field(min_length=1, max_length=255)
    otp: str = Field(min_length=6, max_length=6)


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class VerifyResetPasswordOtpRequest(BaseModel):
    email: str
    otp: str = Field(min_length=6, max_length=6)


class ResetPasswordRequest(BaseModel):
    email: str
    new_password: str = Field(min_length=8, max_length=72)


class GoogleAuthRequest(BaseModel):
    id_token: str


# Responses
class MessageResponse(BaseModel):
    message: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class LoginResponse(BaseModel):
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "bearer"
    requires_device_verification: bool = False
    message: str | None = None


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    role: Role
    auth_provider: AuthProvider
    email_verified: bool
    display_name: str | None = None
    bio: str | None = None
    avatar_url: str | None = None
    country_code: str | None = None
    country: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
