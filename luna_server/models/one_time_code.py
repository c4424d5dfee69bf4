# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""One-time code model (email verification, device verification, password reset)."""

import enum
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from luna_server.models.base import Base
from luna_server.models.timestamp import TimestampMixin, UTCDateTime


class CodePurpose(str, enum.Enum):
    EMAIL_VERIFY = "EMAIL_VERIFY"
    DEVICE_VERIFY = "DEVICE_VERIFY"
    PASSWORD_RESET = "PASSWORD_RESET"


class OneTimeCode(Base, TimestampMixin):
    """Six-digit single-use code. Kept after use until swept."""

    __tablename__ = "one_time_codes"
    __table_args__ = (
        Index("ix_one_time_codes_user_purpose", "user_id", "purpose", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    purpose: Mapped[CodePurpose] = mapped_column(Enum(CodePurpose, name="code_purpose"), nullable=False)
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    device_fingerprint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # PASSWORD_RESET only: code confirmed, password not yet changed
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
