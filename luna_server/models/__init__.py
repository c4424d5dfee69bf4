# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database models."""

from luna_server.models.base import Base
from luna_server.models.user import AuthProvider, Role, User
from luna_server.models.one_time_code import CodePurpose, OneTimeCode
from luna_server.models.device import UserDevice
from luna_server.models.refresh_token import RefreshToken
from luna_server.models.activity import Activity

__all__ = [
    "Base",
    "AuthProvider",
    "Role",
    "User",
    "CodePurpose",
    "OneTimeCode",
    "UserDevice",
    "RefreshToken",
    "Activity",
]
