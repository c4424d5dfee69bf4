#!/usr/bin/env python3
# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Create an admin account. Run: python -m luna_server.scripts.create_admin"""

import asyncio
import getpass
import sys

from luna_server.auth import hash_password
from luna_server.database import async_session_maker, init_db
from luna_server.errors import ConflictError
from luna_server.models import Role
from luna_server.services import credentials
from luna_server.services.sessions import normalize_email


async def main():
    await init_db()
    username = input("Admin username: ").strip()
    email = normalize_email(input("Admin email: "))
    password = getpass.getpass("Password: ")
    if not username or not email or not password:
        print("All fields required")
        sys.exit(1)

    async with async_session_maker() as session:
        try:
            await credentials.create_user(
                session,
                email=email,
                username=username,
                password_hash=hash_password(password),
                role=Role.ADMIN,
                is_active=True,
                email_verified=True,
            )
        except ConflictError as e:
            print(e.message)
            sys.exit(1)
        await session.commit()
        print("Admin user created.")


if __name__ == "__main__":
    asyncio.run(main())
