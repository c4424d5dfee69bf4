# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pytest fixtures. Tests run against a throwaway SQLite database (aiosqlite)."""

import os
import re
import tempfile

_tmpdir = tempfile.mkdtemp(prefix="luna-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_tmpdir}/luna-test.db"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["GEOIP_ENABLED"] = "false"
os.environ["CODE_CLEANUP_INTERVAL_HOURS"] = "0"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id.apps.googleusercontent.com"

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402

from luna_server.database import async_session_maker, engine  # noqa: E402
from luna_server.errors import InvalidIdTokenError  # noqa: E402
from luna_server.models import Base, User  # noqa: E402
from luna_server.rate_limit import TokenBucketLimiter  # noqa: E402
from luna_server.services.activity import ActivityRecorder  # noqa: E402
from luna_server.services.email import Mailer  # noqa: E402
from luna_server.services.geoip import GeoIpService  # noqa: E402
from luna_server.services.google import GoogleIdentity  # noqa: E402
from luna_server.services.sessions import AuthService, get_auth_service  # noqa: E402

CODE_RE = re.compile(r"code is: (\d{6})")


class RecordingMailer(Mailer):
    """Keeps sent messages instead of delivering them."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))

    def last_code(self, to: str) -> str:
        for addr, _subject, body in reversed(self.sent):
            if addr == to:
                return CODE_RE.search(body).group(1)
        raise AssertionError(f"no email sent to {to}")


class FakeGoogleVerifier:
    """Maps ID token strings to identities; anything else is rejected."""

    def __init__(self):
        self.identities: dict[str, GoogleIdentity] = {}

    async def verify(self, id_token: str) -> GoogleIdentity:
        if id_token not in self.identities:
            raise InvalidIdTokenError("Invalid Google ID token")
        return self.identities[id_token]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def db(anyio_backend):
    """Fresh tables and a session for each test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with async_session_maker() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def google():
    return FakeGoogleVerifier()


@pytest.fixture
def limiter():
    return TokenBucketLimiter(capacity=1000, period=60)


@pytest.fixture
def service(limiter, mailer, google):
    return AuthService(
        limiter=limiter,
        mailer=mailer,
        google=google,
        geoip=GeoIpService(),
        activity=ActivityRecorder(async_session_maker),
    )


@pytest.fixture
async def client(db, service):
    from luna_server.main import app

    app.dependency_overrides[get_auth_service] = lambda: service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def fetch_user():
    """Load a user in a fresh session, bypassing the test session's identity map."""

    async def _fetch(email: str) -> User | None:
        async with async_session_maker() as session:
            result = await session.execute(select(User).where(User.email == email))
            return result.scalar_one_or_none()

    return _fetch
