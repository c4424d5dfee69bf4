# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Google Sign-In ID token verification."""

import logging
from dataclasses import dataclass

import httpx

from luna_server.config import settings
from luna_server.errors import InvalidIdTokenError

logger = logging.getLogger(__name__)

TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


@dataclass(frozen=True)
class GoogleIdentity:
    subject: str
    email: str | None
    email_verified: bool
    name: str | None = None
    picture: str | None = None


def _as_bool(value) -> bool:
    # tokeninfo returns "true"/"false" strings
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


class GoogleTokenVerifier:
    """
    Verifies a Google ID token with Google's tokeninfo endpoint, which checks the
    signature and expiry. Audience and issuer are checked here.
    """

    def __init__(
        self,
        client_id: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id or settings.google_client_id
        self.transport = transport

    async def verify(self, id_token: str) -> GoogleIdentity:
        if not self.client_id:
            logger.error("GOOGLE_CLIENT_ID not configured; rejecting Google sign-in")
            raise InvalidIdTokenError("Google Sign-In is not configured")
        if not id_token:
            raise InvalidIdTokenError("Invalid Google ID token")
        try:
            async with httpx.AsyncClient(
                timeout=settings.http_timeout, transport=self.transport
            ) as client:
                r = await client.get(TOKENINFO_URL, params={"id_token": id_token})
        except httpx.HTTPError as e:
            logger.warning("Google tokeninfo request failed: %s", e)
            raise InvalidIdTokenError("Failed to verify Google ID token") from e
        if r.status_code != 200:
            raise InvalidIdTokenError("Invalid Google ID token")
        try:
            claims = r.json()
        except ValueError as e:
            raise InvalidIdTokenError("Failed to verify Google ID token") from e
        if claims.get("aud") != self.client_id:
            logger.warning("Google ID token audience mismatch: %s", claims.get("aud"))
            raise InvalidIdTokenError("Invalid Google ID token")
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise InvalidIdTokenError("Invalid Google ID token")
        subject = claims.get("sub")
        if not subject:
            raise InvalidIdTokenError("Invalid Google ID token")
        return GoogleIdentity(
            subject=subject,
            email=claims.get("email"),
            email_verified=_as_bool(claims.get("email_verified")),
            name=claims.get("name"),
            picture=claims.get("picture"),
        )
