# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Errors raised by the identity core and mapped to HTTP responses in main."""


class AuthError(Exception):
    """Base class for identity errors. Each subclass carries its HTTP status and a stable code."""

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConflictError(AuthError):
    """Duplicate email/username or a state that already holds (409)."""

    status_code = 409
    error_code = "conflict"


class UnauthorizedError(AuthError):
    """Bad credentials (401)."""

    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(UnauthorizedError):
    """No refresh token matches the presented string."""

    error_code = "invalid_token"


class TokenExpiredError(UnauthorizedError):
    """Refresh token is revoked or past its expiry."""

    error_code = "token_expired"


class InvalidIdTokenError(UnauthorizedError):
    """Identity provider token could not be verified. Terminal for the request."""

    error_code = "invalid_id_token"


class ForbiddenError(AuthError):
    """Account may not sign in yet, e.g. email not verified (403)."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(AuthError):
    """Unknown account, device or pending code (404)."""

    status_code = 404
    error_code = "not_found"


class InvalidCodeError(AuthError):
    """One-time code is wrong, already used or expired (400)."""

    status_code = 400
    error_code = "invalid_code"


class TooSoonError(AuthError):
    """A code of the same purpose was issued within the cooldown window (429)."""

    status_code = 429
    error_code = "too_soon"

    def __init__(self, seconds_remaining: int) -> None:
        super().__init__(
            f"Please wait {seconds_remaining} seconds before requesting a new code"
        )
        self.seconds_remaining = seconds_remaining


class RateLimitedError(AuthError):
    """Rate limit bucket exhausted (429)."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MailDeliveryError(AuthError):
    """Outbound email could not be delivered (503)."""

    status_code = 503
    error_code = "mail_delivery_failed"
