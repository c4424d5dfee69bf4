# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Email sending service. Logs to console when SMTP not configured."""

import asyncio
import logging
import smtplib
from email.mime.text import MIMEText

from luna_server.config import settings
from luna_server.errors import MailDeliveryError

logger = logging.getLogger(__name__)


class Mailer:
    """Sends the identity emails. Delivery failures raise MailDeliveryError."""

    def _send_smtp(self, to: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = settings.smtp_from
        msg["To"] = to
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password or "")
            server.sendmail(settings.smtp_from, [to], msg.as_string())

    async def send(self, to: str, subject: str, body: str) -> None:
        """Send a plain-text email. Logs to console if SMTP not configured."""
        if not (settings.smtp_host and settings.smtp_user):
            logger.info("Email (SMTP not configured): To=%s Subject=%s Body=%s", to, subject, body[:200])
            return
        try:
            await asyncio.to_thread(self._send_smtp, to, subject, body)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", to, e)
            raise MailDeliveryError("Failed to send email. Please try again later.") from e
        logger.info("Email sent to %s: %s", to, subject)

    async def send_verification_code(self, to: str, code: str) -> None:
        await self.send(
            to,
            "Luna - Email Verification",
            f"Welcome to Luna!\n\nYour verification code is: {code}\n\n"
            f"This code will expire in {settings.email_otp_expire_minutes} minutes.\n\n"
            "If you didn't create an account, please ignore this email.",
        )

    async def send_device_code(self, to: str, code: str, device_info: str) -> None:
        await self.send(
            to,
            "Luna - New Device Login Detected",
            f"We detected a login from a new device:\n{device_info}\n\n"
            f"Your verification code is: {code}\n\n"
            f"This code will expire in {settings.device_otp_expire_minutes} minutes.\n\n"
            "If this wasn't you, please change your password immediately.",
        )

    async def send_password_reset_code(self, to: str, code: str) -> None:
        await self.send(
            to,
            "Luna - Password Reset",
            f"Your password reset code is: {code}\n\n"
            f"This code will expire in {settings.reset_otp_expire_minutes} minutes.\n\n"
            "If you didn't request a password reset, please ignore this email.",
        )
