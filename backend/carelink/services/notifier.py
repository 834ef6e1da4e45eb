"""Outbound notifications: verification codes and invite links.

Message bodies never contain patient data, only codes and links. The
transport is injected; ``SmtpNotifier`` is the production implementation.
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime
from email.mime.text import MIMEText
from typing import Protocol

from carelink.config import Settings
from carelink.errors import DeliveryError

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, to: str, subject: str, body: str) -> None:
        """Deliver a message or raise DeliveryError."""
        ...

    def close(self) -> None: ...


class SmtpNotifier:
    """Sends plain-text email over SMTP with STARTTLS and a bounded timeout."""

    __slots__ = ("_host", "_port", "_user", "_password", "_sender", "_timeout")

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        sender: str = "",
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._sender = sender or user
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> SmtpNotifier:
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.smtp_from,
            timeout=settings.smtp_timeout_seconds,
        )

    def send(self, to: str, subject: str, body: str) -> None:
        if not self._host:
            logger.warning("SMTP not configured, cannot send message to %s", mask_email(to))
            raise DeliveryError("SMTP not configured")

        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self._sender
        msg["To"] = to

        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                server.starttls()
                if self._user:
                    server.login(self._user, self._password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.exception("Failed to send message to %s", mask_email(to))
            raise DeliveryError("SMTP delivery failed") from exc

        logger.info("Message sent to %s: %s", mask_email(to), subject)

    def close(self) -> None:
        return None


def mask_email(address: str) -> str:
    """``jan@example.nl`` -> ``***@example.nl``."""
    _, sep, domain = address.rpartition("@")
    return f"***@{domain}" if sep and domain else "***"


def compose_code_message(code: str, minutes_valid: int) -> tuple[str, str]:
    subject = "CareLink - your verification code"
    body = (
        f"Your verification code is: {code}\n\n"
        f"This code is valid for {minutes_valid} minutes.\n\n"
        f"If you did not request this code you can ignore this message."
    )
    return subject, body


def compose_disclosure_message(access_url: str, pathways: list[str]) -> tuple[str, str]:
    subject = "CareLink - a secure message is waiting for you"
    body = (
        f"A secure patient message ({', '.join(pathways)}) is available "
        f"for you.\n\n"
        f"Open it here: {access_url}\n\n"
        f"You will be asked for a one-time verification code."
    )
    return subject, body


def compose_invite_message(
    candidate_name: str,
    initials: str,
    city: str,
    pathways: list[str],
    urgency: str,
    view_url: str,
    expires_at: datetime,
) -> tuple[str, str]:
    prefix = "URGENT: " if urgency == "urgent" else ""
    subject = f"{prefix}CareLink - new referral request ({initials}, {city})"
    body = (
        f"Dear {candidate_name},\n\n"
        f"A new patient referral is available: {initials} from {city}, "
        f"for {', '.join(pathways)}.\n\n"
        f"Several providers have received this request. The first to accept "
        f"is assigned the patient.\n\n"
        f"View and accept: {view_url}\n"
        f"This request expires on {expires_at:%Y-%m-%d %H:%M} UTC."
    )
    return subject, body
