"""
auth/notifier.py -- Identity notifications (verification, reset, approval).

The Notifier is an outbound collaborator: the identity services tell it what
happened and never wait on, or fail because of, delivery. dispatch() is the
one place that enforces that -- it logs a failed send and returns.

LogNotifier renders the message and writes it to the log instead of a mail
transport. Recipients are redacted in the log line; the body is logged at
DEBUG only because it contains a live single-use link.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from core.config import Settings, get_settings

logger = logging.getLogger("shepherd.auth.notifier")


class Notifier:
    """Interface for identity notifications. Subclass and override all four."""

    def send_verification(self, email: str, token: str) -> None:
        raise NotImplementedError

    def send_password_reset(self, email: str, token: str) -> None:
        raise NotImplementedError

    def send_registration_alert(self, email: str, name: str) -> None:
        raise NotImplementedError

    def send_approved(self, email: str, first_name: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Development notifier: renders each message and logs it."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def send_verification(self, email: str, token: str) -> None:
        url = f"{self.settings.frontend_url}/verify-email?token={token}"
        self._send(
            email,
            "Verify Your Email - Shepherd App",
            f"Welcome to Shepherd App! Please verify your email by visiting: {url}. "
            "This link will expire in 24 hours.",
        )

    def send_password_reset(self, email: str, token: str) -> None:
        url = f"{self.settings.frontend_url}/reset-password?token={token}"
        self._send(
            email,
            "Password Reset - Shepherd App",
            f"You requested to reset your password. Visit: {url}. This link will expire in 1 hour.",
        )

    def send_registration_alert(self, email: str, name: str) -> None:
        url = f"{self.settings.frontend_url}/admin/users/pending"
        self._send(
            self.settings.admin_email,
            "New User Registration Pending Approval",
            f"New user registration: {name} ({email}). View pending users at: {url}",
        )

    def send_approved(self, email: str, first_name: str) -> None:
        url = f"{self.settings.frontend_url}/login"
        self._send(
            email,
            "Your Account Has Been Approved - Shepherd App",
            f"Hi {first_name}, your account has been approved! Login at: {url}",
        )

    def _send(self, to: str, subject: str, text: str) -> None:
        logger.info("Email queued to=%s subject=%r", redact_email(to), subject)
        logger.debug("Email body: %s", text)


def redact_email(email: str) -> str:
    """a.person@example.org -> a.***@example.org (keeps logs free of full addresses)."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def dispatch(send: Callable[..., None], *args) -> None:
    """Fire-and-forget: run a notifier call, log and drop any failure."""
    try:
        send(*args)
    except Exception:
        logger.exception("Notification %s failed", getattr(send, "__name__", "send"))
