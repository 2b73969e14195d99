"""
auth/notifier.py -- Outbound notifications for the credential lifecycle.

The core only needs something with send(purpose, account, payload). Delivery
(SMTP, a queue, a provider API) is somebody else's job; LogNotifier renders
the message and writes it to the log so local development and tests can see
what would have been sent.

Failures raised by a notifier never unwind a committed state change. The
service catches and logs them (see CredentialService._notify).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import Account

logger = logging.getLogger("credkeeper.notifier")

NOTIFY_VERIFY_EMAIL = "verify-email"
NOTIFY_RESEND_OTP = "resend-otp"
NOTIFY_RESET_PASSWORD = "reset-password"
NOTIFY_RESET_SUCCESS = "password-reset-success"

_SUBJECTS = {
    NOTIFY_VERIFY_EMAIL: "Verify your email",
    NOTIFY_RESEND_OTP: "Your new verification code",
    NOTIFY_RESET_PASSWORD: "Password reset request",
    NOTIFY_RESET_SUCCESS: "Your password was changed",
}


class Notifier(Protocol):
    def send(self, purpose: str, account: Account, payload: dict) -> None: ...


def render(purpose: str, account: Account, payload: dict) -> tuple[str, str]:
    """Return (subject, plain-text body) for a notification.

    Raises KeyError for an unknown purpose.
    """
    subject = _SUBJECTS[purpose]
    greeting = f"Hello {account.full_name}," if account.full_name else "Hello,"
    if purpose == NOTIFY_RESET_SUCCESS:
        body = (
            f"{greeting}\n\nYour password has been reset. If you did not do this, "
            "request a new reset immediately and review your account."
        )
    else:
        resetting = NOTIFY_RESET_PASSWORD in (purpose, payload.get("purpose"))
        action = "reset your password" if resetting else "verify your email"
        body = (
            f"{greeting}\n\nUse the code {payload['code']} to {action}. "
            f"It is valid for {payload['expires_in_minutes']} minutes. "
            "If you didn't request this, ignore this message."
        )
    return subject, body


class LogNotifier:
    """Render notifications and log them instead of delivering them.

    With show_codes=False (production) the body is not logged, since it
    carries a live one-time code.
    """

    def __init__(self, show_codes: bool = False) -> None:
        self.show_codes = show_codes

    def send(self, purpose: str, account: Account, payload: dict) -> None:
        subject, body = render(purpose, account, payload)
        if self.show_codes:
            logger.info("Notification to=%s subject=%r\n%s", account.email, subject, body)
        else:
            logger.info("Notification to=%s subject=%r", account.email, subject)
