"""
auth/delivery.py -- Out-of-band delivery of one-time codes.

The auth service hands each freshly issued code to a CodeDelivery. Delivery
failure is reported (False + an error log) but never rolls back the code:
the user can ask for a resend.

Implementations:
  LoggingDelivery  -- development default. Logs the code when DEBUG is on,
                      otherwise only logs that a code was issued.
  SendGridDelivery -- emails the code through the SendGrid API. Selected by
                      build_delivery() when SENDGRID_API_KEY is set.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Email, Mail, To

from auth.models import RESET_PASSWORD, Account
from core.config import Settings, get_settings

logger = logging.getLogger("eventgate.auth.delivery")

_SUBJECTS = {
    RESET_PASSWORD: "Your Eventgate password reset code",
}
_DEFAULT_SUBJECT = "Your Eventgate verification code"


class CodeDelivery(Protocol):
    def send_code(self, account: Account, code: str, purpose: str) -> bool: ...


class LoggingDelivery:
    def __init__(self, reveal_codes: bool = False) -> None:
        self.reveal_codes = reveal_codes

    def send_code(self, account: Account, code: str, purpose: str) -> bool:
        if self.reveal_codes:
            logger.info("[dev] %s code for %s: %s", purpose, account.email, code)
        else:
            logger.info("%s code issued for account %d (no mail transport configured)", purpose, account.id)
        return True


class SendGridDelivery:
    def __init__(self, api_key: str, from_address: str, from_name: str, expire_minutes: int = 10) -> None:
        self.client = SendGridAPIClient(api_key)
        self.sender = Email(from_address, from_name)
        self.expire_minutes = expire_minutes

    def send_code(self, account: Account, code: str, purpose: str) -> bool:
        subject = _SUBJECTS.get(purpose, _DEFAULT_SUBJECT)
        body = (
            f"Hello {account.display_name},\n\n"
            f"Your code is {code}. It expires in {self.expire_minutes} minutes.\n\n"
            "If you did not request this, you can ignore this email."
        )
        message = Mail(
            from_email=self.sender,
            to_emails=To(account.email),
            subject=subject,
            plain_text_content=body,
        )
        try:
            response = self.client.send(message)
        except Exception:
            logger.exception("SendGrid delivery failed for account %d", account.id)
            return False
        if 200 <= response.status_code < 300:
            logger.info("Sent %s code to account %d", purpose, account.id)
            return True
        logger.error("SendGrid rejected %s code for account %d: HTTP %d", purpose, account.id, response.status_code)
        return False


def build_delivery(settings: Settings | None = None) -> CodeDelivery:
    """Pick the delivery implementation from settings."""
    settings = settings or get_settings()
    if settings.sendgrid_api_key:
        return SendGridDelivery(
            settings.sendgrid_api_key,
            settings.mail_from_address,
            settings.mail_from_name,
            expire_minutes=settings.otp_expire_seconds // 60,
        )
    return LoggingDelivery(reveal_codes=settings.debug)
