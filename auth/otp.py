"""
auth/otp.py -- The one-time code ledger.

OtpLedger issues and verifies six-digit codes on top of AccountStore. The
rules:

  * one live code per (account, purpose); issuing supersedes the previous one
  * a code expires 10 minutes after issue (checked lazily, no sweeper)
  * every verification against a live code spends one attempt, whatever the
    outcome; once the attempt budget (5) is spent the code answers
    ATTEMPTS_EXHAUSTED until a new one is issued
  * a successful verification consumes the code; a replay finds nothing

verify() returns an OtpResult rather than raising: the outcome is data the
auth service maps onto its own errors.

Layer rule: no imports from api/ or events/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

from auth.models import Account, OneTimeCode
from auth.store import AccountStore
from auth.tokens import code_matches, generate_code, hash_code
from core.config import get_settings

logger = logging.getLogger("eventgate.auth.otp")


class OtpResult(str, Enum):
    success = "success"
    not_found = "not_found"
    expired = "expired"
    attempts_exhausted = "attempts_exhausted"
    mismatch = "mismatch"


class OtpLedger:
    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def issue(self, account: Account, purpose: str) -> tuple[OneTimeCode, str]:
        """Issue a fresh code for account/purpose and return (record, raw_code).

        The raw code is returned once, for the delivery collaborator, and is
        never persisted.
        """
        settings = get_settings()
        raw_code = generate_code()
        issued_at = datetime.now(timezone.utc)
        record = self.store.replace_code(
            OneTimeCode(
                account_id=account.id,
                purpose=purpose,
                code_hash=hash_code(raw_code),
                issued_at=issued_at,
                expires_at=issued_at + timedelta(seconds=settings.otp_expire_seconds),
            )
        )
        logger.info("Issued %s code %d for account %d", purpose, record.id, account.id)
        return record, raw_code

    def verify(self, account: Account, candidate: str, purpose: str) -> OtpResult:
        max_attempts = get_settings().otp_max_attempts

        code = self.store.get_live_code(account.id, purpose)
        if code is None:
            return OtpResult.not_found
        if code.attempts >= max_attempts:
            return OtpResult.attempts_exhausted
        if code.expires_at <= datetime.now(timezone.utc):
            return OtpResult.expired

        attempts = self.store.register_code_attempt(code.id)
        if attempts is None:
            # Consumed or replaced between the read and the increment.
            return OtpResult.not_found
        if attempts > max_attempts:
            return OtpResult.attempts_exhausted

        if code_matches(candidate, code.code_hash):
            if self.store.consume_code(code.id):
                return OtpResult.success
            return OtpResult.not_found

        if self.store.is_superseded_code(account.id, purpose, hash_code(candidate)):
            return OtpResult.not_found
        if attempts >= max_attempts:
            logger.warning("Code %d for account %d exhausted its attempts", code.id, account.id)
            return OtpResult.attempts_exhausted
        return OtpResult.mismatch

    def purge_expired(self) -> int:
        return self.store.purge_expired_codes()
