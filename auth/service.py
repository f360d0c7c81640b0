"""
auth/service.py -- The authentication state machine.

    unverified --(verify OTP)--> active --(5 failed logins)--> locked
        ^                          ^                              |
        |                          +----(lock expiry elapses)-----+
    register / re-register

AuthService owns every transition. Persistence is AccountStore, codes are
OtpLedger, tokens come from auth.tokens, and codes leave the process through
a CodeDelivery.

Enumeration rules:
  * login reports the same invalid_credentials for "no such account",
    "not verified yet", and "wrong password". Only the locked case is
    distinguishable, because the caller must show a retry time.
  * verify_otp / reset_password report not_found for an unknown email, the
    same reason a consumed or missing code produces.
  * resend_otp and forgot_password succeed silently for unknown emails.

Activation hooks let other packages react to Unverified -> Active without
auth/ importing them (events/ uses one to claim pending invites).

Layer rule: no imports from api/ or events/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from auth.delivery import CodeDelivery, build_delivery
from auth.models import ACTIVE, LOCKED, RESET_PASSWORD, UNVERIFIED, VERIFY_EMAIL, Account, OneTimeCode, Session
from auth.otp import OtpLedger, OtpResult
from auth.store import AccountStore
from auth.tokens import burn_password_check, issue_session, validate_session
from core.errors import AuthenticationError, AuthFailure, ConflictError, DuplicateError, LockedError
from core.validation import check_password, clean_display_name, normalize_valid_email

logger = logging.getLogger("eventgate.auth")

_BAD_LOGIN = "Invalid email or password."
_BAD_CODE = "Invalid or expired code."

ActivationHook = Callable[[Account], None]


class AuthService:
    def __init__(
        self,
        store: AccountStore,
        delivery: CodeDelivery | None = None,
        ledger: OtpLedger | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger or OtpLedger(store)
        self.delivery = delivery or build_delivery()
        self._activation_hooks: list[ActivationHook] = []

    def add_activation_hook(self, hook: ActivationHook) -> None:
        self._activation_hooks.append(hook)

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, display_name: str) -> Account:
        """Create an unverified account and send it a verification code.

        Re-registering an email that is still unverified (including an invite
        placeholder) replaces its password and display name and sends a new
        code. Any verified account with that email is a DuplicateError.
        """
        email = normalize_valid_email(email)
        check_password(password)
        display_name = clean_display_name(display_name)

        account = self.store.get_by_email(email)
        if account is None:
            try:
                account = self.store.create_account(email, password, display_name)
            except DuplicateError:
                # Lost an insert race for the same email; treat as re-registration.
                account = self.store.get_by_email(email)
            else:
                logger.info("Registered account %d", account.id)
                self._send_code(account, VERIFY_EMAIL)
                return account

        if account.status != UNVERIFIED:
            raise DuplicateError()
        account = self._update_registration(account, password, display_name)

        self._send_code(account, VERIFY_EMAIL)
        return account

    def verify_otp(self, email: str, code: str) -> tuple[Account, Session]:
        """Check a verification code; on success activate and sign in."""
        account = self.store.get_by_email(email)
        if account is None:
            raise AuthenticationError(AuthFailure.not_found, _BAD_CODE)

        self._check_code(account, code, VERIFY_EMAIL)
        if account.status == UNVERIFIED:
            account = self._activate(account)
        return account, issue_session(account)

    def resend_otp(self, email: str) -> None:
        """Send a new verification code to an unverified account.

        Placeholders created by invites must register first. Throttling is
        the transport's job (slowapi on the route).
        """
        account = self.store.get_by_email(email)
        if account is None or account.status != UNVERIFIED or account.hashed_password is None:
            logger.info("Resend requested for an email with no pending verification")
            return
        self._send_code(account, VERIFY_EMAIL)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> tuple[Account, Session]:
        account = self.store.get_by_email(email)
        if account is None or account.status == UNVERIFIED:
            burn_password_check(password)
            raise AuthenticationError(AuthFailure.invalid_credentials, _BAD_LOGIN)

        if account.status == LOCKED:
            account = self._release_lock(account)

        if not self.store.verify_password(account, password):
            self.store.record_failed_login(account)
            raise AuthenticationError(AuthFailure.invalid_credentials, _BAD_LOGIN)

        account = self.store.record_successful_login(account)
        session = issue_session(account)
        logger.info("Account %d logged in (session %s)", account.id, session.token_id)
        return account, session

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Send a reset code to a verified account. Silent for anything else."""
        account = self.store.get_by_email(email)
        if account is None or account.status not in (ACTIVE, LOCKED):
            logger.info("Password reset requested for an email with no verified account")
            return
        self._send_code(account, RESET_PASSWORD)

    def reset_password(self, email: str, code: str, new_password: str) -> Account:
        """Replace the password after a valid reset code.

        Status and lock state are untouched, and sessions issued before the
        reset stay valid until they expire: there is no revocation list.
        """
        check_password(new_password)
        account = self.store.get_by_email(email)
        if account is None or account.status not in (ACTIVE, LOCKED):
            raise AuthenticationError(AuthFailure.not_found, _BAD_CODE)

        self._check_code(account, code, RESET_PASSWORD)
        try:
            account = self.store.set_password(account, new_password)
        except ConflictError:
            account = self.store.set_password(self.store.get_by_id(account.id), new_password)
        logger.info("Password reset for account %d", account.id)
        return account

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_current_account(self, token: str) -> Account:
        return validate_session(self.store, token)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _send_code(self, account: Account, purpose: str) -> OneTimeCode:
        record, raw_code = self.ledger.issue(account, purpose)
        if not self.delivery.send_code(account, raw_code, purpose):
            logger.error("Delivery failed for %s code %d; the code stays valid", purpose, record.id)
        return record

    def _check_code(self, account: Account, code: str, purpose: str) -> None:
        result = self.ledger.verify(account, code, purpose)
        if result is not OtpResult.success:
            logger.info("Rejected %s code for account %d: %s", purpose, account.id, result.value)
            raise AuthenticationError(AuthFailure(result.value), _BAD_CODE)

    def _activate(self, account: Account) -> Account:
        try:
            account = self.store.activate(account)
        except ConflictError:
            account = self.store.get_by_id(account.id)
            if account.status != UNVERIFIED:
                return account
            account = self.store.activate(account)
        logger.info("Account %d verified", account.id)
        for hook in self._activation_hooks:
            hook(account)
        return account

    def _update_registration(self, account: Account, password: str, display_name: str) -> Account:
        try:
            return self.store.update_registration(account, password, display_name)
        except ConflictError:
            account = self.store.get_by_id(account.id)
            if account.status != UNVERIFIED:
                raise DuplicateError() from None
            return self.store.update_registration(account, password, display_name)

    def _release_lock(self, account: Account) -> Account:
        """Raise LockedError while the lock holds; unlock once it has elapsed."""
        now = datetime.now(timezone.utc)
        if account.lock_expires_at is not None and account.lock_expires_at > now:
            raise LockedError(account.lock_expires_at)
        try:
            account = self.store.unlock(account)
        except ConflictError:
            account = self.store.get_by_id(account.id)
            if account.status == LOCKED:
                return self._release_lock(account)
            return account
        logger.info("Lock on account %d expired; account active again", account.id)
        return account
