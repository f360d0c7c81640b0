"""Unit tests for auth/service.py -- the account lifecycle.

Covers:
- register -> verify -> active, with a session issued on verification
- re-registration of an unverified email; duplicates of verified ones
- emails match in composed and decomposed Unicode spellings
- an exhausted code is recovered by resending, not by retrying
- input validation (email syntax, password length, display name)
- login failure modes are indistinguishable except for the lockout
- the lockout: fifth failure locks, sixth attempt is refused even with the
  right password, and an elapsed lock releases on the next login
- forgot/reset password, including resend silence for unknown emails
- delivery failure keeps the code valid
"""

import unicodedata
from datetime import datetime, timedelta, timezone

import pytest
from conftest import wrong_code

from auth.models import ACTIVE, LOCKED, RESET_PASSWORD, UNVERIFIED, VERIFY_EMAIL
from auth.store import _accounts, _to_iso
from core.errors import (
    AuthenticationError,
    AuthFailure,
    DuplicateError,
    LockedError,
    ValidationError,
)

PASSWORD = "correct-horse-1"


def _expire_lock(account_store, account_id: int) -> None:
    past = _to_iso(datetime.now(timezone.utc) - timedelta(seconds=1))
    with account_store.engine.begin() as conn:
        conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(lock_expires_at=past))


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_register_creates_unverified_account_and_sends_code(self, auth_service, delivery):
        account = auth_service.register("New@Example.com", PASSWORD, "  Newbie ")
        assert account.status == UNVERIFIED
        assert account.email == "new@example.com"
        assert account.display_name == "Newbie"
        assert delivery.count("new@example.com") == 1

    def test_verify_activates_and_issues_session(self, auth_service, delivery):
        auth_service.register("a@example.com", PASSWORD, "A")
        account, session = auth_service.verify_otp("a@example.com", delivery.last_code("a@example.com"))
        assert account.status == ACTIVE
        assert session.account_id == account.id
        assert session.expires_at - session.issued_at == timedelta(hours=12)
        assert auth_service.get_current_account(session.token).id == account.id

    def test_unverified_account_cannot_log_in(self, auth_service):
        auth_service.register("b@example.com", PASSWORD, "B")
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.login("b@example.com", PASSWORD)
        assert exc_info.value.reason is AuthFailure.invalid_credentials

    def test_reregister_unverified_replaces_password_and_sends_new_code(self, auth_service, delivery):
        first = auth_service.register("c@example.com", PASSWORD, "C")
        second = auth_service.register("c@example.com", "another-pass-2", "Cee")
        assert second.id == first.id
        assert second.display_name == "Cee"
        assert delivery.count("c@example.com") == 2
        auth_service.verify_otp("c@example.com", delivery.last_code("c@example.com"))
        account, _ = auth_service.login("c@example.com", "another-pass-2")
        assert account.id == first.id

    def test_register_verified_email_is_duplicate(self, auth_service, activate):
        activate("d@example.com")
        with pytest.raises(DuplicateError):
            auth_service.register("D@EXAMPLE.COM", PASSWORD, "D")

    @pytest.mark.parametrize(
        "email,password,name,field",
        [
            ("not-an-email", PASSWORD, "X", "email"),
            ("x@example.com", "short", "X", "password"),
            ("x@example.com", "p" * 129, "X", "password"),
            ("x@example.com", PASSWORD, "   ", "display_name"),
            ("x@example.com", PASSWORD, "n" * 101, "display_name"),
        ],
    )
    def test_register_rejects_invalid_input(self, auth_service, delivery, email, password, name, field):
        with pytest.raises(ValidationError) as exc_info:
            auth_service.register(email, password, name)
        assert exc_info.value.field == field
        assert delivery.sent == []

    def test_verify_unknown_email_looks_like_bad_code(self, auth_service):
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.verify_otp("nobody@example.com", "123456")
        assert exc_info.value.reason is AuthFailure.not_found

    def test_wrong_code_is_mismatch_and_account_stays_unverified(self, auth_service, account_store, delivery):
        auth_service.register("e@example.com", PASSWORD, "E")
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.verify_otp("e@example.com", wrong_code(delivery.last_code("e@example.com")))
        assert exc_info.value.reason is AuthFailure.mismatch
        assert account_store.get_by_email("e@example.com").status == UNVERIFIED

    def test_resend_supersedes_previous_code(self, auth_service, delivery, monkeypatch):
        codes = iter(["314159", "271828"])
        monkeypatch.setattr("auth.otp.generate_code", lambda: next(codes))
        auth_service.register("f@example.com", PASSWORD, "F")
        old = delivery.last_code("f@example.com")
        auth_service.resend_otp("f@example.com")
        new = delivery.last_code("f@example.com")
        assert (old, new) == ("314159", "271828")
        with pytest.raises(AuthenticationError):
            auth_service.verify_otp("f@example.com", old)
        account, _ = auth_service.verify_otp("f@example.com", new)
        assert account.status == ACTIVE

    def test_exhausted_code_recovers_through_resend(self, auth_service, delivery):
        auth_service.register("tries@example.com", PASSWORD, "Tries")
        bad = wrong_code(delivery.last_code("tries@example.com"))
        reasons = []
        for _ in range(5):
            with pytest.raises(AuthenticationError) as exc_info:
                auth_service.verify_otp("tries@example.com", bad)
            reasons.append(exc_info.value.reason)
        assert reasons == [AuthFailure.mismatch] * 4 + [AuthFailure.attempts_exhausted]

        auth_service.resend_otp("tries@example.com")
        account, _ = auth_service.verify_otp("tries@example.com", delivery.last_code("tries@example.com"))
        assert account.status == ACTIVE

    def test_decomposed_email_registers_verifies_and_logs_in(self, auth_service, delivery):
        decomposed = unicodedata.normalize("NFD", "José@Example.com")
        composed = unicodedata.normalize("NFC", "josé@example.com")
        account = auth_service.register(decomposed, PASSWORD, "Jose")
        assert account.email == composed
        verified, _ = auth_service.verify_otp(decomposed, delivery.last_code(composed))
        assert verified.id == account.id
        assert verified.status == ACTIVE
        logged_in, _ = auth_service.login(composed, PASSWORD)
        assert logged_in.id == account.id

    def test_resend_is_silent_for_unknown_and_verified_emails(self, auth_service, delivery, activate):
        activate("g@example.com")
        sent_before = len(delivery.sent)
        auth_service.resend_otp("g@example.com")
        auth_service.resend_otp("ghost@example.com")
        assert len(delivery.sent) == sent_before

    def test_delivery_failure_keeps_account_and_code(self, auth_service, delivery):
        delivery.fail = True
        account = auth_service.register("h@example.com", PASSWORD, "H")
        delivery.fail = False
        verified, _ = auth_service.verify_otp("h@example.com", delivery.last_code("h@example.com"))
        assert verified.id == account.id


# ---------------------------------------------------------------------------
# Login and lockout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_success_resets_failures(self, auth_service, account_store, activate):
        activate("ok@example.com")
        with pytest.raises(AuthenticationError):
            auth_service.login("ok@example.com", "wrong-password")
        account, session = auth_service.login("OK@example.com", PASSWORD)
        assert account.failed_logins == 0
        assert session.token

    def test_unknown_email_and_wrong_password_look_the_same(self, auth_service, activate):
        activate("same@example.com")
        with pytest.raises(AuthenticationError) as unknown:
            auth_service.login("nobody@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            auth_service.login("same@example.com", "wrong-password")
        assert unknown.value.reason is wrong.value.reason is AuthFailure.invalid_credentials
        assert unknown.value.message == wrong.value.message

    def test_fifth_failure_locks_and_sixth_is_refused(self, auth_service, activate):
        activate("lock@example.com")
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                auth_service.login("lock@example.com", "wrong-password")

        # The right password does not help while the lock holds.
        with pytest.raises(LockedError) as exc_info:
            auth_service.login("lock@example.com", PASSWORD)
        assert 0 < exc_info.value.retry_after <= 15 * 60

    def test_expired_lock_releases_on_next_login(self, auth_service, account_store, activate):
        account = activate("thaw@example.com")
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                auth_service.login("thaw@example.com", "wrong-password")
        assert account_store.get_by_id(account.id).status == LOCKED

        _expire_lock(account_store, account.id)
        unlocked, _ = auth_service.login("thaw@example.com", PASSWORD)
        assert unlocked.status == ACTIVE
        assert unlocked.failed_logins == 0
        assert unlocked.lock_expires_at is None

    def test_expired_lock_with_wrong_password_starts_new_window(self, auth_service, account_store, activate):
        account = activate("window@example.com")
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                auth_service.login("window@example.com", "wrong-password")
        _expire_lock(account_store, account.id)

        with pytest.raises(AuthenticationError):
            auth_service.login("window@example.com", "wrong-password")
        refreshed = account_store.get_by_id(account.id)
        assert refreshed.status == ACTIVE
        assert refreshed.failed_logins == 1


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_reset_flow_replaces_password(self, auth_service, delivery, activate):
        activate("reset@example.com")
        auth_service.forgot_password("reset@example.com")
        code = delivery.last_code("reset@example.com", RESET_PASSWORD)
        auth_service.reset_password("reset@example.com", code, "brand-new-pass")

        with pytest.raises(AuthenticationError):
            auth_service.login("reset@example.com", PASSWORD)
        account, _ = auth_service.login("reset@example.com", "brand-new-pass")
        assert account.status == ACTIVE

    def test_reset_code_is_single_use(self, auth_service, delivery, activate):
        activate("once@example.com")
        auth_service.forgot_password("once@example.com")
        code = delivery.last_code("once@example.com", RESET_PASSWORD)
        auth_service.reset_password("once@example.com", code, "brand-new-pass")
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.reset_password("once@example.com", code, "another-new-pass")
        assert exc_info.value.reason is AuthFailure.not_found

    def test_verification_code_cannot_reset_password(self, auth_service, delivery):
        auth_service.register("mix@example.com", PASSWORD, "Mix")
        code = delivery.last_code("mix@example.com", VERIFY_EMAIL)
        with pytest.raises(AuthenticationError):
            auth_service.reset_password("mix@example.com", code, "brand-new-pass")

    def test_forgot_password_is_silent_for_unknown_and_unverified(self, auth_service, delivery):
        auth_service.register("pending@example.com", PASSWORD, "Pending")
        auth_service.forgot_password("pending@example.com")
        auth_service.forgot_password("ghost@example.com")
        assert delivery.count("pending@example.com", RESET_PASSWORD) == 0
        assert delivery.count("ghost@example.com", RESET_PASSWORD) == 0

    def test_reset_rejects_short_password_before_spending_code(self, auth_service, delivery, activate):
        activate("weak@example.com")
        auth_service.forgot_password("weak@example.com")
        code = delivery.last_code("weak@example.com", RESET_PASSWORD)
        with pytest.raises(ValidationError):
            auth_service.reset_password("weak@example.com", code, "short")
        auth_service.reset_password("weak@example.com", code, "long-enough-now")
