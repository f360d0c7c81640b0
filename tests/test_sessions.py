"""Unit tests for auth/tokens.py -- session tokens and password hashing.

Covers:
- a fresh session resolves to its account
- expired, tampered, foreign-key and orphaned tokens are rejected with the
  right reason
- bcrypt round-trip and the dummy-hash burn
"""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.models import Account
from auth.tokens import (
    burn_password_check,
    code_matches,
    generate_code,
    hash_code,
    hash_password,
    issue_session,
    validate_session,
    verify_password,
)
from core.config import get_settings
from core.errors import AuthenticationError, AuthFailure


@pytest.fixture
def account(account_store) -> Account:
    return account_store.create_account("session@example.com", "s3cret-pass", "Session", status="active")


def test_fresh_session_resolves_account(account_store, account):
    session = issue_session(account)
    assert validate_session(account_store, session.token).id == account.id
    assert len(session.token_id) == 32


def test_each_session_has_unique_token_id(account):
    assert issue_session(account).token_id != issue_session(account).token_id


def test_expired_session_rejected(account_store, account):
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    token = jwt.encode(
        {"sub": str(account.id), "jti": "x", "iat": past - timedelta(hours=12), "exp": past},
        get_settings().secret_key,
        algorithm="HS256",
    )
    with pytest.raises(AuthenticationError) as exc_info:
        validate_session(account_store, token)
    assert exc_info.value.reason is AuthFailure.session_expired


def test_tampered_session_rejected(account_store, account):
    token = issue_session(account).token
    header, payload, signature = token.split(".")
    tampered = ".".join([header, payload, signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")])
    with pytest.raises(AuthenticationError) as exc_info:
        validate_session(account_store, tampered)
    assert exc_info.value.reason is AuthFailure.session_invalid


def test_token_signed_with_other_key_rejected(account_store, account):
    token = jwt.encode({"sub": str(account.id), "exp": datetime.now(timezone.utc) + timedelta(hours=1)}, "x" * 40)
    with pytest.raises(AuthenticationError) as exc_info:
        validate_session(account_store, token)
    assert exc_info.value.reason is AuthFailure.session_invalid


def test_session_for_missing_account_rejected(account_store):
    ghost = Account(email="gone@example.com", display_name="Gone", id=9999)
    with pytest.raises(AuthenticationError) as exc_info:
        validate_session(account_store, issue_session(ghost).token)
    assert exc_info.value.reason is AuthFailure.session_invalid


def test_garbage_token_rejected(account_store):
    with pytest.raises(AuthenticationError):
        validate_session(account_store, "not-a-jwt")


def test_password_hash_round_trip():
    hashed = hash_password("s3cret-pass")
    assert verify_password("s3cret-pass", hashed)
    assert not verify_password("wrong-pass", hashed)
    assert not verify_password("s3cret-pass", "not-a-bcrypt-hash")
    burn_password_check("anything")


def test_code_hash_is_keyed_and_comparable():
    code = generate_code()
    assert code_matches(code, hash_code(code))
    assert hash_code(code) != code
