"""
auth/tokens.py -- Password hashing, one-time code hashing, and the session issuer.

Security design decisions:
  Sessions: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       the account id (sub), a token id (jti), iat and exp. There is no
       revocation list: a token is valid until it expires. Logout is the
       client discarding its copy.

  Passwords: bcrypt directly (no passlib wrapper). The cost factor comes from
       Settings.bcrypt_rounds (default 10). The _DUMMY_HASH constant enables
       timing equalization so response time does not reveal whether an
       account exists [C1].

  One-time codes: six random digits have ~20 bits of entropy, so they are
       protected by the attempt counter and expiry, not by hash cost. We store
       HMAC-SHA256(SECRET_KEY, code) so a leaked table does not reveal live
       codes, and compare with hmac.compare_digest.

Layer rule: no imports from api/ or events/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.models import Account, Session
from core.config import get_settings
from core.errors import AuthenticationError, AuthFailure

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("eventgate.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

CODE_DIGITS = 6

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    bcrypt truncates input past 72 bytes; the password policy in
    auth/service.py caps length at 128 characters and the API enforces the
    same bound on the request model.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8")[:72], salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than later ones.
_DUMMY_HASH: str = hash_password("eventgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded [C1].

    Called on every login path that fails before a real hash is available
    (unknown email, placeholder account) so response time stays constant.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


def generate_code() -> str:
    """Return a cryptographically random zero-padded 6-digit code."""
    return f"{secrets.randbelow(10**CODE_DIGITS):0{CODE_DIGITS}d}"


def hash_code(raw_code: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_code) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_code.strip().encode(),
        hashlib.sha256,
    ).hexdigest()


def code_matches(candidate: str, code_hash: str) -> bool:
    return hmac.compare_digest(hash_code(candidate), code_hash)


# ---------------------------------------------------------------------------
# Session issuer
# ---------------------------------------------------------------------------


def issue_session(account: Account, expire_seconds: int = 0) -> Session:
    """Mint a signed session token for an account.

    Args:
        account:        The authenticated account (must have an id).
        expire_seconds: Session lifetime. 0 (default) uses
                        Settings.session_expire_seconds (12 hours).
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(seconds=duration)
    token_id = secrets.token_hex(16)
    payload = {
        "sub": str(account.id),
        "jti": token_id,
        "iat": issued_at,
        "exp": expires_at,
    }
    token = jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)
    return Session(
        account_id=account.id,
        token=token,
        token_id=token_id,
        issued_at=issued_at,
        expires_at=expires_at,
    )


def validate_session(store: AccountStore, token: str) -> Account:
    """Verify a session token and resolve its subject.

    Raises AuthenticationError with reason session_expired when the signature
    is good but exp has passed, and session_invalid for everything else (bad
    signature, malformed claims, subject no longer resolvable).
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise AuthenticationError(AuthFailure.session_expired, "Session expired.") from exc
    except JWTError as exc:
        raise AuthenticationError(AuthFailure.session_invalid, "Invalid session.") from exc

    try:
        account_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthenticationError(AuthFailure.session_invalid, "Invalid session.") from exc

    account = store.get_by_id(account_id)
    if account is None:
        raise AuthenticationError(AuthFailure.session_invalid, "Invalid session.")
    return account


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, session: Session) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the token expiry so both expire together.
    """
    max_age = int((session.expires_at - session.issued_at).total_seconds())
    response.set_cookie(
        "access_token",
        value=session.token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age,
    )
