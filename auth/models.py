"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the shape.

Layer rule: no imports from api/ or events/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

# Account status values
UNVERIFIED = "unverified"
ACTIVE = "active"
LOCKED = "locked"

# One-time code purposes. Codes for different purposes never supersede each other.
VERIFY_EMAIL = "verify_email"
RESET_PASSWORD = "reset_password"  # nosec B105 -- purpose label, not a password


@dataclass
class Account:
    """An identity in Eventgate.

    email is always stored normalized (NFC, lowercase, stripped).
    hashed_password is None only for invite placeholders that have not
    registered yet; such accounts stay unverified until they do.
    lock_expires_at is set only while status == LOCKED.
    version is bumped on every write and drives compare-and-swap updates.
    """

    email: str
    display_name: str
    status: str = UNVERIFIED
    id: int | None = None
    hashed_password: str | None = None
    failed_logins: int = 0
    lock_expires_at: datetime | None = None
    version: int = 0
    created_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE


@dataclass
class OneTimeCode:
    """A short-lived code proving control of the account's email address.

    code_hash is HMAC-SHA256(SECRET_KEY, code). The raw code exists only in
    memory between issue and hand-off to the delivery collaborator.
    """

    account_id: int
    purpose: str
    code_hash: str
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0
    consumed: bool = False
    id: int | None = None


@dataclass
class Session:
    """A bearer credential. Stateless: validity is signature + expiry only.

    token_id (JWT jti) identifies the token for logging; there is no
    server-side revocation list.
    """

    account_id: int
    token: str
    token_id: str
    issued_at: datetime
    expires_at: datetime
