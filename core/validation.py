"""
core/validation.py -- Input rules shared by the auth and event services.

Services validate their own inputs (the API models repeat the cheap bounds
so bad requests fail early with a 422), so every rule here raises the typed
core.errors.ValidationError.
"""

from __future__ import annotations

import unicodedata

from email_validator import EmailNotValidError, validate_email

from core.errors import ValidationError

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
DISPLAY_NAME_MAX_LENGTH = 100


def normalize_email(email: str) -> str:
    """Canonical form used for every stored and compared email address.

    NFC first, so composed and decomposed spellings of the same address match.
    """
    return unicodedata.normalize("NFC", email).strip().lower()


def normalize_valid_email(raw: str) -> str:
    """Return the canonical form of raw (see normalize_email), or raise ValidationError.

    Deliverability (DNS) is not checked: syntax only.
    """
    try:
        result = validate_email(raw.strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError(
            f"Invalid email address: {raw!r}", field="email", detail=str(exc), code="invalid_email"
        ) from exc
    return normalize_email(result.normalized)


def check_password(password: str) -> None:
    if not PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH:
        raise ValidationError(
            f"Password must be between {PASSWORD_MIN_LENGTH} and {PASSWORD_MAX_LENGTH} characters.",
            field="password",
        )


def clean_display_name(name: str) -> str:
    name = name.strip()
    if not 1 <= len(name) <= DISPLAY_NAME_MAX_LENGTH:
        raise ValidationError(
            f"Display name must be between 1 and {DISPLAY_NAME_MAX_LENGTH} characters.",
            field="display_name",
        )
    return name
