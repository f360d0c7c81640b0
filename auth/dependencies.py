"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients (the React app).
  2. "access_token" cookie -- set by POST /auth/login and /auth/verify-otp.

get_current_account() raises AuthenticationError, rendered as 401 by the app's
AppError handler.

Layer rule: no imports from events/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import Account
from auth.service import AuthService
from core.errors import AuthenticationError, AuthFailure


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get("access_token") or None


def get_current_account(request: Request) -> Account:
    """Require a valid session. Use as a FastAPI dependency:

        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    token = _extract_token(request)
    if token is None:
        raise AuthenticationError(AuthFailure.session_invalid, "Authentication required.")
    auth: AuthService = request.app.state.auth_service
    return auth.get_current_account(token)

