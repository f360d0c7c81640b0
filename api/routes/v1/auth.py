"""
api/routes/v1/auth.py -- Account lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register         -- create unverified account; sends code; 201
  POST /api/v1/auth/verify-otp       -- verify email code; activates; sets JWT cookie
  POST /api/v1/auth/resend-otp       -- new verification code; always 202
  POST /api/v1/auth/login            -- password login; sets JWT cookie
  POST /api/v1/auth/logout           -- clears cookie; 200
  POST /api/v1/auth/forgot-password  -- sends reset code; always 202
  POST /api/v1/auth/reset-password   -- reset with code
  GET  /api/v1/auth/me               -- current account (requires auth)

Security:
  [H2] login, register, resend-otp and forgot-password are rate-limited per IP.
  [C1] AuthService.login() burns a bcrypt check on every early failure.
  [M5] Cache-Control: no-store on every response that carries a token.
  resend-otp and forgot-password answer 202 whether or not the email exists.

Errors are raised as core.errors.AppError subclasses and rendered by the
AppError handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccountResponse,
    EmailRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    VerifyOtpRequest,
)
from auth.dependencies import get_current_account
from auth.models import Account, Session
from auth.service import AuthService
from auth.tokens import set_auth_cookie
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - every route except GET /auth/me is public
# - GET /auth/me: requires auth (get_current_account)
router = APIRouter()


def _auth(request: Request) -> AuthService:
    return request.app.state.auth_service


def _session_response(account: Account, session: Session) -> JSONResponse:
    resp = JSONResponse(content=SessionResponse.build(account, session).model_dump(mode="json"))
    set_auth_cookie(resp, session)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)  # [H2] each call sends an email
@router.post("/auth/register", response_model=AccountResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> AccountResponse:
    """Create an unverified account and email it a verification code.

    Re-registering an email that has not been verified yet replaces the
    pending registration.
    """
    account = _auth(request).register(body.email, body.password, body.display_name)
    return AccountResponse.from_account(account)


@router.post("/auth/verify-otp", response_model=SessionResponse)
def verify_otp(request: Request, body: VerifyOtpRequest) -> JSONResponse:
    """Verify the emailed code. On success the account is active and signed in."""
    account, session = _auth(request).verify_otp(body.email, body.code)
    return _session_response(account, session)


@limiter.limit(_settings.otp_rate_limit)  # [H2]
@router.post("/auth/resend-otp", response_model=MessageResponse, status_code=202)
def resend_otp(request: Request, body: EmailRequest) -> MessageResponse:
    _auth(request).resend_otp(body.email)
    return MessageResponse(message="If the account is awaiting verification, a new code has been sent.")


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] brute-force mitigation -- must be ABOVE @router
@router.post("/auth/login", response_model=SessionResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    Unknown email, unverified account and wrong password all produce the
    same 401 "bad_credentials". A locked account gets 423 with Retry-After.
    """
    account, session = _auth(request).login(body.email, body.password)
    return _session_response(account, session)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the JWT cookie. Tokens are stateless, so the client drops its copy."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)  # [H2]
@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    _auth(request).forgot_password(body.email)
    return MessageResponse(message="If an account exists for that email, a reset code has been sent.")


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _auth(request).reset_password(body.email, body.code, body.new_password)
    return MessageResponse(message="Password updated. You can now log in.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
async def me(current_account: Account = Depends(get_current_account)) -> AccountResponse:
    """Return the currently authenticated account."""
    return AccountResponse.from_account(current_account)
