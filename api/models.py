"""
API request and response models for Eventgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
events/models.py, which own the internal domain representation. Route
handlers map between the two.

Request models repeat the cheap bounds (lengths, code format) so malformed
bodies fail with 422 before reaching a service. The services still validate
everything themselves.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account, Session
from events.models import Event

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CODE_PATTERN = r"^\d{6}$"


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=8, max_length=128)
    display_name: str = Field(min_length=1, max_length=100)


class VerifyOtpRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)
    code: str = Field(pattern=CODE_PATTERN)


class EmailRequest(BaseModel):
    """Request body for POST /auth/resend-otp and POST /auth/forgot-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320)


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=128)


class ResetPasswordRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    code: str = Field(pattern=CODE_PATTERN)
    new_password: str = Field(min_length=8, max_length=128)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    display_name: str
    status: str

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(id=account.id, email=account.email, display_name=account.display_name, status=account.status)


class SessionResponse(BaseModel):
    """Returned by verify-otp and login. The token is also set as an httpOnly cookie."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_at: datetime
    account: AccountResponse

    @classmethod
    def build(cls, account: Account, session: Session) -> "SessionResponse":
        return cls(
            access_token=session.token,
            expires_at=session.expires_at,
            account=AccountResponse.from_account(account),
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Events -- request models
# ---------------------------------------------------------------------------


class EventCreate(BaseModel):
    """Request body for POST /api/v1/events."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=10_000)
    start: datetime
    end: datetime
    invite_emails: list[str] = Field(default_factory=list, max_length=1000)


class EventPatchRequest(BaseModel):
    """Request body for PATCH /api/v1/events/{event_id}.

    Omitted fields are left unchanged. An explicit "description": null
    clears the description.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=10_000)
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class InviteRequest(BaseModel):
    emails: list[str] = Field(min_length=1, max_length=1000)


# ---------------------------------------------------------------------------
# Events -- response models
# ---------------------------------------------------------------------------


class ParticipantRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    display_name: str


class EventResponse(BaseModel):
    """Full event detail.

    pending_invites lists invitees without an account; it is only filled in
    for the creator.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    title: str
    description: Optional[str]
    start: datetime
    end: datetime
    creator_id: int
    participants: list[ParticipantRow] = Field(default_factory=list)
    pending_invites: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def build(cls, event: Event, participants: list[Account], viewer_id: int) -> "EventResponse":
        return cls(
            id=event.id,
            title=event.title,
            description=event.description,
            start=event.start,
            end=event.end,
            creator_id=event.creator_id,
            participants=[ParticipantRow(id=a.id, email=a.email, display_name=a.display_name) for a in participants],
            pending_invites=list(event.pending_emails) if viewer_id == event.creator_id else [],
            created_at=event.created_at,
            updated_at=event.updated_at,
        )


class EventSummaryRow(BaseModel):
    """One row in the owned/invited lists -- no participant detail."""

    model_config = ConfigDict(frozen=True)

    id: int
    title: str
    start: datetime
    end: datetime
    creator_id: int
    participant_count: int

    @classmethod
    def from_event(cls, event: Event) -> "EventSummaryRow":
        return cls(
            id=event.id,
            title=event.title,
            start=event.start,
            end=event.end,
            creator_id=event.creator_id,
            participant_count=len(event.participant_ids),
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
