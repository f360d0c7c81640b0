"""
api/routes/v1/events.py -- Event and participant REST endpoints.

Routes:
  POST   /api/v1/events                                   -- create event (+ invites); 201
  GET    /api/v1/events/owned                             -- events the caller created
  GET    /api/v1/events/invited                           -- events the caller participates in
  GET    /api/v1/events/{event_id}                        -- detail (creator or participant)
  PATCH  /api/v1/events/{event_id}                        -- partial update (creator)
  DELETE /api/v1/events/{event_id}                        -- delete (creator); 204
  POST   /api/v1/events/{event_id}/participants           -- invite by email (creator)
  DELETE /api/v1/events/{event_id}/participants/{acct_id} -- remove participant (creator)
  DELETE /api/v1/events/{event_id}/invites/{email}        -- withdraw pending invite (creator)

Every route requires a session. Ownership is enforced by EventService through
EventOwnershipGuard: an event the caller cannot see is a 404, a participant
attempting a creator-only action is a 403.

/events/owned and /events/invited are registered before /events/{event_id}
so the literal paths win.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import EventCreate, EventPatchRequest, EventResponse, EventSummaryRow, InviteRequest
from auth.dependencies import get_current_account
from auth.models import Account
from events.models import Event, EventPatch
from events.service import EventService

# Auth policy: all routes in this module require a valid session.
router = APIRouter(dependencies=[Depends(get_current_account)])


def _events(request: Request) -> EventService:
    return request.app.state.event_service


def _detail(service: EventService, event: Event, viewer: Account) -> EventResponse:
    return EventResponse.build(event, service.participants(event), viewer.id)


@router.post("/events", response_model=EventResponse, status_code=201)
def create_event(
    request: Request,
    body: EventCreate,
    account: Account = Depends(get_current_account),
) -> EventResponse:
    """Create an event owned by the caller.

    invite_emails is validated as a whole: one bad address, a self-invite,
    a duplicate or exceeding the participant ceiling rejects the request
    and no event is created.
    """
    service = _events(request)
    event = service.create_event(
        account,
        title=body.title,
        description=body.description,
        start=body.start,
        end=body.end,
        invite_emails=body.invite_emails,
    )
    return _detail(service, event, account)


@router.get("/events/owned", response_model=list[EventSummaryRow])
def list_owned(
    request: Request,
    response: Response,
    account: Account = Depends(get_current_account),
) -> list[EventSummaryRow]:
    events = _events(request).list_owned_events(account)
    response.headers["X-Total-Count"] = str(len(events))
    return [EventSummaryRow.from_event(e) for e in events]


@router.get("/events/invited", response_model=list[EventSummaryRow])
def list_invited(
    request: Request,
    response: Response,
    account: Account = Depends(get_current_account),
) -> list[EventSummaryRow]:
    events = _events(request).list_invited_events(account)
    response.headers["X-Total-Count"] = str(len(events))
    return [EventSummaryRow.from_event(e) for e in events]


@router.get("/events/{event_id}", response_model=EventResponse)
def get_event(
    request: Request,
    event_id: int,
    account: Account = Depends(get_current_account),
) -> EventResponse:
    service = _events(request)
    return _detail(service, service.get_event(account, event_id), account)


@router.patch("/events/{event_id}", response_model=EventResponse)
def update_event(
    request: Request,
    event_id: int,
    body: EventPatchRequest,
    account: Account = Depends(get_current_account),
) -> EventResponse:
    """Apply a partial update. Send "description": null to clear the description."""
    patch = EventPatch(
        title=body.title,
        description=body.description,
        clear_description="description" in body.model_fields_set and body.description is None,
        start=body.start,
        end=body.end,
    )
    service = _events(request)
    return _detail(service, service.update_event(account, event_id, patch), account)


@router.delete("/events/{event_id}", status_code=204)
def delete_event(
    request: Request,
    event_id: int,
    account: Account = Depends(get_current_account),
) -> Response:
    _events(request).delete_event(account, event_id)
    return Response(status_code=204)


@router.post("/events/{event_id}/participants", response_model=EventResponse)
def invite_participants(
    request: Request,
    event_id: int,
    body: InviteRequest,
    account: Account = Depends(get_current_account),
) -> EventResponse:
    """Invite a batch of emails. The batch is accepted or rejected as a whole."""
    service = _events(request)
    return _detail(service, service.invite_participants(account, event_id, body.emails), account)


@router.delete("/events/{event_id}/participants/{participant_id}", response_model=EventResponse)
def remove_participant(
    request: Request,
    event_id: int,
    participant_id: int,
    account: Account = Depends(get_current_account),
) -> EventResponse:
    service = _events(request)
    return _detail(service, service.remove_participant(account, event_id, participant_id), account)


@router.delete("/events/{event_id}/invites/{email}", response_model=EventResponse)
def cancel_invite(
    request: Request,
    event_id: int,
    email: str,
    account: Account = Depends(get_current_account),
) -> EventResponse:
    service = _events(request)
    return _detail(service, service.cancel_invite(account, event_id, email), account)
