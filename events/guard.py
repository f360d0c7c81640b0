"""
events/guard.py -- Who may do what to an event.

Rules:
  READ                   creator or any participant
  UPDATE, DELETE,
  INVITE_PARTICIPANTS,
  REMOVE_PARTICIPANT     creator only

An event the caller cannot see (no such id, or caller is neither creator
nor participant) is reported as NotFoundError, never as a permission error,
so probing ids reveals nothing. A participant asking for a creator-only
action already knows the event exists and gets AuthorizationError.

check_invites() holds the invitation rules: valid syntax, no self-invite,
no duplicates, and the participant ceiling.
"""

from __future__ import annotations

import logging

from auth.models import Account
from core.config import get_settings
from core.errors import AuthorizationError, CapacityError, InviteError, InviteFailure, NotFoundError
from core.validation import normalize_valid_email
from events.models import Action, Event
from events.store import EventStore

logger = logging.getLogger("eventgate.events.guard")


class EventOwnershipGuard:
    def __init__(self, store: EventStore, max_participants: int = 0) -> None:
        self.store = store
        self.max_participants = max_participants or get_settings().max_participants

    def authorize(self, action: Action, account: Account, event_id: int) -> Event:
        """Return the event if account may perform action on it, else raise."""
        return self.check(action, account, self.store.get_event(event_id))

    def check(self, action: Action, account: Account, event: Event | None) -> Event:
        """Same rules as authorize() for an event that is already loaded."""
        if event is None or not event.is_visible_to(account.id):
            raise NotFoundError("Event not found.")
        if action is not Action.READ and account.id != event.creator_id:
            logger.info("Account %d denied %s on event %d", account.id, action.value, event.id)
            raise AuthorizationError("Only the event creator can do that.")
        return event

    def check_invites(
        self,
        creator: Account,
        emails: list[str],
        current_emails: set[str],
        current_count: int,
    ) -> list[str]:
        """Validate an invitation batch and return the normalized emails.

        Args:
            creator:        The event creator (the caller, already authorized).
            emails:         Raw addresses from the request.
            current_emails: Normalized emails already on the event, as
                            participants or pending invites.
            current_count:  Participants plus pending invites right now.
        """
        accepted: list[str] = []
        for raw in emails:
            email = normalize_valid_email(raw)
            if email == creator.email:
                raise InviteError(InviteFailure.self_invite, email)
            if email in current_emails or email in accepted:
                raise InviteError(InviteFailure.already_invited, email)
            accepted.append(email)
        if current_count + len(accepted) > self.max_participants:
            raise CapacityError(
                f"An event can have at most {self.max_participants} participants.",
                detail=f"current={current_count} requested={len(accepted)}",
            )
        return accepted
