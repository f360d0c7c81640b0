"""
events/service.py -- Event operations for authenticated accounts.

Every operation takes the already-authenticated Account (resolved from the
session by auth/dependencies.py) and goes through EventOwnershipGuard before
touching EventStore.

Validation happens before any write, so a rejected request never leaves a
partial event behind. Participant changes run inside
EventStore.edit_participants(), which serializes them per event; the guard's
duplicate and capacity checks run on the state read under that lock.

Invitees without an account are handled per Settings.invite_policy:
  pending     -- a pending invite row, claimed when the invitee activates
  placeholder -- an unverified account without a password, added at once
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from auth.models import Account
from auth.store import AccountStore
from core.config import get_settings
from core.errors import ConflictError, DuplicateError, NotFoundError, ValidationError
from core.validation import normalize_valid_email
from events.guard import EventOwnershipGuard
from events.models import Action, Event, EventPatch
from events.store import EventStore

logger = logging.getLogger("eventgate.events")

TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 10_000


def _clean_title(title: str) -> str:
    title = title.strip()
    if not 1 <= len(title) <= TITLE_MAX_LENGTH:
        raise ValidationError(f"Title must be between 1 and {TITLE_MAX_LENGTH} characters.", field="title")
    return title


def _clean_description(description: Optional[str]) -> Optional[str]:
    if description is None:
        return None
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"Description must be at most {DESCRIPTION_MAX_LENGTH} characters.", field="description"
        )
    return description or None


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _check_dates(start: datetime, end: datetime) -> None:
    if end <= start:
        raise ValidationError("Event end must be after its start.", field="end")


class EventService:
    def __init__(
        self,
        store: EventStore,
        accounts: AccountStore,
        guard: Optional[EventOwnershipGuard] = None,
        invite_policy: str = "",
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.guard = guard or EventOwnershipGuard(store)
        self.invite_policy = invite_policy or get_settings().invite_policy

    # ------------------------------------------------------------------
    # Create / read / update / delete
    # ------------------------------------------------------------------

    def create_event(
        self,
        account: Account,
        title: str,
        description: Optional[str],
        start: datetime,
        end: datetime,
        invite_emails: Optional[list[str]] = None,
    ) -> Event:
        """Create an event owned by account, optionally inviting participants."""
        title = _clean_title(title)
        description = _clean_description(description)
        start, end = _as_utc(start), _as_utc(end)
        _check_dates(start, end)
        emails = self.guard.check_invites(account, invite_emails or [], set(), 0)

        participant_ids, pending = self._resolve_invitees(emails)
        created = self.store.create_event(
            Event(title=title, description=description, start=start, end=end, creator_id=account.id),
            participant_ids=participant_ids,
            pending_emails=pending,
        )
        logger.info("Account %d created event %d with %d invitees", account.id, created.id, len(emails))
        return created

    def get_event(self, account: Account, event_id: int) -> Event:
        return self.guard.authorize(Action.READ, account, event_id)

    def update_event(self, account: Account, event_id: int, patch: EventPatch) -> Event:
        """Apply a partial update. The merged start/end must still be ordered."""
        if patch.is_empty():
            raise ValidationError("No fields to update.")
        try:
            return self._apply_patch(account, event_id, patch)
        except ConflictError:
            # A concurrent write bumped the version; re-read and re-validate once.
            return self._apply_patch(account, event_id, patch)

    def delete_event(self, account: Account, event_id: int) -> None:
        self.guard.authorize(Action.DELETE, account, event_id)
        if not self.store.delete_event(event_id):
            raise NotFoundError("Event not found.")
        logger.info("Account %d deleted event %d", account.id, event_id)

    def list_owned_events(self, account: Account) -> list[Event]:
        return self.store.list_owned(account.id)

    def list_invited_events(self, account: Account) -> list[Event]:
        return self.store.list_participating(account.id)

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    def invite_participants(self, account: Account, event_id: int, emails: list[str]) -> Event:
        """Invite a batch of emails. The whole batch is accepted or rejected."""
        if not emails:
            raise ValidationError("At least one email is required.", field="emails")
        # Resolve (and under the placeholder policy, create) accounts before
        # taking the event lock; the batch is re-validated under the lock.
        normalized = [normalize_valid_email(e) for e in emails]
        self.guard.authorize(Action.INVITE_PARTICIPANTS, account, event_id)
        ids_by_email = self._account_ids_for(normalized)

        with self.store.edit_participants(event_id) as edit:
            event = self.guard.check(Action.INVITE_PARTICIPANTS, account, edit.event)
            accepted = self.guard.check_invites(
                account,
                normalized,
                self._current_emails(event),
                len(event.participant_ids) + len(event.pending_emails),
            )
            for email in accepted:
                account_id = ids_by_email.get(email)
                if account_id is None:
                    edit.add_pending(email)
                else:
                    edit.add(account_id)
            logger.info("Account %d invited %d participants to event %d", account.id, len(accepted), event_id)
            return edit.event

    def remove_participant(self, account: Account, event_id: int, participant_id: int) -> Event:
        with self.store.edit_participants(event_id) as edit:
            self.guard.check(Action.REMOVE_PARTICIPANT, account, edit.event)
            if not edit.remove(participant_id):
                raise NotFoundError("Participant not found.")
            return edit.event

    def cancel_invite(self, account: Account, event_id: int, email: str) -> Event:
        """Withdraw a pending invite for an email that has no account yet."""
        email = normalize_valid_email(email)
        with self.store.edit_participants(event_id) as edit:
            self.guard.check(Action.REMOVE_PARTICIPANT, account, edit.event)
            if not edit.remove_pending(email):
                raise NotFoundError("Invite not found.")
            return edit.event

    def participants(self, event: Event) -> list[Account]:
        return self.accounts.get_many(event.participant_ids)

    def claim_pending_invites(self, account: Account) -> None:
        """Activation hook: join every event that invited this email before signup."""
        joined = self.store.claim_pending(account.email, account.id)
        if joined:
            logger.info("Account %d joined %d events from pending invites", account.id, joined)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_patch(self, account: Account, event_id: int, patch: EventPatch) -> Event:
        event = self.guard.authorize(Action.UPDATE, account, event_id)
        fields: dict = {}
        if patch.title is not None:
            fields["title"] = _clean_title(patch.title)
        if patch.clear_description:
            fields["description"] = None
        elif patch.description is not None:
            fields["description"] = _clean_description(patch.description)
        start = _as_utc(patch.start) if patch.start is not None else event.start
        end = _as_utc(patch.end) if patch.end is not None else event.end
        _check_dates(start, end)
        if patch.start is not None:
            fields["start"] = start
        if patch.end is not None:
            fields["end"] = end
        return self.store.update_event(event.id, event.version, **fields)

    def _resolve_invitees(self, emails: list[str]) -> tuple[list[int], list[str]]:
        ids_by_email = self._account_ids_for(emails)
        participant_ids = [ids_by_email[e] for e in emails if e in ids_by_email]
        pending = [e for e in emails if e not in ids_by_email]
        return participant_ids, pending

    def _account_ids_for(self, emails: list[str]) -> dict[str, int]:
        """Map emails to account ids, creating placeholders if the policy says so."""
        found: dict[str, int] = {}
        for email in emails:
            existing = self.accounts.get_by_email(email)
            if existing is None and self.invite_policy == "placeholder":
                existing = self._create_placeholder(email)
            if existing is not None:
                found[email] = existing.id
        return found

    def _create_placeholder(self, email: str) -> Account:
        try:
            placeholder = self.accounts.create_account(email, None, email.split("@", 1)[0][:100])
        except DuplicateError:
            return self.accounts.get_by_email(email)
        logger.info("Created placeholder account %d for an invitee", placeholder.id)
        return placeholder

    def _current_emails(self, event: Event) -> set[str]:
        emails = {a.email for a in self.accounts.get_many(event.participant_ids)}
        emails.update(event.pending_emails)
        return emails
