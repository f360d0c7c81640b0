"""
events/models.py -- Domain dataclasses for events.

Pure data containers. Validation and ownership rules live in
events/service.py and events/guard.py; persistence in events/store.py.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Action(str, Enum):
    """What a caller wants to do with an event. Only READ is open to participants."""

    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    INVITE_PARTICIPANTS = "invite_participants"
    REMOVE_PARTICIPANT = "remove_participant"


@dataclass
class Event:
    """A scheduled event.

    creator_id is immutable. participant_ids never contains creator_id and
    never contains duplicates (the junction table's unique constraint backs
    this). pending_emails are invitees without an account yet.

    id is None before the record is written to the database.
    """

    title: str
    start: datetime
    end: datetime
    creator_id: int
    description: Optional[str] = None
    id: Optional[int] = None
    participant_ids: list[int] = field(default_factory=list)
    pending_emails: list[str] = field(default_factory=list)
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_visible_to(self, account_id: int) -> bool:
        return account_id == self.creator_id or account_id in self.participant_ids


@dataclass
class EventPatch:
    """Partial update for an event. None means "leave unchanged".

    clear_description distinguishes "remove the description" from "don't touch it".
    """

    title: Optional[str] = None
    description: Optional[str] = None
    clear_description: bool = False
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def is_empty(self) -> bool:
        return (
            self.title is None
            and self.description is None
            and not self.clear_description
            and self.start is None
            and self.end is None
        )
