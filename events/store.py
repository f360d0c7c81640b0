"""
events/store.py -- SQLAlchemy-backed persistence layer for events and participants.

Uses SQLAlchemy Core (not ORM) so the dataclasses in events/models.py remain
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change.

Pattern: Repository + Data Mapper. EventStore is the repository; the
_row_to_* functions are the mappers. Services never touch SQL directly.

Concurrency:
  Field updates are compare-and-swap on events.version (ConflictError on a
  lost race). Participant changes go through edit_participants(), which opens
  a transaction and bumps the event's version first: that write takes the
  row lock (the database lock on SQLite), so every participant change on the
  same event is serialized while other events proceed in parallel. The
  (event_id, account_id) and (event_id, email) unique constraints stay as a
  final guard against double inserts.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = EventStore("sqlite:///:memory:")
    event = store.create_event(Event(title="Standup", start=s, end=e, creator_id=1))
    with store.edit_participants(event.id) as edit:
        edit.add(2)
    store.close()
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine

from core.config import get_settings
from core.errors import ConflictError, NotFoundError
from events.models import Event

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'eventgate_events.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_events = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(100), nullable=False),
    Column("description", Text),  # markdown
    Column("start_at", String(32), nullable=False),  # ISO 8601 UTC
    Column("end_at", String(32), nullable=False),  # ISO 8601 UTC
    Column("creator_id", Integer, nullable=False, index=True),
    Column("version", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_participants = Table(
    "event_participants",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", Integer, nullable=False),
    Column("account_id", Integer, nullable=False, index=True),
    Column("added_at", String(32), nullable=False),
    UniqueConstraint("event_id", "account_id", name="uq_event_participant"),
)

_pending = Table(
    "pending_invites",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", Integer, nullable=False),
    Column("email", String(320), nullable=False, index=True),  # normalized lowercase
    Column("invited_at", String(32), nullable=False),
    UniqueConstraint("event_id", "email", name="uq_event_pending_email"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return _to_utc_iso(datetime.now(timezone.utc))


def _to_utc_iso(value: datetime) -> str:
    """Store every instant as an aware UTC ISO string so string order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode. Set per-connection: PRAGMAs are not inherited."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Participant edit handle
# ---------------------------------------------------------------------------


class ParticipantEdit:
    """Participant changes applied inside one locked transaction.

    `event` is the state read after the lock was taken; the add/remove
    methods keep it in step with what they write.
    """

    def __init__(self, conn: Connection, event: Event) -> None:
        self._conn = conn
        self.event = event

    def add(self, account_id: int) -> None:
        self._conn.execute(
            _participants.insert().values(event_id=self.event.id, account_id=account_id, added_at=_now_iso())
        )
        self.event.participant_ids.append(account_id)

    def add_pending(self, email: str) -> None:
        self._conn.execute(_pending.insert().values(event_id=self.event.id, email=email, invited_at=_now_iso()))
        self.event.pending_emails.append(email)

    def remove(self, account_id: int) -> bool:
        result = self._conn.execute(
            _participants.delete().where(
                (_participants.c.event_id == self.event.id) & (_participants.c.account_id == account_id)
            )
        )
        if result.rowcount:
            self.event.participant_ids.remove(account_id)
        return result.rowcount > 0

    def remove_pending(self, email: str) -> bool:
        result = self._conn.execute(
            _pending.delete().where((_pending.c.event_id == self.event.id) & (_pending.c.email == email))
        )
        if result.rowcount:
            self.event.pending_emails.remove(email)
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class EventStore:
    def __init__(self, db_url: str = "") -> None:
        db_url = db_url or get_settings().database_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # TestClient and the ASGI server call sync handlers from a thread pool.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def create_event(
        self,
        new_event: Event,
        participant_ids: Optional[list[int]] = None,
        pending_emails: Optional[list[str]] = None,
    ) -> Event:
        """Insert an event with its initial participants in one transaction."""
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _events.insert().values(
                    title=new_event.title,
                    description=new_event.description,
                    start_at=_to_utc_iso(new_event.start),
                    end_at=_to_utc_iso(new_event.end),
                    creator_id=new_event.creator_id,
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            event_id = result.inserted_primary_key[0]
            edit = ParticipantEdit(conn, self._load(conn, event_id))
            for account_id in participant_ids or []:
                edit.add(account_id)
            for email in pending_emails or []:
                edit.add_pending(email)
            return edit.event

    def get_event(self, event_id: int) -> Optional[Event]:
        """Fetch a single event with participants. Returns None if not found."""
        with self.engine.connect() as conn:
            return self._load(conn, event_id)

    def update_event(self, event_id: int, expected_version: int, **fields) -> Event:
        """Apply field changes if the event still carries expected_version.

        Accepts any subset of: title, description, start, end. Raises
        ConflictError if a concurrent writer changed the event first, and
        NotFoundError if it was deleted.
        """
        values: dict = {}
        for key, value in fields.items():
            if key == "start":
                values["start_at"] = _to_utc_iso(value)
            elif key == "end":
                values["end_at"] = _to_utc_iso(value)
            else:
                values[key] = value
        with self.engine.begin() as conn:
            result = conn.execute(
                _events.update()
                .where((_events.c.id == event_id) & (_events.c.version == expected_version))
                .values(version=_events.c.version + 1, updated_at=_now_iso(), **values)
            )
            if result.rowcount == 0:
                if self._load(conn, event_id) is None:
                    raise NotFoundError("Event not found.")
                raise ConflictError(f"event {event_id} changed concurrently")
            return self._load(conn, event_id)

    def delete_event(self, event_id: int) -> bool:
        """Delete an event with its participant and pending rows. False if not found."""
        with self.engine.begin() as conn:
            conn.execute(_participants.delete().where(_participants.c.event_id == event_id))
            conn.execute(_pending.delete().where(_pending.c.event_id == event_id))
            result = conn.execute(_events.delete().where(_events.c.id == event_id))
        return result.rowcount > 0

    @contextmanager
    def edit_participants(self, event_id: int) -> Iterator[ParticipantEdit]:
        """Lock the event and yield a ParticipantEdit; commit on clean exit.

        Any exception raised inside the block rolls every change back.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _events.update()
                .where(_events.c.id == event_id)
                .values(version=_events.c.version + 1, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                raise NotFoundError("Event not found.")
            yield ParticipantEdit(conn, self._load(conn, event_id))

    def list_owned(self, creator_id: int) -> list[Event]:
        """Return events created by creator_id, soonest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _events.select().where(_events.c.creator_id == creator_id).order_by(_events.c.start_at, _events.c.id)
            ).fetchall()
            return self._hydrate(conn, rows)

    def list_participating(self, account_id: int) -> list[Event]:
        """Return events account_id is a participant of, soonest first."""
        event_ids = select(_participants.c.event_id).where(_participants.c.account_id == account_id)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _events.select().where(_events.c.id.in_(event_ids)).order_by(_events.c.start_at, _events.c.id)
            ).fetchall()
            return self._hydrate(conn, rows)

    def claim_pending(self, email: str, account_id: int) -> int:
        """Turn every pending invite for email into a participant row.

        Returns the number of events joined.
        """
        claimed = 0
        with self.engine.begin() as conn:
            event_ids = [r.event_id for r in conn.execute(select(_pending.c.event_id).where(_pending.c.email == email))]
            for event_id in event_ids:
                already = conn.execute(
                    select(_participants.c.id).where(
                        (_participants.c.event_id == event_id) & (_participants.c.account_id == account_id)
                    )
                ).fetchone()
                if already is None:
                    conn.execute(
                        _participants.insert().values(event_id=event_id, account_id=account_id, added_at=_now_iso())
                    )
                    claimed += 1
            conn.execute(_pending.delete().where(_pending.c.email == email))
        return claimed

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self, conn: Connection, event_id: int) -> Optional[Event]:
        row = conn.execute(_events.select().where(_events.c.id == event_id)).fetchone()
        if row is None:
            return None
        return self._hydrate(conn, [row])[0]

    def _hydrate(self, conn: Connection, rows) -> list[Event]:
        """Map event rows and attach participants and pending invites in two queries."""
        events = [_row_to_event(r) for r in rows]
        if not events:
            return events
        by_id = {e.id: e for e in events}
        for r in conn.execute(
            select(_participants.c.event_id, _participants.c.account_id)
            .where(_participants.c.event_id.in_(list(by_id)))
            .order_by(_participants.c.id)
        ):
            by_id[r.event_id].participant_ids.append(r.account_id)
        for r in conn.execute(
            select(_pending.c.event_id, _pending.c.email)
            .where(_pending.c.event_id.in_(list(by_id)))
            .order_by(_pending.c.id)
        ):
            by_id[r.event_id].pending_emails.append(r.email)
        return events


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_event(row) -> Event:
    return Event(
        id=row.id,
        title=row.title,
        description=row.description,
        start=_parse_iso(row.start_at),
        end=_parse_iso(row.end_at),
        creator_id=row.creator_id,
        version=row.version,
        created_at=_parse_iso(row.created_at),
        updated_at=_parse_iso(row.updated_at),
    )
