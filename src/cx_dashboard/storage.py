"""cx_dashboard.storage

Storage collaborator for the import pipeline and the API.

Two implementations share the Storage protocol:
  MemoryStorage    — process-local dicts (tests, demo service without a DB)
  PostgresStorage  — psycopg against the schema in migrations/

Contacts are never updated once created: create_contact on an existing id
returns the stored row.  Surveys are keyed by their declared id and
create_survey overwrites.  delete_all_contacts cascades to every child.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterator, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from cx_dashboard.models import (
    Activity,
    Contact,
    ContactWithData,
    Note,
    Survey,
    utcnow,
)

log = logging.getLogger(__name__)

SEARCH_FIELDS = ("name", "email", "company")

# Display-only aggregates attached to a contact fetch.  These are static
# pass-through values; nothing here is computed from the contact's data.
COMMUNICATION_METRICS: dict[str, Any] = {
    "emailReadRate": 0.85,
    "responseRate": 0.72,
    "lastContact": "2024-01-20",
}
TAGS: list[dict[str, Any]] = [
    {"type": "ai", "label": "High Value", "color": "green"},
    {"type": "system", "label": "Enterprise", "color": "blue"},
]
NLP_INSIGHTS: dict[str, Any] = {
    "overallSentiment": "positive",
    "confidence": 0.89,
    "themes": ["satisfaction", "value", "support"],
    "emotions": ["satisfaction", "trust"],
    "analysis": [
        {
            "theme": "Product Quality",
            "sentiment": "positive",
            "quote": "The product quality exceeds our expectations",
            "emotions": ["satisfaction", "trust"],
        },
        {
            "theme": "Support Experience",
            "sentiment": "positive",
            "quote": "Support team was very responsive and helpful",
            "emotions": ["relief", "confidence"],
        },
    ],
}


def matches_search(contact: Contact, search: str | None) -> bool:
    """Case-insensitive substring match on directory name / email / company."""
    if not search or not search.strip():
        return True
    needle = search.strip().casefold()
    for key in SEARCH_FIELDS:
        value = contact.directory_fields.get(key)
        if isinstance(value, str) and needle in value.casefold():
            return True
    return False


def _with_aggregates(
    contact: Contact,
    activities: list[Activity],
    surveys: list[Survey],
    notes: list[Note],
) -> ContactWithData:
    return ContactWithData(
        contact=contact,
        activities=activities,
        surveys=surveys,
        notes=notes,
        communication_metrics=copy.deepcopy(COMMUNICATION_METRICS),
        tags=copy.deepcopy(TAGS),
        nlp_insights=copy.deepcopy(NLP_INSIGHTS),
    )


def _newest_first(items: list[Any]) -> list[Any]:
    return sorted(items, key=lambda i: i.created_at, reverse=True)


class Storage(Protocol):
    def batch(self, dry_run: bool = False) -> Any:
        """Context manager scoping one import batch."""
        ...

    def get_contact(self, contact_id: str) -> Contact | None: ...

    def get_contact_with_data(self, contact_id: str) -> ContactWithData | None: ...

    def list_contacts(self, search: str | None = None) -> list[Contact]: ...

    def create_contact(self, contact: Contact) -> Contact: ...

    def get_activities_by_contact_id(self, contact_id: str) -> list[Activity]: ...

    def create_activity(self, activity: Activity) -> Activity: ...

    def get_surveys_by_contact_id(self, contact_id: str) -> list[Survey]: ...

    def create_survey(self, survey: Survey) -> Survey: ...

    def get_notes_by_contact_id(self, contact_id: str) -> list[Note]: ...

    def create_note(self, note: Note) -> Note: ...

    def delete_all_contacts(self) -> dict[str, int]: ...


# ---------------------------------------------------------------------------
# In-memory storage
# ---------------------------------------------------------------------------

class MemoryStorage:
    """Dict-backed storage.  Not transactional: batch() only supports dry-run.

    A dry-run batch journals its own writes (per thread) and undoes only
    those on exit; writes made by other threads meanwhile are kept.
    """

    def __init__(self) -> None:
        self.contacts: dict[str, Contact] = {}
        self.activities: dict[str, Activity] = {}
        self.surveys: dict[str, Survey] = {}
        self.notes: dict[str, Note] = {}
        self._local = threading.local()

    @contextmanager
    def batch(self, dry_run: bool = False) -> Iterator[None]:
        journal: list[tuple[dict[str, Any], str, Any, Any]] | None = [] if dry_run else None
        self._local.journal = journal
        try:
            yield
        finally:
            self._local.journal = None
            for table, key, previous, written in reversed(journal or []):
                # a later write by someone else wins over the undo
                if table.get(key) is not written:
                    continue
                if previous is None:
                    del table[key]
                else:
                    table[key] = previous

    def _put(self, table: dict[str, Any], stored: Any) -> None:
        journal = getattr(self._local, "journal", None)
        if journal is not None:
            journal.append((table, stored.id, table.get(stored.id), stored))
        table[stored.id] = stored

    def get_contact(self, contact_id: str) -> Contact | None:
        return self.contacts.get(contact_id)

    def get_contact_with_data(self, contact_id: str) -> ContactWithData | None:
        contact = self.contacts.get(contact_id)
        if contact is None:
            return None
        return _with_aggregates(
            contact,
            self.get_activities_by_contact_id(contact_id),
            self.get_surveys_by_contact_id(contact_id),
            self.get_notes_by_contact_id(contact_id),
        )

    def list_contacts(self, search: str | None = None) -> list[Contact]:
        return _newest_first(
            [c for c in self.contacts.values() if matches_search(c, search)]
        )

    def create_contact(self, contact: Contact) -> Contact:
        existing = self.contacts.get(contact.id)
        if existing is not None:
            return existing
        now = utcnow()
        stored = replace(contact, created_at=now, updated_at=now)
        self._put(self.contacts, stored)
        return stored

    def get_activities_by_contact_id(self, contact_id: str) -> list[Activity]:
        return _newest_first(
            [a for a in self.activities.values() if a.contact_id == contact_id]
        )

    def create_activity(self, activity: Activity) -> Activity:
        if activity.contact_id not in self.contacts:
            raise KeyError(f"contact {activity.contact_id!r} does not exist")
        stored = replace(activity, created_at=utcnow())
        self._put(self.activities, stored)
        return stored

    def get_surveys_by_contact_id(self, contact_id: str) -> list[Survey]:
        return _newest_first(
            [s for s in self.surveys.values() if s.contact_id == contact_id]
        )

    def create_survey(self, survey: Survey) -> Survey:
        if survey.contact_id not in self.contacts:
            raise KeyError(f"contact {survey.contact_id!r} does not exist")
        if survey.activity_id is not None and survey.activity_id not in self.activities:
            raise KeyError(f"activity {survey.activity_id!r} does not exist")
        stored = replace(survey, created_at=utcnow())
        self._put(self.surveys, stored)
        return stored

    def get_notes_by_contact_id(self, contact_id: str) -> list[Note]:
        return _newest_first(
            [n for n in self.notes.values() if n.contact_id == contact_id]
        )

    def create_note(self, note: Note) -> Note:
        if note.contact_id not in self.contacts:
            raise KeyError(f"contact {note.contact_id!r} does not exist")
        stored = replace(note, created_at=utcnow())
        self._put(self.notes, stored)
        return stored

    def delete_all_contacts(self) -> dict[str, int]:
        counts = {
            "contacts": len(self.contacts),
            "activities": len(self.activities),
            "surveys": len(self.surveys),
            "notes": len(self.notes),
        }
        log.info("Deleting all contacts and related data: %s", counts)
        self.contacts.clear()
        self.activities.clear()
        self.surveys.clear()
        self.notes.clear()
        return counts


# ---------------------------------------------------------------------------
# PostgreSQL storage
# ---------------------------------------------------------------------------

def _jsonb(value: Any) -> Jsonb | None:
    return None if value is None else Jsonb(value)


class PostgresStorage:
    """psycopg-backed storage.

    The connection must be in autocommit mode.  Each create call runs in its
    own transaction block; inside batch() that block is a savepoint of the
    batch transaction, so one failed create rolls back only itself.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = dict_row

    @classmethod
    def connect(cls, db_dsn: str) -> "PostgresStorage":
        return cls(psycopg.connect(db_dsn, autocommit=True))

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def batch(self, dry_run: bool = False) -> Iterator[None]:
        with self._conn.transaction(force_rollback=dry_run):
            yield

    # -- contacts -----------------------------------------------------------

    def get_contact(self, contact_id: str) -> Contact | None:
        row = self._conn.execute(
            "SELECT * FROM contacts WHERE id = %s", (contact_id,)
        ).fetchone()
        return _contact_from_row(row) if row else None

    def get_contact_with_data(self, contact_id: str) -> ContactWithData | None:
        contact = self.get_contact(contact_id)
        if contact is None:
            return None
        return _with_aggregates(
            contact,
            self.get_activities_by_contact_id(contact_id),
            self.get_surveys_by_contact_id(contact_id),
            self.get_notes_by_contact_id(contact_id),
        )

    def list_contacts(self, search: str | None = None) -> list[Contact]:
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            rows = self._conn.execute(
                """
                SELECT * FROM contacts
                WHERE directory_fields->>'name' ILIKE %s
                   OR directory_fields->>'email' ILIKE %s
                   OR directory_fields->>'company' ILIKE %s
                ORDER BY created_at DESC, id
                """,
                (pattern, pattern, pattern),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM contacts ORDER BY created_at DESC, id"
            ).fetchall()
        return [_contact_from_row(r) for r in rows]

    def create_contact(self, contact: Contact) -> Contact:
        with self._conn.transaction():
            self._conn.execute(
                """
                INSERT INTO contacts (id, directory, directory_fields)
                VALUES (%s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (contact.id, contact.directory, Jsonb(contact.directory_fields)),
            )
            row = self._conn.execute(
                "SELECT * FROM contacts WHERE id = %s", (contact.id,)
            ).fetchone()
        return _contact_from_row(row)

    # -- activities ---------------------------------------------------------

    def get_activities_by_contact_id(self, contact_id: str) -> list[Activity]:
        rows = self._conn.execute(
            "SELECT * FROM activities WHERE contact_id = %s ORDER BY created_at DESC, id",
            (contact_id,),
        ).fetchall()
        return [_activity_from_row(r) for r in rows]

    def create_activity(self, activity: Activity) -> Activity:
        with self._conn.transaction():
            row = self._conn.execute(
                """
                INSERT INTO activities
                  (id, contact_id, activity, activity_fields, activity_upload_date)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (activity.id, activity.contact_id, activity.activity,
                 _jsonb(activity.activity_fields), activity.activity_upload_date),
            ).fetchone()
        return _activity_from_row(row)

    # -- surveys ------------------------------------------------------------

    def get_surveys_by_contact_id(self, contact_id: str) -> list[Survey]:
        rows = self._conn.execute(
            "SELECT * FROM surveys WHERE contact_id = %s ORDER BY created_at DESC, id",
            (contact_id,),
        ).fetchall()
        return [_survey_from_row(r) for r in rows]

    def create_survey(self, survey: Survey) -> Survey:
        with self._conn.transaction():
            row = self._conn.execute(
                """
                INSERT INTO surveys (
                    id, contact_id, activity_id, survey_title, feedback_recipient,
                    channel, sent_at, language, status,
                    participation_method, participation_date, survey_response_link,
                    metric_scores, driver_scores,
                    open_ended_sentiment, open_ended_themes, open_ended_emotions
                ) VALUES (
                    %s, %s, %s, %s, %s,
                    %s, %s, %s, %s,
                    %s, %s, %s,
                    %s, %s,
                    %s, %s, %s
                )
                ON CONFLICT (id) DO UPDATE SET
                  contact_id = EXCLUDED.contact_id,
                  activity_id = EXCLUDED.activity_id,
                  survey_title = EXCLUDED.survey_title,
                  feedback_recipient = EXCLUDED.feedback_recipient,
                  channel = EXCLUDED.channel,
                  sent_at = EXCLUDED.sent_at,
                  language = EXCLUDED.language,
                  status = EXCLUDED.status,
                  participation_method = EXCLUDED.participation_method,
                  participation_date = EXCLUDED.participation_date,
                  survey_response_link = EXCLUDED.survey_response_link,
                  metric_scores = EXCLUDED.metric_scores,
                  driver_scores = EXCLUDED.driver_scores,
                  open_ended_sentiment = EXCLUDED.open_ended_sentiment,
                  open_ended_themes = EXCLUDED.open_ended_themes,
                  open_ended_emotions = EXCLUDED.open_ended_emotions,
                  created_at = now()
                RETURNING *
                """,
                (
                    survey.id, survey.contact_id, survey.activity_id,
                    survey.survey_title, _jsonb(survey.feedback_recipient),
                    survey.channel, survey.sent_at, survey.language, survey.status,
                    survey.participation_method, survey.participation_date,
                    survey.survey_response_link,
                    _jsonb(survey.metric_scores), _jsonb(survey.driver_scores),
                    survey.open_ended_sentiment,
                    _jsonb(survey.open_ended_themes), _jsonb(survey.open_ended_emotions),
                ),
            ).fetchone()
        return _survey_from_row(row)

    # -- notes --------------------------------------------------------------

    def get_notes_by_contact_id(self, contact_id: str) -> list[Note]:
        rows = self._conn.execute(
            "SELECT * FROM notes WHERE contact_id = %s ORDER BY created_at DESC, id",
            (contact_id,),
        ).fetchall()
        return [_note_from_row(r) for r in rows]

    def create_note(self, note: Note) -> Note:
        with self._conn.transaction():
            row = self._conn.execute(
                """
                INSERT INTO notes (id, contact_id, content, author_name, author_initials)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (note.id, note.contact_id, note.content,
                 note.author_name, note.author_initials),
            ).fetchone()
        return _note_from_row(row)

    # -- bulk ---------------------------------------------------------------

    def delete_all_contacts(self) -> dict[str, int]:
        with self._conn.transaction():
            counts = {
                table: self._conn.execute(f"SELECT count(*) AS n FROM {table}").fetchone()["n"]
                for table in ("contacts", "activities", "surveys", "notes")
            }
            log.info("Deleting all contacts and related data: %s", counts)
            # activities / surveys / notes cascade from contacts
            self._conn.execute("DELETE FROM contacts")
        return counts


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------

def _contact_from_row(row: dict[str, Any]) -> Contact:
    return Contact(
        id=row["id"],
        directory=row["directory"],
        directory_fields=row["directory_fields"] or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _activity_from_row(row: dict[str, Any]) -> Activity:
    return Activity(
        id=row["id"],
        contact_id=row["contact_id"],
        activity=row["activity"],
        activity_fields=row["activity_fields"],
        activity_upload_date=row["activity_upload_date"],
        created_at=row["created_at"],
    )


def _survey_from_row(row: dict[str, Any]) -> Survey:
    return Survey(**{k: row[k] for k in (
        "id", "contact_id", "activity_id", "survey_title", "feedback_recipient",
        "channel", "sent_at", "language", "status",
        "participation_method", "participation_date", "survey_response_link",
        "metric_scores", "driver_scores",
        "open_ended_sentiment", "open_ended_themes", "open_ended_emotions",
        "created_at",
    )})


def _note_from_row(row: dict[str, Any]) -> Note:
    return Note(
        id=row["id"],
        contact_id=row["contact_id"],
        content=row["content"],
        author_name=row["author_name"],
        author_initials=row["author_initials"],
        created_at=row["created_at"],
    )
