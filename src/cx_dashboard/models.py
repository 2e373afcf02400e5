"""cx_dashboard.models

Entity shapes shared by the import pipeline, the storage layer and the API.

Contact → Activity / Survey / Note (1-to-many).  A Survey optionally holds a
non-owning reference to one Activity of the same Contact.

Schema-free attribute bags (directory_fields, activity_fields, metric_scores,
...) are plain JSON values: str | int | float | bool | None | list | dict.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Union

JsonValue = Union[str, int, float, bool, None, list, dict]
JsonObject = dict[str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


def _api_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class _ApiMixin:
    """camelCase serialization for HTTP responses and run reports."""

    def to_api(self) -> dict[str, Any]:
        return {
            _camel(f.name): _api_value(getattr(self, f.name))
            for f in fields(self)  # type: ignore[arg-type]
        }


@dataclass
class Contact(_ApiMixin):
    id: str
    directory: str
    directory_fields: JsonObject = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Activity(_ApiMixin):
    id: str
    contact_id: str
    activity: str
    activity_fields: JsonValue = None
    activity_upload_date: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Survey(_ApiMixin):
    id: str
    contact_id: str
    survey_title: str
    channel: str
    status: str
    activity_id: str | None = None
    feedback_recipient: JsonValue = None
    sent_at: datetime | None = None
    language: str | None = "English"
    participation_method: str | None = None
    participation_date: datetime | None = None
    survey_response_link: str | None = None
    metric_scores: JsonValue = None
    driver_scores: JsonValue = None
    open_ended_sentiment: str | None = None
    open_ended_themes: JsonValue = None
    open_ended_emotions: JsonValue = None
    created_at: datetime | None = None


@dataclass
class Note(_ApiMixin):
    id: str
    contact_id: str
    content: str
    author_name: str
    author_initials: str
    created_at: datetime | None = None


@dataclass
class ContactWithData:
    """A Contact plus its children and display-only aggregates."""

    contact: Contact
    activities: list[Activity] = field(default_factory=list)
    surveys: list[Survey] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)
    communication_metrics: JsonObject = field(default_factory=dict)
    tags: list[JsonObject] = field(default_factory=list)
    nlp_insights: JsonObject = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        return {
            **self.contact.to_api(),
            "activities": [a.to_api() for a in self.activities],
            "surveys": [s.to_api() for s in self.surveys],
            "notes": [n.to_api() for n in self.notes],
            "communicationMetrics": self.communication_metrics,
            "tags": self.tags,
            "nlpInsights": self.nlp_insights,
        }
