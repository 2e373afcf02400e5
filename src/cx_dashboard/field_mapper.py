"""cx_dashboard.field_mapper

Translates one raw source record (a CSV row or one JSON object) into the
canonical fragment triple consumed by the rest of the import pipeline:

  contact   — always produced: {id, directory, directory_fields}
  activity  — only when an activity label AND an activity payload are present
  survey    — only when a survey id AND a survey title are present

Source keys are normalized (see normalize.normalize_key) before lookup, so
'Contact ID', 'contact_id' and 'contactId' all hit the same alias.  The first
alias with a non-empty value wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from cx_dashboard.normalize import (
    build_full_name,
    build_location,
    normalize_key,
    normalize_sentiment,
    normalize_space,
    parse_embedded_json,
    parse_ts,
    trim,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Alias tables (normalized source key names, in priority order)
# ---------------------------------------------------------------------------

DEFAULT_ALIASES: dict[str, list[str]] = {
    # contact
    "contact_id":           ["contact_id", "contactid", "id"],
    "directory":            ["directory"],
    "directory_fields":     ["directory_fields"],
    # activity
    "activity":             ["activity"],
    "activity_fields":      ["activity_fields"],
    "activity_upload_date": ["activity_upload_date"],
    # survey
    "survey_id":            ["survey_id"],
    "survey_title":         ["survey_title"],
    "feedback_recipient":   ["feedback_recipient"],
    "channel":              ["channel"],
    "sent_at":              ["sent_at"],
    "language":             ["language"],
    "status":               ["status"],
    "participation_method": ["participated_via", "participation_method"],
    "participation_date":   ["participated_date", "participation_date"],
    "survey_response_link": ["survey_response_link"],
    "metric_scores":        ["metric_and_custom_metric_scores", "metrics_and_custom_metrics", "metric_scores"],
    "driver_scores":        ["driver_scores"],
    "open_ended_sentiment": ["open_ended_sentiment"],
    "open_ended_themes":    ["open_ended_themes"],
    "open_ended_emotions":  ["open_ended_emotions"],
}

# Flat record keys folded into directory_fields when not already present there
DIRECTORY_KEYS = (
    "name", "email", "phone", "company", "role", "industry",
    "annual_revenue", "location", "join_date", "segment",
    "first_name", "last_name", "city", "state",
)

DEFAULT_LANGUAGE = "English"
DEFAULT_DIRECTORY = "Uncategorized"


# ---------------------------------------------------------------------------
# Output shape
# ---------------------------------------------------------------------------

@dataclass
class MappedRecord:
    contact: dict[str, Any]
    activity: dict[str, Any] | None = None
    survey: dict[str, Any] | None = None
    # fields whose embedded JSON could not be decoded and were dropped
    dropped_fields: list[str] = field(default_factory=list)


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _clean_scalar(value: Any) -> Any:
    return trim(value) if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Alias overrides (YAML)
# ---------------------------------------------------------------------------

def load_alias_overrides(path: Path) -> dict[str, list[str]]:
    """Load extra source-name aliases from a YAML mapping.

    Format:
        contact_id: ["Customer Number", "cust_no"]
        directory:  ["Segment Group"]

    Keys must be canonical field names; values a list of source names (or a
    single string).  Raises ValueError on unknown keys or bad shapes.
    """
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"alias file {path} must contain a mapping")
    overrides: dict[str, list[str]] = {}
    for canonical, names in data.items():
        if canonical not in DEFAULT_ALIASES:
            raise ValueError(f"alias file {path}: unknown field {canonical!r}")
        if isinstance(names, str):
            names = [names]
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise ValueError(f"alias file {path}: {canonical!r} must be a list of strings")
        overrides[canonical] = [normalize_key(n) for n in names]
    return overrides


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------

class FieldMapper:
    """Stateless record → fragment translator with a configurable alias table."""

    def __init__(
        self,
        overrides: Mapping[str, list[str]] | None = None,
        default_directory: str | None = DEFAULT_DIRECTORY,
    ) -> None:
        # None disables the fallback, leaving directory-less contacts to fail validation
        self.default_directory = default_directory
        self.aliases: dict[str, list[str]] = {k: list(v) for k, v in DEFAULT_ALIASES.items()}
        for canonical, names in (overrides or {}).items():
            for name in names:
                if name not in self.aliases[canonical]:
                    self.aliases[canonical].append(name)

    def _lookup(self, record: dict[str, Any], canonical: str) -> Any:
        for alias in self.aliases[canonical]:
            value = record.get(alias)
            if _is_present(value):
                return value
        return None

    def _json_field(self, record: dict[str, Any], canonical: str, dropped: list[str]) -> Any:
        raw = self._lookup(record, canonical)
        value = parse_embedded_json(raw, canonical)
        if raw is not None and value is None:
            dropped.append(canonical)
        return value

    def _directory_fields(self, record: dict[str, Any], dropped: list[str]) -> dict[str, Any]:
        embedded = self._json_field(record, "directory_fields", dropped)
        if embedded is not None and not isinstance(embedded, dict):
            log.warning("directory_fields is not an object (%s); ignoring", type(embedded).__name__)
            dropped.append("directory_fields")
            embedded = None
        fields: dict[str, Any] = dict(embedded or {})

        for key in DIRECTORY_KEYS:
            if key in fields:
                continue
            value = record.get(key)
            if _is_present(value):
                fields[key] = _clean_scalar(value)

        if not _is_present(fields.get("name")):
            full_name = build_full_name(fields.get("first_name"), fields.get("last_name"))
            if full_name:
                fields["name"] = full_name
        if not _is_present(fields.get("location")):
            location = build_location(fields.get("city"), fields.get("state"))
            if location:
                fields["location"] = location
        return fields

    def map(self, raw: Mapping[str, Any]) -> MappedRecord:
        # Two raw keys may normalize alike; the first non-empty one wins.
        record: dict[str, Any] = {}
        for k, v in raw.items():
            if k is None:
                continue
            nk = normalize_key(k)
            if nk not in record or not _is_present(record[nk]):
                record[nk] = v

        dropped: list[str] = []
        contact = {
            "id": trim(self._lookup(record, "contact_id")),
            "directory": normalize_space(self._lookup(record, "directory")) or self.default_directory,
            "directory_fields": self._directory_fields(record, dropped),
        }

        activity = None
        label = normalize_space(self._lookup(record, "activity"))
        activity_fields = self._json_field(record, "activity_fields", dropped)
        if label and activity_fields is not None:
            activity = {
                "activity": label,
                "activity_fields": activity_fields,
                "activity_upload_date": parse_ts(self._lookup(record, "activity_upload_date")),
            }

        survey = None
        survey_id = trim(self._lookup(record, "survey_id"))
        survey_title = normalize_space(self._lookup(record, "survey_title"))
        if survey_id and survey_title:
            sent_raw = self._lookup(record, "sent_at")
            sent_at = parse_ts(sent_raw)
            if sent_raw is not None and sent_at is None:
                log.warning("survey %s: unparseable sent_at %r", survey_id, sent_raw)
            sentiment_raw = self._lookup(record, "open_ended_sentiment")
            sentiment = normalize_sentiment(sentiment_raw)
            if sentiment_raw is not None and sentiment is None:
                log.warning("survey %s: unknown sentiment %r", survey_id, sentiment_raw)
            survey = {
                "id": survey_id,
                "survey_title": survey_title,
                "feedback_recipient": self._json_field(record, "feedback_recipient", dropped),
                "channel": normalize_space(self._lookup(record, "channel")),
                "sent_at": sent_at,
                "language": normalize_space(self._lookup(record, "language")) or DEFAULT_LANGUAGE,
                "status": normalize_space(self._lookup(record, "status")),
                "participation_method": normalize_space(self._lookup(record, "participation_method")),
                "participation_date": parse_ts(self._lookup(record, "participation_date")),
                "survey_response_link": trim(self._lookup(record, "survey_response_link")),
                "metric_scores": self._json_field(record, "metric_scores", dropped),
                "driver_scores": self._json_field(record, "driver_scores", dropped),
                "open_ended_sentiment": sentiment,
                "open_ended_themes": self._json_field(record, "open_ended_themes", dropped),
                "open_ended_emotions": self._json_field(record, "open_ended_emotions", dropped),
            }

        return MappedRecord(contact=contact, activity=activity, survey=survey, dropped_fields=dropped)


_default_mapper = FieldMapper()


def map_record(raw: Mapping[str, Any]) -> MappedRecord:
    """Map one raw record with the default alias table."""
    return _default_mapper.map(raw)
