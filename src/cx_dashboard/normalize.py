"""Normalization functions for contact import.

All scalar functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

log = logging.getLogger(__name__)

_JSONB_SUFFIX_RE = re.compile(r"\(\s*jsonb?\s*\)\s*$", re.IGNORECASE)
_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

_TS_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)

SENTIMENTS = frozenset({"positive", "neutral", "negative"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_key  (source column / JSON key → alias lookup key)
# ---------------------------------------------------------------------------

def normalize_key(key: str | None) -> str:
    """Lowercase snake form of a source column or JSON key.

    'Directory Fields (JSONb)' → 'directory_fields'
    'Open-Ended Sentiment'     → 'open_ended_sentiment'
    'contactId'                → 'contact_id'
    """
    if key is None:
        return ""
    v = key.strip().lstrip("\ufeff")
    v = _JSONB_SUFFIX_RE.sub("", v)
    v = _CAMEL_BOUNDARY_RE.sub("_", v)
    v = re.sub(r"[^0-9a-zA-Z]+", "_", v).strip("_")
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: parse_ts
# ---------------------------------------------------------------------------

def parse_ts(value: Any) -> datetime | None:
    """Parse an ISO-8601 or common tabular timestamp; None when unparseable.

    Naive results are taken as UTC.
    """
    if isinstance(value, datetime):
        ts = value
    else:
        v = trim(value)
        if v is None:
            return None
        ts = None
        iso = v[:-1] + "+00:00" if v.endswith(("Z", "z")) else v
        try:
            ts = datetime.fromisoformat(iso)
        except ValueError:
            for fmt in _TS_FORMATS:
                try:
                    ts = datetime.strptime(v, fmt)
                    break
                except ValueError:
                    continue
        if ts is None:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ---------------------------------------------------------------------------
# Rule 5: parse_embedded_json
# ---------------------------------------------------------------------------

def _unescape_cell(v: str) -> str:
    """Strip one layer of surrounding quotes and un-double inner quotes."""
    if len(v) >= 2 and v.startswith('"') and v.endswith('"'):
        v = v[1:-1]
    return v.replace('""', '"')


def parse_embedded_json(value: Any, field_name: str = "") -> Any:
    """Decode a JSON payload that may arrive escaped inside a CSV cell.

    Structures (dict / list) and non-string scalars pass through unchanged.
    Strings are parsed as JSON; on failure the CSV quoting layer is undone
    ('"{""a"":1}"' → '{"a":1}') and parsing retried.  A string result that
    itself looks like JSON is decoded once more.

    Returns None for blank input or when the payload cannot be decoded.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        return value
    v = trim(value)
    if v is None:
        return None

    try:
        data = json.loads(v)
    except ValueError:
        try:
            data = json.loads(_unescape_cell(v))
        except ValueError:
            log.warning("Unparseable embedded JSON in field %r: %.80r", field_name, v)
            return None

    if isinstance(data, str):
        inner = data.strip()
        if inner[:1] in ("{", "["):
            try:
                return json.loads(inner)
            except ValueError:
                log.warning("Unparseable nested JSON in field %r: %.80r", field_name, inner)
                return None
    return data


# ---------------------------------------------------------------------------
# Helpers: derived directory fields
# ---------------------------------------------------------------------------

def build_full_name(first_raw: Any, last_raw: Any) -> str | None:
    first = trim(first_raw)
    last = trim(last_raw)
    parts = [p for p in [first, last] if p]
    return " ".join(parts) if parts else None


def build_location(city_raw: Any, state_raw: Any) -> str | None:
    """Return '{city}, {state}' when both parts are present, else None."""
    city = trim(city_raw)
    state = trim(state_raw)
    if city and state:
        return f"{city}, {state}"
    return None


def normalize_sentiment(value: Any) -> str | None:
    """Lowercase a sentiment label; anything but positive/neutral/negative → None."""
    v = trim(value)
    if v is None:
        return None
    v = v.lower()
    return v if v in SENTIMENTS else None
