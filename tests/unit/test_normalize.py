"""Unit tests for cx_dashboard.normalize."""

from datetime import datetime, timezone

import pytest

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


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None

    def test_number_is_stringified(self):
        assert trim(42) == "42"


# ---------------------------------------------------------------------------
# normalize_space
# ---------------------------------------------------------------------------

class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("Enterprise    Customers") == "Enterprise Customers"

    def test_collapses_tabs(self):
        assert normalize_space("hello\t\tworld") == "hello world"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# normalize_key
# ---------------------------------------------------------------------------

class TestNormalizeKey:
    @pytest.mark.parametrize("raw,expected", [
        ("Contact ID", "contact_id"),
        ("contact_id", "contact_id"),
        ("contactId", "contact_id"),
        ("Directory Fields (JSONb)", "directory_fields"),
        ("Open-Ended Sentiment", "open_ended_sentiment"),
        ("Metric and Custom Metric Scores (JSONb)", "metric_and_custom_metric_scores"),
        ("  Survey Title  ", "survey_title"),
        ("\ufeffContact ID", "contact_id"),
    ])
    def test_variants(self, raw, expected):
        assert normalize_key(raw) == expected

    def test_none(self):
        assert normalize_key(None) == ""


# ---------------------------------------------------------------------------
# parse_ts
# ---------------------------------------------------------------------------

class TestParseTs:
    def test_iso_with_z(self):
        ts = parse_ts("2024-01-15T10:30:00Z")
        assert ts == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_iso_with_offset_preserved(self):
        ts = parse_ts("2024-01-15T10:30:00-05:00")
        assert ts.utcoffset().total_seconds() == -5 * 3600

    def test_date_only_is_utc_midnight(self):
        assert parse_ts("2024-01-15") == datetime(2024, 1, 15, tzinfo=timezone.utc)

    def test_us_date(self):
        assert parse_ts("01/15/2024") == datetime(2024, 1, 15, tzinfo=timezone.utc)

    def test_us_datetime(self):
        assert parse_ts("1/15/2024 09:05") == datetime(2024, 1, 15, 9, 5, tzinfo=timezone.utc)

    def test_datetime_passthrough_naive_gets_utc(self):
        assert parse_ts(datetime(2024, 1, 1)).tzinfo == timezone.utc

    def test_garbage_returns_none(self):
        assert parse_ts("next tuesday") is None

    def test_blank_returns_none(self):
        assert parse_ts("  ") is None


# ---------------------------------------------------------------------------
# parse_embedded_json
# ---------------------------------------------------------------------------

class TestParseEmbeddedJson:
    def test_plain_json_object(self):
        assert parse_embedded_json('{"name": "Sarah"}') == {"name": "Sarah"}

    def test_csv_escaped_cell(self):
        assert parse_embedded_json('"{""a"":1}"') == {"a": 1}

    def test_doubled_quotes_without_outer_quotes(self):
        assert parse_embedded_json('{""nps"": 9}') == {"nps": 9}

    def test_double_encoded_string(self):
        assert parse_embedded_json('"{\\"a\\": 1}"') == {"a": 1}

    def test_list(self):
        assert parse_embedded_json('["price", "support"]') == ["price", "support"]

    def test_structure_passes_through(self):
        value = {"already": "parsed"}
        assert parse_embedded_json(value) is value

    def test_malformed_returns_none_and_warns(self, caplog):
        with caplog.at_level("WARNING"):
            assert parse_embedded_json("{bad json", "activity_fields") is None
        assert "activity_fields" in caplog.text

    def test_blank_returns_none(self):
        assert parse_embedded_json("") is None

    def test_none_returns_none(self):
        assert parse_embedded_json(None) is None


# ---------------------------------------------------------------------------
# derived directory fields
# ---------------------------------------------------------------------------

class TestBuildFullName:
    def test_both_parts(self):
        assert build_full_name("Sarah", "Chen") == "Sarah Chen"

    def test_first_only(self):
        assert build_full_name("Sarah", None) == "Sarah"

    def test_neither(self):
        assert build_full_name("", "  ") is None


class TestBuildLocation:
    def test_city_and_state(self):
        assert build_location("Seattle", "WA") == "Seattle, WA"

    def test_missing_state(self):
        assert build_location("Seattle", None) is None


class TestNormalizeSentiment:
    @pytest.mark.parametrize("raw,expected", [
        ("Positive", "positive"),
        (" neutral ", "neutral"),
        ("NEGATIVE", "negative"),
        ("mixed", None),
        (None, None),
    ])
    def test_values(self, raw, expected):
        assert normalize_sentiment(raw) == expected
