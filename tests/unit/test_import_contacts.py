"""Unit tests for cx_dashboard.import_contacts against MemoryStorage.

Covers the per-record pipeline, persist ordering and failure handling, and
the whole-batch format errors.
"""

import csv
import io
import json
import logging
import threading

import pytest

from cx_dashboard.field_mapper import FieldMapper
from cx_dashboard.import_contacts import (
    BatchImporter,
    check_upload_size,
    detect_format,
    import_file,
    import_stream,
)
from cx_dashboard.models import Contact
from cx_dashboard.shared import (
    FileTooLargeError,
    ImportFormatError,
    MalformedInputError,
    RejectWriter,
    UnsupportedFormatError,
)
from cx_dashboard.storage import MemoryStorage


CSV_HEADER = [
    "Contact ID", "Directory", "Directory Fields (JSONb)",
    "Activity", "Activity Fields (JSONb)", "Activity Upload Date",
    "Survey ID", "Survey Title", "Channel", "Status",
    "Metric and Custom Metric Scores (JSONb)",
]


def _csv_bytes(rows):
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow([row.get(col, "") for col in CSV_HEADER])
    return buf.getvalue().encode("utf-8")


def _json_bytes(data):
    return json.dumps(data).encode("utf-8")


@pytest.fixture
def storage():
    return MemoryStorage()


# ---------------------------------------------------------------------------
# Format detection
# ---------------------------------------------------------------------------

class TestDetectFormat:
    def test_csv(self):
        assert detect_format("Contacts.CSV") == "csv"

    def test_json(self):
        assert detect_format("export.json") == "json"

    @pytest.mark.parametrize("name", ["notes.txt", "noext", "", None, "data.csv.bak"])
    def test_unsupported(self, name):
        with pytest.raises(UnsupportedFormatError):
            detect_format(name)

    def test_size_limit(self):
        check_upload_size(10, 10)
        with pytest.raises(FileTooLargeError):
            check_upload_size(11, 10)


# ---------------------------------------------------------------------------
# JSON imports
# ---------------------------------------------------------------------------

class TestJsonImport:
    def test_duplicate_contact_merges_first_wins(self, storage):
        data = [
            {"contact_id": "c1", "name": "Alice"},
            {"contact_id": "c1", "name": "Bob", "activity": "Call",
             "activity_fields": {"minutes": 10}},
        ]
        report = import_file(_json_bytes(data), "batch.json", storage)

        assert len(report.contacts) == 1
        assert storage.get_contact("c1").directory_fields["name"] == "Alice"
        assert len(report.activities) == 1
        assert report.activities[0].contact_id == "c1"
        assert report.counters.rows_read == 2
        assert report.counters.rows_rejected == 0

    def test_single_object_root(self, storage):
        report = import_file(_json_bytes({"contact_id": "c1", "directory": "D"}), "one.json", storage)
        assert [c.id for c in report.contacts] == ["c1"]

    def test_contact_count_equals_distinct_ids(self, storage):
        data = [{"contact_id": cid} for cid in ["a", "b", "a", "c", "b"]]
        report = import_file(_json_bytes(data), "b.json", storage)
        assert sorted(c.id for c in report.contacts) == ["a", "b", "c"]

    def test_idless_records_get_distinct_contacts(self, storage):
        report = import_file(_json_bytes([{"name": "X"}, {"name": "X"}]), "b.json", storage)
        assert len(report.contacts) == 2

    def test_repeated_survey_id_replaces(self, storage):
        data = [
            {"contact_id": "c1", "survey_id": "s1", "survey_title": "NPS v1",
             "channel": "Email", "status": "Sent"},
            {"contact_id": "c1", "survey_id": "s1", "survey_title": "NPS v2",
             "channel": "Email", "status": "Completed"},
        ]
        report = import_file(_json_bytes(data), "s.json", storage)

        assert len(report.surveys) == 1
        assert storage.surveys["s1"].survey_title == "NPS v2"
        assert storage.surveys["s1"].status == "Completed"
        assert report.counters.surveys_replaced_in_batch == 1

    def test_rejected_earlier_survey_is_not_a_replacement(self, storage):
        data = [
            {"contact_id": "c1", "survey_id": "s1", "survey_title": "NPS v1"},
            {"contact_id": "c1", "survey_id": "s1", "survey_title": "NPS v2",
             "channel": "Email", "status": "Completed"},
        ]
        report = import_file(_json_bytes(data), "s.json", storage)

        assert storage.surveys["s1"].survey_title == "NPS v2"
        assert report.counters.surveys_rejected == 1
        assert report.counters.surveys_replaced_in_batch == 0

    def test_reimport_overwrites_stored_survey(self, storage):
        first = [{"contact_id": "c1", "survey_id": "s1", "survey_title": "Old",
                  "channel": "Email", "status": "Sent"}]
        second = [{"contact_id": "c1", "survey_id": "s1", "survey_title": "New",
                   "channel": "Email", "status": "Read"}]
        import_file(_json_bytes(first), "a.json", storage)
        import_file(_json_bytes(second), "b.json", storage)
        assert len(storage.surveys) == 1
        assert storage.surveys["s1"].survey_title == "New"

    def test_malformed_json_is_whole_batch_failure(self, storage):
        with pytest.raises(MalformedInputError):
            import_file(b"[{not json", "bad.json", storage)
        assert storage.contacts == {}

    def test_scalar_root_rejected(self, storage):
        with pytest.raises(MalformedInputError):
            import_file(b"42", "bad.json", storage)

    def test_non_object_element_rejected_per_record(self, storage):
        report = import_file(_json_bytes([{"contact_id": "c1"}, "oops"]), "b.json", storage)
        assert [c.id for c in report.contacts] == ["c1"]
        assert report.counters.rows_rejected == 1
        assert report.errors[0].reason == "record_not_object"
        assert report.errors[0].row_index == 2

    def test_unsupported_extension(self, storage):
        with pytest.raises(UnsupportedFormatError):
            import_file(b"contact_id\nc1\n", "contacts.txt", storage)
        assert storage.contacts == {}


# ---------------------------------------------------------------------------
# CSV imports
# ---------------------------------------------------------------------------

class TestCsvImport:
    def test_escaped_directory_fields(self, storage):
        content = (
            'Contact ID,Directory,Directory Fields (JSONb)\n'
            'c_sarah,Enterprise,"{""name"":""Sarah"",""email"":""s@x.com""}"\n'
        ).encode("utf-8")
        import_file(content, "contacts.csv", storage)
        assert storage.get_contact("c_sarah").directory_fields["name"] == "Sarah"

    def test_activity_linked_to_row_contact(self, storage):
        content = _csv_bytes([
            {"Contact ID": "c1", "Directory": "D", "Activity": "Email Campaign",
             "Activity Fields (JSONb)": '{"subject":"Hi"}'},
            {"Contact ID": "c2", "Directory": "D", "Activity": "Call",
             "Activity Fields (JSONb)": '{"minutes":4}'},
        ])
        report = import_file(content, "a.csv", storage)
        owners = {a.activity: a.contact_id for a in report.activities}
        assert owners == {"Email Campaign": "c1", "Call": "c2"}

    def test_colocated_survey_links_activity(self, storage):
        content = _csv_bytes([
            {"Contact ID": "c1", "Directory": "D", "Activity": "Email Campaign",
             "Activity Fields (JSONb)": '{"subject":"Hi"}',
             "Survey ID": "s1", "Survey Title": "NPS", "Channel": "Email", "Status": "Sent"},
            {"Contact ID": "c1", "Survey ID": "s2", "Survey Title": "CSAT",
             "Channel": "SMS", "Status": "Read"},
        ])
        report = import_file(content, "a.csv", storage)
        activity_id = report.activities[0].id
        assert storage.surveys["s1"].activity_id == activity_id
        assert storage.surveys["s2"].activity_id is None

    def test_bad_embedded_json_nulls_field_only(self, storage):
        content = _csv_bytes([
            {"Contact ID": "c1", "Directory": "D", "Survey ID": "s1", "Survey Title": "NPS",
             "Channel": "Email", "Status": "Sent",
             "Metric and Custom Metric Scores (JSONb)": "{nps:"},
        ])
        report = import_file(content, "a.csv", storage)
        assert storage.surveys["s1"].metric_scores is None
        assert report.counters.embedded_json_errors == 1
        assert report.counters.rows_rejected == 0

    def test_bom_header(self, storage):
        content = "\ufeffContact ID,Directory\nc1,D\n".encode("utf-8")
        import_file(content, "bom.csv", storage)
        assert storage.get_contact("c1") is not None

    def test_undecodable_csv(self, storage):
        with pytest.raises(MalformedInputError):
            import_file(b"Contact ID\n\xff\xfe\xfa\n", "bad.csv", storage)

    def test_header_only(self, storage):
        report = import_file(b"Contact ID,Directory\n", "empty.csv", storage)
        assert report.counters.rows_read == 0
        assert report.message == "Successfully imported 0 contacts, 0 activities, and 0 surveys"

    def test_large_embedded_json_cell(self, storage):
        content = _csv_bytes([
            {"Contact ID": "c1", "Directory": "D", "Activity": "Email Campaign",
             "Activity Fields (JSONb)": json.dumps({"note": "x" * 200000})},
            {"Contact ID": "c2", "Directory": "D"},
        ])
        report = import_file(content, "big.csv", storage)

        assert sorted(c.id for c in report.contacts) == ["c1", "c2"]
        assert len(report.activities[0].activity_fields["note"]) == 200000
        assert report.counters.rows_rejected == 0


# ---------------------------------------------------------------------------
# Validation and referential rules
# ---------------------------------------------------------------------------

class TestRecordRules:
    def test_invalid_survey_does_not_block_siblings(self, storage):
        data = [
            {"contact_id": "c1", "activity": "Call", "activity_fields": {"m": 1},
             "survey_id": "s1", "survey_title": "NPS"},  # no channel / status
            {"contact_id": "c2"},
        ]
        report = import_file(_json_bytes(data), "b.json", storage)
        assert sorted(c.id for c in report.contacts) == ["c1", "c2"]
        assert len(report.activities) == 1
        assert report.surveys == []
        assert report.counters.surveys_rejected == 1
        assert report.counters.rows_rejected == 1
        err = report.errors[0]
        assert (err.row_index, err.entity, err.entity_id) == (1, "survey", "s1")
        assert err.reason == "missing_channel,missing_status"

    def test_children_of_rejected_contact_rejected(self, storage):
        mapper_less_default = FieldMapper(default_directory=None)
        data = [{"contact_id": "c1", "activity": "Call", "activity_fields": {"m": 1}}]
        report = import_file(_json_bytes(data), "b.json", storage, mapper=mapper_less_default)
        assert report.contacts == [] and report.activities == []
        reasons = [(e.entity, e.reason) for e in report.errors]
        assert reasons == [("contact", "missing_directory"), ("activity", "contact_not_resolved")]

    def test_existing_contact_matched_not_recreated(self, storage):
        storage.create_contact(Contact(id="c1", directory="Old", directory_fields={"name": "Orig"}))
        data = [{"contact_id": "c1", "directory": "New", "name": "Changed",
                 "activity": "Call", "activity_fields": {"m": 1}}]
        report = import_file(_json_bytes(data), "b.json", storage)

        assert report.contacts == []
        assert report.counters.contacts_matched_existing == 1
        assert storage.get_contact("c1").directory == "Old"
        assert report.activities[0].contact_id == "c1"

    def test_report_message_and_api_shape(self, storage):
        data = [{"contact_id": "c1", "activity": "Call", "activity_fields": {"m": 1},
                 "survey_id": "s1", "survey_title": "NPS", "channel": "Email", "status": "Sent"}]
        report = import_file(_json_bytes(data), "b.json", storage)
        body = report.to_api()
        assert body["message"] == "Successfully imported 1 contacts, 1 activities, and 1 surveys"
        assert body["imported"] == {"contacts": 1, "activities": 1, "surveys": 1}
        assert body["contacts"][0]["id"] == "c1"
        assert body["activities"][0]["contactId"] == "c1"
        assert body["surveys"][0]["activityId"] == body["activities"][0]["id"]
        assert body["errors"] == []

    def test_rejects_file_written(self, storage, tmp_path):
        rejects_path = tmp_path / "rejects.csv"
        rejects = RejectWriter(rejects_path)
        data = [{"contact_id": "c1", "survey_id": "s1", "survey_title": "NPS"}]
        import_stream(io.BytesIO(_json_bytes(data)), "b.json", storage, rejects=rejects)
        rejects.close()

        rows = list(csv.DictReader(io.StringIO(rejects_path.read_text(encoding="utf-8"))))
        assert rows[0]["_entity"] == "survey"
        assert rows[0]["_reject_reason"] == "missing_channel,missing_status"

    def test_reject_rate_threshold(self, storage):
        data = [{"contact_id": "c1"}, "bad", "bad"]
        with pytest.raises(ImportFormatError, match="reject rate"):
            import_stream(io.BytesIO(_json_bytes(data)), "b.json", storage, max_reject_rate=0.5)
        assert storage.contacts == {}


# ---------------------------------------------------------------------------
# Persist phase
# ---------------------------------------------------------------------------

class _FlakyStorage(MemoryStorage):
    """Fails create_contact for one id."""

    def __init__(self, fail_id):
        super().__init__()
        self.fail_id = fail_id

    def create_contact(self, contact):
        if contact.id == self.fail_id:
            raise RuntimeError("connection reset")
        return super().create_contact(contact)


class TestPersist:
    def test_partial_failure_keeps_successes(self):
        storage = _FlakyStorage("c2")
        data = [
            {"contact_id": "c1", "activity": "Call", "activity_fields": {"m": 1}},
            {"contact_id": "c2", "activity": "Call", "activity_fields": {"m": 2},
             "survey_id": "s2", "survey_title": "NPS", "channel": "Email", "status": "Sent"},
            {"contact_id": "c3"},
        ]
        report = import_file(_json_bytes(data), "b.json", storage)

        assert sorted(storage.contacts) == ["c1", "c3"]
        assert [a.contact_id for a in report.activities] == ["c1"]
        assert report.surveys == []
        assert report.counters.db_phase_errors == 1
        reasons = {(e.entity, e.reason.split(":")[0]) for e in report.errors}
        assert reasons == {
            ("contact", "persist_failed"),
            ("activity", "contact_not_persisted"),
            ("survey", "contact_not_persisted"),
        }
        contact_err = next(e for e in report.errors if e.entity == "contact")
        assert contact_err.row_index == 2

    def test_parent_before_child_order(self):
        calls = []

        class RecordingStorage(MemoryStorage):
            def create_contact(self, contact):
                calls.append("contact")
                return super().create_contact(contact)

            def create_activity(self, activity):
                calls.append("activity")
                return super().create_activity(activity)

            def create_survey(self, survey):
                calls.append("survey")
                return super().create_survey(survey)

        data = [
            {"contact_id": "c1", "survey_id": "s1", "survey_title": "T", "channel": "E", "status": "S",
             "activity": "Call", "activity_fields": {"m": 1}},
            {"contact_id": "c2", "activity": "Call", "activity_fields": {"m": 1}},
        ]
        import_file(_json_bytes(data), "b.json", RecordingStorage())
        assert calls == ["contact", "contact", "activity", "activity", "survey"]

    def test_dry_run_persists_nothing(self, storage):
        data = [{"contact_id": "c1", "activity": "Call", "activity_fields": {"m": 1}}]
        report = import_file(_json_bytes(data), "b.json", storage, dry_run=True)
        assert report.message.startswith("[dry-run] Would import 1 contacts")
        assert storage.contacts == {} and storage.activities == {}

    def test_dry_run_keeps_concurrent_writes(self):
        class BusyStorage(MemoryStorage):
            def create_contact(self, contact):
                created = super().create_contact(contact)
                if contact.id == "c1":
                    # another request writes while the dry run is in flight
                    other = threading.Thread(
                        target=MemoryStorage.create_contact,
                        args=(self, Contact(id="real", directory="D")),
                    )
                    other.start()
                    other.join()
                return created

        storage = BusyStorage()
        data = [{"contact_id": "c1", "activity": "Call", "activity_fields": {"m": 1}}]
        report = import_file(_json_bytes(data), "b.json", storage, dry_run=True)

        assert [c.id for c in report.contacts] == ["c1"]
        assert storage.get_contact("c1") is None
        assert storage.activities == {}
        assert storage.get_contact("real") is not None

    def test_survey_loses_link_when_activity_fails(self, caplog):
        class NoActivityStorage(MemoryStorage):
            def create_activity(self, activity):
                raise RuntimeError("connection reset")

        storage = NoActivityStorage()
        data = [{"contact_id": "c1", "activity": "Call", "activity_fields": {"m": 1},
                 "survey_id": "s1", "survey_title": "NPS", "channel": "Email", "status": "Sent"}]
        with caplog.at_level(logging.WARNING, logger="cx_dashboard.import_contacts"):
            report = import_file(_json_bytes(data), "b.json", storage)

        assert storage.surveys["s1"].activity_id is None
        assert [s.id for s in report.surveys] == ["s1"]
        assert report.activities == []
        assert report.counters.db_phase_errors == 1
        assert [(e.entity, e.reason.split(":")[0]) for e in report.errors] == [
            ("activity", "persist_failed"),
        ]
        assert "loses link to unpersisted activity" in caplog.text

    def test_importer_state_is_per_batch(self, storage):
        importer = BatchImporter(storage, "a.json")
        importer.process_record(1, {"contact_id": "c1"})
        other = BatchImporter(storage, "b.json")
        assert other.resolver.contact_ids == set()
