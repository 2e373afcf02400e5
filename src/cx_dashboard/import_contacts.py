"""cx_dashboard.import_contacts

Batch importer for contact files, plus the unified CLI entrypoint.

Pipeline for one file:
  parse (CSV row stream | JSON object/array)
    → per record: map → resolve identity → link → validate → {rejected | accepted}
    → persist accepted contacts, then activities, then surveys
    → ImportReport

Whole-batch failures (unsupported extension, unreadable JSON root, undecodable
CSV, reject-rate threshold) raise ImportFormatError before anything is
persisted.  Everything else is per record: a rejected fragment is recorded
in the report and skipped; its siblings and the rest of the batch continue.

Usage:
    python -m cx_dashboard.import_contacts \\
        --mode import \\
        --db-dsn "$CX_DB_DSN" \\
        --file-path "exports/contacts.csv" \\
        --rejects-path "artifacts/rejects/contacts_rejects.csv"

    python -m cx_dashboard.import_contacts --mode serve --port 8000
"""

from __future__ import annotations

import csv
import io
import json
import logging
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Mapping

import click

from cx_dashboard.config import DEFAULT_MAX_UPLOAD_BYTES
from cx_dashboard.field_mapper import FieldMapper, load_alias_overrides
from cx_dashboard.identity import IdentityResolver
from cx_dashboard.linkage import link_record
from cx_dashboard.models import Activity, Contact, Survey
from cx_dashboard.shared import (
    FileTooLargeError,
    ImportCounters,
    ImportFormatError,
    MalformedInputError,
    RejectWriter,
    UnsupportedFormatError,
    ValidationError,
    write_run_report,
)
from cx_dashboard.storage import Storage
from cx_dashboard.validate import validate_activity, validate_contact, validate_survey

log = logging.getLogger(__name__)

SUPPORTED_FORMATS = {".csv": "csv", ".json": "json"}


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

@dataclass
class RecordError:
    row_index: int | None
    entity: str
    entity_id: str | None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "reason": self.reason,
        }


@dataclass
class ImportReport:
    file_name: str
    counters: ImportCounters = field(default_factory=ImportCounters)
    contacts: list[Contact] = field(default_factory=list)
    activities: list[Activity] = field(default_factory=list)
    surveys: list[Survey] = field(default_factory=list)
    errors: list[RecordError] = field(default_factory=list)
    dry_run: bool = False

    @property
    def message(self) -> str:
        prefix = "[dry-run] Would import" if self.dry_run else "Successfully imported"
        return (
            f"{prefix} {len(self.contacts)} contacts, "
            f"{len(self.activities)} activities, and {len(self.surveys)} surveys"
        )

    def to_api(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "imported": {
                "contacts": len(self.contacts),
                "activities": len(self.activities),
                "surveys": len(self.surveys),
            },
            "contacts": [c.to_api() for c in self.contacts],
            "activities": [a.to_api() for a in self.activities],
            "surveys": [s.to_api() for s in self.surveys],
            "rowsRead": self.counters.rows_read,
            "rowsRejected": self.counters.rows_rejected,
            "errors": [e.to_dict() for e in self.errors],
        }


# ---------------------------------------------------------------------------
# Format detection + parsing
# ---------------------------------------------------------------------------

def detect_format(file_name: str | None) -> str:
    """Return 'csv' or 'json' from the file extension; the extension is authoritative."""
    suffix = Path(file_name or "").suffix.lower()
    fmt = SUPPORTED_FORMATS.get(suffix)
    if fmt is None:
        raise UnsupportedFormatError(
            f"Unsupported file format {suffix or '(none)'!r}. Please upload CSV or JSON files."
        )
    return fmt


def check_upload_size(size: int, max_bytes: int) -> None:
    if size > max_bytes:
        raise FileTooLargeError(
            f"File exceeds the maximum upload size of {max_bytes} bytes"
        )


def iter_csv_records(fh: BinaryIO) -> Iterator[dict[str, Any]]:
    """Yield CSV rows one at a time; the file is never loaded whole."""
    # a single embedded-JSON cell may be as large as the upload itself
    csv.field_size_limit(max(csv.field_size_limit(), DEFAULT_MAX_UPLOAD_BYTES))
    text = io.TextIOWrapper(fh, encoding="utf-8-sig", newline="")
    try:
        reader = csv.DictReader(text)
        for row in reader:
            yield row
    except (UnicodeDecodeError, csv.Error) as exc:
        raise MalformedInputError(f"Invalid CSV file: {exc}") from exc
    finally:
        text.detach()


def iter_json_records(fh: BinaryIO) -> Iterator[Any]:
    """Yield the elements of a JSON array, or a lone JSON object."""
    try:
        data = json.loads(fh.read().decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedInputError(f"Invalid JSON file: {exc}") from exc
    if isinstance(data, dict):
        yield data
    elif isinstance(data, list):
        yield from data
    else:
        raise MalformedInputError(
            f"Invalid JSON file: expected an object or an array of objects, got {type(data).__name__}"
        )


# ---------------------------------------------------------------------------
# Batch importer
# ---------------------------------------------------------------------------

class BatchImporter:
    """One import call.  All identity / acceptance state lives on the instance."""

    def __init__(
        self,
        storage: Storage,
        file_name: str,
        mapper: FieldMapper | None = None,
        rejects: RejectWriter | None = None,
        dry_run: bool = False,
    ) -> None:
        self.storage = storage
        self.mapper = mapper or FieldMapper()
        self.rejects = rejects
        self.resolver = IdentityResolver()
        self.report = ImportReport(file_name=file_name, dry_run=dry_run)
        self.counters = self.report.counters
        self.dry_run = dry_run

        self._accepted_contacts: dict[str, Contact] = {}
        self._existing_contacts: set[str] = set()
        self._accepted_activities: dict[str, Activity] = {}
        self._activity_owners: dict[str, str] = {}
        self._accepted_surveys: dict[str, Survey] = {}
        self._row_of: dict[tuple[str, str], int] = {}

    # -- record phase -------------------------------------------------------

    def _reject(
        self,
        row_index: int,
        raw: Mapping[str, Any] | None,
        exc_or_reason: ValidationError | str,
        entity: str,
        entity_id: str | None,
    ) -> None:
        reason = exc_or_reason.reason if isinstance(exc_or_reason, ValidationError) else exc_or_reason
        self.report.errors.append(RecordError(row_index, entity, entity_id, reason))
        log.warning("row %d: %s %r rejected: %s", row_index, entity, entity_id, reason)
        if self.rejects is not None and raw is not None:
            row = {k: v for k, v in raw.items() if k is not None}
            self.rejects.write({"_row_index": row_index, "_entity": entity, **row}, reason)

    def _contact_resolvable(self, contact_id: str) -> bool:
        return contact_id in self._accepted_contacts or contact_id in self._existing_contacts

    def process_record(self, row_index: int, raw: Any) -> bool:
        """Run one source record through map → resolve → link → validate.

        Returns False when any fragment of the record was rejected.
        """
        self.counters.rows_read += 1
        if not isinstance(raw, Mapping):
            self._reject(row_index, None, "record_not_object", "record", None)
            self.counters.rows_rejected += 1
            return False

        ok = True
        mapped = self.mapper.map(raw)
        if mapped.dropped_fields:
            self.counters.embedded_json_errors += len(mapped.dropped_fields)
            self.counters.warnings.append(
                f"row {row_index}: unparseable JSON in {', '.join(mapped.dropped_fields)}"
            )

        # Resolve
        resolution = self.resolver.resolve_contact(mapped.contact)
        contact_id = resolution.contact_id
        if resolution.is_new:
            if self.storage.get_contact(contact_id) is not None:
                self._existing_contacts.add(contact_id)
                self.counters.contacts_matched_existing += 1
            else:
                try:
                    self._accepted_contacts[contact_id] = validate_contact(mapped.contact)
                    self._row_of[("contact", contact_id)] = row_index
                except ValidationError as exc:
                    self.counters.contacts_rejected += 1
                    self._reject(row_index, raw, exc, "contact", contact_id)
                    ok = False

        activity_id = None
        if mapped.activity is not None:
            activity_id = self.resolver.resolve_activity(mapped.activity)
        if mapped.survey is not None and self.resolver.resolve_survey(mapped.survey):
            log.debug("row %d: survey id %r repeated in batch", row_index, mapped.survey["id"])

        # Link
        link_record(mapped, contact_id, activity_id)

        # Validate children
        if mapped.activity is not None:
            if not self._contact_resolvable(contact_id):
                self.counters.activities_rejected += 1
                self._reject(row_index, raw, "contact_not_resolved", "activity", activity_id)
                ok = False
            else:
                try:
                    activity = validate_activity(mapped.activity)
                    self._accepted_activities[activity.id] = activity
                    self._activity_owners[activity.id] = activity.contact_id
                    self._row_of[("activity", activity.id)] = row_index
                except ValidationError as exc:
                    self.counters.activities_rejected += 1
                    self._reject(row_index, raw, exc, "activity", activity_id)
                    ok = False

        if mapped.survey is not None:
            survey_id = mapped.survey["id"]
            linked = mapped.survey.get("activity_id")
            if linked is not None and linked not in self._accepted_activities:
                log.warning(
                    "row %d: survey %r loses link to rejected activity %r",
                    row_index, survey_id, linked,
                )
                mapped.survey["activity_id"] = None
            if not self._contact_resolvable(contact_id):
                self.counters.surveys_rejected += 1
                self._reject(row_index, raw, "contact_not_resolved", "survey", survey_id)
                ok = False
            else:
                try:
                    survey = validate_survey(mapped.survey, self._activity_owners)
                    # latest accepted record for an id replaces the earlier one
                    if self._accepted_surveys.pop(survey.id, None) is not None:
                        self.counters.surveys_replaced_in_batch += 1
                    self._accepted_surveys[survey.id] = survey
                    self._row_of[("survey", survey.id)] = row_index
                except ValidationError as exc:
                    self.counters.surveys_rejected += 1
                    self._reject(row_index, raw, exc, "survey", survey_id)
                    ok = False

        if not ok:
            self.counters.rows_rejected += 1
        return ok

    # -- persist phase ------------------------------------------------------

    def _persist_failed(self, entity: str, entity_id: str, exc: Exception | str) -> None:
        reason = exc if isinstance(exc, str) else f"persist_failed: {type(exc).__name__}: {exc}"
        row_index = self._row_of.get((entity, entity_id))
        self.report.errors.append(RecordError(row_index, entity, entity_id, reason))
        log.warning("%s %r not persisted: %s", entity, entity_id, reason)
        if not isinstance(exc, str):
            self.counters.db_phase_errors += 1
            self.counters.warnings.append(f"{entity} {entity_id}: {type(exc).__name__}: {exc}")

    def persist(self) -> ImportReport:
        """Create accepted contacts, then activities, then surveys.

        One create call per entity; a failed create is recorded and skipped,
        earlier successes stay persisted.
        """
        persisted_contacts = set(self._existing_contacts)
        persisted_activities: set[str] = set()

        with self.storage.batch(dry_run=self.dry_run):
            for contact in self._accepted_contacts.values():
                try:
                    created = self.storage.create_contact(contact)
                except Exception as exc:
                    self.counters.contacts_rejected += 1
                    self._persist_failed("contact", contact.id, exc)
                    continue
                persisted_contacts.add(created.id)
                self.report.contacts.append(created)
                self.counters.contacts_inserted += 1

            for activity in self._accepted_activities.values():
                if activity.contact_id not in persisted_contacts:
                    self.counters.activities_rejected += 1
                    self._persist_failed("activity", activity.id, "contact_not_persisted")
                    continue
                try:
                    created = self.storage.create_activity(activity)
                except Exception as exc:
                    self.counters.activities_rejected += 1
                    self._persist_failed("activity", activity.id, exc)
                    continue
                persisted_activities.add(created.id)
                self.report.activities.append(created)
                self.counters.activities_inserted += 1

            for survey in self._accepted_surveys.values():
                if survey.contact_id not in persisted_contacts:
                    self.counters.surveys_rejected += 1
                    self._persist_failed("survey", survey.id, "contact_not_persisted")
                    continue
                if survey.activity_id is not None and survey.activity_id not in persisted_activities:
                    log.warning(
                        "survey %r loses link to unpersisted activity %r",
                        survey.id, survey.activity_id,
                    )
                    survey.activity_id = None
                try:
                    created = self.storage.create_survey(survey)
                except Exception as exc:
                    self.counters.surveys_rejected += 1
                    self._persist_failed("survey", survey.id, exc)
                    continue
                self.report.surveys.append(created)
                self.counters.surveys_upserted += 1

        return self.report


def import_stream(
    fh: BinaryIO,
    file_name: str,
    storage: Storage,
    mapper: FieldMapper | None = None,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
    max_reject_rate: float | None = None,
) -> ImportReport:
    """Import one file-like object.  See module docstring for the pipeline."""
    fmt = detect_format(file_name)
    importer = BatchImporter(storage, file_name, mapper=mapper, rejects=rejects, dry_run=dry_run)
    records = iter_csv_records(fh) if fmt == "csv" else iter_json_records(fh)

    # CSV rows are numbered from 1 after the header; JSON elements from 1.
    for row_index, raw in enumerate(records, start=1):
        importer.process_record(row_index, raw)

    counters = importer.counters
    if max_reject_rate is not None and counters.rows_read > 0:
        reject_rate = counters.rows_rejected / counters.rows_read
        if reject_rate > max_reject_rate:
            raise ImportFormatError(
                f"reject rate {reject_rate:.2%} exceeds threshold {max_reject_rate:.2%}"
            )

    report = importer.persist()
    log.info("%s: %s (%d rows read, %d rejected)",
             file_name, report.message, counters.rows_read, counters.rows_rejected)
    return report


def import_file(
    content: bytes,
    file_name: str,
    storage: Storage,
    mapper: FieldMapper | None = None,
    dry_run: bool = False,
) -> ImportReport:
    """Import raw file bytes; the extension of file_name selects the parser."""
    return import_stream(io.BytesIO(content), file_name, storage, mapper=mapper, dry_run=dry_run)


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(["import", "purge", "serve"]),
    show_default=True,
    help="import a file, purge all contacts, or serve the HTTP API",
)
@click.option("--db-dsn", default=None, envvar="CX_DB_DSN", help="PostgreSQL DSN")
# import flags
@click.option("--file-path", default=None, type=click.Path(), help="[import] Input .csv or .json file")
@click.option("--aliases-file", default=None, type=click.Path(), envvar="CX_ALIASES_FILE",
              help="[import|serve] YAML file of extra column aliases")
@click.option(
    "--max-reject-rate",
    default=1.0,
    type=float,
    show_default=True,
    help="[import] Fraction of rows that may be rejected before the run fails",
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/contact_import_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
# purge flags
@click.option("--yes", is_flag=True, default=False, help="[purge] Skip the confirmation prompt")
# serve flags
@click.option("--host", default="127.0.0.1", show_default=True, help="[serve] Bind address")
@click.option("--port", default=8000, type=int, show_default=True, help="[serve] Bind port")
def main(
    mode: str,
    db_dsn: str | None,
    file_path: str | None,
    aliases_file: str | None,
    max_reject_rate: float,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    yes: bool,
    host: str,
    port: int,
) -> None:
    """Customer-experience contact import CLI."""
    from cx_dashboard.config import Settings, configure_logging
    from cx_dashboard.storage import PostgresStorage

    settings = Settings.from_env()
    configure_logging(settings.log_level)

    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    if mode == "serve":
        import uvicorn

        from cx_dashboard.web import create_app

        settings = Settings(
            db_dsn=db_dsn,
            max_upload_bytes=settings.max_upload_bytes,
            log_level=settings.log_level,
            aliases_file=Path(aliases_file) if aliases_file else None,
        )
        uvicorn.run(create_app(settings=settings), host=host, port=port)
        return

    if not db_dsn:
        click.echo(f"[{run_id}] FATAL: --db-dsn (or CX_DB_DSN) is required for --mode {mode}", err=True)
        sys.exit(1)

    if mode == "purge":
        if not yes:
            click.confirm("Delete ALL contacts, activities, surveys and notes?", abort=True)
        storage = PostgresStorage.connect(db_dsn)
        try:
            counts = storage.delete_all_contacts()
        finally:
            storage.close()
        click.echo(f"[{run_id}] Purged: {counts}")
        return

    if not file_path:
        click.echo(f"[{run_id}] FATAL: --file-path is required for --mode import", err=True)
        sys.exit(1)
    path = Path(file_path)
    if not path.exists():
        click.echo(f"[{run_id}] FATAL: {path} does not exist", err=True)
        sys.exit(1)

    mapper = FieldMapper(load_alias_overrides(Path(aliases_file))) if aliases_file else None
    rejects = RejectWriter(Path(rejects_path))

    click.echo(f"[{run_id}] Starting {mode} run for {path.name} (dry_run={dry_run})")

    storage = PostgresStorage.connect(db_dsn)
    try:
        with path.open("rb") as fh:
            report = import_stream(
                fh, path.name, storage,
                mapper=mapper, rejects=rejects, dry_run=dry_run,
                max_reject_rate=max_reject_rate,
            )
    except ImportFormatError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    finally:
        storage.close()
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"file_path": str(path)},
        report.counters,
        [e.to_dict() for e in report.errors],
    )
    counters = report.counters
    click.echo(
        f"[{run_id}] Done: {counters.rows_read} rows read, "
        f"{counters.rows_rejected} rejected, "
        f"{counters.contacts_inserted} contacts inserted, "
        f"{counters.contacts_matched_existing} matched existing, "
        f"{counters.activities_inserted} activities inserted, "
        f"{counters.surveys_upserted} surveys upserted"
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if counters.db_phase_errors > 0:
        click.echo(f"[{run_id}] {counters.db_phase_errors} DB error(s) — see run report", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
