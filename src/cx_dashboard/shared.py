"""cx_dashboard.shared

Shared pieces used by the importer, the CLI and the web layer:
exceptions, RejectWriter, ImportCounters and run-report writing.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportFormatError(Exception):
    """Whole-batch failure: the input cannot be read as a batch at all."""


class UnsupportedFormatError(ImportFormatError):
    """Raised when the file extension is neither .csv nor .json."""


class MalformedInputError(ImportFormatError):
    """Raised when the JSON root cannot be parsed or is not object(s)."""


class FileTooLargeError(ImportFormatError):
    """Raised when an upload exceeds the configured size limit."""


class ValidationError(Exception):
    """A single fragment failed its required-field contract."""

    def __init__(self, entity: str, entity_id: str | None, problems: list[str]) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.problems = problems
        super().__init__(f"{entity} {entity_id!r}: {', '.join(problems)}")

    @property
    def reason(self) -> str:
        return ",".join(self.problems)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = {
            k: json.dumps(v, default=str) if isinstance(v, (dict, list)) else v
            for k, v in row.items()
        }
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# ImportCounters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    rows_read: int = 0
    rows_rejected: int = 0
    contacts_inserted: int = 0
    contacts_matched_existing: int = 0
    contacts_rejected: int = 0
    activities_inserted: int = 0
    activities_rejected: int = 0
    surveys_upserted: int = 0
    surveys_rejected: int = 0
    surveys_replaced_in_batch: int = 0
    embedded_json_errors: int = 0
    db_phase_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: ImportCounters,
    errors: list[dict[str, Any]] | None = None,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
        "errors": errors or [],
    }
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
