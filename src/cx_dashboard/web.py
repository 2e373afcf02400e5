"""cx_dashboard.web

HTTP API for the contact dashboard.

Endpoints:
    GET    /api/contacts                 - List contacts (?search=)
    GET    /api/contacts/{id}            - Contact with timeline (?range=, ?start=, ?end=)
    POST   /api/contacts/{id}/notes      - Add a note to a contact
    DELETE /api/contacts                 - Delete all contacts and their children
    POST   /api/import                   - Upload a .csv / .json file for import

Storage: an explicit Storage passed to create_app() is shared by every
request (tests, in-memory demo).  Otherwise, with a DSN configured each
request gets its own PostgresStorage connection; without one, a single
MemoryStorage lives for the process.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from cx_dashboard.config import Settings
from cx_dashboard.field_mapper import FieldMapper, load_alias_overrides
from cx_dashboard.identity import new_note_id
from cx_dashboard.import_contacts import check_upload_size, detect_format, import_file
from cx_dashboard.models import Note
from cx_dashboard.normalize import parse_ts
from cx_dashboard.shared import FileTooLargeError, ImportFormatError
from cx_dashboard.storage import MemoryStorage, PostgresStorage, Storage
from cx_dashboard.time_filter import filter_by_date_range

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class NoteCreate(BaseModel):
    """Body of POST /api/contacts/{id}/notes."""

    model_config = ConfigDict(populate_by_name=True)

    content: str = Field(..., min_length=1)
    author_name: str = Field(..., alias="authorName", min_length=1)
    author_initials: str = Field(..., alias="authorInitials", min_length=1)


def _parse_bound(name: str, value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    ts = parse_ts(value)
    if ts is None:
        raise HTTPException(status_code=400, detail=f"Invalid {name} date: {value!r}")
    return ts


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(storage: Storage | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    if storage is None and not settings.db_dsn:
        logger.info("No database configured; using in-memory storage")
        storage = MemoryStorage()

    mapper = FieldMapper()
    if settings.aliases_file is not None:
        mapper = FieldMapper(load_alias_overrides(Path(settings.aliases_file)))

    app = FastAPI(title="CX Dashboard", version="0.1.0")

    def get_storage() -> Iterator[Storage]:
        if storage is not None:
            yield storage
            return
        pg = PostgresStorage.connect(settings.db_dsn)
        try:
            yield pg
        finally:
            pg.close()

    # -- contacts -----------------------------------------------------------

    @app.get("/api/contacts")
    def list_contacts(
        search: Optional[str] = Query(None, description="Match name, email or company"),
        store: Storage = Depends(get_storage),
    ) -> list[dict[str, Any]]:
        return [c.to_api() for c in store.list_contacts(search)]

    @app.get("/api/contacts/{contact_id}")
    def get_contact(
        contact_id: str,
        range_name: Optional[str] = Query(None, alias="range", description="Named time range"),
        start: Optional[str] = Query(None, description="Custom range start"),
        end: Optional[str] = Query(None, description="Custom range end"),
        store: Storage = Depends(get_storage),
    ) -> dict[str, Any]:
        data = store.get_contact_with_data(contact_id)
        if data is None:
            raise HTTPException(status_code=404, detail="Contact not found")

        start_ts = _parse_bound("start", start)
        end_ts = _parse_bound("end", end)
        try:
            data.activities = filter_by_date_range(data.activities, range_name, start_ts, end_ts)
            data.surveys = filter_by_date_range(data.surveys, range_name, start_ts, end_ts)
            data.notes = filter_by_date_range(data.notes, range_name, start_ts, end_ts)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return data.to_api()

    @app.post("/api/contacts/{contact_id}/notes", status_code=201)
    def create_note(
        contact_id: str,
        body: NoteCreate,
        store: Storage = Depends(get_storage),
    ) -> dict[str, Any]:
        if store.get_contact(contact_id) is None:
            raise HTTPException(status_code=404, detail="Contact not found")
        note = store.create_note(Note(
            id=new_note_id(),
            contact_id=contact_id,
            content=body.content,
            author_name=body.author_name,
            author_initials=body.author_initials,
        ))
        logger.info("Created note %s for contact %s", note.id, contact_id)
        return note.to_api()

    @app.delete("/api/contacts")
    def delete_all_contacts(store: Storage = Depends(get_storage)) -> dict[str, Any]:
        counts = store.delete_all_contacts()
        return {"message": "All contacts deleted", "deleted": counts}

    # -- import -------------------------------------------------------------

    @app.post(
        "/api/import",
        responses={
            400: {"description": "No file, unsupported format or malformed input"},
            413: {"description": "File exceeds the upload size limit"},
            500: {"description": "Unexpected server error"},
        },
    )
    def import_contacts(
        file: Optional[UploadFile] = File(None, description="CSV or JSON file"),
        dry_run: bool = Query(False, alias="dryRun"),
        store: Storage = Depends(get_storage),
    ) -> Any:
        if file is None:
            raise HTTPException(status_code=400, detail="No file uploaded")

        logger.info("Import upload started: %s", file.filename)
        try:
            detect_format(file.filename)
            # one byte past the limit is enough to know it is too large
            content = file.file.read(settings.max_upload_bytes + 1)
            check_upload_size(len(content), settings.max_upload_bytes)
            report = import_file(content, file.filename, store, mapper=mapper, dry_run=dry_run)
        except FileTooLargeError as e:
            raise HTTPException(status_code=413, detail=str(e))
        except ImportFormatError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.exception("Import failed", extra={"upload_filename": file.filename})
            return JSONResponse(
                status_code=500,
                content={"error": "import_failed", "message": str(e)},
            )
        return report.to_api()

    return app
