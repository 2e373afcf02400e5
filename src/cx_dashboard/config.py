"""cx_dashboard.config

Environment-driven settings for the web service and logging setup.

  CX_DB_DSN            PostgreSQL DSN; unset → in-memory storage
  CX_MAX_UPLOAD_BYTES  upload size limit in bytes (default 10 MiB)
  CX_LOG_LEVEL         root log level (default INFO)
  CX_ALIASES_FILE      optional YAML file of extra column aliases
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    db_dsn: str | None = None
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    log_level: str = "INFO"
    aliases_file: Path | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        max_bytes_raw = os.environ.get("CX_MAX_UPLOAD_BYTES")
        try:
            max_upload_bytes = int(max_bytes_raw) if max_bytes_raw else DEFAULT_MAX_UPLOAD_BYTES
        except ValueError:
            raise ValueError(f"CX_MAX_UPLOAD_BYTES must be an integer, got {max_bytes_raw!r}")
        aliases_raw = os.environ.get("CX_ALIASES_FILE")
        return cls(
            db_dsn=os.environ.get("CX_DB_DSN") or None,
            max_upload_bytes=max_upload_bytes,
            log_level=os.environ.get("CX_LOG_LEVEL", "INFO").upper(),
            aliases_file=Path(aliases_raw) if aliases_raw else None,
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
