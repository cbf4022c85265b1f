"""Structured logging for the defect tracker API and viewer services."""
import json
import logging
import sys
from datetime import datetime, timezone

# Context a caller may attach with extra=...; copied into the JSON entry when present
_CONTEXT_FIELDS = (
    "request_id",
    "issue_id",
    "project_id",
    "duration_ms",
    "http_method",
    "http_path",
    "http_status",
    "generation",
)

TEXT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

# Third-party loggers that drown out request and workflow lines at INFO
_QUIET_LOGGERS = ("uvicorn.access", "httpcore", "httpx", "sqlalchemy.engine", "asyncio")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, stamped with the record's own creation time."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(
            (name, getattr(record, name)) for name in _CONTEXT_FIELDS if hasattr(record, name)
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> logging.Handler:
    """Install a single stdout handler on the root logger and return it."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    level_no = logging.getLevelName(level.upper())
    root.setLevel(level_no if isinstance(level_no, int) else logging.INFO)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
