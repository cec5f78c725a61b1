"""Log output setup for knox and the knox CLI.

Library modules only create module loggers; nothing is printed unless the
application (or ``knox.cli``) calls ``configure_logging``.
"""

import json
import logging
import sys
from datetime import datetime, timezone

# Record attributes knox attaches through ``extra=``
CONTEXT_FIELDS = ("method", "path", "status", "upload_id", "part_number", "duration_ms")

# httpx logs every request at INFO; knox logs its own sends at DEBUG
TRANSPORT_LOGGERS = ("httpx", "httpcore")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, context."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(_context(record))
        return json.dumps(entry, default=str)


class ContextFormatter(logging.Formatter):
    """Plain-text lines with the upload and part context appended.

    ``Part 2 of upload abc failed`` becomes
    ``... Part 2 of upload abc failed [upload_id=abc part_number=2]``.
    """

    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if not context:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in context.items())
        return f"{line} [{pairs}]"


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Send log records to stderr at ``level``, replacing existing root handlers.

    Args:
        level: Log level name. Unknown names fall back to INFO.
        fmt: 'text' for ContextFormatter lines, 'json' for JSONFormatter.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if fmt == "json" else ContextFormatter())
    root.addHandler(handler)

    transport_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(transport_level)
