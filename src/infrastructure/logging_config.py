"""Logging setup for the record store and CLI.

Two output modes: JSON lines for machine consumption (``IV_LOG_JSON=true``)
and a plain single-line format for terminals. Output always goes to stderr
so that JSON printed by CLI commands on stdout stays parseable.

Security Impact:
    - Record contents, passphrases and keys are never passed to loggers;
      only record ids, counts and error codes are
    - The JSON formatter only promotes a fixed set of context attributes
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any, Dict, Optional

#: LogRecord attributes copied into JSON output when a caller sets them via ``extra``.
CONTEXT_ATTRIBUTES = ("record_id", "error_code", "backend", "operation")

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
PLAIN_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Chatty third-party loggers kept at WARNING
_QUIET_LOGGERS = ("asyncio", "duckdb")


class StructuredFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        for attr in CONTEXT_ATTRIBUTES:
            value = getattr(record, attr, None)
            if value is not None:
                entry[attr] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(use_json: bool = False, log_level: str = "INFO", stream: Optional[IO[str]] = None) -> None:
    """Configure the root logger.

    Replaces any handlers already installed, so calling it once per CLI
    invocation is safe.

    Parameters:
        use_json: Emit JSON lines instead of plain text
        log_level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL); unknown names mean INFO
        stream: Output stream (stderr when None)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    if use_json:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=PLAIN_DATE_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
