"""Logging for the bsk client.

Every module logs through a child of the ``bsk`` logger. Records are
rendered as one line with any ``extra=`` fields appended, which keeps
stream lifecycle events greppable by session id.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger("bsk")

# Attributes every LogRecord carries; anything else came in through extra=
_BLANK_RECORD = logging.LogRecord("", 0, "", 0, "", None, None)
_RESERVED_ATTRS = frozenset(vars(_BLANK_RECORD)) | {"message", "asctime"}

# Transport libraries that log every request or frame at DEBUG/INFO
NOISY_LIBRARIES = ("httpx", "httpcore", "websockets")

# Stream events that mean a subscriber lost data or its topic
_STREAM_EVENT_LEVELS = {"RESYNC": logging.WARNING, "SESSION_FAILED": logging.ERROR}


class StructuredFormatter(logging.Formatter):
    """``[ts] [LEVEL] name: message | {extra}``."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        entry = f"[{timestamp}] [{record.levelname}] {record.name}: {record.getMessage()}"

        extra_fields: dict[str, Any] = {
            key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            entry += f" | {extra_fields}"

        if record.exc_info:
            entry += "\n" + self.formatException(record.exc_info)

        return entry


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
) -> None:
    """Attach structured handlers to the ``bsk`` logger.

    Transport libraries are held at WARNING unless ``level`` is DEBUG, so
    verbose runs show wire traffic and normal runs stay quiet.

    Args:
        level: Logging level name
        log_file: Also write to this file
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logger.setLevel(log_level)
    logger.handlers.clear()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

    library_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(library_level)

    logger.debug("Logging configured", extra={"level": level, "log_file": str(log_file)})


def get_logger(name: str) -> logging.Logger:
    """Child logger ``bsk.<name>``."""
    return logging.getLogger(f"bsk.{name}")


stream_logger = get_logger("streams.events")


def log_stream_event(
    event_type: str,
    session_id: int,
    **details: Any,
) -> None:
    """Log a stream session lifecycle event.

    STATE transitions go out at INFO, RESYNC at WARNING and SESSION_FAILED
    at ERROR.

    Args:
        event_type: STATE, RESYNC or SESSION_FAILED
        session_id: Session identifier
        **details: Added to the record as extra fields
    """
    stream_logger.log(
        _STREAM_EVENT_LEVELS.get(event_type, logging.INFO),
        f"{event_type} | session={session_id}",
        extra={"event_type": event_type, "session_id": session_id, **details},
    )
