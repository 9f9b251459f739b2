"""Logging setup for the doc_updates logger tree.

Sync runs log one JSON object per line so run summaries (counts, repo ids,
durations passed as ``extra=``) stay machine readable. ``text`` format is for
local CLI use. Level and format come from the caller (usually UpdatesConfig)
or from DOC_UPDATES_LOG_LEVEL / DOC_UPDATES_LOG_FORMAT.

Output goes to stderr; stdout is reserved for the tool-call front end and
for CLI results.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

ROOT_LOGGER = "doc_updates"

# Attributes every LogRecord carries; anything else arrived through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Matched as substrings of the lowercased key, so github_token is caught too
_SECRET_MARKERS = ("token", "secret", "password", "authorization", "credential", "api_key", "apikey")

REDACTED = "[REDACTED]"


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    Keys: ``timestamp`` (record creation time, UTC, ``Z`` suffix), ``level``,
    ``logger``, ``message``, plus ``context`` for extras and ``exception``
    when exc_info is set. Extras whose names look like credentials are
    replaced with ``[REDACTED]``.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {
            key: REDACTED if _is_secret(key) else value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Attach a single stderr handler to the ``doc_updates`` logger.

    Safe to call repeatedly: later calls change level and formatter on the
    existing handler instead of stacking new ones.

    Args:
        level: Level name; unknown names fall back to INFO.
        log_format: ``json`` (default) or ``text``.
    """
    level = level or os.getenv("DOC_UPDATES_LOG_LEVEL", "INFO")
    log_format = log_format or os.getenv("DOC_UPDATES_LOG_FORMAT", "json")

    formatter = TextFormatter() if log_format.lower() == "text" else StructuredFormatter()

    logger = logging.getLogger(ROOT_LOGGER)
    numeric = logging.getLevelName(level.upper())
    logger.setLevel(numeric if isinstance(numeric, int) else logging.INFO)
    if not logger.handlers:
        logger.addHandler(logging.StreamHandler(sys.stderr))
    for handler in logger.handlers:
        handler.setFormatter(formatter)
    logger.propagate = False
