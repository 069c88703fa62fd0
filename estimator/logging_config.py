"""
Logging for the estimator package.

Everything logs through `logging.getLogger(__name__)` under the "estimator"
namespace. `setup_logging` gives that namespace one handler on stderr, so the
CLI's `--json` output on stdout stays machine-readable. Level and format come
from `config.settings` (LOG_LEVEL, LOG_JSON) unless passed explicitly.
"""
import json
import logging
import sys
from datetime import datetime, timezone

from .config import settings

PACKAGE_LOGGER = "estimator"
TEXT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

# Attributes every LogRecord carries; anything else was passed via `extra=`
_RECORD_FIELDS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line: ts, level, logger, message, then any `extra=`
    fields (the engine passes fingerprint and duration_ms).
    """
    def format(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_FIELDS and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = None, json_output: bool = None, stream=None) -> logging.Logger:
    """Attach a single handler to the package logger and return it."""
    level = level or settings.LOG_LEVEL
    if json_output is None:
        json_output = settings.LOG_JSON

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(TEXT_FORMAT))

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    logger.handlers = [handler]
    logger.propagate = False
    return logger
