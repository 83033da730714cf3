"""
Logging setup for the command line tool.

Library modules only call ``logging.getLogger("vault_dmcrypt.<area>")``;
handlers are installed once by ``configure_logging`` at process start.
"""
import sys
import logging
from datetime import datetime, timezone

import orjson

from .conf import LoggingSettings

ROOT_LOGGER = "vault_dmcrypt"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# attributes every LogRecord carries; anything else came from ``extra=``
_RESERVED = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(timespec="milliseconds"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return orjson.dumps(entry, default=str).decode("utf-8")


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Install a single handler on the package root logger.

    Args:
        settings: Validated logging settings.

    Returns:
        The configured package root logger.
    """
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if settings.output == "stderr":
        handler: logging.Handler = logging.StreamHandler(sys.stderr)
    elif settings.output in ("", "stdout"):
        handler = logging.StreamHandler(sys.stdout)
    else:
        handler = logging.FileHandler(settings.output, mode="a", encoding="utf-8")

    if settings.format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root.addHandler(handler)
    root.setLevel(_LEVELS[settings.level])
    root.propagate = False
    return root
