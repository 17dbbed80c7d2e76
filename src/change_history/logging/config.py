"""Output configuration for the ``change_history`` logger hierarchy.

Only the package's own loggers are touched; the root logger and the host
application's handlers are left alone.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from . import fields
from .context import current_mutation

if TYPE_CHECKING:
    from ..config import LoggingSettings

PACKAGE_LOGGER = "change_history"


class MutationFilter(logging.Filter):
    """Attach service fields and the current mutation's fields to each record."""

    def __init__(self, service: str, environment: str) -> None:
        super().__init__()
        self._static = {fields.SERVICE: service, fields.ENVIRONMENT: environment}

    def filter(self, record: logging.LogRecord) -> bool:
        record.history = {**self._static, **current_mutation()}
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: core fields plus the history fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            fields.TIMESTAMP: datetime.now(timezone.utc).isoformat(),
            fields.LEVEL: record.levelname,
            fields.LOGGER: record.name,
            fields.MESSAGE: record.getMessage(),
        }
        payload.update(getattr(record, "history", {}))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, separators=(",", ":"))


class PlainFormatter(logging.Formatter):
    """Readable line with the mutation fields appended as ``key=value``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        mutation = {
            key: value
            for key, value in getattr(record, "history", {}).items()
            if key not in (fields.SERVICE, fields.ENVIRONMENT)
        }
        if not mutation:
            return message
        return message + " " + " ".join(f"{key}={mutation[key]}" for key in sorted(mutation))


class _StdoutHandler(logging.StreamHandler):
    """Marker type so reconfiguration replaces only handlers installed here."""


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Apply ``settings`` to the ``change_history`` logger and return it.

    The level always applies. With ``stdout`` enabled the package logs
    through its own formatter and stops propagating to the root logger;
    otherwise records propagate to whatever the host application configured.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(settings.level)
    for handler in list(package_logger.handlers):
        if isinstance(handler, _StdoutHandler):
            package_logger.removeHandler(handler)

    if not settings.stdout:
        package_logger.propagate = True
        return package_logger

    handler = _StdoutHandler(stream=sys.stdout)
    handler.addFilter(MutationFilter(settings.service, settings.environment))
    handler.setFormatter(JsonFormatter() if settings.json_output else PlainFormatter())
    package_logger.addHandler(handler)
    package_logger.propagate = False
    return package_logger
