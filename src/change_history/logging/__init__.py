"""Logging helpers for change history.

Module loggers live under ``change_history``; :func:`configure_logging`
applies :class:`~change_history.config.LoggingSettings` to that hierarchy.
"""

from .config import (
    PACKAGE_LOGGER,
    JsonFormatter,
    MutationFilter,
    PlainFormatter,
    configure_logging,
)
from .context import current_mutation, mutation_context

__all__ = [
    "configure_logging",
    "current_mutation",
    "JsonFormatter",
    "mutation_context",
    "MutationFilter",
    "PACKAGE_LOGGER",
    "PlainFormatter",
]
