"""Error taxonomy for change-history capture.

Every error defined here is raised from inside the listener that observed a
mutation. None of them is caught by the plugin: they propagate out of
``Session.flush()``/``Session.execute()`` so the caller's transaction cannot
commit a mutation whose history record was not written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

# Stable machine-readable codes.
NO_BASELINE = "NO_BASELINE"
MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
SINK_WRITE_FAILURE = "SINK_WRITE_FAILURE"
MISSING_ACTOR = "MISSING_ACTOR"


class ErrorCategory(str, Enum):
    """High-level error categories for history failures."""

    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    INTERNAL = "internal"


@dataclass(frozen=True)
class ErrorDetail:
    """Structured view of a history error for logs and API responses."""

    code: str
    message: str
    category: ErrorCategory
    retryable: bool = False
    metadata: Mapping[str, str] = field(default_factory=dict)


class HistoryError(Exception):
    """Base class for failures that block a tracked mutation."""

    code = "HISTORY_ERROR"
    category = ErrorCategory.INTERNAL
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        metadata: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.table = table
        self.metadata = {str(k): str(v) for k, v in (metadata or {}).items()}

    @property
    def detail(self) -> ErrorDetail:
        """Return the structured error detail for this exception."""
        metadata = dict(self.metadata)
        if self.table is not None:
            metadata.setdefault("table", self.table)
        return ErrorDetail(
            code=self.code,
            message=self.message,
            category=self.category,
            retryable=self.retryable,
            metadata=metadata,
        )


class NoBaseline(HistoryError):
    """Diff mode was requested for an instance that has no captured pre-image."""

    code = NO_BASELINE
    category = ErrorCategory.VALIDATION


class MalformedPayload(HistoryError):
    """The capture stage produced no data object to build a record from."""

    code = MALFORMED_PAYLOAD


class SinkWriteFailure(HistoryError):
    """Appending to or clearing a history log failed."""

    code = SINK_WRITE_FAILURE
    category = ErrorCategory.DEPENDENCY
    retryable = True


class MissingActor(HistoryError):
    """A delete was issued without the acting identity."""

    code = MISSING_ACTOR
    category = ErrorCategory.VALIDATION
