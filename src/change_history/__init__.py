"""Append-only change history for SQLAlchemy-mapped entities."""

from .config import HistorySettings, LoggingSettings, load_settings
from .diff import (
    DiffEntry,
    DiffKind,
    DiffResult,
    FieldDiff,
    FieldDiffRegistry,
    diff_states,
    diff_values,
)
from .errors import (
    HistoryError,
    MalformedPayload,
    MissingActor,
    NoBaseline,
    SinkWriteFailure,
)
from .events import Actor, Operation
from .plugin import ACTOR_OPTION, METADATA_OPTION, HistoryPlugin, TrackingOptions
from .records import HistoryRecord, build_record
from .sink import HistoryLog, HistorySink, history_collection_name

__all__ = [
    "ACTOR_OPTION",
    "Actor",
    "build_record",
    "diff_states",
    "diff_values",
    "DiffEntry",
    "DiffKind",
    "DiffResult",
    "FieldDiff",
    "FieldDiffRegistry",
    "history_collection_name",
    "HistoryError",
    "HistoryLog",
    "HistoryPlugin",
    "HistoryRecord",
    "HistorySettings",
    "HistorySink",
    "load_settings",
    "LoggingSettings",
    "MalformedPayload",
    "METADATA_OPTION",
    "MissingActor",
    "NoBaseline",
    "Operation",
    "SinkWriteFailure",
    "TrackingOptions",
]
