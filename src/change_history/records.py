"""History record model and builder."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict
from pydantic_core import PydanticSerializationError, to_jsonable_python

from .errors import MalformedPayload
from .events import Operation


class HistoryRecord(BaseModel):
    """One immutable entry of a history log."""

    model_config = ConfigDict(frozen=True)

    table: str
    operation: Operation
    data: dict[str, Any]
    additional: dict[str, Any] | None = None
    created_at: datetime

    @property
    def entity_id(self) -> Any:
        return self.data.get("_id")


def build_record(
    table: str,
    operation: Operation,
    payload: Mapping[str, Any] | None,
    *,
    reserved_field: str = "history",
    now: datetime | None = None,
) -> HistoryRecord:
    """Assemble a record from a captured payload.

    Caller metadata found under ``reserved_field`` moves to ``additional``
    and is removed from ``data``. Binary values are stored base64-encoded.
    """
    if payload is None:
        raise MalformedPayload(
            f"No data produced for {operation.value} on {table}.", table=table
        )
    data = dict(payload)
    additional = data.pop(reserved_field, None)
    try:
        json_data = to_jsonable_python(data, bytes_mode="base64")
        json_additional = (
            to_jsonable_python(additional, bytes_mode="base64")
            if additional is not None
            else None
        )
    except PydanticSerializationError as exc:
        raise MalformedPayload(
            f"Payload for {operation.value} on {table} is not serializable: {exc}",
            table=table,
        ) from exc
    return HistoryRecord(
        table=table,
        operation=operation,
        data=json_data,
        additional=json_additional,
        created_at=now or datetime.now(timezone.utc),
    )


def ensure_aware(value: datetime) -> datetime:
    """Normalize naive timestamps (as some drivers return them) to UTC."""
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
