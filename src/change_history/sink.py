"""History log tables: naming, append and administrative access."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    func,
    select,
)
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session

from .errors import SinkWriteFailure
from .records import HistoryRecord, ensure_aware

logger = logging.getLogger(__name__)

DEFAULT_SUFFIX = "_history"


def history_collection_name(
    source: str,
    custom: Callable[[str], str] | None = None,
    *,
    suffix: str = DEFAULT_SUFFIX,
) -> str:
    """Derive the history log name for a source table."""
    if custom is not None:
        return custom(source)
    return f"{source}{suffix}"


def entity_key(entity_id: Any) -> str | None:
    """Lookup key stored next to each record for per-entity queries."""
    if entity_id is None:
        return None
    if isinstance(entity_id, (list, tuple, dict)):
        return json.dumps(entity_id, default=str, separators=(",", ":"))
    return str(entity_id)


class HistoryLog:
    """Handle on one history table."""

    def __init__(self, name: str, table: Table) -> None:
        self.name = name
        self.table = table

    def append(self, connection: Connection, record: HistoryRecord) -> None:
        """Insert ``record`` on ``connection``; any failure raises ``SinkWriteFailure``."""
        row = {
            "table": record.table,
            "operation": record.operation.value,
            "entity_id": entity_key(record.entity_id),
            "data": record.data,
            "additional": record.additional,
            "created_at": record.created_at,
        }
        try:
            connection.execute(self.table.insert().values(**row))
        except Exception as exc:
            raise SinkWriteFailure(
                f"Failed to append {record.operation.value} record to {self.name}: {exc}",
                table=record.table,
                metadata={"history_table": self.name},
            ) from exc

    def entries(self, session: Session, *, entity_id: Any = None) -> list[HistoryRecord]:
        """Return records oldest first, optionally for one entity."""
        stmt = select(self.table).order_by(self.table.c.created_at, self.table.c.id)
        if entity_id is not None:
            stmt = stmt.where(self.table.c.entity_id == entity_key(entity_id))
        rows = session.connection().execute(stmt).mappings().all()
        return [
            HistoryRecord(
                table=row["table"],
                operation=row["operation"],
                data=row["data"],
                additional=row["additional"],
                created_at=ensure_aware(row["created_at"]),
            )
            for row in rows
        ]

    def count(self, session: Session) -> int:
        stmt = select(func.count()).select_from(self.table)
        return int(session.connection().execute(stmt).scalar_one())

    def clear(self, session: Session) -> int:
        """Delete every record in this log and return how many were removed."""
        try:
            result = session.connection().execute(self.table.delete())
        except Exception as exc:
            raise SinkWriteFailure(
                f"Failed to clear {self.name}: {exc}",
                metadata={"history_table": self.name},
            ) from exc
        logger.info("Cleared %s history records from %s.", result.rowcount, self.name)
        return int(result.rowcount or 0)


class HistorySink:
    """Builds and caches one :class:`HistoryLog` per history table name."""

    def __init__(self, *, suffix: str = DEFAULT_SUFFIX) -> None:
        self._suffix = suffix
        self._logs: dict[str, HistoryLog] = {}

    def name_for(self, source: str, custom: Callable[[str], str] | None = None) -> str:
        return history_collection_name(source, custom, suffix=self._suffix)

    def log_for(self, source_table: Table, name: str) -> HistoryLog:
        """Return the log named ``name``, defined in ``source_table``'s metadata."""
        log = self._logs.get(name)
        if log is not None:
            return log
        metadata = source_table.metadata
        table = metadata.tables.get(name)
        if table is None:
            table = _history_table(name, metadata)
        log = HistoryLog(name, table)
        self._logs[name] = log
        return log


def _history_table(name: str, metadata: MetaData) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("table", String(255), nullable=False),
        Column("operation", String(16), nullable=False),
        Column("entity_id", String(255), nullable=True, index=True),
        Column("data", JSON, nullable=False),
        Column("additional", JSON(none_as_null=True), nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    )
