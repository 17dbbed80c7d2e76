"""SQLAlchemy middleware that records change history for tracked entities.

Save-path mutations are observed with mapper ``after_insert``/``after_update``
/``after_delete`` events and statement-level UPDATE/DELETE with the session's
``do_orm_execute`` event. History rows are written on the same connection,
inside the caller's transaction, and every failure propagates: a mutation
whose record cannot be written never commits.

Statement-level UPDATE and DELETE run together with their history rows
inside a SAVEPOINT that is rolled back before any capture error propagates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import event, inspect, select, tuple_
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Mapper, ORMExecuteState, Session, object_session
from sqlalchemy.sql.elements import BindParameter, ClauseElement

from .capture import CaptureOptions, build_payload
from .config import HistorySettings, load_settings
from .diff import FieldDiffRegistry
from .errors import MalformedPayload, MissingActor
from .events import (
    Actor,
    DeleteEvent,
    MutationEvent,
    QueryUpdateEvent,
    classify,
    save_event,
)
from .logging import configure_logging, fields, mutation_context
from .preimage import PreImageStore, entity_identity, entity_state
from .records import HistoryRecord, build_record
from .sink import HistoryLog, HistorySink

logger = logging.getLogger(__name__)

ACTOR_OPTION = "history_actor"
METADATA_OPTION = "history_metadata"

# Keys used in ``InstanceState.info`` and ``Session.info``.
_ACTOR_KEY = "change_history.actor"
_CONSUMED_KEY = "change_history.consumed_metadata"


@dataclass(frozen=True)
class TrackingOptions:
    """Per-entity-type options.

    ``diff_only`` left as ``None`` falls back to the plugin settings.
    """

    diff_only: bool | None = None
    custom_collection_name: Callable[[str], str] | None = None
    custom_diff: FieldDiffRegistry | None = None


@dataclass(frozen=True)
class TrackedEntity:
    """Resolved tracking configuration for one mapped class."""

    entity_type: type
    source: str
    log: HistoryLog
    capture: CaptureOptions

    @property
    def diff_only(self) -> bool:
        return self.capture.diff_only


class HistoryPlugin:
    """Registers history capture on mapped classes and sessions."""

    def __init__(
        self,
        settings: HistorySettings | None = None,
        *,
        sink: HistorySink | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.sink = sink or HistorySink(suffix=self.settings.collection_suffix)
        self.preimages = PreImageStore()
        self._tracked: dict[type, TrackedEntity] = {}
        self._listeners: list[tuple[Any, str, Callable[..., Any]]] = []
        configure_logging(self.settings.logging)

    # Registration

    def track(self, entity_type: type, options: TrackingOptions | None = None) -> HistoryLog:
        """Start recording history for ``entity_type`` and return its log."""
        if entity_type in self._tracked:
            return self._tracked[entity_type].log
        options = options or TrackingOptions()
        mapper: Mapper = inspect(entity_type)
        source_table = mapper.local_table
        name = self.sink.name_for(source_table.name, options.custom_collection_name)
        diff_only = self.settings.diff_only if options.diff_only is None else options.diff_only
        tracked = TrackedEntity(
            entity_type=entity_type,
            source=source_table.name,
            log=self.sink.log_for(source_table, name),
            capture=CaptureOptions(
                diff_only=diff_only,
                overrides=options.custom_diff,
                reserved_field=self.settings.reserved_field,
            ),
        )
        self._tracked[entity_type] = tracked

        self._listen(entity_type, "after_insert", self._after_insert, propagate=True)
        self._listen(entity_type, "after_update", self._after_update, propagate=True)
        self._listen(entity_type, "after_delete", self._after_delete, propagate=True)
        if diff_only:
            self._listen(entity_type, "load", self._on_load, propagate=True)
            self._listen(entity_type, "refresh", self._on_refresh, propagate=True)

        logger.info(
            "Tracking %s into %s (diff_only=%s).", source_table.name, name, diff_only
        )
        return tracked.log

    def attach(self, target: Any) -> None:
        """Register session hooks on a ``Session`` class, sessionmaker or session."""
        self._listen(target, "before_flush", self._before_flush)
        self._listen(target, "after_flush_postexec", self._after_flush_postexec)
        self._listen(target, "after_soft_rollback", self._after_soft_rollback)
        self._listen(target, "do_orm_execute", self._on_orm_execute)

    def uninstall(self) -> None:
        """Remove every listener this plugin registered."""
        while self._listeners:
            target, identifier, fn = self._listeners.pop()
            if event.contains(target, identifier, fn):
                event.remove(target, identifier, fn)
        self._tracked.clear()

    def _listen(self, target: Any, identifier: str, fn: Callable[..., Any], **kw: Any) -> None:
        event.listen(target, identifier, fn, **kw)
        self._listeners.append((target, identifier, fn))

    # Administrative operations

    def history_model_for(self, entity_type: type) -> HistoryLog:
        """Return the history log handle for a tracked entity type."""
        tracked = self._tracked_for_type(entity_type)
        if tracked is None:
            raise KeyError(f"{entity_type.__name__} is not tracked")
        return tracked.log

    def clear_history(self, session: Session, entity_type: type) -> int:
        """Delete every history record of ``entity_type``; maintenance use only."""
        return self.history_model_for(entity_type).clear(session)

    def delete(self, session: Session, instance: object, *, actor: Actor) -> None:
        """Mark ``instance`` for deletion on behalf of ``actor``.

        The actor lives on the instance's own state, so it can only ever be
        attributed to this instance.
        """
        inspect(instance).info[_ACTOR_KEY] = actor
        session.delete(instance)

    # Instance events (pre-image capture)

    def _on_load(self, target: object, context: Any) -> None:
        tracked = self._tracked_for_type(type(target))
        if tracked is None:
            return
        self.preimages.capture(target, self._state_of(target, tracked))

    def _on_refresh(self, target: object, context: Any, attrs: Iterable[str] | None) -> None:
        tracked = self._tracked_for_type(type(target))
        if tracked is None:
            return
        state = self._state_of(target, tracked)
        if attrs is None:
            self.preimages.capture(target, state)
        else:
            refreshed = set(attrs)
            self.preimages.merge(
                target, {key: value for key, value in state.items() if key in refreshed}
            )

    # Session events

    def _before_flush(self, session: Session, flush_context: Any, instances: Any) -> None:
        """Load unloaded columns of dirty tracked instances so states are complete."""
        for instance in list(session.dirty):
            tracked = self._tracked_for_type(type(instance))
            if tracked is None or not session.is_modified(instance, include_collections=False):
                continue
            state = inspect(instance)
            column_keys = {prop.key for prop in state.mapper.column_attrs}
            missing = [key for key in state.unloaded if key in column_keys]
            if not missing:
                continue
            for key in missing:
                getattr(instance, key)
            if tracked.diff_only:
                loaded = entity_state(instance)
                self.preimages.merge(
                    instance, {key: loaded[key] for key in missing if key in loaded}
                )

    def _after_flush_postexec(self, session: Session, flush_context: Any) -> None:
        """Drop reserved metadata attributes once their records are flushed."""
        for instance, reserved in session.info.pop(_CONSUMED_KEY, []):
            instance.__dict__.pop(reserved, None)

    def _after_soft_rollback(self, session: Session, previous_transaction: Any) -> None:
        session.info.pop(_CONSUMED_KEY, None)

    def _on_orm_execute(self, orm_execute_state: ORMExecuteState) -> Any:
        if not (orm_execute_state.is_update or orm_execute_state.is_delete):
            return None
        tracked, mapper = self._tracked_for_statement(orm_execute_state)
        if tracked is None:
            return None

        options = orm_execute_state.execution_options
        actor = options.get(ACTOR_OPTION)
        metadata = options.get(METADATA_OPTION)
        session = orm_execute_state.session
        connection = session.connection()

        if orm_execute_state.is_delete:
            if actor is None:
                raise MissingActor(
                    f"Delete on {tracked.source} issued without the {ACTOR_OPTION} option.",
                    table=tracked.source,
                )
            matched = self._matched_rows(connection, mapper, orm_execute_state)
            instances = [self._identity_instance(session, mapper, key) for key in matched]
            with session.begin_nested():
                for key in matched:
                    self._record(
                        connection,
                        tracked,
                        DeleteEvent(
                            condition={"_id": _id_value(key)}, actor=actor, metadata=metadata
                        ),
                    )
                result = orm_execute_state.invoke_statement()
            for instance in instances:
                if instance is not None:
                    self.preimages.discard(instance)
            return result

        matched = self._matched_rows(connection, mapper, orm_execute_state)
        moved = self._keys_after_update(orm_execute_state.statement, mapper, tracked, matched)
        logger.debug("Update on %s matched %d row(s).", tracked.source, len(matched))
        with session.begin_nested():
            result = orm_execute_state.invoke_statement()
            after_rows = self._load_rows(connection, mapper, keys=list(moved.values()))
            for key, before in matched.items():
                after = after_rows.get(moved[key])
                if after is None:
                    raise MalformedPayload(
                        f"Row {_id_value(key)!r} of {tracked.source} could not be re-read "
                        "after the update.",
                        table=tracked.source,
                    )
                self._record(
                    connection,
                    tracked,
                    QueryUpdateEvent(
                        entity_id=_id_value(moved[key]),
                        before=before,
                        after=after,
                        metadata=metadata,
                        actor=actor,
                    ),
                )
        if tracked.diff_only:
            for key in matched:
                instance = self._identity_instance(session, mapper, moved[key])
                if instance is None:
                    instance = self._identity_instance(session, mapper, key)
                if instance is not None:
                    self.preimages.capture(instance, after_rows[moved[key]])
        return result

    # Mapper events (save path)

    def _after_insert(self, mapper: Mapper, connection: Connection, target: object) -> None:
        tracked = self._tracked_for_type(type(target))
        if tracked is None:
            return
        state = self._state_of(target, tracked)
        self._record(
            connection,
            tracked,
            save_event(
                is_new=True,
                entity_id=entity_identity(target),
                after=state,
                metadata=self._take_metadata(target, tracked),
            ),
        )
        if tracked.diff_only:
            self.preimages.capture(target, state)

    def _after_update(self, mapper: Mapper, connection: Connection, target: object) -> None:
        tracked = self._tracked_for_type(type(target))
        if tracked is None:
            return
        session = object_session(target)
        if session is not None and not session.is_modified(target, include_collections=False):
            return
        current = self._state_of(target, tracked)
        before = None
        after = current
        if tracked.diff_only:
            before = self.preimages.prior_state(target)
            after = {**before, **current}
        self._record(
            connection,
            tracked,
            save_event(
                is_new=False,
                entity_id=entity_identity(target),
                before=before,
                after=after,
                metadata=self._take_metadata(target, tracked),
            ),
        )
        if tracked.diff_only:
            self.preimages.capture(target, after)

    def _after_delete(self, mapper: Mapper, connection: Connection, target: object) -> None:
        tracked = self._tracked_for_type(type(target))
        if tracked is None:
            return
        actor = inspect(target).info.pop(_ACTOR_KEY, None)
        self._record(
            connection,
            tracked,
            DeleteEvent(
                condition={"_id": entity_identity(target)},
                actor=actor,
                metadata=self._take_metadata(target, tracked),
            ),
        )
        self.preimages.discard(target)

    # Pipeline

    def _record(
        self, connection: Connection, tracked: TrackedEntity, mutation: MutationEvent
    ) -> HistoryRecord:
        operation = classify(mutation)
        with mutation_context(
            **{
                fields.HISTORY_TABLE: tracked.log.name,
                fields.SOURCE_TABLE: tracked.source,
                fields.OPERATION: operation.value,
                fields.ENTITY_ID: mutation.entity_id,
                fields.ACTOR_ID: mutation.actor.id if mutation.actor else None,
            }
        ):
            try:
                payload = build_payload(mutation, tracked.capture)
                record = build_record(
                    tracked.source,
                    operation,
                    payload,
                    reserved_field=tracked.capture.reserved_field,
                )
                tracked.log.append(connection, record)
            except Exception:
                logger.error(
                    "History capture failed for %s %s; blocking the mutation.",
                    operation.value,
                    tracked.source,
                )
                raise
            logger.debug("Recorded %s on %s.", operation.value, tracked.source)
        return record

    def _state_of(self, instance: object, tracked: TrackedEntity) -> dict[str, Any]:
        return entity_state(instance, exclude=(tracked.capture.reserved_field,))

    def _take_metadata(self, instance: object, tracked: TrackedEntity) -> Mapping[str, Any] | None:
        """Return caller metadata from the reserved attribute.

        A plain (unmapped) attribute only annotates the flush it was set for:
        it is dropped once that flush has written its records.
        """
        reserved = tracked.capture.reserved_field
        value = getattr(instance, reserved, None)
        if value is None:
            return None
        session = object_session(instance)
        if session is not None and reserved not in inspect(instance).mapper.attrs:
            session.info.setdefault(_CONSUMED_KEY, []).append((instance, reserved))
        return dict(value)

    def _tracked_for_type(self, entity_type: type) -> TrackedEntity | None:
        for klass in entity_type.__mro__:
            tracked = self._tracked.get(klass)
            if tracked is not None:
                return tracked
        return None

    def _tracked_for_statement(
        self, orm_execute_state: ORMExecuteState
    ) -> tuple[TrackedEntity | None, Mapper | None]:
        for mapper in orm_execute_state.all_mappers:
            tracked = self._tracked_for_type(mapper.class_)
            if tracked is not None:
                return tracked, mapper
        return None, None

    def _identity_instance(
        self, session: Session, mapper: Mapper, key: tuple[Any, ...]
    ) -> object | None:
        return session.identity_map.get(mapper.identity_key_from_primary_key(list(key)))

    def _matched_rows(
        self,
        connection: Connection,
        mapper: Mapper,
        orm_execute_state: ORMExecuteState,
    ) -> dict[tuple[Any, ...], dict[str, Any]]:
        """Read the rows a statement is about to touch, keyed by primary key."""
        statement = orm_execute_state.statement
        parameters = orm_execute_state.parameters
        whereclause = getattr(statement, "whereclause", None)
        if whereclause is None and isinstance(parameters, list):
            pk_keys = [mapper.get_property_by_column(column).key for column in mapper.primary_key]
            keys = [tuple(params[key] for key in pk_keys) for params in parameters]
            return self._load_rows(connection, mapper, keys=keys)
        return self._load_rows(connection, mapper, whereclause=whereclause)

    def _keys_after_update(
        self,
        statement: Any,
        mapper: Mapper,
        tracked: TrackedEntity,
        matched: Mapping[tuple[Any, ...], Any],
    ) -> dict[tuple[Any, ...], tuple[Any, ...]]:
        """Map each matched key to the key its row carries after the UPDATE."""
        try:
            assigned = assigned_primary_key(statement, mapper)
        except ValueError as exc:
            raise MalformedPayload(
                f"Cannot follow rows of {tracked.source} through the update: {exc}.",
                table=tracked.source,
            ) from exc
        if not assigned:
            return {key: key for key in matched}
        pk_keys = [mapper.get_property_by_column(column).key for column in mapper.primary_key]
        return {
            key: tuple(assigned.get(name, value) for name, value in zip(pk_keys, key))
            for key in matched
        }

    def _load_rows(
        self,
        connection: Connection,
        mapper: Mapper,
        *,
        keys: list[tuple[Any, ...]] | None = None,
        whereclause: ClauseElement | None = None,
    ) -> dict[tuple[Any, ...], dict[str, Any]]:
        props = list(mapper.column_attrs)
        stmt = select(*[prop.columns[0] for prop in props])
        pk_columns = list(mapper.primary_key)
        if keys is not None:
            if not keys:
                return {}
            if len(pk_columns) == 1:
                stmt = stmt.where(pk_columns[0].in_([key[0] for key in keys]))
            else:
                stmt = stmt.where(tuple_(*pk_columns).in_(keys))
        elif whereclause is not None:
            stmt = stmt.where(whereclause)

        pk_keys = [mapper.get_property_by_column(column).key for column in pk_columns]
        rows: dict[tuple[Any, ...], dict[str, Any]] = {}
        for row in connection.execute(stmt):
            state = {prop.key: value for prop, value in zip(props, row)}
            rows[tuple(state[key] for key in pk_keys)] = state
        return rows


def assigned_primary_key(statement: Any, mapper: Mapper) -> dict[str, Any]:
    """Return the primary-key values an UPDATE's SET clause writes, by attribute key.

    Raises ``ValueError`` when a key column is set from an SQL expression
    whose result cannot be known before the statement runs.
    """
    # SQLAlchemy exposes no public accessor for an UPDATE's SET clause.
    values = getattr(statement, "_values", None) or {}
    names: dict[str, str] = {}
    for column in mapper.primary_key:
        prop_key = mapper.get_property_by_column(column).key
        names[prop_key] = prop_key
        names[column.key] = prop_key
    assigned: dict[str, Any] = {}
    for target, value in values.items():
        prop_key = names.get(str(getattr(target, "key", target)))
        if prop_key is None:
            continue
        if isinstance(value, BindParameter):
            value = value.value
        elif isinstance(value, ClauseElement):
            raise ValueError(f"{prop_key} is assigned from an SQL expression")
        assigned[prop_key] = value
    return assigned


def _id_value(key: tuple[Any, ...]) -> Any:
    return key[0] if len(key) == 1 else list(key)
