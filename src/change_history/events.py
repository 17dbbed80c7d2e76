"""Mutation events and their classification.

The framework boundary decides which event a mutation is and builds it
explicitly; nothing downstream re-derives the kind from loose flags.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Union


class Operation(str, Enum):
    """Operation recorded on a history record."""

    CREATE = "create"
    UPDATE = "update"
    REMOVE = "remove"


@dataclass(frozen=True)
class Actor:
    """Identity on whose behalf a mutation runs."""

    id: str
    name: str
    partner_id: str | None = None

    def as_metadata(self) -> dict[str, Any]:
        return {
            "user": {"id": self.id, "name": self.name},
            "partner_id": self.partner_id,
        }


@dataclass(frozen=True)
class CreateEvent:
    """A never-persisted instance was inserted."""

    entity_id: Any
    state: Mapping[str, Any]
    metadata: Mapping[str, Any] | None = None
    actor: Actor | None = None


@dataclass(frozen=True)
class UpdateEvent:
    """A loaded instance was flushed with changes."""

    entity_id: Any
    before: Mapping[str, Any] | None
    after: Mapping[str, Any]
    metadata: Mapping[str, Any] | None = None
    actor: Actor | None = None


@dataclass(frozen=True)
class QueryUpdateEvent:
    """One row matched by an UPDATE statement issued without loading it.

    ``before`` and ``after`` are the row as read immediately before and after
    the statement.
    """

    entity_id: Any
    before: Mapping[str, Any]
    after: Mapping[str, Any]
    metadata: Mapping[str, Any] | None = None
    actor: Actor | None = None


@dataclass(frozen=True)
class DeleteEvent:
    """A row was deleted; ``condition`` identifies it by ``_id``."""

    condition: Mapping[str, Any]
    actor: Actor | None
    metadata: Mapping[str, Any] | None = None

    @property
    def entity_id(self) -> Any:
        return self.condition.get("_id")


MutationEvent = Union[CreateEvent, UpdateEvent, QueryUpdateEvent, DeleteEvent]


def classify(event: MutationEvent) -> Operation:
    """Return the recorded operation for ``event``."""
    if isinstance(event, CreateEvent):
        return Operation.CREATE
    if isinstance(event, (UpdateEvent, QueryUpdateEvent)):
        return Operation.UPDATE
    if isinstance(event, DeleteEvent):
        return Operation.REMOVE
    raise TypeError(f"Unsupported mutation event: {type(event).__name__}")


def save_event(
    *,
    is_new: bool,
    entity_id: Any,
    after: Mapping[str, Any],
    before: Mapping[str, Any] | None = None,
    metadata: Mapping[str, Any] | None = None,
    actor: Actor | None = None,
) -> CreateEvent | UpdateEvent:
    """Build the save-path event: create when never persisted, else update."""
    if is_new:
        return CreateEvent(entity_id=entity_id, state=after, metadata=metadata, actor=actor)
    return UpdateEvent(
        entity_id=entity_id,
        before=before,
        after=after,
        metadata=metadata,
        actor=actor,
    )
