"""Turn classified mutation events into record payloads."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .diff import DiffEntry, DiffKind, FieldDiffRegistry, diff_states
from .errors import MissingActor
from .events import (
    Actor,
    CreateEvent,
    DeleteEvent,
    MutationEvent,
    QueryUpdateEvent,
    UpdateEvent,
)


@dataclass(frozen=True)
class CaptureOptions:
    """Per-entity-type capture behavior."""

    diff_only: bool = False
    overrides: FieldDiffRegistry | None = None
    reserved_field: str = "history"


def snapshot_payload(state: Mapping[str, Any], entity_id: Any) -> dict[str, Any]:
    """Full-state payload; ``_id`` is added next to the column values."""
    payload = dict(state)
    payload["_id"] = entity_id
    return payload


def build_payload(event: MutationEvent, options: CaptureOptions) -> dict[str, Any]:
    """Return the payload for ``event``, metadata under the reserved field.

    Creates are always full snapshots. Updates are diffed against their
    baseline in diff mode and snapshotted otherwise. Deletes carry a single
    ``DELETED`` entry over ``_id``.
    """
    if isinstance(event, CreateEvent):
        payload = snapshot_payload(event.state, event.entity_id)
    elif isinstance(event, (UpdateEvent, QueryUpdateEvent)):
        payload = _update_payload(event, options)
    elif isinstance(event, DeleteEvent):
        payload = _delete_payload(event)
    else:
        raise TypeError(f"Unsupported mutation event: {type(event).__name__}")

    additional = merge_metadata(event.metadata, event.actor)
    if additional is not None:
        payload[options.reserved_field] = additional
    return payload


def merge_metadata(
    metadata: Mapping[str, Any] | None, actor: Actor | None
) -> dict[str, Any] | None:
    """Combine caller metadata with actor identity; ``None`` when both are absent."""
    if metadata is None and actor is None:
        return None
    merged: dict[str, Any] = dict(metadata or {})
    if actor is not None:
        merged.update(actor.as_metadata())
    return merged


def _update_payload(
    event: UpdateEvent | QueryUpdateEvent, options: CaptureOptions
) -> dict[str, Any]:
    if not options.diff_only:
        return snapshot_payload(event.after, event.entity_id)
    # Callers resolve the baseline before building the event.
    before = event.before if event.before is not None else {}
    result = diff_states(
        before,
        event.after,
        entity_id=event.entity_id,
        overrides=options.overrides,
    )
    return result.to_data()


def _delete_payload(event: DeleteEvent) -> dict[str, Any]:
    if event.actor is None:
        raise MissingActor("Deletes of tracked entities require an actor.")
    entry = DiffEntry(DiffKind.DELETED, ("_id",), lhs=event.entity_id)
    return {"_id": event.entity_id, "changes": [entry.to_dict()]}
