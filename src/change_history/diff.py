"""Structural diffing between two entity states.

The default algorithm walks both values in parallel and emits one
:class:`DiffEntry` per atomic change, in traversal order:

- mappings are compared key by key, ``before`` keys first, then keys that
  only exist in ``after``;
- lists and tuples are compared positionally, and every change found inside
  element ``i`` is wrapped in an ``ARRAY`` entry carrying ``index=i``;
- anything else is compared with ``!=``.

Individual top-level fields can opt out of the default algorithm through a
:class:`FieldDiffRegistry`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Mapping, Sequence


class DiffKind(str, Enum):
    """Kinds of atomic change."""

    NEW = "N"
    EDITED = "E"
    DELETED = "D"
    ARRAY = "A"


@dataclass(frozen=True)
class DiffEntry:
    """One atomic change between two states."""

    kind: DiffKind
    path: tuple[str | int, ...] = ()
    lhs: Any = None
    rhs: Any = None
    index: int | None = None
    item: DiffEntry | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise the entry; keys irrelevant to ``kind`` are omitted."""
        payload: dict[str, Any] = {"kind": self.kind.value}
        if self.path:
            payload["path"] = list(self.path)
        if self.kind is DiffKind.ARRAY:
            payload["index"] = self.index
            payload["item"] = self.item.to_dict() if self.item is not None else None
            return payload
        if self.kind in (DiffKind.EDITED, DiffKind.DELETED):
            payload["lhs"] = self.lhs
        if self.kind in (DiffKind.EDITED, DiffKind.NEW):
            payload["rhs"] = self.rhs
        return payload


@dataclass(frozen=True)
class FieldDiff:
    """Result of a per-field override; ``diff`` is stored verbatim."""

    diff: Any


FieldDiffFn = Callable[[str, Any, Any], "FieldDiff | None"]


class FieldDiffRegistry:
    """Per-field comparison overrides keyed by field name.

    An override is called as ``fn(field, after, before)``. Returning a
    :class:`FieldDiff` records its ``diff`` for that field; returning ``None``
    records nothing for it. A catch-all override, when set, applies to every
    field without a specific one.
    """

    def __init__(
        self,
        overrides: Mapping[str, FieldDiffFn] | None = None,
        *,
        default: FieldDiffFn | None = None,
    ) -> None:
        self._overrides: dict[str, FieldDiffFn] = dict(overrides or {})
        self._default = default

    def register(self, field_name: str, fn: FieldDiffFn) -> None:
        self._overrides[field_name] = fn

    def get(self, field_name: str) -> FieldDiffFn | None:
        return self._overrides.get(field_name, self._default)


@dataclass(frozen=True)
class DiffResult:
    """Ordered change set for one mutation of one entity."""

    entity_id: Any
    changes: tuple[DiffEntry, ...] = ()
    custom: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.changes and not self.custom

    def to_data(self) -> dict[str, Any]:
        """Return the record ``data`` mapping, ``_id`` always included."""
        data: dict[str, Any] = {
            "_id": self.entity_id,
            "changes": [entry.to_dict() for entry in self.changes],
        }
        if self.custom:
            data["custom"] = dict(self.custom)
        return data


_MISSING = object()


def diff_states(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    *,
    entity_id: Any = None,
    overrides: FieldDiffRegistry | None = None,
) -> DiffResult:
    """Diff two top-level entity states field by field."""
    changes: list[DiffEntry] = []
    custom: dict[str, Any] = {}

    for key in _ordered_keys(before, after):
        old = before.get(key, _MISSING)
        new = after.get(key, _MISSING)
        override = overrides.get(key) if overrides is not None else None
        if override is not None:
            result = override(
                key,
                None if new is _MISSING else new,
                None if old is _MISSING else old,
            )
            if result is not None:
                custom[key] = result.diff
            continue
        changes.extend(_diff_slot(old, new, (key,)))

    return DiffResult(entity_id=entity_id, changes=tuple(changes), custom=custom)


def diff_values(
    before: Any, after: Any, path: tuple[str | int, ...] = ()
) -> list[DiffEntry]:
    """Diff two arbitrary values with the default algorithm."""
    return list(_diff(before, after, path))


def _diff_slot(old: Any, new: Any, path: tuple[str | int, ...]) -> Iterator[DiffEntry]:
    if old is _MISSING:
        yield DiffEntry(DiffKind.NEW, path, rhs=new)
    elif new is _MISSING:
        yield DiffEntry(DiffKind.DELETED, path, lhs=old)
    else:
        yield from _diff(old, new, path)


def _diff(before: Any, after: Any, path: tuple[str | int, ...]) -> Iterator[DiffEntry]:
    if isinstance(before, Mapping) and isinstance(after, Mapping):
        for key in _ordered_keys(before, after):
            yield from _diff_slot(
                before.get(key, _MISSING), after.get(key, _MISSING), path + (key,)
            )
        return

    if _is_sequence(before) and _is_sequence(after):
        yield from _diff_sequence(before, after, path)
        return

    if type(before) is not type(after) and (
        _is_container(before) or _is_container(after)
    ):
        yield DiffEntry(DiffKind.EDITED, path, lhs=before, rhs=after)
        return

    if before != after:
        yield DiffEntry(DiffKind.EDITED, path, lhs=before, rhs=after)


def _diff_sequence(
    before: Sequence[Any], after: Sequence[Any], path: tuple[str | int, ...]
) -> Iterator[DiffEntry]:
    for index in range(max(len(before), len(after))):
        old = before[index] if index < len(before) else _MISSING
        new = after[index] if index < len(after) else _MISSING
        # Inner paths are relative to the element.
        for inner in _diff_slot(old, new, ()):
            yield DiffEntry(DiffKind.ARRAY, path, index=index, item=inner)


def _ordered_keys(before: Mapping[str, Any], after: Mapping[str, Any]) -> list[str]:
    keys = list(before)
    keys.extend(key for key in after if key not in before)
    return keys


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _is_container(value: Any) -> bool:
    return isinstance(value, Mapping) or _is_sequence(value)
