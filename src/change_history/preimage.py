"""Load-time state capture used as the baseline for diffing."""

from __future__ import annotations

import copy
import weakref
from typing import Any, Iterable, Mapping

from sqlalchemy import inspect

from .errors import NoBaseline


def entity_state(instance: object, *, exclude: Iterable[str] = ()) -> dict[str, Any]:
    """Return a deep copy of the loaded column attributes of ``instance``.

    Only values already present on the instance are read; unloaded or
    expired attributes are left out rather than fetched.
    """
    state = inspect(instance)
    skipped = set(exclude)
    values: dict[str, Any] = {}
    for prop in state.mapper.column_attrs:
        if prop.key in skipped or prop.key not in state.dict:
            continue
        values[prop.key] = copy.deepcopy(state.dict[prop.key])
    return values


def entity_identity(instance: object) -> Any:
    """Return the primary key of ``instance``; a list for composite keys."""
    state = inspect(instance)
    mapper = state.mapper
    values = tuple(
        state.dict.get(mapper.get_property_by_column(column).key)
        for column in mapper.primary_key
    )
    if any(value is None for value in values) and state.identity is not None:
        values = tuple(state.identity)
    return values[0] if len(values) == 1 else list(values)


class PreImageStore:
    """Baseline states keyed to live entity instances.

    Entries are dropped automatically when their instance is garbage
    collected.
    """

    def __init__(self) -> None:
        self._images: dict[int, dict[str, Any]] = {}

    def capture(self, instance: object, state: Mapping[str, Any]) -> None:
        """Replace the baseline of ``instance`` with a copy of ``state``."""
        key = id(instance)
        if key not in self._images:
            weakref.finalize(instance, self._images.pop, key, None)
        self._images[key] = copy.deepcopy(dict(state))

    def merge(self, instance: object, state: Mapping[str, Any]) -> None:
        """Overlay freshly loaded attributes onto an existing baseline."""
        image = self._images.get(id(instance))
        if image is None:
            return
        image.update(copy.deepcopy(dict(state)))

    def prior_state(self, instance: object) -> dict[str, Any]:
        """Return the baseline of ``instance`` or raise :class:`NoBaseline`."""
        image = self._images.get(id(instance))
        if image is None:
            raise NoBaseline(
                f"No pre-image captured for {type(instance).__name__} instance; "
                "it was not loaded from storage in this process."
            )
        return copy.deepcopy(image)

    def has(self, instance: object) -> bool:
        return id(instance) in self._images

    def discard(self, instance: object) -> None:
        self._images.pop(id(instance), None)

    def __len__(self) -> int:
        return len(self._images)
