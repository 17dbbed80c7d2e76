"""Per-mutation logging context.

The fields of the mutation being recorded live in a ``ContextVar`` so
concurrent sessions in other threads or tasks never see each other's values.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Mapping

_MUTATION: ContextVar[Mapping[str, str]] = ContextVar(
    "change_history_mutation", default={}
)


def current_mutation() -> dict[str, str]:
    """Return the fields of the mutation currently being recorded."""
    return dict(_MUTATION.get())


@contextmanager
def mutation_context(**values: object) -> Iterator[None]:
    """Bind mutation fields for the duration of a block.

    Values are stringified and ``None`` values are left out. Nested blocks
    extend the enclosing fields and restore them on exit.
    """
    fields = dict(_MUTATION.get())
    fields.update({key: str(value) for key, value in values.items() if value is not None})
    token = _MUTATION.set(fields)
    try:
        yield
    finally:
        _MUTATION.reset(token)
