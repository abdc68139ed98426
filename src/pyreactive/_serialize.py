"""Conversion of live observable trees into transport-safe snapshots."""

from __future__ import annotations

import math
from typing import Any

#: Key prefixes reserved for session metadata; never synchronized.
RESERVED_PREFIXES: tuple[str, ...] = ("$", "_")

PlainValue = str | int | float | bool | None | list["PlainValue"] | dict[str, "PlainValue"]


def is_reserved_key(key: Any) -> bool:
    return isinstance(key, str) and key.startswith(RESERVED_PREFIXES)


def _is_scalar(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    return value is None or isinstance(value, (str, int, bool))


def to_plain(value: Any) -> PlainValue:
    """Deep-copy *value* into plain JSON-compatible data.

    Mappings and lists are copied recursively (observable wrappers become
    plain ``dict``/``list``). Keys starting with a reserved prefix are
    dropped. Any other value (callables, datetimes, arbitrary objects,
    non-finite floats) is replaced by ``None`` in place, so the shape of the
    surrounding container never changes.
    """
    if isinstance(value, dict):
        return {str(key): to_plain(item) for key, item in value.items() if not is_reserved_key(key)}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    if _is_scalar(value):
        return value
    return None
