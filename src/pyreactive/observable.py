"""Observable state trees.

The synchronization core only depends on the :class:`Observable`
capability: ``create(initial)`` wraps plain data so that mutations can be
observed, and ``observe(tree, callback)`` registers a callback fired after one
or more mutations, returning an ``unsubscribe`` callable.

:class:`ObservableRuntime` is the default implementation. It wraps mappings
and lists in :class:`ObservableDict` / :class:`ObservableList` (real ``dict``
and ``list`` subclasses, so trees compare equal to plain data) and batches
notifications with ``loop.call_soon``: any number of mutations made in one
event loop iteration produce a single callback per observer.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable, Iterable
from typing import Any, Protocol, SupportsIndex

_logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class Observable(Protocol):
    """Capability wrapping data trees so that deep mutations are observable."""

    def create(self, initial: dict[str, Any] | list[Any]) -> Any:
        ...

    def observe(self, tree: Any, callback: Callable[[], None]) -> Unsubscribe:
        ...


class _Notifier:
    """Shared by every node of one tree; delivers batched notifications."""

    __slots__ = ("_listeners", "_scheduled")

    def __init__(self) -> None:
        self._listeners: list[Callable[[], None]] = []
        self._scheduled = False

    def add(self, callback: Callable[[], None]) -> Unsubscribe:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            # Listeners are matched by identity so the same callable may be
            # registered twice and released independently.
            for index, candidate in enumerate(self._listeners):
                if candidate is callback:
                    del self._listeners[index]
                    return

        return unsubscribe

    def touch(self) -> None:
        if not self._listeners or self._scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _logger.debug("Mutation outside a running event loop; observers not notified")
            return
        self._scheduled = True
        loop.call_soon(self._deliver)

    def _deliver(self) -> None:
        self._scheduled = False
        # Snapshot the list: callbacks unsubscribed before delivery never fire.
        for callback in list(self._listeners):
            if callback not in self._listeners:
                continue
            try:
                callback()
            except Exception:
                _logger.exception("Observer callback failed")


def _wrap(value: Any, notifier: _Notifier) -> Any:
    if isinstance(value, (ObservableDict, ObservableList)) and value._notifier is notifier:
        return value
    if isinstance(value, dict):
        return ObservableDict(value, notifier=notifier)
    if isinstance(value, list):
        return ObservableList(value, notifier=notifier)
    return value


class ObservableDict(dict[str, Any]):
    """``dict`` that reports every deep mutation to its tree's observers."""

    __slots__ = ("_notifier",)

    def __init__(self, initial: Any = (), *, notifier: _Notifier | None = None) -> None:
        super().__init__()
        self._notifier = notifier if notifier is not None else _Notifier()
        for key, value in dict(initial).items():
            dict.__setitem__(self, key, _wrap(value, self._notifier))

    def __setitem__(self, key: str, value: Any) -> None:
        dict.__setitem__(self, key, _wrap(value, self._notifier))
        self._notifier.touch()

    def __delitem__(self, key: str) -> None:
        dict.__delitem__(self, key)
        self._notifier.touch()

    def __ior__(self, other: Any) -> ObservableDict:  # type: ignore[override,misc]
        self.update(other)
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> dict[str, Any]:
        return {key: copy.deepcopy(value, memo) for key, value in self.items()}

    def __copy__(self) -> dict[str, Any]:
        return dict(self)

    def __reduce__(self) -> Any:
        return (dict, (dict(self),))

    def update(self, *args: Any, **kwargs: Any) -> None:  # type: ignore[override]
        for key, value in dict(*args, **kwargs).items():
            dict.__setitem__(self, key, _wrap(value, self._notifier))
        self._notifier.touch()

    def setdefault(self, key: str, default: Any = None) -> Any:
        if key in self:
            return self[key]
        self[key] = default
        return self[key]

    def pop(self, key: str, *default: Any) -> Any:
        present = key in self
        result = dict.pop(self, key, *default)
        if present:
            self._notifier.touch()
        return result

    def popitem(self) -> tuple[str, Any]:
        result = dict.popitem(self)
        self._notifier.touch()
        return result

    def clear(self) -> None:
        had_items = bool(self)
        dict.clear(self)
        if had_items:
            self._notifier.touch()


class ObservableList(list[Any]):
    """``list`` that reports every deep mutation to its tree's observers."""

    __slots__ = ("_notifier",)

    def __init__(self, initial: Iterable[Any] = (), *, notifier: _Notifier | None = None) -> None:
        self._notifier = notifier if notifier is not None else _Notifier()
        super().__init__(_wrap(value, self._notifier) for value in initial)

    def __setitem__(self, index: SupportsIndex | slice, value: Any) -> None:  # type: ignore[override]
        if isinstance(index, slice):
            list.__setitem__(self, index, [_wrap(item, self._notifier) for item in value])
        else:
            list.__setitem__(self, index, _wrap(value, self._notifier))
        self._notifier.touch()

    def __delitem__(self, index: SupportsIndex | slice) -> None:
        list.__delitem__(self, index)
        self._notifier.touch()

    def __iadd__(self, other: Iterable[Any]) -> ObservableList:  # type: ignore[override,misc]
        self.extend(other)
        return self

    def __imul__(self, count: SupportsIndex) -> ObservableList:  # type: ignore[override,misc]
        list.__imul__(self, count)
        self._notifier.touch()
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> list[Any]:
        return [copy.deepcopy(value, memo) for value in self]

    def __copy__(self) -> list[Any]:
        return list(self)

    def __reduce__(self) -> Any:
        return (list, (list(self),))

    def append(self, value: Any) -> None:
        list.append(self, _wrap(value, self._notifier))
        self._notifier.touch()

    def extend(self, values: Iterable[Any]) -> None:
        list.extend(self, [_wrap(value, self._notifier) for value in values])
        self._notifier.touch()

    def insert(self, index: SupportsIndex, value: Any) -> None:
        list.insert(self, index, _wrap(value, self._notifier))
        self._notifier.touch()

    def pop(self, index: SupportsIndex = -1) -> Any:
        result = list.pop(self, index)
        self._notifier.touch()
        return result

    def remove(self, value: Any) -> None:
        list.remove(self, value)
        self._notifier.touch()

    def clear(self) -> None:
        had_items = bool(self)
        list.clear(self)
        if had_items:
            self._notifier.touch()

    def sort(self, *args: Any, **kwargs: Any) -> None:
        list.sort(self, *args, **kwargs)
        self._notifier.touch()

    def reverse(self) -> None:
        list.reverse(self)
        self._notifier.touch()


class ObservableRuntime:
    """Default :class:`Observable` implementation backed by asyncio."""

    def create(self, initial: dict[str, Any] | list[Any]) -> ObservableDict | ObservableList:
        if isinstance(initial, dict):
            return ObservableDict(initial)
        if isinstance(initial, list):
            return ObservableList(initial)
        raise TypeError(f"Cannot observe {type(initial).__name__}; expected dict or list")

    def observe(self, tree: Any, callback: Callable[[], None]) -> Unsubscribe:
        if not isinstance(tree, (ObservableDict, ObservableList)):
            raise TypeError("observe() requires a tree created by ObservableRuntime.create()")
        return tree._notifier.add(callback)
