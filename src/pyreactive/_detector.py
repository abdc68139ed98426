"""Local change detection: observer binding plus debouncing."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pyreactive._debounce import Debouncer
from pyreactive.config import ThrottleConfig
from pyreactive.observable import Observable, Unsubscribe

_logger = logging.getLogger(__name__)


class ChangeDetector:
    """Invoke *on_change* once per settled burst of local mutations.

    Notifications arriving while ``is_suppressed()`` is true (the session's
    write lock is held) are dropped before they reach the debouncer.
    """

    def __init__(
        self,
        observable: Observable,
        tree: Any,
        on_change: Callable[[], Awaitable[None]],
        *,
        throttle: ThrottleConfig | None,
        is_suppressed: Callable[[], bool],
    ) -> None:
        self._observable = observable
        self._tree = tree
        self._on_change = on_change
        self._is_suppressed = is_suppressed
        self._debouncer = Debouncer(self._dispatch, throttle) if throttle is not None else None
        self._unsubscribe: Unsubscribe | None = None
        self._inflight: asyncio.Task[None] | None = None
        # Bound once so the observer registration can be released by identity.
        self._callback = self._on_mutation

    @property
    def active(self) -> bool:
        return self._unsubscribe is not None

    @property
    def inflight(self) -> asyncio.Task[None] | None:
        """The most recently dispatched local-write task, if still running."""
        task = self._inflight
        return task if task is not None and not task.done() else None

    def start(self) -> Unsubscribe:
        if self._unsubscribe is None:
            self._unsubscribe = self._observable.observe(self._tree, self._callback)
        return self._unsubscribe

    def stop(self) -> None:
        unsubscribe = self._unsubscribe
        self._unsubscribe = None
        if unsubscribe is not None:
            unsubscribe()
        if self._debouncer is not None:
            self._debouncer.cancel()

    def _on_mutation(self) -> None:
        if self._unsubscribe is None or self._is_suppressed():
            return
        if self._debouncer is not None:
            self._debouncer()
        else:
            self._dispatch()

    def _dispatch(self) -> None:
        if self._unsubscribe is None:
            return
        task = asyncio.get_running_loop().create_task(self._on_change())
        task.add_done_callback(_log_failure)
        self._inflight = task


def _log_failure(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        _logger.warning("Local change could not be written: %s", exc, exc_info=exc)
