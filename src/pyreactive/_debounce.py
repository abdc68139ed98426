"""Event-loop debouncer collapsing bursts of calls into one invocation."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from pyreactive.config import ThrottleConfig


class Debouncer:
    """Debounce a zero-argument callable on the running asyncio loop.

    Semantics follow the usual leading/trailing/max-wait model: a burst is a
    run of calls each less than ``wait`` seconds apart. ``leading`` invokes at
    the start of a burst, ``trailing`` invokes ``wait`` seconds after the last
    call of a burst (only if a call arrived that was not already consumed by
    the leading edge). ``max_wait`` bounds how long a continuous burst may
    defer the trailing invocation.
    """

    def __init__(self, func: Callable[[], None], throttle: ThrottleConfig) -> None:
        self._func = func
        self._wait = throttle.wait
        self._max_wait = throttle.max_wait
        self._leading = throttle.leading
        self._trailing = throttle.trailing
        self._handle: asyncio.TimerHandle | None = None
        self._burst_started: float | None = None
        self._pending = False

    def __call__(self) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()

        if self._burst_started is None:
            self._burst_started = now
            if self._leading:
                self._func()
            else:
                self._pending = True
        else:
            self._pending = True

        fire_at = now + self._wait
        if self._max_wait is not None:
            fire_at = min(fire_at, self._burst_started + self._max_wait)

        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_at(fire_at, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._burst_started = None
        should_invoke = self._trailing and self._pending
        self._pending = False
        if should_invoke:
            self._func()

    def cancel(self) -> None:
        """Drop any scheduled invocation and reset the burst."""
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._burst_started = None
        self._pending = False
