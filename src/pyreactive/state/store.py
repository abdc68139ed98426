"""Session metadata, the write lock and snapshot application.

This is the only place allowed to replace the contents of a local tree.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from pyreactive.exceptions import ReentrancyError


class SessionMeta(BaseModel):
    """Mutable per-session synchronization state."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True, validate_assignment=True)

    timestamp: datetime | None = None
    version: int | None = None
    is_updating: bool = False
    has_read: bool = False
    watcher_handle: Any = None
    subscription_handle: Any = None


class WriteLock:
    """Single-flag lock suppressing change detection during a state replacement.

    The flag lives on :class:`SessionMeta` (``is_updating``). It is a
    best-effort guard for one event loop, not a queue: a second acquisition
    while held raises :class:`ReentrancyError` instead of waiting.
    """

    def __init__(self, meta: SessionMeta) -> None:
        self._meta = meta

    @property
    def held(self) -> bool:
        return self._meta.is_updating

    def acquire(self) -> None:
        if self._meta.is_updating:
            raise ReentrancyError("State replacement already in progress")
        self._meta.is_updating = True

    def release(self) -> None:
        self._meta.is_updating = False

    async def release_after(self, settle_delay: float) -> None:
        """Release once queued observer batches have run and *settle_delay* passed.

        Observer notifications are delivered asynchronously; releasing right
        away would let the replacement bounce back as a local edit.
        """
        try:
            await asyncio.sleep(0)
            if settle_delay > 0:
                await asyncio.sleep(settle_delay)
        finally:
            self.release()

    @contextlib.asynccontextmanager
    async def hold(self, settle_delay: float) -> AsyncIterator[None]:
        self.acquire()
        try:
            yield
        except BaseException:
            self.release()
            raise
        await self.release_after(settle_delay)


def apply_snapshot(tree: Any, snapshot: Any, *, remove_keys: bool = True) -> None:
    """Replace the contents of *tree* with *snapshot*.

    Mapping trees receive every key of the snapshot; with ``remove_keys``
    local keys absent from the snapshot are deleted (full replace), otherwise
    they are kept (patch merge). List trees are always replaced wholesale.
    """
    if isinstance(tree, list):
        if not isinstance(snapshot, list):
            raise TypeError(f"Cannot apply {type(snapshot).__name__} snapshot to an array session")
        tree[:] = snapshot
        return

    if not isinstance(snapshot, dict):
        raise TypeError(f"Cannot apply {type(snapshot).__name__} snapshot to an object session")

    tree.update(snapshot)
    if remove_keys:
        for key in [key for key in tree if key not in snapshot]:
            del tree[key]
