"""Two-way synchronized sessions between a local tree and a remote record."""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, NamedTuple

from pyreactive._detector import ChangeDetector
from pyreactive._gateway import RemoteGateway
from pyreactive._redact import redact_for_log
from pyreactive._serialize import to_plain
from pyreactive.config import Callback, ReactiveConfig
from pyreactive.exceptions import ConfigurationError, ReentrancyError, UnsupportedOperationError
from pyreactive.observable import Observable, ObservableRuntime
from pyreactive.remote import RemoteQuery, RemoteStore, SubscriptionHandle
from pyreactive.state.events import ChangeType, RemoteChangeEvent, parse_timestamp, parse_version
from pyreactive.state.policy import should_accept_remote
from pyreactive.state.store import SessionMeta, WriteLock, apply_snapshot

_logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    IDLE = "idle"
    READING = "reading"
    WATCHING = "watching"
    SUBSCRIBING = "subscribing"
    READY = "ready"
    DESTROYED = "destroyed"


class ReactiveHandle(NamedTuple):
    """The live data tree paired with the session controlling it."""

    data: Any
    controls: SyncSession


async def _invoke(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class SyncSession:
    """Mirror one remote row (or filtered row set) in a local observable tree.

    Local mutations of :attr:`data` are debounced, serialized and upserted;
    remote ``UPDATE`` events are conflict-checked and merged back. The tree
    itself stays plain data: every control lives on the session.

    Usage::

        session = SyncSession(store, ReactiveConfig(version_column="version"))
        handle = await session.init("documents/42")
        handle.data["title"] = "Hello"
        await session.flush()
        await session.destroy()
    """

    def __init__(
        self,
        store: RemoteStore | None,
        config: ReactiveConfig | None = None,
        *,
        observable: Observable | None = None,
        **options: Any,
    ) -> None:
        config = config if config is not None else ReactiveConfig()
        if options:
            config = dataclasses.replace(config, **options)
        self._store = store
        self._config = config
        self._observable = observable if observable is not None else ObservableRuntime()
        self.meta = SessionMeta()
        self._lock = WriteLock(self.meta)
        self._data = self._observable.create([] if config.is_array else {})
        self._gateway = RemoteGateway(store, config) if store is not None else None
        self._detector = ChangeDetector(
            self._observable,
            self._data,
            self._on_local_change,
            throttle=config.throttle,
            is_suppressed=lambda: self._lock.held,
        )
        self._subscription: SubscriptionHandle | None = None
        self._pending_write: asyncio.Future[list[dict[str, Any]]] | None = None
        self._remote_tasks: set[asyncio.Task[None]] = set()
        self._state = SessionState.IDLE
        self._initialized = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def data(self) -> Any:
        """The live local tree."""
        return self._data

    @property
    def id(self) -> str | None:
        return self._config.id

    @property
    def table(self) -> str | None:
        return self._config.table

    @property
    def config(self) -> ReactiveConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pending_write(self) -> asyncio.Future[list[dict[str, Any]]] | None:
        """The most recently issued upsert, or ``None`` before the first write."""
        return self._pending_write

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _debug(self, message: str, *args: Any) -> None:
        debug = self._config.debug
        if debug is False:
            return
        if not callable(debug) and not _logger.isEnabledFor(logging.DEBUG):
            return
        if args:
            message = message % tuple(redact_for_log(arg) for arg in args)
        if callable(debug):
            debug(message)
        else:
            _logger.debug("[%s/%s] %s", self._config.table, self._config.id, message)

    def _require_gateway(self) -> RemoteGateway:
        if self._gateway is None:
            raise ConfigurationError("No remote store given")
        return self._gateway

    def _check_target(self) -> None:
        config = self._config
        if not (config.read or config.watch or config.write):
            return
        if not config.table:
            raise ConfigurationError("No table given (set config.table or pass a TABLE/ID path)")
        if config.is_array:
            return
        # Filtered sessions adopt the id of the row they read.
        if config.id is None and config.filter is None:
            raise ConfigurationError("No row id given (set config.id or pass a TABLE/ID path)")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self, path: str | None = None) -> ReactiveHandle | Any:
        """Read, watch and subscribe as configured, then return the live tree.

        Raises
        ------
        ConfigurationError
            No remote store, table or row id.
        ReentrancyError
            The session was already initialized.
        RemoteStoreError
            The initial read or subscription failed; the session stays idle
            and ``init()`` may be called again.
        PathParseError
            *path* is not of the form ``TABLE/ID``.
        """
        gateway = self._require_gateway()
        if self._initialized:
            raise ReentrancyError("SyncSession.init() has already been called")
        if path is not None:
            self._config = self._config.with_path(path)
            gateway.rebind(self._config)
        self._check_target()
        self._initialized = True

        try:
            if self._config.read:
                self._state = SessionState.READING
                await self.read()

            if self._config.watch:
                self._state = SessionState.WATCHING
                await self.watch()

            if self._config.write:
                self._state = SessionState.SUBSCRIBING
                await self.subscribe()
        except BaseException:
            # A failed init may be retried.
            self._initialized = False
            self._state = SessionState.IDLE
            await self.watch(False)
            raise

        self._state = SessionState.READY
        if self._config.attach_handles:
            return ReactiveHandle(self._data, self)
        return self._data

    async def destroy(self) -> None:
        """Release the local watcher and the remote subscription.

        A write already in flight is neither awaited nor cancelled; call
        :meth:`flush` first for a clean shutdown.
        """
        await _invoke(self._config.on_destroy, self._data)
        self._state = SessionState.DESTROYED
        for task in list(self._remote_tasks):
            task.cancel()
        await asyncio.gather(self.watch(False), self.subscribe(False))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_query(self) -> RemoteQuery:
        """The query this session reads with."""
        return self._require_gateway().build_query()

    def to_plain(self) -> Any:
        """A transport-safe copy of the local tree."""
        return to_plain(self._data)

    async def read(self, *, force: bool = False) -> None:
        """Fetch remote state and apply it to the local tree.

        The first read fires ``on_init``, later reads fire ``on_read``. With
        ``force=True`` local keys missing remotely are kept (patch merge).
        """
        snapshot = await self._require_gateway().read_snapshot()
        self._adopt_row_id(snapshot.row_id)

        if not self.meta.has_read:
            self._debug("INIT VALUE %s", snapshot.value)
            await _invoke(self._config.on_init, snapshot.value)
        else:
            self._debug("READ VALUE %s", snapshot.value)
            await _invoke(self._config.on_read, snapshot.value)

        self.meta.has_read = True
        await self.set(
            snapshot.value,
            remove_keys=not force,
            timestamp=snapshot.timestamp,
            version=snapshot.version,
        )

    def _adopt_row_id(self, row_id: Any) -> None:
        if self._config.id is not None or self._config.is_array or row_id is None:
            return
        self._config = dataclasses.replace(self._config, id=str(row_id))
        self._require_gateway().rebind(self._config)

    async def refresh(self) -> None:
        """Alias of :meth:`read`."""
        await self.read()

    async def fetch(self) -> Any:
        """Return the current remote value without touching local state."""
        snapshot = await self._require_gateway().read_snapshot()
        return snapshot.value

    # ------------------------------------------------------------------
    # State replacement
    # ------------------------------------------------------------------

    async def set(
        self,
        snapshot: Any,
        *,
        mark_updating: bool = True,
        settle_delay: float | None = None,
        remove_keys: bool = True,
        timestamp: datetime | None = None,
        version: int | None = None,
    ) -> None:
        """Replace the local tree with *snapshot* without echoing it back.

        While ``mark_updating`` holds the write lock, mutations caused by the
        replacement never reach the local-write path. The lock is released
        one event loop iteration plus *settle_delay* seconds later
        (default ``config.settle_delay``).

        Raises
        ------
        ReentrancyError
            Another replacement still holds the write lock.
        """
        plain = to_plain(snapshot)
        delay = self._config.settle_delay if settle_delay is None else settle_delay
        if mark_updating:
            async with self._lock.hold(delay):
                self._replace(plain, remove_keys=remove_keys, timestamp=timestamp, version=version)
        else:
            self._replace(plain, remove_keys=remove_keys, timestamp=timestamp, version=version)

    def _replace(
        self,
        plain: Any,
        *,
        remove_keys: bool,
        timestamp: datetime | None,
        version: int | None,
    ) -> None:
        apply_snapshot(self._data, plain, remove_keys=remove_keys)
        if timestamp is not None:
            self.meta.timestamp = timestamp
        if version is not None:
            current = self.meta.version
            self.meta.version = version if current is None else max(current, version)

    # ------------------------------------------------------------------
    # Local changes
    # ------------------------------------------------------------------

    async def watch(self, enable: bool = True) -> None:
        """Start (or stop) pushing local changes to the remote."""
        if enable == self._detector.active:
            return
        if enable:
            self._debug("Subscribed to local changes")
            self.meta.watcher_handle = self._detector.start()
        else:
            self._debug("Unsubscribed from local changes")
            self._detector.stop()
            self.meta.watcher_handle = None

    async def _on_local_change(self) -> None:
        if self._lock.held or self._state is SessionState.DESTROYED:
            return

        payload = to_plain(self._data)
        payload_timestamp = datetime.now(UTC)
        self._debug("LOCAL CHANGE %s", payload)

        if self._config.is_array:
            raise UnsupportedOperationError("Local array syncing is not supported")

        await _invoke(self._config.on_change, payload)
        if not self._config.write:
            return

        # Stamp before the network call so the echo of this write is rejected.
        self.meta.timestamp = payload_timestamp
        version: int | None = None
        if self._config.versioned:
            version = (self.meta.version or 0) + 1
            self.meta.version = version

        gateway = self._require_gateway()
        self._pending_write = asyncio.ensure_future(
            gateway.upsert(payload, timestamp=payload_timestamp, version=version)
        )
        await asyncio.shield(self._pending_write)

    async def flush(self, delay: float | None = None) -> None:
        """Wait for the pending local write to settle, then *delay* seconds more.

        Does not trigger a write. A change still waiting out the throttle
        window has not been dispatched yet and is not awaited; sleep past
        ``throttle.wait`` before flushing (or disable throttling) to wait for it.
        Errors raised by the awaited write propagate to the caller.
        """
        # Let observer batches queued by synchronous mutations dispatch first.
        await asyncio.sleep(0)
        inflight = self._detector.inflight
        if inflight is not None:
            await asyncio.shield(inflight)
        pending = self._pending_write
        if pending is not None:
            await asyncio.shield(pending)
        wait = self._config.flush_delay if delay is None else delay
        if wait > 0:
            await asyncio.sleep(wait)

    # ------------------------------------------------------------------
    # Remote changes
    # ------------------------------------------------------------------

    async def subscribe(self, enable: bool = True) -> None:
        """Open (or release) the realtime subscription for this session."""
        if enable == (self._subscription is not None):
            return
        if enable:
            self._debug("Subscribed to remote changes")
            handle = await self._require_gateway().subscribe(self._on_remote_event)
            self._subscription = handle
            self.meta.subscription_handle = handle
        else:
            self._debug("Unsubscribed from remote changes")
            handle = self._subscription
            self._subscription = None
            self.meta.subscription_handle = None
            if handle is not None:
                await handle.unsubscribe()

    def _on_remote_event(self, event: RemoteChangeEvent) -> None:
        if self._state is SessionState.DESTROYED:
            return
        task = asyncio.get_running_loop().create_task(self._apply_remote(event))
        self._remote_tasks.add(task)
        task.add_done_callback(self._remote_task_done)

    def _remote_task_done(self, task: asyncio.Task[None]) -> None:
        self._remote_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.warning("Remote change could not be applied: %s", exc, exc_info=exc)

    async def _apply_remote(self, event: RemoteChangeEvent) -> None:
        config = self._config
        if event.type is not ChangeType.UPDATE:
            return

        record = event.record
        payload = record.get(config.data_column)
        if payload is None:
            self._debug("REMOTE CHANGE without payload ignored")
            return

        incoming_timestamp = parse_timestamp(record.get(config.timestamp_column))
        incoming_version = parse_version(record.get(config.version_column)) if config.version_column else None

        if not should_accept_remote(
            versioned=config.versioned,
            local_version=self.meta.version,
            incoming_version=incoming_version,
            local_timestamp=self.meta.timestamp,
            incoming_timestamp=incoming_timestamp,
        ):
            self._debug(
                "REMOTE CHANGE rejected (local=%s/%s incoming=%s/%s)",
                self.meta.version,
                self.meta.timestamp,
                incoming_version,
                incoming_timestamp,
            )
            return

        self._debug("REMOTE CHANGE accepted %s", payload)
        if config.is_array:
            value: Any = self._merge_row(record.get(config.id_column), payload)
        else:
            value = payload
        await self.set(value, remove_keys=True, timestamp=incoming_timestamp, version=incoming_version)
        if self._state is not SessionState.DESTROYED:
            await _invoke(config.on_read, payload)

    def _merge_row(self, row_id: Any, payload: dict[str, Any]) -> list[Any]:
        """Replace (or append) the changed row within an array session's rows."""
        row = {"id": row_id, **payload}
        rows = to_plain(self._data)
        for index, existing in enumerate(rows):
            if isinstance(existing, dict) and existing.get("id") == row_id:
                rows[index] = row
                break
        else:
            rows.append(row)
        return rows


async def reactive(
    store: RemoteStore | None,
    path: str | ReactiveConfig | None = None,
    config: ReactiveConfig | None = None,
    *,
    observable: Observable | None = None,
    **options: Any,
) -> ReactiveHandle | Any:
    """Create and initialize a :class:`SyncSession` in one call.

    *path* may be a ``TABLE/ID`` shorthand or a full :class:`ReactiveConfig`;
    keyword options override individual configuration fields.
    """
    if isinstance(path, ReactiveConfig):
        config, path = path, None
    session = SyncSession(store, config, observable=observable, **options)
    return await session.init(path)
