from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pytest
from conftest import FakeRemoteStore, make_config

from pyreactive.config import ThrottleConfig
from pyreactive.exceptions import (
    ConfigurationError,
    PathParseError,
    ReentrancyError,
    RemoteStoreError,
    UnsupportedOperationError,
)
from pyreactive.observable import ObservableRuntime, Unsubscribe
from pyreactive.remote import ChangeSubscription, RemoteQuery
from pyreactive.session import ReactiveHandle, SessionState, SyncSession, reactive
from pyreactive.state.events import RemoteChangeEvent

pytestmark = pytest.mark.e2e

ROW_A = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
ROW_B = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
ROW_D = "dddddddd-dddd-dddd-dddd-dddddddddddd"


class CountingRuntime(ObservableRuntime):
    def __init__(self) -> None:
        self.observers = 0

    def observe(self, tree: Any, callback: Callable[[], None]) -> Unsubscribe:
        unsubscribe = super().observe(tree, callback)
        self.observers += 1

        def release() -> None:
            self.observers -= 1
            unsubscribe()

        return release


@dataclass
class FlakyStore(FakeRemoteStore):
    """Fails the first reads and subscriptions, then behaves normally."""

    select_failures: int = 0
    subscribe_failures: int = 0

    async def select(self, query: RemoteQuery) -> list[dict[str, Any]]:
        if self.select_failures:
            self.select_failures -= 1
            raise RemoteStoreError("HTTP 503 from test: unavailable", status_code=503, endpoint=query.table)
        return await super().select(query)

    async def subscribe(
        self,
        subscription: ChangeSubscription,
        on_event: Callable[[RemoteChangeEvent], None],
    ) -> Any:
        if self.subscribe_failures:
            self.subscribe_failures -= 1
            raise RemoteStoreError("Realtime join rejected", endpoint=subscription.table)
        return await super().subscribe(subscription, on_event)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_offline_session_behaves_like_plain_mapping(store: FakeRemoteStore) -> None:
    handle = await reactive(store, make_config(read=False, watch=False, write=False))

    assert isinstance(handle, ReactiveHandle)
    handle.data["foo"] = "Foo!"
    handle.data.update({"bar": "Bar!"})

    assert handle.data == {"foo": "Foo!", "bar": "Bar!"}
    assert store.calls == {}


@pytest.mark.asyncio
async def test_fresh_row_reads_as_empty_with_version_zero(store: FakeRemoteStore) -> None:
    store.seed(ROW_A, version=0)

    handle = await reactive(store, make_config(id=ROW_A, watch=False, write=False))

    assert handle.data == {}
    assert handle.controls.meta.version == 0
    assert handle.controls.id == ROW_A


@pytest.mark.asyncio
async def test_seeded_row_is_loaded_via_path(store: FakeRemoteStore) -> None:
    store.seed(ROW_B, version=0, data={"existingKey": "bbb"})

    data = await reactive(store, f"test/{ROW_B}", make_config(watch=False, write=False, attach_handles=False))

    assert data == {"existingKey": "bbb"}


@pytest.mark.asyncio
async def test_local_write_round_trips_to_remote(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0)
    session = SyncSession(store, make_config())
    handle = await session.init(f"test/{ROW_D}")

    handle.data["foo"] = "Foo!"
    await session.flush()

    assert await session.fetch() == {"foo": "Foo!"}
    assert session.meta.version == 1
    assert store.upserts[-1]["version"] == 1
    assert session.pending_write is not None and session.pending_write.done()


@pytest.mark.asyncio
async def test_own_echo_is_not_written_back(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0)
    reads: list[Any] = []
    session = SyncSession(store, make_config(on_read=reads.append))
    handle = await session.init(f"test/{ROW_D}")

    handle.data["foo"] = "Foo!"
    await session.flush()
    await _settle()
    await session.flush()

    assert store.calls["upsert"] == 1
    assert reads == []
    assert handle.data == {"foo": "Foo!"}


@pytest.mark.asyncio
async def test_timestamp_mode_echo_is_rejected(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, edited_at="2026-01-01T00:00:00+00:00")
    session = SyncSession(store, make_config(version_column=None))
    handle = await session.init(f"test/{ROW_D}")

    handle.data["foo"] = 1
    await session.flush()
    await _settle()

    assert store.calls["upsert"] == 1
    assert session.meta.version is None
    assert handle.data == {"foo": 1}


@pytest.mark.asyncio
async def test_two_sessions_converge(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0)
    b_reads: list[Any] = []
    session_a = SyncSession(store, make_config())
    session_b = SyncSession(store, make_config(on_read=b_reads.append))
    a = await session_a.init(f"test/{ROW_D}")
    b = await session_b.init(f"test/{ROW_D}")

    a.data["foo"] = "from A"
    await session_a.flush()
    await _settle()

    assert b.data == {"foo": "from A"}
    assert b_reads == [{"foo": "from A"}]
    assert session_b.meta.version == 1
    assert await session_a.fetch() == await session_b.fetch() == {"foo": "from A"}
    # B applied the change under the write lock, so it never wrote it back.
    assert store.calls["upsert"] == 1


@pytest.mark.asyncio
async def test_init_twice_raises_reentrancy(store: FakeRemoteStore) -> None:
    store.seed(ROW_A, version=0)
    session = SyncSession(store, make_config(watch=False, write=False))
    await session.init(f"test/{ROW_A}")

    with pytest.raises(ReentrancyError):
        await session.init()


@pytest.mark.asyncio
async def test_init_twice_raises_reentrancy_without_read(store: FakeRemoteStore) -> None:
    session = SyncSession(store, make_config(read=False, watch=False, write=False))
    await session.init()

    with pytest.raises(ReentrancyError):
        await session.init()


@pytest.mark.asyncio
async def test_init_without_store_raises_configuration_error() -> None:
    session = SyncSession(None, make_config())

    with pytest.raises(ConfigurationError):
        await session.init(f"test/{ROW_A}")


@pytest.mark.asyncio
async def test_init_with_bad_path_raises_path_parse_error(store: FakeRemoteStore) -> None:
    session = SyncSession(store, make_config())

    with pytest.raises(PathParseError):
        await session.init("no-separator")


@pytest.mark.asyncio
async def test_init_without_row_id_raises_configuration_error(store: FakeRemoteStore) -> None:
    session = SyncSession(store, make_config())

    with pytest.raises(ConfigurationError):
        await session.init()


@pytest.mark.asyncio
async def test_stale_versions_are_rejected(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=3, data={"value": "local"})
    session = SyncSession(store, make_config())
    handle = await session.init(f"test/{ROW_D}")

    store.emit_update(ROW_D, version=3, data={"value": "same version"})
    store.emit_update(ROW_D, version=2, data={"value": "older"})
    await _settle()
    assert handle.data == {"value": "local"}
    assert session.meta.version == 3

    store.emit_update(ROW_D, version=4, data={"value": "newer"})
    await _settle()
    assert handle.data == {"value": "newer"}
    assert session.meta.version == 4


@pytest.mark.asyncio
async def test_stale_timestamps_are_rejected(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, edited_at="2026-01-01T12:00:00+00:00", data={"value": "local"})
    session = SyncSession(store, make_config(version_column=None))
    handle = await session.init(f"test/{ROW_D}")

    store.emit_update(ROW_D, edited_at="2026-01-01T12:00:00+00:00", data={"value": "same"})
    store.emit_update(ROW_D, edited_at="2025-12-31T12:00:00+00:00", data={"value": "older"})
    await _settle()
    assert handle.data == {"value": "local"}

    store.emit_update(ROW_D, edited_at="2026-01-02T00:00:00+00:00", data={"value": "newer", "extra": 1})
    await _settle()
    assert handle.data == {"value": "newer", "extra": 1}


@pytest.mark.asyncio
async def test_remote_change_without_payload_is_ignored(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0, data={"keep": True})
    session = SyncSession(store, make_config())
    handle = await session.init(f"test/{ROW_D}")

    store.emit_update(ROW_D, version=9, data=None)
    await _settle()

    assert handle.data == {"keep": True}
    assert session.meta.version == 0


@pytest.mark.asyncio
async def test_set_full_replace_and_patch_merge(store: FakeRemoteStore) -> None:
    session = SyncSession(store, make_config(read=False, watch=False, write=False))
    await session.init()

    await session.set({"a": 1, "b": 2})
    await session.set({"a": 3}, remove_keys=True)
    assert session.data == {"a": 3}

    await session.set({"c": 4}, remove_keys=False)
    assert session.data == {"a": 3, "c": 4}


@pytest.mark.asyncio
async def test_set_strips_reserved_keys(store: FakeRemoteStore) -> None:
    session = SyncSession(store, make_config(read=False, watch=False, write=False))
    await session.init()

    await session.set({"$meta": 1, "_private": 2, "visible": 3})

    assert session.data == {"visible": 3}


@pytest.mark.asyncio
async def test_set_while_updating_raises_reentrancy(store: FakeRemoteStore) -> None:
    session = SyncSession(store, make_config(read=False, watch=False, write=False))
    await session.init()
    session.meta.is_updating = True

    with pytest.raises(ReentrancyError):
        await session.set({"a": 1})

    # Unmarked replacements bypass the lock entirely.
    await session.set({"a": 1}, mark_updating=False)
    assert session.data == {"a": 1}


@pytest.mark.asyncio
async def test_forced_read_preserves_local_keys(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0, data={"remote": 1})
    session = SyncSession(store, make_config(watch=False, write=False))
    handle = await session.init(f"test/{ROW_D}")

    await session.set({"remote": 1, "local": 2}, mark_updating=False)
    await session.read(force=True)
    assert handle.data == {"remote": 1, "local": 2}

    await session.read()
    assert handle.data == {"remote": 1}


@pytest.mark.asyncio
async def test_lifecycle_callbacks_fire_in_order(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0)
    tripped = {"init": 0, "read": 0, "change": 0, "destroy": 0}

    async def on_change(_payload: Any) -> None:
        tripped["change"] += 1

    session = SyncSession(
        store,
        make_config(
            on_init=lambda _data: tripped.__setitem__("init", tripped["init"] + 1),
            on_read=lambda _data: tripped.__setitem__("read", tripped["read"] + 1),
            on_change=on_change,
            on_destroy=lambda _data: tripped.__setitem__("destroy", tripped["destroy"] + 1),
        ),
    )
    handle = await session.init(f"test/{ROW_D}")
    assert session.state is SessionState.READY
    assert session.meta.version == 0
    assert tripped == {"init": 1, "read": 0, "change": 0, "destroy": 0}

    handle.data["foo"] = "Foo!"
    await session.flush()
    assert tripped == {"init": 1, "read": 0, "change": 1, "destroy": 0}

    await session.refresh()
    await _settle()
    assert tripped == {"init": 1, "read": 1, "change": 1, "destroy": 0}

    await session.destroy()
    assert tripped == {"init": 1, "read": 1, "change": 1, "destroy": 1}
    assert session.state is SessionState.DESTROYED


@pytest.mark.asyncio
async def test_watch_is_idempotent(store: FakeRemoteStore) -> None:
    runtime = CountingRuntime()
    session = SyncSession(store, make_config(read=False, watch=False, write=False), observable=runtime)
    await session.init()

    await session.watch(True)
    await session.watch(True)
    assert runtime.observers == 1
    assert session.meta.watcher_handle is not None

    await session.watch(False)
    await session.watch(False)
    assert runtime.observers == 0
    assert session.meta.watcher_handle is None


@pytest.mark.asyncio
async def test_destroy_stops_all_callbacks(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0)
    reads: list[Any] = []
    changes: list[Any] = []
    session = SyncSession(store, make_config(on_read=reads.append, on_change=changes.append))
    handle = await session.init(f"test/{ROW_D}")
    assert len(store.subscriptions) == 1

    await session.destroy()
    assert store.subscriptions == []
    assert session.meta.subscription_handle is None

    handle.data["late"] = True
    store.emit_update(ROW_D, version=5, data={"remote": True})
    await _settle()

    assert changes == []
    assert reads == []
    assert store.calls.get("upsert", 0) == 0
    assert handle.data == {"late": True}


@pytest.mark.asyncio
async def test_throttled_burst_writes_once(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0)
    session = SyncSession(store, make_config(throttle=ThrottleConfig(wait=0.05, max_wait=None)))
    handle = await session.init(f"test/{ROW_D}")

    for i in range(3):
        handle.data["counter"] = i
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.15)
    await session.flush()

    assert store.calls["upsert"] == 1
    assert await session.fetch() == {"counter": 2}


@pytest.mark.asyncio
async def test_unwritable_session_reports_change_without_upsert(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0)
    changes: list[Any] = []
    session = SyncSession(store, make_config(write=False, on_change=changes.append))
    handle = await session.init(f"test/{ROW_D}")

    handle.data["foo"] = "bar"
    await session.flush()

    assert changes == [{"foo": "bar"}]
    assert store.calls.get("upsert", 0) == 0
    assert store.calls.get("subscribe", 0) == 0


@pytest.mark.asyncio
async def test_failed_upsert_propagates_through_flush(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0)
    store.fail_upserts = True
    session = SyncSession(store, make_config())
    handle = await session.init(f"test/{ROW_D}")

    handle.data["foo"] = "bar"
    with pytest.raises(RemoteStoreError):
        await session.flush()

    # Optimistic advance is not rolled back.
    assert session.meta.version == 1


@pytest.mark.asyncio
async def test_array_session_reads_rows_and_rejects_local_writes(store: FakeRemoteStore) -> None:
    store.seed("r1", owner="7", version=2, data={"n": 1}, edited_at="2026-01-01T00:00:00+00:00")
    store.seed("r2", owner="7", version=5, data={"n": 2}, edited_at="2026-01-02T00:00:00+00:00")
    store.seed("r3", owner="8", version=9, data={"n": 3})
    session = SyncSession(store, make_config(is_array=True, filter="owner=eq.7"))
    handle = await session.init()

    assert handle.data == [{"id": "r1", "n": 1}, {"id": "r2", "n": 2}]
    assert session.meta.version == 5
    assert session.meta.timestamp is not None and session.meta.timestamp.day == 2
    assert store.subscriptions[0].subscription.filter == "owner=eq.7"

    handle.data.append({"id": "r4"})
    with pytest.raises(UnsupportedOperationError):
        await session.flush()
    assert store.calls.get("upsert", 0) == 0


@pytest.mark.asyncio
async def test_array_session_merges_remote_row(store: FakeRemoteStore) -> None:
    store.seed("r1", owner="7", version=1, data={"n": 1})
    store.seed("r2", owner="7", version=2, data={"n": 2})
    session = SyncSession(store, make_config(is_array=True, filter="owner=eq.7"))
    handle = await session.init()

    store.emit_update("r1", version=3, data={"n": 10})
    await _settle()

    assert handle.data == [{"id": "r1", "n": 10}, {"id": "r2", "n": 2}]


@pytest.mark.asyncio
async def test_subscribe_is_idempotent(store: FakeRemoteStore) -> None:
    store.seed(ROW_D, version=0)
    session = SyncSession(store, make_config(watch=False, write=False))
    await session.init(f"test/{ROW_D}")

    await session.subscribe(True)
    await session.subscribe(True)
    assert store.calls["subscribe"] == 1
    assert len(store.subscriptions) == 1

    await session.subscribe(False)
    await session.subscribe(False)
    assert store.calls["unsubscribe"] == 1
    assert store.subscriptions == []


@pytest.mark.asyncio
async def test_filtered_session_mirrors_first_matching_row(store: FakeRemoteStore) -> None:
    store.seed("r1", owner="7", version=2, data={"n": 1})
    store.seed("r2", owner="8", version=5, data={"n": 2})
    session = SyncSession(store, make_config(filter="owner=eq.7"))
    handle = await session.init()

    assert handle.data == {"n": 1}
    assert session.id == "r1"
    assert session.meta.version == 2
    assert store.subscriptions[0].subscription.filter == "owner=eq.7"

    handle.data["n"] = 5
    await session.flush()
    await _settle()
    assert store.rows["r1"]["data"] == {"n": 5}
    assert store.calls["upsert"] == 1
    assert session.meta.version == 3

    store.emit_update("r1", version=9, data={"n": 9})
    await _settle()
    assert handle.data == {"n": 9}
    assert session.meta.version == 9


@pytest.mark.asyncio
async def test_failed_initial_read_can_be_retried() -> None:
    store = FlakyStore(select_failures=1)
    store.seed("abc", version=0, data={"k": 1})
    session = SyncSession(store, make_config())

    with pytest.raises(RemoteStoreError):
        await session.init("test/abc")
    assert session.state is SessionState.IDLE

    handle = await session.init("test/abc")

    assert handle.data == {"k": 1}
    assert session.state is SessionState.READY
    assert store.calls["subscribe"] == 1

    with pytest.raises(ReentrancyError):
        await session.init()


@pytest.mark.asyncio
async def test_failed_subscription_releases_watcher() -> None:
    store = FlakyStore(subscribe_failures=1)
    store.seed("abc", version=0)
    runtime = CountingRuntime()
    session = SyncSession(store, make_config(), observable=runtime)

    with pytest.raises(RemoteStoreError):
        await session.init("test/abc")

    assert runtime.observers == 0
    assert session.meta.watcher_handle is None

    await session.init()
    assert runtime.observers == 1
    assert session.state is SessionState.READY
