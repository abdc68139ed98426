from __future__ import annotations

import asyncio
import copy
import dataclasses
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import pytest

from pyreactive.config import ReactiveConfig, RowFilter
from pyreactive.exceptions import RemoteStoreError
from pyreactive.remote import ChangeSubscription, RemoteQuery
from pyreactive.state.events import ChangeType, RemoteChangeEvent


def _matches(row: dict[str, Any], row_filter: RowFilter) -> bool:
    if row_filter.operator != "eq":
        raise AssertionError(f"Unsupported operator in fake store: {row_filter.operator}")
    return str(row.get(row_filter.column)) == row_filter.value


@dataclass
class FakeSubscription:
    store: FakeRemoteStore
    subscription: ChangeSubscription
    on_event: Callable[[RemoteChangeEvent], None]

    async def unsubscribe(self) -> None:
        self.store._record_call("unsubscribe")
        if self in self.store.subscriptions:
            self.store.subscriptions.remove(self)


@dataclass
class FakeRemoteStore:
    """In-memory single-table store echoing UPDATE events like a realtime feed."""

    table: str = "test"
    id_column: str = "id"
    rows: dict[str, dict[str, Any]] = field(default_factory=dict)
    calls: dict[str, int] = field(default_factory=dict)
    subscriptions: list[FakeSubscription] = field(default_factory=list)
    upserts: list[dict[str, Any]] = field(default_factory=list)
    fail_upserts: bool = False

    def _record_call(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    def seed(self, row_id: str, **columns: Any) -> None:
        self.rows[row_id] = {self.id_column: row_id, **copy.deepcopy(columns)}

    def _notify(self, row: dict[str, Any]) -> None:
        event = RemoteChangeEvent(
            type=ChangeType.UPDATE,
            table=self.table,
            record=copy.deepcopy(row),
        )
        loop = asyncio.get_running_loop()
        for sub in list(self.subscriptions):
            if _matches(row, RowFilter.parse(sub.subscription.filter)):
                loop.call_soon(sub.on_event, event)

    def emit_update(self, row_id: str, **columns: Any) -> None:
        """Simulate another client updating a row."""
        row = self.rows.setdefault(row_id, {self.id_column: row_id})
        row.update(copy.deepcopy(columns))
        self._notify(row)

    async def select(self, query: RemoteQuery) -> list[dict[str, Any]]:
        self._record_call("select")
        assert query.table == self.table
        rows = list(self.rows.values())
        if query.eq is not None:
            column, value = query.eq
            rows = [row for row in rows if row.get(column) == value]
        if query.filter is not None:
            rows = [row for row in rows if _matches(row, query.filter)]
        if query.limit is not None:
            rows = rows[: query.limit]
        await asyncio.sleep(0)
        return [{column: copy.deepcopy(row.get(column)) for column in query.columns} for row in rows]

    async def upsert(
        self,
        table: str,
        record: Mapping[str, Any],
        *,
        on_conflict: str,
        returning: Sequence[str],
        schema: str = "public",
    ) -> list[dict[str, Any]]:
        self._record_call("upsert")
        assert table == self.table
        await asyncio.sleep(0)
        if self.fail_upserts:
            raise RemoteStoreError("HTTP 503 from test: unavailable", status_code=503, endpoint=table)
        self.upserts.append(copy.deepcopy(dict(record)))
        key = record[on_conflict]
        row = self.rows.setdefault(key, {on_conflict: key})
        row.update(copy.deepcopy(dict(record)))
        self._notify(row)
        return [{column: row.get(column) for column in returning}]

    async def subscribe(
        self,
        subscription: ChangeSubscription,
        on_event: Callable[[RemoteChangeEvent], None],
    ) -> FakeSubscription:
        self._record_call("subscribe")
        handle = FakeSubscription(store=self, subscription=subscription, on_event=on_event)
        self.subscriptions.append(handle)
        return handle


def make_config(**overrides: Any) -> ReactiveConfig:
    base = ReactiveConfig(
        table="test",
        version_column="version",
        throttle=None,
        settle_delay=0.0,
        flush_delay=0.0,
        debug=False,
    )
    return dataclasses.replace(base, **overrides)


@pytest.fixture
def store() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def config() -> ReactiveConfig:
    return make_config()
