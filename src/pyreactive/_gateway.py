"""Query building, snapshot derivation, upserts and subscriptions for a session."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pyreactive._redact import redact_for_log
from pyreactive.config import ReactiveConfig
from pyreactive.exceptions import ConfigurationError, RemoteStoreError
from pyreactive.remote import ChangeSubscription, RemoteQuery, RemoteStore, SubscriptionHandle
from pyreactive.state.events import ChangeType, RemoteChangeEvent, RemoteSnapshot, parse_timestamp, parse_version

_logger = logging.getLogger(__name__)


def _latest(values: list[Any]) -> Any:
    present = [value for value in values if value is not None]
    return max(present) if present else None


def derive_snapshot(rows: list[dict[str, Any]], config: ReactiveConfig) -> RemoteSnapshot:
    """Turn raw rows into a snapshot value plus conflict markers.

    Single-record sessions read the columns of the first row directly; a
    missing row or empty data column yields ``{}``. Array sessions map
    every row to ``{"id": ..., **data}`` and keep the newest timestamp and the
    highest version across rows.
    """
    version_column = config.version_column

    if config.is_array:
        value = [{"id": row.get(config.id_column), **(row.get(config.data_column) or {})} for row in rows]
        timestamp = _latest([parse_timestamp(row.get(config.timestamp_column)) for row in rows])
        version = _latest([parse_version(row.get(version_column)) for row in rows]) if version_column else None
        if version_column and version is None:
            version = 0
        return RemoteSnapshot(value=value, timestamp=timestamp, version=version)

    row = rows[0] if rows else {}
    data = row.get(config.data_column) or {}
    timestamp = parse_timestamp(row.get(config.timestamp_column))
    version = None
    if version_column:
        version = parse_version(row.get(version_column)) or 0
    return RemoteSnapshot(value=data, timestamp=timestamp, version=version, row_id=row.get(config.id_column))


class RemoteGateway:
    """Binds one session's configuration to a :class:`RemoteStore`."""

    def __init__(self, store: RemoteStore, config: ReactiveConfig) -> None:
        self._store = store
        self._config = config

    @property
    def config(self) -> ReactiveConfig:
        return self._config

    def rebind(self, config: ReactiveConfig) -> None:
        self._config = config

    def build_query(self) -> RemoteQuery:
        config = self._config
        if config.table is None:
            raise RemoteStoreError("No table configured for this session")
        # The filter replaces the id predicate; only array sessions read past one row.
        eq = (config.id_column, config.id) if config.filter is None and not config.is_array else None
        return RemoteQuery(
            table=config.table,
            columns=config.columns,
            schema=config.schema,
            eq=eq,
            filter=config.filter,
            limit=None if config.is_array else 1,
        )

    async def read_snapshot(self) -> RemoteSnapshot:
        rows = await self._store.select(self.build_query())
        return derive_snapshot(rows, self._config)

    async def upsert(
        self,
        data: Any,
        *,
        timestamp: datetime,
        version: int | None = None,
    ) -> list[dict[str, Any]]:
        """Insert-or-update the session row and confirm it landed."""
        config = self._config
        if config.table is None:
            raise RemoteStoreError("No table configured for this session")
        if config.id is None:
            raise ConfigurationError("No row id known for this session; nothing to upsert")
        record: dict[str, Any] = {
            config.id_column: config.id,
            config.data_column: data,
            config.timestamp_column: timestamp.isoformat(),
        }
        if config.version_column and version is not None:
            record[config.version_column] = version

        _logger.debug("Upsert %s/%s %s", config.table, config.id, redact_for_log(record))
        rows = await self._store.upsert(
            config.table,
            record,
            on_conflict=config.id_column,
            returning=(config.id_column,),
            schema=config.schema,
        )
        if not rows:
            raise RemoteStoreError(
                f"Upsert of {config.table}/{config.id} was not confirmed",
                endpoint=config.table,
            )
        return rows

    def subscription(self) -> ChangeSubscription:
        config = self._config
        if config.table is None:
            raise RemoteStoreError("No table configured for this session")
        if config.filter is not None:
            expression = str(config.filter)
        elif config.is_array:
            raise RemoteStoreError("Array sessions need a filter to subscribe")
        else:
            expression = f"{config.id_column}=eq.{config.id}"
        return ChangeSubscription(
            table=config.table,
            filter=expression,
            schema=config.schema,
            event=ChangeType.UPDATE,
        )

    async def subscribe(self, on_event: Callable[[RemoteChangeEvent], None]) -> SubscriptionHandle:
        return await self._store.subscribe(self.subscription(), on_event)
