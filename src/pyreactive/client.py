"""Supabase-backed remote store."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import aiohttp

from pyreactive._realtime import RealtimeRuntime
from pyreactive._transport import RestTransport
from pyreactive.config import StoreConfig
from pyreactive.exceptions import ReactiveError
from pyreactive.remote import ChangeSubscription, RemoteQuery, SubscriptionHandle
from pyreactive.state.events import RemoteChangeEvent

_logger = logging.getLogger(__name__)


class _InertSubscription:
    """Returned when realtime is disabled; nothing to release."""

    async def unsubscribe(self) -> None:
        return None


class SupabaseStore:
    """Async :class:`pyreactive.remote.RemoteStore` for Supabase / PostgREST.

    Usage::

        async with SupabaseStore(StoreConfig.from_env()) as store:
            handle = await reactive(store, "documents/42")
            handle.data["title"] = "Hello"
            await handle.controls.flush()
    """

    def __init__(
        self,
        config: StoreConfig,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport: RestTransport | None = None
        self._realtime: RealtimeRuntime | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SupabaseStore:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        self._transport = RestTransport(self._config, self._http_session)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the realtime socket and (if owned) the HTTP session."""
        realtime = self._realtime
        self._realtime = None
        if realtime is not None:
            await realtime.stop()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._transport = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_transport(self) -> RestTransport:
        if self._transport is None:
            raise ReactiveError("Store not initialized. Use 'async with SupabaseStore(...) as store:'")
        return self._transport

    def _require_realtime(self) -> RealtimeRuntime:
        if self._realtime is None:
            if self._http_session is None:
                raise ReactiveError("Store not initialized. Use 'async with SupabaseStore(...) as store:'")
            self._realtime = RealtimeRuntime(config=self._config, http_session=self._http_session, logger=_logger)
        return self._realtime

    # ------------------------------------------------------------------
    # RemoteStore
    # ------------------------------------------------------------------

    async def select(self, query: RemoteQuery) -> list[dict[str, Any]]:
        return await self._require_transport().select(query)

    async def upsert(
        self,
        table: str,
        record: Mapping[str, Any],
        *,
        on_conflict: str,
        returning: Sequence[str],
        schema: str = "public",
    ) -> list[dict[str, Any]]:
        return await self._require_transport().upsert(
            table,
            record,
            on_conflict=on_conflict,
            returning=returning,
            schema=schema,
        )

    async def subscribe(
        self,
        subscription: ChangeSubscription,
        on_event: Callable[[RemoteChangeEvent], None],
    ) -> SubscriptionHandle:
        if not self._config.realtime_enabled:
            _logger.debug("Realtime disabled; subscription to %s ignored", subscription.table)
            return _InertSubscription()
        return await self._require_realtime().join(subscription, on_event)
