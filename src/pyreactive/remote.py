"""Remote store contract.

A session only needs four primitives from its backend: column-projected
point queries, filtered multi-row queries (both expressed as a
:class:`RemoteQuery`), upsert-by-key writes and a change subscription keyed by
a server-side filter expression. :class:`pyreactive.client.SupabaseStore` is
the bundled implementation; tests pass in-memory doubles.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from pyreactive.config import RowFilter
from pyreactive.state.events import ChangeType, RemoteChangeEvent


@dataclass(frozen=True)
class RemoteQuery:
    """A read against one table.

    ``eq`` selects a row by equality, ``filter`` by an arbitrary predicate.
    ``limit=1`` bounds single-record reads.
    """

    table: str
    columns: tuple[str, ...]
    schema: str = "public"
    eq: tuple[str, Any] | None = None
    filter: RowFilter | None = None
    limit: int | None = None


@dataclass(frozen=True)
class ChangeSubscription:
    """Server-side filter for a realtime change feed."""

    table: str
    filter: str
    schema: str = "public"
    event: ChangeType = ChangeType.UPDATE


class SubscriptionHandle(Protocol):
    async def unsubscribe(self) -> None:
        ...


class RemoteStore(Protocol):
    """Structural interface used by :class:`pyreactive._gateway.RemoteGateway`."""

    async def select(self, query: RemoteQuery) -> list[dict[str, Any]]:
        ...

    async def upsert(
        self,
        table: str,
        record: Mapping[str, Any],
        *,
        on_conflict: str,
        returning: Sequence[str],
        schema: str = "public",
    ) -> list[dict[str, Any]]:
        ...

    async def subscribe(
        self,
        subscription: ChangeSubscription,
        on_event: Callable[[RemoteChangeEvent], None],
    ) -> SubscriptionHandle:
        ...
