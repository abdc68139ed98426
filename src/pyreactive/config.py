"""Session and store configuration for pyreactive."""

from __future__ import annotations

import dataclasses
import os
import re
from collections.abc import Callable
from typing import Any

from pyreactive.exceptions import ConfigurationError, PathParseError

#: Shorthand path grammar, ``TABLE/ID`` with an optional leading slash.
PATH_PATTERN = re.compile(r"^/?(?P<table>[\w_-]+?)/(?P<id>.+)$")

Callback = Callable[[Any], Any]
"""Lifecycle hook, called with a data snapshot. May return an awaitable."""


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def split_path(path: str) -> tuple[str, str]:
    """Split a ``TABLE/ID`` shorthand path into ``(table, id)``.

    Raises
    ------
    PathParseError
        If *path* does not match :data:`PATH_PATTERN`.
    """
    match = PATH_PATTERN.match(path)
    if match is None:
        raise PathParseError(f'Unable to decode path "{path}"', path=path)
    return match.group("table"), match.group("id")


@dataclasses.dataclass(frozen=True)
class ThrottleConfig:
    """Debounce settings applied to bursts of local mutations.

    Times are in seconds. ``max_wait=None`` lets a continuous burst defer the
    write indefinitely.
    """

    wait: float = 0.2
    max_wait: float | None = 2.0
    leading: bool = False
    trailing: bool = True

    def __post_init__(self) -> None:
        if self.wait < 0:
            raise ConfigurationError("throttle.wait must be >= 0")
        if self.max_wait is not None and self.max_wait < self.wait:
            raise ConfigurationError("throttle.max_wait must be >= throttle.wait")


@dataclasses.dataclass(frozen=True)
class RowFilter:
    """Filter expression selecting the row(s) a session mirrors.

    Rendered as a PostgREST query parameter (``column=operator.value``) for
    reads and as the same raw expression for realtime subscriptions.
    """

    column: str
    operator: str
    value: str

    @classmethod
    def parse(cls, expression: str) -> RowFilter:
        """Parse ``"column=operator.value"`` (e.g. ``"owner=eq.42"``)."""
        column, sep, rest = expression.partition("=")
        operator, dot, value = rest.partition(".")
        if not sep or not dot or not column.strip() or not operator.strip():
            raise ConfigurationError(f'Invalid filter expression "{expression}"')
        return cls(column=column.strip(), operator=operator.strip(), value=value)

    def as_query_param(self) -> tuple[str, str]:
        return self.column, f"{self.operator}.{self.value}"

    def __str__(self) -> str:
        return f"{self.column}={self.operator}.{self.value}"


@dataclasses.dataclass(frozen=True)
class ReactiveConfig:
    """Per-session configuration.

    Parameters
    ----------
    table : str or None
        Remote table holding the mirrored record(s). May come from a path.
    id : str or None
        Row ID to mirror (single-record sessions). Also the key written by
        local upserts, so filtered sessions that write need it too.
    is_array : bool
        The local tree is a list of rows rather than a single mapping.
        Array sessions are read-only: local writes are not pushed back.
    read : bool
        Read the remote state during ``init()``.
    watch : bool
        Watch the local tree for changes during ``init()``.
    write : bool
        Push detected local changes to the remote and subscribe to remote
        changes during ``init()``.
    attach_handles : bool
        ``init()`` returns a ``ReactiveHandle(data, controls)`` pair rather
        than the bare tree.
    throttle : ThrottleConfig or None
        Debounce settings for local writes. ``None`` (or ``False``) writes
        once per observer batch.
    id_column, data_column, timestamp_column : str
        Table structure.
    version_column : str or None
        Integer column used for conflict resolution. When unset, conflicts
        are resolved by comparing timestamps.
    filter : RowFilter or None
        Row predicate used instead of ``id_column=eq.<id>`` for reads and
        subscriptions. Without ``is_array`` the first matching row is
        mirrored. A string is parsed with :meth:`RowFilter.parse`.
    schema : str
        Database schema for queries and realtime subscriptions.
    settle_delay : float
        Seconds the write lock stays held after a state replacement.
    flush_delay : float
        Seconds ``flush()`` waits after the pending write settles.
    on_init, on_read, on_change, on_destroy : callable or None
        Lifecycle hooks, sync or async.
    debug : bool, callable or None
        ``None`` logs through the module logger, ``False`` silences session
        debug output, a callable receives each formatted message.
    path_parser : callable
        Parser used for shorthand paths, returning ``(table, id)``.
    """

    table: str | None = None
    id: str | None = None
    is_array: bool = False

    read: bool = True
    watch: bool = True
    write: bool = True
    attach_handles: bool = True
    throttle: ThrottleConfig | None = dataclasses.field(default_factory=ThrottleConfig)

    id_column: str = "id"
    filter: RowFilter | None = None
    data_column: str = "data"
    timestamp_column: str = "edited_at"
    version_column: str | None = None
    schema: str = "public"

    settle_delay: float = 1.0
    flush_delay: float = 0.1

    on_init: Callback | None = None
    on_read: Callback | None = None
    on_change: Callback | None = None
    on_destroy: Callback | None = None

    debug: bool | Callable[[str], None] | None = None
    path_parser: Callable[[str], tuple[str, str]] = split_path

    def __post_init__(self) -> None:
        if self.throttle is False:
            object.__setattr__(self, "throttle", None)
        elif isinstance(self.throttle, dict):
            object.__setattr__(self, "throttle", ThrottleConfig(**self.throttle))
        if isinstance(self.filter, str):
            object.__setattr__(self, "filter", RowFilter.parse(self.filter))
        if self.settle_delay < 0 or self.flush_delay < 0:
            raise ConfigurationError("settle_delay and flush_delay must be >= 0")

    @classmethod
    def from_path(cls, path: str, **overrides: Any) -> ReactiveConfig:
        """Create configuration from a ``TABLE/ID`` path plus keyword options."""
        return cls(**overrides).with_path(path)

    def with_path(self, path: str) -> ReactiveConfig:
        """Return a copy with ``table``/``id`` decoded from *path*."""
        table, row_id = self.path_parser(path)
        return dataclasses.replace(self, table=table, id=row_id)

    @property
    def versioned(self) -> bool:
        return self.version_column is not None

    @property
    def columns(self) -> tuple[str, ...]:
        columns = [self.id_column, self.timestamp_column, self.data_column]
        if self.version_column:
            columns.append(self.version_column)
        return tuple(columns)


@dataclasses.dataclass(frozen=True)
class StoreConfig:
    """Connection settings for :class:`pyreactive.client.SupabaseStore`.

    Parameters
    ----------
    url : str
        Project URL, e.g. ``https://xyzcompany.supabase.co``.
    key : str
        Project API key (``anon`` or ``service_role``).
    access_token : str or None
        User JWT sent as the bearer token. Defaults to *key*.
    schema : str
        Default schema for REST calls.
    realtime_enabled : bool
        Open the realtime websocket for subscriptions.
    realtime_heartbeat : float
        Seconds between Phoenix heartbeats.
    realtime_join_timeout : float
        Seconds to wait for a channel join reply.
    timeout : float
        Total timeout for each REST request, in seconds.
    """

    url: str
    key: str
    access_token: str | None = None
    schema: str = "public"
    realtime_enabled: bool = True
    realtime_heartbeat: float = 25.0
    realtime_join_timeout: float = 10.0
    timeout: float = 30.0

    def __post_init__(self) -> None:
        if not self.url.strip():
            raise ConfigurationError("StoreConfig.url must be non-empty")
        if not self.key.strip():
            raise ConfigurationError("StoreConfig.key must be non-empty")
        object.__setattr__(self, "url", self.url.strip().rstrip("/"))

    @property
    def bearer_token(self) -> str:
        return self.access_token or self.key

    @property
    def rest_url(self) -> str:
        return f"{self.url}/rest/v1"

    @property
    def realtime_url(self) -> str:
        if self.url.startswith("https://"):
            base = "wss://" + self.url[len("https://") :]
        elif self.url.startswith("http://"):
            base = "ws://" + self.url[len("http://") :]
        else:
            base = self.url
        return f"{base}/realtime/v1/websocket"

    @classmethod
    def from_env(cls, **overrides: Any) -> StoreConfig:
        """Create configuration from environment variables.

        Reads ``SUPABASE_URL``, ``SUPABASE_KEY`` and the optional
        ``SUPABASE_*`` variables below. Explicit keyword arguments override
        environment values.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "SUPABASE_URL": "url",
            "SUPABASE_KEY": "key",
            "SUPABASE_ACCESS_TOKEN": "access_token",
            "SUPABASE_SCHEMA": "schema",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        if "realtime_enabled" not in overrides:
            config_kwargs["realtime_enabled"] = _env_bool(env.get("SUPABASE_REALTIME_ENABLED"), True)

        heartbeat_env = env.get("SUPABASE_REALTIME_HEARTBEAT")
        if heartbeat_env is not None and "realtime_heartbeat" not in overrides:
            config_kwargs["realtime_heartbeat"] = float(heartbeat_env)

        timeout_env = env.get("SUPABASE_TIMEOUT")
        if timeout_env is not None and "timeout" not in overrides:
            config_kwargs["timeout"] = float(timeout_env)

        config_kwargs.update(overrides)
        missing = [name for name in ("url", "key") if not config_kwargs.get(name)]
        if missing:
            raise ConfigurationError(f"Missing store settings: {', '.join(missing)}")

        return cls(**config_kwargs)
