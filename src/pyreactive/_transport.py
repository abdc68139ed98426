"""PostgREST transport over aiohttp."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import aiohttp

from pyreactive._redact import redact_for_log
from pyreactive.config import StoreConfig
from pyreactive.exceptions import RemoteStoreError
from pyreactive.remote import RemoteQuery

_logger = logging.getLogger(__name__)

USER_AGENT = "pyreactive"


def build_select_params(query: RemoteQuery) -> list[tuple[str, str]]:
    """Render a :class:`RemoteQuery` as PostgREST query parameters."""
    params: list[tuple[str, str]] = [("select", ",".join(query.columns))]
    if query.eq is not None:
        column, value = query.eq
        params.append((column, f"eq.{value}"))
    if query.filter is not None:
        params.append(query.filter.as_query_param())
    if query.limit is not None:
        params.append(("limit", str(query.limit)))
    return params


def build_upsert_params(on_conflict: str, returning: Sequence[str]) -> list[tuple[str, str]]:
    params = [("on_conflict", on_conflict)]
    if returning:
        params.append(("select", ",".join(returning)))
    return params


class RestTransport:
    """HTTP transport that handles PostgREST headers, schema profiles and errors."""

    def __init__(self, config: StoreConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session

    def _headers(self, method: str, schema: str, prefer: str | None) -> dict[str, str]:
        headers: dict[str, str] = {
            "apikey": self._config.key,
            "authorization": f"Bearer {self._config.bearer_token}",
            "accept": "application/json",
            "user-agent": USER_AGENT,
        }
        if method in {"GET", "HEAD"}:
            headers["accept-profile"] = schema
        else:
            headers["content-profile"] = schema
            headers["content-type"] = "application/json"
        if prefer:
            headers["prefer"] = prefer
        return headers

    async def request(
        self,
        method: str,
        table: str,
        *,
        params: Sequence[tuple[str, str]],
        schema: str,
        body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        """Send one PostgREST request and return the decoded JSON body.

        Raises
        ------
        RemoteStoreError
            On network failure, non-2xx status or a body that is not JSON.
        """
        url = f"{self._config.rest_url}/{table}"
        headers = self._headers(method, schema, prefer)
        data = json.dumps(body, separators=(",", ":")) if body is not None else None
        timeout = aiohttp.ClientTimeout(total=self._config.timeout)

        _logger.debug("%s %s params=%s headers=%s", method, url, params, redact_for_log(headers))

        try:
            async with self._http.request(
                method,
                url,
                params=list(params),
                data=data,
                headers=headers,
                timeout=timeout,
            ) as resp:
                text = await resp.text()
                if resp.status >= 300:
                    raise RemoteStoreError(
                        f"HTTP {resp.status} from {table}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=table,
                    )
        except RemoteStoreError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise RemoteStoreError(
                f"Request to {table} failed: {exc}",
                endpoint=table,
            ) from exc

        if not text.strip():
            return None

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise RemoteStoreError(
                f"Invalid JSON from {table}: {text[:200]}",
                endpoint=table,
            ) from exc

    async def select(self, query: RemoteQuery) -> list[dict[str, Any]]:
        result = await self.request("GET", query.table, params=build_select_params(query), schema=query.schema)
        return _as_rows(result, query.table)

    async def upsert(
        self,
        table: str,
        record: Mapping[str, Any],
        *,
        on_conflict: str,
        returning: Sequence[str],
        schema: str,
    ) -> list[dict[str, Any]]:
        result = await self.request(
            "POST",
            table,
            params=build_upsert_params(on_conflict, returning),
            schema=schema,
            body=[dict(record)],
            prefer="resolution=merge-duplicates,return=representation",
        )
        return _as_rows(result, table)


def _as_rows(result: Any, table: str) -> list[dict[str, Any]]:
    if result is None:
        return []
    if isinstance(result, dict):
        return [result]
    if not isinstance(result, list) or not all(isinstance(row, dict) for row in result):
        raise RemoteStoreError(f"Unexpected response shape from {table}", endpoint=table)
    return result
