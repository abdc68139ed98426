"""Normalized remote change events and snapshots.

The realtime channel and the REST read path both convert their inputs into
these models. Only the session is allowed to merge them into the local tree.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

_TIMESTAMP_ADAPTER: TypeAdapter[datetime | None] = TypeAdapter(datetime | None)


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce a column value (ISO string, epoch, datetime) to an aware UTC datetime."""
    if value is None or value == "":
        return None
    parsed = _TIMESTAMP_ADAPTER.validate_python(value)
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def parse_version(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ChangeType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class RemoteChangeEvent(BaseModel):
    """A row-level change delivered by the remote change feed."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: ChangeType
    table: str
    schema_name: str = Field(default="public", alias="schema")
    commit_timestamp: datetime | None = None
    record: dict[str, Any] = Field(default_factory=dict, description="New row values")
    old_record: dict[str, Any] = Field(default_factory=dict, description="Previous row values (if replicated)")

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("record", "old_record", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("commit_timestamp")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class RemoteSnapshot(BaseModel):
    """Remote state derived from one read: value plus conflict markers."""

    model_config = ConfigDict(frozen=True)

    value: dict[str, Any] | list[dict[str, Any]]
    timestamp: datetime | None = None
    version: int | None = None
    row_id: Any = None
