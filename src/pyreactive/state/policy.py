"""Deterministic conflict policy for incoming remote changes.

Resolution is last-writer-wins. This module contains no payload parsing;
callers pass already-normalized timestamps and versions.
"""

from __future__ import annotations

from datetime import datetime


def should_accept_remote(
    *,
    versioned: bool,
    local_version: int | None,
    incoming_version: int | None,
    local_timestamp: datetime | None,
    incoming_timestamp: datetime | None,
) -> bool:
    """Decide whether a remote change supersedes local state.

    Policy:
    - Versioned sessions: accept iff the incoming version is strictly newer.
      An event without a version cannot prove freshness and is rejected.
    - Otherwise: accept if no local write/read has stamped the session yet,
      else iff the incoming timestamp is strictly newer.

    Equal markers are rejected; that is how a session ignores the echo of its
    own just-published write.
    """
    if versioned:
        if incoming_version is None:
            return False
        if local_version is None:
            return True
        return incoming_version > local_version

    if local_timestamp is None:
        return True
    if incoming_timestamp is None:
        return False
    return incoming_timestamp > local_timestamp
