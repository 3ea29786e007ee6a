"""Exceptions raised by RoamingBridge.

Business outcomes (conflicts, rejections, invalid transitions) are returned as
:class:`~roamingbridge.core.results.Outcome` values.  The exceptions below are
reserved for boundary validation and contract violations.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class RoamingBridgeError(Exception):
    """Base class for all RoamingBridge errors."""


class MalformedIdentifier(RoamingBridgeError, ValueError):
    """A text or component could not be turned into an identifier."""

    def __init__(self, kind: str, text: Any, reason: str | None = None) -> None:
        self.kind = kind
        self.text = text
        message = f"Illegal {kind} identification: {text!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class OutOfOrderTimestamp(RoamingBridgeError):
    """A status entry is older than the last recorded one."""

    def __init__(self, entity_id: Any, timestamp: datetime, latest: datetime) -> None:
        self.entity_id = entity_id
        self.timestamp = timestamp
        self.latest = latest
        super().__init__(
            f"Status for {entity_id} at {timestamp.isoformat()} precedes "
            f"latest entry at {latest.isoformat()}"
        )


class UnknownEntity(RoamingBridgeError, KeyError):
    """An operation required a registered entity that does not exist."""

    def __init__(self, entity_id: Any) -> None:
        self.entity_id = entity_id
        super().__init__(f"Unknown entity {entity_id}")

    def __str__(self) -> str:
        return self.args[0]


class DuplicateRecord(RoamingBridgeError):
    """A charge detail record for this session already exists."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Charge detail record for session {session_id} already exists")
