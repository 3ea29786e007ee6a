"""EVSE fleet status synchronization and remote command dispatch."""

from .clock import Clock, ManualClock, SystemClock
from .core import (
    CommandResult,
    DiffEngine,
    EventBus,
    Outcome,
    SessionLifecycle,
    StatusDiff,
    StatusSchedule,
    compute_diff,
)
from .dispatcher import CommandDispatcher
from .errors import (
    DuplicateRecord,
    MalformedIdentifier,
    OutOfOrderTimestamp,
    RoamingBridgeError,
    UnknownEntity,
)
from .ids import EntityId, IdFormat, OperatorId, parse_entity_id, parse_operator_id, try_parse_entity_id
from .store import RecordStore

__version__ = "0.1.0"

__all__ = [
    "Clock",
    "CommandDispatcher",
    "CommandResult",
    "DiffEngine",
    "DuplicateRecord",
    "EntityId",
    "EventBus",
    "IdFormat",
    "MalformedIdentifier",
    "ManualClock",
    "OperatorId",
    "OutOfOrderTimestamp",
    "Outcome",
    "RecordStore",
    "RoamingBridgeError",
    "SessionLifecycle",
    "StatusDiff",
    "StatusSchedule",
    "SystemClock",
    "UnknownEntity",
    "compute_diff",
    "parse_entity_id",
    "parse_operator_id",
    "try_parse_entity_id",
]
