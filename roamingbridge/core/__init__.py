from .diff import DiffEngine, StatusDiff, compute_diff
from .domain import (
    AdminStatus,
    AuthorizationSet,
    ChargeDetailRecord,
    Credential,
    EnergySample,
    Reservation,
    SessionState,
    StatusKind,
    StatusValue,
)
from .events import (
    AdminStatusChanged,
    CommandSettled,
    EventBus,
    SessionStateChanged,
    StatusChanged,
)
from .lifecycle import EntityLocks, SessionLifecycle
from .results import CommandKind, CommandResult, Outcome, Transition
from .schedule import StatusSchedule
