"""Typed outcomes of lifecycle transitions and remote commands."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from ..ids import EntityId
from .domain import ChargeDetailRecord, Reservation, SessionState


class Outcome(str, Enum):
    SUCCESS = "Success"
    TIMEOUT = "Timeout"
    UNKNOWN_TARGET = "UnknownTarget"
    CONFLICT = "Conflict"
    REJECTED = "Rejected"
    ERROR = "Error"
    INVALID_TRANSITION = "InvalidTransition"
    OUT_OF_SERVICE = "OutOfService"
    OUT_OF_ORDER = "OutOfOrderTimestamp"
    CANCELLED = "Cancelled"

    @property
    def is_success(self) -> bool:
        return self is Outcome.SUCCESS


class CommandKind(str, Enum):
    RESERVE = "Reserve"
    CANCEL_RESERVATION = "CancelReservation"
    REMOTE_START = "RemoteStart"
    REMOTE_STOP = "RemoteStop"
    CHARGE_DETAIL_RECORDS = "ChargeDetailRecords"


@dataclass(frozen=True, slots=True)
class Transition:
    """Result of applying one event to an entity's state machine.

    On failure ``previous`` and ``current`` are equal and nothing was changed.
    """

    outcome: Outcome
    entity_id: Optional[EntityId]
    previous: Optional[SessionState]
    current: Optional[SessionState]
    message: str = ""
    reservation: Optional[Reservation] = None
    session_id: Optional[str] = None
    record: Optional[ChargeDetailRecord] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @classmethod
    def failed(
        cls,
        outcome: Outcome,
        entity_id: Optional[EntityId],
        state: Optional[SessionState],
        message: str,
    ) -> "Transition":
        return cls(outcome, entity_id, state, state, message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """What a caller of the command dispatcher gets back.

    ``prior_state`` is the entity state observed before the command ran, which
    is what a caller needs to decide between retrying and reconciling.
    """

    kind: CommandKind
    outcome: Outcome
    entity_id: Optional[EntityId] = None
    prior_state: Optional[SessionState] = None
    state: Optional[SessionState] = None
    message: str = ""
    correlation_id: Optional[str] = None
    reservation: Optional[Reservation] = None
    session_id: Optional[str] = None
    record: Optional[ChargeDetailRecord] = None
    records: tuple[ChargeDetailRecord, ...] = field(default=())
    runtime: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @classmethod
    def from_transition(
        cls,
        kind: CommandKind,
        transition: Transition,
        correlation_id: Optional[str] = None,
    ) -> "CommandResult":
        return cls(
            kind=kind,
            outcome=transition.outcome,
            entity_id=transition.entity_id,
            prior_state=transition.previous,
            state=transition.current,
            message=transition.message,
            correlation_id=correlation_id,
            reservation=transition.reservation,
            session_id=transition.session_id,
            record=transition.record,
        )

    def with_runtime(self, runtime: float) -> "CommandResult":
        return replace(self, runtime=runtime)
