"""Domain values for EVSE status, reservations and charging sessions.

These dataclasses are transport independent.  Protocol adapters translate
their own payloads into these types before calling into the lifecycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional, Sequence

from ..ids import EntityId


class StatusKind(str, Enum):
    AVAILABLE = "Available"
    RESERVED = "Reserved"
    CHARGING = "Charging"
    FINISHING = "Finishing"
    OUT_OF_SERVICE = "OutOfService"
    ERROR = "Error"
    OFFLINE = "Offline"
    UNKNOWN = "Unknown"


# Kinds a status source may report in any state; they mask the derived status
# until the source reports a regular status again.
FAULT_KINDS = frozenset(
    {StatusKind.ERROR, StatusKind.OFFLINE, StatusKind.UNKNOWN, StatusKind.OUT_OF_SERVICE}
)


class AdminStatus(str, Enum):
    OPERATIONAL = "Operational"
    INTERNAL_USE = "InternalUse"
    OUT_OF_SERVICE = "OutOfService"

    @property
    def accepts_commands(self) -> bool:
        return self in (AdminStatus.OPERATIONAL, AdminStatus.INTERNAL_USE)


class SessionState(str, Enum):
    FREE = "Free"
    RESERVED = "Reserved"
    CHARGING = "Charging"
    FINISHING = "Finishing"
    FINISHED = "Finished"


class LifecycleEvent(str, Enum):
    RESERVE = "Reserve"
    CANCEL_RESERVATION = "CancelReservation"
    EXPIRE = "Expire"
    REMOTE_START = "RemoteStart"
    REMOTE_STOP = "RemoteStop"
    METER_VALUE = "MeterValue"
    SETTLE = "Settle"
    RELEASE = "Release"
    ADMIN_STATUS = "AdminStatusChanged"


class CancellationReason(str, Enum):
    DELETED = "Deleted"
    EXPIRED = "Expired"
    ABORTED = "Aborted"
    OUT_OF_SERVICE = "OutOfService"
    CONSUMED = "Consumed"


class StopReason(str, Enum):
    REMOTE = "Remote"
    LOCAL = "Local"
    ADMIN = "Admin"


class RecordFlag(str, Enum):
    METER_DECREASED = "MeterDecreased"
    FORCED = "Forced"


@dataclass(frozen=True, slots=True)
class StatusValue:
    """A status kind observed at a point in time."""

    kind: StatusKind
    timestamp: datetime


def same_status(a: Optional[StatusValue], b: Optional[StatusValue]) -> bool:
    """Compare two values by kind only; timestamps are ignored."""
    if a is None or b is None:
        return a is b
    return a.kind is b.kind


class AuthKind(str, Enum):
    TOKEN = "Token"
    ACCOUNT = "Account"
    PIN = "PIN"


@dataclass(frozen=True, slots=True)
class Credential:
    """Identification presented by a driver or a provider."""

    kind: AuthKind
    value: str

    @classmethod
    def token(cls, value: str) -> "Credential":
        return cls(AuthKind.TOKEN, value)

    @classmethod
    def account(cls, value: str) -> "Credential":
        return cls(AuthKind.ACCOUNT, value)

    @classmethod
    def pin(cls, value: str) -> "Credential":
        return cls(AuthKind.PIN, value)


@dataclass(frozen=True, slots=True)
class AuthorizationSet:
    """Credentials allowed to use a reservation.  Empty means unrestricted."""

    tokens: frozenset[str] = frozenset()
    account_ids: frozenset[str] = frozenset()
    pins: frozenset[str] = frozenset()

    @classmethod
    def of(
        cls,
        tokens: Iterable[str] = (),
        account_ids: Iterable[str] = (),
        pins: Iterable[str] = (),
    ) -> "AuthorizationSet":
        return cls(frozenset(tokens), frozenset(account_ids), frozenset(pins))

    @property
    def is_empty(self) -> bool:
        return not (self.tokens or self.account_ids or self.pins)

    def allows(self, credential: Optional[Credential]) -> bool:
        if self.is_empty:
            return True
        if credential is None:
            return False
        if credential.kind is AuthKind.TOKEN:
            return credential.value in self.tokens
        if credential.kind is AuthKind.ACCOUNT:
            return credential.value in self.account_ids
        return credential.value in self.pins


@dataclass(frozen=True, slots=True)
class Reservation:
    """A time window during which only authorized credentials may charge."""

    reservation_id: str
    entity_id: EntityId
    start: datetime
    duration: Optional[timedelta]
    authorization: AuthorizationSet = AuthorizationSet()
    provider_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def end(self) -> Optional[datetime]:
        if self.duration is None:
            return None
        return self.start + self.duration

    def is_expired(self, now: datetime) -> bool:
        end = self.end
        return end is not None and now > end

    def extended(
        self,
        start: datetime,
        duration: Optional[timedelta],
        authorization: AuthorizationSet,
    ) -> "Reservation":
        return replace(self, start=start, duration=duration, authorization=authorization)


@dataclass(frozen=True, slots=True)
class EnergySample:
    """A cumulative meter reading in Wh."""

    timestamp: datetime
    wh: float


def consumed_energy(samples: Sequence[EnergySample]) -> tuple[float, bool]:
    """Return consumed kWh and whether the meter ever went backwards.

    Consumption is the sum of deltas between consecutive readings.  A negative
    delta contributes nothing.
    """
    ordered = sorted(samples, key=lambda s: s.timestamp)
    total_wh = 0.0
    decreased = False
    for previous, current in zip(ordered, ordered[1:]):
        delta = current.wh - previous.wh
        if delta < 0:
            decreased = True
            continue
        total_wh += delta
    return total_wh / 1000, decreased


@dataclass(frozen=True, slots=True)
class ChargeDetailRecord:
    """Immutable settlement of a finished charging session."""

    session_id: str
    entity_id: EntityId
    session_start: datetime
    session_end: datetime
    consumed_energy: float
    energy_samples: tuple[EnergySample, ...] = ()
    credential: Optional[Credential] = None
    provider_id: Optional[str] = None
    reservation: Optional[Reservation] = None
    stop_reason: StopReason = StopReason.REMOTE
    flags: frozenset[RecordFlag] = frozenset()
    created_at: Optional[datetime] = None

    @property
    def duration(self) -> timedelta:
        return self.session_end - self.session_start


@dataclass(slots=True)
class ChargingSession:
    """A running or finished charging session on one EVSE."""

    session_id: str
    entity_id: EntityId
    started_at: datetime
    credential: Optional[Credential] = None
    provider_id: Optional[str] = None
    reservation: Optional[Reservation] = None
    samples: list[EnergySample] = field(default_factory=list)
    stopped_at: Optional[datetime] = None
    record: Optional[ChargeDetailRecord] = None

    @property
    def is_active(self) -> bool:
        return self.stopped_at is None

    @property
    def last_sample(self) -> Optional[EnergySample]:
        return self.samples[-1] if self.samples else None
