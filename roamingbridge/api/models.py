from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.diff import StatusDiff
from ..core.domain import (
    AdminStatus,
    AuthKind,
    AuthorizationSet,
    CancellationReason,
    ChargeDetailRecord,
    Credential,
    EnergySample,
    RecordFlag,
    Reservation,
    SessionState,
    StatusKind,
    StatusValue,
    StopReason,
)
from ..core.lifecycle import EntityView
from ..core.results import CommandKind, CommandResult, Outcome


class StatusValueOut(BaseModel):
    kind: StatusKind
    timestamp: datetime

    @classmethod
    def from_domain(cls, value: StatusValue) -> "StatusValueOut":
        return cls(kind=value.kind, timestamp=value.timestamp)


class EntityStatusOut(BaseModel):
    entity_id: str
    state: SessionState
    admin_status: AdminStatus
    status: Optional[StatusValueOut] = None
    reservation_id: Optional[str] = None
    session_id: Optional[str] = None
    session_started: Optional[datetime] = None
    fault: Optional[StatusKind] = None

    @classmethod
    def from_domain(cls, view: EntityView) -> "EntityStatusOut":
        return cls(
            entity_id=str(view.entity_id),
            state=view.state,
            admin_status=view.admin_status,
            status=StatusValueOut.from_domain(view.status) if view.status else None,
            reservation_id=view.reservation.reservation_id if view.reservation else None,
            session_id=view.session_id,
            session_started=view.session_started,
            fault=view.fault,
        )


class StatusDiffOut(BaseModel):
    operator_id: Optional[str] = None
    timestamp: datetime
    new_status: Dict[str, StatusValueOut] = Field(default_factory=dict)
    changed_status: Dict[str, StatusValueOut] = Field(default_factory=dict)
    removed_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, diff: StatusDiff) -> "StatusDiffOut":
        return cls(
            operator_id=str(diff.operator_id) if diff.operator_id else None,
            timestamp=diff.timestamp,
            new_status={str(k): StatusValueOut.from_domain(v) for k, v in diff.new_status.items()},
            changed_status={
                str(k): StatusValueOut.from_domain(v) for k, v in diff.changed_status.items()
            },
            removed_ids=sorted(str(entity_id) for entity_id in diff.removed_ids),
        )


class ReservationOut(BaseModel):
    reservation_id: str
    entity_id: str
    start: datetime
    end: Optional[datetime] = None
    provider_id: Optional[str] = None

    @classmethod
    def from_domain(cls, reservation: Reservation) -> "ReservationOut":
        return cls(
            reservation_id=reservation.reservation_id,
            entity_id=str(reservation.entity_id),
            start=reservation.start,
            end=reservation.end,
            provider_id=reservation.provider_id,
        )


class EnergySampleModel(BaseModel):
    timestamp: datetime
    wh: float

    @classmethod
    def from_domain(cls, sample: EnergySample) -> "EnergySampleModel":
        return cls(timestamp=sample.timestamp, wh=sample.wh)

    def to_domain(self) -> EnergySample:
        return EnergySample(self.timestamp, self.wh)


class ChargeDetailRecordOut(BaseModel):
    """Summary of a finished charging session."""

    session_id: str
    entity_id: str
    session_start: datetime
    session_end: datetime
    duration_secs: float
    consumed_energy: float
    energy_samples: List[EnergySampleModel] = Field(default_factory=list)
    provider_id: Optional[str] = None
    reservation_id: Optional[str] = None
    stop_reason: StopReason
    flags: List[RecordFlag] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, record: ChargeDetailRecord) -> "ChargeDetailRecordOut":
        return cls(
            session_id=record.session_id,
            entity_id=str(record.entity_id),
            session_start=record.session_start,
            session_end=record.session_end,
            duration_secs=record.duration.total_seconds(),
            consumed_energy=record.consumed_energy,
            energy_samples=[EnergySampleModel.from_domain(s) for s in record.energy_samples],
            provider_id=record.provider_id,
            reservation_id=record.reservation.reservation_id if record.reservation else None,
            stop_reason=record.stop_reason,
            flags=sorted(record.flags, key=lambda flag: flag.value),
        )


class CommandResultOut(BaseModel):
    kind: CommandKind
    outcome: Outcome
    entity_id: Optional[str] = None
    prior_state: Optional[SessionState] = None
    state: Optional[SessionState] = None
    message: str = ""
    correlation_id: Optional[str] = None
    reservation: Optional[ReservationOut] = None
    session_id: Optional[str] = None
    record: Optional[ChargeDetailRecordOut] = None
    records: List[ChargeDetailRecordOut] = Field(default_factory=list)
    runtime: float = 0.0

    @classmethod
    def from_domain(cls, result: CommandResult) -> "CommandResultOut":
        return cls(
            kind=result.kind,
            outcome=result.outcome,
            entity_id=str(result.entity_id) if result.entity_id else None,
            prior_state=result.prior_state,
            state=result.state,
            message=result.message,
            correlation_id=result.correlation_id,
            reservation=ReservationOut.from_domain(result.reservation) if result.reservation else None,
            session_id=result.session_id,
            record=ChargeDetailRecordOut.from_domain(result.record) if result.record else None,
            records=[ChargeDetailRecordOut.from_domain(r) for r in result.records],
            runtime=result.runtime,
        )


class AuthorizationIn(BaseModel):
    tokens: List[str] = Field(default_factory=list)
    account_ids: List[str] = Field(default_factory=list, alias="accountIds")
    pins: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    def to_domain(self) -> AuthorizationSet:
        return AuthorizationSet.of(self.tokens, self.account_ids, self.pins)


class CredentialIn(BaseModel):
    kind: AuthKind = AuthKind.TOKEN
    value: str

    def to_domain(self) -> Credential:
        return Credential(self.kind, self.value)


class CommandReq(BaseModel):
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")
    timeout: Optional[float] = Field(default=None, gt=0)

    model_config = ConfigDict(populate_by_name=True)


class ReserveReq(CommandReq):
    entity_id: str = Field(alias="entityId")
    start: Optional[datetime] = None
    duration_secs: Optional[float] = Field(default=None, alias="durationSecs", gt=0)
    authorization: AuthorizationIn = Field(default_factory=AuthorizationIn)
    reservation_id: Optional[str] = Field(default=None, alias="reservationId")
    provider_id: Optional[str] = Field(default=None, alias="providerId")

    @property
    def duration(self) -> Optional[timedelta]:
        if self.duration_secs is None:
            return None
        return timedelta(seconds=self.duration_secs)


class CancelReservationReq(CommandReq):
    reservation_id: Optional[str] = Field(default=None, alias="reservationId")
    entity_id: Optional[str] = Field(default=None, alias="entityId")
    reason: CancellationReason = CancellationReason.DELETED


class StartReq(CommandReq):
    entity_id: str = Field(alias="entityId")
    credential: Optional[CredentialIn] = None
    provider_id: Optional[str] = Field(default=None, alias="providerId")
    reservation_id: Optional[str] = Field(default=None, alias="reservationId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class StopReq(CommandReq):
    entity_id: Optional[str] = Field(default=None, alias="entityId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    samples: List[EnergySampleModel] = Field(default_factory=list)


class AdminStatusReq(BaseModel):
    admin_status: AdminStatus = Field(alias="adminStatus")

    model_config = ConfigDict(populate_by_name=True)
