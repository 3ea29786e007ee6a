"""Per-EVSE session state machine.

:class:`SessionLifecycle` owns the registry of entities, their reservations
and charging sessions, the current-status map and each entity's
:class:`~roamingbridge.core.schedule.StatusSchedule`.  Transition methods are
synchronous and never suspend; callers that interleave them with I/O hold the
entity's lock from :meth:`SessionLifecycle.locked` for the whole exchange.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .. import config
from ..clock import Clock, SystemClock
from ..errors import UnknownEntity
from ..ids import EntityId, OperatorId, new_reservation_id, new_session_id
from ..store import RecordStore
from .domain import (
    FAULT_KINDS,
    AdminStatus,
    AuthorizationSet,
    CancellationReason,
    ChargeDetailRecord,
    ChargingSession,
    Credential,
    EnergySample,
    LifecycleEvent,
    RecordFlag,
    Reservation,
    SessionState,
    StatusKind,
    StatusValue,
    StopReason,
    consumed_energy,
)
from .events import AdminStatusChanged, EventBus, SessionStateChanged, StatusChanged
from .results import Outcome, Transition
from .schedule import StatusSchedule

logger = logging.getLogger(__name__)

# Events accepted per state; anything else is an invalid transition.
TRANSITIONS: Mapping[tuple[SessionState, LifecycleEvent], SessionState] = MappingProxyType(
    {
        (SessionState.FREE, LifecycleEvent.RESERVE): SessionState.RESERVED,
        (SessionState.RESERVED, LifecycleEvent.RESERVE): SessionState.RESERVED,
        (SessionState.RESERVED, LifecycleEvent.CANCEL_RESERVATION): SessionState.FREE,
        (SessionState.RESERVED, LifecycleEvent.EXPIRE): SessionState.FREE,
        (SessionState.FREE, LifecycleEvent.REMOTE_START): SessionState.CHARGING,
        (SessionState.RESERVED, LifecycleEvent.REMOTE_START): SessionState.CHARGING,
        (SessionState.CHARGING, LifecycleEvent.REMOTE_STOP): SessionState.FINISHING,
        (SessionState.CHARGING, LifecycleEvent.METER_VALUE): SessionState.CHARGING,
        (SessionState.FINISHING, LifecycleEvent.SETTLE): SessionState.FINISHED,
        (SessionState.FINISHED, LifecycleEvent.RELEASE): SessionState.FREE,
    }
)

# Status a source is expected to report for each state.
_REPORTED_KIND = {
    SessionState.FREE: StatusKind.AVAILABLE,
    SessionState.RESERVED: StatusKind.RESERVED,
    SessionState.CHARGING: StatusKind.CHARGING,
    SessionState.FINISHING: StatusKind.FINISHING,
    SessionState.FINISHED: StatusKind.FINISHING,
}

_MIN_SWEEP_DELAY = 0.05


class EntityLocks:
    """One lazily created :class:`asyncio.Lock` per entity."""

    def __init__(self) -> None:
        self._locks: Dict[EntityId, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, entity_id: EntityId) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = self._locks[entity_id] = asyncio.Lock()
        return lock

    def discard(self, entity_id: EntityId) -> None:
        lock = self._locks.get(entity_id)
        if lock is not None and not lock.locked():
            del self._locks[entity_id]


@dataclass(slots=True)
class _Entity:
    entity_id: EntityId
    schedule: StatusSchedule
    state: SessionState = SessionState.FREE
    admin: AdminStatus = AdminStatus.OPERATIONAL
    reservation: Optional[Reservation] = None
    session: Optional[ChargingSession] = None
    fault: Optional[StatusKind] = None


@dataclass(frozen=True, slots=True)
class EntityView:
    """Read-only picture of one entity."""

    entity_id: EntityId
    state: SessionState
    admin_status: AdminStatus
    status: Optional[StatusValue]
    reservation: Optional[Reservation]
    session_id: Optional[str]
    session_started: Optional[datetime]
    fault: Optional[StatusKind]


class SessionLifecycle:
    """Registry and state machine for every EVSE of the fleet.

    Business failures come back as :class:`Transition` objects with a
    non-success :class:`Outcome`; only registry misuse raises.  Every
    committed transition records a status in the entity's schedule, updates
    the current-status map and publishes notifications on ``bus``.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        clock: Clock | None = None,
        records: RecordStore | None = None,
    ) -> None:
        self.bus = bus if bus is not None else EventBus()
        self.clock = clock or SystemClock()
        self.records = records if records is not None else RecordStore()
        self.locks = EntityLocks()
        self._entities: Dict[EntityId, _Entity] = {}
        self._current: Dict[EntityId, StatusValue] = {}
        self._reservations: Dict[str, EntityId] = {}
        self._sessions: Dict[str, EntityId] = {}

    # -- registry ---------------------------------------------------------

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    def entity_ids(self) -> List[EntityId]:
        return list(self._entities)

    def locked(self, entity_id: EntityId) -> asyncio.Lock:
        """The entity's lock, for ``async with``."""
        return self.locks.lock_for(entity_id)

    def register(
        self,
        entity_id: EntityId,
        admin_status: AdminStatus = AdminStatus.OPERATIONAL,
    ) -> StatusValue:
        """Add ``entity_id`` to the fleet in state ``Free``.

        Registering an entity twice leaves it untouched and returns its
        current status.
        """
        existing = self._entities.get(entity_id)
        if existing is not None:
            logger.debug("%s is already registered", entity_id)
            return self._current[entity_id]
        entity = _Entity(entity_id, StatusSchedule(entity_id), admin=admin_status)
        self._entities[entity_id] = entity
        logger.info("Registered %s (%s)", entity_id, admin_status.value)
        return self._record_status(entity, self.clock.now())

    def unregister(self, entity_id: EntityId) -> None:
        """Remove ``entity_id``; an active session is force-finished first.

        Raises
        ------
        UnknownEntity
            If the entity was never registered.
        """
        entity = self._require(entity_id)
        now = self.clock.now()
        if entity.state is SessionState.CHARGING:
            self._settle(entity, now, (), StopReason.ADMIN)
        if entity.state is SessionState.RESERVED:
            self._end_reservation(
                entity, LifecycleEvent.CANCEL_RESERVATION, CancellationReason.ABORTED, now
            )
        if entity.session is not None:
            self._sessions.pop(entity.session.session_id, None)
        del self._entities[entity_id]
        old = self._current.pop(entity_id, None)
        self.locks.discard(entity_id)
        self.bus.publish(StatusChanged(entity_id, old, None, now))
        logger.info("Unregistered %s", entity_id)

    def _require(self, entity_id: EntityId) -> _Entity:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise UnknownEntity(entity_id)
        return entity

    # -- queries ----------------------------------------------------------

    def state_of(self, entity_id: EntityId) -> Optional[SessionState]:
        entity = self._entities.get(entity_id)
        return entity.state if entity is not None else None

    def admin_status_of(self, entity_id: EntityId) -> Optional[AdminStatus]:
        entity = self._entities.get(entity_id)
        return entity.admin if entity is not None else None

    def status_of(self, entity_id: EntityId) -> Optional[StatusValue]:
        return self._current.get(entity_id)

    def schedule_of(self, entity_id: EntityId) -> StatusSchedule:
        return self._require(entity_id).schedule

    def reservation_of(self, entity_id: EntityId) -> Optional[Reservation]:
        entity = self._entities.get(entity_id)
        return entity.reservation if entity is not None else None

    def session_of(self, entity_id: EntityId) -> Optional[ChargingSession]:
        entity = self._entities.get(entity_id)
        return entity.session if entity is not None else None

    def find_reservation(self, reservation_id: str) -> Optional[Reservation]:
        entity_id = self._reservations.get(reservation_id)
        if entity_id is None:
            return None
        return self._entities[entity_id].reservation

    def find_session(self, session_id: str) -> Optional[EntityId]:
        return self._sessions.get(session_id)

    def describe(self, entity_id: EntityId) -> Optional[EntityView]:
        entity = self._entities.get(entity_id)
        if entity is None:
            return None
        session = entity.session
        return EntityView(
            entity_id=entity_id,
            state=entity.state,
            admin_status=entity.admin,
            status=self._current.get(entity_id),
            reservation=entity.reservation,
            session_id=session.session_id if session else None,
            session_started=session.started_at if session else None,
            fault=entity.fault,
        )

    def snapshot(self, operator_id: Optional[OperatorId] = None) -> Mapping[EntityId, StatusValue]:
        """Immutable copy of the current-status map, optionally per operator."""
        if operator_id is None:
            return MappingProxyType(dict(self._current))
        return MappingProxyType(
            {
                entity_id: value
                for entity_id, value in self._current.items()
                if entity_id.operator_id == operator_id
            }
        )

    def next_expiry(self) -> Optional[datetime]:
        """End of the earliest reservation window that can expire."""
        ends = [
            entity.reservation.end
            for entity in self._entities.values()
            if entity.reservation is not None and entity.reservation.end is not None
        ]
        return min(ends) if ends else None

    # -- bookkeeping ------------------------------------------------------

    def _derive(self, entity: _Entity) -> StatusKind:
        if entity.admin is AdminStatus.OUT_OF_SERVICE:
            return StatusKind.OUT_OF_SERVICE
        if entity.fault is not None:
            return entity.fault
        return _REPORTED_KIND[entity.state]

    def _record_status(self, entity: _Entity, at: datetime) -> StatusValue:
        latest = entity.schedule.latest()
        if latest is not None and at < latest.timestamp:
            at = latest.timestamp
        value = StatusValue(self._derive(entity), at)
        entity.schedule.append(value)
        old = self._current.get(entity.entity_id)
        self._current[entity.entity_id] = value
        self.bus.publish(StatusChanged(entity.entity_id, old, value, at))
        return value

    def _move(
        self,
        entity: _Entity,
        new: SessionState,
        event: LifecycleEvent,
        at: datetime,
        reservation_id: Optional[str] = None,
    ) -> None:
        old = entity.state
        entity.state = new
        session_id = entity.session.session_id if entity.session else None
        self.bus.publish(
            SessionStateChanged(entity.entity_id, session_id, old, new, at, event, reservation_id)
        )
        self._record_status(entity, at)
        logger.debug("%s: %s --%s--> %s", entity.entity_id, old.value, event.value, new.value)

    def _prepare(self, entity_id: EntityId, now: datetime) -> tuple[Optional[_Entity], Optional[Transition]]:
        entity = self._entities.get(entity_id)
        if entity is None:
            return None, Transition.failed(
                Outcome.UNKNOWN_TARGET, entity_id, None, f"{entity_id} is not registered"
            )
        self._expire_due(entity, now)
        return entity, None

    @staticmethod
    def _not_allowed(entity: _Entity, event: LifecycleEvent) -> Optional[Transition]:
        if (entity.state, event) in TRANSITIONS:
            return None
        if entity.state is SessionState.FINISHED:
            message = f"{event.value} rejected: session already finished on {entity.entity_id}"
        else:
            message = f"{event.value} is not allowed while {entity.entity_id} is {entity.state.value}"
        return Transition.failed(Outcome.INVALID_TRANSITION, entity.entity_id, entity.state, message)

    def _out_of_service(self, entity: _Entity) -> Optional[Transition]:
        if entity.admin.accepts_commands:
            return None
        return Transition.failed(
            Outcome.OUT_OF_SERVICE,
            entity.entity_id,
            entity.state,
            f"{entity.entity_id} is {entity.admin.value}",
        )

    # -- reservations -----------------------------------------------------

    def reserve(
        self,
        entity_id: EntityId,
        *,
        start: Optional[datetime] = None,
        duration: Optional[timedelta] = None,
        authorization: AuthorizationSet = AuthorizationSet(),
        reservation_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> Transition:
        """Reserve ``entity_id`` or extend its current reservation.

        A second Reserve extends the window when it names the same
        reservation id, or names none and carries the same authorization.
        With ``dry_run`` nothing but a due expiry is applied.
        """
        now = self.clock.now()
        entity, failure = self._prepare(entity_id, now)
        if failure is not None:
            return failure
        failure = self._out_of_service(entity) or self._not_allowed(entity, LifecycleEvent.RESERVE)
        if failure is not None:
            return failure

        start = start or now
        if duration is not None and duration <= timedelta(0):
            return Transition.failed(
                Outcome.REJECTED, entity_id, entity.state, "Reservation duration must be positive"
            )
        if duration is not None and start + duration < now:
            return Transition.failed(
                Outcome.REJECTED, entity_id, entity.state, "Reservation window already elapsed"
            )

        current = entity.reservation
        if reservation_id is not None:
            owner = self._reservations.get(reservation_id)
            if owner is not None and owner != entity_id:
                return Transition.failed(
                    Outcome.CONFLICT,
                    entity_id,
                    entity.state,
                    f"Reservation {reservation_id} belongs to {owner}",
                )
        if current is not None:
            same_id = reservation_id is not None and reservation_id == current.reservation_id
            same_auth = reservation_id is None and authorization == current.authorization
            if not (same_id or same_auth):
                return Transition.failed(
                    Outcome.CONFLICT,
                    entity_id,
                    entity.state,
                    f"{entity_id} is reserved under {current.reservation_id}",
                )

        if dry_run:
            return Transition(Outcome.SUCCESS, entity_id, entity.state, SessionState.RESERVED)

        previous = entity.state
        if current is not None:
            reservation = current.extended(start, duration, authorization)
            logger.info("Extended reservation %s on %s", reservation.reservation_id, entity_id)
        else:
            reservation = Reservation(
                reservation_id=reservation_id or new_reservation_id(),
                entity_id=entity_id,
                start=start,
                duration=duration,
                authorization=authorization,
                provider_id=provider_id,
                created_at=now,
            )
            self._reservations[reservation.reservation_id] = entity_id
            logger.info("Reserved %s under %s", entity_id, reservation.reservation_id)
        entity.reservation = reservation
        self._move(entity, SessionState.RESERVED, LifecycleEvent.RESERVE, now, reservation.reservation_id)
        return Transition(
            Outcome.SUCCESS, entity_id, previous, entity.state, reservation=reservation
        )

    def cancel_reservation(
        self,
        reservation_id: Optional[str] = None,
        entity_id: Optional[EntityId] = None,
        reason: CancellationReason = CancellationReason.DELETED,
        *,
        dry_run: bool = False,
    ) -> Transition:
        """Cancel by reservation id, by entity, or both."""
        if entity_id is None:
            if reservation_id is None:
                raise ValueError("reservation_id or entity_id is required")
            entity_id = self._reservations.get(reservation_id)
            if entity_id is None:
                return Transition.failed(
                    Outcome.UNKNOWN_TARGET, None, None, f"Unknown reservation {reservation_id}"
                )
        now = self.clock.now()
        entity, failure = self._prepare(entity_id, now)
        if failure is not None:
            return failure
        failure = self._not_allowed(entity, LifecycleEvent.CANCEL_RESERVATION)
        if failure is not None:
            return failure
        current = entity.reservation
        if reservation_id is not None and current.reservation_id != reservation_id:
            return Transition.failed(
                Outcome.UNKNOWN_TARGET,
                entity_id,
                entity.state,
                f"No reservation {reservation_id} on {entity_id}",
            )
        if dry_run:
            return Transition(Outcome.SUCCESS, entity_id, entity.state, SessionState.FREE)
        return self._end_reservation(entity, LifecycleEvent.CANCEL_RESERVATION, reason, now)

    def _end_reservation(
        self,
        entity: _Entity,
        event: LifecycleEvent,
        reason: CancellationReason,
        now: datetime,
    ) -> Transition:
        reservation = entity.reservation
        previous = entity.state
        self._reservations.pop(reservation.reservation_id, None)
        entity.reservation = None
        self._move(entity, SessionState.FREE, event, now, reservation.reservation_id)
        logger.info(
            "Reservation %s on %s ended (%s)",
            reservation.reservation_id,
            entity.entity_id,
            reason.value,
        )
        return Transition(
            Outcome.SUCCESS,
            entity.entity_id,
            previous,
            entity.state,
            message=reason.value,
            reservation=reservation,
        )

    def _expire_due(self, entity: _Entity, now: datetime) -> Optional[Transition]:
        reservation = entity.reservation
        if (
            entity.state is SessionState.RESERVED
            and reservation is not None
            and reservation.is_expired(now)
        ):
            return self._end_reservation(
                entity, LifecycleEvent.EXPIRE, CancellationReason.EXPIRED, now
            )
        return None

    def expire_reservations(self) -> List[Transition]:
        """Expire every reservation whose window has passed."""
        now = self.clock.now()
        expired = []
        for entity in list(self._entities.values()):
            transition = self._expire_due(entity, now)
            if transition is not None:
                expired.append(transition)
        return expired

    async def sweep_expired(self) -> List[Transition]:
        """Like :meth:`expire_reservations` but under each entity's lock."""
        now = self.clock.now()
        due = [
            entity.entity_id
            for entity in self._entities.values()
            if entity.reservation is not None and entity.reservation.is_expired(now)
        ]
        expired = []
        for entity_id in due:
            async with self.locked(entity_id):
                entity = self._entities.get(entity_id)
                if entity is None:
                    continue
                transition = self._expire_due(entity, self.clock.now())
                if transition is not None:
                    expired.append(transition)
        return expired

    async def run_expiry_loop(self, interval: float = config.EXPIRY_SWEEP_INTERVAL) -> None:
        """Sweep expired reservations until cancelled.

        Wakes up at the next reservation end when that comes before
        ``interval`` seconds.
        """
        while True:
            try:
                await self.sweep_expired()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reservation sweep failed")
            delay = interval
            upcoming = self.next_expiry()
            if upcoming is not None:
                remaining = (upcoming - self.clock.now()).total_seconds()
                delay = min(interval, max(remaining, 0.0) + _MIN_SWEEP_DELAY)
            await asyncio.sleep(delay)

    # -- sessions ---------------------------------------------------------

    def start_session(
        self,
        entity_id: EntityId,
        *,
        credential: Optional[Credential] = None,
        provider_id: Optional[str] = None,
        reservation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> Transition:
        """Start charging; a matching reservation is consumed."""
        now = self.clock.now()
        entity, failure = self._prepare(entity_id, now)
        if failure is not None:
            return failure
        failure = self._out_of_service(entity)
        if failure is not None:
            return failure
        if entity.state is SessionState.CHARGING:
            return Transition.failed(
                Outcome.CONFLICT,
                entity_id,
                entity.state,
                f"{entity_id} is already charging under {entity.session.session_id}",
            )
        failure = self._not_allowed(entity, LifecycleEvent.REMOTE_START)
        if failure is not None:
            return failure
        if session_id is not None and (session_id in self._sessions or session_id in self.records):
            return Transition.failed(
                Outcome.CONFLICT, entity_id, entity.state, f"Session {session_id} already exists"
            )

        reservation = entity.reservation
        if reservation is None and reservation_id is not None:
            return Transition.failed(
                Outcome.REJECTED, entity_id, entity.state, f"No reservation {reservation_id} on {entity_id}"
            )
        if reservation is not None:
            if reservation_id is not None and reservation_id != reservation.reservation_id:
                return Transition.failed(
                    Outcome.REJECTED,
                    entity_id,
                    entity.state,
                    f"{entity_id} is reserved under {reservation.reservation_id}",
                )
            if not reservation.authorization.allows(credential):
                return Transition.failed(
                    Outcome.REJECTED,
                    entity_id,
                    entity.state,
                    f"Credential not authorized for reservation {reservation.reservation_id}",
                )
            if (
                reservation.provider_id is not None
                and provider_id is not None
                and provider_id != reservation.provider_id
            ):
                return Transition.failed(
                    Outcome.REJECTED,
                    entity_id,
                    entity.state,
                    f"Reservation {reservation.reservation_id} belongs to provider {reservation.provider_id}",
                )

        if dry_run:
            return Transition(Outcome.SUCCESS, entity_id, entity.state, SessionState.CHARGING)

        previous = entity.state
        session = ChargingSession(
            session_id=session_id or new_session_id(),
            entity_id=entity_id,
            started_at=now,
            credential=credential,
            provider_id=provider_id or (reservation.provider_id if reservation else None),
            reservation=reservation,
        )
        if reservation is not None:
            self._reservations.pop(reservation.reservation_id, None)
            entity.reservation = None
            logger.info(
                "Reservation %s on %s ended (%s)",
                reservation.reservation_id,
                entity_id,
                CancellationReason.CONSUMED.value,
            )
        entity.session = session
        self._sessions[session.session_id] = entity_id
        self._move(
            entity,
            SessionState.CHARGING,
            LifecycleEvent.REMOTE_START,
            now,
            reservation.reservation_id if reservation else None,
        )
        logger.info("Session %s started on %s", session.session_id, entity_id)
        return Transition(
            Outcome.SUCCESS,
            entity_id,
            previous,
            entity.state,
            reservation=reservation,
            session_id=session.session_id,
        )

    def stop_session(
        self,
        entity_id: EntityId,
        *,
        session_id: Optional[str] = None,
        samples: Sequence[EnergySample] = (),
        reason: StopReason = StopReason.REMOTE,
        dry_run: bool = False,
    ) -> Transition:
        """Stop charging and settle the session into a charge detail record."""
        now = self.clock.now()
        entity, failure = self._prepare(entity_id, now)
        if failure is not None:
            return failure
        failure = self._not_allowed(entity, LifecycleEvent.REMOTE_STOP)
        if failure is not None:
            return failure
        session = entity.session
        if session_id is not None and session_id != session.session_id:
            return Transition.failed(
                Outcome.REJECTED,
                entity_id,
                entity.state,
                f"Session {session_id} is not active on {entity_id}",
            )
        if dry_run:
            return Transition(
                Outcome.SUCCESS, entity_id, entity.state, SessionState.FINISHED,
                session_id=session.session_id,
            )
        record = self._settle(entity, now, samples, reason)
        return Transition(
            Outcome.SUCCESS,
            entity_id,
            SessionState.CHARGING,
            entity.state,
            session_id=session.session_id,
            record=record,
        )

    def _settle(
        self,
        entity: _Entity,
        now: datetime,
        samples: Iterable[EnergySample],
        reason: StopReason,
    ) -> ChargeDetailRecord:
        session = entity.session
        session.samples.extend(samples)
        self._move(entity, SessionState.FINISHING, LifecycleEvent.REMOTE_STOP, now)

        energy, decreased = consumed_energy(session.samples)
        flags = set()
        if decreased:
            flags.add(RecordFlag.METER_DECREASED)
            logger.warning("Meter of %s went backwards during %s", entity.entity_id, session.session_id)
        if reason is StopReason.ADMIN:
            flags.add(RecordFlag.FORCED)
        record = ChargeDetailRecord(
            session_id=session.session_id,
            entity_id=entity.entity_id,
            session_start=session.started_at,
            session_end=now,
            consumed_energy=energy,
            energy_samples=tuple(sorted(session.samples, key=lambda s: s.timestamp)),
            credential=session.credential,
            provider_id=session.provider_id,
            reservation=session.reservation,
            stop_reason=reason,
            flags=frozenset(flags),
            created_at=now,
        )
        self.records.add(record)
        session.stopped_at = now
        session.record = record
        self._move(entity, SessionState.FINISHED, LifecycleEvent.SETTLE, now)
        logger.info(
            "Session %s on %s finished (%s): %.3f kWh",
            session.session_id,
            entity.entity_id,
            reason.value,
            energy,
        )
        return record

    def record_meter_value(self, entity_id: EntityId, sample: EnergySample) -> Transition:
        entity, failure = self._prepare(entity_id, self.clock.now())
        if failure is not None:
            return failure
        failure = self._not_allowed(entity, LifecycleEvent.METER_VALUE)
        if failure is not None:
            return failure
        entity.session.samples.append(sample)
        return Transition(
            Outcome.SUCCESS,
            entity_id,
            entity.state,
            entity.state,
            session_id=entity.session.session_id,
        )

    def _release(self, entity: _Entity, event: LifecycleEvent, at: datetime) -> None:
        if entity.session is not None:
            self._sessions.pop(entity.session.session_id, None)
        self._move(entity, SessionState.FREE, event, at)
        entity.session = None

    # -- status source and administration ---------------------------------

    def apply_status(self, entity_id: EntityId, value: StatusValue) -> Transition:
        """Take a status reported by the EVSE itself.

        Fault kinds overlay the derived status in any state.  A regular kind
        must agree with the current state, except ``Available`` after a
        finished session, which releases the entity.
        """
        entity = self._entities.get(entity_id)
        if entity is None:
            return Transition.failed(
                Outcome.UNKNOWN_TARGET, entity_id, None, f"{entity_id} is not registered"
            )
        latest = entity.schedule.latest()
        if latest is not None and value.timestamp < latest.timestamp:
            logger.warning(
                "Dropping %s for %s at %s; latest entry is at %s",
                value.kind.value,
                entity_id,
                value.timestamp.isoformat(),
                latest.timestamp.isoformat(),
            )
            return Transition.failed(
                Outcome.OUT_OF_ORDER,
                entity_id,
                entity.state,
                f"Status at {value.timestamp.isoformat()} precedes {latest.timestamp.isoformat()}",
            )
        previous = entity.state
        if value.kind in FAULT_KINDS:
            entity.fault = value.kind
            self._record_status(entity, value.timestamp)
        elif entity.state is SessionState.FINISHED and value.kind is StatusKind.AVAILABLE:
            entity.fault = None
            self._release(entity, LifecycleEvent.RELEASE, value.timestamp)
        elif value.kind is _REPORTED_KIND[entity.state]:
            entity.fault = None
            self._record_status(entity, value.timestamp)
        else:
            return Transition.failed(
                Outcome.INVALID_TRANSITION,
                entity_id,
                entity.state,
                f"{value.kind.value} reported while {entity_id} is {entity.state.value}",
            )
        return Transition(Outcome.SUCCESS, entity_id, previous, entity.state)

    def set_admin_status(self, entity_id: EntityId, admin_status: AdminStatus) -> Transition:
        """Change the administrative status.

        Going out of service frees the entity: a reservation is cancelled and
        a running session is force-finished.
        """
        entity, failure = self._prepare(entity_id, self.clock.now())
        if failure is not None:
            return failure
        previous = entity.state
        old = entity.admin
        if old is admin_status:
            return Transition(Outcome.SUCCESS, entity_id, previous, previous)

        now = self.clock.now()
        entity.admin = admin_status
        self.bus.publish(AdminStatusChanged(entity_id, old, admin_status, now))
        logger.info("%s admin status %s -> %s", entity_id, old.value, admin_status.value)

        record = None
        reservation = None
        session_id = None
        if admin_status is AdminStatus.OUT_OF_SERVICE:
            if entity.state is SessionState.RESERVED:
                reservation = entity.reservation
                self._end_reservation(
                    entity, LifecycleEvent.ADMIN_STATUS, CancellationReason.OUT_OF_SERVICE, now
                )
            elif entity.state is SessionState.CHARGING:
                session_id = entity.session.session_id
                record = self._settle(entity, now, (), StopReason.ADMIN)
            if entity.state is SessionState.FINISHED:
                session_id = session_id or entity.session.session_id
                self._release(entity, LifecycleEvent.ADMIN_STATUS, now)
            elif entity.state is SessionState.FREE and previous is SessionState.FREE:
                self._record_status(entity, now)
        else:
            self._record_status(entity, now)
        return Transition(
            Outcome.SUCCESS,
            entity_id,
            previous,
            entity.state,
            reservation=reservation,
            session_id=session_id,
            record=record,
        )
