"""Remote commands against the fleet.

Every command runs as its own task that takes the entity lock, checks the
transition, asks the partner and commits the transition when the partner
accepted.  The caller only waits for that task; when it stops waiting
(timeout, cancellation event or task cancellation) the task carries on, and a
late result is announced as :class:`~roamingbridge.core.events.CommandSettled`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Hashable, Optional, Sequence, Set, Union

from . import config
from .core.domain import (
    AuthorizationSet,
    CancellationReason,
    ChargeDetailRecord,
    Credential,
    EnergySample,
    SessionState,
    StopReason,
)
from .core.events import CommandSettled
from .core.lifecycle import SessionLifecycle
from .core.results import CommandKind, CommandResult, Outcome
from .ids import EntityId, new_reservation_id, new_session_id
from .partners.service import (
    CancelReservationCommand,
    GetChargeDetailRecordsCommand,
    PartnerClient,
    PartnerCommand,
    PartnerStatus,
    RawResponse,
    RemoteStartCommand,
    RemoteStopCommand,
    ReserveCommand,
)

logger = logging.getLogger(__name__)

_PARTNER_OUTCOMES = {
    PartnerStatus.ACCEPTED: Outcome.SUCCESS,
    PartnerStatus.REJECTED: Outcome.REJECTED,
    PartnerStatus.OCCUPIED: Outcome.CONFLICT,
    PartnerStatus.FAULTED: Outcome.ERROR,
    PartnerStatus.UNAVAILABLE: Outcome.OUT_OF_SERVICE,
    PartnerStatus.UNKNOWN_TARGET: Outcome.UNKNOWN_TARGET,
    PartnerStatus.ERROR: Outcome.ERROR,
    PartnerStatus.NOT_SUPPORTED: Outcome.REJECTED,
}


def _unregistered(kind: CommandKind, entity_id: EntityId) -> CommandResult:
    return CommandResult(kind, Outcome.UNKNOWN_TARGET, entity_id, message=f"{entity_id} is not registered")


@dataclass(slots=True)
class _Correlated:
    kind: CommandKind
    target: Hashable
    future: asyncio.Future


@dataclass(slots=True)
class _Ticket:
    """Shared between a caller and its command task."""

    kind: CommandKind
    entity_id: Optional[EntityId]
    correlation_id: Optional[str]
    abandoned: bool = False


class CommandDispatcher:
    """Send Reserve, CancelReservation, RemoteStart, RemoteStop and record
    queries to a partner and apply the outcome to the session lifecycle.

    Parameters
    ----------
    lifecycle:
        The state machine that owns entity state, locks, clock and records.
    partner:
        Transport that executes commands on the far side.
    timeout:
        Default seconds a caller waits for a result.
    partner_timeout:
        Seconds one partner exchange may take before it counts as timed out.
    cache_size:
        Number of correlation ids remembered for replay.
    """

    def __init__(
        self,
        lifecycle: SessionLifecycle,
        partner: PartnerClient,
        *,
        timeout: float = config.COMMAND_TIMEOUT,
        partner_timeout: float = config.PARTNER_TIMEOUT,
        cache_size: int = config.CORRELATION_CACHE_SIZE,
    ) -> None:
        self.lifecycle = lifecycle
        self.partner = partner
        self.timeout = timeout
        self.partner_timeout = partner_timeout
        self.cache_size = cache_size
        self._correlations: "OrderedDict[str, _Correlated]" = OrderedDict()
        self._background: Set[asyncio.Task] = set()

    @property
    def bus(self):
        return self.lifecycle.bus

    @property
    def clock(self):
        return self.lifecycle.clock

    # -- public commands --------------------------------------------------

    async def reserve(
        self,
        entity_id: EntityId,
        *,
        start: Optional[datetime] = None,
        duration: Optional[timedelta] = None,
        authorization: AuthorizationSet = AuthorizationSet(),
        reservation_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        async def work(ticket: _Ticket) -> CommandResult:
            kind = CommandKind.RESERVE
            if entity_id not in self.lifecycle:
                return _unregistered(kind, entity_id)
            async with self.lifecycle.locked(entity_id):
                check = self.lifecycle.reserve(
                    entity_id,
                    start=start,
                    duration=duration,
                    authorization=authorization,
                    reservation_id=reservation_id,
                    provider_id=provider_id,
                    dry_run=True,
                )
                if not check.ok:
                    return CommandResult.from_transition(kind, check)
                current = self.lifecycle.reservation_of(entity_id)
                rid = reservation_id or (current.reservation_id if current else new_reservation_id())
                command = ReserveCommand(
                    entity_id=entity_id,
                    reservation_id=rid,
                    start=start or self.clock.now(),
                    duration=duration,
                    authorization=authorization,
                    provider_id=provider_id,
                )
                response = await self._exchange(ticket, check.previous, command)
                if isinstance(response, CommandResult):
                    return response
                transition = self.lifecycle.reserve(
                    entity_id,
                    start=command.start,
                    duration=duration,
                    authorization=authorization,
                    reservation_id=rid,
                    provider_id=provider_id,
                )
                return CommandResult.from_transition(kind, transition)

        return await self._execute(
            CommandKind.RESERVE, entity_id, entity_id, correlation_id, timeout, cancel, work
        )

    async def cancel_reservation(
        self,
        reservation_id: Optional[str] = None,
        entity_id: Optional[EntityId] = None,
        reason: CancellationReason = CancellationReason.DELETED,
        *,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        """Cancel by reservation id, by entity, or both."""
        kind = CommandKind.CANCEL_RESERVATION
        if entity_id is None:
            if reservation_id is None:
                raise ValueError("reservation_id or entity_id is required")
            reservation = self.lifecycle.find_reservation(reservation_id)
            if reservation is None:
                return CommandResult(
                    kind,
                    Outcome.UNKNOWN_TARGET,
                    message=f"Unknown reservation {reservation_id}",
                    correlation_id=correlation_id,
                )
            entity_id = reservation.entity_id

        async def work(ticket: _Ticket) -> CommandResult:
            if entity_id not in self.lifecycle:
                return _unregistered(kind, entity_id)
            async with self.lifecycle.locked(entity_id):
                check = self.lifecycle.cancel_reservation(
                    reservation_id, entity_id, reason, dry_run=True
                )
                if not check.ok:
                    return CommandResult.from_transition(kind, check)
                rid = reservation_id or self.lifecycle.reservation_of(entity_id).reservation_id
                command = CancelReservationCommand(entity_id, rid)
                response = await self._exchange(ticket, check.previous, command)
                if isinstance(response, CommandResult):
                    return response
                transition = self.lifecycle.cancel_reservation(rid, entity_id, reason)
                return CommandResult.from_transition(kind, transition)

        target = (entity_id, reservation_id)
        return await self._execute(kind, target, entity_id, correlation_id, timeout, cancel, work)

    async def remote_start(
        self,
        entity_id: EntityId,
        *,
        credential: Optional[Credential] = None,
        provider_id: Optional[str] = None,
        reservation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        kind = CommandKind.REMOTE_START

        async def work(ticket: _Ticket) -> CommandResult:
            if entity_id not in self.lifecycle:
                return _unregistered(kind, entity_id)
            async with self.lifecycle.locked(entity_id):
                check = self.lifecycle.start_session(
                    entity_id,
                    credential=credential,
                    provider_id=provider_id,
                    reservation_id=reservation_id,
                    session_id=session_id,
                    dry_run=True,
                )
                if not check.ok:
                    return CommandResult.from_transition(kind, check)
                sid = session_id or new_session_id()
                command = RemoteStartCommand(
                    entity_id=entity_id,
                    session_id=sid,
                    credential=credential,
                    provider_id=provider_id,
                    reservation_id=reservation_id,
                )
                response = await self._exchange(ticket, check.previous, command)
                if isinstance(response, CommandResult):
                    return response
                transition = self.lifecycle.start_session(
                    entity_id,
                    credential=credential,
                    provider_id=provider_id,
                    reservation_id=reservation_id,
                    session_id=sid,
                )
                return CommandResult.from_transition(kind, transition)

        return await self._execute(kind, entity_id, entity_id, correlation_id, timeout, cancel, work)

    async def remote_stop(
        self,
        entity_id: Optional[EntityId] = None,
        *,
        session_id: Optional[str] = None,
        samples: Sequence[EnergySample] = (),
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        """Stop the session on ``entity_id``, or the one named by ``session_id``."""
        kind = CommandKind.REMOTE_STOP
        if entity_id is None:
            if session_id is None:
                raise ValueError("entity_id or session_id is required")
            entity_id = self.lifecycle.find_session(session_id)
            if entity_id is None:
                return CommandResult(
                    kind,
                    Outcome.UNKNOWN_TARGET,
                    message=f"Unknown session {session_id}",
                    correlation_id=correlation_id,
                )

        async def work(ticket: _Ticket) -> CommandResult:
            if entity_id not in self.lifecycle:
                return _unregistered(kind, entity_id)
            async with self.lifecycle.locked(entity_id):
                check = self.lifecycle.stop_session(entity_id, session_id=session_id, dry_run=True)
                if not check.ok:
                    return CommandResult.from_transition(kind, check)
                command = RemoteStopCommand(entity_id, check.session_id)
                response = await self._exchange(ticket, check.previous, command)
                if isinstance(response, CommandResult):
                    return response
                collected = list(samples)
                meter_stop = response.payload.get("meter_stop")
                if meter_stop is not None:
                    collected.append(EnergySample(self.clock.now(), float(meter_stop)))
                transition = self.lifecycle.stop_session(
                    entity_id,
                    session_id=check.session_id,
                    samples=collected,
                    reason=StopReason.REMOTE,
                )
                return CommandResult.from_transition(kind, transition)

        return await self._execute(kind, entity_id, entity_id, correlation_id, timeout, cancel, work)

    async def get_charge_detail_records(
        self,
        start: datetime,
        end: datetime,
        provider_id: Optional[str] = None,
        *,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        """Records whose session ended in ``[start, end)``.

        Partner records are merged with the local store; for the same session
        id the local record wins.  A partner that does not support the query
        leaves only the local records.
        """
        kind = CommandKind.CHARGE_DETAIL_RECORDS

        async def work(ticket: _Ticket) -> CommandResult:
            command = GetChargeDetailRecordsCommand(start, end, provider_id)
            response = await self._exchange(
                ticket, None, command, accept=(PartnerStatus.ACCEPTED, PartnerStatus.NOT_SUPPORTED)
            )
            if isinstance(response, CommandResult):
                return response
            merged: Dict[str, ChargeDetailRecord] = {}
            for record in response.payload.get("records", ()):
                if start <= record.session_end < end and (
                    provider_id is None or record.provider_id == provider_id
                ):
                    merged[record.session_id] = record
            for record in self.lifecycle.records.between(start, end, provider_id):
                merged[record.session_id] = record
            records = sorted(merged.values(), key=lambda r: (r.session_end, r.session_id))
            return CommandResult(kind, Outcome.SUCCESS, records=tuple(records))

        target = (start, end, provider_id)
        return await self._execute(kind, target, None, correlation_id, timeout, cancel, work)

    # -- plumbing ---------------------------------------------------------

    async def _exchange(
        self,
        ticket: _Ticket,
        prior: Optional[SessionState],
        command: PartnerCommand,
        accept: Sequence[PartnerStatus] = (PartnerStatus.ACCEPTED,),
    ) -> Union[RawResponse, CommandResult]:
        """Ask the partner; anything but an accepted reply becomes a result."""

        def failed(outcome: Outcome, message: str) -> CommandResult:
            return CommandResult(
                ticket.kind,
                outcome,
                ticket.entity_id,
                prior_state=prior,
                state=prior,
                message=message,
            )

        if ticket.abandoned:
            return failed(Outcome.CANCELLED, "Caller left before the partner was contacted")

        name = type(command).__name__
        logger.info("→ %s to partner (%s)", name, ticket.entity_id or "-")
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(self.partner.send(command), self.partner_timeout)
        except asyncio.TimeoutError:
            elapsed = time.monotonic() - started
            logger.warning("%s for %s: partner did not answer after %.1fs", name, ticket.entity_id, elapsed)
            return failed(Outcome.TIMEOUT, f"Partner did not answer after {elapsed:.1f}s")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s for %s failed: %s", name, ticket.entity_id, exc)
            return failed(Outcome.ERROR, str(exc) or type(exc).__name__)

        logger.info("← %s.conf: %s", name, response.status.value)
        if response.status not in accept:
            return failed(
                _PARTNER_OUTCOMES[response.status],
                response.message or f"Partner answered {response.status.value}",
            )
        return response

    async def _execute(
        self,
        kind: CommandKind,
        target: Hashable,
        entity_id: Optional[EntityId],
        correlation_id: Optional[str],
        timeout: Optional[float],
        cancel: Optional[asyncio.Event],
        work: Callable[[_Ticket], Awaitable[CommandResult]],
    ) -> CommandResult:
        entry: Optional[_Correlated] = None
        if correlation_id is not None:
            known = self._correlations.get(correlation_id)
            if known is not None:
                if known.kind is not kind or known.target != target:
                    logger.warning(
                        "Correlation id %s reused for %s on %s", correlation_id, kind.value, target
                    )
                    return CommandResult(
                        kind,
                        Outcome.CONFLICT,
                        entity_id,
                        message=(
                            f"Correlation id {correlation_id} belongs to "
                            f"{known.kind.value} on {known.target}"
                        ),
                        correlation_id=correlation_id,
                    )
                self._correlations.move_to_end(correlation_id)
                logger.info("Replaying %s %s", kind.value, correlation_id)
                return await asyncio.shield(known.future)
            entry = _Correlated(kind, target, asyncio.get_running_loop().create_future())
            self._remember(correlation_id, entry)

        ticket = _Ticket(kind, entity_id, correlation_id)
        prior = self.lifecycle.state_of(entity_id) if entity_id is not None else None
        started = time.monotonic()
        logger.info("%s request for %s (correlation=%s)", kind.value, target, correlation_id or "-")
        task = asyncio.create_task(self._guard(ticket, work), name=f"command:{kind.value}")
        try:
            result = await self._wait(ticket, task, prior, timeout, cancel)
        except asyncio.CancelledError:
            result = self._abandon(ticket, task, prior, Outcome.CANCELLED, "Caller was cancelled")
            if entry is not None and not entry.future.done():
                entry.future.set_result(result)
            raise

        result = replace(result, correlation_id=correlation_id).with_runtime(
            time.monotonic() - started
        )
        if entry is not None and not entry.future.done():
            entry.future.set_result(result)
        log = logger.info if result.ok else logger.warning
        log(
            "%s response for %s: %s in %.3fs%s",
            kind.value,
            target,
            result.outcome.value,
            result.runtime,
            f" ({result.message})" if result.message and not result.ok else "",
        )
        return result

    async def _guard(
        self, ticket: _Ticket, work: Callable[[_Ticket], Awaitable[CommandResult]]
    ) -> CommandResult:
        try:
            return await work(ticket)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("%s for %s crashed", ticket.kind.value, ticket.entity_id)
            return CommandResult(
                ticket.kind,
                Outcome.ERROR,
                ticket.entity_id,
                message=str(exc) or type(exc).__name__,
            )

    async def _wait(
        self,
        ticket: _Ticket,
        task: asyncio.Task,
        prior: Optional[SessionState],
        timeout: Optional[float],
        cancel: Optional[asyncio.Event],
    ) -> CommandResult:
        waiters: Set[asyncio.Future] = {task}
        cancelled: Optional[asyncio.Task] = None
        if cancel is not None:
            cancelled = asyncio.create_task(cancel.wait())
            waiters.add(cancelled)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.timeout if timeout is None else timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancelled is not None:
                cancelled.cancel()
        if task in done:
            return task.result()
        if cancelled is not None and cancelled in done:
            return self._abandon(ticket, task, prior, Outcome.CANCELLED, "Cancelled by caller")
        return self._abandon(ticket, task, prior, Outcome.TIMEOUT, "No result before the deadline")

    def _abandon(
        self,
        ticket: _Ticket,
        task: asyncio.Task,
        prior: Optional[SessionState],
        outcome: Outcome,
        message: str,
    ) -> CommandResult:
        """Leave ``task`` running on its own and build the caller's result."""
        ticket.abandoned = True
        self._background.add(task)
        task.add_done_callback(lambda t: self._settled(ticket, t))
        entity_id = ticket.entity_id
        return CommandResult(
            ticket.kind,
            outcome,
            entity_id,
            prior_state=prior,
            state=self.lifecycle.state_of(entity_id) if entity_id is not None else None,
            message=message,
            correlation_id=ticket.correlation_id,
        )

    def _settled(self, ticket: _Ticket, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        result = replace(task.result(), correlation_id=ticket.correlation_id)
        log = logger.info if result.ok else logger.warning
        log(
            "%s for %s settled after the caller left: %s",
            ticket.kind.value,
            ticket.entity_id,
            result.outcome.value,
        )
        if ticket.correlation_id is not None and ticket.correlation_id in self._correlations:
            future = asyncio.get_running_loop().create_future()
            future.set_result(result)
            self._correlations[ticket.correlation_id].future = future
        self.bus.publish(
            CommandSettled(ticket.entity_id, ticket.correlation_id, result, self.clock.now())
        )

    def _remember(self, correlation_id: str, entry: _Correlated) -> None:
        self._correlations[correlation_id] = entry
        while len(self._correlations) > self.cache_size:
            self._correlations.popitem(last=False)

    @property
    def pending(self) -> int:
        """Commands still running after their caller left."""
        return len(self._background)

    async def drain(self) -> None:
        """Wait for every command that outlived its caller."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
