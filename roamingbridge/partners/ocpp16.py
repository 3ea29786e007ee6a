"""OCPP 1.6 central system acting as the partner for directly connected chargers.

Outbound dispatcher commands become ReserveNow, CancelReservation,
RemoteStartTransaction and RemoteStopTransaction calls.  Inbound
StatusNotification, MeterValues, StartTransaction and StopTransaction messages
feed the session lifecycle.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ocpp.routing import on
from ocpp.v16 import ChargePoint, call, call_result
from ocpp.v16.enums import Action, AuthorizationStatus, ChargePointStatus, RegistrationStatus
from websockets import serve

from .. import config
from ..core.domain import (
    AdminStatus,
    AuthorizationSet,
    Credential,
    EnergySample,
    SessionState,
    StatusKind,
    StatusValue,
    StopReason,
)
from ..core.events import Notification, SessionStateChanged
from ..core.lifecycle import SessionLifecycle
from ..ids import EntityId
from .service import (
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

DEFAULT_ID_TAG = "ROAMING"
DEFAULT_RESERVATION_WINDOW = timedelta(hours=24)

_STATUS_KINDS = {
    ChargePointStatus.available: StatusKind.AVAILABLE,
    ChargePointStatus.preparing: StatusKind.AVAILABLE,
    ChargePointStatus.charging: StatusKind.CHARGING,
    ChargePointStatus.suspended_evse: StatusKind.CHARGING,
    ChargePointStatus.suspended_ev: StatusKind.CHARGING,
    ChargePointStatus.finishing: StatusKind.FINISHING,
    ChargePointStatus.reserved: StatusKind.RESERVED,
    ChargePointStatus.unavailable: StatusKind.OUT_OF_SERVICE,
    ChargePointStatus.faulted: StatusKind.ERROR,
}

# ReservationStatus, CancelReservationStatus and RemoteStartStopStatus share
# these values.
_REPLY_STATUS = {
    "Accepted": PartnerStatus.ACCEPTED,
    "Rejected": PartnerStatus.REJECTED,
    "Occupied": PartnerStatus.OCCUPIED,
    "Faulted": PartnerStatus.FAULTED,
    "Unavailable": PartnerStatus.UNAVAILABLE,
}

_ENERGY_MEASURAND = "Energy.Active.Import.Register"


def _parse_timestamp(ts: Optional[str], default: datetime) -> datetime:
    """Parse an ISO8601 timestamp and fall back to ``default`` on error."""
    if not ts:
        return default
    try:
        value = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable timestamp %r; using %s", ts, default.isoformat())
        return default
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _energy_wh(sampled_values: Iterable[Dict[str, Any]]) -> Optional[float]:
    """Cumulative imported energy in Wh from one MeterValue entry."""
    for sv in sampled_values:
        measurand = sv.get("measurand") or _ENERGY_MEASURAND
        if measurand != _ENERGY_MEASURAND:
            continue
        try:
            value = float(sv.get("value"))
        except (TypeError, ValueError):
            continue
        if sv.get("unit") == "kWh":
            value *= 1000
        return value
    return None


class ConnectorMap:
    """Two-way mapping between EVSE ids and (charge point id, connector id)."""

    def __init__(self, entries: Iterable[Tuple[EntityId, str, int]] = ()) -> None:
        self._by_entity: Dict[EntityId, Tuple[str, int]] = {}
        self._by_connector: Dict[Tuple[str, int], EntityId] = {}
        for entity_id, cp_id, connector_id in entries:
            self.add(entity_id, cp_id, connector_id)

    def __len__(self) -> int:
        return len(self._by_entity)

    def __iter__(self):
        return iter(list(self._by_entity))

    def add(self, entity_id: EntityId, cp_id: str, connector_id: int) -> None:
        self._by_entity[entity_id] = (cp_id, int(connector_id))
        self._by_connector[(cp_id, int(connector_id))] = entity_id

    def locate(self, entity_id: EntityId) -> Optional[Tuple[str, int]]:
        return self._by_entity.get(entity_id)

    def entity_for(self, cp_id: str, connector_id: int) -> Optional[EntityId]:
        return self._by_connector.get((cp_id, int(connector_id)))

    def entities_of(self, cp_id: str) -> List[EntityId]:
        return [entity_id for (cp, _), entity_id in self._by_connector.items() if cp == cp_id]


class CentralSystem(ChargePoint):
    """Connection to one charge point.

    Handlers run inside the websocket read loop, which also delivers the
    replies to our own outbound calls.  They never wait for an entity lock:
    lifecycle updates go to a per-entity queue whose worker applies them in
    arrival order under the lock, and the charger is answered right away.
    """

    def __init__(self, id, connection, backend: "OCPPPartnerClient"):
        super().__init__(id, connection, response_timeout=backend.response_timeout)
        self.backend = backend
        self.connector_status: Dict[int, str] = {}
        self.last_heartbeat: datetime | None = None
        self._inbound: Dict[EntityId, asyncio.Queue] = {}
        self._workers: Dict[EntityId, asyncio.Task] = {}

    @property
    def lifecycle(self) -> SessionLifecycle:
        return self.backend.lifecycle

    def _now(self) -> datetime:
        return self.lifecycle.clock.now()

    def _entity(self, connector_id) -> Optional[EntityId]:
        entity_id = self.backend.connectors.entity_for(self.id, int(connector_id))
        if entity_id is not None and entity_id not in self.lifecycle:
            logger.warning("%s connector %s maps to unregistered %s", self.id, connector_id, entity_id)
            return None
        return entity_id

    # -- inbound queue ----------------------------------------------------

    def _defer(self, entity_id: EntityId, apply: Callable[[], None]) -> None:
        queue = self._inbound.get(entity_id)
        if queue is None:
            queue = self._inbound[entity_id] = asyncio.Queue()
            self._workers[entity_id] = asyncio.create_task(
                self._apply_inbound(entity_id, queue), name=f"ocpp-inbound:{self.id}:{entity_id}"
            )
        queue.put_nowait(apply)

    async def _apply_inbound(self, entity_id: EntityId, queue: asyncio.Queue) -> None:
        while True:
            apply = await queue.get()
            try:
                if entity_id in self.lifecycle:
                    async with self.lifecycle.locked(entity_id):
                        apply()
            except Exception:
                logger.exception("Inbound update from %s for %s failed", self.id, entity_id)
            finally:
                queue.task_done()

    async def flush(self, entity_id: EntityId | None = None) -> None:
        """Wait until queued inbound updates have been applied."""
        if entity_id is not None:
            queue = self._inbound.get(entity_id)
            if queue is not None:
                await queue.join()
            return
        for queue in list(self._inbound.values()):
            await queue.join()

    async def close(self) -> None:
        workers = list(self._workers.values())
        self._workers.clear()
        self._inbound.clear()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    # -- handlers ---------------------------------------------------------

    @on(Action.boot_notification)
    async def on_boot_notification(self, charge_point_model, charge_point_vendor, **kwargs):
        logger.info(
            "← BootNotification from %s: vendor=%s, model=%s",
            self.id,
            charge_point_vendor,
            charge_point_model,
        )
        return call_result.BootNotification(
            current_time=_format_timestamp(self._now()),
            interval=300,
            status=RegistrationStatus.accepted,
        )

    @on(Action.heartbeat)
    def on_heartbeat(self, **kwargs):
        logger.debug("← Heartbeat from %s", self.id)
        self.last_heartbeat = self._now()
        return call_result.Heartbeat(current_time=_format_timestamp(self.last_heartbeat))

    @on(Action.status_notification)
    async def on_status_notification(self, connector_id, error_code, status, **kwargs):
        logger.info(
            "← StatusNotification from %s: connector %s → status=%s, errorCode=%s",
            self.id,
            connector_id,
            status,
            error_code,
        )
        self.connector_status[int(connector_id)] = status
        entity_id = self._entity(connector_id)
        kind = _STATUS_KINDS.get(status)
        if entity_id is None or kind is None:
            return call_result.StatusNotification()
        value = StatusValue(kind, _parse_timestamp(kwargs.get("timestamp"), self._now()))

        def apply() -> None:
            transition = self.lifecycle.apply_status(entity_id, value)
            if not transition.ok:
                logger.warning("Status %s for %s not applied: %s", status, entity_id, transition.message)

        self._defer(entity_id, apply)
        return call_result.StatusNotification()

    @on(Action.meter_values)
    async def on_meter_values(self, connector_id, meter_value, **kwargs):
        entity_id = self._entity(connector_id)
        logger.info("← MeterValues from %s connector %s: %d entries", self.id, connector_id, len(meter_value))
        if entity_id is None:
            return call_result.MeterValues()
        samples = []
        for entry in meter_value:
            sampled = entry.get("sampled_value") or entry.get("sampledValue") or []
            wh = _energy_wh(sampled)
            if wh is not None:
                samples.append(EnergySample(_parse_timestamp(entry.get("timestamp"), self._now()), wh))
        if not samples:
            return call_result.MeterValues()

        def apply() -> None:
            for sample in samples:
                transition = self.lifecycle.record_meter_value(entity_id, sample)
                if not transition.ok:
                    logger.debug("Meter value for %s ignored: %s", entity_id, transition.message)

        self._defer(entity_id, apply)
        return call_result.MeterValues()

    @on(Action.start_transaction)
    async def on_start_transaction(
        self,
        connector_id,
        id_tag,
        meter_start,
        timestamp,
        reservation_id=None,
        **kwargs,
    ):
        logger.info(
            "← StartTransaction from %s: connector=%s, idTag=%s, meterStart=%s",
            self.id,
            connector_id,
            id_tag,
            meter_start,
        )
        entity_id = self._entity(connector_id)
        if entity_id is None:
            tx_id = self.backend.next_transaction_id()
            logger.warning("Connector %s of %s is not mapped; accepting unmanaged", connector_id, self.id)
            return call_result.StartTransaction(
                transaction_id=tx_id,
                id_tag_info={"status": AuthorizationStatus.accepted},
            )
        if self.lifecycle.admin_status_of(entity_id) is AdminStatus.OUT_OF_SERVICE:
            logger.warning("StartTransaction on %s refused: out of service", entity_id)
            return call_result.StartTransaction(
                transaction_id=0,
                id_tag_info={"status": AuthorizationStatus.invalid},
            )

        tx_id = self.backend.next_transaction_id()
        self.backend.open_transaction(tx_id, entity_id)
        started = _parse_timestamp(timestamp, self._now())
        credential = Credential.token(id_tag)
        reserved_as = self.backend.reservation_for(reservation_id)

        def apply() -> None:
            session = self.lifecycle.session_of(entity_id)
            if self.lifecycle.state_of(entity_id) is SessionState.CHARGING and session is not None:
                session_id = session.session_id
            else:
                transition = self.lifecycle.start_session(
                    entity_id, credential=credential, reservation_id=reserved_as
                )
                if not transition.ok:
                    logger.warning(
                        "Transaction %s on %s not tracked: %s", tx_id, entity_id, transition.message
                    )
                    self.backend.release_transaction(tx_id)
                    return
                session_id = transition.session_id
            self.lifecycle.record_meter_value(entity_id, EnergySample(started, float(meter_start)))
            self.backend.bind_transaction(tx_id, session_id)
            logger.info("Transaction %s belongs to session %s", tx_id, session_id)

        self._defer(entity_id, apply)
        logger.info("→ Assign transactionId=%s on %s", tx_id, entity_id)
        return call_result.StartTransaction(
            transaction_id=tx_id,
            id_tag_info={"status": AuthorizationStatus.accepted},
        )

    @on(Action.stop_transaction)
    async def on_stop_transaction(self, transaction_id, meter_stop, timestamp, **kwargs):
        logger.info(
            "← StopTransaction from %s: tx=%s, meterStop=%s", self.id, transaction_id, meter_stop
        )
        tx_id = int(transaction_id)
        entity_id = self.backend.entity_for_transaction(tx_id)
        if entity_id is None:
            logger.debug("Transaction %s from %s is not tracked", tx_id, self.id)
            return call_result.StopTransaction(id_tag_info={"status": AuthorizationStatus.accepted})
        sample = EnergySample(_parse_timestamp(timestamp, self._now()), float(meter_stop))

        def apply() -> None:
            session_id = self.backend.release_transaction(tx_id)
            session = self.lifecycle.session_of(entity_id)
            if session is None or session.session_id != session_id or not session.is_active:
                return
            self.lifecycle.stop_session(
                entity_id,
                session_id=session_id,
                samples=[sample],
                reason=StopReason.LOCAL,
            )

        self._defer(entity_id, apply)
        return call_result.StopTransaction(id_tag_info={"status": AuthorizationStatus.accepted})

    async def send_command(self, request) -> RawResponse:
        name = type(request).__name__
        logger.info("→ %s to %s", name, self.id)
        response = await self.call(request)
        status = getattr(response, "status", None)
        partner_status = _REPLY_STATUS.get(status, PartnerStatus.ERROR)
        if partner_status is not PartnerStatus.ACCEPTED:
            logger.warning("%s rejected by %s: %s", name, self.id, status)
        return RawResponse(partner_status, message=f"{name} {status}")


class OCPPPartnerClient(PartnerClient):
    """Partner client that reaches EVSEs through connected OCPP 1.6 chargers."""

    def __init__(
        self,
        lifecycle: SessionLifecycle,
        connectors: ConnectorMap,
        response_timeout: int = config.OCPP_RESPONSE_TIMEOUT,
    ) -> None:
        self.lifecycle = lifecycle
        self.connectors = connectors
        self.response_timeout = response_timeout
        self.connected: Dict[str, CentralSystem] = {}
        self._tx_counter = itertools.count(1)
        self._reservation_counter = itertools.count(1)
        self._reservation_numbers: Dict[str, int] = {}
        self._reservation_ids: Dict[int, str] = {}
        self._transactions: Dict[int, str] = {}
        self._session_transactions: Dict[str, int] = {}
        self._transaction_entities: Dict[int, EntityId] = {}
        self._subscription = lifecycle.bus.subscribe(self, name="ocpp-reservations")

    def notify(self, notification: Notification) -> None:
        """Forget the OCPP number of a reservation once it has ended."""
        if not isinstance(notification, SessionStateChanged):
            return
        if notification.old is not SessionState.RESERVED or notification.new is SessionState.RESERVED:
            return
        if notification.reservation_id is None:
            return
        number = self._reservation_numbers.pop(notification.reservation_id, None)
        if number is not None:
            self._reservation_ids.pop(number, None)

    async def close(self) -> None:
        await self.lifecycle.bus.unsubscribe(self._subscription)

    # -- bookkeeping shared with the charge point handlers ----------------

    def next_transaction_id(self) -> int:
        return next(self._tx_counter)

    def open_transaction(self, transaction_id: int, entity_id: EntityId) -> None:
        self._transaction_entities[transaction_id] = entity_id

    def entity_for_transaction(self, transaction_id: int) -> Optional[EntityId]:
        return self._transaction_entities.get(transaction_id)

    def bind_transaction(self, transaction_id: int, session_id: str) -> None:
        self._transactions[transaction_id] = session_id
        self._session_transactions[session_id] = transaction_id

    def release_transaction(self, transaction_id: int) -> Optional[str]:
        self._transaction_entities.pop(transaction_id, None)
        session_id = self._transactions.pop(transaction_id, None)
        if session_id is not None:
            self._session_transactions.pop(session_id, None)
        return session_id

    def transaction_for(self, session_id: str) -> Optional[int]:
        return self._session_transactions.get(session_id)

    def reservation_number(self, reservation_id: str) -> int:
        """OCPP reservation ids are integers; assign one per reservation."""
        number = self._reservation_numbers.get(reservation_id)
        if number is None:
            number = next(self._reservation_counter)
            self._reservation_numbers[reservation_id] = number
            self._reservation_ids[number] = reservation_id
        return number

    def reservation_for(self, number: Optional[int]) -> Optional[str]:
        if number is None:
            return None
        return self._reservation_ids.get(int(number))

    # -- PartnerClient ----------------------------------------------------

    def _charge_point(self, entity_id: EntityId) -> Tuple[Optional[CentralSystem], int, str]:
        location = self.connectors.locate(entity_id)
        if location is None:
            return None, 0, f"{entity_id} is not mapped to a charge point"
        cp_id, connector_id = location
        cp = self.connected.get(cp_id)
        if cp is None:
            return None, connector_id, f"ChargePoint '{cp_id}' not connected"
        return cp, connector_id, ""

    async def send(self, command: PartnerCommand) -> RawResponse:
        if isinstance(command, GetChargeDetailRecordsCommand):
            return RawResponse(PartnerStatus.NOT_SUPPORTED, message="OCPP 1.6 has no record query")

        cp, connector_id, problem = self._charge_point(command.entity_id)
        if cp is None:
            return RawResponse(PartnerStatus.UNKNOWN_TARGET, message=problem)

        if isinstance(command, ReserveCommand):
            expiry = command.start + (command.duration or DEFAULT_RESERVATION_WINDOW)
            request = call.ReserveNow(
                connector_id=connector_id,
                expiry_date=_format_timestamp(expiry),
                id_tag=_id_tag_of(command.authorization),
                reservation_id=self.reservation_number(command.reservation_id),
            )
        elif isinstance(command, CancelReservationCommand):
            number = self._reservation_numbers.get(command.reservation_id)
            if number is None:
                return RawResponse(
                    PartnerStatus.UNKNOWN_TARGET,
                    message=f"Reservation {command.reservation_id} was never sent to {cp.id}",
                )
            request = call.CancelReservation(reservation_id=number)
        elif isinstance(command, RemoteStartCommand):
            id_tag = command.credential.value if command.credential else DEFAULT_ID_TAG
            request = call.RemoteStartTransaction(id_tag=id_tag, connector_id=connector_id)
        elif isinstance(command, RemoteStopCommand):
            tx_id = self.transaction_for(command.session_id)
            if tx_id is None:
                # Charger never reported a transaction for this session.
                return RawResponse(
                    PartnerStatus.ACCEPTED,
                    message=f"No transaction on {cp.id} for {command.session_id}",
                )
            request = call.RemoteStopTransaction(transaction_id=tx_id)
        else:
            return RawResponse(PartnerStatus.NOT_SUPPORTED, message=type(command).__name__)

        return await cp.send_command(request)

    # -- websocket server -------------------------------------------------

    async def handler(self, websocket, path=None):
        if path is None:
            try:
                path = websocket.request.path
            except AttributeError:
                path = getattr(websocket, "path", "")
        cp_id = path.rsplit("/", 1)[-1] if path else "UNKNOWN"
        logger.info("[Central] New connection for Charge Point ID: %s", cp_id)

        central = CentralSystem(cp_id, websocket, self)
        self.connected[cp_id] = central
        try:
            await central.start()
        finally:
            if self.connected.get(cp_id) is central:
                del self.connected[cp_id]
            logger.info("[Central] Disconnected: %s", cp_id)
            await central.flush()
            await central.close()
            await self._mark_offline(cp_id)

    async def _mark_offline(self, cp_id: str) -> None:
        now = self.lifecycle.clock.now()
        for entity_id in self.connectors.entities_of(cp_id):
            if entity_id not in self.lifecycle:
                continue
            async with self.lifecycle.locked(entity_id):
                self.lifecycle.apply_status(entity_id, StatusValue(StatusKind.OFFLINE, now))

    async def serve(self, host: str = config.OCPP_HOST, port: int = config.OCPP_PORT) -> None:
        async with serve(self.handler, host=host, port=port, subprotocols=["ocpp1.6"]):
            logger.info("⚡ Central listening on ws://%s:%s/ocpp/<ChargePointID>", host, port)
            await asyncio.Future()


def _id_tag_of(authorization: AuthorizationSet) -> str:
    for values in (authorization.tokens, authorization.account_ids):
        if values:
            return sorted(values)[0]
    return DEFAULT_ID_TAG
