from datetime import timedelta
from types import MappingProxyType

import pytest

from roamingbridge.core.domain import (
    AdminStatus,
    AuthorizationSet,
    CancellationReason,
    Credential,
    EnergySample,
    LifecycleEvent,
    RecordFlag,
    SessionState,
    StatusKind,
    StatusValue,
    StopReason,
)
from roamingbridge.core.events import SessionStateChanged, StatusChanged
from roamingbridge.core.lifecycle import TRANSITIONS
from roamingbridge.core.results import Outcome
from roamingbridge.errors import UnknownEntity
from roamingbridge.ids import parse_entity_id

from .conftest import T0, Recorder

DRIVER = AuthorizationSet.of(tokens=["TAG-1"])


def drive(lifecycle, entity_id, state):
    """Put ``entity_id`` into ``state`` through regular transitions."""
    if state is SessionState.RESERVED:
        assert lifecycle.reserve(entity_id, duration=timedelta(minutes=30)).ok
    elif state is SessionState.CHARGING:
        assert lifecycle.start_session(entity_id).ok
    elif state is SessionState.FINISHED:
        assert lifecycle.start_session(entity_id).ok
        assert lifecycle.stop_session(entity_id).ok
    assert lifecycle.state_of(entity_id) is state


def fire(lifecycle, entity_id, event):
    if event is LifecycleEvent.RESERVE:
        return lifecycle.reserve(entity_id, duration=timedelta(hours=1), authorization=DRIVER)
    if event is LifecycleEvent.CANCEL_RESERVATION:
        return lifecycle.cancel_reservation(entity_id=entity_id)
    if event is LifecycleEvent.REMOTE_START:
        return lifecycle.start_session(entity_id)
    if event is LifecycleEvent.REMOTE_STOP:
        return lifecycle.stop_session(entity_id)
    if event is LifecycleEvent.METER_VALUE:
        return lifecycle.record_meter_value(entity_id, EnergySample(lifecycle.clock.now(), 100))
    raise AssertionError(event)


STATES = [SessionState.FREE, SessionState.RESERVED, SessionState.CHARGING, SessionState.FINISHED]
COMMANDS = [
    LifecycleEvent.RESERVE,
    LifecycleEvent.CANCEL_RESERVATION,
    LifecycleEvent.REMOTE_START,
    LifecycleEvent.REMOTE_STOP,
    LifecycleEvent.METER_VALUE,
]


def test_registration_records_available(lifecycle, e1):
    assert lifecycle.state_of(e1) is SessionState.FREE
    assert lifecycle.status_of(e1) == StatusValue(StatusKind.AVAILABLE, T0)
    assert list(lifecycle.schedule_of(e1)) == [StatusValue(StatusKind.AVAILABLE, T0)]


@pytest.mark.parametrize("state", STATES)
@pytest.mark.parametrize("event", COMMANDS)
def test_undefined_pairs_are_invalid_transitions(lifecycle, e1, state, event):
    drive(lifecycle, e1, state)
    history = len(lifecycle.schedule_of(e1))

    transition = fire(lifecycle, e1, event)

    if (state, event) in TRANSITIONS:
        assert transition.outcome is not Outcome.INVALID_TRANSITION
    elif (state, event) == (SessionState.CHARGING, LifecycleEvent.REMOTE_START):
        assert transition.outcome is Outcome.CONFLICT
        assert lifecycle.state_of(e1) is SessionState.CHARGING
    else:
        assert transition.outcome is Outcome.INVALID_TRANSITION
        assert transition.previous is transition.current is state
        assert lifecycle.state_of(e1) is state
        assert len(lifecycle.schedule_of(e1)) == history


def test_reserve_start_stop_settles_consumed_energy(lifecycle, clock, records, e1):
    reserved = lifecycle.reserve(e1, start=T0, duration=timedelta(minutes=30), authorization=DRIVER)
    assert reserved.ok
    assert lifecycle.state_of(e1) is SessionState.RESERVED

    clock.advance(minutes=5)
    started = lifecycle.start_session(e1, credential=Credential.token("TAG-1"))
    assert started.ok
    assert started.previous is SessionState.RESERVED
    assert lifecycle.state_of(e1) is SessionState.CHARGING
    assert lifecycle.reservation_of(e1) is None

    clock.advance(minutes=15)
    samples = [
        EnergySample(T0 + timedelta(minutes=5), 0),
        EnergySample(T0 + timedelta(minutes=10), 500),
        EnergySample(T0 + timedelta(minutes=20), 1200),
    ]
    stopped = lifecycle.stop_session(e1, samples=samples)

    assert stopped.ok
    assert stopped.previous is SessionState.CHARGING
    assert lifecycle.state_of(e1) is SessionState.FINISHED
    record = stopped.record
    assert record.consumed_energy == pytest.approx(1.2)
    assert record.session_start == T0 + timedelta(minutes=5)
    assert record.session_end == T0 + timedelta(minutes=20)
    assert record.duration == timedelta(minutes=15)
    assert record.reservation.reservation_id == reserved.reservation.reservation_id
    assert record.stop_reason is StopReason.REMOTE
    assert record.flags == frozenset()
    assert records.get(record.session_id) is record


def test_status_history_follows_the_session(lifecycle, clock, e1):
    lifecycle.reserve(e1, duration=timedelta(minutes=30))
    clock.advance(minutes=1)
    lifecycle.start_session(e1)
    clock.advance(minutes=1)
    lifecycle.stop_session(e1)

    kinds = [value.kind for value in lifecycle.schedule_of(e1)]

    assert kinds[:3] == [StatusKind.AVAILABLE, StatusKind.RESERVED, StatusKind.CHARGING]
    assert kinds[-1] is StatusKind.FINISHING
    assert lifecycle.status_of(e1).kind is StatusKind.FINISHING


def test_decreasing_meter_is_clamped_and_flagged(lifecycle, e1):
    lifecycle.start_session(e1)
    samples = [EnergySample(T0 + timedelta(minutes=m), wh) for m, wh in [(1, 0), (2, 500), (3, 300), (4, 800)]]

    record = lifecycle.stop_session(e1, samples=samples).record

    assert record.consumed_energy == pytest.approx(1.0)
    assert RecordFlag.METER_DECREASED in record.flags


def test_meter_values_recorded_while_charging_count_towards_the_record(lifecycle, clock, e1):
    lifecycle.start_session(e1)
    for minute, wh in [(0, 1000), (10, 1800)]:
        assert lifecycle.record_meter_value(e1, EnergySample(T0 + timedelta(minutes=minute), wh)).ok
    clock.advance(minutes=20)

    record = lifecycle.stop_session(e1, samples=[EnergySample(clock.now(), 2500)]).record

    assert record.consumed_energy == pytest.approx(1.5)
    assert len(record.energy_samples) == 3


def test_reserve_again_with_same_authorization_extends(lifecycle, clock, e1):
    first = lifecycle.reserve(e1, duration=timedelta(minutes=30), authorization=DRIVER)
    clock.advance(minutes=10)

    second = lifecycle.reserve(e1, duration=timedelta(minutes=30), authorization=DRIVER)

    assert second.ok
    assert second.reservation.reservation_id == first.reservation.reservation_id
    assert second.reservation.end == T0 + timedelta(minutes=40)


def test_reserve_again_with_same_id_extends(lifecycle, e1):
    first = lifecycle.reserve(e1, duration=timedelta(minutes=30), authorization=DRIVER)
    other = AuthorizationSet.of(tokens=["TAG-2"])

    second = lifecycle.reserve(
        e1,
        duration=timedelta(hours=1),
        authorization=other,
        reservation_id=first.reservation.reservation_id,
    )

    assert second.ok
    assert second.reservation.authorization == other


def test_reserve_by_someone_else_conflicts(lifecycle, e1):
    first = lifecycle.reserve(e1, duration=timedelta(minutes=30), authorization=DRIVER)

    second = lifecycle.reserve(
        e1, duration=timedelta(minutes=30), authorization=AuthorizationSet.of(tokens=["TAG-2"])
    )

    assert second.outcome is Outcome.CONFLICT
    assert first.reservation.reservation_id in second.message
    assert lifecycle.reservation_of(e1) == first.reservation


def test_reservation_id_cannot_move_between_entities(lifecycle, e1, e2):
    lifecycle.reserve(e1, duration=timedelta(minutes=30), reservation_id="R-1")

    assert lifecycle.reserve(e2, duration=timedelta(minutes=30), reservation_id="R-1").outcome is Outcome.CONFLICT


def test_reserve_rejects_elapsed_or_empty_windows(lifecycle, e1):
    elapsed = lifecycle.reserve(e1, start=T0 - timedelta(hours=2), duration=timedelta(hours=1))
    empty = lifecycle.reserve(e1, duration=timedelta(0))

    assert elapsed.outcome is Outcome.REJECTED
    assert empty.outcome is Outcome.REJECTED
    assert lifecycle.state_of(e1) is SessionState.FREE


def test_start_on_reserved_entity_requires_matching_credential(lifecycle, e1):
    lifecycle.reserve(e1, duration=timedelta(minutes=30), authorization=DRIVER)

    wrong = lifecycle.start_session(e1, credential=Credential.token("TAG-2"))
    missing = lifecycle.start_session(e1)

    assert wrong.outcome is Outcome.REJECTED
    assert missing.outcome is Outcome.REJECTED
    assert lifecycle.state_of(e1) is SessionState.RESERVED


def test_start_respects_reservation_provider(lifecycle, e1):
    lifecycle.reserve(e1, duration=timedelta(minutes=30), provider_id="DE-8PS")

    assert lifecycle.start_session(e1, provider_id="DE-ICE").outcome is Outcome.REJECTED
    assert lifecycle.start_session(e1, provider_id="DE-8PS").ok


def test_start_with_unknown_reservation_id_is_rejected(lifecycle, e1):
    assert lifecycle.start_session(e1, reservation_id="R-404").outcome is Outcome.REJECTED


def test_reservation_expires_lazily(lifecycle, clock, e1):
    lifecycle.reserve(e1, duration=timedelta(minutes=30), authorization=DRIVER)
    clock.advance(minutes=31)

    started = lifecycle.start_session(e1, credential=Credential.token("TAG-2"))

    assert started.ok
    assert started.previous is SessionState.FREE


def test_expire_reservations_frees_due_entities(lifecycle, clock, e1, e2):
    lifecycle.reserve(e1, duration=timedelta(minutes=30))
    lifecycle.reserve(e2, duration=timedelta(hours=2))
    assert lifecycle.next_expiry() == T0 + timedelta(minutes=30)

    clock.advance(minutes=30)
    assert lifecycle.expire_reservations() == []

    clock.advance(seconds=1)
    expired = lifecycle.expire_reservations()

    assert [t.entity_id for t in expired] == [e1]
    assert expired[0].message == CancellationReason.EXPIRED.value
    assert lifecycle.state_of(e1) is SessionState.FREE
    assert lifecycle.state_of(e2) is SessionState.RESERVED
    assert lifecycle.next_expiry() == T0 + timedelta(hours=2)


async def test_sweep_expired_takes_the_entity_lock(lifecycle, clock, e1):
    lifecycle.reserve(e1, duration=timedelta(minutes=1))
    clock.advance(minutes=2)

    expired = await lifecycle.sweep_expired()

    assert len(expired) == 1
    assert not lifecycle.locked(e1).locked()
    assert lifecycle.state_of(e1) is SessionState.FREE


def test_cancel_by_reservation_id(lifecycle, e1):
    reservation = lifecycle.reserve(e1, duration=timedelta(minutes=30)).reservation

    cancelled = lifecycle.cancel_reservation(reservation.reservation_id)

    assert cancelled.ok
    assert cancelled.entity_id == e1
    assert lifecycle.state_of(e1) is SessionState.FREE
    assert lifecycle.find_reservation(reservation.reservation_id) is None


def test_cancel_unknown_reservation(lifecycle, e1):
    lifecycle.reserve(e1, duration=timedelta(minutes=30))

    assert lifecycle.cancel_reservation("R-404").outcome is Outcome.UNKNOWN_TARGET
    assert lifecycle.cancel_reservation("R-404", e1).outcome is Outcome.UNKNOWN_TARGET
    assert lifecycle.state_of(e1) is SessionState.RESERVED


def test_stop_with_wrong_session_id_is_rejected(lifecycle, e1):
    lifecycle.start_session(e1)

    assert lifecycle.stop_session(e1, session_id="S-other").outcome is Outcome.REJECTED
    assert lifecycle.state_of(e1) is SessionState.CHARGING


def test_stop_after_finish_reports_terminal_state(lifecycle, e1):
    drive(lifecycle, e1, SessionState.FINISHED)

    again = lifecycle.stop_session(e1)

    assert again.outcome is Outcome.INVALID_TRANSITION
    assert "already finished" in again.message


def test_unknown_entities(lifecycle):
    stranger = parse_entity_id("DE*GEF*E99")

    assert lifecycle.reserve(stranger).outcome is Outcome.UNKNOWN_TARGET
    assert lifecycle.start_session(stranger).outcome is Outcome.UNKNOWN_TARGET
    assert lifecycle.state_of(stranger) is None
    with pytest.raises(UnknownEntity):
        lifecycle.schedule_of(stranger)
    with pytest.raises(UnknownEntity):
        lifecycle.unregister(stranger)


def test_out_of_service_blocks_commands(lifecycle, e1):
    assert lifecycle.set_admin_status(e1, AdminStatus.OUT_OF_SERVICE).ok

    assert lifecycle.reserve(e1).outcome is Outcome.OUT_OF_SERVICE
    assert lifecycle.start_session(e1).outcome is Outcome.OUT_OF_SERVICE
    assert lifecycle.status_of(e1).kind is StatusKind.OUT_OF_SERVICE

    lifecycle.set_admin_status(e1, AdminStatus.OPERATIONAL)

    assert lifecycle.status_of(e1).kind is StatusKind.AVAILABLE
    assert lifecycle.start_session(e1).ok


def test_internal_use_still_accepts_commands(lifecycle, e1):
    lifecycle.set_admin_status(e1, AdminStatus.INTERNAL_USE)

    assert lifecycle.reserve(e1, duration=timedelta(minutes=5)).ok


def test_out_of_service_cancels_reservation(lifecycle, e1):
    reservation = lifecycle.reserve(e1, duration=timedelta(minutes=30)).reservation

    transition = lifecycle.set_admin_status(e1, AdminStatus.OUT_OF_SERVICE)

    assert transition.previous is SessionState.RESERVED
    assert transition.current is SessionState.FREE
    assert transition.reservation == reservation
    assert lifecycle.find_reservation(reservation.reservation_id) is None


def test_out_of_service_force_finishes_session(lifecycle, records, e1):
    session_id = lifecycle.start_session(e1).session_id

    transition = lifecycle.set_admin_status(e1, AdminStatus.OUT_OF_SERVICE)

    assert transition.current is SessionState.FREE
    assert transition.record.session_id == session_id
    assert transition.record.stop_reason is StopReason.ADMIN
    assert RecordFlag.FORCED in transition.record.flags
    assert records.get(session_id) is transition.record
    assert lifecycle.session_of(e1) is None


def test_fault_overlays_and_clears(lifecycle, clock, e1):
    lifecycle.start_session(e1)
    clock.advance(minutes=1)

    faulted = lifecycle.apply_status(e1, StatusValue(StatusKind.ERROR, clock.now()))
    assert faulted.ok
    assert lifecycle.status_of(e1).kind is StatusKind.ERROR
    assert lifecycle.state_of(e1) is SessionState.CHARGING

    clock.advance(minutes=1)
    assert lifecycle.apply_status(e1, StatusValue(StatusKind.CHARGING, clock.now())).ok
    assert lifecycle.status_of(e1).kind is StatusKind.CHARGING


def test_status_source_cannot_go_back_in_time(lifecycle, clock, e1):
    clock.advance(minutes=10)
    lifecycle.apply_status(e1, StatusValue(StatusKind.AVAILABLE, clock.now()))
    history = len(lifecycle.schedule_of(e1))

    late = lifecycle.apply_status(e1, StatusValue(StatusKind.ERROR, T0 + timedelta(minutes=5)))

    assert late.outcome is Outcome.OUT_OF_ORDER
    assert len(lifecycle.schedule_of(e1)) == history
    assert lifecycle.status_of(e1).kind is StatusKind.AVAILABLE


def test_status_source_must_agree_with_state(lifecycle, clock, e1):
    result = lifecycle.apply_status(e1, StatusValue(StatusKind.CHARGING, clock.now()))

    assert result.outcome is Outcome.INVALID_TRANSITION
    assert lifecycle.state_of(e1) is SessionState.FREE


def test_available_after_finish_releases_the_entity(lifecycle, clock, e1):
    drive(lifecycle, e1, SessionState.FINISHED)
    clock.advance(minutes=1)

    released = lifecycle.apply_status(e1, StatusValue(StatusKind.AVAILABLE, clock.now()))

    assert released.ok
    assert released.previous is SessionState.FINISHED
    assert lifecycle.state_of(e1) is SessionState.FREE
    assert lifecycle.session_of(e1) is None
    assert lifecycle.start_session(e1).ok


def test_snapshot_is_an_immutable_copy(lifecycle, operator, e1, e2):
    snapshot = lifecycle.snapshot()
    lifecycle.start_session(e1)

    assert isinstance(snapshot, MappingProxyType)
    assert snapshot[e1].kind is StatusKind.AVAILABLE
    assert lifecycle.snapshot()[e1].kind is StatusKind.CHARGING
    with pytest.raises(TypeError):
        snapshot[e2] = snapshot[e1]
    assert set(lifecycle.snapshot(operator)) == {e1, e2}
    assert not lifecycle.snapshot(parse_entity_id("+49*822*1").operator_id)


def test_unregister_force_finishes_and_removes(lifecycle, records, e1):
    lifecycle.start_session(e1)

    lifecycle.unregister(e1)

    assert e1 not in lifecycle
    assert e1 not in lifecycle.snapshot()
    assert len(records) == 1


def test_describe(lifecycle, e1):
    reservation = lifecycle.reserve(e1, duration=timedelta(minutes=30)).reservation

    view = lifecycle.describe(e1)

    assert view.state is SessionState.RESERVED
    assert view.admin_status is AdminStatus.OPERATIONAL
    assert view.reservation == reservation
    assert view.session_id is None
    assert lifecycle.describe(parse_entity_id("DE*GEF*E99")) is None


async def test_transitions_are_announced_in_order(lifecycle, bus, e1):
    recorder = Recorder()
    bus.subscribe(recorder)

    lifecycle.start_session(e1)
    lifecycle.stop_session(e1)
    await bus.join()

    states = [(n.old, n.new) for n in recorder.of(SessionStateChanged)]
    assert states == [
        (SessionState.FREE, SessionState.CHARGING),
        (SessionState.CHARGING, SessionState.FINISHING),
        (SessionState.FINISHING, SessionState.FINISHED),
    ]
    statuses = recorder.of(StatusChanged)
    assert statuses[0].old.kind is StatusKind.AVAILABLE
    assert statuses[0].new.kind is StatusKind.CHARGING
