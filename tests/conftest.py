from __future__ import annotations

from datetime import datetime, timezone

import pytest

from roamingbridge.clock import ManualClock
from roamingbridge.core.events import EventBus
from roamingbridge.core.lifecycle import SessionLifecycle
from roamingbridge.dispatcher import CommandDispatcher
from roamingbridge.ids import parse_entity_id, parse_operator_id
from roamingbridge.partners.local import LocalPartnerClient
from roamingbridge.store import RecordStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class Recorder:
    """Subscriber that keeps every notification it receives."""

    def __init__(self):
        self.received = []

    def notify(self, notification):
        self.received.append(notification)

    def of(self, kind):
        return [n for n in self.received if isinstance(n, kind)]


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def bus():
    return EventBus(retry_delay=0)


@pytest.fixture
def records():
    return RecordStore()


@pytest.fixture
def operator():
    return parse_operator_id("DE*GEF")


@pytest.fixture
def e1():
    return parse_entity_id("DE*GEF*E1")


@pytest.fixture
def e2():
    return parse_entity_id("DE*GEF*E2")


@pytest.fixture
def lifecycle(bus, clock, records, e1, e2):
    lifecycle = SessionLifecycle(bus=bus, clock=clock, records=records)
    lifecycle.register(e1)
    lifecycle.register(e2)
    return lifecycle


@pytest.fixture
def partner():
    return LocalPartnerClient()


@pytest.fixture
def dispatcher(lifecycle, partner):
    return CommandDispatcher(lifecycle, partner, timeout=1.0, partner_timeout=1.0)
