import asyncio

from roamingbridge.core.domain import StatusKind, StatusValue
from roamingbridge.core.events import EventBus, StatusChanged

from .conftest import T0, Recorder


def changed(entity_id, kind=StatusKind.AVAILABLE):
    return StatusChanged(entity_id, None, StatusValue(kind, T0), T0)


async def test_every_subscriber_gets_notifications_in_order(e1):
    bus = EventBus()
    first, second = Recorder(), Recorder()
    bus.subscribe(first)
    bus.subscribe(second)

    sent = [changed(e1, kind) for kind in (StatusKind.AVAILABLE, StatusKind.RESERVED, StatusKind.CHARGING)]
    for notification in sent:
        bus.publish(notification)
    await bus.join()

    assert first.received == sent
    assert second.received == sent
    assert bus.published == 3


async def test_slow_subscriber_drops_oldest_without_blocking(e1):
    bus = EventBus(queue_size=2)
    gate = asyncio.Event()
    seen = []

    class Slow:
        async def notify(self, notification):
            await gate.wait()
            seen.append(notification)

    fast = Recorder()
    slow = bus.subscribe(Slow(), name="slow")
    bus.subscribe(fast, maxsize=100)
    await asyncio.sleep(0)

    sent = [changed(e1) for _ in range(5)]
    for notification in sent:
        bus.publish(notification)
    await asyncio.sleep(0)
    for notification in [changed(e1, StatusKind.CHARGING), changed(e1, StatusKind.FINISHING)]:
        bus.publish(notification)

    assert slow.dropped > 0
    gate.set()
    await bus.join()

    assert seen[-1].new.kind is StatusKind.FINISHING
    assert len(seen) + slow.dropped == 7
    assert len(fast.received) == 7


async def test_failing_subscriber_is_retried_then_counted(e1):
    bus = EventBus(attempts=3, retry_delay=0)
    calls = []

    class Flaky:
        def notify(self, notification):
            calls.append(notification)
            if len(calls) < 3:
                raise RuntimeError("not yet")

    class Broken:
        def notify(self, notification):
            raise RuntimeError("never")

    flaky = bus.subscribe(Flaky())
    broken = bus.subscribe(Broken())
    bus.publish(changed(e1))
    await bus.join()

    assert len(calls) == 3
    assert flaky.delivered == 1 and flaky.failed == 0
    assert broken.failed == 1 and broken.delivered == 0


async def test_subscriptions_made_before_start_deliver_after_start(e1):
    bus = EventBus()
    recorder = Recorder()

    def subscribe_outside_loop():
        return bus.subscribe(recorder)

    subscription = await asyncio.get_running_loop().run_in_executor(None, subscribe_outside_loop)
    bus.publish(changed(e1))
    assert subscription.queued == 1

    await bus.start()
    await bus.join()

    assert len(recorder.received) == 1
    await bus.close()


async def test_unsubscribe_stops_delivery(e1):
    bus = EventBus()
    recorder = Recorder()
    subscription = bus.subscribe(recorder)

    await bus.unsubscribe(subscription)
    bus.publish(changed(e1))
    await asyncio.sleep(0)

    assert recorder.received == []
    assert bus.subscriptions == ()
