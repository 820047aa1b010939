import asyncio
import json

from plotlink.notification_hub import NotificationHub


class FakeSocket:
    def __init__(self, fail=False, delay=0.0):
        self.fail = fail
        self.delay = delay
        self.received = []
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket closed")
        self.received.append(json.loads(text))


def test_new_observer_gets_greeting_first():
    async def run():
        hub = NotificationHub(greeting=lambda: {"c": "dev", "p": {"path": "/dev/ttyACM0"}})
        ws = FakeSocket()
        await hub.connect(ws)
        await hub.broadcast({"c": "finished"})
        await hub.flush()
        await hub.close()
        return ws

    ws = asyncio.run(run())
    assert ws.accepted
    assert ws.received == [{"c": "dev", "p": {"path": "/dev/ttyACM0"}}, {"c": "finished"}]


def test_failing_observer_does_not_block_others():
    async def run():
        hub = NotificationHub()
        broken, healthy = FakeSocket(fail=True), FakeSocket()
        hub.register(broken)
        hub.register(healthy)
        await hub.broadcast({"c": "progress", "p": {"motionIdx": 0}})
        await hub.broadcast({"c": "progress", "p": {"motionIdx": 1}})
        await hub.flush()
        remaining = hub.active_connections
        await hub.close()
        return healthy, remaining

    healthy, remaining = asyncio.run(run())
    assert [m["p"]["motionIdx"] for m in healthy.received] == [0, 1]
    assert remaining == [healthy]


def test_slow_observer_keeps_order_and_does_not_delay_fast_one():
    async def run():
        hub = NotificationHub()
        slow, fast = FakeSocket(delay=0.05), FakeSocket()
        hub.register(slow)
        hub.register(fast)
        for i in range(5):
            await hub.broadcast({"c": "progress", "p": {"motionIdx": i}})
        await asyncio.sleep(0.01)
        fast_count = len(fast.received)
        await hub.flush()
        await hub.close()
        return slow, fast_count

    slow, fast_count = asyncio.run(run())
    assert fast_count == 5
    assert [m["p"]["motionIdx"] for m in slow.received] == [0, 1, 2, 3, 4]


def test_broadcast_without_observers_is_harmless():
    async def run():
        hub = NotificationHub()
        await hub.broadcast({"c": "cancelled"})
        await hub.flush()

    asyncio.run(run())
