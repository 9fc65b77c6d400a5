"""
Tests for the delayed task scheduler and the notification hub.
"""
import asyncio

from chatrelay.services.notification_hub import NotificationHub
from chatrelay.services.scheduler import DelayedTaskScheduler


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.accepted = False
        self.frames: list[dict] = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(data)


async def test_task_runs_after_delay():
    scheduler = DelayedTaskScheduler("test")
    ran = asyncio.Event()

    async def job():
        ran.set()

    scheduler.schedule("k", 0.01, job)
    assert scheduler.is_pending("k")

    await asyncio.wait_for(ran.wait(), timeout=1)
    await asyncio.sleep(0)
    assert not scheduler.is_pending("k")


async def test_cancel_prevents_run():
    scheduler = DelayedTaskScheduler("test")
    calls = []

    async def job():
        calls.append(1)

    scheduler.schedule("k", 0.05, job)
    assert scheduler.cancel("k") is True
    assert scheduler.cancel("k") is False

    await asyncio.sleep(0.1)
    assert calls == []
    assert len(scheduler) == 0


async def test_reschedule_replaces_pending_task():
    scheduler = DelayedTaskScheduler("test")
    calls = []

    async def first():
        calls.append("first")

    async def second():
        calls.append("second")

    scheduler.schedule("k", 0.05, first)
    scheduler.schedule("k", 0.01, second)

    await asyncio.sleep(0.1)
    assert calls == ["second"]


async def test_failing_task_is_logged_not_raised():
    scheduler = DelayedTaskScheduler("test")

    async def boom():
        raise ValueError("bad")

    task = scheduler.schedule("k", 0, boom)
    await task

    assert task.exception() is None
    assert not scheduler.is_pending("k")


async def test_cancel_all_returns_count():
    scheduler = DelayedTaskScheduler("test")

    async def job():
        pass

    for key in ("a", "b", "c"):
        scheduler.schedule(key, 10, job)

    assert sorted(scheduler.pending) == ["a", "b", "c"]
    assert scheduler.cancel_all() == 3
    assert len(scheduler) == 0


async def test_hub_scopes_frames_to_owner():
    hub = NotificationHub()
    mine, theirs = FakeWebSocket(), FakeWebSocket()
    await hub.connect(mine, "owner-1")
    await hub.connect(theirs, "owner-2")

    await hub.publish("session.update", {"sessionId": "s1"}, owner_id="owner-1")

    assert mine.accepted
    assert [f["event"] for f in mine.frames] == ["session.update"]
    assert mine.frames[0]["data"] == {"sessionId": "s1"}
    assert "timestamp" in mine.frames[0]
    assert theirs.frames == []


async def test_hub_broadcast_without_owner():
    hub = NotificationHub()
    a, b = FakeWebSocket(), FakeWebSocket()
    await hub.connect(a, "owner-1")
    await hub.connect(b, "owner-2")

    await hub.publish("session.deleted", {"sessionId": "s1"})

    assert len(a.frames) == 1
    assert len(b.frames) == 1


async def test_hub_drops_failing_socket():
    hub = NotificationHub()
    good, bad = FakeWebSocket(), FakeWebSocket(fail=True)
    await hub.connect(good, "owner-1")
    await hub.connect(bad, "owner-1")
    assert hub.connection_count == 2

    await hub.publish("message", {"id": 1}, owner_id="owner-1")

    assert hub.connection_count == 1
    assert len(good.frames) == 1

    hub.disconnect(good, "owner-1")
    assert hub.active_connections == {}
