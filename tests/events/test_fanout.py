"""Tests for broadcast fan-out over push connections."""

from __future__ import annotations

import asyncio

import orjson
import pytest

from puppystation.events.bus import ChangeBus
from puppystation.events.fanout import ConnectionRegistry, PushConnection


class FakeViewer:
    def __init__(self, fail_after: int | None = None) -> None:
        self.received: list[dict] = []
        self._fail_after = fail_after

    async def send(self, payload: str) -> None:
        if self._fail_after is not None and len(self.received) >= self._fail_after:
            raise ConnectionError("socket closed")
        self.received.append(orjson.loads(payload))

    @property
    def types(self) -> list[str]:
        return [m["type"] for m in self.received]


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_initial_message_then_queue_in_order():
    registry = ConnectionRegistry()
    viewer = FakeViewer()
    conn = registry.add(viewer.send)
    task = asyncio.create_task(registry.serve(conn, initial={"type": "init", "seq": 0}))

    for i in range(1, 4):
        assert registry.publish({"type": "activity", "seq": i}) == 1
    await _settle()
    registry.remove(conn)
    await task

    assert viewer.types == ["init", "activity", "activity", "activity"]
    assert [m["seq"] for m in viewer.received] == [0, 1, 2, 3]
    assert conn.delivered == 3


@pytest.mark.asyncio
async def test_every_connection_receives_every_message():
    registry = ConnectionRegistry()
    viewers = [FakeViewer() for _ in range(3)]
    conns = [registry.add(v.send) for v in viewers]
    tasks = [asyncio.create_task(registry.serve(c)) for c in conns]

    assert registry.publish({"type": "review", "seq": 1}) == 3
    assert registry.publish({"type": "review-resolved", "seq": 2}) == 3
    await _settle()
    registry.close_all()
    await asyncio.gather(*tasks)

    for viewer in viewers:
        assert viewer.types == ["review", "review-resolved"]
    assert registry.connection_count == 0


@pytest.mark.asyncio
async def test_failing_send_drops_only_that_connection():
    registry = ConnectionRegistry()
    good, bad = FakeViewer(), FakeViewer(fail_after=1)
    good_conn = registry.add(good.send)
    bad_conn = registry.add(bad.send)
    tasks = [
        asyncio.create_task(registry.serve(good_conn)),
        asyncio.create_task(registry.serve(bad_conn)),
    ]

    registry.publish({"type": "activity", "seq": 1})
    registry.publish({"type": "activity", "seq": 2})
    await _settle()

    assert registry.connection_count == 1
    assert not bad_conn.is_open
    assert len(bad.received) == 1

    registry.publish({"type": "activity", "seq": 3})
    await _settle()
    registry.close_all()
    await asyncio.gather(*tasks)
    assert [m["seq"] for m in good.received] == [1, 2, 3]


@pytest.mark.asyncio
async def test_full_queue_drops_connection():
    registry = ConnectionRegistry(queue_size=2)
    stalled = registry.add(FakeViewer().send)

    assert registry.publish({"type": "activity", "seq": 1}) == 1
    assert registry.publish({"type": "activity", "seq": 2}) == 1
    assert registry.publish({"type": "activity", "seq": 3}) == 0
    assert registry.connection_count == 0
    assert not stalled.is_open


@pytest.mark.asyncio
async def test_attach_forwards_bus_changes():
    bus = ChangeBus()
    registry = ConnectionRegistry()
    registry.attach(bus)
    viewer = FakeViewer()
    conn = registry.add(viewer.send)
    task = asyncio.create_task(registry.serve(conn))

    await bus.emit("task_update", {"agentId": "buppy", "task": "Nap"})
    await bus.emit("activity", {"agentId": "buppy"})
    await _settle()
    registry.detach()
    await bus.emit("activity", {"agentId": "buppy"})
    await _settle()
    registry.remove(conn)
    await task

    assert viewer.types == ["task_update", "activity"]
    assert viewer.received[0] == {"type": "task_update", "seq": 1, "agentId": "buppy", "task": "Nap"}
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_closed_connection_refuses_offers():
    conn = PushConnection(FakeViewer().send, queue_size=4)
    conn.close()
    assert conn.offer("{}") is False
    conn.close()
