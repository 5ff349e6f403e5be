"""Tests for the ChangeBus."""

from __future__ import annotations

import pytest

from puppystation.events.bus import ChangeBus, ChangeKind, StateChange


@pytest.mark.asyncio
async def test_emit_and_subscribe():
    bus = ChangeBus()
    received: list[StateChange] = []

    async def handler(change: StateChange) -> None:
        received.append(change)

    bus.subscribe("activity", handler)
    await bus.emit(ChangeKind.ACTIVITY, {"agentId": "buppy"}, agent_id="buppy")

    assert len(received) == 1
    assert received[0].kind is ChangeKind.ACTIVITY
    assert received[0].agent_id == "buppy"


@pytest.mark.asyncio
async def test_sequence_strictly_increases():
    bus = ChangeBus()
    changes = [await bus.emit("activity") for _ in range(5)]
    assert [c.seq for c in changes] == [1, 2, 3, 4, 5]
    assert bus.last_seq == 5


@pytest.mark.asyncio
async def test_wildcard_subscription():
    bus = ChangeBus()
    received: list[str] = []

    async def handler(change: StateChange) -> None:
        received.append(change.kind.value)

    bus.subscribe("review*", handler)
    await bus.emit("review")
    await bus.emit("review-resolved")
    await bus.emit("activity")

    assert received == ["review", "review-resolved"]


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = ChangeBus()
    received: list[StateChange] = []

    async def handler(change: StateChange) -> None:
        received.append(change)

    bus.subscribe("*", handler)
    await bus.emit("system")
    bus.unsubscribe("*", handler)
    await bus.emit("system")

    assert len(received) == 1
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    bus = ChangeBus()
    received: list[StateChange] = []

    async def broken(change: StateChange) -> None:
        raise RuntimeError("viewer exploded")

    async def healthy(change: StateChange) -> None:
        received.append(change)

    bus.subscribe("*", broken)
    bus.subscribe("*", healthy)
    change = await bus.emit("activity")

    assert received == [change]


@pytest.mark.asyncio
async def test_unknown_kind_rejected():
    bus = ChangeBus()
    with pytest.raises(ValueError):
        await bus.emit("agent.deleted")
    assert bus.last_seq == 0


def test_to_message_is_flat():
    change = StateChange(
        seq=7,
        kind=ChangeKind.TASK_UPDATE,
        agent_id="zoomie",
        data={"agentId": "zoomie", "task": "Ship it"},
    )
    assert change.to_message() == {
        "type": "task_update",
        "seq": 7,
        "agentId": "zoomie",
        "task": "Ship it",
    }
