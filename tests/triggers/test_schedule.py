"""Tests for the schedule trigger and the trigger manager."""

import asyncio

import pytest

from puppystation.triggers.base import TriggerConfig
from puppystation.triggers.manager import TriggerManager
from puppystation.triggers.schedule import ScheduleTrigger


def _schedule(**params) -> TriggerConfig:
    return TriggerConfig(kind="schedule", params=params)


@pytest.mark.asyncio
async def test_schedule_fires_until_max():
    fired = []

    async def handler(data):
        fired.append(data)

    trigger = ScheduleTrigger(_schedule(interval=0.02, max_fires=3), handler)
    await trigger.start()
    await asyncio.sleep(0.3)

    assert not trigger.is_running
    await trigger.stop()

    assert [d["fire_count"] for d in fired] == [1, 2, 3]
    assert trigger.fires == 3
    assert fired[0]["trigger_kind"] == "schedule"
    assert fired[0]["fired_at"].endswith("Z")


@pytest.mark.asyncio
async def test_failing_handler_keeps_loop_alive():
    async def broken(data):
        raise RuntimeError("producer crashed")

    trigger = ScheduleTrigger(_schedule(interval=0.02, max_fires=3), broken)
    await trigger.start()
    await asyncio.sleep(0.3)
    await trigger.stop()

    assert trigger.fires == 3
    assert trigger.failures == 3
    assert trigger.describe()["failures"] == 3


@pytest.mark.asyncio
async def test_stop_cancels_pending_sleep():
    trigger = ScheduleTrigger(_schedule(interval=60))
    await trigger.start()
    assert trigger.is_running
    await trigger.stop()
    assert not trigger.is_running
    assert trigger.fires == 0
    await trigger.stop()


@pytest.mark.asyncio
async def test_manager_register_describe_and_stop_all():
    manager = TriggerManager()
    fired = asyncio.Event()

    async def handler(data):
        fired.set()

    config = TriggerConfig(kind="schedule", description="heartbeat", params={"interval": 0.01})
    await manager.register(config, handler)
    await asyncio.wait_for(fired.wait(), timeout=1)

    [status] = manager.describe()
    assert status["id"] == config.id
    assert status["description"] == "heartbeat"
    assert status["active"] is True
    assert status["fires"] >= 1
    assert status["last_fired_at"] is not None

    await manager.stop_all()
    assert manager.describe() == []
    assert len(manager) == 0


@pytest.mark.asyncio
async def test_manager_rejects_unknown_kind():
    manager = TriggerManager()

    async def handler(data):
        pass

    with pytest.raises(ValueError):
        await manager.register(TriggerConfig(kind="webhook"), handler)
    assert len(manager) == 0


def test_trigger_ids_are_unique():
    assert TriggerConfig(kind="schedule").id != TriggerConfig(kind="schedule").id
