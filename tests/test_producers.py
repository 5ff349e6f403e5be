"""Tests for the background event producers."""

from __future__ import annotations

import random

import pytest

from puppystation.producers import (
    SYNTHETIC_COMMANDS,
    FileActivityAdapter,
    MetricsSampler,
    SyntheticActivity,
    classify_path,
)
from puppystation.types import ActivityKind


@pytest.mark.parametrize(
    "path, agent_id, kind",
    [
        ("/ws/SOUL.md", "buppy", ActivityKind.SOUL_UPDATE),
        ("/ws/zoomie/IDENTITY.md", "zoomie", ActivityKind.IDENTITY_UPDATE),
        ("/ws/mechly/config.json", "mechly", ActivityKind.CONFIG_UPDATE),
        ("/ws/zoomie/mechly/MEMORY.md", "mechly", ActivityKind.MEMORY_UPDATE),
        ("/ws/notes/plan.md", "buppy", ActivityKind.FILE_UPDATE),
        ("/ws/SOUL-MEMORY.md", "buppy", ActivityKind.MEMORY_UPDATE),
    ],
)
def test_classify_path(path, agent_id, kind):
    assert classify_path(path) == (agent_id, kind)


@pytest.mark.asyncio
async def test_file_activity_adapter_logs_each_change(store, reader):
    adapter = FileActivityAdapter(store)
    await adapter({
        "trigger_kind": "file_watch",
        "changes": {"modified": ["/ws/zoomie/SOUL.md"], "added": ["/ws/todo.md"]},
    })
    assert adapter.logged == 2

    [zoomie] = await reader.agent_activities("zoomie")
    assert zoomie.type == "soul_update"
    assert zoomie.description == "Updated SOUL.md"
    assert zoomie.metadata == {"file": "/ws/zoomie/SOUL.md"}

    [buppy] = await reader.agent_activities("buppy")
    assert buppy.type == "file_update"


@pytest.mark.asyncio
async def test_file_activity_adapter_skips_unknown_agent(db_path):
    from puppystation.store.store import Store

    s = Store(db_path)
    await s.initialize()
    adapter = FileActivityAdapter(s)
    await adapter({"changes": {"modified": ["/ws/SOUL.md"], "added": []}})
    assert adapter.logged == 0
    await s.close()


@pytest.mark.asyncio
async def test_synthetic_activity(store, reader):
    producer = SyntheticActivity(store, reader, rng=random.Random(7))
    for _ in range(3):
        await producer({"trigger_kind": "schedule"})

    feed = await reader.recent_activities()
    assert len(feed) == 3
    for record in feed:
        assert record.type == "command"
        assert record.description in SYNTHETIC_COMMANDS
        assert record.metadata == {"automated": True}


@pytest.fixture
def proc_files(tmp_path):
    stat = tmp_path / "stat"
    meminfo = tmp_path / "meminfo"
    meminfo.write_text(
        "MemTotal:        8388608 kB\n"
        "MemFree:         1048576 kB\n"
        "MemAvailable:    2097152 kB\n"
    )
    return stat, meminfo


def test_metrics_sample(proc_files):
    stat, meminfo = proc_files
    stat.write_text("cpu  100 0 100 700 100 0 0 0 0 0\ncpu0 1 2 3 4\n")
    sampler = MetricsSampler(stat_path=str(stat), meminfo_path=str(meminfo))

    first = sampler.sample()
    assert first["cpu"]["usage"] == 20
    assert first["memory"] == {"used": 6.0, "total": 8.0, "percentage": 75}

    # 100 more jiffies, 50 of them idle.
    stat.write_text("cpu  125 0 125 750 100 0 0 0 0 0\n")
    assert sampler.sample()["cpu"]["usage"] == 50


def test_metrics_sample_without_proc(tmp_path):
    sampler = MetricsSampler(stat_path=str(tmp_path / "x"), meminfo_path=str(tmp_path / "y"))
    sample = sampler.sample()
    assert sample["cpu"]["usage"] == 0
    assert sample["memory"]["percentage"] == 0
    assert sample["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_metrics_pushed_not_persisted(store, bus, recorder, proc_files):
    stat, meminfo = proc_files
    stat.write_text("cpu  1 1 1 1\n")
    sampler = MetricsSampler(bus, stat_path=str(stat), meminfo_path=str(meminfo))
    await sampler({"trigger_kind": "schedule"})

    assert recorder.kinds == ["system"]
    assert recorder.changes[0].data["data"]["memory"]["total"] == 8.0
    assert (await store.stats())["activities"] == 0
