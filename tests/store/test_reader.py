"""Tests for the ProjectionReader."""

from __future__ import annotations

import pytest

from puppystation.exceptions import NotFoundError, StorageError, ValidationError
from puppystation.store.reader import ProjectionReader


@pytest.mark.asyncio
async def test_list_agents_sorted_by_name(reader):
    agents = await reader.list_agents()
    assert [a.name for a in agents] == ["Buppy", "Mechly", "Zoomie"]


@pytest.mark.asyncio
async def test_get_agent_not_found(reader):
    with pytest.raises(NotFoundError):
        await reader.get_agent("ghost")


@pytest.mark.asyncio
async def test_agent_activities_unknown_agent(reader):
    with pytest.raises(NotFoundError):
        await reader.agent_activities("ghost")


@pytest.mark.asyncio
async def test_recent_activities_enriched_and_limited(store, reader):
    for i in range(5):
        await store.log_activity("zoomie" if i % 2 else "mechly", "command", f"c{i}")

    feed = await reader.recent_activities(3)
    assert [r.description for r in feed] == ["c4", "c3", "c2"]
    assert {(r.agent_id, r.agent_name) for r in feed} == {("mechly", "Mechly"), ("zoomie", "Zoomie")}


def test_clamp_limit():
    r = ProjectionReader(":memory:", default_limit=20, max_limit=200)
    assert r.clamp_limit(None) == 20
    assert r.clamp_limit(5) == 5
    assert r.clamp_limit(10_000) == 200
    with pytest.raises(ValidationError):
        r.clamp_limit(0)
    with pytest.raises(ValidationError):
        r.clamp_limit(-3)


@pytest.mark.asyncio
async def test_pending_reviews_exclude_resolved(store, reader):
    keep = await store.add_review("buppy", "Keep?", "low")
    gone = await store.add_review("buppy", "Gone?", "high")
    await store.resolve_review(gone.id)

    assert [r.id for r in await reader.pending_reviews()] == [keep.id]
    resolved = await reader.get_review(gone.id)
    assert resolved.status.value == "resolved"
    assert resolved.agent_emoji is not None


@pytest.mark.asyncio
async def test_write_and_paired_activity_visible_together(store, reader):
    review = await store.add_review("mechly", "Visible?", "medium")
    pending = await reader.pending_reviews()
    feed = await reader.agent_activities("mechly", 1)
    assert pending[0].id == review.id
    assert feed[0].metadata["review_id"] == review.id


@pytest.mark.asyncio
async def test_snapshot_shape(store, reader):
    await store.add_review("zoomie", "Snapshot?", "high")
    snap = await reader.snapshot()
    assert set(snap) == {"agents", "reviews"}
    assert [a["id"] for a in snap["agents"]] == ["buppy", "mechly", "zoomie"]
    assert snap["reviews"][0]["question"] == "Snapshot?"
    assert snap["reviews"][0]["created_at"].endswith("Z")


@pytest.mark.asyncio
async def test_reader_rejects_writes(store, reader):
    with pytest.raises(StorageError):
        await reader._fetchall("DELETE FROM agents")


@pytest.mark.asyncio
async def test_closed_reader(db_path):
    r = ProjectionReader(db_path)
    with pytest.raises(StorageError):
        await r.list_agents()
