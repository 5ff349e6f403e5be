"""Tests for the live client's poll path and reconnect loop."""

from __future__ import annotations

import asyncio

import httpx
import orjson
import pytest
import websockets

from puppystation.client.live import LiveClient, push_url
from puppystation.client.reconciler import ACTIVITIES, AGENTS, REVIEWS, Reconciler

AGENTS_JSON = [
    {"id": "buppy", "name": "Buppy", "emoji": "🐕", "role": "Primary Coordinator",
     "model": "moonshot/kimi-k2.5", "status": "active", "current_task": "Coordinating",
     "updated_at": "2026-03-01T09:00:00.000000Z"},
]
REVIEWS_JSON = [
    {"id": 4, "agent_id": "buppy", "question": "Voice notifications?", "priority": "low",
     "status": "pending", "created_at": "2026-03-01T09:00:01.000000Z", "resolved_at": None,
     "agent_name": "Buppy", "agent_emoji": "🐕"},
]
ACTIVITY_JSON = [
    {"id": 9, "agent_id": "buppy", "type": "command", "description": "Ran heartbeat check",
     "metadata": {"automated": True}, "timestamp": "2026-03-01T09:00:02.000000Z",
     "agent_name": "Buppy", "agent_emoji": "🐕"},
]


def _station_transport(fail: bool = False) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if fail:
            return httpx.Response(500, json={"error": "boom"})
        if request.url.path == "/api/agents":
            return httpx.Response(200, json=AGENTS_JSON)
        if request.url.path == "/api/reviews":
            return httpx.Response(200, json=REVIEWS_JSON)
        if request.url.path == "/api/activities":
            assert request.url.params["limit"] == "7"
            return httpx.Response(200, json=ACTIVITY_JSON)
        return httpx.Response(404, json={"error": "not found"})

    return httpx.MockTransport(handler)


@pytest.mark.parametrize(
    "base, expected",
    [
        ("http://localhost:8080", "ws://localhost:8080/ws"),
        ("https://station.example/", "wss://station.example/ws"),
        ("ws://127.0.0.1:9000", "ws://127.0.0.1:9000/ws"),
    ],
)
def test_push_url(base, expected):
    assert push_url(base) == expected


@pytest.mark.asyncio
async def test_poll_once_merges_projections():
    reconciler = Reconciler(activity_limit=7)
    async with httpx.AsyncClient(transport=_station_transport(), base_url="http://station") as http:
        client = LiveClient("http://station", reconciler, http=http)
        views = await client.poll_once()
        assert views == {AGENTS, REVIEWS, ACTIVITIES}
        assert await client.poll_once() == set()

    assert [a.id for a in reconciler.agents()] == ["buppy"]
    assert [r.id for r in reconciler.reviews()] == [4]
    assert reconciler.activities()[0].metadata == {"automated": True}


@pytest.mark.asyncio
async def test_failed_poll_changes_nothing():
    reconciler = Reconciler(activity_limit=7)
    async with httpx.AsyncClient(transport=_station_transport(fail=True), base_url="http://station") as http:
        client = LiveClient("http://station", reconciler, http=http)
        assert await client.poll_once() == set()

    assert client.poll_failures == 1
    assert reconciler.agents() == []
    assert reconciler._polls_in_flight == {}


@pytest.mark.asyncio
async def test_push_loop_keeps_reconnecting():
    reconciler = Reconciler()
    async with httpx.AsyncClient(transport=_station_transport(fail=True), base_url="http://127.0.0.1:1") as http:
        client = LiveClient("http://127.0.0.1:1", reconciler, poll_interval=60, reconnect_delay=0.01, http=http)
        await client.start()
        for _ in range(100):
            if client.reconnects >= 2:
                break
            await asyncio.sleep(0.02)
        await client.stop()

    assert client.reconnects >= 2
    assert client.connected is False


async def _serve_init(connections: list, messages: list[dict]):
    """Local push endpoint that sends ``messages`` to every connection."""

    async def handler(ws):
        connections.append(ws)
        for message in messages:
            await ws.send(orjson.dumps(message).decode())
        await ws.wait_closed()

    server = await websockets.serve(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, f"http://127.0.0.1:{port}"


async def _wait_for(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.02)


GOOD_INIT = {"type": "init", "seq": 1, "agents": AGENTS_JSON, "reviews": REVIEWS_JSON}


@pytest.mark.asyncio
async def test_malformed_init_does_not_stop_push_loop():
    connections: list = []
    server, base = await _serve_init(connections, [
        {"type": "init", "agents": [{"id": "x"}]},
        GOOD_INIT,
    ])
    reconciler = Reconciler()
    async with httpx.AsyncClient(transport=_station_transport(fail=True), base_url=base) as http:
        client = LiveClient(base, reconciler, poll_interval=60, reconnect_delay=0.01, http=http)
        await client.start()
        await _wait_for(lambda: reconciler.agents())
        running = not client._tasks[0].done()
        await client.stop()
    server.close()
    await server.wait_closed()

    assert running
    assert [a.id for a in reconciler.agents()] == ["buppy"]
    assert client.reconnects == 0


@pytest.mark.asyncio
async def test_renderer_failure_reconnects_instead_of_dying():
    calls: list[str] = []

    def renderer(view, content):
        calls.append(view)
        if len(calls) == 1:
            raise RuntimeError("display went away")

    connections: list = []
    server, base = await _serve_init(connections, [GOOD_INIT])
    reconciler = Reconciler(renderer=renderer)
    async with httpx.AsyncClient(transport=_station_transport(fail=True), base_url=base) as http:
        client = LiveClient(base, reconciler, poll_interval=60, reconnect_delay=0.01, http=http)
        await client.start()
        await _wait_for(lambda: len(connections) >= 2 and REVIEWS in calls)
        running = not client._tasks[0].done()
        await client.stop()
    server.close()
    await server.wait_closed()

    assert running
    assert len(connections) >= 2
    assert client.reconnects >= 1
    assert REVIEWS in calls
