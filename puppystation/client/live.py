"""Live client — feeds a Reconciler from the station's push channel and REST API.

Two independent loops:
- push: one websocket at a time; on loss, wait a fixed delay and reconnect,
  forever. The connect-time ``init`` snapshot is applied on every reconnect.
- poll: every few seconds fetch agents, pending reviews and the activity
  feed. Failures are logged and retried on the next tick.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
import orjson
import websockets
from websockets.exceptions import WebSocketException

from puppystation.client.reconciler import Reconciler
from puppystation.types import ActivityRecord, Agent, Review

_logger = logging.getLogger(__name__)


def push_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        return "wss://" + base[len("https://"):] + "/ws"
    if base.startswith("http://"):
        return "ws://" + base[len("http://"):] + "/ws"
    return base + "/ws"


class LiveClient:
    """Drives one Reconciler against one station."""

    def __init__(
        self,
        base_url: str,
        reconciler: Reconciler,
        poll_interval: float = 5.0,
        reconnect_delay: float = 3.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self.reconciler = reconciler
        self._poll_interval = poll_interval
        self._reconnect_delay = reconnect_delay
        self._http = http
        self._owns_http = http is None
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self.connected = False
        self.reconnects = 0
        self.poll_failures = 0

    async def poll_once(self) -> set[str]:
        """Fetch all projections and merge them. Returns the views that re-rendered."""
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self._base_url, timeout=10.0)
        token = self.reconciler.begin_poll()
        try:
            agents_resp, reviews_resp, activity_resp = await asyncio.gather(
                self._http.get("/api/agents"),
                self._http.get("/api/reviews"),
                self._http.get("/api/activities", params={"limit": self.reconciler.activity_limit}),
            )
            for resp in (agents_resp, reviews_resp, activity_resp):
                resp.raise_for_status()
            agents = [Agent(**a) for a in agents_resp.json()]
            reviews = [Review(**r) for r in reviews_resp.json()]
            activities = [ActivityRecord(**a) for a in activity_resp.json()]
        except (httpx.HTTPError, ValueError) as e:
            self.reconciler.abandon_poll(token)
            self.poll_failures += 1
            _logger.warning("Poll failed: %s", e)
            return set()
        return self.reconciler.apply_poll(token, agents=agents, reviews=reviews, activities=activities)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except Exception:
                _logger.exception("Poll merge failed")
            await asyncio.sleep(self._poll_interval)

    async def _push_loop(self) -> None:
        url = push_url(self._base_url)
        while self._running:
            try:
                async with websockets.connect(url) as ws:
                    self.connected = True
                    _logger.info("Push channel connected: %s", url)
                    async for raw in ws:
                        self.reconciler.apply_push(orjson.loads(raw))
            except (OSError, WebSocketException, orjson.JSONDecodeError) as e:
                _logger.info("Push channel lost: %s", e)
            except Exception:
                _logger.exception("Push handling failed, reconnecting")
            finally:
                self.connected = False
            if not self._running:
                break
            self.reconnects += 1
            await asyncio.sleep(self._reconnect_delay)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._push_loop()),
            asyncio.create_task(self._poll_loop()),
        ]

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
