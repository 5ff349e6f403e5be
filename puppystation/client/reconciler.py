"""Reconciler — merges push messages and periodic polls into one view.

Push keeps the view fresh; polling every few seconds repairs whatever
push missed. The two race: a poll can be answered from a state older
than a push that has already been applied. Every push therefore bumps a
generation counter and stamps the entities it touched. A poll records
the generation when it starts, and when it lands, anything stamped later
keeps its pushed version. Agents additionally keep the newer
``updated_at``, and a review resolved by a later push is never brought
back by the poll.

Polls are also ordered among themselves. Each gets an increasing token,
and once a poll or a connect-time snapshot has been applied, the agent
and review lists of any poll begun before it are dropped. The snapshot
sent on connect counts as a push for stamping purposes.

After every merge each view is compared with what was last rendered and
only the views whose content differs are handed to the renderer.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Callable, Iterable

from pydantic import ValidationError as ModelError

from puppystation.types import ActivityRecord, Agent, Review

_logger = logging.getLogger(__name__)

AGENTS = "agents"
REVIEWS = "reviews"
ACTIVITIES = "activities"
SYSTEM = "system"
VIEWS = (AGENTS, REVIEWS, ACTIVITIES, SYSTEM)

Renderer = Callable[[str, Any], None]


class Reconciler:
    """Client-side state for one viewer. No I/O; drive it from a transport."""

    def __init__(self, activity_limit: int = 20, renderer: Renderer | None = None) -> None:
        self.activity_limit = activity_limit
        self._renderer = renderer
        self._agents: dict[str, Agent] = {}
        self._reviews: dict[int, Review] = {}
        self._activities: dict[int, ActivityRecord] = {}
        self._system: dict[str, Any] | None = None

        self._generation = 0
        self._agent_pushed: dict[str, int] = {}
        self._review_pushed: dict[int, int] = {}
        self._resolved: dict[int, int] = {}
        self._poll_counter = 0
        self._polls_in_flight: dict[int, int] = {}  # poll token -> generation at start
        self._newest_view = 0

        self._rendered: dict[str, Any] = {}
        self.last_seq = 0
        self.render_counts: Counter[str] = Counter()

    # ── Views ─────────────────────────────────────────────────────

    @property
    def generation(self) -> int:
        return self._generation

    def agents(self) -> list[Agent]:
        return sorted(self._agents.values(), key=lambda a: (a.name, a.id))

    def reviews(self) -> list[Review]:
        return sorted(self._reviews.values(), key=Review.sort_key)

    def activities(self) -> list[ActivityRecord]:
        ordered = sorted(self._activities.values(), key=ActivityRecord.sort_key, reverse=True)
        return ordered[: self.activity_limit]

    @property
    def system(self) -> dict[str, Any] | None:
        return self._system

    def project(self, view: str) -> Any:
        """JSON-ready content of one view, as the renderer receives it."""
        if view == AGENTS:
            return [a.model_dump(mode="json") for a in self.agents()]
        if view == REVIEWS:
            return [r.model_dump(mode="json") for r in self.reviews()]
        if view == ACTIVITIES:
            return [r.model_dump(mode="json") for r in self.activities()]
        if view == SYSTEM:
            return self._system
        raise KeyError(view)

    def _render_changed(self, views: Iterable[str]) -> set[str]:
        changed: set[str] = set()
        for view in views:
            content = self.project(view)
            if view in self._rendered and self._rendered[view] == content:
                continue
            self._rendered[view] = content
            self.render_counts[view] += 1
            changed.add(view)
            if self._renderer is not None:
                self._renderer(view, content)
        return changed

    # ── Merging primitives ────────────────────────────────────────

    def _put_agent(self, agent: Agent) -> None:
        current = self._agents.get(agent.id)
        if current is None or agent.updated_at >= current.updated_at:
            self._agents[agent.id] = agent

    def _put_activity(self, record: ActivityRecord) -> None:
        self._activities[record.id] = record
        if len(self._activities) > self.activity_limit:
            keep = {r.id for r in self.activities()}
            self._activities = {i: r for i, r in self._activities.items() if i in keep}

    # ── Push path ─────────────────────────────────────────────────

    def apply_push(self, message: dict[str, Any]) -> set[str]:
        """Apply one server message. Returns the views that re-rendered."""
        kind = message.get("type")
        seq = message.get("seq")

        if kind == "init":
            return self.apply_init(message)

        if isinstance(seq, int):
            if seq <= self.last_seq:
                _logger.debug("Skipping stale push seq=%d (last=%d)", seq, self.last_seq)
                return set()
            self.last_seq = seq

        self._generation += 1
        gen = self._generation
        try:
            touched = self._apply_kind(kind, message, gen)
        except (KeyError, TypeError, ModelError) as e:
            _logger.warning("Malformed %s message ignored: %s", kind, e)
            return set()
        return self._render_changed(touched)

    def _apply_kind(self, kind: Any, message: dict[str, Any], gen: int) -> set[str]:
        if kind == "activity":
            self._put_activity(ActivityRecord(**message["activity"]))
            return {ACTIVITIES}

        if kind in ("task_update", "status_update"):
            agent_id = message["agentId"]
            if message.get("agent"):
                agent = Agent(**message["agent"])
            elif agent_id in self._agents:
                fields = self._agents[agent_id].model_dump()
                if kind == "task_update":
                    fields.update(current_task=message["task"], status="active")
                else:
                    fields["status"] = message["status"]
                if message.get("timestamp"):
                    fields["updated_at"] = message["timestamp"]
                agent = Agent.model_validate(fields)
            else:
                return set()
            self._put_agent(agent)
            self._agent_pushed[agent_id] = gen
            return {AGENTS}

        if kind == "review":
            review = Review(**message["review"])
            self._review_pushed[review.id] = gen
            if review.id not in self._resolved:
                self._reviews[review.id] = review
            if message.get("activity"):
                self._put_activity(ActivityRecord(**message["activity"]))
            return {REVIEWS, ACTIVITIES}

        if kind == "review-resolved":
            review_id = int(message["reviewId"])
            self._reviews.pop(review_id, None)
            self._resolved[review_id] = gen
            if message.get("activity"):
                self._put_activity(ActivityRecord(**message["activity"]))
            return {REVIEWS, ACTIVITIES}

        if kind == "system":
            self._system = message["data"]
            return {SYSTEM}

        _logger.debug("Ignoring unknown push type %r", kind)
        return set()

    def apply_init(self, message: dict[str, Any]) -> set[str]:
        """Connect-time snapshot: newer than every poll already in flight."""
        try:
            agents = [Agent(**a) for a in message.get("agents", [])]
            reviews = [Review(**r) for r in message.get("reviews", [])]
        except (TypeError, ModelError) as e:
            _logger.warning("Malformed init message ignored: %s", e)
            return set()
        if isinstance(message.get("seq"), int):
            self.last_seq = message["seq"]

        self._generation += 1
        gen = self._generation
        # Polls begun before this snapshot can only carry older state.
        self._newest_view = self._poll_counter
        for agent in agents:
            self._agents[agent.id] = agent
            self._agent_pushed[agent.id] = gen
        fresh = {r.id: r for r in reviews}
        for review_id in self._reviews.keys() - fresh.keys():
            self._resolved[review_id] = gen
        for review_id in fresh:
            self._review_pushed[review_id] = gen
        self._reviews = fresh
        self._prune_stamps()
        return self._render_changed((AGENTS, REVIEWS))

    # ── Poll path ─────────────────────────────────────────────────

    def begin_poll(self) -> int:
        """Mark the start of a poll; pass the token to apply_poll or abandon_poll."""
        self._poll_counter += 1
        token = self._poll_counter
        self._polls_in_flight[token] = self._generation
        return token

    def abandon_poll(self, token: int) -> None:
        self._polls_in_flight.pop(token, None)
        self._prune_stamps()

    def apply_poll(
        self,
        token: int,
        agents: list[Agent] | None = None,
        reviews: list[Review] | None = None,
        activities: list[ActivityRecord] | None = None,
    ) -> set[str]:
        """Merge full projections fetched since ``begin_poll``. Returns re-rendered views.

        A poll that began before the newest applied poll or snapshot only
        contributes activity records; its agent and review lists are dropped.
        """
        started = self._polls_in_flight.pop(token, self._generation)
        superseded = token <= self._newest_view
        if not superseded:
            self._newest_view = token
        views: list[str] = []

        if agents is not None and not superseded:
            for agent in agents:
                if self._agent_pushed.get(agent.id, 0) > started:
                    current = self._agents.get(agent.id)
                    if current is not None and current.updated_at >= agent.updated_at:
                        continue
                self._put_agent(agent)
            views.append(AGENTS)

        if reviews is not None and not superseded:
            merged = {
                r.id: r for r in reviews
                if self._resolved.get(r.id, 0) <= started
            }
            for review_id, review in self._reviews.items():
                if review_id not in merged and self._review_pushed.get(review_id, 0) > started:
                    merged[review_id] = review
            self._reviews = merged
            views.append(REVIEWS)

        if activities is not None:
            for record in activities:
                self._activities[record.id] = record
            keep = {r.id for r in self.activities()}
            self._activities = {i: r for i, r in self._activities.items() if i in keep}
            views.append(ACTIVITIES)

        self._prune_stamps()
        return self._render_changed(views)

    def _prune_stamps(self) -> None:
        # Stamps at or below the oldest outstanding poll can no longer matter.
        floor = min(self._polls_in_flight.values(), default=self._generation)
        for stamps in (self._agent_pushed, self._review_pushed, self._resolved):
            for key in [k for k, g in stamps.items() if g <= floor]:
                del stamps[key]

    def __repr__(self) -> str:
        return (
            f"Reconciler(agents={len(self._agents)}, reviews={len(self._reviews)}, "
            f"activities={len(self._activities)}, generation={self._generation})"
        )
