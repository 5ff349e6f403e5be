"""Dashboard — FastAPI REST surface + WebSocket push channel.

`puppystation serve` launches this server at localhost:8080.
REST handlers are thin: they validate the request shape and delegate to
the Store (writes) or the ProjectionReader (reads). Every committed write
reaches open websockets through the ChangeBus and ConnectionRegistry.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from puppystation import __version__
from puppystation.exceptions import (
    ConflictError,
    NotFoundError,
    StationError,
    StorageError,
    ValidationError,
)
from puppystation.station import Station

_logger = logging.getLogger(__name__)

_station: Station | None = None


def configure(station: Station | None) -> None:
    """Install the station the app serves; it is started by the app lifespan."""
    global _station
    _station = station


def get_station() -> Station:
    if _station is None:
        raise StorageError("Station is not configured")
    return _station


@asynccontextmanager
async def _lifespan(app: FastAPI):
    if _station is None:
        configure(Station())
    station = get_station()
    await station.start()
    try:
        yield
    finally:
        await station.stop()


dashboard_app = FastAPI(title="Puppy Station", version=__version__, lifespan=_lifespan)


# ── Error mapping ────────────────────────────────────────────────

_STATUS_BY_ERROR: dict[type[StationError], int] = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    StorageError: 500,
}


@dashboard_app.exception_handler(StationError)
async def _station_error(request: Request, exc: StationError) -> JSONResponse:
    status = next(
        (code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)),
        500,
    )
    if status >= 500:
        _logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"error": str(exc)})


@dashboard_app.exception_handler(RequestValidationError)
async def _request_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": problems or "Invalid request"})


# ── Request payloads ─────────────────────────────────────────────

class AgentPayload(BaseModel):
    id: str
    name: str
    emoji: str = "🐕"
    role: str = "Agent"
    model: str = "unknown"


class TaskPayload(BaseModel):
    task: str


class StatusPayload(BaseModel):
    status: str


class ActivityPayload(BaseModel):
    type: str
    description: str
    metadata: dict[str, Any] | None = None


class ReviewPayload(BaseModel):
    agentId: str
    question: str
    priority: str | None = None


# ── Agents ───────────────────────────────────────────────────────

@dashboard_app.get("/")
async def index() -> HTMLResponse:
    s = get_station().settings
    html = (
        _DASHBOARD_HTML
        .replace("__POLL_MS__", str(int(s.client_poll_interval_seconds * 1000)))
        .replace("__RECONNECT_MS__", str(int(s.client_reconnect_delay_seconds * 1000)))
        .replace("__FEED_LIMIT__", str(s.default_query_limit))
    )
    return HTMLResponse(html)


@dashboard_app.get("/api/agents")
async def list_agents() -> list[dict]:
    agents = await get_station().reader.list_agents()
    return [a.model_dump(mode="json") for a in agents]


@dashboard_app.post("/api/agents", status_code=201)
async def create_agent(payload: AgentPayload) -> dict:
    agent = await get_station().store.create_agent(
        payload.id, payload.name, emoji=payload.emoji, role=payload.role, model=payload.model,
    )
    return agent.model_dump(mode="json")


@dashboard_app.get("/api/agents/{agent_id}")
async def get_agent(agent_id: str) -> dict:
    agent = await get_station().reader.get_agent(agent_id)
    return agent.model_dump(mode="json")


@dashboard_app.get("/api/agents/{agent_id}/activity")
async def agent_activity(agent_id: str, limit: int | None = None) -> list[dict]:
    records = await get_station().reader.agent_activities(agent_id, limit)
    return [r.model_dump(mode="json") for r in records]


@dashboard_app.post("/api/agents/{agent_id}/task")
async def update_task(agent_id: str, payload: TaskPayload) -> dict:
    agent = await get_station().store.update_agent_task(agent_id, payload.task)
    return {"success": True, "task": agent.current_task, "agent": agent.model_dump(mode="json")}


@dashboard_app.post("/api/agents/{agent_id}/status")
async def update_status(agent_id: str, payload: StatusPayload) -> dict:
    agent = await get_station().store.update_agent_status(agent_id, payload.status)
    return {"success": True, "status": agent.status.value, "agent": agent.model_dump(mode="json")}


@dashboard_app.post("/api/agents/{agent_id}/activity", status_code=201)
async def report_activity(agent_id: str, payload: ActivityPayload) -> dict:
    """For external agents reporting their own activity."""
    record = await get_station().store.log_activity(
        agent_id, payload.type, payload.description, payload.metadata or {},
    )
    return {"success": True, "activityId": record.id, "activity": record.model_dump(mode="json")}


@dashboard_app.get("/api/activities")
async def recent_activities(limit: int | None = None) -> list[dict]:
    records = await get_station().reader.recent_activities(limit)
    return [r.model_dump(mode="json") for r in records]


# ── Reviews ──────────────────────────────────────────────────────

@dashboard_app.get("/api/reviews")
async def pending_reviews() -> list[dict]:
    reviews = await get_station().reader.pending_reviews()
    return [r.model_dump(mode="json") for r in reviews]


@dashboard_app.post("/api/reviews", status_code=201)
async def create_review(payload: ReviewPayload) -> dict:
    review = await get_station().store.add_review(payload.agentId, payload.question, payload.priority)
    return review.model_dump(mode="json")


@dashboard_app.get("/api/reviews/{review_id}")
async def get_review(review_id: int) -> dict:
    review = await get_station().reader.get_review(review_id)
    return review.model_dump(mode="json")


@dashboard_app.patch("/api/reviews/{review_id}/resolve")
async def resolve_review(review_id: int) -> dict:
    review = await get_station().store.resolve_review(review_id)
    return {"success": True, "reviewId": review.id, "review": review.model_dump(mode="json")}


# ── System ───────────────────────────────────────────────────────

@dashboard_app.get("/api/system")
async def system_metrics() -> dict:
    return get_station().metrics.sample()


@dashboard_app.get("/api/stats")
async def stats() -> dict:
    station = get_station()
    return {
        "version": __version__,
        **await station.store.stats(),
        "push_connections": station.connections.connection_count,
        "last_seq": station.bus.last_seq,
        "triggers": station.triggers.describe(),
    }


# ── WebSocket push channel ───────────────────────────────────────

async def _drain_incoming(websocket: WebSocket) -> None:
    # Nothing is expected from viewers; reading just detects disconnects.
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


@dashboard_app.websocket("/ws")
async def ws_push(websocket: WebSocket) -> None:
    station = get_station()
    await websocket.accept()

    conn = station.connections.add(websocket.send_text)
    # Read the sequence before the snapshot: every change queued from here
    # on is newer than it, so the viewer applies it on top of the snapshot.
    seq = station.bus.last_seq
    try:
        snapshot = await station.reader.snapshot()
    except StationError as e:
        _logger.error("Snapshot for new push client failed: %s", e)
        station.connections.remove(conn)
        await websocket.close(code=1011)
        return

    sender = asyncio.create_task(
        station.connections.serve(conn, initial={"type": "init", "seq": seq, **snapshot})
    )
    receiver = asyncio.create_task(_drain_incoming(websocket))
    done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    station.connections.remove(conn)
    if sender in done and receiver not in done:
        try:
            await websocket.close()
        except RuntimeError:
            pass


# ── Viewer ───────────────────────────────────────────────────────

_DASHBOARD_HTML = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Puppy Station</title>
<style>
:root { --bg:#f6f4ef; --card:#fff; --text:#1f2328; --muted:#6b7280; --line:#e5e7eb;
        --green:#16a34a; --yellow:#ca8a04; --red:#dc2626; --blue:#2563eb; }
[data-theme="dark"] { --bg:#0f1115; --card:#171a21; --text:#e6e6e6; --muted:#9aa3af; --line:#262b36; }
* { box-sizing: border-box; }
body { margin:0; font:14px/1.45 system-ui,sans-serif; background:var(--bg); color:var(--text); }
header { display:flex; align-items:center; gap:12px; padding:14px 20px; border-bottom:1px solid var(--line); }
header h1 { font-size:18px; margin:0; flex:1; }
#link { font-size:12px; color:var(--muted); }
#link.up::before { content:"● "; color:var(--green); } #link.down::before { content:"● "; color:var(--red); }
main { display:grid; grid-template-columns:2fr 1fr; gap:16px; padding:16px 20px; }
section { background:var(--card); border:1px solid var(--line); border-radius:10px; padding:12px 14px; }
h2 { font-size:13px; text-transform:uppercase; letter-spacing:.05em; color:var(--muted); margin:0 0 10px; }
.grid { display:grid; grid-template-columns:repeat(auto-fill,minmax(220px,1fr)); gap:10px; }
.agent { border:1px solid var(--line); border-radius:8px; padding:10px; }
.agent .top { display:flex; gap:8px; align-items:center; }
.agent .emoji { font-size:22px; } .agent h3 { margin:0; font-size:15px; flex:1; }
.status { font-size:11px; padding:1px 8px; border-radius:9px; background:var(--line); }
.status.active { color:var(--green); } .status.busy { color:var(--yellow); } .status.idle { color:var(--muted); }
.role, .meta { color:var(--muted); font-size:12px; } .task { margin:6px 0; }
.item { display:flex; gap:8px; padding:6px 0; border-bottom:1px solid var(--line); }
.item:last-child { border-bottom:0; } .item .body { flex:1; }
.prio { font-size:11px; font-weight:600; } .prio.high { color:var(--red); } .prio.medium { color:var(--yellow); } .prio.low { color:var(--muted); }
button { font:inherit; font-size:12px; border:1px solid var(--line); background:var(--card); color:var(--text); border-radius:6px; cursor:pointer; }
.empty { color:var(--muted); font-style:italic; }
.bar { height:6px; background:var(--line); border-radius:3px; overflow:hidden; } .bar > div { height:100%; background:var(--blue); }
</style>
</head>
<body>
<header>
  <h1>🐕 Puppy Station</h1>
  <span id="link" class="down">offline</span>
  <button id="themeToggle">theme</button>
</header>
<main>
  <div>
    <section><h2>Agents</h2><div id="agentsGrid" class="grid"></div></section>
    <section style="margin-top:16px"><h2>Recent activity</h2><div id="activityList"></div></section>
  </div>
  <div>
    <section><h2>Pending review</h2><div id="reviewList"></div></section>
    <section style="margin-top:16px"><h2>System</h2>
      <div class="meta">CPU <span id="cpuUsage">-</span></div><div class="bar"><div id="cpuProgress" style="width:0"></div></div>
      <div class="meta" style="margin-top:8px">Memory <span id="memUsage">-</span></div>
    </section>
  </div>
</main>
<script>
const POLL_MS = __POLL_MS__, RECONNECT_MS = __RECONNECT_MS__, FEED_LIMIT = __FEED_LIMIT__;
const PRIO = { high: 1, medium: 2, low: 3 };

/* ── Reconciler state: push bumps the generation; polls merge against it ── */
const st = { agents: new Map(), reviews: new Map(), acts: new Map(), system: null,
             gen: 0, lastSeq: 0, agentPushed: new Map(), reviewPushed: new Map(), resolved: new Map() };
const rendered = {};

function esc(s) { return String(s == null ? '' : s).replace(/[&<>"']/g, c => ({'&':'&amp;','<':'&lt;','>':'&gt;','"':'&quot;',"'":'&#39;'}[c])); }
function ts(v) { return new Date(v).getTime(); }
function putAgent(a) { const cur = st.agents.get(a.id); if (!cur || ts(a.updated_at) >= ts(cur.updated_at)) st.agents.set(a.id, a); }
function putAct(r) { st.acts.set(r.id, r); trimActs(); }
function trimActs() { const keep = new Set(views.activities().map(r => r.id)); for (const id of [...st.acts.keys()]) if (!keep.has(id)) st.acts.delete(id); }

const views = {
  agents: () => [...st.agents.values()].sort((a, b) => a.name.localeCompare(b.name) || a.id.localeCompare(b.id)),
  reviews: () => [...st.reviews.values()].sort((a, b) => ((PRIO[a.priority] || 4) - (PRIO[b.priority] || 4)) || (ts(b.created_at) - ts(a.created_at)) || (b.id - a.id)),
  activities: () => [...st.acts.values()].sort((a, b) => (ts(b.timestamp) - ts(a.timestamp)) || (b.id - a.id)).slice(0, FEED_LIMIT),
  system: () => st.system,
};

function renderChanged(names) {
  for (const name of names) {
    const content = views[name]();
    const key = JSON.stringify(content);
    if (rendered[name] === key) continue;   // structurally equal: skip DOM work
    rendered[name] = key;
    renderers[name](content);
  }
}

function applyPush(m) {
  if (m.type === 'init') { applyInit(m); return; }
  if (typeof m.seq === 'number') { if (m.seq <= st.lastSeq) return; st.lastSeq = m.seq; }
  const g = ++st.gen;
  switch (m.type) {
    case 'activity': putAct(m.activity); renderChanged(['activities']); break;
    case 'task_update': case 'status_update': {
      let a = m.agent;
      if (!a && st.agents.has(m.agentId)) {
        a = { ...st.agents.get(m.agentId), updated_at: m.timestamp };
        if (m.type === 'task_update') { a.current_task = m.task; a.status = 'active'; } else a.status = m.status;
      }
      if (a) { putAgent(a); st.agentPushed.set(a.id, g); renderChanged(['agents']); }
      break;
    }
    case 'review':
      st.reviewPushed.set(m.review.id, g);
      if (!st.resolved.has(m.review.id)) st.reviews.set(m.review.id, m.review);
      if (m.activity) putAct(m.activity);
      renderChanged(['reviews', 'activities']); break;
    case 'review-resolved':
      st.reviews.delete(Number(m.reviewId)); st.resolved.set(Number(m.reviewId), g);
      if (m.activity) putAct(m.activity);
      renderChanged(['reviews', 'activities']); break;
    case 'system': st.system = m.data; renderChanged(['system']); break;
  }
}

/* Connect-time snapshot: stamped like a push, newer than every poll already begun. */
function applyInit(m) {
  const agents = m.agents || [], reviews = m.reviews || [];
  if (!Array.isArray(agents) || !Array.isArray(reviews)) { console.warn('bad init message'); return; }
  if (typeof m.seq === 'number') st.lastSeq = m.seq;
  const g = ++st.gen;
  newestView = pollSeq;
  for (const a of agents) { st.agents.set(a.id, a); st.agentPushed.set(a.id, g); }
  const fresh = new Map(reviews.map(r => [r.id, r]));
  for (const id of st.reviews.keys()) if (!fresh.has(id)) st.resolved.set(id, g);
  for (const id of fresh.keys()) st.reviewPushed.set(id, g);
  st.reviews = fresh;
  pruneStamps();
  renderChanged(['agents', 'reviews']);
}

/* Poll tokens only increase; inflight maps each token to the generation it started at. */
const inflight = new Map();
let pollSeq = 0, newestView = 0, polling = false;
function beginPoll() { const t = ++pollSeq; inflight.set(t, st.gen); return t; }
function finishPoll(t) { inflight.delete(t); pruneStamps(); }
function pruneStamps() {
  const floor = inflight.size ? Math.min(...inflight.values()) : st.gen;
  for (const m of [st.agentPushed, st.reviewPushed, st.resolved]) for (const [k, g] of [...m]) if (g <= floor) m.delete(k);
}
function applyPoll(t, agents, reviews, acts) {
  const started = inflight.has(t) ? inflight.get(t) : st.gen;
  const superseded = t <= newestView;   // an older poll landed late: keep only its activities
  if (!superseded) newestView = t;
  inflight.delete(t);
  const names = [];
  if (agents && !superseded) {
    for (const a of agents) {
      const cur = st.agents.get(a.id);
      if ((st.agentPushed.get(a.id) || 0) > started && cur && ts(cur.updated_at) >= ts(a.updated_at)) continue;
      putAgent(a);
    }
    names.push('agents');
  }
  if (reviews && !superseded) {
    const merged = new Map();
    for (const r of reviews) if ((st.resolved.get(r.id) || 0) <= started) merged.set(r.id, r);
    for (const [id, r] of st.reviews) if (!merged.has(id) && (st.reviewPushed.get(id) || 0) > started) merged.set(id, r);
    st.reviews = merged; names.push('reviews');
  }
  if (acts) { for (const r of acts) st.acts.set(r.id, r); trimActs(); names.push('activities'); }
  pruneStamps();
  renderChanged(names);
}

async function poll() {
  if (polling) return;
  polling = true;
  const t = beginPoll();
  try {
    const [a, r, f] = await Promise.all(['/api/agents', '/api/reviews', '/api/activities?limit=' + FEED_LIMIT]
      .map(u => fetch(u).then(res => { if (!res.ok) throw new Error(u + ' ' + res.status); return res.json(); })));
    applyPoll(t, a, r, f);
  } catch (e) { finishPoll(t); console.warn('poll failed', e); } finally { polling = false; }
}

/* ── Push channel: one connection attempt at a time, fixed backoff ── */
let ws = null, retry = null;
function connect() {
  if (ws || retry) return;
  ws = new WebSocket((location.protocol === 'https:' ? 'wss://' : 'ws://') + location.host + '/ws');
  ws.onopen = () => { const l = document.getElementById('link'); l.className = 'up'; l.textContent = 'live'; };
  ws.onmessage = e => { try { applyPush(JSON.parse(e.data)); } catch (err) { console.warn('bad push message', err); } };
  ws.onclose = () => {
    ws = null; const l = document.getElementById('link'); l.className = 'down'; l.textContent = 'reconnecting';
    retry = setTimeout(() => { retry = null; connect(); }, RECONNECT_MS);
  };
}

/* ── Renderers ── */
const renderers = {
  agents(list) {
    const el = document.getElementById('agentsGrid');
    if (!list.length) { el.innerHTML = '<div class="empty">No agents found</div>'; return; }
    el.innerHTML = list.map(a => '<article class="agent"><div class="top"><span class="emoji">' + esc(a.emoji) + '</span><h3>' + esc(a.name) +
      '</h3><span class="status ' + esc(a.status) + '">' + esc(a.status) + '</span></div><div class="role">' + esc(a.role) +
      '</div><div class="task">🎯 ' + esc(a.current_task || 'No current task') + '</div><div class="meta">🤖 ' + esc(a.model) + '</div></article>').join('');
  },
  reviews(list) {
    const el = document.getElementById('reviewList');
    if (!list.length) { el.innerHTML = '<div class="empty">No questions pending review</div>'; return; }
    el.innerHTML = list.map(r => '<div class="item"><span>' + esc(r.agent_emoji) + '</span><div class="body"><div>' + esc(r.question) +
      '</div><div class="meta">' + esc(r.agent_name) + ' · <span class="prio ' + esc(r.priority) + '">' + esc(r.priority) +
      '</span></div></div><button onclick="resolveReview(' + Number(r.id) + ')">resolve</button></div>').join('');
  },
  activities(list) {
    const el = document.getElementById('activityList');
    if (!list.length) { el.innerHTML = '<div class="empty">No recent activity</div>'; return; }
    el.innerHTML = list.map(a => '<div class="item"><span>' + esc(a.agent_emoji || '🐕') + '</span><div class="body"><div>' + esc(a.description) +
      '</div><div class="meta">' + esc(a.agent_name) + ' · ' + esc(a.type) + ' · ' +
      new Date(a.timestamp).toLocaleTimeString([], { hour: '2-digit', minute: '2-digit' }) + '</div></div></div>').join('');
  },
  system(d) {
    if (!d) return;
    document.getElementById('cpuUsage').textContent = d.cpu.usage + '%';
    document.getElementById('cpuProgress').style.width = Math.min(d.cpu.usage, 100) + '%';
    document.getElementById('memUsage').textContent = d.memory.used + '/' + d.memory.total + ' GB (' + d.memory.percentage + '%)';
  },
};

async function resolveReview(id) {
  const res = await fetch('/api/reviews/' + id + '/resolve', { method: 'PATCH' });
  if (!res.ok) console.warn('resolve failed', res.status);
}

/* ── Boot ── */
if (localStorage.getItem('darkMode') === 'true') document.documentElement.setAttribute('data-theme', 'dark');
document.getElementById('themeToggle').addEventListener('click', () => {
  const dark = document.documentElement.hasAttribute('data-theme');
  if (dark) document.documentElement.removeAttribute('data-theme'); else document.documentElement.setAttribute('data-theme', 'dark');
  localStorage.setItem('darkMode', String(!dark));
});
connect();
poll();
setInterval(poll, POLL_MS);
fetch('/api/system').then(r => r.json()).then(d => { if (!st.system) { st.system = d; renderChanged(['system']); } }).catch(() => {});
</script>
</body>
</html>"""
