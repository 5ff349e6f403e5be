"""puppystation CLI — run the station and talk to a running one.

`puppystation serve` starts the dashboard; `watch` opens a terminal
viewer kept in sync by push + poll; the rest are one-shot API calls.
"""

from __future__ import annotations

import asyncio

import httpx
import typer
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from puppystation.cli.context import api_call, default_url, error_message, run_async
from puppystation.config import settings

console = Console()

app = typer.Typer(
    name="puppystation",
    help="Puppy Station -- live dashboard for the agent fleet.",
    no_args_is_help=True,
)

_STATUS_STYLE = {"active": "bold green", "busy": "yellow", "idle": "dim"}
_PRIORITY_STYLE = {"high": "bold red", "medium": "yellow", "low": "dim"}

UrlOption = typer.Option(None, "--url", "-u", help="Station base URL (default from PUPPY_HOST/PUPPY_PORT)")


def _call(url: str | None, method: str, path: str, **kwargs):
    try:
        return api_call(url or default_url(), method, path, **kwargs)
    except httpx.HTTPError as e:
        console.print(f"[red]{error_message(e)}[/red]")
        raise typer.Exit(code=1)


# ── Tables ───────────────────────────────────────────────────────

def agents_table(agents: list[dict]) -> Table:
    table = Table(title="Agents", expand=True)
    table.add_column("", width=2)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Role", style="blue")
    table.add_column("Status")
    table.add_column("Current task")
    table.add_column("Model", style="dim")
    for a in agents:
        style = _STATUS_STYLE.get(a["status"], "white")
        table.add_row(
            a.get("emoji") or "",
            a["name"],
            a.get("role") or "",
            f"[{style}]{a['status']}[/{style}]",
            a.get("current_task") or "[dim]-[/dim]",
            a.get("model") or "",
        )
    return table


def reviews_table(reviews: list[dict]) -> Table:
    table = Table(title="Pending review", expand=True)
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Priority")
    table.add_column("Agent", style="cyan")
    table.add_column("Question")
    for r in reviews:
        style = _PRIORITY_STYLE.get(r["priority"], "white")
        table.add_row(
            str(r["id"]),
            f"[{style}]{r['priority']}[/{style}]",
            f"{r.get('agent_emoji') or ''} {r.get('agent_name') or r['agent_id']}",
            r["question"],
        )
    return table


def activity_table(activities: list[dict]) -> Table:
    table = Table(title="Recent activity", expand=True)
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Agent", style="cyan", no_wrap=True)
    table.add_column("Type", style="yellow")
    table.add_column("Description")
    for a in activities:
        table.add_row(
            a["timestamp"][11:19],
            f"{a.get('agent_emoji') or ''} {a.get('agent_name') or a['agent_id']}",
            a["type"],
            a["description"],
        )
    return table


# ── Server commands ──────────────────────────────────────────────

@app.command("serve")
def serve(
    port: int = typer.Option(settings.port, "--port", "-p", help="Port to run on"),
    host: str = typer.Option(settings.host, "--host", help="Host to bind to"),
    no_producers: bool = typer.Option(False, "--no-producers", help="Disable watcher, synthetic activity and metrics"),
):
    """Launch the dashboard server."""
    from puppystation.serve import main

    overrides: dict = {"host": host, "port": port}
    if no_producers:
        overrides.update(file_watch_enabled=False, synthetic_activity_enabled=False, metrics_enabled=False)
    config = settings.model_copy(update=overrides)

    console.print(f"[bold cyan]puppystation[/bold cyan] starting at http://{host}:{port}")
    console.print("[dim]Press Ctrl+C to stop.[/dim]")
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        pass


@app.command("init")
def init():
    """Create the database, apply migrations and seed the fleet."""
    from puppystation.store.seed import seed_fleet
    from puppystation.store.store import Store

    async def _init() -> tuple[bool, dict]:
        store = Store(settings.db_path)
        await store.initialize()
        try:
            seeded = await seed_fleet(store)
            return seeded, await store.stats()
        finally:
            await store.close()

    seeded, counts = run_async(_init())
    note = "seeded the fleet" if seeded else "already provisioned"
    console.print(Panel(
        f"[green]Database ready[/green] ({note})\n"
        f"[dim]{settings.db_path}[/dim]\n\n"
        f"Agents:     {counts['agents']}\n"
        f"Activities: {counts['activities']}\n"
        f"Reviews:    {counts['reviews']} ({counts['pending_reviews']} pending)",
        title="puppystation",
        border_style="cyan",
    ))


@app.command("status")
def status(url: str = UrlOption):
    """Show counts and connections from a running station."""
    s = _call(url, "GET", "/api/stats")
    console.print(Panel(
        f"[bold]puppystation v{s['version']}[/bold]\n\n"
        f"Agents:       {s['agents']}\n"
        f"Activities:   {s['activities']}\n"
        f"Reviews:      {s['reviews']} ({s['pending_reviews']} pending)\n"
        f"Push clients: {s['push_connections']}\n"
        f"Last change:  #{s['last_seq']}\n"
        f"Producers:    {', '.join(t['description'] for t in s['triggers']) or 'none'}",
        title="Station Status",
        border_style="cyan",
    ))


# ── One-shot API commands ────────────────────────────────────────

@app.command("agents")
def agents(url: str = UrlOption):
    """List the fleet."""
    console.print(agents_table(_call(url, "GET", "/api/agents")))


@app.command("activity")
def activity(
    agent_id: str = typer.Argument(None, help="Only this agent's feed"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max records"),
    url: str = UrlOption,
):
    """Show the newest activity, fleet-wide or for one agent."""
    path = f"/api/agents/{agent_id}/activity" if agent_id else "/api/activities"
    console.print(activity_table(_call(url, "GET", path, params={"limit": limit})))


@app.command("reviews")
def reviews(url: str = UrlOption):
    """List pending reviews, most urgent first."""
    items = _call(url, "GET", "/api/reviews")
    if not items:
        console.print("[dim]No questions pending review.[/dim]")
        return
    console.print(reviews_table(items))


@app.command("ask")
def ask(
    agent_id: str = typer.Argument(help="Agent raising the question"),
    question: str = typer.Argument(help="The question"),
    priority: str = typer.Option("medium", "--priority", "-p", help="high | medium | low"),
    url: str = UrlOption,
):
    """Queue a question for review."""
    r = _call(url, "POST", "/api/reviews", json={"agentId": agent_id, "question": question, "priority": priority})
    console.print(f"[green]Review #{r['id']} queued ({r['priority']})[/green]")


@app.command("resolve")
def resolve(review_id: int = typer.Argument(help="Review ID"), url: str = UrlOption):
    """Resolve a pending review."""
    _call(url, "PATCH", f"/api/reviews/{review_id}/resolve")
    console.print(f"[green]Resolved review #{review_id}[/green]")


@app.command("task")
def task(agent_id: str = typer.Argument(help="Agent ID"), text: str = typer.Argument(help="New task"), url: str = UrlOption):
    """Set an agent's current task (marks it active)."""
    _call(url, "POST", f"/api/agents/{agent_id}/task", json={"task": text})
    console.print(f"[green]{agent_id}[/green] -> {text}")


@app.command("set-status")
def set_status(agent_id: str = typer.Argument(help="Agent ID"), value: str = typer.Argument(help="active | idle | busy"), url: str = UrlOption):
    """Change an agent's status."""
    _call(url, "POST", f"/api/agents/{agent_id}/status", json={"status": value})
    console.print(f"[green]{agent_id}[/green] is now {value}")


@app.command("log")
def log(
    agent_id: str = typer.Argument(help="Agent ID"),
    kind: str = typer.Argument(help="Activity type, e.g. command"),
    description: str = typer.Argument(help="What happened"),
    url: str = UrlOption,
):
    """Report an activity on behalf of an agent."""
    r = _call(url, "POST", f"/api/agents/{agent_id}/activity", json={"type": kind, "description": description})
    console.print(f"[green]Logged activity #{r['activityId']}[/green]")


# ── Terminal viewer ──────────────────────────────────────────────

@app.command("watch")
def watch(
    url: str = UrlOption,
    limit: int = typer.Option(15, "--limit", "-n", help="Activity rows to show"),
):
    """Live terminal view kept in sync by push messages and periodic polling."""
    from puppystation.client.live import LiveClient
    from puppystation.client.reconciler import Reconciler

    base = url or default_url()

    async def _watch() -> None:
        reconciler = Reconciler(activity_limit=limit)
        client = LiveClient(
            base,
            reconciler,
            poll_interval=settings.client_poll_interval_seconds,
            reconnect_delay=settings.client_reconnect_delay_seconds,
        )

        def layout() -> Group:
            link = "[green]live[/green]" if client.connected else "[yellow]reconnecting[/yellow]"
            sysinfo = reconciler.system
            cpu = f"cpu {sysinfo['cpu']['usage']}%  mem {sysinfo['memory']['percentage']}%" if sysinfo else ""
            return Group(
                f"[bold cyan]🐕 Puppy Station[/bold cyan]  {base}  {link}  [dim]{cpu}[/dim]",
                agents_table(reconciler.project("agents")),
                reviews_table(reconciler.project("reviews")),
                activity_table(reconciler.project("activities")),
            )

        await client.start()
        try:
            with Live(layout(), console=console, refresh_per_second=4) as live:
                seen = None
                while True:
                    await asyncio.sleep(0.25)
                    # Redraw only when some view actually changed.
                    state = (sum(reconciler.render_counts.values()), client.connected)
                    if state != seen:
                        seen = state
                        live.update(layout())
        finally:
            await client.stop()

    try:
        run_async(_watch())
    except KeyboardInterrupt:
        pass
