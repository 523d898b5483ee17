"""Anvil CLI — talks to the daemon over HTTP."""

import asyncio
import json
import logging
from typing import List, Optional

import httpx
import typer
from rich.console import Console
from rich.table import Table

from anvil import __version__
from anvil.core.config import get_client_settings
from anvil.workers.agent import WorkerAgent

app = typer.Typer(
    name="anvil",
    help="Build-orchestration worker pool and realtime gateway",
    no_args_is_help=True,
)
console = Console()

STATUS_COLORS = {
    "online": "green",
    "busy": "yellow",
    "draining": "cyan",
    "error": "red",
    "offline": "dim",
}


def _client() -> httpx.Client:
    settings = get_client_settings()
    return httpx.Client(
        base_url=settings.host,
        headers={"Authorization": f"Bearer {settings.api_key}"},
        timeout=120,
    )


def _api(method: str, path: str, **kwargs) -> dict:
    """Make an API call to the daemon."""
    with _client() as client:
        try:
            resp = client.request(method, f"/api/v1{path}", **kwargs)
        except httpx.ConnectError:
            settings = get_client_settings()
            console.print(f"[red]Error:[/red] Cannot connect to Anvil daemon at {settings.host}")
            console.print("Start the daemon with: [bold]anvild[/bold]")
            raise typer.Exit(1)

        if resp.status_code >= 400:
            detail = resp.json().get("detail", resp.text) if resp.headers.get("content-type", "").startswith("application/json") else resp.text
            console.print(f"[red]Error {resp.status_code}:[/red] {detail}")
            raise typer.Exit(1)

        return resp.json()


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


# ─── Worker Commands ───


@app.command()
def workers(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    type: Optional[str] = typer.Option(None, "--type", "-t", help="Filter by worker type"),
):
    """List workers in the pool."""
    params = {}
    if status:
        params["status"] = status
    if type:
        params["type"] = type
    result = _api("GET", "/workers", params=params)

    if not result["workers"]:
        console.print("[dim]No workers registered[/dim]")
        return

    table = Table(title="Workers")
    table.add_column("ID", style="bold")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Tasks")
    table.add_column("Capabilities")
    table.add_column("Last Heartbeat", style="dim")

    for w in result["workers"]:
        table.add_row(
            w["id"],
            w["type"],
            _colored(w["status"]),
            str(len(w["current_tasks"])),
            ", ".join(w["capabilities"]),
            w["last_heartbeat"],
        )

    console.print(table)


@app.command()
def stats():
    """Show pool counts and utilization."""
    result = _api("GET", "/workers/stats")
    console.print(
        f"Workers: [bold]{result['total']}[/bold]  "
        f"online {result['online']}  busy {result['busy']}  "
        f"draining {result['draining']}  error {result['error']}"
    )
    console.print(f"Utilization: [bold]{result['utilization']:.0%}[/bold]")


@app.command()
def spawn(
    type: str = typer.Option("local", "--type", "-t", help="Worker type"),
    capability: Optional[List[str]] = typer.Option(None, "--capability", "-c", help="Task kind (repeatable)"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
):
    """Add a worker to the pool."""
    result = _api("POST", "/workers/register", json={
        "type": type,
        "capabilities": capability or None,
        "name": name,
    })
    worker = result["worker"]
    console.print(f"[green]✓[/green] Spawned worker: [bold]{worker['id']}[/bold] ({worker['type']})")


@app.command()
def drain(
    worker_id: str = typer.Argument(..., help="Worker ID"),
    timeout: float = typer.Option(60.0, "--timeout", help="Seconds to wait for running tasks"),
):
    """Let a worker finish its tasks, then remove it."""
    result = _api("POST", f"/workers/{worker_id}/drain", params={"timeout": timeout})
    console.print(f"[green]✓[/green] Drained worker: [bold]{worker_id}[/bold]")
    if result["failed_tasks"]:
        console.print(f"  [red]Failed tasks:[/red] {', '.join(result['failed_tasks'])}")


@app.command()
def remove(worker_id: str = typer.Argument(..., help="Worker ID")):
    """Stop a worker immediately."""
    result = _api("DELETE", f"/workers/{worker_id}")
    console.print(f"[green]✓[/green] Removed worker: [bold]{worker_id}[/bold]")
    if result["failed_tasks"]:
        console.print(f"  [red]Failed tasks:[/red] {', '.join(result['failed_tasks'])}")


@app.command()
def assign(task_id: str = typer.Argument(..., help="Task ID")):
    """Reserve a worker slot for a task."""
    result = _api("POST", "/workers/assign", json={"task_id": task_id})
    if result["worker_id"]:
        console.print(f"[green]●[/green] {task_id} → [bold]{result['worker_id']}[/bold]")
    else:
        console.print(f"[yellow]●[/yellow] {task_id} pending — no worker capacity")


@app.command()
def release(
    worker_id: str = typer.Argument(..., help="Worker ID"),
    task_id: str = typer.Argument(..., help="Task ID"),
):
    """Free a task slot on a worker."""
    result = _api("POST", f"/workers/{worker_id}/release", json={"task_id": task_id})
    if result["released"]:
        console.print(f"[green]✓[/green] Released {task_id} from {worker_id}")
    else:
        console.print(f"[dim]{worker_id} was not holding {task_id}[/dim]")


@app.command()
def broadcast(
    channel: str = typer.Argument(..., help="Channel name"),
    data: Optional[str] = typer.Option(None, "--data", "-d", help="JSON payload"),
):
    """Push a message to realtime clients subscribed to a channel."""
    payload = json.loads(data) if data else None
    result = _api("POST", "/realtime/broadcast", json={"channel": channel, "data": payload})
    console.print(f"[green]✓[/green] Delivered to {result['recipients']} client(s) on {channel}")


@app.command()
def agent(
    worker_id: Optional[str] = typer.Option(None, "--id", help="Worker ID (default: <hostname>-agent)"),
    type: str = typer.Option("remote", "--type", "-t", help="Worker type"),
    capability: Optional[List[str]] = typer.Option(None, "--capability", "-c", help="Task kind (repeatable)"),
    interval: float = typer.Option(5.0, "--interval", help="Heartbeat interval in seconds"),
):
    """Run a worker agent that registers with the daemon and sends heartbeats."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    settings = get_client_settings()
    worker_agent = WorkerAgent(
        host=settings.host,
        api_key=settings.api_key,
        worker_id=worker_id,
        worker_type=type,
        capabilities=capability,
        heartbeat_interval=interval,
    )

    async def _run():
        async with worker_agent:
            console.print(f"[green]●[/green] Agent {worker_agent.worker_id} registered with {settings.host}")
            await worker_agent.run()

    try:
        asyncio.run(_run())
    except ConnectionError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("[dim]Agent stopped[/dim]")


@app.command()
def version():
    """Show Anvil version."""
    console.print(f"anvil v{__version__}")


@app.command()
def status():
    """Show daemon status."""
    with _client() as client:
        try:
            resp = client.get("/health")
            data = resp.json()
            console.print(f"[green]●[/green] Anvil daemon v{data['version']} — running")
            workers_stats = data.get("workers")
            if workers_stats:
                console.print(
                    f"  Workers: {workers_stats['total']} "
                    f"(utilization {workers_stats['utilization']:.0%})"
                )
            if data.get("realtime_clients") is not None:
                console.print(f"  Realtime clients: {data['realtime_clients']}")
        except httpx.ConnectError:
            settings = get_client_settings()
            console.print(f"[red]●[/red] Daemon not running at {settings.host}")


if __name__ == "__main__":
    app()
