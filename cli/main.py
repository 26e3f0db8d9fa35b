"""Tenant Scheduler CLI: manage tasks, reminders and retries over the HTTP API."""

from __future__ import annotations

import json
import sys

import click
import httpx
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

_STATE_COLOR: dict[str, str] = {
    "enabled": "green",
    "disabled": "yellow",
    "pending": "blue",
    "sent": "dim",
    "retrying": "yellow",
    "succeeded": "green",
    "exhausted": "red",
}

_EVENT_COLOR: dict[str, str] = {
    "rate_limited": "yellow",
    "retry_started": "yellow",
    "retry_exhausted": "red",
    "content_delivered": "green",
    "reminder_delivered": "green",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(state: str) -> str:
    return _STATE_COLOR.get(state, "white")


def _client(url: str) -> httpx.Client:
    return httpx.Client(base_url=url.rstrip("/"), timeout=30)


def _load_file(path: str):
    with open(path) as f:
        return yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {msg}")
    sys.exit(code)


def _detail(resp: httpx.Response) -> str:
    try:
        detail = resp.json().get("detail", resp.text)
    except ValueError:
        return resp.text
    if isinstance(detail, dict):
        return detail.get("message", str(detail))
    return str(detail)


def _check(resp: httpx.Response) -> None:
    if resp.status_code == 404:
        _die(_detail(resp) or "Not found")
    if resp.status_code == 429:
        _die(f"Quota exceeded: {_detail(resp)}", code=2)
    if resp.is_error:
        _die(f"HTTP {resp.status_code}: {_detail(resp)}")


def _tenant_path(obj: dict, suffix: str = "") -> str:
    if not obj.get("tenant"):
        _die("No tenant given; pass --tenant or set SCHEDULER_TENANT")
    return f"/tenants/{obj['tenant']}{suffix}"


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--url", "-u",
    default="http://localhost:8000",
    envvar="SCHEDULER_URL",
    show_default=True,
    help="Scheduler API base URL.",
)
@click.option("--tenant", "-t", envvar="SCHEDULER_TENANT", help="Tenant id.")
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, url: str, tenant: str | None, json_output: bool) -> None:
    """Tenant Scheduler: per-tenant cron tasks, reminders and retries."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["tenant"] = tenant
    ctx.obj["json_output"] = json_output


# ── tasks ─────────────────────────────────────────────────────────────────────


@cli.group("tasks")
def tasks() -> None:
    """Manage scheduled tasks."""


@tasks.command("list")
@click.pass_obj
def tasks_list(obj: dict) -> None:
    """List the tenant's tasks."""
    with _client(obj["url"]) as c:
        resp = c.get(_tenant_path(obj, "/tasks"))
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    if not data:
        click.echo("No tasks found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Task ID", style="cyan")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Cron")
    table.add_column("State")
    table.add_column("Next Run")
    table.add_column("Runs", justify="right")
    for row in data:
        state = "enabled" if row.get("enabled") else "disabled"
        table.add_row(
            row["task_id"],
            row.get("name", ""),
            row.get("kind", ""),
            row.get("cron_expression", ""),
            f"[{_color(state)}]{state}[/]",
            row.get("next_run") or "-",
            str(row.get("execution_count", 0)),
        )
    console.print(table)


@tasks.command("create")
@click.argument("name")
@click.argument("cron_expression")
@click.option("--description", "-d", default="", help="Message delivered by message tasks.")
@click.option(
    "--kind",
    type=click.Choice(["message", "content_check", "reminder_check"]),
    default="message",
    show_default=True,
)
@click.pass_obj
def tasks_create(obj: dict, name: str, cron_expression: str, description: str, kind: str) -> None:
    """Schedule a task.  CRON_EXPRESSION is a quoted 5-field expression."""
    payload = {
        "name": name,
        "cron_expression": cron_expression,
        "description": description,
        "kind": kind,
    }
    with _client(obj["url"]) as c:
        resp = c.post(_tenant_path(obj, "/tasks"), json=payload)
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    click.echo(f"Created  {data['task_id']}  {data['name']}  next: {data.get('next_run') or '-'}")


@tasks.command("apply")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def tasks_apply(obj: dict, file: str) -> None:
    """Create every task listed in a YAML or JSON file.

    \b
    File format (YAML example):
      - name: weekly-content
        cron_expression: "0 8 * * 1"
        kind: content_check
      - name: standup
        cron_expression: "0 9 * * 1-5"
        description: Stand-up in 5 minutes
    """
    entries = _load_file(file)
    if isinstance(entries, dict):
        entries = entries.get("tasks", [])
    created = []
    with _client(obj["url"]) as c:
        for entry in entries:
            resp = c.post(_tenant_path(obj, "/tasks"), json=entry)
            _check(resp)
            created.append(resp.json())

    if obj["json_output"]:
        _echo_json(created)
        return
    for data in created:
        click.echo(f"Created  {data['task_id']}  {data['name']}")


@tasks.command("cancel")
@click.argument("task_id")
@click.pass_obj
def tasks_cancel(obj: dict, task_id: str) -> None:
    """Cancel a task."""
    with _client(obj["url"]) as c:
        resp = c.delete(_tenant_path(obj, f"/tasks/{task_id}"))
    _check(resp)
    click.echo(f"Cancelled  {task_id}")


@tasks.command("enable")
@click.argument("task_id")
@click.pass_obj
def tasks_enable(obj: dict, task_id: str) -> None:
    """Enable a task."""
    with _client(obj["url"]) as c:
        resp = c.post(_tenant_path(obj, f"/tasks/{task_id}/enable"))
    _check(resp)
    click.echo(f"Enabled  {task_id}")


@tasks.command("disable")
@click.argument("task_id")
@click.pass_obj
def tasks_disable(obj: dict, task_id: str) -> None:
    """Disable a task without removing it."""
    with _client(obj["url"]) as c:
        resp = c.post(_tenant_path(obj, f"/tasks/{task_id}/disable"))
    _check(resp)
    click.echo(f"Disabled  {task_id}")


# ── reminders ─────────────────────────────────────────────────────────────────


@cli.group("reminders")
def reminders() -> None:
    """Manage one-off reminders."""


@reminders.command("list")
@click.option("--all", "include_sent", is_flag=True, help="Include reminders already sent.")
@click.pass_obj
def reminders_list(obj: dict, include_sent: bool) -> None:
    """List the tenant's reminders."""
    with _client(obj["url"]) as c:
        resp = c.get(_tenant_path(obj, "/reminders"),
                     params={"include_sent": str(include_sent).lower()})
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    if not data:
        click.echo("No reminders found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Reminder ID", style="cyan")
    table.add_column("When")
    table.add_column("Text")
    table.add_column("State")
    for row in data:
        state = "sent" if row.get("sent") else "pending"
        table.add_row(
            row["reminder_id"],
            row.get("remind_at", ""),
            row.get("text", ""),
            f"[{_color(state)}]{state}[/]",
        )
    console.print(table)


@reminders.command("add")
@click.argument("remind_at")
@click.argument("text")
@click.pass_obj
def reminders_add(obj: dict, remind_at: str, text: str) -> None:
    """Add a reminder.  REMIND_AT is an ISO-8601 timestamp (UTC if no offset)."""
    with _client(obj["url"]) as c:
        resp = c.post(_tenant_path(obj, "/reminders"),
                      json={"text": text, "remind_at": remind_at, "created_by": "cli"})
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    click.echo(f"Added  {data['reminder_id']}  at {data['remind_at']}")


@reminders.command("delete")
@click.argument("reminder_id")
@click.pass_obj
def reminders_delete(obj: dict, reminder_id: str) -> None:
    """Delete a reminder."""
    with _client(obj["url"]) as c:
        resp = c.delete(_tenant_path(obj, f"/reminders/{reminder_id}"))
    _check(resp)
    click.echo(f"Deleted  {reminder_id}")


# ── retries ───────────────────────────────────────────────────────────────────


@cli.group("retries")
def retries() -> None:
    """Inspect and reset content retry states."""


def _retry_state(row: dict) -> str:
    if row.get("succeeded"):
        return "succeeded"
    if row.get("exhausted"):
        return "exhausted"
    return "retrying"


@retries.command("list")
@click.pass_obj
def retries_list(obj: dict) -> None:
    """List retry states per period."""
    with _client(obj["url"]) as c:
        resp = c.get(_tenant_path(obj, "/retries"))
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    if not data:
        click.echo("No retry states.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Period", style="cyan")
    table.add_column("Attempts", justify="right")
    table.add_column("State")
    table.add_column("Next Attempt")
    for row in data:
        state = _retry_state(row)
        table.add_row(
            row["period"],
            f"{row.get('attempt_count', 0)}/{row.get('max_attempts', '?')}",
            f"[{_color(state)}]{state}[/]",
            row.get("next_attempt") or "-",
        )
    console.print(table)


@retries.command("reset")
@click.argument("period")
@click.pass_obj
def retries_reset(obj: dict, period: str) -> None:
    """Forget the retry state of PERIOD (e.g. 2025-W40)."""
    with _client(obj["url"]) as c:
        resp = c.delete(_tenant_path(obj, f"/retries/{period}"))
    _check(resp)
    click.echo(f"Reset  {period}")


# ── events ────────────────────────────────────────────────────────────────────


@cli.command("events")
@click.option("--limit", "-n", type=int, default=0, help="Stop after N events (0 = follow).")
@click.pass_obj
def events(obj: dict, limit: int) -> None:
    """Follow the tenant's audit events (SSE)."""
    url = obj["url"].rstrip("/") + _tenant_path(obj, "/events")
    seen = 0
    try:
        with httpx.Client(timeout=None) as c:
            with c.stream("GET", url) as resp:
                resp.raise_for_status()
                for line in resp.iter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        event = json.loads(line[6:])
                    except json.JSONDecodeError:
                        continue
                    if obj["json_output"]:
                        click.echo(json.dumps(event))
                    else:
                        kind = event.get("event_type", "?")
                        color = _EVENT_COLOR.get(kind, "white")
                        details = " ".join(f"{k}={v}" for k, v in event.get("details", {}).items())
                        console.print(f"{event.get('occurred_at', '')} [{color}]{kind}[/] {details}")
                    seen += 1
                    if limit and seen >= limit:
                        break
    except httpx.ConnectError:
        _die(f"Cannot connect to {obj['url']}")
