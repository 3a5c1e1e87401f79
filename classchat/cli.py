"""ClassChat CLI — inspect the local session and the moderation policy."""

from __future__ import annotations

import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from classchat import __version__

console = Console()


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", default=None, help="YAML config file")
@click.option("--state-dir", default=None, help="Directory holding the session snapshot")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, state_dir: str | None, verbose: bool):
    """ClassChat — anonymous classroom chat.

    Check text against the content policy, show the escalation table and
    inspect the rooms kept in the local session snapshot.
    """
    from classchat.config import load_settings

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    settings = load_settings(config_path)
    if state_dir:
        settings.state_dir = state_dir
    ctx.obj = settings


def _load_snapshot(settings):
    from classchat.storage.snapshot_store import SnapshotStore

    return SnapshotStore(settings.state_dir).load()


# ── Policy ───────────────────────────────────────────────────────────


@main.command()
@click.argument("text")
@click.pass_obj
def check(settings, text: str):
    """Classify TEXT as clean, warning or prohibited."""
    verdict = settings.content_filter.classify(text)
    if verdict.prohibited:
        console.print("[red]prohibited[/] — the message would be removed")
    elif verdict.warning:
        console.print("[yellow]warning[/] — the message may be inappropriate")
    else:
        console.print("[green]clean[/]")


@main.command()
@click.pass_obj
def escalation(settings):
    """Show the violation escalation table."""
    table = Table(title="Escalation")
    table.add_column("Trigger", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Action")
    table.add_column("Duration", justify="right")
    table.add_column("Applies when")

    for rule in settings.escalation.rules.values():
        for step in rule.steps:
            if step.duration_minutes is not None:
                duration = f"{step.duration_minutes} min"
            elif step.action.value == "silence":
                duration = "requested"
            else:
                duration = "-"
            when = f">= {step.min_requested_minutes} min requested" if step.min_requested_minutes else ""
            table.add_row(
                rule.trigger.value,
                str(rule.weight),
                str(step.threshold),
                step.action.value,
                duration,
                when,
            )

    console.print(table)


# ── Session ──────────────────────────────────────────────────────────


@main.command()
@click.pass_obj
def status(settings):
    """Summarize the local session snapshot."""
    from classchat.rooms.registry import RoomRegistry

    snapshot = _load_snapshot(settings)
    stats = RoomRegistry(settings.limits, rooms=snapshot.rooms).stats()

    if snapshot.current_user:
        user = snapshot.current_user
        who = f"{user.display_name} ({user.role.value})"
    else:
        who = "[dim]nobody[/]"
    current = snapshot.current_room_code or "[dim]none[/]"

    lines = [
        f"User:         {who}",
        f"Room:         {current} ({snapshot.membership.value})",
        f"Rooms:        {stats.rooms} ({stats.active_rooms} active)",
        f"Participants: {stats.participants} ({stats.online} online)",
    ]
    console.print(Panel("\n".join(lines), title="ClassChat"))


@main.group()
def rooms():
    """Inspect rooms in the local session snapshot."""


@rooms.command(name="list")
@click.pass_obj
def list_rooms(settings):
    """List all known rooms."""
    snapshot = _load_snapshot(settings)
    if not snapshot.rooms:
        console.print("[yellow]No rooms.[/]")
        return

    table = Table(title=f"Rooms ({len(snapshot.rooms)})")
    table.add_column("Code", style="cyan")
    table.add_column("Name")
    table.add_column("Teacher")
    table.add_column("Active", justify="center")
    table.add_column("Online", justify="right")
    table.add_column("Messages", justify="right")

    for room in sorted(snapshot.rooms, key=lambda r: r.created_at, reverse=True):
        active = "[green]Y[/]" if room.is_active else "[red]N[/]"
        table.add_row(
            room.code,
            room.name,
            room.owner_name or "-",
            active,
            str(room.online_count),
            str(len(room.messages)),
        )

    console.print(table)


@rooms.command()
@click.argument("code")
@click.option("--messages", "-n", default=10, help="Number of recent messages to show")
@click.pass_obj
def show(settings, code: str, messages: int):
    """Show one room: participants, recent messages and the active poll."""
    from classchat.polls.engine import results
    from classchat.rooms.registry import RoomRegistry

    snapshot = _load_snapshot(settings)
    room = RoomRegistry(settings.limits, rooms=snapshot.rooms).find_by_code(code)
    if room is None:
        console.print(f"[red]Room '{code.upper()}' not found.[/]")
        raise SystemExit(1)

    state = "active" if room.is_active else "ended"
    console.print(Panel(f"{room.name} — {room.code} ({state})", title="Room"))

    people = Table(title=f"Participants ({len(room.participants)})")
    people.add_column("Name", style="cyan")
    people.add_column("Role")
    people.add_column("Online", justify="center")
    people.add_column("Violations", justify="right")
    for p in room.participants:
        online = "[green]Y[/]" if p.is_online else "[dim]N[/]"
        people.add_row(p.display_name, p.role.value, online, str(p.violations))
    console.print(people)

    if messages > 0 and room.messages:
        console.print(f"\n[bold]Last {min(messages, len(room.messages))} message(s):[/]")
        for m in room.messages[-messages:]:
            if m.is_system:
                console.print(f"  [dim]{m.text}[/]")
            else:
                console.print(f"  [cyan]{m.author_name}[/]: {m.text}")

    poll = room.active_poll
    if poll is not None:
        table = Table(title=f"Poll: {poll.question} ({poll.total_votes} votes)")
        table.add_column("Option")
        table.add_column("Votes", justify="right")
        table.add_column("%", justify="right")
        for r in results(poll):
            table.add_row(r.option, str(r.votes), f"{r.percentage}%")
        console.print(table)


@main.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def reset(settings, yes: bool):
    """Delete the local session snapshot."""
    from classchat.storage.snapshot_store import SnapshotStore

    if not yes and not click.confirm("Delete the local session?"):
        return
    if SnapshotStore(settings.state_dir).clear():
        console.print("[green]Session cleared.[/]")
    else:
        console.print("[yellow]Nothing to clear.[/]")
