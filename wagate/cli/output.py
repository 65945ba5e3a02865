"""
Rich rendering for wagate CLI commands.

Commands collect plain dicts (``SessionInfo.to_dict()`` shapes) and hand
them here; nothing in this module touches the store.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional

from rich.console import Console
from rich.json import JSON
from rich.table import Table

console = Console()
err_console = Console(stderr=True)


def yes_no(value: bool) -> str:
    return "[green]yes[/green]" if value else "[red]no[/red]"


def render_session_list(sessions: list[dict[str, Any]]) -> None:
    """One row per stored identity."""
    if not sessions:
        console.print("[dim]No stored sessions.[/dim]")
        return

    table = Table(title=f"Sessions ({len(sessions)})")
    table.add_column("Identity", style="cyan")
    table.add_column("Exists")
    table.add_column("Connected")
    table.add_column("Expires in", style="dim")
    for session in sessions:
        table.add_row(
            session["identity"],
            yes_no(session["exists"]),
            yes_no(session["connected"]),
            session["expires_in_human"],
        )
    console.print(table)


def render_session_detail(data: dict[str, Any]) -> None:
    table = Table(title=f"Session {data['identity']}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Exists", yes_no(data["exists"]))
    table.add_row("Connected", yes_no(data["connected"]))
    table.add_row("TTL (s)", str(data["ttl"]))
    table.add_row("Expires in", data["expires_in_human"])
    table.add_row("User", data.get("user_id") or "-")
    console.print(table)


def render_counts(title: str, counts: Iterable[tuple[str, int]]) -> None:
    table = Table(title=title)
    table.add_column("Metric")
    table.add_column("Count", justify="right")
    for name, value in counts:
        table.add_row(name.replace("_", " ").capitalize(), str(value))
    console.print(table)


def print_json(data: Any) -> None:
    console.print(JSON(json.dumps(data, default=str)))


def print_error(message: str, details: Optional[str] = None, hint: Optional[str] = None) -> None:
    """
    Print an error to stderr.

    Args:
        message: What went wrong
        details: Underlying error text, dimmed
        hint: Suggested fix
    """
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    if details:
        err_console.print(f"[dim]{details}[/dim]")
    if hint:
        err_console.print(f"[yellow]Hint:[/yellow] {hint}")


def print_success(message: str) -> None:
    console.print(f"[bold green]Done:[/bold green] {message}")
