"""
wagate - Command Line Interface

Runs the HTTP gateway and inspects stored sessions. Built with Typer, with
Rich output.

Usage:
    $ wagate --help
    $ wagate serve --port 3000
    $ wagate sessions list
    $ wagate sessions info 6281234567890 --format json
    $ wagate sessions delete 6281234567890 --yes

Sub-command Groups:
    sessions - Inspect and remove stored sessions

The ``sessions`` commands talk to the session store directly and do not
need a running server. Deleting a session here does not stop a live
connection held by a running server; use ``DELETE /api/sessions/{id}``
for that.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

import typer

from wagate import __version__
from wagate.config.settings import settings
from wagate.main import build_store
from wagate.session import InvalidIdentity, normalize_identity
from wagate.store import CredentialStore, StoreError

from .output import (
    console,
    print_error,
    print_json,
    print_success,
    render_counts,
    render_session_detail,
    render_session_list,
)

T = TypeVar("T")

# Create main application
app = typer.Typer(
    name="wagate",
    help="wagate - WhatsApp session gateway",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

sessions_app = typer.Typer(
    name="sessions",
    help="Inspect and remove stored sessions",
    no_args_is_help=True,
)

app.add_typer(sessions_app, name="sessions")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"wagate version {__version__}")
        raise typer.Exit()


def verbose_callback(value: bool) -> None:
    """Set verbose mode."""
    if value:
        logging.basicConfig(level=logging.DEBUG)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        callback=verbose_callback,
        help="Enable verbose output.",
    ),
) -> None:
    """
    wagate - keeps WhatsApp device sessions paired and alive behind an HTTP API.

    Use --help on any subcommand for detailed information.
    """
    pass


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Interface to bind."),
    port: int = typer.Option(3000, "--port", "-p", help="Port to listen on."),
) -> None:
    """Run the HTTP gateway."""
    import uvicorn

    level = settings.LOG_LEVEL.upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    console.print(f"[bold]wagate[/bold] {__version__} listening on {host}:{port}")
    uvicorn.run("wagate.main:app", host=host, port=port, log_level=level.lower())


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------


def open_store() -> CredentialStore:
    """Session store for CLI commands, built from settings."""
    return build_store(settings)


def _run(operation: Callable[[CredentialStore], Awaitable[T]]) -> T:
    async def runner() -> T:
        store = open_store()
        try:
            return await operation(store)
        finally:
            await store.backend.close()

    try:
        return asyncio.run(runner())
    except StoreError as exc:
        print_error("Session store unavailable", details=str(exc), hint="Check REDIS_URL")
        raise typer.Exit(1)


def _identity(value: str) -> str:
    try:
        return normalize_identity(value)
    except InvalidIdentity as exc:
        print_error(str(exc))
        raise typer.Exit(2)


def _check_format(format: str) -> None:
    if format not in ("table", "json"):
        print_error(f"Unknown format '{format}'", hint="Use table or json")
        raise typer.Exit(2)


@sessions_app.command("list")
def list_sessions(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json."),
) -> None:
    """List stored sessions."""
    _check_format(format)

    async def collect(store: CredentialStore) -> list[dict[str, Any]]:
        return [(await store.info(i)).to_dict() for i in sorted(await store.list())]

    sessions = _run(collect)

    if format == "json":
        print_json({"total": len(sessions), "sessions": sessions})
    else:
        render_session_list(sessions)


@sessions_app.command("info")
def session_info(
    identity: str = typer.Argument(..., help="Phone number of the session."),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json."),
) -> None:
    """Show one session's store state."""
    _check_format(format)
    identity = _identity(identity)

    async def fetch(store: CredentialStore) -> dict[str, Any]:
        data = (await store.info(identity)).to_dict()
        data["user_id"] = await store.get_account(identity)
        return data

    data = _run(fetch)

    if format == "json":
        print_json(data)
    else:
        render_session_detail(data)


@sessions_app.command("delete")
def delete_session(
    identity: str = typer.Argument(..., help="Phone number of the session."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """Delete a stored session. The device will need to be linked again."""
    identity = _identity(identity)
    if not yes:
        typer.confirm(f"Delete session {identity}?", abort=True)

    async def remove(store: CredentialStore) -> None:
        await store.delete(identity)

    _run(remove)
    print_success(f"Session {identity} deleted")


@sessions_app.command("stats")
def session_stats(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json."),
) -> None:
    """Count stored and connected sessions."""
    _check_format(format)

    stats = _run(lambda store: store.counts())

    if format == "json":
        print_json(stats)
    else:
        render_counts("Session stats", stats.items())

