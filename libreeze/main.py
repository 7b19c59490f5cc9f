import asyncio
import logging
import os
import subprocess
import sys
import webbrowser
from typing import Any, Awaitable, Callable, Optional

import typer
from rich.console import Console
from rich.markup import escape

from libreeze.config import settings
from libreeze.errors import LibreezeError
from libreeze.guards import Navigator, auth_guard
from libreeze.library import LibraryService
from libreeze.services.backend import BackendClient
from libreeze.session import SessionStore
from libreeze.ui_helpers import (
    print_books_result,
    print_borrowings_result,
    print_history_result,
    set_output_mode,
)

APP_NAME = "Libreeze CLI"

console = Console()
logger = logging.getLogger(__name__)

app = typer.Typer(help=APP_NAME)

Action = Callable[[LibraryService, SessionStore], Awaitable[Any]]


def _backend() -> BackendClient:
    """Backend client for one CLI invocation."""
    return BackendClient(settings)


async def _session(action: Action) -> Any:
    backend = _backend()
    store = SessionStore(backend)
    try:
        await store.start()
        return await action(LibraryService(backend), store)
    finally:
        await store.close()
        await backend.close()


def _run(action: Action) -> Any:
    try:
        return asyncio.run(_session(action))
    except LibreezeError as e:
        logger.debug("Command failed with %s", type(e).__name__)
        console.print(f"[bold red]Error:[/] {escape(e.message)}")
        raise typer.Exit(code=1)


async def _require_user(store: SessionStore, command: str):
    if not await auth_guard(store, Navigator(), command):
        console.print("[yellow]Not signed in. Run 'libreeze login' first.[/]")
        raise typer.Exit(code=1)
    return store.user.value


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log backend activity"),
):
    """Global CLI options (output mode, logging)."""
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level)
    if output:
        set_output_mode(output)


@app.command("login")
def cli_login(
    email: str,
    password: str = typer.Option(..., prompt=True, hide_input=True),
):
    """Sign in and remember the session for later commands."""
    async def action(service: LibraryService, store: SessionStore):
        return await service.sign_in(email, password)

    session = _run(action)
    console.print(f"[green]Signed in as[/] {escape(session.user.email or session.user.id)}")


@app.command("logout")
def cli_logout():
    """Sign out and forget the stored session."""
    async def action(service: LibraryService, store: SessionStore):
        await service.sign_out()

    _run(action)
    console.print("Signed out.")


@app.command("whoami")
def cli_whoami():
    """Show the signed-in identity and whether it administers a library."""
    async def action(service: LibraryService, store: SessionStore):
        user = await _require_user(store, "whoami")
        return user, await store.admin_status()

    user, is_admin = _run(action)
    role = "admin" if is_admin else "member"
    console.print(f"{user.email or user.id} ({role})", markup=False)


@app.command("books")
def cli_books(term: str = typer.Argument("", help="Text to match in title, author or ISBN")):
    """List the catalog, optionally filtered."""
    async def action(service: LibraryService, store: SessionStore):
        await _require_user(store, "books")
        return await service.get_books(term)

    print_books_result(_run(action))


@app.command("borrowings")
def cli_borrowings():
    """List the books you currently have on loan."""
    async def action(service: LibraryService, store: SessionStore):
        user = await _require_user(store, "borrowings")
        return await service.get_current_borrowings(user.id)

    print_borrowings_result(_run(action))


@app.command("history")
def cli_history():
    """Show your full lending history."""
    async def action(service: LibraryService, store: SessionStore):
        user = await _require_user(store, "history")
        return await service.get_all_lending_history(user.id)

    print_history_result(_run(action))


@app.command("serve")
def cli_serve(
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
    open_browser: bool = typer.Option(True, "--open/--no-open", help="Open the dashboard in a browser"),
):
    """Start the web service with uvicorn.

    Browsers sign in on their own; the session saved by 'libreeze login' is not used.
    """
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/"
    console.print(f"Starting web service on {url}", markup=False)
    if open_browser:
        webbrowser.open(url)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "libreeze.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    subprocess.run(args, env=os.environ.copy())


if __name__ == "__main__":
    app()
