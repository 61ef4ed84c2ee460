"""CLI commands for wa-gateway.

Command layout:
- wa-gateway version                      # version and paths
- wa-gateway gateway run [-t TENANT ...]  # run the gateway in the foreground
- wa-gateway status TENANT                # stored session status
- wa-gateway sessions                     # all stored sessions
- wa-gateway messages TENANT PHONE        # message history with one contact
- wa-gateway conversations TENANT         # conversation summaries
- wa-gateway config --show                # print the config file
"""

from __future__ import annotations

import asyncio
import sys
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from wa_gateway import __logo__, __version__
from wa_gateway.bus.events import GatewayEvent, MessageReceived, ScanCodeReady, SessionClosed, SessionConnected
from wa_gateway.config import Config, get_config_path, get_data_dir, load_config
from wa_gateway.engine.base import ProtocolError
from wa_gateway.notify.server import NotificationServer
from wa_gateway.session.manager import SessionManager
from wa_gateway.session.registry import AlreadyActiveError
from wa_gateway.store import PersistenceError, RecordStore, create_store, summarize_conversations

console = Console()

LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level:8}</level> | {message}"


# ============================================================================
# Helpers
# ============================================================================

def setup_logging(config: Config, verbose: bool = False) -> None:
    """Configure loguru sinks from the config."""
    level = "DEBUG" if verbose else config.log_level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
    if config.log_file:
        logger.add(config.log_file, level=level, rotation="10 MB", encoding="utf-8")


def _load() -> Config:
    """Load the config for a one-shot command; only warnings are logged."""
    logger.remove()
    logger.add(sys.stderr, level="WARNING", format=LOG_FORMAT)
    return load_config()


def _with_store(config: Config, func):
    """Run ``func(store)`` against the configured store, then close it."""
    async def runner():
        store = create_store(config)
        try:
            return await func(store)
        finally:
            await store.close()

    try:
        return asyncio.run(runner())
    except PersistenceError as e:
        console.print(f"[red]Store error: {e}[/red]")
        raise typer.Exit(1)


def _status_style(status: str) -> str:
    if status == "connected":
        return "green"
    if status in ("initializing", "awaiting_scan"):
        return "yellow"
    return "red"


# ============================================================================
# Main command
# ============================================================================

app = typer.Typer(
    name="wa-gateway",
    help=f"{__logo__} wa-gateway - Per-tenant WhatsApp session gateway",
    no_args_is_help=True,
    add_completion=False,
)


def _version_callback(value: bool):
    if value:
        console.print(f"{__logo__} wa-gateway v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", is_eager=True, callback=_version_callback),
) -> None:
    """wa-gateway - WhatsApp sessions for CRM advisors."""
    pass


@app.command()
def version():
    """Show version information."""
    console.print(f"[bold cyan]{__logo__}[/bold cyan] wa-gateway [green]v{__version__}[/green]")
    console.print()
    console.print(f"  Python:     {sys.version.split()[0]}")
    console.print(f"  Platform:   {sys.platform}")
    console.print(f"  Config:     {get_config_path()}")
    console.print(f"  Data:       {get_data_dir()}")
    console.print()


# ============================================================================
# Gateway commands
# ============================================================================

gateway_app = typer.Typer(help="Run the gateway")
app.add_typer(gateway_app, name="gateway")


@gateway_app.callback()
def gateway_callback():
    """Gateway commands."""
    pass


@gateway_app.command("run")
def gateway_run(
    tenants: Optional[list[str]] = typer.Option(None, "--tenant", "-t", help="Start this tenant's session at boot"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Run the gateway in the foreground."""
    config = load_config()
    setup_logging(config, verbose)

    console.print(f"[bold]Engine:[/bold] {config.engine.mode} ({config.engine.bridge_url})")
    console.print(f"[bold]Store:[/bold] {config.store.backend}")
    if config.notify.enabled:
        console.print(f"[bold]Notifications:[/bold] ws://{config.notify.host}:{config.notify.port}")
    console.print()

    try:
        asyncio.run(_run_gateway(config, tenants or []))
    except KeyboardInterrupt:
        console.print("\n[yellow]Gateway stopped[/yellow]")


async def _print_event(event: GatewayEvent) -> None:
    tenant = event.tenant_id
    if isinstance(event, ScanCodeReady):
        console.print(f"[cyan][{tenant}][/cyan] Scan code ready (fetch it from the notification stream)")
    elif isinstance(event, SessionConnected):
        console.print(f"[cyan][{tenant}][/cyan] [green]Connected as {event.phone}[/green]")
    elif isinstance(event, SessionClosed):
        console.print(f"[cyan][{tenant}][/cyan] [red]Session closed[/red]")
    elif isinstance(event, MessageReceived):
        console.print(f"[cyan][{tenant}][/cyan] {event.sender}: {event.text}")


async def _run_gateway(config: Config, tenants: list[str]) -> None:
    """Run manager and notification server until interrupted."""
    manager = SessionManager(config)
    server = NotificationServer(manager.bus, config.notify) if config.notify.enabled else None

    console.print("[bold green]Gateway starting...[/bold green]")

    try:
        if server:
            await server.start()

        for tenant in tenants:
            manager.subscribe(tenant, listener=_print_event)
            try:
                await manager.start_session(tenant)
                console.print(f"[green]✓[/green] Session started for [cyan]{tenant}[/cyan]")
            except AlreadyActiveError:
                console.print(f"[yellow]Session for {tenant} is already active[/yellow]")
            except ProtocolError as e:
                console.print(f"[red]✗ Could not start {tenant}: {e}[/red]")

        console.print("[bold green]✓ Gateway running[/bold green]")
        console.print("[dim]Press Ctrl+C to stop[/dim]")

        while True:
            await asyncio.sleep(1)
    finally:
        await manager.shutdown()
        if server:
            await server.stop()


# ============================================================================
# Session commands
# ============================================================================

@app.command()
def status(
    tenant: str = typer.Argument(..., help="Tenant (advisor) id"),
) -> None:
    """Show a tenant's stored session status."""
    config = _load()

    async def fetch(store: RecordStore):
        return await store.get_session(tenant)

    row = _with_store(config, fetch)
    if not row:
        console.print(f"[dim]No session stored for {tenant}[/dim] (status: [red]disconnected[/red])")
        return

    state = row.get("status") or "disconnected"
    console.print(f"[bold]Tenant:[/bold] {tenant}")
    console.print(f"  Status: [{_status_style(state)}]{state}[/{_status_style(state)}]")
    console.print(f"  Phone: [cyan]{row.get('phone') or '-'}[/cyan]")
    console.print(f"  Last activity: {row.get('last_activity') or '-'}")


@app.command()
def sessions() -> None:
    """List stored sessions."""
    config = _load()

    async def fetch(store: RecordStore):
        return await store.list_sessions()

    rows = _with_store(config, fetch)
    if not rows:
        console.print("[dim]No sessions stored[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("Tenant", style="cyan")
    table.add_column("Status")
    table.add_column("Phone", style="green")
    table.add_column("Last activity", style="dim")

    for row in rows:
        state = row.get("status") or "disconnected"
        style = _status_style(state)
        table.add_row(
            str(row.get("asesor_id", "")),
            f"[{style}]{state}[/{style}]",
            row.get("phone") or "-",
            row.get("last_activity") or "-",
        )

    console.print(table)


@app.command()
def messages(
    tenant: str = typer.Argument(..., help="Tenant (advisor) id"),
    phone: str = typer.Argument(..., help="Counterparty phone number"),
    limit: int = typer.Option(50, "--limit", "-n", help="Show at most this many recent messages"),
) -> None:
    """Show the message history with one contact."""
    config = _load()

    async def fetch(store: RecordStore):
        return await store.list_messages(tenant, phone)

    history = _with_store(config, fetch)
    if not history:
        console.print(f"[dim]No messages with {phone}[/dim]")
        return

    for msg in history[-limit:]:
        arrow = "[green]→[/green]" if msg.direction.value == "outgoing" else "[cyan]←[/cyan]"
        when = msg.timestamp.strftime("%Y-%m-%d %H:%M")
        console.print(f"[dim]{when}[/dim] {arrow} {msg.text}")


@app.command()
def conversations(
    tenant: str = typer.Argument(..., help="Tenant (advisor) id"),
) -> None:
    """Show conversation summaries, newest first."""
    config = _load()

    async def fetch(store: RecordStore):
        return await store.list_tenant_messages(tenant)

    summaries = summarize_conversations(_with_store(config, fetch))
    if not summaries:
        console.print(f"[dim]No conversations for {tenant}[/dim]")
        return

    table = Table(title=f"Conversations of {tenant}")
    table.add_column("Phone", style="cyan")
    table.add_column("Last message")
    table.add_column("When", style="dim")
    table.add_column("Unread", justify="right")

    for summary in summaries:
        unread = f"[bold yellow]{summary.unread}[/bold yellow]" if summary.unread else "0"
        table.add_row(
            summary.counterparty,
            summary.last_message[:60],
            summary.last_timestamp.strftime("%Y-%m-%d %H:%M"),
            unread,
        )

    console.print(table)


# ============================================================================
# Config command
# ============================================================================

def config_cmd(
    show: bool = typer.Option(False, "--show", help="Print the config file"),
) -> None:
    """Show configuration."""
    config_path = get_config_path()

    if show:
        if config_path.exists():
            console.print(f"[dim]Config file: {config_path}[/dim]")
            console.print(config_path.read_text(encoding="utf-8"))
        else:
            console.print("[yellow]No config file found.[/yellow]")
        return

    console.print(f"Config file: [cyan]{config_path}[/cyan]")
    cfg = _load()
    console.print(f"Engine: [cyan]{cfg.engine.mode}[/cyan] ({cfg.engine.bridge_url})")
    console.print(f"Store: [cyan]{cfg.store.backend}[/cyan]")
    console.print(f"Reconnect delay: [cyan]{cfg.lifecycle.reconnect_delay_s}s[/cyan]")
    console.print(f"Lead creation: [cyan]{'enabled' if cfg.relay.create_leads else 'disabled'}[/cyan]")

app.command(name="config")(config_cmd)


if __name__ == "__main__":
    app()
