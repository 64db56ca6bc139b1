#!/usr/bin/env python3
"""
licensehub CLI

Command-line interface for the license server and its clients.

Usage:
    licensehub serve                  # Run the license server and REST API
    licensehub split FILE             # Chunk a file into the data directory
    licensehub reassemble FILE_ID     # Rebuild a stored file
    licensehub keygen -n 5            # Generate license keys
    licensehub users                  # Show persisted users
    licensehub extend KEY DAYS        # Extend a license (server offline)
    licensehub download ID            # Download a file from a server
    licensehub list                   # List files on a server
    licensehub info                   # Show your license
    licensehub status                 # Show server status
"""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .config import load_config
from .exceptions import LicenseHubError
from .file.storage import ChunkStorage
from .protocol.messages import MessageType
from .server.authority import SessionAuthority
from .server.server import LicenseServer
from .server.users import User, generate_license_key, utc_now
from .storage.database import UserStore
from .client.driver import LicenseClient
from .client.transfer import TransferOrchestrator

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


def run_async(coro):
    """Run a coroutine, printing licensehub errors instead of tracebacks."""
    try:
        return asyncio.run(coro)
    except LicenseHubError as e:
        console.print(f"[red]✗ {e.message}[/red]")
        sys.exit(1)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.pass_context
def cli(ctx, verbose, config_path):
    """licensehub - license-gated file distribution."""
    config = load_config(Path(config_path) if config_path else None)
    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


# === Server commands ===

@cli.command()
@click.option('--port', type=int, help='Session server port')
@click.option('--api-port', type=int, help='REST API port')
@click.option('--no-api', is_flag=True, help='Disable REST API')
@click.pass_context
def serve(ctx, port, api_port, no_api):
    """Run the license server."""
    config = ctx.obj['config']
    if port is not None:
        config.port = port
    if api_port is not None:
        config.api_port = api_port

    async def run():
        server = LicenseServer(config)

        try:
            await server.start()

            console.print(Panel.fit(
                f"[bold green]License Server Started[/bold green]\n\n"
                f"Port: [yellow]{server.port}[/yellow]\n"
                f"Users: [yellow]{len(server.authority.get_all_users())}[/yellow]\n"
                f"Files: [yellow]{server.storage.get_stats().file_count}[/yellow]\n"
                f"Data Dir: [blue]{config.data_dir}[/blue]",
                title="Server Info"
            ))

            if not no_api:
                console.print(f"\n[dim]REST API available at "
                              f"http://localhost:{config.api_port}[/dim]")
                console.print(f"[dim]Chunks served from {config.download_base_url}[/dim]\n")

                from .api import run_api_server
                await run_api_server(server, host=config.api_host, port=config.api_port)
            else:
                console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
                while True:
                    await asyncio.sleep(1)

        except (KeyboardInterrupt, asyncio.CancelledError):
            console.print("\n[yellow]Shutting down...[/yellow]")
        finally:
            await server.stop()
            console.print("[green]Server stopped[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--title', '-t', help='Display title (default: file name)')
@click.pass_context
def split(ctx, file_path, title):
    """Chunk a file into the data directory."""
    config = ctx.obj['config']
    storage = ChunkStorage(config.data_dir, chunk_size=config.chunk_size)

    async def run():
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Splitting file...", total=None)
            manifest = await storage.store_file(
                Path(file_path), title=title,
                download_base_url=config.download_base_url,
            )
            progress.update(task, description="Done!")
        return manifest

    manifest = run_async(run())

    console.print(Panel.fit(
        f"[bold green]File Split Successfully[/bold green]\n\n"
        f"Title: [cyan]{manifest.title}[/cyan]\n"
        f"Name: [cyan]{manifest.file_name}[/cyan]\n"
        f"Size: [yellow]{manifest.file_size:,} bytes[/yellow]\n"
        f"Chunks: [yellow]{manifest.chunk_count}[/yellow]\n\n"
        f"[bold]File ID:[/bold]\n"
        f"[green]{manifest.file_id}[/green]",
        title="Stored File"
    ))


@cli.command()
@click.argument('file_id')
@click.option('--output', '-o', type=click.Path(file_okay=False), help='Output directory')
@click.pass_context
def reassemble(ctx, file_id, output):
    """Rebuild a stored file from its chunks."""
    config = ctx.obj['config']
    storage = ChunkStorage(config.data_dir, strict_integrity=config.strict_integrity)

    result = run_async(storage.reassemble_file(file_id, Path(output) if output else None))

    if result.size_matches:
        console.print(f"[green]✓ Rebuilt {result.path} ({format_size(result.size)})[/green]")
    else:
        console.print(f"[yellow]! Rebuilt {result.path}, but size is {result.size:,} "
                      f"bytes instead of {result.expected_size:,}[/yellow]")


@cli.command()
@click.option('--count', '-n', default=1, show_default=True, help='Number of keys')
def keygen(count):
    """Generate license keys."""
    for _ in range(count):
        console.print(generate_license_key())


@cli.command()
@click.pass_context
def users(ctx):
    """Show persisted license users."""
    config = ctx.obj['config']

    async def run():
        store = UserStore(config.users_db_path)
        await store.connect()
        try:
            return [User.from_dict(row) for row in await store.load_users()]
        finally:
            await store.close()

    records = run_async(run())

    if not records:
        console.print("[yellow]No users[/yellow]")
        return

    now = utc_now()
    table = Table(title="License Users")
    table.add_column("Username", style="cyan")
    table.add_column("License Key", style="green")
    table.add_column("Expires", justify="right")
    table.add_column("Last Login")
    table.add_column("IP", style="yellow")

    for user in records:
        color = "red" if user.is_expired(now) else "white"
        table.add_row(
            user.username,
            user.license_key,
            f"[{color}]{user.license_expiration:%Y-%m-%d %H:%M}[/{color}]",
            f"{user.last_login:%Y-%m-%d %H:%M}",
            user.ip_address,
        )

    console.print(table)


@cli.command()
@click.argument('license_key')
@click.argument('days', type=click.IntRange(min=1))
@click.pass_context
def extend(ctx, license_key, days):
    """Extend a license in the user store (server must be stopped)."""
    config = ctx.obj['config']

    async def run():
        store = UserStore(config.users_db_path)
        await store.connect()
        try:
            authority = SessionAuthority(store)
            await authority.load()
            if not await authority.extend_license(license_key, days):
                return None
            return authority.get_user(license_key)
        finally:
            await store.close()

    user = run_async(run())
    if user is None:
        console.print(f"[red]✗ License key not found: {license_key}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ {user.username}'s license now expires "
                  f"{user.license_expiration:%Y-%m-%d %H:%M} UTC[/green]")


# === Client commands ===

CLIENT_OPTIONS = [
    click.option('--host', default='localhost', show_default=True, help='Server host'),
    click.option('--port', type=int, help='Server port (default: config port)'),
    click.option('--username', '-u', envvar='LICENSEHUB_USERNAME', required=True,
                 help='Username (or LICENSEHUB_USERNAME)'),
    click.option('--license-key', '-k', envvar='LICENSEHUB_LICENSE_KEY', required=True,
                 help='License key (or LICENSEHUB_LICENSE_KEY)'),
]


def client_options(func):
    """Connection and credential options shared by client commands."""
    for option in reversed(CLIENT_OPTIONS):
        func = option(func)
    return func


async def with_client(config, host, port, username, license_key, action):
    """Connect, run action(client), and always disconnect."""
    client = LicenseClient(
        host, port or config.port,
        response_timeout=config.response_timeout,
        max_line_bytes=config.max_line_bytes,
    )

    def show_notification(message):
        if message.type == MessageType.NOTIFICATION:
            console.print(f"[magenta]Server: {message.content}[/magenta]")

    client.on_message(show_notification)

    await client.connect(username, license_key, timeout=config.response_timeout)
    try:
        return await action(client)
    finally:
        await client.disconnect()


@cli.command()
@client_options
@click.argument('identifier')
@click.option('--output', '-o', type=click.Path(file_okay=False), default='downloads',
              show_default=True, help='Download directory')
@click.option('--keep-chunks', is_flag=True, help='Keep downloaded chunk files')
@click.pass_context
def download(ctx, host, port, username, license_key, identifier, output, keep_chunks):
    """Download a file from the server."""
    config = ctx.obj['config']

    async def action(client):
        orchestrator = TransferOrchestrator(
            client, Path(output),
            strict_integrity=config.strict_integrity,
            response_timeout=config.response_timeout,
        )

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task("Requesting download info...", total=100)

            def update_progress(p):
                progress.update(
                    task,
                    completed=p.progress_percent,
                    description=f"Downloading... ({p.downloaded_chunks}/{p.total_chunks} chunks)"
                    if p.phase == 'downloading' else p.phase.capitalize() + "..."
                )

            result = await orchestrator.download(identifier, update_progress, keep_chunks)
            progress.update(task, completed=100, description="Done!")
        return result

    result = run_async(with_client(config, host, port, username, license_key, action))

    console.print(f"\n[green]✓ Downloaded to: {result.output_path}[/green]")
    if result.hash_mismatches:
        console.print(f"[yellow]! Hash mismatch in chunks: "
                      f"{', '.join(map(str, result.hash_mismatches))}[/yellow]")
    if not result.size_matches:
        console.print(f"[yellow]! Size is {result.size:,} bytes, "
                      f"expected {result.expected_size:,}[/yellow]")


@cli.command('list')
@client_options
@click.pass_context
def list_files(ctx, host, port, username, license_key):
    """List files available on the server."""
    config = ctx.obj['config']

    async def action(client):
        return await client.request_payload("list", MessageType.LIST_RESPONSE)

    response = run_async(with_client(config, host, port, username, license_key, action))

    if not response.items:
        console.print("[yellow]No files available[/yellow]")
        return

    table = Table(title=f"Files ({response.total_count})")
    table.add_column("Title", style="cyan")
    table.add_column("File", style="white")
    table.add_column("Size", justify="right", style="yellow")
    table.add_column("Chunks", justify="right")
    table.add_column("File ID", style="green")

    for item in response.items:
        table.add_row(
            item.title,
            item.file_name,
            format_size(item.size),
            str(item.chunk_count),
            item.file_id,
        )

    console.print(table)


@cli.command()
@client_options
@click.pass_context
def info(ctx, host, port, username, license_key):
    """Show your license information."""
    config = ctx.obj['config']

    async def action(client):
        return await client.request_payload("info", MessageType.INFO_RESPONSE)

    response = run_async(with_client(config, host, port, username, license_key, action))
    lic = response.license_info
    conn = response.connection_info

    console.print(Panel.fit(
        f"[bold]License[/bold]\n"
        f"  Username: [cyan]{lic.username}[/cyan]\n"
        f"  Key: [green]{lic.license_key}[/green]\n"
        f"  Expires: [yellow]{lic.expiration_date:%Y-%m-%d %H:%M}[/yellow]\n"
        f"  Active: [{'green' if lic.is_active else 'red'}]"
        f"{'Yes' if lic.is_active else 'No'}[/]\n"
        f"  First login: {lic.first_login:%Y-%m-%d %H:%M}\n"
        f"  Rate limit: {lic.rate_limit}/hour\n\n"
        f"[bold]Connection[/bold]\n"
        f"  Server: {conn.server_address}\n"
        f"  Since: {conn.connected_since:%Y-%m-%d %H:%M:%S}",
        title="License Info"
    ))


@cli.command()
@client_options
@click.pass_context
def status(ctx, host, port, username, license_key):
    """Show server status."""
    config = ctx.obj['config']

    async def action(client):
        return await client.request_payload("status", MessageType.STATUS_RESPONSE)

    response = run_async(with_client(config, host, port, username, license_key, action))
    srv = response.server_status
    conn = response.connection_status

    console.print(Panel.fit(
        f"[bold]Server[/bold]\n"
        f"  Version: [cyan]{srv.version}[/cyan]\n"
        f"  Uptime: [yellow]{srv.uptime_seconds:,.0f}s[/yellow]\n"
        f"  Connected users: [yellow]{srv.connected_users}[/yellow]\n"
        f"  Total users: [yellow]{srv.total_users}[/yellow]\n"
        f"  Licenses: [green]{srv.active_licenses} active[/green], "
        f"[red]{srv.expired_licenses} expired[/red]\n\n"
        f"[bold]Connection[/bold]\n"
        f"  Connected since: {conn.connected_since:%Y-%m-%d %H:%M:%S}\n"
        f"  Sent: {format_size(conn.bytes_sent)}, received: {format_size(conn.bytes_received)}",
        title="Server Status"
    ))


if __name__ == '__main__':
    cli()
