"""bsk command-line interface.

Commands:
    bsk time                 - Show server time and local clock offset
    bsk price SYMBOL         - Latest price for a symbol
    bsk depth SYMBOL         - Top of the order book
    bsk account              - Non-zero balances (requires credentials)
    bsk stream TOPIC...      - Print live stream events
"""

import asyncio
from datetime import UTC, datetime
from typing import Annotated

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from bsk import __version__
from bsk.client import Client
from bsk.config import Profile, Settings
from bsk.errors import BskError
from bsk.logging import setup_logging
from bsk.models import AccountInfo, OrderBook
from bsk.streams.router import ResyncNotice
from bsk.streams.topics import USER_DATA_TOPIC, StreamTopic

app = typer.Typer(
    name="bsk",
    help="Binance stream kit - signed REST and managed WebSocket streams",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        rprint(f"bsk v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    _version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-V", help="Enable verbose logging"),
    ] = False,
    profile: Annotated[
        Profile | None,
        typer.Option("--profile", "-p", help="Endpoint profile (default from BSK_PROFILE)"),
    ] = None,
) -> None:
    """Binance stream kit."""
    log_level = "DEBUG" if verbose else "WARNING"
    setup_logging(level=log_level)
    ctx.obj = Settings(profile=profile) if profile is not None else Settings()


def _client(ctx: typer.Context) -> Client:
    return Client.from_env(settings=ctx.obj)


# =============================================================================
# Market Commands
# =============================================================================


@app.command()
def time(ctx: typer.Context) -> None:
    """Show server time and the local clock offset."""

    async def _run() -> tuple[int, int]:
        async with _client(ctx) as client:
            server = await client.market.server_time()
            offset = await client.sync_time()
            return server.server_time, offset

    try:
        server_ms, offset = asyncio.run(_run())
    except BskError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    server_dt = datetime.fromtimestamp(server_ms / 1000, tz=UTC)
    console.print(f"Server time: [cyan]{server_dt.isoformat()}[/cyan] ({server_ms})")
    console.print(f"Local offset: [cyan]{offset:+d} ms[/cyan]")


@app.command()
def price(
    ctx: typer.Context,
    symbol: Annotated[str, typer.Argument(help="Trading pair, e.g. BTCUSDT")],
) -> None:
    """Show the latest price for a symbol."""

    async def _run() -> float:
        async with _client(ctx) as client:
            ticker = await client.market.price(symbol.upper())
            return ticker.price

    try:
        value = asyncio.run(_run())
    except BskError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    console.print(f"{symbol.upper()}: [green]{value}[/green]")


@app.command()
def depth(
    ctx: typer.Context,
    symbol: Annotated[str, typer.Argument(help="Trading pair, e.g. BTCUSDT")],
    limit: Annotated[int, typer.Option("--limit", "-l", help="Levels to fetch")] = 5,
) -> None:
    """Show the top of the order book."""

    async def _run() -> OrderBook:
        async with _client(ctx) as client:
            return await client.market.depth(symbol.upper(), limit=limit)

    try:
        book = asyncio.run(_run())
    except (BskError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    table = Table(title=f"{symbol.upper()} order book")
    table.add_column("Bid Qty", justify="right")
    table.add_column("Bid", justify="right", style="green")
    table.add_column("Ask", justify="right", style="red")
    table.add_column("Ask Qty", justify="right")
    for i in range(max(len(book.bids), len(book.asks))):
        bid = book.bids[i] if i < len(book.bids) else None
        ask = book.asks[i] if i < len(book.asks) else None
        table.add_row(
            f"{bid[1]:g}" if bid else "",
            f"{bid[0]:g}" if bid else "",
            f"{ask[0]:g}" if ask else "",
            f"{ask[1]:g}" if ask else "",
        )
    console.print(table)


# =============================================================================
# Account Commands
# =============================================================================


@app.command()
def account(ctx: typer.Context) -> None:
    """Show non-zero balances (requires BINANCE_API_KEY and a secret or private key)."""

    async def _run() -> AccountInfo | None:
        async with _client(ctx) as client:
            if not client.has_credentials:
                return None
            return await client.account.get_account()

    try:
        info = asyncio.run(_run())
    except BskError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    if info is None:
        console.print("[yellow]No credentials configured. Set BINANCE_API_KEY.[/yellow]")
        raise typer.Exit(1)

    table = Table(title=f"{info.account_type} account")
    table.add_column("Asset", style="cyan")
    table.add_column("Free", justify="right")
    table.add_column("Locked", justify="right")
    for balance in info.non_zero_balances():
        table.add_row(balance.asset, f"{balance.free:g}", f"{balance.locked:g}")
    console.print(table)
    console.print(f"Can trade: {info.can_trade}  Can withdraw: {info.can_withdraw}")


# =============================================================================
# Stream Command
# =============================================================================


@app.command()
def stream(
    ctx: typer.Context,
    topics: Annotated[
        list[str],
        typer.Argument(help="Stream names (e.g. btcusdt@trade) or 'user' for user data"),
    ],
    count: Annotated[
        int,
        typer.Option("--count", "-n", help="Stop after this many events (0 = forever)"),
    ] = 10,
) -> None:
    """Print live events from one or more streams."""

    async def _consume(client: Client, topic: StreamTopic, remaining: list[int]) -> None:
        subscription = await client.streams.subscribe(topic)
        async for item in subscription:
            if isinstance(item, ResyncNotice):
                console.print(f"[yellow]{item.topic}: resync ({item.reason})[/yellow]")
                continue
            console.print(f"[cyan]{item.topic}[/cyan] {item.raw}")
            remaining[0] -= 1
            if count and remaining[0] <= 0:
                return

    async def _run() -> None:
        async with _client(ctx) as client:
            remaining = [count]
            selected = [USER_DATA_TOPIC if t == "user" else StreamTopic(t) for t in topics]
            tasks = [asyncio.create_task(_consume(client, t, remaining)) for t in selected]
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                task.result()

    try:
        asyncio.run(_run())
    except BskError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")


if __name__ == "__main__":
    app()
