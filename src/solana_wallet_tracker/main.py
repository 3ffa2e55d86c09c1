"""
Main CLI application for Solana Wallet Tracker.
"""

import os
import time
from typing import Optional, List
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.live import Live

from .config import Config
from .models import ActivityStatus, ProgressEvent, Settings, SyncStage, WatchedAccount
from .orchestrator import RefreshScheduler, SyncOrchestrator
from .status import derive_status, summarize_position
from .utils import (
    format_market_cap,
    format_number,
    format_relative_time,
    is_valid_solana_address,
    normalize_address,
    short_address,
)

# Logging setup
import logging
logger = logging.getLogger(__name__)


app = typer.Typer(
    name="sol-tracker",
    help="Track Solana wallets holding a token and classify their buys, sells and transfers."
)
projects_app = typer.Typer(help="Manage saved projects (token + wallet list).")
cache_app = typer.Typer(help="Inspect or clear the local sync cache.")
app.add_typer(projects_app, name="projects")
app.add_typer(cache_app, name="cache")

console = Console()

STATUS_STYLES = {
    ActivityStatus.OUT: "dim",
    ActivityStatus.UNKNOWN: "yellow",
    ActivityStatus.SELLING: "bold red blink",
    ActivityStatus.SOLD: "red",
    ActivityStatus.TRANSFERRED: "blue",
    ActivityStatus.RECEIVED: "cyan",
    ActivityStatus.BUY: "bold green",
    ActivityStatus.BOUGHT_MORE: "green",
    ActivityStatus.HOLDING: "magenta",
}


@app.callback()
def main(verbose: int = typer.Option(0, "--verbose", "-v", count=True,
                                     help="-v for info logs, -vv for debug logs")):
    """Configure logging for every command."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_config() -> Config:
    """Load application configuration."""
    try:
        return Config.from_env()
    except ValueError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        console.print("\n[yellow]Check the numeric settings in your .env file.[/yellow]")
        raise typer.Exit(1)


def build_orchestrator(config: Config) -> SyncOrchestrator:
    """Create the orchestrator, filling unset config from the saved settings."""
    orchestrator = SyncOrchestrator.from_config(config)
    settings = orchestrator.storage.settings.load()
    if "REFRESH_INTERVAL" not in os.environ:
        config.refresh_interval = settings.refresh_interval
    if not config.has_credential and settings.helius_api_key:
        config.helius_api_key = settings.helius_api_key
        orchestrator = SyncOrchestrator.from_config(config)
    return orchestrator


def parse_wallet(value: str, index: int) -> Optional[WatchedAccount]:
    """Parse ADDRESS or ADDRESS:NAME from the command line; None if the address is invalid."""
    address, _, name = value.partition(":")
    address = normalize_address(address)
    if not is_valid_solana_address(address):
        console.print(f"[yellow]Skipping invalid wallet address: {address}[/yellow]")
        return None
    return WatchedAccount(
        id=address,
        address=address,
        display_name=name.strip() or f"Wallet {index}",
    )


def run_refresh(orchestrator: SyncOrchestrator, foreground: bool):
    """Run one refresh cycle with a progress bar driven by progress events."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting refresh...", total=100)

        def on_event(event: ProgressEvent):
            description = event.message
            if event.detail:
                description = f"{event.message} [dim]{event.detail}[/dim]"
            progress.update(task, completed=event.progress_percent, description=description)

        unsubscribe = orchestrator.subscribe(on_event)
        try:
            report = orchestrator.start_refresh(foreground=foreground)
        finally:
            unsubscribe()

    return report


def build_dashboard(orchestrator: SyncOrchestrator) -> Table:
    """Wallet table with balances, changes and activity status."""
    asset = orchestrator.asset_id
    transfers = orchestrator.cache.get_transfers(asset).transfers if asset else []
    info = orchestrator.asset_info
    symbol = info.symbol if info else ""

    table = Table(title=f"{info.name if info else 'Token'} ({symbol}) holders")
    table.add_column("#", style="cyan", no_wrap=True)
    table.add_column("Wallet", style="white", no_wrap=True)
    table.add_column("Address", style="magenta", no_wrap=True)
    table.add_column("Balance", style="green", justify="right")
    table.add_column("Change", justify="right")
    table.add_column("Held %", justify="right")
    table.add_column("Status", no_wrap=True)
    table.add_column("Txs", justify="right")

    total = 0.0
    for i, row in enumerate(orchestrator.rows, 1):
        account = row.account
        if row.status == "pending":
            wait = f" ~{row.estimated_wait:.0f}s" if row.estimated_wait else ""
            table.add_row(str(i), account.display_name, short_address(account.address),
                          f"[dim]queued #{row.queue_position}{wait}[/dim]", "", "", "", "")
            continue
        if row.status == "loading":
            table.add_row(str(i), account.display_name, short_address(account.address),
                          "[dim]loading...[/dim]", "", "", "", "")
            continue

        total += row.ui_amount
        change = ""
        if row.previous_ui_amount is not None and row.previous_ui_amount != row.ui_amount:
            delta = row.ui_amount - row.previous_ui_amount
            color = "green" if delta > 0 else "red"
            change = f"[{color}]{'+' if delta > 0 else ''}{format_number(delta)}[/{color}]"

        summary = summarize_position(account.address, transfers)
        held = summary.holdings_percent(row.ui_amount)
        status = derive_status(account.address, row.ui_amount, transfers,
                               policy=orchestrator.config.status)
        balance = format_number(row.ui_amount)
        if row.error:
            balance = f"{balance} [red]![/red]"

        table.add_row(
            str(i),
            account.display_name,
            short_address(account.address),
            balance,
            change,
            f"{held:.0f}%" if held is not None else "-",
            f"[{STATUS_STYLES[status]}]{status.value}[/{STATUS_STYLES[status]}]",
            str(summary.transfer_count),
        )

    price = info.price if info else 0.0
    table.caption = (
        f"Total: {format_number(total)} {symbol} (${format_number(total * price)}) | "
        f"updated {format_relative_time(orchestrator.last_updated)}"
    )
    return table


def display_asset_panel(orchestrator: SyncOrchestrator):
    info = orchestrator.asset_info
    if info is None:
        return
    change_color = "green" if info.price_change_24h >= 0 else "red"
    panel = Panel(
        f"[bold blue]{info.name}[/bold blue] ([green]{info.symbol}[/green])\n"
        f"Mint: [yellow]{orchestrator.asset_id}[/yellow]\n"
        f"Price: ${info.price:.8g} [{change_color}]{info.price_change_24h:+.2f}%[/{change_color}]  "
        f"Market cap: {format_market_cap(info.market_cap)}",
        title="Token Information",
        expand=False
    )
    console.print(panel)


@app.command()
def track(
    mint: str = typer.Argument(..., help="Token mint address"),
    wallets: Optional[List[str]] = typer.Option(
        None, "--wallet", "-w", help="Wallet as ADDRESS or ADDRESS:NAME (repeatable)"),
    full: bool = typer.Option(
        False, "--full", help="Fetch the full transaction history instead of only new activity"),
    save: bool = typer.Option(
        False, "--save", help="Save token and wallets as a project"),
):
    """Refresh balances and activity for a token's watched wallets."""
    config = load_config()
    orchestrator = build_orchestrator(config)
    has_cached = orchestrator.bootstrap()

    mint = normalize_address(mint)
    if not is_valid_solana_address(mint):
        console.print(f"[red]Invalid token mint address: {mint}[/red]")
        raise typer.Exit(1)

    if orchestrator.asset_id != mint:
        project = orchestrator.storage.projects.get_project(mint)
        if project:
            has_cached = orchestrator.load_project(project)
        else:
            orchestrator.set_asset(mint)
            has_cached = False

    if wallets:
        accounts = [a for a in (parse_wallet(w, i) for i, w in enumerate(wallets, 1)) if a]
        added = orchestrator.add_wallets(accounts)
        if added:
            console.print(f"[cyan]Watching {len(added)} new wallet(s)[/cyan]")

    if not len(orchestrator.watch_list):
        console.print("[red]No wallets to track. Add some with --wallet ADDRESS[:NAME].[/red]")
        raise typer.Exit(1)

    if full:
        orchestrator.force_full_refresh()

    console.print(f"[cyan]Refreshing {len(orchestrator.watch_list)} wallets for {short_address(mint)}...[/cyan]")
    report = run_refresh(orchestrator, foreground=not has_cached)

    if report is not None and report.stage == SyncStage.ERROR:
        console.print(f"[red]{report.error}[/red]")
        raise typer.Exit(1)

    display_asset_panel(orchestrator)
    console.print(build_dashboard(orchestrator))

    if report is not None:
        console.print(
            f"\n[bold]Refresh:[/bold] {'full' if report.full_fetch else 'incremental'} | "
            f"balances: [green]{report.balances_fetched}[/green] "
            f"([red]{report.balance_errors} errors[/red]) | "
            f"new transfers: [green]{report.transfers_added}[/green] "
            f"(total {report.transfers_total})")
        if report.skipped_wallets:
            console.print(f"[yellow]{report.skipped_wallets} invalid wallet(s) skipped[/yellow]")
        if report.detail_failures or report.parse_failures:
            console.print(
                f"[yellow]{report.detail_failures} transaction(s) could not be fetched, "
                f"{report.parse_failures} could not be parsed[/yellow]")

    if save:
        project = orchestrator.save_current_project()
        if project:
            console.print(f"[green]Saved project {project.symbol} ({project.id})[/green]")


@app.command()
def watch(
    interval: Optional[int] = typer.Option(
        None, "--interval", "-i", help="Seconds between background refreshes"),
):
    """Keep refreshing the last tracked token until interrupted."""
    config = load_config()
    orchestrator = build_orchestrator(config)
    has_cached = orchestrator.bootstrap()

    if not orchestrator.asset_id or not len(orchestrator.watch_list):
        console.print("[red]Nothing to watch. Run 'sol-tracker track MINT --wallet ADDRESS' first.[/red]")
        raise typer.Exit(1)

    scheduler = RefreshScheduler(orchestrator, interval=interval)
    console.print(f"[cyan]Watching {short_address(orchestrator.asset_id)} "
                  f"every {scheduler.interval}s (Ctrl+C to stop)[/cyan]")

    status_line = {"text": ""}

    def on_event(event: ProgressEvent):
        if event.stage in (SyncStage.DONE, SyncStage.CANCELLED):
            status_line["text"] = ""
        elif event.stage == SyncStage.ERROR:
            status_line["text"] = f"[red]{event.detail}[/red]"
        else:
            status_line["text"] = f"[dim]{event.message} {event.progress_percent}%[/dim]"

    unsubscribe = orchestrator.subscribe(on_event)
    scheduler.start(foreground=not has_cached)
    try:
        with Live(build_dashboard(orchestrator), console=console, refresh_per_second=2) as live:
            while True:
                table = build_dashboard(orchestrator)
                if status_line["text"]:
                    table.caption = f"{table.caption}\n{status_line['text']}"
                live.update(table)
                time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping...[/yellow]")
    finally:
        unsubscribe()
        scheduler.stop()
        orchestrator.cancel()


@app.command()
def history(
    wallet: str = typer.Argument(..., help="Wallet address to scan"),
    mint: Optional[str] = typer.Option(
        None, "--mint", "-m", help="Token mint (defaults to the last tracked token)"),
):
    """Deep-scan one wallet's history to find where its tokens came from."""
    config = load_config()
    orchestrator = build_orchestrator(config)
    orchestrator.bootstrap()

    if mint and normalize_address(mint) != orchestrator.asset_id:
        orchestrator.set_asset(mint)
    if not orchestrator.asset_id:
        console.print("[red]No token selected. Pass --mint MINT.[/red]")
        raise typer.Exit(1)

    wallet = normalize_address(wallet)
    if not is_valid_solana_address(wallet):
        console.print(f"[red]Invalid wallet address: {wallet}[/red]")
        raise typer.Exit(1)

    with console.status(f"[cyan]Scanning history of {short_address(wallet)}...[/cyan]"):
        orchestrator.deep_fetch_wallet(wallet)

    transfers = [
        t for t in orchestrator.cache.get_transfers(orchestrator.asset_id).transfers
        if t.wallet_address.lower() == wallet.lower()
    ]
    if not transfers:
        console.print("[yellow]No transfers of this token found for the wallet.[/yellow]")
        return

    table = Table(title=f"History of {short_address(wallet)}")
    table.add_column("Date", style="white", no_wrap=True)
    table.add_column("Type", style="blue", no_wrap=True)
    table.add_column("Amount", style="green", justify="right")
    table.add_column("SOL", justify="right")
    table.add_column("Counterparty", style="magenta", no_wrap=True)
    table.add_column("Signature", style="yellow", no_wrap=True)

    for t in transfers:
        table.add_row(
            t.timestamp.strftime("%Y-%m-%d %H:%M") if t.timestamp else "?",
            t.category.value,
            format_number(t.amount),
            f"{t.sol_delta:+.4f}",
            short_address(t.counterparty_in or t.counterparty_out),
            f"{t.signature_id[:10]}...",
        )
    console.print(table)

    summary = summarize_position(wallet, transfers)
    console.print(
        f"Acquired: [green]{format_number(summary.total_acquired)}[/green] | "
        f"Disposed: [red]{format_number(summary.total_disposed)}[/red] | "
        f"Received: [cyan]{format_number(summary.total_received)}[/cyan] | "
        f"Sent: [blue]{format_number(summary.total_sent)}[/blue]")
    for source, amount in summary.received_from.items():
        console.print(f"  from {source}: {format_number(amount)}")


@projects_app.command("list")
def projects_list():
    """List saved projects."""
    orchestrator = build_orchestrator(load_config())
    projects = orchestrator.storage.projects.list_projects()
    if not projects:
        console.print("[yellow]No saved projects.[/yellow]")
        return

    table = Table(title="Saved projects")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Token", style="green")
    table.add_column("Mint", style="yellow", no_wrap=True)
    table.add_column("Wallets", justify="right")
    table.add_column("Market cap", justify="right")
    table.add_column("Last scanned")
    for project in projects:
        table.add_row(
            project.id,
            f"{project.name} ({project.symbol})",
            short_address(project.asset_id),
            str(len(project.wallets)),
            format_market_cap(project.market_cap),
            format_relative_time(project.last_scanned),
        )
    console.print(table)


@projects_app.command("load")
def projects_load(project: str = typer.Argument(..., help="Project id or token mint")):
    """Make a saved project the current session."""
    orchestrator = build_orchestrator(load_config())
    saved = orchestrator.storage.projects.get_project(project)
    if not saved:
        console.print(f"[red]No project found for {project}[/red]")
        raise typer.Exit(1)
    orchestrator.load_project(saved)
    console.print(f"[green]Loaded {saved.name} ({saved.symbol}) with {len(saved.wallets)} wallets[/green]")


@projects_app.command("delete")
def projects_delete(project_id: str = typer.Argument(..., help="Project id")):
    """Delete a saved project."""
    orchestrator = build_orchestrator(load_config())
    orchestrator.bootstrap()
    if orchestrator.delete_project(project_id):
        console.print(f"[green]Deleted project {project_id}[/green]")
    else:
        console.print(f"[yellow]No project with id {project_id}[/yellow]")


@cache_app.command("stats")
def cache_stats():
    """Show what the sync cache holds."""
    orchestrator = build_orchestrator(load_config())
    stats = orchestrator.cache.stats()
    console.print(f"Tokens cached: [green]{stats.asset_count}[/green]")
    console.print(f"Wallet balances: [green]{stats.total_wallets}[/green]")
    console.print(f"Transfers: [green]{stats.total_transfers}[/green]")
    console.print(f"Size: [green]{stats.storage_bytes / 1024:.1f} KB[/green]")


@cache_app.command("clear")
def cache_clear(
    mint: Optional[str] = typer.Option(None, "--mint", "-m", help="Only clear this token"),
    reset: bool = typer.Option(
        False, "--reset", help="Also forget the current token, wallets and active project"),
):
    """Clear cached balances, transfers, metadata and prices."""
    orchestrator = build_orchestrator(load_config())
    if reset:
        orchestrator.bootstrap()
        orchestrator.clear_all()
        console.print("[green]Cleared session and cache for the current token[/green]")
        return
    if mint:
        orchestrator.cache.clear_asset(normalize_address(mint))
        console.print(f"[green]Cleared cache for {short_address(mint)}[/green]")
    else:
        orchestrator.cache.clear_all()
        console.print("[green]All cache cleared[/green]")


@app.command()
def settings(
    helius_key: Optional[str] = typer.Option(
        None, "--helius-key", help="Helius API key (pass an empty string to remove it)"),
    interval: Optional[int] = typer.Option(
        None, "--interval", "-i", min=0, help="Seconds between background refreshes (0 disables)"),
):
    """Show or update the saved settings."""
    orchestrator = build_orchestrator(load_config())
    store = orchestrator.storage.settings
    current = store.load()

    if helius_key is not None or interval is not None:
        current = Settings(
            refresh_interval=current.refresh_interval if interval is None else interval,
            helius_api_key=current.helius_api_key if helius_key is None else helius_key.strip(),
        )
        store.save(current)
        console.print("[green]Settings saved[/green]")

    key_state = "set" if current.helius_api_key else "not set"
    console.print(f"Refresh interval: [green]{current.refresh_interval}s[/green]")
    console.print(f"Helius API key: [green]{key_state}[/green]")


@app.command()
def setup():
    """Setup the application by creating a .env file template."""
    env_content = """# Solana Wallet Tracker Configuration

# Optional: Helius API key (https://helius.dev) for faster, less throttled requests
# HELIUS_API_KEY=your_helius_api_key_here

# Optional: comma separated public RPC endpoints used without a Helius key
# SOLANA_RPC_URLS=https://api.mainnet-beta.solana.com,https://rpc.ankr.com/solana

# Refresh Settings
REFRESH_INTERVAL=30
TRACKER_DATA_DIR=.sol-tracker

# Rate limiting (groups of wallets per request burst, seconds between bursts)
BALANCE_GROUP_SIZE=3
BALANCE_GROUP_DELAY=2.0
TX_GROUP_SIZE=2
TX_GROUP_DELAY=2.5

# Classification thresholds (SOL)
DISPOSE_SOL_THRESHOLD=0.001
ACQUIRE_SOL_THRESHOLD=0.01
SIGNIFICANT_SELL_RATIO=0.05
"""

    env_path = Path(".env")
    if env_path.exists():
        console.print("[yellow].env file already exists![/yellow]")
        if not typer.confirm("Overwrite existing .env file?"):
            return

    with open(env_path, 'w') as f:
        f.write(env_content)

    console.print(f"[green]Created .env file at {env_path.absolute()}[/green]")
    console.print(
        "\n[yellow]Optional: add a Helius API key for faster refreshes:[/yellow]")
    console.print("1. Get a free key from https://helius.dev")
    console.print("2. Uncomment HELIUS_API_KEY and paste your key")
    console.print("3. Run: sol-tracker track <mint> --wallet <address>")


if __name__ == "__main__":
    app()
