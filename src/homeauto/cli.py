"""Command-line interface for the home automation apps."""

import asyncio
import logging
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import config
from .collectors.home_assistant import HomeAssistantError, HomeAssistantStateStore
from .collectors.nordpool import NordPoolClient, NordPoolError
from .collectors.unifi import UnifiClient, UnifiError
from .hub import MemoryStateStore
from .network import count_in_subnet
from .prices import PriceTable, average_entries, subsidized_price
from .runtime import AppHost
from .scheduler import Scheduler

console = Console()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@click.group()
@click.option("--config-dir", type=click.Path(file_okay=False), help="Path to config folder")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, config_dir, verbose):
    """Home automation apps - prices, energy costs and device presence."""
    load_dotenv()
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_dir"] = Path(config_dir) if config_dir else None


def _config_dir(ctx) -> Path:
    try:
        return ctx.obj["config_dir"] or config.get_config_dir()
    except config.ConfigError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.option("--dry-run", is_flag=True, help="Keep entity states in memory instead of Home Assistant")
@click.pass_context
def run(ctx, dry_run):
    """Start all apps and run until interrupted."""
    config_dir = ctx.obj["config_dir"]

    async def main():
        scheduler = Scheduler()
        if dry_run:
            store = MemoryStateStore()
            console.print("[yellow]Dry run: entity states are kept in memory[/yellow]")
        else:
            store = HomeAssistantStateStore(scheduler)
        host = AppHost(store, scheduler, config_dir)
        try:
            await host.run_forever()
        finally:
            if isinstance(store, HomeAssistantStateStore):
                await store.aclose()

    try:
        asyncio.run(main())
    except HomeAssistantError as e:
        console.print(f"[red]Error: {e}[/red]")
    except KeyboardInterrupt:
        console.print("[cyan]Stopped[/cyan]")


@cli.command()
@click.option("--date", "day", help="Delivery date (YYYY-MM-DD), defaults to today")
@click.option("--area", help="Price area (default from nordpool.yaml)")
@click.option("--currency", help="Currency (default from nordpool.yaml)")
@click.pass_context
def prices(ctx, day, area, currency):
    """Fetch and show day-ahead prices."""
    settings = config.load_nordpool_from_yaml(_config_dir(ctx) / config.NORDPOOL_FILE)
    area = area or settings.area
    currency = currency or settings.currency
    tz = ZoneInfo(settings.timezone)
    delivery_date = date.fromisoformat(day) if day else datetime.now(tz).date()

    async def fetch():
        client = NordPoolClient(area, currency)
        try:
            return await client.fetch_prices(delivery_date)
        finally:
            await client.aclose()

    try:
        day_prices = asyncio.run(fetch())
    except NordPoolError as e:
        console.print(f"[red]Error: {e}[/red]")
        return

    if not day_prices.entries:
        console.print(f"[yellow]No prices published for {delivery_date} yet[/yellow]")
        return

    table = Table(title=f"Nord Pool {area} {delivery_date}")
    table.add_column("Start", style="cyan")
    table.add_column("End")
    table.add_column(f"{currency}/MWh", justify="right")
    table.add_column("kr/kWh incl. VAT", justify="right")
    table.add_column("With subsidy", justify="right")

    for entry in day_prices.entries:
        price = entry.price_for(area)
        billed = average_entries([entry]).price_for(area)
        table.add_row(
            entry.delivery_start.astimezone(tz).strftime("%H:%M"),
            entry.delivery_end.astimezone(tz).strftime("%H:%M"),
            f"{price:.2f}" if price is not None else "N/A",
            f"{billed:.4f}" if billed is not None else "N/A",
            f"{subsidized_price(billed):.4f}" if billed is not None else "N/A",
        )

    console.print(table)

    price_table = PriceTable(tz)
    asyncio.run(price_table.add_prices(delivery_date, day_prices.entries))
    current = price_table.current_interval_price()
    price = current.price_for(area) if current is not None else None
    if price is not None:
        console.print(
            f"Current price: [bold]{price:.2f}[/bold] kr/kWh "
            f"({subsidized_price(price):.2f} with subsidy)"
        )


@cli.command()
@click.pass_context
def devices(ctx):
    """List UniFi clients and per-VLAN device counts."""
    settings = config.load_unifi_from_yaml(_config_dir(ctx) / config.UNIFI_FILE)
    if settings is None:
        console.print("[red]No unifi.yaml found, run 'homeauto config init'[/red]")
        return

    async def fetch():
        client = UnifiClient(settings.base_url, verify_ssl=settings.verify_ssl)
        try:
            return await client.get_devices()
        finally:
            await client.aclose()

    try:
        clients = asyncio.run(fetch())
    except UnifiError as e:
        console.print(f"[red]Error: {e}[/red]")
        return

    table = Table(title="UniFi Clients")
    table.add_column("Name", style="cyan")
    table.add_column("IP Address")
    table.add_column("MAC Address", style="dim")
    table.add_column("Type")
    for device in sorted(clients, key=lambda d: (d.name or "").lower()):
        table.add_row(device.name or "Unnamed", device.ip_address or "", device.mac_address or "", device.type or "")
    console.print(table)

    if settings.networks:
        counts = Table(title="Devices per VLAN")
        counts.add_column("Network", style="cyan")
        counts.add_column("Subnet")
        counts.add_column("Devices", justify="right")
        for network in settings.networks:
            counts.add_row(network.name, network.vlan, str(count_in_subnet(network.vlan, clients)))
        console.print(counts)


@cli.group("config")
def config_cmd():
    """Configuration commands."""
    pass


@config_cmd.command("init")
@click.pass_context
def config_init(ctx):
    """Write sample configuration files that do not exist yet."""
    config_dir = _config_dir(ctx)
    samples = {
        config.COST_SENSORS_FILE: config.SAMPLE_COST_SENSORS,
        config.UNIFI_FILE: config.SAMPLE_UNIFI,
    }
    for filename, content in samples.items():
        path = config_dir / filename
        if path.exists():
            console.print(f"[yellow]Skipped {path} (exists)[/yellow]")
            continue
        config.write_sample_config(path, content)
        console.print(f"[green]Created {path}[/green]")


if __name__ == "__main__":
    cli()
