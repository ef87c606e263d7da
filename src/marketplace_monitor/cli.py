import asyncio
import json
import sqlite3
from dataclasses import fields, replace
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from marketplace_monitor.categories import categories_from_names, detect_category
from marketplace_monitor.config import configure_logging, get_config
from marketplace_monitor.db import Database
from marketplace_monitor.errors import InvalidSearchError
from marketplace_monitor.filters import apply_filter, is_price_drop
from marketplace_monitor.models import DateListed, FilterSpec, ListingStatus, RunResult, Search
from marketplace_monitor.notifications import AlertPolicy, ConsoleSink
from marketplace_monitor.scheduler import Monitor, Scheduler
from marketplace_monitor.scraper import HttpScraper
from marketplace_monitor.settings import (
    MonitorSettings,
    alert_conditions_from,
    load_settings,
    parse_setting,
    save_settings,
)
from marketplace_monitor.stats import summarize_listings
from marketplace_monitor.store import SqliteListingStore
from marketplace_monitor.validation import validate_search

app = typer.Typer(
    name="marketplace-monitor",
    help="Watch marketplace searches for new listings and price drops",
    no_args_is_help=True,
)
console = Console()


def get_db() -> Database:
    """Get database connection."""
    config = get_config()
    configure_logging(config.log_level)
    db = Database(config.db_path)
    db.init()
    return db


def get_scraper():
    config = get_config()
    return HttpScraper(config.base_url, config.proxy_url)


def build_monitor(db: Database) -> Monitor:
    settings = load_settings(db)
    policy = AlertPolicy(alert_conditions_from(settings))
    sink = ConsoleSink(console) if settings.notifications_enabled else None
    return Monitor(db, SqliteListingStore(db), get_scraper(), policy, sink)


def require_search(db: Database, search_id: int) -> Search:
    search = db.get_search_by_id(search_id)
    if not search:
        console.print(f"[red]Search {search_id} not found[/red]")
        db.close()
        raise typer.Exit(1)
    return search


def print_result(search: Search, result: RunResult) -> None:
    console.print(f"[cyan]{search.keywords}[/cyan]")
    if not result.ok:
        console.print(f"  [red]Error: {result.error}[/red]")
        return
    report = result.report
    console.print(
        f"  Found {result.fetched} listings, {len(report.new_listings)} new, "
        f"{len(report.price_drop_listings)} price drops, {len(report.stale_removed_ids)} removed"
    )
    if result.status == "partial":
        console.print(
            f"  [yellow]Warning: {result.failed} listings and {result.failed_deletes} "
            f"removals could not be saved[/yellow]"
        )
    if result.error:
        console.print(f"  [yellow]Warning: {result.error}[/yellow]")


@app.command()
def add(
    keywords: str = typer.Argument(..., help="Comma-separated search terms"),
    min_price: Optional[float] = typer.Option(None, "--min-price", help="Minimum price filter"),
    max_price: Optional[float] = typer.Option(None, "--max-price", help="Maximum price filter"),
    date_listed: DateListed = typer.Option(DateListed.ALL, "--date-listed", "-d", help="Only listings from this period"),
    location: str = typer.Option("", "--location", "-l", help="Marketplace location"),
    radius: Optional[int] = typer.Option(None, "--radius", "-r", help="Search radius"),
    disabled: bool = typer.Option(False, "--disabled", help="Create the search disabled"),
):
    """Add a new saved search."""
    search = Search(
        id=None,
        keywords=keywords,
        min_price=min_price,
        max_price=max_price,
        date_listed=date_listed,
        location=location,
        radius=radius,
        enabled=not disabled,
    )
    try:
        validate_search(search)
    except InvalidSearchError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    db = get_db()
    search_id = db.add_search(search)
    db.close()

    console.print(f"[green]Added search {search_id}:[/green] {keywords}")


@app.command("list")
def list_searches():
    """List all saved searches."""
    db = get_db()
    searches = db.get_all_searches()

    if not searches:
        console.print("[dim]No searches saved yet. Use 'add' to create one.[/dim]")
        db.close()
        return

    table = Table(title="Saved Searches")
    table.add_column("ID", justify="right")
    table.add_column("Keywords", style="cyan")
    table.add_column("Price", style="dim")
    table.add_column("Listed", style="dim")
    table.add_column("Enabled")
    table.add_column("Listings", justify="right")
    table.add_column("Last Checked", style="dim")

    for search in searches:
        count = db.get_listing_count_for_search(search.id)
        low = f"${search.min_price:g}" if search.min_price is not None else ""
        high = f"${search.max_price:g}" if search.max_price is not None else ""
        price = f"{low}-{high}" if low or high else "-"
        last_checked = search.last_checked.strftime("%Y-%m-%d %H:%M") if search.last_checked else "Never"
        table.add_row(
            str(search.id),
            search.keywords,
            price,
            search.date_listed.value,
            "yes" if search.enabled else "[dim]no[/dim]",
            str(count),
            last_checked,
        )

    console.print(table)
    db.close()


@app.command()
def remove(
    search_id: int = typer.Argument(..., help="ID of search to remove"),
):
    """Remove a search and all its listings."""
    db = get_db()
    search = require_search(db, search_id)

    listing_count = db.get_listing_count_for_search(search.id)
    db.delete_search(search.id)
    db.close()

    console.print(f"[green]Removed search:[/green] {search.keywords}")
    if listing_count > 0:
        console.print(f"  [dim]Deleted {listing_count} listings[/dim]")


@app.command()
def edit(
    search_id: int = typer.Argument(..., help="ID of search to edit"),
    keywords: Optional[str] = typer.Option(None, "--keywords", "-k", help="New comma-separated search terms"),
    min_price: Optional[float] = typer.Option(None, "--min-price", help="Minimum price filter"),
    max_price: Optional[float] = typer.Option(None, "--max-price", help="Maximum price filter"),
    date_listed: Optional[DateListed] = typer.Option(None, "--date-listed", "-d", help="Only listings from this period"),
    location: Optional[str] = typer.Option(None, "--location", "-l", help="Marketplace location"),
    radius: Optional[int] = typer.Option(None, "--radius", "-r", help="Search radius"),
    clear_prices: bool = typer.Option(False, "--clear-prices", help="Remove both price filters"),
):
    """Change an existing search."""
    db = get_db()
    search = require_search(db, search_id)

    updates = {}
    if clear_prices:
        updates["min_price"] = None
        updates["max_price"] = None
    options = {
        "keywords": keywords,
        "min_price": min_price,
        "max_price": max_price,
        "date_listed": date_listed,
        "location": location,
        "radius": radius,
    }
    updates.update({name: value for name, value in options.items() if value is not None})

    if not updates:
        console.print("[dim]No changes specified[/dim]")
        db.close()
        return

    try:
        validate_search(replace(search, **updates))
    except InvalidSearchError as e:
        console.print(f"[red]{e}[/red]")
        db.close()
        raise typer.Exit(1)

    db.update_search(search.id, **updates)
    db.close()

    console.print(f"[green]Updated search {search.id}:[/green] {updates.get('keywords', search.keywords)}")
    for name, value in updates.items():
        shown = value.value if isinstance(value, DateListed) else value
        console.print(f"  [dim]{name} = {shown}[/dim]")


def _set_enabled(search_id: int, enabled: bool) -> None:
    db = get_db()
    search = require_search(db, search_id)
    db.update_search(search.id, enabled=enabled)
    db.close()
    state = "Enabled" if enabled else "Disabled"
    console.print(f"[green]{state} search:[/green] {search.keywords}")


@app.command()
def enable(search_id: int = typer.Argument(..., help="ID of search to enable")):
    """Include a search in automatic runs."""
    _set_enabled(search_id, True)


@app.command()
def disable(search_id: int = typer.Argument(..., help="ID of search to disable")):
    """Exclude a search from automatic runs."""
    _set_enabled(search_id, False)


@app.command()
def run(
    search_id: Optional[int] = typer.Argument(None, help="ID of search to run (all enabled if not specified)"),
):
    """Fetch listings now and reconcile them with stored state."""
    db = get_db()

    if search_id is not None:
        searches = [require_search(db, search_id)]
    else:
        searches = db.get_enabled_searches()

    if not searches:
        console.print("[dim]No searches to run. Use 'add' to create one.[/dim]")
        db.close()
        return

    monitor = build_monitor(db)
    console.print(f"[cyan]Running {len(searches)} search(es)...[/cyan]")
    results = asyncio.run(monitor.run_all(searches, on_result=print_result))
    db.close()

    total_new = sum(len(r.report.new_listings) for r in results)
    failed = sum(1 for r in results if not r.ok)
    console.print()
    console.print(f"[green]Done![/green] {total_new} new listings")
    if failed:
        console.print(f"[yellow]{failed} search(es) failed[/yellow]")


@app.command()
def watch():
    """Run all enabled searches on the configured interval."""
    db = get_db()
    settings = load_settings(db)
    if settings.check_interval_minutes <= 0:
        console.print("[yellow]Automatic searches are disabled (checkInterval is 0)[/yellow]")
        db.close()
        return

    console.print(
        f"[cyan]Watching[/cyan] every {settings.check_interval_minutes} minutes "
        f"between {settings.start_time} and {settings.end_time}. Press Ctrl+C to stop."
    )
    scheduler = Scheduler(build_monitor(db), db)
    try:
        asyncio.run(scheduler.run_forever())
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")
    finally:
        db.close()


@app.command()
def listings(
    search_id: int = typer.Argument(..., help="ID of search to show"),
    status: Optional[list[ListingStatus]] = typer.Option(None, "--status", "-s", help="new, price-drop or seen"),
    category: Optional[list[str]] = typer.Option(None, "--category", "-c", help="Category to include"),
    min_price: Optional[float] = typer.Option(None, "--min-price", help="Minimum price"),
    max_price: Optional[float] = typer.Option(None, "--max-price", help="Maximum price"),
):
    """Show stored listings for a search."""
    db = get_db()
    search = require_search(db, search_id)

    try:
        categories = categories_from_names(category or [])
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        db.close()
        raise typer.Exit(1)

    spec = FilterSpec(
        min_price=min_price,
        max_price=max_price,
        categories=categories,
        statuses=frozenset(status or []),
    )
    stored = db.get_listings_by_search(search.id)
    shown = apply_filter(stored, spec)
    db.close()

    if not shown:
        console.print(f"[dim]No matching listings ({len(stored)} stored)[/dim]")
        return

    table = Table(title=f"{search.keywords} ({len(shown)} of {len(stored)})")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Price", justify="right")
    table.add_column("Category", style="dim")
    table.add_column("Status")
    table.add_column("Location", style="dim")

    for listing in shown:
        if listing.hidden:
            state = "[dim]hidden[/dim]"
        elif is_price_drop(listing):
            state = f"[magenta]price drop[/magenta] (was {listing.original_price})"
        elif listing.seen:
            state = "seen"
        else:
            state = "[green]new[/green]"
        table.add_row(
            listing.id,
            listing.title,
            listing.price,
            detect_category(listing).value,
            state,
            listing.location,
        )

    console.print(table)


@app.command()
def hide(
    search_id: int = typer.Argument(..., help="Search the listing belongs to"),
    listing_id: str = typer.Argument(..., help="Listing ID"),
):
    """Hide a listing; it stays hidden on later runs unless its price drops."""
    db = get_db()
    if not db.hide_listing(search_id, listing_id):
        console.print(f"[red]Listing '{listing_id}' not found[/red]")
        db.close()
        raise typer.Exit(1)
    db.close()
    console.print(f"[green]Hidden:[/green] {listing_id}")


@app.command()
def seen(
    search_id: int = typer.Argument(..., help="Search the listing belongs to"),
    listing_id: str = typer.Argument(..., help="Listing ID"),
):
    """Mark a listing as seen."""
    db = get_db()
    if not db.mark_listing_seen(search_id, listing_id):
        console.print(f"[red]Listing '{listing_id}' not found[/red]")
        db.close()
        raise typer.Exit(1)
    db.close()
    console.print(f"[green]Marked as seen:[/green] {listing_id}")


@app.command("settings")
def settings_command(
    set_values: Optional[list[str]] = typer.Option(None, "--set", help="NAME=VALUE, e.g. check_interval_minutes=15"),
):
    """Show or change monitor settings."""
    db = get_db()
    current = load_settings(db)

    if set_values:
        names = {f.name for f in fields(MonitorSettings)}
        for item in set_values:
            name, sep, value = item.partition("=")
            name = name.strip()
            if not sep or name not in names:
                console.print(f"[red]Unknown setting '{name}'[/red]")
                db.close()
                raise typer.Exit(1)
            try:
                setattr(current, name, parse_setting(name, value.strip()))
            except ValueError:
                console.print(f"[red]Invalid value for {name}: {value}[/red]")
                db.close()
                raise typer.Exit(1)
        save_settings(db, current)
        console.print("[green]Settings updated[/green]")

    table = Table(title="Settings")
    table.add_column("Name", style="cyan")
    table.add_column("Value")
    for f in fields(MonitorSettings):
        table.add_row(f.name, str(getattr(current, f.name)))
    console.print(table)
    db.close()


@app.command()
def stats(
    search_id: Optional[int] = typer.Argument(None, help="ID of search to summarize (overview if not specified)"),
):
    """Summarize stored listings."""
    db = get_db()

    if search_id is None:
        overview = db.get_stats()
        db.close()
        console.print("[bold]Marketplace Monitor[/bold]")
        console.print(f"  Searches: {overview['total_searches']} ({overview['active_searches']} active)")
        console.print(f"  Listings: {overview['total_listings']} ({overview['unseen_listings']} unseen)")
        console.print(f"  Last 24h: {overview['recent_listings']}")
        return

    search = require_search(db, search_id)
    summary = summarize_listings(db.get_listings_by_search(search.id))
    db.close()

    console.print()
    console.print(f"[bold cyan]{search.keywords}[/bold cyan] ({summary['count']} listings, {summary['hidden']} hidden)")
    status_counts = summary["status"]
    console.print(
        f"[bold]Status:[/bold]     {status_counts['new']} new  |  "
        f"{status_counts['price-drop']} price drops  |  {status_counts['seen']} seen"
    )
    present = {name: count for name, count in summary["category"].items() if count}
    if present:
        console.print("[bold]Categories:[/bold] " + "  |  ".join(f"{name} {count}" for name, count in present.items()))
    price = summary["price"]
    if price["median"] is not None:
        console.print(
            f"[bold]Price:[/bold]      ${price['median']:.0f} median  |  "
            f"${price['min']:.0f}-{price['max']:.0f} range"
        )


@app.command()
def export(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to this file instead of stdout"),
):
    """Export searches, listings and settings as JSON."""
    db = get_db()
    data = db.export_data()
    db.close()

    text = json.dumps(data, indent=2)
    if output is None:
        typer.echo(text)
        return
    output.write_text(text)
    console.print(
        f"[green]Exported[/green] {len(data['searches'])} searches and "
        f"{len(data['listings'])} listings to {output}"
    )


@app.command("import")
def import_data(
    path: Path = typer.Argument(..., help="JSON file written by 'export'"),
):
    """Import a JSON export into the database."""
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Could not read {path}: {e}[/red]")
        raise typer.Exit(1)

    db = get_db()
    try:
        counts = db.import_data(data)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Import failed: {e}[/red]")
        db.close()
        raise typer.Exit(1)
    db.close()

    console.print(
        f"[green]Imported[/green] {counts['searches']} searches, "
        f"{counts['listings']} listings and {counts['settings']} settings"
    )


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete all searches and listings and restore default settings."""
    if not yes and not typer.confirm("Delete all searches, listings and settings?"):
        console.print("[dim]Cancelled[/dim]")
        return

    db = get_db()
    db.clear_all_data()
    db.close()
    console.print("[green]All data cleared[/green]")


@app.command()
def status():
    """Show configuration and database status."""
    config = get_config()

    console.print("[bold]Marketplace Monitor Status[/bold]")
    console.print()

    console.print(f"[cyan]Database:[/cyan] {config.db_path}")
    if config.db_path.exists():
        db = get_db()
        overview = db.get_stats()
        console.print(f"  Searches: {overview['total_searches']}")
        console.print(f"  Listings: {overview['total_listings']}")
        db.close()
    else:
        console.print("  [dim]Not initialized[/dim]")

    console.print()
    console.print(f"[cyan]Marketplace:[/cyan] {config.base_url}")
    console.print("[cyan]Proxy:[/cyan]", end=" ")
    if config.proxy_url:
        # Mask credentials in URL
        masked = config.proxy_url.split("@")[-1] if "@" in config.proxy_url else config.proxy_url
        console.print(f"Configured ({masked})")
    else:
        console.print("[yellow]Not configured[/yellow]")
        console.print("  [dim]Set MARKETPLACE_MONITOR_PROXY_URL in .env[/dim]")


if __name__ == "__main__":
    app()
