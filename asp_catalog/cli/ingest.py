"""
Ingestion CLI Commands
======================

CLI commands for the batch ingestion pipeline. Every stage is its own
command so an external scheduler can run them independently.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from asp_catalog.ingestion.jobs import (
    DEFAULT_NORMALIZE_LIMIT,
    MAX_NORMALIZE_LIMIT,
    JobResult,
    JobStatus,
    cleanup_invalid,
    crawl_source,
    expire_sales,
    link_performers,
    match_products,
    normalize_performers,
    process_raw,
)
from asp_catalog.ingestion.parsers import get_parser_info, list_parsers
from asp_catalog.ingestion.registry import get_default_registry

console = Console()
ingest_app = typer.Typer(help="Ingestion pipeline commands")
sources_app = typer.Typer(help="Source configuration commands")

ingest_app.add_typer(sources_app, name="sources")


@ingest_app.command("crawl")
def crawl(
    source: str = typer.Option(..., "--source", "-s", help="Source name to crawl"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum detail pages to fetch"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run without writing anything"),
) -> None:
    """
    Crawl a source and ingest its products.

    Examples:
        asp-catalog ingest crawl --source=MGS --limit=20
        asp-catalog ingest crawl -s FANZA --dry-run
    """
    registry = get_default_registry()
    source_config = registry.get_source(source)

    if source_config is None:
        rprint(f"[red]Error:[/red] Source '{source}' not found")
        rprint("\nAvailable sources:")
        for s in registry.list_sources():
            status = "[green]enabled[/green]" if s.enabled else "[yellow]disabled[/yellow]"
            rprint(f"  • {s.name} ({status})")
        raise typer.Exit(1)

    rprint(f"\n[bold]Crawling source:[/bold] {source}")
    rprint(f"  Parser: {source_config.parser}")
    if limit:
        rprint(f"  Limit: {limit}")
    if dry_run:
        rprint("  [yellow]Dry run: nothing will be written[/yellow]")

    with console.status("[bold blue]Crawling...[/bold blue]"):
        result = asyncio.run(crawl_source(source, limit=limit, dry_run=dry_run, registry=registry))

    _finish(result)


@ingest_app.command("process-raw")
def process_raw_command(
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Only this source"),
    limit: int = typer.Option(100, "--limit", "-l", help="Maximum records to process"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run without writing anything"),
) -> None:
    """
    Reprocess raw records that have not been processed successfully.

    Examples:
        asp-catalog ingest process-raw --limit=500
        asp-catalog ingest process-raw -s MGS --dry-run
    """
    with console.status("[bold blue]Processing raw records...[/bold blue]"):
        result = process_raw(source, limit=limit, dry_run=dry_run)
    _finish(result)


@ingest_app.command("link-performers")
def link_performers_command(
    limit: int = typer.Option(100, "--limit", "-l", help="Maximum products to check"),
    asp: Optional[str] = typer.Option(None, "--asp", help="Only products sold on this ASP"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run without writing anything"),
) -> None:
    """
    Resolve performers for products that have none linked.

    Examples:
        asp-catalog ingest link-performers --limit=1000
    """
    with console.status("[bold blue]Linking performers...[/bold blue]"):
        result = link_performers(limit=limit, dry_run=dry_run, asp_name=asp)
    _finish(result)


@ingest_app.command("normalize-performers")
def normalize_performers_command(
    limit: int = typer.Option(
        DEFAULT_NORMALIZE_LIMIT,
        "--limit",
        "-l",
        help=f"Maximum performers to fix (capped at {MAX_NORMALIZE_LIMIT})",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without writing"),
) -> None:
    """
    Merge or rename performers whose names contain stray spaces.

    Examples:
        asp-catalog ingest normalize-performers --dry-run
    """
    if limit > MAX_NORMALIZE_LIMIT:
        rprint(f"[yellow]Limit capped at {MAX_NORMALIZE_LIMIT}[/yellow]")
    result = normalize_performers(limit=limit, dry_run=dry_run)
    _finish(result)


@ingest_app.command("cleanup")
def cleanup_command(
    asp: Optional[str] = typer.Option(None, "--asp", help="Only products sold on this ASP"),
    limit: int = typer.Option(100, "--limit", "-l", help="Maximum products to delete"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without deleting"),
) -> None:
    """
    Delete products linked only from placeholder pages.

    Examples:
        asp-catalog ingest cleanup --asp=MGS --dry-run
    """
    result = cleanup_invalid(limit=limit, dry_run=dry_run, asp_name=asp)
    _finish(result)


@ingest_app.command("match-products")
def match_products_command(
    limit: int = typer.Option(100, "--limit", "-l", help="Maximum products to check"),
    asp: Optional[str] = typer.Option(None, "--asp", help="Only products sold on this ASP"),
    min_confidence: int = typer.Option(60, "--min-confidence", help="Lowest confidence to report"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without merging"),
) -> None:
    """
    Find products listed under different ids and merge the certain ones.

    Examples:
        asp-catalog ingest match-products --dry-run
        asp-catalog ingest match-products --asp=FANZA --min-confidence=75
    """
    with console.status("[bold blue]Matching products...[/bold blue]"):
        result = match_products(
            limit=limit, dry_run=dry_run, asp_name=asp, min_confidence=min_confidence
        )

    if result.details:
        table = Table(title="Product Matches")
        table.add_column("Product")
        table.add_column("Same as")
        table.add_column("Method", no_wrap=True)
        table.add_column("Confidence", justify="right")
        table.add_column("Action")
        for match in result.details:
            action = "[green]merge[/green]" if match["auto_merge"] else "[yellow]review[/yellow]"
            table.add_row(
                match["product_id"][:8],
                match["matched_product_id"][:8],
                match["method"],
                str(match["confidence"]),
                action,
            )
        console.print(table)

    _finish(result)


@ingest_app.command("expire-sales")
def expire_sales_command(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without writing"),
) -> None:
    """Deactivate sales whose end date has passed."""
    result = expire_sales(dry_run=dry_run)
    _finish(result)


@ingest_app.command("sale-stats")
def sale_stats(
    asp: Optional[str] = typer.Option(None, "--asp", help="Only this ASP"),
) -> None:
    """Show active sale counts per ASP."""
    from asp_catalog.db.engine import get_session
    from asp_catalog.ingestion.pricing import PriceTracker

    with get_session() as session:
        stats = PriceTracker(session).sale_stats(asp)

    table = Table(title=f"Active Sales ({stats.total_active_sales})")
    table.add_column("ASP", style="bold")
    table.add_column("Active", justify="right")
    table.add_column("Avg discount", justify="right")

    for row in stats.by_asp:
        discount = f"{row.average_discount_percent:.1f}%" if row.average_discount_percent is not None else "-"
        table.add_row(row.asp_name, str(row.active_sales), discount)

    console.print(table)


@ingest_app.command("predict")
def predict(
    product_id: str = typer.Argument(..., help="Product id or normalized product id"),
) -> None:
    """
    Show seasonal sale statistics for a product.

    Examples:
        asp-catalog ingest predict 259LUXU-1010
    """
    from asp_catalog.db.engine import get_session
    from asp_catalog.db.repositories import ProductRepository
    from asp_catalog.ingestion.pricing import SalePredictor

    with get_session() as session:
        products = ProductRepository(session)
        product = products.get_by_id(product_id) or products.get_by_normalized_id(product_id)
        if product is None:
            matches = products.find_by_id_variants(product_id)
            product = matches[0] if matches else None
        if product is None:
            rprint(f"[red]Error:[/red] Product '{product_id}' not found")
            raise typer.Exit(1)
        prediction = SalePredictor(session).predict_for_product(product.id)

    rprint(f"\n[bold]{product.normalized_product_id}[/bold] {product.title}")
    rprint(f"  Observations: {prediction.observation_count}")
    rprint(f"  Sales so far: {prediction.total_historical_sales}")
    rprint(f"  Sale within 30 days: {prediction.probability_30_days:.0%}")
    rprint(f"  Sale within 90 days: {prediction.probability_90_days:.0%}")
    if prediction.typical_discount_percent is not None:
        rprint(f"  Typical discount: {prediction.typical_discount_percent}%")
    if prediction.next_likely_sale_month:
        rprint(f"  Next likely sale month: {prediction.next_likely_sale_month}")
    if prediction.average_sale_duration_days is not None:
        rprint(f"  Average sale length: {prediction.average_sale_duration_days} days")


@ingest_app.command("parsers")
def parsers() -> None:
    """List available parsers."""
    names = list_parsers()

    if not names:
        rprint("[yellow]No parsers registered[/yellow]")
        return

    table = Table(title="Available Parsers")
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("Class")

    for name in names:
        info = get_parser_info(name)
        if info:
            table.add_row(info["name"], info["version"], info["class"])

    console.print(table)


# Sources subcommands


@sources_app.command("list")
def list_sources(
    all_sources: bool = typer.Option(False, "--all", "-a", help="Show all sources including disabled"),
) -> None:
    """
    List configured sources.

    Examples:
        asp-catalog ingest sources list --all
    """
    registry = get_default_registry()
    sources = registry.list_sources() if all_sources else registry.list_enabled_sources()

    if not sources:
        rprint("[yellow]No sources configured[/yellow]")
        rprint("\nAdd sources to config/sources.yaml")
        return

    table = Table(title="Ingestion Sources")
    table.add_column("Name", style="bold")
    table.add_column("Parser")
    table.add_column("Status")
    table.add_column("Delay")

    for source in sources:
        status = "[green]enabled[/green]" if source.enabled else "[yellow]disabled[/yellow]"
        table.add_row(source.name, source.parser, status, f"{registry.request_delay_for(source)}s")

    console.print(table)


@sources_app.command("show")
def show_source(
    name: str = typer.Argument(..., help="Source name"),
) -> None:
    """
    Show detailed information about a source.

    Examples:
        asp-catalog ingest sources show MGS
    """
    registry = get_default_registry()
    source = registry.get_source(name)

    if source is None:
        rprint(f"[red]Error:[/red] Source '{name}' not found")
        raise typer.Exit(1)

    status = "[green]enabled[/green]" if source.enabled else "[yellow]disabled[/yellow]"

    rprint(f"\n[bold]Source: {source.name}[/bold]")
    rprint(f"  Status: {status}")
    rprint(f"  Parser: {source.parser}")
    if source.description:
        rprint(f"  Description: {source.description}")
    rprint(f"  Currency: {source.currency}")
    rprint(f"  Subscription: {'yes' if source.is_subscription else 'no'}")
    rprint(f"  Request delay: {registry.request_delay_for(source)}s")
    if source.detail_url:
        rprint(f"  Detail URL: {source.detail_url}")

    if source.list_urls:
        rprint("\n[bold]Listing URLs:[/bold]")
        for url in source.list_urls:
            rprint(f"  • {url}")

    if source.product_id_rules:
        rprint(f"\n[bold]Product id rules ({source.id_case.value}):[/bold]")
        for rule in source.product_id_rules:
            rprint(f"  • {rule.pattern} -> {rule.replace}")

    parser_info = get_parser_info(source.parser)
    if parser_info:
        rprint("\n[bold]Parser Info:[/bold]")
        rprint(f"  Name: {parser_info['name']}")
        rprint(f"  Version: {parser_info['version']}")
        rprint(f"  Class: {parser_info['class']}")
    else:
        rprint(f"\n[red]Parser '{source.parser}' is not registered[/red]")


def _finish(result: JobResult) -> None:
    """Display a job result and exit 1 if the job failed to start."""
    _display_job_result(result.to_dict())
    if result.status == JobStatus.FAILED:
        raise typer.Exit(1)


def _display_job_result(result: dict) -> None:
    """Display job result in a formatted table."""
    status = result.get("status", "unknown")
    status_color = {
        "completed": "green",
        "running": "blue",
        "pending": "yellow",
        "failed": "red",
    }.get(status, "white")

    rprint(f"\n[bold]Results: {result.get('job_name')}[/bold]")
    rprint(f"  Status: [{status_color}]{status}[/{status_color}]")
    if result.get("source_name"):
        rprint(f"  Source: {result['source_name']}")
    if result.get("dry_run"):
        rprint("  Mode: [yellow]dry run[/yellow]")
    if result.get("duration_seconds") is not None:
        rprint(f"  Duration: {result['duration_seconds']:.1f}s")

    table = Table(show_header=False, box=None)
    table.add_column("Counter")
    table.add_column("Value", justify="right")
    table.add_row("Found", str(result.get("items_found", 0)))
    table.add_row("Processed", str(result.get("items_processed", 0)))
    table.add_row("Skipped", str(result.get("items_skipped", 0)))
    table.add_row("Failed", str(result.get("items_failed", 0)))
    for name, value in sorted(result.get("counters", {}).items()):
        table.add_row(name.replace("_", " ").capitalize(), str(value))

    rprint("\n[bold]Statistics:[/bold]")
    console.print(table)

    errors = result.get("errors", [])
    if errors:
        rprint(f"\n[bold red]Errors ({len(errors)}):[/bold red]")
        for error in errors[:10]:  # Show first 10
            rprint(f"  • {error}")
        if len(errors) > 10:
            rprint(f"  ... and {len(errors) - 10} more")
