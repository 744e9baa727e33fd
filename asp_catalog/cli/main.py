"""ASP Catalog CLI using Typer."""

import logging
from pathlib import Path

import typer
from dotenv import load_dotenv
from rich.logging import RichHandler

from asp_catalog import __version__
from asp_catalog.cli.ingest import ingest_app

# Load .env file from current directory or project root
_env_paths = [
    Path.cwd() / ".env",
    Path(__file__).parent.parent.parent / ".env",
]
for _env_path in _env_paths:
    if _env_path.exists():
        load_dotenv(_env_path)
        break

app = typer.Typer(
    name="asp-catalog",
    help="ASP Catalog - batch ingestion of affiliate product catalogs",
    add_completion=False,
)
app.add_typer(ingest_app, name="ingest")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


@app.command()
def init_db() -> None:
    """Initialize the database (create tables)."""
    from asp_catalog.db.engine import init_db as db_init

    typer.echo("Initializing database...")
    db_init()
    typer.echo("Database initialized successfully!")


@app.command()
def migrate() -> None:
    """Apply Alembic migrations up to the latest revision."""
    from asp_catalog.db.engine import run_migrations

    typer.echo("Running migrations...")
    try:
        run_migrations()
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo("Database is up to date.")


@app.command()
def version() -> None:
    """Show the ASP Catalog version."""
    typer.echo(f"ASP Catalog v{__version__}")


@app.command()
def status() -> None:
    """Show the database location and catalog row counts."""
    from sqlalchemy.exc import SQLAlchemyError

    from asp_catalog.db.engine import get_database_url, get_session
    from asp_catalog.db.repositories import (
        PerformerRepository,
        PriceHistoryRepository,
        ProductRepository,
        ProductSaleRepository,
        ProductSourceRepository,
        RawContentRepository,
    )

    typer.echo("ASP Catalog Status")
    typer.echo("=" * 40)
    typer.echo(f"  Database: {get_database_url()}")

    try:
        with get_session() as session:
            raw = RawContentRepository(session)
            counts = {
                "Raw records": raw.count(),
                "Unprocessed raw records": raw.count_unprocessed(),
                "Products": ProductRepository(session).count(),
                "Product sources": ProductSourceRepository(session).count(),
                "Performers": PerformerRepository(session).count(),
                "Price observations": PriceHistoryRepository(session).count(),
                "Active sales": ProductSaleRepository(session).count_active(),
            }
    except SQLAlchemyError as e:
        typer.echo(f"  Error: database unavailable ({e})", err=True)
        raise typer.Exit(1)

    for label, value in counts.items():
        typer.echo(f"  {label}: {value}")


if __name__ == "__main__":
    app()
