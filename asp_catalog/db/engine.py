"""
Engine and session management for the catalog database.

SQLite is the default for local runs. Any SQLAlchemy URL (PostgreSQL via
psycopg in production) can be supplied through DATABASE_URL. One engine
and one session factory are created lazily per process and shared by the
batch jobs and the CLI.
"""

import os
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

DEFAULT_DB_PATH = Path.home() / ".asp_catalog" / "asp_catalog.db"

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def _sqlite_url(path: Path | str) -> str:
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}"


def get_database_url(db_path: Path | str | None = None) -> str:
    """
    Resolve the catalog database URL.

    An explicit db_path wins. Otherwise DATABASE_URL is used, either as a
    full URL or as a bare SQLite file path, falling back to DEFAULT_DB_PATH.
    """
    if db_path is not None:
        return _sqlite_url(db_path)

    configured = os.environ.get("DATABASE_URL", "").strip()
    if "://" in configured:
        return configured
    return _sqlite_url(configured or DEFAULT_DB_PATH)


def create_db_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """Create an engine for the resolved URL."""
    url = get_database_url(db_path)
    if url.startswith("sqlite"):
        # Writers from parallel batch processes wait on the file lock
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, echo=echo, pool_pre_ping=True)


_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def get_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_db_engine(db_path, echo)
    return _engine


def get_session_factory(db_path: Path | str | None = None) -> sessionmaker[Session]:
    """Return the process-wide session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(bind=get_engine(db_path), autoflush=False)
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the shared engine so the next call re-reads the configuration."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_session(db_path: Path | str | None = None) -> Generator[Session, None, None]:
    """
    Open a session on the shared factory and close it afterwards.

    Committing is left to the caller:

        with get_session() as session:
            ProductRepository(session).create_if_absent("ABC-001")
            session.commit()
    """
    session = get_session_factory(db_path)()
    try:
        yield session
    finally:
        session.close()


def check_connection(session_factory: sessionmaker[Session]) -> None:
    """
    Run a trivial query to prove the database is reachable.

    Raises:
        sqlalchemy.exc.OperationalError: If no connection can be made.
    """
    with session_factory() as session:
        session.execute(text("SELECT 1"))


def init_db(db_path: Path | str | None = None) -> None:
    """
    Create every catalog table directly from the ORM metadata.

    Meant for local SQLite files and tests. Shared databases should be
    brought up to date with run_migrations() instead.
    """
    from asp_catalog.db.models import Base

    Base.metadata.create_all(bind=get_engine(db_path))


def run_migrations(db_path: Path | str | None = None, revision: str = "head") -> None:
    """
    Upgrade the database to the given Alembic revision.

    Uses alembic.ini from the project root when present (a source checkout),
    otherwise the migrations bundled with the package.
    """
    alembic_ini = Path(__file__).resolve().parents[2] / "alembic.ini"
    config = Config(str(alembic_ini)) if alembic_ini.exists() else Config()

    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    # ConfigParser interpolation: escape percent-encoded credentials
    config.set_main_option("sqlalchemy.url", get_database_url(db_path).replace("%", "%%"))
    command.upgrade(config, revision)
