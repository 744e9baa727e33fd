"""Database initialization and persistence layer."""

from asp_catalog.db.engine import (
    check_connection,
    create_db_engine,
    get_database_url,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
    reset_engine,
)
from asp_catalog.db.models import (
    Base,
    PerformerAliasDB,
    PerformerDB,
    PriceHistoryDB,
    ProductDB,
    ProductPerformerDB,
    ProductSaleDB,
    ProductSourceDB,
    ProductTagDB,
    RawContentRecordDB,
    TagDB,
)
from asp_catalog.db.repositories import (
    PerformerRepository,
    PriceHistoryRepository,
    ProductRepository,
    ProductSaleRepository,
    ProductSourceRepository,
    RawContentRepository,
    TagRepository,
    insert_ignore,
)

__all__ = [
    # Engine
    "check_connection",
    "create_db_engine",
    "get_database_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "reset_engine",
    # Models
    "Base",
    "RawContentRecordDB",
    "ProductDB",
    "ProductSourceDB",
    "PerformerDB",
    "PerformerAliasDB",
    "TagDB",
    "ProductPerformerDB",
    "ProductTagDB",
    "PriceHistoryDB",
    "ProductSaleDB",
    # Repositories
    "insert_ignore",
    "RawContentRepository",
    "ProductRepository",
    "ProductSourceRepository",
    "PerformerRepository",
    "TagRepository",
    "PriceHistoryRepository",
    "ProductSaleRepository",
]
