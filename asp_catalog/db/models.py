"""SQLAlchemy ORM models for the ASP catalog.

These models define the tables written by the ingestion pipeline:
- RawContentRecordDB (fetched payloads, deduplicated by content hash)
- ProductDB, ProductSourceDB (canonical products and their per-ASP listings)
- PerformerDB, PerformerAliasDB, TagDB (entity registries)
- ProductPerformerDB, ProductTagDB (link tables)
- PriceHistoryDB, ProductSaleDB (price ledger and sale state)
"""

from datetime import UTC, date, datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    """Return current UTC datetime (naive, as stored in the database)."""
    return datetime.now(UTC).replace(tzinfo=None)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ============================================================================
# Raw Content
# ============================================================================


class RawContentRecordDB(Base):
    """
    Database model for fetched raw content.

    Content lives in object storage when storage_ref is set, otherwise
    inline_content holds the bytes. (source, content_hash) is unique so
    repeated crawls of identical content never add rows.
    """

    __tablename__ = "raw_content_records"
    __table_args__ = (
        UniqueConstraint("source", "content_hash", name="uq_raw_content_source_hash"),
        Index("ix_raw_content_source_processed", "source", "processed_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    source_product_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_ref: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    inline_content: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    mime_type: Mapped[str] = mapped_column(String(100), default="")
    url: Mapped[str] = mapped_column(String(2000), default="")
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return (
            f"<RawContentRecordDB(id={self.id}, source='{self.source}', "
            f"hash={self.content_hash[:12]})>"
        )


# ============================================================================
# Products
# ============================================================================


class ProductDB(Base):
    """
    Database model for canonical products.

    One row per normalized product id, shared by every ASP that sells
    the same title.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    normalized_product_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    release_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    default_thumbnail_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    # Relationships
    sources: Mapped[list["ProductSourceDB"]] = relationship(
        "ProductSourceDB", back_populates="product"
    )

    def __repr__(self) -> str:
        return f"<ProductDB(id={self.id}, normalized_id='{self.normalized_product_id}')>"


class ProductSourceDB(Base):
    """
    Database model for a product as listed on one ASP.

    (asp_name, original_product_id) is the idempotency key for
    "has this listing been seen before".
    """

    __tablename__ = "product_sources"
    __table_args__ = (
        UniqueConstraint("asp_name", "original_product_id", name="uq_product_sources_asp_original"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False, index=True
    )
    asp_name: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    original_product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    affiliate_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="JPY")
    is_subscription: Mapped[bool] = mapped_column(Boolean, default=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    # Relationships
    product: Mapped["ProductDB"] = relationship("ProductDB", back_populates="sources")

    def __repr__(self) -> str:
        return (
            f"<ProductSourceDB(id={self.id}, asp='{self.asp_name}', "
            f"original_id='{self.original_product_id}')>"
        )


# ============================================================================
# Entity Registries
# ============================================================================


class PerformerDB(Base):
    """Database model for canonical performers."""

    __tablename__ = "performers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    name_kana: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<PerformerDB(id={self.id}, name='{self.name}')>"


class PerformerAliasDB(Base):
    """Database model for alternative performer names."""

    __tablename__ = "performer_aliases"
    __table_args__ = (
        UniqueConstraint("performer_id", "alias_name", name="uq_performer_aliases_performer_alias"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    performer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("performers.id"), nullable=False, index=True
    )
    alias_name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<PerformerAliasDB(performer_id={self.performer_id}, alias='{self.alias_name}')>"


class TagDB(Base):
    """Database model for product tags (genres)."""

    __tablename__ = "tags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<TagDB(id={self.id}, name='{self.name}')>"


class ProductPerformerDB(Base):
    """Link table between products and performers."""

    __tablename__ = "product_performers"

    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), primary_key=True
    )
    performer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("performers.id"), primary_key=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class ProductTagDB(Base):
    """Link table between products and tags."""

    __tablename__ = "product_tags"

    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), primary_key=True
    )
    tag_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tags.id"), primary_key=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


# ============================================================================
# Prices and Sales
# ============================================================================


class PriceHistoryDB(Base):
    """
    Database model for price observations.

    Append-only: rows are never updated or deleted by the pipeline
    (except when the owning product is removed by invalid-listing cleanup).
    """

    __tablename__ = "price_history"
    __table_args__ = (
        Index("ix_price_history_source_recorded", "product_source_id", "recorded_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_source_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("product_sources.id"), nullable=False
    )
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    sale_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    discount_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<PriceHistoryDB(source={self.product_source_id}, price={self.price}, "
            f"sale_price={self.sale_price})>"
        )


class ProductSaleDB(Base):
    """
    Database model for sale periods.

    At most one row per product_source_id has is_active set; the partial
    unique index backs up the check done before every insert.
    """

    __tablename__ = "product_sales"
    __table_args__ = (
        Index(
            "uq_product_sales_one_active",
            "product_source_id",
            unique=True,
            sqlite_where=text("is_active"),
            postgresql_where=text("is_active"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_source_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("product_sources.id"), nullable=False, index=True
    )
    regular_price: Mapped[int] = mapped_column(Integer, nullable=False)
    sale_price: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sale_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    sale_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    start_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    end_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return (
            f"<ProductSaleDB(id={self.id}, source={self.product_source_id}, "
            f"sale_price={self.sale_price}, active={self.is_active})>"
        )
