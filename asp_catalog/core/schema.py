"""Pydantic v2 models for the ASP catalog.

These models are the read-side view of the canonical tables:
- RawContentRecord (fetched payloads)
- Product, ProductSource (catalog entries)
- Performer, PerformerAlias, Tag (entity registries)
- PriceObservation, ProductSale (price ledger and sale periods)
- SalePrediction, SaleStats, AspSaleStats (derived statistics)
"""

from datetime import UTC, date, datetime

from pydantic import BaseModel, Field, field_validator


def _utc_now() -> datetime:
    """Return current UTC datetime (naive)."""
    return datetime.now(UTC).replace(tzinfo=None)


# ============================================================================
# Raw Content
# ============================================================================


class RawContentRecord(BaseModel):
    """A fetched payload, deduplicated by (source, content_hash)."""

    id: str
    source: str
    source_product_id: str
    content_hash: str = Field(min_length=64, max_length=64)
    storage_ref: str | None = None
    inline_content: bytes | None = None
    mime_type: str = ""
    url: str = ""
    size_bytes: int = 0
    fetched_at: datetime = Field(default_factory=_utc_now)
    processed_at: datetime | None = None

    @property
    def is_processed(self) -> bool:
        """Check whether parsing has already succeeded for this record."""
        return self.processed_at is not None


# ============================================================================
# Catalog
# ============================================================================


class Product(BaseModel):
    """A canonical product shared by every ASP selling the same title."""

    id: str
    normalized_product_id: str
    title: str
    description: str | None = None
    release_date: date | None = None
    default_thumbnail_url: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class ProductSource(BaseModel):
    """One ASP's listing of a product."""

    id: str
    product_id: str
    asp_name: str
    original_product_id: str
    affiliate_url: str | None = None
    price: int | None = Field(default=None, ge=0)
    currency: str = "JPY"
    is_subscription: bool = False
    last_updated: datetime = Field(default_factory=_utc_now)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        """Store currency codes upper-cased."""
        return v.upper()


# ============================================================================
# Entity Registries
# ============================================================================


class Performer(BaseModel):
    """A canonical performer."""

    id: str
    name: str = Field(min_length=1)
    name_kana: str | None = None
    aliases: list[str] = Field(default_factory=list)


class Tag(BaseModel):
    """A product tag (genre)."""

    id: str
    name: str = Field(min_length=1)
    category: str | None = None


# ============================================================================
# Prices and Sales
# ============================================================================


class PriceObservation(BaseModel):
    """A single row of the append-only price ledger."""

    id: str
    product_source_id: str
    recorded_at: datetime
    price: int = Field(ge=0)
    sale_price: int | None = Field(default=None, ge=0)
    discount_percent: int | None = Field(default=None, ge=0, le=100)

    @property
    def is_discounted(self) -> bool:
        """Check whether this observation shows a sale."""
        return (
            self.sale_price is not None
            and self.sale_price < self.price
            and (self.discount_percent is None or self.discount_percent > 0)
        )


class ProductSale(BaseModel):
    """A sale period on one product source."""

    id: str
    product_source_id: str
    regular_price: int = Field(ge=0)
    sale_price: int = Field(ge=0)
    discount_percent: int | None = Field(default=None, ge=0, le=100)
    sale_type: str | None = None
    sale_name: str | None = None
    start_at: datetime
    end_at: datetime | None = None
    is_active: bool = True

    @property
    def duration_days(self) -> float | None:
        """Length of a finished sale in days."""
        if self.end_at is None:
            return None
        return (self.end_at - self.start_at).total_seconds() / 86400


class SalePrediction(BaseModel):
    """Seasonal sale statistics derived from the price ledger."""

    probability_30_days: float = Field(default=0.0, ge=0.0, le=1.0)
    probability_90_days: float = Field(default=0.0, ge=0.0, le=1.0)
    typical_discount_percent: int | None = None
    next_likely_sale_month: str | None = None  # YYYY-MM
    monthly_sale_rate: dict[int, float] = Field(default_factory=dict)
    historical_sale_dates: list[datetime] = Field(default_factory=list)
    average_sale_duration_days: float | None = None
    total_historical_sales: int = 0
    observation_count: int = 0


class AspSaleStats(BaseModel):
    """Active sale counts for one ASP."""

    asp_name: str
    active_sales: int = 0
    average_discount_percent: float | None = None


class SaleStats(BaseModel):
    """Catalog-wide sale summary."""

    total_active_sales: int = 0
    by_asp: list[AspSaleStats] = Field(default_factory=list)
