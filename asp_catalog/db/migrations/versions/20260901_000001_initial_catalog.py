"""Initial catalog schema.

Revision ID: 0001
Revises:
Create Date: 2026-09-01

Creates the tables written by the ingestion pipeline:
- raw_content_records (fetched payloads)
- products, product_sources (canonical products and per-ASP listings)
- performers, performer_aliases, tags (entity registries)
- product_performers, product_tags (link tables)
- price_history, product_sales (price ledger and sale periods)

Only uniqueness constraints are created here; lookup indexes follow in 0002.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================================
    # Raw Content
    # =========================================================================

    op.create_table(
        "raw_content_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("source_product_id", sa.String(255), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("storage_ref", sa.String(1000), nullable=True),
        sa.Column("inline_content", sa.LargeBinary(), nullable=True),
        sa.Column("mime_type", sa.String(100), default=""),
        sa.Column("url", sa.String(2000), default=""),
        sa.Column("size_bytes", sa.Integer(), default=0),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("source", "content_hash", name="uq_raw_content_source_hash"),
    )

    # =========================================================================
    # Products
    # =========================================================================

    op.create_table(
        "products",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("normalized_product_id", sa.String(255), nullable=False, unique=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("release_date", sa.Date(), nullable=True),
        sa.Column("default_thumbnail_url", sa.String(2000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "product_sources",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("product_id", sa.String(36), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("asp_name", sa.String(50), nullable=False),
        sa.Column("original_product_id", sa.String(255), nullable=False),
        sa.Column("affiliate_url", sa.String(2000), nullable=True),
        sa.Column("price", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), default="JPY"),
        sa.Column("is_subscription", sa.Boolean(), default=False),
        sa.Column("last_updated", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "asp_name", "original_product_id", name="uq_product_sources_asp_original"
        ),
    )

    # =========================================================================
    # Entity Registries
    # =========================================================================

    op.create_table(
        "performers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("name_kana", sa.String(200), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "performer_aliases",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("performer_id", sa.String(36), sa.ForeignKey("performers.id"), nullable=False),
        sa.Column("alias_name", sa.String(200), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "performer_id", "alias_name", name="uq_performer_aliases_performer_alias"
        ),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("category", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "product_performers",
        sa.Column("product_id", sa.String(36), sa.ForeignKey("products.id"), primary_key=True),
        sa.Column("performer_id", sa.String(36), sa.ForeignKey("performers.id"), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "product_tags",
        sa.Column("product_id", sa.String(36), sa.ForeignKey("products.id"), primary_key=True),
        sa.Column("tag_id", sa.String(36), sa.ForeignKey("tags.id"), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    # =========================================================================
    # Prices and Sales
    # =========================================================================

    op.create_table(
        "price_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "product_source_id", sa.String(36), sa.ForeignKey("product_sources.id"), nullable=False
        ),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("sale_price", sa.Integer(), nullable=True),
        sa.Column("discount_percent", sa.Integer(), nullable=True),
    )

    op.create_table(
        "product_sales",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "product_source_id", sa.String(36), sa.ForeignKey("product_sources.id"), nullable=False
        ),
        sa.Column("regular_price", sa.Integer(), nullable=False),
        sa.Column("sale_price", sa.Integer(), nullable=False),
        sa.Column("discount_percent", sa.Integer(), nullable=True),
        sa.Column("sale_type", sa.String(50), nullable=True),
        sa.Column("sale_name", sa.String(200), nullable=True),
        sa.Column("start_at", sa.DateTime(), nullable=False),
        sa.Column("end_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, default=True),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    # At most one active sale per product source
    op.create_index(
        "uq_product_sales_one_active",
        "product_sales",
        ["product_source_id"],
        unique=True,
        sqlite_where=sa.text("is_active"),
        postgresql_where=sa.text("is_active"),
    )


def downgrade() -> None:
    op.drop_index("uq_product_sales_one_active", table_name="product_sales")
    op.drop_table("product_sales")
    op.drop_table("price_history")
    op.drop_table("product_tags")
    op.drop_table("product_performers")
    op.drop_table("tags")
    op.drop_table("performer_aliases")
    op.drop_table("performers")
    op.drop_table("product_sources")
    op.drop_table("products")
    op.drop_table("raw_content_records")
