"""Add lookup indexes.

Revision ID: 0002
Revises: 0001
Create Date: 2026-09-01

On PostgreSQL the indexes are built CONCURRENTLY so a populated catalog
stays writable while they build. A concurrent build cannot run inside a
transaction, so each one runs in an autocommit block; if it fails, the
invalid leftover is dropped and the index is built the blocking way.
"""

import logging
from typing import Sequence, Union

from alembic import op
from sqlalchemy.exc import DBAPIError

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

logger = logging.getLogger(__name__)

INDEXES: list[tuple[str, str, list[str]]] = [
    ("ix_raw_content_source_processed", "raw_content_records", ["source", "processed_at"]),
    ("ix_raw_content_records_source_product_id", "raw_content_records", ["source_product_id"]),
    ("ix_product_sources_product_id", "product_sources", ["product_id"]),
    ("ix_product_sources_asp_name", "product_sources", ["asp_name"]),
    ("ix_performer_aliases_performer_id", "performer_aliases", ["performer_id"]),
    ("ix_performer_aliases_alias_name", "performer_aliases", ["alias_name"]),
    ("ix_product_performers_performer_id", "product_performers", ["performer_id"]),
    ("ix_product_tags_tag_id", "product_tags", ["tag_id"]),
    ("ix_price_history_source_recorded", "price_history", ["product_source_id", "recorded_at"]),
    ("ix_product_sales_product_source_id", "product_sales", ["product_source_id"]),
    ("ix_product_sales_is_active", "product_sales", ["is_active"]),
]


def _create_index(name: str, table: str, columns: list[str]) -> None:
    if op.get_bind().dialect.name == "postgresql":
        try:
            with op.get_context().autocommit_block():
                op.create_index(
                    name, table, columns, postgresql_concurrently=True, if_not_exists=True
                )
            return
        except DBAPIError as e:
            logger.warning(f"Concurrent build of {name} failed, building with a lock: {e}")
            with op.get_context().autocommit_block():
                op.execute(f'DROP INDEX CONCURRENTLY IF EXISTS "{name}"')

    op.create_index(name, table, columns, if_not_exists=True)


def upgrade() -> None:
    for name, table, columns in INDEXES:
        _create_index(name, table, columns)


def downgrade() -> None:
    for name, table, _ in reversed(INDEXES):
        op.drop_index(name, table_name=table, if_exists=True)
