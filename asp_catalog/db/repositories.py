"""Repository classes for catalog database operations.

Writes that can race with another batch process (raw content, products,
product sources, performers, tags and link rows) go through
``insert_ignore`` so duplicate inserts are absorbed by the database's
unique constraints instead of surfacing as errors.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from asp_catalog.core.schema import (
    AspSaleStats,
    Performer,
    PriceObservation,
    Product,
    ProductSale,
    ProductSource,
    RawContentRecord,
    SaleStats,
    Tag,
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
    _generate_uuid,
    _utc_now,
)


def insert_ignore(
    session: Session,
    model: type[Base],
    values: dict[str, Any],
    index_elements: list[str],
) -> bool:
    """
    Insert a row, doing nothing if it conflicts with a unique key.

    Args:
        session: Active session
        model: ORM model class
        values: Column values
        index_elements: Columns of the unique constraint to test

    Returns:
        True if a row was inserted, False if it already existed
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise NotImplementedError(f"Conflict-tolerant insert not supported for {dialect}")

    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    result = session.execute(stmt)
    return (result.rowcount or 0) > 0


# ============================================================================
# Raw Content
# ============================================================================


class RawContentRepository:
    """Repository for raw content records."""

    def __init__(self, session: Session):
        self.session = session

    def insert_if_absent(
        self,
        source: str,
        source_product_id: str,
        content_hash: str,
        storage_ref: str | None,
        inline_content: bytes | None,
        mime_type: str = "",
        url: str = "",
        size_bytes: int = 0,
    ) -> tuple[RawContentRecord, bool]:
        """
        Insert a record unless (source, content_hash) already exists.

        Returns:
            Tuple of (record, created)
        """
        now = _utc_now()
        created = insert_ignore(
            self.session,
            RawContentRecordDB,
            {
                "id": _generate_uuid(),
                "source": source,
                "source_product_id": source_product_id,
                "content_hash": content_hash,
                "storage_ref": storage_ref,
                "inline_content": inline_content,
                "mime_type": mime_type,
                "url": url,
                "size_bytes": size_bytes,
                "fetched_at": now,
                "created_at": now,
            },
            ["source", "content_hash"],
        )
        record = self.get_by_hash(source, content_hash)
        if record is None:
            raise RuntimeError(f"Raw record for {source}/{content_hash} vanished after insert")
        return record, created

    def get_by_id(self, record_id: str) -> RawContentRecord | None:
        """Get a record by ID."""
        db_item = self.session.get(RawContentRecordDB, record_id)
        return self._to_domain(db_item) if db_item else None

    def get_by_hash(self, source: str, content_hash: str) -> RawContentRecord | None:
        """Get a record by its dedup key."""
        stmt = select(RawContentRecordDB).where(
            RawContentRecordDB.source == source,
            RawContentRecordDB.content_hash == content_hash,
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def list_unprocessed(self, source: str | None = None, limit: int = 100) -> list[RawContentRecord]:
        """List records whose parsing has not yet succeeded, oldest first."""
        stmt = select(RawContentRecordDB).where(RawContentRecordDB.processed_at.is_(None))
        if source:
            stmt = stmt.where(RawContentRecordDB.source == source)
        stmt = stmt.order_by(RawContentRecordDB.fetched_at).limit(limit)
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(r) for r in result]

    def count_unprocessed(self, source: str | None = None) -> int:
        """Count records awaiting processing."""
        stmt = (
            select(func.count())
            .select_from(RawContentRecordDB)
            .where(RawContentRecordDB.processed_at.is_(None))
        )
        if source:
            stmt = stmt.where(RawContentRecordDB.source == source)
        return self.session.execute(stmt).scalar() or 0

    def mark_processed(self, record_id: str, processed_at: datetime | None = None) -> bool:
        """
        Set processed_at if it is still unset.

        Returns:
            True if this call set it, False if it was already set
        """
        stmt = (
            update(RawContentRecordDB)
            .where(
                RawContentRecordDB.id == record_id,
                RawContentRecordDB.processed_at.is_(None),
            )
            .values(processed_at=processed_at or _utc_now())
        )
        result = self.session.execute(stmt)
        return (result.rowcount or 0) > 0

    def count(self) -> int:
        """Get total count of raw records."""
        stmt = select(func.count()).select_from(RawContentRecordDB)
        return self.session.execute(stmt).scalar() or 0

    def _to_domain(self, db_item: RawContentRecordDB) -> RawContentRecord:
        """Convert DB model to domain model."""
        return RawContentRecord(
            id=db_item.id,
            source=db_item.source,
            source_product_id=db_item.source_product_id,
            content_hash=db_item.content_hash,
            storage_ref=db_item.storage_ref,
            inline_content=db_item.inline_content,
            mime_type=db_item.mime_type,
            url=db_item.url,
            size_bytes=db_item.size_bytes,
            fetched_at=db_item.fetched_at,
            processed_at=db_item.processed_at,
        )


# ============================================================================
# Products
# ============================================================================


class ProductRepository:
    """Repository for canonical products."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, product_id: str) -> Product | None:
        """Get a product by ID."""
        db_item = self.session.get(ProductDB, product_id)
        return self._to_domain(db_item) if db_item else None

    def get_by_normalized_id(self, normalized_product_id: str) -> Product | None:
        """Get a product by its normalized product id."""
        stmt = select(ProductDB).where(ProductDB.normalized_product_id == normalized_product_id)
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def find_by_id_variants(self, product_id: str) -> list[Product]:
        """
        Find products whose normalized id is any spelling of product_id.

        "259LUXU1010", "259luxu-1010" and "259LUXU-1010" all find the
        product stored as 259LUXU-1010.
        """
        # ingestion imports this module at package load
        from asp_catalog.ingestion.normalizer import product_id_variants

        variants = product_id_variants(product_id)
        if not variants:
            return []
        stmt = (
            select(ProductDB)
            .where(ProductDB.normalized_product_id.in_(variants))
            .order_by(ProductDB.created_at, ProductDB.id)
        )
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(p) for p in result]

    def create_if_absent(self, normalized_product_id: str, **fields: Any) -> tuple[Product, bool]:
        """
        Create a product unless one already has this normalized id.

        Args:
            normalized_product_id: Cross-source product id
            **fields: title, description, release_date, default_thumbnail_url

        Returns:
            Tuple of (product, created)
        """
        now = _utc_now()
        created = insert_ignore(
            self.session,
            ProductDB,
            {
                "id": _generate_uuid(),
                "normalized_product_id": normalized_product_id,
                "title": fields.get("title") or normalized_product_id,
                "description": fields.get("description"),
                "release_date": fields.get("release_date"),
                "default_thumbnail_url": fields.get("default_thumbnail_url"),
                "created_at": now,
                "updated_at": now,
            },
            ["normalized_product_id"],
        )
        product = self.get_by_normalized_id(normalized_product_id)
        if product is None:
            raise RuntimeError(f"Product {normalized_product_id} vanished after insert")
        return product, created

    def fill_missing_fields(self, product_id: str, **fields: Any) -> list[str]:
        """
        Fill descriptive fields that are still empty.

        Existing values are never overwritten.

        Returns:
            Names of the fields that were filled
        """
        db_item = self.session.get(ProductDB, product_id)
        if db_item is None:
            raise ValueError(f"Product with id {product_id} not found")

        filled = []
        for name in ("description", "release_date", "default_thumbnail_url"):
            value = fields.get(name)
            if value and getattr(db_item, name) in (None, ""):
                setattr(db_item, name, value)
                filled.append(name)
        if filled:
            db_item.updated_at = _utc_now()
            self.session.flush()
        return filled

    def list_without_performers(self, limit: int = 100, asp_name: str | None = None) -> list[Product]:
        """List products that have no performer links yet."""
        linked = select(ProductPerformerDB.product_id)
        stmt = select(ProductDB).where(ProductDB.id.not_in(linked))
        if asp_name:
            with_asp = select(ProductSourceDB.product_id).where(ProductSourceDB.asp_name == asp_name)
            stmt = stmt.where(ProductDB.id.in_(with_asp))
        stmt = stmt.order_by(ProductDB.created_at.desc()).limit(limit)
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(p) for p in result]

    def list_all(
        self,
        limit: int = 100,
        offset: int = 0,
        asp_name: str | None = None,
    ) -> list[Product]:
        """List products with pagination, optionally for one ASP."""
        stmt = select(ProductDB)
        if asp_name:
            with_asp = select(ProductSourceDB.product_id).where(ProductSourceDB.asp_name == asp_name)
            stmt = stmt.where(ProductDB.id.in_(with_asp))
        stmt = stmt.order_by(ProductDB.created_at, ProductDB.id).limit(limit).offset(offset)
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(p) for p in result]

    def delete_cascade(self, product_id: str) -> bool:
        """
        Delete a product and every row that depends on it.

        Order: price history and sales of its sources, the sources,
        performer and tag links, then the product itself.
        """
        if self.session.get(ProductDB, product_id) is None:
            return False

        source_ids = select(ProductSourceDB.id).where(ProductSourceDB.product_id == product_id)
        self.session.execute(
            delete(PriceHistoryDB).where(PriceHistoryDB.product_source_id.in_(source_ids))
        )
        self.session.execute(
            delete(ProductSaleDB).where(ProductSaleDB.product_source_id.in_(source_ids))
        )
        self.session.execute(delete(ProductSourceDB).where(ProductSourceDB.product_id == product_id))
        self.session.execute(
            delete(ProductPerformerDB).where(ProductPerformerDB.product_id == product_id)
        )
        self.session.execute(delete(ProductTagDB).where(ProductTagDB.product_id == product_id))
        self.session.execute(delete(ProductDB).where(ProductDB.id == product_id))
        self.session.expire_all()
        return True

    def merge_into(self, source_id: str, target_id: str) -> int:
        """
        Fold one product into another and delete it.

        Sources move as they are, so their price history and sales follow.
        Performer and tag links are re-inserted on the target (duplicates
        are dropped) and the target's empty descriptive fields are filled.

        Returns:
            Number of product sources moved
        """
        source = self.session.get(ProductDB, source_id)
        if source is None:
            raise ValueError(f"Product with id {source_id} not found")
        if self.session.get(ProductDB, target_id) is None:
            raise ValueError(f"Product with id {target_id} not found")

        moved = self.session.execute(
            update(ProductSourceDB)
            .where(ProductSourceDB.product_id == source_id)
            .values(product_id=target_id)
        ).rowcount

        now = _utc_now()
        performer_ids = self.session.execute(
            select(ProductPerformerDB.performer_id).where(ProductPerformerDB.product_id == source_id)
        ).scalars().all()
        for performer_id in performer_ids:
            insert_ignore(
                self.session,
                ProductPerformerDB,
                {"product_id": target_id, "performer_id": performer_id, "created_at": now},
                ["product_id", "performer_id"],
            )
        tag_ids = self.session.execute(
            select(ProductTagDB.tag_id).where(ProductTagDB.product_id == source_id)
        ).scalars().all()
        for tag_id in tag_ids:
            insert_ignore(
                self.session,
                ProductTagDB,
                {"product_id": target_id, "tag_id": tag_id, "created_at": now},
                ["product_id", "tag_id"],
            )

        self.fill_missing_fields(
            target_id,
            description=source.description,
            release_date=source.release_date,
            default_thumbnail_url=source.default_thumbnail_url,
        )
        self.session.execute(
            delete(ProductPerformerDB).where(ProductPerformerDB.product_id == source_id)
        )
        self.session.execute(delete(ProductTagDB).where(ProductTagDB.product_id == source_id))
        self.session.execute(delete(ProductDB).where(ProductDB.id == source_id))
        self.session.expire_all()
        return moved

    def list_identity_rows(
        self, limit: int | None = None, asp_name: str | None = None
    ) -> list[dict[str, Any]]:
        """
        Load what identity matching compares for each product.

        Each row holds id, normalized_product_id, title, release_date,
        created_at, asp_names (sorted) and performer_names.
        """
        stmt = select(ProductDB)
        if asp_name:
            with_asp = select(ProductSourceDB.product_id).where(ProductSourceDB.asp_name == asp_name)
            stmt = stmt.where(ProductDB.id.in_(with_asp))
        stmt = stmt.order_by(ProductDB.created_at, ProductDB.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        products = self.session.execute(stmt).scalars().all()
        if not products:
            return []

        ids = [p.id for p in products]
        asps: dict[str, set[str]] = {pid: set() for pid in ids}
        performers: dict[str, list[str]] = {pid: [] for pid in ids}
        # Bounded IN lists keep SQLite under its bound-parameter limit
        for i in range(0, len(ids), 500):
            chunk = ids[i : i + 500]
            for product_id, asp in self.session.execute(
                select(ProductSourceDB.product_id, ProductSourceDB.asp_name).where(
                    ProductSourceDB.product_id.in_(chunk)
                )
            ):
                asps[product_id].add(asp)
            for product_id, name in self.session.execute(
                select(ProductPerformerDB.product_id, PerformerDB.name)
                .join(PerformerDB, PerformerDB.id == ProductPerformerDB.performer_id)
                .where(ProductPerformerDB.product_id.in_(chunk))
            ):
                performers[product_id].append(name)

        return [
            {
                "id": p.id,
                "normalized_product_id": p.normalized_product_id,
                "title": p.title,
                "release_date": p.release_date,
                "created_at": p.created_at,
                "asp_names": sorted(asps[p.id]),
                "performer_names": performers[p.id],
            }
            for p in products
        ]

    def count(self) -> int:
        """Get total count of products."""
        stmt = select(func.count()).select_from(ProductDB)
        return self.session.execute(stmt).scalar() or 0

    def _to_domain(self, db_item: ProductDB) -> Product:
        """Convert DB model to domain model."""
        return Product(
            id=db_item.id,
            normalized_product_id=db_item.normalized_product_id,
            title=db_item.title,
            description=db_item.description,
            release_date=db_item.release_date,
            default_thumbnail_url=db_item.default_thumbnail_url,
            created_at=db_item.created_at,
            updated_at=db_item.updated_at,
        )


class ProductSourceRepository:
    """Repository for per-ASP product listings."""

    MUTABLE_FIELDS = ("price", "affiliate_url", "currency", "is_subscription")

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, source_id: str) -> ProductSource | None:
        """Get a product source by ID."""
        db_item = self.session.get(ProductSourceDB, source_id)
        return self._to_domain(db_item) if db_item else None

    def get_by_asp_and_original_id(
        self, asp_name: str, original_product_id: str
    ) -> ProductSource | None:
        """Get a product source by its idempotency key."""
        stmt = select(ProductSourceDB).where(
            ProductSourceDB.asp_name == asp_name,
            ProductSourceDB.original_product_id == original_product_id,
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def create_if_absent(
        self,
        product_id: str,
        asp_name: str,
        original_product_id: str,
        **fields: Any,
    ) -> tuple[ProductSource, bool]:
        """
        Insert a product source unless (asp_name, original_product_id) exists.

        Returns:
            Tuple of (product source, created)
        """
        now = _utc_now()
        values: dict[str, Any] = {
            "id": _generate_uuid(),
            "product_id": product_id,
            "asp_name": asp_name,
            "original_product_id": original_product_id,
            "affiliate_url": fields.get("affiliate_url"),
            "price": fields.get("price"),
            "currency": (fields.get("currency") or "JPY").upper(),
            "is_subscription": bool(fields.get("is_subscription", False)),
            "last_updated": now,
            "created_at": now,
        }
        created = insert_ignore(
            self.session, ProductSourceDB, values, ["asp_name", "original_product_id"]
        )
        source = self.get_by_asp_and_original_id(asp_name, original_product_id)
        if source is None:
            raise RuntimeError(f"Product source {asp_name}/{original_product_id} vanished after insert")
        return source, created

    def update_mutable(self, source_id: str, **fields: Any) -> ProductSource:
        """
        Update price, affiliate URL, currency and subscription flag in place.

        Fields passed as None are left untouched.
        """
        db_item = self.session.get(ProductSourceDB, source_id)
        if db_item is None:
            raise ValueError(f"Product source with id {source_id} not found")

        for name in self.MUTABLE_FIELDS:
            value = fields.get(name)
            if value is None:
                continue
            if name == "currency":
                value = value.upper()
            setattr(db_item, name, value)
        db_item.last_updated = _utc_now()

        self.session.flush()
        return self._to_domain(db_item)

    def list_for_product(self, product_id: str) -> list[ProductSource]:
        """Get every source row attached to a product."""
        stmt = (
            select(ProductSourceDB)
            .where(ProductSourceDB.product_id == product_id)
            .order_by(ProductSourceDB.created_at)
        )
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(s) for s in result]

    def count(self) -> int:
        """Get total count of product sources."""
        stmt = select(func.count()).select_from(ProductSourceDB)
        return self.session.execute(stmt).scalar() or 0

    def _to_domain(self, db_item: ProductSourceDB) -> ProductSource:
        """Convert DB model to domain model."""
        return ProductSource(
            id=db_item.id,
            product_id=db_item.product_id,
            asp_name=db_item.asp_name,
            original_product_id=db_item.original_product_id,
            affiliate_url=db_item.affiliate_url,
            price=db_item.price,
            currency=db_item.currency,
            is_subscription=db_item.is_subscription,
            last_updated=db_item.last_updated,
        )


# ============================================================================
# Entity Registries
# ============================================================================


class PerformerRepository:
    """Repository for performers, their aliases and product links."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, performer_id: str) -> Performer | None:
        """Get a performer by ID."""
        db_item = self.session.get(PerformerDB, performer_id)
        return self._to_domain(db_item) if db_item else None

    def get_by_name(self, name: str) -> Performer | None:
        """Get a performer by exact name."""
        stmt = select(PerformerDB).where(PerformerDB.name == name)
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def get_by_alias(self, alias_name: str) -> Performer | None:
        """Get the performer that owns an alias."""
        stmt = (
            select(PerformerDB)
            .join(PerformerAliasDB, PerformerAliasDB.performer_id == PerformerDB.id)
            .where(PerformerAliasDB.alias_name == alias_name)
            .order_by(PerformerDB.created_at)
            .limit(1)
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def create_if_absent(self, name: str, name_kana: str | None = None) -> tuple[Performer, bool]:
        """
        Insert a performer unless the name is already taken.

        Returns:
            Tuple of (performer, created)
        """
        now = _utc_now()
        created = insert_ignore(
            self.session,
            PerformerDB,
            {
                "id": _generate_uuid(),
                "name": name,
                "name_kana": name_kana,
                "created_at": now,
                "updated_at": now,
            },
            ["name"],
        )
        performer = self.get_by_name(name)
        if performer is None:
            raise RuntimeError(f"Performer '{name}' vanished after insert")
        return performer, created

    def add_alias(self, performer_id: str, alias_name: str) -> bool:
        """Attach an alias to a performer. Returns True if newly added."""
        return insert_ignore(
            self.session,
            PerformerAliasDB,
            {
                "id": _generate_uuid(),
                "performer_id": performer_id,
                "alias_name": alias_name,
                "created_at": _utc_now(),
            },
            ["performer_id", "alias_name"],
        )

    def list_name_index(self) -> list[tuple[str, str]]:
        """
        Get every (name, performer_id) pair usable for title matching.

        Includes both canonical names and aliases.
        """
        names = self.session.execute(select(PerformerDB.name, PerformerDB.id)).all()
        aliases = self.session.execute(
            select(PerformerAliasDB.alias_name, PerformerAliasDB.performer_id)
        ).all()
        return [(n, pid) for n, pid in names] + [(a, pid) for a, pid in aliases]

    def list_with_whitespace(self, limit: int = 50, offset: int = 0) -> list[Performer]:
        """List performers whose names contain a space (ASCII or full-width)."""
        stmt = (
            select(PerformerDB)
            .where(PerformerDB.name.contains(" ") | PerformerDB.name.contains("　"))
            .order_by(PerformerDB.created_at)
            .limit(limit)
            .offset(offset)
        )
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(p) for p in result]

    def rename(self, performer_id: str, new_name: str) -> Performer:
        """Rename a performer in place."""
        db_item = self.session.get(PerformerDB, performer_id)
        if db_item is None:
            raise ValueError(f"Performer with id {performer_id} not found")
        db_item.name = new_name
        db_item.updated_at = _utc_now()
        self.session.flush()
        return self._to_domain(db_item)

    def merge_into(self, source_id: str, target_id: str) -> int:
        """
        Move all links and aliases from one performer to another, then delete it.

        Returns:
            Number of product links moved (links the target already had are dropped)
        """
        product_ids = self.session.execute(
            select(ProductPerformerDB.product_id).where(ProductPerformerDB.performer_id == source_id)
        ).scalars().all()
        moved = 0
        for product_id in product_ids:
            if self.link_product(product_id, target_id):
                moved += 1

        alias_names = self.session.execute(
            select(PerformerAliasDB.alias_name).where(PerformerAliasDB.performer_id == source_id)
        ).scalars().all()
        for alias_name in alias_names:
            self.add_alias(target_id, alias_name)

        self.session.execute(
            delete(ProductPerformerDB).where(ProductPerformerDB.performer_id == source_id)
        )
        self.session.execute(
            delete(PerformerAliasDB).where(PerformerAliasDB.performer_id == source_id)
        )
        self.session.execute(delete(PerformerDB).where(PerformerDB.id == source_id))
        self.session.expire_all()
        return moved

    def link_product(self, product_id: str, performer_id: str) -> bool:
        """Link a performer to a product. Returns True if newly linked."""
        return insert_ignore(
            self.session,
            ProductPerformerDB,
            {"product_id": product_id, "performer_id": performer_id, "created_at": _utc_now()},
            ["product_id", "performer_id"],
        )

    def list_for_product(self, product_id: str) -> list[Performer]:
        """Get the performers linked to a product."""
        stmt = (
            select(PerformerDB)
            .join(ProductPerformerDB, ProductPerformerDB.performer_id == PerformerDB.id)
            .where(ProductPerformerDB.product_id == product_id)
            .order_by(PerformerDB.name)
        )
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(p) for p in result]

    def count_links(self, product_id: str | None = None) -> int:
        """Count product-performer links, optionally for one product."""
        stmt = select(func.count()).select_from(ProductPerformerDB)
        if product_id:
            stmt = stmt.where(ProductPerformerDB.product_id == product_id)
        return self.session.execute(stmt).scalar() or 0

    def count(self) -> int:
        """Get total count of performers."""
        stmt = select(func.count()).select_from(PerformerDB)
        return self.session.execute(stmt).scalar() or 0

    def _to_domain(self, db_item: PerformerDB) -> Performer:
        """Convert DB model to domain model."""
        aliases = self.session.execute(
            select(PerformerAliasDB.alias_name)
            .where(PerformerAliasDB.performer_id == db_item.id)
            .order_by(PerformerAliasDB.alias_name)
        ).scalars().all()
        return Performer(
            id=db_item.id,
            name=db_item.name,
            name_kana=db_item.name_kana,
            aliases=list(aliases),
        )


class TagRepository:
    """Repository for tags and product-tag links."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_name(self, name: str) -> Tag | None:
        """Get a tag by name."""
        stmt = select(TagDB).where(TagDB.name == name)
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return Tag(id=db_item.id, name=db_item.name, category=db_item.category) if db_item else None

    def get_or_create(self, name: str, category: str | None = None) -> Tag:
        """Find a tag by name, creating it if absent."""
        insert_ignore(
            self.session,
            TagDB,
            {"id": _generate_uuid(), "name": name, "category": category, "created_at": _utc_now()},
            ["name"],
        )
        tag = self.get_by_name(name)
        if tag is None:
            raise RuntimeError(f"Tag '{name}' vanished after insert")
        return tag

    def link_product(self, product_id: str, tag_id: str) -> bool:
        """Link a tag to a product. Returns True if newly linked."""
        return insert_ignore(
            self.session,
            ProductTagDB,
            {"product_id": product_id, "tag_id": tag_id, "created_at": _utc_now()},
            ["product_id", "tag_id"],
        )

    def count_links(self, product_id: str | None = None) -> int:
        """Count product-tag links, optionally for one product."""
        stmt = select(func.count()).select_from(ProductTagDB)
        if product_id:
            stmt = stmt.where(ProductTagDB.product_id == product_id)
        return self.session.execute(stmt).scalar() or 0


# ============================================================================
# Prices and Sales
# ============================================================================


class PriceHistoryRepository:
    """Repository for the append-only price ledger."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        product_source_id: str,
        price: int,
        sale_price: int | None,
        discount_percent: int | None,
        recorded_at: datetime,
    ) -> PriceObservation:
        """Append an observation. Existing rows are never modified."""
        db_item = PriceHistoryDB(
            id=_generate_uuid(),
            product_source_id=product_source_id,
            recorded_at=recorded_at,
            price=price,
            sale_price=sale_price,
            discount_percent=discount_percent,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def list_for_sources(self, product_source_ids: list[str]) -> list[PriceObservation]:
        """Get observations for one or more sources, oldest first."""
        if not product_source_ids:
            return []
        stmt = (
            select(PriceHistoryDB)
            .where(PriceHistoryDB.product_source_id.in_(product_source_ids))
            .order_by(PriceHistoryDB.recorded_at)
        )
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(p) for p in result]

    def count(self, product_source_id: str | None = None) -> int:
        """Count observations, optionally for one source."""
        stmt = select(func.count()).select_from(PriceHistoryDB)
        if product_source_id:
            stmt = stmt.where(PriceHistoryDB.product_source_id == product_source_id)
        return self.session.execute(stmt).scalar() or 0

    def _to_domain(self, db_item: PriceHistoryDB) -> PriceObservation:
        """Convert DB model to domain model."""
        return PriceObservation(
            id=db_item.id,
            product_source_id=db_item.product_source_id,
            recorded_at=db_item.recorded_at,
            price=db_item.price,
            sale_price=db_item.sale_price,
            discount_percent=db_item.discount_percent,
        )


class ProductSaleRepository:
    """Repository for sale periods."""

    def __init__(self, session: Session):
        self.session = session

    def get_active(self, product_source_id: str) -> ProductSale | None:
        """Get the active sale for a source, if any."""
        stmt = select(ProductSaleDB).where(
            ProductSaleDB.product_source_id == product_source_id,
            ProductSaleDB.is_active.is_(True),
        )
        db_item = self.session.execute(stmt).scalars().first()
        return self._to_domain(db_item) if db_item else None

    def create_active(
        self,
        product_source_id: str,
        regular_price: int,
        sale_price: int,
        discount_percent: int | None,
        start_at: datetime,
        end_at: datetime | None = None,
        sale_type: str | None = None,
        sale_name: str | None = None,
    ) -> ProductSale:
        """
        Insert a new active sale.

        Raises:
            sqlalchemy.exc.IntegrityError: If another active sale already exists
        """
        db_item = ProductSaleDB(
            id=_generate_uuid(),
            product_source_id=product_source_id,
            regular_price=regular_price,
            sale_price=sale_price,
            discount_percent=discount_percent,
            sale_type=sale_type,
            sale_name=sale_name,
            start_at=start_at,
            end_at=end_at,
            is_active=True,
            fetched_at=start_at,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def update_active(self, sale_id: str, fetched_at: datetime, **fields: Any) -> ProductSale:
        """Update price fields of a sale in place and refresh fetched_at."""
        db_item = self.session.get(ProductSaleDB, sale_id)
        if db_item is None:
            raise ValueError(f"Sale with id {sale_id} not found")
        for name in ("regular_price", "sale_price", "discount_percent", "end_at", "sale_type", "sale_name"):
            if name in fields and fields[name] is not None:
                setattr(db_item, name, fields[name])
        db_item.fetched_at = fetched_at
        self.session.flush()
        return self._to_domain(db_item)

    def deactivate(self, sale_id: str, end_at: datetime | None = None) -> ProductSale:
        """Mark a sale inactive, stamping end_at if it was open-ended."""
        db_item = self.session.get(ProductSaleDB, sale_id)
        if db_item is None:
            raise ValueError(f"Sale with id {sale_id} not found")
        db_item.is_active = False
        if db_item.end_at is None and end_at is not None:
            db_item.end_at = end_at
        self.session.flush()
        return self._to_domain(db_item)

    def deactivate_expired(self, now: datetime) -> int:
        """Deactivate every active sale whose end_at has passed."""
        stmt = (
            update(ProductSaleDB)
            .where(
                ProductSaleDB.is_active.is_(True),
                ProductSaleDB.end_at.is_not(None),
                ProductSaleDB.end_at < now,
            )
            .values(is_active=False, updated_at=now)
        )
        result = self.session.execute(stmt)
        self.session.expire_all()
        return result.rowcount or 0

    def count_expired(self, now: datetime) -> int:
        """Count active sales whose end_at has passed."""
        stmt = (
            select(func.count())
            .select_from(ProductSaleDB)
            .where(
                ProductSaleDB.is_active.is_(True),
                ProductSaleDB.end_at.is_not(None),
                ProductSaleDB.end_at < now,
            )
        )
        return self.session.execute(stmt).scalar() or 0

    def list_for_sources(self, product_source_ids: list[str]) -> list[ProductSale]:
        """Get all sales (active and past) for one or more sources."""
        if not product_source_ids:
            return []
        stmt = (
            select(ProductSaleDB)
            .where(ProductSaleDB.product_source_id.in_(product_source_ids))
            .order_by(ProductSaleDB.start_at)
        )
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(s) for s in result]

    def count_active(self, product_source_id: str | None = None) -> int:
        """Count active sales, optionally for one source."""
        stmt = select(func.count()).select_from(ProductSaleDB).where(ProductSaleDB.is_active.is_(True))
        if product_source_id:
            stmt = stmt.where(ProductSaleDB.product_source_id == product_source_id)
        return self.session.execute(stmt).scalar() or 0

    def sale_stats(self, asp_name: str | None = None) -> SaleStats:
        """Aggregate active sales per ASP."""
        stmt = (
            select(
                ProductSourceDB.asp_name,
                func.count(ProductSaleDB.id),
                func.avg(ProductSaleDB.discount_percent),
            )
            .join(ProductSourceDB, ProductSourceDB.id == ProductSaleDB.product_source_id)
            .where(ProductSaleDB.is_active.is_(True))
            .group_by(ProductSourceDB.asp_name)
            .order_by(ProductSourceDB.asp_name)
        )
        if asp_name:
            stmt = stmt.where(ProductSourceDB.asp_name == asp_name)

        by_asp = [
            AspSaleStats(
                asp_name=name,
                active_sales=count,
                average_discount_percent=round(float(avg), 1) if avg is not None else None,
            )
            for name, count, avg in self.session.execute(stmt).all()
        ]
        return SaleStats(
            total_active_sales=sum(s.active_sales for s in by_asp),
            by_asp=by_asp,
        )

    def _to_domain(self, db_item: ProductSaleDB) -> ProductSale:
        """Convert DB model to domain model."""
        return ProductSale(
            id=db_item.id,
            product_source_id=db_item.product_source_id,
            regular_price=db_item.regular_price,
            sale_price=db_item.sale_price,
            discount_percent=db_item.discount_percent,
            sale_type=db_item.sale_type,
            sale_name=db_item.sale_name,
            start_at=db_item.start_at,
            end_at=db_item.end_at,
            is_active=db_item.is_active,
        )
