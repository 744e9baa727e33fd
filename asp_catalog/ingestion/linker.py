"""
Source Linker Module
====================

Maps an (ASP, source-native id) pair to exactly one canonical product.

Algorithm for link_source:
1. Known (asp_name, original_product_id): update price/URL in place, done
2. Compute normalized_product_id with the source's id rules
3. Find the product by normalized id, or create it; an existing product
   means the same title is sold on another ASP (cross-source merge)
4. Insert the ProductSource row

Placeholder scrapes (site top pages, age gates, error pages) are rejected
before anything is written, and cleanup_invalid_products removes products
that were linked from nothing but such scrapes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from asp_catalog.core.errors import InvalidListingError
from asp_catalog.db.repositories import (
    ProductRepository,
    ProductSourceRepository,
    TagRepository,
)
from asp_catalog.ingestion.normalizer import (
    NormalizedProduct,
    PlaceholderDetector,
)

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    """Result of linking one listing to the catalog."""

    product_id: str
    product_source_id: str
    normalized_product_id: str
    product_created: bool = False
    source_created: bool = False

    @property
    def merged(self) -> bool:
        """A new source attached to a product another ASP created."""
        return self.source_created and not self.product_created


@dataclass
class CleanupResult:
    """Result of an invalid-product cleanup pass."""

    found: int = 0
    deleted: int = 0
    dry_run: bool = False
    deleted_ids: list[str] = field(default_factory=list)
    reasons: dict[str, str] = field(default_factory=dict)


class SourceLinker:
    """
    Links normalized listings to canonical products and source rows.

    All inserts are conflict tolerant, so two processes linking the same
    listing concurrently converge on one Product and one ProductSource.
    """

    def __init__(self, session: Session, detector: PlaceholderDetector | None = None) -> None:
        self.session = session
        self.detector = detector or PlaceholderDetector()
        self.products = ProductRepository(session)
        self.sources = ProductSourceRepository(session)
        self.tags = TagRepository(session)

    def link_source(self, asp_name: str, product: NormalizedProduct) -> LinkResult:
        """
        Link a listing to its canonical product.

        Args:
            asp_name: Source name (e.g. "MGS")
            product: Normalized listing

        Returns:
            LinkResult with the product id

        Raises:
            InvalidListingError: If the listing is a placeholder page
        """
        validation = self.detector.validate(
            product.title, product.description, asp_name, product.source_product_id
        )
        if not validation.is_valid:
            raise InvalidListingError(validation.reason or "invalid listing")

        existing = self.sources.get_by_asp_and_original_id(asp_name, product.source_product_id)
        if existing is not None:
            self.sources.update_mutable(
                existing.id,
                price=product.price,
                affiliate_url=product.affiliate_url,
                currency=product.currency,
                is_subscription=product.is_subscription,
            )
            self.products.fill_missing_fields(existing.product_id, **_descriptive_fields(product))
            canonical = self.products.get_by_id(existing.product_id)
            logger.debug(f"Updated {asp_name}/{product.source_product_id} in place")
            return LinkResult(
                product_id=existing.product_id,
                product_source_id=existing.id,
                normalized_product_id=canonical.normalized_product_id if canonical else "",
            )

        canonical, product_created = self.products.create_if_absent(
            product.normalized_product_id,
            title=product.title,
            **_descriptive_fields(product),
        )
        if not product_created:
            self.products.fill_missing_fields(canonical.id, **_descriptive_fields(product))
            logger.info(
                f"Merging {asp_name}/{product.source_product_id} into existing product "
                f"{product.normalized_product_id}"
            )

        source, source_created = self.sources.create_if_absent(
            canonical.id,
            asp_name,
            product.source_product_id,
            affiliate_url=product.affiliate_url,
            price=product.price,
            currency=product.currency,
            is_subscription=product.is_subscription,
        )
        if not source_created:
            # A concurrent writer inserted the same listing; apply our values
            self.sources.update_mutable(
                source.id,
                price=product.price,
                affiliate_url=product.affiliate_url,
                currency=product.currency,
                is_subscription=product.is_subscription,
            )

        return LinkResult(
            product_id=source.product_id,
            product_source_id=source.id,
            normalized_product_id=canonical.normalized_product_id,
            product_created=product_created,
            source_created=source_created,
        )

    def link_tags(self, product_id: str, tag_names: list[str]) -> int:
        """
        Link tags to a product, creating unknown tags.

        Returns:
            Number of new links
        """
        created = 0
        for name in tag_names:
            name = name.strip()
            if not name:
                continue
            tag = self.tags.get_or_create(name)
            if self.tags.link_product(product_id, tag.id):
                created += 1
        return created

    def find_invalid_products(
        self, limit: int = 100, asp_name: str | None = None
    ) -> list[tuple[str, str]]:
        """
        Find products that every source row marks as a placeholder scrape.

        Returns:
            List of (product_id, reason)
        """
        invalid: list[tuple[str, str]] = []
        offset = 0
        page_size = max(limit, 100)

        while len(invalid) < limit:
            page = self.products.list_all(limit=page_size, offset=offset, asp_name=asp_name)
            if not page:
                break
            offset += len(page)

            for product in page:
                sources = self.sources.list_for_product(product.id)
                if not sources:
                    continue
                reasons = []
                for source in sources:
                    result = self.detector.validate(
                        product.title, product.description, source.asp_name, source.original_product_id
                    )
                    if result.is_valid:
                        break
                    reasons.append(result.reason or "invalid")
                else:
                    invalid.append((product.id, reasons[0]))
                    if len(invalid) >= limit:
                        break

        return invalid

    def cleanup_invalid_products(
        self,
        limit: int = 100,
        dry_run: bool = False,
        asp_name: str | None = None,
    ) -> CleanupResult:
        """
        Delete products whose only sources are placeholder scrapes.

        Each deletion cascades through price history, sales, sources,
        performer and tag links before removing the product itself.

        Args:
            limit: Maximum number of products to delete
            dry_run: Report without deleting
            asp_name: Only consider products sold on this ASP

        Returns:
            CleanupResult
        """
        result = CleanupResult(dry_run=dry_run)
        candidates = self.find_invalid_products(limit=limit, asp_name=asp_name)
        result.found = len(candidates)

        for product_id, reason in candidates:
            result.reasons[product_id] = reason
            if dry_run:
                logger.info(f"[dry-run] Would delete product {product_id}: {reason}")
                result.deleted_ids.append(product_id)
                continue
            if self.products.delete_cascade(product_id):
                logger.info(f"Deleted invalid product {product_id}: {reason}")
                result.deleted += 1
                result.deleted_ids.append(product_id)

        return result


def _descriptive_fields(product: NormalizedProduct) -> dict[str, object]:
    return {
        "description": product.description,
        "release_date": product.release_date,
        "default_thumbnail_url": product.thumbnail_url,
    }
