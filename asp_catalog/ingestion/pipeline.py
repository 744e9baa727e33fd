"""
Ingestion Pipeline Module
=========================

Processes one raw item end to end:

1. Parse - the source's parser extracts an ExtractedProduct
2. Validate - parser-level checks; failures leave processed_at unset
3. Normalize - sanitize text, compute the normalized product id
4. Link - attach to a canonical product (placeholders are rejected)
5. Tags and performers - conflict-tolerant link rows
6. Price - append an observation and update the sale state
7. Mark the raw record processed

The pipeline never commits; the caller owns the transaction so that
batch jobs can commit, or roll back in a dry run, per item.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from asp_catalog.core.enums import ItemStatus, SaleTransition
from asp_catalog.core.errors import ConfigError, InvalidListingError, ParseError
from asp_catalog.db.repositories import RawContentRepository
from asp_catalog.ingestion.linker import SourceLinker
from asp_catalog.ingestion.normalizer import PlaceholderDetector, ProductNormalizer
from asp_catalog.ingestion.parsers import BaseParser, get_parser
from asp_catalog.ingestion.performers import PerformerResolver
from asp_catalog.ingestion.pricing import PriceTracker
from asp_catalog.ingestion.registry import SourceConfig

logger = logging.getLogger(__name__)


@dataclass
class ItemOutcome:
    """Result of processing one raw item."""

    status: ItemStatus
    source: str
    source_product_id: str
    raw_record_id: str | None = None
    product_id: str | None = None
    product_source_id: str | None = None
    normalized_product_id: str | None = None
    product_created: bool = False
    source_created: bool = False
    performer_ids: list[str] = field(default_factory=list)
    performers_created: int = 0
    tags_linked: int = 0
    sale_transition: SaleTransition = SaleTransition.NONE
    reason: str | None = None

    @property
    def merged(self) -> bool:
        """The item attached a new source to another ASP's product."""
        return self.source_created and not self.product_created


def build_parser(source: SourceConfig) -> BaseParser:
    """
    Instantiate the parser a source names.

    Raises:
        ConfigError: If the parser is not registered
    """
    parser = get_parser(source.parser, source.parser_config)
    if parser is None:
        raise ConfigError(f"Parser '{source.parser}' not found for source '{source.name}'")
    return parser


class IngestionPipeline:
    """Per-item orchestration over one session."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.records = RawContentRepository(session)
        self.resolver = PerformerResolver(session)
        self.tracker = PriceTracker(session)
        self._parsers: dict[str, BaseParser] = {}

    def parser_for(self, source: SourceConfig) -> BaseParser:
        """Get (and cache) the parser for a source."""
        if source.name not in self._parsers:
            self._parsers[source.name] = build_parser(source)
        return self._parsers[source.name]

    def reset(self) -> None:
        """Drop caches that may refer to rolled-back rows."""
        self.resolver.invalidate_index()

    def process_item(
        self,
        source: SourceConfig,
        raw_record_id: str | None,
        content: bytes,
        mime_type: str,
        source_product_id: str,
        observed_at: datetime | None = None,
    ) -> ItemOutcome:
        """
        Parse one raw payload and apply it to the catalog.

        Args:
            source: Source configuration
            raw_record_id: Raw record to mark processed (None to skip marking)
            content: Raw bytes
            mime_type: Content MIME type
            source_product_id: Id the content was fetched for
            observed_at: Time of the price observation (defaults to now)

        Returns:
            ItemOutcome describing what happened
        """
        outcome = ItemOutcome(
            status=ItemStatus.PARSE_FAILED,
            source=source.name,
            source_product_id=source_product_id,
            raw_record_id=raw_record_id,
        )
        parser = self.parser_for(source)

        try:
            extracted = parser.parse(content, mime_type, source_product_id)
        except ParseError as e:
            logger.warning(f"Parse failed for {source.name}/{source_product_id}: {e}")
            outcome.reason = str(e)
            return outcome

        if extracted is None:
            logger.warning(f"No product found in {source.name}/{source_product_id}")
            outcome.reason = "no product in content"
            return outcome

        errors = parser.validate(extracted)
        if errors:
            logger.warning(f"Validation failed for {source.name}/{source_product_id}: {errors}")
            outcome.reason = "; ".join(errors)
            return outcome

        product = ProductNormalizer.for_source(source).normalize(extracted)
        outcome.source_product_id = product.source_product_id
        outcome.normalized_product_id = product.normalized_product_id

        linker = SourceLinker(self.session, PlaceholderDetector.for_source(source))
        try:
            link = linker.link_source(source.name, product)
        except InvalidListingError as e:
            logger.info(f"Skipping placeholder listing {source.name}/{product.source_product_id}: {e.reason}")
            outcome.status = ItemStatus.INVALID
            outcome.reason = e.reason
            self._mark_processed(raw_record_id)
            return outcome

        outcome.status = ItemStatus.LINKED
        outcome.product_id = link.product_id
        outcome.product_source_id = link.product_source_id
        outcome.product_created = link.product_created
        outcome.source_created = link.source_created

        outcome.tags_linked = linker.link_tags(link.product_id, product.tags)

        resolution = self.resolver.resolve_and_link(link.product_id, product.title, product.performers)
        outcome.performer_ids = resolution.performer_ids
        outcome.performers_created = len(resolution.created_names)

        if product.price is not None:
            observation = self.tracker.record_price_observation(
                link.product_source_id,
                price=product.price,
                sale_price=product.sale_price,
                discount_percent=product.discount_percent,
                observed_at=observed_at,
                end_at=product.sale_end_at,
            )
            outcome.sale_transition = observation.transition

        self._mark_processed(raw_record_id)
        logger.debug(
            f"Linked {source.name}/{product.source_product_id} -> {product.normalized_product_id} "
            f"({len(outcome.performer_ids)} performers, sale {outcome.sale_transition.value})"
        )
        return outcome

    def _mark_processed(self, raw_record_id: str | None) -> None:
        if raw_record_id is not None:
            self.records.mark_processed(raw_record_id)
