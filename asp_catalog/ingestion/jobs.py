"""
Batch Jobs Module
=================

Standalone batch entry points, one per pipeline stage. Each job takes a
limit and a dry_run flag and returns a JobResult.

Transactions:
- crawl_source, process_raw and link_performers commit after every item,
  so a process killed mid-batch keeps everything it finished.
- In a dry run the same code runs and each item is rolled back instead;
  object storage is never written.
- Maintenance jobs (normalize_performers, cleanup_invalid, expire_sales)
  run as one transaction per batch.
- match_products commits each merge on its own; matches below the
  auto-merge threshold are only reported.

Only setup failures (unknown or disabled source, unknown parser, no
database) mark a job FAILED. Per-item errors are logged, collected in
JobResult.errors, and the batch moves on.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from asp_catalog.core.enums import ItemStatus, SaleTransition
from asp_catalog.core.errors import ConfigError, ParseError
from asp_catalog.db.engine import check_connection, get_session_factory
from asp_catalog.db.models import _utc_now
from asp_catalog.db.repositories import ProductRepository
from asp_catalog.ingestion.crawler import Crawler, SleepFn
from asp_catalog.ingestion.identity import MatchingConfig, ProductIdentityMatcher
from asp_catalog.ingestion.linker import SourceLinker
from asp_catalog.ingestion.normalizer import PlaceholderDetector
from asp_catalog.ingestion.performers import PerformerResolver
from asp_catalog.ingestion.pipeline import IngestionPipeline, ItemOutcome, build_parser
from asp_catalog.ingestion.pricing import PriceTracker
from asp_catalog.ingestion.registry import SourceConfig, SourceRegistry, get_default_registry
from asp_catalog.ingestion.storage import ObjectStorage, RawContentStore, StorageConfig

logger = logging.getLogger(__name__)

MAX_NORMALIZE_LIMIT = 500
DEFAULT_NORMALIZE_LIMIT = 50


class JobStatus(str, Enum):
    """Status of a batch job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobResult:
    """Result of a batch job."""

    job_id: str
    job_name: str
    status: JobStatus
    source_name: str | None = None
    dry_run: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    items_found: int = 0
    items_processed: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    counters: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    details: list[dict[str, Any]] = field(default_factory=list)
    duration_seconds: float | None = None

    def increment(self, name: str, amount: int = 1) -> None:
        """Add to a named counter."""
        self.counters[name] = self.counters.get(name, 0) + amount

    def fail(self, message: str) -> JobResult:
        """Mark the job failed on a setup error."""
        logger.error(f"{self.job_name} failed: {message}")
        self.errors.append(message)
        self.status = JobStatus.FAILED
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "job_id": self.job_id,
            "job_name": self.job_name,
            "status": self.status.value,
            "source_name": self.source_name,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "items_found": self.items_found,
            "items_processed": self.items_processed,
            "items_skipped": self.items_skipped,
            "items_failed": self.items_failed,
            "counters": dict(self.counters),
            "errors": self.errors,
            "details": self.details,
            "duration_seconds": self.duration_seconds,
        }


def _start(job_name: str, source_name: str | None = None, dry_run: bool = False) -> tuple[JobResult, float]:
    result = JobResult(
        job_id=str(uuid4()),
        job_name=job_name,
        status=JobStatus.RUNNING,
        source_name=source_name,
        dry_run=dry_run,
        started_at=_utc_now(),
    )
    mode = " (dry run)" if dry_run else ""
    logger.info(f"Starting {job_name}{' for ' + source_name if source_name else ''}{mode}")
    return result, time.monotonic()


def _finish(result: JobResult, started: float) -> JobResult:
    if result.status == JobStatus.RUNNING:
        result.status = JobStatus.COMPLETED
    result.completed_at = _utc_now()
    result.duration_seconds = round(time.monotonic() - started, 3)
    logger.info(
        f"{result.job_name} {result.status.value}: {result.items_processed} processed, "
        f"{result.items_skipped} skipped, {result.items_failed} failed"
    )
    return result


def _connect(
    result: JobResult, session_factory: sessionmaker[Session] | None
) -> sessionmaker[Session] | None:
    """Resolve the session factory and verify the database is reachable."""
    factory = session_factory or get_session_factory()
    try:
        check_connection(factory)
    except SQLAlchemyError as e:
        result.fail(f"Database unavailable: {e}")
        return None
    return factory


def _lookup_source(result: JobResult, registry: SourceRegistry, source_name: str) -> SourceConfig | None:
    source = registry.get_source(source_name)
    if source is None:
        result.fail(f"Source '{source_name}' not found")
        return None
    if not source.enabled:
        result.fail(f"Source '{source_name}' is disabled")
        return None
    try:
        build_parser(source)
    except ConfigError as e:
        result.fail(str(e))
        return None
    return source


def _end_item(session: Session, dry_run: bool) -> None:
    if dry_run:
        session.rollback()
    else:
        session.commit()


def _count_outcome(result: JobResult, outcome: ItemOutcome) -> None:
    if outcome.status == ItemStatus.LINKED:
        result.items_processed += 1
        if outcome.product_created:
            result.increment("products_created")
        if outcome.merged:
            result.increment("products_merged")
        if outcome.source_created:
            result.increment("sources_created")
        else:
            result.increment("sources_updated")
        result.increment("performers_linked", len(outcome.performer_ids))
        result.increment("performers_created", outcome.performers_created)
        if outcome.sale_transition == SaleTransition.STARTED:
            result.increment("sales_started")
        elif outcome.sale_transition == SaleTransition.ENDED:
            result.increment("sales_ended")
    elif outcome.status == ItemStatus.INVALID:
        result.items_skipped += 1
        result.increment("invalid_listings")
    else:
        result.items_skipped += 1
        result.increment("parse_failed")
        result.errors.append(f"{outcome.source}/{outcome.source_product_id}: {outcome.reason}")


# ============================================================================
# Ingestion jobs
# ============================================================================


async def crawl_source(
    source_name: str,
    limit: int | None = None,
    dry_run: bool = False,
    registry: SourceRegistry | None = None,
    session_factory: sessionmaker[Session] | None = None,
    storage_config: StorageConfig | None = None,
    object_storage: ObjectStorage | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: SleepFn | None = None,
) -> JobResult:
    """
    Crawl a source: listing pages, then every listed detail page.

    Each detail payload is saved to the raw store. New or still
    unprocessed payloads go through the pipeline; payloads whose bytes
    were already processed are skipped.

    Args:
        source_name: Source to crawl
        limit: Maximum number of detail pages to fetch
        dry_run: Run everything, then roll back each item
        registry: Source registry (defaults to the global one)
        session_factory: Session factory (defaults to the global one)
        storage_config: Raw storage config (defaults to global config + env)
        object_storage: Storage backend override
        transport: httpx transport override
        sleep: Sleep function override (politeness delay and backoff)

    Returns:
        JobResult
    """
    registry = registry or get_default_registry()
    result, started = _start("crawl", source_name, dry_run)

    source = _lookup_source(result, registry, source_name)
    if source is None:
        return _finish(result, started)
    factory = _connect(result, session_factory)
    if factory is None:
        return _finish(result, started)
    if not source.detail_url:
        result.fail(f"Source '{source_name}' has no detail_url")
        return _finish(result, started)

    global_config = registry.global_config
    if dry_run:
        storage_config = StorageConfig(enabled=False)
        object_storage = None
    else:
        storage_config = storage_config or StorageConfig.from_env(global_config.storage)

    crawler_kwargs: dict[str, Any] = {
        "user_agent": global_config.user_agent,
        "timeout": global_config.request_timeout,
        "retry": global_config.retry,
        "request_delay_seconds": registry.request_delay_for(source),
        "transport": transport,
    }
    if sleep is not None:
        crawler_kwargs["sleep"] = sleep

    async with Crawler(**crawler_kwargs) as crawler:
        parser = build_parser(source)

        # Listing pages
        item_ids: list[str] = []
        for list_url in source.list_urls:
            fetched = await crawler.fetch(list_url)
            if not fetched.success:
                result.increment("fetch_failed")
                result.errors.append(f"Failed to fetch {list_url}: {fetched.error}")
                continue
            try:
                ids = parser.list_item_ids(fetched.content, fetched.mime_type)
            except ParseError as e:
                result.errors.append(f"{list_url}: {e}")
                continue
            item_ids.extend(i for i in ids if i not in item_ids)
            await crawler.pause()

        result.increment("items_discovered", len(item_ids))
        if limit is not None:
            item_ids = item_ids[:limit]
        result.items_found = len(item_ids)
        logger.info(f"Found {len(item_ids)} items to fetch for '{source_name}'")

        # Detail pages
        with factory() as session:
            pipeline = IngestionPipeline(session)
            store = RawContentStore(session, storage_config, object_storage)

            for index, item_id in enumerate(item_ids):
                if index:
                    await crawler.pause()

                url = source.detail_url_for(item_id)
                fetched = await crawler.fetch(url)
                if not fetched.success:
                    logger.warning(f"Skipping {source_name}/{item_id}: {fetched.error}")
                    result.items_skipped += 1
                    result.increment("fetch_failed")
                    result.errors.append(f"Failed to fetch {url}: {fetched.error}")
                    continue
                result.increment("urls_fetched")

                try:
                    saved = store.save_raw(
                        source.name, item_id, fetched.content, fetched.mime_type, url
                    )
                    if saved.is_new:
                        result.increment("raw_saved")
                    if saved.storage.used_fallback and saved.is_new:
                        result.increment("raw_inline")

                    if not saved.is_new and saved.record.is_processed:
                        logger.debug(f"Unchanged content for {source_name}/{item_id}")
                        result.items_skipped += 1
                        result.increment("raw_unchanged")
                        _end_item(session, dry_run)
                        continue

                    outcome = pipeline.process_item(
                        source,
                        saved.record.id,
                        fetched.content,
                        fetched.mime_type,
                        item_id,
                        observed_at=fetched.fetched_at,
                    )
                    _count_outcome(result, outcome)
                    _end_item(session, dry_run)
                except Exception as e:
                    session.rollback()
                    logger.exception(f"Error processing {source_name}/{item_id}")
                    result.items_failed += 1
                    result.errors.append(f"{url}: {e}")
                finally:
                    if dry_run:
                        pipeline.reset()

    return _finish(result, started)


def process_raw(
    source_name: str | None = None,
    limit: int = 100,
    dry_run: bool = False,
    registry: SourceRegistry | None = None,
    session_factory: sessionmaker[Session] | None = None,
    storage_config: StorageConfig | None = None,
    object_storage: ObjectStorage | None = None,
) -> JobResult:
    """
    Reprocess raw records whose processed_at is still unset.

    Args:
        source_name: Only process this source's records
        limit: Maximum number of records
        dry_run: Run everything, then roll back each item

    Returns:
        JobResult
    """
    registry = registry or get_default_registry()
    result, started = _start("process-raw", source_name, dry_run)

    if source_name is not None and _lookup_source(result, registry, source_name) is None:
        return _finish(result, started)
    factory = _connect(result, session_factory)
    if factory is None:
        return _finish(result, started)

    storage_config = storage_config or StorageConfig.from_env(registry.global_config.storage)

    with factory() as session:
        store = RawContentStore(session, storage_config, object_storage)
        pipeline = IngestionPipeline(session)
        records = store.list_unprocessed(source_name, limit)
        result.items_found = len(records)

        for record in records:
            source = registry.get_source(record.source)
            if source is None:
                result.items_skipped += 1
                result.errors.append(f"{record.id}: source '{record.source}' not configured")
                continue

            try:
                content, read = store.read(record.storage_ref, record.inline_content)
                if content is None:
                    result.items_skipped += 1
                    reason = read.fallback_reason.value if read.fallback_reason else "missing"
                    result.errors.append(f"{record.id}: content unavailable ({reason})")
                    continue

                outcome = pipeline.process_item(
                    source,
                    record.id,
                    content,
                    record.mime_type,
                    record.source_product_id,
                    observed_at=record.fetched_at,
                )
                _count_outcome(result, outcome)
                _end_item(session, dry_run)
            except Exception as e:
                session.rollback()
                logger.exception(f"Error processing raw record {record.id}")
                result.items_failed += 1
                result.errors.append(f"{record.id}: {e}")
            finally:
                if dry_run:
                    pipeline.reset()

    return _finish(result, started)


def link_performers(
    limit: int = 100,
    dry_run: bool = False,
    asp_name: str | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> JobResult:
    """
    Resolve performers for products that have no performer links.

    Only the registry match and title heuristics are available here;
    source-supplied names were already used at ingestion time.
    """
    result, started = _start("link-performers", asp_name, dry_run)
    factory = _connect(result, session_factory)
    if factory is None:
        return _finish(result, started)

    with factory() as session:
        products = ProductRepository(session).list_without_performers(limit, asp_name)
        resolver = PerformerResolver(session)
        result.items_found = len(products)

        for product in products:
            try:
                resolution = resolver.resolve_and_link(product.id, product.title)
                if resolution.performer_ids:
                    result.items_processed += 1
                    result.increment("links_created", resolution.links_created)
                    result.increment("performers_created", len(resolution.created_names))
                else:
                    result.items_skipped += 1
                    result.increment("no_match")
                _end_item(session, dry_run)
            except Exception as e:
                session.rollback()
                logger.exception(f"Error linking performers for product {product.id}")
                result.items_failed += 1
                result.errors.append(f"{product.id}: {e}")
            finally:
                if dry_run:
                    resolver.invalidate_index()

    return _finish(result, started)


# ============================================================================
# Maintenance jobs
# ============================================================================


def normalize_performers(
    limit: int = DEFAULT_NORMALIZE_LIMIT,
    dry_run: bool = False,
    session_factory: sessionmaker[Session] | None = None,
) -> JobResult:
    """Merge or rename performers whose names carry spurious spaces."""
    limit = max(1, min(limit, MAX_NORMALIZE_LIMIT))
    result, started = _start("normalize-performers", dry_run=dry_run)
    factory = _connect(result, session_factory)
    if factory is None:
        return _finish(result, started)

    with factory() as session:
        try:
            reconciled = PerformerResolver(session).reconcile_spaced_variants(limit, dry_run)
            _end_item(session, dry_run)
        except Exception as e:
            session.rollback()
            logger.exception("Performer reconciliation failed")
            result.items_failed += 1
            result.errors.append(str(e))
            return _finish(result, started)

    result.items_found = reconciled.checked
    result.items_processed = reconciled.merged + reconciled.renamed
    result.increment("merged", reconciled.merged)
    result.increment("renamed", reconciled.renamed)
    result.increment("links_moved", reconciled.links_moved)
    return _finish(result, started)


def cleanup_invalid(
    limit: int = 100,
    dry_run: bool = False,
    asp_name: str | None = None,
    registry: SourceRegistry | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> JobResult:
    """Delete products linked only from placeholder pages."""
    result, started = _start("cleanup", asp_name, dry_run)
    detector = PlaceholderDetector()
    if asp_name is not None:
        source = (registry or get_default_registry()).get_source(asp_name)
        if source is not None:
            detector = PlaceholderDetector.for_source(source)

    factory = _connect(result, session_factory)
    if factory is None:
        return _finish(result, started)

    with factory() as session:
        try:
            cleanup = SourceLinker(session, detector).cleanup_invalid_products(limit, dry_run, asp_name)
            _end_item(session, dry_run)
        except Exception as e:
            session.rollback()
            logger.exception("Invalid product cleanup failed")
            result.items_failed += 1
            result.errors.append(str(e))
            return _finish(result, started)

    result.items_found = cleanup.found
    result.items_processed = len(cleanup.deleted_ids)
    result.increment("deleted", cleanup.deleted)
    return _finish(result, started)


def expire_sales(
    dry_run: bool = False,
    now: datetime | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> JobResult:
    """Deactivate active sales whose end_at has passed."""
    result, started = _start("expire-sales", dry_run=dry_run)
    factory = _connect(result, session_factory)
    if factory is None:
        return _finish(result, started)

    with factory() as session:
        count = PriceTracker(session).deactivate_expired_sales(now, dry_run)
        _end_item(session, dry_run)

    result.items_found = count
    result.items_processed = count
    result.increment("deactivated", count)
    return _finish(result, started)


def match_products(
    limit: int = 100,
    dry_run: bool = False,
    asp_name: str | None = None,
    min_confidence: int | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> JobResult:
    """
    Find products that are the same title under different ids.

    Matches at or above the auto-merge threshold are merged into the
    older product; the rest are reported in JobResult.details.
    """
    result, started = _start("match-products", asp_name, dry_run)
    factory = _connect(result, session_factory)
    if factory is None:
        return _finish(result, started)

    config = MatchingConfig()
    if min_confidence is not None:
        config.review_threshold = min_confidence

    with factory() as session:
        matcher = ProductIdentityMatcher(session, config)
        matches = matcher.find_duplicates(limit, asp_name)
        result.items_found = len(matches)

        for match in matches:
            result.details.append(match.to_dict())
            result.increment(match.method)
            if not match.auto_merge:
                result.items_skipped += 1
                result.increment("needs_review")
                continue
            try:
                matcher.merge(match)
                _end_item(session, dry_run)
                result.items_processed += 1
                result.increment("merged")
            except ValueError as e:
                # Either side was already merged away earlier in this batch
                session.rollback()
                logger.info(f"Skipping match {match.product_id}: {e}")
                result.items_skipped += 1
            except Exception as e:
                session.rollback()
                logger.exception(f"Error merging product {match.product_id}")
                result.items_failed += 1
                result.errors.append(f"{match.product_id}: {e}")

    return _finish(result, started)
