"""
ASP Catalog Ingestion Framework
===============================

This package provides the batch ingestion pipeline that turns affiliate
source listings into the canonical catalog.

Pipeline Stages:
1. Fetch - Crawler fetches listing and detail pages with bounded retries
2. Store - Raw payloads are deduplicated by content hash
3. Parse - Source parsers extract structured data from HTML/JSON
4. Normalize - Product ids, text cleanup, placeholder detection
5. Link - Listings attach to canonical products across sources
6. Resolve - Performer names map to canonical performers
7. Price - Observations feed the price ledger and sale periods

Offline, identity matching folds together products that one title ended
up as under two different ids.
"""

from asp_catalog.ingestion.registry import (
    GlobalConfig,
    ProductIdRule,
    SourceConfig,
    SourceRegistry,
    get_default_registry,
)
from asp_catalog.ingestion.crawler import (
    Crawler,
    FetchResult,
    RetryOptions,
    fetch_with_retry,
)
from asp_catalog.ingestion.storage import (
    LocalObjectStorage,
    ObjectStorage,
    RawContentStore,
    SaveRawResult,
    StorageConfig,
    StorageResult,
)
from asp_catalog.ingestion.normalizer import (
    NormalizedProduct,
    PlaceholderDetector,
    ProductIdNormalizer,
    ProductNormalizer,
    sanitize_text,
)
from asp_catalog.ingestion.linker import (
    CleanupResult,
    LinkResult,
    SourceLinker,
)
from asp_catalog.ingestion.performers import (
    PerformerResolution,
    PerformerResolver,
    ReconcileResult,
    is_plausible_performer_name,
    normalize_performer_name,
)
from asp_catalog.ingestion.pricing import (
    ObservationResult,
    PriceTracker,
    SalePredictor,
)
from asp_catalog.ingestion.pipeline import (
    IngestionPipeline,
    ItemOutcome,
)
from asp_catalog.ingestion.jobs import (
    JobResult,
    JobStatus,
    cleanup_invalid,
    crawl_source,
    expire_sales,
    link_performers,
    match_products,
    normalize_performers,
    process_raw,
)
from asp_catalog.ingestion.identity import (
    IdentityMatch,
    MatchingConfig,
    ProductIdentityMatcher,
    normalize_title,
)

__all__ = [
    # Registry
    "SourceRegistry",
    "SourceConfig",
    "GlobalConfig",
    "ProductIdRule",
    "get_default_registry",
    # Crawler
    "Crawler",
    "FetchResult",
    "RetryOptions",
    "fetch_with_retry",
    # Storage
    "ObjectStorage",
    "LocalObjectStorage",
    "RawContentStore",
    "SaveRawResult",
    "StorageConfig",
    "StorageResult",
    # Normalizer
    "NormalizedProduct",
    "PlaceholderDetector",
    "ProductIdNormalizer",
    "ProductNormalizer",
    "sanitize_text",
    # Linker
    "SourceLinker",
    "LinkResult",
    "CleanupResult",
    # Performers
    "PerformerResolver",
    "PerformerResolution",
    "ReconcileResult",
    "is_plausible_performer_name",
    "normalize_performer_name",
    # Pricing
    "PriceTracker",
    "SalePredictor",
    "ObservationResult",
    # Pipeline
    "IngestionPipeline",
    "ItemOutcome",
    # Identity
    "ProductIdentityMatcher",
    "IdentityMatch",
    "MatchingConfig",
    "normalize_title",
    # Jobs
    "crawl_source",
    "process_raw",
    "link_performers",
    "normalize_performers",
    "cleanup_invalid",
    "expire_sales",
    "match_products",
    "JobResult",
    "JobStatus",
]
