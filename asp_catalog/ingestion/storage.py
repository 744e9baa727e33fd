"""
Raw Content Storage Module
==========================

Content-addressable persistence of fetched pages and API payloads.

Raw bytes are hashed first; a (source, hash) pair that already exists is
never written again. New content goes to object storage when it is
configured and reachable, and only the reference is kept in the database.
When storage is disabled or a write fails, the bytes are inlined into the
database row instead. Every save and read reports which path was taken
via StorageResult.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from sqlalchemy.orm import Session

from asp_catalog.core.enums import FallbackReason
from asp_catalog.core.errors import StorageError
from asp_catalog.core.schema import RawContentRecord
from asp_catalog.db.models import _utc_now
from asp_catalog.db.repositories import RawContentRepository

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def compute_content_hash(content: bytes) -> str:
    """Hex-encoded SHA-256 of raw bytes."""
    return hashlib.sha256(content).hexdigest()


def canonical_json_bytes(data: Any) -> bytes:
    """
    Serialize JSON with sorted keys so equal payloads hash equally.

    Args:
        data: JSON-compatible object

    Returns:
        UTF-8 encoded JSON
    """
    return json.dumps(data, sort_keys=True, ensure_ascii=False, separators=(",", ":")).encode(
        "utf-8"
    )


def canonicalize_payload(content: bytes, mime_type: str) -> bytes:
    """
    Re-serialize JSON payloads canonically before hashing.

    API responses that only differ in key order or whitespace then map to
    the same content hash. Non-JSON content, and JSON that fails to parse,
    is returned unchanged.
    """
    if "json" not in mime_type.lower():
        return content
    try:
        return canonical_json_bytes(json.loads(content))
    except ValueError:
        return content


@dataclass
class StorageConfig:
    """Object storage settings passed explicitly to the raw content store."""

    enabled: bool = False
    base_path: str = "~/.asp_catalog/raw"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> StorageConfig:
        """Create from dictionary, using defaults for missing values."""
        if data is None:
            return cls()
        return cls(
            enabled=bool(data.get("enabled", False)),
            base_path=data.get("base_path", "~/.asp_catalog/raw"),
        )

    @classmethod
    def from_env(cls, default: StorageConfig | None = None) -> StorageConfig:
        """
        Read RAW_STORAGE_ENABLED and RAW_STORAGE_PATH, falling back to default.
        """
        default = default or cls()
        enabled = os.environ.get("RAW_STORAGE_ENABLED")
        return cls(
            enabled=enabled.lower() in _TRUE_VALUES if enabled is not None else default.enabled,
            base_path=os.environ.get("RAW_STORAGE_PATH", default.base_path),
        )


@dataclass
class StorageResult:
    """
    Where raw content ended up (on save) or came from (on read).

    Exactly one of storage_ref / inline_content is meaningful after a
    save. fallback_reason is set whenever the object storage path was
    not used.
    """

    storage_ref: str | None = None
    inline_content: bytes | None = None
    fallback_reason: FallbackReason | None = None

    @property
    def used_fallback(self) -> bool:
        """Check whether object storage was bypassed."""
        return self.fallback_reason is not None


@dataclass
class SaveRawResult:
    """Result of RawContentStore.save_raw."""

    record: RawContentRecord
    is_new: bool
    storage: StorageResult

    @property
    def content_hash(self) -> str:
        return self.record.content_hash


class ObjectStorage(ABC):
    """
    Abstract object storage boundary.

    Implementations raise StorageError on any read or write failure.
    """

    @abstractmethod
    def save(self, bucket_path: str, content: bytes) -> str:
        """
        Store bytes under a bucket-relative path.

        Args:
            bucket_path: Relative key, e.g. "MGS/2025/01/31/ab/abcd....html"
            content: Raw bytes

        Returns:
            URL that download() accepts
        """

    @abstractmethod
    def download(self, url: str) -> bytes:
        """
        Fetch bytes previously stored by save().

        Args:
            url: URL returned by save()

        Returns:
            The original bytes
        """


class LocalObjectStorage(ObjectStorage):
    """
    Local filesystem object storage.

    Files are gzip compressed and addressed by file:// URLs:
        {base_path}/{bucket_path}.gz
    """

    def __init__(self, base_path: str | Path) -> None:
        """
        Initialize local object storage.

        Args:
            base_path: Base directory for stored objects
        """
        self.base_path = Path(base_path).expanduser().resolve()

    def save(self, bucket_path: str, content: bytes) -> str:
        """Compress and write content, returning its file:// URL."""
        file_path = self.base_path / f"{bucket_path}.gz"
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "wb") as f:
                f.write(gzip.compress(content, compresslevel=6))
        except OSError as e:
            raise StorageError(f"Failed to write {file_path}: {e}") from e
        return file_path.as_uri()

    def download(self, url: str) -> bytes:
        """Read and decompress an object by URL."""
        parsed = urlparse(url)
        if parsed.scheme != "file":
            raise StorageError(f"Unsupported storage URL: {url}")
        file_path = Path(unquote(parsed.path))
        try:
            with open(file_path, "rb") as f:
                return gzip.decompress(f.read())
        except (OSError, EOFError) as e:
            raise StorageError(f"Failed to read {file_path}: {e}") from e


def build_object_storage(config: StorageConfig) -> ObjectStorage | None:
    """Create the storage backend for a config, or None when disabled."""
    if not config.enabled:
        return None
    return LocalObjectStorage(config.base_path)


class RawContentStore:
    """
    Deduplicating raw content store.

    Storage configuration is explicit: pass a StorageConfig (and optionally
    a backend). With storage disabled, every record is stored inline.
    """

    # Map MIME types to file extensions
    MIME_EXTENSIONS = {
        "text/html": "html",
        "application/json": "json",
        "application/xml": "xml",
        "text/xml": "xml",
        "text/plain": "txt",
    }

    def __init__(
        self,
        session: Session,
        config: StorageConfig,
        storage: ObjectStorage | None = None,
    ) -> None:
        self.session = session
        self.config = config
        if storage is None and config.enabled:
            storage = build_object_storage(config)
        self.storage = storage if config.enabled else None
        self.records = RawContentRepository(session)

    def _get_extension(self, mime_type: str) -> str:
        """Get file extension for a MIME type."""
        return self.MIME_EXTENSIONS.get(mime_type, "bin")

    def _bucket_path(self, source: str, content_hash: str, mime_type: str) -> str:
        """
        Generate the object key for content.

        Structure: {source}/YYYY/MM/DD/{hash[:2]}/{hash}.{ext}
        """
        date_path = _utc_now().strftime("%Y/%m/%d")
        extension = self._get_extension(mime_type)
        return f"{source}/{date_path}/{content_hash[:2]}/{content_hash}.{extension}"

    def _store(self, source: str, content: bytes, content_hash: str, mime_type: str) -> StorageResult:
        """Write to object storage, falling back to inline on failure."""
        if self.storage is None:
            return StorageResult(inline_content=content, fallback_reason=FallbackReason.DISABLED)

        bucket_path = self._bucket_path(source, content_hash, mime_type)
        try:
            url = self.storage.save(bucket_path, content)
        except StorageError as e:
            logger.warning(f"Object storage save failed for {source}/{content_hash[:12]}, storing inline: {e}")
            return StorageResult(inline_content=content, fallback_reason=FallbackReason.SAVE_FAILED)
        return StorageResult(storage_ref=url)

    def save_raw(
        self,
        source: str,
        source_product_id: str,
        content: bytes,
        mime_type: str = "",
        url: str = "",
    ) -> SaveRawResult:
        """
        Save raw content unless identical bytes already exist for the source.

        Args:
            source: ASP name
            source_product_id: Source-native product id
            content: Raw bytes as fetched; JSON is stored in canonical form
            mime_type: Content MIME type
            url: URL the content came from

        Returns:
            SaveRawResult; is_new is False when the hash was already known
        """
        content = canonicalize_payload(content, mime_type)
        content_hash = compute_content_hash(content)

        existing = self.records.get_by_hash(source, content_hash)
        if existing is not None:
            logger.debug(f"Unchanged content for {source}/{source_product_id}, skipping save")
            return SaveRawResult(
                record=existing,
                is_new=False,
                storage=StorageResult(
                    storage_ref=existing.storage_ref,
                    inline_content=existing.inline_content,
                ),
            )

        stored = self._store(source, content, content_hash, mime_type)
        record, created = self.records.insert_if_absent(
            source=source,
            source_product_id=source_product_id,
            content_hash=content_hash,
            storage_ref=stored.storage_ref,
            inline_content=stored.inline_content,
            mime_type=mime_type,
            url=url,
            size_bytes=len(content),
        )
        if not created:
            # Another writer saved the same bytes between our lookup and insert
            logger.debug(f"Concurrent save of {source}/{content_hash[:12]} absorbed")
        return SaveRawResult(record=record, is_new=created, storage=stored)

    def get_raw(self, storage_ref: str | None, fallback_inline: bytes | None = None) -> bytes | None:
        """
        Retrieve raw bytes by reference, falling back to the inline copy.

        Returns:
            The content, or None if neither path yields it
        """
        return self.read(storage_ref, fallback_inline)[0]

    def read(
        self, storage_ref: str | None, fallback_inline: bytes | None = None
    ) -> tuple[bytes | None, StorageResult]:
        """
        Retrieve raw bytes and report which path served them.

        Returns:
            Tuple of (content or None, StorageResult)
        """
        if storage_ref is None:
            reason = None if fallback_inline is not None else FallbackReason.NOT_FOUND
            return fallback_inline, StorageResult(inline_content=fallback_inline, fallback_reason=reason)

        if self.storage is None:
            logger.warning(f"Record references {storage_ref} but object storage is disabled")
            return fallback_inline, StorageResult(
                storage_ref=storage_ref,
                inline_content=fallback_inline,
                fallback_reason=FallbackReason.DISABLED,
            )

        try:
            content = self.storage.download(storage_ref)
        except StorageError as e:
            logger.warning(f"Object storage read failed for {storage_ref}: {e}")
            return fallback_inline, StorageResult(
                storage_ref=storage_ref,
                inline_content=fallback_inline,
                fallback_reason=FallbackReason.READ_FAILED,
            )
        return content, StorageResult(storage_ref=storage_ref)

    def load(self, record: RawContentRecord) -> bytes | None:
        """Retrieve the content of a stored record."""
        return self.get_raw(record.storage_ref, record.inline_content)

    def mark_processed(self, record_id: str) -> bool:
        """Set processed_at once parsing has succeeded. Idempotent."""
        return self.records.mark_processed(record_id)

    def list_unprocessed(self, source: str | None = None, limit: int = 100) -> list[RawContentRecord]:
        """List records awaiting processing."""
        return self.records.list_unprocessed(source, limit)

    def count_unprocessed(self, source: str | None = None) -> int:
        """Count records awaiting processing."""
        return self.records.count_unprocessed(source)
