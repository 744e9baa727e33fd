"""Enums shared by the ingestion pipeline and the persistence layer."""

from enum import Enum


class FallbackReason(str, Enum):
    """Why raw content was kept inline instead of in object storage."""

    DISABLED = "disabled"
    SAVE_FAILED = "save_failed"
    READ_FAILED = "read_failed"
    NOT_FOUND = "not_found"


class FetchErrorKind(str, Enum):
    """Classification of a failed fetch."""

    TRANSIENT_EXHAUSTED = "transient_exhausted"
    PERMANENT = "permanent"


class SaleTransition(str, Enum):
    """Sale state change caused by a single price observation."""

    NONE = "none"
    STARTED = "started"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    ENDED = "ended"


class IdCase(str, Enum):
    """Case applied to a normalized product id."""

    UPPER = "upper"
    LOWER = "lower"
    PRESERVE = "preserve"


class ItemStatus(str, Enum):
    """Outcome of processing one raw item."""

    LINKED = "linked"
    INVALID = "invalid"
    PARSE_FAILED = "parse_failed"
