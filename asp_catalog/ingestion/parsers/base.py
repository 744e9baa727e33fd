"""
Parser Base Module
==================

Defines the abstract base class for source-specific parsers.
Parsers are responsible for:
1. Listing product ids found on a source's listing pages
2. Extracting structured product data from a detail page or API payload
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

_PRICE_RE = re.compile(r"\d[\d,]*")
_NAME_SPLIT_RE = re.compile(r"\s*[,、/／]\s*")

# Date formats seen across ASPs, tried in order
_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y.%m.%d",
    "%Y年%m月%d日",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y%m%d",
)


@dataclass
class ExtractedProduct:
    """
    Structured product data extracted from one source page or payload.

    Only source_product_id is required; every other field is optional
    and is validated by the parser before the product is linked.
    """

    source_product_id: str
    title: str | None = None
    description: str | None = None
    release_date: date | None = None
    thumbnail_url: str | None = None
    affiliate_url: str | None = None
    price: int | None = None
    sale_price: int | None = None
    discount_percent: int | None = None
    sale_end_at: datetime | None = None
    currency: str | None = None
    is_subscription: bool = False
    performers: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and dry-run reports."""
        data = asdict(self)
        if self.release_date:
            data["release_date"] = self.release_date.isoformat()
        if self.sale_end_at:
            data["sale_end_at"] = self.sale_end_at.isoformat()
        return data


def parse_price(value: Any) -> int | None:
    """
    Parse a price such as "¥1,980", "1980円" or 1980.0 into an integer.

    Returns:
        Price in the smallest currency unit, or None if absent
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = _PRICE_RE.search(str(value))
    if match is None:
        return None
    return int(match.group(0).replace(",", ""))


def parse_date(value: Any) -> date | None:
    """
    Parse a release date from the formats ASPs publish.

    Returns:
        date, or None if the value cannot be parsed
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text[: len(datetime.now().strftime(fmt))], fmt).date()
        except ValueError:
            continue
    return None


def split_names(value: Any) -> list[str]:
    """
    Split a performer or tag field into individual names.

    Accepts a list or a delimited string ("A, B", "A、B", "A/B").
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value if v is not None]
    else:
        items = _NAME_SPLIT_RE.split(str(value))
    return [item.strip() for item in items if item and item.strip()]


class BaseParser(ABC):
    """
    Abstract base class for source parsers.

    Each parser knows how to read one content shape (an API's JSON, a
    site's HTML). Subclasses must implement list_item_ids and parse.
    """

    # Parser metadata - override in subclasses
    PARSER_NAME: str = "base"
    PARSER_VERSION: str = "0.0.0"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        """
        Initialize the parser.

        Args:
            config: Parser-specific configuration (field paths, selectors)
        """
        self.config = config or {}

    @abstractmethod
    def list_item_ids(self, content: bytes, mime_type: str) -> list[str]:
        """
        Extract product ids from a listing page or search payload.

        Args:
            content: Raw listing content
            mime_type: Content MIME type

        Returns:
            Source-native product ids, in page order
        """

    @abstractmethod
    def parse(
        self,
        content: bytes,
        mime_type: str,
        source_product_id: str,
    ) -> ExtractedProduct | None:
        """
        Extract product data from a detail page or payload.

        Args:
            content: Raw content
            mime_type: Content MIME type
            source_product_id: Id the content was fetched for

        Returns:
            ExtractedProduct, or None if the content holds no product
        """

    def validate(self, extracted: ExtractedProduct) -> list[str]:
        """
        Validate an extracted product.

        Args:
            extracted: The product to validate

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not extracted.source_product_id:
            errors.append("Missing source product id")

        if not extracted.title:
            errors.append("Missing title")

        if extracted.price is not None and extracted.price < 0:
            errors.append(f"Negative price: {extracted.price}")

        if extracted.sale_price is not None:
            if extracted.sale_price < 0:
                errors.append(f"Negative sale price: {extracted.sale_price}")
            if extracted.price is None:
                errors.append("Sale price without regular price")

        if extracted.discount_percent is not None and not 0 <= extracted.discount_percent <= 100:
            errors.append(f"Discount out of range: {extracted.discount_percent}")

        return errors

    def get_parser_info(self) -> dict[str, str]:
        """Get parser metadata."""
        return {
            "name": self.PARSER_NAME,
            "version": self.PARSER_VERSION,
            "class": self.__class__.__name__,
        }
