"""
JSON API Parser
===============

Configurable parser for ASPs that publish product data as JSON.

Field locations come from the source's parser_config using dot paths.
A segment ending in "[]" maps the rest of the path over a list:

    parser_config:
      items_path: result.items
      id_field: content_id
      item_path: result.items.0
      fields:
        title: title
        price: prices.price
        performers: iteminfo.actress[].name
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from asp_catalog.core.errors import ParseError
from asp_catalog.ingestion.parsers.base import (
    BaseParser,
    ExtractedProduct,
    parse_date,
    parse_price,
    split_names,
)

logger = logging.getLogger(__name__)

DEFAULT_FIELDS = {
    "id": "id",
    "title": "title",
    "description": "description",
    "release_date": "release_date",
    "thumbnail_url": "thumbnail_url",
    "affiliate_url": "affiliate_url",
    "price": "price",
    "sale_price": "sale_price",
    "discount_percent": "discount_percent",
    "sale_end_at": "sale_end_at",
    "currency": "currency",
    "is_subscription": "is_subscription",
    "performers": "performers",
    "tags": "tags",
}


def resolve_path(data: Any, path: str) -> Any:
    """
    Look up a dot path in nested JSON.

    Args:
        data: Parsed JSON
        path: Dot path; numeric segments index lists, "name[]" maps over a list

    Returns:
        The value, a list for mapped paths, or None if any segment is missing
    """
    if not path:
        return data
    head, _, rest = path.partition(".")

    if head.endswith("[]"):
        items = _step(data, head[:-2]) if head[:-2] else data
        if not isinstance(items, list):
            return None
        values = [resolve_path(item, rest) for item in items]
        return [v for v in values if v is not None]

    value = _step(data, head)
    if value is None:
        return None
    return resolve_path(value, rest) if rest else value


def _step(data: Any, key: str) -> Any:
    if isinstance(data, dict):
        return data.get(key)
    if isinstance(data, list) and key.lstrip("-").isdigit():
        index = int(key)
        return data[index] if -len(data) <= index < len(data) else None
    return None


class JsonApiParser(BaseParser):
    """
    Parser for JSON product APIs.

    Reads list payloads (items_path + id_field) and detail payloads
    (item_path + fields) according to parser_config.
    """

    PARSER_NAME = "json_api"
    PARSER_VERSION = "1.0.0"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self.fields = {**DEFAULT_FIELDS, **self.config.get("fields", {})}

    def _load(self, content: bytes) -> Any:
        try:
            return json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseError(f"Invalid JSON payload: {e}") from e

    def list_item_ids(self, content: bytes, mime_type: str) -> list[str]:
        """Extract product ids from a JSON list payload."""
        data = self._load(content)
        items = resolve_path(data, self.config.get("items_path", "items"))
        if not isinstance(items, list):
            logger.warning(f"No item list at '{self.config.get('items_path', 'items')}'")
            return []

        id_field = self.config.get("id_field", self.fields["id"])
        ids = []
        for item in items:
            value = resolve_path(item, id_field)
            if value is not None and str(value).strip():
                ids.append(str(value).strip())
        return ids

    def parse(
        self,
        content: bytes,
        mime_type: str,
        source_product_id: str,
    ) -> ExtractedProduct | None:
        """Extract a product from a JSON detail payload."""
        data = self._load(content)
        item = resolve_path(data, self.config.get("item_path", ""))
        if not isinstance(item, dict):
            return None

        def get(name: str) -> Any:
            path = self.fields.get(name)
            return resolve_path(item, path) if path else None

        product_id = get("id")
        discount = get("discount_percent")
        sale_end = get("sale_end_at")

        return ExtractedProduct(
            source_product_id=str(product_id).strip() if product_id else source_product_id,
            title=_as_text(get("title")),
            description=_as_text(get("description")),
            release_date=parse_date(get("release_date")),
            thumbnail_url=_as_text(get("thumbnail_url")),
            affiliate_url=_as_text(get("affiliate_url")),
            price=parse_price(get("price")),
            sale_price=parse_price(get("sale_price")),
            discount_percent=parse_price(discount) if discount is not None else None,
            sale_end_at=_parse_datetime(sale_end),
            currency=_as_text(get("currency")),
            is_subscription=bool(get("is_subscription") or False),
            performers=split_names(get("performers")),
            tags=split_names(get("tags")),
        )


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, list):
        value = value[0] if value else None
        if value is None:
            return None
    return str(value)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        day = parse_date(value)
        return datetime(day.year, day.month, day.day) if day else None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed
