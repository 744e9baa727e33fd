"""HTML page parser driven by CSS selectors from parser_config."""

from __future__ import annotations

import logging
import re
from typing import Any

from bs4 import BeautifulSoup, Tag

from asp_catalog.ingestion.parsers.base import (
    BaseParser,
    ExtractedProduct,
    parse_date,
    parse_price,
)

logger = logging.getLogger(__name__)


class HtmlParser(BaseParser):
    """
    Parser for HTML product pages.

    parser_config keys (all optional):
        list_link_selector: CSS selector for product links on listing pages
        id_pattern: regex with one group capturing the product id from an href
        title_selector, description_selector, price_selector,
        sale_price_selector, release_date_selector, thumbnail_selector:
            CSS selectors for single values
        performer_selector, tag_selector: CSS selectors for repeated values

    Title, description, thumbnail and affiliate URL fall back to the
    page's Open Graph meta tags.
    """

    PARSER_NAME = "html"
    PARSER_VERSION = "1.0.0"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self.id_pattern = re.compile(self.config.get("id_pattern", r"/([A-Za-z0-9_-]+)/?$"))

    def _soup(self, content: bytes) -> BeautifulSoup:
        return BeautifulSoup(content, "html.parser")

    def list_item_ids(self, content: bytes, mime_type: str) -> list[str]:
        """Extract product ids from the hrefs of listing page links."""
        selector = self.config.get("list_link_selector", "a[href]")
        soup = self._soup(content)

        ids: list[str] = []
        for link in soup.select(selector):
            href = link.get("href")
            if not isinstance(href, str):
                continue
            match = self.id_pattern.search(href)
            if match and match.group(1) not in ids:
                ids.append(match.group(1))
        return ids

    def parse(
        self,
        content: bytes,
        mime_type: str,
        source_product_id: str,
    ) -> ExtractedProduct | None:
        """Extract a product from an HTML detail page."""
        soup = self._soup(content)
        if soup.find() is None:
            return None

        title = self._select_text(soup, "title_selector") or _meta(soup, "og:title")
        if title is None and soup.title is not None:
            title = soup.title.get_text(strip=True)

        description = self._select_text(soup, "description_selector") or _meta(
            soup, "og:description"
        )
        if description is None:
            description = _meta(soup, "description", attr="name")

        thumbnail = self._select_attr(soup, "thumbnail_selector", "src") or _meta(soup, "og:image")

        return ExtractedProduct(
            source_product_id=source_product_id,
            title=title,
            description=description,
            release_date=parse_date(self._select_text(soup, "release_date_selector")),
            thumbnail_url=thumbnail,
            affiliate_url=_meta(soup, "og:url") or _canonical(soup),
            price=parse_price(self._select_text(soup, "price_selector")),
            sale_price=parse_price(self._select_text(soup, "sale_price_selector")),
            performers=self._select_all_text(soup, "performer_selector"),
            tags=self._select_all_text(soup, "tag_selector"),
        )

    def _select_text(self, soup: BeautifulSoup, key: str) -> str | None:
        selector = self.config.get(key)
        if not selector:
            return None
        element = soup.select_one(selector)
        if element is None:
            return None
        text = element.get_text(" ", strip=True)
        return text or None

    def _select_attr(self, soup: BeautifulSoup, key: str, attr: str) -> str | None:
        selector = self.config.get(key)
        if not selector:
            return None
        element = soup.select_one(selector)
        if element is None:
            return None
        value = element.get(attr)
        return value if isinstance(value, str) and value else None

    def _select_all_text(self, soup: BeautifulSoup, key: str) -> list[str]:
        selector = self.config.get(key)
        if not selector:
            return []
        values = [el.get_text(" ", strip=True) for el in soup.select(selector)]
        return [v for v in values if v]


def _meta(soup: BeautifulSoup, name: str, attr: str = "property") -> str | None:
    """Read a <meta> tag's content attribute."""
    element = soup.find("meta", attrs={attr: name})
    if not isinstance(element, Tag):
        return None
    value = element.get("content")
    return value.strip() if isinstance(value, str) and value.strip() else None


def _canonical(soup: BeautifulSoup) -> str | None:
    element = soup.find("link", attrs={"rel": "canonical"})
    if not isinstance(element, Tag):
        return None
    href = element.get("href")
    return href if isinstance(href, str) else None
