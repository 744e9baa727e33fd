"""
Normalizer Module
=================

Cleans extracted product data before it is linked to the catalog:
- Product id normalization (source-native id -> cross-source id)
- Text sanitization (tags, whitespace, stray brackets)
- Placeholder / error page detection
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING

from asp_catalog.core.enums import IdCase

if TYPE_CHECKING:
    from asp_catalog.ingestion.parsers.base import ExtractedProduct
    from asp_catalog.ingestion.registry import ProductIdRule, SourceConfig


MIN_TITLE_LENGTH = 5

# Numeric label prefix + letter code + number, e.g. 259LUXU1010 -> 259LUXU-1010
DEFAULT_ID_RULES: list[tuple[str, str]] = [
    (r"^(\d+)([A-Za-z]+)[-_]?(\d+)$", r"\1\2-\3"),
]

# Site top pages and age gates served instead of a product page
DEFAULT_TITLE_DENYLIST: list[str] = [
    r"^ソクミル-\d+$",
    r"^FC2動画アダルト$",
    r"^MGS動画\(成人認証\)",
    r"^エロ動画・アダルトビデオ\s*-MGS動画",
    r"^MGS動画＜プレステージ\s*グループ＞$",
    r"^404",
    r"^ページが見つかりません$",
    r"^エラー$",
    r"^error$",
    r"^年齢確認$",
    r"^not found$",
]

DEFAULT_DESCRIPTION_DENYLIST: list[str] = [
    r"アダルト動画・エロ動画ソクミル",
    r"人気のアダルトビデオを高画質・低価格",
    r"18歳未満.*閲覧.*禁止",
    r"年齢確認.*18歳以上",
    r"プレステージグループのMGS動画は、10年以上の運営実績",
]

_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_BRACKET_PAIRS = {
    "[": "]",
    "【": "】",
    "「": "」",
    "『": "』",
    "(": ")",
    "（": "）",
    "<": ">",
    "〈": "〉",
    "《": "》",
}
_EDGE_BRACKETS = set(_BRACKET_PAIRS) | set(_BRACKET_PAIRS.values())


@dataclass
class ValidationResult:
    """Outcome of placeholder detection."""

    is_valid: bool
    reason: str | None = None


@dataclass
class NormalizedProduct:
    """Extracted product after sanitization and id normalization."""

    source_product_id: str
    normalized_product_id: str
    title: str
    description: str | None = None
    release_date: date | None = None
    thumbnail_url: str | None = None
    affiliate_url: str | None = None
    price: int | None = None
    sale_price: int | None = None
    discount_percent: int | None = None
    sale_end_at: datetime | None = None
    currency: str = "JPY"
    is_subscription: bool = False
    performers: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


def sanitize_text(value: str | None) -> str:
    """
    Strip tags, decode entities, collapse whitespace and trim edge brackets.

    Args:
        value: Raw text from a page or API

    Returns:
        Cleaned text ("" for None)
    """
    if not value:
        return ""
    text = html.unescape(_TAG_RE.sub(" ", value))
    text = _WHITESPACE_RE.sub(" ", text).strip()
    # Only strip unbalanced edge brackets so "【独占】..." titles stay intact
    while text and text[0] in _EDGE_BRACKETS and not _has_closing(text):
        text = text[1:].lstrip()
    while text and text[-1] in _EDGE_BRACKETS and not _has_opening(text):
        text = text[:-1].rstrip()
    return text


def _has_closing(text: str) -> bool:
    closing = _BRACKET_PAIRS.get(text[0])
    return closing is not None and closing in text[1:]


def _has_opening(text: str) -> bool:
    openings = [o for o, c in _BRACKET_PAIRS.items() if c == text[-1]]
    return bool(openings) and openings[0] in text[:-1]


class ProductIdNormalizer:
    """
    Applies an ordered list of regex rewrites to source-native ids.

    The first rule whose pattern matches wins; ids matching no rule are
    only trimmed and case-normalized.
    """

    def __init__(
        self,
        rules: list[tuple[str, str]] | None = None,
        case: IdCase = IdCase.UPPER,
    ) -> None:
        rules = DEFAULT_ID_RULES if rules is None else rules
        self._rules = [(re.compile(p), r) for p, r in rules]
        self.case = case

    @classmethod
    def from_rules(cls, rules: list[ProductIdRule], case: IdCase = IdCase.UPPER) -> ProductIdNormalizer:
        """Build from configured rules; an empty list means the defaults."""
        if not rules:
            return cls(case=case)
        return cls([(r.pattern, r.replace) for r in rules], case=case)

    def normalize(self, original_product_id: str) -> str:
        """
        Compute the normalized product id.

        Args:
            original_product_id: Id as the source publishes it

        Returns:
            Cross-source product id
        """
        value = original_product_id.strip()
        for pattern, replacement in self._rules:
            if pattern.search(value):
                value = pattern.sub(replacement, value, count=1)
                break
        return self._apply_case(value)

    def _apply_case(self, value: str) -> str:
        if self.case == IdCase.UPPER:
            return value.upper()
        if self.case == IdCase.LOWER:
            return value.lower()
        return value


def product_id_variants(product_id: str) -> list[str]:
    """
    Spellings of a product id worth trying when searching other sources.

    Covers the as-is, upper and lower case forms, the form without
    separators, and the hyphenated form of a prefix+code+number id.
    """
    value = product_id.strip()
    variants = [value, value.upper(), value.lower()]

    compact = re.sub(r"[-_\s]", "", value)
    variants.extend([compact, compact.upper(), compact.lower()])

    match = re.match(r"^(\d*)([A-Za-z]+)(\d+)$", compact)
    if match:
        prefix, code, number = match.groups()
        hyphenated = f"{prefix}{code}-{number}"
        variants.extend([hyphenated.upper(), hyphenated.lower()])

    return _dedupe([v for v in variants if v])


def normalize_for_search(product_id: str) -> str:
    """Lower-case an id and drop separators for fuzzy comparisons."""
    return re.sub(r"[-_\s]", "", product_id).lower()


class PlaceholderDetector:
    """
    Detects scrapes of placeholder pages (site top page, age gate, 404).

    A listing is invalid if its title is empty, shorter than
    MIN_TITLE_LENGTH, equal to "{asp}-{id}", or matches a title denylist
    pattern, or if its description matches a description denylist pattern.
    """

    def __init__(
        self,
        title_denylist: list[str] | None = None,
        description_denylist: list[str] | None = None,
        min_title_length: int = MIN_TITLE_LENGTH,
    ) -> None:
        titles = DEFAULT_TITLE_DENYLIST + (title_denylist or [])
        descriptions = DEFAULT_DESCRIPTION_DENYLIST + (description_denylist or [])
        self._title_patterns = [re.compile(p, re.IGNORECASE) for p in titles]
        self._description_patterns = [re.compile(p) for p in descriptions]
        self.min_title_length = min_title_length

    @classmethod
    def for_source(cls, source: SourceConfig) -> PlaceholderDetector:
        """Build a detector with a source's extra denylist patterns."""
        return cls(source.title_denylist, source.description_denylist)

    def validate(
        self,
        title: str | None,
        description: str | None,
        asp_name: str,
        original_product_id: str,
    ) -> ValidationResult:
        """
        Check whether a listing is a real product page.

        Args:
            title: Sanitized title
            description: Sanitized description
            asp_name: Source name
            original_product_id: Source-native id

        Returns:
            ValidationResult with the first failing reason
        """
        title = (title or "").strip()
        if not title:
            return ValidationResult(False, "empty title")

        if title.lower() == f"{asp_name}-{original_product_id}".lower():
            return ValidationResult(False, f"placeholder title '{title}'")

        if len(title) < self.min_title_length:
            return ValidationResult(False, f"title too short ({len(title)} chars)")

        for pattern in self._title_patterns:
            if pattern.search(title):
                return ValidationResult(False, f"title matches denylist pattern {pattern.pattern!r}")

        if description:
            for pattern in self._description_patterns:
                if pattern.search(description):
                    return ValidationResult(
                        False, f"description matches denylist pattern {pattern.pattern!r}"
                    )

        return ValidationResult(True)


class ProductNormalizer:
    """
    Turns an ExtractedProduct into a NormalizedProduct for one source.
    """

    def __init__(self, id_normalizer: ProductIdNormalizer, default_currency: str = "JPY") -> None:
        self.id_normalizer = id_normalizer
        self.default_currency = default_currency

    @classmethod
    def for_source(cls, source: SourceConfig) -> ProductNormalizer:
        """Build a normalizer from a source's configured id rules."""
        return cls(
            ProductIdNormalizer.from_rules(source.product_id_rules, source.id_case),
            default_currency=source.currency,
        )

    def normalize(self, extracted: ExtractedProduct) -> NormalizedProduct:
        """
        Sanitize text fields and compute the normalized product id.

        Args:
            extracted: Parser output

        Returns:
            NormalizedProduct
        """
        performers = [sanitize_text(p) for p in extracted.performers]
        tags = [sanitize_text(t) for t in extracted.tags]
        description = sanitize_text(extracted.description) or None

        return NormalizedProduct(
            source_product_id=extracted.source_product_id.strip(),
            normalized_product_id=self.id_normalizer.normalize(extracted.source_product_id),
            title=sanitize_text(extracted.title),
            description=description,
            release_date=extracted.release_date,
            thumbnail_url=extracted.thumbnail_url,
            affiliate_url=extracted.affiliate_url,
            price=extracted.price,
            sale_price=extracted.sale_price,
            discount_percent=extracted.discount_percent,
            sale_end_at=extracted.sale_end_at,
            currency=(extracted.currency or self.default_currency).upper(),
            is_subscription=extracted.is_subscription,
            performers=_dedupe([p for p in performers if p]),
            tags=_dedupe([t for t in tags if t]),
        )


def _dedupe(values: list[str]) -> list[str]:
    """Drop duplicates, keeping first occurrence order."""
    seen: set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result
