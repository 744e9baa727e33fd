"""
Product Identity Module
=======================

Finds canonical products that are really the same title under two
different product ids, e.g. "259LUXU-1010" on one ASP and "LUXU-1010" on
another, or "SSIS-123" next to FANZA's zero-padded "ssis00123".

Matching order for one product:
1. Product code: the other product's id is a spelling variant of this one
   (confidence 100), or the codes agree once the numeric label prefix and
   zero padding are ignored (confidence 90)
2. Title and performers, against products sold on other ASPs: character
   bigram similarity of normalized titles combined with the number of
   shared performers, or with an identical release date

A code match at or above auto_merge_threshold wins outright. Otherwise
the best match at or above review_threshold is reported. Matches at or
above auto_merge_threshold are safe to merge automatically; the rest are
for human review.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from asp_catalog.db.repositories import ProductRepository
from asp_catalog.ingestion.normalizer import normalize_for_search, product_id_variants

logger = logging.getLogger(__name__)

# Sources whose titles are too generic to match on
TITLE_MATCH_EXCLUDED_ASPS = frozenset({"FC2", "DUGA"})

_TITLE_STRIP_RE = re.compile(r"[\s　！!？?「」『』【】（）()＆&～~・:：,，。.、\[\]]+")
_CODE_RE = re.compile(r"^(\d*)([a-z]+)0*(\d+)$")


def normalize_title(title: str) -> str:
    """Drop whitespace and punctuation and lower-case a title for comparison."""
    return _TITLE_STRIP_RE.sub("", title or "").lower()


def code_key(product_id: str) -> str:
    """
    Label code of a product id without numeric prefix or zero padding.

    "259LUXU-1010" and "luxu1010" both give "luxu1010"; "ssis00123" gives
    "ssis123". Ids that are not letters followed by digits come back in
    their search form.
    """
    compact = normalize_for_search(product_id)
    match = _CODE_RE.match(compact)
    if not match:
        return compact
    _, code, number = match.groups()
    return f"{code}{number}"


def _bigrams(text: str) -> set[str]:
    if len(text) < 2:
        return {text} if text else set()
    return {text[i : i + 2] for i in range(len(text) - 1)}


def title_similarity(title_a: str, title_b: str) -> float:
    """Jaccard similarity of the character bigrams of two normalized titles."""
    a = normalize_title(title_a)
    b = normalize_title(title_b)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    grams_a = _bigrams(a)
    grams_b = _bigrams(b)
    return len(grams_a & grams_b) / len(grams_a | grams_b)


def _performer_key(name: str) -> str:
    return re.sub(r"[\s　・]+", "", name).lower()


def count_shared_performers(names_a: list[str], names_b: list[str]) -> int:
    """Number of performers two products share, ignoring spacing and case."""
    keys_a = {_performer_key(n) for n in names_a if n}
    keys_b = {_performer_key(n) for n in names_b if n}
    return len(keys_a & keys_b)


@dataclass
class MatchingConfig:
    """Confidence scores and thresholds for identity matching."""

    code_exact: int = 100
    code_variant: int = 90
    title_performer_high: int = 85
    title_performer_medium: int = 75
    title_performer_low: int = 65
    title_release_date: int = 60
    auto_merge_threshold: int = 90
    review_threshold: int = 60
    min_title_similarity: float = 0.6


@dataclass
class ProductForMatching:
    """What identity matching knows about one product."""

    id: str
    normalized_product_id: str
    title: str
    asp_names: list[str] = field(default_factory=list)
    performer_names: list[str] = field(default_factory=list)
    release_date: date | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ProductForMatching:
        return cls(
            id=row["id"],
            normalized_product_id=row["normalized_product_id"],
            title=row["title"],
            asp_names=list(row.get("asp_names") or []),
            performer_names=list(row.get("performer_names") or []),
            release_date=row.get("release_date"),
        )


@dataclass
class IdentityMatch:
    """A product judged to be the same title as another."""

    product_id: str
    matched_product_id: str
    confidence: int
    method: str
    title_similarity: float | None = None
    shared_performers: int = 0
    auto_merge: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "matched_product_id": self.matched_product_id,
            "confidence": self.confidence,
            "method": self.method,
            "title_similarity": self.title_similarity,
            "shared_performers": self.shared_performers,
            "auto_merge": self.auto_merge,
        }


class ProductIdentityMatcher:
    """
    Matches products against the rest of the catalog.

    The catalog is loaded once into code and variant indexes; call
    invalidate() after merging so the next lookup sees the change.
    """

    def __init__(self, session: Session, config: MatchingConfig | None = None) -> None:
        self.session = session
        self.config = config or MatchingConfig()
        self.products = ProductRepository(session)
        self._catalog: dict[str, ProductForMatching] | None = None
        self._by_normalized_id: dict[str, str] = {}
        self._by_code: dict[str, list[str]] = {}

    def invalidate(self) -> None:
        self._catalog = None
        self._by_normalized_id = {}
        self._by_code = {}

    def _load(self) -> dict[str, ProductForMatching]:
        if self._catalog is None:
            self._catalog = {}
            for row in self.products.list_identity_rows():
                product = ProductForMatching.from_row(row)
                self._catalog[product.id] = product
                self._by_normalized_id[product.normalized_product_id] = product.id
                self._by_code.setdefault(code_key(product.normalized_product_id), []).append(product.id)
            logger.debug(f"Identity index loaded with {len(self._catalog)} products")
        return self._catalog

    def code_candidates(self, product: ProductForMatching) -> list[tuple[str, int, str]]:
        """
        Products whose id is another spelling of this product's id.

        Returns:
            (product_id, confidence, method) tuples, strongest first
        """
        self._load()
        found: dict[str, tuple[int, str]] = {}
        for variant in product_id_variants(product.normalized_product_id):
            other_id = self._by_normalized_id.get(variant)
            if other_id and other_id != product.id:
                found[other_id] = (self.config.code_exact, "product_code_exact")
        for other_id in self._by_code.get(code_key(product.normalized_product_id), []):
            if other_id != product.id and other_id not in found:
                found[other_id] = (self.config.code_variant, "product_code_variant")
        return sorted(
            ((pid, score, method) for pid, (score, method) in found.items()),
            key=lambda c: (-c[1], c[0]),
        )

    def find_title_match(self, product: ProductForMatching) -> IdentityMatch | None:
        """Best title-and-performer match among products sold elsewhere."""
        if not product.asp_names or set(product.asp_names) <= TITLE_MATCH_EXCLUDED_ASPS:
            return None
        catalog = self._load()
        own_asps = set(product.asp_names)

        scored = []
        for other in catalog.values():
            if other.id == product.id or not other.asp_names:
                continue
            # Only cross-ASP pairs; a source never lists one title twice
            if own_asps & set(other.asp_names) or set(other.asp_names) <= TITLE_MATCH_EXCLUDED_ASPS:
                continue
            similarity = title_similarity(product.title, other.title)
            if similarity >= self.config.min_title_similarity:
                scored.append((similarity, other))

        scored.sort(key=lambda s: (-s[0], s[1].id))
        for similarity, other in scored:
            match = self._evaluate(product, other, similarity)
            if match is not None:
                return match
        return None

    def _evaluate(
        self, product: ProductForMatching, other: ProductForMatching, similarity: float
    ) -> IdentityMatch | None:
        shared = count_shared_performers(product.performer_names, other.performer_names)
        total = max(len(product.performer_names), len(other.performer_names))

        if similarity >= 0.8 and total > 0 and shared == total:
            score, method = self.config.title_performer_high, "title_performer_high"
        elif similarity >= 0.7 and shared >= 2:
            score, method = self.config.title_performer_medium, "title_performer_medium"
        elif similarity >= 0.6 and shared >= 1:
            score, method = self.config.title_performer_low, "title_performer_low"
        elif (
            similarity >= 0.85
            and product.release_date is not None
            and product.release_date == other.release_date
        ):
            score, method = self.config.title_release_date, "title_release_date"
        else:
            return None

        return IdentityMatch(
            product_id=product.id,
            matched_product_id=other.id,
            confidence=score,
            method=method,
            title_similarity=round(similarity, 3),
            shared_performers=shared,
        )

    def find_match(self, product: ProductForMatching) -> IdentityMatch | None:
        """
        Find the most likely duplicate of a product.

        Returns:
            IdentityMatch at or above review_threshold, or None
        """
        config = self.config
        code_match = None
        candidates = self.code_candidates(product)
        if candidates:
            other_id, score, method = candidates[0]
            code_match = IdentityMatch(
                product_id=product.id, matched_product_id=other_id, confidence=score, method=method
            )
            if score >= config.auto_merge_threshold:
                return self._finalize(code_match)

        title_match = self.find_title_match(product)
        if title_match is not None and title_match.confidence >= config.review_threshold:
            if code_match is not None and code_match.confidence > title_match.confidence:
                return self._finalize(code_match)
            return self._finalize(title_match)

        if code_match is not None and code_match.confidence >= config.review_threshold:
            return self._finalize(code_match)
        return None

    def _finalize(self, match: IdentityMatch) -> IdentityMatch:
        match.auto_merge = match.confidence >= self.config.auto_merge_threshold
        return match

    def find_duplicates(
        self, limit: int = 100, asp_name: str | None = None
    ) -> list[IdentityMatch]:
        """
        Match a batch of products, oldest first.

        Each pair is reported once, from the newer product's side, so the
        older product is the one a merge keeps.
        """
        catalog = self._load()
        order = {pid: i for i, pid in enumerate(catalog)}
        matches = []
        seen_pairs: set[frozenset[str]] = set()

        for row in self.products.list_identity_rows(limit=limit, asp_name=asp_name):
            product = catalog.get(row["id"]) or ProductForMatching.from_row(row)
            match = self.find_match(product)
            if match is None:
                continue
            pair = frozenset((match.product_id, match.matched_product_id))
            if pair in seen_pairs:
                continue
            seen_pairs.add(pair)
            if order.get(match.matched_product_id, -1) > order.get(match.product_id, -1):
                match.product_id, match.matched_product_id = match.matched_product_id, match.product_id
            matches.append(match)

        return matches

    def merge(self, match: IdentityMatch) -> int:
        """Fold match.product_id into match.matched_product_id."""
        moved = self.products.merge_into(match.product_id, match.matched_product_id)
        logger.info(
            f"Merged product {match.product_id} into {match.matched_product_id} "
            f"({match.method}, confidence {match.confidence}, {moved} sources moved)"
        )
        self.invalidate()
        return moved
