"""
Performer Resolver Module
=========================

Matches performer names found in product data to the canonical performer
registry.

Two strategies feed the same find-or-create step:
- Registry match: known full names and aliases (3+ characters) found in
  the title, case-sensitively and longest first, so a long name is never
  pre-empted by a shorter name that is its prefix.
- Candidate extraction: heuristics for names embedded in titles (a
  single-script run at the title's tail, joined Latin name pairs,
  bracketed names). Candidates only reach the registry after passing the
  plausibility filter and the full-name gate.

A title that yields no confident name is linked to zero performers.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from asp_catalog.core.schema import Performer
from asp_catalog.db.repositories import PerformerRepository

logger = logging.getLogger(__name__)

MIN_REGISTRY_NAME_LENGTH = 3
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 30

_KANA_KANJI = r"぀-ゟ゠-ヿ㐀-䶿一-鿿々〆ヶー・"
_JAPANESE_ONLY_RE = re.compile(rf"^[{_KANA_KANJI}]+$")
_ALLOWED_CHARS_RE = re.compile(rf"^[{_KANA_KANJI}A-Za-z .]+$")
_TRAILING_NOTE_RE = re.compile(r"\s*[（(][^（()）]*[）)]\s*$")
_SPACES_RE = re.compile(r"\s+")

_KANJI_ONLY_RE = re.compile(r"^[一-鿿々]+$")
_LATIN_CHAR_RE = re.compile(r"[A-Za-z]")

# Title tail patterns: a single-script run preceded by whitespace at the very end
_TAIL_PATTERNS = [
    re.compile(r"\s([A-Z]{3,}(?:\s[A-Z]{3,})?)\s*$"),
    re.compile(r"\s([A-Z][a-z]+\s[A-Z][a-z]+)\s*$"),
    re.compile(r"\s([゠-ヿー・]{2,12})\s*$"),
    re.compile(r"\s([぀-ゟ]{2,6})\s*$"),
    re.compile(r"\s([一-鿿々]{3,6})\s*$"),
]
_LATIN_PAIR_RE = re.compile(r"\b([A-Z][a-z]+)[-.]([A-Z][a-z]+)\b")
_BRACKET_RE = re.compile(r"[【「（(]([^【】「」（）()]{2,20})[】」）)]")
_CREDIT_RE = re.compile(r"(?:出演|主演|女優)[：:]\s*([^\s【】「」()（）]+)")
_CREDIT_SPLIT_RE = re.compile(r"[、,／/]")

# Words that look like names to the heuristics but are genre vocabulary
EXCLUDED_EXACT = frozenset({
    "ナンパ", "企画", "美少女", "巨乳", "痴女", "単体", "新人",
    "独占", "限定", "配信", "特典", "期間限定", "独占配信", "総集編", "ベスト",
    "爆乳", "美乳", "美脚", "不倫", "温泉", "主観", "着衣", "水着", "制服", "女子校生",
    "女子大生", "個人撮影", "初撮り", "コスプレ", "ハメ撮り", "デビュー", "ギャル",
    "はじめて", "すべて", "ひとり", "ふたり", "みんな", "おとな", "こども", "おねだり",
})
EXCLUDED_SUBSTRINGS = (
    "動画", "サンプル", "無料", "高画質", "カテゴリ", "タグ", "ジャンル", "人気",
    "ランキング", "新着", "作品", "時間", "本番", "特集", "セット",
    "中出", "寝取", "痴漢", "盗撮", "調教", "乱交", "潮吹", "顔射", "解禁", "撮影",
    "絶頂", "近親", "素人", "人妻", "熟女",
)
EXCLUDED_LATIN_TOKENS = frozenset({
    "av", "hd", "fhd", "uhd", "hdr", "4k", "8k", "vr", "sample", "new", "vol", "part",
    "best", "dvd", "bd", "jav", "xxx", "full", "special", "edition",
    "sex", "sexy", "ntr", "pov", "milf", "gal", "cosplay", "premium", "uncensored",
})


def normalize_performer_name(name: str) -> str:
    """
    Canonical spelling of a performer name.

    Trims, converts full-width spaces, collapses whitespace, drops a
    trailing parenthesized note, and removes all spaces from names made
    only of kana/kanji (where spaces are tokenization artifacts).

    Args:
        name: Name as found in source data

    Returns:
        Normalized name ("" if nothing remains)
    """
    value = name.replace("　", " ").strip()
    value = _TRAILING_NOTE_RE.sub("", value).strip()
    value = _SPACES_RE.sub(" ", value)
    compact = value.replace(" ", "")
    if compact and _JAPANESE_ONLY_RE.match(compact):
        return compact
    return value


def is_plausible_performer_name(name: str) -> bool:
    """
    Name-plausibility filter for heuristic candidates.

    Rejects names outside 2..30 characters, names with characters other
    than kana, kanji, Latin letters, spaces, "・" and ".", and genre
    vocabulary.
    """
    name = name.strip()
    if not MIN_NAME_LENGTH <= len(name) <= MAX_NAME_LENGTH:
        return False
    if not _ALLOWED_CHARS_RE.match(name):
        return False
    if name in EXCLUDED_EXACT:
        return False
    if any(word in name for word in EXCLUDED_SUBSTRINGS):
        return False
    tokens = name.lower().replace(".", " ").split()
    if any(token in EXCLUDED_LATIN_TOKENS for token in tokens):
        return False
    return True


def is_full_name(name: str) -> bool:
    """
    Whether a name is specific enough to be trusted in free title text.

    Names with a space qualify, kanji-only names need 3 characters and
    everything else needs 4.
    """
    name = name.strip()
    if not name:
        return False
    if " " in name or "　" in name:
        return True
    if _KANJI_ONLY_RE.match(name):
        return len(name) >= 3
    return len(name) >= 4


def _latin_boundary(title: str, start: int, end: int) -> bool:
    # A Latin name must not be glued to further Latin letters ("SEX" in "Sexy")
    if _LATIN_CHAR_RE.match(title[start]) and start > 0 and _LATIN_CHAR_RE.match(title[start - 1]):
        return False
    if _LATIN_CHAR_RE.match(title[end - 1]) and end < len(title) and _LATIN_CHAR_RE.match(title[end]):
        return False
    return True


def extract_candidate_names(title: str) -> list[str]:
    """
    Heuristically pull performer-name candidates out of a title.

    The result is unfiltered; run each candidate through
    is_plausible_performer_name before using it.
    """
    candidates: list[str] = []

    for match in _CREDIT_RE.finditer(title):
        candidates.extend(p.strip() for p in _CREDIT_SPLIT_RE.split(match.group(1)))

    candidates.extend(m.group(1).strip() for m in _BRACKET_RE.finditer(title))
    candidates.extend(f"{m.group(1)} {m.group(2)}" for m in _LATIN_PAIR_RE.finditer(title))

    for pattern in _TAIL_PATTERNS:
        match = pattern.search(title)
        if match:
            candidates.append(match.group(1).strip())
            break

    seen: set[str] = set()
    unique = []
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.add(candidate)
            unique.append(candidate)
    return unique


@dataclass
class PerformerMatch:
    """A registry name found in a title."""

    performer_id: str
    matched_name: str
    start: int


@dataclass
class PerformerResolution:
    """Result of resolving the performers of one product."""

    performer_ids: list[str] = field(default_factory=list)
    matched_names: list[str] = field(default_factory=list)
    created_names: list[str] = field(default_factory=list)
    rejected_candidates: list[str] = field(default_factory=list)
    links_created: int = 0


@dataclass
class ReconcileResult:
    """Result of a spaced-variant reconciliation pass."""

    checked: int = 0
    merged: int = 0
    renamed: int = 0
    links_moved: int = 0
    dry_run: bool = False
    actions: list[str] = field(default_factory=list)


class PerformerResolver:
    """
    Resolves performer names to canonical performer ids.

    All writes are conflict tolerant: resolving the same title twice
    creates no extra performers and no extra links.
    """

    def __init__(self, session: Session, min_registry_name_length: int = MIN_REGISTRY_NAME_LENGTH) -> None:
        self.session = session
        self.min_registry_name_length = min_registry_name_length
        self.performers = PerformerRepository(session)
        self._index: list[tuple[str, str]] | None = None

    # ------------------------------------------------------------------
    # Registry match
    # ------------------------------------------------------------------

    def _load_index(self) -> list[tuple[str, str]]:
        """Known full names and aliases, longest first."""
        if self._index is None:
            pairs = {
                (name, performer_id)
                for name, performer_id in self.performers.list_name_index()
                if len(name) >= self.min_registry_name_length and is_full_name(name)
            }
            self._index = sorted(pairs, key=lambda p: (-len(p[0]), p[0]))
        return self._index

    def invalidate_index(self) -> None:
        """Drop the cached name index after the registry changes."""
        self._index = None

    def match_registry(self, title: str) -> list[PerformerMatch]:
        """
        Find known performer names in a title.

        Matching is case-sensitive and only full names take part. Names
        are tried longest first; characters claimed by a longer match
        cannot be reused by a shorter one, and a Latin name must stand as
        a whole word.

        Args:
            title: Product title

        Returns:
            Matches in title order, one per performer
        """
        claimed = [False] * len(title)
        found: dict[str, PerformerMatch] = {}

        for name, performer_id in self._load_index():
            start = title.find(name)
            while start != -1:
                end = start + len(name)
                if not any(claimed[start:end]) and _latin_boundary(title, start, end):
                    for i in range(start, end):
                        claimed[i] = True
                    if performer_id not in found:
                        found[performer_id] = PerformerMatch(performer_id, name, start)
                start = title.find(name, start + 1)

        return sorted(found.values(), key=lambda m: m.start)

    # ------------------------------------------------------------------
    # Find-or-create
    # ------------------------------------------------------------------

    def find_or_create(self, name: str) -> tuple[Performer, bool]:
        """
        Resolve a name to a performer, creating one if unknown.

        Lookup order: exact normalized name, alias (raw then normalized),
        then insert.

        Returns:
            Tuple of (performer, created)

        Raises:
            ValueError: If the name is empty after normalization
        """
        raw = name.strip()
        normalized = normalize_performer_name(raw)
        if not normalized:
            raise ValueError(f"Empty performer name: {name!r}")

        performer = self.performers.get_by_name(normalized)
        if performer is not None:
            return performer, False

        for alias in dict.fromkeys([raw, normalized]):
            performer = self.performers.get_by_alias(alias)
            if performer is not None:
                return performer, False

        performer, created = self.performers.create_if_absent(normalized)
        if created:
            logger.info(f"Created performer '{normalized}'")
            if raw != normalized:
                self.performers.add_alias(performer.id, raw)
            self.invalidate_index()
        return performer, created

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, title: str, source_hints: list[str] | None = None) -> PerformerResolution:
        """
        Resolve the performers of a product.

        Source hints (names supplied by the parser) and registry matches
        are always used; title heuristics only run when both are empty.

        Args:
            title: Product title
            source_hints: Performer names from the source's own data

        Returns:
            PerformerResolution
        """
        result = PerformerResolution()

        def add(performer: Performer, created: bool) -> None:
            if performer.id not in result.performer_ids:
                result.performer_ids.append(performer.id)
            if created:
                result.created_names.append(performer.name)

        for hint in source_hints or []:
            normalized = normalize_performer_name(hint)
            if not is_plausible_performer_name(normalized):
                result.rejected_candidates.append(hint)
                continue
            add(*self.find_or_create(hint))

        for match in self.match_registry(title):
            result.matched_names.append(match.matched_name)
            if match.performer_id not in result.performer_ids:
                result.performer_ids.append(match.performer_id)

        if not result.performer_ids:
            for candidate in extract_candidate_names(title):
                normalized = normalize_performer_name(candidate)
                if not (is_plausible_performer_name(normalized) and is_full_name(normalized)):
                    result.rejected_candidates.append(candidate)
                    continue
                add(*self.find_or_create(candidate))

        if result.rejected_candidates:
            logger.debug(f"Rejected performer candidates {result.rejected_candidates} in '{title}'")
        return result

    def resolve_performers(self, title: str, source_hints: list[str] | None = None) -> list[str]:
        """Resolve a title to performer ids."""
        return self.resolve(title, source_hints).performer_ids

    def link_performers(self, product_id: str, performer_ids: list[str]) -> int:
        """
        Link performers to a product.

        Returns:
            Number of new links (existing links are left as they are)
        """
        return sum(1 for pid in performer_ids if self.performers.link_product(product_id, pid))

    def resolve_and_link(
        self, product_id: str, title: str, source_hints: list[str] | None = None
    ) -> PerformerResolution:
        """Resolve performers for a product and link them."""
        result = self.resolve(title, source_hints)
        result.links_created = self.link_performers(product_id, result.performer_ids)
        return result

    # ------------------------------------------------------------------
    # Spaced-variant reconciliation
    # ------------------------------------------------------------------

    def merge_performers(self, source_id: str, target_id: str) -> int:
        """
        Merge one performer into another.

        Product links and aliases move to the target, the source's name
        becomes a target alias, and the source row is deleted.

        Returns:
            Number of product links moved
        """
        if source_id == target_id:
            raise ValueError("Cannot merge a performer into itself")
        source = self.performers.get_by_id(source_id)
        if source is None:
            raise ValueError(f"Performer with id {source_id} not found")

        moved = self.performers.merge_into(source_id, target_id)
        self.performers.add_alias(target_id, source.name)
        self.invalidate_index()
        return moved

    def reconcile_spaced_variants(self, limit: int = 50, dry_run: bool = False) -> ReconcileResult:
        """
        Fix performers whose names carry spurious inter-character spaces.

        A spaced variant is merged into the canonical performer when both
        exist, otherwise it is renamed to the canonical spelling.

        Args:
            limit: Maximum number of performers to fix
            dry_run: Report without writing

        Returns:
            ReconcileResult
        """
        result = ReconcileResult(dry_run=dry_run)
        page_size = max(limit, 50)
        offset = 0

        while result.merged + result.renamed < limit:
            page = self.performers.list_with_whitespace(limit=page_size, offset=offset)
            if not page:
                break
            untouched = 0

            for performer in page:
                result.checked += 1
                canonical = normalize_performer_name(performer.name)
                if canonical == performer.name:
                    untouched += 1
                    continue

                target = self.performers.get_by_name(canonical)
                if target is not None and target.id != performer.id:
                    action = f"merge '{performer.name}' -> '{target.name}'"
                    if not dry_run:
                        result.links_moved += self.merge_performers(performer.id, target.id)
                    result.merged += 1
                else:
                    action = f"rename '{performer.name}' -> '{canonical}'"
                    if not dry_run:
                        self.performers.rename(performer.id, canonical)
                        self.performers.add_alias(performer.id, performer.name)
                        self.invalidate_index()
                    result.renamed += 1

                result.actions.append(action)
                logger.info(f"{'[dry-run] ' if dry_run else ''}{action}")
                if result.merged + result.renamed >= limit:
                    break

            # Fixed rows leave the whitespace set; dry runs change nothing
            offset += len(page) if dry_run else untouched

        return result
