"""Tests for product identity matching."""

import tempfile
from datetime import date, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session, sessionmaker

from asp_catalog.db.models import Base, ProductDB
from asp_catalog.db.repositories import (
    PerformerRepository,
    ProductRepository,
    ProductSourceRepository,
)
from asp_catalog.ingestion.identity import (
    MatchingConfig,
    ProductForMatching,
    ProductIdentityMatcher,
    code_key,
    count_shared_performers,
    normalize_title,
    title_similarity,
)
from asp_catalog.ingestion.jobs import JobStatus, match_products

DEBUT_TITLE = "新人NO.1STYLE 河北彩花 AVデビュー"


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.db"


@pytest.fixture
def engine(temp_db_path):
    """Create a test database engine."""
    engine = create_engine(f"sqlite:///{temp_db_path}", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    """Create a session factory bound to the test database."""
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def session(session_factory):
    """Create a database session for testing."""
    session = session_factory()
    yield session
    session.close()


def _add_product(
    session: Session,
    normalized_id: str,
    title: str,
    asp_name: str,
    performers: tuple[str, ...] = (),
    release_date: date | None = None,
    age_days: int = 0,
) -> str:
    """Create a product listed on one ASP, created age_days ago."""
    product, _ = ProductRepository(session).create_if_absent(
        normalized_id, title=title, release_date=release_date
    )
    ProductSourceRepository(session).create_if_absent(product.id, asp_name, normalized_id.lower())
    performer_repo = PerformerRepository(session)
    for name in performers:
        performer, _ = performer_repo.create_if_absent(name)
        performer_repo.link_product(product.id, performer.id)
    session.execute(
        update(ProductDB)
        .where(ProductDB.id == product.id)
        .values(created_at=datetime(2026, 1, 1) - timedelta(days=age_days))
    )
    session.commit()
    return product.id


def _for_matching(session: Session, product_id: str) -> ProductForMatching:
    rows = ProductRepository(session).list_identity_rows()
    return next(ProductForMatching.from_row(r) for r in rows if r["id"] == product_id)


class TestNormalizeTitle:
    """Tests for title normalization helpers."""

    def test_strips_spaces_and_punctuation(self) -> None:
        """Test full-width spaces, brackets and marks are dropped."""
        assert normalize_title("【独占】美少女　ASUKA！ (前編)") == "独占美少女asuka前編"

    def test_empty(self) -> None:
        """Test empty titles normalize to an empty string."""
        assert normalize_title("") == ""

    def test_similarity(self) -> None:
        """Test punctuation differences do not lower similarity."""
        assert title_similarity(DEBUT_TITLE, "新人NO1STYLE　河北彩花AVデビュー！") == 1.0
        assert title_similarity(DEBUT_TITLE, "温泉旅行の記録") < 0.2
        assert title_similarity("", DEBUT_TITLE) == 0.0

    def test_shared_performers_ignore_spacing(self) -> None:
        """Test performer names compare without spaces, dots or case."""
        assert count_shared_performers(["河北 彩花", "Emma"], ["河北彩花", "EMMA", "ASUKA"]) == 2
        assert count_shared_performers([], ["河北彩花"]) == 0


class TestCodeKey:
    """Tests for code_key."""

    @pytest.mark.parametrize(
        "product_id,expected",
        [
            ("259LUXU-1010", "luxu1010"),
            ("LUXU-1010", "luxu1010"),
            ("ssis00123", "ssis123"),
            ("SSIS-123", "ssis123"),
            ("fc2-ppv-123456", "fc2ppv123456"),
        ],
    )
    def test_code_key(self, product_id: str, expected: str) -> None:
        """Test label prefixes and zero padding are ignored."""
        assert code_key(product_id) == expected


class TestProductIdentityMatcher:
    """Tests for ProductIdentityMatcher."""

    def test_spelling_variant_is_exact_code_match(self, session: Session) -> None:
        """Test ids differing only in case match with full confidence."""
        older = _add_product(session, "LUXU-1010", "ラグジュTV 1010", "MGS", age_days=2)
        newer = _add_product(session, "luxu-1010", "ラグジュTV 1010 街角", "FANZA")

        match = ProductIdentityMatcher(session).find_match(_for_matching(session, newer))

        assert match.matched_product_id == older
        assert match.method == "product_code_exact"
        assert match.confidence == 100
        assert match.auto_merge is True

    def test_label_prefix_is_code_variant(self, session: Session) -> None:
        """Test a numeric label prefix does not prevent a code match."""
        prefixed = _add_product(session, "259LUXU-1010", "ラグジュTV 1010", "MGS", age_days=2)
        plain = _add_product(session, "LUXU-1010", "別タイトル", "SOKMIL")

        match = ProductIdentityMatcher(session).find_match(_for_matching(session, plain))

        assert match.matched_product_id == prefixed
        assert match.method == "product_code_variant"
        assert match.confidence == 90

    def test_zero_padding_is_code_variant(self, session: Session) -> None:
        """Test FANZA-style zero padded ids match the hyphenated id."""
        padded = _add_product(session, "ssis00123", DEBUT_TITLE, "FANZA", age_days=1)
        hyphenated = _add_product(session, "SSIS-123", "別タイトル", "MGS")

        match = ProductIdentityMatcher(session).find_match(_for_matching(session, hyphenated))

        assert match.matched_product_id == padded
        assert match.method == "product_code_variant"

    def test_title_and_performers(self, session: Session) -> None:
        """Test the same title and cast on another ASP is reported for review."""
        fanza = _add_product(session, "SSIS-123", DEBUT_TITLE, "FANZA", ("河北彩花",), age_days=1)
        mgs = _add_product(session, "ABC-999", "新人NO.1STYLE 河北彩花 AVデビュー！", "MGS", ("河北 彩花",))

        match = ProductIdentityMatcher(session).find_match(_for_matching(session, mgs))

        assert match.matched_product_id == fanza
        assert match.method == "title_performer_high"
        assert match.shared_performers == 1
        assert match.title_similarity == 1.0
        assert match.auto_merge is False

    def test_same_asp_titles_not_matched(self, session: Session) -> None:
        """Test two listings on one ASP are never matched by title."""
        _add_product(session, "SSIS-123", DEBUT_TITLE, "FANZA", ("河北彩花",), age_days=1)
        other = _add_product(session, "SSIS-999", DEBUT_TITLE, "FANZA", ("河北彩花",))

        assert ProductIdentityMatcher(session).find_match(_for_matching(session, other)) is None

    def test_title_with_release_date(self, session: Session) -> None:
        """Test an identical title needs a matching release date without performers."""
        release = date(2025, 6, 1)
        first = _add_product(session, "AAA-001", DEBUT_TITLE, "FANZA", release_date=release, age_days=1)
        same_day = _add_product(session, "BBB-002", DEBUT_TITLE, "MGS", release_date=release)
        other_day = _add_product(session, "CCC-003", DEBUT_TITLE, "SOKMIL", release_date=date(2025, 7, 1))
        matcher = ProductIdentityMatcher(session)

        match = matcher.find_match(_for_matching(session, same_day))

        assert match.matched_product_id == first
        assert match.method == "title_release_date"
        assert match.confidence == 60
        assert matcher.find_title_match(_for_matching(session, other_day)) is None

    def test_review_threshold(self, session: Session) -> None:
        """Test matches below the review threshold are not returned."""
        _add_product(session, "AAA-001", DEBUT_TITLE, "FANZA", release_date=date(2025, 6, 1), age_days=1)
        same_day = _add_product(session, "BBB-002", DEBUT_TITLE, "MGS", release_date=date(2025, 6, 1))

        matcher = ProductIdentityMatcher(session, MatchingConfig(review_threshold=70))

        assert matcher.find_match(_for_matching(session, same_day)) is None

    def test_excluded_asp_titles_not_matched(self, session: Session) -> None:
        """Test generic-title sources are left out of title matching."""
        _add_product(session, "AAA-001", DEBUT_TITLE, "FANZA", ("河北彩花",), age_days=1)
        fc2 = _add_product(session, "FC2-PPV-123456", DEBUT_TITLE, "FC2", ("河北彩花",))

        assert ProductIdentityMatcher(session).find_match(_for_matching(session, fc2)) is None

    def test_find_duplicates_reports_pair_once(self, session: Session) -> None:
        """Test each pair is reported once with the older product kept."""
        older = _add_product(session, "259LUXU-1010", "ラグジュTV 1010", "MGS", age_days=3)
        newer = _add_product(session, "LUXU-1010", "ラグジュTV 1010 街角", "FANZA", age_days=1)
        _add_product(session, "XYZ-777", "温泉旅行の記録", "SOKMIL")

        matches = ProductIdentityMatcher(session).find_duplicates(limit=10)

        assert len(matches) == 1
        assert matches[0].product_id == newer
        assert matches[0].matched_product_id == older


class TestMergeInto:
    """Tests for ProductRepository.merge_into."""

    def test_moves_sources_and_links(self, session: Session) -> None:
        """Test the surviving product gets every source and link."""
        keep = _add_product(session, "259LUXU-1010", "ラグジュTV 1010", "MGS", ("ASUKA",), age_days=1)
        drop = _add_product(session, "LUXU-1010", "ラグジュTV 1010", "FANZA", ("ASUKA", "Emma Stone"))
        repo = ProductRepository(session)

        moved = repo.merge_into(drop, keep)
        session.commit()

        assert moved == 1
        assert repo.get_by_id(drop) is None
        assert {s.asp_name for s in ProductSourceRepository(session).list_for_product(keep)} == {
            "MGS",
            "FANZA",
        }
        assert PerformerRepository(session).count_links(keep) == 2
        assert PerformerRepository(session).count_links(drop) == 0

    def test_missing_product(self, session: Session) -> None:
        """Test merging an unknown product raises."""
        keep = _add_product(session, "259LUXU-1010", "ラグジュTV 1010", "MGS")

        with pytest.raises(ValueError, match="not found"):
            ProductRepository(session).merge_into("missing", keep)


class TestMatchProductsJob:
    """Tests for the match_products batch job."""

    def _catalog(self, session: Session) -> dict[str, str]:
        return {
            "older": _add_product(session, "259LUXU-1010", "ラグジュTV 1010", "MGS", age_days=4),
            "newer": _add_product(session, "LUXU-1010", "ラグジュTV 1010 街角", "FANZA", age_days=3),
            "fanza": _add_product(session, "SSIS-123", DEBUT_TITLE, "FANZA", ("河北彩花",), age_days=2),
            "mgs": _add_product(session, "ABC-999", DEBUT_TITLE, "MGS", ("河北彩花",), age_days=1),
        }

    def test_merges_code_matches_and_reports_title_matches(self, session_factory, session: Session) -> None:
        """Test only auto-merge matches are merged."""
        ids = self._catalog(session)

        result = match_products(limit=10, session_factory=session_factory)

        assert result.status == JobStatus.COMPLETED
        assert result.items_found == 2
        assert result.counters["merged"] == 1
        assert result.counters["needs_review"] == 1
        assert result.counters["title_performer_high"] == 1
        session.expire_all()
        products = ProductRepository(session)
        assert products.count() == 3
        assert products.get_by_id(ids["newer"]) is None
        assert {s.asp_name for s in ProductSourceRepository(session).list_for_product(ids["older"])} == {
            "MGS",
            "FANZA",
        }
        assert products.get_by_id(ids["mgs"]) is not None
        review = next(d for d in result.to_dict()["details"] if not d["auto_merge"])
        assert {review["product_id"], review["matched_product_id"]} == {ids["fanza"], ids["mgs"]}

    def test_dry_run_writes_nothing(self, session_factory, session: Session) -> None:
        """Test a dry run reports merges without applying them."""
        self._catalog(session)

        result = match_products(limit=10, dry_run=True, session_factory=session_factory)

        assert result.counters["merged"] == 1
        session.expire_all()
        assert ProductRepository(session).count() == 4

    def test_min_confidence(self, session_factory, session: Session) -> None:
        """Test raising the threshold drops review matches below it."""
        self._catalog(session)

        result = match_products(limit=10, min_confidence=90, session_factory=session_factory)

        assert result.items_found == 1
        assert "needs_review" not in result.counters
