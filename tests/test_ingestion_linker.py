"""Tests for the source linker."""

import tempfile
from datetime import date, datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from asp_catalog.core.errors import InvalidListingError
from asp_catalog.db.models import Base
from asp_catalog.db.repositories import (
    PerformerRepository,
    PriceHistoryRepository,
    ProductRepository,
    ProductSourceRepository,
    TagRepository,
)
from asp_catalog.ingestion.linker import SourceLinker
from asp_catalog.ingestion.normalizer import NormalizedProduct


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
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
def session(engine):
    """Create a database session for testing."""
    SessionLocal = sessionmaker(bind=engine, autoflush=False)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def linker(session: Session) -> SourceLinker:
    """Create a linker with the default placeholder rules."""
    return SourceLinker(session)


def _listing(**overrides) -> NormalizedProduct:
    values = {
        "source_product_id": "259LUXU1010",
        "normalized_product_id": "259LUXU-1010",
        "title": "ラグジュTV 1010 美人インストラクター",
        "price": 2980,
        "affiliate_url": "https://example.com/aff/259LUXU1010",
    }
    values.update(overrides)
    return NormalizedProduct(**values)


class TestLinkSource:
    """Tests for SourceLinker.link_source."""

    def test_creates_product_and_source(self, linker: SourceLinker, session: Session) -> None:
        """Test a new listing creates one product and one source."""
        result = linker.link_source("MGS", _listing())

        assert result.product_created is True
        assert result.source_created is True
        assert result.merged is False
        assert result.normalized_product_id == "259LUXU-1010"
        assert ProductRepository(session).count() == 1
        assert ProductSourceRepository(session).count() == 1

    def test_relinking_is_idempotent(self, linker: SourceLinker, session: Session) -> None:
        """Test linking the same listing twice changes nothing."""
        first = linker.link_source("MGS", _listing())
        second = linker.link_source("MGS", _listing())

        assert second.product_id == first.product_id
        assert second.product_source_id == first.product_source_id
        assert second.product_created is False
        assert second.source_created is False
        assert ProductRepository(session).count() == 1
        assert ProductSourceRepository(session).count() == 1

    def test_cross_source_merge(self, linker: SourceLinker, session: Session) -> None:
        """Test the same normalized id from another ASP attaches to one product."""
        mgs = linker.link_source("MGS", _listing())
        fanza = linker.link_source(
            "FANZA",
            _listing(source_product_id="259luxu01010", affiliate_url="https://al.example.com/x"),
        )

        assert fanza.product_id == mgs.product_id
        assert fanza.product_source_id != mgs.product_source_id
        assert fanza.merged is True
        assert ProductRepository(session).count() == 1
        sources = ProductSourceRepository(session).list_for_product(mgs.product_id)
        assert {s.asp_name for s in sources} == {"MGS", "FANZA"}

    def test_price_updated_in_place(self, linker: SourceLinker, session: Session) -> None:
        """Test a known listing updates its price without new rows."""
        first = linker.link_source("MGS", _listing(price=2980))
        linker.link_source("MGS", _listing(price=1980, affiliate_url="https://example.com/new"))

        source = ProductSourceRepository(session).get_by_id(first.product_source_id)
        assert source.price == 1980
        assert source.affiliate_url == "https://example.com/new"
        assert ProductSourceRepository(session).count() == 1

    def test_missing_fields_filled_not_overwritten(self, linker: SourceLinker, session: Session) -> None:
        """Test empty descriptive fields are filled from later listings."""
        first = linker.link_source("MGS", _listing())
        linker.link_source(
            "FANZA",
            _listing(
                source_product_id="259luxu01010",
                title="別タイトル 1010",
                description="作品紹介",
                release_date=date(2026, 1, 15),
            ),
        )

        product = ProductRepository(session).get_by_id(first.product_id)
        assert product.title == "ラグジュTV 1010 美人インストラクター"
        assert product.description == "作品紹介"
        assert product.release_date == date(2026, 1, 15)

    def test_placeholder_never_linked(self, linker: SourceLinker, session: Session) -> None:
        """Test a placeholder scrape is rejected before any write."""
        with pytest.raises(InvalidListingError) as exc_info:
            linker.link_source(
                "SOKMIL",
                _listing(source_product_id="12345", normalized_product_id="12345", title="ソクミル-12345"),
            )

        assert "denylist" in exc_info.value.reason
        assert ProductRepository(session).count() == 0
        assert ProductSourceRepository(session).count() == 0


class TestLinkTags:
    """Tests for SourceLinker.link_tags."""

    def test_link_tags_idempotent(self, linker: SourceLinker, session: Session) -> None:
        """Test tags are created once and linked once."""
        result = linker.link_source("MGS", _listing())

        assert linker.link_tags(result.product_id, ["素人", "人妻", " "]) == 2
        assert linker.link_tags(result.product_id, ["素人", "人妻"]) == 0
        assert TagRepository(session).count_links(result.product_id) == 2


class TestCleanupInvalidProducts:
    """Tests for invalid product cleanup."""

    @pytest.fixture
    def seeded(self, session: Session, linker: SourceLinker) -> dict[str, str]:
        """Seed one legacy placeholder product and one real product."""
        products = ProductRepository(session)
        sources = ProductSourceRepository(session)

        bad, _ = products.create_if_absent("SOKMIL-12345", title="ソクミル-12345")
        bad_source, _ = sources.create_if_absent(bad.id, "SOKMIL", "12345", price=500)
        PriceHistoryRepository(session).append(bad_source.id, 500, None, None, datetime(2026, 1, 1))
        tag = TagRepository(session).get_or_create("素人")
        TagRepository(session).link_product(bad.id, tag.id)
        performer, _ = PerformerRepository(session).create_if_absent("ASUKA")
        PerformerRepository(session).link_product(bad.id, performer.id)

        good = linker.link_source("MGS", _listing())
        session.commit()
        return {"bad": bad.id, "bad_source": bad_source.id, "good": good.product_id}

    def test_dry_run_reports_only(
        self, linker: SourceLinker, session: Session, seeded: dict[str, str]
    ) -> None:
        """Test a dry run finds the product but deletes nothing."""
        result = linker.cleanup_invalid_products(dry_run=True)

        assert result.found == 1
        assert result.deleted == 0
        assert result.deleted_ids == [seeded["bad"]]
        assert ProductRepository(session).get_by_id(seeded["bad"]) is not None

    def test_cleanup_cascades(
        self, linker: SourceLinker, session: Session, seeded: dict[str, str]
    ) -> None:
        """Test deletion removes dependent rows and keeps valid products."""
        result = linker.cleanup_invalid_products()
        session.commit()

        assert result.deleted == 1
        assert ProductRepository(session).get_by_id(seeded["bad"]) is None
        assert ProductSourceRepository(session).get_by_id(seeded["bad_source"]) is None
        assert PriceHistoryRepository(session).count(seeded["bad_source"]) == 0
        assert TagRepository(session).count_links(seeded["bad"]) == 0
        assert PerformerRepository(session).count_links(seeded["bad"]) == 0
        assert ProductRepository(session).get_by_id(seeded["good"]) is not None
        assert PerformerRepository(session).get_by_name("ASUKA") is not None

    def test_asp_filter(self, linker: SourceLinker, seeded: dict[str, str]) -> None:
        """Test the ASP filter limits candidates."""
        assert linker.cleanup_invalid_products(dry_run=True, asp_name="MGS").found == 0
        assert linker.cleanup_invalid_products(dry_run=True, asp_name="SOKMIL").found == 1
