"""Tests for database persistence layer."""

import tempfile
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import Session, sessionmaker

from asp_catalog.db.engine import (
    check_connection,
    get_database_url,
    get_session,
    init_db,
    reset_engine,
)
from asp_catalog.db.models import Base, TagDB
from asp_catalog.db.repositories import (
    PerformerRepository,
    ProductRepository,
    ProductSourceRepository,
    TagRepository,
    insert_ignore,
)


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.db"


@pytest.fixture
def engine(temp_db_path):
    """Create a test database engine."""
    url = f"sqlite:///{temp_db_path}"
    engine = create_engine(url, echo=False)
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


class TestEngine:
    """Tests for engine helpers."""

    def test_database_url_from_path(self, temp_db_path: Path) -> None:
        """Test an explicit path becomes a SQLite URL."""
        assert get_database_url(temp_db_path) == f"sqlite:///{temp_db_path}"

    def test_database_url_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a full DATABASE_URL is used verbatim."""
        monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://user:pw@db/catalog")
        assert get_database_url() == "postgresql+psycopg://user:pw@db/catalog"

    def test_database_url_env_path(self, monkeypatch: pytest.MonkeyPatch, temp_db_path: Path) -> None:
        """Test a bare file path in DATABASE_URL."""
        monkeypatch.setenv("DATABASE_URL", str(temp_db_path))
        assert get_database_url() == f"sqlite:///{temp_db_path}"

    def test_init_db_creates_tables(self, temp_db_path: Path) -> None:
        """Test init_db creates every catalog table."""
        reset_engine()
        try:
            init_db(temp_db_path)
            with get_session(temp_db_path) as session:
                tables = set(inspect(session.get_bind()).get_table_names())
        finally:
            reset_engine()

        assert {
            "raw_content_records",
            "products",
            "product_sources",
            "performers",
            "performer_aliases",
            "tags",
            "product_performers",
            "product_tags",
            "price_history",
            "product_sales",
        } <= tables

    def test_check_connection(self, engine) -> None:
        """Test a reachable database passes the check."""
        check_connection(sessionmaker(bind=engine))


class TestInsertIgnore:
    """Tests for insert_ignore."""

    def test_duplicate_absorbed(self, session: Session) -> None:
        """Test a conflicting insert reports False and keeps one row."""
        values = {"id": "t1", "name": "素人", "category": "genre"}
        assert insert_ignore(session, TagDB, values, ["name"]) is True
        assert insert_ignore(session, TagDB, {**values, "id": "t2"}, ["name"]) is False

        tag = TagRepository(session).get_by_name("素人")
        assert tag.id == "t1"


class TestProductRepository:
    """Tests for ProductRepository."""

    def test_create_if_absent(self, session: Session) -> None:
        """Test the normalized id is unique."""
        repo = ProductRepository(session)

        first, created = repo.create_if_absent("ABC-001", title="First title")
        second, created_again = repo.create_if_absent("ABC-001", title="Other title")

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert second.title == "First title"

    def test_title_defaults_to_id(self, session: Session) -> None:
        """Test a missing title falls back to the normalized id."""
        product, _ = ProductRepository(session).create_if_absent("ABC-002")
        assert product.title == "ABC-002"

    def test_fill_missing_fields(self, session: Session) -> None:
        """Test only empty fields are filled."""
        repo = ProductRepository(session)
        product, _ = repo.create_if_absent("ABC-001", title="T", description="keep")

        filled = repo.fill_missing_fields(
            product.id, description="replace", release_date=date(2026, 1, 1)
        )

        assert filled == ["release_date"]
        refreshed = repo.get_by_id(product.id)
        assert refreshed.description == "keep"
        assert refreshed.release_date == date(2026, 1, 1)

    def test_list_without_performers(self, session: Session) -> None:
        """Test products with performer links are excluded."""
        products = ProductRepository(session)
        sources = ProductSourceRepository(session)
        linked, _ = products.create_if_absent("A-1", title="linked")
        unlinked, _ = products.create_if_absent("A-2", title="unlinked")
        other, _ = products.create_if_absent("A-3", title="other asp")
        sources.create_if_absent(unlinked.id, "MGS", "a2")
        sources.create_if_absent(other.id, "FANZA", "a3")
        performer, _ = PerformerRepository(session).create_if_absent("ASUKA")
        PerformerRepository(session).link_product(linked.id, performer.id)

        assert {p.id for p in products.list_without_performers()} == {unlinked.id, other.id}
        assert [p.id for p in products.list_without_performers(asp_name="MGS")] == [unlinked.id]

    def test_find_by_id_variants(self, session: Session) -> None:
        """Test other spellings of a product id find the stored product."""
        repo = ProductRepository(session)
        product, _ = repo.create_if_absent("259LUXU-1010", title="T")
        repo.create_if_absent("259LUXU-1011", title="Other")

        for spelling in ("259LUXU1010", "259luxu-1010", " 259LUXU_1010 "):
            assert [p.id for p in repo.find_by_id_variants(spelling)] == [product.id]
        assert repo.find_by_id_variants("259LUXU1012") == []
        assert repo.find_by_id_variants("   ") == []

    def test_delete_missing(self, session: Session) -> None:
        """Test deleting an unknown product returns False."""
        assert ProductRepository(session).delete_cascade("missing") is False


class TestProductSourceRepository:
    """Tests for ProductSourceRepository."""

    def test_update_mutable(self, session: Session) -> None:
        """Test None leaves a field untouched and currency is upper-cased."""
        product, _ = ProductRepository(session).create_if_absent("A-1", title="T")
        repo = ProductSourceRepository(session)
        source, _ = repo.create_if_absent(
            product.id, "MGS", "a1", price=1000, affiliate_url="https://a", currency="jpy"
        )
        assert source.currency == "JPY"

        updated = repo.update_mutable(source.id, price=800, affiliate_url=None, currency="usd")

        assert updated.price == 800
        assert updated.affiliate_url == "https://a"
        assert updated.currency == "USD"

    def test_update_unknown_source(self, session: Session) -> None:
        """Test updating a missing source raises ValueError."""
        with pytest.raises(ValueError):
            ProductSourceRepository(session).update_mutable("missing", price=1)


class TestPerformerRepository:
    """Tests for PerformerRepository."""

    def test_alias_lookup(self, session: Session) -> None:
        """Test an alias resolves to its performer."""
        repo = PerformerRepository(session)
        performer, _ = repo.create_if_absent("波多野結衣")

        assert repo.add_alias(performer.id, "Yui Hatano") is True
        assert repo.add_alias(performer.id, "Yui Hatano") is False
        assert repo.get_by_alias("Yui Hatano").id == performer.id
        assert ("Yui Hatano", performer.id) in repo.list_name_index()

    def test_list_with_whitespace(self, session: Session) -> None:
        """Test ASCII and full-width spaces are both found."""
        repo = PerformerRepository(session)
        repo.create_if_absent("美咲 かんな")
        repo.create_if_absent("波多野　結衣")
        repo.create_if_absent("ASUKA")

        names = {p.name for p in repo.list_with_whitespace()}

        assert names == {"美咲 かんな", "波多野　結衣"}
        assert len(repo.list_with_whitespace(limit=10, offset=1)) == 1

    def test_merge_into_drops_duplicate_links(self, session: Session) -> None:
        """Test links the target already has are not duplicated."""
        product, _ = ProductRepository(session).create_if_absent("A-1", title="T")
        repo = PerformerRepository(session)
        source, _ = repo.create_if_absent("美咲 かんな")
        target, _ = repo.create_if_absent("美咲かんな")
        repo.link_product(product.id, source.id)
        repo.link_product(product.id, target.id)

        moved = repo.merge_into(source.id, target.id)

        assert moved == 0
        assert repo.count_links(product.id) == 1
        assert repo.get_by_id(source.id) is None


class TestTagRepository:
    """Tests for TagRepository."""

    def test_get_or_create(self, session: Session) -> None:
        """Test the same name yields the same tag."""
        repo = TagRepository(session)
        first = repo.get_or_create("人妻", category="genre")
        second = repo.get_or_create("人妻")

        assert first.id == second.id
        assert second.category == "genre"
