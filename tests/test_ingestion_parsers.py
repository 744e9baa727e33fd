"""Tests for the source parsers."""

import json
from datetime import date, datetime

import pytest

from asp_catalog.core.errors import ParseError
from asp_catalog.ingestion.parsers import (
    BaseParser,
    ExtractedProduct,
    HtmlParser,
    JsonApiParser,
    get_parser,
    get_parser_info,
    list_parsers,
    parse_date,
    parse_price,
    register_parser,
    split_names,
)
from asp_catalog.ingestion.parsers.json_api import resolve_path

FANZA_CONFIG = {
    "items_path": "result.items",
    "id_field": "content_id",
    "item_path": "result.items.0",
    "fields": {
        "id": "content_id",
        "title": "title",
        "affiliate_url": "affiliateURL",
        "thumbnail_url": "imageURL.large",
        "release_date": "date",
        "price": "prices.list_price",
        "sale_price": "prices.price",
        "performers": "iteminfo.actress[].name",
        "tags": "iteminfo.genre[].name",
    },
}

FANZA_PAYLOAD = {
    "result": {
        "items": [
            {
                "content_id": "ssis00123",
                "title": "新人NO.1 デビュー作品",
                "affiliateURL": "https://al.example.com/?lurl=ssis00123",
                "imageURL": {"large": "https://pics.example.com/ssis00123pl.jpg"},
                "date": "2026-01-15 10:00:00",
                "prices": {"list_price": "2980~", "price": "1980"},
                "iteminfo": {
                    "actress": [{"id": 1, "name": "美咲かんな"}, {"id": 2, "name": "ASUKA"}],
                    "genre": [{"name": "単体作品"}, {"name": "デビュー作品"}],
                },
            }
        ]
    }
}

MGS_CONFIG = {
    "list_link_selector": "a.item",
    "id_pattern": r"/product_detail/([A-Za-z0-9_-]+)/?",
    "title_selector": "h1.tag",
    "price_selector": "#price .price",
    "sale_price_selector": "#price .sale_price",
    "release_date_selector": "td.release",
    "performer_selector": "td.cast a",
    "tag_selector": "td.genre a",
}

MGS_DETAIL = """
<html>
  <head>
    <title>ページタイトル</title>
    <meta property="og:title" content="OGタイトル">
    <meta property="og:description" content="作品紹介文">
    <meta property="og:image" content="https://image.example.com/259luxu1010.jpg">
    <meta property="og:url" content="https://www.example.com/product/product_detail/259LUXU-1010/">
  </head>
  <body>
    <h1 class="tag">  ラグジュTV 1010  </h1>
    <div id="price"><span class="price">¥2,980</span><span class="sale_price">¥1,980</span></div>
    <table>
      <tr><td class="release">2026/01/15</td></tr>
      <tr><td class="cast"><a>ASUKA</a><a>美咲かんな</a></td></tr>
      <tr><td class="genre"><a>素人</a><a>人妻</a></td></tr>
    </table>
  </body>
</html>
""".encode("utf-8")


class TestHelpers:
    """Tests for shared parsing helpers."""

    def test_parse_price(self) -> None:
        """Test prices in the formats ASPs publish."""
        assert parse_price("¥1,980") == 1980
        assert parse_price("1980円") == 1980
        assert parse_price("2980~") == 2980
        assert parse_price(1980.0) == 1980
        assert parse_price(None) is None
        assert parse_price("") is None
        assert parse_price(True) is None

    def test_parse_date(self) -> None:
        """Test the supported date formats."""
        assert parse_date("2026-01-15") == date(2026, 1, 15)
        assert parse_date("2026/01/15") == date(2026, 1, 15)
        assert parse_date("2026年1月15日") == date(2026, 1, 15)
        assert parse_date("2026-01-15 10:00:00") == date(2026, 1, 15)
        assert parse_date("20260115") == date(2026, 1, 15)
        assert parse_date(datetime(2026, 1, 15, 9)) == date(2026, 1, 15)

    def test_parse_date_invalid(self) -> None:
        """Test unparseable values yield None."""
        assert parse_date("近日配信") is None
        assert parse_date("") is None
        assert parse_date(None) is None

    def test_split_names(self) -> None:
        """Test delimited strings and lists are split."""
        assert split_names("A、B / C") == ["A", "B", "C"]
        assert split_names(["A", None, " B "]) == ["A", "B"]
        assert split_names(None) == []


class TestResolvePath:
    """Tests for JSON dot paths."""

    def test_nested_and_index(self) -> None:
        """Test dict keys and list indexes."""
        assert resolve_path(FANZA_PAYLOAD, "result.items.0.content_id") == "ssis00123"
        assert resolve_path(FANZA_PAYLOAD, "result.items.-1.content_id") == "ssis00123"

    def test_list_mapping(self) -> None:
        """Test a '[]' segment maps the rest of the path."""
        item = FANZA_PAYLOAD["result"]["items"][0]
        assert resolve_path(item, "iteminfo.actress[].name") == ["美咲かんな", "ASUKA"]

    def test_missing_segments(self) -> None:
        """Test absent keys and out-of-range indexes yield None."""
        assert resolve_path(FANZA_PAYLOAD, "result.missing.key") is None
        assert resolve_path(FANZA_PAYLOAD, "result.items.5") is None
        assert resolve_path({"a": 1}, "a[].b") is None


class TestJsonApiParser:
    """Tests for JsonApiParser."""

    @pytest.fixture
    def parser(self) -> JsonApiParser:
        """Create a parser configured like the DMM API."""
        return JsonApiParser(FANZA_CONFIG)

    def test_list_item_ids(self, parser: JsonApiParser) -> None:
        """Test ids are read from the item list."""
        payload = {"result": {"items": [{"content_id": "a001"}, {"content_id": " b002 "}, {}]}}
        ids = parser.list_item_ids(json.dumps(payload).encode(), "application/json")
        assert ids == ["a001", "b002"]

    def test_list_without_items(self, parser: JsonApiParser) -> None:
        """Test a payload without the list yields no ids."""
        assert parser.list_item_ids(b'{"result": {}}', "application/json") == []

    def test_parse_detail(self, parser: JsonApiParser) -> None:
        """Test all configured fields are extracted."""
        content = json.dumps(FANZA_PAYLOAD, ensure_ascii=False).encode("utf-8")

        extracted = parser.parse(content, "application/json", "ssis00123")

        assert extracted.source_product_id == "ssis00123"
        assert extracted.title == "新人NO.1 デビュー作品"
        assert extracted.release_date == date(2026, 1, 15)
        assert extracted.thumbnail_url == "https://pics.example.com/ssis00123pl.jpg"
        assert extracted.price == 2980
        assert extracted.sale_price == 1980
        assert extracted.performers == ["美咲かんな", "ASUKA"]
        assert extracted.tags == ["単体作品", "デビュー作品"]
        assert parser.validate(extracted) == []

    def test_parse_empty_list(self, parser: JsonApiParser) -> None:
        """Test a detail payload without items holds no product."""
        assert parser.parse(b'{"result": {"items": []}}', "application/json", "x") is None

    def test_invalid_json(self, parser: JsonApiParser) -> None:
        """Test malformed payloads raise ParseError."""
        with pytest.raises(ParseError):
            parser.parse(b"{not json", "application/json", "x")

    def test_sale_end_at_with_timezone(self) -> None:
        """Test an aware sale end is stored as naive UTC."""
        parser = JsonApiParser()
        content = json.dumps(
            {"id": "A-1", "title": "Title", "price": 1000, "sale_end_at": "2026-02-01T09:00:00+09:00"}
        ).encode()

        extracted = parser.parse(content, "application/json", "A-1")

        assert extracted.sale_end_at == datetime(2026, 2, 1, 0, 0)


class TestHtmlParser:
    """Tests for HtmlParser."""

    def test_list_item_ids(self) -> None:
        """Test ids come from listing links, deduplicated in page order."""
        listing = b"""
        <ul>
          <li><a class="item" href="/product/product_detail/259LUXU-1010/">1</a></li>
          <li><a class="item" href="/product/product_detail/SIRO-5000/">2</a></li>
          <li><a class="item" href="/product/product_detail/259LUXU-1010/">dup</a></li>
          <li><a class="other" href="/product/product_detail/IGNORED-1/">x</a></li>
        </ul>
        """
        parser = HtmlParser(MGS_CONFIG)
        assert parser.list_item_ids(listing, "text/html") == ["259LUXU-1010", "SIRO-5000"]

    def test_parse_with_selectors(self) -> None:
        """Test configured selectors take priority."""
        extracted = HtmlParser(MGS_CONFIG).parse(MGS_DETAIL, "text/html", "259LUXU-1010")

        assert extracted.title == "ラグジュTV 1010"
        assert extracted.price == 2980
        assert extracted.sale_price == 1980
        assert extracted.release_date == date(2026, 1, 15)
        assert extracted.performers == ["ASUKA", "美咲かんな"]
        assert extracted.tags == ["素人", "人妻"]
        assert extracted.affiliate_url == "https://www.example.com/product/product_detail/259LUXU-1010/"

    def test_open_graph_fallback(self) -> None:
        """Test Open Graph tags fill fields without selectors."""
        extracted = HtmlParser().parse(MGS_DETAIL, "text/html", "259LUXU-1010")

        assert extracted.title == "OGタイトル"
        assert extracted.description == "作品紹介文"
        assert extracted.thumbnail_url == "https://image.example.com/259luxu1010.jpg"
        assert extracted.price is None
        assert extracted.performers == []

    def test_empty_document(self) -> None:
        """Test empty content holds no product."""
        assert HtmlParser().parse(b"", "text/html", "x") is None


class TestValidation:
    """Tests for BaseParser.validate."""

    def test_sale_price_requires_price(self) -> None:
        """Test a sale price without a regular price is rejected."""
        errors = JsonApiParser().validate(
            ExtractedProduct(source_product_id="A", title="T", sale_price=100)
        )
        assert "Sale price without regular price" in errors

    def test_missing_title_and_bad_discount(self) -> None:
        """Test several errors are reported together."""
        errors = JsonApiParser().validate(
            ExtractedProduct(source_product_id="A", price=-1, discount_percent=150)
        )
        assert "Missing title" in errors
        assert "Negative price: -1" in errors
        assert "Discount out of range: 150" in errors


class TestParserRegistry:
    """Tests for the parser registry."""

    def test_builtin_parsers(self) -> None:
        """Test the bundled parsers are registered."""
        assert {"html", "json_api"} <= set(list_parsers())
        assert isinstance(get_parser("html"), HtmlParser)
        assert get_parser("unknown") is None
        assert get_parser_info("json_api")["class"] == "JsonApiParser"

    def test_register_requires_base_parser(self) -> None:
        """Test only BaseParser subclasses can be registered."""
        with pytest.raises(TypeError):
            register_parser("bogus", dict)

    def test_register_custom_parser(self) -> None:
        """Test a custom parser becomes available by name."""

        class NullParser(BaseParser):
            PARSER_NAME = "null"

            def list_item_ids(self, content: bytes, mime_type: str) -> list[str]:
                return []

            def parse(self, content: bytes, mime_type: str, source_product_id: str):
                return None

        register_parser("null_test", NullParser)
        assert isinstance(get_parser("null_test"), NullParser)
