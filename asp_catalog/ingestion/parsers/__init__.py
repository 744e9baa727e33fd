"""
Parser Registry Module
======================

Central registry for source parsers.
Sources name their parser in config; the pipeline looks it up here once
per job, so its control flow carries no per-source conditionals.
"""

from __future__ import annotations

from typing import Any, Type

from asp_catalog.ingestion.parsers.base import (
    BaseParser,
    ExtractedProduct,
    parse_date,
    parse_price,
    split_names,
)
from asp_catalog.ingestion.parsers.html import HtmlParser
from asp_catalog.ingestion.parsers.json_api import JsonApiParser


# Registry mapping parser names to their classes
PARSER_REGISTRY: dict[str, Type[BaseParser]] = {
    "json_api": JsonApiParser,
    "html": HtmlParser,
}


def get_parser(
    parser_type: str,
    config: dict[str, Any] | None = None,
) -> BaseParser | None:
    """
    Get a parser instance by type name.

    Args:
        parser_type: Name of the parser (e.g., "json_api")
        config: Optional parser configuration

    Returns:
        Parser instance, or None if type not found
    """
    parser_class = PARSER_REGISTRY.get(parser_type)
    if parser_class is None:
        return None
    return parser_class(config)


def register_parser(name: str, parser_class: Type[BaseParser]) -> None:
    """
    Register a new parser type.

    Args:
        name: Name to register the parser under
        parser_class: Parser class (must inherit from BaseParser)
    """
    if not issubclass(parser_class, BaseParser):
        raise TypeError(f"{parser_class} must inherit from BaseParser")
    PARSER_REGISTRY[name] = parser_class


def list_parsers() -> list[str]:
    """List all registered parser names."""
    return list(PARSER_REGISTRY.keys())


def get_parser_info(parser_type: str) -> dict[str, str] | None:
    """
    Get information about a parser type.

    Args:
        parser_type: Name of the parser

    Returns:
        Dict with parser info, or None if not found
    """
    parser_class = PARSER_REGISTRY.get(parser_type)
    if parser_class is None:
        return None

    return {
        "name": parser_class.PARSER_NAME,
        "version": parser_class.PARSER_VERSION,
        "class": parser_class.__name__,
    }


__all__ = [
    # Registry functions
    "get_parser",
    "register_parser",
    "list_parsers",
    "get_parser_info",
    "PARSER_REGISTRY",
    # Base classes
    "BaseParser",
    "ExtractedProduct",
    # Helpers
    "parse_date",
    "parse_price",
    "split_names",
    # Concrete parsers
    "HtmlParser",
    "JsonApiParser",
]
