"""ASP Catalog - batch ingestion and entity resolution for affiliate video catalogs."""

__version__ = "0.1.0"
