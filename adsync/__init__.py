"""adsync - ingestion pipeline for marketing integrations."""

__version__ = "0.1.0"
