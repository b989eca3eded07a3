"""Mindbody webhook ingestion and API token lifecycle."""

__version__ = "1.0.0"
