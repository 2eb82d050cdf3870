"""Content ingestion and quiz generation pipeline."""

__version__ = "0.1.0"
