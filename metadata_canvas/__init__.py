"""LLM-assisted, schema-driven metadata extraction and normalization."""

__version__ = "0.1.0"
