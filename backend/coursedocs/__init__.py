"""Course material ingestion core: validation, extraction, chunking and dispatch."""

__version__ = "1.0.0"
