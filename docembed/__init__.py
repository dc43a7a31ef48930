"""Document ingestion and embedding pipeline."""
