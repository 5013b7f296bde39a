"""Ingestion pipeline.

Discovery tags artifact files, decode workers run decoder -> normalizer ->
deduplicator per file, and the publisher batches normalized records into the
delivery sinks.
"""
