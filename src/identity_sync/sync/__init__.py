"""Sync orchestration, normalization, conflict detection, aggregation and ingest."""
