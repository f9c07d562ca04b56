"""Ingestion, enrichment and control-plane services."""
