"""Incremental ingestion and reconciliation pipeline for Texas mixed beverage receipts."""

__version__ = "0.1.0"
