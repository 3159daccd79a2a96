"""Quote ingestion pipeline with throttled persistence and a simulated trading ledger."""

__version__ = "0.1.0"
