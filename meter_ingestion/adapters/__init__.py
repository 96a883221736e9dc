"""Source adapters for receipt ingestion (file I/O only, no DB)."""

from meter_ingestion.adapters.csv_adapter import CsvSourceAdapter

__all__ = ["CsvSourceAdapter"]
