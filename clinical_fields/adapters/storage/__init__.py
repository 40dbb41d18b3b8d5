"""Storage adapters implementing the field repository ports."""

from clinical_fields.adapters.storage.duckdb_adapter import DuckDBFieldStore, DuckDBValueStore

__all__ = ["DuckDBFieldStore", "DuckDBValueStore"]
