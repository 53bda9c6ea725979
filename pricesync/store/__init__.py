"""Storage package: SQLite table store and the persistence batcher."""

from .batcher import PersistenceBatcher, PersistenceReport, build_history_rows, build_variant_ref
from .database import BatchWriteResult, CatalogStore, SqliteSignalRefresher

__all__ = [
    "CatalogStore",
    "BatchWriteResult",
    "SqliteSignalRefresher",
    "PersistenceBatcher",
    "PersistenceReport",
    "build_history_rows",
    "build_variant_ref",
]
