"""Pricesync - match provider trading-card prices to catalog printings and backfill price history."""

__version__ = "1.0.0"
__author__ = "Pricesync Team"
__description__ = "Provider matching and ingestion pipeline for trading-card prices"

from .core.types import BackfillFailure, BackfillResult, FailureCode, Printing
from .pipeline.backfill import run_backfill
from .store.database import CatalogStore
from .utils.config import settings

# Core functionality imports
from .utils.log import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__author__",
    "__description__",
    # Core components
    "configure_logging",
    "get_logger",
    "settings",
    "run_backfill",
    "CatalogStore",
    "BackfillResult",
    "BackfillFailure",
    "FailureCode",
    "Printing",
]
