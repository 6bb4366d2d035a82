"""
State store for the pipeline.

TradeStore is the persistence contract; StateStore is its SQLite implementation.
"""

from .base import (
    AssetRecord,
    EmailOutcome,
    PortfolioRecord,
    ProcessedEmailRecord,
    ReviewPriority,
    ReviewQueueItem,
    ReviewStatus,
    TradeStore,
    TransactionRecord,
)
from .sqlite_store import StateStore

__all__ = [
    "AssetRecord",
    "EmailOutcome",
    "PortfolioRecord",
    "ProcessedEmailRecord",
    "ReviewPriority",
    "ReviewQueueItem",
    "ReviewStatus",
    "StateStore",
    "TradeStore",
    "TransactionRecord",
]
