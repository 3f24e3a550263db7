"""Row stores and the in-process realtime feed."""

from .base import LockCondition, LockPredicate, RowStore
from .feed import ChangeFeed, Subscription
from .sqlite import SQLiteRowStore

__all__ = [
    "LockCondition",
    "LockPredicate",
    "RowStore",
    "ChangeFeed",
    "Subscription",
    "SQLiteRowStore",
]
