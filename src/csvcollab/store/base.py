"""Base classes and interfaces for row stores."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..core.models import (
    ActivityEntry,
    ChangeEvent,
    ChangeKind,
    Dataset,
    PeerEvent,
    Row,
    User,
)
from .feed import ChangeFeed, Subscription


class LockPredicate(Enum):
    """Predicates a conditional row update can be guarded by."""
    UNLOCKED = "unlocked"              # lock_holder IS NULL
    HELD_BY = "held_by"                # lock_holder = user
    UNLOCKED_OR_HELD_BY = "free_or_held_by"


@dataclass(frozen=True)
class LockCondition:
    """Guard evaluated atomically by the store together with the update."""

    predicate: LockPredicate
    user_id: Optional[str] = None

    @classmethod
    def unlocked(cls) -> "LockCondition":
        return cls(LockPredicate.UNLOCKED)

    @classmethod
    def held_by(cls, user_id: str) -> "LockCondition":
        return cls(LockPredicate.HELD_BY, user_id)

    @classmethod
    def unlocked_or_held_by(cls, user_id: str) -> "LockCondition":
        return cls(LockPredicate.UNLOCKED_OR_HELD_BY, user_id)

    def holds_for(self, row: Row) -> bool:
        """Evaluate the predicate against an in-memory row."""
        if self.predicate == LockPredicate.UNLOCKED:
            return row.lock_holder is None
        if self.predicate == LockPredicate.HELD_BY:
            return row.lock_holder == self.user_id
        return row.lock_holder is None or row.lock_holder == self.user_id


class RowStore(ABC):
    """Abstract durable store of datasets, rows, users and activity.

    Concrete stores implement the persistence methods.  The change feed
    and the peer broadcast channel are provided here: subclasses call
    :meth:`_emit` after every committed row write.
    """

    def __init__(self) -> None:
        self.changes = ChangeFeed("changes")
        self.peers = ChangeFeed("broadcast")

    # Rows ---------------------------------------------------------------

    @abstractmethod
    async def read_rows(self, dataset_id: str) -> List[Row]:
        """Return every row of the dataset ordered by sequence ascending."""
        raise NotImplementedError

    @abstractmethod
    async def get_row(self, row_id: str) -> Optional[Row]:
        raise NotImplementedError

    @abstractmethod
    async def update_row(
        self,
        row_id: str,
        changes: Dict[str, Any],
        condition: Optional[LockCondition] = None,
    ) -> bool:
        """Atomically apply ``changes`` if ``condition`` holds.

        Returns False when the row does not exist or the condition failed.
        """
        raise NotImplementedError

    @abstractmethod
    async def insert_rows(self, dataset_id: str, rows: Sequence[Row]) -> int:
        raise NotImplementedError

    @abstractmethod
    async def max_sequence(self, dataset_id: str) -> Optional[int]:
        """Largest sequence in the dataset, or None when it has no rows."""
        raise NotImplementedError

    # Datasets -----------------------------------------------------------

    @abstractmethod
    async def create_dataset(self, dataset: Dataset) -> Dataset:
        raise NotImplementedError

    @abstractmethod
    async def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        raise NotImplementedError

    @abstractmethod
    async def list_datasets(self, active_only: bool = True) -> List[Dataset]:
        raise NotImplementedError

    @abstractmethod
    async def update_dataset(self, dataset_id: str, changes: Dict[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def delete_dataset(self, dataset_id: str) -> bool:
        """Delete the dataset together with all of its rows."""
        raise NotImplementedError

    # Users and activity -------------------------------------------------

    @abstractmethod
    async def upsert_user(self, user: User) -> User:
        raise NotImplementedError

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        raise NotImplementedError

    @abstractmethod
    async def get_users(self, user_ids: Sequence[str]) -> List[User]:
        raise NotImplementedError

    @abstractmethod
    async def list_users(self) -> List[User]:
        raise NotImplementedError

    @abstractmethod
    async def log_activity(self, entry: ActivityEntry) -> ActivityEntry:
        raise NotImplementedError

    @abstractmethod
    async def list_activity(self, limit: int = 50, user_id: Optional[str] = None) -> List[ActivityEntry]:
        raise NotImplementedError

    # Realtime -----------------------------------------------------------

    def subscribe_changes(self, dataset_id: str) -> Subscription:
        """Subscribe to insert/update/delete events on the dataset's rows."""
        return self.changes.subscribe(dataset_id)

    def broadcast(self, dataset_id: str, event: PeerEvent) -> int:
        """Best-effort peer signal; returns how many listeners got it."""
        return self.peers.publish(dataset_id, event)

    def on_broadcast(self, dataset_id: str) -> Subscription:
        return self.peers.subscribe(dataset_id)

    def _emit(self, dataset_id: str, row_id: Optional[str], kind: ChangeKind) -> None:
        self.changes.publish(dataset_id, ChangeEvent(dataset_id=dataset_id, row_id=row_id, kind=kind))

    def close(self) -> None:
        """Release resources and drop live subscriptions."""
        self.changes.drop()
        self.peers.drop()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
