"""Exception hierarchy shared by the store, the sync core and the API."""

from typing import Optional


class CollabError(Exception):
    """Base class for errors raised by csvcollab."""


class StoreError(CollabError):
    """The row store failed to read or write."""


class AuthorizationError(CollabError):
    """The caller may not perform the mutation on this row."""


class LockConflictError(CollabError):
    """Another user holds the lock."""

    def __init__(self, row_id: str, holder: Optional[str] = None) -> None:
        self.row_id = row_id
        self.holder = holder
        msg = f"Row {row_id} is locked"
        if holder:
            msg += f" by {holder}"
        super().__init__(msg)


class SubscriptionError(CollabError):
    """The realtime channel dropped or could not be established."""


class NotFoundError(CollabError):
    """Referenced dataset, row or user does not exist."""


class DatasetNotFoundError(NotFoundError):
    def __init__(self, dataset_id: str) -> None:
        self.dataset_id = dataset_id
        super().__init__(f"Dataset {dataset_id} not found")


class RowNotFoundError(NotFoundError):
    def __init__(self, row_id: str) -> None:
        self.row_id = row_id
        super().__init__(f"Row {row_id} not found")
