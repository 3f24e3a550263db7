"""Row ownership and realtime synchronization.

The locking protocol lives here: authorization predicates, the lock
manager, the status tracker, presence derivation and the client-side
sync engine that keeps a dataset snapshot fresh.
"""

from .engine import Snapshot, SyncEngine
from .errors import ActionResult, ErrorHandler, ErrorType
from .locking import LockManager
from .permissions import can_edit_fields, can_force_release, can_mutate
from .presence import Presence, PresenceUser, aggregate_presence
from .status import StatusTracker

__all__ = [
    "Snapshot",
    "SyncEngine",
    "ActionResult",
    "ErrorHandler",
    "ErrorType",
    "LockManager",
    "StatusTracker",
    "Presence",
    "PresenceUser",
    "aggregate_presence",
    "can_mutate",
    "can_force_release",
    "can_edit_fields",
]
