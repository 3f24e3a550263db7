"""Client-side synchronization of a dataset's row snapshot.

The engine keeps one client's view of one dataset eventually consistent
with the store.  Change-feed events and peer broadcasts are treated as
triggers to re-read the whole dataset, never as deltas to merge: every
refresh builds a brand new :class:`Snapshot` and swaps it in wholesale.

Only one dataset is subscribed at a time.  :meth:`SyncEngine.open` tears
down the previous scope (both channels and their listener tasks) before
subscribing to the next one, and results of reads that were started for
an old scope are discarded.
"""

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from ..config.settings import settings
from ..core.errors import StoreError, SubscriptionError
from ..core.ids import utcnow
from ..core.models import ChangeEvent, PeerEvent, Row, RowStatus, User
from ..store.base import RowStore
from ..store.feed import Subscription
from ..utils.logging import get_logger
from .presence import Presence, aggregate_presence, lock_holders
from .status import count_completed

logger = get_logger(__name__)

CHANGES = "changes"
PEERS = "broadcast"

SnapshotListener = Callable[["Snapshot"], Any]
ErrorListener = Callable[[Exception], Any]


@dataclass(frozen=True)
class Snapshot:
    """Immutable copy of a dataset's rows as of one read."""

    dataset_id: str
    rows: Tuple[Row, ...]
    presence: Presence
    fetched_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def __len__(self) -> int:
        return len(self.rows)

    def get(self, row_id: str) -> Optional[Row]:
        for row in self.rows:
            if row.row_id == row_id:
                return row
        return None

    @property
    def completed_rows(self) -> int:
        return count_completed(self.rows)

    @property
    def columns(self) -> List[str]:
        """Column names in the order of the first row."""
        return list(self.rows[0].fields) if self.rows else []

    def filter(self, status: Optional[RowStatus] = None, query: str = "") -> List[Row]:
        """Client-side status and text filter over the cached rows."""
        return [
            r
            for r in self.rows
            if (status is None or r.status == RowStatus(status)) and r.matches(query)
        ]


class SyncEngine:
    """Subscribe to one dataset and keep its snapshot fresh.

    Args:
        store: Row store providing reads, the change feed and the peer channel
        client_id: Identifier stamped on outgoing peer events
        debounce_ms: Coalescing window for re-fetch triggers; 0 re-fetches
            on every trigger
        max_avatars: Presence avatars shown before collapsing into a count
    """

    def __init__(
        self,
        store: RowStore,
        client_id: Optional[str] = None,
        debounce_ms: Optional[int] = None,
        max_avatars: Optional[int] = None,
        resubscribe_attempts: Optional[int] = None,
        resubscribe_wait: Optional[float] = None,
    ) -> None:
        self.store = store
        self.client_id = client_id or str(uuid.uuid4())
        self.debounce_ms = settings.refresh_debounce_ms if debounce_ms is None else debounce_ms
        self.max_avatars = settings.presence_max_avatars if max_avatars is None else max_avatars
        self.resubscribe_attempts = (
            settings.resubscribe_attempts if resubscribe_attempts is None else resubscribe_attempts
        )
        self.resubscribe_wait = settings.resubscribe_wait if resubscribe_wait is None else resubscribe_wait

        self.dataset_id: Optional[str] = None
        self.snapshot: Optional[Snapshot] = None
        self.refresh_count = 0
        self.last_error: Optional[Exception] = None

        self._scope = 0
        self._channels: Dict[str, Subscription] = {}
        self._tasks: List[asyncio.Task] = []
        self._debounce_task: Optional[asyncio.Task] = None
        self._refresh_pending = False
        self._listeners: List[SnapshotListener] = []
        self._error_listeners: List[ErrorListener] = []

    # Listeners ----------------------------------------------------------

    def add_listener(self, callback: SnapshotListener) -> None:
        """Call ``callback`` with every new snapshot."""
        self._listeners.append(callback)

    def add_error_listener(self, callback: ErrorListener) -> None:
        """Call ``callback`` when a background refresh or resubscribe fails."""
        self._error_listeners.append(callback)

    async def _notify(self, callbacks: List[Callable[[Any], Any]], value: Any) -> None:
        for callback in list(callbacks):
            try:
                result = callback(value)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Listener {callback!r} failed: {e}", exc_info=True)

    # Scope management ---------------------------------------------------

    @property
    def connected(self) -> bool:
        """True while both realtime channels of the current scope are live."""
        return bool(self._channels) and all(not sub.closed for sub in self._channels.values())

    async def open(self, dataset_id: str) -> Snapshot:
        """Switch to ``dataset_id``: tear down, subscribe, then fetch.

        Raises StoreError if the initial read fails; the subscription stays
        in place so the next trigger or a manual refresh can recover.
        """
        await self._teardown()
        self._scope += 1
        scope = self._scope
        self.dataset_id = dataset_id
        self.snapshot = None
        self._open_channel(CHANGES)
        self._open_channel(PEERS)
        for kind in (CHANGES, PEERS):
            self._tasks.append(asyncio.create_task(self._pump(kind, scope)))
        logger.info(f"Opened sync scope for client {self.client_id[:8]}", extra={"dataset_id": dataset_id})
        return await self.refresh()

    async def close(self) -> None:
        """Tear down the current scope and forget the snapshot."""
        await self._teardown()
        self._scope += 1
        self.dataset_id = None
        self.snapshot = None

    async def _teardown(self) -> None:
        # Invalidate reads that are still in flight for the old scope
        self._scope += 1
        for sub in self._channels.values():
            sub.close()
        self._channels = {}

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        if self._debounce_task is not None and self._debounce_task is not current:
            tasks.append(self._debounce_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        self._debounce_task = None
        self._refresh_pending = False

    def _open_channel(self, kind: str) -> Subscription:
        if self.dataset_id is None:
            raise SubscriptionError("No dataset selected")
        try:
            if kind == CHANGES:
                sub = self.store.subscribe_changes(self.dataset_id)
            else:
                sub = self.store.on_broadcast(self.dataset_id)
        except StoreError as e:
            raise SubscriptionError(f"Could not subscribe to {kind}: {e}") from e
        self._channels[kind] = sub
        return sub

    # Realtime listeners -------------------------------------------------

    async def _pump(self, kind: str, scope: int) -> None:
        """Consume one channel, resubscribing when it is dropped."""
        while scope == self._scope:
            sub = self._channels.get(kind)
            if sub is None:
                return
            async for message in sub:
                if scope != self._scope:
                    return
                await self._on_trigger(message, scope)
            if not sub.dropped or scope != self._scope:
                return
            logger.warning(f"Realtime channel {kind} dropped", extra={"dataset_id": self.dataset_id})
            if not await self._reconnect(kind, scope):
                return

    async def _reconnect(self, kind: str, scope: int) -> bool:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.resubscribe_attempts),
                wait=wait_fixed(self.resubscribe_wait),
                retry=retry_if_exception_type(SubscriptionError),
            ):
                with attempt:
                    if scope != self._scope:
                        return False
                    self._open_channel(kind)
        except RetryError as e:
            error = SubscriptionError(f"Resubscribe to {kind} failed after {self.resubscribe_attempts} attempts")
            logger.error(str(error), extra={"dataset_id": self.dataset_id})
            self.last_error = error
            await self._notify(self._error_listeners, error)
            return False
        logger.info(f"Resubscribed to {kind}", extra={"dataset_id": self.dataset_id})
        # Anything missed while disconnected is picked up by a full read
        await self._safe_refresh(scope)
        return True

    async def _on_trigger(self, message: Any, scope: int) -> None:
        if isinstance(message, ChangeEvent):
            logger.debug(f"Change event {message.kind.value} on row {message.row_id}")
        elif isinstance(message, PeerEvent):
            logger.debug(f"Peer event {message.action} on row {message.row_id} from {message.sender_id}")

        if self.debounce_ms <= 0:
            await self._safe_refresh(scope)
            return
        self._refresh_pending = True
        if self._debounce_task is None or self._debounce_task.done():
            self._debounce_task = asyncio.create_task(self._debounced_refresh(scope))

    async def _debounced_refresh(self, scope: int) -> None:
        # Triggers arriving while a read is running schedule another window
        while self._refresh_pending and scope == self._scope:
            await asyncio.sleep(self.debounce_ms / 1000.0)
            self._refresh_pending = False
            await self._safe_refresh(scope)

    async def _safe_refresh(self, scope: int) -> None:
        if scope != self._scope:
            return
        try:
            await self.refresh()
        except StoreError as e:
            logger.error(f"Background refresh failed: {e}", extra={"dataset_id": self.dataset_id})
            self.last_error = e
            await self._notify(self._error_listeners, e)
        except Exception as e:
            logger.error(f"Unexpected error during background refresh: {e}", exc_info=True)
            self.last_error = e
            await self._notify(self._error_listeners, e)

    async def resubscribe(self) -> Snapshot:
        """Re-open closed channels of the current scope and re-read."""
        if self.dataset_id is None:
            raise SubscriptionError("No dataset selected")
        scope = self._scope
        for kind in (CHANGES, PEERS):
            sub = self._channels.get(kind)
            if sub is None or sub.closed:
                self._open_channel(kind)
                self._tasks = [t for t in self._tasks if not t.done()]
                self._tasks.append(asyncio.create_task(self._pump(kind, scope)))
        return await self.refresh()

    # Reads and writes ---------------------------------------------------

    async def refresh(self) -> Snapshot:
        """Re-read every row of the active dataset and replace the snapshot.

        On failure the previous snapshot is left untouched and StoreError
        propagates.
        """
        if self.dataset_id is None:
            raise SubscriptionError("No dataset selected")
        scope = self._scope
        dataset_id = self.dataset_id

        rows = await self.store.read_rows(dataset_id)
        holders = lock_holders(rows)
        users: List[User] = await self.store.get_users(holders) if holders else []

        if scope != self._scope:
            logger.debug("Discarding read for a dataset that is no longer active", extra={"dataset_id": dataset_id})
            return self.snapshot
        version = self.snapshot.version + 1 if self.snapshot else 1
        snapshot = Snapshot(
            dataset_id=dataset_id,
            rows=tuple(rows),
            presence=aggregate_presence(
                rows, users, max_visible=self.max_avatars, fallback_color=settings.default_user_color
            ),
            version=version,
        )
        self.snapshot = snapshot
        self.refresh_count += 1
        self.last_error = None
        await self._notify(self._listeners, snapshot)
        return snapshot

    async def after_write(self, row_id: Optional[str], action: str) -> Optional[Snapshot]:
        """Observe our own write, then tell peers to re-fetch.

        The broadcast is sent even when the re-read fails, since the write
        itself was acknowledged.
        """
        try:
            return await self.refresh()
        finally:
            if self.dataset_id is not None:
                event = PeerEvent(
                    dataset_id=self.dataset_id,
                    row_id=row_id,
                    action=action,
                    sender_id=self.client_id,
                )
                delivered = self.store.broadcast(self.dataset_id, event)
                logger.debug(f"Broadcast {action} to {delivered} listener(s)", extra={"row_id": row_id})
