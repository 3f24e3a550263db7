"""Per-user and per-dataset progress statistics.

Everything here is derived from rows and the activity log on demand;
nothing is stored incrementally.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from ..core.models import ActivityEntry, Dataset, Row, RowStatus
from ..store.base import RowStore


class UserStatistics(BaseModel):
    """Work attributed to one user through ``assigned_to``."""

    user_id: str
    total_completed: int = 0
    total_working: int = 0
    total_blocked: int = 0
    rows_locked: int = 0
    last_active: Optional[datetime] = None


class DatasetProgress(BaseModel):
    dataset_id: str
    name: str
    total_rows: int
    completed_rows: int
    by_status: Dict[str, int]

    @property
    def percent(self) -> float:
        if not self.total_rows:
            return 0.0
        return round(100.0 * self.completed_rows / self.total_rows, 1)


def status_breakdown(rows: Iterable[Row]) -> Dict[str, int]:
    counts = {s.value: 0 for s in RowStatus}
    for row in rows:
        counts[row.status.value] += 1
    return counts


def user_statistics(
    user_id: str,
    rows: Iterable[Row],
    activity: Iterable[ActivityEntry] = (),
) -> UserStatistics:
    stats = UserStatistics(user_id=user_id)
    for row in rows:
        if row.lock_holder == user_id:
            stats.rows_locked += 1
        if row.assigned_to != user_id:
            continue
        if row.status == RowStatus.COMPLETED:
            stats.total_completed += 1
        elif row.status == RowStatus.WORKING:
            stats.total_working += 1
        elif row.status == RowStatus.BLOCKED:
            stats.total_blocked += 1
    times = [a.created_at for a in activity if a.user_id == user_id]
    stats.last_active = max(times) if times else None
    return stats


def dataset_progress(dataset: Dataset, rows: List[Row]) -> DatasetProgress:
    breakdown = status_breakdown(rows)
    return DatasetProgress(
        dataset_id=dataset.dataset_id,
        name=dataset.name,
        total_rows=len(rows),
        completed_rows=breakdown[RowStatus.COMPLETED.value],
        by_status=breakdown,
    )


async def collect_user_statistics(store: RowStore, user_id: str) -> UserStatistics:
    """Aggregate a user's statistics across every active dataset."""
    rows: List[Row] = []
    for dataset in await store.list_datasets(active_only=True):
        rows.extend(await store.read_rows(dataset.dataset_id))
    activity = await store.list_activity(limit=1, user_id=user_id)
    return user_statistics(user_id, rows, activity)
