"""CSV import, append and export for shared datasets.

Imports create every row as ``pending`` and unlocked, with sequence
numbers following file order.  Appends continue numbering after the
largest existing sequence so earlier rows keep their positions.

Example usage:

    dataset = await import_csv(store, Path("tasks.csv"), uploaded_by=admin.user_id)
    await append_csv(store, dataset.dataset_id, Path("more.csv"), user_id=admin.user_id)
    await export_csv(store, dataset.dataset_id, Path("tasks-export.csv"))
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd  # type: ignore

from ..config.settings import settings
from ..core.errors import DatasetNotFoundError
from ..core.ids import dataset_name_from_filename, generate_id
from ..core.models import ActivityEntry, Dataset, Row, RowStatus
from ..store.base import RowStore
from ..utils.logging import get_logger

logger = get_logger(__name__)


def read_records(path: Path) -> List[Dict[str, Any]]:
    """Parse a CSV file with a header row into string-valued records."""
    df = pd.read_csv(path, dtype=str, keep_default_na=False, skip_blank_lines=True)
    # Drop rows where every cell is empty
    df = df[(df != "").any(axis=1)] if len(df.columns) else df
    return df.to_dict(orient="records")


def rows_from_records(
    dataset_id: str,
    records: Sequence[Dict[str, Any]],
    start_sequence: int = 0,
) -> List[Row]:
    return [
        Row(
            row_id=generate_id(),
            dataset_id=dataset_id,
            sequence=start_sequence + i,
            fields=dict(record),
            status=RowStatus.PENDING,
        )
        for i, record in enumerate(records)
    ]


async def _insert_in_batches(store: RowStore, dataset_id: str, rows: List[Row], batch_size: int) -> int:
    inserted = 0
    for i in range(0, len(rows), batch_size):
        batch = rows[i:i + batch_size]
        logger.info(
            f"Inserting batch {i // batch_size + 1}: rows {i + 1} to {i + len(batch)}",
            extra={"dataset_id": dataset_id},
        )
        inserted += await store.insert_rows(dataset_id, batch)
    return inserted


async def import_records(
    store: RowStore,
    name: str,
    records: Sequence[Dict[str, Any]],
    uploaded_by: Optional[str] = None,
    original_filename: Optional[str] = None,
    batch_size: Optional[int] = None,
) -> Dataset:
    """Create a dataset from already-parsed records."""
    dataset = Dataset(
        dataset_id=generate_id(),
        name=name,
        original_filename=original_filename,
        uploaded_by=uploaded_by,
        total_rows=len(records),
    )
    await store.create_dataset(dataset)
    rows = rows_from_records(dataset.dataset_id, records)
    inserted = await _insert_in_batches(store, dataset.dataset_id, rows, batch_size or settings.import_batch_size)
    await store.log_activity(
        ActivityEntry(
            user_id=uploaded_by,
            action="uploaded CSV file",
            resource_type="file",
            resource_id=dataset.dataset_id,
            details={"filename": original_filename or name, "rows": inserted},
        )
    )
    logger.info(f"Imported {inserted} rows into {name}", extra={"dataset_id": dataset.dataset_id})
    return dataset


async def import_csv(
    store: RowStore,
    path: Path,
    uploaded_by: Optional[str] = None,
    name: Optional[str] = None,
) -> Dataset:
    """Import a CSV file as a new dataset."""
    path = Path(path)
    records = read_records(path)
    return await import_records(
        store,
        name or dataset_name_from_filename(path.name),
        records,
        uploaded_by=uploaded_by,
        original_filename=path.name,
    )


async def append_records(
    store: RowStore,
    dataset_id: str,
    records: Sequence[Dict[str, Any]],
    user_id: Optional[str] = None,
    filename: Optional[str] = None,
) -> int:
    """Append rows after the dataset's current last sequence."""
    dataset = await store.get_dataset(dataset_id)
    if dataset is None:
        raise DatasetNotFoundError(dataset_id)
    last = await store.max_sequence(dataset_id)
    start = 0 if last is None else last + 1
    rows = rows_from_records(dataset_id, records, start_sequence=start)
    inserted = await _insert_in_batches(store, dataset_id, rows, settings.import_batch_size)

    new_total = len(await store.read_rows(dataset_id))
    await store.update_dataset(dataset_id, {"total_rows": new_total})
    await store.log_activity(
        ActivityEntry(
            user_id=user_id,
            action="appended to CSV file",
            resource_type="file",
            resource_id=dataset_id,
            details={"filename": filename, "rows_added": inserted, "new_total": new_total},
        )
    )
    logger.info(f"Appended {inserted} rows starting at {start}. New total: {new_total}", extra={"dataset_id": dataset_id})
    return inserted


async def append_csv(store: RowStore, dataset_id: str, path: Path, user_id: Optional[str] = None) -> int:
    path = Path(path)
    return await append_records(store, dataset_id, read_records(path), user_id=user_id, filename=path.name)


async def export_csv(store: RowStore, dataset_id: str, path: Path) -> int:
    """Write the dataset's rows in sequence order; returns rows written."""
    if await store.get_dataset(dataset_id) is None:
        raise DatasetNotFoundError(dataset_id)
    rows = await store.read_rows(dataset_id)
    headers = list(rows[0].fields) if rows else []
    df = pd.DataFrame([r.fields for r in rows], columns=headers).fillna("")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False, quoting=csv.QUOTE_ALL)
    logger.info(f"Exported {len(rows)} rows to {path}", extra={"dataset_id": dataset_id})
    return len(rows)
