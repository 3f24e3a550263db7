"""SQLite-backed row store with atomic conditional updates."""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..core.errors import StoreError
from ..core.ids import utcnow
from ..core.models import ActivityEntry, ChangeKind, Dataset, Row, RowStatus, User, UserRole
from ..utils.logging import get_logger
from .base import LockCondition, LockPredicate, RowStore

logger = get_logger(__name__)

# Row model field -> csv_rows column
ROW_COLUMNS: Dict[str, str] = {
    "fields": "data",
    "status": "status",
    "assigned_to": "assigned_to",
    "lock_holder": "locked_by",
    "locked_at": "locked_at",
    "completed_at": "completed_at",
    "note": "notes",
}

DATASET_COLUMNS = ("name", "original_filename", "total_rows", "completed_rows", "is_active")

_ROW_SELECT = """SELECT id, file_id, row_index, data, status, assigned_to, locked_by,
                        locked_at, completed_at, notes, created_at, updated_at
                   FROM csv_rows"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteRowStore(RowStore):
    """
    Durable row store on a single SQLite database.

    Conditional updates are expressed in the ``WHERE`` clause of a single
    ``UPDATE`` statement, so the database picks exactly one winner when two
    clients race for the same row.  Every committed row write is published
    on the change feed.
    """

    def __init__(self, db_path: Path) -> None:
        super().__init__()
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            str(self.db_path), isolation_level="DEFERRED", check_same_thread=False
        )
        # Performance options
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA busy_timeout = 5000")
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                full_name TEXT,
                user_color TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'member',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS csv_files (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                original_filename TEXT,
                uploaded_by TEXT,
                total_rows INTEGER DEFAULT 0,
                completed_rows INTEGER DEFAULT 0,
                is_active BOOLEAN DEFAULT TRUE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS csv_rows (
                id TEXT PRIMARY KEY,
                file_id TEXT NOT NULL,
                row_index INTEGER NOT NULL,
                data TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                assigned_to TEXT,
                locked_by TEXT,
                locked_at TEXT,
                completed_at TEXT,
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (file_id) REFERENCES csv_files(id) ON DELETE CASCADE,
                UNIQUE(file_id, row_index)
            );

            CREATE INDEX IF NOT EXISTS idx_rows_file ON csv_rows(file_id, row_index);

            CREATE TABLE IF NOT EXISTS activity_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                action TEXT NOT NULL,
                resource_type TEXT,
                resource_id TEXT,
                details TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_activity_user ON activity_log(user_id, created_at);
            """
        )
        self.conn.commit()

    # Helpers ------------------------------------------------------------

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Read failed: {e}") from e

    def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one write statement in its own transaction; returns rowcount."""
        try:
            with self.conn:
                cur = self.conn.execute(sql, params)
                return cur.rowcount
        except sqlite3.Error as e:
            raise StoreError(f"Write failed: {e}") from e

    @staticmethod
    def _row_from_record(record: tuple) -> Row:
        return Row(
            row_id=record[0],
            dataset_id=record[1],
            sequence=record[2],
            fields=json.loads(record[3]),
            status=RowStatus(record[4]),
            assigned_to=record[5],
            lock_holder=record[6],
            locked_at=_parse_ts(record[7]),
            completed_at=_parse_ts(record[8]),
            note=record[9],
            created_at=_parse_ts(record[10]),
            updated_at=_parse_ts(record[11]),
        )

    @staticmethod
    def _encode_row_value(field: str, value: Any) -> Any:
        if field == "fields":
            return json.dumps(value)
        if isinstance(value, RowStatus):
            return value.value
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    @staticmethod
    def _condition_sql(condition: Optional[LockCondition]) -> Tuple[str, List[Any]]:
        if condition is None:
            return "", []
        if condition.predicate == LockPredicate.UNLOCKED:
            return " AND locked_by IS NULL", []
        if condition.predicate == LockPredicate.HELD_BY:
            return " AND locked_by = ?", [condition.user_id]
        return " AND (locked_by IS NULL OR locked_by = ?)", [condition.user_id]

    # Rows ---------------------------------------------------------------

    async def read_rows(self, dataset_id: str) -> List[Row]:
        records = self._query(f"{_ROW_SELECT} WHERE file_id = ? ORDER BY row_index ASC", (dataset_id,))
        return [self._row_from_record(r) for r in records]

    async def get_row(self, row_id: str) -> Optional[Row]:
        records = self._query(f"{_ROW_SELECT} WHERE id = ?", (row_id,))
        return self._row_from_record(records[0]) if records else None

    async def update_row(
        self,
        row_id: str,
        changes: Dict[str, Any],
        condition: Optional[LockCondition] = None,
    ) -> bool:
        unknown = set(changes) - set(ROW_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update row attributes: {sorted(unknown)}")
        if ("lock_holder" in changes) != ("locked_at" in changes):
            raise ValueError("lock_holder and locked_at must be updated together")
        if not changes:
            return False

        assignments = [f"{ROW_COLUMNS[f]} = ?" for f in changes]
        params: List[Any] = [self._encode_row_value(f, v) for f, v in changes.items()]
        assignments.append("updated_at = ?")
        params.append(utcnow().isoformat())
        where, where_params = self._condition_sql(condition)
        updated = self._write(
            f"UPDATE csv_rows SET {', '.join(assignments)} WHERE id = ?{where}",
            params + [row_id] + where_params,
        )
        if not updated:
            logger.debug(f"Conditional update on row {row_id} did not apply", extra={"row_id": row_id})
            return False

        owner = self._query("SELECT file_id FROM csv_rows WHERE id = ?", (row_id,))
        if owner:
            self._emit(owner[0][0], row_id, ChangeKind.UPDATE)
        return True

    async def insert_rows(self, dataset_id: str, rows: Sequence[Row]) -> int:
        if not rows:
            return 0
        now = utcnow().isoformat()
        try:
            with self.conn:
                self.conn.executemany(
                    """INSERT INTO csv_rows
                    (id, file_id, row_index, data, status, assigned_to, locked_by,
                     locked_at, completed_at, notes, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    [
                        (
                            r.row_id,
                            dataset_id,
                            r.sequence,
                            json.dumps(r.fields),
                            r.status.value,
                            r.assigned_to,
                            r.lock_holder,
                            _ts(r.locked_at),
                            _ts(r.completed_at),
                            r.note,
                            now,
                            now,
                        )
                        for r in rows
                    ],
                )
        except sqlite3.Error as e:
            raise StoreError(f"Insert failed: {e}") from e
        for r in rows:
            self._emit(dataset_id, r.row_id, ChangeKind.INSERT)
        return len(rows)

    async def max_sequence(self, dataset_id: str) -> Optional[int]:
        records = self._query("SELECT MAX(row_index) FROM csv_rows WHERE file_id = ?", (dataset_id,))
        return records[0][0] if records else None

    # Datasets -----------------------------------------------------------

    @staticmethod
    def _dataset_from_record(record: tuple) -> Dataset:
        return Dataset(
            dataset_id=record[0],
            name=record[1],
            original_filename=record[2],
            uploaded_by=record[3],
            total_rows=record[4],
            completed_rows=record[5],
            is_active=bool(record[6]),
            created_at=_parse_ts(record[7]),
            updated_at=_parse_ts(record[8]),
        )

    async def create_dataset(self, dataset: Dataset) -> Dataset:
        self._write(
            """INSERT INTO csv_files
            (id, name, original_filename, uploaded_by, total_rows, completed_rows,
             is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                dataset.dataset_id,
                dataset.name,
                dataset.original_filename,
                dataset.uploaded_by,
                dataset.total_rows,
                dataset.completed_rows,
                dataset.is_active,
                dataset.created_at.isoformat(),
                dataset.updated_at.isoformat(),
            ),
        )
        logger.info(f"Created dataset {dataset.name}", extra={"dataset_id": dataset.dataset_id})
        return dataset

    async def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        records = self._query(
            """SELECT id, name, original_filename, uploaded_by, total_rows, completed_rows,
                      is_active, created_at, updated_at
                 FROM csv_files WHERE id = ?""",
            (dataset_id,),
        )
        return self._dataset_from_record(records[0]) if records else None

    async def list_datasets(self, active_only: bool = True) -> List[Dataset]:
        sql = """SELECT id, name, original_filename, uploaded_by, total_rows, completed_rows,
                        is_active, created_at, updated_at
                   FROM csv_files"""
        if active_only:
            sql += " WHERE is_active = TRUE"
        sql += " ORDER BY created_at DESC"
        return [self._dataset_from_record(r) for r in self._query(sql)]

    async def update_dataset(self, dataset_id: str, changes: Dict[str, Any]) -> bool:
        unknown = set(changes) - set(DATASET_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update dataset attributes: {sorted(unknown)}")
        if not changes:
            return False
        assignments = [f"{c} = ?" for c in changes] + ["updated_at = ?"]
        params = list(changes.values()) + [utcnow().isoformat(), dataset_id]
        return self._write(f"UPDATE csv_files SET {', '.join(assignments)} WHERE id = ?", params) > 0

    async def delete_dataset(self, dataset_id: str) -> bool:
        try:
            with self.conn:
                self.conn.execute("DELETE FROM csv_rows WHERE file_id = ?", (dataset_id,))
                deleted = self.conn.execute("DELETE FROM csv_files WHERE id = ?", (dataset_id,)).rowcount
        except sqlite3.Error as e:
            raise StoreError(f"Delete failed: {e}") from e
        if deleted:
            logger.info("Deleted dataset", extra={"dataset_id": dataset_id})
            self._emit(dataset_id, None, ChangeKind.DELETE)
        return deleted > 0

    # Users --------------------------------------------------------------

    @staticmethod
    def _user_from_record(record: tuple) -> User:
        return User(
            user_id=record[0],
            email=record[1],
            full_name=record[2],
            color=record[3],
            role=UserRole(record[4]),
            created_at=_parse_ts(record[5]),
        )

    async def upsert_user(self, user: User) -> User:
        self._write(
            """INSERT INTO profiles (id, email, full_name, user_color, role, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                email = excluded.email,
                full_name = excluded.full_name,
                user_color = excluded.user_color,
                role = excluded.role""",
            (
                user.user_id,
                user.email,
                user.full_name,
                user.color,
                user.role.value,
                user.created_at.isoformat(),
            ),
        )
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        records = self._query(
            "SELECT id, email, full_name, user_color, role, created_at FROM profiles WHERE id = ?",
            (user_id,),
        )
        return self._user_from_record(records[0]) if records else None

    async def get_users(self, user_ids: Sequence[str]) -> List[User]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        records = self._query(
            f"SELECT id, email, full_name, user_color, role, created_at FROM profiles WHERE id IN ({placeholders})",
            ids,
        )
        return [self._user_from_record(r) for r in records]

    async def list_users(self) -> List[User]:
        records = self._query(
            "SELECT id, email, full_name, user_color, role, created_at FROM profiles ORDER BY created_at"
        )
        return [self._user_from_record(r) for r in records]

    # Activity -----------------------------------------------------------

    async def log_activity(self, entry: ActivityEntry) -> ActivityEntry:
        try:
            with self.conn:
                cur = self.conn.execute(
                    """INSERT INTO activity_log
                    (user_id, action, resource_type, resource_id, details, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        entry.user_id,
                        entry.action,
                        entry.resource_type,
                        entry.resource_id,
                        json.dumps(entry.details) if entry.details is not None else None,
                        entry.created_at.isoformat(),
                    ),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Activity log write failed: {e}") from e
        return entry.model_copy(update={"entry_id": cur.lastrowid})

    async def list_activity(self, limit: int = 50, user_id: Optional[str] = None) -> List[ActivityEntry]:
        sql = "SELECT id, user_id, action, resource_type, resource_id, details, created_at FROM activity_log"
        params: List[Any] = []
        if user_id:
            sql += " WHERE user_id = ?"
            params.append(user_id)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        return [
            ActivityEntry(
                entry_id=r[0],
                user_id=r[1],
                action=r[2],
                resource_type=r[3],
                resource_id=r[4],
                details=json.loads(r[5]) if r[5] else None,
                created_at=_parse_ts(r[6]),
            )
            for r in self._query(sql, params)
        ]

    def close(self) -> None:
        super().close()
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
