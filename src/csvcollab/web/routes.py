"""API routes for the collaborative workspace.

Endpoints cover dataset management (upload, append, export, delete,
recount), the row actions of the locking protocol and a websocket that
relays the change feed and peer broadcasts to browser clients.  The
caller's identity is taken from the ``X-User-Id`` header; authenticating
that header is the job of the deployment in front of this service.
"""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Header,
    HTTPException,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import FileResponse
from pydantic import BaseModel, ValidationError

from ..collab.stats import collect_user_statistics, dataset_progress
from ..config.settings import settings
from ..core.errors import (
    AuthorizationError,
    CollabError,
    LockConflictError,
    NotFoundError,
    StoreError,
)
from ..core.models import ActivityEntry, PeerEvent, Row, RowStatus, User
from ..io.csv_io import append_csv, export_csv, import_csv
from ..store.base import RowStore
from ..store.sqlite import SQLiteRowStore
from ..sync.locking import LockManager
from ..sync.presence import aggregate_presence, lock_holders
from ..sync.status import StatusTracker
from ..utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

_store: Optional[RowStore] = None


def get_store() -> RowStore:
    """Process-wide store; tests override this dependency."""
    global _store
    if _store is None:
        _store = SQLiteRowStore(settings.database_path)
    return _store


async def current_user(
    x_user_id: Optional[str] = Header(None),
    store: RowStore = Depends(get_store),
) -> User:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user = await store.get_user(x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


def _http_error(error: Exception) -> HTTPException:
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, AuthorizationError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, LockConflictError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, StoreError):
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def _require_admin(user: User) -> None:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Administrator role required")


class StatusRequest(BaseModel):
    status: RowStatus


class FieldRequest(BaseModel):
    column: str
    value: Any = None


class NoteRequest(BaseModel):
    note: Optional[str] = None


class PeerMessage(BaseModel):
    action: str = "row_updated"
    row_id: Optional[str] = None
    sender_id: Optional[str] = None


class RowActionResponse(BaseModel):
    ok: bool
    action: str
    row: Optional[Row] = None
    message: Optional[str] = None


@router.get("/api/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


# Datasets -----------------------------------------------------------------


@router.get("/api/datasets")
async def list_datasets(store: RowStore = Depends(get_store)) -> List[Dict[str, Any]]:
    datasets = await store.list_datasets(active_only=True)
    return [d.model_dump(mode="json") | {"progress": d.progress} for d in datasets]


@router.get("/api/datasets/{dataset_id}")
async def get_dataset(dataset_id: str, store: RowStore = Depends(get_store)) -> Dict[str, Any]:
    dataset = await store.get_dataset(dataset_id)
    if dataset is None:
        raise HTTPException(status_code=404, detail="Dataset not found")
    rows = await store.read_rows(dataset_id)
    return dataset.model_dump(mode="json") | {"stats": dataset_progress(dataset, rows).model_dump()}


@router.post("/api/datasets")
async def upload_dataset(
    file: UploadFile = File(...),
    user: User = Depends(current_user),
    store: RowStore = Depends(get_store),
) -> Dict[str, Any]:
    """Import an uploaded CSV file as a new dataset (admin only)."""
    _require_admin(user)
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / (file.filename or "upload.csv")
        path.write_bytes(await file.read())
        try:
            dataset = await import_csv(store, path, uploaded_by=user.user_id)
        except CollabError as e:
            raise _http_error(e)
    return dataset.model_dump(mode="json")


@router.post("/api/datasets/{dataset_id}/append")
async def append_dataset(
    dataset_id: str,
    file: UploadFile = File(...),
    user: User = Depends(current_user),
    store: RowStore = Depends(get_store),
) -> Dict[str, Any]:
    _require_admin(user)
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / (file.filename or "append.csv")
        path.write_bytes(await file.read())
        try:
            added = await append_csv(store, dataset_id, path, user_id=user.user_id)
        except CollabError as e:
            raise _http_error(e)
    return {"dataset_id": dataset_id, "rows_added": added}


@router.get("/api/datasets/{dataset_id}/export")
async def download_dataset(dataset_id: str, store: RowStore = Depends(get_store)) -> FileResponse:
    dataset = await store.get_dataset(dataset_id)
    if dataset is None:
        raise HTTPException(status_code=404, detail="Dataset not found")
    path = settings.data_dir / "exports" / f"{dataset.dataset_id}.csv"
    await export_csv(store, dataset_id, path)
    return FileResponse(
        path,
        media_type="text/csv",
        filename=dataset.original_filename or f"{dataset.name}-export.csv",
    )


@router.delete("/api/datasets/{dataset_id}")
async def delete_dataset(
    dataset_id: str,
    user: User = Depends(current_user),
    store: RowStore = Depends(get_store),
) -> Dict[str, Any]:
    _require_admin(user)
    if not await store.delete_dataset(dataset_id):
        raise HTTPException(status_code=404, detail="Dataset not found")
    return {"dataset_id": dataset_id, "deleted": True}


@router.post("/api/datasets/{dataset_id}/recount")
async def recount_dataset(dataset_id: str, store: RowStore = Depends(get_store)) -> Dict[str, int]:
    try:
        return await StatusTracker(store).recount(dataset_id)
    except CollabError as e:
        raise _http_error(e)


@router.get("/api/datasets/{dataset_id}/rows")
async def list_rows(
    dataset_id: str,
    status: Optional[RowStatus] = None,
    q: str = "",
    limit: Optional[int] = None,
    store: RowStore = Depends(get_store),
) -> Dict[str, Any]:
    """Full snapshot of the dataset, filtered for display."""
    if await store.get_dataset(dataset_id) is None:
        raise HTTPException(status_code=404, detail="Dataset not found")
    rows = await store.read_rows(dataset_id)
    holders = lock_holders(rows)
    users = await store.get_users(holders) if holders else []
    presence = aggregate_presence(
        rows,
        users,
        max_visible=settings.presence_max_avatars,
        fallback_color=settings.default_user_color,
    )
    matching = [
        r for r in rows if (status is None or r.status == status) and r.matches(q)
    ]
    shown = matching[: limit or settings.display_row_limit]
    return {
        "dataset_id": dataset_id,
        "total": len(rows),
        "matching": len(matching),
        "rows": [r.model_dump(mode="json") for r in shown],
        "presence": presence.model_dump(),
    }


# Row actions --------------------------------------------------------------


async def _finish(store: RowStore, row_id: str, action: str, user: User, applied: bool, log: Optional[str] = None) -> RowActionResponse:
    row = await store.get_row(row_id)
    if applied and row is not None:
        if log:
            await store.log_activity(
                ActivityEntry(user_id=user.user_id, action=log, resource_type="row", resource_id=row_id)
            )
        store.broadcast(
            row.dataset_id,
            PeerEvent(dataset_id=row.dataset_id, row_id=row_id, action=action, sender_id=user.user_id),
        )
    return RowActionResponse(ok=applied, action=action, row=row)


@router.post("/api/rows/{row_id}/lock")
async def lock_row(
    row_id: str,
    user: User = Depends(current_user),
    store: RowStore = Depends(get_store),
) -> RowActionResponse:
    try:
        applied = await LockManager(store).acquire(row_id, user)
    except CollabError as e:
        raise _http_error(e)
    response = await _finish(store, row_id, "locked", user, applied, log="locked row")
    if not applied:
        holder = response.row.lock_holder if response.row else None
        response.message = f"Row is locked by {holder}" if holder else "Lock not acquired"
    return response


@router.post("/api/rows/{row_id}/unlock")
async def unlock_row(
    row_id: str,
    user: User = Depends(current_user),
    store: RowStore = Depends(get_store),
) -> RowActionResponse:
    try:
        applied = await LockManager(store).release(row_id, user)
    except CollabError as e:
        raise _http_error(e)
    return await _finish(store, row_id, "unlocked", user, applied, log="unlocked row")


@router.post("/api/rows/{row_id}/force-unlock")
async def force_unlock_row(
    row_id: str,
    user: User = Depends(current_user),
    store: RowStore = Depends(get_store),
) -> RowActionResponse:
    try:
        applied = await LockManager(store).force_release(row_id, user)
    except CollabError as e:
        raise _http_error(e)
    return await _finish(store, row_id, "force_unlocked", user, applied, log="force-unlocked row")


@router.post("/api/rows/{row_id}/status")
async def change_status(
    row_id: str,
    body: StatusRequest,
    user: User = Depends(current_user),
    store: RowStore = Depends(get_store),
) -> RowActionResponse:
    try:
        applied = await StatusTracker(store).change_status(row_id, user, body.status)
    except CollabError as e:
        raise _http_error(e)
    return await _finish(store, row_id, "status", user, applied, log=f"changed status to {body.status.value}")


@router.post("/api/rows/{row_id}/fields")
async def update_field(
    row_id: str,
    body: FieldRequest,
    user: User = Depends(current_user),
    store: RowStore = Depends(get_store),
) -> RowActionResponse:
    try:
        applied = await StatusTracker(store).update_field(row_id, user, body.column, body.value)
    except CollabError as e:
        raise _http_error(e)
    return await _finish(store, row_id, "edited", user, applied)


@router.post("/api/rows/{row_id}/note")
async def set_note(
    row_id: str,
    body: NoteRequest,
    user: User = Depends(current_user),
    store: RowStore = Depends(get_store),
) -> RowActionResponse:
    try:
        applied = await StatusTracker(store).set_note(row_id, user, body.note)
    except CollabError as e:
        raise _http_error(e)
    return await _finish(store, row_id, "noted", user, applied)


# Activity and statistics --------------------------------------------------


@router.get("/api/activity")
async def list_activity(limit: int = 50, store: RowStore = Depends(get_store)) -> List[Dict[str, Any]]:
    return [a.model_dump(mode="json") for a in await store.list_activity(limit=limit)]


@router.get("/api/users/{user_id}/stats")
async def user_stats(user_id: str, store: RowStore = Depends(get_store)) -> Dict[str, Any]:
    if await store.get_user(user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    stats = await collect_user_statistics(store, user_id)
    return stats.model_dump(mode="json")


# Realtime -----------------------------------------------------------------


@router.websocket("/ws/datasets/{dataset_id}")
async def dataset_feed(websocket: WebSocket, dataset_id: str, store: RowStore = Depends(get_store)) -> None:
    """Relay change-feed events and peer broadcasts for one dataset.

    Clients may also send ``{"action": ..., "row_id": ...}`` to broadcast
    a peer event to everyone else watching the dataset.
    """
    await websocket.accept()
    channels = {
        "changes": store.subscribe_changes(dataset_id),
        "broadcast": store.on_broadcast(dataset_id),
    }

    async def forward(name: str) -> None:
        async for message in channels[name]:
            await websocket.send_json({"channel": name, "event": message.model_dump(mode="json")})

    tasks = [asyncio.create_task(forward(name)) for name in channels]
    logger.info("Websocket client subscribed", extra={"dataset_id": dataset_id})
    try:
        while True:
            payload = await websocket.receive_json()
            try:
                message = PeerMessage.model_validate(payload)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed websocket message: {e}", extra={"dataset_id": dataset_id})
                continue
            store.broadcast(
                dataset_id,
                PeerEvent(
                    dataset_id=dataset_id,
                    row_id=message.row_id,
                    action=message.action,
                    sender_id=message.sender_id,
                ),
            )
    except WebSocketDisconnect:
        logger.info("Websocket client disconnected", extra={"dataset_id": dataset_id})
    finally:
        for sub in channels.values():
            sub.close()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
