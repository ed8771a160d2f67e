"""Sync action, state and history routes."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from healthsync.api.deps import get_sync_runtime
from healthsync.db.engine import get_session
from healthsync.errors import AuthError, NotConnectedError, NotFoundError, SyncError
from healthsync.models.sync import SyncLog
from healthsync.runtime import SyncRuntime

router = APIRouter()


class SyncRequest(BaseModel):
    user_id: Optional[str] = None  # If None, the configured default user


class ExportRequest(SyncRequest):
    table_name: Optional[str] = None  # If None, every table plus the manifest


class SyncLogResponse(BaseModel):
    action: str
    table_name: Optional[str]
    status: str
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    records_synced: Optional[int]
    error_message: Optional[str]


def _user_id(runtime: SyncRuntime, request: Optional[SyncRequest]) -> str:
    if request is not None and request.user_id:
        return request.user_id
    return runtime.settings.default_user_id


@router.get("/state")
def sync_state(runtime: SyncRuntime = Depends(get_sync_runtime)) -> Dict[str, Any]:
    """Return the current sync state."""
    return runtime.store.state.to_dict()


@router.post("/connect")
async def connect(runtime: SyncRuntime = Depends(get_sync_runtime)):
    """Interactive login on the host running the API."""
    state = await runtime.orchestrator.connect()
    return state.to_dict()


@router.post("/disconnect")
async def disconnect(runtime: SyncRuntime = Depends(get_sync_runtime)):
    state = await runtime.orchestrator.disconnect()
    return state.to_dict()


@router.post("/check")
async def check_connection(runtime: SyncRuntime = Depends(get_sync_runtime)):
    """Silently re-validate the session (never prompts)."""
    state = await runtime.orchestrator.check_connection()
    return state.to_dict()


@router.post("/start")
async def start_sync(
    request: Optional[SyncRequest] = None,
    runtime: SyncRuntime = Depends(get_sync_runtime),
):
    """Import every table from OneDrive and merge it locally."""
    state = await runtime.orchestrator.start_sync(_user_id(runtime, request))
    return state.to_dict()


@router.post("/export")
async def export_data(
    request: Optional[ExportRequest] = None,
    runtime: SyncRuntime = Depends(get_sync_runtime),
):
    """Push one table, or every table plus the manifest."""
    user_id = _user_id(runtime, request)
    if request is not None and request.table_name:
        state = await runtime.orchestrator.export_table(request.table_name, user_id)
    else:
        state = await runtime.orchestrator.export_data(user_id)
    return state.to_dict()


@router.post("/tables/{table_name}")
async def sync_table(
    table_name: str,
    request: Optional[SyncRequest] = None,
    runtime: SyncRuntime = Depends(get_sync_runtime),
):
    """Pull and merge one table, then push it back."""
    state = await runtime.orchestrator.sync_table(table_name, _user_id(runtime, request))
    return state.to_dict()


@router.post("/import/users")
async def import_users(runtime: SyncRuntime = Depends(get_sync_runtime)):
    state = await runtime.orchestrator.import_users()
    return state.to_dict()


@router.delete("/error")
def clear_error(runtime: SyncRuntime = Depends(get_sync_runtime)):
    return runtime.orchestrator.clear_error().to_dict()


@router.get("/history", response_model=List[SyncLogResponse])
def sync_history(limit: int = 20, session: Session = Depends(get_session)):
    """Return recent sync actions, newest first."""
    logs = session.exec(
        select(SyncLog).order_by(SyncLog.started_at.desc()).limit(limit)
    ).all()
    return [
        SyncLogResponse(
            action=log.action,
            table_name=log.table_name,
            status=log.status,
            started_at=log.started_at,
            finished_at=log.finished_at,
            records_synced=log.records_synced,
            error_message=log.error_message,
        )
        for log in logs
    ]


@router.get("/exports")
async def export_history(
    user_id: Optional[str] = None,
    runtime: SyncRuntime = Depends(get_sync_runtime),
):
    """List export manifests stored in OneDrive, newest first."""
    try:
        history = await runtime.tables.get_export_history(
            user_id or runtime.settings.default_user_id
        )
    except AuthError as exc:
        runtime.orchestrator.on_auth_failure(str(exc))
        raise HTTPException(status_code=401, detail=str(exc))
    except SyncError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return [m.model_dump(by_alias=True) for m in history]


def _file_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, NotConnectedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AuthError):
        return HTTPException(status_code=403 if exc.status_code == 403 else 401, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


@router.get("/files")
async def list_files(runtime: SyncRuntime = Depends(get_sync_runtime)):
    """List the OneDrive application folder."""
    try:
        return await runtime.orchestrator.list_files()
    except SyncError as exc:
        raise _file_error(exc)


@router.get("/files/{item_id:path}")
async def file_content(
    item_id: str,
    name: str,
    is_folder: bool = False,
    runtime: SyncRuntime = Depends(get_sync_runtime),
):
    """Show one file: JSON pretty-printed, text as-is, binaries as a size summary."""
    try:
        content = await runtime.orchestrator.load_file_content(item_id, name, is_folder)
    except SyncError as exc:
        raise _file_error(exc)
    return {"id": item_id, "name": name, "content": content}
