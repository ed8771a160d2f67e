"""Attachment download URL routes."""
from fastapi import APIRouter, Depends, HTTPException

from healthsync.api.deps import get_sync_runtime
from healthsync.errors import AttachmentNotFoundError, AuthError, SyncError
from healthsync.runtime import SyncRuntime

router = APIRouter()


@router.get("/{file_name}/url")
async def attachment_url(file_name: str, runtime: SyncRuntime = Depends(get_sync_runtime)):
    """Resolve a short-lived download URL for an attachment."""
    try:
        url = await runtime.broker.resolve_attachment_url(file_name)
    except AttachmentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc))
    except SyncError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"file_name": file_name, "url": url}
