"""Redirect (auth-code) login routes."""
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse

from healthsync.api.deps import get_sync_runtime
from healthsync.errors import ProviderUnavailableError, SyncError
from healthsync.runtime import SyncRuntime

router = APIRouter()


@router.get("/login")
async def login(runtime: SyncRuntime = Depends(get_sync_runtime)):
    """Send the browser to the Microsoft sign-in page."""
    try:
        url = await runtime.orchestrator.begin_login(runtime.settings.redirect_uri)
    except ProviderUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except SyncError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return RedirectResponse(url, status_code=302)


@router.get("/callback")
async def callback(request: Request, runtime: SyncRuntime = Depends(get_sync_runtime)):
    """Redirect target: completes the login from the query parameters."""
    state = await runtime.orchestrator.complete_login(dict(request.query_params))
    if not state.is_authenticated:
        raise HTTPException(status_code=400, detail=state.error or "Login failed")
    return state.to_dict()
