"""Shared FastAPI dependencies."""
from fastapi import Request

from healthsync.runtime import SyncRuntime


def get_sync_runtime(request: Request) -> SyncRuntime:
    """Return the SyncRuntime started by the app lifespan."""
    return request.app.state.runtime
