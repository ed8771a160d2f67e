"""FastAPI application factory."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from healthsync.api.routes import attachments, auth, sync as sync_routes
from healthsync.runtime import SyncRuntime, get_runtime


def create_app(runtime: Optional[SyncRuntime] = None) -> FastAPI:
    """
    Build and return the FastAPI app.

    Args:
        runtime: Pre-built SyncRuntime (tests); defaults to get_runtime()
                 on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.runtime = runtime or get_runtime()
        # Starts the scheduler and restores the persisted session
        await app.state.runtime.start()
        yield
        await app.state.runtime.stop()

    app = FastAPI(
        title="HealthSync API",
        description="Offline-first OneDrive sync for health records",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(auth.router, prefix="/auth", tags=["auth"])
    app.include_router(attachments.router, prefix="/attachments", tags=["attachments"])

    return app


# Module-level app instance for uvicorn
app = create_app()
