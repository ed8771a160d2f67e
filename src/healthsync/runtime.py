"""
SyncRuntime — wires every component together and owns their lifecycle.

    settings ─► KeyValueStore ─► SessionStore ─► CredentialManager ─┐
                             └─► SyncMetadataStore                  │ get_access_token
    engine ──► LocalStore                                            ▼
                   └──────────► TableSyncService ◄──────────── DriveClient
                                        │                            │
                                SyncOrchestrator           ResourceAccessBroker
                                        │
                                    SyncStore

The scheduler is created here (the credential manager needs it for its
renewal job) and configured by scheduler.jobs.build_scheduler() on start().
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from healthsync.auth.credentials import CredentialManager, SessionStore
from healthsync.auth.provider import MsalCredentialProvider
from healthsync.config import Settings, get_settings
from healthsync.drive.attachments import ResourceAccessBroker
from healthsync.drive.client import DriveClient
from healthsync.store.kv import KeyValueStore
from healthsync.store.local import LocalStore
from healthsync.sync.metadata import SyncMetadataStore
from healthsync.sync.orchestrator import SyncOrchestrator
from healthsync.sync.retry import RetryPolicy
from healthsync.sync.state import SyncStore
from healthsync.sync.tables import TableSyncService

logger = logging.getLogger(__name__)


@dataclass
class SyncRuntime:
    settings: Settings
    engine: object
    scheduler: AsyncIOScheduler
    credentials: CredentialManager
    drive: DriveClient
    broker: ResourceAccessBroker
    local_store: LocalStore
    tables: TableSyncService
    store: SyncStore
    orchestrator: SyncOrchestrator
    started: bool = False

    async def start(self, *, restore: bool = True) -> None:
        """Register and start background jobs, then restore the prior session."""
        if self.started:
            return
        from healthsync.scheduler.jobs import build_scheduler

        build_scheduler(self)
        self.scheduler.start()
        self.started = True
        logger.info("Sync runtime started")
        if restore:
            await self.orchestrator.restore()

    async def stop(self) -> None:
        if not self.started:
            return
        self.broker.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.started = False
        logger.info("Sync runtime stopped")


def build_runtime(
    settings: Optional[Settings] = None,
    engine=None,
    *,
    provider=None,
    scheduler: Optional[AsyncIOScheduler] = None,
) -> SyncRuntime:
    """
    Build a fully wired runtime (nothing is started).

    Args:
        settings: Settings instance (defaults to get_settings()).
        engine: SQLAlchemy engine (defaults to db.engine.get_engine()).
        provider: Credential provider override (tests inject a fake).
        scheduler: Scheduler override.
    """
    settings = settings or get_settings()
    if engine is None:
        from healthsync.db.engine import get_engine
        engine = get_engine()
    scheduler = scheduler or AsyncIOScheduler()
    kv = KeyValueStore(settings.state_dir)

    orchestrator: Optional[SyncOrchestrator] = None

    def on_auth_failure(message: str) -> None:
        if orchestrator is not None:
            orchestrator.on_auth_failure(message)

    provider = provider or MsalCredentialProvider(
        settings.microsoft_client_id,
        settings.microsoft_authority,
        settings.microsoft_scopes,
        settings.state_dir,
        login_mode=settings.login_mode,
        interactive_timeout=settings.interactive_login_timeout_seconds,
        redirect_uri=settings.redirect_uri,
    )
    ttl = timedelta(hours=settings.session_ttl_hours)
    credentials = CredentialManager(
        provider,
        SessionStore(kv, ttl=ttl),
        scheduler=scheduler,
        retry_policy=RetryPolicy(
            max_attempts=settings.token_max_retries,
            base_delay=settings.token_retry_delay_seconds,
        ),
        ttl=ttl,
        renewal_margin=timedelta(minutes=settings.token_renewal_margin_minutes),
        on_session_lost=on_auth_failure,
    )
    drive = DriveClient(
        credentials.get_access_token,
        app_folder=settings.app_folder,
        base_url=settings.graph_base_url,
        timeout=settings.http_timeout_seconds,
    )
    broker = ResourceAccessBroker(
        drive,
        on_auth_failure,
        ttl_seconds=settings.url_cache_ttl_seconds,
        sweep_seconds=settings.url_cache_sweep_seconds,
        max_concurrent=settings.max_concurrent_resolutions,
    )
    local_store = LocalStore(
        engine, db_name=settings.local_db_name, collections=settings.sync_tables
    )
    tables = TableSyncService(local_store, drive, app_version=settings.app_version)
    store = SyncStore()
    orchestrator = SyncOrchestrator(
        store,
        credentials,
        tables,
        SyncMetadataStore(kv, ttl=ttl),
        engine,
        sync_tables=settings.sync_tables,
    )

    return SyncRuntime(
        settings=settings,
        engine=engine,
        scheduler=scheduler,
        credentials=credentials,
        drive=drive,
        broker=broker,
        local_store=local_store,
        tables=tables,
        store=store,
        orchestrator=orchestrator,
    )


_runtime: Optional[SyncRuntime] = None


def get_runtime() -> SyncRuntime:
    """Return the process-wide runtime, building it on first call."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime
