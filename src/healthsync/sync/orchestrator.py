"""
SyncOrchestrator — the actions a caller can take against OneDrive.

Every action follows the same shape:

  1. Sync actions require an authenticated session; otherwise the error
     "Not connected to OneDrive" is set and nothing else happens.
  2. Create a SyncLog row (status="running") and dispatch SyncStarted.
  3. Delegate to TableSyncService.
  4. Dispatch SyncSucceeded / SyncFailed, persist the last sync time
     (primary + backup record) and finish the SyncLog row.

AuthError from any step dispatches AuthLost, which drops the
authenticated flag; the caller has to reconnect. Actions never raise for
expected failures: the outcome is in the returned SyncState. Any other
exception marks the action failed, finishes its SyncLog row and
propagates.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlmodel import Session

from healthsync.auth.credentials import CredentialManager
from healthsync.drive.preview import describe_failure, folder_notice, render_preview, summarize_item
from healthsync.errors import (
    AuthError,
    NotConnectedError,
    NotFoundError,
    ProviderUnavailableError,
    SyncError,
)
from healthsync.models.sync import SyncLog
from healthsync.sync.metadata import SyncMetadataStore
from healthsync.sync.state import (
    NOT_CONNECTED_MESSAGE,
    AuthLost,
    AvailabilityChanged,
    ConnectFailed,
    ConnectStarted,
    Connected,
    ConnectionChecked,
    Disconnected,
    ErrorCleared,
    ErrorRaised,
    SessionRestored,
    SyncFailed,
    SyncStarted,
    SyncState,
    SyncStore,
    SyncSucceeded,
)
from healthsync.sync.tables import ExportResult, TableSyncService

logger = logging.getLogger(__name__)

USERS_TABLE = "users"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Runs sync actions and keeps SyncState, SyncLog and sync metadata current."""

    def __init__(
        self,
        store: SyncStore,
        credentials: CredentialManager,
        tables: TableSyncService,
        metadata: SyncMetadataStore,
        engine,
        *,
        sync_tables: Optional[List[str]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            store: SyncStore holding the current SyncState.
            credentials: CredentialManager for login and silent renewal.
            tables: TableSyncService doing the actual transfers.
            metadata: Durable primary/backup sync records.
            engine: SQLAlchemy engine for SyncLog rows.
            sync_tables: Logical tables covered by sync_all_tables().
            clock: Returns the current aware datetime (patched in tests).
        """
        self.store = store
        self.credentials = credentials
        self.tables = tables
        self.metadata = metadata
        self.engine = engine
        self.sync_tables = list(sync_tables or [USERS_TABLE])
        self._clock = clock

    @property
    def state(self) -> SyncState:
        return self.store.state

    # ─── Connection lifecycle ─────────────────────────────────────────────────

    async def restore(self) -> SyncState:
        """
        Startup path: reload persisted state, then verify it silently.

        An expired primary record is discarded and leaves the engine
        unauthenticated; a missing lastSyncTime is repaired from the backup.
        """
        persisted = self.metadata.load()
        if persisted is None:
            logger.info("No persisted sync state (absent or expired)")
            self.store.dispatch(
                SessionRestored(False, None, self.metadata.load_last_sync_time())
            )
            return self.state

        self.store.dispatch(
            SessionRestored(
                persisted.is_authenticated,
                persisted.user_info,
                persisted.last_sync_time,
            )
        )
        return await self.check_connection()

    async def check_connection(self) -> SyncState:
        """
        Non-interactive check: acquire a token silently and update
        is_authenticated. Never prompts and never touches last_sync_time.

        The first check reuses the acquisition initialization already ran.
        """
        first_check = not self.credentials.is_initialized
        try:
            await self.credentials.initialize()
        except ProviderUnavailableError as exc:
            logger.warning("OneDrive not available: %s", exc)
            self.store.dispatch(AvailabilityChanged(False, str(exc)))
            return self.state
        except (SyncError, OSError) as exc:
            # Initialization problems must not surface as a user-facing error
            logger.warning("OneDrive initialization failed: %s", exc)
            self.store.dispatch(ConnectionChecked(False))
            return self.state

        self.store.dispatch(AvailabilityChanged(True))
        if first_check:
            token = self.credentials.init_token
        else:
            token = await self.credentials.acquire_token_silently()
        if token is None:
            logger.info("No usable OneDrive session, reconnect required")
            self.store.dispatch(ConnectionChecked(False))
        else:
            self.store.dispatch(ConnectionChecked(True, self.credentials.current_user()))
        self._persist_state()
        return self.state

    async def connect(self) -> SyncState:
        """Interactive login, then make sure the app folder exists."""
        self.store.dispatch(ConnectStarted())
        try:
            await self.credentials.initialize()
            await self.credentials.login()
            await self.tables.drive.ensure_app_folder()
        except ProviderUnavailableError as exc:
            self.store.dispatch(AvailabilityChanged(False, str(exc)))
            self.store.dispatch(ConnectFailed(str(exc)))
            return self.state
        except SyncError as exc:
            logger.error("OneDrive connection failed: %s", exc)
            self.store.dispatch(ConnectFailed(str(exc)))
            return self.state

        return self._connected()

    async def begin_login(self, redirect_uri: Optional[str] = None) -> str:
        """
        Start a redirect login and return the URL the browser must visit.

        Raises:
            ProviderUnavailableError: if OneDrive can't be used here.
        """
        self.store.dispatch(ConnectStarted())
        try:
            return await self.credentials.begin_redirect_login(redirect_uri)
        except ProviderUnavailableError as exc:
            self.store.dispatch(AvailabilityChanged(False, str(exc)))
            self.store.dispatch(ConnectFailed(str(exc)))
            raise

    async def complete_login(self, params: Dict[str, str]) -> SyncState:
        """Finish a redirect login from the callback query parameters."""
        try:
            session = await self.credentials.complete_redirect_login(params)
            if session is None:
                self.store.dispatch(ConnectFailed("No login is in progress"))
                return self.state
            await self.tables.drive.ensure_app_folder()
        except SyncError as exc:
            logger.error("OneDrive login redirect failed: %s", exc)
            self.store.dispatch(ConnectFailed(str(exc)))
            return self.state

        return self._connected()

    def _connected(self) -> SyncState:
        user = self.credentials.current_user()
        self.store.dispatch(Connected(user))
        self._persist_state()
        logger.info("OneDrive connection successful")
        return self.state

    async def disconnect(self) -> SyncState:
        """Sign out and forget every persisted record, including the last sync time."""
        error: Optional[str] = None
        try:
            await self.credentials.logout()
        except (SyncError, OSError) as exc:
            logger.error("OneDrive sign-out failed: %s", exc)
            error = f"Disconnect failed: {exc}"

        self.store.dispatch(Disconnected())
        self.metadata.clear()
        if error:
            self.store.dispatch(ErrorRaised(error))
        logger.info("OneDrive disconnected")
        return self.state

    def on_auth_failure(self, message: str) -> None:
        """Callback for components that detect a lost session in the background."""
        self.store.dispatch(AuthLost(message))
        self._persist_state()

    def clear_error(self) -> SyncState:
        return self.store.dispatch(ErrorCleared())

    # ─── Sync actions ─────────────────────────────────────────────────────────

    async def start_sync(self, user_id: str) -> SyncState:
        """Import every table snapshot from OneDrive and merge it locally."""
        if not self._require_connection():
            return self.state

        log = self._create_sync_log("start_sync", user_id)
        self.store.dispatch(SyncStarted())
        try:
            result = await self.tables.import_all_tables(user_id)
        except AuthError as exc:
            return self._auth_lost(log, exc)
        except SyncError as exc:
            return self._fail(log, str(exc))
        except Exception as exc:
            self._abort(log, exc)
            raise

        if result.success:
            logger.info("Sync completed. Imported tables: %s", ", ".join(result.imported_tables))
            return self._succeed(log, records=result.records_changed)

        message = "; ".join(result.errors)
        if result.imported_tables:
            logger.warning(
                "Sync completed with errors. Imported: %s, errors: %s",
                ", ".join(result.imported_tables), message,
            )
            return self._succeed(
                log,
                records=result.records_changed,
                warning=f"Partial import succeeded, errors: {message}",
            )
        return self._fail(log, message)

    async def export_data(self, user_id: str) -> SyncState:
        """Push every local table plus the manifest."""
        if not self._require_connection():
            return self.state

        log = self._create_sync_log("export_data", user_id)
        self.store.dispatch(SyncStarted(exporting=True))
        try:
            result = await self.tables.export_all_tables(user_id)
        except AuthError as exc:
            return self._auth_lost(log, exc)
        except Exception as exc:
            self._abort(log, exc)
            raise
        return self._finish_export(log, result)

    async def export_table(self, table_name: str, user_id: str) -> SyncState:
        """Push one local table."""
        if not self._require_connection():
            return self.state

        log = self._create_sync_log("export_table", user_id, table_name)
        self.store.dispatch(SyncStarted(exporting=True))
        try:
            result = await self.tables.export_table(table_name, user_id)
        except AuthError as exc:
            return self._auth_lost(log, exc)
        except Exception as exc:
            self._abort(log, exc)
            raise
        return self._finish_export(log, result)

    async def import_users(self) -> SyncState:
        """Pull the users table and merge it locally."""
        if not self._require_connection():
            return self.state

        log = self._create_sync_log("import_users", table_name=USERS_TABLE)
        self.store.dispatch(SyncStarted())
        try:
            merged = await self.tables.pull_table(USERS_TABLE)
        except AuthError as exc:
            return self._auth_lost(log, exc)
        except SyncError as exc:
            return self._fail(log, str(exc))
        except Exception as exc:
            self._abort(log, exc)
            raise
        return self._succeed(log, records=merged.changed)

    async def sync_table(self, table_name: str, user_id: str) -> SyncState:
        """Pull and merge one table, then push the merged result back."""
        if not self._require_connection():
            return self.state

        log = self._create_sync_log("sync_table", user_id, table_name)
        self.store.dispatch(SyncStarted())
        try:
            changed, export = await self._sync_one(table_name, user_id)
        except AuthError as exc:
            return self._auth_lost(log, exc)
        except SyncError as exc:
            return self._fail(log, str(exc))
        except Exception as exc:
            self._abort(log, exc)
            raise

        if export.success:
            return self._succeed(log, records=changed, export_result=export.to_dict())
        return self._fail(log, "; ".join(export.errors), export.to_dict())

    async def sync_all_tables(self, user_id: str) -> SyncState:
        """Run the per-table sync for every logical table concurrently."""
        if not self._require_connection():
            return self.state

        log = self._create_sync_log("sync_all_tables", user_id)
        self.store.dispatch(SyncStarted())
        outcomes = await asyncio.gather(
            *(self._sync_one(name, user_id) for name in self.sync_tables),
            return_exceptions=True,
        )

        synced: List[str] = []
        errors: List[str] = []
        changed = 0
        auth_error: Optional[AuthError] = None
        for name, outcome in zip(self.sync_tables, outcomes):
            if isinstance(outcome, AuthError):
                auth_error = outcome
            elif isinstance(outcome, SyncError):
                errors.append(f"{name}: {outcome}")
            elif isinstance(outcome, BaseException):
                self._abort(log, outcome)
                raise outcome
            else:
                count, export = outcome
                changed += count
                if export.success:
                    synced.append(name)
                else:
                    errors.extend(export.errors)

        if auth_error is not None:
            return self._auth_lost(log, auth_error)
        if not errors:
            return self._succeed(log, records=changed)
        message = "; ".join(errors)
        if synced:
            return self._succeed(
                log, records=changed, warning=f"Partial sync succeeded, errors: {message}"
            )
        return self._fail(log, message)

    async def _sync_one(self, table_name: str, user_id: str) -> Tuple[int, ExportResult]:
        merged = await self.tables.pull_table(table_name)
        export = await self.tables.export_table(table_name, user_id)
        return merged.changed, export

    # ─── File browsing ────────────────────────────────────────────────────────

    async def list_files(self) -> List[Dict[str, Any]]:
        """
        List the application folder's files and subfolders.

        A folder that doesn't exist yet lists as empty.

        Raises:
            NotConnectedError: if no session is authenticated.
            SyncError: if the listing failed; the message is also set on the state.
        """
        if not self._require_connection():
            raise NotConnectedError(NOT_CONNECTED_MESSAGE)

        drive = self.tables.drive
        try:
            items = await drive.list_children(drive.app_folder)
        except NotFoundError:
            return []
        except AuthError as exc:
            self.on_auth_failure(str(exc))
            raise
        except SyncError as exc:
            logger.error("Failed to list files: %s", exc)
            self.store.dispatch(ErrorRaised(str(exc)))
            raise
        logger.info("Loaded %d files", len(items))
        return [summarize_item(item) for item in items]

    async def load_file_content(self, item_id: str, name: str, is_folder: bool = False) -> str:
        """
        Download one item and render it for display.

        Raises:
            NotConnectedError: if no session is authenticated.
            SyncError: if the download failed; a short message is set on the state.
        """
        if not self._require_connection():
            raise NotConnectedError(NOT_CONNECTED_MESSAGE)
        if is_folder:
            return folder_notice(name)

        try:
            body, content_type = await self.tables.drive.download_item(item_id)
        except SyncError as exc:
            message = describe_failure(exc)
            logger.error("Failed to load content of %s: %s", name, exc)
            if isinstance(exc, AuthError):
                self.on_auth_failure(message)
            else:
                self.store.dispatch(ErrorRaised(message))
            raise
        logger.info("Loaded content for %s (%d bytes)", name, len(body))
        return render_preview(name, content_type, body)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _require_connection(self) -> bool:
        if self.state.is_authenticated:
            return True
        self.store.dispatch(ErrorRaised(NOT_CONNECTED_MESSAGE))
        return False

    def _finish_export(self, log: SyncLog, result: ExportResult) -> SyncState:
        if result.success:
            return self._succeed(
                log, records=len(result.exported_files), export_result=result.to_dict()
            )
        return self._fail(log, ", ".join(result.errors), result.to_dict())

    def _succeed(
        self,
        log: SyncLog,
        *,
        records: int = 0,
        export_result: Optional[Dict[str, Any]] = None,
        warning: Optional[str] = None,
    ) -> SyncState:
        finished_at = self._clock()
        self.store.dispatch(SyncSucceeded(finished_at, export_result, warning))
        self._persist_state()
        self._finish_sync_log(
            log,
            status="partial" if warning else "success",
            records_synced=records,
            error_message=warning,
        )
        return self.state

    def _fail(
        self, log: SyncLog, message: str, export_result: Optional[Dict[str, Any]] = None
    ) -> SyncState:
        logger.error("%s failed: %s", log.action, message)
        self.store.dispatch(SyncFailed(message, export_result))
        self._finish_sync_log(log, status="error", error_message=message)
        return self.state

    def _abort(self, log: SyncLog, exc: BaseException) -> None:
        """Settle state and the log row for an exception outside SyncError."""
        logger.error("%s failed unexpectedly: %s", log.action, exc, exc_info=exc)
        self.store.dispatch(SyncFailed(f"Unexpected error: {exc}"))
        self._finish_sync_log(log, status="error", error_message=str(exc))

    def _auth_lost(self, log: SyncLog, exc: AuthError) -> SyncState:
        logger.warning("%s lost the OneDrive session: %s", log.action, exc)
        self.on_auth_failure(str(exc))
        self._finish_sync_log(log, status="error", error_message=str(exc))
        return self.state

    def _persist_state(self) -> None:
        state = self.state
        self.metadata.save(
            state.is_authenticated,
            state.user_info,
            state.last_sync_time,
            now=self._clock(),
        )

    def _create_sync_log(
        self,
        action: str,
        user_id: Optional[str] = None,
        table_name: Optional[str] = None,
    ) -> SyncLog:
        log = SyncLog(
            action=action,
            user_id=user_id,
            table_name=table_name,
            started_at=_utcnow(),
            status="running",
        )
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(
        self,
        log: SyncLog,
        *,
        status: str,
        records_synced: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log.id)
            db_log.status = status
            db_log.finished_at = _utcnow()
            db_log.records_synced = records_synced
            db_log.error_message = error_message
            s.add(db_log)
            s.commit()
