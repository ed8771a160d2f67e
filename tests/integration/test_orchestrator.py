"""
Integration tests for SyncOrchestrator.

Real CredentialManager, TableSyncService, LocalStore and SyncLog table;
the identity provider and OneDrive are in-memory doubles.
"""
import json
from datetime import datetime, timezone

import pytest
from sqlmodel import Session, select

from healthsync.auth.credentials import CredentialManager, SessionStore
from healthsync.errors import (
    AuthError,
    ConnectivityError,
    NotConnectedError,
    NotFoundError,
    ProviderUnavailableError,
)
from healthsync.models.sync import SyncLog
from healthsync.store.kv import KeyValueStore
from healthsync.sync.metadata import BACKUP_KEY, PRIMARY_KEY, SyncMetadataStore
from healthsync.sync.orchestrator import SyncOrchestrator
from healthsync.sync.state import NOT_CONNECTED_MESSAGE, SyncStatus, SyncStore
from healthsync.sync.tables import TableSyncService

ACCOUNT = {"home_account_id": "acct-1", "username": "runner@example.com"}
SYNC_TABLES = ["users", "myRecords", "stoolRecords", "mealRecords", "periodRecords"]

T0 = datetime(2025, 1, 10, 8, 0, tzinfo=timezone.utc)


def _snapshot(table: str, data) -> str:
    return json.dumps({"dbName": "HealthCalendarDB", "tableName": table, "data": data})


class Epoch:
    def __init__(self, now: float = 1_736_925_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _build(kv, fake_provider, fake_drive, local_store, engine, clock, store=None):
    credentials = CredentialManager(fake_provider, SessionStore(kv, clock=clock), clock=clock)
    tables = TableSyncService(local_store, fake_drive, clock=clock)
    return SyncOrchestrator(
        store or SyncStore(),
        credentials,
        tables,
        SyncMetadataStore(kv),
        engine,
        sync_tables=SYNC_TABLES,
        clock=clock,
    )


@pytest.fixture
def orchestrator(kv, fake_provider, fake_drive, local_store, engine, clock):
    return _build(kv, fake_provider, fake_drive, local_store, engine, clock)


@pytest.fixture
async def connected(orchestrator):
    await orchestrator.connect()
    assert orchestrator.state.is_authenticated
    return orchestrator


def _logs(engine):
    with Session(engine) as s:
        return s.exec(select(SyncLog).order_by(SyncLog.id)).all()


# ─── Connection lifecycle ─────────────────────────────────────────────────────

class TestConnect:
    async def test_connect_sets_user_and_creates_folder(self, orchestrator, fake_drive, kv):
        state = await orchestrator.connect()

        assert state.is_authenticated
        assert not state.is_connecting
        assert state.user_info == {"accountId": "acct-1", "username": "runner@example.com"}
        assert fake_drive.app_folder in fake_drive.folders
        assert kv.get(PRIMARY_KEY)["isAuthenticated"] is True

    async def test_connect_failure_sets_error(self, orchestrator, fake_provider):
        fake_provider.login_error = AuthError("user cancelled")
        state = await orchestrator.connect()
        assert not state.is_authenticated
        assert not state.is_connecting
        assert state.error == "user cancelled"

    async def test_connect_when_unavailable(self, orchestrator, fake_provider):
        fake_provider.initialize_error = ProviderUnavailableError("No client id configured")
        state = await orchestrator.connect()
        assert not state.is_available
        assert state.unavailability_reason == "No client id configured"

    async def test_disconnect_forgets_last_sync_time(self, connected, kv):
        await connected.export_data("user-1")
        assert connected.state.last_sync_time is not None

        state = await connected.disconnect()

        assert not state.is_authenticated
        assert state.user_info is None
        assert state.last_sync_time is None
        assert kv.get(PRIMARY_KEY) is None
        assert kv.get(BACKUP_KEY) is None

    async def test_disconnect_after_cold_start_signs_out(self, orchestrator, fake_provider):
        fake_provider.accounts = [dict(ACCOUNT)]
        await orchestrator.restore()  # nothing persisted, provider untouched

        await orchestrator.disconnect()
        state = await orchestrator.check_connection()

        assert fake_provider.accounts == []
        assert not state.is_authenticated

    async def test_disconnect_reports_sign_out_failure(self, connected, fake_provider):
        fake_provider.logout_error = OSError("network down")
        state = await connected.disconnect()
        assert not state.is_authenticated
        assert state.error.startswith("Disconnect failed")

    async def test_redirect_login(self, orchestrator):
        url = await orchestrator.begin_login("http://localhost/auth/callback")
        assert url.startswith("https://login.example/")
        assert orchestrator.state.is_connecting

        state = await orchestrator.complete_login({"code": "abc", "state": "abc"})
        assert state.is_authenticated

    async def test_redirect_login_without_pending_flow(self, orchestrator):
        state = await orchestrator.complete_login({"code": "abc"})
        assert not state.is_authenticated
        assert state.error == "No login is in progress"

    async def test_redirect_login_error(self, orchestrator):
        await orchestrator.begin_login()
        state = await orchestrator.complete_login({"error": "access_denied"})
        assert not state.is_authenticated
        assert state.error == "access_denied"


class TestCheckConnection:
    async def test_silent_success(self, orchestrator, fake_provider):
        fake_provider.accounts = [dict(ACCOUNT)]
        state = await orchestrator.check_connection()
        assert state.is_authenticated
        assert state.user_info["username"] == "runner@example.com"

    async def test_first_check_runs_one_retry_series(self, orchestrator, fake_provider):
        fake_provider.accounts = [dict(ACCOUNT)]
        fake_provider.silent_failures = 10

        state = await orchestrator.check_connection()

        assert not state.is_authenticated
        assert len(fake_provider.silent_calls) == 3

    async def test_later_checks_acquire_again(self, orchestrator, fake_provider):
        fake_provider.accounts = [dict(ACCOUNT)]
        await orchestrator.check_connection()
        await orchestrator.check_connection()
        assert len(fake_provider.silent_calls) == 2

    async def test_no_account(self, orchestrator):
        state = await orchestrator.check_connection()
        assert not state.is_authenticated
        assert state.error is None

    async def test_idempotent_and_keeps_last_sync_time(self, connected):
        await connected.export_data("user-1")
        last_sync = connected.state.last_sync_time

        first = await connected.check_connection()
        second = await connected.check_connection()

        assert first == second
        assert second.last_sync_time == last_sync

    async def test_unavailable_provider(self, orchestrator, fake_provider):
        fake_provider.initialize_error = ProviderUnavailableError("No client id configured")
        state = await orchestrator.check_connection()
        assert not state.is_available
        assert not state.is_authenticated

    async def test_initialization_failure_is_not_an_error(self, orchestrator, fake_provider):
        fake_provider.initialize_error = ConnectivityError("offline")
        state = await orchestrator.check_connection()
        assert not state.is_authenticated
        assert state.is_available
        assert state.error is None


class TestRestore:
    async def test_restores_persisted_session(self, orchestrator, fake_provider, kv):
        SyncMetadataStore(kv).save(True, {"accountId": "acct-1", "username": "x"}, T0)
        fake_provider.accounts = [dict(ACCOUNT)]

        state = await orchestrator.restore()

        assert state.is_authenticated
        assert state.last_sync_time == T0

    async def test_repairs_missing_last_sync_time(self, orchestrator, fake_provider, kv):
        metadata = SyncMetadataStore(kv)
        metadata.save_last_sync_time(T0)
        metadata.save(True, None, None)
        fake_provider.accounts = [dict(ACCOUNT)]

        state = await orchestrator.restore()

        assert state.last_sync_time == T0

    async def test_expired_record_leaves_engine_disconnected(
        self, tmp_path, fake_provider, fake_drive, local_store, engine, clock
    ):
        epoch = Epoch()
        kv = KeyValueStore(tmp_path / "aged", clock=epoch)
        SyncMetadataStore(kv).save(True, {"accountId": "acct-1"}, T0)
        epoch.now += 25 * 3600
        fake_provider.accounts = [dict(ACCOUNT)]
        orchestrator = _build(kv, fake_provider, fake_drive, local_store, engine, clock)

        state = await orchestrator.restore()

        assert not state.is_authenticated
        assert state.last_sync_time == T0  # from the backup record
        assert fake_provider.silent_calls == []

    async def test_persisted_but_unusable_session(self, orchestrator, kv):
        SyncMetadataStore(kv).save(True, {"accountId": "acct-1"}, T0)
        state = await orchestrator.restore()
        assert not state.is_authenticated
        assert state.last_sync_time == T0


# ─── Sync actions ─────────────────────────────────────────────────────────────

class TestRequiresConnection:
    @pytest.mark.parametrize(
        "call",
        [
            lambda o: o.start_sync("user-1"),
            lambda o: o.export_data("user-1"),
            lambda o: o.export_table("users", "user-1"),
            lambda o: o.import_users(),
            lambda o: o.sync_table("users", "user-1"),
            lambda o: o.sync_all_tables("user-1"),
        ],
    )
    async def test_not_connected(self, orchestrator, fake_drive, engine, call):
        state = await call(orchestrator)
        assert state.error == NOT_CONNECTED_MESSAGE
        assert state.sync_status == SyncStatus.IDLE
        assert fake_drive.writes == []
        assert _logs(engine) == []


class TestStartSync:
    async def test_success(self, connected, fake_drive, local_store, engine, clock):
        fake_drive.put_json("users.json", _snapshot("users", [{"id": "u1"}]))

        state = await connected.start_sync("user-1")

        assert state.sync_status == SyncStatus.SUCCESS
        assert state.error is None
        assert state.last_sync_time == clock()
        assert local_store.get("users", "u1") == {"id": "u1"}
        log = _logs(engine)[-1]
        assert log.action == "start_sync"
        assert log.status == "success"
        assert log.records_synced == 1

    async def test_partial_success_keeps_warning(self, connected, fake_drive, engine):
        fake_drive.put_json("users.json", _snapshot("users", [{"id": "u1"}]))
        fake_drive.put_json("mealRecords.json", "{broken")

        state = await connected.start_sync("user-1")

        assert state.sync_status == SyncStatus.SUCCESS
        assert state.error.startswith("Partial import succeeded, errors:")
        assert "mealRecords.json" in state.error
        assert _logs(engine)[-1].status == "partial"

    async def test_no_files_is_an_error(self, connected, engine):
        state = await connected.start_sync("user-1")
        assert state.sync_status == SyncStatus.ERROR
        assert state.error == "No data files found in OneDrive"
        assert state.last_sync_time is None
        assert _logs(engine)[-1].status == "error"

    async def test_auth_failure_drops_session(self, connected, fake_drive, kv):
        fake_drive.fail_all = AuthError("401 Unauthorized")

        state = await connected.start_sync("user-1")

        assert not state.is_authenticated
        assert state.sync_status == SyncStatus.ERROR
        assert kv.get(PRIMARY_KEY)["isAuthenticated"] is False

    async def test_error_is_recoverable(self, connected, fake_drive):
        await connected.start_sync("user-1")
        assert connected.state.sync_status == SyncStatus.ERROR

        fake_drive.put_json("users.json", _snapshot("users", []))
        state = await connected.start_sync("user-1")
        assert state.sync_status == SyncStatus.SUCCESS


class TestExport:
    async def test_export_data(self, connected, fake_drive, kv, clock):
        state = await connected.export_data("user-1")

        assert state.sync_status == SyncStatus.SUCCESS
        assert not state.is_exporting
        assert state.export_result["success"] is True
        assert "Apps/HealthCalendar/export_metadata.json" in fake_drive.files
        assert kv.get(BACKUP_KEY) == clock().isoformat()

    async def test_export_failure(self, connected, fake_drive):
        fake_drive.failures["Apps/HealthCalendar/users.json"] = ConnectivityError("reset")
        state = await connected.export_data("user-1")
        assert state.sync_status == SyncStatus.ERROR
        assert state.export_result["success"] is False
        assert state.last_sync_time is None

    async def test_export_table(self, connected, fake_drive, engine):
        state = await connected.export_table("periodRecords", "user-1")
        assert state.sync_status == SyncStatus.SUCCESS
        assert "Apps/HealthCalendar/periodRecords.json" in fake_drive.files
        log = _logs(engine)[-1]
        assert (log.action, log.table_name, log.user_id) == ("export_table", "periodRecords", "user-1")


class TestImportUsers:
    async def test_merges_users(self, connected, fake_drive, local_store):
        local_store.add("users", {"id": "u1", "v": 1, "updatedAt": "2025-01-01T00:00:00Z"})
        fake_drive.put_json(
            "users.json",
            _snapshot("users", [{"id": "u1", "v": 2, "updatedAt": "2025-01-02T00:00:00Z"}]),
        )
        state = await connected.import_users()
        assert state.sync_status == SyncStatus.SUCCESS
        assert local_store.get("users", "u1")["v"] == 2

    async def test_absent_users_file_is_fine(self, connected):
        state = await connected.import_users()
        assert state.sync_status == SyncStatus.SUCCESS

    async def test_malformed_users_file(self, connected, fake_drive):
        fake_drive.put_json("users.json", "{broken")
        state = await connected.import_users()
        assert state.sync_status == SyncStatus.ERROR


class TestSyncTables:
    async def test_sync_table_pulls_then_pushes(self, connected, fake_drive, local_store):
        local_store.add("stoolRecords", {"id": "local", "updatedAt": "2025-01-01T00:00:00Z"})
        fake_drive.put_json(
            "stoolRecords.json",
            _snapshot("stoolRecords", [{"id": "remote", "updatedAt": "2025-01-02T00:00:00Z"}]),
        )

        state = await connected.sync_table("stoolRecords", "user-1")

        assert state.sync_status == SyncStatus.SUCCESS
        body = json.loads(fake_drive.files["Apps/HealthCalendar/stoolRecords.json"])
        assert sorted(r["id"] for r in body["data"]) == ["local", "remote"]

    async def test_sync_all_tables(self, connected, fake_drive, engine):
        state = await connected.sync_all_tables("user-1")

        assert state.sync_status == SyncStatus.SUCCESS
        assert state.error is None
        for name in SYNC_TABLES:
            assert f"Apps/HealthCalendar/{name}.json" in fake_drive.files
        assert _logs(engine)[-1].action == "sync_all_tables"

    async def test_sync_all_tables_partial(self, connected, fake_drive, engine):
        fake_drive.put_json("mealRecords.json", "{broken")

        state = await connected.sync_all_tables("user-1")

        assert state.sync_status == SyncStatus.SUCCESS
        assert state.error.startswith("Partial sync succeeded, errors:")
        assert "mealRecords" in state.error
        assert _logs(engine)[-1].status == "partial"

    async def test_sync_all_tables_auth_failure(self, connected, fake_drive):
        fake_drive.fail_all = AuthError("401")
        state = await connected.sync_all_tables("user-1")
        assert not state.is_authenticated
        assert state.sync_status == SyncStatus.ERROR


class TestUnexpectedFailures:
    async def test_out_of_range_timestamp_does_not_abort_import(
        self, connected, fake_drive, local_store
    ):
        local_store.add("users", {"id": "u1", "v": 1, "updatedAt": "2025-01-01T00:00:00Z"})
        fake_drive.put_json("users.json", _snapshot("users", [{"id": "u1", "v": 2, "updatedAt": 1e20}]))
        fake_drive.put_json("mealRecords.json", _snapshot("mealRecords", [{"id": "m1"}]))

        state = await connected.start_sync("user-1")

        assert state.sync_status == SyncStatus.SUCCESS
        assert local_store.get("users", "u1")["v"] == 1
        assert local_store.get("mealRecords", "m1") == {"id": "m1"}

    @pytest.mark.parametrize(
        "target, call",
        [
            ("import_all_tables", lambda o: o.start_sync("user-1")),
            ("export_all_tables", lambda o: o.export_data("user-1")),
            ("export_table", lambda o: o.export_table("users", "user-1")),
            ("pull_table", lambda o: o.import_users()),
            ("pull_table", lambda o: o.sync_table("users", "user-1")),
            ("pull_table", lambda o: o.sync_all_tables("user-1")),
        ],
    )
    async def test_state_and_log_are_settled(self, connected, engine, monkeypatch, target, call):
        async def boom(*args, **kwargs):
            raise OverflowError("date value out of range")

        monkeypatch.setattr(connected.tables, target, boom)

        with pytest.raises(OverflowError):
            await call(connected)

        assert connected.state.sync_status == SyncStatus.ERROR
        assert not connected.state.is_exporting
        assert "date value out of range" in connected.state.error
        log = _logs(engine)[-1]
        assert log.status == "error"
        assert log.finished_at is not None


class TestFileBrowsing:
    async def test_list_files(self, connected, fake_drive):
        fake_drive.put_json("users.json", _snapshot("users", []))
        fake_drive.folders.add("Apps/HealthCalendar/attachments")

        files = await connected.list_files()

        assert [(f["name"], f["isFolder"]) for f in files] == [
            ("users.json", False),
            ("attachments", True),
        ]

    async def test_list_files_before_folder_exists(self, connected, fake_drive):
        fake_drive.failures["Apps/HealthCalendar"] = NotFoundError("missing")
        assert await connected.list_files() == []

    async def test_list_files_requires_connection(self, orchestrator):
        with pytest.raises(NotConnectedError):
            await orchestrator.list_files()
        assert orchestrator.state.error == NOT_CONNECTED_MESSAGE

    async def test_list_files_auth_failure(self, connected, fake_drive):
        fake_drive.fail_all = AuthError("401", status_code=401)
        with pytest.raises(AuthError):
            await connected.list_files()
        assert not connected.state.is_authenticated

    async def test_json_is_pretty_printed(self, connected, fake_drive):
        fake_drive.put_json("users.json", '{"tableName":"users","data":[]}')
        content = await connected.load_file_content("Apps/HealthCalendar/users.json", "users.json")
        assert content == '{\n  "tableName": "users",\n  "data": []\n}'

    async def test_folder_has_notice(self, connected, fake_drive):
        content = await connected.load_file_content("x", "attachments", is_folder=True)
        assert content.startswith("Cannot show folder contents: attachments")

    async def test_missing_file(self, connected):
        with pytest.raises(NotFoundError):
            await connected.load_file_content("Apps/HealthCalendar/gone.json", "gone.json")
        assert connected.state.error == "File not found"
        assert connected.state.is_authenticated

    async def test_forbidden_file_drops_session(self, connected, fake_drive):
        path = "Apps/HealthCalendar/users.json"
        fake_drive.put_json("users.json", "{}")
        fake_drive.failures[path] = AuthError("403", status_code=403)
        with pytest.raises(AuthError):
            await connected.load_file_content(path, "users.json")
        assert connected.state.error == "No permission to access this file"
        assert not connected.state.is_authenticated


class TestBackgroundAuthFailure:
    async def test_on_auth_failure(self, connected, kv):
        connected.on_auth_failure("OneDrive session expired. Please reconnect.")
        assert not connected.state.is_authenticated
        assert kv.get(PRIMARY_KEY)["isAuthenticated"] is False

    async def test_clear_error(self, orchestrator):
        await orchestrator.start_sync("user-1")
        assert orchestrator.clear_error().error is None
