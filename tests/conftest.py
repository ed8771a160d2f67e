"""Shared test fixtures."""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List, Optional, Union

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from healthsync.models.collection import Collection, CollectionRecord  # noqa: F401
from healthsync.models.sync import SyncLog  # noqa: F401
from healthsync.auth.provider import TokenResult
from healthsync.drive.client import DOWNLOAD_URL_KEY
from healthsync.errors import AuthError, NotFoundError
from healthsync.store.kv import KeyValueStore
from healthsync.store.local import LocalStore

APP_FOLDER = "Apps/HealthCalendar"
SYNC_TABLES = ["users", "myRecords", "stoolRecords", "mealRecords", "periodRecords"]


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture
def local_store(engine) -> LocalStore:
    return LocalStore(engine, collections=SYNC_TABLES)


@pytest.fixture
def kv(tmp_path) -> KeyValueStore:
    return KeyValueStore(tmp_path / "state")


# ─── Clock ────────────────────────────────────────────────────────────────────

class FakeClock:
    """Callable returning a controllable aware datetime."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 15, 7, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)

    def epoch(self) -> float:
        return self.now.timestamp()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ─── In-memory drive ──────────────────────────────────────────────────────────

class FakeDrive:
    """
    In-memory stand-in for DriveClient.

    Files are stored by full path. Failures are injected per path via
    `failures` (path -> exception) or globally via `fail_all`.
    """

    def __init__(self, app_folder: str = APP_FOLDER):
        self.app_folder = app_folder
        self.files: Dict[str, Union[str, bytes]] = {}
        self.content_types: Dict[str, str] = {}
        self.folders = set()
        self.failures: Dict[str, Exception] = {}
        self.fail_all: Optional[Exception] = None
        self.metadata_calls: List[str] = []
        self.metadata_gate: Optional[asyncio.Event] = None
        self.writes: List[str] = []
        self._url_counter = 0

    def app_path(self, *parts: str) -> str:
        return "/".join([self.app_folder, *[p.strip("/") for p in parts if p]])

    def put_json(self, name: str, text: str) -> None:
        self.files[self.app_path(name)] = text

    def _check(self, path: str) -> None:
        if self.fail_all is not None:
            raise self.fail_all
        if path in self.failures:
            raise self.failures[path]

    async def check_connectivity(self) -> Dict[str, Any]:
        self._check("/me/drive")
        return {"id": "drive-1"}

    async def folder_exists(self, path: str) -> bool:
        self._check(path)
        return path in self.folders

    async def create_folder(self, parent: str, name: str) -> Dict[str, Any]:
        path = f"{parent}/{name}" if parent else name
        self._check(path)
        self.folders.add(path)
        return {"name": name, "folder": {}}

    async def ensure_app_folder(self) -> str:
        self._check(self.app_folder)
        self.folders.add(self.app_folder)
        return self.app_folder

    async def read_file(self, path: str) -> str:
        self._check(path)
        if path not in self.files:
            raise NotFoundError(f"Not found: {path}")
        content = self.files[path]
        return content.decode() if isinstance(content, bytes) else content

    async def read_item(self, item_id: str) -> str:
        return await self.read_file(item_id)

    async def download_item(self, item_id: str):
        self._check(item_id)
        if item_id not in self.files:
            raise NotFoundError(f"Not found: {item_id}")
        content = self.files[item_id]
        body = content.encode() if isinstance(content, str) else content
        return body, self.content_types.get(item_id, "")

    async def write_file(self, path: str, content, content_type: str = "application/json"):
        self._check(path)
        self.files[path] = content
        self.writes.append(path)
        return {"name": path.rsplit("/", 1)[-1]}

    async def list_children(self, path: str) -> List[Dict[str, Any]]:
        self._check(path)
        prefix = path.rstrip("/") + "/"
        children = []
        for file_path in sorted(self.files):
            if file_path.startswith(prefix) and "/" not in file_path[len(prefix):]:
                children.append({"id": file_path, "name": file_path[len(prefix):], "file": {}})
        for folder in sorted(self.folders):
            if folder.startswith(prefix) and "/" not in folder[len(prefix):]:
                children.append({"id": folder, "name": folder[len(prefix):], "folder": {}})
        return children

    async def get_item_metadata(self, path: str) -> Dict[str, Any]:
        self.metadata_calls.append(path)
        if self.metadata_gate is not None:
            await self.metadata_gate.wait()
        self._check(path)
        if path not in self.files:
            raise NotFoundError(f"Not found: {path}")
        self._url_counter += 1
        name = path.rsplit("/", 1)[-1]
        return {
            "name": name,
            DOWNLOAD_URL_KEY: f"https://download.example/{name}?v={self._url_counter}",
        }

    async def delete_item(self, path: str) -> None:
        self._check(path)
        if path not in self.files:
            raise NotFoundError(f"Not found: {path}")
        del self.files[path]


@pytest.fixture
def fake_drive() -> FakeDrive:
    return FakeDrive()


# ─── Identity provider double ─────────────────────────────────────────────────

ACCOUNT = {"home_account_id": "acct-1", "username": "runner@example.com"}


class FakeProvider:
    """Scripted stand-in for MsalCredentialProvider."""

    def __init__(self, accounts: Optional[List[Dict[str, Any]]] = None, expires_in: int = 3600):
        self.accounts = list(accounts or [])
        self.expires_in = expires_in
        self.silent_failures = 0
        self.silent_calls: List[bool] = []
        self.initialize_error: Optional[Exception] = None
        self.initialize_calls = 0
        self.login_error: Optional[Exception] = None
        self.logout_error: Optional[Exception] = None
        self.silent_gate: Optional[asyncio.Event] = None
        self.pending_redirect = False
        self._counter = 0

    def _result(self):
        self._counter += 1
        return TokenResult(
            access_token=f"token-{self._counter}",
            expires_in=self.expires_in,
            account=dict(ACCOUNT),
        )

    async def initialize(self) -> None:
        self.initialize_calls += 1
        if self.initialize_error is not None:
            raise self.initialize_error

    async def get_accounts(self):
        return list(self.accounts)

    async def acquire_token_silent(self, account, force_refresh: bool = False):
        self.silent_calls.append(force_refresh)
        if self.silent_gate is not None:
            await self.silent_gate.wait()
        if self.silent_failures > 0:
            self.silent_failures -= 1
            raise AuthError("interaction_required")
        return self._result()

    async def login_interactive(self):
        if self.login_error is not None:
            raise self.login_error
        self.accounts = [dict(ACCOUNT)]
        return self._result()

    async def begin_redirect_login(self, redirect_uri=None) -> str:
        self.pending_redirect = True
        return "https://login.example/authorize?state=abc"

    async def handle_redirect_completion(self, params):
        if not self.pending_redirect:
            return None
        self.pending_redirect = False
        if "error" in params:
            raise AuthError(params["error"])
        self.accounts = [dict(ACCOUNT)]
        return self._result()

    async def logout(self) -> None:
        if self.logout_error is not None:
            raise self.logout_error
        self.accounts = []


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
