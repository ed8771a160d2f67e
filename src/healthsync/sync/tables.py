"""
TableSyncService — moves whole local collections to and from OneDrive.

Remote layout (inside the application folder):

    <tableName>.json        one snapshot per collection
    export_metadata.json    manifest written by export_all_tables()
    attachments/            binary attachments (see drive.attachments)

A snapshot looks like:

    {
        "dbName": "HealthCalendarDB",
        "tableName": "users",
        "exportTime": "2025-01-15T07:30:00+00:00",
        "syncTime": "2025-01-15T07:30:00+00:00",
        "recordCount": 2,
        "data": [{"id": "u1", "updatedAt": "..."}, ...]
    }

Push (export) always overwrites the remote snapshot wholesale from local
state. Pull (import) merges record-by-record with last-write-wins. A push
made from a stale local copy overwrites newer remote changes; sync_table()
pulls first.

Error policy:
  - AuthError always propagates; the orchestrator drops the
    authenticated flag.
  - Any other SyncError is reported in the result's error list. Bulk
    operations keep going and report what succeeded.
  - A missing snapshot on import is not an error (first sync).
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from healthsync.drive.client import DriveClient
from healthsync.errors import AuthError, NotFoundError, SnapshotValidationError, SyncError
from healthsync.store.local import LocalStore
from healthsync.sync.merge import MergeResult, merge_records

logger = logging.getLogger(__name__)

MANIFEST_FILE_NAME = "export_metadata.json"
MANIFEST_VERSION = "1.0"
NO_DATA_FILES_MESSAGE = "No data files found in OneDrive"


# ─── Wire models ──────────────────────────────────────────────────────────────

class TableSnapshot(BaseModel):
    """Full serialized contents of one collection."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    db_name: Optional[str] = Field(default=None, alias="dbName")
    table_name: str = Field(alias="tableName")
    export_time: Optional[str] = Field(default=None, alias="exportTime")
    sync_time: Optional[str] = Field(default=None, alias="syncTime")
    record_count: Optional[int] = Field(default=None, alias="recordCount")
    data: List[Dict[str, Any]]


class ExportMetadata(BaseModel):
    """Manifest listing which tables were exported and when."""

    model_config = ConfigDict(populate_by_name=True)

    version: str = MANIFEST_VERSION
    export_time: str = Field(alias="exportTime")
    user_id: str = Field(alias="userId")
    app_version: str = Field(alias="appVersion")
    tables: List[str] = Field(default_factory=list)


# ─── Results ──────────────────────────────────────────────────────────────────

@dataclass
class ExportResult:
    success: bool
    exported_files: List[str]
    errors: List[str]
    metadata: ExportMetadata

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "exportedFiles": list(self.exported_files),
            "errors": list(self.errors),
            "metadata": self.metadata.model_dump(by_alias=True),
        }


@dataclass
class TableImport:
    table_name: str
    records: List[Dict[str, Any]]
    found: bool
    export_time: Optional[str] = None


@dataclass
class ImportResult:
    success: bool
    imported_tables: List[str]
    errors: List[str]
    changed: Dict[str, int] = field(default_factory=dict)

    @property
    def records_changed(self) -> int:
        return sum(self.changed.values())


def parse_snapshot(text: str, *, source: str, expected_table: Optional[str] = None) -> TableSnapshot:
    """
    Parse and validate a snapshot body.

    Raises:
        SnapshotValidationError: if the JSON is malformed, lacks
            {tableName, data: [...]}, has records without an "id", or names
            a different table than expected.
    """
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise SnapshotValidationError(f"{source} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise SnapshotValidationError(f"{source} must contain a JSON object")

    try:
        snapshot = TableSnapshot.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
        raise SnapshotValidationError(f"{source} has an invalid shape ({fields})") from exc

    missing = sum(1 for r in snapshot.data if r.get("id") in (None, ""))
    if missing:
        raise SnapshotValidationError(f"{source} has {missing} record(s) without an id")
    if expected_table is not None and snapshot.table_name != expected_table:
        raise SnapshotValidationError(
            f"{source} holds table {snapshot.table_name!r}, expected {expected_table!r}"
        )
    return snapshot


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TableSyncService:
    """Export/import of whole collections between LocalStore and OneDrive."""

    def __init__(
        self,
        store: LocalStore,
        drive: DriveClient,
        *,
        app_version: str = "1.0.0",
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            store: Local collection store.
            drive: DriveClient pointed at the application folder.
            app_version: Recorded in the export manifest.
            clock: Returns the current aware datetime (patched in tests).
        """
        self.store = store
        self.drive = drive
        self.app_version = app_version
        self._clock = clock

    # ─── Export (push) ────────────────────────────────────────────────────────

    async def export_table(self, table_name: str, user_id: str) -> ExportResult:
        """
        Overwrite <table_name>.json with the full local collection.

        Raises:
            AuthError: if the drive rejected the session.
        """
        try:
            if table_name not in self.store.list_collections():
                raise NotFoundError(f"Table {table_name} does not exist")
            await self.drive.ensure_app_folder()
            path = await self._upload_snapshot(table_name)
        except AuthError:
            raise
        except SyncError as exc:
            logger.error("Failed to export table %s: %s", table_name, exc)
            return ExportResult(False, [], [str(exc)], self._metadata(user_id, []))

        return ExportResult(True, [path], [], self._metadata(user_id, [table_name]))

    async def export_all_tables(self, user_id: str) -> ExportResult:
        """
        Export every local collection, then write the manifest.

        Per-table failures are collected; success means no errors at all.

        Raises:
            AuthError: if the drive rejected the session.
        """
        tables = self.store.list_collections()
        logger.info("Exporting %d tables for user %s", len(tables), user_id)

        try:
            await self.drive.ensure_app_folder()
        except AuthError:
            raise
        except SyncError as exc:
            logger.error("Export failed: %s", exc)
            return ExportResult(False, [], [str(exc)], self._metadata(user_id, []))

        exported: List[str] = []
        errors: List[str] = []
        for table_name in tables:
            try:
                exported.append(await self._upload_snapshot(table_name))
            except AuthError:
                raise
            except SyncError as exc:
                message = f"Failed to export table {table_name}: {exc}"
                logger.error(message)
                errors.append(message)

        metadata = self._metadata(user_id, tables)
        manifest_path = self.drive.app_path(MANIFEST_FILE_NAME)
        try:
            await self.drive.write_file(
                manifest_path, json.dumps(metadata.model_dump(by_alias=True), indent=2)
            )
            exported.append(manifest_path)
        except AuthError:
            raise
        except SyncError as exc:
            errors.append(f"Failed to upload metadata: {exc}")

        return ExportResult(not errors, exported, errors, metadata)

    async def _upload_snapshot(self, table_name: str) -> str:
        records = self.store.get_all(table_name)
        now = self._clock().isoformat()
        snapshot = TableSnapshot(
            db_name=self.store.db_name,
            table_name=table_name,
            export_time=now,
            sync_time=now,
            record_count=len(records),
            data=records,
        )
        path = self.drive.app_path(f"{table_name}.json")
        await self.drive.write_file(path, json.dumps(snapshot.model_dump(by_alias=True), indent=2))
        logger.info("Exported %s (%d records)", table_name, len(records))
        return path

    def _metadata(self, user_id: str, tables: List[str]) -> ExportMetadata:
        return ExportMetadata(
            version=MANIFEST_VERSION,
            export_time=self._clock().isoformat(),
            user_id=user_id,
            app_version=self.app_version,
            tables=list(tables),
        )

    # ─── Import (pull) ────────────────────────────────────────────────────────

    async def import_table(self, table_name: str) -> TableImport:
        """
        Read <table_name>.json from OneDrive.

        Returns an empty TableImport (found=False) if the file doesn't exist.

        Raises:
            SnapshotValidationError: if the file is malformed.
            AuthError / ConnectivityError: on transport failures.
        """
        path = self.drive.app_path(f"{table_name}.json")
        try:
            text = await self.drive.read_file(path)
        except NotFoundError:
            logger.info("No remote snapshot for %s yet", table_name)
            return TableImport(table_name=table_name, records=[], found=False)

        snapshot = parse_snapshot(text, source=f"{table_name}.json", expected_table=table_name)
        return TableImport(
            table_name=table_name,
            records=snapshot.data,
            found=True,
            export_time=snapshot.export_time,
        )

    async def pull_table(self, table_name: str) -> MergeResult:
        """Import a table and merge it into the local collection."""
        imported = await self.import_table(table_name)
        return self.apply_incoming(table_name, imported.records)

    def apply_incoming(self, table_name: str, incoming: List[Dict[str, Any]]) -> MergeResult:
        """Merge incoming records into the local collection (newest wins, no deletes)."""
        self.store.ensure_collection(table_name)
        result = merge_records(self.store.get_all(table_name), incoming)
        for record in result.inserted:
            self.store.add(table_name, record)
        for record in result.replaced:
            self.store.put(table_name, record)
        logger.info(
            "Merged %s: %d inserted, %d replaced, %d kept local",
            table_name, len(result.inserted), len(result.replaced), result.skipped,
        )
        return result

    async def import_all_tables(self, user_id: str) -> ImportResult:
        """
        Merge every table snapshot in the application folder into local state.

        Fails outright only if OneDrive or the folder is unreachable, or no
        snapshot files exist. Malformed files are reported per file.

        Raises:
            AuthError: if the drive rejected the session.
        """
        logger.info("Importing all tables for user %s", user_id)
        try:
            await self.drive.check_connectivity()
            await self.drive.ensure_app_folder()
            children = await self.drive.list_children(self.drive.app_folder)
        except AuthError:
            raise
        except SyncError as exc:
            return ImportResult(False, [], [f"Cannot access OneDrive app folder: {exc}"])

        files = [
            item for item in children
            if "folder" not in item
            and item.get("name", "").endswith(".json")
            and item.get("name") != MANIFEST_FILE_NAME
        ]
        if not files:
            return ImportResult(False, [], [NO_DATA_FILES_MESSAGE])

        imported: List[str] = []
        errors: List[str] = []
        changed: Dict[str, int] = {}
        for item in files:
            name = item["name"]
            table_name = name[: -len(".json")]
            try:
                if item.get("id"):
                    text = await self.drive.read_item(item["id"])
                else:
                    text = await self.drive.read_file(self.drive.app_path(name))
                snapshot = parse_snapshot(text, source=name, expected_table=table_name)
                result = self.apply_incoming(table_name, snapshot.data)
            except AuthError:
                raise
            except SyncError as exc:
                logger.warning("Skipping %s: %s", name, exc)
                errors.append(f"{name}: {exc}")
                continue
            imported.append(table_name)
            changed[table_name] = result.changed

        return ImportResult(not errors, imported, errors, changed)

    async def get_export_history(self, user_id: str) -> List[ExportMetadata]:
        """Return manifests in the application folder, newest first."""
        try:
            children = await self.drive.list_children(self.drive.app_folder)
        except NotFoundError:
            return []

        history: List[ExportMetadata] = []
        for item in children:
            name = item.get("name", "")
            if "export_metadata" not in name or not name.endswith(".json"):
                continue
            try:
                text = await self.drive.read_file(self.drive.app_path(name))
                history.append(ExportMetadata.model_validate(json.loads(text)))
            except (SyncError, ValueError) as exc:
                # pydantic ValidationError subclasses ValueError
                logger.warning("Failed to read metadata file %s: %s", name, exc)

        return sorted(history, key=lambda m: m.export_time, reverse=True)
