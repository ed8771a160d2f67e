"""
LocalStore — the offline-first collection store.

Each collection is an independent table of JSON records keyed by their
"id" field. The store knows nothing about sync; it offers the five
operations the export/import engine needs:

    list_collections()          → ["mealRecords", "users", ...]
    get_all(collection)         → [record, ...] in insertion order
    add(collection, record)     → insert; DuplicateRecordError if id exists
    put(collection, record)     → insert or replace
    clear(collection)           → delete every record, keep the collection

Records round-trip exactly: the payload is stored as JSON text and
decoded on read, so no field is dropped or coerced.
"""
import json
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import Session, select

from healthsync.errors import DuplicateRecordError
from healthsync.models.collection import Collection, CollectionRecord


class LocalStore:
    """SQLModel-backed collection store."""

    def __init__(
        self,
        engine,
        db_name: str = "HealthCalendarDB",
        collections: Optional[Iterable[str]] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            db_name: Logical database name written into table snapshots.
            collections: Collection names to create up front (idempotent).
        """
        self.engine = engine
        self.db_name = db_name
        for name in collections or ():
            self.ensure_collection(name)

    # ─── Collections ──────────────────────────────────────────────────────────

    def ensure_collection(self, name: str) -> None:
        with Session(self.engine) as s:
            if s.get(Collection, name) is None:
                s.add(Collection(name=name))
                s.commit()

    def list_collections(self) -> List[str]:
        with Session(self.engine) as s:
            rows = s.exec(select(Collection).order_by(Collection.name)).all()
            return [row.name for row in rows]

    # ─── Records ──────────────────────────────────────────────────────────────

    def get_all(self, collection: str) -> List[Dict[str, Any]]:
        """Return every record in the collection, oldest insert first."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(CollectionRecord)
                .where(CollectionRecord.collection == collection)
                .order_by(CollectionRecord.id)
            ).all()
            return [json.loads(row.payload) for row in rows]

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        with Session(self.engine) as s:
            row = self._find(s, collection, record_id)
            return json.loads(row.payload) if row else None

    def add(self, collection: str, record: Dict[str, Any]) -> None:
        """
        Insert a new record.

        Raises:
            ValueError: if the record has no "id".
            DuplicateRecordError: if a record with that id already exists.
        """
        record_id = _record_id(record)
        self.ensure_collection(collection)
        with Session(self.engine) as s:
            if self._find(s, collection, record_id) is not None:
                raise DuplicateRecordError(
                    f"Record {record_id!r} already exists in {collection!r}"
                )
            s.add(_to_row(collection, record_id, record))
            s.commit()

    def put(self, collection: str, record: Dict[str, Any]) -> None:
        """Insert the record, or replace the existing one with the same id."""
        record_id = _record_id(record)
        self.ensure_collection(collection)
        with Session(self.engine) as s:
            existing = self._find(s, collection, record_id)
            if existing:
                # Update in place (keeps insertion order)
                existing.payload = json.dumps(record)
                existing.updated_at = _updated_at(record)
                s.add(existing)
            else:
                s.add(_to_row(collection, record_id, record))
            s.commit()

    def clear(self, collection: str) -> None:
        with Session(self.engine) as s:
            rows = s.exec(
                select(CollectionRecord).where(CollectionRecord.collection == collection)
            ).all()
            for row in rows:
                s.delete(row)
            s.commit()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _find(s: Session, collection: str, record_id: str) -> Optional[CollectionRecord]:
        return s.exec(
            select(CollectionRecord).where(
                CollectionRecord.collection == collection,
                CollectionRecord.record_id == record_id,
            )
        ).first()


def _record_id(record: Dict[str, Any]) -> str:
    record_id = record.get("id")
    if record_id is None or record_id == "":
        raise ValueError("Record has no 'id'")
    return str(record_id)


def _updated_at(record: Dict[str, Any]) -> Optional[str]:
    value = record.get("updatedAt")
    return None if value is None else str(value)


def _to_row(collection: str, record_id: str, record: Dict[str, Any]) -> CollectionRecord:
    return CollectionRecord(
        collection=collection,
        record_id=record_id,
        payload=json.dumps(record),
        updated_at=_updated_at(record),
    )
