"""Local collection store models: named tables of small JSON records."""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class Collection(SQLModel, table=True):
    """One row per named local collection (a logical table)."""

    name: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CollectionRecord(SQLModel, table=True):
    """
    One JSON record inside a collection.

    The record body is kept verbatim in `payload`; `record_id` and
    `updated_at` are lifted out of it so lookups and merges don't have to
    parse every row.
    """

    __table_args__ = (UniqueConstraint("collection", "record_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    collection: str = Field(foreign_key="collection.name", index=True)
    record_id: str = Field(index=True)
    payload: str  # JSON object text
    updated_at: Optional[str] = None  # raw "updatedAt" value as written
