"""Sync audit log model."""
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncLog(SQLModel, table=True):
    """Records each orchestrator action for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[str] = None
    action: str  # "start_sync", "export_data", "export_table", "sync_table", "import_users"
    table_name: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "partial", "error"
    records_synced: int = 0
    error_message: Optional[str] = None
