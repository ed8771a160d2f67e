"""
Durable sync metadata: the primary auth-state record plus a backup of
the last successful sync time.

    auth_state      {isAuthenticated, userInfo, lastSyncTime, timestamp}   TTL 24h
    last_sync_time  "2025-01-15T07:30:00+00:00"                           no TTL

A primary record with lastSyncTime=null is repaired from the backup on
load. The backup also outlives the primary record's TTL.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from healthsync.store.kv import KeyValueStore

logger = logging.getLogger(__name__)

PRIMARY_KEY = "auth_state"
BACKUP_KEY = "last_sync_time"
PRIMARY_TTL_DEFAULT = timedelta(hours=24)


@dataclass(frozen=True)
class PersistedSyncState:
    is_authenticated: bool
    user_info: Optional[Dict[str, Any]]
    last_sync_time: Optional[datetime]
    timestamp: datetime


def _parse(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class SyncMetadataStore:
    """Reads and writes the primary and backup sync records."""

    def __init__(self, kv: KeyValueStore, ttl: timedelta = PRIMARY_TTL_DEFAULT):
        self._kv = kv
        self._ttl = ttl

    def save(
        self,
        is_authenticated: bool,
        user_info: Optional[Dict[str, Any]],
        last_sync_time: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self._kv.set(
            PRIMARY_KEY,
            {
                "isAuthenticated": is_authenticated,
                "userInfo": user_info,
                "lastSyncTime": last_sync_time.isoformat() if last_sync_time else None,
                "timestamp": now.isoformat(),
            },
            ttl_seconds=self._ttl.total_seconds(),
        )
        if last_sync_time is not None:
            self.save_last_sync_time(last_sync_time)

    def save_last_sync_time(self, last_sync_time: datetime) -> None:
        self._kv.set(BACKUP_KEY, last_sync_time.isoformat())

    def load(self) -> Optional[PersistedSyncState]:
        """
        Return the primary record, or None if it is absent or past its TTL
        (an expired record is deleted by the key-value store).
        """
        data = self._kv.get(PRIMARY_KEY)
        if not isinstance(data, dict):
            return None

        last_sync = _parse(data.get("lastSyncTime"))
        if last_sync is None:
            last_sync = self.load_last_sync_time()
            if last_sync is not None:
                logger.info("Repaired missing lastSyncTime from backup record")

        return PersistedSyncState(
            is_authenticated=bool(data.get("isAuthenticated")),
            user_info=data.get("userInfo"),
            last_sync_time=last_sync,
            timestamp=_parse(data.get("timestamp")) or datetime.now(timezone.utc),
        )

    def load_last_sync_time(self) -> Optional[datetime]:
        return _parse(self._kv.get(BACKUP_KEY))

    def clear(self) -> None:
        self._kv.delete(PRIMARY_KEY)
        self._kv.delete(BACKUP_KEY)
