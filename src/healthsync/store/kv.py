"""
Durable key-value entries on disk, with optional time-to-live.

Each key is one JSON file in the state directory:

    ~/.healthsync/auth_state.json
    ~/.healthsync/last_sync_time.json
    ~/.healthsync/auth_session.json

Files hold access tokens and account names, so the directory is created
0700 and every file is written 0600.

An entry written with a TTL stores its write time alongside the value.
get() treats an entry older than its TTL as absent and deletes it, so
expired state can never be read back by accident.
"""
import json
import os
import re
import stat
import time
from pathlib import Path
from typing import Any, Callable, Optional

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStore:
    """
    Small JSON-file key-value store.

    Usage:
        kv = KeyValueStore(settings.state_dir)
        kv.set("auth_state", {...}, ttl_seconds=24 * 3600)
        kv.get("auth_state")   # → dict, or None once expired
    """

    def __init__(self, directory: Path, clock: Callable[[], float] = time.time):
        self._dir = Path(directory)
        self._clock = clock

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid key: {key!r}")
        return self._dir / f"{key}.json"

    # ── Read / write ──────────────────────────────────────────────────────────

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """
        Persist value under key with owner-only permissions.

        Directory: 0700 (rwx------)
        File:      0600 (rw-------)
        """
        self._dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._dir, stat.S_IRWXU)

        entry = {
            "value": value,
            "stored_at": self._clock(),
            "ttl_seconds": ttl_seconds,
        }
        write_private(self.path_for(key), json.dumps(entry, indent=2))

    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if missing, unreadable, or expired."""
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            entry = json.loads(path.read_text())
        except (OSError, ValueError):
            path.unlink(missing_ok=True)
            return None

        ttl = entry.get("ttl_seconds")
        if ttl is not None and self._clock() - float(entry.get("stored_at", 0)) >= ttl:
            path.unlink(missing_ok=True)
            return None
        return entry.get("value")

    def stored_at(self, key: str) -> Optional[float]:
        """Return the epoch seconds at which key was last written."""
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            return float(json.loads(path.read_text()).get("stored_at"))
        except (OSError, ValueError, TypeError):
            return None

    def delete(self, key: str) -> None:
        """Remove key (does not raise if already absent)."""
        self.path_for(key).unlink(missing_ok=True)

    def has(self, key: str) -> bool:
        return self.get(key) is not None


def write_private(path: Path, text: str) -> None:
    """Write text to path, readable by the owner only from the moment it exists."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
    with os.fdopen(fd, "w") as fh:
        # O_CREAT's mode only applies to new files
        os.fchmod(fh.fileno(), stat.S_IRUSR | stat.S_IWUSR)
        fh.write(text)
