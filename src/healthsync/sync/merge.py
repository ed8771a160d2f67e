"""
Last-write-wins record merge (pull direction).

    1. Index existing records by id.
    2. Incoming record with an unknown id → inserted.
    3. Incoming record with a known id → replaces the local record only if
       its updatedAt is strictly newer. Ties and older timestamps lose.
    4. Records missing from the incoming set are left alone. Merge never
       deletes.

Pushing is NOT symmetric: export always overwrites the remote snapshot
wholesale from local state (see TableSyncService.export_table).

Timestamps may be ISO-8601 strings ("2025-01-02T10:00:00Z", with or
without offset) or epoch milliseconds, since older local stores wrote
numbers. Naive datetimes are taken as UTC.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Hashable,
    List,
    Optional,
    Protocol,
    TypeVar,
)


class Mergeable(Protocol):
    """Any entity with an identity and a last-modified timestamp."""

    id: str
    updated_at: Any


T = TypeVar("T")


@dataclass
class MergeResult(Generic[T]):
    """Outcome of a merge: the merged list plus what changed."""

    records: List[T]
    inserted: List[T] = field(default_factory=list)
    replaced: List[T] = field(default_factory=list)
    skipped: int = 0

    @property
    def changed(self) -> int:
        return len(self.inserted) + len(self.replaced)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an updatedAt value into an aware UTC datetime, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return None


def is_newer(incoming: Any, local: Any) -> bool:
    """True if incoming is strictly newer than local.

    An unparseable incoming timestamp is never newer; an unparseable local
    timestamp is older than any parseable one.
    """
    incoming_ts = parse_timestamp(incoming)
    if incoming_ts is None:
        return False
    local_ts = parse_timestamp(local)
    if local_ts is None:
        return True
    return incoming_ts > local_ts


def merge(
    existing: List[T],
    incoming: List[T],
    *,
    key: Callable[[T], Hashable],
    timestamp: Callable[[T], Any],
) -> MergeResult[T]:
    """
    Merge incoming into existing with the newest-wins rule.

    Output order: existing records in their original order (with any
    replacements in place), followed by new inserts in incoming order.

    Args:
        existing: Current local entities.
        incoming: Entities read from the remote snapshot.
        key: Returns an entity's identity.
        timestamp: Returns an entity's last-modified value.
    """
    merged: List[T] = list(existing)
    position: Dict[Hashable, int] = {key(item): i for i, item in enumerate(merged)}
    result: MergeResult[T] = MergeResult(records=merged)

    for item in incoming:
        item_key = key(item)
        if item_key not in position:
            position[item_key] = len(merged)
            merged.append(item)
            result.inserted.append(item)
            continue

        idx = position[item_key]
        if is_newer(timestamp(item), timestamp(merged[idx])):
            merged[idx] = item
            result.replaced.append(item)
        else:
            result.skipped += 1

    return result


def merge_entities(existing: List[Mergeable], incoming: List[Mergeable]) -> MergeResult:
    """merge() for objects exposing .id and .updated_at."""
    return merge(
        existing,
        incoming,
        key=lambda e: e.id,
        timestamp=lambda e: e.updated_at,
    )


def merge_records(
    existing: List[Dict[str, Any]],
    incoming: List[Dict[str, Any]],
) -> MergeResult[Dict[str, Any]]:
    """merge() for JSON records keyed by "id" with an "updatedAt" field."""
    return merge(
        existing,
        incoming,
        key=lambda r: str(r.get("id")),
        timestamp=lambda r: r.get("updatedAt"),
    )
