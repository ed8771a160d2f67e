"""
SyncState and the store that owns it.

There is exactly one current SyncState per SyncStore. It is immutable;
every change goes through dispatch(action), which computes the next state
with the pure reduce() function, swaps it in, and only then notifies
subscribers. A transition is therefore applied all at once: two
concurrent actions can never interleave half-applied field updates, and
a subscriber never observes a partially updated state.

    idle ──► syncing ──► success
                   └───► error ──► (any action) ──► syncing ...

There is no "cancelled" status; nothing in the engine can be cancelled.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

NOT_CONNECTED_MESSAGE = "Not connected to OneDrive"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class SyncState:
    is_authenticated: bool = False
    is_connecting: bool = False
    last_sync_time: Optional[datetime] = None
    sync_status: SyncStatus = SyncStatus.IDLE
    error: Optional[str] = None
    user_info: Optional[Dict[str, Any]] = None
    export_result: Optional[Dict[str, Any]] = None
    is_exporting: bool = False
    is_available: bool = True
    unavailability_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isAuthenticated": self.is_authenticated,
            "isConnecting": self.is_connecting,
            "lastSyncTime": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "syncStatus": self.sync_status.value,
            "error": self.error,
            "userInfo": self.user_info,
            "exportResult": self.export_result,
            "isExporting": self.is_exporting,
            "isAvailable": self.is_available,
            "unavailabilityReason": self.unavailability_reason,
        }


# ── Actions ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AvailabilityChanged:
    is_available: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class SessionRestored:
    is_authenticated: bool
    user_info: Optional[Dict[str, Any]] = None
    last_sync_time: Optional[datetime] = None


@dataclass(frozen=True)
class ConnectStarted:
    pass


@dataclass(frozen=True)
class Connected:
    user_info: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ConnectFailed:
    error: str


@dataclass(frozen=True)
class ConnectionChecked:
    is_authenticated: bool
    user_info: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class AuthLost:
    error: str


@dataclass(frozen=True)
class SyncStarted:
    exporting: bool = False


@dataclass(frozen=True)
class SyncSucceeded:
    finished_at: datetime
    export_result: Optional[Dict[str, Any]] = None
    warning: Optional[str] = None


@dataclass(frozen=True)
class SyncFailed:
    error: str
    export_result: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ErrorRaised:
    error: str


@dataclass(frozen=True)
class ErrorCleared:
    pass


Action = Union[
    AvailabilityChanged,
    SessionRestored,
    ConnectStarted,
    Connected,
    ConnectFailed,
    ConnectionChecked,
    Disconnected,
    AuthLost,
    SyncStarted,
    SyncSucceeded,
    SyncFailed,
    ErrorRaised,
    ErrorCleared,
]


def reduce(state: SyncState, action: Action) -> SyncState:
    """Return the state that results from applying action to state."""
    if isinstance(action, AvailabilityChanged):
        if action.is_available:
            return replace(state, is_available=True, unavailability_reason=None)
        return replace(
            state,
            is_available=False,
            unavailability_reason=action.reason,
            is_authenticated=False,
            is_connecting=False,
        )

    if isinstance(action, SessionRestored):
        return replace(
            state,
            is_authenticated=action.is_authenticated,
            user_info=action.user_info if action.is_authenticated else None,
            last_sync_time=action.last_sync_time,
        )

    if isinstance(action, ConnectStarted):
        return replace(state, is_connecting=True, error=None)

    if isinstance(action, Connected):
        return replace(
            state,
            is_authenticated=True,
            is_connecting=False,
            user_info=action.user_info,
            error=None,
        )

    if isinstance(action, ConnectFailed):
        return replace(state, is_authenticated=False, is_connecting=False, error=action.error)

    if isinstance(action, ConnectionChecked):
        return replace(
            state,
            is_authenticated=action.is_authenticated,
            user_info=action.user_info if action.is_authenticated else None,
        )

    if isinstance(action, Disconnected):
        return replace(
            state,
            is_authenticated=False,
            is_connecting=False,
            user_info=None,
            error=None,
            last_sync_time=None,
            sync_status=SyncStatus.IDLE,
            export_result=None,
            is_exporting=False,
        )

    if isinstance(action, AuthLost):
        return replace(
            state,
            is_authenticated=False,
            is_exporting=False,
            sync_status=(
                SyncStatus.ERROR if state.sync_status == SyncStatus.SYNCING else state.sync_status
            ),
            error=action.error,
        )

    if isinstance(action, SyncStarted):
        return replace(
            state,
            sync_status=SyncStatus.SYNCING,
            is_exporting=action.exporting,
            error=None,
            export_result=None if action.exporting else state.export_result,
        )

    if isinstance(action, SyncSucceeded):
        return replace(
            state,
            sync_status=SyncStatus.SUCCESS,
            is_exporting=False,
            last_sync_time=action.finished_at,
            export_result=action.export_result,
            error=action.warning,
        )

    if isinstance(action, SyncFailed):
        return replace(
            state,
            sync_status=SyncStatus.ERROR,
            is_exporting=False,
            export_result=action.export_result,
            error=action.error,
        )

    if isinstance(action, ErrorRaised):
        return replace(state, error=action.error)

    if isinstance(action, ErrorCleared):
        return replace(state, error=None)

    raise TypeError(f"Unknown action: {action!r}")


Subscriber = Callable[[SyncState], None]


class SyncStore:
    """Holds the current SyncState and broadcasts every transition."""

    def __init__(self, initial: Optional[SyncState] = None):
        self._state = initial or SyncState()
        self._subscribers: List[Subscriber] = []

    @property
    def state(self) -> SyncState:
        return self._state

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        """Register fn; returns a callable that unsubscribes it."""
        self._subscribers.append(fn)

        def unsubscribe() -> None:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return unsubscribe

    def dispatch(self, action: Action) -> SyncState:
        """Apply action, then notify every subscriber with the new state."""
        self._state = reduce(self._state, action)
        for fn in list(self._subscribers):
            try:
                fn(self._state)
            except Exception:
                logger.exception("Sync state subscriber %r failed", fn)
        return self._state
