"""
OneDrive session lifecycle: login, silent renewal, and durable persistence.

The identity provider (MSAL) owns refresh tokens; this module owns the
*session* the rest of the engine sees:

    {
        "accountId":   "<home account id>",
        "username":    "someone@example.com",
        "accessToken": "<bearer token>",
        "timestamp":   1736930000000,   # issuedAt, epoch millis
        "expiresAt":   1736933600000,   # epoch millis
    }

The session is persisted to ~/.healthsync/auth_session.json with a 24 hour
TTL. A session past its TTL is never handed out to authorize a request;
it is discarded and a fresh one is acquired silently or the caller gets
AuthError ("needs reconnect").

Renewal is proactive: after every successful acquisition an APScheduler
date job fires at expiresAt - 5 min and renews silently, so long-running
processes rarely present a stale token.

Silent acquisition is coalesced. Concurrent callers await the same
in-flight task instead of each hitting the token endpoint.
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from healthsync.auth.provider import TokenResult
from healthsync.errors import (
    AuthError,
    ConnectivityError,
    ProviderUnavailableError,
    SyncError,
)
from healthsync.store.kv import KeyValueStore
from healthsync.sync.retry import RetryPolicy

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

SESSION_KEY = "auth_session"
SESSION_TTL_DEFAULT = timedelta(hours=24)
RENEWAL_MARGIN_DEFAULT = timedelta(minutes=5)
RENEWAL_JOB_ID = "token_renewal"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _from_millis(ms: Any) -> datetime:
    return datetime.fromtimestamp(float(ms) / 1000.0, tz=timezone.utc)


# ── Session ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Session:
    """An authenticated credential plus its validity window."""

    account_id: str
    username: str
    access_token: str
    issued_at: datetime
    expires_at: datetime

    def is_within_ttl(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.issued_at < ttl

    def is_usable(self, now: datetime, ttl: timedelta) -> bool:
        """True while inside both the session TTL and the token lifetime."""
        return self.is_within_ttl(now, ttl) and now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountId": self.account_id,
            "username": self.username,
            "accessToken": self.access_token,
            "timestamp": _to_millis(self.issued_at),
            "expiresAt": _to_millis(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            account_id=data["accountId"],
            username=data.get("username", ""),
            access_token=data["accessToken"],
            issued_at=_from_millis(data["timestamp"]),
            expires_at=_from_millis(data["expiresAt"]),
        )


class SessionStore:
    """Persists the current Session as a TTL-bounded key-value entry."""

    def __init__(
        self,
        kv: KeyValueStore,
        ttl: timedelta = SESSION_TTL_DEFAULT,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._kv = kv
        self._ttl = ttl
        self._clock = clock

    def save(self, session: Session) -> None:
        self._kv.set(SESSION_KEY, session.to_dict(), ttl_seconds=self._ttl.total_seconds())

    def load(self) -> Optional[Session]:
        """Return the persisted session, or None if absent, corrupt, or expired."""
        data = self._kv.get(SESSION_KEY)
        if data is None:
            return None
        try:
            session = Session.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable persisted session")
            self.clear()
            return None
        if not session.is_within_ttl(self._clock(), self._ttl):
            logger.info("Persisted session for %s is past its TTL, discarding", session.username)
            self.clear()
            return None
        return session

    def clear(self) -> None:
        self._kv.delete(SESSION_KEY)


# ── Main class ────────────────────────────────────────────────────────────────

class CredentialManager:
    """
    Owns the authenticated session.

    Usage:
        manager = CredentialManager(provider, SessionStore(kv), scheduler=scheduler)
        await manager.initialize()          # restores a prior session if any
        if manager.session is None:
            await manager.login()
        token = await manager.get_access_token()
    """

    def __init__(
        self,
        provider,
        session_store: SessionStore,
        *,
        scheduler=None,
        retry_policy: Optional[RetryPolicy] = None,
        ttl: timedelta = SESSION_TTL_DEFAULT,
        renewal_margin: timedelta = RENEWAL_MARGIN_DEFAULT,
        clock: Callable[[], datetime] = _utcnow,
        on_session_lost: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            provider: MsalCredentialProvider (or a test double with the same API).
            session_store: Durable session persistence.
            scheduler: APScheduler scheduler for proactive renewal (optional).
            retry_policy: Backoff for silent acquisition; max_attempts is
                          overridden per call by max_retries.
            ttl: Maximum session age before it's discarded.
            renewal_margin: Renew this long before the token expires.
            clock: Returns the current aware datetime (patched in tests).
            on_session_lost: Called with a message when background renewal
                             fails, so the orchestrator can drop the
                             authenticated flag.
        """
        self._provider = provider
        self._store = session_store
        self._scheduler = scheduler
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=3)
        self._ttl = ttl
        self._renewal_margin = renewal_margin
        self._clock = clock
        self._on_session_lost = on_session_lost

        self._session: Optional[Session] = None
        self._initialized = False
        self._init_task: Optional[asyncio.Future] = None
        self._init_token: Optional[str] = None
        self._acquire_task: Optional[asyncio.Future] = None

    # ── State ─────────────────────────────────────────────────────────────────

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def init_token(self) -> Optional[str]:
        """Token acquired during initialization; None if there was no account or it failed."""
        return self._init_token

    @property
    def renewal_scheduled(self) -> bool:
        return bool(self._scheduler and self._scheduler.get_job(RENEWAL_JOB_ID))

    def current_user(self) -> Optional[Dict[str, str]]:
        if self._session is None:
            return None
        return {"accountId": self._session.account_id, "username": self._session.username}

    # ── Initialization ────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """
        Initialize the provider and restore any prior session (idempotent).

        Concurrent callers await the same pending initialization. A failed
        initialization may be retried by calling again.

        Raises:
            ProviderUnavailableError: if the provider can't run here.
        """
        if self._initialized:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None  # allow a retry
            raise

    async def _initialize(self) -> None:
        await self._provider.initialize()
        self.restore_session()
        accounts = await self._provider.get_accounts()
        if accounts:
            logger.info("Found existing account, attempting to restore session")
            self._init_token = await self.acquire_token_silently()
            if self._init_token:
                logger.info("Session restored for %s", self._session.username)
            else:
                logger.info("Session expired, re-authentication required")
        self._initialized = True

    def restore_session(self) -> Optional[Session]:
        """Load the persisted session; an entry past its TTL is discarded."""
        session = self._store.load()
        if session is not None and not session.is_within_ttl(self._clock(), self._ttl):
            self._store.clear()
            session = None
        self._session = session
        return session

    # ── Silent acquisition ────────────────────────────────────────────────────

    async def acquire_token_silently(self, max_retries: Optional[int] = None) -> Optional[str]:
        """
        Acquire an access token without user interaction.

        Attempt 1 accepts a cached token; later attempts force a refresh.
        Concurrent callers share the in-flight acquisition.

        Args:
            max_retries: Attempts before giving up (default from the retry policy).

        Returns:
            The access token, or None if there is no account or every attempt
            failed (the session and renewal job are cleared in that case).
        """
        if self._acquire_task is None:
            task = asyncio.ensure_future(self._acquire(max_retries))
            self._acquire_task = task
            task.add_done_callback(self._acquire_done)
        return await asyncio.shield(self._acquire_task)

    def _acquire_done(self, task: asyncio.Future) -> None:
        if self._acquire_task is task:
            self._acquire_task = None

    async def _acquire(self, max_retries: Optional[int]) -> Optional[str]:
        try:
            accounts = await self._provider.get_accounts()
        except ProviderUnavailableError:
            logger.debug("Provider not initialized; no silent token")
            return None
        if not accounts:
            logger.info("No accounts found for silent token acquisition")
            return None

        account = accounts[0]
        policy = self._retry_policy
        if max_retries is not None:
            policy = replace(policy, max_attempts=max_retries)

        def _log_failure(attempt: int, exc: BaseException) -> None:
            logger.warning("Silent token attempt %d/%d failed: %s", attempt, policy.max_attempts, exc)

        try:
            result: TokenResult = await policy.run(
                lambda attempt: self._provider.acquire_token_silent(
                    account, force_refresh=attempt > 1
                ),
                retry_on=(SyncError, OSError),
                on_failure=_log_failure,
            )
        except (SyncError, OSError):
            logger.error("Silent token acquisition failed after %d attempts", policy.max_attempts)
            self._clear_session()
            return None

        self._establish(result)
        logger.info("Token acquired silently for %s", self._session.username)
        return result.access_token

    # ── Interactive flows ─────────────────────────────────────────────────────

    async def login(self) -> Session:
        """
        Run the interactive login flow and persist the resulting session.

        Raises:
            ProviderUnavailableError: if the provider can't run here.
            AuthError: if login was cancelled, timed out, or refused.
            ConnectivityError: if the identity provider was unreachable.
        """
        await self.initialize()
        try:
            result = await self._provider.login_interactive()
        except OSError as exc:
            raise ConnectivityError(
                f"Login failed: network connection problem ({exc}). Check your connection."
            ) from exc
        self._establish(result)
        logger.info("Login successful for %s", result.username)
        return self._session

    async def begin_redirect_login(self, redirect_uri: Optional[str] = None) -> str:
        """Start a redirect login; returns the URL the browser must visit."""
        await self.initialize()
        return await self._provider.begin_redirect_login(redirect_uri)

    async def complete_redirect_login(self, auth_response: Dict[str, str]) -> Optional[Session]:
        """
        Finish a redirect login from the callback query parameters.

        Returns None when no redirect login was pending.
        """
        await self.initialize()
        result = await self._provider.handle_redirect_completion(auth_response)
        if result is None:
            return None
        self._establish(result)
        logger.info("Redirect login completed for %s", result.username)
        return self._session

    async def logout(self) -> None:
        """
        Clear the persisted session and renewal job, then sign out.

        The provider is initialized first if needed, so cached accounts are
        removed even when nothing else has touched it since startup. Local
        state is cleared even if the provider sign-out fails; the provider
        error still propagates.
        """
        self._clear_session()
        try:
            await self.initialize()
        except ProviderUnavailableError as exc:
            logger.info("Provider unavailable, only local session cleared: %s", exc)
            return
        self._clear_session()  # initialize() may have restored one
        await self._provider.logout()
        logger.info("Logged out")

    # ── Token access ──────────────────────────────────────────────────────────

    async def get_access_token(self) -> str:
        """
        Return a token that may be used to authorize a request right now.

        Raises:
            AuthError: if no valid session exists and none can be acquired.
        """
        session = self._session
        if session is not None and session.is_usable(self._clock(), self._ttl):
            return session.access_token
        token = await self.acquire_token_silently()
        if token is None:
            raise AuthError("OneDrive session has expired. Please reconnect.")
        return token

    async def is_token_expiring_soon(self) -> bool:
        """True if the token has under the renewal margin left, or can't be acquired."""
        token = await self.acquire_token_silently()
        if token is None or self._session is None:
            return True
        return self._session.expires_at - self._clock() < self._renewal_margin

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _establish(self, result: TokenResult) -> None:
        now = self._clock()
        self._session = Session(
            account_id=result.account_id,
            username=result.username,
            access_token=result.access_token,
            issued_at=now,
            expires_at=now + timedelta(seconds=result.expires_in),
        )
        self._store.save(self._session)
        self._schedule_renewal(self._session)

    def _schedule_renewal(self, session: Session) -> None:
        if self._scheduler is None:
            return
        run_date = max(session.expires_at - self._renewal_margin, self._clock())
        self._scheduler.add_job(
            self._renew,
            trigger="date",
            run_date=run_date,
            id=RENEWAL_JOB_ID,
            replace_existing=True,
        )
        logger.debug("Token renewal scheduled for %s", run_date.isoformat())

    def _cancel_renewal(self) -> None:
        if self._scheduler is not None and self._scheduler.get_job(RENEWAL_JOB_ID):
            self._scheduler.remove_job(RENEWAL_JOB_ID)

    async def _renew(self) -> None:
        """Scheduled job body: renew silently, report if the session is gone."""
        token = await self.acquire_token_silently()
        if token is None:
            logger.warning("Proactive token renewal failed; session cleared")
            if self._on_session_lost is not None:
                self._on_session_lost("OneDrive session expired. Please reconnect.")

    def _clear_session(self) -> None:
        self._session = None
        self._store.clear()
        self._cancel_renewal()
