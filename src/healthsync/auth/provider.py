"""
Microsoft identity provider adapter (MSAL public client).

MSAL is synchronous; every call goes through the default thread pool
executor so the event loop is never blocked.

The token cache is serialized to disk next to the other durable state
(~/.healthsync/msal_cache.json, 0600) so accounts and refresh tokens
survive process restarts. Only CredentialManager talks to this class;
it never decides session validity, it just reports what MSAL says.

Login modes:
    interactive:  opens the system browser on a loopback redirect
    device_code:  prints a code to enter at microsoft.com/devicelogin
    redirect:     begin_redirect_login() / handle_redirect_completion(),
                  for the HTTP API where the browser comes back to
                  /auth/callback
"""
import asyncio
import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import msal

from healthsync.errors import AuthError, ProviderUnavailableError
from healthsync.store.kv import write_private

logger = logging.getLogger(__name__)

CACHE_FILE_NAME = "msal_cache.json"


@dataclass
class TokenResult:
    """A successful token response, normalized."""

    access_token: str
    expires_in: int
    account: Dict[str, Any] = field(default_factory=dict)

    @property
    def account_id(self) -> str:
        return self.account.get("home_account_id", "")

    @property
    def username(self) -> str:
        return self.account.get("username", "")


class MsalCredentialProvider:
    """
    Wraps msal.PublicClientApplication behind the operations the engine uses.

    Usage:
        provider = MsalCredentialProvider(client_id, authority, scopes, cache_dir)
        await provider.initialize()
        result = await provider.login_interactive()
    """

    def __init__(
        self,
        client_id: str,
        authority: str,
        scopes: List[str],
        cache_dir: Path,
        *,
        login_mode: str = "interactive",
        interactive_timeout: int = 60,
        redirect_uri: Optional[str] = None,
    ):
        self._client_id = client_id
        self._authority = authority
        self._scopes = list(scopes)
        self._cache_dir = Path(cache_dir)
        self._cache_file = self._cache_dir / CACHE_FILE_NAME
        self._login_mode = login_mode
        self._interactive_timeout = interactive_timeout
        self._redirect_uri = redirect_uri
        self._cache = msal.SerializableTokenCache()
        self._app: Optional[msal.PublicClientApplication] = None
        self._pending_flow: Optional[Dict[str, Any]] = None

    @property
    def is_configured(self) -> bool:
        return bool(self._client_id)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """
        Build the MSAL application (idempotent).

        Raises:
            ProviderUnavailableError: if no client id is configured, or MSAL
                can't be constructed here (bad authority, no network for
                instance discovery, unreadable cache).
        """
        if self._app is not None:
            return
        if not self.is_configured:
            raise ProviderUnavailableError(
                "OneDrive sync is unavailable: MICROSOFT_CLIENT_ID is not configured."
            )
        try:
            await self._run(self._build_app)
        except Exception as exc:
            raise ProviderUnavailableError(
                f"OneDrive sync is unavailable in this environment: {exc}"
            ) from exc
        logger.info("MSAL initialized (authority=%s)", self._authority)

    def _build_app(self) -> None:
        if self._cache_file.exists():
            self._cache.deserialize(self._cache_file.read_text())
        self._app = msal.PublicClientApplication(
            self._client_id,
            authority=self._authority,
            token_cache=self._cache,
        )

    # ── Accounts ──────────────────────────────────────────────────────────────

    async def get_accounts(self) -> List[Dict[str, Any]]:
        app = self._require_app()
        return await self._run(app.get_accounts)

    # ── Token acquisition ─────────────────────────────────────────────────────

    async def acquire_token_silent(
        self, account: Dict[str, Any], force_refresh: bool = False
    ) -> TokenResult:
        """
        Raises:
            AuthError: if MSAL has no usable token or refresh token.
        """
        app = self._require_app()
        result = await self._run(
            app.acquire_token_silent_with_error,
            self._scopes,
            account=account,
            force_refresh=force_refresh,
        )
        return self._finish(result, fallback_account=account)

    async def login_interactive(self) -> TokenResult:
        """
        Run the configured interactive flow.

        Raises:
            AuthError: if the user cancels, times out, or consent fails.
        """
        app = self._require_app()
        if self._login_mode == "device_code":
            flow = await self._run(app.initiate_device_flow, scopes=self._scopes)
            if "user_code" not in flow:
                raise AuthError(f"Could not start device login: {flow.get('error_description', flow)}")
            print(flow["message"], flush=True)
            # Blocks until the code is redeemed or flow["expires_at"] passes
            result = await self._run(app.acquire_token_by_device_flow, flow)
        else:
            result = await self._run(
                app.acquire_token_interactive,
                self._scopes,
                timeout=self._interactive_timeout,
            )
        return self._finish(result)

    async def begin_redirect_login(self, redirect_uri: Optional[str] = None) -> str:
        """Start an auth-code flow and return the URL to send the browser to."""
        app = self._require_app()
        flow = await self._run(
            app.initiate_auth_code_flow,
            self._scopes,
            redirect_uri=redirect_uri or self._redirect_uri,
        )
        self._pending_flow = flow
        return flow["auth_uri"]

    async def handle_redirect_completion(
        self, auth_response: Dict[str, str]
    ) -> Optional[TokenResult]:
        """
        Complete a redirect login from the query parameters of the callback.

        Returns None when no redirect login is pending.

        Raises:
            AuthError: on state mismatch or an error response.
        """
        if self._pending_flow is None:
            return None
        app = self._require_app()
        flow, self._pending_flow = self._pending_flow, None
        try:
            result = await self._run(app.acquire_token_by_auth_code_flow, flow, auth_response)
        except ValueError as exc:  # state mismatch / malformed response
            raise AuthError(f"Login redirect could not be completed: {exc}") from exc
        return self._finish(result)

    async def logout(self) -> None:
        """Remove every account (and its tokens) from the cache."""
        app = self._require_app()
        for account in await self._run(app.get_accounts):
            await self._run(app.remove_account, account)
        self._save_cache()

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _require_app(self) -> msal.PublicClientApplication:
        if self._app is None:
            raise ProviderUnavailableError("Identity provider is not initialized")
        return self._app

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    def _finish(
        self,
        result: Optional[Dict[str, Any]],
        fallback_account: Optional[Dict[str, Any]] = None,
    ) -> TokenResult:
        if not result:
            raise AuthError("No cached token is available for this account")
        if "access_token" not in result:
            raise AuthError(
                result.get("error_description") or result.get("error") or "Token request failed"
            )
        self._save_cache()
        account = self._match_account(result) or fallback_account or {}
        return TokenResult(
            access_token=result["access_token"],
            expires_in=int(result.get("expires_in", 3600)),
            account=account,
        )

    def _match_account(self, result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        claims = result.get("id_token_claims") or {}
        username = claims.get("preferred_username")
        accounts = self._app.get_accounts(username=username) if username else []
        return accounts[0] if accounts else None

    def _save_cache(self) -> None:
        """Persist the token cache with owner-only permissions."""
        if not self._cache.has_state_changed:
            return
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._cache_dir, stat.S_IRWXU)  # 0700
        write_private(self._cache_file, self._cache.serialize())  # 0600
        self._cache.has_state_changed = False
