"""
Async wrapper around the Microsoft Graph drive API.

requests is synchronous; we run it in a thread pool executor so it
doesn't block the asyncio event loop.

Paths are relative to the drive root ("Apps/HealthCalendar/users.json")
and addressed with Graph's path syntax:

    GET  /me/drive/root:/{path}              → item metadata
    GET  /me/drive/root:/{path}:/content     → file body
    PUT  /me/drive/root:/{path}:/content     → create or overwrite file
    GET  /me/drive/root:/{path}:/children    → folder listing (paged)
    POST /me/drive/root:/{parent}:/children  → create folder

Every call fetches a bearer token from the token callable just before the
request, so an expired session is never used (CredentialManager decides).
HTTP failures are translated into the healthsync.errors taxonomy:

    transport failure          → ConnectivityError
    401, 403                   → AuthError
    404                        → NotFoundError
    anything else ≥ 400        → DriveError
    2xx with a non-JSON body   → DriveError (for calls that expect JSON)
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import quote

import requests

from healthsync.errors import AuthError, ConnectivityError, DriveError, NotFoundError

logger = logging.getLogger(__name__)

GRAPH_BASE_URL_DEFAULT = "https://graph.microsoft.com/v1.0"
DOWNLOAD_URL_KEY = "@microsoft.graph.downloadUrl"

TokenProvider = Callable[[], Awaitable[str]]


class DriveClient:
    """
    Thin async wrapper over the Graph /me/drive endpoints.

    Args:
        token_provider: Async callable returning a valid access token
                        (CredentialManager.get_access_token).
        app_folder: Application folder path under the drive root.
        base_url: Graph API root.
        timeout: Per-request transport timeout in seconds.
        session: Optional requests.Session (injected in tests).
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        app_folder: str = "Apps/HealthCalendar",
        base_url: str = GRAPH_BASE_URL_DEFAULT,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self._token_provider = token_provider
        self.app_folder = app_folder.strip("/")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http = session or requests.Session()

    # ─── Paths ────────────────────────────────────────────────────────────────

    def app_path(self, *parts: str) -> str:
        """Join parts under the application folder."""
        return "/".join([self.app_folder, *[p.strip("/") for p in parts if p]])

    def _item_url(self, path: str, suffix: str = "") -> str:
        path = path.strip("/")
        if not path or path == "root":
            return f"{self._base_url}/me/drive/root{'/' + suffix if suffix else ''}"
        encoded = quote(path, safe="/")
        return f"{self._base_url}/me/drive/root:/{encoded}{':/' + suffix if suffix else ''}"

    # ─── HTTP plumbing ────────────────────────────────────────────────────────

    async def _run(self, fn, *args, **kwargs):
        """Run a blocking requests call in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    async def _request(
        self,
        method: str,
        url: str,
        *,
        data: Optional[Union[str, bytes]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        content_type: Optional[str] = None,
    ) -> requests.Response:
        token = await self._token_provider()
        headers = {"Authorization": f"Bearer {token}"}
        if content_type:
            headers["Content-Type"] = content_type

        try:
            resp = await self._run(
                self._http.request,
                method,
                url,
                headers=headers,
                data=data,
                json=json_body,
                timeout=self._timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise ConnectivityError(f"OneDrive is unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise ConnectivityError(f"OneDrive request failed in transit: {exc}") from exc

        _raise_for_status(resp, method, url)
        return resp

    # ─── Drive operations ─────────────────────────────────────────────────────

    async def check_connectivity(self) -> Dict[str, Any]:
        """Fetch the drive resource; raises if the drive can't be reached."""
        resp = await self._request("GET", f"{self._base_url}/me/drive")
        return _json(resp)

    async def folder_exists(self, path: str) -> bool:
        try:
            await self._request("GET", self._item_url(path))
            return True
        except NotFoundError:
            return False

    async def create_folder(self, parent: str, name: str) -> Dict[str, Any]:
        """Create a folder under parent ("root" for the drive root)."""
        body = {
            "name": name,
            "folder": {},
            "@microsoft.graph.conflictBehavior": "fail",
        }
        try:
            resp = await self._request("POST", self._item_url(parent, "children"), json_body=body)
        except DriveError as exc:
            if exc.status_code != 409:
                raise
            # Created concurrently by another caller
            child = name if parent == "root" else f"{parent.strip('/')}/{name}"
            return await self.get_item_metadata(child)
        logger.info("Created folder %s/%s", parent, name)
        return _json(resp)

    async def ensure_app_folder(self) -> str:
        """Create every missing segment of the application folder path."""
        parent = "root"
        built: List[str] = []
        for segment in self.app_folder.split("/"):
            built.append(segment)
            path = "/".join(built)
            if not await self.folder_exists(path):
                await self.create_folder(parent, segment)
            parent = path
        return self.app_folder

    async def read_file(self, path: str) -> str:
        resp = await self._request("GET", self._item_url(path, "content"))
        return resp.text

    async def read_item(self, item_id: str) -> str:
        resp = await self._request(
            "GET", f"{self._base_url}/me/drive/items/{quote(item_id, safe='')}/content"
        )
        return resp.text

    async def download_item(self, item_id: str) -> Tuple[bytes, str]:
        """Fetch an item's raw body by id; returns (body, content type)."""
        resp = await self._request(
            "GET", f"{self._base_url}/me/drive/items/{quote(item_id, safe='')}/content"
        )
        return resp.content, resp.headers.get("Content-Type", "")

    async def write_file(
        self,
        path: str,
        content: Union[str, bytes],
        content_type: str = "application/json",
    ) -> Dict[str, Any]:
        """Upload content to path, replacing any existing file."""
        if isinstance(content, str):
            content = content.encode("utf-8")
        resp = await self._request(
            "PUT",
            self._item_url(path, "content"),
            data=content,
            content_type=content_type,
        )
        logger.info("Uploaded %s (%d bytes)", path, len(content))
        return _json(resp)

    async def list_children(self, path: str) -> List[Dict[str, Any]]:
        """List a folder's children, following @odata.nextLink pages."""
        items: List[Dict[str, Any]] = []
        url: Optional[str] = self._item_url(path, "children")
        while url:
            page = _json(await self._request("GET", url))
            items.extend(page.get("value", []))
            url = page.get("@odata.nextLink")
        return items

    async def get_item_metadata(self, path: str) -> Dict[str, Any]:
        resp = await self._request("GET", self._item_url(path))
        return _json(resp)

    async def delete_item(self, path: str) -> None:
        await self._request("DELETE", self._item_url(path))
        logger.info("Deleted %s", path)


def _raise_for_status(resp: requests.Response, method: str, url: str) -> None:
    status = resp.status_code
    if status < 400:
        return
    detail = _error_message(resp)
    if status in (401, 403):
        raise AuthError(
            f"OneDrive rejected the credentials ({status}): {detail}. Please reconnect.",
            status_code=status,
        )
    if status == 404:
        raise NotFoundError(f"Not found: {method} {url}")
    raise DriveError(f"OneDrive request failed ({status}): {detail}", status_code=status)


def _json(resp: requests.Response) -> Dict[str, Any]:
    try:
        return resp.json()
    except ValueError as exc:
        raise DriveError(
            f"OneDrive returned an unreadable response ({resp.status_code}): {exc}",
            status_code=resp.status_code,
        ) from exc


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.reason or "unknown error"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or "unknown error"
    return resp.reason or "unknown error"
