"""
ResourceAccessBroker — short-lived download URLs for record attachments.

Attachments live in <app folder>/attachments/ under a deterministic name:

    <recordType>_<recordId>_<uploadedAtMillis>_<originalFileName>

Graph hands out pre-authenticated download URLs that expire after a few
minutes, and the API is rate-limited, so resolution goes through three
layers:

  1. URL cache:      a URL younger than the TTL (5 min) is returned as-is.
  2. Coalescing:     concurrent requests for the same file share one
                     in-flight task; only one metadata lookup is issued.
  3. Admission:      at most N (3) lookups run at once; extra callers
                     wait on a semaphore.

A 401/403 means the session is gone: the auth-failure callback flips the
orchestrator's authenticated flag before AuthError is raised, so the
next user action forces a reconnect.

The cache sweep is an APScheduler interval job registered by start() and
removed by stop().
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from healthsync.drive.client import DOWNLOAD_URL_KEY, DriveClient
from healthsync.errors import (
    AttachmentNotFoundError,
    AttachmentResolutionError,
    AuthError,
    NotFoundError,
    SyncError,
)

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

ATTACHMENTS_FOLDER = "attachments"
URL_CACHE_TTL_SECONDS = 5 * 60
URL_CACHE_SWEEP_SECONDS = 2 * 60
MAX_CONCURRENT_RESOLUTIONS = 3
MAX_FILE_SIZE = 10 * 1024 * 1024
SWEEP_JOB_ID = "url_cache_sweep"


@dataclass(frozen=True)
class AttachmentRef:
    """Where an attachment lives and which record owns it."""

    file_name: str
    record_type: str
    record_id: str
    uploaded_at_millis: int
    original_name: str


def build_attachment_name(
    record_type: str,
    record_id: str,
    uploaded_at_millis: int,
    original_name: str,
) -> str:
    return f"{record_type}_{record_id}_{uploaded_at_millis}_{original_name}"


def parse_attachment_name(file_name: str) -> AttachmentRef:
    """
    Split a stored attachment name back into its parts.

    The original file name may itself contain underscores; only the first
    three separators are significant. Record types and ids must not contain
    underscores.

    Raises:
        ValueError: if the name doesn't have the expected shape.
    """
    parts = file_name.split("_", 3)
    if len(parts) != 4 or not parts[2].isdigit():
        raise ValueError(f"Not an attachment file name: {file_name!r}")
    record_type, record_id, millis, original = parts
    return AttachmentRef(
        file_name=file_name,
        record_type=record_type,
        record_id=record_id,
        uploaded_at_millis=int(millis),
        original_name=original,
    )


class ResourceAccessBroker:
    """Resolves, caches and throttles attachment download URLs."""

    def __init__(
        self,
        drive: DriveClient,
        on_auth_failure: Optional[Callable[[str], None]] = None,
        *,
        ttl_seconds: float = URL_CACHE_TTL_SECONDS,
        sweep_seconds: float = URL_CACHE_SWEEP_SECONDS,
        max_concurrent: int = MAX_CONCURRENT_RESOLUTIONS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            drive: DriveClient used for metadata lookups and uploads.
            on_auth_failure: Called with an explanatory message on 401/403.
            ttl_seconds: How long a resolved URL stays valid in the cache.
            sweep_seconds: Interval of the cache sweep job.
            max_concurrent: Cap on simultaneous outbound lookups.
            clock: Returns epoch seconds (patched in tests).
        """
        self._drive = drive
        self._on_auth_failure = on_auth_failure
        self._ttl = ttl_seconds
        self._sweep_seconds = sweep_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._pending: Dict[str, "asyncio.Task[str]"] = {}
        self._slots = asyncio.Semaphore(max_concurrent)
        self._max_concurrent = max_concurrent
        self._active = 0
        self._scheduler = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self, scheduler) -> None:
        """Register the periodic cache sweep on an APScheduler scheduler."""
        self._scheduler = scheduler
        scheduler.add_job(
            self.sweep,
            trigger="interval",
            seconds=self._sweep_seconds,
            id=SWEEP_JOB_ID,
            replace_existing=True,
        )

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.get_job(SWEEP_JOB_ID):
            self._scheduler.remove_job(SWEEP_JOB_ID)
        self._scheduler = None

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def active_requests(self) -> int:
        return self._active

    def cached_url(self, file_name: str) -> Optional[str]:
        entry = self._cache.get(file_name)
        if entry and self._clock() - entry[1] < self._ttl:
            return entry[0]
        return None

    # ── Resolution ────────────────────────────────────────────────────────────

    async def resolve_attachment_url(self, file_name: str) -> str:
        """
        Return a download URL for an attachment.

        Raises:
            AttachmentNotFoundError: if the file doesn't exist.
            AuthError: if the drive rejected the session.
            AttachmentResolutionError: for any other failure.
        """
        cached = self.cached_url(file_name)
        if cached:
            return cached

        task = self._pending.get(file_name)
        if task is None:
            task = asyncio.ensure_future(self._resolve(file_name))
            self._pending[file_name] = task
            task.add_done_callback(lambda _t, name=file_name: self._pending.pop(name, None))
        return await asyncio.shield(task)

    async def _resolve(self, file_name: str) -> str:
        async with self._slots:
            self._active += 1
            try:
                metadata = await self._drive.get_item_metadata(
                    self._drive.app_path(ATTACHMENTS_FOLDER, file_name)
                )
            except AuthError as exc:
                message = f"Attachment access was denied, please reconnect OneDrive: {exc}"
                logger.warning("Auth failure resolving %s", file_name)
                if self._on_auth_failure is not None:
                    self._on_auth_failure(message)
                raise AuthError(message) from exc
            except NotFoundError as exc:
                raise AttachmentNotFoundError(f"Attachment not found: {file_name}") from exc
            except SyncError as exc:
                raise AttachmentResolutionError(
                    f"Failed to resolve attachment {file_name}: {exc}",
                    status_code=getattr(exc, "status_code", 0),
                ) from exc
            finally:
                self._active -= 1

        url = metadata.get(DOWNLOAD_URL_KEY)
        if not url:
            raise AttachmentResolutionError(f"No download URL returned for {file_name}")

        self._cache[file_name] = (url, self._clock())
        return url

    def invalidate(self, file_name: str) -> None:
        self._cache.pop(file_name, None)

    def sweep(self) -> int:
        """Drop cache entries older than the TTL. Returns how many were removed."""
        now = self._clock()
        expired = [name for name, (_, at) in self._cache.items() if now - at >= self._ttl]
        for name in expired:
            del self._cache[name]
        if expired:
            logger.debug("Swept %d expired attachment URLs", len(expired))
        return len(expired)

    # ── Upload / delete ───────────────────────────────────────────────────────

    async def upload_attachment(
        self,
        record_type: str,
        record_id: str,
        original_name: str,
        content: bytes,
        content_type: str = "application/octet-stream",
        uploaded_at_millis: Optional[int] = None,
    ) -> AttachmentRef:
        """
        Upload an attachment under its deterministic name.

        Raises:
            ValueError: if content exceeds MAX_FILE_SIZE.
        """
        if len(content) > MAX_FILE_SIZE:
            raise ValueError(
                f"Attachment is {len(content)} bytes; the limit is {MAX_FILE_SIZE}"
            )
        millis = uploaded_at_millis if uploaded_at_millis is not None else int(self._clock() * 1000)
        file_name = build_attachment_name(record_type, record_id, millis, original_name)
        await self._drive.write_file(
            self._drive.app_path(ATTACHMENTS_FOLDER, file_name),
            content,
            content_type=content_type,
        )
        return AttachmentRef(
            file_name=file_name,
            record_type=record_type,
            record_id=record_id,
            uploaded_at_millis=millis,
            original_name=original_name,
        )

    async def delete_attachment(self, file_name: str) -> None:
        self.invalidate(file_name)
        await self._drive.delete_item(self._drive.app_path(ATTACHMENTS_FOLDER, file_name))
