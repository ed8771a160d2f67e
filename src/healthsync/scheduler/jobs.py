"""
APScheduler jobs for background sync.

Three kinds of job live on the runtime's scheduler:

  nightly_sync      cron at AUTO_SYNC_HOUR (only when configured); pulls,
                    merges and pushes every logical table
  url_cache_sweep   interval; drops expired attachment URLs
  token_renewal     date; added and replaced by CredentialManager after
                    every successful token acquisition

The scheduler runs inside the same event loop as the API (wired in
SyncRuntime.start()).
"""
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

NIGHTLY_SYNC_JOB_ID = "nightly_sync"


def build_scheduler(runtime) -> AsyncIOScheduler:
    """
    Configure the runtime's APScheduler.

    Args:
        runtime: SyncRuntime whose scheduler, broker and orchestrator are used.

    Returns:
        The configured AsyncIOScheduler (not yet started).
    """
    settings = runtime.settings
    scheduler = runtime.scheduler

    if settings.auto_sync_hour is not None:
        scheduler.add_job(
            _nightly_sync,
            trigger="cron",
            hour=settings.auto_sync_hour,
            minute=0,
            id=NIGHTLY_SYNC_JOB_ID,
            replace_existing=True,
            kwargs={"runtime": runtime},
        )
        logger.info("Nightly sync scheduled at %02d:00", settings.auto_sync_hour)

    runtime.broker.start(scheduler)
    return scheduler


async def _nightly_sync(runtime) -> None:
    """
    Nightly job: sync every logical table for the default user.

    Idempotent: merging is newest-wins and the push overwrites.
    """
    settings = runtime.settings
    orchestrator = runtime.orchestrator
    logger.info("Nightly sync starting at %s", datetime.now(timezone.utc).isoformat())

    try:
        state = await orchestrator.check_connection()
        if not state.is_authenticated:
            logger.warning("Nightly sync skipped: not connected to OneDrive")
            return
        state = await orchestrator.sync_all_tables(settings.default_user_id)
        if state.error:
            logger.warning("Nightly sync finished with errors: %s", state.error)
        else:
            logger.info("Nightly sync finished")

    except Exception as exc:
        logger.error("Nightly sync failed: %s", exc)
