"""
Main entrypoint: CLI commands, or the scheduler daemon.

The HTTP API runs separately under uvicorn.

Usage:
    python -m healthsync setup            # one-time OneDrive sign-in
    python -m healthsync status           # print the sync state
    python -m healthsync export [table]   # push every table, or one
    python -m healthsync sync [table]     # pull + merge + push, all tables or one
    python -m healthsync import           # pull + merge every table
    python -m healthsync                  # starts the scheduler (nightly sync)
    uvicorn healthsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import json
import logging
import sys
from typing import List, Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

COMMANDS = ("setup", "status", "export", "sync", "import")


def _run_setup() -> None:
    from healthsync.scripts.setup import run_setup
    run_setup()


async def _run_command(command: str, table: Optional[str] = None) -> int:
    from healthsync.runtime import build_runtime

    runtime = build_runtime()
    orchestrator = runtime.orchestrator
    user_id = runtime.settings.default_user_id

    await runtime.start()
    try:
        if command == "status":
            state = orchestrator.state
        elif command == "export":
            if table:
                state = await orchestrator.export_table(table, user_id)
            else:
                state = await orchestrator.export_data(user_id)
        elif command == "sync":
            if table:
                state = await orchestrator.sync_table(table, user_id)
            else:
                state = await orchestrator.sync_all_tables(user_id)
        else:
            state = await orchestrator.start_sync(user_id)
    finally:
        await runtime.stop()

    print(json.dumps(state.to_dict(), indent=2))
    if command != "status" and state.sync_status.value == "error":
        return 1
    if not state.is_authenticated and command != "status":
        logger.error("Not connected to OneDrive. Run `python -m healthsync setup` first.")
        return 1
    return 0


async def _run_daemon() -> None:
    from healthsync.runtime import build_runtime

    runtime = build_runtime()
    await runtime.start()
    if not runtime.store.state.is_authenticated:
        logger.warning(
            "Not connected to OneDrive. Run `python -m healthsync setup` first."
        )
    if runtime.settings.auto_sync_hour is None:
        logger.info("AUTO_SYNC_HOUR not set, only the cache sweep will run.")

    logger.info("Scheduler is running. Press Ctrl+C to stop.")
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        await runtime.stop()
        logger.info("Goodbye.")


def main(argv: List[str]) -> None:
    if not argv:
        asyncio.run(_run_daemon())
        return
    command = argv[0]
    if command not in COMMANDS:
        print(__doc__)
        sys.exit(2)
    if command == "setup":
        _run_setup()
        return
    table = argv[1] if len(argv) > 1 else None
    sys.exit(asyncio.run(_run_command(command, table)))


if __name__ == "__main__":
    main(sys.argv[1:])
