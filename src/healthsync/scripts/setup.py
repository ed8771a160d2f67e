"""
Interactive setup wizard: connects this machine to OneDrive.

Signs in with the configured login mode (a local browser window, or a
device code when LOGIN_MODE=device_code) and stores the MSAL token cache
and session in ~/.healthsync/ with owner-only permissions (0700 dir /
0600 files).

After setup, the API, the scheduler and the CLI all renew tokens
silently from the cache; no password is ever stored.

Usage:
    python -m healthsync setup
    python -m healthsync.scripts.setup   (direct invocation)

Re-run any time the session can no longer be renewed.
"""
import asyncio
import sys

from healthsync.runtime import build_runtime


async def _setup(runtime) -> int:
    orchestrator = runtime.orchestrator
    settings = runtime.settings

    print("\n☁️  HealthSync — OneDrive Setup\n")
    print(f"Tokens will be stored in: {settings.state_dir}\n")

    state = await orchestrator.check_connection()
    if not state.is_available:
        print(f"❌ OneDrive is unavailable: {state.unavailability_reason}")
        print("Set MICROSOFT_CLIENT_ID in .env and try again.")
        return 1

    if state.is_authenticated:
        username = (state.user_info or {}).get("username", "unknown account")
        print(f"⚠️  Already connected as {username}.")
        overwrite = input("Sign in again? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Setup cancelled. Existing session unchanged.")
            return 0
        await orchestrator.disconnect()

    print("Signing in to Microsoft...")
    state = await orchestrator.connect()
    if not state.is_authenticated:
        print(f"\n❌ Login failed: {state.error}")
        return 1

    username = (state.user_info or {}).get("username", "")
    print(f"\n✅ Connected as {username}")
    print(f"   App folder: {settings.app_folder}")
    print("\nIf the session ever expires, just re-run:  python -m healthsync setup\n")
    return 0


def run_setup() -> None:
    runtime = build_runtime()
    sys.exit(asyncio.run(_setup(runtime)))


if __name__ == "__main__":
    run_setup()
