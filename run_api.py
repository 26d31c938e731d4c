"""
Dashboard launcher: `python run_api.py`.

All configuration comes from the environment / .env (see dm_dashboard.config).
Bot tokens are never configured here; the dashboard receives them through
POST /api/discord/validate-token.
"""

import logging
import sys

STARTUP_HINTS = (
    "PORT is already taken by another process (or HOST is not a local address)",
    "DISCORD_API_BASE / DISCORD_CDN_BASE must start with http:// or https://",
    "HTTP_TIMEOUT_S must be in (0, 120]",
    "MEMBER_PAGE_SIZE must be 1..1000; MEMBER_FETCH_LIMIT must be >= 0",
    "SEND_DELAY_DEFAULT_MS / SEND_DELAY_MAX_MS must be >= 0",
    "fastapi / uvicorn / httpx not installed: pip install -e .",
)


def main() -> None:
    try:
        # Settings are read on import, so bad .env values fail inside this try
        from dm_dashboard.main import run

        run()
    except Exception:
        logging.basicConfig(level=logging.ERROR)
        logging.exception("Discord DM dashboard failed to start.")
        print("\nDiscord DM dashboard failed to start. Check:", file=sys.stderr)
        for hint in STARTUP_HINTS:
            print(f"   - {hint}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
