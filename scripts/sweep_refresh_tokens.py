#!/usr/bin/env python3
"""
Delete expired and long-revoked refresh tokens.

Expired tokens are removed immediately; revoked tokens are kept for
REFRESH_TOKEN_RETENTION_DAYS so reuse of a rotated token is still
recognized and logged. Intended for cron.

Usage:
    # Sweep with configured retention (default - for cron)
    python3 -m scripts.sweep_refresh_tokens

    # Keep revoked tokens longer
    python3 -m scripts.sweep_refresh_tokens --retention-days 30
"""

import argparse
import asyncio
from datetime import timedelta

from billforge.config import settings
from billforge.db.session import close_engines, get_write_session
from billforge.observability import get_logger, setup_logging
from billforge.services.session_manager import SessionManager
from billforge.services.token_codec import TokenCodec

logger = get_logger("billforge.scripts.sweep_refresh_tokens")


async def sweep(retention_days: int) -> int:
    """Run one sweep; returns the number of rows deleted."""
    codec = TokenCodec.from_settings(settings)
    async with get_write_session() as session:
        manager = SessionManager(session, codec)
        return await manager.sweep_expired(retention=timedelta(days=retention_days))


async def _run(retention_days: int) -> None:
    try:
        await sweep(retention_days)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(description="Sweep expired BillForge refresh tokens")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.refresh_token_retention_days,
        help="Days to keep revoked tokens (default: REFRESH_TOKEN_RETENTION_DAYS)",
    )
    args = parser.parse_args()
    if args.retention_days < settings.refresh_token_retention_days:
        parser.error(
            f"--retention-days must be at least {settings.refresh_token_retention_days}"
        )

    setup_logging()
    asyncio.run(_run(args.retention_days))


if __name__ == "__main__":
    main()
