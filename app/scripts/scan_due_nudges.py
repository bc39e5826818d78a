from __future__ import annotations

"""Eligibility scanner entrypoint.

One tick (cron / Railway schedule every minute):
    python -m app.scripts.scan_due_nudges
Long-running loop instead of Celery beat:
    python -m app.scripts.scan_due_nudges --loop
"""

import argparse
import asyncio
import logging

from app.services.wiring import build_services
from app.workers.notification import CeleryJobQueue
from config import settings
import db

_LOGGER = logging.getLogger(__name__)


async def main(loop: bool = False) -> None:
    services = build_services(db.get_session_maker(), CeleryJobQueue(), settings)
    try:
        if loop:
            await services.scanner.run(settings.SMS_SCAN_INTERVAL)
        else:
            summary = await services.scanner.scan_once()
            _LOGGER.info(
                "[CRON] scan_due_nudges: users=%d enqueued=%s errors=%d",
                summary.users_seen, summary.enqueued, summary.errors,
            )
    finally:
        await db.dispose_engine()


if __name__ == "__main__":  # pragma: no cover
    parser = argparse.ArgumentParser(description="Enqueue due SMS nudges")
    parser.add_argument("--loop", action="store_true", help="keep scanning every SMS_SCAN_INTERVAL seconds")
    args = parser.parse_args()

    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    _LOGGER.info("[CRON] scan_due_nudges: job started")
    try:
        asyncio.run(main(loop=args.loop))
        _LOGGER.info("[CRON] scan_due_nudges: job completed successfully")
    except KeyboardInterrupt:
        _LOGGER.info("[CRON] scan_due_nudges: stopped")
