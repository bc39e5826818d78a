from __future__ import annotations

"""Manually enqueue one nudge for a user.

    python -m app.scripts.trigger_sms 42 morning_nudge
    python -m app.scripts.trigger_sms 42 evening_reminder --force --bypass-guard

``--force`` ignores quiet hours. ``--bypass-guard`` sends even if today's
message already went out (the record is kept outside the daily key).
"""

import argparse
import asyncio
import logging
import sys

from app.services.errors import ValidationError
from app.services.wiring import build_services
from app.types.sms_contract import MessageType
from app.workers.notification import CeleryJobQueue
from config import settings
import db

_LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manually trigger an SMS nudge")
    parser.add_argument("user_id", type=int)
    parser.add_argument("message_type", choices=[t.value for t in MessageType])
    parser.add_argument("--force", action="store_true", help="ignore quiet hours")
    parser.add_argument("--bypass-guard", action="store_true", help="skip the once-per-day check")
    return parser.parse_args(argv)


async def main(args: argparse.Namespace) -> str | None:
    services = build_services(db.get_session_maker(), CeleryJobQueue(), settings)
    try:
        return await services.trigger.trigger(
            args.user_id,
            MessageType(args.message_type),
            force=args.force,
            bypass_guard=args.bypass_guard,
        )
    finally:
        await db.dispose_engine()


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    try:
        queue_id = asyncio.run(main(parse_args()))
    except ValidationError as exc:
        _LOGGER.error("[Trigger] %s", exc)
        sys.exit(2)
    if queue_id is None:
        print("Already sent today; nothing queued (use --bypass-guard to override)")
        sys.exit(1)
    print(f"Queued {queue_id}")
