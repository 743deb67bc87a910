import argparse
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

import structlog

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from studiodesk.core.communications import (  # noqa: E402
    schedule_birthday_greetings,
    schedule_post_care_followups,
)
from studiodesk.core.logging_config import setup_logging  # noqa: E402
from studiodesk.core.messaging import build_message_sender  # noqa: E402
from studiodesk.core.reminders import process_pending_reminders  # noqa: E402
from studiodesk.db import SessionLocal, init_db  # noqa: E402

logger = structlog.get_logger("studiodesk.reminder_worker")


def process_once() -> dict:
    """Queue birthday greetings and post-care follow-ups, then send whatever is due."""
    sender = build_message_sender()
    now = datetime.now(timezone.utc)
    with SessionLocal() as db:
        schedule_birthday_greetings(db, now)
        schedule_post_care_followups(db, now)
        return process_pending_reminders(db, now, sender)


def main() -> int:
    parser = argparse.ArgumentParser(description="StudioDesk reminder worker")
    parser.add_argument("--poll-seconds", type=float, default=60.0, help="Seconds between polls")
    parser.add_argument("--once", action="store_true", help="Process due reminders once and exit")
    args = parser.parse_args()

    setup_logging()
    init_db()
    while True:
        summary = process_once()
        if summary["processed"]:
            logger.info("reminder_batch_done", **summary)
        if args.once:
            break
        time.sleep(max(1.0, float(args.poll_seconds)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
