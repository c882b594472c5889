#!/usr/bin/env python3
import argparse, sys

from supportdesk.services.notifications import run_daily_digest
from supportdesk.storage.db import SessionLocal, init_db
from supportdesk.storage.models import now_ms
from supportdesk.util.logger import get_logger

log = get_logger("tools.daily_digest")


def main(argv=None):
    p = argparse.ArgumentParser(description="Email the daily conversation digests and sentiment warnings.")
    p.add_argument("--hours", type=float, default=24, help="Look-back window in hours")
    p.add_argument("--threshold", type=float, default=None, help="Warn below this sentiment")
    args = p.parse_args(argv)

    init_db()
    since = now_ms() - int(args.hours * 3600 * 1000)
    db = SessionLocal()
    try:
        result = run_daily_digest(db, since, threshold=args.threshold)
    finally:
        db.close()
    log.info("daily digest done", result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
