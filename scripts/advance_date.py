"""
Nightly date advance.

Fires advance_date on every plan year that is not in a final state and
persists the ones that move (open enrollment opens/closes, coverage starts,
plan years expire, scheduled terminations take effect).

Usage:
  python scripts/advance_date.py [--date YYYY-MM-DD] [--dry-run]
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("advance_date")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Advance plan years to the date of record.")
    parser.add_argument("--date", help="Date of record to advance to (YYYY-MM-DD). Defaults to DATE_OF_RECORD or today.")
    parser.add_argument("--dry-run", action="store_true", help="Report moves without writing them.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    from app.hbx import create_app
    from app.hbx.db import session_scope
    from app.hbx.modules.plan_years.service import advance_date_for_all
    from app.hbx.timekeeper import date_of_record

    app = create_app()
    with app.app_context():
        today = date.fromisoformat(args.date) if args.date else date_of_record()
        settings = app.extensions["shop_market_settings"]
        with session_scope(app) as s:
            moves = advance_date_for_all(s, settings=settings, today=today, dry_run=args.dry_run)
            if args.dry_run:
                s.rollback()

    for move in moves:
        logger.info("plan_year=%s %s -> %s", move["plan_year_id"], move["from"], move["to"])
    logger.info("advance_date %s complete: %s plan years moved%s", today, len(moves), " (dry run)" if args.dry_run else "")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
