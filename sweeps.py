"""Maintenance sweeps for order/payment consistency.

    python sweeps.py repair-status
    python sweeps.py cancel-stale --hours 24
"""

import argparse
import sys

import structlog

import database
from config import Settings
from logconfig import configure_logging
from orders import cancel_stale_pending, repair_lagging_status

logger = structlog.get_logger(__name__)


def main(argv=None) -> int:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="Order consistency sweeps")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("repair-status", help="mark paid orders whose status lagged as delivered")
    stale = sub.add_parser("cancel-stale", help="cancel unpaid pending orders")
    stale.add_argument("--hours", type=int, default=settings.stale_order_hours)
    args = parser.parse_args(argv)

    configure_logging(settings.log_level, settings.log_json)
    db = database.connect(settings.database_url, settings.database_name)
    if db is None:
        logger.error("sweep_aborted", reason="DATABASE_URL and DATABASE_NAME must be set")
        return 1

    if args.command == "repair-status":
        count = repair_lagging_status(db)
    else:
        count = cancel_stale_pending(db, args.hours)
    logger.info("sweep_finished", command=args.command, count=count)
    return 0


if __name__ == "__main__":
    sys.exit(main())
