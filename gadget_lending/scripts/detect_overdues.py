#!/usr/bin/env python3
"""Cron entry point for the overdue scanner.

Same job as ``POST /functions/detect-overdues``; useful where the scheduler
can run a command but not call HTTP.
"""

from __future__ import annotations

import argparse
import logging
import os
from datetime import date, datetime, time

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from gadget_lending.services.overdue_scanner import detect_overdues


LOGGER = logging.getLogger("gadget_lending.scanner")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Charge overdue fines for rentals past their due date.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("GADGET_LENDING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to GADGET_LENDING_DB_URL env var.",
    )
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Run as if today were this date (YYYY-MM-DD).",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    if not args.db_url:
        parser.error("Missing DB URL. Set GADGET_LENDING_DB_URL or pass --db-url.")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    now = datetime.combine(args.today, time(hour=12)) if args.today else datetime.now()

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    with session_factory() as db:
        try:
            result = detect_overdues(db, now=now)
        except SQLAlchemyError:
            LOGGER.exception("Error processing overdue rentals")
            print("Error processing overdue rentals")
            return 1

    print(result.message())
    return 1 if result.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
