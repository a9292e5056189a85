"""Batch job that charges overdue fines.

Run by an external schedule. Overdue is a derived status, so the job only
writes ledger entries; it never rewrites the rental status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from gadget_lending.models.lending_models import Rental
from gadget_lending.services.audit_service import log_audit
from gadget_lending.services.change_feed import change_feed
from gadget_lending.services.fee_policy import OVERDUE_FINE, FeePolicy, scanner_overdue_fine
from gadget_lending.services.fee_service import has_overdue_fine, new_transaction
from gadget_lending.services.lifecycle import ONGOING, OVERDUE


LOGGER = logging.getLogger("gadget_lending.scanner")


@dataclass
class ScanResult:
    matched: int = 0
    created: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    def message(self) -> str:
        if not self.matched:
            return "No overdue rentals found"
        return (
            f"Overdue detection complete: {len(self.created)} fine(s) created, "
            f"{len(self.skipped)} skipped, {len(self.failed)} failed"
        )


def find_overdue_rentals(db: Session, today: date) -> list[tuple[int, int, date]]:
    rows = db.execute(
        select(Rental.rental_id, Rental.student_id, Rental.due_date)
        .where(Rental.rental_status.in_([ONGOING, OVERDUE]))
        .where(Rental.due_date.is_not(None))
        .where(Rental.due_date < today)
        .order_by(Rental.rental_id)
    ).all()
    return [(row[0], row[1], row[2]) for row in rows]


def _charge_rental(
    db: Session,
    rental_id: int,
    student_id: int,
    due_date: date,
    when: datetime,
    policy: FeePolicy | None,
) -> bool:
    if has_overdue_fine(db, rental_id):
        return False
    amount = scanner_overdue_fine(due_date, when, policy)
    db.add(new_transaction(student_id, rental_id, OVERDUE_FINE, amount, when))
    log_audit(db, "Rental", rental_id, "OverdueFine", f"Scanner fine {amount:.2f} due {due_date}")
    db.commit()
    LOGGER.info("Created overdue fine rental_id=%s amount=%.2f", rental_id, amount)
    return True


def detect_overdues(
    db: Session,
    now: datetime | None = None,
    policy: FeePolicy | None = None,
) -> ScanResult:
    when = now or datetime.now()
    result = ScanResult()
    overdue = find_overdue_rentals(db, when.date())
    result.matched = len(overdue)
    if not overdue:
        LOGGER.info("No overdue rentals found")
        return result

    LOGGER.info("Found %s overdue rentals", len(overdue))
    for rental_id, student_id, due_date in overdue:
        try:
            if _charge_rental(db, rental_id, student_id, due_date, when, policy):
                result.created.append(rental_id)
            else:
                result.skipped.append(rental_id)
        except Exception:
            db.rollback()
            result.failed.append(rental_id)
            LOGGER.exception("Overdue fine failed rental_id=%s", rental_id)

    if result.created:
        change_feed.publish({"transactions"})
    return result
