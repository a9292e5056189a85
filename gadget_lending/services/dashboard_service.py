from __future__ import annotations

from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from gadget_lending.models.lending_models import Gadget, Rental, Student, Transaction
from gadget_lending.services.fee_service import PAID, UNPAID, serialize_transaction
from gadget_lending.services.lifecycle import (
    GADGET_AVAILABLE,
    GADGET_IN_USE,
    GADGET_LOST,
    ONGOING,
    OVERDUE,
    effective_status,
)


def build_dashboard(db: Session, today: date | None = None) -> dict:
    today = today or date.today()

    gadget_counts = dict(
        db.execute(select(Gadget.status, func.count(Gadget.gadget_id)).group_by(Gadget.status)).all()
    )
    rental_states = [
        effective_status(status, due_date, today)
        for status, due_date in db.execute(select(Rental.rental_status, Rental.due_date)).all()
    ]
    totals = dict(
        db.execute(
            select(Transaction.status, func.coalesce(func.sum(Transaction.amount), 0)).group_by(Transaction.status)
        ).all()
    )
    recent = db.execute(
        select(Transaction)
        .options(selectinload(Transaction.student))
        .order_by(Transaction.transaction_date.desc(), Transaction.transaction_id.desc())
        .limit(5)
    ).scalars().all()

    return {
        "gadgets": {
            "total": sum(gadget_counts.values()),
            "available": gadget_counts.get(GADGET_AVAILABLE, 0),
            "inUse": gadget_counts.get(GADGET_IN_USE, 0),
            "lost": gadget_counts.get(GADGET_LOST, 0),
        },
        "rentals": {
            "total": len(rental_states),
            # overdue rentals are still ongoing
            "ongoing": sum(1 for state in rental_states if state in {ONGOING, OVERDUE}),
            "overdue": sum(1 for state in rental_states if state == OVERDUE),
        },
        "unpaidTotal": float(totals.get(UNPAID, 0) or 0),
        "paidTotal": float(totals.get(PAID, 0) or 0),
        "students": db.execute(select(func.count(Student.student_id))).scalar() or 0,
        "recentTransactions": [serialize_transaction(t) for t in recent],
    }
