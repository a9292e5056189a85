from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import event, inspect, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from gadget_lending.models.lending_models import Student, Transaction
from gadget_lending.services.audit_service import log_audit
from gadget_lending.services.change_feed import change_feed
from gadget_lending.services.fee_policy import OVERDUE_FINE


UNPAID = "Unpaid"
PAID = "Paid"
TRANSACTION_STATUSES = (UNPAID, PAID)
IMMUTABLE_FIELDS = ("transaction_type", "amount", "rental_id", "student_id")

LOGGER = logging.getLogger("gadget_lending.ledger")


class LedgerImmutableError(ValueError):
    pass


@event.listens_for(Transaction, "before_update")
def _guard_ledger_entry(mapper, connection, target: Transaction) -> None:
    state = inspect(target)
    for name in IMMUTABLE_FIELDS:
        if state.attrs[name].history.has_changes():
            raise LedgerImmutableError(f"Transaction {target.transaction_id}: {name} cannot change after creation.")
    status_history = state.attrs.status.history
    if status_history.has_changes() and PAID in (status_history.deleted or ()) and target.status != PAID:
        raise LedgerImmutableError(f"Transaction {target.transaction_id} is already paid.")


def new_transaction(
    student_id: int,
    rental_id: int | None,
    transaction_type: str,
    amount: float,
    when: datetime | None = None,
) -> Transaction:
    return Transaction(
        student_id=student_id,
        rental_id=rental_id,
        transaction_type=transaction_type,
        amount=round(float(amount), 2),
        status=UNPAID,
        transaction_date=when or datetime.now(),
    )


def has_overdue_fine(db: Session, rental_id: int) -> bool:
    existing = db.execute(
        select(Transaction.transaction_id)
        .where(Transaction.rental_id == rental_id)
        .where(Transaction.transaction_type == OVERDUE_FINE)
        .limit(1)
    ).first()
    return existing is not None


def mark_paid(db: Session, transaction: Transaction, admin_id: int | None = None) -> bool:
    """Settle an unpaid entry. Returns False when it was already paid."""
    if transaction.status == PAID:
        return False
    transaction.status = PAID
    transaction.paid_at = datetime.now()
    log_audit(db, "Transaction", transaction.transaction_id, "MarkPaid", f"{transaction.transaction_type} {float(transaction.amount):.2f}", admin_id=admin_id)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        LOGGER.exception("Mark paid failed transaction_id=%s", transaction.transaction_id)
        raise
    change_feed.publish({"transactions"})
    return True


def list_transactions(
    db: Session,
    status: str | None = None,
    transaction_type: str | None = None,
    student_id: int | None = None,
    search: str | None = None,
) -> list[Transaction]:
    stmt = (
        select(Transaction)
        .options(selectinload(Transaction.student))
        .join(Student, Student.student_id == Transaction.student_id)
        .order_by(Transaction.transaction_date.desc(), Transaction.transaction_id.desc())
    )
    if status:
        stmt = stmt.where(Transaction.status == status)
    if transaction_type:
        stmt = stmt.where(Transaction.transaction_type == transaction_type)
    if student_id:
        stmt = stmt.where(Transaction.student_id == student_id)
    query = (search or "").strip()
    if query:
        stmt = stmt.where(
            or_(
                Student.name.ilike(f"%{query}%"),
                Transaction.transaction_type.ilike(f"%{query}%"),
            )
        )
    return list(db.execute(stmt).scalars().all())


def serialize_transaction(transaction: Transaction) -> dict:
    student = transaction.student
    return {
        "transactionID": transaction.transaction_id,
        "studentID": transaction.student_id,
        "studentName": student.name if student else None,
        "rentalID": transaction.rental_id,
        "transactionType": transaction.transaction_type,
        "amount": float(transaction.amount or 0),
        "status": transaction.status,
        "transactionDate": transaction.transaction_date,
        "paidAt": transaction.paid_at,
    }
