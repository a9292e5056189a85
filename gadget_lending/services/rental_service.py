from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from gadget_lending.models.lending_models import (
    DamageAssessment,
    Gadget,
    Rental,
    RentalExtension,
    RentalItem,
    Student,
    Transaction,
)
from gadget_lending.services.audit_service import log_audit
from gadget_lending.services.change_feed import change_feed
from gadget_lending.services.fee_policy import FeePolicy
from gadget_lending.services.fee_service import new_transaction
from gadget_lending.services.lifecycle import (
    APPROVED,
    ASSESSMENT_PENDING,
    EXTEND,
    ONGOING,
    PENDING,
    AddAssessment,
    AddTransaction,
    Event,
    RentalRuleError,
    RentalSnapshot,
    SetGadgetStatus,
    Transition,
    UpdateRental,
    effective_status,
    normalize_status,
    plan_new_rental,
    transition,
)


LOGGER = logging.getLogger("gadget_lending.lifecycle")

EXTENSION_PENDING = "Pending"
EXTENSION_APPROVED = "Approved"
EXTENSION_REJECTED = "Rejected"


class ExtensionError(ValueError):
    pass


@dataclass
class AppliedChange:
    rental: Rental
    outcome: Transition
    transactions: list[Transaction] = field(default_factory=list)
    assessments: list[DamageAssessment] = field(default_factory=list)


def rental_query():
    return (
        select(Rental)
        .options(selectinload(Rental.rental_items).selectinload(RentalItem.gadget))
        .options(selectinload(Rental.student))
        .options(selectinload(Rental.assessments))
        .options(selectinload(Rental.extensions))
    )


def load_rental(db: Session, rental_id: int) -> Rental | None:
    return db.execute(rental_query().where(Rental.rental_id == rental_id)).scalars().first()


def list_rentals(
    db: Session,
    status: str | None = None,
    student_id: int | None = None,
    today: date | None = None,
) -> list[Rental]:
    stmt = rental_query().order_by(Rental.rental_date.desc(), Rental.rental_id.desc())
    if student_id:
        stmt = stmt.where(Rental.student_id == student_id)
    rentals = list(db.execute(stmt).scalars().all())
    if status:
        rentals = [r for r in rentals if effective_status(r.rental_status, r.due_date, today) == status]
    return rentals


def snapshot_rental(db: Session, rental: Rental) -> RentalSnapshot:
    gadget_statuses = tuple(
        (item.gadget_id, item.gadget.status if item.gadget else "")
        for item in rental.rental_items
    )
    return RentalSnapshot(
        rental_id=rental.rental_id,
        student_id=rental.student_id,
        status=rental.rental_status,
        due_date=rental.due_date,
        gadget_statuses=gadget_statuses,
    )


def _gadgets_by_id(rental: Rental) -> dict[int, Gadget]:
    return {item.gadget_id: item.gadget for item in rental.rental_items if item.gadget is not None}


def _apply_effects(db: Session, rental: Rental, outcome: Transition, when: datetime) -> AppliedChange:
    applied = AppliedChange(rental=rental, outcome=outcome)
    charged: dict[str, Transaction] = {}
    gadgets = _gadgets_by_id(rental)

    for effect in outcome.effects:
        if isinstance(effect, UpdateRental):
            for name, value in effect.fields.items():
                setattr(rental, name, value)
            rental.updated_at = when
        elif isinstance(effect, SetGadgetStatus):
            for gadget_id in effect.gadget_ids:
                gadget = gadgets.get(gadget_id) or db.get(Gadget, gadget_id)
                if gadget is None:
                    continue
                gadget.status = effect.status
                gadget.updated_at = when
        elif isinstance(effect, AddTransaction):
            entry = new_transaction(rental.student_id, rental.rental_id, effect.transaction_type, effect.amount, when)
            db.add(entry)
            charged[effect.transaction_type] = entry
            applied.transactions.append(entry)
        elif isinstance(effect, AddAssessment):
            assessment = DamageAssessment(
                rental=rental,
                initial_notes=effect.initial_notes,
                fine_amount=effect.fine_amount,
                status=ASSESSMENT_PENDING,
                created_at=when,
            )
            if effect.charged_by and effect.charged_by in charged:
                assessment.fine_transaction = charged[effect.charged_by]
            db.add(assessment)
            applied.assessments.append(assessment)
    return applied


def _commit(db: Session, description: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        LOGGER.exception("Rolled back %s", description)
        raise


def _describe(outcome: Transition) -> str:
    parts = [f"{outcome.previous_status} -> {outcome.new_status}"]
    for entry in outcome.transactions():
        parts.append(f"{entry.transaction_type} {entry.amount:.2f}")
    return "; ".join(parts)


def create_rental(
    db: Session,
    student: Student,
    gadget_ids: list[int],
    due_date: date,
    notes: str | None = None,
    admin_id: int | None = None,
    now: datetime | None = None,
    policy: FeePolicy | None = None,
) -> AppliedChange:
    when = now or datetime.now()
    gadgets = []
    for gadget_id in gadget_ids:
        gadget = db.get(Gadget, gadget_id)
        if gadget is None:
            raise RentalRuleError(f"Gadget {gadget_id} not found.")
        gadgets.append(gadget)

    outcome = plan_new_rental(
        student.account_status,
        [(gadget.gadget_id, gadget.status) for gadget in gadgets],
        due_date,
        today=when.date(),
        policy=policy,
    )

    rental = Rental(
        student_id=student.student_id,
        rental_date=when,
        due_date=due_date,
        rental_status=PENDING,
        notes=notes,
        updated_at=when,
    )
    for gadget in gadgets:
        rental.rental_items.append(RentalItem(gadget=gadget, quantity=1))

    try:
        db.add(rental)
        db.flush()
        applied = _apply_effects(db, rental, outcome, when)
        log_audit(db, "Rental", rental.rental_id, "CreateRental", f"{len(gadgets)} gadget(s) due {due_date}", admin_id=admin_id)
    except SQLAlchemyError:
        db.rollback()
        LOGGER.exception("Rolled back rental creation for student_id=%s", student.student_id)
        raise
    _commit(db, f"rental creation for student_id={student.student_id}")
    LOGGER.info("Rental %s created student_id=%s gadgets=%s", rental.rental_id, student.student_id, gadget_ids)
    change_feed.publish({"rentals", "rental_items", "gadgets", "transactions"})
    return applied


def apply_rental_event(
    db: Session,
    rental: Rental,
    event: Event,
    admin_id: int | None = None,
    now: datetime | None = None,
    policy: FeePolicy | None = None,
) -> AppliedChange:
    when = now or datetime.now()
    outcome = transition(snapshot_rental(db, rental), event, now=when, policy=policy)
    try:
        applied = _apply_effects(db, rental, outcome, when)
        log_audit(db, "Rental", rental.rental_id, event.kind, _describe(outcome), admin_id=admin_id)
    except SQLAlchemyError:
        db.rollback()
        LOGGER.exception("Rolled back %s on rental %s", event.kind, rental.rental_id)
        raise
    _commit(db, f"{event.kind} on rental {rental.rental_id}")
    LOGGER.info("Rental %s %s: %s", rental.rental_id, event.kind, _describe(outcome))
    change_feed.publish(outcome.touched_tables)
    return applied


def request_extension(
    db: Session,
    rental: Rental,
    new_due_date: date,
    request_date: date | None = None,
    admin_id: int | None = None,
) -> RentalExtension:
    current = normalize_status(rental.rental_status)
    if current not in {APPROVED, ONGOING}:
        raise ExtensionError(f"Only Approved or Ongoing rentals can be extended; rental is {current}.")
    if rental.due_date and new_due_date <= rental.due_date:
        raise ExtensionError("newDueDate must be after the current due date.")

    extension = RentalExtension(
        rental=rental,
        request_date=request_date or date.today(),
        new_due_date=new_due_date,
        status=EXTENSION_PENDING,
    )
    db.add(extension)
    log_audit(db, "Rental", rental.rental_id, "RequestExtension", f"Requested new due date {new_due_date}", admin_id=admin_id)
    _commit(db, f"extension request on rental {rental.rental_id}")
    change_feed.publish({"rental_extensions"})
    return extension


def _ensure_pending(extension: RentalExtension) -> None:
    if extension.status != EXTENSION_PENDING:
        raise ExtensionError(f"Extension {extension.extension_id} is already {extension.status}.")


def approve_extension(
    db: Session,
    extension: RentalExtension,
    admin_id: int | None = None,
    now: datetime | None = None,
    policy: FeePolicy | None = None,
) -> AppliedChange:
    _ensure_pending(extension)
    when = now or datetime.now()
    rental = load_rental(db, extension.rental_id)
    outcome = transition(
        snapshot_rental(db, rental),
        Event(EXTEND, new_due_date=extension.new_due_date),
        now=when,
        policy=policy,
    )
    try:
        applied = _apply_effects(db, rental, outcome, when)
        extension.status = EXTENSION_APPROVED
        extension.admin_id = admin_id
        extension.decided_at = when
        log_audit(db, "RentalExtension", extension.extension_id, "ApproveExtension", f"Due date -> {extension.new_due_date}", admin_id=admin_id)
    except SQLAlchemyError:
        db.rollback()
        LOGGER.exception("Rolled back extension approval %s", extension.extension_id)
        raise
    _commit(db, f"extension approval {extension.extension_id}")
    LOGGER.info("Extension %s approved rental=%s due=%s", extension.extension_id, rental.rental_id, extension.new_due_date)
    change_feed.publish(outcome.touched_tables | {"rental_extensions"})
    return applied


def reject_extension(db: Session, extension: RentalExtension, admin_id: int | None = None) -> RentalExtension:
    _ensure_pending(extension)
    extension.status = EXTENSION_REJECTED
    extension.admin_id = admin_id
    extension.decided_at = datetime.now()
    log_audit(db, "RentalExtension", extension.extension_id, "RejectExtension", None, admin_id=admin_id)
    _commit(db, f"extension rejection {extension.extension_id}")
    change_feed.publish({"rental_extensions"})
    return extension


def serialize_extension(extension: RentalExtension) -> dict:
    return {
        "extensionID": extension.extension_id,
        "rentalID": extension.rental_id,
        "requestDate": extension.request_date,
        "newDueDate": extension.new_due_date,
        "status": extension.status,
        "adminID": extension.admin_id,
        "decidedAt": extension.decided_at,
    }


def serialize_rental(rental: Rental, today: date | None = None) -> dict:
    student = rental.student
    rental_items = []
    for item in rental.rental_items:
        gadget = item.gadget
        rental_items.append(
            {
                "rentalItemID": item.rental_item_id,
                "gadgetID": item.gadget_id,
                "quantity": item.quantity,
                "gadget": {
                    "gadgetID": gadget.gadget_id,
                    "gadgetName": gadget.gadget_name,
                    "serialNumber": gadget.serial_number,
                    "status": gadget.status,
                } if gadget else None,
            }
        )

    return {
        "rentalID": rental.rental_id,
        "studentID": rental.student_id,
        "student": {
            "studentID": student.student_id,
            "name": student.name,
            "email": student.email,
            "major": student.major,
        } if student else None,
        "rentalDate": rental.rental_date,
        "dueDate": rental.due_date,
        "pickupDate": rental.pickup_date,
        "returnDate": rental.return_date,
        "rentalStatus": normalize_status(rental.rental_status),
        "displayStatus": effective_status(rental.rental_status, rental.due_date, today),
        "notes": rental.notes,
        "hasPendingAssessment": any(a.status == ASSESSMENT_PENDING for a in rental.assessments),
        "hasPendingExtension": any(e.status == EXTENSION_PENDING for e in rental.extensions),
        "rentalItems": rental_items,
    }
