from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from gadget_lending.models.lending_models import DamageAssessment, Rental, Transaction
from gadget_lending.services.audit_service import log_audit
from gadget_lending.services.change_feed import change_feed
from gadget_lending.services.fee_policy import assessment_fine_type
from gadget_lending.services.fee_service import new_transaction
from gadget_lending.services.lifecycle import ASSESSMENT_PENDING, ASSESSMENT_RESOLVED, FLAG_DAMAGE, Event
from gadget_lending.services.rental_service import apply_rental_event


LOGGER = logging.getLogger("gadget_lending.lifecycle")


class AssessmentError(ValueError):
    pass


def flag_damage(
    db: Session,
    rental: Rental,
    initial_notes: str,
    fine_amount: float | None = None,
    admin_id: int | None = None,
) -> DamageAssessment:
    applied = apply_rental_event(
        db,
        rental,
        Event(FLAG_DAMAGE, notes=initial_notes, fine_amount=fine_amount),
        admin_id=admin_id,
    )
    return applied.assessments[0]


def load_assessment(db: Session, assessment_id: int) -> DamageAssessment | None:
    return db.execute(
        select(DamageAssessment)
        .options(selectinload(DamageAssessment.rental).selectinload(Rental.student))
        .where(DamageAssessment.assessment_id == assessment_id)
    ).scalars().first()


def list_assessments(db: Session, status: str | None = None, search: str | None = None) -> list[DamageAssessment]:
    stmt = (
        select(DamageAssessment)
        .options(selectinload(DamageAssessment.rental).selectinload(Rental.student))
        .order_by(DamageAssessment.created_at.desc(), DamageAssessment.assessment_id.desc())
    )
    if status:
        stmt = stmt.where(DamageAssessment.status == status)
    assessments = list(db.execute(stmt).scalars().all())
    query = (search or "").strip().lower()
    if query:
        assessments = [
            a for a in assessments
            if query in (a.initial_notes or "").lower()
            or query in (a.final_notes or "").lower()
            or (a.rental and a.rental.student and query in a.rental.student.name.lower())
        ]
    return assessments


def _ensure_pending(assessment: DamageAssessment) -> None:
    if assessment.status != ASSESSMENT_PENDING:
        raise AssessmentError(f"Assessment {assessment.assessment_id} is already {assessment.status}.")


def _commit(db: Session, description: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        LOGGER.exception("Rolled back %s", description)
        raise


def update_assessment(
    db: Session,
    assessment: DamageAssessment,
    fields: dict,
    admin_id: int | None = None,
) -> DamageAssessment:
    _ensure_pending(assessment)
    if "fine_amount" in fields and fields["fine_amount"] is not None and fields["fine_amount"] < 0:
        raise AssessmentError("fineAmount must not be negative.")
    for name, value in fields.items():
        setattr(assessment, name, value)
    log_audit(db, "DamageAssessment", assessment.assessment_id, "UpdateAssessment", ", ".join(sorted(fields)), admin_id=admin_id)
    _commit(db, f"assessment update {assessment.assessment_id}")
    change_feed.publish({"damage_assessments"})
    return assessment


def create_fine(db: Session, assessment: DamageAssessment, admin_id: int | None = None) -> Transaction:
    _ensure_pending(assessment)
    if assessment.transaction_id is not None:
        raise AssessmentError("This assessment has already been charged. Resolve it without a new fine.")
    amount = float(assessment.fine_amount or 0)
    if amount <= 0:
        raise AssessmentError("Set a fine amount before creating a fine.")
    rental = assessment.rental
    if rental is None or rental.student_id is None:
        raise AssessmentError("Assessment is missing its rental or student.")

    when = datetime.now()
    fine_type = assessment_fine_type(assessment.final_notes, assessment.initial_notes)
    entry = new_transaction(rental.student_id, rental.rental_id, fine_type, amount, when)
    db.add(entry)
    assessment.fine_transaction = entry
    assessment.status = ASSESSMENT_RESOLVED
    assessment.resolved_at = when
    log_audit(db, "DamageAssessment", assessment.assessment_id, "CreateFine", f"{fine_type} {amount:.2f}", admin_id=admin_id)
    _commit(db, f"fine creation for assessment {assessment.assessment_id}")
    LOGGER.info("Assessment %s charged %s %.2f rental=%s", assessment.assessment_id, fine_type, amount, rental.rental_id)
    change_feed.publish({"damage_assessments", "transactions"})
    return entry


def resolve_without_fine(db: Session, assessment: DamageAssessment, admin_id: int | None = None) -> DamageAssessment:
    _ensure_pending(assessment)
    assessment.status = ASSESSMENT_RESOLVED
    assessment.resolved_at = datetime.now()
    log_audit(db, "DamageAssessment", assessment.assessment_id, "Resolve", None, admin_id=admin_id)
    _commit(db, f"assessment resolution {assessment.assessment_id}")
    change_feed.publish({"damage_assessments"})
    return assessment


def serialize_assessment(assessment: DamageAssessment) -> dict:
    rental = assessment.rental
    student = rental.student if rental else None
    return {
        "assessmentID": assessment.assessment_id,
        "rentalID": assessment.rental_id,
        "studentID": student.student_id if student else None,
        "studentName": student.name if student else None,
        "initialNotes": assessment.initial_notes,
        "finalNotes": assessment.final_notes,
        "fineAmount": float(assessment.fine_amount) if assessment.fine_amount is not None else None,
        "status": assessment.status,
        "transactionID": assessment.transaction_id,
        "createdAt": assessment.created_at,
        "resolvedAt": assessment.resolved_at,
    }
