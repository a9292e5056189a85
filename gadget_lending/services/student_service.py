from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from gadget_lending.models.lending_models import Rental, Student, Transaction


ACCOUNT_STATUSES = ("Active", "Pending", "Suspended")


class StudentInUseError(ValueError):
    pass


def email_taken(db: Session, email: str, exclude_student_id: int | None = None) -> bool:
    stmt = select(Student.student_id).where(Student.email == email.strip().lower())
    if exclude_student_id:
        stmt = stmt.where(Student.student_id != exclude_student_id)
    return db.execute(stmt).first() is not None


def ensure_student_deletable(db: Session, student: Student) -> None:
    has_rental = db.execute(
        select(Rental.rental_id).where(Rental.student_id == student.student_id).limit(1)
    ).first()
    has_transaction = db.execute(
        select(Transaction.transaction_id).where(Transaction.student_id == student.student_id).limit(1)
    ).first()
    if has_rental is not None or has_transaction is not None:
        raise StudentInUseError(f"{student.name} has rental or payment history and cannot be deleted. Suspend the account instead.")


def serialize_student(student: Student) -> dict:
    return {
        "studentID": student.student_id,
        "name": student.name,
        "email": student.email,
        "phoneNumber": student.phone_number,
        "major": student.major,
        "year": student.year,
        "accountStatus": student.account_status,
        "createdAt": student.created_at,
    }
