from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from gadget_lending.db.base import Base


class Student(Base):
    __tablename__ = "students"

    student_id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    phone_number = Column(String(50))
    major = Column(String(255))
    year = Column(Integer)
    account_status = Column(String(20), nullable=False, default="Active")
    created_at = Column(DateTime, server_default=func.now())

    rentals = relationship("Rental", back_populates="student")
    transactions = relationship("Transaction", back_populates="student")


class GadgetType(Base):
    __tablename__ = "gadget_types"

    type_id = Column(Integer, primary_key=True)
    type_name = Column(String(100), nullable=False, unique=True)
    description = Column(String(500))

    gadgets = relationship("Gadget", back_populates="gadget_type")


class Gadget(Base):
    __tablename__ = "gadgets"

    gadget_id = Column(Integer, primary_key=True)
    serial_number = Column(String(100), nullable=False, unique=True)
    gadget_name = Column(String(255), nullable=False)
    type_id = Column(Integer, ForeignKey("gadget_types.type_id"))
    price_per_day = Column(Numeric(10, 2))
    status = Column(String(20), nullable=False, default="Available")
    image_url = Column(String(1000))
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    gadget_type = relationship("GadgetType", back_populates="gadgets")
    rental_items = relationship("RentalItem", back_populates="gadget")


class Rental(Base):
    __tablename__ = "rentals"

    rental_id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("students.student_id"), nullable=False)
    rental_date = Column(DateTime, server_default=func.now())
    due_date = Column(Date)
    pickup_date = Column(DateTime)
    return_date = Column(DateTime)
    rental_status = Column(String(20), nullable=False, default="Pending")
    notes = Column(String(1000))
    updated_at = Column(DateTime, server_default=func.now())

    student = relationship("Student", back_populates="rentals")
    rental_items = relationship("RentalItem", back_populates="rental", cascade="all, delete-orphan")
    extensions = relationship("RentalExtension", back_populates="rental", order_by="RentalExtension.extension_id")
    assessments = relationship("DamageAssessment", back_populates="rental", order_by="DamageAssessment.assessment_id")
    transactions = relationship("Transaction", back_populates="rental")


class RentalItem(Base):
    __tablename__ = "rental_items"

    rental_item_id = Column(Integer, primary_key=True)
    rental_id = Column(Integer, ForeignKey("rentals.rental_id"), nullable=False)
    gadget_id = Column(Integer, ForeignKey("gadgets.gadget_id"), nullable=False)
    quantity = Column(Integer, default=1)

    rental = relationship("Rental", back_populates="rental_items")
    gadget = relationship("Gadget", back_populates="rental_items")


class RentalExtension(Base):
    __tablename__ = "rental_extensions"

    extension_id = Column(Integer, primary_key=True)
    rental_id = Column(Integer, ForeignKey("rentals.rental_id"), nullable=False)
    request_date = Column(Date)
    new_due_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default="Pending")
    admin_id = Column(Integer, ForeignKey("admins.admin_id"))
    decided_at = Column(DateTime)

    rental = relationship("Rental", back_populates="extensions")


class DamageAssessment(Base):
    __tablename__ = "damage_assessments"

    assessment_id = Column(Integer, primary_key=True)
    rental_id = Column(Integer, ForeignKey("rentals.rental_id"), nullable=False)
    initial_notes = Column(String(2000))
    final_notes = Column(String(2000))
    fine_amount = Column(Numeric(10, 2))
    status = Column(String(20), nullable=False, default="Pending")
    transaction_id = Column(Integer, ForeignKey("transactions.transaction_id"))
    created_at = Column(DateTime, server_default=func.now())
    resolved_at = Column(DateTime)

    rental = relationship("Rental", back_populates="assessments")
    fine_transaction = relationship("Transaction")


class Transaction(Base):
    __tablename__ = "transactions"

    transaction_id = Column(Integer, primary_key=True)
    student_id = Column(Integer, ForeignKey("students.student_id"), nullable=False)
    rental_id = Column(Integer, ForeignKey("rentals.rental_id"))
    transaction_type = Column(String(30), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default="Unpaid")
    transaction_date = Column(DateTime, server_default=func.now())
    paid_at = Column(DateTime)

    student = relationship("Student", back_populates="transactions")
    rental = relationship("Rental", back_populates="transactions")


class Admin(Base):
    __tablename__ = "admins"

    admin_id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    role = Column(String(30), nullable=False, default="Staff Admin")
    password_hash = Column(String(256))
    password_salt = Column(String(64))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"

    audit_id = Column(Integer, primary_key=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    action = Column(String(100), nullable=False)
    details = Column(String(2000))
    admin_id = Column(Integer)
    created_at = Column(DateTime, server_default=func.now())
