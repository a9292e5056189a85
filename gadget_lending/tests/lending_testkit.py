import os
from datetime import datetime

os.environ.setdefault("GADGET_LENDING_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)

from sqlalchemy import func, select

from gadget_lending.db.base import Base
from gadget_lending.db.session import SessionLocalLending, engine_lending
from gadget_lending.models.lending_models import Admin, Gadget, GadgetType, Student
from gadget_lending.services.admin_access_service import set_password
from gadget_lending.services.fee_policy import FeePolicy


TEST_POLICY = FeePolicy(
    rental_fee=200.0,
    extension_fee=100.0,
    lost_fine=3000.0,
    return_overdue_rate_per_day=50.0,
    scanner_overdue_rate_per_day=20.0,
)


def reset_database() -> None:
    Base.metadata.drop_all(engine_lending)
    Base.metadata.create_all(engine_lending)


def new_session():
    return SessionLocalLending()


def add_student(db, name: str = "Maria Santos", email: str | None = None, status: str = "Active") -> Student:
    student = Student(
        name=name,
        email=email or f"{name.lower().replace(' ', '.')}@campus.edu",
        major="Computer Engineering",
        year=3,
        account_status=status,
        created_at=datetime.now(),
    )
    db.add(student)
    db.commit()
    return student


def add_gadget(db, name: str = "Arduino Uno", status: str = "Available", serial: str | None = None) -> Gadget:
    gadget_type = db.execute(select(GadgetType).where(GadgetType.type_name == "Microcontroller")).scalars().first()
    if gadget_type is None:
        gadget_type = GadgetType(type_name="Microcontroller")
        db.add(gadget_type)
        db.flush()
    count = db.execute(select(func.count(Gadget.gadget_id))).scalar() or 0
    gadget = Gadget(
        gadget_name=name,
        serial_number=serial or f"TEST-{count + 1:04d}",
        type_id=gadget_type.type_id,
        price_per_day=25,
        status=status,
        created_at=datetime.now(),
        updated_at=datetime.now(),
    )
    db.add(gadget)
    db.commit()
    return gadget


def add_admin(db, email: str = "admin@campus.edu", password: str = "correct-horse", role: str = "Super Admin") -> Admin:
    admin = Admin(email=email, name="Test Admin", role=role, is_active=True, created_at=datetime.now())
    set_password(admin, password)
    db.add(admin)
    db.commit()
    return admin
