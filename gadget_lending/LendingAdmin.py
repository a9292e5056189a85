import hmac
import logging
import os
from datetime import date, datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy import or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from starlette.middleware.sessions import SessionMiddleware

from dotenv import load_dotenv

load_dotenv()

from gadget_lending.db.deps import get_lending_db
from gadget_lending.models.lending_models import (
    Admin,
    Gadget,
    GadgetType,
    RentalExtension,
    Student,
    Transaction,
)
from gadget_lending.schemas.admins import AdminCreate, LoginRequest, PasswordChange
from gadget_lending.schemas.inventory import GadgetTypeCreate, GadgetUpsert
from gadget_lending.schemas.rentals import (
    AssessmentUpdate,
    CreateRentalDto,
    ExtensionRequestDto,
    FlagDamageRequest,
    RentalEventRequest,
)
from gadget_lending.schemas.students import StudentUpsert
from gadget_lending.services.admin_access_service import (
    STAFF_ADMIN,
    SUPER_ADMIN,
    authenticate,
    check_login_guard,
    create_admin,
    create_session,
    record_login_failure,
    record_login_success,
    remove_session,
    resolve_session_admin,
    serialize_admin,
    set_password,
    verify_password,
)
from gadget_lending.services.assessment_service import (
    AssessmentError,
    create_fine,
    flag_damage,
    list_assessments,
    load_assessment,
    resolve_without_fine,
    serialize_assessment,
    update_assessment,
)
from gadget_lending.services.audit_service import log_audit
from gadget_lending.services.change_feed import change_feed
from gadget_lending.services.dashboard_service import build_dashboard
from gadget_lending.services.fee_service import list_transactions, mark_paid, serialize_transaction
from gadget_lending.services.inventory_service import (
    GadgetInUseError,
    GadgetReferencedError,
    ensure_gadget_deletable,
    find_type_by_name,
    generate_next_serial_number,
    serial_in_use,
    serialize_gadget,
    serialize_gadget_type,
)
from gadget_lending.services.lifecycle import (
    APPROVE,
    GADGET_AVAILABLE,
    GADGET_STATUSES,
    MARK_LOST,
    PENDING,
    PICK_UP,
    REJECT,
    RETURN,
    Event,
    InvalidTransitionError,
    RentalRuleError,
)
from gadget_lending.services.overdue_scanner import detect_overdues
from gadget_lending.services.rental_service import (
    ExtensionError,
    apply_rental_event,
    approve_extension,
    create_rental,
    list_rentals,
    load_rental,
    reject_extension,
    request_extension,
    serialize_extension,
    serialize_rental,
)
from gadget_lending.services.student_service import (
    StudentInUseError,
    email_taken,
    ensure_student_deletable,
    serialize_student,
)

app = FastAPI()

def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="gadget_lending_session",
    same_site="lax",
    https_only=False,
)

OVERDUE_SCANNER_KEY = (os.environ.get("OVERDUE_SCANNER_KEY") or "").strip()
AUTH_LOGGER = logging.getLogger("gadget_lending.auth")
SCANNER_LOGGER = logging.getLogger("gadget_lending.scanner")

_GADGET_FIELDS = {
    "gadgetName": "gadget_name",
    "serialNumber": "serial_number",
    "typeID": "type_id",
    "pricePerDay": "price_per_day",
    "status": "status",
    "imageUrl": "image_url",
}
_STUDENT_FIELDS = {
    "name": "name",
    "email": "email",
    "phoneNumber": "phone_number",
    "major": "major",
    "year": "year",
    "accountStatus": "account_status",
}
_ASSESSMENT_FIELDS = {
    "initialNotes": "initial_notes",
    "finalNotes": "final_notes",
    "fineAmount": "fine_amount",
}


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _audit_auth_event(db: Session, *, action: str, details: str, admin_id: int | None = None) -> None:
    try:
        log_audit(db, "Auth", int(admin_id or 0), action, details, admin_id=admin_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        AUTH_LOGGER.exception("Could not write auth audit action=%s", action)


def _invalid_login_error() -> HTTPException:
    return HTTPException(status_code=401, detail="Invalid credentials.")


def _session_token(request: Request, session_token: str | None) -> str | None:
    return session_token or request.session.get("token")


def _require_admin(request: Request, db: Session, session_token: str | None) -> Admin:
    admin = resolve_session_admin(db, _session_token(request, session_token))
    if admin is None:
        request.session.clear()
        raise HTTPException(status_code=401, detail="Not logged in.")
    return admin


def _require_super_admin(request: Request, db: Session, session_token: str | None) -> Admin:
    admin = _require_admin(request, db, session_token)
    if admin.role != SUPER_ADMIN:
        raise HTTPException(status_code=403, detail="Super Admin role required.")
    return admin


def _rental_or_404(db: Session, rental_id: int):
    rental = load_rental(db, rental_id)
    if not rental:
        raise HTTPException(status_code=404, detail="Rental not found")
    return rental


def _mapped_fields(payload, mapping: dict[str, str]) -> dict:
    return {mapping[name]: value for name, value in payload.model_dump(exclude_unset=True).items() if name in mapping}


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_lending_db)):
    client_ip = _get_client_ip(request)
    try:
        parsed = LoginRequest.model_validate(payload)
    except ValidationError:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=invalid_payload")
        raise HTTPException(status_code=400, detail="Invalid login request.")

    email = str(parsed.email or "").strip().lower()
    password = str(parsed.password or "")
    if not email or not password:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=missing_identity")
        raise HTTPException(status_code=400, detail="Invalid login request.")

    account_key = f"admin:{email}"
    retry_after = check_login_guard(account_key)
    if retry_after is not None:
        _audit_auth_event(db, action="LoginThrottled", details=f"ip={client_ip} key={account_key} retry_after={retry_after}")
        AUTH_LOGGER.warning("Login throttled ip=%s key=%s retry_after=%s", client_ip, account_key, retry_after)
        raise HTTPException(
            status_code=429,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    admin = authenticate(db, email, password)
    if admin is None:
        record_login_failure(account_key)
        _audit_auth_event(db, action="LoginFailed", details=f"ip={client_ip} key={account_key}")
        AUTH_LOGGER.warning("Login failed ip=%s key=%s", client_ip, account_key)
        raise _invalid_login_error()

    token = create_session(admin)
    request.session["token"] = token
    record_login_success(account_key)
    _audit_auth_event(db, action="LoginSuccess", details=f"ip={client_ip} key={account_key}", admin_id=admin.admin_id)
    AUTH_LOGGER.info("Login success ip=%s key=%s admin_id=%s", client_ip, account_key, admin.admin_id)
    return {"sessionToken": token, "admin": serialize_admin(admin)}


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    token = _session_token(request, x_session_token)
    request.session.clear()
    remove_session(token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    return {"admin": serialize_admin(admin)}


@app.get("/api/admins")
def list_admins(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    admins = db.execute(select(Admin).order_by(Admin.name)).scalars().all()
    return [serialize_admin(a) for a in admins]


@app.post("/api/admins")
def create_admin_account(
    request: Request,
    payload: AdminCreate,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_super_admin(request, db, x_session_token)
    try:
        admin = create_admin(db, payload.email, payload.name, payload.password, payload.role or STAFF_ADMIN)
        db.flush()
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Admin", admin.admin_id, "CreateAdmin", f"{admin.email} as {admin.role}", admin_id=actor.admin_id)
    db.commit()
    AUTH_LOGGER.info("Admin created admin_id=%s by=%s", admin.admin_id, actor.admin_id)
    return serialize_admin(admin)


@app.post("/api/admins/me/password")
def change_own_password(
    request: Request,
    payload: PasswordChange,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    if not verify_password(admin, payload.currentPassword):
        raise HTTPException(status_code=400, detail="Current password is incorrect.")
    try:
        set_password(admin, payload.newPassword)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_audit(db, "Admin", admin.admin_id, "ChangePassword", None, admin_id=admin.admin_id)
    db.commit()
    return {"ok": True}


@app.get("/api/students")
def get_students(
    request: Request,
    q: str = Query("", alias="q"),
    status: str | None = Query(None),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    stmt = select(Student).order_by(Student.name)
    query = (q or "").strip()
    if query:
        stmt = stmt.where(or_(Student.name.ilike(f"%{query}%"), Student.email.ilike(f"%{query}%")))
    if status:
        stmt = stmt.where(Student.account_status == status)
    return [serialize_student(s) for s in db.execute(stmt).scalars().all()]


@app.post("/api/students")
def create_student(
    request: Request,
    payload: StudentUpsert,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    fields = _mapped_fields(payload, _STUDENT_FIELDS)
    if not (fields.get("name") or "").strip() or not (fields.get("email") or "").strip():
        raise HTTPException(status_code=400, detail="name and email are required.")
    fields["email"] = fields["email"].strip().lower()
    if email_taken(db, fields["email"]):
        raise HTTPException(status_code=409, detail="A student with that email already exists.")

    student = Student(account_status="Active")
    for name, value in fields.items():
        if value is not None:
            setattr(student, name, value)
    student.created_at = datetime.now()
    db.add(student)
    db.flush()
    log_audit(db, "Student", student.student_id, "CreateStudent", student.email, admin_id=admin.admin_id)
    db.commit()
    change_feed.publish({"students"})
    return serialize_student(student)


@app.get("/api/students/{student_id}")
def get_student(
    request: Request,
    student_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    student = db.get(Student, student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    return serialize_student(student)


@app.put("/api/students/{student_id}")
def update_student(
    request: Request,
    student_id: int,
    payload: StudentUpsert,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    student = db.get(Student, student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")

    fields = _mapped_fields(payload, _STUDENT_FIELDS)
    if "email" in fields:
        fields["email"] = (fields["email"] or "").strip().lower()
        if not fields["email"]:
            raise HTTPException(status_code=400, detail="email must not be empty.")
        if email_taken(db, fields["email"], exclude_student_id=student_id):
            raise HTTPException(status_code=409, detail="A student with that email already exists.")
    if "name" in fields and not (fields["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name must not be empty.")
    if "account_status" in fields and fields["account_status"] is None:
        fields.pop("account_status")

    for name, value in fields.items():
        setattr(student, name, value)
    log_audit(db, "Student", student_id, "UpdateStudent", ", ".join(sorted(fields)), admin_id=admin.admin_id)
    db.commit()
    change_feed.publish({"students"})
    return serialize_student(student)


@app.delete("/api/students/{student_id}")
def delete_student(
    request: Request,
    student_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    student = db.get(Student, student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    try:
        ensure_student_deletable(db, student)
    except StudentInUseError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    db.delete(student)
    log_audit(db, "Student", student_id, "DeleteStudent", student.email, admin_id=admin.admin_id)
    db.commit()
    change_feed.publish({"students"})
    return {"message": "Deleted"}


@app.get("/api/students/{student_id}/rentals")
def get_student_rentals(
    request: Request,
    student_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    if not db.get(Student, student_id):
        raise HTTPException(status_code=404, detail="Student not found")
    today = date.today()
    return [serialize_rental(r, today) for r in list_rentals(db, student_id=student_id, today=today)]


@app.get("/api/gadget-types")
def get_gadget_types(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    types = db.execute(select(GadgetType).order_by(GadgetType.type_name)).scalars().all()
    return [serialize_gadget_type(t) for t in types]


@app.post("/api/gadget-types")
def create_gadget_type(
    request: Request,
    payload: GadgetTypeCreate,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    type_name = payload.typeName.strip()
    if not type_name:
        raise HTTPException(status_code=400, detail="typeName is required.")
    if find_type_by_name(db, type_name):
        raise HTTPException(status_code=409, detail=f"Gadget type '{type_name}' already exists.")

    gadget_type = GadgetType(type_name=type_name, description=payload.description)
    db.add(gadget_type)
    db.flush()
    log_audit(db, "GadgetType", gadget_type.type_id, "CreateGadgetType", type_name, admin_id=admin.admin_id)
    db.commit()
    change_feed.publish({"gadget_types"})
    return serialize_gadget_type(gadget_type)


def _validate_gadget_fields(db: Session, fields: dict, gadget_id: int | None = None) -> None:
    if "status" in fields and fields["status"] not in GADGET_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of: {', '.join(GADGET_STATUSES)}")
    if fields.get("type_id") is not None and not db.get(GadgetType, fields["type_id"]):
        raise HTTPException(status_code=400, detail=f"Gadget type {fields['type_id']} not found.")
    if fields.get("price_per_day") is not None and fields["price_per_day"] < 0:
        raise HTTPException(status_code=400, detail="pricePerDay must not be negative.")
    if fields.get("serial_number") and serial_in_use(db, fields["serial_number"], exclude_gadget_id=gadget_id):
        raise HTTPException(status_code=409, detail="Serial number already exists.")


@app.get("/api/gadgets")
def get_gadgets(
    request: Request,
    status: str | None = Query(None),
    type_id: int | None = Query(None, alias="typeID"),
    q: str = Query("", alias="q"),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    stmt = select(Gadget).options(selectinload(Gadget.gadget_type)).order_by(Gadget.gadget_name, Gadget.gadget_id)
    if status:
        stmt = stmt.where(Gadget.status == status)
    if type_id:
        stmt = stmt.where(Gadget.type_id == type_id)
    query = (q or "").strip()
    if query:
        stmt = stmt.where(or_(Gadget.gadget_name.ilike(f"%{query}%"), Gadget.serial_number.ilike(f"%{query}%")))
    return [serialize_gadget(g) for g in db.execute(stmt).scalars().all()]


@app.get("/api/gadgets/{gadget_id}")
def get_gadget(
    request: Request,
    gadget_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    gadget = db.get(Gadget, gadget_id)
    if not gadget:
        raise HTTPException(status_code=404, detail="Gadget not found")
    return serialize_gadget(gadget)


@app.post("/api/gadgets")
def create_gadget(
    request: Request,
    payload: GadgetUpsert,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    fields = _mapped_fields(payload, _GADGET_FIELDS)
    if not (fields.get("gadget_name") or "").strip():
        raise HTTPException(status_code=400, detail="gadgetName is required.")
    fields["status"] = fields.get("status") or GADGET_AVAILABLE
    _validate_gadget_fields(db, fields)

    gadget = Gadget()
    for name, value in fields.items():
        setattr(gadget, name, value)
    if not gadget.serial_number:
        gadget.serial_number = generate_next_serial_number(db)
    gadget.created_at = datetime.now()
    gadget.updated_at = datetime.now()

    db.add(gadget)
    db.flush()
    log_audit(db, "Gadget", gadget.gadget_id, "CreateGadget", gadget.serial_number, admin_id=admin.admin_id)
    db.commit()
    db.refresh(gadget)
    change_feed.publish({"gadgets"})
    return serialize_gadget(gadget)


@app.put("/api/gadgets/{gadget_id}")
def update_gadget(
    request: Request,
    gadget_id: int,
    payload: GadgetUpsert,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    gadget = db.get(Gadget, gadget_id)
    if not gadget:
        raise HTTPException(status_code=404, detail="Gadget not found")

    fields = _mapped_fields(payload, _GADGET_FIELDS)
    if "gadget_name" in fields and not (fields["gadget_name"] or "").strip():
        raise HTTPException(status_code=400, detail="gadgetName must not be empty.")
    if "serial_number" in fields and not fields["serial_number"]:
        fields.pop("serial_number")
    _validate_gadget_fields(db, fields, gadget_id=gadget_id)

    for name, value in fields.items():
        setattr(gadget, name, value)
    gadget.updated_at = datetime.now()
    log_audit(db, "Gadget", gadget_id, "UpdateGadget", ", ".join(sorted(fields)), admin_id=admin.admin_id)
    db.commit()
    db.refresh(gadget)
    change_feed.publish({"gadgets"})
    return serialize_gadget(gadget)


@app.delete("/api/gadgets/{gadget_id}")
def delete_gadget(
    request: Request,
    gadget_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    gadget = db.get(Gadget, gadget_id)
    if not gadget:
        raise HTTPException(status_code=404, detail="Gadget not found")
    try:
        ensure_gadget_deletable(db, gadget)
    except GadgetInUseError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except GadgetReferencedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    db.delete(gadget)
    log_audit(db, "Gadget", gadget_id, "DeleteGadget", gadget.serial_number, admin_id=admin.admin_id)
    db.commit()
    change_feed.publish({"gadgets"})
    return {"message": "Deleted"}


@app.get("/api/rentals")
def get_rentals(
    request: Request,
    status: str | None = Query(None),
    student_id: int | None = Query(None, alias="studentID"),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    today = date.today()
    return [serialize_rental(r, today) for r in list_rentals(db, status=status, student_id=student_id, today=today)]


@app.get("/api/rentals/requests")
def get_rental_requests(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    today = date.today()
    return [serialize_rental(r, today) for r in list_rentals(db, status=PENDING, today=today)]


@app.post("/api/rentals")
def create_rental_request(
    request: Request,
    payload: CreateRentalDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    student = db.get(Student, payload.studentID)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    try:
        applied = create_rental(
            db,
            student,
            list(payload.gadgetIDs),
            payload.dueDate,
            notes=payload.notes,
            admin_id=admin.admin_id,
        )
    except RentalRuleError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    rental = load_rental(db, applied.rental.rental_id)
    response = serialize_rental(rental)
    response["transactions"] = [serialize_transaction(t) for t in applied.transactions]
    return response


@app.get("/api/rentals/{rental_id}")
def get_rental(
    request: Request,
    rental_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    return serialize_rental(_rental_or_404(db, rental_id))


def _run_rental_event(db: Session, rental_id: int, event: Event, admin: Admin) -> dict:
    rental = _rental_or_404(db, rental_id)
    try:
        applied = apply_rental_event(db, rental, event, admin_id=admin.admin_id)
    except (InvalidTransitionError, RentalRuleError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    response = serialize_rental(load_rental(db, rental_id))
    response["transactions"] = [serialize_transaction(t) for t in applied.transactions]
    response["assessments"] = [serialize_assessment(a) for a in applied.assessments]
    return response


@app.post("/api/rentals/{rental_id}/approve")
def approve_rental(
    request: Request,
    rental_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    return _run_rental_event(db, rental_id, Event(APPROVE), admin)


@app.post("/api/rentals/{rental_id}/reject")
def reject_rental(
    request: Request,
    rental_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    return _run_rental_event(db, rental_id, Event(REJECT), admin)


@app.post("/api/rentals/{rental_id}/pickup")
def pick_up_rental(
    request: Request,
    rental_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    return _run_rental_event(db, rental_id, Event(PICK_UP), admin)


@app.post("/api/rentals/{rental_id}/return")
def return_rental(
    request: Request,
    rental_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    return _run_rental_event(db, rental_id, Event(RETURN), admin)


@app.post("/api/rentals/{rental_id}/mark-lost")
def mark_rental_lost(
    request: Request,
    rental_id: int,
    payload: RentalEventRequest | None = None,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    notes = payload.notes if payload else None
    return _run_rental_event(db, rental_id, Event(MARK_LOST, notes=notes), admin)


@app.post("/api/rentals/{rental_id}/assessments")
def flag_rental_damage(
    request: Request,
    rental_id: int,
    payload: FlagDamageRequest,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    rental = _rental_or_404(db, rental_id)
    try:
        assessment = flag_damage(db, rental, payload.initialNotes, payload.fineAmount, admin_id=admin.admin_id)
    except (InvalidTransitionError, RentalRuleError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_assessment(load_assessment(db, assessment.assessment_id))


@app.post("/api/rentals/{rental_id}/extensions")
def request_rental_extension(
    request: Request,
    rental_id: int,
    payload: ExtensionRequestDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    rental = _rental_or_404(db, rental_id)
    try:
        extension = request_extension(db, rental, payload.newDueDate, payload.requestDate, admin_id=admin.admin_id)
    except ExtensionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_extension(extension)


@app.get("/api/extensions")
def get_extensions(
    request: Request,
    status: str | None = Query(None),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    stmt = select(RentalExtension).order_by(RentalExtension.request_date.desc(), RentalExtension.extension_id.desc())
    if status:
        stmt = stmt.where(RentalExtension.status == status)
    return [serialize_extension(e) for e in db.execute(stmt).scalars().all()]


def _extension_or_404(db: Session, extension_id: int) -> RentalExtension:
    extension = db.get(RentalExtension, extension_id)
    if not extension:
        raise HTTPException(status_code=404, detail="Extension not found")
    return extension


@app.post("/api/extensions/{extension_id}/approve")
def approve_rental_extension(
    request: Request,
    extension_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    extension = _extension_or_404(db, extension_id)
    try:
        applied = approve_extension(db, extension, admin_id=admin.admin_id)
    except (ExtensionError, InvalidTransitionError, RentalRuleError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "extension": serialize_extension(extension),
        "rental": serialize_rental(load_rental(db, extension.rental_id)),
        "transactions": [serialize_transaction(t) for t in applied.transactions],
    }


@app.post("/api/extensions/{extension_id}/reject")
def reject_rental_extension(
    request: Request,
    extension_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    extension = _extension_or_404(db, extension_id)
    try:
        reject_extension(db, extension, admin_id=admin.admin_id)
    except ExtensionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_extension(extension)


@app.get("/api/assessments")
def get_assessments(
    request: Request,
    status: str | None = Query(None),
    q: str = Query("", alias="q"),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    return [serialize_assessment(a) for a in list_assessments(db, status=status, search=q)]


def _assessment_or_404(db: Session, assessment_id: int):
    assessment = load_assessment(db, assessment_id)
    if not assessment:
        raise HTTPException(status_code=404, detail="Assessment not found")
    return assessment


@app.put("/api/assessments/{assessment_id}")
def edit_assessment(
    request: Request,
    assessment_id: int,
    payload: AssessmentUpdate,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    assessment = _assessment_or_404(db, assessment_id)
    try:
        update_assessment(db, assessment, _mapped_fields(payload, _ASSESSMENT_FIELDS), admin_id=admin.admin_id)
    except AssessmentError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_assessment(assessment)


@app.post("/api/assessments/{assessment_id}/create-fine")
def create_assessment_fine(
    request: Request,
    assessment_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    assessment = _assessment_or_404(db, assessment_id)
    try:
        entry = create_fine(db, assessment, admin_id=admin.admin_id)
    except AssessmentError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"assessment": serialize_assessment(assessment), "transaction": serialize_transaction(entry)}


@app.post("/api/assessments/{assessment_id}/resolve")
def resolve_assessment(
    request: Request,
    assessment_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    assessment = _assessment_or_404(db, assessment_id)
    try:
        resolve_without_fine(db, assessment, admin_id=admin.admin_id)
    except AssessmentError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_assessment(assessment)


@app.get("/api/transactions")
def get_transactions(
    request: Request,
    status: str | None = Query(None),
    transaction_type: str | None = Query(None, alias="transactionType"),
    student_id: int | None = Query(None, alias="studentID"),
    q: str = Query("", alias="q"),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    rows = list_transactions(db, status=status, transaction_type=transaction_type, student_id=student_id, search=q)
    return [serialize_transaction(t) for t in rows]


@app.post("/api/transactions/{transaction_id}/mark-paid")
def mark_transaction_paid(
    request: Request,
    transaction_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _require_admin(request, db, x_session_token)
    transaction = db.get(Transaction, transaction_id)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    changed = mark_paid(db, transaction, admin_id=admin.admin_id)
    return {"changed": changed, "transaction": serialize_transaction(transaction)}


@app.get("/api/dashboard")
def get_dashboard(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    return build_dashboard(db)


@app.get("/api/changes")
def get_changes(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin(request, db, x_session_token)
    return change_feed.versions()


def _scanner_authorized(request: Request, db: Session, scanner_key: str | None, session_token: str | None) -> bool:
    if OVERDUE_SCANNER_KEY and scanner_key:
        if hmac.compare_digest(scanner_key.encode("utf-8"), OVERDUE_SCANNER_KEY.encode("utf-8")):
            return True
    return resolve_session_admin(db, _session_token(request, session_token)) is not None


@app.post("/functions/detect-overdues", response_class=PlainTextResponse)
def run_overdue_scanner(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_scanner_key: str | None = Header(None, alias="X-Scanner-Key"),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    if not _scanner_authorized(request, db, x_scanner_key, x_session_token):
        SCANNER_LOGGER.warning("Rejected overdue scan ip=%s", _get_client_ip(request))
        return PlainTextResponse("Unauthorized", status_code=401)
    try:
        result = detect_overdues(db)
    except SQLAlchemyError:
        db.rollback()
        SCANNER_LOGGER.exception("Overdue detection failed")
        return PlainTextResponse("Error processing overdue rentals", status_code=500)
    return PlainTextResponse(result.message(), status_code=200)
