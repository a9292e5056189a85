"""Rental status state machine.

Everything here is pure: callers pass a snapshot of the rental and an event,
and get back the new status plus the list of effects that must be written
together. ``rental_service`` applies the effects inside one database
transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

from gadget_lending.services.fee_policy import (
    DEFAULT_POLICY,
    EXTENSION_FEE,
    LOST_FINE,
    OVERDUE_FINE,
    RENTAL_PAYMENT,
    FeePolicy,
    return_overdue_fine,
)


PENDING = "Pending"
APPROVED = "Approved"
ONGOING = "Ongoing"
COMPLETED = "Completed"
LOST = "Lost"
REJECTED = "Rejected"
OVERDUE = "Overdue"

STATE_ALIASES = {
    "Reserved": PENDING,
    OVERDUE: ONGOING,
}
RENTAL_STATES = {PENDING, APPROVED, ONGOING, COMPLETED, LOST, REJECTED}
TERMINAL_STATES = {COMPLETED, LOST, REJECTED}
STATE_TRANSITIONS = {
    PENDING: {APPROVED, REJECTED},
    APPROVED: {ONGOING},
    ONGOING: {COMPLETED, LOST},
    COMPLETED: set(),
    LOST: set(),
    REJECTED: set(),
}

GADGET_AVAILABLE = "Available"
GADGET_RESERVED = "Reserved"
GADGET_IN_USE = "In Use"
GADGET_IN_REPAIR = "In Repair"
GADGET_LOST = "Lost"
GADGET_STATUSES = (GADGET_AVAILABLE, GADGET_RESERVED, GADGET_IN_USE, GADGET_IN_REPAIR, GADGET_LOST)

ASSESSMENT_PENDING = "Pending"
ASSESSMENT_RESOLVED = "Resolved"

APPROVE = "approve"
REJECT = "reject"
PICK_UP = "pickup"
RETURN = "return"
MARK_LOST = "mark-lost"
FLAG_DAMAGE = "flag-damage"
EXTEND = "extend"

# event -> (allowed current states, target state or None when the status stays)
EVENT_RULES: dict[str, tuple[frozenset[str], str | None]] = {
    APPROVE: (frozenset({PENDING}), APPROVED),
    REJECT: (frozenset({PENDING}), REJECTED),
    PICK_UP: (frozenset({APPROVED}), ONGOING),
    RETURN: (frozenset({ONGOING}), COMPLETED),
    MARK_LOST: (frozenset({ONGOING}), LOST),
    FLAG_DAMAGE: (frozenset({COMPLETED, ONGOING}), None),
    EXTEND: (frozenset({APPROVED, ONGOING}), None),
}


class InvalidTransitionError(ValueError):
    pass


class RentalRuleError(ValueError):
    pass


@dataclass(frozen=True)
class RentalSnapshot:
    rental_id: int | None
    student_id: int
    status: str
    due_date: date | None
    gadget_statuses: tuple[tuple[int, str], ...] = ()

    @property
    def gadget_ids(self) -> list[int]:
        return [gadget_id for gadget_id, _ in self.gadget_statuses]


@dataclass(frozen=True)
class Event:
    kind: str
    notes: str | None = None
    fine_amount: float | None = None
    new_due_date: date | None = None


@dataclass
class UpdateRental:
    fields: dict[str, Any]


@dataclass
class SetGadgetStatus:
    gadget_ids: list[int]
    status: str


@dataclass
class AddTransaction:
    transaction_type: str
    amount: float


@dataclass
class AddAssessment:
    initial_notes: str | None
    fine_amount: float | None = None
    charged_by: str | None = None


@dataclass
class Transition:
    event: str
    previous_status: str
    new_status: str
    effects: list = field(default_factory=list)

    @property
    def touched_tables(self) -> set[str]:
        tables = {"rentals"}
        for effect in self.effects:
            if isinstance(effect, SetGadgetStatus) and effect.gadget_ids:
                tables.add("gadgets")
            elif isinstance(effect, AddTransaction):
                tables.add("transactions")
            elif isinstance(effect, AddAssessment):
                tables.add("damage_assessments")
        return tables

    def transactions(self) -> list[AddTransaction]:
        return [effect for effect in self.effects if isinstance(effect, AddTransaction)]


def normalize_status(raw: str | None) -> str:
    status = (raw or PENDING).strip()
    return STATE_ALIASES.get(status, status)


def effective_status(raw: str | None, due_date: date | None, today: date | None = None) -> str:
    """Status as shown to admins: ``Overdue`` is derived, never stored."""
    status = normalize_status(raw)
    today = today or date.today()
    if status == ONGOING and due_date and due_date < today:
        return OVERDUE
    return status


def can_transition(current: str, target: str) -> bool:
    current = normalize_status(current)
    return target in STATE_TRANSITIONS.get(current, set())


def _now(now: datetime | None) -> datetime:
    return now or datetime.now()


def transition(
    rental: RentalSnapshot,
    event: Event,
    *,
    now: datetime | None = None,
    policy: FeePolicy | None = None,
) -> Transition:
    policy = policy or DEFAULT_POLICY
    current = normalize_status(rental.status)
    rule = EVENT_RULES.get(event.kind)
    if rule is None:
        raise InvalidTransitionError(f"Unknown rental event: {event.kind}")
    allowed, target = rule
    if current not in allowed:
        raise InvalidTransitionError(
            f"Cannot {event.kind} a rental that is {current}; expected {' or '.join(sorted(allowed))}."
        )
    new_status = target or current
    if target is not None and not can_transition(current, target):
        raise InvalidTransitionError(f"Invalid state transition: {current} -> {target}")

    moment = _now(now)
    outcome = Transition(event=event.kind, previous_status=current, new_status=new_status)
    gadget_ids = rental.gadget_ids

    if event.kind == APPROVE:
        outcome.effects.append(UpdateRental({"rental_status": APPROVED}))
        outcome.effects.append(SetGadgetStatus(gadget_ids, GADGET_RESERVED))

    elif event.kind == REJECT:
        outcome.effects.append(UpdateRental({"rental_status": REJECTED}))
        # Deliberately releases gadgets on reject; a rejected rental never holds Reserved stock.
        still_reserved = [gid for gid, status in rental.gadget_statuses if status == GADGET_RESERVED]
        if still_reserved:
            outcome.effects.append(SetGadgetStatus(still_reserved, GADGET_AVAILABLE))

    elif event.kind == PICK_UP:
        outcome.effects.append(UpdateRental({"rental_status": ONGOING, "pickup_date": moment}))
        outcome.effects.append(SetGadgetStatus(gadget_ids, GADGET_IN_USE))

    elif event.kind == RETURN:
        outcome.effects.append(UpdateRental({"rental_status": COMPLETED, "return_date": moment}))
        outcome.effects.append(SetGadgetStatus(gadget_ids, GADGET_AVAILABLE))
        fine = return_overdue_fine(rental.due_date, moment, policy)
        if fine > 0:
            outcome.effects.append(AddTransaction(OVERDUE_FINE, fine))

    elif event.kind == MARK_LOST:
        outcome.effects.append(UpdateRental({"rental_status": LOST, "return_date": moment}))
        outcome.effects.append(SetGadgetStatus(gadget_ids, GADGET_LOST))
        outcome.effects.append(AddTransaction(LOST_FINE, policy.lost_fine))
        outcome.effects.append(
            AddAssessment(
                initial_notes=event.notes or "Reported lost; gadget(s) not returned.",
                fine_amount=policy.lost_fine,
                charged_by=LOST_FINE,
            )
        )

    elif event.kind == FLAG_DAMAGE:
        notes = (event.notes or "").strip()
        if not notes:
            raise RentalRuleError("Assessment notes are required.")
        if event.fine_amount is not None and event.fine_amount < 0:
            raise RentalRuleError("fineAmount must not be negative.")
        outcome.effects.append(AddAssessment(initial_notes=notes, fine_amount=event.fine_amount))

    elif event.kind == EXTEND:
        if event.new_due_date is None:
            raise RentalRuleError("newDueDate is required.")
        if rental.due_date and event.new_due_date <= rental.due_date:
            raise RentalRuleError("newDueDate must be after the current due date.")
        outcome.effects.append(UpdateRental({"due_date": event.new_due_date}))
        outcome.effects.append(AddTransaction(EXTENSION_FEE, policy.extension_fee))

    return outcome


def plan_new_rental(
    student_status: str | None,
    gadget_statuses: Iterable[tuple[int, str]],
    due_date: date | None,
    *,
    today: date | None = None,
    policy: FeePolicy | None = None,
) -> Transition:
    policy = policy or DEFAULT_POLICY
    gadgets = list(gadget_statuses)
    if (student_status or "").strip() != "Active":
        raise RentalRuleError("Only Active students can rent gadgets.")
    if not gadgets:
        raise RentalRuleError("Select at least one gadget.")
    gadget_ids = [gadget_id for gadget_id, _ in gadgets]
    if len(set(gadget_ids)) != len(gadget_ids):
        raise RentalRuleError("A gadget can only be selected once per rental.")
    unavailable = [gadget_id for gadget_id, status in gadgets if status != GADGET_AVAILABLE]
    if unavailable:
        raise RentalRuleError(f"Gadget(s) not available: {', '.join(str(gid) for gid in unavailable)}")
    if due_date is None:
        raise RentalRuleError("dueDate is required.")
    if due_date < (today or date.today()):
        raise RentalRuleError("dueDate must not be in the past.")

    outcome = Transition(event="create", previous_status=PENDING, new_status=PENDING)
    outcome.effects.append(SetGadgetStatus(gadget_ids, GADGET_RESERVED))
    outcome.effects.append(AddTransaction(RENTAL_PAYMENT, policy.rental_fee))
    return outcome
