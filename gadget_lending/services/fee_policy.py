from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, datetime


RENTAL_PAYMENT = "Rental Payment"
EXTENSION_FEE = "Extension Fee"
DAMAGE_FINE = "Damage Fine"
LOST_FINE = "Lost Fine"
OVERDUE_FINE = "Overdue Fine"
TRANSACTION_TYPES = (RENTAL_PAYMENT, EXTENSION_FEE, DAMAGE_FINE, LOST_FINE, OVERDUE_FINE)


def _env_amount(name: str, default: str) -> float:
    raw = (os.environ.get(name) or default).strip()
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise RuntimeError(f"{name} must not be negative.")
    return value


@dataclass(frozen=True)
class FeePolicy:
    """Amounts charged by the lifecycle.

    The return path and the overdue scanner use separate per-day rates; the
    two have historically disagreed and are kept independently configurable.
    """

    rental_fee: float = 200.0
    extension_fee: float = 100.0
    lost_fine: float = 3000.0
    return_overdue_rate_per_day: float = 50.0
    scanner_overdue_rate_per_day: float = 20.0

    @classmethod
    def from_env(cls) -> "FeePolicy":
        return cls(
            rental_fee=_env_amount("RENTAL_FEE", "200"),
            extension_fee=_env_amount("EXTENSION_FEE", "100"),
            lost_fine=_env_amount("LOST_FINE", "3000"),
            return_overdue_rate_per_day=_env_amount("RETURN_OVERDUE_RATE_PER_DAY", "50"),
            scanner_overdue_rate_per_day=_env_amount("SCANNER_OVERDUE_RATE_PER_DAY", "20"),
        )


DEFAULT_POLICY = FeePolicy.from_env()


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def days_late(due_date: date | None, at: date | datetime) -> int:
    # Any part of a day past the due date counts as a whole day.
    if due_date is None:
        return 0
    return (_as_date(at) - _as_date(due_date)).days


def return_overdue_fine(
    due_date: date | None,
    returned_at: date | datetime,
    policy: FeePolicy | None = None,
) -> float:
    policy = policy or DEFAULT_POLICY
    late = days_late(due_date, returned_at)
    if late <= 0:
        return 0.0
    return round(late * policy.return_overdue_rate_per_day, 2)


def scanner_overdue_fine(due_date: date, today: date | datetime, policy: FeePolicy | None = None) -> float:
    policy = policy or DEFAULT_POLICY
    days_overdue = max(1, days_late(due_date, today))
    return round(days_overdue * policy.scanner_overdue_rate_per_day, 2)


def assessment_fine_type(final_notes: str | None, initial_notes: str | None = None) -> str:
    notes = (final_notes or "").strip() or (initial_notes or "")
    return LOST_FINE if "lost" in notes.lower() else DAMAGE_FINE
