import unittest
from datetime import date, datetime
from unittest import mock

from gadget_lending.tests.lending_testkit import (
    TEST_POLICY,
    add_gadget,
    add_student,
    new_session,
    reset_database,
)

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from gadget_lending.models.lending_models import Rental, Transaction
from gadget_lending.services import overdue_scanner
from gadget_lending.services.lifecycle import APPROVE, PICK_UP, RETURN, Event
from gadget_lending.services.overdue_scanner import detect_overdues
from gadget_lending.services.rental_service import apply_rental_event, create_rental, load_rental


class OverdueScannerTests(unittest.TestCase):
    def setUp(self):
        reset_database()
        self.db = new_session()
        self.student = add_student(self.db)

    def tearDown(self):
        self.db.close()

    def _ongoing_rental(self, due_date=date(2025, 11, 1)):
        gadget = add_gadget(self.db)
        applied = create_rental(
            self.db,
            self.student,
            [gadget.gadget_id],
            due_date,
            now=datetime(2025, 10, 20, 9, 0),
            policy=TEST_POLICY,
        )
        rental = load_rental(self.db, applied.rental.rental_id)
        for kind in (APPROVE, PICK_UP):
            apply_rental_event(self.db, rental, Event(kind), now=datetime(2025, 10, 21, 9, 0), policy=TEST_POLICY)
        return rental

    def _overdue_fines(self, rental_id=None):
        stmt = select(Transaction).where(Transaction.transaction_type == "Overdue Fine")
        if rental_id is not None:
            stmt = stmt.where(Transaction.rental_id == rental_id)
        return self.db.execute(stmt).scalars().all()

    def test_no_overdue_rentals(self):
        self._ongoing_rental(due_date=date(2025, 11, 10))
        result = detect_overdues(self.db, now=datetime(2025, 11, 4, 6, 0), policy=TEST_POLICY)
        self.assertEqual(result.matched, 0)
        self.assertEqual(result.message(), "No overdue rentals found")
        self.assertEqual(self._overdue_fines(), [])

    def test_scanner_is_idempotent_per_rental(self):
        rental = self._ongoing_rental()

        first = detect_overdues(self.db, now=datetime(2025, 11, 4, 6, 0), policy=TEST_POLICY)
        second = detect_overdues(self.db, now=datetime(2025, 11, 5, 6, 0), policy=TEST_POLICY)

        self.assertEqual(first.created, [rental.rental_id])
        self.assertEqual(second.created, [])
        self.assertEqual(second.skipped, [rental.rental_id])
        fines = self._overdue_fines(rental.rental_id)
        self.assertEqual(len(fines), 1)
        self.assertEqual(float(fines[0].amount), 60.0)
        self.assertEqual(
            second.message(),
            "Overdue detection complete: 0 fine(s) created, 1 skipped, 0 failed",
        )

    def test_scanner_does_not_persist_overdue_status(self):
        rental = self._ongoing_rental()
        detect_overdues(self.db, now=datetime(2025, 11, 4, 6, 0), policy=TEST_POLICY)
        self.db.expire_all()
        self.assertEqual(self.db.get(Rental, rental.rental_id).rental_status, "Ongoing")

    def test_return_after_scan_charges_the_full_return_fine(self):
        rental = self._ongoing_rental()
        detect_overdues(self.db, now=datetime(2025, 11, 2, 6, 0), policy=TEST_POLICY)

        applied = apply_rental_event(self.db, rental, Event(RETURN), now=datetime(2025, 11, 4, 15, 0), policy=TEST_POLICY)

        self.assertEqual([float(t.amount) for t in applied.transactions], [150.0])
        amounts = sorted(float(t.amount) for t in self._overdue_fines(rental.rental_id))
        self.assertEqual(amounts, [20.0, 150.0])

    def test_one_failed_rental_does_not_stop_the_batch(self):
        failing = self._ongoing_rental()
        healthy = self._ongoing_rental()

        with mock.patch.object(overdue_scanner, "log_audit", side_effect=[SQLAlchemyError("locked"), None]):
            result = detect_overdues(self.db, now=datetime(2025, 11, 3, 6, 0), policy=TEST_POLICY)

        self.assertEqual(result.matched, 2)
        self.assertEqual(result.failed, [failing.rental_id])
        self.assertEqual(result.created, [healthy.rental_id])
        self.assertEqual(self._overdue_fines(failing.rental_id), [])
        self.assertEqual(len(self._overdue_fines(healthy.rental_id)), 1)

        retry = detect_overdues(self.db, now=datetime(2025, 11, 3, 7, 0), policy=TEST_POLICY)
        self.assertEqual(retry.created, [failing.rental_id])
        self.assertEqual(retry.skipped, [healthy.rental_id])

    def test_unexpected_error_is_isolated_per_rental(self):
        failing = self._ongoing_rental()
        healthy = self._ongoing_rental()

        with mock.patch.object(overdue_scanner, "log_audit", side_effect=[RuntimeError("bad row"), None]):
            with self.assertLogs("gadget_lending.scanner", level="ERROR"):
                result = detect_overdues(self.db, now=datetime(2025, 11, 3, 6, 0), policy=TEST_POLICY)

        self.assertEqual(result.failed, [failing.rental_id])
        self.assertEqual(result.created, [healthy.rental_id])
        self.assertEqual(self._overdue_fines(failing.rental_id), [])


if __name__ == "__main__":
    unittest.main()
