import unittest
from datetime import datetime

from gadget_lending.tests.lending_testkit import add_student, new_session, reset_database

from gadget_lending.models.lending_models import Transaction
from gadget_lending.services.change_feed import ChangeFeed, change_feed
from gadget_lending.services.fee_service import (
    LedgerImmutableError,
    list_transactions,
    mark_paid,
    new_transaction,
)


class FeeLedgerTests(unittest.TestCase):
    def setUp(self):
        reset_database()
        self.db = new_session()
        self.student = add_student(self.db, name="Paolo Reyes")
        self.entry = new_transaction(self.student.student_id, None, "Damage Fine", 450, datetime(2025, 11, 2, 10, 0))
        self.db.add(self.entry)
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def test_mark_paid_is_a_no_op_the_second_time(self):
        self.assertTrue(mark_paid(self.db, self.entry))
        paid_at = self.entry.paid_at
        self.assertEqual(self.entry.status, "Paid")
        self.assertIsNotNone(paid_at)

        self.assertFalse(mark_paid(self.db, self.entry))
        self.db.expire_all()
        reloaded = self.db.get(Transaction, self.entry.transaction_id)
        self.assertEqual(reloaded.status, "Paid")
        self.assertEqual(reloaded.paid_at, paid_at)
        self.assertEqual(float(reloaded.amount), 450.0)

    def test_amount_cannot_change_after_insert(self):
        self.entry.amount = 10
        with self.assertRaises(LedgerImmutableError):
            self.db.commit()
        self.db.rollback()
        self.assertEqual(float(self.db.get(Transaction, self.entry.transaction_id).amount), 450.0)

    def test_paid_entry_cannot_be_reopened(self):
        mark_paid(self.db, self.entry)
        self.entry.status = "Unpaid"
        with self.assertRaises(LedgerImmutableError):
            self.db.commit()
        self.db.rollback()

    def test_list_filters(self):
        self.db.add(new_transaction(self.student.student_id, None, "Rental Payment", 200))
        self.db.commit()
        mark_paid(self.db, self.entry)

        self.assertEqual([t.transaction_type for t in list_transactions(self.db, status="Unpaid")], ["Rental Payment"])
        self.assertEqual(len(list_transactions(self.db, transaction_type="Damage Fine")), 1)
        self.assertEqual(len(list_transactions(self.db, search="paolo")), 2)
        self.assertEqual(list_transactions(self.db, search="nobody"), [])

    def test_mark_paid_signals_transactions_table(self):
        seen = []
        unsubscribe = change_feed.subscribe("transactions", lambda table, version: seen.append(table))
        try:
            mark_paid(self.db, self.entry)
        finally:
            unsubscribe()
        self.assertEqual(seen, ["transactions"])


class ChangeFeedTests(unittest.TestCase):
    def test_subscribe_publish_unsubscribe(self):
        feed = ChangeFeed()
        calls = []
        unsubscribe = feed.subscribe("gadgets", lambda table, version: calls.append((table, version)))

        feed.publish({"gadgets", "rentals"})
        unsubscribe()
        feed.publish({"gadgets"})

        self.assertEqual(calls, [("gadgets", 1)])
        self.assertEqual(feed.versions()["gadgets"], 2)
        self.assertEqual(feed.versions()["rentals"], 1)

    def test_failing_listener_does_not_block_others(self):
        feed = ChangeFeed()
        calls = []

        def broken(table, version):
            raise RuntimeError("listener bug")

        feed.subscribe("students", broken)
        feed.subscribe("students", lambda table, version: calls.append(table))
        with self.assertLogs("gadget_lending.change_feed", level="ERROR"):
            feed.publish(["students"])
        self.assertEqual(calls, ["students"])


if __name__ == "__main__":
    unittest.main()
