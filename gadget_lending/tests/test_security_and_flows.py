import unittest
from datetime import date, datetime, timedelta
from unittest import mock

from gadget_lending.tests.lending_testkit import (
    add_admin,
    add_gadget,
    add_student,
    new_session,
    reset_database,
)

from fastapi.testclient import TestClient
from sqlalchemy import select

from gadget_lending import LendingAdmin as app_module
from gadget_lending.models.lending_models import Admin, Gadget, Rental, RentalItem, Transaction
from gadget_lending.services.admin_access_service import AUTH_MAX_ATTEMPTS_PER_ACCOUNT, STAFF_ADMIN
from gadget_lending.services.fee_policy import DEFAULT_POLICY


ADMIN_EMAIL = "admin@campus.edu"
ADMIN_PASSWORD = "correct-horse"


class SecurityAndFlowTests(unittest.TestCase):
    def setUp(self):
        reset_database()
        with new_session() as db:
            add_admin(db, ADMIN_EMAIL, ADMIN_PASSWORD)
            self.student_id = add_student(db).student_id
            self.gadget_ids = [add_gadget(db, name=f"ESP32 #{i}").gadget_id for i in range(2)]
        self.client = TestClient(app_module.app)

    def _login(self, email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
        return self.client.post("/api/auth/login", json={"email": email, "password": password})

    def _headers(self):
        login = self._login()
        self.assertEqual(login.status_code, 200)
        return {"X-Session-Token": login.json()["sessionToken"]}

    def test_login_logout_revokes_session_token(self):
        headers = self._headers()

        me_before = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_before.status_code, 200)
        self.assertEqual(me_before.json()["admin"]["email"], ADMIN_EMAIL)

        logout = self.client.post("/api/auth/logout", headers=headers)
        self.assertEqual(logout.status_code, 200)

        me_after = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_after.status_code, 401)

    def test_login_persists_with_cookie_session(self):
        login = self._login()
        self.assertEqual(login.status_code, 200)
        set_cookie = login.headers.get("set-cookie", "")
        self.assertIn("gadget_lending_session=", set_cookie)

        me = self.client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["admin"]["role"], "Super Admin")

    def test_wrong_password_is_rejected(self):
        response = self._login(password="not-the-password")
        self.assertEqual(response.status_code, 401)
        self.assertNotIn("sessionToken", response.json())

    def test_repeated_failures_lock_the_account(self):
        for _ in range(AUTH_MAX_ATTEMPTS_PER_ACCOUNT):
            self.assertEqual(self._login(email="ghost@campus.edu", password="guess-guess").status_code, 401)
        locked = self._login(email="ghost@campus.edu", password="guess-guess")
        self.assertEqual(locked.status_code, 429)
        self.assertIn("Retry-After", locked.headers)

    def test_forged_token_is_rejected(self):
        token = self._headers()["X-Session-Token"]
        payload, signature = token.split(".", 1)
        forged = f"{payload}.{signature[::-1]}"
        response = self.client.get("/api/gadgets", headers={"X-Session-Token": forged})
        self.assertEqual(response.status_code, 401)

    def test_deactivated_admin_loses_access(self):
        headers = self._headers()
        with new_session() as db:
            admin = db.execute(select(Admin).where(Admin.email == ADMIN_EMAIL)).scalars().first()
            admin.is_active = False
            db.commit()
        self.assertEqual(self.client.get("/api/dashboard", headers=headers).status_code, 401)

    def test_api_requires_login(self):
        for path in ("/api/students", "/api/gadgets", "/api/rentals", "/api/transactions", "/api/dashboard"):
            with self.subTest(path=path):
                self.assertEqual(self.client.get(path).status_code, 401)
        self.assertEqual(self.client.get("/healthz").status_code, 200)

    def test_rental_lifecycle_over_http(self):
        headers = self._headers()
        due = (date.today() + timedelta(days=7)).isoformat()
        created = self.client.post(
            "/api/rentals",
            json={"studentID": self.student_id, "gadgetIDs": self.gadget_ids, "dueDate": due},
            headers=headers,
        )
        self.assertEqual(created.status_code, 200)
        body = created.json()
        rental_id = body["rentalID"]
        self.assertEqual(body["rentalStatus"], "Pending")
        self.assertEqual([i["gadget"]["status"] for i in body["rentalItems"]], ["Reserved", "Reserved"])
        self.assertEqual([t["transactionType"] for t in body["transactions"]], ["Rental Payment"])

        requests = self.client.get("/api/rentals/requests", headers=headers)
        self.assertEqual([r["rentalID"] for r in requests.json()], [rental_id])

        bad = self.client.post(f"/api/rentals/{rental_id}/return", headers=headers)
        self.assertEqual(bad.status_code, 400)

        for step, status in (("approve", "Approved"), ("pickup", "Ongoing"), ("return", "Completed")):
            response = self.client.post(f"/api/rentals/{rental_id}/{step}", headers=headers)
            self.assertEqual(response.status_code, 200, response.text)
            self.assertEqual(response.json()["rentalStatus"], status)

        final = self.client.get(f"/api/rentals/{rental_id}", headers=headers).json()
        self.assertEqual([i["gadget"]["status"] for i in final["rentalItems"]], ["Available", "Available"])
        ledger = self.client.get("/api/transactions", params={"studentID": self.student_id}, headers=headers).json()
        self.assertEqual([t["transactionType"] for t in ledger], ["Rental Payment"])

        paid = self.client.post(f"/api/transactions/{ledger[0]['transactionID']}/mark-paid", headers=headers)
        self.assertTrue(paid.json()["changed"])
        again = self.client.post(f"/api/transactions/{ledger[0]['transactionID']}/mark-paid", headers=headers)
        self.assertFalse(again.json()["changed"])
        self.assertEqual(again.json()["transaction"]["status"], "Paid")

    def test_mark_lost_over_http(self):
        headers = self._headers()
        due = (date.today() + timedelta(days=3)).isoformat()
        rental_id = self.client.post(
            "/api/rentals",
            json={"studentID": self.student_id, "gadgetIDs": self.gadget_ids[:1], "dueDate": due},
            headers=headers,
        ).json()["rentalID"]
        self.client.post(f"/api/rentals/{rental_id}/approve", headers=headers)
        self.client.post(f"/api/rentals/{rental_id}/pickup", headers=headers)

        lost = self.client.post(f"/api/rentals/{rental_id}/mark-lost", headers=headers)
        self.assertEqual(lost.status_code, 200, lost.text)
        body = lost.json()
        self.assertEqual(body["rentalStatus"], "Lost")
        self.assertEqual([t["transactionType"] for t in body["transactions"]], ["Lost Fine"])
        self.assertEqual(body["assessments"][0]["transactionID"], body["transactions"][0]["transactionID"])

        assessments = self.client.get("/api/assessments", params={"status": "Pending"}, headers=headers).json()
        self.assertEqual(len(assessments), 1)
        refused = self.client.post(f"/api/assessments/{assessments[0]['assessmentID']}/create-fine", headers=headers)
        self.assertEqual(refused.status_code, 400)

    def test_gadget_delete_guards(self):
        headers = self._headers()
        with new_session() as db:
            in_use = add_gadget(db, name="Raspberry Pi", status="In Use")
            referenced = add_gadget(db, name="Servo kit")
            rental = Rental(student_id=self.student_id, due_date=date.today(), rental_status="Completed")
            rental.rental_items.append(RentalItem(gadget_id=referenced.gadget_id, quantity=1))
            db.add(rental)
            db.commit()
            in_use_id, referenced_id = in_use.gadget_id, referenced.gadget_id

        self.assertEqual(self.client.delete(f"/api/gadgets/{in_use_id}", headers=headers).status_code, 400)
        self.assertEqual(self.client.delete(f"/api/gadgets/{referenced_id}", headers=headers).status_code, 409)
        self.assertEqual(self.client.delete(f"/api/gadgets/{self.gadget_ids[0]}", headers=headers).status_code, 200)
        with new_session() as db:
            self.assertIsNone(db.get(Gadget, self.gadget_ids[0]))
            self.assertIsNotNone(db.get(Gadget, referenced_id))

    def test_gadget_create_generates_serial(self):
        headers = self._headers()
        created = self.client.post("/api/gadgets", json={"gadgetName": "Ultrasonic sensor"}, headers=headers)
        self.assertEqual(created.status_code, 200)
        self.assertTrue(created.json()["serialNumber"].startswith(f"GDG{date.today().year}-"))
        self.assertEqual(created.json()["status"], "Available")

        duplicate = self.client.post(
            "/api/gadgets",
            json={"gadgetName": "Copy", "serialNumber": created.json()["serialNumber"]},
            headers=headers,
        )
        self.assertEqual(duplicate.status_code, 409)

    def test_student_with_history_cannot_be_deleted(self):
        headers = self._headers()
        with new_session() as db:
            db.add(Transaction(student_id=self.student_id, transaction_type="Rental Payment", amount=200, status="Unpaid"))
            db.commit()
        self.assertEqual(self.client.delete(f"/api/students/{self.student_id}", headers=headers).status_code, 409)

        created = self.client.post(
            "/api/students",
            json={"name": "Ana Lim", "email": "Ana.Lim@campus.edu"},
            headers=headers,
        )
        self.assertEqual(created.status_code, 200)
        self.assertEqual(created.json()["email"], "ana.lim@campus.edu")
        self.assertEqual(created.json()["accountStatus"], "Active")
        clash = self.client.post("/api/students", json={"name": "Other", "email": "ana.lim@campus.edu"}, headers=headers)
        self.assertEqual(clash.status_code, 409)
        deleted = self.client.delete(f"/api/students/{created.json()['studentID']}", headers=headers)
        self.assertEqual(deleted.status_code, 200)

    def test_change_feed_versions_move_after_writes(self):
        headers = self._headers()
        before = self.client.get("/api/changes", headers=headers).json()
        self.client.post("/api/gadgets", json={"gadgetName": "Load cell"}, headers=headers)
        after = self.client.get("/api/changes", headers=headers).json()
        self.assertEqual(after["gadgets"], before["gadgets"] + 1)
        self.assertEqual(after["rentals"], before["rentals"])

    def test_overdue_scanner_endpoint_returns_plain_text(self):
        headers = self._headers()
        empty = self.client.post("/functions/detect-overdues", headers=headers)
        self.assertEqual(empty.status_code, 200)
        self.assertTrue(empty.headers["content-type"].startswith("text/plain"))
        self.assertEqual(empty.text, "No overdue rentals found")

        with new_session() as db:
            rental = Rental(
                student_id=self.student_id,
                rental_date=datetime.now() - timedelta(days=10),
                due_date=date.today() - timedelta(days=3),
                rental_status="Ongoing",
            )
            db.add(rental)
            db.commit()
            rental_id = rental.rental_id

        first = self.client.post("/functions/detect-overdues", headers=headers)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.text, "Overdue detection complete: 1 fine(s) created, 0 skipped, 0 failed")
        second = self.client.post("/functions/detect-overdues", headers=headers)
        self.assertEqual(second.text, "Overdue detection complete: 0 fine(s) created, 1 skipped, 0 failed")

        with new_session() as db:
            fines = db.execute(
                select(Transaction).where(Transaction.rental_id == rental_id)
            ).scalars().all()
            self.assertEqual(len(fines), 1)
            self.assertEqual(float(fines[0].amount), 3 * DEFAULT_POLICY.scanner_overdue_rate_per_day)
            self.assertEqual(db.get(Rental, rental_id).rental_status, "Ongoing")

        overdue = self.client.get("/api/rentals", params={"status": "Overdue"}, headers=headers).json()
        self.assertEqual([r["rentalID"] for r in overdue], [rental_id])
        self.assertEqual(self.client.get("/api/dashboard", headers=headers).json()["rentals"]["overdue"], 1)

    def test_overdue_scanner_key(self):
        with mock.patch.object(app_module, "OVERDUE_SCANNER_KEY", "cron-secret"):
            self.assertEqual(self.client.post("/functions/detect-overdues").status_code, 401)
            wrong = self.client.post("/functions/detect-overdues", headers={"X-Scanner-Key": "cron-secreT"})
            self.assertEqual(wrong.status_code, 401)
            allowed = self.client.post("/functions/detect-overdues", headers={"X-Scanner-Key": "cron-secret"})
            self.assertEqual(allowed.status_code, 200)

    def test_overdue_scanner_refuses_anonymous_calls_without_a_key(self):
        with mock.patch.object(app_module, "OVERDUE_SCANNER_KEY", ""):
            anonymous = self.client.post("/functions/detect-overdues")
            self.assertEqual(anonymous.status_code, 401)
            self.assertEqual(anonymous.text, "Unauthorized")
            blank_key = self.client.post("/functions/detect-overdues", headers={"X-Scanner-Key": ""})
            self.assertEqual(blank_key.status_code, 401)

            allowed = self.client.post("/functions/detect-overdues", headers=self._headers())
            self.assertEqual(allowed.status_code, 200)
            self.assertEqual(allowed.text, "No overdue rentals found")

    def test_new_admin_without_role_is_staff(self):
        headers = self._headers()
        created = self.client.post(
            "/api/admins",
            json={"email": "staff@campus.edu", "name": "Desk Staff", "password": "front-desk-pw", "role": None},
            headers=headers,
        )
        self.assertEqual(created.status_code, 200, created.text)
        self.assertEqual(created.json()["role"], STAFF_ADMIN)

        staff_client = TestClient(app_module.app)
        login = staff_client.post("/api/auth/login", json={"email": "staff@campus.edu", "password": "front-desk-pw"})
        staff_headers = {"X-Session-Token": login.json()["sessionToken"]}
        promote = staff_client.post(
            "/api/admins",
            json={"email": "other@campus.edu", "name": "Other", "password": "another-pw-1", "role": "Super Admin"},
            headers=staff_headers,
        )
        self.assertEqual(promote.status_code, 403)


if __name__ == "__main__":
    unittest.main()
