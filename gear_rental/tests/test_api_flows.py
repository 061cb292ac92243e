import os
import unittest
from unittest import mock

from fastapi.testclient import TestClient


os.environ.setdefault("GEAR_RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("CORS_ALLOW_ORIGINS", "http://localhost:5173")

from .. import RentalDesk as app_module
from .support import DatabaseTestCase


ADMIN_HEADERS = {"X-Actor-Id": "admin-1", "X-Actor-Name": "Desk Admin", "X-Actor-Role": "admin"}
STUDENT_HEADERS = {"X-Actor-Id": "student-1", "X-Actor-Name": "Kim Student", "X-Actor-Email": "kim@film.example"}
OTHER_HEADERS = {"X-Actor-Id": "student-2", "X-Actor-Name": "Lee Student"}


class ApiFlowTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        app_module.app.dependency_overrides[app_module.get_rental_db] = lambda: self.db
        self.client = TestClient(app_module.app)

        equipment = self.client.post(
            "/api/equipment",
            json={"equipmentName": "FX3", "totalQuantity": 2},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(equipment.status_code, 200)
        self.equipment_id = equipment.json()["equipmentID"]
        batch = self.client.post(
            f"/api/equipment/{self.equipment_id}/assets/batch",
            json={"serialNumbers": "A1\nA2"},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(batch.status_code, 200)
        self.a1, self.a2 = [asset["assetID"] for asset in batch.json()["assets"]]

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        super().tearDown()

    def reserve(self, quantity=1, headers=STUDENT_HEADERS):
        response = self.client.post(
            "/api/reservations",
            json={
                "purpose": "Short film",
                "startDate": "2025-03-01",
                "endDate": "2025-03-03",
                "leaderPhone": "010-0000-0000",
                "items": [{"equipmentID": self.equipment_id, "quantity": quantity}],
            },
            headers=headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def set_status(self, reservation_id, status, **extra):
        return self.client.post(
            f"/api/reservations/{reservation_id}/status",
            json={"status": status, **extra},
            headers=ADMIN_HEADERS,
        )

    def test_health_endpoints(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_identity_headers_are_required(self):
        self.assertEqual(self.client.get("/api/equipment").status_code, 401)
        self.assertEqual(self.client.get("/api/equipment", headers=STUDENT_HEADERS).status_code, 200)

    def test_students_are_kept_off_admin_routes(self):
        reservation = self.reserve()

        assign = self.client.post(
            f"/api/reservations/{reservation['reservationID']}/assign",
            json={"assignments": [{"equipmentID": self.equipment_id, "assetIDs": [self.a1]}]},
            headers=STUDENT_HEADERS,
        )
        self.assertEqual(assign.status_code, 403)
        self.assertEqual(self.client.get("/api/repairs", headers=STUDENT_HEADERS).status_code, 403)
        self.assertEqual(self.client.get("/api/change-history", headers=STUDENT_HEADERS).status_code, 403)
        self.assertEqual(
            self.client.get(f"/api/reservations/{reservation['reservationID']}", headers=OTHER_HEADERS).status_code,
            403,
        )

    def test_admin_email_allowlist_upgrades_role(self):
        with mock.patch.dict(os.environ, {"ADMIN_EMAILS": "Kim@Film.example"}):
            response = self.client.get("/api/repairs", headers=STUDENT_HEADERS)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), [])

    def test_rental_round_trip_over_http(self):
        reservation = self.reserve(quantity=2)
        rid = reservation["reservationID"]
        self.assertEqual(reservation["status"], "pending")

        assign = self.client.post(
            f"/api/reservations/{rid}/assign",
            json={"assignments": [{"equipmentID": self.equipment_id, "assetIDs": [self.a1, self.a2]}]},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(assign.status_code, 200, assign.text)
        self.assertEqual(assign.json()["items"][0]["assignedAssets"], [self.a1, self.a2])

        self.assertEqual(self.set_status(rid, "approved").json()["status"], "approved")
        self.assertEqual(self.set_status(rid, "rented").json()["status"], "rented")

        returned = self.client.post(
            f"/api/reservations/{rid}/return",
            json={"returns": [{"assetID": self.a1}, {"assetID": self.a2, "condition": "damaged", "notes": "cracked lens"}]},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(returned.status_code, 200, returned.text)
        body = returned.json()
        self.assertTrue(body["completed"])
        self.assertEqual(body["status"], "returned")
        self.assertEqual(len(body["repairCaseIDs"]), 1)

        repairs = self.client.get("/api/repairs", params={"tab": "in_progress"}, headers=ADMIN_HEADERS).json()
        self.assertEqual([repair["assetID"] for repair in repairs], [self.a2])
        self.assertEqual(repairs[0]["stage"], "damage_confirmed")

        history = self.client.get(f"/api/assets/{self.a2}/history", headers=ADMIN_HEADERS).json()
        self.assertEqual([entry["action"] for entry in history], ["returned", "rented"])

        notifications = self.client.get("/api/notifications", headers=STUDENT_HEADERS).json()
        self.assertEqual(
            [note["type"] for note in notifications],
            ["reservation_returned", "reservation_rented", "reservation_approved"],
        )
        self.assertEqual(self.client.get("/api/notifications/unread-count", headers=STUDENT_HEADERS).json(), {"count": 3})
        self.assertEqual(self.client.post("/api/notifications/read-all", headers=STUDENT_HEADERS).json(), {"updated": 3})

    def test_conflict_body_lists_assets(self):
        first = self.reserve()
        second = self.reserve()
        self.client.post(
            f"/api/reservations/{first['reservationID']}/assign",
            json={"assignments": [{"equipmentID": self.equipment_id, "assetIDs": [self.a1]}]},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(self.set_status(first["reservationID"], "approved").status_code, 200)

        response = self.client.post(
            f"/api/reservations/{second['reservationID']}/assign",
            json={"assignments": [{"equipmentID": self.equipment_id, "assetIDs": [self.a1]}]},
            headers=ADMIN_HEADERS,
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["conflictingAssetIDs"], [self.a1])
        occupied = self.client.get(
            f"/api/equipment/{self.equipment_id}/assets/occupied",
            params={"excludeReservationId": second["reservationID"]},
            headers=ADMIN_HEADERS,
        ).json()
        self.assertEqual([entry["assetID"] for entry in occupied], [self.a1])
        self.assertEqual(occupied[0]["reservationNumber"], first["reservationNumber"])

    def test_invalid_transition_is_a_bad_request(self):
        reservation = self.reserve()

        response = self.set_status(reservation["reservationID"], "returned")

        self.assertEqual(response.status_code, 400)
        self.assertIn("pending", response.json()["detail"])
        self.assertEqual(self.set_status(reservation["reservationID"], "lost").status_code, 422)

    def test_availability_counts_pending_reservations(self):
        self.reserve(quantity=2)

        response = self.client.get(
            f"/api/equipment/{self.equipment_id}/availability",
            params={"startDate": "2025-03-02", "endDate": "2025-03-02"},
            headers=STUDENT_HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        day = response.json()["perDay"][0]
        self.assertEqual(day["date"], "2025-03-02")
        self.assertEqual(day["reserved"], 2)
        self.assertEqual(day["remaining"], 0)
        self.assertFalse(day["overbooked"])

    def test_repair_stage_walk(self):
        created = self.client.post(
            "/api/repairs",
            json={"damageType": "lost", "damageDescription": "left on set", "assetID": self.a1},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(created.status_code, 200, created.text)
        repair_id = created.json()["repairCaseID"]

        skipped = self.client.post(
            f"/api/repairs/{repair_id}/advance",
            json={"stage": "payment_confirmed", "finalAmount": 10},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(skipped.status_code, 400)

        advanced = self.client.post(
            f"/api/repairs/{repair_id}/advance",
            json={"stage": "charge_decided", "chargeType": "student_charge"},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(advanced.json()["stage"], "charge_decided")
        for payload in ({"estimateMemo": "vendor quote"}, {"finalAmount": 1250000}):
            step = self.client.post(f"/api/repairs/{repair_id}/advance", json=payload, headers=ADMIN_HEADERS)
            self.assertEqual(step.status_code, 200, step.text)

        completed = self.client.post(
            f"/api/repairs/{repair_id}/complete",
            json={"repairResult": "replaced", "adminMemo": " bought a new one "},
            headers=ADMIN_HEADERS,
        )
        self.assertEqual(completed.status_code, 200, completed.text)
        self.assertEqual(completed.json()["stage"], "completed")
        self.assertEqual(
            [repair["repairCaseID"] for repair in self.client.get("/api/repairs", params={"tab": "completed"}, headers=ADMIN_HEADERS).json()],
            [repair_id],
        )


if __name__ == "__main__":
    unittest.main()
