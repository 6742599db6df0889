import io
import os
from unittest import mock

from rental_workflow.errors import ConcurrentModification
from rental_workflow.models import Document, Notification
from rental_workflow.services import RentalService
from tests.base import ACTOR_HEADERS, ADMIN_HEADERS, AppTestCase

CREATE_PAYLOAD = {
    "customer_ref": "cust-42",
    "equipment_ref": "excavator-3",
    "start_date": "2026-11-02T08:00:00Z",
    "end_date": "2026-11-06T08:00:00Z",
    "daily_rate": "120.00",
    "delivery_fee": "35",
    "insurance_fee": "20",
    "security_deposit": "250",
    "delivery_required": True,
    "delivery_address": "Plot 7, North Quarry",
}


class RentalApiTests(AppTestCase):
    def create(self, **overrides):
        payload = dict(CREATE_PAYLOAD, **overrides)
        response = self.client.post("/api/v1/rentals", json=payload, headers=ACTOR_HEADERS)
        self.assertEqual(response.status_code, 201, response.get_json())
        return response.get_json()

    def post(self, path, payload=None, headers=ACTOR_HEADERS):
        return self.client.post(f"/api/v1/rentals{path}", json=payload or {}, headers=headers)

    def test_health(self):
        self.assertEqual(self.client.get("/health").get_json(), {"status": "ok"})

    def test_create_returns_full_order(self):
        body = self.create()

        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["status_display"], "Pending Approval")
        self.assertEqual(body["allowed_next_statuses"], ["approved", "cancelled"])
        self.assertEqual(body["total_days"], 4)
        self.assertEqual(body["subtotal"], "480.00")
        self.assertEqual(body["total_amount"], "785.00")
        self.assertEqual(len(body["status_history"]), 1)
        self.assertEqual(body["status_history"][0]["actor_ref"], "ops-7")
        self.assertEqual(body["documents"], [])

    def test_total_amount_in_payload_is_ignored(self):
        body = self.create(total_amount="1.00")
        self.assertEqual(body["total_amount"], "785.00")

    def test_writes_require_an_actor(self):
        response = self.client.post("/api/v1/rentals", json=CREATE_PAYLOAD)
        self.assertEqual(response.status_code, 401)

        rental_id = self.create()["id"]
        response = self.post(f"/{rental_id}/approve", {"message": "ok"}, headers={})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(RentalService.get_order(rental_id).status, "pending")

    def test_create_validation_error(self):
        payload = dict(CREATE_PAYLOAD, end_date="2026-11-01T08:00:00Z")
        response = self.client.post("/api/v1/rentals", json=payload, headers=ACTOR_HEADERS)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["code"], "validation_error")

    def test_approve_then_transition(self):
        rental_id = self.create()["id"]

        response = self.post(f"/{rental_id}/approve", {"message": "Your rental is approved!"})
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body["status"], "approved")
        self.assertEqual(len(body["status_history"]), 2)
        self.assertTrue(body["status_history"][-1]["visible_to_customer"])

        response = self.post(
            f"/{rental_id}/transition",
            {"target_status": "payment_pending", "notes": "Invoice sent", "visible_to_customer": False},
        )
        self.assertEqual(response.status_code, 200)
        last = response.get_json()["status_history"][-1]
        self.assertEqual((last["previous_status"], last["new_status"]), ("approved", "payment_pending"))
        self.assertFalse(last["visible_to_customer"])

    def test_invalid_transition_lists_allowed_statuses(self):
        rental_id = self.create()["id"]

        response = self.post(f"/{rental_id}/transition", {"target_status": "delivered"})

        self.assertEqual(response.status_code, 409)
        body = response.get_json()
        self.assertEqual(body["code"], "invalid_transition")
        self.assertEqual(body["current_status"], "pending")
        self.assertEqual(body["allowed_statuses"], ["approved", "cancelled"])

    def test_unpaid_confirmation_is_a_precondition_failure(self):
        rental_id = self.create()["id"]
        self.post(f"/{rental_id}/approve")
        self.post(f"/{rental_id}/transition", {"target_status": "payment_pending"})

        response = self.post(f"/{rental_id}/transition", {"target_status": "confirmed"})
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.get_json()["guard"], "payment_received")

        response = self.client.put(
            f"/api/v1/rentals/{rental_id}/payment-status", json={"payment_status": "paid"}, headers=ACTOR_HEADERS
        )
        self.assertEqual(response.get_json()["payment_status"], "paid")
        response = self.post(f"/{rental_id}/transition", {"target_status": "confirmed"})
        self.assertEqual(response.get_json()["status"], "confirmed")

    def test_waived_payment_confirmation(self):
        rental_id = self.create()["id"]
        self.post(f"/{rental_id}/approve")

        response = self.post(f"/{rental_id}/transition", {"target_status": "confirmed", "payment_waived": True})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["status"], "confirmed")

    def test_missing_target_and_unknown_rental(self):
        rental_id = self.create()["id"]
        self.assertEqual(self.post(f"/{rental_id}/transition", {}).status_code, 400)
        response = self.post("/999/transition", {"target_status": "approved"})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["code"], "not_found")
        self.assertEqual(self.client.get("/api/v1/rentals/999").status_code, 404)

    def test_reject_and_cancel(self):
        rejected = self.create()["id"]
        response = self.post(f"/{rejected}/reject", {"reason": "Out of stock"})
        self.assertEqual(response.get_json()["status"], "cancelled")
        self.assertEqual(response.get_json()["allowed_next_statuses"], [])

        cancelled = self.create()["id"]
        self.post(f"/{cancelled}/approve")
        self.assertEqual(self.post(f"/{cancelled}/reject", {"reason": "late"}).status_code, 409)
        self.assertEqual(self.post(f"/{cancelled}/cancel", {}).status_code, 400)
        self.assertEqual(self.post(f"/{cancelled}/cancel", {"reason": "late"}).get_json()["status"], "cancelled")

    def test_full_lifecycle_with_closing_fees(self):
        rental_id = self.create()["id"]
        self.post(f"/{rental_id}/approve")
        self.client.put(
            f"/api/v1/rentals/{rental_id}/payment-status", json={"payment_status": "paid"}, headers=ACTOR_HEADERS
        )
        for status in ("payment_pending", "confirmed", "preparing", "ready_for_pickup", "out_for_delivery"):
            response = self.post(f"/{rental_id}/transition", {"target_status": status})
            self.assertEqual(response.status_code, 200, response.get_json())
        self.assertEqual(self.post(f"/{rental_id}/mark-delivered", {"notes": "Signed by foreman"}).status_code, 200)
        self.post(f"/{rental_id}/transition", {"target_status": "in_progress"})
        self.assertEqual(self.post(f"/{rental_id}/request-return").get_json()["status"], "return_requested")
        self.post(f"/{rental_id}/transition", {"target_status": "returning"})

        response = self.post(f"/{rental_id}/complete", {"late_fees": 40, "damage_fees": "12.50"})

        body = response.get_json()
        self.assertEqual(body["status"], "completed")
        self.assertEqual(body["late_fees"], "40.00")
        self.assertEqual(body["total_amount"], "837.50")
        statuses = [entry["new_status"] for entry in body["status_history"]]
        self.assertEqual(statuses[0], "pending")
        self.assertEqual(statuses[-1], "completed")
        self.assertEqual(len(statuses), 12)

    def test_delivery_patch(self):
        rental_id = self.create(delivery_address="")["id"]
        response = self.client.patch(
            f"/api/v1/rentals/{rental_id}/delivery",
            json={"delivery_address": "Gate 3, Harbour Yard"},
            headers=ACTOR_HEADERS,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["delivery_address"], "Gate 3, Harbour Yard")
        self.assertTrue(response.get_json()["delivery_required"])

    def test_listing_endpoints(self):
        first = self.create(customer_ref="acme")["id"]
        second = self.create(customer_ref="globex")["id"]
        self.post(f"/{second}/reject", {"reason": "duplicate"})

        listing = self.client.get("/api/v1/rentals?status=completed,cancelled").get_json()
        self.assertEqual([item["id"] for item in listing["items"]], [second])
        self.assertEqual(listing["meta"]["total"], 1)

        pending = self.client.get("/api/v1/rentals/pending-approvals").get_json()
        self.assertEqual([item["id"] for item in pending], [first])

        self.assertEqual(self.client.get("/api/v1/rentals/active").get_json(), [])

        summary = self.client.get("/api/v1/rentals/summary").get_json()["by_status"]
        self.assertEqual(summary["pending"], 1)
        self.assertEqual(summary["cancelled"], 1)

        self.assertEqual(self.client.get("/api/v1/rentals?status=lost").status_code, 400)

    def test_wrongly_typed_json_is_a_validation_error(self):
        rental_id = self.create()["id"]

        cases = [
            ("post", f"/{rental_id}/transition", {"target_status": 5}),
            ("post", f"/{rental_id}/transition", {"target_status": "approved", "notes": ["a", "b"]}),
            ("post", f"/{rental_id}/approve", ["x"]),
            ("post", f"/{rental_id}/reject", {"reason": 42}),
            ("patch", f"/{rental_id}/delivery", {"delivery_address": 12}),
            ("put", f"/{rental_id}/payment-status", {"payment_status": 1}),
            ("post", "", ["not", "an", "object"]),
        ]
        for method, path, payload in cases:
            with self.subTest(method=method, path=path, payload=payload):
                response = getattr(self.client, method)(
                    f"/api/v1/rentals{path}", json=payload, headers=ACTOR_HEADERS
                )
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.get_json()["code"], "validation_error")

        body = self.client.get(f"/api/v1/rentals/{rental_id}").get_json()
        self.assertEqual(body["status"], "pending")
        self.assertEqual(len(body["status_history"]), 1)

    def test_reject_after_approval_explains_itself(self):
        rental_id = self.create()["id"]
        self.post(f"/{rental_id}/approve")

        response = self.post(f"/{rental_id}/reject", {"reason": "late"})

        self.assertEqual(response.status_code, 409)
        body = response.get_json()
        self.assertIn("Only pending rentals can be rejected", body["error"])
        self.assertEqual(body["allowed_statuses"], ["payment_pending", "confirmed"])

    def test_conflict_is_retried_once(self):
        rental_id = self.create()["id"]
        real = RentalService.request_transition
        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise ConcurrentModification("Rental was modified by another request.")
            return real(*args, **kwargs)

        with mock.patch("rental_workflow.routes.api.v1.rentals.RentalService.request_transition", side_effect=flaky):
            response = self.post(f"/{rental_id}/transition", {"target_status": "approved"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(calls), 2)
        self.assertEqual(response.get_json()["status"], "approved")

    def test_persistent_conflict_surfaces_as_409(self):
        rental_id = self.create()["id"]
        error = ConcurrentModification("Rental was modified by another request.")
        with mock.patch(
            "rental_workflow.routes.api.v1.rentals.RentalService.request_transition", side_effect=error
        ) as patched:
            response = self.post(f"/{rental_id}/transition", {"target_status": "approved"})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["code"], "concurrent_modification")
        self.assertTrue(response.get_json()["retryable"])
        self.assertEqual(patched.call_count, 2)


class DocumentApiTests(AppTestCase):
    def setUp(self):
        super().setUp()
        self.rental_id = RentalService.create_order(
            customer_ref="cust-1",
            equipment_ref="lift-2",
            start_date="2026-11-01",
            end_date="2026-11-03",
            daily_rate=90,
        ).id

    def upload(self, **fields):
        data = {
            "document_type": "rental_agreement",
            "title": "Signed agreement",
            "visible_to_customer": "true",
            "file": (io.BytesIO(b"%PDF-1.4 signed"), "agreement.pdf"),
        }
        data.update(fields)
        return self.client.post(
            f"/api/v1/rentals/{self.rental_id}/documents",
            data=data,
            headers=ACTOR_HEADERS,
            content_type="multipart/form-data",
        )

    def test_upload_list_and_remove(self):
        response = self.upload()
        self.assertEqual(response.status_code, 201, response.get_json())
        document = response.get_json()
        self.assertEqual(document["document_type"], "rental_agreement")
        self.assertEqual(document["original_filename"], "agreement.pdf")
        stored = os.path.join(self.app.config["UPLOAD_DIR"], document["storage_ref"])
        self.assertTrue(os.path.exists(stored))

        listing = self.client.get(f"/api/v1/rentals/{self.rental_id}/documents").get_json()
        self.assertEqual([doc["id"] for doc in listing], [document["id"]])
        detail = self.client.get(f"/api/v1/rentals/{self.rental_id}").get_json()
        self.assertEqual(detail["status"], "pending")
        self.assertEqual(len(detail["documents"]), 1)

        url = f"/api/v1/rentals/{self.rental_id}/documents/{document['id']}"
        self.assertEqual(self.client.delete(url, headers=ACTOR_HEADERS).status_code, 403)
        self.assertEqual(self.client.delete(url, headers=ADMIN_HEADERS).status_code, 200)
        self.assertFalse(os.path.exists(stored))
        self.assertEqual(Document.query.count(), 0)

    def test_upload_validation(self):
        self.assertEqual(self.upload(document_type="selfie").status_code, 400)
        self.assertEqual(self.upload(title="").status_code, 400)
        bad_file = (io.BytesIO(b"MZ..."), "tool.exe")
        self.assertEqual(self.upload(file=bad_file).status_code, 400)
        fake_image = (io.BytesIO(b"not really a png"), "damage.png")
        self.assertEqual(self.upload(file=fake_image).status_code, 400)
        self.assertEqual(Document.query.count(), 0)

    def test_upload_to_terminal_rental_leaves_no_file(self):
        RentalService.cancel(self.rental_id, "no longer needed")

        response = self.upload()

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.get_json()["guard"], "order_not_terminal")
        self.assertEqual(os.listdir(self.app.config["UPLOAD_DIR"]), [])

    def test_upload_to_unknown_rental_writes_nothing(self):
        self.rental_id = 999

        response = self.upload()

        self.assertEqual(response.status_code, 404)
        self.assertEqual(os.listdir(self.app.config["UPLOAD_DIR"]), [])

    def test_stored_file_is_removed_when_attach_crashes(self):
        with mock.patch(
            "rental_workflow.routes.api.v1.rentals.DocumentService.attach_document",
            side_effect=RuntimeError("database unavailable"),
        ):
            with self.assertRaises(RuntimeError):
                self.upload()

        leftovers = [files for _root, _dirs, files in os.walk(self.app.config["UPLOAD_DIR"]) if files]
        self.assertEqual(leftovers, [])


class SummaryCacheTests(AppTestCase):
    config_overrides = {"CACHE_TYPE": "SimpleCache"}

    def test_writes_refresh_the_cached_summary(self):
        order = RentalService.create_order(
            customer_ref="cust-5", equipment_ref="crane-2", start_date="2026-11-01", end_date="2026-11-03"
        )
        summary = self.client.get("/api/v1/rentals/summary").get_json()["by_status"]
        self.assertEqual((summary["pending"], summary["cancelled"]), (1, 0))

        response = self.client.post(
            f"/api/v1/rentals/{order.id}/reject", json={"reason": "crane booked"}, headers=ACTOR_HEADERS
        )
        self.assertEqual(response.status_code, 200)

        summary = self.client.get("/api/v1/rentals/summary").get_json()["by_status"]
        self.assertEqual((summary["pending"], summary["cancelled"]), (0, 1))


class NotificationApiTests(AppTestCase):
    def test_outbox_flow(self):
        order = RentalService.create_order(
            customer_ref="cust-9", equipment_ref="drill-1", start_date="2026-11-01", end_date="2026-11-02"
        )
        RentalService.approve(order.id, "Approved, please pay the deposit.")

        self.assertEqual(self.client.get("/api/v1/notifications/pending").status_code, 401)
        pending = self.client.get("/api/v1/notifications/pending", headers=ACTOR_HEADERS).get_json()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0]["recipient_ref"], "cust-9")
        self.assertEqual(pending[0]["message"], "Approved, please pay the deposit.")

        response = self.client.post(f"/api/v1/notifications/{pending[0]['id']}/dispatched", headers=ACTOR_HEADERS)
        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(response.get_json()["dispatched_at"])
        self.assertEqual(self.client.get("/api/v1/notifications/pending", headers=ACTOR_HEADERS).get_json(), [])
        self.assertIsNotNone(Notification.query.one().dispatched_at)

        response = self.client.post("/api/v1/notifications/999/dispatched", headers=ACTOR_HEADERS)
        self.assertEqual(response.status_code, 404)
