import unittest

from fastapi.testclient import TestClient

import rental_fixtures as fx

import RentalMan as app_module

ADMIN = {"X-User-Role": "admin"}
COMERCIAL = {"X-User-Role": "comercial"}
OPERACIONAL = {"X-User-Role": "operacional"}


class ApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.factory = fx.make_session_factory()

        def _override_db():
            db = self.factory()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_rental_db] = _override_db
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def _seed_catalog(self):
        customer = self.client.post("/api/customers", json={"name": "Buffet Alegria"}, headers=COMERCIAL)
        self.assertEqual(customer.status_code, 200)
        product = self.client.post(
            "/api/products",
            json={"name": "Mesa redonda", "dailyRentalPrice": 100, "totalStock": 5},
            headers=ADMIN,
        )
        self.assertEqual(product.status_code, 200)
        return customer.json()["customerID"], product.json()["productID"]

    def _create_rental(self, customer_id, product_id, quantity=2):
        response = self.client.post(
            "/api/rentals",
            json={
                "customerID": customer_id,
                "startDate": "2024-03-01",
                "endDate": "2024-03-03",
                "pricingPolicy": "calendar",
                "deliveryFee": 50,
                "productItems": [{"productID": product_id, "quantity": quantity}],
            },
            headers=COMERCIAL,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_healthcheck(self):
        response = self.client.get("/healthz")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_full_rental_flow(self):
        customer_id, product_id = self._seed_catalog()
        rental = self._create_rental(customer_id, product_id)
        rental_id = rental["rentalID"]
        self.assertEqual(rental["status"], "pending")
        self.assertEqual(rental["totalValue"], 650.0)

        confirm = self.client.post(f"/api/rentals/{rental_id}/payment/confirm", json={"method": "PIX"}, headers=COMERCIAL)
        self.assertEqual(confirm.status_code, 200, confirm.text)
        self.assertEqual(confirm.json()["rental"]["status"], "confirmed")
        self.assertEqual(confirm.json()["events"][0]["to"], "confirmed")

        ongoing = self.client.post(f"/api/rentals/{rental_id}/advance", headers=OPERACIONAL)
        self.assertEqual(ongoing.json()["rental"]["status"], "ongoing")
        collecting = self.client.post(f"/api/rentals/{rental_id}/advance", headers=OPERACIONAL)
        self.assertEqual(collecting.json()["rental"]["status"], "collecting")
        self.assertTrue(collecting.json()["requiresReconciliation"])

        checklist = self.client.get(f"/api/rentals/{rental_id}/checklist")
        self.assertEqual(checklist.status_code, 200)
        items = checklist.json()["items"]
        self.assertEqual(len(items), 1)
        self.assertFalse(checklist.json()["readyToFinalize"])

        blocked = self.client.post(f"/api/rentals/{rental_id}/finalize", json={"returnDate": "2024-03-03"}, headers=OPERACIONAL)
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(blocked.json()["error"], "precondition_not_met")

        collect = self.client.post(
            f"/api/checklist/{items[0]['checklistItemID']}/collect",
            json={"collectedBy": "Joao", "quantityCollected": 2},
            headers=OPERACIONAL,
        )
        self.assertEqual(collect.status_code, 200, collect.text)
        self.assertTrue(collect.json()["summary"]["isComplete"])
        self.assertEqual(collect.json()["events"], [{"type": "ChecklistCompleted", "rentalID": rental_id}])

        preview = self.client.get(f"/api/rentals/{rental_id}/final-values", params={"returnDate": "2024-03-04"})
        self.assertEqual(preview.json()["extraDays"], 1)
        self.assertEqual(preview.json()["totalValue"], 850.0)

        finalized = self.client.post(f"/api/rentals/{rental_id}/finalize", json={"returnDate": "2024-03-03"}, headers=OPERACIONAL)
        self.assertEqual(finalized.status_code, 200, finalized.text)
        body = finalized.json()
        self.assertEqual(body["rental"]["status"], "finished")
        self.assertEqual(body["finalValues"]["totalValue"], 650.0)
        self.assertEqual([event["type"] for event in body["events"]], ["RentalStatusChanged", "RentalFinalized"])

        products = self.client.get("/api/products").json()
        self.assertEqual(products[0]["totalStock"], 5)

        contract = self.client.get(f"/api/rentals/{rental_id}/contract-data")
        self.assertEqual(contract.json()["finalValues"]["returnDate"], "2024-03-03")

        payments = self.client.get("/api/payments").json()
        self.assertEqual([payment["status"] for payment in payments], ["PAGO"])

    def test_missing_role_is_forbidden(self):
        customer_id, product_id = self._seed_catalog()
        response = self.client.post(
            "/api/rentals",
            json={
                "customerID": customer_id,
                "startDate": "2024-03-01",
                "endDate": "2024-03-03",
                "productItems": [{"productID": product_id, "quantity": 1}],
            },
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"], "forbidden")

    def test_error_statuses(self):
        customer_id, product_id = self._seed_catalog()

        missing = self.client.get("/api/rentals/999")
        self.assertEqual(missing.status_code, 404)

        bad_period = self.client.post(
            "/api/rentals",
            json={
                "customerID": customer_id,
                "startDate": "2024-03-05",
                "endDate": "2024-03-01",
                "productItems": [{"productID": product_id, "quantity": 1}],
            },
            headers=COMERCIAL,
        )
        self.assertEqual(bad_period.status_code, 400)
        self.assertEqual(bad_period.json()["error"], "validation_error")

        rental = self._create_rental(customer_id, product_id)
        skip = self.client.post(f"/api/rentals/{rental['rentalID']}/status", json={"status": "ongoing"}, headers=ADMIN)
        self.assertEqual(skip.status_code, 409)
        self.assertEqual(skip.json()["error"], "illegal_transition")

        stale = self.client.post(
            f"/api/rentals/{rental['rentalID']}/cancel",
            json={"expectedVersion": rental["version"] + 5},
            headers=ADMIN,
        )
        self.assertEqual(stale.status_code, 409)
        self.assertEqual(stale.json()["error"], "concurrent_modification")

        cancelled = self.client.post(
            f"/api/rentals/{rental['rentalID']}/cancel",
            json={"expectedVersion": rental["version"]},
            headers=ADMIN,
        )
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["rental"]["status"], "cancelled")
        self.assertEqual(self.client.get("/api/products").json()[0]["totalStock"], 5)

    def _run_to_finished(self, rental_id, return_date="2024-03-05"):
        self.client.post(f"/api/rentals/{rental_id}/payment/confirm", json={"method": "PIX"}, headers=COMERCIAL)
        self.client.post(f"/api/rentals/{rental_id}/advance", headers=OPERACIONAL)
        self.client.post(f"/api/rentals/{rental_id}/advance", headers=OPERACIONAL)
        for item in self.client.get(f"/api/rentals/{rental_id}/checklist").json()["items"]:
            self.client.post(
                f"/api/checklist/{item['checklistItemID']}/collect",
                json={"collectedBy": "Joao", "quantityCollected": item["quantityExpected"]},
                headers=OPERACIONAL,
            )
        finalized = self.client.post(
            f"/api/rentals/{rental_id}/finalize", json={"returnDate": return_date}, headers=OPERACIONAL
        )
        self.assertEqual(finalized.status_code, 200, finalized.text)
        return finalized.json()

    def test_final_values_of_finished_rental_stay_settled(self):
        customer_id, product_id = self._seed_catalog()
        rental_id = self._create_rental(customer_id, product_id)["rentalID"]
        settled = self._run_to_finished(rental_id)["finalValues"]
        self.assertEqual(settled["extraDays"], 2)

        preview = self.client.get(f"/api/rentals/{rental_id}/final-values")
        self.assertEqual(preview.status_code, 200)
        self.assertEqual(preview.json()["returnDate"], "2024-03-05")
        self.assertEqual(preview.json()["totalValue"], settled["totalValue"])

        issued = self.client.post(f"/api/rentals/{rental_id}/contract", headers=COMERCIAL)
        self.assertEqual(issued.status_code, 200, issued.text)
        self.assertEqual(issued.json()["totalValue"], settled["totalValue"])
        fetched = self.client.get(f"/api/rentals/{rental_id}/contract")
        self.assertEqual(fetched.json()["contractNumber"], issued.json()["contractNumber"])
        self.assertEqual(len(self.client.get("/api/contracts").json()), 1)

        removed = self.client.delete(f"/api/contracts/{issued.json()['contractID']}", headers=COMERCIAL)
        self.assertEqual(removed.status_code, 200)
        self.assertEqual(self.client.get(f"/api/rentals/{rental_id}/contract").status_code, 404)

    def test_direct_status_change_to_finished_goes_through_finalize(self):
        customer_id, product_id = self._seed_catalog()
        rental_id = self._create_rental(customer_id, product_id)["rentalID"]
        self.client.post(f"/api/rentals/{rental_id}/payment/confirm", json={"method": "PIX"}, headers=COMERCIAL)
        self.client.post(f"/api/rentals/{rental_id}/advance", headers=OPERACIONAL)
        self.client.post(f"/api/rentals/{rental_id}/advance", headers=OPERACIONAL)
        self.client.get(f"/api/rentals/{rental_id}/checklist")

        blocked = self.client.post(f"/api/rentals/{rental_id}/status", json={"status": "finished"}, headers=ADMIN)
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(blocked.json()["error"], "precondition_not_met")

    def test_rental_maintenance_endpoints(self):
        customer_id, product_id = self._seed_catalog()
        rental = self._create_rental(customer_id, product_id)
        rental_id = rental["rentalID"]

        patched = self.client.patch(
            f"/api/rentals/{rental_id}",
            json={"endDate": "2024-03-04", "expectedVersion": rental["version"]},
            headers=COMERCIAL,
        )
        self.assertEqual(patched.status_code, 200, patched.text)
        self.assertEqual(patched.json()["totalValue"], 850.0)

        upcoming = self.client.get("/api/rentals/upcoming", params={"today": "2024-02-20"})
        self.assertEqual(upcoming.status_code, 200)
        self.assertEqual([row["rentalID"] for row in upcoming.json()], [rental_id])

        by_customer = self.client.get(f"/api/customers/{customer_id}/rentals")
        self.assertEqual([row["rentalID"] for row in by_customer.json()], [rental_id])

        self.assertEqual(self.client.delete(f"/api/customers/{customer_id}", headers=ADMIN).status_code, 409)
        deleted = self.client.delete(f"/api/rentals/{rental_id}", headers=COMERCIAL)
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.client.get(f"/api/rentals/{rental_id}").status_code, 404)
        self.assertEqual(self.client.get("/api/products").json()[0]["totalStock"], 5)
        self.assertEqual(self.client.delete(f"/api/customers/{customer_id}", headers=ADMIN).status_code, 200)

    def test_catalog_update_endpoints(self):
        customer_id, product_id = self._seed_catalog()
        product = self.client.put(f"/api/products/{product_id}", json={"totalStock": 8}, headers=ADMIN)
        self.assertEqual(product.status_code, 200, product.text)
        self.assertEqual(product.json()["totalStock"], 8)
        denied = self.client.put(f"/api/products/{product_id}", json={"totalStock": 1}, headers=COMERCIAL)
        self.assertEqual(denied.status_code, 403)

        customer = self.client.put(f"/api/customers/{customer_id}", json={"email": "festas@example.com"}, headers=COMERCIAL)
        self.assertEqual(customer.json()["email"], "festas@example.com")

        tent = self.client.post("/api/tents", json={"name": "Tenda 10x10", "dailyPrice": 400}, headers=ADMIN).json()
        updated = self.client.put(f"/api/tents/{tent['tentID']}", json={"dailyPrice": 450}, headers=ADMIN)
        self.assertEqual(updated.json()["dailyPrice"], 450.0)
        self.assertEqual(self.client.delete(f"/api/tents/{tent['tentID']}", headers=ADMIN).status_code, 200)
        self.assertEqual(self.client.delete(f"/api/products/{product_id}", headers=ADMIN).status_code, 200)
        self.assertEqual(self.client.get("/api/products").json(), [])

    def test_payment_status_endpoints(self):
        customer_id, product_id = self._seed_catalog()
        rental_id = self._create_rental(customer_id, product_id)["rentalID"]
        recorded = self.client.post(
            f"/api/rentals/{rental_id}/payments",
            json={"amount": 200, "dueDate": "2024-03-01", "method": "BOLETO"},
            headers=COMERCIAL,
        )
        self.assertEqual(recorded.status_code, 200, recorded.text)
        payment_id = recorded.json()["paymentID"]

        listed = self.client.get("/api/payments").json()
        self.assertEqual(listed[0]["status"], "ATRASADO")

        refreshed = self.client.post("/api/payments/refresh-overdue", params={"today": "2024-03-10"}, headers=COMERCIAL)
        self.assertEqual(refreshed.json(), {"updated": 1})

        settled = self.client.patch(
            f"/api/payments/{payment_id}/status",
            json={"status": "PAGO", "paidDate": "2024-03-11"},
            headers=COMERCIAL,
        )
        self.assertEqual(settled.status_code, 200, settled.text)
        self.assertEqual(settled.json()["status"], "PAGO")
        self.assertEqual(settled.json()["paidDate"], "2024-03-11")
        self.assertEqual(self.client.patch("/api/payments/999/status", json={"status": "PAGO"}, headers=COMERCIAL).status_code, 404)

    def test_financial_summary_requires_rights(self):
        denied = self.client.get("/api/financial/summary", headers=OPERACIONAL)
        self.assertEqual(denied.status_code, 403)
        allowed = self.client.get("/api/financial/summary", headers=ADMIN)
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.json()["totalReceivable"], 0)


if __name__ == "__main__":
    unittest.main()
