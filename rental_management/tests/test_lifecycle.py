import json
import unittest

from sqlalchemy import select, text

import rental_fixtures as fx

from models.rental_models import AuditLog, NotificationQueue
from services import lifecycle_service, payment_service
from services.access_service import RIGHTS_BY_ROLE, Role, has_permission, parse_role
from services.errors import ConcurrentModification, Forbidden, IllegalTransition


class TransitionTableTests(unittest.TestCase):
    def test_next_status_walks_forward_flow_once(self):
        visited = []
        current = "pending"
        while True:
            current = lifecycle_service.next_status(current)
            if current is None:
                break
            visited.append(current)
        self.assertEqual(visited, ["awaiting_payment", "confirmed", "ongoing", "collecting", "finished"])
        self.assertIsNone(lifecycle_service.next_status("cancelled"))
        self.assertIsNone(lifecycle_service.next_status("unknown"))

    def test_cancel_is_legal_from_every_open_state(self):
        for status in lifecycle_service.STATUS_FLOW:
            if status in lifecycle_service.TERMINAL_STATES:
                continue
            self.assertTrue(lifecycle_service.can_transition(status, "cancelled"), status)

    def test_terminal_states_allow_nothing(self):
        for terminal in lifecycle_service.TERMINAL_STATES:
            for target in lifecycle_service.ALL_STATES:
                self.assertFalse(lifecycle_service.can_transition(terminal, target), f"{terminal}->{target}")

    def test_backward_and_skipping_moves_are_illegal(self):
        self.assertFalse(lifecycle_service.can_transition("ongoing", "confirmed"))
        self.assertFalse(lifecycle_service.can_transition("confirmed", "collecting"))
        self.assertFalse(lifecycle_service.can_transition("pending", "finished"))


class RoleTests(unittest.TestCase):
    def test_every_role_has_the_full_permission_set(self):
        keys = set(RIGHTS_BY_ROLE[Role.ADMIN])
        for role in Role:
            self.assertEqual(set(RIGHTS_BY_ROLE[role]), keys)

    def test_unknown_role_is_forbidden(self):
        with self.assertRaises(Forbidden):
            parse_role("guest")
        with self.assertRaises(Forbidden):
            parse_role(None)
        self.assertEqual(parse_role(" Admin "), Role.ADMIN)
        self.assertFalse(has_permission("guest", "advanceStatus"))

    def test_operational_role_cannot_touch_payments(self):
        self.assertFalse(has_permission(Role.OPERACIONAL, "managePayments"))
        self.assertTrue(has_permission(Role.OPERACIONAL, "collectItems"))
        self.assertFalse(has_permission(Role.COMERCIAL, "collectItems"))


class LifecycleFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = fx.make_session_factory()
        self.db = factory()
        self.customer = fx.add_customer(self.db)
        self.product = fx.add_product(self.db, stock=10)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _rental(self, quantity=4):
        return fx.create_rental(self.db, self.customer, [(self.product, quantity)])

    def test_confirm_requires_paid_payment(self):
        rental = self._rental()
        with self.assertRaises(IllegalTransition):
            lifecycle_service.apply_transition(self.db, rental, "confirmed", "admin")
        self.assertEqual(rental.Status, "pending")

        result = payment_service.confirm_payment(self.db, rental, "comercial", method="PIX")
        self.assertEqual(rental.Status, "confirmed")
        self.assertEqual(result.previous_status, "pending")
        self.assertEqual(len(rental.Payments), 1)
        self.assertEqual(rental.Payments[0].Status, "PAGO")
        self.assertEqual(rental.Payments[0].Amount, rental.TotalValue)

    def test_defer_then_confirm(self):
        rental = self._rental()
        payment_service.defer_payment(self.db, rental, "comercial")
        self.assertEqual(rental.Status, "awaiting_payment")
        payment_service.confirm_payment(self.db, rental, "admin", method="BOLETO")
        self.assertEqual(rental.Status, "confirmed")

    def test_advance_emits_status_event_and_audit(self):
        rental = self._rental()
        payment_service.confirm_payment(self.db, rental, "admin")
        result = lifecycle_service.advance(self.db, rental, "operacional")

        self.assertEqual(rental.Status, "ongoing")
        self.assertEqual(len(result.events), 1)
        event = result.events[0]
        self.assertEqual((event.from_status, event.to_status), ("confirmed", "ongoing"))
        self.assertFalse(result.requires_reconciliation)

        queued = self.db.execute(
            select(NotificationQueue).where(NotificationQueue.NotificationType == "RentalStatusChanged")
        ).scalars().all()
        payloads = [json.loads(row.Payload) for row in queued]
        self.assertIn({"type": "RentalStatusChanged", "rentalID": rental.RentalID, "from": "confirmed", "to": "ongoing"}, payloads)

        actions = self.db.execute(select(AuditLog.Action).where(AuditLog.EntityID == rental.RentalID)).scalars().all()
        self.assertIn("StatusChange", actions)

    def test_entering_collecting_requests_reconciliation(self):
        rental = self._rental()
        payment_service.confirm_payment(self.db, rental, "admin")
        lifecycle_service.advance(self.db, rental, "admin")
        result = lifecycle_service.advance(self.db, rental, "admin")
        self.assertEqual(rental.Status, "collecting")
        self.assertTrue(result.requires_reconciliation)

    def test_operational_role_cannot_cancel(self):
        rental = self._rental()
        with self.assertRaises(Forbidden):
            lifecycle_service.apply_transition(self.db, rental, "cancelled", "operacional")
        self.assertEqual(rental.Status, "pending")

    def test_operational_role_cannot_confirm_payment(self):
        rental = self._rental()
        with self.assertRaises(Forbidden):
            payment_service.confirm_payment(self.db, rental, "operacional")
        self.assertEqual(rental.Payments, [])

    def test_cancel_restores_booked_stock(self):
        rental = self._rental(quantity=4)
        self.assertEqual(fx.stock_of(self.db, self.product.ProductID), 6)
        payment_service.confirm_payment(self.db, rental, "admin")
        lifecycle_service.apply_transition(self.db, rental, "cancelled", "comercial")
        self.assertEqual(rental.Status, "cancelled")
        self.assertEqual(fx.stock_of(self.db, self.product.ProductID), 10)

        with self.assertRaises(IllegalTransition):
            lifecycle_service.apply_transition(self.db, rental, "cancelled", "admin")
        self.assertEqual(fx.stock_of(self.db, self.product.ProductID), 10)

    def test_stale_expected_version_is_rejected(self):
        rental = self._rental()
        version = rental.Version
        payment_service.confirm_payment(self.db, rental, "admin", expected_version=version)
        self.assertGreater(rental.Version, version)
        with self.assertRaises(ConcurrentModification):
            lifecycle_service.advance(self.db, rental, "admin", expected_version=version)
        self.assertEqual(rental.Status, "confirmed")

    def test_concurrent_writer_is_detected_on_commit(self):
        rental = self._rental()
        payment_service.confirm_payment(self.db, rental, "admin")
        self.db.execute(
            text("UPDATE Rentals SET Version = Version + 1 WHERE RentalID = :rental_id"),
            {"rental_id": rental.RentalID},
        )
        self.db.commit()
        with self.assertRaises(ConcurrentModification):
            lifecycle_service.advance(self.db, rental, "admin")

    def test_unknown_target_status(self):
        rental = self._rental()
        with self.assertRaises(IllegalTransition):
            lifecycle_service.apply_transition(self.db, rental, "archived", "admin")


if __name__ == "__main__":
    unittest.main()
