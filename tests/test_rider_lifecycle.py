from __future__ import annotations

import unittest

from campusmarket.models import Order, OrderTransition, Transaction, User
from market_case import MarketTestCase


class RiderLifecycleTestCase(MarketTestCase):
    def _seed(self):
        with self.app.app_context():
            seller = self._user("seller")
            buyer = self._user("buyer")
            rider = self._user("rider")
            order_id = self._order(buyer, seller)
        return seller, buyer, rider, order_id

    def _accept(self, rider: int, order_id: int):
        return self.client.post("/api/riders/accept-order", json={"order_id": order_id}, headers=self._auth(rider))

    def _status(self, rider: int, order_id: int, status: str):
        return self.client.post(
            "/api/riders/update-status",
            json={"order_id": order_id, "status": status},
            headers=self._auth(rider),
        )

    def test_accept_assigns_rider_and_escrows_fee(self):
        _, _, rider, order_id = self._seed()
        res = self._accept(rider, order_id)
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["order"]["status"], "RIDER_ASSIGNED")
        with self.app.app_context():
            order = self._reload(Order, order_id)
            self.assertEqual(order.rider_id, rider)
            self.assertIsNotNone(order.rider_assigned_at)
            self.assertEqual(self._reload(User, rider).pending_balance, 560.0)
            escrow = Transaction.query.filter_by(user_id=rider, reference=f"{order.order_number}-RIDER-ESCROW").one()
            self.assertEqual(escrow.type, "ESCROW")
            transition = OrderTransition.query.filter_by(order_id=order_id).one()
            self.assertEqual((transition.from_status, transition.to_status), ("PENDING", "RIDER_ASSIGNED"))

    def test_second_rider_cannot_take_assigned_order(self):
        _, _, rider, order_id = self._seed()
        with self.app.app_context():
            other = self._user("rider")
        self.assertEqual(self._accept(rider, order_id).status_code, 200)
        res = self._accept(other, order_id)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "ORDER_HAS_RIDER")
        with self.app.app_context():
            self.assertEqual(self._reload(User, other).pending_balance, 0.0)

    def test_rider_with_active_delivery_is_blocked(self):
        seller, buyer, rider, order_id = self._seed()
        with self.app.app_context():
            second = self._order(buyer, seller)
        self.assertEqual(self._accept(rider, order_id).status_code, 200)
        res = self._accept(rider, second)
        self.assertEqual(res.status_code, 409)
        body = res.get_json()
        self.assertEqual(body["error"], "ACTIVE_DELIVERY")
        self.assertEqual(body["block_reason"], "ACTIVE_DELIVERY")

        listing = self.client.get("/api/riders/available-orders", headers=self._auth(rider)).get_json()
        self.assertFalse(listing["can_accept"])
        self.assertIn(second, [o["id"] for o in listing["orders"]])

    def test_status_walks_forward_only(self):
        _, _, rider, order_id = self._seed()
        self._accept(rider, order_id)
        res = self._status(rider, order_id, "DELIVERED")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "INVALID_ORDER_TRANSITION")

        for status in ("PICKED_UP", "ON_THE_WAY", "DELIVERED"):
            res = self._status(rider, order_id, status)
            self.assertEqual(res.status_code, 200, res.get_json())
            self.assertEqual(res.get_json()["order"]["status"], status)

        res = self._status(rider, order_id, "PICKED_UP")
        self.assertEqual(res.status_code, 409)
        with self.app.app_context():
            order = self._reload(Order, order_id)
            self.assertIsNotNone(order.delivered_at)
            self.assertEqual(self._reload(User, rider).completed_deliveries, 1)
            self.assertEqual(OrderTransition.query.filter_by(order_id=order_id).count(), 4)

    def test_status_values_outside_rider_set_are_rejected(self):
        _, _, rider, order_id = self._seed()
        self._accept(rider, order_id)
        res = self._status(rider, order_id, "COMPLETED")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_STATUS")

    def test_only_assigned_rider_can_update(self):
        _, _, rider, order_id = self._seed()
        with self.app.app_context():
            other = self._user("rider")
        self._accept(rider, order_id)
        res = self._status(other, order_id, "PICKED_UP")
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "NOT_ORDER_RIDER")

    def test_rider_freed_after_delivery_marked(self):
        seller, buyer, rider, order_id = self._seed()
        with self.app.app_context():
            second = self._order(buyer, seller)
        self._accept(rider, order_id)
        for status in ("PICKED_UP", "ON_THE_WAY", "DELIVERED"):
            self._status(rider, order_id, status)
        # DELIVERED still counts as active until the buyer confirms.
        self.assertEqual(self._accept(rider, second).status_code, 409)
        self.client.post("/api/orders/confirm-delivery", json={"order_id": order_id}, headers=self._auth(buyer))
        self.assertEqual(self._accept(rider, second).status_code, 200)


if __name__ == "__main__":
    unittest.main()
