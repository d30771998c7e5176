from __future__ import annotations

import unittest
from datetime import datetime

from campusmarket.models import Order, Transaction, User
from campusmarket.services.errors import PreconditionFailed
from campusmarket.services.escrow_service import release_order_escrow
from campusmarket.utils import rate_limit
from market_case import MarketTestCase


class ConfirmDeliveryTestCase(MarketTestCase):
    def _delivered_via_rider(self):
        """checkout total 5000, commission 500, delivered by a platform rider"""
        with self.app.app_context():
            seller = self._user("seller")
            buyer = self._user("buyer")
            rider = self._user("rider")
            order_id = self._order(buyer, seller, total=5000, commission=500)
        self.assertEqual(
            self.client.post("/api/riders/accept-order", json={"order_id": order_id}, headers=self._auth(rider)).status_code,
            200,
        )
        for status in ("PICKED_UP", "ON_THE_WAY", "DELIVERED"):
            res = self.client.post(
                "/api/riders/update-status",
                json={"order_id": order_id, "status": status},
                headers=self._auth(rider),
            )
            self.assertEqual(res.status_code, 200, res.get_json())
        return seller, buyer, rider, order_id

    def _confirm(self, buyer: int, order_id: int):
        return self.client.post("/api/orders/confirm-delivery", json={"order_id": order_id}, headers=self._auth(buyer))

    def test_happy_path_pays_seller_and_rider(self):
        seller, buyer, rider, order_id = self._delivered_via_rider()
        res = self._confirm(buyer, order_id)
        self.assertEqual(res.status_code, 200, res.get_json())
        body = res.get_json()
        self.assertEqual(body["seller_share"], 3940.0)
        self.assertEqual(body["rider_share"], 560.0)
        self.assertEqual(body["order"]["status"], "COMPLETED")

        with self.app.app_context():
            s = self._reload(User, seller)
            r = self._reload(User, rider)
            self.assertEqual((s.available_balance, s.pending_balance), (3940.0, 0.0))
            # Rider escrow is released symmetrically: pending drops as available rises.
            self.assertEqual((r.available_balance, r.pending_balance), (560.0, 0.0))
            order = self._reload(Order, order_id)
            self.assertIsNotNone(order.completed_at)
            refs = {t.reference for t in Transaction.query.filter_by(user_id=rider).all()}
            self.assertIn(f"{order.order_number}-RIDER-ESCROW-RELEASE", refs)
            self.assertIn(f"{order.order_number}-RIDER-RELEASE", refs)

    def test_second_confirmation_never_pays_twice(self):
        seller, buyer, _, order_id = self._delivered_via_rider()
        self.assertEqual(self._confirm(buyer, order_id).status_code, 200)
        rate_limit._WINDOWS.clear()
        res = self._confirm(buyer, order_id)
        self.assertEqual(res.status_code, 409)
        body = res.get_json()
        self.assertEqual(body["error"], "ORDER_ALREADY_COMPLETED")
        self.assertTrue(body["already_completed"])
        with self.app.app_context():
            self.assertEqual(self._reload(User, seller).available_balance, 3940.0)
            with self.assertRaises(PreconditionFailed):
                release_order_escrow(order_id)
            self.assertEqual(self._reload(User, seller).available_balance, 3940.0)

    def test_rapid_repeat_hits_cooldown(self):
        _, buyer, _, order_id = self._delivered_via_rider()
        self.assertEqual(self._confirm(buyer, order_id).status_code, 200)
        res = self._confirm(buyer, order_id)
        self.assertEqual(res.status_code, 429)
        body = res.get_json()
        self.assertEqual(body["error"], "COOLDOWN_ACTIVE")
        self.assertGreaterEqual(body["retry_after"], 1)

    def test_only_buyer_can_confirm(self):
        seller, _, _, order_id = self._delivered_via_rider()
        res = self._confirm(seller, order_id)
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "NOT_ORDER_BUYER")

    def test_undelivered_order_cannot_be_confirmed(self):
        with self.app.app_context():
            seller = self._user("seller")
            buyer = self._user("buyer")
            order_id = self._order(buyer, seller)
        res = self._confirm(buyer, order_id)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "ORDER_NOT_DELIVERED")

    def test_disputed_order_holds_payment(self):
        seller, buyer, _, order_id = self._delivered_via_rider()
        res = self.client.post(
            "/api/disputes",
            json={"order_id": order_id, "reason": "Item arrived broken"},
            headers=self._auth(buyer),
        )
        self.assertEqual(res.status_code, 201, res.get_json())
        res = self._confirm(buyer, order_id)
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "ORDER_DISPUTED")
        with self.app.app_context():
            self.assertEqual(self._reload(User, seller).available_balance, 0.0)

    def test_seller_delivery_without_rider_keeps_rider_fee_out(self):
        with self.app.app_context():
            seller = self._user("seller")
            buyer = self._user("buyer")
            order_id = self._order(
                buyer, seller, total=5000, commission=500, status="DELIVERED", delivered_at=datetime.utcnow(), seller_escrow=4500
            )
        res = self._confirm(buyer, order_id)
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["seller_share"], 4500.0)
        self.assertEqual(res.get_json()["rider_share"], 0.0)


if __name__ == "__main__":
    unittest.main()
