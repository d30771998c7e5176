from __future__ import annotations

import unittest
from datetime import datetime

from campusmarket.models import Dispute, Order, Transaction, User
from market_case import MarketTestCase


class DisputePickupFlowTestCase(MarketTestCase):
    """Refund released only after the rider brings the item back.

    The order is bought through checkout and delivered by the rider, so
    the seller holds 2000 - 300 - 560 = 1140 and the rider 560 in escrow.
    """

    def setUp(self):
        super().setUp()
        with self.app.app_context():
            self.seller = self._user("seller")
            self.buyer = self._user("buyer")
            self.rider = self._user("rider")
            self.admin = self._user("admin")
        self.order_id = self._checkout_delivered(self.buyer, self.seller, self.rider, price=1200)
        with self.app.app_context():
            order = self._reload(Order, self.order_id)
            self.assertEqual((order.total_amount, order.platform_commission), (2000.0, 300.0))
            self.order_number = order.order_number
            self.assertEqual(self._reload(User, self.seller).pending_balance, 1140.0)
            self.assertEqual(self._reload(User, self.rider).pending_balance, 560.0)
        res = self.client.post(
            "/api/disputes",
            json={"order_id": self.order_id, "reason": "Wrong size delivered"},
            headers=self._auth(self.buyer),
        )
        self.assertEqual(res.status_code, 201, res.get_json())
        self.dispute_id = res.get_json()["dispute"]["id"]

    def _action(self, action: str):
        return self.client.post(
            f"/api/admin/disputes/{self.dispute_id}/pickup",
            json={"action": action},
            headers=self._auth(self.admin),
        )

    def test_full_pickup_refund(self):
        res = self._action("send_rider")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["rider"]["id"], self.rider)
        self.assertEqual(res.get_json()["dispute"]["pickup_state"], "awaiting_pickup")
        with self.app.app_context():
            order = self._reload(Order, self.order_id)
            self.assertEqual((order.status, order.is_disputed), ("RIDER_ASSIGNED", True))
            self.assertEqual(self._reload(Dispute, self.dispute_id).status, "UNDER_REVIEW")
            # The delivery fee already held covers the pickup trip.
            self.assertEqual(self._reload(User, self.rider).pending_balance, 560.0)

        res = self.client.post(
            "/api/riders/dispute-picked-up", json={"order_id": self.order_id}, headers=self._auth(self.rider)
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["order"]["status"], "PICKED_UP")

        self.assertEqual(self._action("confirm_received").status_code, 200)

        res = self._action("release_refund")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual((res.get_json()["net_refund"], res.get_json()["processing_fee"]), (1800.0, 200.0))
        self.assertEqual(res.get_json()["dispute"]["status"], "UNDER_REVIEW")
        self.assertEqual(res.get_json()["dispute"]["pickup_state"], "refund_released")
        with self.app.app_context():
            self.assertEqual(self._reload(User, self.buyer).available_balance, 1800.0)
            seller = self._reload(User, self.seller)
            self.assertEqual((seller.available_balance, seller.pending_balance), (0.0, 0.0))
            self.assertTrue(self._reload(Order, self.order_id).is_disputed)
            from_seller = Transaction.query.filter_by(
                user_id=self.seller, reference=f"{self.order_number}-SELLER-DISPUTE-REFUND"
            ).one()
            self.assertEqual(from_seller.amount, 1140.0)
            platform = Transaction.query.filter_by(
                user_id=self.buyer, reference=f"{self.order_number}-BUYER-REFUND-PLATFORM-SHARE"
            ).one()
            self.assertEqual((platform.balance_field, platform.amount), ("memo", 660.0))

        res = self._action("release_rider_pay")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["rider_pay"], 560.0)
        dispute = res.get_json()["dispute"]
        self.assertEqual(dispute["status"], "RESOLVED_BUYER_FAVOR")
        self.assertEqual(dispute["resolution"], "Item collected, refund and rider payment released.")
        self.assertEqual(dispute["refund_amount"], 1800.0)

        with self.app.app_context():
            rider = self._reload(User, self.rider)
            self.assertEqual((rider.available_balance, rider.pending_balance), (560.0, 0.0))
            order = self._reload(Order, self.order_id)
            self.assertFalse(order.is_disputed)
            self.assertEqual(order.status, "CANCELLED")
            refs = {t.reference for t in Transaction.query.filter_by(user_id=self.rider).all()}
            self.assertEqual(
                refs,
                {
                    f"{self.order_number}-RIDER-ESCROW",
                    f"{self.order_number}-RIDER-ESCROW-RELEASE",
                    f"{self.order_number}-RIDER-RELEASE",
                },
            )
            self._assert_no_drift(self.buyer, self.seller, self.rider)

    def test_rider_pay_then_refund_also_closes(self):
        self._action("send_rider")
        self._action("confirm_received")
        res = self._action("release_rider_pay")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["dispute"]["status"], "UNDER_REVIEW")
        self.assertEqual(res.get_json()["dispute"]["pickup_state"], "rider_paid")

        res = self._action("release_refund")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["dispute"]["status"], "RESOLVED_BUYER_FAVOR")
        with self.app.app_context():
            self.assertEqual(self._reload(User, self.buyer).available_balance, 1800.0)
            rider = self._reload(User, self.rider)
            self.assertEqual((rider.available_balance, rider.pending_balance), (560.0, 0.0))
            self.assertEqual(self._reload(Order, self.order_id).status, "CANCELLED")
            self._assert_no_drift(self.buyer, self.seller, self.rider)

    def test_steps_must_run_in_order(self):
        res = self._action("confirm_received")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "PICKUP_NOT_AWAITING")

        self._action("send_rider")
        res = self._action("send_rider")
        self.assertEqual(res.get_json()["error"], "RIDER_ALREADY_SENT")

        for action in ("release_refund", "release_rider_pay"):
            res = self._action(action)
            self.assertEqual(res.status_code, 409)
            self.assertEqual(res.get_json()["error"], "ITEM_NOT_RECEIVED")
        with self.app.app_context():
            self.assertEqual(self._reload(User, self.buyer).available_balance, 0.0)

        res = self._action("refund_everything")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_PICKUP_ACTION")

    def test_each_payment_released_once(self):
        self._action("send_rider")
        self._action("confirm_received")
        self.assertEqual(self._action("release_refund").status_code, 200)
        res = self._action("release_refund")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "REFUND_ALREADY_RELEASED")
        with self.app.app_context():
            self.assertEqual(self._reload(User, self.buyer).available_balance, 1800.0)

        self.assertEqual(self._action("release_rider_pay").status_code, 200)
        res = self._action("release_rider_pay")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "DISPUTE_ALREADY_RESOLVED")
        with self.app.app_context():
            self.assertEqual(self._reload(User, self.rider).available_balance, 560.0)

    def test_rider_on_pickup_cannot_accept_new_orders(self):
        self._action("send_rider")
        with self.app.app_context():
            fresh = self._order(self.buyer, self.seller)
        res = self.client.post("/api/riders/accept-order", json={"order_id": fresh}, headers=self._auth(self.rider))
        self.assertEqual(res.status_code, 409)
        body = res.get_json()
        self.assertEqual(body["error"], "PENDING_DISPUTE_PICKUP")
        self.assertEqual(body["blocking_order_id"], self.order_id)

        res = self.client.post(
            "/api/riders/update-status",
            json={"order_id": self.order_id, "status": "ON_THE_WAY"},
            headers=self._auth(self.rider),
        )
        self.assertEqual(res.get_json()["error"], "ORDER_DISPUTED")

    def test_send_rider_needs_a_delivering_rider(self):
        with self.app.app_context():
            order_id = self._order(
                self.buyer, self.seller, status="DELIVERED", delivered_at=datetime.utcnow(), seller_escrow=4500
            )
        res = self.client.post(
            "/api/disputes", json={"order_id": order_id, "reason": "Damaged"}, headers=self._auth(self.buyer)
        )
        dispute_id = res.get_json()["dispute"]["id"]
        res = self.client.post(
            f"/api/admin/disputes/{dispute_id}/pickup",
            json={"action": "send_rider"},
            headers=self._auth(self.admin),
        )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "NO_RIDER_ON_ORDER")


if __name__ == "__main__":
    unittest.main()
