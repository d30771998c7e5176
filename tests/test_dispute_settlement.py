from __future__ import annotations

import unittest

from campusmarket.models import Order, Transaction, User
from market_case import MarketTestCase


class DisputeSettlementTestCase(MarketTestCase):
    """Refunds on orders that went through checkout, rider accept and delivery."""

    def _parties(self) -> dict:
        with self.app.app_context():
            return {
                "seller": self._user("seller"),
                "buyer": self._user("buyer"),
                "rider": self._user("rider"),
                "admin": self._user("admin"),
            }

    def _open(self, p: dict, order_id: int) -> int:
        res = self.client.post(
            "/api/disputes",
            json={"order_id": order_id, "reason": "Not as described"},
            headers=self._auth(p["buyer"]),
        )
        self.assertEqual(res.status_code, 201, res.get_json())
        return res.get_json()["dispute"]["id"]

    def _resolve(self, p: dict, dispute_id: int, **payload):
        return self.client.post(
            f"/api/admin/disputes/{dispute_id}/resolve",
            json={"resolution": "Reviewed", **payload},
            headers=self._auth(p["admin"]),
        )

    def _confirm(self, p: dict, order_id: int):
        return self.client.post(
            "/api/orders/confirm-delivery", json={"order_id": order_id}, headers=self._auth(p["buyer"])
        )

    def _balances(self, uid: int) -> tuple[float, float]:
        user = self._reload(User, uid)
        return user.available_balance, user.pending_balance

    def test_partial_refund_reduces_only_that_orders_release(self):
        p = self._parties()
        with self.app.app_context():
            other_rider = self._user("rider")
        # 4200 + 800 delivery: total 5000, commission 450, seller escrow 3990 each.
        first = self._checkout_delivered(p["buyer"], p["seller"], p["rider"], price=4200)
        second = self._checkout_delivered(p["buyer"], p["seller"], other_rider, price=4200)
        dispute_id = self._open(p, first)
        res = self._resolve(p, dispute_id, status="RESOLVED_COMPROMISE", refund_amount=1000)
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["summary"]["net_refund"], 900.0)
        with self.app.app_context():
            self.assertEqual(self._balances(p["seller"]), (0.0, 7080.0))
            self.assertFalse(self._reload(Order, first).is_disputed)

        res = self._confirm(p, first)
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["seller_share"], 3090.0)
        with self.app.app_context():
            self.assertEqual(self._balances(p["seller"]), (3090.0, 3990.0))
            self.assertEqual(self._balances(p["rider"]), (560.0, 0.0))
            self.assertEqual(self._balances(other_rider), (0.0, 560.0))

        res = self._confirm(p, second)
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["seller_share"], 3990.0)
        with self.app.app_context():
            self.assertEqual(self._balances(p["seller"]), (7080.0, 0.0))
            self.assertEqual(self._balances(other_rider), (560.0, 0.0))
            self.assertEqual(self._balances(p["buyer"]), (900.0, 0.0))
            self._assert_no_drift(p["buyer"], p["seller"], p["rider"], other_rider)

    def test_refund_beyond_seller_escrow_is_platform_funded(self):
        p = self._parties()
        # 2000 + 800 delivery: total 2800, commission 340, seller escrow 1900.
        order_id = self._checkout_delivered(p["buyer"], p["seller"], p["rider"], price=2000)
        dispute_id = self._open(p, order_id)
        res = self._resolve(p, dispute_id, status="RESOLVED_BUYER_FAVOR", refund_amount=2800)
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(
            res.get_json()["summary"], {"gross_refund": 2800.0, "processing_fee": 280.0, "net_refund": 2520.0}
        )
        with self.app.app_context():
            self.assertEqual(self._balances(p["buyer"]), (2520.0, 0.0))
            self.assertEqual(self._balances(p["seller"]), (0.0, 0.0))
            number = self._reload(Order, order_id).order_number
            share = Transaction.query.filter_by(
                user_id=p["buyer"], reference=f"{number}-BUYER-REFUND-PLATFORM-SHARE"
            ).one()
            self.assertEqual((share.balance_field, share.amount), ("memo", 620.0))

        res = self._confirm(p, order_id)
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual((res.get_json()["seller_share"], res.get_json()["rider_share"]), (0.0, 560.0))
        with self.app.app_context():
            self.assertEqual(self._balances(p["seller"]), (0.0, 0.0))
            self.assertEqual(self._balances(p["rider"]), (560.0, 0.0))
            self._assert_no_drift(p["buyer"], p["seller"], p["rider"])

    def test_refund_after_completion_draws_released_funds(self):
        p = self._parties()
        order_id = self._checkout_delivered(p["buyer"], p["seller"], p["rider"], price=4200)
        self.assertEqual(self._confirm(p, order_id).status_code, 200)
        dispute_id = self._open(p, order_id)
        res = self._resolve(p, dispute_id, status="RESOLVED_COMPROMISE", refund_amount=2000)
        self.assertEqual(res.status_code, 200, res.get_json())
        with self.app.app_context():
            self.assertEqual(self._balances(p["seller"]), (2190.0, 0.0))
            self.assertEqual(self._balances(p["buyer"]), (1800.0, 0.0))
            number = self._reload(Order, order_id).order_number
            debit = Transaction.query.filter_by(user_id=p["seller"], reference=f"{number}-SELLER-DISPUTE-REFUND").one()
            self.assertEqual((debit.balance_field, debit.amount), ("available", 1800.0))
            self._assert_no_drift(p["buyer"], p["seller"], p["rider"])

    def test_delivering_rider_collects_for_the_fee_already_held(self):
        p = self._parties()
        order_id = self._checkout_delivered(p["buyer"], p["seller"], p["rider"], price=1200)
        dispute_id = self._open(p, order_id)
        res = self._resolve(
            p,
            dispute_id,
            status="RESOLVED_BUYER_FAVOR",
            refund_amount=2000,
            assign_rider_for_pickup=True,
            rider_id=p["rider"],
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        with self.app.app_context():
            self.assertEqual(self._balances(p["rider"]), (0.0, 560.0))

        res = self.client.post(
            "/api/riders/dispute-picked-up", json={"order_id": order_id}, headers=self._auth(p["rider"])
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        with self.app.app_context():
            self.assertEqual(self._reload(Order, order_id).status, "CANCELLED")
            self.assertEqual(self._balances(p["rider"]), (560.0, 0.0))
            self.assertEqual(self._balances(p["buyer"]), (1800.0, 0.0))
            self.assertEqual(self._balances(p["seller"]), (0.0, 0.0))
            self._assert_no_drift(p["buyer"], p["seller"], p["rider"])

    def test_new_pickup_rider_gets_own_fee_and_delivering_rider_is_paid(self):
        p = self._parties()
        with self.app.app_context():
            pickup_rider = self._user("rider")
        order_id = self._checkout_delivered(p["buyer"], p["seller"], p["rider"], price=1200)
        dispute_id = self._open(p, order_id)
        res = self._resolve(
            p,
            dispute_id,
            status="RESOLVED_BUYER_FAVOR",
            refund_amount=2000,
            assign_rider_for_pickup=True,
            rider_id=pickup_rider,
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        with self.app.app_context():
            self.assertEqual(self._balances(p["rider"]), (560.0, 0.0))
            self.assertEqual(self._balances(pickup_rider), (0.0, 560.0))

        res = self.client.post(
            "/api/riders/dispute-picked-up", json={"order_id": order_id}, headers=self._auth(pickup_rider)
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        with self.app.app_context():
            self.assertEqual(self._balances(pickup_rider), (560.0, 0.0))
            self._assert_no_drift(p["buyer"], p["seller"], p["rider"], pickup_rider)

    def test_cancelled_order_returns_unrefunded_escrow_to_seller(self):
        p = self._parties()
        # 100000 + 800 delivery: commission 5240, seller escrow 95000, net refund 90720.
        order_id = self._checkout_delivered(p["buyer"], p["seller"], p["rider"], price=100000)
        dispute_id = self._open(p, order_id)
        headers = self._auth(p["admin"])
        for action in ("send_rider", "confirm_received", "release_refund", "release_rider_pay"):
            res = self.client.post(
                f"/api/admin/disputes/{dispute_id}/pickup", json={"action": action}, headers=headers
            )
            self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["dispute"]["status"], "RESOLVED_BUYER_FAVOR")
        with self.app.app_context():
            self.assertEqual(self._reload(Order, order_id).status, "CANCELLED")
            self.assertEqual(self._balances(p["buyer"]), (90720.0, 0.0))
            self.assertEqual(self._balances(p["seller"]), (4280.0, 0.0))
            self.assertEqual(self._balances(p["rider"]), (560.0, 0.0))
            number = self._reload(Order, order_id).order_number
            self.assertIsNone(
                Transaction.query.filter_by(user_id=p["buyer"], reference=f"{number}-BUYER-REFUND-PLATFORM-SHARE").first()
            )
            self._assert_no_drift(p["buyer"], p["seller"], p["rider"])


if __name__ == "__main__":
    unittest.main()
