from __future__ import annotations

import unittest

from market_case import MarketTestCase


class ApiErrorContractTestCase(MarketTestCase):
    def _assert_envelope(self, res, status: int):
        self.assertEqual(res.status_code, status)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), status)
        self.assertTrue(str(body.get("trace_id") or "").strip())
        return body

    def test_unknown_api_route_returns_json_error_shape(self):
        res = self.client.get("/api/does-not-exist")
        self._assert_envelope(res, 404)

    def test_missing_token_is_unauthorized(self):
        body = self._assert_envelope(self.client.get("/api/wallet"), 401)
        self.assertEqual(body.get("error"), "UNAUTHORIZED")

    def test_wrong_role_is_forbidden(self):
        with self.app.app_context():
            buyer_id = self._user("buyer")
        res = self.client.post("/api/riders/accept-order", json={"order_id": 1}, headers=self._auth(buyer_id))
        body = self._assert_envelope(res, 403)
        self.assertEqual(body.get("error"), "ROLE_FORBIDDEN")

    def test_missing_order_is_not_found(self):
        with self.app.app_context():
            rider_id = self._user("rider")
        res = self.client.post("/api/riders/accept-order", json={"order_id": 999999}, headers=self._auth(rider_id))
        body = self._assert_envelope(res, 404)
        self.assertEqual(body.get("error"), "ORDER_NOT_FOUND")

    def test_success_bodies_carry_ok_true(self):
        with self.app.app_context():
            buyer_id = self._user("buyer")
        res = self.client.get("/api/wallet", headers=self._auth(buyer_id))
        self.assertEqual(res.status_code, 200)
        self.assertTrue((res.get_json() or {}).get("ok"))


if __name__ == "__main__":
    unittest.main()
