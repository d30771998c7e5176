from __future__ import annotations

import unittest
import uuid

from market_case import MarketTestCase


class RequestIdHeadersTestCase(MarketTestCase):
    def test_generates_request_id_when_missing(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        rid = (res.headers.get("X-Request-ID") or "").strip()
        self.assertTrue(rid)
        uuid.UUID(rid)

    def test_echoes_request_id_when_provided(self):
        incoming = "rid-test-123"
        res = self.client.get("/api/health", headers={"X-Request-ID": incoming})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.headers.get("X-Request-ID"), incoming)

    def test_error_payload_includes_trace_id(self):
        res = self.client.post("/api/disputes", json={"order_id": 1, "reason": "Missing auth"})
        self.assertEqual(res.status_code, 401)
        body = res.get_json(force=True)
        self.assertIsInstance(body, dict)
        self.assertIn("trace_id", body)
        self.assertEqual((body.get("trace_id") or "").strip(), (res.headers.get("X-Request-ID") or "").strip())

    def test_health_reports_payments_and_db(self):
        body = self.client.get("/api/health").get_json()
        self.assertEqual(body.get("db"), "ok")
        self.assertIn("payments", body)


if __name__ == "__main__":
    unittest.main()
