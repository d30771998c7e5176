from __future__ import annotations

import json
import unittest
from datetime import datetime

from campusmarket.utils.observability import scrub_event
from market_case import MarketTestCase


class RequestLogFieldsTestCase(MarketTestCase):
    def _request_lines(self, logs) -> list[dict]:
        lines = []
        for message in logs.output:
            _, _, raw = message.split(":", 2)
            if raw.startswith("{"):
                line = json.loads(raw)
                if line.get("event") == "api_request":
                    lines.append(line)
        return lines

    def _seed(self, status: str = "DELIVERED"):
        with self.app.app_context():
            seller = self._user("seller")
            buyer = self._user("buyer")
            order_id = self._order(
                buyer,
                seller,
                status=status,
                delivered_at=datetime.utcnow() if status == "DELIVERED" else None,
            )
        return buyer, order_id

    def test_dispute_open_logs_order_and_caller(self):
        buyer, order_id = self._seed()
        with self.assertLogs(self.app.logger, level="INFO") as logs:
            res = self.client.post(
                "/api/disputes",
                json={"order_id": order_id, "reason": "Missing charger"},
                headers={**self._auth(buyer), "X-Request-Id": "rid-dispute-open"},
            )
        self.assertEqual(res.status_code, 201, res.get_json())
        [line] = self._request_lines(logs)
        self.assertEqual(line["request_id"], "rid-dispute-open")
        self.assertEqual((line["method"], line["path"], line["status"]), ("POST", "/api/disputes", 201))
        self.assertEqual((line["user_id"], line["role"]), (buyer, "buyer"))
        self.assertEqual(line["order_id"], order_id)
        self.assertIsNone(line["dispute_id"])
        self.assertIsNone(line["error"])
        self.assertEqual(line["txn_rollbacks"], [])

    def test_refused_unit_logs_error_code_and_rollback(self):
        buyer, order_id = self._seed(status="PENDING")
        with self.assertLogs(self.app.logger, level="INFO") as logs:
            res = self.client.post(
                "/api/disputes",
                json={"order_id": order_id, "reason": "Never arrived"},
                headers=self._auth(buyer),
            )
        self.assertEqual(res.status_code, 409)
        [line] = self._request_lines(logs)
        self.assertEqual(line["error"], "ORDER_NOT_DELIVERED")
        self.assertEqual(line["order_id"], order_id)
        self.assertEqual(line["txn_rollbacks"], [{"label": "dispute_open", "code": "ORDER_NOT_DELIVERED"}])
        self.assertTrue(any("txn_rollback label=dispute_open" in m for m in logs.output))

    def test_dispute_id_is_read_from_the_url(self):
        buyer, order_id = self._seed()
        res = self.client.post(
            "/api/disputes", json={"order_id": order_id, "reason": "Scratched"}, headers=self._auth(buyer)
        )
        dispute_id = res.get_json()["dispute"]["id"]
        with self.assertLogs(self.app.logger, level="INFO") as logs:
            res = self.client.get(f"/api/disputes/{dispute_id}/messages", headers=self._auth(buyer))
        self.assertEqual(res.status_code, 200, res.get_json())
        [line] = self._request_lines(logs)
        self.assertEqual(line["dispute_id"], dispute_id)
        self.assertIsNone(line["order_id"])


class ScrubEventTestCase(unittest.TestCase):
    def test_credentials_and_bank_details_are_redacted(self):
        event = {
            "request": {
                "headers": {"Authorization": "Bearer abc", "X-Paystack-Signature": "sig", "Accept": "json"},
                "data": {"amount": 5000, "account_number": "0123456789", "bank_code": "058"},
            }
        }
        scrubbed = scrub_event(event, None)["request"]
        self.assertEqual(scrubbed["headers"]["Authorization"], "[REDACTED]")
        self.assertEqual(scrubbed["headers"]["X-Paystack-Signature"], "[REDACTED]")
        self.assertEqual(scrubbed["headers"]["Accept"], "json")
        self.assertEqual(scrubbed["data"]["account_number"], "[REDACTED]")
        self.assertEqual(scrubbed["data"]["bank_code"], "[REDACTED]")
        self.assertEqual(scrubbed["data"]["amount"], 5000)


if __name__ == "__main__":
    unittest.main()
