from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

import redis

from campusmarket.utils import rate_limit


class RedisCooldownTestCase(unittest.TestCase):
    def setUp(self):
        rate_limit._WINDOWS.clear()
        self.client = MagicMock()
        self.pipe = self.client.pipeline.return_value
        patcher = patch.object(rate_limit, "_get_client", return_value=self.client)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_first_hit_opens_the_window(self):
        self.pipe.execute.return_value = [True, 1, 5]
        self.assertEqual(rate_limit.check_limit("confirm-delivery:7-42", limit=1, window_seconds=5), (True, 0))
        self.pipe.set.assert_called_once_with("rl:v2:confirm-delivery:7-42", 0, nx=True, ex=5)
        self.pipe.incr.assert_called_once_with("rl:v2:confirm-delivery:7-42")

    def test_repeat_inside_window_reports_remaining_ttl(self):
        self.pipe.execute.return_value = [None, 2, 3]
        self.assertEqual(rate_limit.check_limit("confirm-delivery:7-42", limit=1, window_seconds=5), (False, 3))

    def test_redis_failure_falls_back_to_process_window(self):
        self.pipe.execute.side_effect = redis.ConnectionError("down")
        self.assertEqual(rate_limit.check_limit("confirm-delivery:7-43", limit=1, window_seconds=5), (True, 0))
        allowed, retry_after = rate_limit.check_limit("confirm-delivery:7-43", limit=1, window_seconds=5)
        self.assertFalse(allowed)
        self.assertGreaterEqual(retry_after, 1)


if __name__ == "__main__":
    unittest.main()
