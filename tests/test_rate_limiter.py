import unittest

from services.rate_limiter import RequestRateLimiter


class FakeClock:
    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RequestRateLimiterTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.limiter = RequestRateLimiter(window_seconds=60, max_requests=3, max_login_attempts=1, clock=self.clock)

    def test_counts_down_then_denies(self):
        remaining = [self.limiter.check("a@example.com", "reports/pipeline-health").remaining for _ in range(3)]
        self.assertEqual(remaining, [2, 1, 0])
        denied = self.limiter.check("a@example.com", "reports/pipeline-health")
        self.assertFalse(denied.allowed)
        self.assertEqual(denied.remaining, 0)
        self.assertEqual(denied.reset_at, self.clock.now + 60)

    def test_window_resets_after_expiry(self):
        for _ in range(4):
            self.limiter.check("a@example.com", "reports/x")
        self.clock.advance(60)
        decision = self.limiter.check("a@example.com", "reports/x")
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.remaining, 2)

    def test_keys_are_per_identifier_and_endpoint(self):
        for _ in range(3):
            self.limiter.check("a@example.com", "reports/x")
        self.assertTrue(self.limiter.check("a@example.com", "reports/y").allowed)
        self.assertTrue(self.limiter.check("b@example.com", "reports/x").allowed)

    def test_login_endpoints_use_login_limit(self):
        self.assertTrue(self.limiter.check("1.2.3.4", "auth/login").allowed)
        self.assertFalse(self.limiter.check("1.2.3.4", "auth/login").allowed)

    def test_retry_after_is_at_least_one_second(self):
        for _ in range(3):
            self.limiter.check("a", "reports/x")
        self.clock.advance(30)
        denied = self.limiter.check("a", "reports/x")
        self.assertEqual(self.limiter.retry_after(denied), 30)

    def test_should_block_after_recent_failures(self):
        for _ in range(9):
            self.limiter.record_failure("bad", "reports/x")
        self.assertFalse(self.limiter.should_block("bad"))
        self.limiter.record_failure("bad", "reports/y")
        self.assertTrue(self.limiter.should_block("bad"))
        self.assertFalse(self.limiter.should_block("badder"))
        self.assertTrue(self.limiter.should_block("bad", max_failures=5))

    def test_failures_expire_after_an_hour(self):
        for _ in range(10):
            self.limiter.record_failure("bad", "reports/x")
        self.clock.advance(60 * 60)
        self.assertFalse(self.limiter.should_block("bad"))

    def test_expired_entries_are_evicted(self):
        for index in range(500):
            self.limiter.check(f"10.0.0.{index}", f"reports/path-{index}")
            self.limiter.record_failure(f"10.0.0.{index}", f"reports/path-{index}")
        self.assertEqual(len(self.limiter._windows), 500)
        self.assertEqual(len(self.limiter._failures), 500)

        self.clock.advance(10 * 24 * 60 * 60)
        self.limiter.check("fresh", "reports/x")
        self.assertEqual(list(self.limiter._windows), [("fresh", "reports/x")])
        self.assertEqual(self.limiter._failures, {})
        self.assertEqual(self.limiter.metrics()["totalFailures"], 0)

    def test_windows_kept_for_metrics_lookback(self):
        self.limiter.check("a", "reports/x")
        self.clock.advance(120)
        self.limiter.check("b", "reports/y")
        self.assertIn(("a", "reports/x"), self.limiter._windows)
        self.assertEqual(self.limiter.metrics()["totalRequests"], 2)

    def test_repeat_failures_drop_stale_stamps(self):
        self.limiter.record_failure("bad", "reports/x")
        self.clock.advance(60 * 60)
        self.limiter.record_failure("bad", "reports/x")
        self.assertEqual(self.limiter._failures[("bad", "reports/x")], [self.clock.now])

    def test_metrics(self):
        self.limiter.check("a", "reports/x")
        self.limiter.check("a", "reports/y")
        self.limiter.check("b", "reports/x")
        self.limiter.record_failure("a", "reports/x")
        self.limiter.record_failure("b", "reports/x")
        self.limiter.record_failure("b", "reports/y")
        self.assertEqual(
            self.limiter.metrics(),
            {
                "totalRequests": 3,
                "totalFailures": 3,
                "activeIdentifiers": 2,
                "topFailureEndpoints": [
                    {"endpoint": "reports/x", "failures": 2},
                    {"endpoint": "reports/y", "failures": 1},
                ],
            },
        )


if __name__ == "__main__":
    unittest.main()
