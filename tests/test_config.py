import os
import unittest
from unittest import mock

from shared.config import get_auth_session_ttl_seconds, get_rate_limit_settings, get_report_settings


class ConfigTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual(get_report_settings(), {"default_period_days": 30, "territory_period_days": 90})
            self.assertEqual(
                get_rate_limit_settings(),
                {"window_seconds": 900, "max_requests": 100, "max_login_attempts": 5, "max_failures": 10},
            )
            self.assertEqual(get_auth_session_ttl_seconds(), 12 * 60 * 60)

    def test_bad_and_out_of_range_values(self):
        env = {"RATE_LIMIT_MAX_REQUESTS": "lots", "REPORTS_DEFAULT_PERIOD_DAYS": "-4", "AUTH_SESSION_TTL_SECONDS": "60"}
        with mock.patch.dict(os.environ, env, clear=True):
            self.assertEqual(get_rate_limit_settings()["max_requests"], 100)
            self.assertEqual(get_report_settings()["default_period_days"], 1)
            self.assertEqual(get_auth_session_ttl_seconds(), 15 * 60)
        with mock.patch.dict(os.environ, {"AUTH_SESSION_TTL_SECONDS": "99999999"}, clear=True):
            self.assertEqual(get_auth_session_ttl_seconds(), 7 * 24 * 60 * 60)


if __name__ == "__main__":
    unittest.main()
