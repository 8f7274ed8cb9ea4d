from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from flask import Flask

from marketroute.utils.observability import _before_send_scrub, init_sentry


class SentryOptionalInitTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            with patch("sentry_sdk.init") as sentry_init:
                init_sentry(app)
        sentry_init.assert_not_called()

    def test_sentry_init_uses_dsn_when_present(self):
        app = Flask(__name__)
        env = {"SENTRY_DSN": "https://key@example.invalid/1", "SENTRY_TRACES_SAMPLE_RATE": "7"}
        with patch.dict(os.environ, env, clear=False):
            with patch("sentry_sdk.init") as sentry_init:
                init_sentry(app)
        kwargs = sentry_init.call_args.kwargs
        self.assertEqual(kwargs["dsn"], env["SENTRY_DSN"])
        self.assertEqual(kwargs["traces_sample_rate"], 1.0)
        self.assertFalse(kwargs["send_default_pii"])

    def test_scrubs_identity_headers(self):
        event = {"request": {"headers": {"X-Actor-Id": "buyer-1", "Authorization": "Bearer x", "Accept": "*/*"}}}
        scrubbed = _before_send_scrub(event, None)
        headers = scrubbed["request"]["headers"]
        self.assertEqual(headers["X-Actor-Id"], "[REDACTED]")
        self.assertEqual(headers["Authorization"], "[REDACTED]")
        self.assertEqual(headers["Accept"], "*/*")


if __name__ == "__main__":
    unittest.main()
