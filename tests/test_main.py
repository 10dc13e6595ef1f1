"""
Startup helper tests.
"""
from unittest.mock import patch

from eventdispatch.main import init_sentry


class TestInitSentry:

    def test_skipped_without_dsn(self, settings):
        with patch("sentry_sdk.init") as sentry_init:
            assert init_sentry(settings) is False
        sentry_init.assert_not_called()

    def test_initialized_with_dsn(self, settings):
        settings = settings.model_copy(update={"sentry_dsn": "https://key@sentry.example.com/1", "app_env": "production"})
        with patch("sentry_sdk.init") as sentry_init:
            assert init_sentry(settings) is True
        assert sentry_init.call_args.kwargs["environment"] == "production"

    def test_init_failure_is_not_fatal(self, settings):
        settings = settings.model_copy(update={"sentry_dsn": "https://key@sentry.example.com/1"})
        with patch("sentry_sdk.init", side_effect=RuntimeError("bad dsn")):
            assert init_sentry(settings) is False
