"""Tests for KeychainSettingsSource integration in config.py."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from config import KeychainSettingsSource, Settings
from services.credential_manager import CREDENTIAL_KEYS

# Environment variables that would interfere with Settings defaults if
# set in the test runner's shell.  We clear them for isolation.
_ENV_VARS_TO_CLEAR = {
    "DATABASE_URL",
    "ENVIRONMENT",
    "DEBUG",
    "LOG_LEVEL",
    "SYNC_WORKER_CONCURRENCY",
    "SYNC_JOB_MAX_ATTEMPTS",
    "SYNC_WORKER_ENABLED",
    "SYNC_BACKOFF_BASE_SECONDS",
    "SYNC_BACKOFF_MAX_SECONDS",
    "WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS",
    *CREDENTIAL_KEYS,
}


def _clean_env():
    """Return a dict suitable for ``os.environ`` patching that removes
    any variables the Settings class reads."""
    return {k: v for k, v in os.environ.items() if k not in _ENV_VARS_TO_CLEAR}


class TestKeychainSettingsSource:
    """Test the KeychainSettingsSource pydantic-settings source."""

    def test_keychain_value_overrides_default(self):
        with (
            patch.dict(os.environ, _clean_env(), clear=True),
            patch("config.get_credential") as mock_get,
        ):
            mock_get.side_effect = lambda key: "kc-secret" if key == "WEBHOOK_SECRET" else None
            s = Settings(_env_file=None)
            assert s.WEBHOOK_SECRET == "kc-secret"
            assert s.AGGREGATOR_API_KEY == ""

    def test_init_value_overrides_keychain(self):
        with (
            patch.dict(os.environ, _clean_env(), clear=True),
            patch("config.get_credential", return_value="kc-value"),
        ):
            s = Settings(_env_file=None, AGGREGATOR_API_KEY="init-value")
            assert s.AGGREGATOR_API_KEY == "init-value"

    def test_keychain_overrides_env_var(self):
        env = _clean_env()
        env["WEBHOOK_SECRET"] = "from-env"
        with (
            patch.dict(os.environ, env, clear=True),
            patch("config.get_credential") as mock_get,
        ):
            mock_get.side_effect = lambda key: "from-keychain" if key == "WEBHOOK_SECRET" else None
            s = Settings(_env_file=None)
            assert s.WEBHOOK_SECRET == "from-keychain"

    def test_env_fallback_when_keychain_empty(self):
        env = _clean_env()
        env["AGGREGATOR_API_KEY"] = "  from-env  "
        with (
            patch.dict(os.environ, env, clear=True),
            patch("config.get_credential", return_value=None),
        ):
            s = Settings(_env_file=None)
            assert s.AGGREGATOR_API_KEY == "from-env"  # whitespace stripped

    def test_non_credential_fields_skip_keychain(self):
        with (
            patch.dict(os.environ, _clean_env(), clear=True),
            patch("config.get_credential") as mock_get,
        ):
            mock_get.return_value = None
            Settings(_env_file=None)
            called_keys = {call.args[0] for call in mock_get.call_args_list}
            assert called_keys <= CREDENTIAL_KEYS

    def test_source_is_in_priority_chain(self):
        sources = Settings.settings_customise_sources(
            Settings,
            init_settings=object(),
            env_settings=object(),
            dotenv_settings=object(),
            file_secret_settings=object(),
        )
        source_types = [type(s) for s in sources]
        assert source_types.index(KeychainSettingsSource) == 1


class TestSettingsValidation:
    def test_defaults(self):
        with (
            patch.dict(os.environ, _clean_env(), clear=True),
            patch("config.get_credential", return_value=None),
        ):
            s = Settings(_env_file=None)
        assert s.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS == 300
        assert s.SYNC_BACKOFF_BASE_SECONDS == 15
        assert s.SYNC_BACKOFF_MAX_SECONDS == 300
        assert s.SYNC_WORKER_ENABLED is False

    def test_concurrency_must_be_positive(self):
        env = _clean_env()
        env["SYNC_WORKER_CONCURRENCY"] = "0"
        with (
            patch.dict(os.environ, env, clear=True),
            patch("config.get_credential", return_value=None),
        ):
            with pytest.raises(ValidationError, match="SYNC_WORKER_CONCURRENCY"):
                Settings(_env_file=None)
