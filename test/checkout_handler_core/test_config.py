"""
FILE: test/checkout_handler_core/test_config.py
================================================
"""

from datetime import timedelta

import pytest

from checkout_handler.config import CheckoutSettings, DEFAULT_LEASE_MINUTES
from checkout_handler.exceptions import BaseAppException, ErrorCode

ENV_NAMES = (
    "DATABASE_URL",
    "CHECKOUT_LEASE_MINUTES",
    "CHECKOUT_MAX_LEASE_MINUTES",
    "CHECKOUT_RESUME_WINDOW_MINUTES",
    "CHECKOUT_THROTTLE_CLIENT_LIMIT",
    "CHECKOUT_THROTTLE_CART_LIMIT",
    "CHECKOUT_SWEEPER_ENABLED",
    "CHECKOUT_PIPELINE_KEY",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


# ============================================================================
# TEST: from_env
# ============================================================================

class TestFromEnv:
    """Test reading settings from the environment"""

    def test_defaults(self, clean_env):
        """Unset variables use the defaults"""
        settings = CheckoutSettings.from_env()

        assert settings.lease_minutes == DEFAULT_LEASE_MINUTES
        assert settings.sweeper_enabled is True
        assert settings.pipeline_key is None

    def test_overrides(self, clean_env):
        """Variables override the defaults"""
        clean_env.setenv("CHECKOUT_LEASE_MINUTES", "5")
        clean_env.setenv("CHECKOUT_RESUME_WINDOW_MINUTES", "10")
        clean_env.setenv("CHECKOUT_THROTTLE_CART_LIMIT", "2")
        clean_env.setenv("CHECKOUT_SWEEPER_ENABLED", "false")
        clean_env.setenv("CHECKOUT_PIPELINE_KEY", "secret")

        settings = CheckoutSettings.from_env()

        assert settings.lease_minutes == 5
        assert settings.resume_window_minutes == 10
        assert settings.cart_attempt_limit == 2
        assert settings.sweeper_enabled is False
        assert settings.pipeline_key == "secret"

    def test_empty_value_uses_default(self, clean_env):
        """Empty string counts as unset"""
        clean_env.setenv("CHECKOUT_LEASE_MINUTES", "")
        assert CheckoutSettings.from_env().lease_minutes == DEFAULT_LEASE_MINUTES

    def test_non_integer_rejected(self, clean_env):
        """Non-numeric values are a configuration error"""
        clean_env.setenv("CHECKOUT_LEASE_MINUTES", "fifteen")

        with pytest.raises(BaseAppException) as exc_info:
            CheckoutSettings.from_env()

        assert exc_info.value.error_code == ErrorCode.CONFIGURATION_ERROR
        assert exc_info.value.details["setting"] == "CHECKOUT_LEASE_MINUTES"


# ============================================================================
# TEST: validation
# ============================================================================

class TestSettingsValidation:
    """Test settings invariants"""

    def test_lease_must_be_positive(self):
        """Lease below one minute is rejected"""
        with pytest.raises(BaseAppException):
            CheckoutSettings(lease_minutes=0)

    def test_max_lease_not_below_lease(self):
        """Maximum lease must cover the default lease"""
        with pytest.raises(BaseAppException):
            CheckoutSettings(lease_minutes=30, max_lease_minutes=20)

    def test_durations(self):
        """Minute settings are exposed as timedeltas"""
        settings = CheckoutSettings(lease_minutes=15, max_lease_minutes=60, resume_window_minutes=30)

        assert settings.lease_duration == timedelta(minutes=15)
        assert settings.max_lease_duration == timedelta(minutes=60)
        assert settings.resume_window == timedelta(minutes=30)

    def test_with_overrides(self):
        """with_overrides returns a new validated copy"""
        settings = CheckoutSettings()
        changed = settings.with_overrides(cart_attempt_limit=1)

        assert changed.cart_attempt_limit == 1
        assert settings.cart_attempt_limit != 1
        with pytest.raises(BaseAppException):
            settings.with_overrides(lease_minutes=0)
