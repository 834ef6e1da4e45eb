"""Tests for backend/carelink/config.py - Settings validation."""
from __future__ import annotations

import os
import warnings
from unittest.mock import patch

import pytest


class TestKeySourceValidation:
    """Verify that a key source is configured before payloads can be stored."""

    def test_no_key_source_raises(self):
        from carelink.config import Settings

        env = {"KEY_SERVICE_URL": "", "DEV_ENCRYPTION_KEY": "", "ALLOW_LOCAL_ENCRYPTION": "0"}
        with patch.dict(os.environ, env, clear=False):
            with pytest.raises(ValueError, match="Neither KEY_SERVICE_URL nor DEV_ENCRYPTION_KEY"):
                Settings(_env_file=None)

    def test_whitespace_dev_key_raises(self):
        from carelink.config import Settings

        env = {"KEY_SERVICE_URL": "", "DEV_ENCRYPTION_KEY": "   ", "ALLOW_LOCAL_ENCRYPTION": "1"}
        with patch.dict(os.environ, env, clear=False):
            with pytest.raises(ValueError, match="Neither KEY_SERVICE_URL nor DEV_ENCRYPTION_KEY"):
                Settings(_env_file=None)

    def test_dev_key_requires_escape_hatch(self):
        """DEV_ENCRYPTION_KEY alone is refused unless local mode is allowed."""
        from carelink.config import Settings

        env = {"KEY_SERVICE_URL": "", "DEV_ENCRYPTION_KEY": "dev-secret", "ALLOW_LOCAL_ENCRYPTION": "0"}
        with patch.dict(os.environ, env, clear=False):
            with pytest.raises(ValueError, match="ALLOW_LOCAL_ENCRYPTION is not enabled"):
                Settings(_env_file=None)

    def test_allow_local_encryption_warns(self):
        from carelink.config import Settings

        env = {"KEY_SERVICE_URL": "", "DEV_ENCRYPTION_KEY": "dev-secret", "ALLOW_LOCAL_ENCRYPTION": "1"}
        with patch.dict(os.environ, env, clear=False):
            with warnings.catch_warnings(record=True) as w:
                warnings.simplefilter("always")
                s = Settings(_env_file=None)
        assert s.dev_encryption_key == "dev-secret"
        assert s.allow_local_encryption is True
        assert any("Do not use this in production" in str(warning.message) for warning in w)

    def test_key_service_url_passes_silently(self):
        from carelink.config import Settings

        env = {
            "KEY_SERVICE_URL": "https://kms.internal/ ",
            "DEV_ENCRYPTION_KEY": "",
            "ALLOW_LOCAL_ENCRYPTION": "0",
        }
        with patch.dict(os.environ, env, clear=False):
            with warnings.catch_warnings(record=True) as w:
                warnings.simplefilter("always")
                s = Settings(_env_file=None)
        assert s.key_service_url == "https://kms.internal"
        assert not any("DEV_ENCRYPTION_KEY" in str(warning.message) for warning in w)


class TestDefaults:
    def test_security_defaults(self):
        from carelink.config import Settings

        with patch.dict(os.environ, {"ADMIN_COOKIE_SECURE": "1"}, clear=False):
            s = Settings(_env_file=None)
        assert s.token_expiry_hours == 24
        assert s.code_expiry_minutes == 10
        assert s.code_max_attempts == 5
        assert s.provider_session_ttl_minutes == 30
        assert s.provider_idle_timeout_minutes == 15
        assert s.admin_session_ttl_hours == 8
        assert s.admin_idle_timeout_minutes == 30
        assert s.login_max_attempts == 5
        assert s.login_block_minutes == 30
        assert s.referral_max_candidates == 5
        assert s.referral_expiry_hours_normal == 168
        assert s.referral_expiry_hours_urgent == 48
        assert s.admin_cookie_secure is True


class TestKeyServiceWiring:
    def test_remote_first_then_local_fallback(self):
        from carelink.config import Settings
        from carelink.main import build_key_services
        from carelink.models.envelope import KeyMode

        env = {"KEY_SERVICE_URL": "https://kms.internal", "DEV_ENCRYPTION_KEY": "dev-secret"}
        with patch.dict(os.environ, env, clear=False):
            services = build_key_services(Settings(_env_file=None))
        try:
            assert [svc.mode for svc in services] == [KeyMode.KMS, KeyMode.LOCAL]
        finally:
            for svc in services:
                svc.close()

    def test_local_only(self):
        from carelink.config import Settings
        from carelink.main import build_key_services
        from carelink.models.envelope import KeyMode

        env = {"KEY_SERVICE_URL": "", "DEV_ENCRYPTION_KEY": "dev-secret", "ALLOW_LOCAL_ENCRYPTION": "1"}
        with patch.dict(os.environ, env, clear=False):
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                services = build_key_services(Settings(_env_file=None))
        assert [svc.mode for svc in services] == [KeyMode.LOCAL]
