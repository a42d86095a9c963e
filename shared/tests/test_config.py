"""
Tests for shared configuration.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from shared.config import get_config
from shared.test_helpers import get_mock_config


class TestServiceConfig:
    """Test cases for ServiceConfig."""

    def test_defaults(self):
        """Test defaults when no environment is set."""
        with patch.dict(os.environ, {}, clear=True):
            config = get_config("events", 8010)

        assert config.service_name == "events"
        assert config.event_store_backend == "memory"
        assert config.delivery_max_attempts == 5
        assert config.jwks_cache_ttl == 3600.0
        assert config.token_algorithms == ["RS256"]
        assert config.admin_api_key is None
        assert list(config.maintenance_services) == ["core", "identity", "job", "resume"]

    def test_environment_overrides(self):
        """Test BACKBONE_ prefixed variables are read."""
        with patch.dict(os.environ, get_mock_config(), clear=True):
            config = get_config("admin", 8020)

        assert config.env == "test"
        assert config.delivery_base_delay == 0
        assert config.delivery_jitter is False
        assert config.admin_api_key.get_secret_value() == "test-admin-key"
        assert "test-admin-key" not in repr(config)

    def test_list_and_mapping_from_environment(self):
        """Test structured settings are parsed from JSON values."""
        env = {
            "BACKBONE_ALLOWED_ISSUERS": '["https://clerk.example.com"]',
            "BACKBONE_MAINTENANCE_SERVICES": '{"job": "http://job:4003", "core": "http://core:4001"}',
        }
        with patch.dict(os.environ, env, clear=True):
            config = get_config("auth", 8010)

        assert config.allowed_issuers == ["https://clerk.example.com"]
        assert list(config.maintenance_services) == ["job", "core"]

    def test_invalid_ttl_rejected(self):
        """Test a non-positive cache TTL is a configuration error."""
        with patch.dict(os.environ, {"BACKBONE_JWKS_CACHE_TTL": "0"}, clear=True):
            with pytest.raises(ValidationError):
                get_config("auth", 8010)
