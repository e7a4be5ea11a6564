"""Tests for configuration loading."""

import os
from unittest.mock import patch

import pytest

from machine_operator.config import (
    DEFAULT_PATCH_VERIFY_ATTEMPTS,
    DEFAULT_RESYNC_INTERVAL_SECONDS,
    Config,
    ConfigurationError,
    StoreBackend,
)


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self) -> None:
        """Test that the defaults form a valid configuration."""
        config = Config()

        assert config.watch_namespace == ""
        assert config.provider == "azure"
        assert config.store_backend == StoreBackend.KUBERNETES
        assert config.resync_interval_seconds == DEFAULT_RESYNC_INTERVAL_SECONDS
        assert config.patch_verify_attempts == DEFAULT_PATCH_VERIFY_ATTEMPTS

    def test_invalid_namespace(self) -> None:
        """Test that a malformed namespace raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(watch_namespace="Not_A_Namespace")

        assert "WATCH_NAMESPACE" in str(exc_info.value)

    def test_invalid_client_id(self) -> None:
        """Test that a client ID that is not a GUID raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(azure_client_id="not-a-guid")

        assert "AZURE_CLIENT_ID" in str(exc_info.value)

    def test_upper_case_client_id_accepted(self) -> None:
        """Test that GUIDs are matched case-insensitively."""
        config = Config(azure_client_id="12345678-ABCD-1234-1234-123456789ABC")

        assert config.azure_client_id == "12345678-ABCD-1234-1234-123456789ABC"

    def test_invalid_resync_interval(self) -> None:
        """Test that out-of-range resync interval raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(resync_interval_seconds=10)  # Too low

        assert "RESYNC_INTERVAL" in str(exc_info.value)

    def test_backoff_max_below_base(self) -> None:
        """Test that the backoff cap must not be lower than its base."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(requeue_backoff_base_seconds=10, requeue_backoff_max_seconds=1)

        assert "REQUEUE_BACKOFF_MAX" in str(exc_info.value)

    def test_errors_are_collected(self) -> None:
        """Test that every invalid field is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(max_concurrent_reconciles=0, patch_verify_attempts=-1)

        assert "MAX_CONCURRENT_RECONCILES" in str(exc_info.value)
        assert "PATCH_VERIFY_ATTEMPTS" in str(exc_info.value)

    def test_invalid_wait_threads(self) -> None:
        """Test that the wait executor needs at least one thread."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(max_concurrent_waits=0)

        assert "MAX_CONCURRENT_WAITS" in str(exc_info.value)

    def test_verification_can_be_disabled(self) -> None:
        """Test that zero verification attempts is valid."""
        assert Config(patch_verify_attempts=0).patch_verify_attempts == 0

    def test_from_env(self) -> None:
        """Test loading configuration from environment."""
        env = {
            "WATCH_NAMESPACE": "capi-system",
            "AZURE_CLIENT_ID": "12345678-1234-1234-1234-123456789012",
            "STORE_BACKEND": "memory",
            "MAX_CONCURRENT_RECONCILES": "4",
            "MAX_CONCURRENT_WAITS": "20",
            "PATCH_VERIFY_INTERVAL": "0.5",
            "ENABLE_AUDIT_LOGGING": "false",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.watch_namespace == "capi-system"
        assert config.azure_client_id == "12345678-1234-1234-1234-123456789012"
        assert config.store_backend == StoreBackend.MEMORY
        assert config.max_concurrent_reconciles == 4
        assert config.max_concurrent_waits == 20
        assert config.patch_verify_interval_seconds == 0.5
        assert config.enable_audit_logging is False

    def test_from_env_empty_client_id(self) -> None:
        """Test that an empty AZURE_CLIENT_ID means system-assigned."""
        with patch.dict(os.environ, {"AZURE_CLIENT_ID": ""}, clear=True):
            config = Config.from_env()

        assert config.azure_client_id is None

    def test_from_env_invalid_integer(self) -> None:
        """Test that a non-numeric integer setting raises error."""
        with patch.dict(os.environ, {"RESYNC_INTERVAL": "soon"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "RESYNC_INTERVAL" in str(exc_info.value)

    def test_from_env_invalid_backend(self) -> None:
        """Test that an unknown store backend raises error."""
        with patch.dict(os.environ, {"STORE_BACKEND": "etcd"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "STORE_BACKEND" in str(exc_info.value)
