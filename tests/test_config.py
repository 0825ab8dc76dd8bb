"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from provisioner.config import (
    DEFAULT_ISSUER_HOST,
    Config,
    ConfigurationError,
    DeploymentCredentials,
    SettleConfig,
)

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"


def _config(**overrides) -> Config:
    values = {
        "subscription_id": SUBSCRIPTION_ID,
        "location": "westeurope",
        "resource_group_name": "rg-opencti-001",
        "base_url": "https://cti.example.com",
    }
    values.update(overrides)
    return Config(**values)


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        """Test creating a valid configuration with defaults."""
        config = _config()

        assert config.app_name == "opencti"
        assert config.tenant_id is None
        assert config.issuer_host == DEFAULT_ISSUER_HOST
        assert config.settle.principal_seconds == 30
        assert config.enable_json_logging is True

    def test_missing_subscription(self) -> None:
        """Test that a missing subscription raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(subscription_id="")

        assert "AZURE_SUBSCRIPTION_ID" in str(exc_info.value)

    def test_invalid_subscription_guid(self) -> None:
        """Test that a malformed subscription ID raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(subscription_id="not-a-guid")

        assert "valid GUID" in str(exc_info.value)

    def test_invalid_tenant_guid(self) -> None:
        """Test that a malformed tenant ID raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(tenant_id="contoso.onmicrosoft.com")

        assert "AZURE_TENANT_ID" in str(exc_info.value)

    def test_invalid_managed_identity_client_id(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            _config(managed_identity_client_id="my-identity")

        assert "MANAGED_IDENTITY_CLIENT_ID" in str(exc_info.value)

    def test_base_url_must_be_https(self) -> None:
        """Test that a plain http base URL is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(base_url="http://cti.example.com")

        assert "OPENCTI_BASE_URL" in str(exc_info.value)

    def test_resource_group_name_too_long(self) -> None:
        """Test that resource group names over 90 characters are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(resource_group_name="r" * 91)

        assert "maximum length" in str(exc_info.value)

    def test_invalid_notification_email(self) -> None:
        """Test that a notification address without @ is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(notification_email="secops")

        assert "NOTIFICATION_EMAIL" in str(exc_info.value)

    def test_invalid_settle_period(self) -> None:
        """Test that out-of-range settle periods raise error."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(settle=SettleConfig(principal_seconds=-1))

        assert "PRINCIPAL_SETTLE_SECONDS" in str(exc_info.value)

    def test_collects_all_errors(self) -> None:
        """Test that every validation error is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(subscription_id="", location="", resource_group_name="", base_url="")

        message = str(exc_info.value)
        assert "AZURE_SUBSCRIPTION_ID" in message
        assert "AZURE_LOCATION" in message
        assert "RESOURCE_GROUP_NAME" in message
        assert "OPENCTI_BASE_URL" in message

    def test_missing_spec_file(self, tmp_path: Path) -> None:
        """Test that a non-existent spec file raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(spec_file=tmp_path / "missing.yaml")

        assert "Spec file does not exist" in str(exc_info.value)

    def test_callback_url(self) -> None:
        """Test that the callback URL is derived from the base URL."""
        config = _config(base_url="https://cti.example.com/")

        assert config.callback_url == "https://cti.example.com/auth/saml/callback"

    def test_scopes(self) -> None:
        """Test resource group and subscription scopes."""
        config = _config()

        assert config.subscription_scope == f"/subscriptions/{SUBSCRIPTION_ID}"
        assert config.resource_group_scope == (
            f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-opencti-001"
        )


class TestConfigFromEnv:
    """Tests for loading configuration from environment variables."""

    def test_from_env(self) -> None:
        """Test loading configuration from environment."""
        env = {
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "AZURE_TENANT_ID": "11111111-2222-3333-4444-555555555555",
            "AZURE_LOCATION": "northeurope",
            "RESOURCE_GROUP_NAME": "rg-opencti-002",
            "OPENCTI_BASE_URL": "https://cti.example.com",
            "APP_NAME": "octi",
            "NOTIFICATION_EMAIL": "secops@example.com",
            "METADATA_TIMEOUT": "45",
            "PRINCIPAL_SETTLE_SECONDS": "5",
            "MAX_GRANT_RETRIES": "1",
            "ENABLE_JSON_LOGGING": "false",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.location == "northeurope"
        assert config.resource_group_name == "rg-opencti-002"
        assert config.app_name == "octi"
        assert config.metadata_timeout_seconds == 45
        assert config.settle.principal_seconds == 5.0
        assert config.settle.max_grant_retries == 1
        assert config.enable_json_logging is False

    def test_from_env_non_integer_timeout(self) -> None:
        """Test that a non-numeric timeout raises error."""
        env = {
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "AZURE_LOCATION": "westeurope",
            "RESOURCE_GROUP_NAME": "rg-opencti-001",
            "OPENCTI_BASE_URL": "https://cti.example.com",
            "METADATA_TIMEOUT": "soon",
        }

        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "METADATA_TIMEOUT" in str(exc_info.value)

    def test_from_env_deployment_credentials(self) -> None:
        """Test that deployment credentials are read but not rendered."""
        env = {
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "AZURE_LOCATION": "westeurope",
            "RESOURCE_GROUP_NAME": "rg-opencti-001",
            "OPENCTI_BASE_URL": "https://cti.example.com",
            "OBJECT_STORAGE_ACCESS_KEY": "minio-access",
            "MESSAGE_BROKER_PASSWORD": "hunter2",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.credentials.object_storage_access_key == "minio-access"
        assert config.credentials.message_broker_password == "hunter2"
        assert config.credentials.message_broker_username is None
        assert "hunter2" not in repr(config.credentials)
        assert "minio-access" not in repr(config)

    def test_from_env_managed_identity(self) -> None:
        """Test that a user-assigned managed identity can be selected for CI."""
        env = {
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "AZURE_LOCATION": "westeurope",
            "RESOURCE_GROUP_NAME": "rg-opencti-001",
            "OPENCTI_BASE_URL": "https://cti.example.com",
            "MANAGED_IDENTITY_CLIENT_ID": "AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.managed_identity_client_id == "AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE"


class TestDeploymentCredentials:
    """Tests for DeploymentCredentials."""

    def test_repr_lists_present_fields_only(self) -> None:
        """Test that repr names present fields without their values."""
        credentials = DeploymentCredentials(message_broker_username="opencti")

        assert repr(credentials) == "DeploymentCredentials(present=['message_broker_username'])"
