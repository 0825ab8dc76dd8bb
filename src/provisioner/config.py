"""Configuration management with validation.

All inputs are validated at load time so that a bad environment fails
before the first Azure call is made.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_APP_NAME = "opencti"
DEFAULT_APP_VERSION = "6.4.0"
DEFAULT_ISSUER_HOST = "login.microsoftonline.com"

DEFAULT_METADATA_TIMEOUT_SECONDS = 30
MAX_METADATA_TIMEOUT_SECONDS = 300

# Settle periods for Entra ID replication
DEFAULT_PRINCIPAL_SETTLE_SECONDS = 30
DEFAULT_APPLICATION_SETTLE_SECONDS = 20
DEFAULT_CERTIFICATE_SETTLE_SECONDS = 10
MAX_SETTLE_SECONDS = 600

MAX_GRANT_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 5

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
SAML_CALLBACK_PATH = "/auth/saml/callback"

# Input validation patterns
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]+$"
VALID_APP_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,62}[a-z0-9]$"


@dataclass(frozen=True)
class SettleConfig:
    """Propagation delays applied after mutating Entra ID calls.

    Entra ID offers no synchronous "ready" signal, so dependent calls wait
    a fixed period after principal creation, template instantiation and
    certificate attachment.
    """

    principal_seconds: float = DEFAULT_PRINCIPAL_SETTLE_SECONDS
    application_seconds: float = DEFAULT_APPLICATION_SETTLE_SECONDS
    certificate_seconds: float = DEFAULT_CERTIFICATE_SETTLE_SECONDS
    max_grant_retries: int = MAX_GRANT_RETRIES
    backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS


@dataclass(frozen=True)
class DeploymentCredentials:
    """Credentials supplied by the deployment and passed through verbatim."""

    object_storage_access_key: str | None = None
    object_storage_secret_key: str | None = None
    message_broker_username: str | None = None
    message_broker_password: str | None = None

    def __repr__(self) -> str:
        # Never render secret values in logs or tracebacks
        present = [name for name, value in self.__dict__.items() if value]
        return f"DeploymentCredentials(present={present})"


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    subscription_id: str
    location: str
    resource_group_name: str
    base_url: str

    tenant_id: str | None = None
    # User-assigned managed identity to run as instead of the Azure CLI session
    managed_identity_client_id: str | None = None

    # Application identity
    app_name: str = DEFAULT_APP_NAME
    app_version: str = DEFAULT_APP_VERSION
    notification_email: str | None = None

    # Names handed to the deployment templates
    aks_cluster_name: str | None = None
    acr_name: str | None = None

    spec_file: Path | None = None

    # Federation metadata
    issuer_host: str = DEFAULT_ISSUER_HOST
    metadata_timeout_seconds: int = DEFAULT_METADATA_TIMEOUT_SECONDS

    settle: SettleConfig = field(default_factory=SettleConfig)
    credentials: DeploymentCredentials = field(default_factory=DeploymentCredentials)

    enable_json_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_GUID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.tenant_id and not re.match(VALID_GUID_PATTERN, self.tenant_id.lower()):
            errors.append(f"AZURE_TENANT_ID must be a valid GUID: {self.tenant_id}")

        if self.managed_identity_client_id and not re.match(
            VALID_GUID_PATTERN, self.managed_identity_client_id.lower()
        ):
            errors.append(
                f"MANAGED_IDENTITY_CLIENT_ID must be a valid GUID: {self.managed_identity_client_id}"
            )

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.resource_group_name:
            errors.append("RESOURCE_GROUP_NAME is required")
        elif len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )
        elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group_name):
            errors.append(f"RESOURCE_GROUP_NAME contains invalid characters: {self.resource_group_name}")

        if not self.base_url:
            errors.append("OPENCTI_BASE_URL is required")
        elif not self.base_url.startswith("https://"):
            errors.append(f"OPENCTI_BASE_URL must use https: {self.base_url}")

        if not re.match(VALID_APP_NAME_PATTERN, self.app_name):
            errors.append(f"APP_NAME must match pattern {VALID_APP_NAME_PATTERN}: {self.app_name}")

        if self.notification_email and "@" not in self.notification_email:
            errors.append(f"NOTIFICATION_EMAIL is not an email address: {self.notification_email}")

        if not (1 <= self.metadata_timeout_seconds <= MAX_METADATA_TIMEOUT_SECONDS):
            errors.append(
                f"METADATA_TIMEOUT must be between 1 and {MAX_METADATA_TIMEOUT_SECONDS} seconds"
            )

        for name, value in (
            ("PRINCIPAL_SETTLE_SECONDS", self.settle.principal_seconds),
            ("APPLICATION_SETTLE_SECONDS", self.settle.application_seconds),
            ("CERTIFICATE_SETTLE_SECONDS", self.settle.certificate_seconds),
        ):
            if not (0 <= value <= MAX_SETTLE_SECONDS):
                errors.append(f"{name} must be between 0 and {MAX_SETTLE_SECONDS} seconds")

        if self.settle.max_grant_retries < 0:
            errors.append("MAX_GRANT_RETRIES must not be negative")

        if self.spec_file is not None and not self.spec_file.exists():
            errors.append(f"Spec file does not exist: {self.spec_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def callback_url(self) -> str:
        """SAML assertion consumer URL of the OpenCTI platform."""
        return self.base_url.rstrip("/") + SAML_CALLBACK_PATH

    @property
    def resource_group_scope(self) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group_name}"

    @property
    def subscription_scope(self) -> str:
        return f"/subscriptions/{self.subscription_id}"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_TENANT_ID: Expected Entra ID tenant (optional, checked against session)
            MANAGED_IDENTITY_CLIENT_ID: Run as this user-assigned managed identity (CI)
            AZURE_LOCATION: Region for the resource group and identity
            RESOURCE_GROUP_NAME: Resource group holding the deployment
            OPENCTI_BASE_URL: Public https URL of the OpenCTI platform
            APP_NAME: Application name (default: opencti)
            APP_VERSION: Application version handed to the templates
            NOTIFICATION_EMAIL: Certificate expiry notification address
            AKS_CLUSTER_NAME: Cluster name handed to the templates
            ACR_NAME: Container registry name handed to the templates
            SPEC_FILE: Optional YAML provisioning spec
            METADATA_ISSUER_HOST: Federation metadata host (default: login.microsoftonline.com)
            METADATA_TIMEOUT: Metadata fetch timeout in seconds (default: 30)
            ENABLE_JSON_LOGGING: Emit JSON logs (default: true)

        Settle Variables:
            PRINCIPAL_SETTLE_SECONDS: Wait after creating a principal (default: 30)
            APPLICATION_SETTLE_SECONDS: Wait after template instantiation (default: 20)
            CERTIFICATE_SETTLE_SECONDS: Wait after certificate attachment (default: 10)
            MAX_GRANT_RETRIES: Role grant retries on principal-not-found (default: 3)

        Deployment Credential Variables (passed through as secrets):
            OBJECT_STORAGE_ACCESS_KEY, OBJECT_STORAGE_SECRET_KEY,
            MESSAGE_BROKER_USERNAME, MESSAGE_BROKER_PASSWORD
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        spec_file = os.environ.get("SPEC_FILE")

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            tenant_id=os.environ.get("AZURE_TENANT_ID") or None,
            managed_identity_client_id=os.environ.get("MANAGED_IDENTITY_CLIENT_ID") or None,
            location=os.environ.get("AZURE_LOCATION", ""),
            resource_group_name=os.environ.get("RESOURCE_GROUP_NAME", ""),
            base_url=os.environ.get("OPENCTI_BASE_URL", ""),
            app_name=os.environ.get("APP_NAME", DEFAULT_APP_NAME),
            app_version=os.environ.get("APP_VERSION", DEFAULT_APP_VERSION),
            notification_email=os.environ.get("NOTIFICATION_EMAIL") or None,
            aks_cluster_name=os.environ.get("AKS_CLUSTER_NAME") or None,
            acr_name=os.environ.get("ACR_NAME") or None,
            spec_file=Path(spec_file) if spec_file else None,
            issuer_host=os.environ.get("METADATA_ISSUER_HOST", DEFAULT_ISSUER_HOST),
            metadata_timeout_seconds=get_int("METADATA_TIMEOUT", DEFAULT_METADATA_TIMEOUT_SECONDS),
            settle=SettleConfig(
                principal_seconds=get_float(
                    "PRINCIPAL_SETTLE_SECONDS", DEFAULT_PRINCIPAL_SETTLE_SECONDS
                ),
                application_seconds=get_float(
                    "APPLICATION_SETTLE_SECONDS", DEFAULT_APPLICATION_SETTLE_SECONDS
                ),
                certificate_seconds=get_float(
                    "CERTIFICATE_SETTLE_SECONDS", DEFAULT_CERTIFICATE_SETTLE_SECONDS
                ),
                max_grant_retries=get_int("MAX_GRANT_RETRIES", MAX_GRANT_RETRIES),
            ),
            credentials=DeploymentCredentials(
                object_storage_access_key=os.environ.get("OBJECT_STORAGE_ACCESS_KEY") or None,
                object_storage_secret_key=os.environ.get("OBJECT_STORAGE_SECRET_KEY") or None,
                message_broker_username=os.environ.get("MESSAGE_BROKER_USERNAME") or None,
                message_broker_password=os.environ.get("MESSAGE_BROKER_PASSWORD") or None,
            ),
            enable_json_logging=get_bool("ENABLE_JSON_LOGGING", True),
        )
