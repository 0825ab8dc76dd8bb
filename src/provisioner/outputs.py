"""Named secrets and variables handed to the deployment templates.

The deployment consumes these names verbatim (GitHub environment secrets
and variables feeding the Key Vault and workload manifests), so the keys
are part of the external contract.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pydantic import BaseModel, Field

from .config import Config
from .metadata import CertificatePayload, build_metadata_url

logger = logging.getLogger(__name__)

SECRET_NAMES: tuple[str, ...] = (
    "AZURE_CLIENT_ID",
    "AZURE_TENANT_ID",
    "AZURE_SUBSCRIPTION_ID",
    "SAML_CERT",
    "OBJECT_STORAGE_ACCESS_KEY",
    "OBJECT_STORAGE_SECRET_KEY",
    "MESSAGE_BROKER_USERNAME",
    "MESSAGE_BROKER_PASSWORD",
)

VARIABLE_NAMES: tuple[str, ...] = (
    "APP_NAME",
    "APP_VERSION",
    "AZURE_GROUP_OBJECT_ID",
    "SAML_CALLBACK_URL",
    "SAML_ENTRY_POINT",
    "SAML_ISSUER",
    "SAML_METADATA_URL",
    "AKS_CLUSTER_NAME",
    "ACR_NAME",
    "AZURE_RESOURCE_GROUP",
    "AZURE_LOCATION",
)


class DeploymentOutputs(BaseModel):
    """Flat secrets and variables maps; absent values are listed as warnings."""

    secrets: dict[str, str] = Field(default_factory=dict)
    variables: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.warnings

    def redacted(self) -> dict[str, object]:
        """Serializable form with secret values masked, for logs and reports."""
        return {
            "secrets": {name: "***" for name in self.secrets},
            "variables": dict(self.variables),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class ProvisionedIdentifiers:
    """Identifiers produced by the provisioning run."""

    tenant_id: str
    deployment_client_id: str | None = None
    application_client_id: str | None = None
    group_object_id: str | None = None


def saml_entry_point(issuer_host: str, tenant_id: str) -> str:
    return f"https://{issuer_host}/{tenant_id}/saml2"


def assemble_outputs(
    config: Config,
    identifiers: ProvisionedIdentifiers,
    certificate: CertificatePayload | None = None,
) -> DeploymentOutputs:
    """Render the produced configuration surface.

    ``AZURE_CLIENT_ID`` is the deployment identity (used by CI through its
    federated credential); the SAML values refer to the enterprise
    application.
    """
    tenant_id = identifiers.tenant_id
    app_client_id = identifiers.application_client_id
    credentials = config.credentials

    secrets: dict[str, str | None] = {
        "AZURE_CLIENT_ID": identifiers.deployment_client_id,
        "AZURE_TENANT_ID": tenant_id,
        "AZURE_SUBSCRIPTION_ID": config.subscription_id,
        "SAML_CERT": certificate.base64_single if certificate else None,
        "OBJECT_STORAGE_ACCESS_KEY": credentials.object_storage_access_key,
        "OBJECT_STORAGE_SECRET_KEY": credentials.object_storage_secret_key,
        "MESSAGE_BROKER_USERNAME": credentials.message_broker_username,
        "MESSAGE_BROKER_PASSWORD": credentials.message_broker_password,
    }
    variables: dict[str, str | None] = {
        "APP_NAME": config.app_name,
        "APP_VERSION": config.app_version,
        "AZURE_GROUP_OBJECT_ID": identifiers.group_object_id,
        "SAML_CALLBACK_URL": config.callback_url,
        "SAML_ENTRY_POINT": saml_entry_point(config.issuer_host, tenant_id),
        "SAML_ISSUER": f"api://{app_client_id}" if app_client_id else None,
        "SAML_METADATA_URL": (
            build_metadata_url(config.issuer_host, tenant_id, app_client_id)
            if app_client_id
            else None
        ),
        "AKS_CLUSTER_NAME": config.aks_cluster_name,
        "ACR_NAME": config.acr_name,
        "AZURE_RESOURCE_GROUP": config.resource_group_name,
        "AZURE_LOCATION": config.location,
    }

    warnings = [f"Secret {name} has no value" for name, value in secrets.items() if not value]
    warnings += [f"Variable {name} has no value" for name, value in variables.items() if not value]
    for warning in warnings:
        logger.warning(warning)

    return DeploymentOutputs(
        secrets={name: value for name, value in secrets.items() if value},
        variables={name: value for name, value in variables.items() if value},
        warnings=warnings,
    )
