"""Session preconditions and credential acquisition.

The provisioner runs against an operator's existing Azure CLI session (or a
managed identity in CI). It never handles service principal secrets:

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET and friends must never be present in the environment
2. Credentials come from AzureCliCredential or ManagedIdentityCredential only
3. A session is verified (ARM and Graph tokens) before any mutation
"""

from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import AzureCliCredential, ManagedIdentityCredential

from .graph import GRAPH_SCOPE

logger = logging.getLogger(__name__)

ARM_SCOPE = "https://management.azure.com/.default"

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "SECURITY VIOLATION: {env_var} is set. The provisioner authenticates with "
    "the Azure CLI session or a managed identity only. Remove the variable and "
    "run 'az login' instead."
)

PRECONDITION_REMEDIATION = (
    "Sign in with 'az login' (and 'az account set --subscription <id>') before "
    "running the provisioner."
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are present in the environment.

    This is fatal: the run must not proceed.
    """

    pass


class PreconditionError(Exception):
    """Raised when the required authenticated session is absent.

    Fatal; raised before any resource is touched.
    """

    pass


@dataclass(frozen=True)
class SessionInfo:
    """Tenant information observed from the live session."""

    tenant_id: str
    graph_tenant_id: str | None = None
    tenant_mismatch: bool = False


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))


def get_credential(
    tenant_id: str | None = None,
    managed_identity_client_id: str | None = None,
) -> TokenCredential:
    """Get a credential after verifying no secrets are in the environment.

    Args:
        tenant_id: Tenant to request tokens from (Azure CLI session).
        managed_identity_client_id: Use this user-assigned managed identity
            instead of the Azure CLI session.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if managed_identity_client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": managed_identity_client_id[:8] + "..."},
        )
        return ManagedIdentityCredential(client_id=managed_identity_client_id)

    logger.info("Using Azure CLI session")
    if tenant_id:
        return AzureCliCredential(tenant_id=tenant_id)
    return AzureCliCredential()


def token_tenant_id(token: str) -> str | None:
    """Read the ``tid`` claim from a JWT access token without validating it."""
    parts = token.split(".")
    if len(parts) < 2:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (ValueError, UnicodeDecodeError):
        return None
    tid = claims.get("tid") if isinstance(claims, dict) else None
    return tid if isinstance(tid, str) else None


def verify_session(credential: TokenCredential, expected_tenant_id: str | None = None) -> SessionInfo:
    """Verify that ARM and Graph tokens can be acquired.

    A tenant mismatch between the two tokens, or with the configured tenant,
    is logged as a warning and reported, not raised.

    Raises:
        PreconditionError: If no token can be acquired.
    """
    try:
        arm_token = credential.get_token(ARM_SCOPE)
        graph_token = credential.get_token(GRAPH_SCOPE)
    except ClientAuthenticationError as e:
        raise PreconditionError(f"Azure session unavailable: {e}. {PRECONDITION_REMEDIATION}") from e

    arm_tenant = token_tenant_id(arm_token.token)
    graph_tenant = token_tenant_id(graph_token.token)
    tenant_id = expected_tenant_id or arm_tenant or graph_tenant
    if not tenant_id:
        raise PreconditionError(
            f"Could not determine the tenant of the Azure session. {PRECONDITION_REMEDIATION}"
        )

    observed = {t for t in (arm_tenant, graph_tenant) if t}
    mismatch = any(t.lower() != tenant_id.lower() for t in observed)
    if mismatch:
        # Warning only; the run continues against the expected tenant.
        logger.warning(
            "Tenant mismatch between Azure sessions",
            extra={
                "expected_tenant_id": tenant_id,
                "arm_tenant_id": arm_tenant,
                "graph_tenant_id": graph_tenant,
            },
        )

    logger.info(
        "Azure session verified",
        extra={"security_event": "session_verified", "tenant_id": tenant_id},
    )
    return SessionInfo(tenant_id=tenant_id, graph_tenant_id=graph_tenant, tenant_mismatch=mismatch)
