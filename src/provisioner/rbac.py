"""Idempotent Azure RBAC role grants.

Grants are queried before creation and created under a deterministic
assignment name, so repeated runs never duplicate an assignment. A freshly
created principal may not be visible to ARM yet: "PrincipalNotFound" is
retried with bounded exponential backoff on top of the caller's settle
period.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any

from azure.core.exceptions import AzureError, HttpResponseError

from .config import VALID_GUID_PATTERN
from .models import ResourceKind
from .outcomes import OutcomeStatus, ReconciliationOutcome
from .settle import Settler

logger = logging.getLogger(__name__)

ROLE_ASSIGNMENT_EXISTS_CODE = "RoleAssignmentExists"
PRINCIPAL_NOT_FOUND_CODE = "PrincipalNotFound"

# Well-known Azure built-in role GUIDs, identical across all tenants
BUILTIN_ROLES: dict[str, str] = {
    "Owner": "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
    "Contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "User Access Administrator": "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9",
    "Role Based Access Control Administrator": "f58310d9-a9f6-439a-9e8d-f62e7b41a168",
    "Managed Identity Operator": "f1a07417-d97a-45cb-824c-7a7467783830",
    "Azure Kubernetes Service Cluster User Role": "4abbcc35-e782-43d8-92c5-2d3f1bd2253f",
    "Azure Kubernetes Service RBAC Cluster Admin": "b1ff04bb-8a4e-4dc4-8eb5-8693973ce19b",
    "AcrPull": "7f951dda-4ed3-4680-a7ca-43fe172d538d",
    "AcrPush": "8311e382-0749-4cb8-b61a-304f252e45ec",
    "Key Vault Administrator": "00482a5a-887f-4fb3-b363-3b7fe8e74483",
    "Key Vault Secrets User": "4633458b-17de-408a-b874-0445c86b69e6",
    "Storage Blob Data Contributor": "ba92f5b4-2d11-453d-a403-e96b0029c9fe",
}


def error_code(error: HttpResponseError) -> str | None:
    """ARM error code of an HttpResponseError, if the payload carried one."""
    if error.error is not None and error.error.code:
        return error.error.code
    return None


def assignment_name(principal_id: str, role_definition_id: str, scope: str) -> str:
    """Deterministic GUID for an assignment: same inputs, same name."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, f"{principal_id}:{role_definition_id}:{scope.lower()}"))


class RoleAssignmentGranter:
    """Ensures a principal holds a named role at a scope."""

    def __init__(
        self,
        authorization_client: Any,
        subscription_id: str,
        settler: Settler,
    ) -> None:
        """Initialize the granter.

        Args:
            authorization_client: AuthorizationManagementClient for the subscription.
            subscription_id: Subscription that owns the role definitions.
            settler: Backoff and settle policy for propagation retries.
        """
        self._client = authorization_client
        self._subscription_id = subscription_id
        self._settler = settler

    def role_definition_id(self, scope: str, role_name: str) -> str:
        """Resolve a role display name (or GUID) to its full definition ID.

        Raises:
            ValueError: If the role cannot be resolved.
        """
        guid = BUILTIN_ROLES.get(role_name)

        if guid is None:
            for definition in self._client.role_definitions.list(
                scope, filter=f"roleName eq '{role_name}'"
            ):
                if definition.role_name == role_name:
                    guid = definition.name
                    break

        if guid is None:
            if not re.match(VALID_GUID_PATTERN, role_name.lower()):
                raise ValueError(
                    f"Role '{role_name}' is not a built-in role, was not found at {scope}, "
                    f"and is not a valid GUID."
                )
            guid = role_name.lower()

        return (
            f"/subscriptions/{self._subscription_id}"
            f"/providers/Microsoft.Authorization/roleDefinitions/{guid}"
        )

    def find_assignment(
        self, principal_id: str, scope: str, role_definition_id: str
    ) -> Any | None:
        """Existing assignment of the role to the principal at exactly this scope."""
        role_guid = role_definition_id.rsplit("/", 1)[-1].lower()
        for assignment in self._client.role_assignments.list_for_scope(
            scope, filter=f"principalId eq '{principal_id}'"
        ):
            assigned_guid = (assignment.role_definition_id or "").rsplit("/", 1)[-1].lower()
            if (
                assignment.principal_id == principal_id
                and assigned_guid == role_guid
                and (assignment.scope or "").lower() == scope.lower()
            ):
                return assignment
        return None

    async def grant_role(
        self,
        principal_id: str,
        scope: str,
        role_name: str,
        *,
        principal_type: str = "ServicePrincipal",
    ) -> ReconciliationOutcome:
        """Ensure ``principal_id`` holds ``role_name`` at ``scope``.

        Safe to call repeatedly: the second call returns AlreadyExists and
        makes no create call.
        """
        from azure.mgmt.authorization.models import RoleAssignmentCreateParameters

        kind = ResourceKind.ROLE_ASSIGNMENT.value
        key = f"{principal_id}:{role_name}:{scope}"

        try:
            definition_id = self.role_definition_id(scope, role_name)
            existing = self.find_assignment(principal_id, scope, definition_id)
        except ValueError as e:
            return ReconciliationOutcome.failed(kind, key, str(e))
        except AzureError as e:
            logger.error(
                f"Failed to query role assignments for principal {principal_id}: {e}",
                extra={"principal_id": principal_id, "scope": scope, "role": role_name},
            )
            return ReconciliationOutcome.failed(kind, key, f"Azure error: {e}")

        if existing is not None:
            logger.info(f"Role '{role_name}' already assigned to {principal_id} at {scope}")
            return ReconciliationOutcome(
                kind=kind,
                natural_key=key,
                status=OutcomeStatus.ALREADY_EXISTS,
                reference=existing.id,
            )

        parameters = RoleAssignmentCreateParameters(
            role_definition_id=definition_id,
            principal_id=principal_id,
            principal_type=principal_type,
        )
        name = assignment_name(principal_id, definition_id, scope)

        attempt = 0
        while True:
            try:
                created = self._client.role_assignments.create(scope, name, parameters)
                logger.info(
                    f"Created role assignment: {role_name} for {principal_id} at {scope}",
                    extra={"principal_id": principal_id, "scope": scope, "role": role_name},
                )
                return ReconciliationOutcome(
                    kind=kind,
                    natural_key=key,
                    status=OutcomeStatus.CREATED,
                    reference=created.id,
                )
            except HttpResponseError as e:
                code = error_code(e)
                if e.status_code == 409 or code == ROLE_ASSIGNMENT_EXISTS_CODE:
                    logger.info(f"Role assignment {role_name} already exists for {principal_id}")
                    return ReconciliationOutcome(
                        kind=kind,
                        natural_key=key,
                        status=OutcomeStatus.ALREADY_EXISTS,
                        reference=f"{scope}/providers/Microsoft.Authorization/roleAssignments/{name}",
                    )
                if code == PRINCIPAL_NOT_FOUND_CODE and attempt < self._settler.max_retries:
                    logger.warning(
                        f"Principal {principal_id} not yet replicated, retrying "
                        f"({attempt + 1}/{self._settler.max_retries})"
                    )
                    await self._settler.backoff(f"principal {principal_id}", attempt)
                    attempt += 1
                    continue
                logger.error(f"Failed to create role assignment {role_name}: {e}")
                return ReconciliationOutcome.failed(
                    kind,
                    key,
                    f"Azure API error ({e.status_code}): {e.message}",
                    remediation=(
                        f"az role assignment create --assignee-object-id {principal_id} "
                        f"--assignee-principal-type {principal_type} "
                        f"--role \"{role_name}\" --scope {scope}"
                    ),
                )
            except AzureError as e:
                logger.error(f"Azure error creating role assignment {role_name}: {e}")
                return ReconciliationOutcome.failed(kind, key, f"Azure error: {e}")
