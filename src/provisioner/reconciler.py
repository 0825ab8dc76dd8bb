"""Idempotent reconciliation of the managed resource set.

For every resource kind the reconciler pairs an existence probe with a
create action:

1. Probe by natural key
2. Found -> AlreadyExists, nothing is mutated (no destructive sync)
3. Not found -> exactly one create call -> Created
4. Create conflict (resource appeared concurrently) -> re-probe once

ARM resources (resource group, managed identity, federated credential) go
through the Azure SDK; directory objects (groups, applications, service
principals) go through Microsoft Graph. Role assignments are delegated to
the RoleAssignmentGranter.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.mgmt.msi.models import FederatedIdentityCredential, Identity
from azure.mgmt.resource.resources.models import ResourceGroup

from .graph import GRAPH_BASE_URL, GraphError
from .models import (
    ApplicationSpec,
    BaseResourceSpec,
    FederatedCredentialSpec,
    GroupMembershipEdge,
    ManagedIdentitySpec,
    ResourceGroupSpec,
    ResourceKind,
    RoleAssignmentSpec,
    SecurityGroupSpec,
    ServicePrincipalSpec,
)
from .outcomes import OutcomeStatus, ReconciliationOutcome
from .rbac import RoleAssignmentGranter
from .session import AzureSession

logger = logging.getLogger(__name__)

MANAGED_BY_TAG = "opencti-provisioner"


@dataclass
class ResourceRef:
    """Reference to an existing resource returned by a probe or create."""

    id: str
    properties: dict[str, Any] = field(default_factory=dict)


class CreateConflict(Exception):
    """Raised by a create action when the provider reports the resource exists."""

    pass


Probe = Callable[[Any], Awaitable[ResourceRef | None]]
Create = Callable[[Any], Awaitable[ResourceRef]]


class ResourceReconciler:
    """Ensures resources exist without duplicating or overwriting them."""

    def __init__(self, session: AzureSession, granter: RoleAssignmentGranter) -> None:
        self._session = session
        self._granter = granter
        self._handlers: dict[ResourceKind, tuple[Probe, Create]] = {
            ResourceKind.RESOURCE_GROUP: (self._probe_resource_group, self._create_resource_group),
            ResourceKind.MANAGED_IDENTITY: (
                self._probe_managed_identity,
                self._create_managed_identity,
            ),
            ResourceKind.FEDERATED_CREDENTIAL: (
                self._probe_federated_credential,
                self._create_federated_credential,
            ),
            ResourceKind.SECURITY_GROUP: (self._probe_security_group, self._create_security_group),
            ResourceKind.APPLICATION: (self._probe_application, self._create_application),
            ResourceKind.SERVICE_PRINCIPAL: (
                self._probe_service_principal,
                self._create_service_principal,
            ),
        }

    async def probe(self, spec: BaseResourceSpec) -> ResourceRef | None:
        """Return the existing resource for ``spec`` or None if absent.

        Raises:
            AzureError, GraphError: If the provider could not be queried.
        """
        probe, _ = self._handlers[spec.resource_kind]
        return await probe(spec)

    async def ensure(self, spec: BaseResourceSpec) -> ReconciliationOutcome:
        """Guarantee the resource described by ``spec`` exists."""
        kind = spec.resource_kind

        if isinstance(spec, RoleAssignmentSpec):
            return await self._granter.grant_role(
                spec.principal_id,
                spec.scope,
                spec.role_definition_name,
                principal_type=spec.principal_type,
            )

        probe, create = self._handlers[kind]
        key = spec.natural_key

        try:
            existing = await probe(spec)
        except (AzureError, GraphError) as e:
            logger.error(
                f"Failed to probe {kind.value} '{key}': {e}",
                extra={"kind": kind.value, "natural_key": key},
            )
            return ReconciliationOutcome.failed(kind.value, key, f"Probe failed: {e}")

        if existing is not None:
            logger.info(f"{kind.value} '{key}' already exists")
            self._report_drift(spec, existing)
            return self._outcome(spec, OutcomeStatus.ALREADY_EXISTS, existing)

        try:
            created = await create(spec)
        except CreateConflict as conflict:
            logger.info(f"{kind.value} '{key}' appeared concurrently, re-probing")
            try:
                existing = await probe(spec)
            except (AzureError, GraphError) as e:
                return ReconciliationOutcome.failed(kind.value, key, f"Re-probe failed: {e}")
            if existing is not None:
                return self._outcome(spec, OutcomeStatus.ALREADY_EXISTS, existing)
            return ReconciliationOutcome.failed(
                kind.value, key, f"Create conflicted but resource not found: {conflict}"
            )
        except (AzureError, GraphError) as e:
            logger.error(
                f"Failed to create {kind.value} '{key}': {e}",
                extra={"kind": kind.value, "natural_key": key},
            )
            return ReconciliationOutcome.failed(kind.value, key, f"Create failed: {e}")

        logger.info(
            f"Created {kind.value} '{key}'",
            extra={"kind": kind.value, "natural_key": key, "reference": created.id},
        )
        return self._outcome(spec, OutcomeStatus.CREATED, created)

    async def ensure_membership(self, edge: GroupMembershipEdge) -> ReconciliationOutcome:
        """Ensure ``edge.member_id`` is a member of ``edge.group_id``.

        Adding an existing member is reported as AlreadyExists.
        """
        graph = self._session.graph
        kind = "GroupMembership"
        key = edge.natural_key

        try:
            members = await graph.list_all(
                f"/groups/{edge.group_id}/members", {"$select": "id"}
            )
        except GraphError as e:
            return ReconciliationOutcome.failed(kind, key, f"Probe failed: {e}")

        if any(m.get("id") == edge.member_id for m in members):
            return ReconciliationOutcome(
                kind=kind, natural_key=key, status=OutcomeStatus.ALREADY_EXISTS
            )

        try:
            await graph.post(
                f"/groups/{edge.group_id}/members/$ref",
                {"@odata.id": f"{GRAPH_BASE_URL}/directoryObjects/{edge.member_id}"},
            )
        except GraphError as e:
            if e.is_conflict:
                return ReconciliationOutcome(
                    kind=kind, natural_key=key, status=OutcomeStatus.ALREADY_EXISTS
                )
            logger.warning(f"Failed to add {edge.member_id} to group {edge.group_id}: {e}")
            return ReconciliationOutcome.failed(
                kind,
                key,
                str(e),
                remediation=(
                    f"az ad group member add --group {edge.group_id} "
                    f"--member-id {edge.member_id}"
                ),
            )

        logger.info(f"Added {edge.member_kind.value} {edge.member_id} to group {edge.group_id}")
        return ReconciliationOutcome(kind=kind, natural_key=key, status=OutcomeStatus.CREATED)

    @staticmethod
    def _outcome(
        spec: BaseResourceSpec, status: OutcomeStatus, ref: ResourceRef
    ) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            kind=spec.resource_kind.value,
            natural_key=spec.natural_key,
            status=status,
            reference=ref.id,
            properties=dict(ref.properties),
        )

    @staticmethod
    def _report_drift(spec: BaseResourceSpec, existing: ResourceRef) -> None:
        if not isinstance(spec, FederatedCredentialSpec):
            return
        for attr in ("issuer", "subject"):
            actual = existing.properties.get(attr)
            if actual is not None and actual != getattr(spec, attr):
                logger.warning(
                    f"Federated credential '{spec.name}' {attr} differs from the "
                    "desired value; leaving it unchanged",
                    extra={"expected": getattr(spec, attr), "actual": actual},
                )

    # -------------------------------------------------------------------------
    # Azure Resource Manager
    # -------------------------------------------------------------------------

    async def _probe_resource_group(self, spec: ResourceGroupSpec) -> ResourceRef | None:
        try:
            rg = self._session.resources.resource_groups.get(spec.name)
        except ResourceNotFoundError:
            return None
        return ResourceRef(id=rg.id, properties={"location": rg.location})

    async def _create_resource_group(self, spec: ResourceGroupSpec) -> ResourceRef:
        rg = _arm_create(
            self._session.resources.resource_groups.create_or_update,
            resource_group_name=spec.name,
            parameters=ResourceGroup(
                location=spec.location,
                tags={**spec.tags, "managedBy": MANAGED_BY_TAG},
            ),
        )
        return ResourceRef(id=rg.id, properties={"location": rg.location})

    async def _probe_managed_identity(self, spec: ManagedIdentitySpec) -> ResourceRef | None:
        try:
            identity = self._session.identities.user_assigned_identities.get(
                resource_group_name=spec.resource_group,
                resource_name=spec.name,
            )
        except ResourceNotFoundError:
            return None
        return _identity_ref(identity)

    async def _create_managed_identity(self, spec: ManagedIdentitySpec) -> ResourceRef:
        identity = _arm_create(
            self._session.identities.user_assigned_identities.create_or_update,
            resource_group_name=spec.resource_group,
            resource_name=spec.name,
            parameters=Identity(
                location=spec.location,
                tags={**spec.tags, "managedBy": MANAGED_BY_TAG},
            ),
        )
        return _identity_ref(identity)

    async def _probe_federated_credential(
        self, spec: FederatedCredentialSpec
    ) -> ResourceRef | None:
        try:
            credential = self._session.identities.federated_identity_credentials.get(
                resource_group_name=spec.resource_group,
                resource_name=spec.identity_name,
                federated_identity_credential_resource_name=spec.name,
            )
        except ResourceNotFoundError:
            return None
        return ResourceRef(
            id=credential.id,
            properties={"issuer": credential.issuer, "subject": credential.subject},
        )

    async def _create_federated_credential(self, spec: FederatedCredentialSpec) -> ResourceRef:
        credential = _arm_create(
            self._session.identities.federated_identity_credentials.create_or_update,
            resource_group_name=spec.resource_group,
            resource_name=spec.identity_name,
            federated_identity_credential_resource_name=spec.name,
            parameters=FederatedIdentityCredential(
                issuer=spec.issuer,
                subject=spec.subject,
                audiences=list(spec.audiences),
            ),
        )
        return ResourceRef(
            id=credential.id,
            properties={"issuer": credential.issuer, "subject": credential.subject},
        )

    # -------------------------------------------------------------------------
    # Microsoft Graph
    # -------------------------------------------------------------------------

    async def _probe_security_group(self, spec: SecurityGroupSpec) -> ResourceRef | None:
        group = await self._session.graph.find_one(
            "groups", "displayName", spec.display_name, select="id,displayName"
        )
        if group is None:
            return None
        return ResourceRef(id=group["id"], properties={"objectId": group["id"]})

    async def _create_security_group(self, spec: SecurityGroupSpec) -> ResourceRef:
        payload: dict[str, Any] = {
            "displayName": spec.display_name,
            "mailEnabled": False,
            "mailNickname": spec.effective_mail_nickname,
            "securityEnabled": True,
        }
        if spec.description:
            payload["description"] = spec.description
        group = await _graph_create(self._session.graph.post("/groups", payload))
        return ResourceRef(id=group["id"], properties={"objectId": group["id"]})

    async def _probe_application(self, spec: ApplicationSpec) -> ResourceRef | None:
        app = await self._session.graph.find_one(
            "applications", "displayName", spec.display_name, select="id,appId,displayName"
        )
        if app is None:
            return None
        return ResourceRef(id=app["id"], properties={"appId": app["appId"]})

    async def _create_application(self, spec: ApplicationSpec) -> ResourceRef:
        app = await _graph_create(
            self._session.graph.post(
                "/applications",
                {"displayName": spec.display_name, "signInAudience": spec.sign_in_audience},
            )
        )
        return ResourceRef(id=app["id"], properties={"appId": app["appId"]})

    async def _probe_service_principal(self, spec: ServicePrincipalSpec) -> ResourceRef | None:
        sp = await self._session.graph.find_one(
            "servicePrincipals", "appId", spec.app_id, select="id,appId"
        )
        if sp is None:
            return None
        return ResourceRef(id=sp["id"], properties={"appId": sp["appId"]})

    async def _create_service_principal(self, spec: ServicePrincipalSpec) -> ResourceRef:
        sp = await _graph_create(
            self._session.graph.post("/servicePrincipals", {"appId": spec.app_id})
        )
        return ResourceRef(id=sp["id"], properties={"appId": sp["appId"]})


def _identity_ref(identity: Any) -> ResourceRef:
    return ResourceRef(
        id=identity.id,
        properties={
            "principalId": identity.principal_id,
            "clientId": identity.client_id,
            "tenantId": identity.tenant_id,
        },
    )


def _arm_create(operation: Callable[..., Any], **kwargs: Any) -> Any:
    """Run an ARM create call, mapping a 409 to CreateConflict."""
    try:
        return operation(**kwargs)
    except ResourceExistsError as e:
        raise CreateConflict(str(e)) from e
    except HttpResponseError as e:
        if e.status_code == 409:
            raise CreateConflict(str(e)) from e
        raise


async def _graph_create(request: Awaitable[dict[str, Any]]) -> dict[str, Any]:
    """Await a Graph create call, mapping a duplicate rejection to CreateConflict."""
    try:
        return await request
    except GraphError as e:
        if e.is_conflict:
            raise CreateConflict(str(e)) from e
        raise
