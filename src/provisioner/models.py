"""Pydantic models for managed resources and the provisioning spec.

These models provide:
1. One variant per resource kind carrying only the fields that kind accepts
2. Validation at the boundary (fail fast, fail loudly)
3. A stable natural key per resource, the sole idempotency discriminant
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

GITHUB_ACTIONS_ISSUER = "https://token.actions.githubusercontent.com"
TOKEN_EXCHANGE_AUDIENCE = "api://AzureADTokenExchange"

# Scope shorthands accepted by role assignment definitions
SCOPE_RESOURCE_GROUP = "resourceGroup"
SCOPE_SUBSCRIPTION = "subscription"


class ResourceKind(str, Enum):
    """Kinds of resources managed by the reconciler."""

    RESOURCE_GROUP = "ResourceGroup"
    MANAGED_IDENTITY = "ManagedIdentity"
    SECURITY_GROUP = "SecurityGroup"
    APPLICATION = "Application"
    SERVICE_PRINCIPAL = "ServicePrincipal"
    ROLE_ASSIGNMENT = "RoleAssignment"
    FEDERATED_CREDENTIAL = "FederatedCredential"


class MemberKind(str, Enum):
    """Directory object types that can be added to a group."""

    USER = "User"
    SERVICE_PRINCIPAL = "ServicePrincipal"
    GROUP = "Group"


# =============================================================================
# Resource Specs
# =============================================================================


class BaseResourceSpec(BaseModel):
    """Base for all resource variants."""

    model_config = {"extra": "forbid", "populate_by_name": True, "frozen": True}

    @property
    def resource_kind(self) -> ResourceKind:
        return ResourceKind(self.kind)  # type: ignore[attr-defined]

    @property
    def natural_key(self) -> str:
        raise NotImplementedError("Subclasses must implement natural_key")


class ResourceGroupSpec(BaseResourceSpec):
    """Azure resource group."""

    kind: Literal["ResourceGroup"] = "ResourceGroup"
    name: Annotated[str, Field(min_length=1, max_length=90)]
    location: Annotated[str, Field(min_length=1)]
    tags: dict[str, str] = Field(default_factory=dict)

    @property
    def natural_key(self) -> str:
        return self.name


class ManagedIdentitySpec(BaseResourceSpec):
    """User-assigned managed identity."""

    kind: Literal["ManagedIdentity"] = "ManagedIdentity"
    name: Annotated[str, Field(min_length=3, max_length=128)]
    resource_group: Annotated[str, Field(min_length=1, max_length=90, alias="resourceGroup")]
    location: Annotated[str, Field(min_length=1)]
    tags: dict[str, str] = Field(default_factory=dict)

    @property
    def natural_key(self) -> str:
        return f"{self.resource_group}/{self.name}"


class SecurityGroupSpec(BaseResourceSpec):
    """Entra ID security group (not mail enabled)."""

    kind: Literal["SecurityGroup"] = "SecurityGroup"
    display_name: Annotated[str, Field(min_length=1, max_length=256, alias="displayName")]
    mail_nickname: str | None = Field(None, alias="mailNickname")
    description: str | None = None

    @property
    def natural_key(self) -> str:
        return self.display_name

    @property
    def effective_mail_nickname(self) -> str:
        if self.mail_nickname:
            return self.mail_nickname
        # mailNickname only allows ASCII without spaces or @()\[]";:<>,
        return re.sub(r"[^A-Za-z0-9._-]", "", self.display_name)[:64] or "group"


class ApplicationSpec(BaseResourceSpec):
    """Entra ID application registration."""

    kind: Literal["Application"] = "Application"
    display_name: Annotated[str, Field(min_length=1, max_length=256, alias="displayName")]
    sign_in_audience: str = Field("AzureADMyOrg", alias="signInAudience")

    @property
    def natural_key(self) -> str:
        return self.display_name


class ServicePrincipalSpec(BaseResourceSpec):
    """Service principal (enterprise application) for an application."""

    kind: Literal["ServicePrincipal"] = "ServicePrincipal"
    app_id: Annotated[str, Field(min_length=1, alias="appId")]

    @property
    def natural_key(self) -> str:
        return self.app_id


class RoleAssignmentSpec(BaseResourceSpec):
    """Azure RBAC role assignment for a principal at a scope."""

    kind: Literal["RoleAssignment"] = "RoleAssignment"
    principal_id: Annotated[str, Field(min_length=1, alias="principalId")]
    scope: Annotated[str, Field(min_length=1)]
    role_definition_name: Annotated[str, Field(min_length=1, alias="roleDefinitionName")]
    principal_type: str = Field("ServicePrincipal", alias="principalType")

    @field_validator("scope")
    @classmethod
    def validate_scope(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"scope must be a fully qualified ARM ID: {v}")
        return v

    @property
    def natural_key(self) -> str:
        return f"{self.principal_id}:{self.role_definition_name}:{self.scope}"


class FederatedCredentialSpec(BaseResourceSpec):
    """Federated identity credential bound to a managed identity."""

    kind: Literal["FederatedCredential"] = "FederatedCredential"
    name: Annotated[str, Field(min_length=3, max_length=120)]
    identity_name: Annotated[str, Field(min_length=1, alias="identityName")]
    resource_group: Annotated[str, Field(min_length=1, alias="resourceGroup")]
    issuer: Annotated[str, Field(min_length=1)]
    subject: Annotated[str, Field(min_length=1)]
    audiences: list[str] = Field(default_factory=lambda: [TOKEN_EXCHANGE_AUDIENCE])

    @property
    def natural_key(self) -> str:
        return f"{self.resource_group}/{self.identity_name}/{self.name}"


ResourceSpec = Annotated[
    ResourceGroupSpec
    | ManagedIdentitySpec
    | SecurityGroupSpec
    | ApplicationSpec
    | ServicePrincipalSpec
    | RoleAssignmentSpec
    | FederatedCredentialSpec,
    Field(discriminator="kind"),
]

_RESOURCE_SPEC_ADAPTER: TypeAdapter[Any] = TypeAdapter(ResourceSpec)


def parse_resource_spec(data: dict[str, Any]) -> BaseResourceSpec:
    """Validate a raw mapping into the resource variant named by its ``kind``."""
    return _RESOURCE_SPEC_ADAPTER.validate_python(data)


# =============================================================================
# Edges
# =============================================================================


class GroupMembershipEdge(BaseModel):
    """A member that must belong to a security group."""

    model_config = {"frozen": True}

    group_id: Annotated[str, Field(min_length=1)]
    member_id: Annotated[str, Field(min_length=1)]
    member_kind: MemberKind = MemberKind.SERVICE_PRINCIPAL

    @property
    def natural_key(self) -> str:
        return f"{self.group_id}:{self.member_id}"


class AppRoleAssignmentEdge(BaseModel):
    """A group granted an app role on a service principal."""

    model_config = {"frozen": True}

    service_principal_id: Annotated[str, Field(min_length=1)]
    principal_id: Annotated[str, Field(min_length=1)]
    app_role_id: Annotated[str, Field(min_length=1)]

    @property
    def natural_key(self) -> str:
        return f"{self.service_principal_id}:{self.principal_id}"


# =============================================================================
# Provisioning Spec (YAML)
# =============================================================================


class RoleAssignmentDefinition(BaseModel):
    """RBAC role the deployment identity must hold."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    role_definition_name: Annotated[str, Field(min_length=1, alias="roleDefinitionName")]
    # "resourceGroup", "subscription" or a fully qualified ARM scope
    scope: str = SCOPE_RESOURCE_GROUP
    description: str | None = None

    @field_validator("scope")
    @classmethod
    def validate_scope(cls, v: str) -> str:
        if v in (SCOPE_RESOURCE_GROUP, SCOPE_SUBSCRIPTION) or v.startswith("/subscriptions/"):
            return v
        raise ValueError(
            f"scope must be '{SCOPE_RESOURCE_GROUP}', '{SCOPE_SUBSCRIPTION}' "
            f"or start with /subscriptions/: {v}"
        )

    def resolve_scope(self, subscription_id: str, resource_group: str) -> str:
        if self.scope == SCOPE_SUBSCRIPTION:
            return f"/subscriptions/{subscription_id}"
        if self.scope == SCOPE_RESOURCE_GROUP:
            return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        return self.scope


class FederatedCredentialDefinition(BaseModel):
    """Trust binding between an external workload and the deployment identity."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=3, max_length=120)]
    issuer: str = GITHUB_ACTIONS_ISSUER
    subject: Annotated[str, Field(min_length=1)]
    audiences: list[str] = Field(default_factory=lambda: [TOKEN_EXCHANGE_AUDIENCE])


class GroupsConfig(BaseModel):
    """Display names of the three security groups."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    infra_admin: str = Field("OpenCTI Infra Admins", alias="infraAdmin", min_length=1)
    threat_intel: str = Field("OpenCTI Threat Intel", alias="threatIntel", min_length=1)
    analysts: str = Field("OpenCTI Analysts", min_length=1)

    def items(self) -> list[tuple[str, str]]:
        """Role key and display name, in assignment order."""
        return [
            ("infra-admin", self.infra_admin),
            ("threat-intel", self.threat_intel),
            ("analysts", self.analysts),
        ]


def _default_role_assignments() -> list[RoleAssignmentDefinition]:
    return [
        RoleAssignmentDefinition(role_definition_name="Contributor"),
        RoleAssignmentDefinition(role_definition_name="User Access Administrator"),
    ]


class ProvisioningSpec(BaseModel):
    """Desired identity and access resources for one OpenCTI deployment.

    Every field has a default so that an empty spec file (or none at all)
    provisions the standard resource set.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    identity_name: str | None = Field(None, alias="identityName")
    application_display_name: str | None = Field(None, alias="applicationDisplayName")
    groups: GroupsConfig = Field(default_factory=GroupsConfig)
    role_assignments: list[RoleAssignmentDefinition] = Field(
        default_factory=_default_role_assignments, alias="roleAssignments"
    )
    federated_credentials: list[FederatedCredentialDefinition] = Field(
        default_factory=list, alias="federatedCredentials"
    )
    # Adds the signed-in operator to the infra-admin group when resolvable
    add_signed_in_user: bool = Field(True, alias="addSignedInUser")
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("federated_credentials")
    @classmethod
    def validate_unique_credential_names(
        cls, v: list[FederatedCredentialDefinition]
    ) -> list[FederatedCredentialDefinition]:
        names = [fc.name for fc in v]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"federated credential names must be unique: {sorted(duplicates)}")
        return v

    def resolved_identity_name(self, app_name: str) -> str:
        return self.identity_name or f"id-{app_name}-deploy"

    def resolved_application_name(self, app_name: str) -> str:
        return self.application_display_name or f"{app_name}-saml"
