"""Bootstrap provisioning of the OpenCTI identity and access resources.

Runs the full sequence in a fixed order, awaiting each step before the next:

1. Resource group
2. Deployment managed identity (settle after creation)
3. RBAC role grants for the identity
4. Federated credentials binding CI workloads to the identity
5. Security groups (infra-admin, threat-intel, analysts)
6. Group memberships (identity and signed-in operator into infra-admin)
7. SAML enterprise application configuration
8. Signing certificate extraction from federation metadata
9. Output assembly

Dependents of a failed prerequisite are skipped (identity needs the resource
group; grants and federated credentials need the identity) while independent
steps still run. Only a failed SAML application lookup/creation aborts the
run; every other failure is itemized in the report with remediation text.
Re-running resumes from whatever state the previous run left behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import Config
from .metadata import CertificatePayload, FederationMetadataExtractor, MetadataExtractionError
from .models import (
    FederatedCredentialSpec,
    GroupMembershipEdge,
    ManagedIdentitySpec,
    MemberKind,
    ProvisioningSpec,
    ResourceGroupSpec,
    ResourceKind,
    RoleAssignmentSpec,
    SecurityGroupSpec,
)
from .outcomes import ReconciliationOutcome
from .outputs import DeploymentOutputs, ProvisionedIdentifiers, assemble_outputs
from .rbac import RoleAssignmentGranter
from .reconciler import ResourceReconciler
from .saml import ApplicationResolutionError, SamlApplicationConfigurator, SamlConfigurationResult
from .session import AzureSession
from .settle import Settler

logger = logging.getLogger(__name__)

INFRA_ADMIN_GROUP = "infra-admin"

GROUP_DESCRIPTIONS: dict[str, str] = {
    "infra-admin": "Administers the OpenCTI platform and its Azure infrastructure",
    "threat-intel": "Curates threat intelligence in OpenCTI",
    "analysts": "Read and analyse threat intelligence in OpenCTI",
}


@dataclass(frozen=True)
class ReportWarning:
    """A non-fatal problem the operator has to look at."""

    source: str
    message: str
    remediation: str | None = None

    def to_dict(self) -> dict[str, str]:
        data = {"source": self.source, "message": self.message}
        if self.remediation:
            data["remediation"] = self.remediation
        return data


@dataclass
class ProvisioningReport:
    """Result of one provisioning run."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    outcomes: list[ReconciliationOutcome] = field(default_factory=list)
    saml: SamlConfigurationResult | None = None
    certificate: CertificatePayload | None = None
    outputs: DeploymentOutputs | None = None
    warnings: list[ReportWarning] = field(default_factory=list)
    error: str | None = None

    @property
    def failed_outcomes(self) -> list[ReconciliationOutcome]:
        saml_failures = self.saml.failed_steps if self.saml else []
        return [o for o in self.outcomes if not o.success] + saml_failures

    @property
    def success(self) -> bool:
        return self.error is None and not self.failed_outcomes and self.certificate is not None

    @property
    def partial(self) -> bool:
        """Completed without a fatal error but with itemized failures."""
        return self.error is None and not self.success

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def warn(self, source: str, message: str, remediation: str | None = None) -> None:
        self.warnings.append(ReportWarning(source, message, remediation))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "startTime": self.start_time.isoformat().replace("+00:00", "Z"),
            "durationSeconds": round(self.duration_seconds, 3),
            "outcomes": [o.to_dict() for o in self.outcomes],
            "warnings": [w.to_dict() for w in self.warnings],
        }
        if self.saml is not None:
            app = self.saml.application
            data["saml"] = {
                "displayName": app.display_name,
                "clientId": app.client_id,
                "servicePrincipalId": app.service_principal_id,
                "created": app.created,
                "steps": [s.to_dict() for s in self.saml.steps],
                "roleAssignments": [r.to_dict() for r in self.saml.role_assignments],
            }
        if self.certificate is not None:
            data["certificate"] = {"pem": self.certificate.pem}
        if self.outputs is not None:
            data["outputs"] = self.outputs.redacted()
        if self.error:
            data["error"] = self.error
        return data


class BootstrapProvisioner:
    """Provisions the full resource set for one OpenCTI deployment."""

    def __init__(
        self,
        config: Config,
        spec: ProvisioningSpec,
        session: AzureSession,
        *,
        settler: Settler | None = None,
        extractor: FederationMetadataExtractor | None = None,
    ) -> None:
        """Initialize the provisioner.

        Args:
            config: Provisioner configuration.
            spec: Desired identity and access resources.
            session: Authenticated Azure clients.
            settler: Settle and retry policy; defaults to the configured one.
            extractor: Federation metadata extractor; defaults to the configured one.
        """
        self._config = config
        self._spec = spec
        self._session = session
        self._settler = settler or Settler(config.settle)
        self._extractor = extractor or FederationMetadataExtractor(
            issuer_host=config.issuer_host,
            timeout=config.metadata_timeout_seconds,
        )
        self._granter = RoleAssignmentGranter(
            session.authorization, config.subscription_id, self._settler
        )
        self._reconciler = ResourceReconciler(session, self._granter)

    async def provision(self) -> ProvisioningReport:
        """Run the provisioning sequence and return the report."""
        report = ProvisioningReport()
        config = self._config
        spec = self._spec
        rg_name = config.resource_group_name

        logger.info(
            "Starting provisioning",
            extra={
                "subscription_id": config.subscription_id,
                "resource_group": rg_name,
                "app_name": config.app_name,
            },
        )

        rg = await self._ensure(
            report,
            ResourceGroupSpec(name=rg_name, location=config.location, tags=spec.tags),
        )

        identity_name = spec.resolved_identity_name(config.app_name)
        principal_id: str | None = None
        deployment_client_id: str | None = None
        if rg.success:
            identity = await self._ensure(
                report,
                ManagedIdentitySpec(
                    name=identity_name,
                    resource_group=rg_name,
                    location=config.location,
                    tags=spec.tags,
                ),
            )
            if identity.success:
                principal_id = identity.properties.get("principalId")
                deployment_client_id = identity.properties.get("clientId")
                if identity.created:
                    await self._settler.after_principal_created(identity_name)
        else:
            self._skip(report, ResourceKind.MANAGED_IDENTITY, identity_name, "resource group")

        await self._grant_roles(report, principal_id)
        await self._ensure_federated_credentials(report, identity_name, principal_id)

        group_ids = await self._ensure_groups(report)
        await self._ensure_memberships(report, group_ids, principal_id)

        configurator = SamlApplicationConfigurator(
            self._session.graph,
            self._settler,
            display_name=spec.resolved_application_name(config.app_name),
            callback_url=config.callback_url,
            group_ids=group_ids,
            notification_email=config.notification_email,
            login_url=config.base_url,
        )
        try:
            report.saml = await configurator.configure()
        except ApplicationResolutionError as e:
            logger.error(f"SAML application could not be resolved, aborting: {e}")
            report.error = str(e)
            report.end_time = datetime.now(UTC)
            return report

        for step in report.saml.failed_steps:
            report.warn(
                f"saml:{step.natural_key}", step.failure_detail or "failed", step.remediation
            )

        client_id = report.saml.application.client_id
        try:
            report.certificate = await self._extractor.extract_certificate(
                self._session.tenant_id, client_id
            )
        except MetadataExtractionError as e:
            logger.warning(f"Signing certificate extraction failed: {e}")
            report.warn(f"certificate:{e.kind.value}", e.detail, e.remediation)

        report.outputs = assemble_outputs(
            config,
            ProvisionedIdentifiers(
                tenant_id=self._session.tenant_id,
                deployment_client_id=deployment_client_id,
                application_client_id=client_id,
                group_object_id=group_ids.get(INFRA_ADMIN_GROUP),
            ),
            report.certificate,
        )
        for warning in report.outputs.warnings:
            report.warn("outputs", warning)

        report.end_time = datetime.now(UTC)
        logger.info(
            f"Provisioning complete: {len(report.outcomes)} resources, "
            f"{len(report.failed_outcomes)} failed, duration={report.duration_seconds:.1f}s",
            extra={"success": report.success},
        )
        return report

    async def _ensure(self, report: ProvisioningReport, spec: Any) -> ReconciliationOutcome:
        outcome = await self._reconciler.ensure(spec)
        self._record(report, outcome)
        return outcome

    @staticmethod
    def _record(report: ProvisioningReport, outcome: ReconciliationOutcome) -> None:
        report.outcomes.append(outcome)
        if not outcome.success:
            report.warn(
                f"{outcome.kind}:{outcome.natural_key}",
                outcome.failure_detail or "failed",
                outcome.remediation,
            )

    def _skip(
        self, report: ProvisioningReport, kind: ResourceKind | str, key: str, prerequisite: str
    ) -> None:
        kind_name = kind.value if isinstance(kind, ResourceKind) else kind
        logger.warning(f"Skipping {kind_name} '{key}': {prerequisite} unavailable")
        self._record(
            report,
            ReconciliationOutcome.failed(
                kind_name,
                key,
                f"Skipped: {prerequisite} unavailable",
                remediation="Fix the failed prerequisite and re-run the provisioner",
            ),
        )

    async def _grant_roles(self, report: ProvisioningReport, principal_id: str | None) -> None:
        for definition in self._spec.role_assignments:
            scope = definition.resolve_scope(
                self._config.subscription_id, self._config.resource_group_name
            )
            if principal_id is None:
                self._skip(
                    report,
                    ResourceKind.ROLE_ASSIGNMENT,
                    f"{definition.role_definition_name}:{scope}",
                    "managed identity",
                )
                continue
            await self._ensure(
                report,
                RoleAssignmentSpec(
                    principal_id=principal_id,
                    scope=scope,
                    role_definition_name=definition.role_definition_name,
                ),
            )

    async def _ensure_federated_credentials(
        self, report: ProvisioningReport, identity_name: str, principal_id: str | None
    ) -> None:
        rg_name = self._config.resource_group_name
        for definition in self._spec.federated_credentials:
            if principal_id is None:
                self._skip(
                    report,
                    ResourceKind.FEDERATED_CREDENTIAL,
                    f"{rg_name}/{identity_name}/{definition.name}",
                    "managed identity",
                )
                continue
            await self._ensure(
                report,
                FederatedCredentialSpec(
                    name=definition.name,
                    identity_name=identity_name,
                    resource_group=rg_name,
                    issuer=definition.issuer,
                    subject=definition.subject,
                    audiences=definition.audiences,
                ),
            )

    async def _ensure_groups(self, report: ProvisioningReport) -> dict[str, str]:
        group_ids: dict[str, str] = {}
        for role_key, display_name in self._spec.groups.items():
            outcome = await self._ensure(
                report,
                SecurityGroupSpec(
                    display_name=display_name,
                    description=GROUP_DESCRIPTIONS.get(role_key),
                ),
            )
            if outcome.success and outcome.properties.get("objectId"):
                group_ids[role_key] = outcome.properties["objectId"]
        return group_ids

    async def _ensure_memberships(
        self,
        report: ProvisioningReport,
        group_ids: dict[str, str],
        principal_id: str | None,
    ) -> None:
        admin_group = group_ids.get(INFRA_ADMIN_GROUP)
        if admin_group is None:
            self._skip(report, "GroupMembership", INFRA_ADMIN_GROUP, "infra-admin group")
            return

        edges: list[GroupMembershipEdge] = []
        if principal_id:
            edges.append(
                GroupMembershipEdge(
                    group_id=admin_group,
                    member_id=principal_id,
                    member_kind=MemberKind.SERVICE_PRINCIPAL,
                )
            )
        if self._spec.add_signed_in_user:
            user_id = await self._session.graph.signed_in_user_id()
            if user_id:
                edges.append(
                    GroupMembershipEdge(
                        group_id=admin_group, member_id=user_id, member_kind=MemberKind.USER
                    )
                )
            else:
                logger.info("Signed-in principal is not a user, skipping operator membership")

        for edge in edges:
            self._record(report, await self._reconciler.ensure_membership(edge))
