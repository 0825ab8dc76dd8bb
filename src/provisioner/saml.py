"""Re-entrant SAML single sign-on configuration of the OpenCTI application.

Drives an application / service principal pair through the configuration
sequence of a non-gallery SAML enterprise application:

1. Locate or create (template instantiation)   -- fatal on failure
2. Identifier URI ``api://<clientId>``
3. Redirect and logout URL
4. Groups claim limited to assigned groups
5. Preferred SSO mode ``saml``
6. Token signing certificate
7. Notification email and external login URL
8. App role assignments for the managed groups

The state is recomputed from live attributes on every run, so the sequence
can resume from whatever a previous (possibly interrupted) run left behind.
Steps 2-8 record a failed step and continue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .graph import GraphClient, GraphError
from .models import AppRoleAssignmentEdge
from .outcomes import OutcomeStatus, ReconciliationOutcome
from .settle import Settler

logger = logging.getLogger(__name__)

# "Custom" non-gallery application template
NON_GALLERY_TEMPLATE_ID = "8adf8e6e-67b2-4cf2-a259-e3dc5476c621"
DEFAULT_ACCESS_ROLE_ID = "00000000-0000-0000-0000-000000000000"
USER_ROLE_VALUE = "User"
SIGNING_CERTIFICATE_DISPLAY_NAME = "CN=Microsoft Azure Federated SSO Certificate"

APPLICATION_SELECT = "id,appId,displayName,identifierUris,web,groupMembershipClaims"
SERVICE_PRINCIPAL_SELECT = (
    "id,appId,displayName,appRoles,keyCredentials,preferredSingleSignOnMode,"
    "preferredTokenSigningKeyThumbprint,notificationEmailAddresses,loginUrl"
)


class GroupsClaimMode(str, Enum):
    """Values of the application's groupMembershipClaims attribute."""

    NONE = "None"
    SECURITY_GROUP = "SecurityGroup"
    DIRECTORY_ROLE = "DirectoryRole"
    APPLICATION_GROUP = "ApplicationGroup"
    ALL = "All"

    @classmethod
    def parse(cls, value: str | None) -> GroupsClaimMode:
        if not value:
            return cls.NONE
        try:
            return cls(value)
        except ValueError:
            return cls.NONE


class SamlStep(str, Enum):
    LOCATE = "locate-or-create"
    IDENTIFIER_URI = "identifier-uri"
    REDIRECT_URL = "redirect-url"
    GROUPS_CLAIM = "groups-claim"
    SSO_MODE = "sso-mode"
    SIGNING_CERTIFICATE = "signing-certificate"
    NOTIFICATION = "notification-settings"
    ROLE_ASSIGNMENTS = "role-assignments"


class ApplicationResolutionError(Exception):
    """Raised when the application identity cannot be located or created.

    Fatal: no later step can run without it.
    """

    pass


@dataclass
class SamlApplication:
    """Resolved application / service principal pair."""

    object_id: str
    client_id: str
    service_principal_id: str
    display_name: str
    created: bool = False

    @property
    def identifier_uri(self) -> str:
        return f"api://{self.client_id}"


@dataclass(frozen=True)
class SamlApplicationState:
    """Configuration state derived from live attributes, never stored."""

    identifier_uri_set: bool
    redirect_configured: bool
    groups_claim_mode: GroupsClaimMode
    signing_cert_present: bool
    sso_mode_is_saml: bool

    @classmethod
    def observe(
        cls,
        application: dict[str, Any],
        service_principal: dict[str, Any],
        callback_url: str,
    ) -> SamlApplicationState:
        client_id = application.get("appId", "")
        web = application.get("web") or {}
        return cls(
            identifier_uri_set=f"api://{client_id}" in (application.get("identifierUris") or []),
            redirect_configured=callback_url in (web.get("redirectUris") or []),
            groups_claim_mode=GroupsClaimMode.parse(application.get("groupMembershipClaims")),
            signing_cert_present=_has_signing_certificate(service_principal),
            sso_mode_is_saml=(service_principal.get("preferredSingleSignOnMode") or "").lower()
            == "saml",
        )


def _has_signing_certificate(service_principal: dict[str, Any]) -> bool:
    if service_principal.get("preferredTokenSigningKeyThumbprint"):
        return True
    return any(
        key.get("usage") == "Sign" or key.get("usage") == "Verify"
        for key in service_principal.get("keyCredentials") or []
    )


def resolve_app_role_id(service_principal: dict[str, Any]) -> str:
    """App role used for group assignments.

    The enabled role whose value (or display name) is "User", falling back
    to the default-access role when the application defines none.
    """
    for role in service_principal.get("appRoles") or []:
        if not role.get("isEnabled", True):
            continue
        if role.get("value") == USER_ROLE_VALUE or role.get("displayName") == USER_ROLE_VALUE:
            return role["id"]
    return DEFAULT_ACCESS_ROLE_ID


@dataclass
class SamlConfigurationResult:
    """Outcome of one configurator run."""

    application: SamlApplication
    initial_state: SamlApplicationState | None = None
    steps: list[ReconciliationOutcome] = field(default_factory=list)
    role_assignments: list[ReconciliationOutcome] = field(default_factory=list)

    @property
    def failed_steps(self) -> list[ReconciliationOutcome]:
        return [s for s in [*self.steps, *self.role_assignments] if not s.success]

    @property
    def success(self) -> bool:
        return not self.failed_steps


class SamlApplicationConfigurator:
    """Configures SAML SSO on the OpenCTI enterprise application."""

    def __init__(
        self,
        graph: GraphClient,
        settler: Settler,
        *,
        display_name: str,
        callback_url: str,
        group_ids: dict[str, str],
        notification_email: str | None = None,
        login_url: str | None = None,
    ) -> None:
        """Initialize the configurator.

        Args:
            graph: Microsoft Graph client.
            settler: Settle policy after template instantiation and certificate creation.
            display_name: Display name of the enterprise application.
            callback_url: SAML assertion consumer (reply) URL.
            group_ids: Group object IDs keyed by role ("infra-admin", ...), in order.
            notification_email: Certificate expiry notification address.
            login_url: External sign-on URL shown in My Apps.
        """
        self._graph = graph
        self._settler = settler
        self._display_name = display_name
        self._callback_url = callback_url
        self._group_ids = group_ids
        self._notification_email = notification_email
        self._login_url = login_url

    async def configure(self) -> SamlConfigurationResult:
        """Run the full configuration sequence.

        Raises:
            ApplicationResolutionError: If the application cannot be located or created.
        """
        app = await self.locate_or_create()
        result = SamlConfigurationResult(application=app)

        try:
            application, service_principal = await self._read(app)
        except GraphError as e:
            raise ApplicationResolutionError(
                f"Could not read application '{app.display_name}': {e}"
            ) from e

        state = SamlApplicationState.observe(application, service_principal, self._callback_url)
        result.initial_state = state
        logger.info(
            f"SAML application '{app.display_name}' state",
            extra={
                "client_id": app.client_id,
                "identifier_uri_set": state.identifier_uri_set,
                "redirect_configured": state.redirect_configured,
                "groups_claim_mode": state.groups_claim_mode.value,
                "signing_cert_present": state.signing_cert_present,
                "sso_mode_is_saml": state.sso_mode_is_saml,
            },
        )

        result.steps.append(await self._set_identifier_uri(app, state))
        result.steps.append(await self._set_redirect_url(app, state))
        result.steps.append(await self._set_groups_claim(app))
        result.steps.append(await self._set_sso_mode(app, state))
        result.steps.append(await self._ensure_signing_certificate(app, state))
        result.steps.append(await self._set_notification_settings(app, service_principal))
        result.role_assignments.extend(await self._assign_groups(app, service_principal))

        for step in result.failed_steps:
            logger.warning(
                f"SAML step '{step.natural_key}' failed: {step.failure_detail}",
                extra={"remediation": step.remediation},
            )
        return result

    # -------------------------------------------------------------------------
    # Step 1: locate or create
    # -------------------------------------------------------------------------

    async def locate_or_create(self) -> SamlApplication:
        """Find the application pair by display name, instantiating it if absent.

        Raises:
            ApplicationResolutionError: On any failure.
        """
        try:
            return await self._locate_or_create()
        except GraphError as e:
            logger.error(f"Failed to resolve application '{self._display_name}': {e}")
            raise ApplicationResolutionError(
                f"Could not locate or create application '{self._display_name}': {e}"
            ) from e

    async def _locate_or_create(self) -> SamlApplication:
        application = await self._graph.find_one(
            "applications", "displayName", self._display_name, select="id,appId,displayName"
        )

        if application is not None:
            service_principal = await self._graph.find_one(
                "servicePrincipals", "appId", application["appId"], select="id,appId"
            )
            if service_principal is None:
                logger.info(f"Creating missing service principal for '{self._display_name}'")
                try:
                    service_principal = await self._graph.post(
                        "/servicePrincipals", {"appId": application["appId"]}
                    )
                except GraphError as e:
                    if not e.is_conflict:
                        raise
                    service_principal = await self._graph.find_one(
                        "servicePrincipals", "appId", application["appId"], select="id,appId"
                    )
                    if service_principal is None:
                        raise
            return SamlApplication(
                object_id=application["id"],
                client_id=application["appId"],
                service_principal_id=service_principal["id"],
                display_name=self._display_name,
            )

        service_principal = await self._graph.find_one(
            "servicePrincipals", "displayName", self._display_name, select="id,appId"
        )
        if service_principal is not None:
            application = await self._graph.find_one(
                "applications", "appId", service_principal["appId"], select="id,appId"
            )
            if application is None:
                raise ApplicationResolutionError(
                    f"Service principal '{self._display_name}' exists but its application "
                    f"({service_principal['appId']}) is not in this tenant"
                )
            return SamlApplication(
                object_id=application["id"],
                client_id=application["appId"],
                service_principal_id=service_principal["id"],
                display_name=self._display_name,
            )

        logger.info(f"Instantiating non-gallery application '{self._display_name}'")
        instantiated = await self._graph.post(
            f"/applicationTemplates/{NON_GALLERY_TEMPLATE_ID}/instantiate",
            {"displayName": self._display_name},
        )
        try:
            application = instantiated["application"]
            service_principal = instantiated["servicePrincipal"]
            app = SamlApplication(
                object_id=application["id"],
                client_id=application["appId"],
                service_principal_id=service_principal["id"],
                display_name=self._display_name,
                created=True,
            )
        except (KeyError, TypeError) as e:
            raise ApplicationResolutionError(
                f"Template instantiation returned an unexpected payload: {e}"
            ) from e

        await self._settler.after_application_created(self._display_name)
        return app

    async def _read(self, app: SamlApplication) -> tuple[dict[str, Any], dict[str, Any]]:
        application = await self._graph.get(
            f"/applications/{app.object_id}", {"$select": APPLICATION_SELECT}
        )
        service_principal = await self._graph.get(
            f"/servicePrincipals/{app.service_principal_id}",
            {"$select": SERVICE_PRINCIPAL_SELECT},
        )
        return application, service_principal

    # -------------------------------------------------------------------------
    # Steps 2-7
    # -------------------------------------------------------------------------

    async def _patch_step(
        self,
        step: SamlStep,
        path: str,
        payload: dict[str, Any],
        remediation: str,
    ) -> ReconciliationOutcome:
        try:
            await self._graph.patch(path, payload)
        except GraphError as e:
            return ReconciliationOutcome.failed(
                "SamlStep", step.value, str(e), remediation=remediation
            )
        logger.info(f"SAML step '{step.value}' applied")
        return ReconciliationOutcome(
            kind="SamlStep", natural_key=step.value, status=OutcomeStatus.UPDATED, reference=path
        )

    @staticmethod
    def _unchanged(step: SamlStep, reference: str) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            kind="SamlStep",
            natural_key=step.value,
            status=OutcomeStatus.ALREADY_EXISTS,
            reference=reference,
        )

    async def _set_identifier_uri(
        self, app: SamlApplication, state: SamlApplicationState
    ) -> ReconciliationOutcome:
        path = f"/applications/{app.object_id}"
        if state.identifier_uri_set:
            return self._unchanged(SamlStep.IDENTIFIER_URI, path)
        return await self._patch_step(
            SamlStep.IDENTIFIER_URI,
            path,
            {"identifierUris": [app.identifier_uri]},
            remediation=(
                f"Set Identifier (Entity ID) to {app.identifier_uri} under "
                "Single sign-on > Basic SAML Configuration"
            ),
        )

    async def _set_redirect_url(
        self, app: SamlApplication, state: SamlApplicationState
    ) -> ReconciliationOutcome:
        path = f"/applications/{app.object_id}"
        if state.redirect_configured:
            return self._unchanged(SamlStep.REDIRECT_URL, path)
        return await self._patch_step(
            SamlStep.REDIRECT_URL,
            path,
            {"web": {"redirectUris": [self._callback_url], "logoutUrl": self._callback_url}},
            remediation=(
                f"Set Reply URL and Logout URL to {self._callback_url} under "
                "Single sign-on > Basic SAML Configuration"
            ),
        )

    async def _set_groups_claim(self, app: SamlApplication) -> ReconciliationOutcome:
        # Re-setting the same mode is harmless, so this is applied on every run
        return await self._patch_step(
            SamlStep.GROUPS_CLAIM,
            f"/applications/{app.object_id}",
            {"groupMembershipClaims": GroupsClaimMode.APPLICATION_GROUP.value},
            remediation=(
                "Add a group claim emitting 'Groups assigned to the application' under "
                "Single sign-on > Attributes & Claims"
            ),
        )

    async def _set_sso_mode(
        self, app: SamlApplication, state: SamlApplicationState
    ) -> ReconciliationOutcome:
        path = f"/servicePrincipals/{app.service_principal_id}"
        if state.sso_mode_is_saml:
            return self._unchanged(SamlStep.SSO_MODE, path)
        return await self._patch_step(
            SamlStep.SSO_MODE,
            path,
            {"preferredSingleSignOnMode": "saml"},
            remediation="Select SAML as the single sign-on method of the enterprise application",
        )

    async def _ensure_signing_certificate(
        self, app: SamlApplication, state: SamlApplicationState
    ) -> ReconciliationOutcome:
        path = f"/servicePrincipals/{app.service_principal_id}/addTokenSigningCertificate"
        if state.signing_cert_present and not app.created:
            return self._unchanged(SamlStep.SIGNING_CERTIFICATE, path)
        try:
            certificate = await self._graph.post(
                path, {"displayName": SIGNING_CERTIFICATE_DISPLAY_NAME}
            )
        except GraphError as e:
            return ReconciliationOutcome.failed(
                "SamlStep",
                SamlStep.SIGNING_CERTIFICATE.value,
                str(e),
                remediation=(
                    "Create a new SAML signing certificate under "
                    "Single sign-on > SAML Certificates and make it active"
                ),
            )
        logger.info(
            f"Added token signing certificate to '{app.display_name}'",
            extra={"thumbprint": certificate.get("thumbprint")},
        )
        await self._settler.after_certificate_added(app.display_name)
        return ReconciliationOutcome(
            kind="SamlStep",
            natural_key=SamlStep.SIGNING_CERTIFICATE.value,
            status=OutcomeStatus.CREATED,
            reference=path,
            properties={"thumbprint": certificate.get("thumbprint")},
        )

    async def _set_notification_settings(
        self, app: SamlApplication, service_principal: dict[str, Any]
    ) -> ReconciliationOutcome:
        path = f"/servicePrincipals/{app.service_principal_id}"
        payload: dict[str, Any] = {}
        if self._notification_email and self._notification_email not in (
            service_principal.get("notificationEmailAddresses") or []
        ):
            payload["notificationEmailAddresses"] = [self._notification_email]
        if self._login_url and service_principal.get("loginUrl") != self._login_url:
            payload["loginUrl"] = self._login_url
        if not payload:
            return self._unchanged(SamlStep.NOTIFICATION, path)
        return await self._patch_step(
            SamlStep.NOTIFICATION,
            path,
            payload,
            remediation=(
                "Set the notification email under Single sign-on > SAML Certificates and "
                "the Sign on URL under Basic SAML Configuration"
            ),
        )

    # -------------------------------------------------------------------------
    # Step 8: app role assignments
    # -------------------------------------------------------------------------

    async def _assign_groups(
        self, app: SamlApplication, service_principal: dict[str, Any]
    ) -> list[ReconciliationOutcome]:
        app_role_id = resolve_app_role_id(service_principal)
        outcomes: list[ReconciliationOutcome] = []
        for role_key, group_id in self._group_ids.items():
            edge = AppRoleAssignmentEdge(
                service_principal_id=app.service_principal_id,
                principal_id=group_id,
                app_role_id=app_role_id,
            )
            outcome = await self.assign(edge)
            outcome.properties["group"] = role_key
            outcomes.append(outcome)
        return outcomes

    async def assign(self, edge: AppRoleAssignmentEdge) -> ReconciliationOutcome:
        """Grant a group access to the application, skipping existing grants.

        An existing grant for the same (service principal, group) pair counts
        as present regardless of its app role.
        """
        kind = "AppRoleAssignment"
        key = edge.natural_key
        path = f"/servicePrincipals/{edge.service_principal_id}/appRoleAssignedTo"
        remediation = (
            f"Assign group {edge.principal_id} under Enterprise applications > "
            "Users and groups"
        )

        try:
            existing = await self._graph.list_all(path)
        except GraphError as e:
            return ReconciliationOutcome.failed(kind, key, str(e), remediation=remediation)

        for assignment in existing:
            if assignment.get("principalId") == edge.principal_id:
                return ReconciliationOutcome(
                    kind=kind,
                    natural_key=key,
                    status=OutcomeStatus.ALREADY_EXISTS,
                    reference=assignment.get("id"),
                )

        try:
            created = await self._graph.post(
                path,
                {
                    "principalId": edge.principal_id,
                    "resourceId": edge.service_principal_id,
                    "appRoleId": edge.app_role_id,
                },
            )
        except GraphError as e:
            if e.is_conflict:
                return ReconciliationOutcome(
                    kind=kind, natural_key=key, status=OutcomeStatus.ALREADY_EXISTS
                )
            return ReconciliationOutcome.failed(kind, key, str(e), remediation=remediation)

        logger.info(f"Assigned group {edge.principal_id} to application with role {edge.app_role_id}")
        return ReconciliationOutcome(
            kind=kind,
            natural_key=key,
            status=OutcomeStatus.CREATED,
            reference=created.get("id"),
        )
