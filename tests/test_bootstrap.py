"""Tests for the bootstrap provisioning sequence.

Runs the full sequence against the in-memory Azure and Graph mocks and a
federation metadata endpoint served by httpx.MockTransport.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from azure_mock import OPERATOR_USER_ID, MockAzureContext, make_http_error
from conftest import TEST_SUBSCRIPTION_ID, TEST_TENANT_ID, RecordingSleep

from provisioner.bootstrap import BootstrapProvisioner, ProvisioningReport
from provisioner.config import Config
from provisioner.main import EXIT_FAILURE, EXIT_SUCCESS, exit_code_for
from provisioner.metadata import (
    FederationMetadataExtractor,
    MetadataExtractionError,
    MetadataFailureKind,
)
from provisioner.models import ProvisioningSpec
from provisioner.outcomes import OutcomeStatus
from provisioner.settle import Settler

SIGNING_CERT = "MIIC8DCCAdigAwIBAgIQ" + "A" * 100

METADATA = (
    '<EntityDescriptor xmlns="urn:oasis:names:tc:SAML:2.0:metadata" '
    'xmlns:ds="http://www.w3.org/2000/09/xmldsig#">'
    '<IDPSSODescriptor><KeyDescriptor use="signing"><ds:KeyInfo><ds:X509Data>'
    f"<ds:X509Certificate>{SIGNING_CERT}</ds:X509Certificate>"
    "</ds:X509Data></ds:KeyInfo></KeyDescriptor></IDPSSODescriptor></EntityDescriptor>"
).encode()


class MetadataEndpoint:
    """Federation metadata endpoint recording the requested applications."""

    def __init__(self, body: bytes = METADATA, content_type: str = "application/xml") -> None:
        self.body = body
        self.content_type = content_type
        self.requests: list[httpx.Request] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(200, content=self.body, headers={"content-type": self.content_type})

    def extractor(self) -> FederationMetadataExtractor:
        return FederationMetadataExtractor(transport=httpx.MockTransport(self.handle))


def _provisioner(
    config: Config,
    azure: MockAzureContext,
    settler: Settler,
    endpoint: MetadataEndpoint,
    spec: ProvisioningSpec | None = None,
) -> BootstrapProvisioner:
    return BootstrapProvisioner(
        config,
        spec or ProvisioningSpec(),
        azure.session,
        settler=settler,
        extractor=endpoint.extractor(),
    )


def _by_kind(report: ProvisioningReport, kind: str) -> list:
    return [o for o in report.outcomes if o.kind == kind]


class TestProvision:
    """Tests for a full provisioning run."""

    @pytest.mark.asyncio
    async def test_fresh_environment(
        self,
        config: Config,
        azure: MockAzureContext,
        settler: Settler,
        sleep: RecordingSleep,
    ) -> None:
        """Test that every resource is created and all outputs are produced."""
        endpoint = MetadataEndpoint()

        async with azure:
            report = await _provisioner(config, azure, settler, endpoint).provision()

        assert report.success, report.to_dict()
        assert exit_code_for(report) == EXIT_SUCCESS
        assert {o.status for o in report.outcomes} == {OutcomeStatus.CREATED}
        assert len(_by_kind(report, "ResourceGroup")) == 1
        assert len(_by_kind(report, "ManagedIdentity")) == 1
        assert len(_by_kind(report, "RoleAssignment")) == 2
        assert len(_by_kind(report, "SecurityGroup")) == 3
        assert len(_by_kind(report, "GroupMembership")) == 2

        # principal, application, certificate
        assert sleep.calls == [30, 20, 10]

        identity = _by_kind(report, "ManagedIdentity")[0]
        principal_id = identity.properties["principalId"]
        assert len(azure.state.assignments_for(principal_id)) == 2

        infra_admin_id = report.outputs.variables["AZURE_GROUP_OBJECT_ID"]
        assert azure.graph.directory.members[infra_admin_id] == [principal_id, OPERATOR_USER_ID]

        assert report.certificate is not None
        assert report.certificate.base64_single == SIGNING_CERT
        assert report.outputs.secrets["SAML_CERT"] == SIGNING_CERT
        assert report.outputs.secrets["AZURE_CLIENT_ID"] == identity.properties["clientId"]
        assert report.outputs.secrets["AZURE_SUBSCRIPTION_ID"] == TEST_SUBSCRIPTION_ID

        client_id = report.saml.application.client_id
        assert endpoint.requests[0].url.params["appid"] == client_id
        assert TEST_TENANT_ID in str(endpoint.requests[0].url)

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(
        self, config: Config, azure: MockAzureContext, settler: Settler
    ) -> None:
        """Test that a second run creates nothing and reports AlreadyExists."""
        endpoint = MetadataEndpoint()

        async with azure:
            first = await _provisioner(config, azure, settler, endpoint).provision()
            calls_after_first = dict(azure.state.create_calls)
            graph_posts_after_first = azure.graph.count_prefix("POST", "/")
            second = await _provisioner(config, azure, settler, endpoint).provision()

        assert first.success
        assert second.success
        assert {o.status for o in second.outcomes} == {OutcomeStatus.ALREADY_EXISTS}
        assert dict(azure.state.create_calls) == calls_after_first
        assert azure.graph.count_prefix("POST", "/") == graph_posts_after_first
        assert second.saml.application.created is False
        assert (
            second.outputs.secrets["AZURE_CLIENT_ID"] == first.outputs.secrets["AZURE_CLIENT_ID"]
        )

    @pytest.mark.asyncio
    async def test_federated_credentials(
        self, config: Config, azure: MockAzureContext, settler: Settler
    ) -> None:
        spec = ProvisioningSpec.model_validate(
            {
                "federatedCredentials": [
                    {"name": "github-main", "subject": "repo:org/opencti:ref:refs/heads/main"},
                    {"name": "github-prod", "subject": "repo:org/opencti:environment:prod"},
                ]
            }
        )

        async with azure:
            report = await _provisioner(
                config, azure, settler, MetadataEndpoint(), spec
            ).provision()

        credentials = _by_kind(report, "FederatedCredential")
        assert [o.status for o in credentials] == [OutcomeStatus.CREATED] * 2
        assert azure.state.create_calls["federated_identity_credentials"] == 2

    @pytest.mark.asyncio
    async def test_app_only_session_skips_operator(
        self, config: Config, settler: Settler
    ) -> None:
        """Test that a session without a signed-in user adds only the identity."""
        azure = MockAzureContext(
            subscription_id=TEST_SUBSCRIPTION_ID,
            tenant_id=TEST_TENANT_ID,
            signed_in_user_id=None,
        )

        async with azure:
            report = await _provisioner(config, azure, settler, MetadataEndpoint()).provision()

        assert report.success
        assert len(_by_kind(report, "GroupMembership")) == 1

    @pytest.mark.asyncio
    async def test_add_signed_in_user_disabled(
        self, config: Config, azure: MockAzureContext, settler: Settler
    ) -> None:
        spec = ProvisioningSpec(add_signed_in_user=False)

        async with azure:
            report = await _provisioner(
                config, azure, settler, MetadataEndpoint(), spec
            ).provision()

        assert len(_by_kind(report, "GroupMembership")) == 1
        assert azure.graph.count("GET", "/me") == 0


class TestPartialFailure:
    """Tests for failure isolation across the sequence."""

    @pytest.mark.asyncio
    async def test_resource_group_failure_skips_dependents(
        self, config: Config, azure: MockAzureContext, settler: Settler
    ) -> None:
        """Test that dependents are skipped while independent steps still run."""
        azure.state.inject_error("resource_groups.get", make_http_error(500, "InternalServerError"))

        async with azure:
            report = await _provisioner(config, azure, settler, MetadataEndpoint()).provision()

        assert report.error is None
        assert report.partial
        assert exit_code_for(report) == EXIT_FAILURE

        assert _by_kind(report, "ResourceGroup")[0].status == OutcomeStatus.FAILED
        identity = _by_kind(report, "ManagedIdentity")[0]
        assert identity.status == OutcomeStatus.FAILED
        assert "Skipped" in (identity.failure_detail or "")
        assert all(o.status == OutcomeStatus.FAILED for o in _by_kind(report, "RoleAssignment"))
        assert azure.state.create_calls["user_assigned_identities"] == 0
        assert azure.state.create_calls["role_assignments"] == 0

        assert [o.status for o in _by_kind(report, "SecurityGroup")] == [
            OutcomeStatus.CREATED
        ] * 3
        assert report.saml is not None
        assert report.certificate is not None
        assert "AZURE_CLIENT_ID" not in report.outputs.secrets
        assert any(w.source.startswith("ResourceGroup:") for w in report.warnings)

    @pytest.mark.asyncio
    async def test_saml_resolution_failure_is_fatal(
        self, config: Config, azure: MockAzureContext, settler: Settler
    ) -> None:
        azure.graph.fail("POST", r"^/applicationTemplates/", 403, "Authorization_RequestDenied")
        endpoint = MetadataEndpoint()

        async with azure:
            report = await _provisioner(config, azure, settler, endpoint).provision()

        assert report.error is not None
        assert not report.success
        assert not report.partial
        assert report.saml is None
        assert report.outputs is None
        assert endpoint.requests == []
        assert "error" in report.to_dict()

    @pytest.mark.asyncio
    async def test_saml_step_failure_is_itemized(
        self, config: Config, azure: MockAzureContext, settler: Settler
    ) -> None:
        azure.graph.fail("PATCH", r"^/servicePrincipals/", 403, "Authorization_RequestDenied")

        async with azure:
            report = await _provisioner(config, azure, settler, MetadataEndpoint()).provision()

        assert report.partial
        assert [o.natural_key for o in report.failed_outcomes] == ["sso-mode"]
        assert any(w.source == "saml:sso-mode" and w.remediation for w in report.warnings)

    @pytest.mark.asyncio
    async def test_certificate_failure_is_soft(
        self, config: Config, azure: MockAzureContext, settler: Settler
    ) -> None:
        """Test that an HTML metadata response becomes a warning, not an error."""
        endpoint = MetadataEndpoint(
            body=b"<!DOCTYPE html><html><body>Sign in</body></html>", content_type="text/html"
        )
        fallback = AsyncMock(
            side_effect=MetadataExtractionError(MetadataFailureKind.TRANSPORT, "pipeline: reset")
        )

        async with azure:
            provisioner = _provisioner(config, azure, settler, endpoint)
            with patch.object(FederationMetadataExtractor, "_fetch_fallback", fallback):
                report = await provisioner.provision()

        assert report.error is None
        assert report.certificate is None
        assert not report.success
        assert "SAML_CERT" not in report.outputs.secrets
        sources = [w.source for w in report.warnings]
        assert "certificate:authz-suspected" in sources
        assert "outputs" in sources

    @pytest.mark.asyncio
    async def test_expired_graph_token_still_reports(
        self, config: Config, azure: MockAzureContext, settler: Settler
    ) -> None:
        """Test that a token refresh failure yields a report instead of an exception."""
        endpoint = MetadataEndpoint()

        async with azure:
            provisioner = _provisioner(config, azure, settler, endpoint)
            azure.credential.set_failure(True, "AADSTS700082: refresh token expired")
            report = await provisioner.provision()

        assert _by_kind(report, "ResourceGroup")[0].status == OutcomeStatus.CREATED
        groups = _by_kind(report, "SecurityGroup")
        assert [o.status for o in groups] == [OutcomeStatus.FAILED] * 3
        assert "AADSTS700082" in (groups[0].failure_detail or "")
        assert report.error is not None
        assert report.saml is None
        assert endpoint.requests == []


class TestReport:
    """Tests for report serialization."""

    @pytest.mark.asyncio
    async def test_to_dict_redacts_secrets(
        self, config: Config, azure: MockAzureContext, settler: Settler
    ) -> None:
        async with azure:
            report = await _provisioner(config, azure, settler, MetadataEndpoint()).provision()

        data = report.to_dict()

        assert data["success"] is True
        assert data["saml"]["created"] is True
        assert data["certificate"]["pem"].startswith("-----BEGIN CERTIFICATE-----\n")
        assert set(data["outputs"]["secrets"].values()) == {"***"}
        assert data["startTime"].endswith("Z")
        assert data["durationSeconds"] >= 0
