"""Tests for idempotent RBAC role grants."""

from __future__ import annotations

import pytest
from azure.core.exceptions import ResourceExistsError
from azure_mock import MockAzureContext, make_http_error
from conftest import RecordingSleep

from provisioner.outcomes import OutcomeStatus
from provisioner.rbac import BUILTIN_ROLES, RoleAssignmentGranter, assignment_name
from provisioner.settle import Settler

PRINCIPAL_ID = "aaaaaaaa-0000-0000-0000-000000000001"


def _granter(azure: MockAzureContext, settler: Settler) -> RoleAssignmentGranter:
    return RoleAssignmentGranter(azure.session.authorization, azure.subscription_id, settler)


def _rg_scope(azure: MockAzureContext) -> str:
    return f"{azure.resource_group_scope}/rg-opencti-001"


class TestAssignmentName:
    """Tests for deterministic assignment names."""

    def test_stable(self) -> None:
        a = assignment_name(PRINCIPAL_ID, "/roleDefinitions/x", "/subscriptions/s/resourceGroups/rg")
        b = assignment_name(PRINCIPAL_ID, "/roleDefinitions/x", "/subscriptions/s/resourceGroups/rg")

        assert a == b

    def test_scope_case_insensitive(self) -> None:
        a = assignment_name(PRINCIPAL_ID, "/roleDefinitions/x", "/subscriptions/s/resourceGroups/RG")
        b = assignment_name(PRINCIPAL_ID, "/roleDefinitions/x", "/subscriptions/s/resourceGroups/rg")

        assert a == b

    def test_differs_per_role(self) -> None:
        scope = "/subscriptions/s"

        assert assignment_name(PRINCIPAL_ID, "/r/a", scope) != assignment_name(
            PRINCIPAL_ID, "/r/b", scope
        )


class TestRoleDefinitionResolution:
    """Tests for resolving role names to definition IDs."""

    def test_builtin_role(self, azure: MockAzureContext, settler: Settler) -> None:
        definition_id = _granter(azure, settler).role_definition_id(_rg_scope(azure), "Contributor")

        assert definition_id.endswith(BUILTIN_ROLES["Contributor"])
        assert definition_id.startswith(f"/subscriptions/{azure.subscription_id}/providers/")

    def test_custom_role_looked_up(self, azure: MockAzureContext, settler: Settler) -> None:
        custom = azure.state.add_role_definition("OpenCTI Operator")

        definition_id = _granter(azure, settler).role_definition_id(
            _rg_scope(azure), "OpenCTI Operator"
        )

        assert definition_id.endswith(custom.name)

    def test_guid_accepted(self, azure: MockAzureContext, settler: Settler) -> None:
        guid = "12345678-ABCD-1234-ABCD-123456789012"

        definition_id = _granter(azure, settler).role_definition_id(_rg_scope(azure), guid)

        assert definition_id.endswith(guid.lower())

    def test_unknown_role(self, azure: MockAzureContext, settler: Settler) -> None:
        with pytest.raises(ValueError) as exc_info:
            _granter(azure, settler).role_definition_id(_rg_scope(azure), "Wizard")

        assert "not a built-in role" in str(exc_info.value)


class TestGrantRole:
    """Tests for RoleAssignmentGranter.grant_role."""

    @pytest.mark.asyncio
    async def test_grant_is_idempotent(self, azure: MockAzureContext, settler: Settler) -> None:
        """Test that a second grant finds the first and makes no create call."""
        async with azure:
            granter = _granter(azure, settler)
            scope = _rg_scope(azure)

            first = await granter.grant_role(PRINCIPAL_ID, scope, "Contributor")
            second = await granter.grant_role(PRINCIPAL_ID, scope, "Contributor")

        assert first.status == OutcomeStatus.CREATED
        assert second.status == OutcomeStatus.ALREADY_EXISTS
        assert second.reference == first.reference
        assert azure.state.create_calls["role_assignments"] == 1
        assert len(azure.state.assignments_for(PRINCIPAL_ID)) == 1

    @pytest.mark.asyncio
    async def test_principal_not_found_is_retried(
        self, azure: MockAzureContext, settler: Settler, sleep: RecordingSleep
    ) -> None:
        """Test that an unreplicated principal is retried with backoff."""
        azure.state.inject_error(
            "role_assignments.create", make_http_error(400, "PrincipalNotFound"), times=2
        )

        async with azure:
            outcome = await _granter(azure, settler).grant_role(
                PRINCIPAL_ID, _rg_scope(azure), "Contributor"
            )

        assert outcome.status == OutcomeStatus.CREATED
        assert azure.state.create_calls["role_assignments"] == 3
        assert sleep.calls == [5, 10]

    @pytest.mark.asyncio
    async def test_retries_are_bounded(
        self, azure: MockAzureContext, settler: Settler, sleep: RecordingSleep
    ) -> None:
        """Test that retries stop after the configured maximum."""
        azure.state.inject_error(
            "role_assignments.create", make_http_error(400, "PrincipalNotFound"), times=10
        )

        async with azure:
            outcome = await _granter(azure, settler).grant_role(
                PRINCIPAL_ID, _rg_scope(azure), "Contributor"
            )

        assert outcome.status == OutcomeStatus.FAILED
        assert azure.state.create_calls["role_assignments"] == 4
        assert sleep.calls == [5, 10, 20]
        assert "az role assignment create" in (outcome.remediation or "")
        assert PRINCIPAL_ID in (outcome.remediation or "")

    @pytest.mark.asyncio
    async def test_conflict_is_already_exists(
        self, azure: MockAzureContext, settler: Settler
    ) -> None:
        """Test that a 409 on create is reported as AlreadyExists."""
        azure.state.inject_error(
            "role_assignments.create",
            make_http_error(409, "RoleAssignmentExists", error_class=ResourceExistsError),
        )

        async with azure:
            outcome = await _granter(azure, settler).grant_role(
                PRINCIPAL_ID, _rg_scope(azure), "Contributor"
            )

        assert outcome.status == OutcomeStatus.ALREADY_EXISTS
        assert outcome.success

    @pytest.mark.asyncio
    async def test_authorization_failure(self, azure: MockAzureContext, settler: Settler) -> None:
        """Test that a non-retryable error fails with remediation and no retry."""
        azure.state.inject_error(
            "role_assignments.create", make_http_error(403, "AuthorizationFailed")
        )

        async with azure:
            outcome = await _granter(azure, settler).grant_role(
                PRINCIPAL_ID, _rg_scope(azure), "User Access Administrator"
            )

        assert outcome.status == OutcomeStatus.FAILED
        assert "403" in (outcome.failure_detail or "")
        assert azure.state.create_calls["role_assignments"] == 1

    @pytest.mark.asyncio
    async def test_query_failure(self, azure: MockAzureContext, settler: Settler) -> None:
        azure.state.inject_error(
            "role_assignments.list_for_scope", make_http_error(500, "InternalServerError")
        )

        async with azure:
            outcome = await _granter(azure, settler).grant_role(
                PRINCIPAL_ID, _rg_scope(azure), "Contributor"
            )

        assert outcome.status == OutcomeStatus.FAILED
        assert azure.state.create_calls["role_assignments"] == 0

    @pytest.mark.asyncio
    async def test_inherited_assignment_does_not_count(
        self, azure: MockAzureContext, settler: Settler
    ) -> None:
        """Test that an assignment at a parent scope does not satisfy a narrower one."""
        subscription_scope = f"/subscriptions/{azure.subscription_id}"

        async with azure:
            granter = _granter(azure, settler)
            await granter.grant_role(PRINCIPAL_ID, subscription_scope, "Contributor")
            outcome = await granter.grant_role(PRINCIPAL_ID, _rg_scope(azure), "Contributor")

        assert outcome.status == OutcomeStatus.CREATED
        assert azure.state.create_calls["role_assignments"] == 2

    @pytest.mark.asyncio
    async def test_unknown_role_fails(self, azure: MockAzureContext, settler: Settler) -> None:
        async with azure:
            outcome = await _granter(azure, settler).grant_role(
                PRINCIPAL_ID, _rg_scope(azure), "Wizard"
            )

        assert outcome.status == OutcomeStatus.FAILED
        assert azure.state.create_calls["role_assignments"] == 0
