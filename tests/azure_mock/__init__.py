"""Azure API Mock for Integration Testing.

In-memory implementations of the Azure Resource Manager clients and of
Microsoft Graph that enable integration testing without Azure connectivity.

Key Features:
- In-memory state for resource groups, identities, federated credentials
  and role assignments
- Create-call counters for idempotence assertions
- Error injection per ARM operation and per Graph route
- Microsoft Graph served through httpx.MockTransport
- Fake Azure CLI credential issuing tenant-bearing tokens

Usage:
    from azure_mock import MockAzureContext

    async with MockAzureContext() as ctx:
        provisioner = BootstrapProvisioner(config, spec, ctx.session, settler=settler)
        report = await provisioner.provision()

        assert ctx.state.create_calls["resource_groups"] == 1
"""

from .context import DEFAULT_SUBSCRIPTION_ID, OPERATOR_USER_ID, MockAzureContext
from .credential import DEFAULT_TENANT_ID, MockCliCredential, create_mock_credential, make_token
from .graph import MockGraphApi
from .resources import MockResourceState, make_http_error

__all__ = [
    "DEFAULT_SUBSCRIPTION_ID",
    "DEFAULT_TENANT_ID",
    "OPERATOR_USER_ID",
    "MockAzureContext",
    "MockCliCredential",
    "MockGraphApi",
    "MockResourceState",
    "create_mock_credential",
    "make_http_error",
    "make_token",
]
