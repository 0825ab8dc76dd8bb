"""Explicit Azure session passed to every component.

Bundles the credential and the provider clients so components receive
their dependencies through their constructors instead of reaching into
ambient global state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from azure.core.credentials import TokenCredential
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.msi import ManagedServiceIdentityClient
from azure.mgmt.resource import ResourceManagementClient

from .graph import GraphClient


@dataclass
class AzureSession:
    """Authenticated clients for one subscription and tenant."""

    credential: TokenCredential
    subscription_id: str
    tenant_id: str
    resources: Any  # ResourceManagementClient
    identities: Any  # ManagedServiceIdentityClient
    authorization: Any  # AuthorizationManagementClient
    graph: GraphClient

    @classmethod
    def create(
        cls,
        credential: TokenCredential,
        subscription_id: str,
        tenant_id: str,
    ) -> AzureSession:
        return cls(
            credential=credential,
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            resources=ResourceManagementClient(
                credential=credential, subscription_id=subscription_id
            ),
            identities=ManagedServiceIdentityClient(
                credential=credential, subscription_id=subscription_id
            ),
            authorization=AuthorizationManagementClient(
                credential=credential, subscription_id=subscription_id
            ),
            graph=GraphClient(credential),
        )

    async def close(self) -> None:
        await self.graph.aclose()
        for client in (self.resources, self.identities, self.authorization):
            close = getattr(client, "close", None)
            if callable(close):
                close()
