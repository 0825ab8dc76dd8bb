"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import MockAzureContext  # noqa: E402

from provisioner.config import Config, SettleConfig  # noqa: E402
from provisioner.settle import Settler  # noqa: E402

TEST_SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
TEST_TENANT_ID = "11111111-2222-3333-4444-555555555555"


class RecordingSleep:
    """Sleep replacement that records requested durations and returns at once."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def settler(sleep: RecordingSleep) -> Settler:
    return Settler(SettleConfig(), sleep=sleep)


@pytest.fixture
def config() -> Config:
    return Config(
        subscription_id=TEST_SUBSCRIPTION_ID,
        tenant_id=TEST_TENANT_ID,
        location="westeurope",
        resource_group_name="rg-opencti-001",
        base_url="https://cti.example.com",
        notification_email="secops@example.com",
        aks_cluster_name="aks-opencti",
        acr_name="acropencti",
    )


@pytest.fixture
def azure() -> MockAzureContext:
    return MockAzureContext(subscription_id=TEST_SUBSCRIPTION_ID, tenant_id=TEST_TENANT_ID)
