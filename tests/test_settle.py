"""Tests for settle periods and retry backoff."""

from __future__ import annotations

import pytest
from conftest import RecordingSleep

from provisioner.config import SettleConfig
from provisioner.settle import MAX_BACKOFF_SECONDS, Settler


class TestSettler:
    """Tests for Settler."""

    @pytest.mark.asyncio
    async def test_named_settle_periods(self, sleep: RecordingSleep) -> None:
        """Test that each settle hook waits its configured period."""
        settler = Settler(
            SettleConfig(principal_seconds=30, application_seconds=20, certificate_seconds=10),
            sleep=sleep,
        )

        await settler.after_principal_created("id-opencti-deploy")
        await settler.after_application_created("opencti-saml")
        await settler.after_certificate_added("opencti-saml")

        assert sleep.calls == [30, 20, 10]
        assert [reason for reason, _ in settler.waits] == [
            "principal 'id-opencti-deploy'",
            "application 'opencti-saml'",
            "signing certificate of 'opencti-saml'",
        ]

    @pytest.mark.asyncio
    async def test_zero_period_does_not_sleep(self, sleep: RecordingSleep) -> None:
        settler = Settler(SettleConfig(principal_seconds=0), sleep=sleep)

        await settler.after_principal_created("id")

        assert sleep.calls == []
        assert settler.waits == []

    def test_backoff_is_exponential(self) -> None:
        settler = Settler(SettleConfig(backoff_base_seconds=5))

        assert [settler.backoff_seconds(a) for a in range(4)] == [5, 10, 20, 40]

    def test_backoff_is_bounded(self) -> None:
        settler = Settler(SettleConfig(backoff_base_seconds=5))

        assert settler.backoff_seconds(20) == MAX_BACKOFF_SECONDS

    @pytest.mark.asyncio
    async def test_backoff_sleeps(self, sleep: RecordingSleep) -> None:
        settler = Settler(SettleConfig(backoff_base_seconds=2), sleep=sleep)

        await settler.backoff("principal p", 1)

        assert sleep.calls == [4]

    def test_max_retries_from_config(self) -> None:
        assert Settler(SettleConfig(max_grant_retries=7)).max_retries == 7
