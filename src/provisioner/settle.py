"""Settle periods and bounded retry for Entra ID eventual consistency.

Newly created principals, applications and certificates are not visible to
dependent operations immediately. Callers insert a fixed settle period after
the mutating call (create -> wait -> depend), and role grants additionally
retry a "principal not found" rejection with bounded exponential backoff.

Sleeping is injectable so that tests assert on call counts, never on wall
clock duration.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .config import SettleConfig

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

# Upper bound on a single backoff interval
MAX_BACKOFF_SECONDS = 120.0


@dataclass
class Settler:
    """Applies settle delays and backoff intervals.

    Records every wait in ``waits`` as (reason, seconds) for reporting.
    """

    config: SettleConfig = field(default_factory=SettleConfig)
    sleep: SleepFunc = asyncio.sleep
    waits: list[tuple[str, float]] = field(default_factory=list)

    async def wait(self, reason: str, seconds: float) -> None:
        """Wait a fixed settle period."""
        if seconds <= 0:
            return
        logger.info(
            f"Waiting {seconds:.0f}s for {reason} to propagate...",
            extra={"settle_reason": reason, "settle_seconds": seconds},
        )
        self.waits.append((reason, seconds))
        await self.sleep(seconds)

    async def after_principal_created(self, name: str) -> None:
        await self.wait(f"principal '{name}'", self.config.principal_seconds)

    async def after_application_created(self, name: str) -> None:
        await self.wait(f"application '{name}'", self.config.application_seconds)

    async def after_certificate_added(self, name: str) -> None:
        await self.wait(f"signing certificate of '{name}'", self.config.certificate_seconds)

    def backoff_seconds(self, attempt: int) -> float:
        """Exponential backoff interval for a zero-based retry attempt."""
        delay = self.config.backoff_base_seconds * (2**attempt)
        return min(delay, MAX_BACKOFF_SECONDS)

    async def backoff(self, reason: str, attempt: int) -> None:
        await self.wait(reason, self.backoff_seconds(attempt))

    @property
    def max_retries(self) -> int:
        return self.config.max_grant_retries
