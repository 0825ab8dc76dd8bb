"""Result types returned by every reconciliation and configuration step.

Outcomes are produced once per call and never persisted. The caller decides
whether to proceed, retry or abort from the status alone; the bootstrap
provisioner aggregates them into a single report.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class OutcomeStatus(str, Enum):
    """Status of a single reconcile or configure call."""

    CREATED = "Created"
    ALREADY_EXISTS = "AlreadyExists"
    UPDATED = "Updated"
    FAILED = "Failed"


@dataclass
class ReconciliationOutcome:
    """Result of ensuring one resource (or one configuration step).

    ``reference`` is the opaque external identifier (ARM resource ID or
    Graph object ID). ``properties`` carries identifiers that later steps
    depend on, such as a principal ID or client ID.
    """

    kind: str
    natural_key: str
    status: OutcomeStatus
    reference: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    failure_detail: str | None = None
    remediation: str | None = None

    @property
    def success(self) -> bool:
        return self.status != OutcomeStatus.FAILED

    @property
    def created(self) -> bool:
        return self.status == OutcomeStatus.CREATED

    @classmethod
    def failed(
        cls,
        kind: str,
        natural_key: str,
        detail: str,
        remediation: str | None = None,
    ) -> ReconciliationOutcome:
        return cls(
            kind=kind,
            natural_key=natural_key,
            status=OutcomeStatus.FAILED,
            failure_detail=detail,
            remediation=remediation,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind,
            "naturalKey": self.natural_key,
            "status": self.status.value,
        }
        if self.reference:
            data["reference"] = self.reference
        if self.properties:
            data["properties"] = dict(self.properties)
        if self.failure_detail:
            data["failureDetail"] = self.failure_detail
        if self.remediation:
            data["remediation"] = self.remediation
        return data
