"""
Recovery Schemas.

A RecoveryRequest is a claim against an ACTIVE containment. It reaches
``approved`` only when every verification check is completed and the
stakeholder threshold is met before the deadline.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class VerificationCheck(StrEnum):
    IDENTITY = "identity"
    OWNERSHIP = "ownership"
    LEGITIMACY = "legitimacy"


class CheckStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CheckStatus.COMPLETED, CheckStatus.FAILED)


class RecoveryStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self != RecoveryStatus.PENDING


def _initial_checks() -> dict[VerificationCheck, CheckStatus]:
    return {check: CheckStatus.PENDING for check in VerificationCheck}


class RecoveryRequest(BaseModel):
    """A claim seeking release of a contained asset."""
    recovery_id: str
    containment_id: str
    claimant: str
    evidence: dict[str, Any] = Field(default_factory=dict)
    checks: dict[VerificationCheck, CheckStatus] = Field(default_factory=_initial_checks)
    stakeholders: list[str]
    required_approvals: int = Field(ge=1)
    approvals: list[str] = Field(default_factory=list)
    deadline: datetime
    status: RecoveryStatus = RecoveryStatus.PENDING
    initiated_at: datetime
    closed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    @property
    def verification_complete(self) -> bool:
        return all(s == CheckStatus.COMPLETED for s in self.checks.values())

    @property
    def verification_failed(self) -> bool:
        return any(s == CheckStatus.FAILED for s in self.checks.values())

    @property
    def approvals_met(self) -> bool:
        return len(self.approvals) >= self.required_approvals
