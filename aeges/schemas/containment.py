"""
Containment Schemas.

A Containment is created only by a ``contain`` decision and mutated only by
its owning state machine. ContainmentStatus is the read-only projection
handed to callers.
"""

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from aeges.schemas.assessment import ThreatLevel


class EconomicState(StrEnum):
    FROZEN = "frozen"
    QUARANTINED = "quarantined"
    NEUTRALIZED = "neutralized"

    @property
    def rank(self) -> int:
        return _ECONOMIC_RANK[self]


_ECONOMIC_RANK = {
    EconomicState.FROZEN: 0,
    EconomicState.QUARANTINED: 1,
    EconomicState.NEUTRALIZED: 2,
}

# Economic value reported once nothing is held
NORMAL_ECONOMIC_VALUE = "normal"


class ContainmentState(StrEnum):
    ACTIVE = "active"
    RECOVERY_PENDING = "recovery_pending"
    RECOVERED = "recovered"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (ContainmentState.RECOVERED, ContainmentState.EXPIRED)


class PropagationStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PropagationRecord(BaseModel):
    """What the network was told about a containment."""
    status: PropagationStatus = PropagationStatus.PENDING
    participants_notified: int = 0
    participants_total: int = 0
    coverage_percentage: float = 0.0
    propagation_time_ms: float = 0.0


class RecoveryProtocol(BaseModel):
    """Release requirements fixed at containment time."""
    model_config = ConfigDict(frozen=True)

    stakeholders: list[str]
    required_approvals: int = Field(ge=1)
    resolution_window: timedelta
    required_evidence: list[str] = Field(
        default_factory=lambda: [
            "identity_verification",
            "asset_ownership",
            "transaction_legitimacy",
        ]
    )
    consensus_required: bool = True


class Containment(BaseModel):
    """Quarantine record for a transaction judged high or critical risk."""
    containment_id: str
    analysis_id: str
    transaction_id: str
    wallet_address: str
    severity: ThreatLevel
    economic_state: EconomicState
    reason: str
    amount: float
    status: ContainmentState = ContainmentState.ACTIVE
    propagation: PropagationRecord = Field(default_factory=PropagationRecord)
    recovery_protocol: RecoveryProtocol
    activated_at: datetime
    expires_at: datetime
    closed_at: Optional[datetime] = None
    restored_value: Optional[float] = None
    active_recovery_id: Optional[str] = None


class ContainmentStatus(BaseModel):
    """Status projection returned by status queries."""
    model_config = ConfigDict(frozen=True)

    containment_active: bool
    containment_id: Optional[str] = None
    status: Optional[ContainmentState] = None
    economic_value: str = NORMAL_ECONOMIC_VALUE
    expires_at: Optional[datetime] = None
    release_requirements: Optional[RecoveryProtocol] = None
    investigation_status: Optional[str] = None
    restored_value: Optional[float] = None
    message: str = ""
