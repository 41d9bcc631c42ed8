"""Pydantic models shared across AEGES components."""

from aeges.schemas.assessment import (
    ConsensusResult,
    ProviderVerdict,
    RecommendedAction,
    RiskAssessment,
    ThreatLevel,
)
from aeges.schemas.containment import (
    Containment,
    ContainmentState,
    ContainmentStatus,
    EconomicState,
    PropagationRecord,
    PropagationStatus,
    RecoveryProtocol,
)
from aeges.schemas.events import Event, EventKind
from aeges.schemas.recovery import (
    CheckStatus,
    RecoveryRequest,
    RecoveryStatus,
    VerificationCheck,
)
from aeges.schemas.transaction import AccountHistory, TransactionRecord

__all__ = [
    "AccountHistory",
    "CheckStatus",
    "ConsensusResult",
    "Containment",
    "ContainmentState",
    "ContainmentStatus",
    "EconomicState",
    "Event",
    "EventKind",
    "PropagationRecord",
    "PropagationStatus",
    "ProviderVerdict",
    "RecommendedAction",
    "RecoveryProtocol",
    "RecoveryRequest",
    "RecoveryStatus",
    "RiskAssessment",
    "ThreatLevel",
    "TransactionRecord",
    "VerificationCheck",
]
