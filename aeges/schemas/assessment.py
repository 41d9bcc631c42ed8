"""
Assessment Schemas: verdicts, consensus, and the final risk assessment.

A RiskAssessment is created once per analysis and never mutated.
ProviderVerdicts only exist while the aggregator runs.
"""

from datetime import datetime
from enum import StrEnum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ThreatLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _THREAT_RANK[self]


_THREAT_RANK = {
    ThreatLevel.LOW: 0,
    ThreatLevel.MEDIUM: 1,
    ThreatLevel.HIGH: 2,
    ThreatLevel.CRITICAL: 3,
}


class RecommendedAction(StrEnum):
    ALLOW = "allow"
    MONITOR = "monitor"
    CONTAIN = "contain"


class ProviderVerdict(BaseModel):
    """One backend's risk judgment for a transaction."""
    model_config = ConfigDict(frozen=True)

    provider: str
    confidence: float = Field(ge=0.0, le=1.0)
    risk_score: float = Field(ge=0.0, le=1.0)
    pattern: str = "normal"
    recommendations: list[str] = Field(default_factory=list)


class ConsensusResult(BaseModel):
    """Merged verdict from one or more providers."""
    model_config = ConfigDict(frozen=True)

    risk_score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    pattern: str
    agreement: bool
    agreement_ratio: float = Field(ge=0.0, le=1.0)
    providers: list[str]
    recommendations: list[str] = Field(default_factory=list)
    mode: Literal["fallback", "parallel"] = "parallel"


class RiskAssessment(BaseModel):
    """
    Complete, immutable outcome of one analysis.

    behavioral_score is the base heuristic merged with the provider consensus.
    """
    model_config = ConfigDict(frozen=True)

    analysis_id: str
    transaction_id: str
    threat_level: ThreatLevel
    behavioral_score: float = Field(ge=0.0, le=1.0)
    base_score: float = Field(ge=0.0, le=1.0)
    pattern_matches: frozenset[str] = frozenset()
    velocity_anomaly: bool = False
    providers: list[str] = Field(default_factory=list)
    consensus: Optional[ConsensusResult] = None
    recommended_action: RecommendedAction
    created_at: datetime
    processing_time_ms: float = 0.0
