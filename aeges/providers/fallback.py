"""
Fallback provider: heuristic verdict with no external call.

Always available, so the sequential chain always terminates with a result.
Same transaction in, same verdict out.
"""

from typing import Optional

from aeges.config import settings
from aeges.engine.risk_engine import RiskAssessmentEngine
from aeges.providers.base import ProviderAdapter, ProviderHealth, ProviderKind
from aeges.schemas.assessment import ProviderVerdict, ThreatLevel
from aeges.schemas.transaction import TransactionRecord

RECOMMENDATIONS: dict[ThreatLevel, list[str]] = {
    ThreatLevel.CRITICAL: ["contain_immediately", "notify_network", "open_investigation"],
    ThreatLevel.HIGH: ["contain", "manual_review"],
    ThreatLevel.MEDIUM: ["enhanced_monitoring"],
    ThreatLevel.LOW: ["standard_processing"],
}


class FallbackProvider(ProviderAdapter):
    kind = ProviderKind.FALLBACK

    def __init__(
        self,
        engine: Optional[RiskAssessmentEngine] = None,
        confidence: Optional[float] = None,
    ):
        self.engine = engine or RiskAssessmentEngine()
        self.confidence = settings.fallback_confidence if confidence is None else confidence

    async def analyze(
        self, tx: TransactionRecord, prompt: str, timeout: float
    ) -> ProviderVerdict:
        risk = self.engine.compute_base_risk(tx)
        level = self.engine.classify_threat_level(risk)
        return ProviderVerdict(
            provider=self.name,
            risk_score=risk,
            confidence=self.confidence,
            pattern=self.engine.dominant_pattern(self.engine.detect_patterns(tx)),
            recommendations=list(RECOMMENDATIONS[level]),
        )

    async def health_check(self) -> ProviderHealth:
        return ProviderHealth(provider=self.name, healthy=True, latency_ms=0.0, model="heuristic")
