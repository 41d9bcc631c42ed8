"""
Behavioural Risk Engine: deterministic heuristics for a single transaction.

This is the non-AI half of every assessment. It:
1. Computes a base risk from amount tiers, account age and history depth
2. Tags matched behavioural patterns (flash drain, new account, ...)
3. Flags velocity anomalies against the account's historical average
4. Merges a provider consensus into the base score (AI weight ≤ 40%)
5. Classifies the merged score into a threat level
6. Maps the threat level onto an action via an overridable policy

Every function here is pure. Same transaction in, same numbers out.
"""

from dataclasses import dataclass
from typing import Mapping, Optional

import structlog

from aeges.config import settings
from aeges.exceptions import ValidationError
from aeges.schemas.assessment import ConsensusResult, RecommendedAction, ThreatLevel
from aeges.schemas.transaction import TransactionRecord

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

BASE_RISK_FLOOR: float = 0.1
BASE_RISK_CEILING: float = 0.95

# (exclusive lower bound, increment), first match wins
AMOUNT_TIERS: tuple[tuple[float, float], ...] = (
    (1_000_000.0, 0.3),
    (100_000.0, 0.2),
    (10_000.0, 0.1),
)
# (exclusive upper bound in days, increment)
ACCOUNT_AGE_TIERS: tuple[tuple[float, float], ...] = (
    (7.0, 0.4),
    (30.0, 0.2),
)
NO_HISTORY_INCREMENT: float = 0.3
THIN_HISTORY_INCREMENT: float = 0.2
THIN_HISTORY_MAX_TRANSACTIONS: int = 5

FLASH_DRAIN_MIN_AMOUNT: float = 500_000.0
FLASH_DRAIN_MAX_AGE_DAYS: float = 7.0
NEW_ACCOUNT_MAX_AGE_DAYS: float = 1.0
LARGE_AMOUNT_THRESHOLD: float = 1_000_000.0
DEFAULT_ACCOUNT_AGE_DAYS: float = 365.0

# Known threat patterns and their intrinsic risk
THREAT_PATTERNS: dict[str, float] = {
    "flash_drain": 0.95,
    "rug_pull": 0.90,
    "pump_dump": 0.85,
    "wash_trading": 0.75,
    "large_amount": 0.70,
    "high_velocity": 0.65,
    "new_account": 0.60,
}

DEFAULT_ACTION_POLICY: dict[ThreatLevel, RecommendedAction] = {
    ThreatLevel.CRITICAL: RecommendedAction.CONTAIN,
    ThreatLevel.HIGH: RecommendedAction.CONTAIN,
    ThreatLevel.MEDIUM: RecommendedAction.MONITOR,
    ThreatLevel.LOW: RecommendedAction.ALLOW,
}


@dataclass(frozen=True)
class ThreatThresholds:
    """
    Lower bounds (inclusive) of each threat band.

    low = [0, medium), medium = [medium, high), high = [high, critical),
    critical = [critical, 1].
    """
    medium: float = 0.4
    high: float = 0.6
    critical: float = 0.8

    def __post_init__(self):
        if not 0.0 < self.medium < self.high < self.critical <= 1.0:
            raise ValidationError(
                "Threat thresholds must satisfy 0 < medium < high < critical <= 1",
                details={"medium": self.medium, "high": self.high, "critical": self.critical},
            )


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))


class RiskAssessmentEngine:
    """
    Heuristic risk scoring and threat classification.

    Thresholds, AI weight and action policy are configuration, not constants.
    """

    def __init__(
        self,
        thresholds: Optional[ThreatThresholds] = None,
        max_ai_weight: Optional[float] = None,
        velocity_multiple: Optional[float] = None,
        velocity_max_account_age_days: Optional[float] = None,
        action_policy: Optional[Mapping[ThreatLevel, RecommendedAction]] = None,
    ):
        self.thresholds = thresholds or ThreatThresholds(
            medium=settings.threshold_medium,
            high=settings.threshold_high,
            critical=settings.threshold_critical,
        )
        self.max_ai_weight = settings.max_ai_weight if max_ai_weight is None else max_ai_weight
        self.velocity_multiple = (
            settings.velocity_multiple if velocity_multiple is None else velocity_multiple
        )
        self.velocity_max_account_age_days = (
            settings.velocity_max_account_age_days
            if velocity_max_account_age_days is None
            else velocity_max_account_age_days
        )
        policy = dict(DEFAULT_ACTION_POLICY)
        if action_policy:
            policy.update(action_policy)
        missing = [level for level in ThreatLevel if level not in policy]
        if missing:
            raise ValidationError(
                "Action policy must cover every threat level",
                details={"missing": [str(m) for m in missing]},
            )
        self.action_policy = policy

    # ── Base score ───────────────────────────────────────────────────────

    def compute_base_risk(self, tx: TransactionRecord) -> float:
        """
        Deterministic base risk in [0.1, 0.95].

        Unknown account age adds nothing; unknown history counts as none.
        """
        risk = BASE_RISK_FLOOR

        for bound, increment in AMOUNT_TIERS:
            if tx.amount > bound:
                risk += increment
                break

        age = tx.history.account_age_days
        if age is not None:
            for bound, increment in ACCOUNT_AGE_TIERS:
                if age < bound:
                    risk += increment
                    break

        tx_count = tx.history.previous_transactions or 0
        if tx_count == 0:
            risk += NO_HISTORY_INCREMENT
        elif tx_count < THIN_HISTORY_MAX_TRANSACTIONS:
            risk += THIN_HISTORY_INCREMENT

        return clamp(risk, BASE_RISK_FLOOR, BASE_RISK_CEILING)

    # ── Patterns ─────────────────────────────────────────────────────────

    def detect_patterns(self, tx: TransactionRecord) -> frozenset[str]:
        """Rule-based pattern tags. Order-independent set result."""
        age = tx.history.account_age_days
        matches: set[str] = set()

        if (
            tx.amount > FLASH_DRAIN_MIN_AMOUNT
            and age is not None
            and age < FLASH_DRAIN_MAX_AGE_DAYS
        ):
            matches.add("flash_drain")

        if tx.network_metadata.get("gas_price") == "high" or self.check_velocity_anomaly(tx):
            matches.add("high_velocity")

        if age is not None and age < NEW_ACCOUNT_MAX_AGE_DAYS:
            matches.add("new_account")

        if tx.amount > LARGE_AMOUNT_THRESHOLD:
            matches.add("large_amount")

        return frozenset(matches)

    def check_velocity_anomaly(self, tx: TransactionRecord) -> bool:
        """
        True when the amount dwarfs the historical average on a young account.

        Average = total_volume / previous_transactions; with no usable history
        the current amount stands in for the average.
        """
        history = tx.history
        age = history.account_age_days
        if age is None:
            age = DEFAULT_ACCOUNT_AGE_DAYS

        if history.total_volume and history.previous_transactions:
            average = history.total_volume / history.previous_transactions
        else:
            average = tx.amount

        return tx.amount > average * self.velocity_multiple and age < self.velocity_max_account_age_days

    @staticmethod
    def dominant_pattern(patterns: frozenset[str]) -> str:
        """Highest-risk known pattern, alphabetical on ties; ``normal`` if none."""
        known = [p for p in patterns if p in THREAT_PATTERNS]
        if not known:
            return "normal"
        return max(sorted(known), key=lambda p: THREAT_PATTERNS[p])

    # ── Merge + classify ─────────────────────────────────────────────────

    def integrate_consensus(
        self, base: float, consensus: Optional[ConsensusResult]
    ) -> float:
        """
        Blend the heuristic score with the provider consensus.

        Formula:
          w = consensus.confidence × max_ai_weight
          final = base × (1 − w) + consensus.risk × w
        """
        if consensus is None:
            return clamp(base)
        weight = consensus.confidence * self.max_ai_weight
        return clamp(base * (1.0 - weight) + consensus.risk_score * weight)

    def classify_threat_level(self, score: float) -> ThreatLevel:
        t = self.thresholds
        if score >= t.critical:
            return ThreatLevel.CRITICAL
        if score >= t.high:
            return ThreatLevel.HIGH
        if score >= t.medium:
            return ThreatLevel.MEDIUM
        return ThreatLevel.LOW

    def decide_action(self, level: ThreatLevel) -> RecommendedAction:
        return self.action_policy[level]
