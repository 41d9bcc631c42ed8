"""
Behavioural Risk Engine Tests.
"""

import pytest
from hypothesis import given, settings as hyp_settings
from hypothesis import strategies as st

from aeges.engine.risk_engine import (
    BASE_RISK_CEILING,
    BASE_RISK_FLOOR,
    RiskAssessmentEngine,
    ThreatThresholds,
)
from aeges.exceptions import ValidationError
from aeges.schemas.assessment import ConsensusResult, RecommendedAction, ThreatLevel
from aeges.schemas.transaction import TransactionRecord

from tests.fakes import make_transaction


def consensus(risk: float, confidence: float) -> ConsensusResult:
    return ConsensusResult(
        risk_score=risk,
        confidence=confidence,
        pattern="normal",
        agreement=True,
        agreement_ratio=1.0,
        providers=["fake"],
    )


class TestBaseRisk:
    """Test heuristic base risk."""

    def setup_method(self):
        self.engine = RiskAssessmentEngine()

    def test_established_small_transaction_is_floor(self):
        tx = make_transaction(amount=5_000, history={"account_age_days": 180, "previous_transactions": 25})
        assert self.engine.compute_base_risk(tx) == pytest.approx(0.1)

    def test_amount_tiers(self):
        established = {"account_age_days": 365, "previous_transactions": 50}
        assert self.engine.compute_base_risk(
            make_transaction(amount=20_000, history=established)
        ) == pytest.approx(0.2)
        assert self.engine.compute_base_risk(
            make_transaction(amount=200_000, history=established)
        ) == pytest.approx(0.3)
        assert self.engine.compute_base_risk(
            make_transaction(amount=2_000_000, history=established)
        ) == pytest.approx(0.4)

    def test_tier_bounds_are_exclusive(self):
        tx = make_transaction(amount=10_000, history={"account_age_days": 30, "previous_transactions": 5})
        assert self.engine.compute_base_risk(tx) == pytest.approx(0.1)

    def test_young_account_with_thin_history(self):
        tx = make_transaction(amount=1_000, history={"account_age_days": 10, "previous_transactions": 3})
        # 0.1 + 0.2 (age < 30) + 0.2 (history < 5)
        assert self.engine.compute_base_risk(tx) == pytest.approx(0.5)

    def test_unknown_history_counts_as_none(self):
        tx = make_transaction(history={})
        # unknown age adds nothing; unknown count adds +0.3
        assert self.engine.compute_base_risk(tx) == pytest.approx(0.4)

    def test_clamped_to_ceiling(self, critical_tx):
        assert self.engine.compute_base_risk(critical_tx) == BASE_RISK_CEILING

    @given(
        amount=st.floats(min_value=0, max_value=1e12, allow_nan=False),
        age=st.one_of(st.none(), st.floats(min_value=0, max_value=10_000, allow_nan=False)),
        count=st.one_of(st.none(), st.integers(min_value=0, max_value=100_000)),
    )
    @hyp_settings(max_examples=50)
    def test_base_risk_always_in_range(self, amount, age, count):
        """compute_base_risk ∈ [0.1, 0.95] for any valid transaction."""
        tx = make_transaction(
            amount=amount,
            history={"account_age_days": age, "previous_transactions": count},
        )
        risk = RiskAssessmentEngine().compute_base_risk(tx)
        assert BASE_RISK_FLOOR <= risk <= BASE_RISK_CEILING


class TestPatterns:
    """Test pattern detection and velocity anomalies."""

    def setup_method(self):
        self.engine = RiskAssessmentEngine()

    def test_flash_drain_new_account_large_amount(self, critical_tx):
        patterns = self.engine.detect_patterns(critical_tx)
        assert {"flash_drain", "new_account", "large_amount"} <= patterns

    def test_clean_transaction_has_no_patterns(self, low_risk_tx):
        assert self.engine.detect_patterns(low_risk_tx) == frozenset()

    def test_high_gas_price_flags_velocity(self):
        tx = make_transaction(network_metadata={"gas_price": "high"})
        assert "high_velocity" in self.engine.detect_patterns(tx)

    def test_velocity_anomaly_against_average(self):
        # average = 1000 / 10 = 100; 5000 > 10 × 100 on a 10-day account
        tx = make_transaction(
            amount=5_000,
            history={"account_age_days": 10, "previous_transactions": 10, "total_volume": 1_000},
        )
        assert self.engine.check_velocity_anomaly(tx)
        assert "high_velocity" in self.engine.detect_patterns(tx)

    def test_velocity_ignored_on_old_accounts(self):
        tx = make_transaction(
            amount=5_000,
            history={"account_age_days": 400, "previous_transactions": 10, "total_volume": 1_000},
        )
        assert not self.engine.check_velocity_anomaly(tx)

    def test_velocity_without_history_uses_amount(self):
        tx = make_transaction(amount=5_000, history={"account_age_days": 2})
        assert not self.engine.check_velocity_anomaly(tx)

    def test_dominant_pattern(self):
        assert RiskAssessmentEngine.dominant_pattern(frozenset({"new_account", "flash_drain"})) == "flash_drain"
        assert RiskAssessmentEngine.dominant_pattern(frozenset()) == "normal"
        assert RiskAssessmentEngine.dominant_pattern(frozenset({"unknown_tag"})) == "normal"

    def test_detection_is_deterministic(self, critical_tx):
        rebuilt = TransactionRecord.model_validate(critical_tx.model_dump())
        assert self.engine.detect_patterns(critical_tx) == self.engine.detect_patterns(rebuilt)


class TestConsensusIntegration:
    """Test merging the heuristic score with provider consensus."""

    def setup_method(self):
        self.engine = RiskAssessmentEngine()

    def test_no_consensus_returns_base(self):
        assert self.engine.integrate_consensus(0.37, None) == pytest.approx(0.37)

    def test_weighted_merge(self):
        # w = 0.85 × 0.4 = 0.34; 0.95 × 0.66 + 0.9 × 0.34
        final = self.engine.integrate_consensus(0.95, consensus(0.9, 0.85))
        assert final == pytest.approx(0.933)

    def test_zero_confidence_has_no_influence(self):
        assert self.engine.integrate_consensus(0.2, consensus(1.0, 0.0)) == pytest.approx(0.2)

    def test_ai_weight_is_capped(self):
        # Even a fully confident provider moves the score at most 40% of the way
        final = self.engine.integrate_consensus(0.0, consensus(1.0, 1.0))
        assert final == pytest.approx(0.4)

    @given(
        base=st.floats(min_value=0, max_value=1),
        risk=st.floats(min_value=0, max_value=1),
        conf=st.floats(min_value=0, max_value=1),
    )
    @hyp_settings(max_examples=50)
    def test_merged_score_in_unit_interval(self, base, risk, conf):
        final = RiskAssessmentEngine().integrate_consensus(base, consensus(risk, conf))
        assert 0.0 <= final <= 1.0


class TestClassification:
    """Test threat levels and action policy."""

    def setup_method(self):
        self.engine = RiskAssessmentEngine()

    @pytest.mark.parametrize(
        "score,level",
        [
            (0.0, ThreatLevel.LOW),
            (0.39, ThreatLevel.LOW),
            (0.4, ThreatLevel.MEDIUM),
            (0.6, ThreatLevel.HIGH),
            (0.8, ThreatLevel.CRITICAL),
            (1.0, ThreatLevel.CRITICAL),
        ],
    )
    def test_default_thresholds(self, score, level):
        assert self.engine.classify_threat_level(score) == level

    @given(a=st.floats(min_value=0, max_value=1), b=st.floats(min_value=0, max_value=1))
    @hyp_settings(max_examples=50)
    def test_classification_is_monotonic(self, a, b):
        engine = RiskAssessmentEngine()
        low, high = sorted((a, b))
        assert engine.classify_threat_level(low).rank <= engine.classify_threat_level(high).rank

    def test_custom_thresholds(self):
        engine = RiskAssessmentEngine(thresholds=ThreatThresholds(medium=0.2, high=0.3, critical=0.5))
        assert engine.classify_threat_level(0.55) == ThreatLevel.CRITICAL

    @pytest.mark.parametrize("bounds", [(0.6, 0.4, 0.8), (0.0, 0.5, 0.8), (0.4, 0.6, 1.2), (0.4, 0.4, 0.8)])
    def test_invalid_thresholds_rejected(self, bounds):
        with pytest.raises(ValidationError):
            ThreatThresholds(*bounds)

    def test_default_action_policy(self):
        assert self.engine.decide_action(ThreatLevel.CRITICAL) == RecommendedAction.CONTAIN
        assert self.engine.decide_action(ThreatLevel.HIGH) == RecommendedAction.CONTAIN
        assert self.engine.decide_action(ThreatLevel.MEDIUM) == RecommendedAction.MONITOR
        assert self.engine.decide_action(ThreatLevel.LOW) == RecommendedAction.ALLOW

    def test_policy_override(self):
        engine = RiskAssessmentEngine(action_policy={ThreatLevel.MEDIUM: RecommendedAction.CONTAIN})
        assert engine.decide_action(ThreatLevel.MEDIUM) == RecommendedAction.CONTAIN
        assert engine.decide_action(ThreatLevel.LOW) == RecommendedAction.ALLOW

    @given(level=st.sampled_from(list(ThreatLevel)))
    @hyp_settings(max_examples=20)
    def test_decide_action_total_and_deterministic(self, level):
        engine = RiskAssessmentEngine()
        assert engine.decide_action(level) == engine.decide_action(level)
        assert engine.decide_action(level) in set(RecommendedAction)
