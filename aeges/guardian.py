"""
Guardian: the AEGES entry point.

Wires the risk engine, providers, consensus aggregator, containment state
machine, recovery workflow and event bus behind one object:

    guardian = Guardian.from_settings()
    guardian.start()
    outcome = await guardian.analyze(tx)
    if outcome.containment:
        status = await guardian.get_containment_status(containment_id=outcome.containment.containment_id)

Every collaborator is injectable; nothing is held in module globals.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping, Optional, Sequence, Union

import httpx
import structlog

from aeges import __version__
from aeges.config import Settings, settings as default_settings
from aeges.containment.state_machine import ContainmentStateMachine, utcnow
from aeges.engine.consensus import AnalysisMode, ConsensusAggregator, ConsensusConfig
from aeges.engine.prompts import build_analysis_prompt
from aeges.engine.risk_engine import RiskAssessmentEngine, ThreatThresholds
from aeges.exceptions import AegesError, RateLimited, ValidationError
from aeges.ids import ANALYSIS_PREFIX, generate_id
from aeges.providers.base import ProviderAdapter, ProviderHealth
from aeges.providers.factory import build_providers, build_rate_limiter
from aeges.recovery.workflow import EvidenceVerifier, RecoveryWorkflow
from aeges.schemas.assessment import RecommendedAction, RiskAssessment, ThreatLevel
from aeges.schemas.containment import Containment, ContainmentStatus
from aeges.schemas.events import EventKind
from aeges.schemas.recovery import CheckStatus, RecoveryRequest, VerificationCheck
from aeges.schemas.transaction import TransactionRecord
from aeges.services.event_bus import EventBus, EventHandler, Subscription
from aeges.services.metrics import AnalysisMetrics
from aeges.services.propagation import NetworkPropagator
from aeges.services.rate_limiter import FixedWindowRateLimiter
from aeges.services.repository import AegesRepository, InMemoryRepository
from aeges.services.scheduler import ExpiryScheduler

logger = structlog.get_logger(__name__)

SETTINGS_MODE: dict[str, AnalysisMode] = {
    "consensus": "parallel",
    "parallel": "parallel",
    "fallback": "fallback",
}


@dataclass(frozen=True)
class AnalysisOutcome:
    """Result of one analyze() call."""
    assessment: RiskAssessment
    action: RecommendedAction
    containment: Optional[Containment] = None

    @property
    def contained(self) -> bool:
        return self.containment is not None


class Guardian:
    """Facade over the full analysis → containment → recovery pipeline."""

    def __init__(
        self,
        providers: Sequence[ProviderAdapter],
        *,
        engine: Optional[RiskAssessmentEngine] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        event_bus: Optional[EventBus] = None,
        repository: Optional[AegesRepository] = None,
        propagator: Optional[NetworkPropagator] = None,
        consensus_config: Optional[ConsensusConfig] = None,
        mode: str = "fallback",
        verifiers: Optional[Mapping[VerificationCheck, EvidenceVerifier]] = None,
        max_containment_duration: Optional[timedelta] = None,
        stakeholder_roster: Optional[Sequence[str]] = None,
        sweep_interval_seconds: Optional[float] = None,
        clock=utcnow,
    ):
        if mode not in SETTINGS_MODE:
            raise ValidationError(f"Unknown analysis mode: {mode}")
        self.mode: AnalysisMode = SETTINGS_MODE[mode]
        self.clock = clock
        self.engine = engine or RiskAssessmentEngine()
        self.event_bus = event_bus or EventBus()
        self.repository = repository or InMemoryRepository()
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter()
        self.providers = list(providers)
        self.aggregator = ConsensusAggregator(
            self.providers,
            rate_limiter=self.rate_limiter,
            event_bus=self.event_bus,
            config=consensus_config,
        )
        self.containment = ContainmentStateMachine(
            self.repository,
            self.event_bus,
            propagator=propagator,
            max_duration=max_containment_duration,
            stakeholder_roster=stakeholder_roster,
            clock=clock,
        )
        self.recovery = RecoveryWorkflow(
            self.repository,
            self.containment,
            self.event_bus,
            verifiers=verifiers,
            clock=clock,
        )
        self.scheduler = ExpiryScheduler(
            self.containment, self.recovery, interval_seconds=sweep_interval_seconds
        )
        self.metrics = AnalysisMetrics()

    @classmethod
    def from_settings(
        cls,
        cfg: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> "Guardian":
        """Build a Guardian with providers and limits taken from configuration."""
        cfg = cfg or default_settings
        engine = kwargs.pop("engine", None) or RiskAssessmentEngine(
            thresholds=ThreatThresholds(
                medium=cfg.threshold_medium,
                high=cfg.threshold_high,
                critical=cfg.threshold_critical,
            ),
            max_ai_weight=cfg.max_ai_weight,
            velocity_multiple=cfg.velocity_multiple,
            velocity_max_account_age_days=cfg.velocity_max_account_age_days,
        )
        kwargs.setdefault("mode", cfg.analysis_mode)
        kwargs.setdefault(
            "consensus_config",
            ConsensusConfig(
                threshold=cfg.consensus_threshold,
                max_providers=cfg.max_consensus_providers,
                timeout_seconds=cfg.provider_timeout_seconds,
                require_agreement=cfg.require_agreement,
            ),
        )
        kwargs.setdefault("rate_limiter", build_rate_limiter(cfg))
        kwargs.setdefault(
            "event_bus",
            EventBus(queue_size=cfg.event_queue_size, history_size=cfg.event_history_size),
        )
        kwargs.setdefault(
            "max_containment_duration",
            timedelta(seconds=cfg.containment_max_duration_seconds),
        )
        kwargs.setdefault("stakeholder_roster", cfg.stakeholder_roster)
        kwargs.setdefault("sweep_interval_seconds", cfg.expiry_sweep_interval_seconds)
        providers = build_providers(cfg, client=client, engine=engine)
        return cls(providers, engine=engine, **kwargs)

    # ── Analysis ─────────────────────────────────────────────────────────

    async def analyze(
        self,
        transaction: Union[TransactionRecord, dict[str, Any]],
        analysis_type: str = "comprehensive",
    ) -> AnalysisOutcome:
        """
        Score a transaction and contain it when the policy says so.

        A transaction already analysed returns its stored assessment.

        Raises:
            ValidationError: malformed transaction.
            ConsensusError subclass: no provider analysis could be obtained.
        """
        tx = (
            transaction
            if isinstance(transaction, TransactionRecord)
            else TransactionRecord.parse(transaction)
        )

        existing = await self.repository.find_assessment_by_transaction(tx.transaction_id)
        if existing is not None:
            logger.debug("analysis_cached", transaction_id=tx.transaction_id, analysis_id=existing.analysis_id)
            return await self._outcome_for(existing)

        start = time.perf_counter()
        try:
            base = self.engine.compute_base_risk(tx)
            patterns = self.engine.detect_patterns(tx)
            velocity = self.engine.check_velocity_anomaly(tx)
            prompt = build_analysis_prompt(tx, analysis_type, now=self.clock())
            consensus = await self.aggregator.run(tx, prompt, self.mode)
        except AegesError as e:
            self.metrics.record_failure((time.perf_counter() - start) * 1000)
            logger.error("analysis_failed", transaction_id=tx.transaction_id, kind=e.kind.value)
            raise

        score = self.engine.integrate_consensus(base, consensus)
        level = self.engine.classify_threat_level(score)
        action = self.engine.decide_action(level)
        elapsed_ms = (time.perf_counter() - start) * 1000

        assessment = RiskAssessment(
            analysis_id=generate_id(ANALYSIS_PREFIX),
            transaction_id=tx.transaction_id,
            threat_level=level,
            behavioral_score=score,
            base_score=base,
            pattern_matches=patterns,
            velocity_anomaly=velocity,
            providers=list(consensus.providers),
            consensus=consensus,
            recommended_action=action,
            created_at=self.clock(),
            processing_time_ms=round(elapsed_ms, 3),
        )
        stored = await self.repository.add_assessment(assessment)
        if stored.analysis_id != assessment.analysis_id:
            # A concurrent analysis of the same transaction won
            return await self._outcome_for(stored)

        containment = None
        if action == RecommendedAction.CONTAIN:
            containment = await self.containment.contain(assessment, tx)

        self.metrics.record_success(elapsed_ms, consensus.providers, contained=containment is not None)
        logger.info(
            "analysis_completed",
            analysis_id=assessment.analysis_id,
            transaction_id=tx.transaction_id,
            threat_level=str(level),
            behavioral_score=round(score, 4),
            action=str(action),
            providers=consensus.providers,
            processing_time_ms=assessment.processing_time_ms,
        )
        self.event_bus.publish(
            EventKind.ANALYSIS_COMPLETED,
            {
                "analysis_id": assessment.analysis_id,
                "transaction_id": tx.transaction_id,
                "threat_level": str(level),
                "behavioral_score": score,
                "recommended_action": str(action),
            },
        )
        if level.rank >= ThreatLevel.HIGH.rank:
            self.event_bus.publish(
                EventKind.THREAT_DETECTED,
                {
                    "analysis_id": assessment.analysis_id,
                    "transaction_id": tx.transaction_id,
                    "threat_level": str(level),
                    "patterns": sorted(patterns),
                    "containment_id": containment.containment_id if containment else None,
                },
            )
        return AnalysisOutcome(assessment=assessment, action=action, containment=containment)

    async def get_assessment(self, analysis_id: str) -> Optional[RiskAssessment]:
        return await self.repository.get_assessment(analysis_id)

    async def analysis_history(self, limit: int = 100) -> list[RiskAssessment]:
        return await self.repository.list_assessments(limit)

    # ── Containment ──────────────────────────────────────────────────────

    async def get_containment_status(
        self,
        containment_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> ContainmentStatus:
        return await self.containment.status(containment_id, transaction_id, wallet_address)

    async def escalate(self, containment_id: str, severity: ThreatLevel) -> Containment:
        return await self.containment.escalate(containment_id, severity)

    # ── Recovery ─────────────────────────────────────────────────────────

    async def initiate_recovery(
        self,
        containment_id: str,
        claimant: str,
        evidence: Optional[dict[str, Any]] = None,
    ) -> RecoveryRequest:
        return await self.recovery.initiate(containment_id, claimant, evidence)

    async def record_verification(
        self, recovery_id: str, check: VerificationCheck, status: CheckStatus
    ) -> RecoveryRequest:
        return await self.recovery.record_verification(recovery_id, check, status)

    async def approve_recovery(self, recovery_id: str, stakeholder: str) -> RecoveryRequest:
        return await self.recovery.approve(recovery_id, stakeholder)

    async def reject_recovery(self, recovery_id: str, reason: str) -> RecoveryRequest:
        return await self.recovery.reject(recovery_id, reason)

    async def get_recovery(self, recovery_id: str) -> RecoveryRequest:
        return await self.recovery.get(recovery_id)

    # ── Events ───────────────────────────────────────────────────────────

    def subscribe(self, kind: EventKind, handler: EventHandler) -> Subscription:
        return self.event_bus.subscribe(kind, handler)

    # ── Operations ───────────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        """Check every provider. Healthy overall when any provider is."""
        results = await asyncio.gather(*(self._check_provider(p) for p in self.providers))
        providers = {r.provider: r.model_dump() for r in results}
        return {
            "overall": "healthy" if any(r.healthy for r in results) else "unhealthy",
            "providers": providers,
            "timestamp": self.clock().isoformat(),
        }

    async def _check_provider(self, provider: ProviderAdapter) -> ProviderHealth:
        # Health checks reach the upstream and count against the provider window
        try:
            self.rate_limiter.acquire(provider.name)
        except RateLimited as e:
            return ProviderHealth(provider=provider.name, healthy=False, error=e.kind.value)
        return await provider.health_check()

    def get_metrics(self) -> dict[str, Any]:
        snapshot = self.metrics.snapshot()
        snapshot["rate_limits"] = {p.name: self.rate_limiter.remaining(p.name) for p in self.providers}
        snapshot["events_dropped"] = self.event_bus.dropped
        return snapshot

    async def system_status(self) -> dict[str, Any]:
        containments = await self.containment.list_active()
        recoveries = await self.recovery.list_active()
        return {
            "version": __version__,
            "mode": self.mode,
            "providers": [p.name for p in self.providers],
            "active_containments": len(containments),
            "active_recoveries": len(recoveries),
            "scheduler_running": self.scheduler.running,
            "event_subscribers": self.event_bus.subscriber_count,
            "stats": self.metrics.snapshot(),
            "timestamp": self.clock().isoformat(),
        }

    def start(self) -> None:
        """Start the expiry sweeps. Call from inside a running event loop."""
        self.scheduler.start()
        logger.info("guardian_started", mode=self.mode, providers=[p.name for p in self.providers])

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.recovery.close()
        await self.containment.close()
        await self.event_bus.drain()
        await self.event_bus.close()
        for provider in self.providers:
            await provider.aclose()
        logger.info("guardian_stopped")

    async def _outcome_for(self, assessment: RiskAssessment) -> AnalysisOutcome:
        containment = await self.repository.find_containment_by_analysis(assessment.analysis_id)
        return AnalysisOutcome(
            assessment=assessment,
            action=assessment.recommended_action,
            containment=containment,
        )
