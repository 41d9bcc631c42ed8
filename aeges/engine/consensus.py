"""
Consensus Aggregator: turns provider verdicts into one ConsensusResult.

Two strategies:
1. Sequential fallback: try providers in priority order, first success wins
2. Parallel consensus: query up to K providers at once, merge survivors

Merging (parallel):
    w_i   = confidence_i
    risk  = Σ(risk_i × w_i) / Σ(w_i)          (plain mean when Σw = 0)
    conf  = mean(confidence_i)
    pattern = plurality by weight, first-seen wins ties
    agreement = winning_weight / total_weight ≥ threshold

Individual provider failures are logged by kind and published as
``provider.failed`` events. Callers only ever see the aggregate outcome.
"""

import asyncio
import statistics
from dataclasses import dataclass
from typing import Literal, Optional, Sequence

import structlog

from aeges.config import settings
from aeges.exceptions import (
    AllProvidersUnavailable,
    LowAgreement,
    NoValidAnalysis,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
    ValidationError,
)
from aeges.providers.base import ProviderAdapter
from aeges.schemas.assessment import ConsensusResult, ProviderVerdict
from aeges.schemas.events import EventKind
from aeges.schemas.transaction import TransactionRecord
from aeges.services.event_bus import EventBus
from aeges.services.rate_limiter import FixedWindowRateLimiter

logger = structlog.get_logger(__name__)

AnalysisMode = Literal["fallback", "parallel"]


@dataclass(frozen=True)
class ConsensusConfig:
    threshold: float = 0.6
    max_providers: int = 3
    timeout_seconds: float = 30.0
    require_agreement: bool = False

    def __post_init__(self):
        if not 0.0 <= self.threshold <= 1.0:
            raise ValidationError("Consensus threshold must be within [0, 1]")
        if self.max_providers < 1:
            raise ValidationError("max_providers must be at least 1")
        if self.timeout_seconds <= 0:
            raise ValidationError("Provider timeout must be positive")

    @classmethod
    def from_settings(cls) -> "ConsensusConfig":
        return cls(
            threshold=settings.consensus_threshold,
            max_providers=settings.max_consensus_providers,
            timeout_seconds=settings.provider_timeout_seconds,
            require_agreement=settings.require_agreement,
        )


class ConsensusAggregator:
    """
    Runs providers and merges their verdicts.

    Provider order is priority order for the fallback chain and selection
    order for parallel consensus.
    """

    def __init__(
        self,
        providers: Sequence[ProviderAdapter],
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        event_bus: Optional[EventBus] = None,
        config: Optional[ConsensusConfig] = None,
    ):
        if not providers:
            raise ValidationError("At least one provider is required")
        self.providers = list(providers)
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter()
        self.event_bus = event_bus
        self.config = config or ConsensusConfig.from_settings()

    # ── Pure merge ───────────────────────────────────────────────────────

    def aggregate(
        self, verdicts: Sequence[ProviderVerdict], mode: AnalysisMode = "parallel"
    ) -> ConsensusResult:
        """
        Merge verdicts. A single verdict yields exactly its own numbers.

        Raises:
            NoValidAnalysis: no verdicts to merge.
        """
        if not verdicts:
            raise NoValidAnalysis("No provider produced a valid analysis")

        total_weight = sum(v.confidence for v in verdicts)
        if total_weight > 0:
            risk = sum(v.risk_score * v.confidence for v in verdicts) / total_weight
        else:
            risk = statistics.mean(v.risk_score for v in verdicts)

        confidence = statistics.mean(v.confidence for v in verdicts)

        # Pattern plurality; counts stand in for weights when every confidence is zero
        pattern_weights: dict[str, float] = {}
        for v in verdicts:
            w = v.confidence if total_weight > 0 else 1.0
            pattern_weights[v.pattern] = pattern_weights.get(v.pattern, 0.0) + w

        winner, winning_weight = None, -1.0
        for pattern, weight in pattern_weights.items():
            if weight > winning_weight:
                winner, winning_weight = pattern, weight

        weight_sum = sum(pattern_weights.values())
        ratio = winning_weight / weight_sum if weight_sum > 0 else 1.0

        recommendations: list[str] = []
        for v in verdicts:
            for rec in v.recommendations:
                if rec not in recommendations:
                    recommendations.append(rec)

        return ConsensusResult(
            risk_score=min(1.0, max(0.0, risk)),
            confidence=min(1.0, max(0.0, confidence)),
            pattern=winner,
            agreement=ratio >= self.config.threshold,
            agreement_ratio=min(1.0, ratio),
            providers=[v.provider for v in verdicts],
            recommendations=recommendations,
            mode=mode,
        )

    # ── Strategies ───────────────────────────────────────────────────────

    async def run(
        self, tx: TransactionRecord, prompt: str, mode: AnalysisMode = "fallback"
    ) -> ConsensusResult:
        if mode == "parallel":
            return await self.run_parallel(tx, prompt)
        return await self.run_fallback(tx, prompt)

    async def run_fallback(self, tx: TransactionRecord, prompt: str) -> ConsensusResult:
        """
        First provider to succeed wins.

        Raises:
            AllProvidersUnavailable: every provider was skipped or failed.
        """
        attempted: list[str] = []
        for provider in self.providers:
            attempted.append(provider.name)
            if not self.rate_limiter.can_proceed(provider.name):
                self._record_failure(
                    provider,
                    RateLimited(provider.name, f"Rate limit exceeded for provider: {provider.name}"),
                    tx,
                )
                continue
            try:
                verdict = await self._call(provider, tx, prompt)
            except ProviderError as e:
                self._record_failure(provider, e, tx)
                continue

            result = self.aggregate([verdict], mode="fallback")
            logger.info(
                "consensus_completed",
                mode="fallback",
                transaction_id=tx.transaction_id,
                provider=provider.name,
                attempts=len(attempted),
            )
            return result

        logger.error("all_providers_unavailable", transaction_id=tx.transaction_id, attempted=attempted)
        raise AllProvidersUnavailable(
            "All analysis providers are unavailable",
            details={"attempted": attempted},
        )

    async def run_parallel(self, tx: TransactionRecord, prompt: str) -> ConsensusResult:
        """
        Query up to ``max_providers`` concurrently and merge the survivors.

        Raises:
            NoValidAnalysis: no provider succeeded.
            LowAgreement: ``require_agreement`` is set and agreement is false.
        """
        selected: list[ProviderAdapter] = []
        for provider in self.providers:
            if len(selected) >= self.config.max_providers:
                break
            if not self.rate_limiter.can_proceed(provider.name):
                self._record_failure(
                    provider,
                    RateLimited(provider.name, f"Rate limit exceeded for provider: {provider.name}"),
                    tx,
                )
                continue
            selected.append(provider)

        results = await asyncio.gather(
            *(self._call(p, tx, prompt) for p in selected),
            return_exceptions=True,
        )

        verdicts: list[ProviderVerdict] = []
        for provider, result in zip(selected, results):
            if isinstance(result, ProviderError):
                self._record_failure(provider, result, tx)
            elif isinstance(result, BaseException):
                raise result
            else:
                verdicts.append(result)

        if not verdicts:
            logger.error(
                "no_valid_analysis",
                transaction_id=tx.transaction_id,
                queried=[p.name for p in selected],
            )
            raise NoValidAnalysis(
                "No provider produced a valid analysis",
                details={"queried": [p.name for p in selected]},
            )

        result = self.aggregate(verdicts, mode="parallel")
        logger.info(
            "consensus_completed",
            mode="parallel",
            transaction_id=tx.transaction_id,
            providers=result.providers,
            agreement=result.agreement,
            agreement_ratio=round(result.agreement_ratio, 4),
        )

        if self.config.require_agreement and not result.agreement:
            raise LowAgreement(
                "Providers did not reach agreement",
                details={"agreement_ratio": result.agreement_ratio, "threshold": self.config.threshold},
            )
        return result

    # ── Single call ──────────────────────────────────────────────────────

    async def _call(
        self, provider: ProviderAdapter, tx: TransactionRecord, prompt: str
    ) -> ProviderVerdict:
        """
        One rate-limited, time-bounded provider call.

        Budget spent on a call that the caller cancels is refunded.
        """
        window = self.rate_limiter.acquire(provider.name)
        timeout = self.config.timeout_seconds
        try:
            return await asyncio.wait_for(provider.analyze(tx, prompt, timeout), timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeout(provider.name, f"Provider timed out: {provider.name}") from None
        except asyncio.CancelledError:
            self.rate_limiter.refund(provider.name, window)
            raise
        except ProviderError:
            raise
        except Exception as e:
            logger.error("provider_unexpected_error", provider=provider.name, error_type=type(e).__name__)
            raise ProviderUnavailable(provider.name, f"Provider failed: {provider.name}") from None

    def _record_failure(
        self, provider: ProviderAdapter, error: ProviderError, tx: TransactionRecord
    ) -> None:
        logger.warning("provider_failed", provider=provider.name, kind=error.kind.value)
        if self.event_bus is not None:
            self.event_bus.publish(
                EventKind.PROVIDER_FAILED,
                {
                    "provider": provider.name,
                    "kind": error.kind.value,
                    "transaction_id": tx.transaction_id,
                },
            )
