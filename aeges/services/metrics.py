"""
Analysis Metrics.

Prometheus collectors on a per-instance registry. Nothing is exported;
``snapshot()`` reads the collectors back for ``Guardian.get_metrics()``.

Metrics:
- aeges_analyses_total{outcome}: success / failure
- aeges_containments_total
- aeges_analysis_latency_seconds (histogram)
- aeges_provider_usage_total{provider}
"""

from typing import Any, Iterable

from prometheus_client import CollectorRegistry, Counter, Histogram

LATENCY_BUCKETS = [0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]


class AnalysisMetrics:
    """Running counters for analyses and provider usage."""

    def __init__(self):
        self._build()

    def _build(self) -> None:
        self.registry = CollectorRegistry(auto_describe=True)

        self.analyses = Counter(
            "aeges_analyses",
            "Total analyses by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.containments = Counter(
            "aeges_containments",
            "Total containments activated by analyses",
            registry=self.registry,
        )
        self.latency = Histogram(
            "aeges_analysis_latency_seconds",
            "End-to-end analysis latency",
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.provider_usage = Counter(
            "aeges_provider_usage",
            "Provider verdicts used in a consensus",
            ["provider"],
            registry=self.registry,
        )

    # ── Recording ────────────────────────────────────────────────────────

    def record_success(self, latency_ms: float, providers: Iterable[str], contained: bool = False) -> None:
        self.analyses.labels(outcome="success").inc()
        self.latency.observe(latency_ms / 1000.0)
        for provider in providers:
            self.provider_usage.labels(provider=provider).inc()
        if contained:
            self.containments.inc()

    def record_failure(self, latency_ms: float) -> None:
        self.analyses.labels(outcome="failure").inc()
        self.latency.observe(latency_ms / 1000.0)

    # ── Reading ──────────────────────────────────────────────────────────

    def _value(self, name: str, labels: dict[str, str] | None = None) -> float:
        return self.registry.get_sample_value(name, labels or {}) or 0.0

    @property
    def successful_analyses(self) -> int:
        return int(self._value("aeges_analyses_total", {"outcome": "success"}))

    @property
    def failed_analyses(self) -> int:
        return int(self._value("aeges_analyses_total", {"outcome": "failure"}))

    @property
    def total_analyses(self) -> int:
        return self.successful_analyses + self.failed_analyses

    @property
    def average_latency_ms(self) -> float:
        count = self._value("aeges_analysis_latency_seconds_count")
        if not count:
            return 0.0
        return self._value("aeges_analysis_latency_seconds_sum") / count * 1000.0

    @property
    def success_rate(self) -> float:
        total = self.total_analyses
        if not total:
            return 0.0
        return self.successful_analyses / total

    def provider_counts(self) -> dict[str, int]:
        counts = {}
        for metric in self.provider_usage.collect():
            for sample in metric.samples:
                if sample.name == "aeges_provider_usage_total":
                    counts[sample.labels["provider"]] = int(sample.value)
        return counts

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_analyses": self.total_analyses,
            "successful_analyses": self.successful_analyses,
            "failed_analyses": self.failed_analyses,
            "containments": int(self._value("aeges_containments_total")),
            "average_latency_ms": round(self.average_latency_ms, 3),
            "success_rate": round(self.success_rate, 4),
            "provider_usage": self.provider_counts(),
        }

    def reset(self) -> None:
        self._build()
