"""
Network propagation of containment decisions.

Propagation tells external participants that a wallet is contained. It runs
in the background after containment and its outcome is recorded on the
containment, never on the critical path.
"""

import time
from abc import ABC, abstractmethod

import structlog

from aeges.schemas.containment import Containment, PropagationRecord, PropagationStatus

logger = structlog.get_logger(__name__)


class NetworkPropagator(ABC):
    """Delivers a containment notice to network participants."""

    @abstractmethod
    async def propagate(self, containment: Containment) -> PropagationRecord:
        """Notify participants and report coverage."""


class NoopPropagator(NetworkPropagator):
    """No network configured; every containment is recorded as skipped."""

    async def propagate(self, containment: Containment) -> PropagationRecord:
        logger.debug("propagation_skipped", containment_id=containment.containment_id)
        return PropagationRecord(status=PropagationStatus.SKIPPED)


def build_record(notified: int, total: int, started: float) -> PropagationRecord:
    """Helper for propagators that count acknowledged participants."""
    coverage = (notified / total * 100.0) if total else 0.0
    if total == 0:
        status = PropagationStatus.SKIPPED
    elif notified == 0:
        status = PropagationStatus.FAILED
    else:
        status = PropagationStatus.COMPLETED
    return PropagationRecord(
        status=status,
        participants_notified=notified,
        participants_total=total,
        coverage_percentage=round(coverage, 2),
        propagation_time_ms=round((time.perf_counter() - started) * 1000, 3),
    )
