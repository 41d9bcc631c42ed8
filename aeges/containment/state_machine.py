"""
Containment State Machine.

    NONE ──contain──► ACTIVE ──begin_recovery──► RECOVERY_PENDING
                        │                          │    │    │
                        │ max duration             │    │    └─complete──► RECOVERED
                        ▼                          │    └─revert (elapsed)─► EXPIRED
                     EXPIRED ◄─────────────────────┘ revert ──► ACTIVE

Rules:
- One containment per analysis; a repeated contain returns the live one
- Economic state only moves upward while ACTIVE
- Invalid transitions raise InvalidTransition and leave the entity unchanged
- Every transition publishes an event
- Transitions on one containment are serialised by a per-entity lock
- Propagation runs in the background and never delays the decision
"""

import asyncio
import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional, Sequence

import structlog

from aeges.config import settings
from aeges.exceptions import InvalidTransition, NotFound, ValidationError
from aeges.ids import CONTAINMENT_PREFIX, generate_id
from aeges.schemas.assessment import RecommendedAction, RiskAssessment, ThreatLevel
from aeges.schemas.containment import (
    NORMAL_ECONOMIC_VALUE,
    Containment,
    ContainmentState,
    ContainmentStatus,
    EconomicState,
    PropagationRecord,
    PropagationStatus,
    RecoveryProtocol,
)
from aeges.schemas.events import EventKind
from aeges.schemas.transaction import TransactionRecord
from aeges.services.event_bus import EventBus
from aeges.services.propagation import NetworkPropagator, NoopPropagator
from aeges.services.repository import AegesRepository

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

APPROVAL_RATIO: float = 0.6

STAKEHOLDER_COUNT: dict[ThreatLevel, int] = {
    ThreatLevel.CRITICAL: 5,
    ThreatLevel.HIGH: 3,
}
DEFAULT_STAKEHOLDER_COUNT: int = 2

RESOLUTION_WINDOW: dict[ThreatLevel, timedelta] = {
    ThreatLevel.CRITICAL: timedelta(days=7),
    ThreatLevel.HIGH: timedelta(days=3),
    ThreatLevel.MEDIUM: timedelta(days=1),
}
DEFAULT_RESOLUTION_WINDOW: timedelta = timedelta(hours=12)

ECONOMIC_STATE: dict[ThreatLevel, EconomicState] = {
    ThreatLevel.CRITICAL: EconomicState.NEUTRALIZED,
    ThreatLevel.HIGH: EconomicState.QUARANTINED,
    ThreatLevel.MEDIUM: EconomicState.QUARANTINED,
    ThreatLevel.LOW: EconomicState.FROZEN,
}

INVESTIGATION_STATUS: dict[ContainmentState, str] = {
    ContainmentState.ACTIVE: "initiated",
    ContainmentState.RECOVERY_PENDING: "consensus_pending",
    ContainmentState.RECOVERED: "resolved",
    ContainmentState.EXPIRED: "closed",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def economic_state_for(severity: ThreatLevel) -> EconomicState:
    return ECONOMIC_STATE[severity]


def recovery_protocol_for(severity: ThreatLevel, roster: Sequence[str]) -> RecoveryProtocol:
    """
    Release requirements by severity.

    M stakeholders (5 critical, 3 high, 2 otherwise), N = ceil(0.6 × M).
    """
    count = STAKEHOLDER_COUNT.get(severity, DEFAULT_STAKEHOLDER_COUNT)
    stakeholders = list(roster[:count])
    if len(stakeholders) < count:
        raise ValidationError(
            "Stakeholder roster too small for containment severity",
            details={"severity": str(severity), "required": count, "available": len(roster)},
        )
    return RecoveryProtocol(
        stakeholders=stakeholders,
        required_approvals=math.ceil(count * APPROVAL_RATIO),
        resolution_window=RESOLUTION_WINDOW.get(severity, DEFAULT_RESOLUTION_WINDOW),
    )


class ContainmentStateMachine:
    """Owns every containment mutation."""

    def __init__(
        self,
        repository: AegesRepository,
        event_bus: EventBus,
        propagator: Optional[NetworkPropagator] = None,
        max_duration: Optional[timedelta] = None,
        stakeholder_roster: Optional[Sequence[str]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.event_bus = event_bus
        self.propagator = propagator or NoopPropagator()
        self.max_duration = max_duration or timedelta(seconds=settings.containment_max_duration_seconds)
        self.stakeholder_roster = list(stakeholder_roster or settings.stakeholder_roster)
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()

    # ── Activation ───────────────────────────────────────────────────────

    async def contain(
        self,
        assessment: RiskAssessment,
        tx: TransactionRecord,
        reason: Optional[str] = None,
    ) -> Containment:
        """
        NONE → ACTIVE.

        Raises:
            InvalidTransition: the assessment did not recommend containment.
            ValidationError: assessment and transaction do not match.
        """
        if assessment.recommended_action != RecommendedAction.CONTAIN:
            raise InvalidTransition(
                f"Assessment {assessment.analysis_id} does not recommend containment",
                details={"recommended_action": str(assessment.recommended_action)},
            )
        if assessment.transaction_id != tx.transaction_id:
            raise ValidationError("Assessment does not belong to this transaction")

        key = f"analysis:{assessment.analysis_id}"
        lock = self._lock(key)
        async with lock:
            existing = await self.repository.find_containment_by_analysis(assessment.analysis_id)
            if existing is not None:
                self._drop_lock(key, lock)
                return existing

            now = self.clock()
            severity = assessment.threat_level
            containment = Containment(
                containment_id=generate_id(CONTAINMENT_PREFIX),
                analysis_id=assessment.analysis_id,
                transaction_id=tx.transaction_id,
                wallet_address=tx.wallet_address,
                severity=severity,
                economic_state=economic_state_for(severity),
                reason=reason or _default_reason(assessment),
                amount=tx.amount,
                recovery_protocol=recovery_protocol_for(severity, self.stakeholder_roster),
                activated_at=now,
                expires_at=now + self.max_duration,
            )
            await self.repository.save_containment(containment)
            self._drop_lock(key, lock)

        logger.info(
            "containment_activated",
            containment_id=containment.containment_id,
            analysis_id=containment.analysis_id,
            severity=str(severity),
            economic_state=str(containment.economic_state),
        )
        self._publish(EventKind.CONTAINMENT_ACTIVATED, containment)
        self._spawn(self._propagate(containment.containment_id))
        return containment

    async def escalate(self, containment_id: str, severity: ThreatLevel) -> Containment:
        """
        Raise severity while ACTIVE. Economic state never moves down.

        Raises:
            InvalidTransition: not ACTIVE, or severity is not higher.
        """
        async with self._entity(containment_id) as containment:
            await self._expire_locked(containment)
            self._ensure_status(containment, ContainmentState.ACTIVE, "escalate")
            if severity.rank <= containment.severity.rank:
                raise InvalidTransition(
                    "Escalation must raise severity",
                    details={"current": str(containment.severity), "requested": str(severity)},
                )
            previous = containment.economic_state
            target = economic_state_for(severity)
            containment.severity = severity
            if target.rank > previous.rank:
                containment.economic_state = target
            await self.repository.save_containment(containment)

        logger.info(
            "containment_escalated",
            containment_id=containment_id,
            severity=str(severity),
            economic_state=str(containment.economic_state),
        )
        self._publish(
            EventKind.CONTAINMENT_ESCALATED,
            containment,
            previous_economic_state=str(previous),
        )
        return containment

    # ── Expiry ───────────────────────────────────────────────────────────

    async def expire_if_elapsed(self, containment_id: str) -> bool:
        """ACTIVE → EXPIRED once the maximum duration has been exceeded."""
        async with self._entity(containment_id) as containment:
            return await self._expire_locked(containment)

    async def sweep_expired(self) -> list[str]:
        expired = []
        for containment in await self.repository.list_containments(ContainmentState.ACTIVE):
            if await self.expire_if_elapsed(containment.containment_id):
                expired.append(containment.containment_id)
        return expired

    # ── Recovery transitions ─────────────────────────────────────────────

    async def begin_recovery(self, containment_id: str, recovery_id: str) -> Containment:
        """ACTIVE → RECOVERY_PENDING."""
        async with self._entity(containment_id) as containment:
            await self._expire_locked(containment)
            self._ensure_status(containment, ContainmentState.ACTIVE, "begin_recovery")
            containment.status = ContainmentState.RECOVERY_PENDING
            containment.active_recovery_id = recovery_id
            await self.repository.save_containment(containment)

        logger.info("containment_recovery_pending", containment_id=containment_id, recovery_id=recovery_id)
        self._publish(EventKind.CONTAINMENT_RECOVERY_PENDING, containment, recovery_id=recovery_id)
        return containment

    async def complete_recovery(self, containment_id: str) -> Containment:
        """RECOVERY_PENDING → RECOVERED; the held value is restored."""
        async with self._entity(containment_id) as containment:
            self._ensure_status(containment, ContainmentState.RECOVERY_PENDING, "complete_recovery")
            containment.status = ContainmentState.RECOVERED
            containment.restored_value = containment.amount
            containment.closed_at = self.clock()
            await self.repository.save_containment(containment)

        logger.info(
            "containment_recovered",
            containment_id=containment_id,
            restored_value=containment.restored_value,
        )
        self._publish(
            EventKind.CONTAINMENT_RECOVERED,
            containment,
            restored_value=containment.restored_value,
        )
        return containment

    async def revert_recovery(self, containment_id: str) -> Containment:
        """RECOVERY_PENDING → ACTIVE, or EXPIRED if the maximum duration has passed."""
        async with self._entity(containment_id) as containment:
            self._ensure_status(containment, ContainmentState.RECOVERY_PENDING, "revert_recovery")
            recovery_id = containment.active_recovery_id
            containment.status = ContainmentState.ACTIVE
            containment.active_recovery_id = None
            expired = self._elapsed(containment)
            if expired:
                containment.status = ContainmentState.EXPIRED
                containment.closed_at = self.clock()
            await self.repository.save_containment(containment)

        logger.info(
            "containment_reverted",
            containment_id=containment_id,
            recovery_id=recovery_id,
            status=str(containment.status),
        )
        self._publish(EventKind.CONTAINMENT_REVERTED, containment, recovery_id=recovery_id)
        if expired:
            self._publish(EventKind.CONTAINMENT_EXPIRED, containment)
        return containment

    # ── Queries ──────────────────────────────────────────────────────────

    async def get(self, containment_id: str) -> Containment:
        return await self._require(containment_id)

    async def find(
        self,
        containment_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> Optional[Containment]:
        if containment_id:
            return await self.repository.get_containment(containment_id)
        if transaction_id:
            return await self.repository.find_containment_by_transaction(transaction_id)
        if wallet_address:
            return await self.repository.find_containment_by_wallet(wallet_address)
        raise ValidationError("containment_id, transaction_id or wallet_address is required")

    async def status(
        self,
        containment_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> ContainmentStatus:
        """
        Read-only projection by any identifier.

        Repeated calls on an unmutated containment return equal results.
        """
        containment = await self.find(containment_id, transaction_id, wallet_address)
        if containment is None:
            return ContainmentStatus(containment_active=False, message="No active containment found")

        await self.expire_if_elapsed(containment.containment_id)
        return self.project(await self._require(containment.containment_id))

    def project(self, containment: Containment) -> ContainmentStatus:
        active = not containment.status.is_terminal
        messages = {
            ContainmentState.ACTIVE: "Containment active",
            ContainmentState.RECOVERY_PENDING: "Recovery in progress",
            ContainmentState.RECOVERED: "Containment released after recovery",
            ContainmentState.EXPIRED: "Containment expired",
        }
        return ContainmentStatus(
            containment_active=active,
            containment_id=containment.containment_id,
            status=containment.status,
            economic_value=str(containment.economic_state) if active else NORMAL_ECONOMIC_VALUE,
            expires_at=containment.expires_at,
            release_requirements=containment.recovery_protocol,
            investigation_status=INVESTIGATION_STATUS[containment.status],
            restored_value=containment.restored_value,
            message=messages[containment.status],
        )

    async def list_active(self) -> list[Containment]:
        active = await self.repository.list_containments(ContainmentState.ACTIVE)
        pending = await self.repository.list_containments(ContainmentState.RECOVERY_PENDING)
        return active + pending

    async def wait_for_background(self) -> None:
        """Wait for in-flight propagation tasks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self, timeout: float = 5.0) -> None:
        """Let in-flight propagation finish, then cancel whatever is left."""
        if self._background:
            _, pending = await asyncio.wait(list(self._background), timeout=timeout)
            for task in pending:
                task.cancel()
        await self.wait_for_background()

    # ── Internals ────────────────────────────────────────────────────────

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _drop_lock(self, key: str, lock: asyncio.Lock) -> None:
        if self._locks.get(key) is lock:
            del self._locks[key]

    @asynccontextmanager
    async def _entity(self, containment_id: str) -> AsyncIterator[Containment]:
        """
        Hold the containment lock and yield a fresh read.

        The lock is dropped once the containment is terminal.
        """
        lock = self._lock(containment_id)
        containment = None
        try:
            async with lock:
                containment = await self._require(containment_id)
                yield containment
        finally:
            if containment is None or containment.status.is_terminal:
                self._drop_lock(containment_id, lock)

    async def _require(self, containment_id: str) -> Containment:
        containment = await self.repository.get_containment(containment_id)
        if containment is None:
            raise NotFound(f"Containment not found: {containment_id}")
        return containment

    def _ensure_status(self, containment: Containment, expected: ContainmentState, operation: str) -> None:
        if containment.status != expected:
            raise InvalidTransition(
                f"Cannot {operation} containment in state {containment.status}",
                details={"containment_id": containment.containment_id, "status": str(containment.status)},
            )

    def _elapsed(self, containment: Containment) -> bool:
        return self.clock() > containment.expires_at

    async def _expire_locked(self, containment: Containment) -> bool:
        if containment.status != ContainmentState.ACTIVE or not self._elapsed(containment):
            return False
        containment.status = ContainmentState.EXPIRED
        containment.closed_at = self.clock()
        await self.repository.save_containment(containment)
        logger.info("containment_expired", containment_id=containment.containment_id)
        self._publish(EventKind.CONTAINMENT_EXPIRED, containment)
        return True

    async def _propagate(self, containment_id: str) -> None:
        snapshot = await self._require(containment_id)
        try:
            record = await self.propagator.propagate(snapshot)
        except Exception as e:
            logger.error("propagation_failed", containment_id=containment_id, error=str(e))
            record = PropagationRecord(status=PropagationStatus.FAILED)

        # Transitions may have landed while the propagator ran
        async with self._entity(containment_id) as containment:
            containment.propagation = record
            await self.repository.save_containment(containment)

        self._publish(
            EventKind.CONTAINMENT_PROPAGATED,
            containment,
            propagation=record.model_dump(mode="json"),
        )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _publish(self, kind: EventKind, containment: Containment, **extra) -> None:
        payload = {
            "containment_id": containment.containment_id,
            "analysis_id": containment.analysis_id,
            "transaction_id": containment.transaction_id,
            "wallet_address": containment.wallet_address,
            "status": str(containment.status),
            "severity": str(containment.severity),
            "economic_state": str(containment.economic_state),
        }
        payload.update(extra)
        self.event_bus.publish(kind, payload)


def _default_reason(assessment: RiskAssessment) -> str:
    patterns = ", ".join(sorted(assessment.pattern_matches)) or "elevated behavioural score"
    return f"{assessment.threat_level} threat: {patterns}"
