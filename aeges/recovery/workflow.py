"""
Recovery Workflow: verified, stakeholder-approved release of contained assets.

Lifecycle:
    initiate ──► PENDING ──(all checks completed + N approvals before deadline)──► APPROVED
                    │
                    ├── any check failed / reject() ──► REJECTED  (containment reverted)
                    └── deadline passed ────────────► EXPIRED   (containment reverted)

Checks move pending → in_progress → completed | failed. Terminal check states
never change. Approvals are unique per stakeholder and only count from the
containment's stakeholder roster.

Lock order is always recovery request first, then containment.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Mapping, Optional

import structlog

from aeges.containment.state_machine import ContainmentStateMachine, utcnow
from aeges.exceptions import (
    ExpiredConsensus,
    InvalidTransition,
    NotFound,
    StateError,
    ValidationError,
)
from aeges.ids import RECOVERY_PREFIX, generate_id
from aeges.schemas.containment import ContainmentState
from aeges.schemas.events import EventKind
from aeges.schemas.recovery import (
    CheckStatus,
    RecoveryRequest,
    RecoveryStatus,
    VerificationCheck,
)
from aeges.services.event_bus import EventBus
from aeges.services.repository import AegesRepository

logger = structlog.get_logger(__name__)

# Allowed check transitions
CHECK_TRANSITIONS: dict[CheckStatus, frozenset[CheckStatus]] = {
    CheckStatus.PENDING: frozenset({CheckStatus.IN_PROGRESS, CheckStatus.COMPLETED, CheckStatus.FAILED}),
    CheckStatus.IN_PROGRESS: frozenset({CheckStatus.COMPLETED, CheckStatus.FAILED}),
    CheckStatus.COMPLETED: frozenset(),
    CheckStatus.FAILED: frozenset(),
}

# Evidence item each check inspects
CHECK_EVIDENCE: dict[VerificationCheck, str] = {
    VerificationCheck.IDENTITY: "identity_verification",
    VerificationCheck.OWNERSHIP: "asset_ownership",
    VerificationCheck.LEGITIMACY: "transaction_legitimacy",
}


# ============================================================================
# VERIFIERS
# ============================================================================


class EvidenceVerifier(ABC):
    """Automated verification for one check."""

    @abstractmethod
    async def verify(self, request: RecoveryRequest) -> bool:
        """True when the claimant's evidence satisfies the check."""


class EvidencePresenceVerifier(EvidenceVerifier):
    """Passes when the matching evidence item was supplied and is truthy."""

    def __init__(self, check: VerificationCheck):
        self.check = check
        self.evidence_key = CHECK_EVIDENCE[check]

    async def verify(self, request: RecoveryRequest) -> bool:
        return bool(request.evidence.get(self.evidence_key))


def default_verifiers() -> dict[VerificationCheck, EvidenceVerifier]:
    return {check: EvidencePresenceVerifier(check) for check in VerificationCheck}


# ============================================================================
# WORKFLOW
# ============================================================================


class RecoveryWorkflow:
    """Owns every recovery request mutation."""

    def __init__(
        self,
        repository: AegesRepository,
        containment: ContainmentStateMachine,
        event_bus: EventBus,
        verifiers: Optional[Mapping[VerificationCheck, EvidenceVerifier]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.containment = containment
        self.event_bus = event_bus
        self.verifiers = dict(verifiers or {})
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()

    # ── Initiation ───────────────────────────────────────────────────────

    async def initiate(
        self,
        containment_id: str,
        claimant: str,
        evidence: Optional[dict[str, Any]] = None,
    ) -> RecoveryRequest:
        """
        Open a recovery against an ACTIVE containment.

        Raises:
            ValidationError: missing claimant.
            NotFound: unknown containment.
            InvalidTransition: containment is not ACTIVE.
        """
        if not claimant or not claimant.strip():
            raise ValidationError("Recovery claimant is required")

        await self.containment.expire_if_elapsed(containment_id)
        containment = await self.containment.get(containment_id)
        if containment.status != ContainmentState.ACTIVE:
            raise InvalidTransition(
                f"Recovery requires an active containment, found {containment.status}",
                details={"containment_id": containment_id, "status": str(containment.status)},
            )

        now = self.clock()
        protocol = containment.recovery_protocol
        request = RecoveryRequest(
            recovery_id=generate_id(RECOVERY_PREFIX),
            containment_id=containment_id,
            claimant=claimant.strip(),
            evidence=dict(evidence or {}),
            stakeholders=list(protocol.stakeholders),
            required_approvals=protocol.required_approvals,
            deadline=now + protocol.resolution_window,
            initiated_at=now,
        )

        # Fails if another recovery got there first
        await self.containment.begin_recovery(containment_id, request.recovery_id)
        await self.repository.save_recovery(request)

        logger.info(
            "recovery_initiated",
            recovery_id=request.recovery_id,
            containment_id=containment_id,
            required_approvals=request.required_approvals,
            deadline=request.deadline.isoformat(),
        )
        self._publish(EventKind.RECOVERY_INITIATED, request, claimant=request.claimant)

        for check, verifier in self.verifiers.items():
            self._spawn(self._run_verifier(request.recovery_id, check, verifier))
        return request

    # ── Verification ─────────────────────────────────────────────────────

    async def record_verification(
        self, recovery_id: str, check: VerificationCheck, status: CheckStatus
    ) -> RecoveryRequest:
        """
        Advance one check. A failed check rejects the whole request.

        Raises:
            InvalidTransition: request closed, or check transition not allowed.
            ExpiredConsensus: deadline passed (request is expired first).
        """
        check = VerificationCheck(check)
        status = CheckStatus(status)
        async with self._request(recovery_id) as request:
            await self._guard_open(request)

            current = request.checks[check]
            if status not in CHECK_TRANSITIONS[current]:
                raise InvalidTransition(
                    f"Check {check} cannot move from {current} to {status}",
                    details={"recovery_id": recovery_id},
                )
            request.checks[check] = status
            await self.repository.save_recovery(request)

            logger.info("recovery_verification", recovery_id=recovery_id, check=str(check), status=str(status))
            self._publish(EventKind.RECOVERY_VERIFICATION, request, check=str(check), check_status=str(status))

            if status == CheckStatus.FAILED:
                await self._reject_locked(request, f"{check} verification failed")
            else:
                await self._try_complete_locked(request)
            return request

    # ── Approval ─────────────────────────────────────────────────────────

    async def approve(self, recovery_id: str, stakeholder: str) -> RecoveryRequest:
        """
        Record one stakeholder approval. Duplicates are ignored.

        Raises:
            ValidationError: stakeholder is not on the roster.
            ExpiredConsensus: deadline passed (request is expired first).
            InvalidTransition: request already closed.
        """
        async with self._request(recovery_id) as request:
            if stakeholder not in request.stakeholders:
                raise ValidationError(
                    f"Stakeholder not authorised for this recovery: {stakeholder}",
                    details={"recovery_id": recovery_id},
                )
            await self._guard_open(request)

            if stakeholder in request.approvals:
                logger.debug("recovery_duplicate_approval", recovery_id=recovery_id, stakeholder=stakeholder)
                return request

            request.approvals.append(stakeholder)
            await self.repository.save_recovery(request)

            logger.info(
                "recovery_approval",
                recovery_id=recovery_id,
                stakeholder=stakeholder,
                approvals=len(request.approvals),
                required=request.required_approvals,
            )
            self._publish(
                EventKind.RECOVERY_APPROVAL,
                request,
                stakeholder=stakeholder,
                approvals=len(request.approvals),
            )
            await self._try_complete_locked(request)
            return request

    async def reject(self, recovery_id: str, reason: str) -> RecoveryRequest:
        async with self._request(recovery_id) as request:
            if request.status.is_terminal:
                raise InvalidTransition(
                    f"Recovery already {request.status}",
                    details={"recovery_id": recovery_id},
                )
            await self._reject_locked(request, reason or "rejected")
            return request

    # ── Expiry ───────────────────────────────────────────────────────────

    async def expire_overdue(self) -> list[str]:
        expired = []
        for pending in await self.repository.list_recoveries(RecoveryStatus.PENDING):
            async with self._request(pending.recovery_id) as request:
                if request.status == RecoveryStatus.PENDING and self._overdue(request):
                    await self._expire_locked(request)
                    expired.append(request.recovery_id)
        return expired

    # ── Queries ──────────────────────────────────────────────────────────

    async def get(self, recovery_id: str) -> RecoveryRequest:
        return await self._require(recovery_id)

    async def list_active(self) -> list[RecoveryRequest]:
        return await self.repository.list_recoveries(RecoveryStatus.PENDING)

    async def wait_for_background(self) -> None:
        """Wait for in-flight verifier tasks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self, timeout: float = 5.0) -> None:
        """Let in-flight verifiers finish, then cancel whatever is left."""
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

    @asynccontextmanager
    async def _request(self, recovery_id: str) -> AsyncIterator[RecoveryRequest]:
        """Hold the request lock and yield a fresh read. Closed requests drop their lock."""
        lock = self._lock(recovery_id)
        request = None
        try:
            async with lock:
                request = await self._require(recovery_id)
                yield request
        finally:
            if (request is None or request.status.is_terminal) and self._locks.get(recovery_id) is lock:
                del self._locks[recovery_id]

    async def _require(self, recovery_id: str) -> RecoveryRequest:
        request = await self.repository.get_recovery(recovery_id)
        if request is None:
            raise NotFound(f"Recovery not found: {recovery_id}")
        return request

    def _overdue(self, request: RecoveryRequest) -> bool:
        return self.clock() > request.deadline

    async def _guard_open(self, request: RecoveryRequest) -> None:
        if request.status == RecoveryStatus.PENDING and self._overdue(request):
            await self._expire_locked(request)
            raise ExpiredConsensus(
                f"Recovery deadline passed: {request.recovery_id}",
                details={"deadline": request.deadline.isoformat()},
            )
        if request.status == RecoveryStatus.EXPIRED:
            raise ExpiredConsensus(f"Recovery expired: {request.recovery_id}")
        if request.status.is_terminal:
            raise InvalidTransition(
                f"Recovery already {request.status}",
                details={"recovery_id": request.recovery_id},
            )

    async def _try_complete_locked(self, request: RecoveryRequest) -> None:
        if request.verification_failed or not request.verification_complete:
            return
        if not request.approvals_met or self._overdue(request):
            return

        containment = await self.containment.complete_recovery(request.containment_id)
        request.status = RecoveryStatus.APPROVED
        request.closed_at = self.clock()
        await self.repository.save_recovery(request)

        logger.info(
            "recovery_completed",
            recovery_id=request.recovery_id,
            containment_id=request.containment_id,
            restored_value=containment.restored_value,
        )
        self._publish(
            EventKind.RECOVERY_COMPLETED,
            request,
            restored_value=containment.restored_value,
        )

    async def _reject_locked(self, request: RecoveryRequest, reason: str) -> None:
        request.status = RecoveryStatus.REJECTED
        request.rejection_reason = reason
        request.closed_at = self.clock()
        await self.repository.save_recovery(request)
        await self._revert_containment(request)

        logger.info("recovery_rejected", recovery_id=request.recovery_id, reason=reason)
        self._publish(EventKind.RECOVERY_REJECTED, request, reason=reason)

    async def _expire_locked(self, request: RecoveryRequest) -> None:
        request.status = RecoveryStatus.EXPIRED
        request.closed_at = self.clock()
        await self.repository.save_recovery(request)
        await self._revert_containment(request)

        logger.info("recovery_expired", recovery_id=request.recovery_id)
        self._publish(EventKind.RECOVERY_EXPIRED, request)

    async def _revert_containment(self, request: RecoveryRequest) -> None:
        try:
            await self.containment.revert_recovery(request.containment_id)
        except InvalidTransition:
            # Containment already left RECOVERY_PENDING
            logger.warning(
                "recovery_revert_skipped",
                recovery_id=request.recovery_id,
                containment_id=request.containment_id,
            )

    async def _run_verifier(
        self, recovery_id: str, check: VerificationCheck, verifier: EvidenceVerifier
    ) -> None:
        try:
            await self.record_verification(recovery_id, check, CheckStatus.IN_PROGRESS)
            request = await self._require(recovery_id)
            try:
                passed = await verifier.verify(request)
            except Exception as e:
                logger.error("verifier_failed", recovery_id=recovery_id, check=str(check), error=str(e))
                passed = False
            await self.record_verification(
                recovery_id, check, CheckStatus.COMPLETED if passed else CheckStatus.FAILED
            )
        except StateError as e:
            # Request closed while the verifier ran
            logger.debug("verifier_result_discarded", recovery_id=recovery_id, check=str(check), kind=e.kind.value)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _publish(self, kind: EventKind, request: RecoveryRequest, **extra) -> None:
        payload = {
            "recovery_id": request.recovery_id,
            "containment_id": request.containment_id,
            "status": str(request.status),
        }
        payload.update(extra)
        self.event_bus.publish(kind, payload)
