"""AEGES Repository - storage for assessments, containments and recoveries.

Injected into the engine, state machine and recovery workflow so that every
component reads and writes the same history.

Implementations:
- InMemoryRepository: process-local dictionaries (default)
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import structlog

from aeges.schemas.assessment import RiskAssessment
from aeges.schemas.containment import Containment, ContainmentState
from aeges.schemas.recovery import RecoveryRequest, RecoveryStatus

logger = structlog.get_logger(__name__)


# ============================================================================
# ABSTRACT REPOSITORY INTERFACE
# ============================================================================


class AegesRepository(ABC):
    """Abstract interface for AEGES history storage."""

    # Assessments are append-only

    @abstractmethod
    async def add_assessment(self, assessment: RiskAssessment) -> RiskAssessment:
        """Store an assessment; returns the existing one for a known transaction."""

    @abstractmethod
    async def get_assessment(self, analysis_id: str) -> Optional[RiskAssessment]:
        """Get an assessment by analysis ID."""

    @abstractmethod
    async def find_assessment_by_transaction(self, transaction_id: str) -> Optional[RiskAssessment]:
        """Get the assessment produced for a transaction."""

    @abstractmethod
    async def list_assessments(self, limit: int = 100) -> list[RiskAssessment]:
        """Most recent assessments, oldest first."""

    # Containments

    @abstractmethod
    async def save_containment(self, containment: Containment) -> Containment:
        """Insert or replace a containment."""

    @abstractmethod
    async def get_containment(self, containment_id: str) -> Optional[Containment]:
        """Get a containment by ID."""

    @abstractmethod
    async def find_containment_by_analysis(self, analysis_id: str) -> Optional[Containment]:
        """Get the containment created for an analysis."""

    @abstractmethod
    async def find_containment_by_transaction(self, transaction_id: str) -> Optional[Containment]:
        """Get the containment created for a transaction."""

    @abstractmethod
    async def find_containment_by_wallet(self, wallet_address: str) -> Optional[Containment]:
        """Get the most recent containment for a wallet."""

    @abstractmethod
    async def list_containments(self, status: Optional[ContainmentState] = None) -> list[Containment]:
        """List containments, optionally filtered by status."""

    # Recoveries

    @abstractmethod
    async def save_recovery(self, request: RecoveryRequest) -> RecoveryRequest:
        """Insert or replace a recovery request."""

    @abstractmethod
    async def get_recovery(self, recovery_id: str) -> Optional[RecoveryRequest]:
        """Get a recovery request by ID."""

    @abstractmethod
    async def list_recoveries(self, status: Optional[RecoveryStatus] = None) -> list[RecoveryRequest]:
        """List recovery requests, optionally filtered by status."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove all stored history."""


# ============================================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================================


class InMemoryRepository(AegesRepository):
    """
    Dictionary-backed repository.

    Writes run under one asyncio.Lock. Containments and recovery requests are
    copied in and out, so only a save changes stored state.
    """

    def __init__(self):
        self._assessments: dict[str, RiskAssessment] = {}
        self._assessments_by_tx: dict[str, str] = {}
        self._containments: dict[str, Containment] = {}
        self._containments_by_analysis: dict[str, str] = {}
        self._containments_by_tx: dict[str, str] = {}
        self._containments_by_wallet: dict[str, str] = {}
        self._recoveries: dict[str, RecoveryRequest] = {}
        self._lock = asyncio.Lock()

    async def add_assessment(self, assessment: RiskAssessment) -> RiskAssessment:
        async with self._lock:
            existing_id = self._assessments_by_tx.get(assessment.transaction_id)
            if existing_id is not None:
                return self._assessments[existing_id]
            self._assessments[assessment.analysis_id] = assessment
            self._assessments_by_tx[assessment.transaction_id] = assessment.analysis_id
        logger.debug(
            "assessment_stored",
            analysis_id=assessment.analysis_id,
            transaction_id=assessment.transaction_id,
        )
        return assessment

    async def get_assessment(self, analysis_id: str) -> Optional[RiskAssessment]:
        return self._assessments.get(analysis_id)

    async def find_assessment_by_transaction(self, transaction_id: str) -> Optional[RiskAssessment]:
        analysis_id = self._assessments_by_tx.get(transaction_id)
        return self._assessments.get(analysis_id) if analysis_id else None

    async def list_assessments(self, limit: int = 100) -> list[RiskAssessment]:
        items = list(self._assessments.values())
        return items[-limit:] if limit > 0 else []

    async def save_containment(self, containment: Containment) -> Containment:
        async with self._lock:
            self._containments[containment.containment_id] = containment.model_copy(deep=True)
            self._containments_by_analysis[containment.analysis_id] = containment.containment_id
            self._containments_by_tx[containment.transaction_id] = containment.containment_id
            self._containments_by_wallet[containment.wallet_address] = containment.containment_id
        return containment

    async def get_containment(self, containment_id: str) -> Optional[Containment]:
        return _copy(self._containments.get(containment_id))

    async def find_containment_by_analysis(self, analysis_id: str) -> Optional[Containment]:
        return self._lookup(self._containments_by_analysis, analysis_id)

    async def find_containment_by_transaction(self, transaction_id: str) -> Optional[Containment]:
        return self._lookup(self._containments_by_tx, transaction_id)

    async def find_containment_by_wallet(self, wallet_address: str) -> Optional[Containment]:
        return self._lookup(self._containments_by_wallet, wallet_address)

    async def list_containments(self, status: Optional[ContainmentState] = None) -> list[Containment]:
        return [
            c.model_copy(deep=True) for c in self._containments.values()
            if status is None or c.status == status
        ]

    async def save_recovery(self, request: RecoveryRequest) -> RecoveryRequest:
        async with self._lock:
            self._recoveries[request.recovery_id] = request.model_copy(deep=True)
        return request

    async def get_recovery(self, recovery_id: str) -> Optional[RecoveryRequest]:
        return _copy(self._recoveries.get(recovery_id))

    async def list_recoveries(self, status: Optional[RecoveryStatus] = None) -> list[RecoveryRequest]:
        return [
            r.model_copy(deep=True) for r in self._recoveries.values()
            if status is None or r.status == status
        ]

    async def clear(self) -> None:
        async with self._lock:
            self._assessments.clear()
            self._assessments_by_tx.clear()
            self._containments.clear()
            self._containments_by_analysis.clear()
            self._containments_by_tx.clear()
            self._containments_by_wallet.clear()
            self._recoveries.clear()
        logger.info("repository_cleared")

    def _lookup(self, index: dict[str, str], key: str) -> Optional[Containment]:
        containment_id = index.get(key)
        return _copy(self._containments.get(containment_id)) if containment_id else None


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None
