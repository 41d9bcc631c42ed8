"""
Pytest Configuration and Fixtures.

Provides reusable fixtures for testing AEGES components.
"""

import os

import pytest

# Keep real credentials out of the test process
os.environ["XAI_API_KEY"] = ""
os.environ["OPENAI_API_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["ENVIRONMENT"] = "testing"

from aeges.containment.state_machine import ContainmentStateMachine  # noqa: E402
from aeges.engine.risk_engine import RiskAssessmentEngine  # noqa: E402
from aeges.recovery.workflow import RecoveryWorkflow  # noqa: E402
from aeges.schemas.transaction import TransactionRecord  # noqa: E402
from aeges.services.event_bus import EventBus  # noqa: E402
from aeges.services.repository import InMemoryRepository  # noqa: E402

from tests.fakes import CountingPropagator, ManualClock, make_transaction  # noqa: E402


# ============================================================================
# TRANSACTION FIXTURES
# ============================================================================


@pytest.fixture
def low_risk_tx() -> TransactionRecord:
    return make_transaction(transaction_id="tx_low")


@pytest.fixture
def critical_tx() -> TransactionRecord:
    return make_transaction(
        transaction_id="tx_critical",
        amount=2_100_000.0,
        origin="0xdrainer",
        history={"account_age_days": 0, "previous_transactions": 0},
    )


# ============================================================================
# COMPONENT FIXTURES
# ============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def engine() -> RiskAssessmentEngine:
    return RiskAssessmentEngine()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus(queue_size=100, history_size=100)


@pytest.fixture
def propagator() -> CountingPropagator:
    return CountingPropagator()


@pytest.fixture
def state_machine(repository, event_bus, propagator, clock) -> ContainmentStateMachine:
    return ContainmentStateMachine(
        repository,
        event_bus,
        propagator=propagator,
        stakeholder_roster=[
            "exchange_admin",
            "compliance_officer",
            "technical_validator",
            "security_auditor",
            "network_arbiter",
        ],
        clock=clock,
    )


@pytest.fixture
def workflow(repository, state_machine, event_bus, clock) -> RecoveryWorkflow:
    return RecoveryWorkflow(repository, state_machine, event_bus, clock=clock)
