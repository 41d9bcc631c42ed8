"""
Containment State Machine Tests.
"""

import asyncio
from datetime import timedelta

import pytest

from aeges.containment.state_machine import (
    ContainmentStateMachine,
    economic_state_for,
    recovery_protocol_for,
)
from aeges.exceptions import InvalidTransition, NotFound, ValidationError
from aeges.schemas.assessment import RecommendedAction, RiskAssessment, ThreatLevel
from aeges.schemas.containment import ContainmentState, EconomicState, PropagationStatus
from aeges.schemas.events import EventKind

from tests.fakes import CountingPropagator, make_transaction

ROSTER = ["exchange_admin", "compliance_officer", "technical_validator", "security_auditor", "network_arbiter"]


def make_assessment(tx, level=ThreatLevel.CRITICAL, action=RecommendedAction.CONTAIN, analysis_id="AEGES_1"):
    return RiskAssessment(
        analysis_id=analysis_id,
        transaction_id=tx.transaction_id,
        threat_level=level,
        behavioral_score=0.9,
        base_score=0.9,
        pattern_matches=frozenset({"flash_drain"}),
        recommended_action=action,
        created_at=tx.timestamp,
    )


class TestProtocolRules:

    @pytest.mark.parametrize(
        "level,state",
        [
            (ThreatLevel.CRITICAL, EconomicState.NEUTRALIZED),
            (ThreatLevel.HIGH, EconomicState.QUARANTINED),
            (ThreatLevel.MEDIUM, EconomicState.QUARANTINED),
            (ThreatLevel.LOW, EconomicState.FROZEN),
        ],
    )
    def test_economic_state(self, level, state):
        assert economic_state_for(level) == state

    @pytest.mark.parametrize(
        "level,count,approvals,window",
        [
            (ThreatLevel.CRITICAL, 5, 3, timedelta(days=7)),
            (ThreatLevel.HIGH, 3, 2, timedelta(days=3)),
            (ThreatLevel.MEDIUM, 2, 2, timedelta(days=1)),
            (ThreatLevel.LOW, 2, 2, timedelta(hours=12)),
        ],
    )
    def test_recovery_protocol(self, level, count, approvals, window):
        protocol = recovery_protocol_for(level, ROSTER)
        assert len(protocol.stakeholders) == count
        assert protocol.required_approvals == approvals
        assert protocol.resolution_window == window
        assert protocol.required_evidence == [
            "identity_verification",
            "asset_ownership",
            "transaction_legitimacy",
        ]

    def test_roster_too_small(self):
        with pytest.raises(ValidationError):
            recovery_protocol_for(ThreatLevel.CRITICAL, ROSTER[:2])


@pytest.mark.asyncio
class TestContainmentLifecycle:

    async def test_contain_activates(self, state_machine, event_bus, critical_tx):
        activated = []
        event_bus.subscribe(EventKind.CONTAINMENT_ACTIVATED, activated.append)

        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)
        await event_bus.drain()

        assert containment.status == ContainmentState.ACTIVE
        assert containment.economic_state == EconomicState.NEUTRALIZED
        assert containment.containment_id.startswith("CONT_")
        assert containment.wallet_address == "0xdrainer"
        assert containment.expires_at - containment.activated_at == timedelta(days=7)
        assert activated[0].payload["containment_id"] == containment.containment_id

    async def test_contain_is_idempotent_per_analysis(self, state_machine, critical_tx):
        assessment = make_assessment(critical_tx)
        first, second = await asyncio.gather(
            state_machine.contain(assessment, critical_tx),
            state_machine.contain(assessment, critical_tx),
        )
        assert first.containment_id == second.containment_id
        assert len(await state_machine.repository.list_containments()) == 1

    async def test_contain_requires_contain_action(self, state_machine, critical_tx):
        assessment = make_assessment(critical_tx, level=ThreatLevel.MEDIUM, action=RecommendedAction.MONITOR)
        with pytest.raises(InvalidTransition):
            await state_machine.contain(assessment, critical_tx)

    async def test_contain_rejects_mismatched_transaction(self, state_machine, critical_tx, low_risk_tx):
        with pytest.raises(ValidationError):
            await state_machine.contain(make_assessment(critical_tx), low_risk_tx)

    async def test_caller_copies_do_not_change_state(self, state_machine, critical_tx):
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)
        containment.status = ContainmentState.RECOVERED
        containment.economic_state = EconomicState.FROZEN

        status = await state_machine.status(containment_id=containment.containment_id)
        assert status.status == ContainmentState.ACTIVE
        assert status.economic_value == "neutralized"

        fetched = await state_machine.get(containment.containment_id)
        fetched.status = ContainmentState.EXPIRED
        assert (await state_machine.get(containment.containment_id)).status == ContainmentState.ACTIVE

    async def test_propagation_recorded_in_background(self, state_machine, event_bus, propagator, critical_tx):
        propagated = []
        event_bus.subscribe(EventKind.CONTAINMENT_PROPAGATED, propagated.append)

        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)
        await state_machine.wait_for_background()
        await event_bus.drain()

        stored = await state_machine.get(containment.containment_id)
        assert propagator.seen == [containment.containment_id]
        assert stored.propagation.status == PropagationStatus.COMPLETED
        assert stored.propagation.participants_notified == 45
        assert propagated[0].payload["propagation"]["participants_total"] == 47

    async def test_propagation_failure_is_recorded(self, repository, event_bus, clock, critical_tx):
        machine = ContainmentStateMachine(
            repository,
            event_bus,
            propagator=CountingPropagator(error=ConnectionError("network down")),
            stakeholder_roster=ROSTER,
            clock=clock,
        )
        containment = await machine.contain(make_assessment(critical_tx), critical_tx)
        await machine.wait_for_background()

        stored = await machine.get(containment.containment_id)
        assert stored.propagation.status == PropagationStatus.FAILED
        assert stored.status == ContainmentState.ACTIVE

    async def test_propagation_keeps_concurrent_transitions(self, repository, event_bus, clock, critical_tx):
        gate = asyncio.Event()
        machine = ContainmentStateMachine(
            repository,
            event_bus,
            propagator=CountingPropagator(gate=gate),
            stakeholder_roster=ROSTER,
            clock=clock,
        )
        containment = await machine.contain(make_assessment(critical_tx), critical_tx)
        await asyncio.sleep(0)

        await machine.begin_recovery(containment.containment_id, "REC_1")
        gate.set()
        await machine.wait_for_background()

        stored = await machine.get(containment.containment_id)
        assert stored.status == ContainmentState.RECOVERY_PENDING
        assert stored.active_recovery_id == "REC_1"
        assert stored.propagation.status == PropagationStatus.COMPLETED

    async def test_close_lets_pending_propagation_finish(self, state_machine, propagator, critical_tx):
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)
        await state_machine.close()

        assert propagator.seen == [containment.containment_id]
        stored = await state_machine.get(containment.containment_id)
        assert stored.propagation.status == PropagationStatus.COMPLETED

    async def test_close_cancels_stuck_propagation(self, repository, event_bus, clock, critical_tx):
        machine = ContainmentStateMachine(
            repository,
            event_bus,
            propagator=CountingPropagator(gate=asyncio.Event()),
            stakeholder_roster=ROSTER,
            clock=clock,
        )
        containment = await machine.contain(make_assessment(critical_tx), critical_tx)
        await machine.close(timeout=0.01)

        stored = await machine.get(containment.containment_id)
        assert stored.propagation.status == PropagationStatus.PENDING

    async def test_escalate_upward_only(self, state_machine):
        tx = make_transaction(transaction_id="tx_high")
        containment = await state_machine.contain(
            make_assessment(tx, level=ThreatLevel.HIGH, analysis_id="AEGES_high"), tx
        )
        assert containment.economic_state == EconomicState.QUARANTINED

        escalated = await state_machine.escalate(containment.containment_id, ThreatLevel.CRITICAL)
        assert escalated.economic_state == EconomicState.NEUTRALIZED
        assert escalated.severity == ThreatLevel.CRITICAL

        with pytest.raises(InvalidTransition):
            await state_machine.escalate(containment.containment_id, ThreatLevel.HIGH)
        stored = await state_machine.get(containment.containment_id)
        assert stored.economic_state == EconomicState.NEUTRALIZED
        assert stored.severity == ThreatLevel.CRITICAL

    async def test_not_expired_at_exactly_max_duration(self, state_machine, clock, critical_tx):
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)

        clock.advance(days=7)
        assert await state_machine.sweep_expired() == []
        assert (await state_machine.status(containment_id=containment.containment_id)).containment_active

    async def test_expires_after_max_duration(self, state_machine, event_bus, clock, critical_tx):
        """ACTIVE with no recovery ⇒ EXPIRED after the maximum duration."""
        expired = []
        event_bus.subscribe(EventKind.CONTAINMENT_EXPIRED, expired.append)
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)

        clock.advance(days=6, hours=23)
        assert await state_machine.sweep_expired() == []

        clock.advance(hours=1, seconds=1)
        assert await state_machine.sweep_expired() == [containment.containment_id]
        await event_bus.drain()

        stored = await state_machine.get(containment.containment_id)
        assert stored.status == ContainmentState.EXPIRED
        assert stored.closed_at == clock.now
        assert len(expired) == 1

        # Terminal: no further transitions
        with pytest.raises(InvalidTransition):
            await state_machine.begin_recovery(containment.containment_id, "REC_x")

    async def test_recovery_transitions(self, state_machine, critical_tx):
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)
        cid = containment.containment_id

        pending = await state_machine.begin_recovery(cid, "REC_1")
        assert pending.status == ContainmentState.RECOVERY_PENDING
        assert pending.active_recovery_id == "REC_1"

        with pytest.raises(InvalidTransition):
            await state_machine.begin_recovery(cid, "REC_2")
        assert (await state_machine.get(cid)).active_recovery_id == "REC_1"

        reverted = await state_machine.revert_recovery(cid)
        assert reverted.status == ContainmentState.ACTIVE
        assert reverted.active_recovery_id is None

        await state_machine.begin_recovery(cid, "REC_3")
        recovered = await state_machine.complete_recovery(cid)
        assert recovered.status == ContainmentState.RECOVERED
        assert recovered.restored_value == critical_tx.amount

    async def test_revert_after_max_duration_expires(self, state_machine, clock, critical_tx):
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)
        await state_machine.begin_recovery(containment.containment_id, "REC_1")

        clock.advance(days=8)
        reverted = await state_machine.revert_recovery(containment.containment_id)

        assert reverted.status == ContainmentState.EXPIRED

    async def test_complete_requires_pending_recovery(self, state_machine, critical_tx):
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)
        with pytest.raises(InvalidTransition):
            await state_machine.complete_recovery(containment.containment_id)
        assert (await state_machine.get(containment.containment_id)).status == ContainmentState.ACTIVE

    async def test_unknown_containment(self, state_machine):
        with pytest.raises(NotFound):
            await state_machine.begin_recovery("CONT_missing", "REC_1")
        assert "CONT_missing" not in state_machine._locks

    async def test_terminal_containment_releases_lock(self, state_machine, critical_tx):
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)
        cid = containment.containment_id
        await state_machine.wait_for_background()

        await state_machine.begin_recovery(cid, "REC_1")
        assert cid in state_machine._locks

        await state_machine.complete_recovery(cid)
        assert cid not in state_machine._locks
        assert f"analysis:{containment.analysis_id}" not in state_machine._locks


@pytest.mark.asyncio
class TestContainmentStatus:

    async def test_status_by_any_identifier(self, state_machine, critical_tx):
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)

        by_id = await state_machine.status(containment_id=containment.containment_id)
        by_tx = await state_machine.status(transaction_id=critical_tx.transaction_id)
        by_wallet = await state_machine.status(wallet_address=critical_tx.wallet_address)

        assert by_id == by_tx == by_wallet
        assert by_id.containment_active
        assert by_id.economic_value == "neutralized"
        assert by_id.investigation_status == "initiated"
        assert by_id.release_requirements.required_approvals == 3

    async def test_repeated_queries_identical(self, state_machine, clock, critical_tx):
        """Repeated status queries on an unmutated containment are identical."""
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)
        first = await state_machine.status(containment_id=containment.containment_id)
        clock.advance(hours=3)
        second = await state_machine.status(containment_id=containment.containment_id)
        assert first == second

    async def test_no_containment(self, state_machine):
        status = await state_machine.status(wallet_address="0xnobody")
        assert not status.containment_active
        assert status.economic_value == "normal"
        assert status.message == "No active containment found"

    async def test_recovered_reports_normal(self, state_machine, critical_tx):
        containment = await state_machine.contain(make_assessment(critical_tx), critical_tx)
        await state_machine.begin_recovery(containment.containment_id, "REC_1")
        await state_machine.complete_recovery(containment.containment_id)

        status = await state_machine.status(containment_id=containment.containment_id)
        assert not status.containment_active
        assert status.economic_value == "normal"
        assert status.investigation_status == "resolved"
        assert status.restored_value == critical_tx.amount

    async def test_identifier_required(self, state_machine):
        with pytest.raises(ValidationError):
            await state_machine.status()
