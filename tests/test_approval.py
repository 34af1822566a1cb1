"""Tests for resolving escalated decisions."""

import pytest
from prometheus_client import CollectorRegistry

from arbiter.audit import escalation_entry_id
from arbiter.bus import EventKind
from arbiter.config import ArbiterSettings
from arbiter.core import (
    ArbitrationDecision,
    ArbitrationOutcome,
    Proposal,
    ProposalStatus,
    SuppressionReason,
    create_proposal,
)
from arbiter.errors import InvalidStateError
from arbiter.runtime import ArbiterRuntime, create_runtime


def _tone(agent: str, value: str, confidence: float, **fields) -> Proposal:
    return create_proposal(
        agent,
        {
            "action_type": "apply_preference",
            "category": "communication",
            "key": "tone",
            "current_value": "encouraging",
            "new_value": value,
        },
        confidence_score=confidence,
        **fields,
    ).unwrap()


def _runtime() -> ArbiterRuntime:
    return create_runtime(settings=ArbiterSettings(), metrics_registry=CollectorRegistry())


async def _escalate(runtime: ArbiterRuntime) -> tuple[ArbitrationDecision, Proposal, Proposal]:
    risky = await runtime.arbitration.submit(_tone("CoachAgent", "direct", 0.9, risk_level="high"))
    calm = await runtime.arbitration.submit(_tone("LoggerAgent", "neutral", 0.6))
    decision = await runtime.arbitration.arbitrate_target(risky.target_ref.canonical_key)
    assert decision is not None
    assert decision.outcome == ArbitrationOutcome.ESCALATED
    return decision, risky, calm


class TestEscalationApproval:
    @pytest.mark.asyncio
    async def test_pending_lists_escalated_decisions(self) -> None:
        runtime = _runtime()
        decision, _, _ = await _escalate(runtime)

        pending = await runtime.approvals.pending()

        assert [d.id for d in pending] == [decision.id]

    @pytest.mark.asyncio
    async def test_approve_suggested_resolution_and_execute(self) -> None:
        runtime = _runtime()
        kinds: list[EventKind] = []

        async def record(event: object) -> None:
            kinds.append(event.event_kind)  # type: ignore[attr-defined]

        decision, risky, calm = await _escalate(runtime)
        runtime.dispatcher.subscribe_all(record)

        resolved, result = await runtime.approvals.approve(decision.id, approved_by="user")

        assert result is not None and result.executed
        assert resolved.outcome == ArbitrationOutcome.WINNER_SELECTED
        assert resolved.winning_proposal_id == risky.id
        assert resolved.approved_by == "user"
        assert resolved.executed
        assert resolved.suppression_for(calm.id).reason == SuppressionReason.LOST_PRIORITY

        proposals = runtime.repositories.proposals
        assert (await proposals.find_by_id(risky.id)).status == ProposalStatus.EXECUTED
        assert (await proposals.find_by_id(calm.id)).status == ProposalStatus.SUPPRESSED
        preference = await runtime.repositories.learning.get_preference("CoachAgent", "communication", "tone")
        assert preference.value == "direct"
        assert await runtime.audit.has_entry(escalation_entry_id(decision.id))
        assert kinds == [
            EventKind.ESCALATION_APPROVED,
            EventKind.ACTION_SUPPRESSED,
            EventKind.DECISION_EXECUTED,
        ]
        assert await runtime.approvals.pending() == []

    @pytest.mark.asyncio
    async def test_approve_other_proposal_without_executing(self) -> None:
        runtime = _runtime()
        decision, risky, calm = await _escalate(runtime)

        resolved, result = await runtime.approvals.approve(
            decision.id, approved_by="user", selected_proposal_id=calm.id, execute=False
        )

        assert result is None
        assert resolved.winning_proposal_id == calm.id
        assert resolved.can_execute
        assert (await runtime.repositories.proposals.find_by_id(calm.id)).status == ProposalStatus.WON
        assert (await runtime.repositories.proposals.find_by_id(risky.id)).status == ProposalStatus.SUPPRESSED

    @pytest.mark.asyncio
    async def test_selected_proposal_must_be_held(self) -> None:
        runtime = _runtime()
        decision, _, _ = await _escalate(runtime)

        with pytest.raises(InvalidStateError):
            await runtime.approvals.approve(decision.id, approved_by="user", selected_proposal_id="other")

    @pytest.mark.asyncio
    async def test_reject_vetoes_every_held_proposal(self) -> None:
        runtime = _runtime()
        rejected_events: list[object] = []

        async def on_rejected(event: object) -> None:
            rejected_events.append(event)

        runtime.dispatcher.subscribe(EventKind.ESCALATION_REJECTED, on_rejected)
        decision, risky, calm = await _escalate(runtime)

        resolved = await runtime.approvals.reject(decision.id, rejected_by="user", reason="keep my tone")

        assert resolved.outcome == ArbitrationOutcome.ALL_VETOED
        assert set(resolved.vetoed_proposal_ids) == {risky.id, calm.id}
        assert not resolved.can_execute
        for proposal_id in (risky.id, calm.id):
            stored = await runtime.repositories.proposals.find_by_id(proposal_id)
            assert stored.status == ProposalStatus.VETOED
        assert len(rejected_events) == 1

        with pytest.raises(InvalidStateError):
            await runtime.approvals.approve(decision.id, approved_by="user")

    @pytest.mark.asyncio
    async def test_only_escalated_decisions_can_be_approved(self) -> None:
        runtime = _runtime()
        proposal = await runtime.arbitration.submit(_tone("CoachAgent", "direct", 0.9))
        decision = await runtime.arbitration.arbitrate_target(proposal.target_ref.canonical_key)

        with pytest.raises(InvalidStateError):
            await runtime.approvals.approve(decision.id, approved_by="user")
        with pytest.raises(InvalidStateError):
            await runtime.approvals.reject(decision.id, rejected_by="user")
