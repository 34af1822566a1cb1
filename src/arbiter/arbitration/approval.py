"""
EscalationApprovalService: the human path out of an escalated decision.

Approval picks a winner among the held proposals (the advisory suggestion
by default) and suppresses the rest; rejection vetoes every held
proposal. Both rewrite the decision through the committer so the proposal
statuses and audit entry land together.
"""

from datetime import UTC, datetime

import structlog

from arbiter.arbitration.commit import DecisionCommitter
from arbiter.arbitration.execution import ExecutionGate, ExecutionResult
from arbiter.arbitration.service import suppression_events
from arbiter.audit import escalation_entry
from arbiter.bus.events import EscalationApproved, EscalationRejected, EventDispatcher
from arbiter.core.decision import ArbitrationDecision, DecisionFactor, Suppression
from arbiter.core.proposal import Proposal
from arbiter.core.types import ArbitrationOutcome, FactorImpact, SuppressionReason
from arbiter.errors import InvalidStateError, NotFoundError
from arbiter.ports import DecisionRepository, ProposalRepository

logger = structlog.get_logger()


class EscalationApprovalService:
    """Resolves escalated decisions on behalf of a human approver."""

    def __init__(
        self,
        decisions: DecisionRepository,
        proposals: ProposalRepository,
        committer: DecisionCommitter,
        dispatcher: EventDispatcher,
        gate: ExecutionGate | None = None,
    ) -> None:
        self._decisions = decisions
        self._proposals = proposals
        self._committer = committer
        self._dispatcher = dispatcher
        self._gate = gate
        self._log = logger.bind(component="escalation_approval")

    async def pending(self) -> list[ArbitrationDecision]:
        return await self._decisions.find_pending_approval()

    async def approve(
        self,
        decision_id: str,
        approved_by: str,
        selected_proposal_id: str | None = None,
        execute: bool = True,
    ) -> tuple[ArbitrationDecision, ExecutionResult | None]:
        decision = await self._load_escalated(decision_id)
        selected = selected_proposal_id or decision.suggested_resolution_id
        if selected is None or selected not in decision.awaiting_proposal_ids:
            raise InvalidStateError(f"proposal {selected} is not held by decision {decision_id}")

        held = {pid: await self._require_proposal(pid) for pid in decision.awaiting_proposal_ids}
        winner = held[selected]
        suppressions = [
            Suppression(
                proposal_id=p.id,
                agent_name=p.agent_name,
                reason=SuppressionReason.LOST_PRIORITY,
                explanation=f"{approved_by} approved {winner.agent_name} over {p.agent_name}",
            )
            for pid, p in sorted(held.items())
            if pid != selected
        ]
        now = datetime.now(UTC)
        resolved = decision.model_copy(
            update={
                "outcome": ArbitrationOutcome.WINNER_SELECTED,
                "winning_proposal_id": selected,
                "suppressed_proposal_ids": tuple(s.proposal_id for s in suppressions),
                "awaiting_proposal_ids": (),
                "suppressions": (*decision.suppressions, *suppressions),
                "decision_factors": (
                    *decision.decision_factors,
                    DecisionFactor(
                        proposal_id=selected,
                        agent_name=winner.agent_name,
                        factor="human_approval",
                        value=approved_by,
                        impact=FactorImpact.POSITIVE,
                    ),
                ),
                "requires_human_approval": False,
                "approved_by": approved_by,
                "resolved_at": now,
                "reasoning_summary": (
                    f"{decision.reasoning_summary} Approved by {approved_by}: "
                    f"{winner.agent_name} selected."
                ),
            }
        )
        await self._committer.commit(resolved, escalation_entry(resolved, approved_by, approved=True))
        self._log.info(
            "escalation_approved",
            decision_id=decision_id,
            approved_by=approved_by,
            selected=selected,
        )

        await self._dispatcher.publish(
            EscalationApproved(decision_id=decision_id, approved_by=approved_by, selected_proposal_id=selected),
            correlation_id=decision.conflict_id,
        )
        await self._dispatcher.publish_many(
            suppression_events(resolved, held), correlation_id=decision.conflict_id
        )

        result = None
        if execute and self._gate is not None:
            result = await self._gate.execute(decision_id)
            resolved = await self._decisions.find_by_id(decision_id) or resolved
        return resolved, result

    async def reject(self, decision_id: str, rejected_by: str, reason: str = "") -> ArbitrationDecision:
        decision = await self._load_escalated(decision_id)
        held = [await self._require_proposal(pid) for pid in decision.awaiting_proposal_ids]
        vetoes = [
            Suppression(
                proposal_id=p.id,
                agent_name=p.agent_name,
                reason=SuppressionReason.VETOED,
                explanation=f"Rejected by {rejected_by}" + (f": {reason}" if reason else ""),
            )
            for p in sorted(held, key=lambda p: p.id)
        ]
        now = datetime.now(UTC)
        resolved = decision.model_copy(
            update={
                "outcome": ArbitrationOutcome.ALL_VETOED,
                "vetoed_proposal_ids": (*decision.vetoed_proposal_ids, *(s.proposal_id for s in vetoes)),
                "awaiting_proposal_ids": (),
                "suppressions": (*decision.suppressions, *vetoes),
                "requires_human_approval": False,
                "approved_by": rejected_by,
                "resolved_at": now,
                "reasoning_summary": f"{decision.reasoning_summary} Rejected by {rejected_by}.",
            }
        )
        await self._committer.commit(
            resolved, escalation_entry(resolved, rejected_by, approved=False, note=reason)
        )
        self._log.info("escalation_rejected", decision_id=decision_id, rejected_by=rejected_by)
        await self._dispatcher.publish(
            EscalationRejected(decision_id=decision_id, rejected_by=rejected_by, reason=reason),
            correlation_id=decision.conflict_id,
        )
        return resolved

    async def _load_escalated(self, decision_id: str) -> ArbitrationDecision:
        decision = await self._decisions.find_by_id(decision_id)
        if decision is None:
            raise NotFoundError("decision", decision_id)
        if decision.outcome != ArbitrationOutcome.ESCALATED or not decision.requires_human_approval:
            raise InvalidStateError(f"decision {decision_id} is not awaiting approval")
        return decision

    async def _require_proposal(self, proposal_id: str) -> Proposal:
        proposal = await self._proposals.find_by_id(proposal_id)
        if proposal is None:
            raise NotFoundError("proposal", proposal_id)
        return proposal

