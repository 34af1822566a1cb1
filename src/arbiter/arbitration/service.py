"""
ArbitrationService: proposal intake and per-target arbitration.

Work on one canonical target key is serialized by an ``anyio.Lock``; other
targets proceed concurrently. The external confidence scorer is awaited
outside the lock, and a proposal only becomes eligible once scored.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import anyio
import structlog

from arbiter.arbitration.commit import DecisionCommitter
from arbiter.arbitration.detector import ConflictDetector
from arbiter.arbitration.engine import ArbitrationEngine
from arbiter.audit import decision_entry
from arbiter.bus.events import (
    ActionSuppressed,
    AgentConflictDetected,
    ArbitrationEscalated,
    ArbitrationResolved,
    Event,
    EventDispatcher,
    ProposalSummary,
)
from arbiter.core.decision import ArbitrationDecision, Conflict
from arbiter.core.policy import ArbitrationPolicy, fallback_policy
from arbiter.core.proposal import Proposal, create_proposal
from arbiter.core.types import ArbitrationOutcome, TargetType
from arbiter.errors import NotFoundError, Result
from arbiter.locks import KeyedLocks
from arbiter.observability import ObservabilityContext
from arbiter.ports import ConfidenceScorer, PolicyRepository, ProposalRepository

logger = structlog.get_logger()


@dataclass
class ArbitrationStats:
    """Counts since the service was created."""

    proposals_submitted: int = 0
    proposals_scored: int = 0
    scoring_failures: int = 0
    conflicts_detected: int = 0
    decisions_made: int = 0
    escalations: int = 0
    by_outcome: dict[str, int] = field(default_factory=dict)


class ArbitrationService:
    """
    Accepts agent proposals and arbitrates them target by target.

    Each call to ``arbitrate_target`` rolls forward any interrupted commit
    for the target, then runs detection, policy resolution, the engine and
    the atomic commit under the target's lock. Events are published once
    the lock is released.
    """

    def __init__(
        self,
        proposals: ProposalRepository,
        policies: PolicyRepository,
        committer: DecisionCommitter,
        dispatcher: EventDispatcher,
        observability: ObservabilityContext | None = None,
        detector: ConflictDetector | None = None,
        engine: ArbitrationEngine | None = None,
        scorer: ConfidenceScorer | None = None,
        fallback: ArbitrationPolicy | None = None,
    ) -> None:
        self._proposals = proposals
        self._policies = policies
        self._committer = committer
        self._dispatcher = dispatcher
        self._observability = observability or ObservabilityContext()
        self._detector = detector or ConflictDetector()
        self._engine = engine or ArbitrationEngine()
        self._scorer = scorer
        self._fallback = fallback or fallback_policy()
        self._locks = KeyedLocks()
        self._stats = ArbitrationStats()
        self._log = logger.bind(component="arbitration_service")

    @property
    def engine(self) -> ArbitrationEngine:
        return self._engine

    def get_stats(self) -> ArbitrationStats:
        return self._stats

    async def propose(
        self,
        agent_name: str,
        action: Any,
        **fields: Any,
    ) -> Result[Proposal]:
        """Validate and submit a proposal built from raw fields."""
        result = create_proposal(agent_name, action, **fields)
        if result.is_ok:
            await self.submit(result.unwrap())
        else:
            self._log.warning("proposal_rejected", agent=agent_name, errors=list(result.errors))
        return result

    async def submit(self, proposal: Proposal) -> Proposal:
        """Store a proposal and, if unscored and a scorer is configured, score it."""
        key = proposal.target_ref.canonical_key
        async with self._locks.hold(key):
            await self._proposals.save(proposal)
        self._stats.proposals_submitted += 1
        self._log.info(
            "proposal_submitted",
            proposal_id=proposal.id,
            agent=proposal.agent_name,
            action_type=proposal.action_type.value,
            target=key,
        )

        if proposal.is_scored or self._scorer is None:
            return proposal

        try:
            confidence = await self._scorer.score(proposal)
        except Exception:
            self._stats.scoring_failures += 1
            self._log.exception("proposal_scoring_failed", proposal_id=proposal.id)
            raise
        return await self.apply_score(proposal.id, confidence)

    async def apply_score(self, proposal_id: str, confidence: float) -> Proposal:
        """Attach an externally computed confidence score."""
        proposal = await self._proposals.find_by_id(proposal_id)
        if proposal is None:
            raise NotFoundError("proposal", proposal_id)

        async with self._locks.hold(proposal.target_ref.canonical_key):
            current = await self._proposals.find_by_id(proposal_id)
            if current is None:
                raise NotFoundError("proposal", proposal_id)
            scored = current.with_score(confidence)
            await self._proposals.save(scored)

        self._stats.proposals_scored += 1
        self._log.debug("proposal_scored", proposal_id=proposal_id, confidence=scored.confidence)
        return scored

    async def resolve_policy(self, proposals: Sequence[Proposal]) -> ArbitrationPolicy:
        """Preference scope, then agent scope, then the default, then the fallback."""
        if not proposals:
            return await self._policies.find_default() or self._fallback

        target = proposals[0].target_ref
        if target.type == TargetType.PREFERENCE:
            policy = await self._policies.find_for_preference(target.id)
            if policy is not None:
                return policy

        seen: set[str] = set()
        for proposal in sorted(proposals, key=lambda p: (p.created_at, p.id)):
            if proposal.agent_name in seen:
                continue
            seen.add(proposal.agent_name)
            policy = await self._policies.find_for_agent(proposal.agent_name)
            if policy is not None:
                return policy

        return await self._policies.find_default() or self._fallback

    async def arbitrate_target(self, target_key: str) -> ArbitrationDecision | None:
        """Arbitrate the eligible proposals for one target. None if there are none."""
        async with self._locks.hold(target_key):
            await self._committer.replay_pending(target_key)
            pending = await self._proposals.find_pending_for_target(target_key)
            detection = self._detector.detect(pending)
            if not detection.all:
                return None

            conflict = detection.all[0]
            contenders = [p for p in pending if p.id in conflict.proposal_ids]
            policy = await self.resolve_policy(contenders)
            decision = self._engine.decide(conflict, contenders, policy)

            winner = next((p for p in contenders if p.id == decision.winning_proposal_id), None)
            await self._committer.commit(decision, decision_entry(decision, winner), conflict)

        self._record(conflict, decision)
        await self._publish(conflict, contenders, decision)
        return decision

    async def arbitrate_pending(self) -> list[ArbitrationDecision]:
        """Arbitrate every target with eligible proposals, targets in parallel."""
        pending = await self._proposals.find_pending()
        keys = sorted({p.target_ref.canonical_key for p in pending if p.is_eligible})
        decisions: dict[str, ArbitrationDecision] = {}

        async def run(key: str) -> None:
            decision = await self.arbitrate_target(key)
            if decision is not None:
                decisions[key] = decision

        async with anyio.create_task_group() as tg:
            for key in keys:
                tg.start_soon(run, key)

        self._log.info("arbitration_pass_complete", targets=len(keys), decisions=len(decisions))
        return [decisions[k] for k in keys if k in decisions]

    def _record(self, conflict: Conflict, decision: ArbitrationDecision) -> None:
        if not conflict.is_singleton:
            self._stats.conflicts_detected += 1
            self._observability.record_conflict_detected()

        outcome = decision.outcome.value
        self._stats.decisions_made += 1
        self._stats.by_outcome[outcome] = self._stats.by_outcome.get(outcome, 0) + 1
        self._observability.record_conflict_resolved(outcome)
        if decision.outcome == ArbitrationOutcome.ESCALATED and decision.escalation_reason:
            self._stats.escalations += 1
            self._observability.record_escalation(decision.escalation_reason.value)

    async def _publish(
        self,
        conflict: Conflict,
        proposals: Sequence[Proposal],
        decision: ArbitrationDecision,
    ) -> None:
        by_id = {p.id: p for p in proposals}
        events: list[Event] = []

        if not conflict.is_singleton:
            events.append(
                AgentConflictDetected(
                    conflict_id=conflict.id,
                    target_key=conflict.target_ref.canonical_key,
                    conflict_type=conflict.conflict_type.value,
                    proposal_ids=tuple(sorted(conflict.proposal_ids)),
                    agent_names=tuple(sorted({p.agent_name for p in proposals})),
                )
            )

        if decision.outcome == ArbitrationOutcome.ESCALATED:
            suggested = by_id.get(decision.suggested_resolution_id or "")
            events.append(
                ArbitrationEscalated(
                    decision_id=decision.id,
                    conflict_id=conflict.id,
                    reason=decision.escalation_reason.value if decision.escalation_reason else "",
                    proposals=tuple(ProposalSummary.of(p) for p in proposals),
                    context_summary=decision.reasoning_summary,
                    suggested_resolution=ProposalSummary.of(suggested) if suggested else None,
                )
            )
        else:
            winner = by_id.get(decision.winning_proposal_id or "")
            events.append(
                ArbitrationResolved(
                    decision_id=decision.id,
                    conflict_id=conflict.id,
                    outcome=decision.outcome.value,
                    strategy=decision.strategy_used.value,
                    policy_id=decision.policy_id,
                    winning_proposal_id=decision.winning_proposal_id,
                    winning_agent=winner.agent_name if winner else None,
                    suppressed_proposal_ids=decision.suppressed_proposal_ids,
                    vetoed_proposal_ids=decision.vetoed_proposal_ids,
                    reasoning=decision.reasoning_summary,
                )
            )

        events.extend(suppression_events(decision, by_id))
        await self._dispatcher.publish_many(events, correlation_id=conflict.id)


def suppression_events(
    decision: ArbitrationDecision,
    proposals: dict[str, Proposal],
) -> list[ActionSuppressed]:
    """One ActionSuppressed per losing proposal."""
    winner = proposals.get(decision.winning_proposal_id or "")
    events = []
    for suppression in decision.suppressions:
        loser = proposals.get(suppression.proposal_id)
        comparison: dict[str, Any] = {}
        if winner is not None and loser is not None:
            comparison = {
                "winner_confidence": winner.confidence,
                "loser_confidence": loser.confidence,
                "winner_priority": winner.priority,
                "loser_priority": loser.priority,
            }
        events.append(
            ActionSuppressed(
                decision_id=decision.id,
                proposal_id=suppression.proposal_id,
                agent_name=suppression.agent_name,
                action_type=loser.action_type.value if loser else "",
                reason=suppression.reason.value,
                explanation=suppression.explanation,
                winning_proposal_id=decision.winning_proposal_id,
                winning_agent=winner.agent_name if winner else None,
                comparison=comparison,
                occurred_at=decision.resolved_at or datetime.now(UTC),
            )
        )
    return events
