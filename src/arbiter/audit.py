"""
AuditTrail: the append-only ledger behind analytics and explanations.

Entries for decisions, executions, escalation resolutions and adaptation
attempts use ids derived from their subject, so recording the same fact
twice is detected and replays stay idempotent.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from arbiter.core.adaptation import AttemptResult, AutoAdaptationAttempt
from arbiter.core.audit import AuditEntry, AuditKind
from arbiter.core.decision import ArbitrationDecision, DecisionFactor
from arbiter.core.proposal import Proposal
from arbiter.errors import NotFoundError
from arbiter.ports import AttemptRepository, AuditRepository, DecisionRepository, ProposalRepository

logger = structlog.get_logger()


def decision_entry_id(decision_id: str) -> str:
    return f"decision:{decision_id}"


def execution_entry_id(decision_id: str) -> str:
    return f"execution:{decision_id}"


def escalation_entry_id(decision_id: str) -> str:
    return f"escalation:{decision_id}"


def attempt_entry_id(attempt_id: str) -> str:
    return f"attempt:{attempt_id}"


def decision_rollback_entry_id(decision_id: str) -> str:
    return f"rollback:decision:{decision_id}"


class AuditTrail:
    """Builds and appends audit entries."""

    def __init__(self, repository: AuditRepository) -> None:
        self._repository = repository
        self._log = logger.bind(component="audit_trail")

    async def record(self, entry: AuditEntry) -> AuditEntry:
        await self._repository.append(entry)
        self._log.debug("audit_recorded", kind=entry.kind.value, subject_id=entry.subject_id)
        return entry

    async def record_once(self, entry: AuditEntry) -> bool:
        """Append unless an entry with the same id exists. Returns True if appended."""
        if await self._repository.find_by_id(entry.id) is not None:
            return False
        await self.record(entry)
        return True

    async def has_entry(self, entry_id: str) -> bool:
        return await self._repository.find_by_id(entry_id) is not None

    async def entries(
        self,
        kind: AuditKind | None = None,
        subject_id: str | None = None,
        agent_name: str | None = None,
    ) -> Sequence[AuditEntry]:
        return await self._repository.query(kind=kind, subject_id=subject_id, agent_name=agent_name)

    async def rollback_history(self, agent_name: str | None = None) -> Sequence[AuditEntry]:
        return await self.entries(kind=AuditKind.ROLLBACK, agent_name=agent_name)


def decision_entry(decision: ArbitrationDecision, winner: Proposal | None = None) -> AuditEntry:
    return AuditEntry(
        id=decision_entry_id(decision.id),
        kind=AuditKind.DECISION,
        subject_id=decision.id,
        agent_name=winner.agent_name if winner else None,
        summary=decision.reasoning_summary,
        details={
            "conflict_id": decision.conflict_id,
            "outcome": decision.outcome.value,
            "strategy": decision.strategy_used.value,
            "policy_id": decision.policy_id,
            "winning_proposal_id": decision.winning_proposal_id,
            "suppressed": list(decision.suppressed_proposal_ids),
            "vetoed": list(decision.vetoed_proposal_ids),
            "awaiting": list(decision.awaiting_proposal_ids),
            "escalation_reason": decision.escalation_reason.value if decision.escalation_reason else None,
        },
    )


def execution_entry(decision: ArbitrationDecision, proposal: Proposal) -> AuditEntry:
    return AuditEntry(
        id=execution_entry_id(decision.id),
        kind=AuditKind.EXECUTION,
        subject_id=decision.id,
        agent_name=proposal.agent_name,
        summary=f"Executed {proposal.action_type.value} from {proposal.agent_name}",
        details={
            "proposal_id": proposal.id,
            "target": proposal.target_ref.canonical_key,
            "value": proposal.action.proposed_value(),
        },
    )


def escalation_entry(decision: ArbitrationDecision, actor: str, approved: bool, note: str = "") -> AuditEntry:
    verb = "approved" if approved else "rejected"
    return AuditEntry(
        id=escalation_entry_id(decision.id),
        kind=AuditKind.ESCALATION_RESOLVED,
        subject_id=decision.id,
        summary=f"Escalation {verb} by {actor}" + (f": {note}" if note else ""),
        details={
            "approved": approved,
            "actor": actor,
            "outcome": decision.outcome.value,
            "winning_proposal_id": decision.winning_proposal_id,
        },
    )


def attempt_entry(attempt: AutoAdaptationAttempt) -> AuditEntry:
    return AuditEntry(
        id=attempt_entry_id(attempt.id),
        kind=AuditKind.ADAPTATION_ATTEMPT,
        subject_id=attempt.id,
        agent_name=attempt.agent_name,
        summary=attempt.reason_text,
        details={
            "suggestion_id": attempt.suggestion_id,
            "preference": f"{attempt.category}.{attempt.key}",
            "result": attempt.result.value,
            "block_reason": attempt.block_reason.value if attempt.block_reason else None,
            "skip_reason": attempt.skip_reason.value if attempt.skip_reason else None,
            "confidence": attempt.confidence,
            "policy_id": attempt.policy_id,
        },
    )


@dataclass
class DecisionExplanation:
    """User-facing account of why a decision came out the way it did."""

    decision_id: str
    outcome: str
    strategy: str
    summary: str
    winner: dict[str, Any] | None
    losers: list[dict[str, Any]] = field(default_factory=list)
    factors: list[DecisionFactor] = field(default_factory=list)
    escalation_reason: str | None = None
    executed: bool = False

    def to_text(self) -> str:
        lines = [self.summary]
        for loser in self.losers:
            lines.append(f"- {loser['agent_name']}: {loser['reason']} ({loser['explanation']})")
        return "\n".join(lines)


@dataclass
class AttemptFactor:
    name: str
    value: Any
    requirement: Any
    met: bool


@dataclass
class AttemptExplanation:
    """User-facing account of one auto-adaptation attempt."""

    attempt_id: str
    result: str
    summary: str
    reason: str | None
    factors: list[AttemptFactor] = field(default_factory=list)
    policies: list[str] = field(default_factory=list)
    rolled_back: bool = False

    def to_text(self) -> str:
        lines = [self.summary]
        for factor in self.factors:
            mark = "ok" if factor.met else "not met"
            lines.append(f"- {factor.name}: {factor.value} (requires {factor.requirement}, {mark})")
        return "\n".join(lines)


class DecisionExplainer:
    """Assembles explanations from stored decisions, proposals and adaptation attempts."""

    def __init__(
        self,
        decisions: DecisionRepository,
        proposals: ProposalRepository,
        attempts: AttemptRepository | None = None,
    ) -> None:
        self._decisions = decisions
        self._proposals = proposals
        self._attempts = attempts

    async def explain(self, decision_id: str) -> DecisionExplanation:
        decision = await self._decisions.find_by_id(decision_id)
        if decision is None:
            raise NotFoundError("decision", decision_id)

        winner = None
        if decision.winning_proposal_id:
            proposal = await self._proposals.find_by_id(decision.winning_proposal_id)
            if proposal is not None:
                winner = {
                    "proposal_id": proposal.id,
                    "agent_name": proposal.agent_name,
                    "action_type": proposal.action_type.value,
                    "value": proposal.action.proposed_value(),
                }

        return DecisionExplanation(
            decision_id=decision.id,
            outcome=decision.outcome.value,
            strategy=decision.strategy_used.value,
            summary=decision.reasoning_summary,
            winner=winner,
            losers=[
                {
                    "proposal_id": s.proposal_id,
                    "agent_name": s.agent_name,
                    "reason": s.reason.value,
                    "explanation": s.explanation,
                }
                for s in decision.suppressions
            ],
            factors=list(decision.decision_factors),
            escalation_reason=decision.escalation_reason.value if decision.escalation_reason else None,
            executed=decision.executed,
        )

    async def explain_attempt(self, attempt_id: str) -> AttemptExplanation:
        attempt = await self._attempts.find_by_id(attempt_id) if self._attempts else None
        if attempt is None:
            raise NotFoundError("adaptation attempt", attempt_id)

        snapshot = attempt.policy_snapshot
        allowed = sorted(level.value for level in snapshot.allowed_risk_levels)
        factors = [
            AttemptFactor(
                name="confidence",
                value=attempt.confidence,
                requirement=f">= {snapshot.min_confidence}",
                met=attempt.confidence >= snapshot.min_confidence,
            ),
            AttemptFactor(
                name="risk_level",
                value=attempt.risk_level.value,
                requirement=f"one of {', '.join(allowed)}",
                met=attempt.risk_level in snapshot.allowed_risk_levels,
            ),
            AttemptFactor(
                name="user_opted_in",
                value=snapshot.user_opted_in,
                requirement=True,
                met=snapshot.user_opted_in,
            ),
        ]
        code = attempt.block_reason or attempt.skip_reason
        preference = f"{attempt.category}.{attempt.key}"
        if attempt.result == AttemptResult.APPLIED:
            summary = (
                f"Auto-adaptation applied. Changed {preference} "
                f'from "{attempt.previous_value}" to "{attempt.suggested_value}".'
            )
        else:
            summary = f"Auto-adaptation {attempt.result.value}: {attempt.reason_text}"
        if attempt.rolled_back:
            summary += f" (Later rolled back: {attempt.rollback_reason or 'no reason given'})"

        return AttemptExplanation(
            attempt_id=attempt.id,
            result=attempt.result.value,
            summary=summary,
            reason=code.value if code else None,
            factors=factors,
            policies=[
                f"mode: {snapshot.mode.value}",
                f"min confidence: {snapshot.min_confidence}",
            ],
            rolled_back=attempt.rolled_back,
        )

    async def explain_any(self, record_id: str) -> DecisionExplanation | AttemptExplanation:
        """Explain a decision, or failing that an adaptation attempt, by id."""
        if await self._decisions.find_by_id(record_id) is not None:
            return await self.explain(record_id)
        return await self.explain_attempt(record_id)
