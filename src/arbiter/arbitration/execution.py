"""
ExecutionGate: the only path by which a winning proposal takes effect.

Effects are applied through ``EffectApplier`` instances registered per
action type. A decision is executed at most once; executing it again is a
no-op that reports ``already_executed``.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from arbiter.audit import AuditTrail, execution_entry
from arbiter.bus.events import DecisionExecuted, EventDispatcher
from arbiter.core.decision import ArbitrationDecision
from arbiter.core.preferences import ChangeSource, PreferenceRegistry
from arbiter.core.proposal import ApplyPreferenceAction, Proposal
from arbiter.core.types import ActionType, ProposalStatus
from arbiter.errors import InvalidStateError, NotFoundError
from arbiter.locks import KeyedLocks
from arbiter.ports import DecisionRepository, EffectApplier, LearningRepository, ProposalRepository

logger = structlog.get_logger()


@dataclass
class ExecutionResult:
    decision_id: str
    proposal_id: str | None
    executed: bool
    already_executed: bool = False
    executed_at: datetime | None = None


@dataclass
class ExecutionStats:
    total_executed: int = 0
    total_repeat_calls: int = 0
    by_action_type: dict[str, int] = field(default_factory=dict)


class PreferenceEffectApplier:
    """Writes an ApplyPreference action to the learning store."""

    def __init__(self, learning: LearningRepository, registry: PreferenceRegistry | None = None) -> None:
        self._learning = learning
        self._registry = registry

    async def apply(self, proposal: Proposal) -> None:
        action = proposal.action
        if not isinstance(action, ApplyPreferenceAction):
            raise InvalidStateError(f"proposal {proposal.id} is not a preference change")
        if self._registry is not None:
            self._registry.validate(action.category, action.key, action.new_value)
        await self._learning.set_preference(
            proposal.agent_name,
            action.category,
            action.key,
            action.new_value,
            ChangeSource.ARBITRATION,
            reason=f"Applied by arbitration (proposal {proposal.id})",
            suggestion_id=action.suggestion_id,
        )


class ExecutionGate:
    """Applies decisions that are allowed to execute, exactly once."""

    def __init__(
        self,
        decisions: DecisionRepository,
        proposals: ProposalRepository,
        audit: AuditTrail,
        dispatcher: EventDispatcher,
        appliers: Mapping[ActionType, EffectApplier] | None = None,
    ) -> None:
        self._decisions = decisions
        self._proposals = proposals
        self._audit = audit
        self._dispatcher = dispatcher
        self._appliers: dict[ActionType, EffectApplier] = dict(appliers or {})
        self._locks = KeyedLocks()
        self._stats = ExecutionStats()
        self._log = logger.bind(component="execution_gate")

    def register_applier(self, action_type: ActionType, applier: EffectApplier) -> None:
        self._appliers[action_type] = applier

    def get_stats(self) -> ExecutionStats:
        return self._stats

    @staticmethod
    def can_execute(decision: ArbitrationDecision) -> bool:
        return decision.can_execute

    async def execute(self, decision_id: str) -> ExecutionResult:
        async with self._locks.hold(decision_id):
            decision = await self._decisions.find_by_id(decision_id)
            if decision is None:
                raise NotFoundError("decision", decision_id)

            if decision.executed:
                self._stats.total_repeat_calls += 1
                self._log.info("decision_already_executed", decision_id=decision_id)
                return ExecutionResult(
                    decision_id=decision_id,
                    proposal_id=decision.winning_proposal_id,
                    executed=False,
                    already_executed=True,
                    executed_at=decision.executed_at,
                )

            if not decision.can_execute or decision.winning_proposal_id is None:
                raise InvalidStateError(
                    f"decision {decision_id} cannot be executed (outcome {decision.outcome.value}, "
                    f"requires approval: {decision.requires_human_approval})"
                )

            proposal = await self._proposals.find_by_id(decision.winning_proposal_id)
            if proposal is None:
                raise NotFoundError("proposal", decision.winning_proposal_id)

            applier = self._appliers.get(proposal.action_type)
            if applier is None:
                raise InvalidStateError(f"no effect applier registered for {proposal.action_type.value}")

            await applier.apply(proposal)
            now = datetime.now(UTC)
            executed = await self._decisions.mark_executed(decision_id, now)
            await self._proposals.update_status(proposal.id, ProposalStatus.EXECUTED, decision_id)
            await self._audit.record_once(execution_entry(executed, proposal))

        action_type = proposal.action_type.value
        self._stats.total_executed += 1
        self._stats.by_action_type[action_type] = self._stats.by_action_type.get(action_type, 0) + 1
        self._log.info(
            "decision_executed",
            decision_id=decision_id,
            proposal_id=proposal.id,
            agent=proposal.agent_name,
            action_type=action_type,
        )
        await self._dispatcher.publish(
            DecisionExecuted(
                decision_id=decision_id,
                proposal_id=proposal.id,
                agent_name=proposal.agent_name,
                action_type=action_type,
            ),
            correlation_id=decision.conflict_id,
        )
        return ExecutionResult(
            decision_id=decision_id,
            proposal_id=proposal.id,
            executed=True,
            executed_at=now,
        )
