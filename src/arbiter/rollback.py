"""
RollbackCoordinator: reverts applied preference changes.

A rollback writes the restored value, marks the source attempt rolled back
(when there is one) and appends an audit entry. If anything fails after the
preference write, the preference and attempt are put back the way they
were before the error propagates.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from arbiter.audit import AuditTrail, decision_rollback_entry_id
from arbiter.bus.events import EventDispatcher, PreferenceRolledBack
from arbiter.core.adaptation import AttemptResult, AutoAdaptationAttempt
from arbiter.core.audit import AuditEntry, AuditKind
from arbiter.core.preferences import ChangeSource, PreferenceRegistry
from arbiter.core.proposal import ApplyPreferenceAction, PreferenceValue
from arbiter.errors import InvalidStateError, NotFoundError
from arbiter.observability import ObservabilityContext
from arbiter.ports import AttemptRepository, DecisionRepository, LearningRepository, ProposalRepository

logger = structlog.get_logger()


@dataclass
class RollbackResult:
    agent_name: str
    category: str
    key: str
    previous_value: PreferenceValue | None  # value before the rollback
    restored_value: PreferenceValue
    reason: str
    change_id: str
    source_attempt_id: str | None = None
    source_decision_id: str | None = None
    rolled_back_at: datetime | None = None


class RollbackCoordinator:
    """Restores preferences to their previously recorded values."""

    def __init__(
        self,
        learning: LearningRepository,
        attempts: AttemptRepository,
        decisions: DecisionRepository,
        proposals: ProposalRepository,
        registry: PreferenceRegistry,
        audit: AuditTrail,
        dispatcher: EventDispatcher,
        observability: ObservabilityContext | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._learning = learning
        self._attempts = attempts
        self._decisions = decisions
        self._proposals = proposals
        self._registry = registry
        self._audit = audit
        self._dispatcher = dispatcher
        self._observability = observability or ObservabilityContext()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._log = logger.bind(component="rollback_coordinator")

    async def rollback_by_decision(self, decision_id: str, reason: str) -> RollbackResult:
        """Undo the preference change an executed arbitration decision applied."""
        decision = await self._decisions.find_by_id(decision_id)
        if decision is None:
            raise NotFoundError("decision", decision_id)
        if not decision.executed:
            raise InvalidStateError(f"decision {decision_id} has not been executed")
        if decision.winning_proposal_id is None:
            raise InvalidStateError(f"decision {decision_id} has no winning proposal")

        proposal = await self._proposals.find_by_id(decision.winning_proposal_id)
        if proposal is None:
            raise NotFoundError("proposal", decision.winning_proposal_id)
        action = proposal.action
        if not isinstance(action, ApplyPreferenceAction):
            raise InvalidStateError(
                f"decision {decision_id} applied {proposal.action_type.value}, not a preference change"
            )

        entry_id = decision_rollback_entry_id(decision_id)
        if await self._audit.has_entry(entry_id):
            raise InvalidStateError(f"decision {decision_id} was already rolled back")
        if action.current_value is None:
            raise InvalidStateError(f"decision {decision_id} recorded no previous value")

        return await self._restore(
            agent_name=proposal.agent_name,
            category=action.category,
            key=action.key,
            value=action.current_value,
            reason=reason,
            entry_id=entry_id,
            decision_id=decision_id,
        )

    async def rollback_by_preference(self, agent_name: str, key: str, reason: str) -> RollbackResult:
        """
        Undo the latest change of a preference.

        ``key`` is "category.key" or a bare key owned by the agent. The most
        recent applied, not yet rolled back attempt is preferred; otherwise
        the latest change record's previous value is restored.
        """
        definition = self._registry.resolve_key(agent_name, key)
        attempts = await self._attempts.query(
            agent_name=agent_name,
            result=AttemptResult.APPLIED,
            rolled_back=False,
            category=definition.category,
            key=definition.key,
        )
        if attempts:
            return await self.rollback_attempt(attempts[0].id, reason)

        history = await self._learning.preference_history(agent_name, definition.category, definition.key)
        if not history:
            raise InvalidStateError(f"no change history for {definition.full_key}")
        latest = history[0]
        if latest.previous_value is None:
            raise InvalidStateError(f"no previous value recorded for {definition.full_key}")

        return await self._restore(
            agent_name=agent_name,
            category=definition.category,
            key=definition.key,
            value=latest.previous_value,
            reason=reason,
            entry_id=f"rollback:change:{latest.change_id}",
        )

    async def rollback_attempt(self, attempt_id: str, reason: str) -> RollbackResult:
        attempt = await self._attempts.find_by_id(attempt_id)
        if attempt is None:
            raise NotFoundError("attempt", attempt_id)
        if not attempt.can_rollback:
            state = "already rolled back" if attempt.rolled_back else attempt.result.value
            raise InvalidStateError(f"attempt {attempt_id} cannot be rolled back ({state})")
        if attempt.previous_value is None:
            raise InvalidStateError(f"attempt {attempt_id} recorded no previous value")

        return await self._restore(
            agent_name=attempt.agent_name,
            category=attempt.category,
            key=attempt.key,
            value=attempt.previous_value,
            reason=reason,
            entry_id=f"rollback:attempt:{attempt.id}",
            attempt=attempt,
        )

    async def rollback_all_for_agent(self, agent_name: str, reason: str) -> int:
        """Roll back every applied attempt of the agent, newest first."""
        attempts = await self._attempts.query(
            agent_name=agent_name, result=AttemptResult.APPLIED, rolled_back=False
        )
        for attempt in attempts:
            await self.rollback_attempt(attempt.id, reason)
        self._log.info("agent_rolled_back", agent=agent_name, count=len(attempts))
        return len(attempts)

    async def rollback_history(self, agent_name: str | None = None) -> Sequence[AuditEntry]:
        return await self._audit.rollback_history(agent_name)

    async def _restore(
        self,
        *,
        agent_name: str,
        category: str,
        key: str,
        value: PreferenceValue,
        reason: str,
        entry_id: str,
        attempt: AutoAdaptationAttempt | None = None,
        decision_id: str | None = None,
    ) -> RollbackResult:
        now = self._clock()
        existing = await self._learning.get_preference(agent_name, category, key)
        before = existing.value if existing else None

        record = await self._learning.set_preference(
            agent_name, category, key, value, ChangeSource.USER, reason=f"Rollback: {reason}"
        )
        try:
            if attempt is not None:
                await self._attempts.save(attempt.with_rollback(reason, now))
            await self._audit.record(
                AuditEntry(
                    id=entry_id,
                    kind=AuditKind.ROLLBACK,
                    subject_id=decision_id or (attempt.id if attempt else record.change_id),
                    agent_name=agent_name,
                    summary=f"Rolled back {category}.{key} to {value!r}: {reason}",
                    details={
                        "category": category,
                        "key": key,
                        "from": before,
                        "to": value,
                        "change_id": record.change_id,
                        "attempt_id": attempt.id if attempt else None,
                        "decision_id": decision_id,
                    },
                    recorded_at=now,
                )
            )
        except Exception:
            self._log.exception("rollback_failed", agent=agent_name, preference=f"{category}.{key}")
            if attempt is not None:
                await self._attempts.save(attempt)
            if before is not None:
                await self._learning.set_preference(
                    agent_name,
                    category,
                    key,
                    before,
                    ChangeSource.SYSTEM,
                    reason="Restored after failed rollback",
                )
            raise

        self._observability.record_rollback(agent_name)
        self._log.info(
            "preference_rolled_back",
            agent=agent_name,
            preference=f"{category}.{key}",
            restored=value,
            attempt_id=attempt.id if attempt else None,
            decision_id=decision_id,
        )
        await self._dispatcher.publish(
            PreferenceRolledBack(
                agent_name=agent_name,
                category=category,
                key=key,
                previous_value=before,
                restored_value=value,
                reason=reason,
                source_decision_id=decision_id,
                source_attempt_id=attempt.id if attempt else None,
            )
        )
        return RollbackResult(
            agent_name=agent_name,
            category=category,
            key=key,
            previous_value=before,
            restored_value=value,
            reason=reason,
            change_id=record.change_id,
            source_attempt_id=attempt.id if attempt else None,
            source_decision_id=decision_id,
            rolled_back_at=now,
        )
