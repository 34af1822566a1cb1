"""
In-memory repositories.

Dict-backed implementations of every port in ``arbiter.ports``. They are
meant for tests and single-process local runs; durable storage is provided
by the host application.
"""

from collections import defaultdict
from collections.abc import Sequence
from datetime import UTC, datetime

import structlog

from arbiter.core.adaptation import AdaptationPolicy, AttemptResult, AutoAdaptationAttempt
from arbiter.core.audit import AuditEntry, AuditKind
from arbiter.core.decision import ArbitrationDecision, Conflict
from arbiter.core.policy import ArbitrationPolicy
from arbiter.core.preferences import (
    ChangeSource,
    FeedbackEntry,
    FeedbackPattern,
    LearnedSuggestion,
    PreferenceChangeRecord,
    PreferenceRegistry,
    SuggestionStatus,
    UserPreference,
)
from arbiter.core.proposal import PreferenceValue, Proposal, values_match
from arbiter.core.types import ArbitrationOutcome, PolicyScope, ProposalStatus
from arbiter.errors import InvalidStateError, NotFoundError
from arbiter.ports import PendingCommit

logger = structlog.get_logger()

PreferenceSlot = tuple[str, str, str]


class InMemoryProposalRepository:
    def __init__(self) -> None:
        self._proposals: dict[str, Proposal] = {}

    async def save(self, proposal: Proposal) -> None:
        self._proposals[proposal.id] = proposal

    async def find_by_id(self, proposal_id: str) -> Proposal | None:
        return self._proposals.get(proposal_id)

    async def find_pending(self) -> list[Proposal]:
        return [p for p in self._proposals.values() if p.status == ProposalStatus.PENDING]

    async def find_pending_for_target(self, target_key: str) -> list[Proposal]:
        return [
            p for p in self._proposals.values()
            if p.status == ProposalStatus.PENDING and p.target_ref.canonical_key == target_key
        ]

    async def find_by_agent(self, agent_name: str) -> list[Proposal]:
        return [p for p in self._proposals.values() if p.agent_name == agent_name]

    async def find_by_status(self, status: ProposalStatus) -> list[Proposal]:
        return [p for p in self._proposals.values() if p.status == status]

    async def update_status(
        self,
        proposal_id: str,
        status: ProposalStatus,
        decision_id: str,
    ) -> Proposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise NotFoundError("proposal", proposal_id)
        updated = proposal.with_status(status, decision_id)
        self._proposals[proposal_id] = updated
        return updated


class InMemoryPolicyRepository:
    def __init__(self) -> None:
        self._policies: dict[str, ArbitrationPolicy] = {}

    async def save(self, policy: ArbitrationPolicy) -> None:
        self._policies[policy.id] = policy

    async def find_by_id(self, policy_id: str) -> ArbitrationPolicy | None:
        return self._policies.get(policy_id)

    async def find_default(self) -> ArbitrationPolicy | None:
        return self._find(PolicyScope.DEFAULT, None)

    async def find_for_agent(self, agent_name: str) -> ArbitrationPolicy | None:
        return self._find(PolicyScope.AGENT, agent_name)

    async def find_for_preference(self, preference_key: str) -> ArbitrationPolicy | None:
        return self._find(PolicyScope.PREFERENCE, preference_key)

    def _find(self, scope: PolicyScope, scope_ref: str | None) -> ArbitrationPolicy | None:
        for policy in self._policies.values():
            if policy.scope == scope and (scope_ref is None or policy.scope_ref == scope_ref):
                return policy
        return None


class InMemoryConflictRepository:
    def __init__(self) -> None:
        self._conflicts: dict[str, Conflict] = {}

    async def save(self, conflict: Conflict) -> None:
        if conflict.id in self._conflicts and self._conflicts[conflict.id] != conflict:
            raise InvalidStateError(f"conflict {conflict.id} is immutable")
        self._conflicts[conflict.id] = conflict

    async def find_by_id(self, conflict_id: str) -> Conflict | None:
        return self._conflicts.get(conflict_id)

    def all(self) -> list[Conflict]:
        return list(self._conflicts.values())


class InMemoryDecisionRepository:
    def __init__(self) -> None:
        self._decisions: dict[str, ArbitrationDecision] = {}

    async def save(self, decision: ArbitrationDecision) -> None:
        self._decisions[decision.id] = decision

    async def find_by_id(self, decision_id: str) -> ArbitrationDecision | None:
        return self._decisions.get(decision_id)

    async def find_by_conflict(self, conflict_id: str) -> ArbitrationDecision | None:
        for decision in self._decisions.values():
            if decision.conflict_id == conflict_id:
                return decision
        return None

    async def find_pending_approval(self) -> list[ArbitrationDecision]:
        return [
            d for d in self._decisions.values()
            if d.requires_human_approval and d.outcome == ArbitrationOutcome.ESCALATED
        ]

    async def mark_executed(self, decision_id: str, at: datetime) -> ArbitrationDecision:
        decision = self._decisions.get(decision_id)
        if decision is None:
            raise NotFoundError("decision", decision_id)
        updated = decision.mark_executed(at)
        self._decisions[decision_id] = updated
        return updated

    def all(self) -> list[ArbitrationDecision]:
        return list(self._decisions.values())


class InMemoryCommitJournal:
    def __init__(self) -> None:
        self._open: dict[str, PendingCommit] = {}

    async def open(self, commit: PendingCommit) -> None:
        self._open[commit.decision.id] = commit

    async def close(self, decision_id: str) -> None:
        self._open.pop(decision_id, None)

    async def pending(self) -> list[PendingCommit]:
        return list(self._open.values())


class InMemoryLearningRepository:
    """Preferences, their change history, suggestions, feedback and patterns."""

    def __init__(self, registry: PreferenceRegistry | None = None) -> None:
        self._registry = registry
        self._preferences: dict[PreferenceSlot, UserPreference] = {}
        # Most recent first
        self._history: dict[PreferenceSlot, list[PreferenceChangeRecord]] = defaultdict(list)
        self._agent_history: dict[str, list[PreferenceChangeRecord]] = defaultdict(list)
        self._suggestions: dict[str, LearnedSuggestion] = {}
        self._feedback: dict[str, list[FeedbackEntry]] = defaultdict(list)
        self._patterns: dict[str, list[FeedbackPattern]] = defaultdict(list)
        self._log = logger.bind(component="learning_repository")

    async def get_preference(self, agent_name: str, category: str, key: str) -> UserPreference | None:
        return self._preferences.get((agent_name, category, key))

    async def list_preferences(self, agent_name: str) -> list[UserPreference]:
        return [p for slot, p in self._preferences.items() if slot[0] == agent_name]

    async def set_preference(
        self,
        agent_name: str,
        category: str,
        key: str,
        value: PreferenceValue,
        changed_by: ChangeSource,
        reason: str = "",
        suggestion_id: str | None = None,
    ) -> PreferenceChangeRecord:
        if self._registry is not None:
            self._registry.validate(category, key, value)

        slot = (agent_name, category, key)
        existing = self._preferences.get(slot)
        record = PreferenceChangeRecord(
            agent_name=agent_name,
            category=category,
            key=key,
            previous_value=existing.value if existing else None,
            new_value=value,
            changed_by=changed_by,
            reason=reason,
            suggestion_id=suggestion_id,
        )
        learned_from = existing.learned_from if existing else ()
        if suggestion_id:
            learned_from = (*learned_from, suggestion_id)
        self._preferences[slot] = UserPreference(
            agent_name=agent_name,
            category=category,
            key=key,
            value=value,
            learned_from=learned_from,
            updated_at=record.changed_at,
        )
        self._history[slot].insert(0, record)
        self._agent_history[agent_name].insert(0, record)
        self._log.debug(
            "preference_set",
            agent=agent_name,
            preference=f"{category}.{key}",
            changed_by=changed_by.value,
        )
        return record

    async def preference_history(
        self,
        agent_name: str,
        category: str,
        key: str,
    ) -> list[PreferenceChangeRecord]:
        return list(self._history.get((agent_name, category, key), []))

    async def agent_history(self, agent_name: str, limit: int | None = None) -> list[PreferenceChangeRecord]:
        history = self._agent_history.get(agent_name, [])
        return list(history if limit is None else history[:limit])

    async def reset_preference(self, agent_name: str, category: str, key: str) -> PreferenceChangeRecord:
        if self._registry is None:
            raise NotFoundError("preference definition", f"{category}.{key}")
        default = self._registry.default_value(category, key)
        return await self.set_preference(
            agent_name, category, key, default, ChangeSource.USER, reason="Reset to default value"
        )

    async def reset_all_preferences(self, agent_name: str) -> list[PreferenceChangeRecord]:
        if self._registry is None:
            return []
        records = []
        for definition in self._registry.definitions_for_agent(agent_name):
            current = self._preferences.get((agent_name, definition.category, definition.key))
            if current is not None and not values_match(current.value, definition.default):
                records.append(await self.reset_preference(agent_name, definition.category, definition.key))
        return records

    async def rollback_to_change(self, agent_name: str, change_id: str) -> PreferenceChangeRecord:
        """Restore the value a preference had before the given change."""
        for (owner, category, key), records in self._history.items():
            if owner != agent_name:
                continue
            for record in records:
                if record.change_id != change_id:
                    continue
                if record.previous_value is None:
                    raise InvalidStateError(f"change {change_id} has no previous value")
                return await self.set_preference(
                    agent_name,
                    category,
                    key,
                    record.previous_value,
                    ChangeSource.USER,
                    reason=f"Rolled back to state before change {change_id}",
                )
        raise NotFoundError("preference change", change_id)

    async def save_suggestion(self, suggestion: LearnedSuggestion) -> None:
        self._suggestions[suggestion.id] = suggestion

    async def find_suggestion(self, suggestion_id: str) -> LearnedSuggestion | None:
        return self._suggestions.get(suggestion_id)

    async def pending_suggestions(self, agent_name: str | None = None) -> list[LearnedSuggestion]:
        pending = [
            s for s in self._suggestions.values()
            if s.is_pending and (agent_name is None or s.agent_name == agent_name)
        ]
        return sorted(pending, key=lambda s: s.created_at)

    async def set_suggestion_status(
        self,
        suggestion_id: str,
        status: SuggestionStatus,
    ) -> LearnedSuggestion:
        suggestion = self._suggestions.get(suggestion_id)
        if suggestion is None:
            raise NotFoundError("suggestion", suggestion_id)
        updated = suggestion.with_status(status)
        self._suggestions[suggestion_id] = updated
        return updated

    async def add_feedback(self, agent_name: str, entry: FeedbackEntry) -> None:
        self._feedback[agent_name].insert(0, entry)

    async def add_pattern(self, agent_name: str, pattern: FeedbackPattern) -> None:
        self._patterns[agent_name] = [
            p for p in self._patterns[agent_name] if p.pattern_id != pattern.pattern_id
        ] + [pattern]

    async def feedback(self, agent_name: str) -> list[FeedbackEntry]:
        return list(self._feedback.get(agent_name, []))

    async def patterns(self, agent_name: str) -> list[FeedbackPattern]:
        return list(self._patterns.get(agent_name, []))


class InMemoryAttemptRepository:
    def __init__(self) -> None:
        self._attempts: dict[str, AutoAdaptationAttempt] = {}

    async def save(self, attempt: AutoAdaptationAttempt) -> None:
        self._attempts[attempt.id] = attempt

    async def find_by_id(self, attempt_id: str) -> AutoAdaptationAttempt | None:
        return self._attempts.get(attempt_id)

    async def query(
        self,
        agent_name: str | None = None,
        result: AttemptResult | None = None,
        rolled_back: bool | None = None,
        category: str | None = None,
        key: str | None = None,
        since: datetime | None = None,
    ) -> list[AutoAdaptationAttempt]:
        matches = [
            a for a in self._attempts.values()
            if (agent_name is None or a.agent_name == agent_name)
            and (result is None or a.result == result)
            and (rolled_back is None or a.rolled_back == rolled_back)
            and (category is None or a.category == category)
            and (key is None or a.key == key)
            and (since is None or a.created_at >= since)
        ]
        return sorted(matches, key=lambda a: (a.created_at, a.id), reverse=True)


class InMemoryAdaptationPolicyRepository:
    def __init__(self) -> None:
        self._policies: dict[str, AdaptationPolicy] = {}

    async def find_for_agent(self, agent_name: str) -> AdaptationPolicy | None:
        return self._policies.get(agent_name)

    async def save(self, policy: AdaptationPolicy) -> None:
        self._policies[policy.agent_name] = policy.model_copy(update={"updated_at": datetime.now(UTC)})


class InMemoryAuditRepository:
    """Append-only list of audit entries."""

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._ids: set[str] = set()

    async def append(self, entry: AuditEntry) -> None:
        if entry.id in self._ids:
            raise InvalidStateError(f"audit entry {entry.id} already recorded")
        self._entries.append(entry)
        self._ids.add(entry.id)

    async def find_by_id(self, entry_id: str) -> AuditEntry | None:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    async def query(
        self,
        kind: AuditKind | None = None,
        subject_id: str | None = None,
        agent_name: str | None = None,
    ) -> Sequence[AuditEntry]:
        return [
            e for e in self._entries
            if (kind is None or e.kind == kind)
            and (subject_id is None or e.subject_id == subject_id)
            and (agent_name is None or e.agent_name == agent_name)
        ]
