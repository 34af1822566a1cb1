"""
Collaborator contracts consumed by the services.

Persistence, scoring and effect application live outside this package;
services depend only on these protocols. ``arbiter.storage.memory`` holds
in-memory implementations for tests and local runs.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import NamedTuple, Protocol

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
    SuggestionStatus,
    UserPreference,
)
from arbiter.core.proposal import PreferenceValue, Proposal
from arbiter.core.types import ProposalStatus


class ProposalRepository(Protocol):
    async def save(self, proposal: Proposal) -> None: ...

    async def find_by_id(self, proposal_id: str) -> Proposal | None: ...

    async def find_pending(self) -> list[Proposal]: ...

    async def find_pending_for_target(self, target_key: str) -> list[Proposal]: ...

    async def find_by_agent(self, agent_name: str) -> list[Proposal]: ...

    async def find_by_status(self, status: ProposalStatus) -> list[Proposal]: ...

    async def update_status(
        self,
        proposal_id: str,
        status: ProposalStatus,
        decision_id: str,
    ) -> Proposal: ...


class PolicyRepository(Protocol):
    async def save(self, policy: ArbitrationPolicy) -> None: ...

    async def find_by_id(self, policy_id: str) -> ArbitrationPolicy | None: ...

    async def find_default(self) -> ArbitrationPolicy | None: ...

    async def find_for_agent(self, agent_name: str) -> ArbitrationPolicy | None: ...

    async def find_for_preference(self, preference_key: str) -> ArbitrationPolicy | None: ...


class ConflictRepository(Protocol):
    async def save(self, conflict: Conflict) -> None: ...

    async def find_by_id(self, conflict_id: str) -> Conflict | None: ...


class DecisionRepository(Protocol):
    async def save(self, decision: ArbitrationDecision) -> None: ...

    async def find_by_id(self, decision_id: str) -> ArbitrationDecision | None: ...

    async def find_by_conflict(self, conflict_id: str) -> ArbitrationDecision | None: ...

    async def find_pending_approval(self) -> list[ArbitrationDecision]: ...

    async def mark_executed(self, decision_id: str, at: datetime) -> ArbitrationDecision: ...


class PendingCommit(NamedTuple):
    """Everything a decision commit writes. ``conflict`` is set for fresh arbitrations."""

    decision: ArbitrationDecision
    entry: AuditEntry
    conflict: Conflict | None = None


class CommitJournal(Protocol):
    """Write-ahead record of decision commits still in flight."""

    async def open(self, commit: PendingCommit) -> None: ...

    async def close(self, decision_id: str) -> None: ...

    async def pending(self) -> list[PendingCommit]: ...


class LearningRepository(Protocol):
    async def get_preference(self, agent_name: str, category: str, key: str) -> UserPreference | None: ...

    async def list_preferences(self, agent_name: str) -> list[UserPreference]: ...

    async def set_preference(
        self,
        agent_name: str,
        category: str,
        key: str,
        value: PreferenceValue,
        changed_by: ChangeSource,
        reason: str = "",
        suggestion_id: str | None = None,
    ) -> PreferenceChangeRecord: ...

    async def preference_history(
        self,
        agent_name: str,
        category: str,
        key: str,
    ) -> list[PreferenceChangeRecord]: ...

    async def agent_history(self, agent_name: str, limit: int | None = None) -> list[PreferenceChangeRecord]:
        """Changes to any of the agent's preferences, most recent first."""
        ...

    async def reset_preference(self, agent_name: str, category: str, key: str) -> PreferenceChangeRecord: ...

    async def reset_all_preferences(self, agent_name: str) -> list[PreferenceChangeRecord]: ...

    async def rollback_to_change(self, agent_name: str, change_id: str) -> PreferenceChangeRecord: ...

    async def save_suggestion(self, suggestion: LearnedSuggestion) -> None: ...

    async def find_suggestion(self, suggestion_id: str) -> LearnedSuggestion | None: ...

    async def pending_suggestions(self, agent_name: str | None = None) -> list[LearnedSuggestion]: ...

    async def set_suggestion_status(
        self,
        suggestion_id: str,
        status: SuggestionStatus,
    ) -> LearnedSuggestion: ...

    async def add_feedback(self, agent_name: str, entry: FeedbackEntry) -> None: ...

    async def add_pattern(self, agent_name: str, pattern: FeedbackPattern) -> None: ...

    async def feedback(self, agent_name: str) -> list[FeedbackEntry]: ...

    async def patterns(self, agent_name: str) -> list[FeedbackPattern]: ...


class AttemptRepository(Protocol):
    async def save(self, attempt: AutoAdaptationAttempt) -> None: ...

    async def find_by_id(self, attempt_id: str) -> AutoAdaptationAttempt | None: ...

    async def query(
        self,
        agent_name: str | None = None,
        result: AttemptResult | None = None,
        rolled_back: bool | None = None,
        category: str | None = None,
        key: str | None = None,
        since: datetime | None = None,
    ) -> list[AutoAdaptationAttempt]:
        """Matching attempts, most recent first."""
        ...


class AdaptationPolicyRepository(Protocol):
    async def find_for_agent(self, agent_name: str) -> AdaptationPolicy | None: ...

    async def save(self, policy: AdaptationPolicy) -> None: ...


class AuditRepository(Protocol):
    async def append(self, entry: AuditEntry) -> None: ...

    async def find_by_id(self, entry_id: str) -> AuditEntry | None: ...

    async def query(
        self,
        kind: AuditKind | None = None,
        subject_id: str | None = None,
        agent_name: str | None = None,
    ) -> Sequence[AuditEntry]: ...


class ConfidenceScorer(Protocol):
    """External (usually model-backed) scorer of proposal confidence."""

    async def score(self, proposal: Proposal) -> float: ...


class EffectApplier(Protocol):
    """Applies a winning proposal's action to its target aggregate."""

    async def apply(self, proposal: Proposal) -> None: ...
