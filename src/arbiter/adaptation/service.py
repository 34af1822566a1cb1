"""
Adaptation services: user controls over adaptation policies, and the
auto-adaptation loop that evaluates learned suggestions.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Literal

import structlog

from arbiter.adaptation.policy_engine import AdaptationContext, AdaptationPolicyEngine, AdaptationVerdict
from arbiter.arbitration.service import ArbitrationService
from arbiter.audit import AuditTrail, attempt_entry
from arbiter.bus.events import (
    Event,
    EventDispatcher,
    PreferenceAutoApplied,
    PreferenceAutoBlocked,
    PreferenceAutoSkipped,
)
from arbiter.core.adaptation import (
    AdaptationMode,
    AdaptationPolicy,
    AttemptResult,
    AutoAdaptationAttempt,
    ScopeRestriction,
)
from arbiter.core.preferences import ChangeSource, LearnedSuggestion, SuggestionStatus
from arbiter.core.proposal import ApplyPreferenceAction, PreferenceValue, Proposal, values_match
from arbiter.core.types import RiskLevel
from arbiter.errors import InvalidStateError, NotFoundError
from arbiter.locks import KeyedLocks
from arbiter.observability import ObservabilityContext
from arbiter.ports import AdaptationPolicyRepository, AttemptRepository, EffectApplier, LearningRepository

logger = structlog.get_logger()

Clock = Callable[[], datetime]
Preset = Literal["conservative", "permissive"]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class PolicyStatus:
    """Summary of an agent's adaptation policy for display."""

    agent_name: str
    enabled: bool
    mode: AdaptationMode
    min_confidence: float
    allowed_risk_levels: list[RiskLevel]
    locked_preferences: list[str]
    cooldown_remaining_seconds: float
    changes_used: int
    changes_max: int
    window_seconds: int


class AdaptationPolicyService:
    """Reads and updates per-agent adaptation policies."""

    def __init__(
        self,
        policies: AdaptationPolicyRepository,
        attempts: AttemptRepository,
        default_factory: Callable[[str], AdaptationPolicy] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._policies = policies
        self._attempts = attempts
        self._default_factory = default_factory or AdaptationPolicy.conservative
        self._clock = clock or _utcnow
        self._log = logger.bind(component="adaptation_policy_service")

    async def get_policy(self, agent_name: str) -> AdaptationPolicy:
        """The agent's policy, creating the default on first use."""
        policy = await self._policies.find_for_agent(agent_name)
        if policy is None:
            policy = self._default_factory(agent_name)
            await self._policies.save(policy)
            self._log.info("adaptation_policy_created", agent=agent_name, mode=policy.mode.value)
        return policy

    async def enable_auto(
        self,
        agent_name: str,
        min_confidence: float | None = None,
        allowed_risk_levels: Iterable[RiskLevel] | None = None,
        cooldown_seconds: int | None = None,
    ) -> AdaptationPolicy:
        policy = await self.get_policy(agent_name)
        update: dict[str, object] = {"mode": AdaptationMode.AUTO, "user_opted_in": True}
        if min_confidence is not None:
            update["min_confidence"] = min_confidence
        if allowed_risk_levels is not None:
            update["allowed_risk_levels"] = frozenset(allowed_risk_levels)
        if cooldown_seconds is not None:
            update["cooldown_seconds"] = cooldown_seconds
        updated = AdaptationPolicy.model_validate({**policy.model_dump(), **update})
        await self._policies.save(updated)
        self._log.info(
            "auto_adaptation_enabled",
            agent=agent_name,
            min_confidence=updated.min_confidence,
            risk_levels=sorted(r.value for r in updated.allowed_risk_levels),
        )
        return updated

    async def disable_auto(self, agent_name: str) -> AdaptationPolicy:
        policy = await self.get_policy(agent_name)
        updated = policy.model_copy(update={"mode": AdaptationMode.MANUAL, "user_opted_in": False})
        await self._policies.save(updated)
        self._log.info("auto_adaptation_disabled", agent=agent_name)
        return updated

    async def lock_preference(self, agent_name: str, category: str, key: str) -> AdaptationPolicy:
        return await self._set_lock(agent_name, category, key, True)

    async def unlock_preference(self, agent_name: str, category: str, key: str) -> AdaptationPolicy:
        return await self._set_lock(agent_name, category, key, False)

    async def set_scope_restriction(self, agent_name: str, restriction: ScopeRestriction) -> AdaptationPolicy:
        policy = await self.get_policy(agent_name)
        updated = policy.with_restriction(restriction)
        await self._policies.save(updated)
        self._log.info(
            "scope_restriction_set",
            agent=agent_name,
            preference=f"{restriction.category}.{restriction.key}",
            locked=restriction.locked,
        )
        return updated

    async def apply_preset(self, agent_name: str, preset: Preset) -> AdaptationPolicy:
        """Replace the policy settings with a preset, keeping the policy id."""
        current = await self.get_policy(agent_name)
        factory = AdaptationPolicy.permissive if preset == "permissive" else AdaptationPolicy.conservative
        updated = factory(agent_name).model_copy(update={"id": current.id})
        await self._policies.save(updated)
        self._log.info("adaptation_preset_applied", agent=agent_name, preset=preset)
        return updated

    async def status(self, agent_name: str) -> PolicyStatus:
        policy = await self.get_policy(agent_name)
        now = self._clock()
        window_start = now - timedelta(seconds=policy.rate_limit.window_seconds)
        applied = await self._attempts.query(
            agent_name=agent_name, result=AttemptResult.APPLIED, since=window_start
        )

        remaining = 0.0
        if applied:
            elapsed = now - applied[0].created_at
            remaining = max(0.0, (policy.cooldown - elapsed).total_seconds())

        return PolicyStatus(
            agent_name=agent_name,
            enabled=policy.mode == AdaptationMode.AUTO and policy.user_opted_in,
            mode=policy.mode,
            min_confidence=policy.min_confidence,
            allowed_risk_levels=sorted(policy.allowed_risk_levels, key=lambda r: r.rank),
            locked_preferences=[
                f"{r.category}.{r.key}" for r in policy.scope_restrictions if r.locked
            ],
            cooldown_remaining_seconds=remaining,
            changes_used=len(applied),
            changes_max=policy.rate_limit.max_changes,
            window_seconds=policy.rate_limit.window_seconds,
        )

    async def _set_lock(self, agent_name: str, category: str, key: str, locked: bool) -> AdaptationPolicy:
        policy = await self.get_policy(agent_name)
        existing = policy.restriction_for(category, key)
        restriction = (
            existing.model_copy(update={"locked": locked})
            if existing is not None
            else ScopeRestriction(category=category, key=key, locked=locked)
        )
        return await self.set_scope_restriction(agent_name, restriction)


@dataclass
class AdaptationStats:
    total_evaluated: int = 0
    by_result: dict[str, int] = field(default_factory=dict)
    by_reason: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SuggestionRouting:
    """Where ``propose_suggestion`` sent a suggestion."""

    suggestion_id: str
    proposal: Proposal | None = None
    attempt: AutoAdaptationAttempt | None = None

    @property
    def routed(self) -> bool:
        return self.proposal is not None


@dataclass(frozen=True)
class _Evaluation:
    policy: AdaptationPolicy
    current: PreferenceValue | None
    verdict: AdaptationVerdict
    now: datetime


class AutoAdaptationService:
    """
    Evaluates pending learned suggestions and applies those the policy allows.

    Evaluation is serialized per agent, the widest scope any check reads,
    so the cooldown and the rolling rate limit see every earlier
    application. Every evaluation is persisted as an attempt and audited,
    whatever its result.

    Suggestions can also be routed through arbitration with
    ``propose_suggestion``: the change then competes with other agents'
    proposals and is applied by the execution gate (see
    ``AdaptationEffectApplier``).
    """

    def __init__(
        self,
        engine: AdaptationPolicyEngine,
        policies: AdaptationPolicyService,
        learning: LearningRepository,
        attempts: AttemptRepository,
        audit: AuditTrail,
        dispatcher: EventDispatcher,
        observability: ObservabilityContext | None = None,
        clock: Clock | None = None,
        arbitration: ArbitrationService | None = None,
    ) -> None:
        self._engine = engine
        self._policies = policies
        self._learning = learning
        self._attempts = attempts
        self._audit = audit
        self._dispatcher = dispatcher
        self._observability = observability or ObservabilityContext()
        self._clock = clock or _utcnow
        self._arbitration = arbitration
        self._locks = KeyedLocks()
        self._stats = AdaptationStats()
        self._log = logger.bind(component="auto_adaptation")

    def get_stats(self) -> AdaptationStats:
        return self._stats

    async def current_value(self, agent_name: str, category: str, key: str) -> PreferenceValue | None:
        """Stored value, or the registry default when never set."""
        preference = await self._learning.get_preference(agent_name, category, key)
        if preference is not None:
            return preference.value
        definition = self._engine.registry.get(category, key)
        return definition.default if definition else None

    async def process_suggestion(self, suggestion_id: str) -> AutoAdaptationAttempt:
        suggestion = await self._require_suggestion(suggestion_id)

        async with self._locks.hold(suggestion.agent_name):
            # Re-read under the lock; a concurrent call may have processed it
            suggestion = await self._learning.find_suggestion(suggestion_id) or suggestion
            evaluation = await self._evaluate(suggestion)
            if evaluation.verdict.applies:
                await self._apply(suggestion, f"Auto-applied suggestion {suggestion.id}")
            attempt = await self._persist(suggestion, evaluation)

        await self._publish(attempt)
        return attempt

    async def process_pending(self, agent_name: str | None = None) -> list[AutoAdaptationAttempt]:
        pending = await self._learning.pending_suggestions(agent_name)
        if not pending:
            self._log.debug("no_pending_suggestions", agent=agent_name)
            return []
        return [await self.process_suggestion(s.id) for s in pending]

    async def propose_suggestion(self, suggestion_id: str) -> SuggestionRouting:
        """
        Submit a suggestion the policy allows as an ApplyPreference proposal.

        The suggestion stays pending until the winning decision executes.
        A suggestion the policy blocks or skips never reaches arbitration;
        its attempt is recorded exactly as ``process_suggestion`` would.
        """
        if self._arbitration is None:
            raise InvalidStateError("no arbitration service to route suggestions through")
        suggestion = await self._require_suggestion(suggestion_id)

        async with self._locks.hold(suggestion.agent_name):
            suggestion = await self._learning.find_suggestion(suggestion_id) or suggestion
            evaluation = await self._evaluate(suggestion)
            attempt = None if evaluation.verdict.applies else await self._persist(suggestion, evaluation)

        if attempt is not None:
            await self._publish(attempt)
            return SuggestionRouting(suggestion_id, attempt=attempt)

        definition = self._engine.registry.require(suggestion.category, suggestion.key)
        result = await self._arbitration.propose(
            suggestion.agent_name,
            ApplyPreferenceAction(
                category=suggestion.category,
                key=suggestion.key,
                current_value=evaluation.current,
                new_value=suggestion.suggested_value,
                suggestion_id=suggestion.id,
            ),
            confidence_score=suggestion.confidence,
            cost_estimate=0.0,
            risk_level=definition.risk_level,
            originating_event_id=suggestion.id,
        )
        proposal = result.unwrap()
        self._log.info(
            "suggestion_proposed",
            suggestion_id=suggestion.id,
            proposal_id=proposal.id,
            agent=suggestion.agent_name,
            preference=definition.full_key,
        )
        return SuggestionRouting(suggestion_id, proposal=proposal)

    async def complete_proposal(self, proposal: Proposal) -> AutoAdaptationAttempt | None:
        """
        Apply an executed proposal that carries a pending learned suggestion.

        Records the APPLIED attempt and approves the suggestion. Returns None
        when the proposal does not stand for a pending suggestion.
        """
        action = proposal.action
        if not isinstance(action, ApplyPreferenceAction) or action.suggestion_id is None:
            return None
        suggestion = await self._learning.find_suggestion(action.suggestion_id)
        if suggestion is None:
            return None

        async with self._locks.hold(suggestion.agent_name):
            suggestion = await self._learning.find_suggestion(suggestion.id) or suggestion
            if not suggestion.is_pending or not values_match(suggestion.suggested_value, action.new_value):
                return None
            self._engine.registry.validate(suggestion.category, suggestion.key, suggestion.suggested_value)
            evaluation = _Evaluation(
                policy=await self._policies.get_policy(suggestion.agent_name),
                current=await self.current_value(suggestion.agent_name, suggestion.category, suggestion.key),
                verdict=AdaptationVerdict(
                    AttemptResult.APPLIED, detail=f"Applied through arbitration (proposal {proposal.id})"
                ),
                now=self._clock(),
            )
            await self._apply(suggestion, evaluation.verdict.detail)
            attempt = await self._persist(suggestion, evaluation)

        await self._publish(attempt)
        return attempt

    async def _require_suggestion(self, suggestion_id: str) -> LearnedSuggestion:
        suggestion = await self._learning.find_suggestion(suggestion_id)
        if suggestion is None:
            raise NotFoundError("suggestion", suggestion_id)
        return suggestion

    async def _evaluate(self, suggestion: LearnedSuggestion) -> _Evaluation:
        now = self._clock()
        policy = await self._policies.get_policy(suggestion.agent_name)
        current = await self.current_value(suggestion.agent_name, suggestion.category, suggestion.key)

        history = await self._learning.preference_history(
            suggestion.agent_name, suggestion.category, suggestion.key
        )
        window_start = now - timedelta(seconds=policy.rate_limit.window_seconds)
        applied = await self._attempts.query(
            agent_name=suggestion.agent_name, result=AttemptResult.APPLIED, since=window_start
        )

        verdict = self._engine.evaluate(
            AdaptationContext(
                suggestion=suggestion,
                policy=policy,
                current_value=current,
                last_change_at=history[0].changed_at if history else None,
                applied_in_window=len(applied),
                now=now,
            )
        )
        return _Evaluation(policy, current, verdict, now)

    async def _apply(self, suggestion: LearnedSuggestion, reason: str) -> None:
        await self._learning.set_preference(
            suggestion.agent_name,
            suggestion.category,
            suggestion.key,
            suggestion.suggested_value,
            ChangeSource.LEARNING,
            reason=reason,
            suggestion_id=suggestion.id,
        )
        await self._learning.set_suggestion_status(suggestion.id, SuggestionStatus.APPROVED)

    async def _persist(self, suggestion: LearnedSuggestion, evaluation: _Evaluation) -> AutoAdaptationAttempt:
        attempt = self._build_attempt(suggestion, evaluation)
        await self._attempts.save(attempt)
        await self._audit.record(attempt_entry(attempt))
        self._record(attempt, evaluation.verdict)
        return attempt

    def _build_attempt(self, suggestion: LearnedSuggestion, evaluation: _Evaluation) -> AutoAdaptationAttempt:
        definition = self._engine.registry.get(suggestion.category, suggestion.key)
        verdict = evaluation.verdict
        return AutoAdaptationAttempt(
            agent_name=suggestion.agent_name,
            suggestion_id=suggestion.id,
            category=suggestion.category,
            key=suggestion.key,
            previous_value=evaluation.current,
            suggested_value=suggestion.suggested_value,
            confidence=suggestion.confidence,
            risk_level=definition.risk_level if definition else RiskLevel.HIGH,
            result=verdict.result,
            block_reason=verdict.block_reason,
            skip_reason=verdict.skip_reason,
            policy_id=evaluation.policy.id,
            policy_snapshot=evaluation.policy.snapshot(),
            created_at=evaluation.now,
        )

    def _record(self, attempt: AutoAdaptationAttempt, verdict: AdaptationVerdict) -> None:
        result = attempt.result.value
        self._stats.total_evaluated += 1
        self._stats.by_result[result] = self._stats.by_result.get(result, 0) + 1
        if verdict.reason_code:
            self._stats.by_reason[verdict.reason_code] = self._stats.by_reason.get(verdict.reason_code, 0) + 1
        self._observability.record_attempt(result)
        self._log.info(
            "adaptation_attempt_recorded",
            attempt_id=attempt.id,
            agent=attempt.agent_name,
            preference=f"{attempt.category}.{attempt.key}",
            result=result,
            reason=verdict.reason_code,
            detail=verdict.detail,
        )

    async def _publish(self, attempt: AutoAdaptationAttempt) -> None:
        common = {
            "attempt_id": attempt.id,
            "agent_name": attempt.agent_name,
            "suggestion_id": attempt.suggestion_id,
            "category": attempt.category,
            "key": attempt.key,
        }
        event: Event
        if attempt.result == AttemptResult.APPLIED:
            event = PreferenceAutoApplied(
                **common,
                previous_value=attempt.previous_value,
                new_value=attempt.suggested_value,
                confidence=attempt.confidence,
            )
        elif attempt.block_reason is not None:
            event = PreferenceAutoBlocked(
                **common,
                block_reason=attempt.block_reason.value,
                explanation=attempt.reason_text,
            )
        elif attempt.skip_reason is not None:
            event = PreferenceAutoSkipped(**common, skip_reason=attempt.skip_reason.value)
        else:
            raise InvalidStateError(f"attempt {attempt.id} has no reason for result {attempt.result.value}")
        await self._dispatcher.publish(event, correlation_id=attempt.suggestion_id)


class AdaptationEffectApplier:
    """
    Effect applier for ApplyPreference proposals.

    A proposal that carries a pending learned suggestion completes that
    suggestion as an auto-adaptation; any other goes to ``fallback``.
    """

    def __init__(self, adaptation: AutoAdaptationService, fallback: EffectApplier) -> None:
        self._adaptation = adaptation
        self._fallback = fallback

    async def apply(self, proposal: Proposal) -> None:
        if await self._adaptation.complete_proposal(proposal) is None:
            await self._fallback.apply(proposal)
