"""Tests for adaptation policies, the policy engine and suggestion handling."""

from datetime import UTC, datetime, timedelta

import anyio
import pytest
from prometheus_client import CollectorRegistry

from arbiter.adaptation import AdaptationContext, AdaptationPolicyEngine, AutoAdaptationService
from arbiter.audit import attempt_entry_id
from arbiter.bus import EventKind
from arbiter.config import ArbiterSettings
from arbiter.core import (
    AdaptationMode,
    AdaptationPolicy,
    AttemptResult,
    BlockReason,
    ChangeSource,
    LearnedSuggestion,
    PreferenceDefinition,
    PreferenceRegistry,
    ProposalStatus,
    RateLimit,
    RiskLevel,
    ScopeRestriction,
    SkipReason,
    SuggestionStatus,
    create_proposal,
    standard_registry,
)
from arbiter.core.preferences import FeedbackEntry, FeedbackPattern
from arbiter.errors import InvalidStateError, NotFoundError, ValidationFailure
from arbiter.runtime import ArbiterRuntime, Repositories, create_runtime
from arbiter.storage import InMemoryAttemptRepository


def _runtime() -> ArbiterRuntime:
    return create_runtime(settings=ArbiterSettings(), metrics_registry=CollectorRegistry())


def _suggestion(
    value: str = "direct",
    confidence: float = 0.8,
    agent: str = "CoachAgent",
    category: str = "communication",
    key: str = "tone",
) -> LearnedSuggestion:
    return LearnedSuggestion(
        agent_name=agent,
        category=category,
        key=key,
        suggested_value=value,
        confidence=confidence,
    )


def _context(
    suggestion: LearnedSuggestion,
    policy: AdaptationPolicy,
    current: str | None = "encouraging",
    **fields,
) -> AdaptationContext:
    return AdaptationContext(suggestion=suggestion, policy=policy, current_value=current, **fields)


async def _submit(runtime: ArbiterRuntime, *args, **kwargs) -> LearnedSuggestion:
    return (await runtime.suggestions.submit_suggestion(*args, **kwargs)).unwrap()


class YieldingAttemptRepository(InMemoryAttemptRepository):
    """Suspends after every query, as a networked store would."""

    async def query(self, *args, **kwargs):
        found = await super().query(*args, **kwargs)
        await anyio.sleep(0)
        return found


def _two_coach_preferences() -> PreferenceRegistry:
    registry = standard_registry()
    registry.register(
        PreferenceDefinition(
            category="communication",
            key="emoji",
            agent_name="CoachAgent",
            allowed_values=("none", "some", "lots"),
            default="some",
        )
    )
    return registry


class TestAdaptationPolicyEngine:
    @pytest.fixture
    def engine(self) -> AdaptationPolicyEngine:
        return AdaptationPolicyEngine(standard_registry())

    def test_applies_when_every_check_passes(self, engine: AdaptationPolicyEngine) -> None:
        verdict = engine.evaluate(_context(_suggestion(), AdaptationPolicy.permissive("CoachAgent")))

        assert verdict.applies
        assert verdict.threshold == 0.70

    def test_skip_when_value_already_set(self, engine: AdaptationPolicyEngine) -> None:
        verdict = engine.evaluate(
            _context(_suggestion("encouraging"), AdaptationPolicy.conservative("CoachAgent"))
        )

        assert verdict.result == AttemptResult.SKIPPED
        assert verdict.skip_reason == SkipReason.PREFERENCE_ALREADY_AT_SUGGESTED_VALUE

    def test_skip_when_already_processed(self, engine: AdaptationPolicyEngine) -> None:
        processed = _suggestion().with_status(SuggestionStatus.REJECTED)

        verdict = engine.evaluate(_context(processed, AdaptationPolicy.permissive("CoachAgent")))

        assert verdict.skip_reason == SkipReason.SUGGESTION_ALREADY_PROCESSED

    def test_opt_in_checked_before_mode_and_lock(self, engine: AdaptationPolicyEngine) -> None:
        policy = AdaptationPolicy.conservative("CoachAgent").with_restriction(
            ScopeRestriction(category="communication", key="tone", locked=True)
        )

        verdict = engine.evaluate(_context(_suggestion(confidence=0.1), policy))

        assert verdict.block_reason == BlockReason.USER_NOT_OPTED_IN

    def test_restriction_mode_overrides_policy_mode(self, engine: AdaptationPolicyEngine) -> None:
        policy = AdaptationPolicy.permissive("CoachAgent").with_restriction(
            ScopeRestriction(category="communication", key="tone", mode=AdaptationMode.MANUAL)
        )

        verdict = engine.evaluate(_context(_suggestion(), policy))

        assert verdict.block_reason == BlockReason.MODE_IS_MANUAL

    def test_cooldown_before_rate_limit(self, engine: AdaptationPolicyEngine) -> None:
        now = datetime(2026, 5, 1, 12, tzinfo=UTC)
        policy = AdaptationPolicy.permissive("CoachAgent").model_copy(
            update={"rate_limit": RateLimit(max_changes=1)}
        )

        cooling = engine.evaluate(
            _context(_suggestion(), policy, last_change_at=now - timedelta(seconds=30), applied_in_window=1, now=now)
        )
        limited = engine.evaluate(
            _context(_suggestion(), policy, last_change_at=now - timedelta(minutes=5), applied_in_window=1, now=now)
        )

        assert cooling.block_reason == BlockReason.COOLDOWN_NOT_ELAPSED
        assert "30s remaining" in cooling.detail
        assert limited.block_reason == BlockReason.RATE_LIMIT_EXCEEDED

    def test_risk_level_before_lock(self, engine: AdaptationPolicyEngine) -> None:
        policy = AdaptationPolicy.permissive("PlannerAgent").model_copy(
            update={"allowed_risk_levels": frozenset({RiskLevel.LOW})}
        ).with_restriction(ScopeRestriction(category="scheduling", key="aggressiveness", locked=True))

        verdict = engine.evaluate(
            _context(
                _suggestion("aggressive", 0.95, "PlannerAgent", "scheduling", "aggressiveness"),
                policy,
                current="moderate",
            )
        )

        assert verdict.block_reason == BlockReason.RISK_LEVEL_NOT_ALLOWED

    def test_locked_preference(self, engine: AdaptationPolicyEngine) -> None:
        policy = AdaptationPolicy.permissive("CoachAgent").with_restriction(
            ScopeRestriction(category="communication", key="tone", locked=True)
        )

        verdict = engine.evaluate(_context(_suggestion(confidence=0.99), policy))

        assert verdict.block_reason == BlockReason.PREFERENCE_LOCKED

    def test_threshold_is_highest_of_registry_and_policy(self, engine: AdaptationPolicyEngine) -> None:
        policy = AdaptationPolicy.permissive("CoachAgent").model_copy(update={"min_confidence": 0.8})

        verdict = engine.evaluate(_context(_suggestion(confidence=0.75), policy))

        assert verdict.block_reason == BlockReason.CONFIDENCE_TOO_LOW
        assert verdict.threshold == 0.8

    def test_high_risk_never_auto_applies(self) -> None:
        registry = PreferenceRegistry([
            PreferenceDefinition(
                category="health",
                key="fasting",
                agent_name="CoachAgent",
                allowed_values=("off", "on"),
                default="off",
                risk_level=RiskLevel.HIGH,
            )
        ])
        engine = AdaptationPolicyEngine(registry)
        policy = AdaptationPolicy.permissive("CoachAgent").model_copy(
            update={"allowed_risk_levels": frozenset(RiskLevel)}
        )

        verdict = engine.evaluate(
            _context(_suggestion("on", 1.0, category="health", key="fasting"), policy, current="off")
        )

        assert verdict.block_reason == BlockReason.CONFIDENCE_TOO_LOW

    def test_non_adaptive_preference(self) -> None:
        registry = PreferenceRegistry([
            PreferenceDefinition(
                category="ui",
                key="language",
                agent_name="CoachAgent",
                allowed_values=("en", "de"),
                default="en",
                adaptive=False,
            )
        ])
        engine = AdaptationPolicyEngine(registry)

        verdict = engine.evaluate(
            _context(
                _suggestion("de", 0.99, category="ui", key="language"),
                AdaptationPolicy.permissive("CoachAgent"),
                current="en",
            )
        )

        assert verdict.block_reason == BlockReason.PREFERENCE_NOT_ADAPTIVE

    def test_disallowed_value(self, engine: AdaptationPolicyEngine) -> None:
        verdict = engine.evaluate(
            _context(_suggestion("sarcastic", 0.95), AdaptationPolicy.permissive("CoachAgent"))
        )

        assert verdict.block_reason == BlockReason.VALIDATION_FAILED

    def test_unknown_preference_fails_validation(self, engine: AdaptationPolicyEngine) -> None:
        verdict = engine.evaluate(
            _context(
                _suggestion("loud", 0.99, category="audio", key="volume"),
                AdaptationPolicy.permissive("CoachAgent"),
                current=None,
            )
        )

        assert verdict.block_reason == BlockReason.VALIDATION_FAILED
        assert "audio.volume" in verdict.detail


class TestAutoAdaptationService:
    @pytest.mark.asyncio
    async def test_blocked_by_confidence_for_medium_risk(self) -> None:
        runtime = _runtime()
        blocked: list[object] = []

        async def on_blocked(event: object) -> None:
            blocked.append(event)

        runtime.dispatcher.subscribe(EventKind.PREFERENCE_AUTO_BLOCKED, on_blocked)
        await runtime.adaptation_policies.apply_preset("PlannerAgent", "permissive")
        suggestion = await _submit(runtime, "PlannerAgent", "scheduling", "aggressiveness", "aggressive", 0.6)

        attempt = await runtime.adaptation.process_suggestion(suggestion.id)

        assert attempt.result == AttemptResult.BLOCKED
        assert attempt.block_reason == BlockReason.CONFIDENCE_TOO_LOW
        assert attempt.risk_level == RiskLevel.MEDIUM
        assert (await runtime.repositories.learning.find_suggestion(suggestion.id)).is_pending
        assert await runtime.repositories.learning.get_preference("PlannerAgent", "scheduling", "aggressiveness") is None
        assert len(blocked) == 1
        assert runtime.observability.counter_value("adaptation_attempts", result="blocked") == 1

    @pytest.mark.asyncio
    async def test_applied_suggestion(self) -> None:
        runtime = _runtime()
        applied: list[object] = []

        async def on_applied(event: object) -> None:
            applied.append(event)

        runtime.dispatcher.subscribe(EventKind.PREFERENCE_AUTO_APPLIED, on_applied)
        await runtime.adaptation_policies.enable_auto("CoachAgent")
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.8)

        attempt = await runtime.adaptation.process_suggestion(suggestion.id)

        assert attempt.result == AttemptResult.APPLIED
        assert attempt.previous_value == "encouraging"
        assert attempt.can_rollback
        learning = runtime.repositories.learning
        assert (await learning.get_preference("CoachAgent", "communication", "tone")).value == "direct"
        history = await learning.preference_history("CoachAgent", "communication", "tone")
        assert history[0].changed_by == ChangeSource.LEARNING
        assert history[0].suggestion_id == suggestion.id
        assert (await learning.find_suggestion(suggestion.id)).status == SuggestionStatus.APPROVED
        assert await runtime.audit.has_entry(attempt_entry_id(attempt.id))
        assert len(applied) == 1
        assert runtime.adaptation.get_stats().by_result == {"applied": 1}

    @pytest.mark.asyncio
    async def test_default_policy_requires_opt_in(self) -> None:
        runtime = _runtime()
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.99)

        attempt = await runtime.adaptation.process_suggestion(suggestion.id)

        assert attempt.block_reason == BlockReason.USER_NOT_OPTED_IN
        assert attempt.policy_snapshot.mode == AdaptationMode.MANUAL

    @pytest.mark.asyncio
    async def test_cooldown_applies_after_a_change(self) -> None:
        runtime = _runtime()
        await runtime.adaptation_policies.enable_auto("CoachAgent", cooldown_seconds=600)
        first = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.8)
        second = await _submit(runtime, "CoachAgent", "communication", "tone", "gentle", 0.8)

        attempts = await runtime.adaptation.process_pending("CoachAgent")

        assert [a.suggestion_id for a in attempts] == [first.id, second.id]
        assert attempts[0].result == AttemptResult.APPLIED
        assert attempts[1].block_reason == BlockReason.COOLDOWN_NOT_ELAPSED

    @pytest.mark.asyncio
    async def test_cooldown_elapses_with_time(self) -> None:
        runtime = _runtime()
        later = datetime.now(UTC) + timedelta(minutes=20)
        service = AutoAdaptationService(
            engine=AdaptationPolicyEngine(runtime.registry),
            policies=runtime.adaptation_policies,
            learning=runtime.repositories.learning,
            attempts=runtime.repositories.attempts,
            audit=runtime.audit,
            dispatcher=runtime.dispatcher,
            observability=runtime.observability,
            clock=lambda: later,
        )
        await runtime.adaptation_policies.enable_auto("CoachAgent", cooldown_seconds=600)
        await runtime.suggestions.set_preference("CoachAgent", "communication", "tone", "neutral")
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.8)

        attempt = await service.process_suggestion(suggestion.id)

        assert attempt.result == AttemptResult.APPLIED
        assert attempt.previous_value == "neutral"

    @pytest.mark.asyncio
    async def test_rate_limit_counts_applied_attempts(self) -> None:
        runtime = _runtime()
        policy = await runtime.adaptation_policies.enable_auto("CoachAgent", cooldown_seconds=0)
        await runtime.repositories.adaptation_policies.save(
            policy.model_copy(update={"rate_limit": RateLimit(max_changes=1, window_seconds=3600)})
        )
        await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.8)
        await _submit(runtime, "CoachAgent", "communication", "tone", "gentle", 0.8)

        attempts = await runtime.adaptation.process_pending("CoachAgent")

        assert [a.result for a in attempts] == [AttemptResult.APPLIED, AttemptResult.BLOCKED]
        assert attempts[1].block_reason == BlockReason.RATE_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_rate_limit_holds_across_concurrent_preferences(self) -> None:
        runtime = create_runtime(
            settings=ArbiterSettings(),
            registry=_two_coach_preferences(),
            repositories=Repositories(attempts=YieldingAttemptRepository()),
            metrics_registry=CollectorRegistry(),
        )
        policy = await runtime.adaptation_policies.enable_auto("CoachAgent", cooldown_seconds=0)
        await runtime.repositories.adaptation_policies.save(
            policy.model_copy(update={"rate_limit": RateLimit(max_changes=1, window_seconds=3600)})
        )
        tone = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.8)
        emoji = await _submit(runtime, "CoachAgent", "communication", "emoji", "lots", 0.8)
        attempts = {}

        async def process(suggestion_id: str) -> None:
            attempts[suggestion_id] = await runtime.adaptation.process_suggestion(suggestion_id)

        async with anyio.create_task_group() as tg:
            tg.start_soon(process, tone.id)
            tg.start_soon(process, emoji.id)

        results = sorted(a.result.value for a in attempts.values())
        assert results == ["applied", "blocked"]
        blocked = next(a for a in attempts.values() if a.result == AttemptResult.BLOCKED)
        assert blocked.block_reason == BlockReason.RATE_LIMIT_EXCEEDED
        assert len(runtime.adaptation._locks) == 0

    @pytest.mark.asyncio
    async def test_skipped_suggestion(self) -> None:
        runtime = _runtime()
        skipped: list[object] = []

        async def on_skipped(event: object) -> None:
            skipped.append(event)

        runtime.dispatcher.subscribe(EventKind.PREFERENCE_AUTO_SKIPPED, on_skipped)
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "encouraging", 0.9)

        attempt = await runtime.adaptation.process_suggestion(suggestion.id)

        assert attempt.result == AttemptResult.SKIPPED
        assert attempt.skip_reason == SkipReason.PREFERENCE_ALREADY_AT_SUGGESTED_VALUE
        assert len(skipped) == 1

    @pytest.mark.asyncio
    async def test_unknown_preference_is_blocked_as_high_risk(self) -> None:
        runtime = _runtime()
        await runtime.adaptation_policies.enable_auto("CoachAgent")
        suggestion = await _submit(runtime, "CoachAgent", "audio", "volume", "loud", 0.99)

        attempt = await runtime.adaptation.process_suggestion(suggestion.id)

        assert attempt.block_reason == BlockReason.VALIDATION_FAILED
        assert attempt.risk_level == RiskLevel.HIGH
        assert attempt.previous_value is None

    @pytest.mark.asyncio
    async def test_unknown_suggestion(self) -> None:
        runtime = _runtime()
        with pytest.raises(NotFoundError):
            await runtime.adaptation.process_suggestion("missing")

    @pytest.mark.asyncio
    async def test_nothing_pending(self) -> None:
        runtime = _runtime()
        assert await runtime.adaptation.process_pending() == []


class TestSuggestionRouting:
    @pytest.mark.asyncio
    async def test_allowed_suggestion_is_proposed_then_applied_on_execution(self) -> None:
        runtime = _runtime()
        applied: list[object] = []

        async def on_applied(event: object) -> None:
            applied.append(event)

        runtime.dispatcher.subscribe(EventKind.PREFERENCE_AUTO_APPLIED, on_applied)
        await runtime.adaptation_policies.enable_auto("CoachAgent")
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.9)

        routing = await runtime.adaptation.propose_suggestion(suggestion.id)

        assert routing.routed
        proposal = routing.proposal
        assert proposal.action.suggestion_id == suggestion.id
        assert proposal.action.current_value == "encouraging"
        assert proposal.confidence == 0.9
        assert proposal.cost_estimate == 0.0
        assert proposal.risk_level == RiskLevel.LOW
        learning = runtime.repositories.learning
        assert (await learning.find_suggestion(suggestion.id)).is_pending
        assert await runtime.repositories.attempts.query(agent_name="CoachAgent") == []

        decision = await runtime.arbitration.arbitrate_target(proposal.target_ref.canonical_key)
        await runtime.execution.execute(decision.id)

        history = await learning.preference_history("CoachAgent", "communication", "tone")
        assert history[0].new_value == "direct"
        assert history[0].changed_by == ChangeSource.LEARNING
        assert (await learning.find_suggestion(suggestion.id)).status == SuggestionStatus.APPROVED
        [attempt] = await runtime.repositories.attempts.query(agent_name="CoachAgent")
        assert attempt.result == AttemptResult.APPLIED
        assert attempt.previous_value == "encouraging"
        assert len(applied) == 1

    @pytest.mark.asyncio
    async def test_routed_suggestion_competes_with_other_agents(self) -> None:
        runtime = _runtime()
        await runtime.adaptation_policies.enable_auto("CoachAgent")
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "gentle", 0.8)
        rival = await runtime.arbitration.submit(
            create_proposal(
                "LoggerAgent",
                {"action_type": "apply_preference", "category": "communication", "key": "tone", "new_value": "neutral"},
                confidence_score=0.95,
            ).unwrap()
        )

        routing = await runtime.adaptation.propose_suggestion(suggestion.id)
        decision = await runtime.arbitration.arbitrate_target(rival.target_ref.canonical_key)

        assert decision.winning_proposal_id == routing.proposal.id
        assert decision.suppressed_proposal_ids == (rival.id,)
        await runtime.execution.execute(decision.id)
        assert (await runtime.suggestions.preferences("CoachAgent")) == {"communication.tone": "gentle"}
        stored_rival = await runtime.repositories.proposals.find_by_id(rival.id)
        assert stored_rival.status == ProposalStatus.SUPPRESSED

    @pytest.mark.asyncio
    async def test_blocked_suggestion_never_reaches_arbitration(self) -> None:
        runtime = _runtime()
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.99)

        routing = await runtime.adaptation.propose_suggestion(suggestion.id)

        assert not routing.routed
        assert routing.attempt.block_reason == BlockReason.USER_NOT_OPTED_IN
        assert await runtime.repositories.proposals.find_pending() == []
        assert await runtime.audit.has_entry(attempt_entry_id(routing.attempt.id))

    @pytest.mark.asyncio
    async def test_suggestion_settled_before_execution_falls_back_to_plain_apply(self) -> None:
        runtime = _runtime()
        await runtime.adaptation_policies.enable_auto("CoachAgent")
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.9)
        routing = await runtime.adaptation.propose_suggestion(suggestion.id)
        await runtime.suggestions.reject(suggestion.id, reason="changed my mind")

        decision = await runtime.arbitration.arbitrate_target(routing.proposal.target_ref.canonical_key)
        await runtime.execution.execute(decision.id)

        history = await runtime.repositories.learning.preference_history("CoachAgent", "communication", "tone")
        assert history[0].changed_by == ChangeSource.ARBITRATION
        assert await runtime.repositories.attempts.query(result=AttemptResult.APPLIED) == []

    @pytest.mark.asyncio
    async def test_requires_arbitration_service(self) -> None:
        runtime = _runtime()
        service = AutoAdaptationService(
            engine=AdaptationPolicyEngine(runtime.registry),
            policies=runtime.adaptation_policies,
            learning=runtime.repositories.learning,
            attempts=runtime.repositories.attempts,
            audit=runtime.audit,
            dispatcher=runtime.dispatcher,
        )
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.9)

        with pytest.raises(InvalidStateError):
            await service.propose_suggestion(suggestion.id)


class TestAdaptationPolicyService:
    @pytest.mark.asyncio
    async def test_default_policy_created_on_first_use(self) -> None:
        runtime = _runtime()

        policy = await runtime.adaptation_policies.get_policy("CoachAgent")

        assert policy.mode == AdaptationMode.MANUAL
        assert not policy.user_opted_in
        assert policy.rate_limit.max_changes == runtime.settings.adaptation_max_changes
        assert (await runtime.adaptation_policies.get_policy("CoachAgent")).id == policy.id

    @pytest.mark.asyncio
    async def test_enable_and_disable(self) -> None:
        runtime = _runtime()
        service = runtime.adaptation_policies

        enabled = await service.enable_auto(
            "PlannerAgent",
            min_confidence=0.9,
            allowed_risk_levels=[RiskLevel.LOW, RiskLevel.MEDIUM],
        )
        assert enabled.mode == AdaptationMode.AUTO
        assert enabled.user_opted_in
        assert enabled.min_confidence == 0.9
        assert enabled.allowed_risk_levels == {RiskLevel.LOW, RiskLevel.MEDIUM}

        disabled = await service.disable_auto("PlannerAgent")
        assert disabled.mode == AdaptationMode.MANUAL
        assert not disabled.user_opted_in
        assert disabled.id == enabled.id

    @pytest.mark.asyncio
    async def test_enable_rejects_out_of_range_confidence(self) -> None:
        runtime = _runtime()
        with pytest.raises(ValueError):
            await runtime.adaptation_policies.enable_auto("CoachAgent", min_confidence=1.5)

    @pytest.mark.asyncio
    async def test_lock_and_unlock(self) -> None:
        runtime = _runtime()
        service = runtime.adaptation_policies

        locked = await service.lock_preference("CoachAgent", "communication", "tone")
        assert locked.is_locked("communication", "tone")
        assert locked.effective_mode("communication", "tone") == locked.mode

        unlocked = await service.unlock_preference("CoachAgent", "communication", "tone")
        assert not unlocked.is_locked("communication", "tone")
        assert len(unlocked.scope_restrictions) == 1

    @pytest.mark.asyncio
    async def test_preset_keeps_policy_id(self) -> None:
        runtime = _runtime()
        original = await runtime.adaptation_policies.get_policy("CoachAgent")

        permissive = await runtime.adaptation_policies.apply_preset("CoachAgent", "permissive")
        conservative = await runtime.adaptation_policies.apply_preset("CoachAgent", "conservative")

        assert permissive.id == original.id
        assert permissive.mode == AdaptationMode.AUTO
        assert conservative.id == original.id
        assert conservative.mode == AdaptationMode.MANUAL

    @pytest.mark.asyncio
    async def test_status(self) -> None:
        runtime = _runtime()
        await runtime.adaptation_policies.enable_auto("CoachAgent", cooldown_seconds=600)
        await runtime.adaptation_policies.lock_preference("CoachAgent", "logging", "summarization_depth")
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.8)
        await runtime.adaptation.process_suggestion(suggestion.id)

        status = await runtime.adaptation_policies.status("CoachAgent")

        assert status.enabled
        assert status.changes_used == 1
        assert status.changes_max == 5
        assert 0 < status.cooldown_remaining_seconds <= 600
        assert status.locked_preferences == ["logging.summarization_depth"]


class TestSuggestionReview:
    @pytest.mark.asyncio
    async def test_submit_checks_shape_only(self) -> None:
        runtime = _runtime()

        bad = await runtime.suggestions.submit_suggestion("CoachAgent", "communication", "tone", "direct", 1.5)
        odd = await runtime.suggestions.submit_suggestion("CoachAgent", "audio", "volume", "loud", 0.5)

        assert not bad.is_ok
        assert odd.is_ok
        assert [s.id for s in await runtime.suggestions.pending("CoachAgent")] == [odd.unwrap().id]

    @pytest.mark.asyncio
    async def test_approve(self) -> None:
        runtime = _runtime()
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "gentle", 0.4, "user seemed stressed")

        record = await runtime.suggestions.approve(suggestion.id)

        assert record.changed_by == ChangeSource.USER
        assert record.previous_value is None
        assert record.new_value == "gentle"
        assert (await runtime.suggestions.preferences("CoachAgent")) == {"communication.tone": "gentle"}
        assert runtime.observability.counter_value("suggestion_approved") == 1
        with pytest.raises(InvalidStateError):
            await runtime.suggestions.approve(suggestion.id)

    @pytest.mark.asyncio
    async def test_approve_invalid_value(self) -> None:
        runtime = _runtime()
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "sarcastic", 0.9)

        with pytest.raises(ValidationFailure):
            await runtime.suggestions.approve(suggestion.id)
        assert (await runtime.repositories.learning.find_suggestion(suggestion.id)).is_pending

    @pytest.mark.asyncio
    async def test_reject(self) -> None:
        runtime = _runtime()
        suggestion = await _submit(runtime, "CoachAgent", "communication", "tone", "direct", 0.9)

        rejected = await runtime.suggestions.reject(suggestion.id, reason="not now")

        assert rejected.status == SuggestionStatus.REJECTED
        assert runtime.observability.counter_value("suggestion_rejected") == 1
        attempt = await runtime.adaptation.process_suggestion(suggestion.id)
        assert attempt.skip_reason == SkipReason.SUGGESTION_ALREADY_PROCESSED

    @pytest.mark.asyncio
    async def test_set_and_reset_preference(self) -> None:
        runtime = _runtime()
        suggestions = runtime.suggestions

        await suggestions.set_preference("LoggerAgent", "logging", "summarization_depth", "detailed")
        assert (await suggestions.preferences("LoggerAgent"))["logging.summarization_depth"] == "detailed"

        reset = await suggestions.reset_preference("LoggerAgent", "logging", "summarization_depth")
        assert reset.new_value == "standard"
        history = await suggestions.history("LoggerAgent", "logging", "summarization_depth")
        assert [h.new_value for h in history] == ["standard", "detailed"]

        with pytest.raises(ValidationFailure):
            await suggestions.set_preference("LoggerAgent", "logging", "summarization_depth", "verbose")

    @pytest.mark.asyncio
    async def test_feedback_and_patterns(self) -> None:
        runtime = _runtime()
        suggestions = runtime.suggestions
        pattern = FeedbackPattern(
            description="Morning tasks get declined",
            decision_type="schedule_task",
            acceptance_rate=0.2,
            sample_size=15,
            confidence=0.8,
        )

        await suggestions.record_feedback(
            "PlannerAgent",
            FeedbackEntry(decision_record_id="d1", decision_type="schedule_task", user_accepted=False),
        )
        await suggestions.record_pattern("PlannerAgent", pattern)
        await suggestions.record_pattern("PlannerAgent", pattern.model_copy(update={"sample_size": 20}))

        feedback = await suggestions.feedback("PlannerAgent")
        patterns = await suggestions.patterns("PlannerAgent")
        assert feedback[0].user_accepted is False
        assert [p.sample_size for p in patterns] == [20]
