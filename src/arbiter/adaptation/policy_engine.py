"""
AdaptationPolicyEngine: decides whether a learned suggestion may auto-apply.

The engine is a pure ordered chain of checks. The first check that fires
determines the verdict, so the order below is part of the contract:

1. skip: suggestion already processed / preference already at the value
2. user not opted in
3. mode is manual (a scope restriction's mode overrides the policy mode)
4. cooldown since the last change not elapsed
5. rate limit exceeded
6. preference risk level not allowed
7. preference locked
8. confidence below the threshold
9. preference not adaptive
10. suggested value fails validation
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from arbiter.core.adaptation import (
    BLOCK_REASON_TEXT,
    SKIP_REASON_TEXT,
    AdaptationMode,
    AdaptationPolicy,
    AttemptResult,
    BlockReason,
    SkipReason,
)
from arbiter.core.preferences import LearnedSuggestion, PreferenceDefinition, PreferenceRegistry
from arbiter.core.proposal import PreferenceValue, values_match

logger = structlog.get_logger()


@dataclass(frozen=True)
class AdaptationContext:
    """Everything the engine needs to judge one suggestion."""

    suggestion: LearnedSuggestion
    policy: AdaptationPolicy
    current_value: PreferenceValue | None
    last_change_at: datetime | None = None
    applied_in_window: int = 0
    now: datetime | None = None

    @property
    def evaluated_at(self) -> datetime:
        return self.now or datetime.now(UTC)


@dataclass(frozen=True)
class AdaptationVerdict:
    result: AttemptResult
    block_reason: BlockReason | None = None
    skip_reason: SkipReason | None = None
    threshold: float | None = None
    detail: str = ""

    @property
    def applies(self) -> bool:
        return self.result == AttemptResult.APPLIED

    @property
    def reason_code(self) -> str | None:
        reason = self.block_reason or self.skip_reason
        return reason.value if reason else None

    @classmethod
    def blocked(cls, reason: BlockReason, detail: str = "", threshold: float | None = None) -> "AdaptationVerdict":
        return cls(AttemptResult.BLOCKED, block_reason=reason, threshold=threshold,
                   detail=detail or BLOCK_REASON_TEXT[reason])

    @classmethod
    def skipped(cls, reason: SkipReason) -> "AdaptationVerdict":
        return cls(AttemptResult.SKIPPED, skip_reason=reason, detail=SKIP_REASON_TEXT[reason])


Check = Callable[[AdaptationContext, PreferenceDefinition | None], AdaptationVerdict | None]


class AdaptationPolicyEngine:
    """Evaluates suggestions against an agent's adaptation policy."""

    def __init__(self, registry: PreferenceRegistry) -> None:
        self._registry = registry
        self._checks: tuple[Check, ...] = (
            self._check_skip,
            self._check_opt_in,
            self._check_mode,
            self._check_cooldown,
            self._check_rate_limit,
            self._check_risk_level,
            self._check_locked,
            self._check_confidence,
            self._check_adaptive,
            self._check_valid_value,
        )
        self._log = logger.bind(component="adaptation_policy_engine")

    @property
    def registry(self) -> PreferenceRegistry:
        return self._registry

    def threshold_for(self, policy: AdaptationPolicy, definition: PreferenceDefinition) -> float:
        """Confidence a suggestion for this preference must reach."""
        return max(
            self._registry.threshold_for(definition.risk_level),
            policy.effective_min_confidence(definition.category, definition.key),
        )

    def evaluate(self, ctx: AdaptationContext) -> AdaptationVerdict:
        suggestion = ctx.suggestion
        definition = self._registry.get(suggestion.category, suggestion.key)
        for check in self._checks:
            verdict = check(ctx, definition)
            if verdict is not None:
                self._log.debug(
                    "suggestion_not_applied",
                    suggestion_id=suggestion.id,
                    result=verdict.result.value,
                    reason=verdict.reason_code,
                )
                return verdict

        threshold = self.threshold_for(ctx.policy, definition) if definition else None
        return AdaptationVerdict(AttemptResult.APPLIED, threshold=threshold)

    def _check_skip(self, ctx: AdaptationContext, _: PreferenceDefinition | None) -> AdaptationVerdict | None:
        if not ctx.suggestion.is_pending:
            return AdaptationVerdict.skipped(SkipReason.SUGGESTION_ALREADY_PROCESSED)
        if ctx.current_value is not None and values_match(ctx.current_value, ctx.suggestion.suggested_value):
            return AdaptationVerdict.skipped(SkipReason.PREFERENCE_ALREADY_AT_SUGGESTED_VALUE)
        return None

    def _check_opt_in(self, ctx: AdaptationContext, _: PreferenceDefinition | None) -> AdaptationVerdict | None:
        if not ctx.policy.user_opted_in:
            return AdaptationVerdict.blocked(BlockReason.USER_NOT_OPTED_IN)
        return None

    def _check_mode(self, ctx: AdaptationContext, _: PreferenceDefinition | None) -> AdaptationVerdict | None:
        s = ctx.suggestion
        if ctx.policy.effective_mode(s.category, s.key) == AdaptationMode.MANUAL:
            return AdaptationVerdict.blocked(BlockReason.MODE_IS_MANUAL)
        return None

    def _check_cooldown(self, ctx: AdaptationContext, _: PreferenceDefinition | None) -> AdaptationVerdict | None:
        if ctx.last_change_at is None:
            return None
        elapsed = ctx.evaluated_at - ctx.last_change_at
        if elapsed < ctx.policy.cooldown:
            remaining = (ctx.policy.cooldown - elapsed).total_seconds()
            return AdaptationVerdict.blocked(
                BlockReason.COOLDOWN_NOT_ELAPSED,
                f"Cooldown not elapsed: {remaining:.0f}s remaining",
            )
        return None

    def _check_rate_limit(self, ctx: AdaptationContext, _: PreferenceDefinition | None) -> AdaptationVerdict | None:
        limit = ctx.policy.rate_limit
        if ctx.applied_in_window >= limit.max_changes:
            return AdaptationVerdict.blocked(
                BlockReason.RATE_LIMIT_EXCEEDED,
                f"Rate limit reached: {ctx.applied_in_window}/{limit.max_changes} "
                f"changes in {limit.window_seconds}s",
            )
        return None

    def _check_risk_level(self, ctx: AdaptationContext, d: PreferenceDefinition | None) -> AdaptationVerdict | None:
        if d is not None and d.risk_level not in ctx.policy.allowed_risk_levels:
            return AdaptationVerdict.blocked(
                BlockReason.RISK_LEVEL_NOT_ALLOWED,
                f"Risk level {d.risk_level.value} is not allowed for automatic changes",
            )
        return None

    def _check_locked(self, ctx: AdaptationContext, _: PreferenceDefinition | None) -> AdaptationVerdict | None:
        s = ctx.suggestion
        if ctx.policy.is_locked(s.category, s.key):
            return AdaptationVerdict.blocked(BlockReason.PREFERENCE_LOCKED)
        return None

    def _check_confidence(self, ctx: AdaptationContext, d: PreferenceDefinition | None) -> AdaptationVerdict | None:
        if d is None:
            return None
        threshold = self.threshold_for(ctx.policy, d)
        # A threshold of 1.0 means the preference never auto-applies
        if threshold >= 1.0 or ctx.suggestion.confidence < threshold:
            return AdaptationVerdict.blocked(
                BlockReason.CONFIDENCE_TOO_LOW,
                f"Confidence {ctx.suggestion.confidence:.2f} below required {threshold:.2f}",
                threshold=threshold,
            )
        return None

    def _check_adaptive(self, ctx: AdaptationContext, d: PreferenceDefinition | None) -> AdaptationVerdict | None:
        if d is not None and not d.adaptive:
            return AdaptationVerdict.blocked(BlockReason.PREFERENCE_NOT_ADAPTIVE)
        return None

    def _check_valid_value(self, ctx: AdaptationContext, d: PreferenceDefinition | None) -> AdaptationVerdict | None:
        s = ctx.suggestion
        if d is None:
            return AdaptationVerdict.blocked(
                BlockReason.VALIDATION_FAILED, f"Unknown preference {s.category}.{s.key}"
            )
        if s.suggested_value not in d.allowed_values:
            return AdaptationVerdict.blocked(
                BlockReason.VALIDATION_FAILED,
                f"{s.suggested_value!r} is not one of {list(d.allowed_values)}",
            )
        return None
