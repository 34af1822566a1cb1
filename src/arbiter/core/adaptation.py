"""
Adaptation policies and the attempts they govern.

An adaptation policy belongs to one agent and decides whether learned
suggestions may change that agent's preferences without the user.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator
from ulid import ULID

from arbiter.core.proposal import PreferenceValue
from arbiter.core.types import RiskLevel


class AdaptationMode(Enum):
    MANUAL = "manual"  # never auto-apply
    AUTO = "auto"  # may auto-apply subject to policy


class AttemptResult(Enum):
    APPLIED = "applied"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class BlockReason(Enum):
    """Policy violations that stop an auto-application, in evaluation order."""

    USER_NOT_OPTED_IN = "user_not_opted_in"
    MODE_IS_MANUAL = "mode_is_manual"
    COOLDOWN_NOT_ELAPSED = "cooldown_not_elapsed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RISK_LEVEL_NOT_ALLOWED = "risk_level_not_allowed"
    PREFERENCE_LOCKED = "preference_locked"
    CONFIDENCE_TOO_LOW = "confidence_too_low"
    PREFERENCE_NOT_ADAPTIVE = "preference_not_adaptive"
    VALIDATION_FAILED = "validation_failed"


class SkipReason(Enum):
    NO_PENDING_SUGGESTIONS = "no_pending_suggestions"
    SUGGESTION_ALREADY_PROCESSED = "suggestion_already_processed"
    PREFERENCE_ALREADY_AT_SUGGESTED_VALUE = "preference_already_at_suggested_value"


BLOCK_REASON_TEXT: dict[BlockReason, str] = {
    BlockReason.USER_NOT_OPTED_IN: "User has not opted in to automatic adaptation",
    BlockReason.MODE_IS_MANUAL: "Adaptation mode is manual",
    BlockReason.COOLDOWN_NOT_ELAPSED: "Cooldown since the last change has not elapsed",
    BlockReason.RATE_LIMIT_EXCEEDED: "Too many automatic changes in the current window",
    BlockReason.RISK_LEVEL_NOT_ALLOWED: "Preference risk level is not allowed for automatic changes",
    BlockReason.PREFERENCE_LOCKED: "Preference is locked by the user",
    BlockReason.CONFIDENCE_TOO_LOW: "Suggestion confidence is below the required threshold",
    BlockReason.PREFERENCE_NOT_ADAPTIVE: "Preference does not accept learned changes",
    BlockReason.VALIDATION_FAILED: "Suggested value is not an allowed value",
}

SKIP_REASON_TEXT: dict[SkipReason, str] = {
    SkipReason.NO_PENDING_SUGGESTIONS: "No pending suggestions",
    SkipReason.SUGGESTION_ALREADY_PROCESSED: "Suggestion was already processed",
    SkipReason.PREFERENCE_ALREADY_AT_SUGGESTED_VALUE: "Preference already has the suggested value",
}


class RateLimit(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_changes: int = Field(default=5, ge=0)
    window_seconds: int = Field(default=3600, gt=0)


class ScopeRestriction(BaseModel):
    """Per-preference override of the agent-wide policy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    category: str
    key: str
    mode: AdaptationMode | None = None  # None inherits the policy mode
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    locked: bool = False


class AdaptationPolicy(BaseModel):
    """Per-agent rules for automatic preference adaptation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    agent_name: str
    mode: AdaptationMode = AdaptationMode.MANUAL
    user_opted_in: bool = False
    min_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    cooldown_seconds: int = Field(default=60, ge=0)
    rate_limit: RateLimit = Field(default_factory=RateLimit)
    scope_restrictions: tuple[ScopeRestriction, ...] = Field(default_factory=tuple)
    allowed_risk_levels: frozenset[RiskLevel] = frozenset({RiskLevel.LOW})
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def conservative(cls, agent_name: str) -> "AdaptationPolicy":
        return cls(agent_name=agent_name)

    @classmethod
    def permissive(cls, agent_name: str) -> "AdaptationPolicy":
        return cls(
            agent_name=agent_name,
            mode=AdaptationMode.AUTO,
            user_opted_in=True,
            min_confidence=0.7,
            allowed_risk_levels=frozenset({RiskLevel.LOW, RiskLevel.MEDIUM}),
        )

    @property
    def cooldown(self) -> timedelta:
        return timedelta(seconds=self.cooldown_seconds)

    def restriction_for(self, category: str, key: str) -> ScopeRestriction | None:
        for restriction in self.scope_restrictions:
            if restriction.category == category and restriction.key == key:
                return restriction
        return None

    def effective_mode(self, category: str, key: str) -> AdaptationMode:
        restriction = self.restriction_for(category, key)
        if restriction is not None and restriction.mode is not None:
            return restriction.mode
        return self.mode

    def effective_min_confidence(self, category: str, key: str) -> float:
        restriction = self.restriction_for(category, key)
        if restriction is not None and restriction.min_confidence is not None:
            return max(self.min_confidence, restriction.min_confidence)
        return self.min_confidence

    def is_locked(self, category: str, key: str) -> bool:
        restriction = self.restriction_for(category, key)
        return restriction is not None and restriction.locked

    def with_restriction(self, restriction: ScopeRestriction) -> "AdaptationPolicy":
        others = tuple(
            r for r in self.scope_restrictions
            if (r.category, r.key) != (restriction.category, restriction.key)
        )
        return self.model_copy(
            update={"scope_restrictions": (*others, restriction), "updated_at": datetime.now(UTC)}
        )

    def snapshot(self) -> "PolicySnapshot":
        return PolicySnapshot(
            policy_id=self.id,
            mode=self.mode,
            user_opted_in=self.user_opted_in,
            min_confidence=self.min_confidence,
            cooldown_seconds=self.cooldown_seconds,
            rate_limit=self.rate_limit,
            scope_restrictions=self.scope_restrictions,
            allowed_risk_levels=self.allowed_risk_levels,
            captured_at=datetime.now(UTC),
        )


class PolicySnapshot(BaseModel):
    """Frozen copy of an adaptation policy at evaluation time."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    policy_id: str
    mode: AdaptationMode
    user_opted_in: bool
    min_confidence: float
    cooldown_seconds: int
    rate_limit: RateLimit
    scope_restrictions: tuple[ScopeRestriction, ...]
    allowed_risk_levels: frozenset[RiskLevel]
    captured_at: datetime


class AutoAdaptationAttempt(BaseModel):
    """Record of one evaluation of a learned suggestion."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    agent_name: str
    suggestion_id: str
    category: str
    key: str
    previous_value: PreferenceValue | None
    suggested_value: PreferenceValue
    confidence: float = Field(ge=0.0, le=1.0)
    risk_level: RiskLevel
    result: AttemptResult
    block_reason: BlockReason | None = None
    skip_reason: SkipReason | None = None
    policy_id: str
    policy_snapshot: PolicySnapshot
    rolled_back: bool = False
    rolled_back_at: datetime | None = None
    rollback_reason: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def validate_reason(self) -> Self:
        match self.result:
            case AttemptResult.BLOCKED:
                ok = self.block_reason is not None and self.skip_reason is None
            case AttemptResult.SKIPPED:
                ok = self.skip_reason is not None and self.block_reason is None
            case _:
                ok = self.block_reason is None and self.skip_reason is None
        if not ok:
            raise ValueError(f"reason codes do not match result {self.result.value}")
        if self.rolled_back and self.result != AttemptResult.APPLIED:
            raise ValueError("only applied attempts can be rolled back")
        return self

    @property
    def can_rollback(self) -> bool:
        return self.result == AttemptResult.APPLIED and not self.rolled_back

    @property
    def reason_text(self) -> str:
        if self.block_reason is not None:
            return BLOCK_REASON_TEXT[self.block_reason]
        if self.skip_reason is not None:
            return SKIP_REASON_TEXT[self.skip_reason]
        return f"Changed {self.category}.{self.key} to {self.suggested_value!r}"

    def with_rollback(self, reason: str, at: datetime | None = None) -> "AutoAdaptationAttempt":
        return self.model_copy(
            update={
                "rolled_back": True,
                "rolled_back_at": at or datetime.now(UTC),
                "rollback_reason": reason,
            }
        )
