"""Domain model for proposal arbitration and preference adaptation."""

from arbiter.core.adaptation import (
    AdaptationMode,
    AdaptationPolicy,
    AttemptResult,
    AutoAdaptationAttempt,
    BlockReason,
    PolicySnapshot,
    RateLimit,
    ScopeRestriction,
    SkipReason,
)
from arbiter.core.audit import AuditEntry, AuditKind
from arbiter.core.decision import ArbitrationDecision, Conflict, DecisionFactor, Suppression
from arbiter.core.policy import (
    ArbitrationPolicy,
    ConsensusRule,
    EscalationThresholds,
    StrategyWeights,
    VetoCondition,
    VetoRule,
    fallback_policy,
)
from arbiter.core.preferences import (
    ChangeSource,
    LearnedSuggestion,
    PreferenceChangeRecord,
    PreferenceDefinition,
    PreferenceRegistry,
    RiskThresholds,
    SuggestionStatus,
    UserPreference,
    standard_registry,
)
from arbiter.core.proposal import (
    ApplyPreferenceAction,
    CreateSuggestionAction,
    CreateTaskAction,
    ModifyGoalAction,
    Proposal,
    RescheduleTaskAction,
    SendNotificationAction,
    UpdateScheduleAction,
    create_proposal,
    values_match,
)
from arbiter.core.types import (
    ActionType,
    ArbitrationOutcome,
    ConflictType,
    EscalationReason,
    FactorImpact,
    PolicyScope,
    ProposalStatus,
    ResolutionStrategy,
    RiskLevel,
    SuppressionReason,
    TargetRef,
    TargetType,
)

__all__ = [
    "ActionType",
    "AdaptationMode",
    "AdaptationPolicy",
    "ApplyPreferenceAction",
    "ArbitrationDecision",
    "ArbitrationOutcome",
    "ArbitrationPolicy",
    "AttemptResult",
    "AuditEntry",
    "AuditKind",
    "AutoAdaptationAttempt",
    "BlockReason",
    "ChangeSource",
    "Conflict",
    "ConflictType",
    "ConsensusRule",
    "CreateSuggestionAction",
    "CreateTaskAction",
    "DecisionFactor",
    "EscalationReason",
    "EscalationThresholds",
    "FactorImpact",
    "LearnedSuggestion",
    "ModifyGoalAction",
    "PolicyScope",
    "PolicySnapshot",
    "PreferenceChangeRecord",
    "PreferenceDefinition",
    "PreferenceRegistry",
    "Proposal",
    "ProposalStatus",
    "RateLimit",
    "RescheduleTaskAction",
    "ResolutionStrategy",
    "RiskLevel",
    "RiskThresholds",
    "ScopeRestriction",
    "SendNotificationAction",
    "SkipReason",
    "StrategyWeights",
    "SuggestionStatus",
    "Suppression",
    "SuppressionReason",
    "TargetRef",
    "TargetType",
    "UpdateScheduleAction",
    "UserPreference",
    "VetoCondition",
    "VetoRule",
    "create_proposal",
    "fallback_policy",
    "standard_registry",
    "values_match",
]
