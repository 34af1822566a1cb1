"""Controlled preference adaptation."""

from arbiter.adaptation.policy_engine import AdaptationContext, AdaptationPolicyEngine, AdaptationVerdict
from arbiter.adaptation.preference_audit import (
    DefaultComparison,
    PreferenceAuditExport,
    PreferenceAuditService,
    PreferenceAuditSummary,
    ResetAllResult,
)
from arbiter.adaptation.service import (
    AdaptationEffectApplier,
    AdaptationPolicyService,
    AdaptationStats,
    AutoAdaptationService,
    PolicyStatus,
    SuggestionRouting,
)
from arbiter.adaptation.suggestions import SuggestionReviewService

__all__ = [
    "AdaptationContext",
    "AdaptationEffectApplier",
    "AdaptationPolicyEngine",
    "AdaptationPolicyService",
    "AdaptationStats",
    "AdaptationVerdict",
    "AutoAdaptationService",
    "DefaultComparison",
    "PolicyStatus",
    "PreferenceAuditExport",
    "PreferenceAuditService",
    "PreferenceAuditSummary",
    "ResetAllResult",
    "SuggestionReviewService",
    "SuggestionRouting",
]
