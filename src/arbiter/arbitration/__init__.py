"""Conflict detection, arbitration, execution and escalation approval."""

from arbiter.arbitration.approval import EscalationApprovalService
from arbiter.arbitration.commit import DecisionCommitter
from arbiter.arbitration.detector import ConflictDetector, ConflictRules, DetectionResult, default_rules
from arbiter.arbitration.engine import ArbitrationEngine, EscalationTrigger
from arbiter.arbitration.execution import ExecutionGate, ExecutionResult, PreferenceEffectApplier
from arbiter.arbitration.service import ArbitrationService, ArbitrationStats
from arbiter.arbitration.strategies import STRATEGIES, StrategySelection

__all__ = [
    "ArbitrationEngine",
    "ArbitrationService",
    "ArbitrationStats",
    "ConflictDetector",
    "ConflictRules",
    "DecisionCommitter",
    "DetectionResult",
    "EscalationApprovalService",
    "EscalationTrigger",
    "ExecutionGate",
    "ExecutionResult",
    "PreferenceEffectApplier",
    "STRATEGIES",
    "StrategySelection",
    "default_rules",
]
