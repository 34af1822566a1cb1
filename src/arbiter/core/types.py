"""
Shared vocabulary: enums and the target reference value object.

Enum values are the lowercase machine-readable codes persisted on records
and carried on events.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class RiskLevel(Enum):
    """How aggressively a proposal or preference may be applied."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def at_least(self, other: "RiskLevel") -> bool:
        return self.rank >= other.rank


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class TargetType(Enum):
    """Aggregates a proposal can act on."""

    PREFERENCE = "preference"
    TASK = "task"
    SCHEDULE = "schedule"
    GOAL = "goal"
    NOTIFICATION = "notification"


class ActionType(Enum):
    """Discriminator of the proposal action union."""

    APPLY_PREFERENCE = "apply_preference"
    RESCHEDULE_TASK = "reschedule_task"
    CREATE_TASK = "create_task"
    CREATE_SUGGESTION = "create_suggestion"
    SEND_NOTIFICATION = "send_notification"
    UPDATE_SCHEDULE = "update_schedule"
    MODIFY_GOAL = "modify_goal"


class ProposalStatus(Enum):
    """Proposal lifecycle. PENDING is the only non-terminal state."""

    PENDING = "pending"
    WON = "won"
    SUPPRESSED = "suppressed"
    VETOED = "vetoed"
    EXECUTED = "executed"


class ConflictType(Enum):
    """Classification of a collision between proposals on one target."""

    SAME_TARGET = "same_target"
    MUTUALLY_EXCLUSIVE = "mutually_exclusive"
    RESOURCE_COMPETITION = "resource_competition"
    INVARIANT_VIOLATION = "invariant_violation"


class PolicyScope(Enum):
    """Reach of an arbitration policy. Narrower scopes override wider ones."""

    DEFAULT = "default"
    AGENT = "agent"
    PREFERENCE = "preference"


class ResolutionStrategy(Enum):
    """How a conflict is resolved when no escalation fires."""

    PRIORITY = "priority"
    WEIGHTED = "weighted"
    VETO = "veto"
    CONSENSUS = "consensus"


class ArbitrationOutcome(Enum):
    """Result classification of an arbitration decision."""

    WINNER_SELECTED = "winner_selected"
    ALL_VETOED = "all_vetoed"
    ESCALATED = "escalated"
    NO_CONFLICT = "no_conflict"

    @property
    def has_winner(self) -> bool:
        return self in (ArbitrationOutcome.WINNER_SELECTED, ArbitrationOutcome.NO_CONFLICT)


class EscalationReason(Enum):
    """Why a decision was deferred to a human."""

    RISK_THRESHOLD = "risk_threshold"
    COST_THRESHOLD = "cost_threshold"
    CONFIDENCE_TOO_LOW = "confidence_too_low"
    MULTI_AGENT_CONFLICT = "multi_agent_conflict"
    AGENT_ALWAYS_ESCALATE = "agent_always_escalate"
    VETO_ESCALATION = "veto_escalation"
    NO_CLEAR_WINNER = "no_clear_winner"


class SuppressionReason(Enum):
    """Why a losing proposal did not win."""

    LOST_PRIORITY = "lost_priority"
    LOWER_SCORE = "lower_score"
    VETOED = "vetoed"
    LOST_CONSENSUS = "lost_consensus"


class FactorImpact(Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class TargetRef(BaseModel):
    """Reference to the aggregate a proposal acts on."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: TargetType
    id: str
    key: str | None = None

    @property
    def canonical_key(self) -> str:
        """Grouping key used for conflict detection and per-target locking."""
        base = f"{self.type.value}:{self.id}"
        return f"{base}:{self.key}" if self.key else base
