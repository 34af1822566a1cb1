"""
Arbitration policies: strategy selection, veto rules, escalation thresholds.

Policies are immutable and referenced by id from every decision, so a
decision can always be reproduced from the policy it names.
"""

from collections.abc import Sequence
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from ulid import ULID

from arbiter.core.proposal import ApplyPreferenceAction, Proposal
from arbiter.core.types import PolicyScope, ResolutionStrategy, RiskLevel

FALLBACK_POLICY_ID = "policy-fallback-default"
DEFAULT_PRIORITY_ORDER = ("CoachAgent", "PlannerAgent", "LoggerAgent")


class VetoCondition(Enum):
    """Predicate kinds a veto rule can test."""

    RISK_LEVEL = "risk_level"  # proposal risk at or above the given level
    COST_THRESHOLD = "cost_threshold"  # cost at or above the given amount
    AGENT_BLOCKLIST = "agent_blocklist"
    PREFERENCE_BLOCKLIST = "preference_blocklist"  # "category.key" entries
    ACTION_TYPE_BLOCKLIST = "action_type_blocklist"


class VetoRule(BaseModel):
    """A predicate that removes matching proposals from contention."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    name: str
    condition: VetoCondition
    value: Any
    escalate_on_veto: bool = False

    def matches(self, proposal: Proposal) -> bool:
        match self.condition:
            case VetoCondition.RISK_LEVEL:
                return proposal.risk_level.at_least(RiskLevel(self.value))
            case VetoCondition.COST_THRESHOLD:
                return proposal.cost_estimate >= float(self.value)
            case VetoCondition.AGENT_BLOCKLIST:
                return proposal.agent_name in _as_set(self.value)
            case VetoCondition.PREFERENCE_BLOCKLIST:
                action = proposal.action
                return (
                    isinstance(action, ApplyPreferenceAction)
                    and action.preference_key in _as_set(self.value)
                )
            case VetoCondition.ACTION_TYPE_BLOCKLIST:
                return proposal.action_type.value in _as_set(self.value)
        return False

    def describe(self, proposal: Proposal) -> str:
        return f"{proposal.agent_name} proposal vetoed by rule '{self.name}' ({self.condition.value}={self.value})"


def _as_set(value: Any) -> set[str]:
    if isinstance(value, str):
        return {value}
    return {str(v) for v in value}


class EscalationThresholds(BaseModel):
    """When arbitration defers to a human instead of deciding."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    risk_threshold: RiskLevel | None = None
    cost_threshold: float | None = None
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    on_multi_agent_conflict: bool = False
    always_escalate_agents: frozenset[str] = Field(default_factory=frozenset)


class StrategyWeights(BaseModel):
    """
    Coefficients of the weighted strategy.

    score = confidence * confidence_weight
            - cost * cost_weight
            - risk_values[risk] * risk_weight
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    confidence_weight: float = 1.0
    cost_weight: float = 0.5
    risk_weight: float = 0.5
    risk_values: dict[RiskLevel, float] = Field(
        default_factory=lambda: {RiskLevel.LOW: 0.2, RiskLevel.MEDIUM: 0.5, RiskLevel.HIGH: 1.0}
    )

    def score(self, proposal: Proposal) -> float:
        return (
            proposal.confidence * self.confidence_weight
            - proposal.cost_estimate * self.cost_weight
            - self.risk_values.get(proposal.risk_level, 1.0) * self.risk_weight
        )


class ConsensusRule(BaseModel):
    """Agreement required for the consensus strategy to select a winner."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Distinct agents that must agree; None means every contender
    quorum: int | None = Field(default=None, ge=1)
    tolerance: float = Field(default=0.0, ge=0.0)


class ArbitrationPolicy(BaseModel):
    """Declared rules for resolving conflicts within a scope."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    name: str
    scope: PolicyScope = PolicyScope.DEFAULT
    # Agent name for AGENT scope, "category.key" for PREFERENCE scope
    scope_ref: str | None = None
    resolution_strategy: ResolutionStrategy = ResolutionStrategy.PRIORITY
    priority_order: tuple[str, ...] = DEFAULT_PRIORITY_ORDER
    weights: StrategyWeights = Field(default_factory=StrategyWeights)
    veto_rules: tuple[VetoRule, ...] = Field(default_factory=tuple)
    escalation: EscalationThresholds = Field(default_factory=EscalationThresholds)
    consensus: ConsensusRule = Field(default_factory=ConsensusRule)
    description: str = ""

    @model_validator(mode="after")
    def validate_scope_ref(self) -> "ArbitrationPolicy":
        if self.scope != PolicyScope.DEFAULT and not self.scope_ref:
            raise ValueError(f"{self.scope.value} policy requires scope_ref")
        return self

    def agent_rank(self, agent_name: str) -> int:
        """Rank from the priority order, higher is stronger; unlisted agents rank 0."""
        if agent_name not in self.priority_order:
            return 0
        return len(self.priority_order) - self.priority_order.index(agent_name)

    def effective_priority(self, proposal: Proposal) -> int:
        if proposal.priority is not None:
            return proposal.priority
        return self.agent_rank(proposal.agent_name)

    def matching_veto(self, proposal: Proposal) -> VetoRule | None:
        for rule in self.veto_rules:
            if rule.matches(proposal):
                return rule
        return None


def fallback_policy(
    strategy: ResolutionStrategy = ResolutionStrategy.PRIORITY,
    priority_order: Sequence[str] = DEFAULT_PRIORITY_ORDER,
) -> ArbitrationPolicy:
    """Policy used when no default policy has been stored."""
    return ArbitrationPolicy(
        id=FALLBACK_POLICY_ID,
        name="Fallback default",
        scope=PolicyScope.DEFAULT,
        resolution_strategy=strategy,
        priority_order=tuple(priority_order),
        escalation=EscalationThresholds(risk_threshold=RiskLevel.HIGH, confidence_threshold=0.3),
        description="Built-in policy applied when none is configured",
    )
