"""Conflicts and the arbitration decisions that close them."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID

from arbiter.core.types import (
    ArbitrationOutcome,
    ConflictType,
    EscalationReason,
    FactorImpact,
    ResolutionStrategy,
    SuppressionReason,
    TargetRef,
)
from arbiter.errors import InvalidStateError


class Conflict(BaseModel):
    """A detected collision between pending proposals on one target."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    proposal_ids: frozenset[str]
    conflict_type: ConflictType = ConflictType.SAME_TARGET
    target_ref: TargetRef
    description: str = ""
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_singleton(self) -> bool:
        return len(self.proposal_ids) == 1


class DecisionFactor(BaseModel):
    """One input that pushed a proposal toward winning or losing."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    proposal_id: str
    agent_name: str
    factor: str
    value: Any
    impact: FactorImpact = FactorImpact.NEUTRAL


class Suppression(BaseModel):
    """Why a specific proposal did not win."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    proposal_id: str
    agent_name: str
    reason: SuppressionReason
    explanation: str


class ArbitrationDecision(BaseModel):
    """
    The resolution of one conflict.

    Created once per conflict. After creation only ``executed`` flips, except
    for escalated decisions which a human approval or rejection resolves.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    conflict_id: str
    policy_id: str
    strategy_used: ResolutionStrategy
    outcome: ArbitrationOutcome

    winning_proposal_id: str | None = None
    suppressed_proposal_ids: tuple[str, ...] = Field(default_factory=tuple)
    vetoed_proposal_ids: tuple[str, ...] = Field(default_factory=tuple)
    # Proposals held for a human approver while the decision is escalated
    awaiting_proposal_ids: tuple[str, ...] = Field(default_factory=tuple)
    suppressions: tuple[Suppression, ...] = Field(default_factory=tuple)

    reasoning_summary: str = ""
    decision_factors: tuple[DecisionFactor, ...] = Field(default_factory=tuple)

    escalation_reason: EscalationReason | None = None
    suggested_resolution_id: str | None = None
    requires_human_approval: bool = False
    approved_by: str | None = None
    resolved_at: datetime | None = None

    executed: bool = False
    executed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def proposal_ids(self) -> tuple[str, ...]:
        ids: list[str] = []
        if self.winning_proposal_id:
            ids.append(self.winning_proposal_id)
        ids.extend(self.suppressed_proposal_ids)
        ids.extend(self.vetoed_proposal_ids)
        ids.extend(self.awaiting_proposal_ids)
        return tuple(ids)

    @property
    def can_execute(self) -> bool:
        return (
            not self.executed
            and not self.requires_human_approval
            and self.outcome.has_winner
            and self.winning_proposal_id is not None
        )

    def suppression_for(self, proposal_id: str) -> Suppression | None:
        for suppression in self.suppressions:
            if suppression.proposal_id == proposal_id:
                return suppression
        return None

    def mark_executed(self, at: datetime | None = None) -> "ArbitrationDecision":
        if self.executed:
            raise InvalidStateError(f"decision {self.id} already executed")
        if not self.can_execute:
            raise InvalidStateError(f"decision {self.id} is not executable ({self.outcome.value})")
        return self.model_copy(update={"executed": True, "executed_at": at or datetime.now(UTC)})
