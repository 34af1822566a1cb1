"""
Agent proposals and their typed action payloads.

Each action type carries its own validated payload model; the union is
discriminated on ``action_type`` so that a proposal can never hold a
payload that does not match its declared action.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Annotated, Any, ClassVar, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from ulid import ULID

from arbiter.core.types import (
    ActionType,
    ProposalStatus,
    RiskLevel,
    TargetRef,
    TargetType,
)
from arbiter.errors import Err, InvalidStateError, Ok, Result

PreferenceValue = str | int | float | bool


def values_match(a: Any, b: Any, tolerance: float = 0.0) -> bool:
    """Compare two payload values, allowing numeric and time drift up to tolerance."""
    if isinstance(a, bool) or isinstance(b, bool):
        return a == b
    if isinstance(a, int | float) and isinstance(b, int | float):
        return abs(a - b) <= tolerance
    if isinstance(a, datetime) and isinstance(b, datetime):
        return abs((a - b).total_seconds()) <= tolerance
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        if set(a) != set(b):
            return False
        return all(values_match(a[k], b[k], tolerance) for k in a)
    return a == b


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Fields compared when deciding whether two proposals agree
    consensus_fields: ClassVar[tuple[str, ...]] = ()

    def default_target(self) -> TargetRef:
        raise NotImplementedError

    def proposed_value(self) -> Any:
        """The value this action would write, used in reasoning and events."""
        return self.model_dump(mode="json", exclude={"action_type"})

    def equivalent(self, other: "_Action", tolerance: float = 0.0) -> bool:
        if type(self) is not type(other):
            return False
        return all(
            values_match(getattr(self, name), getattr(other, name), tolerance)
            for name in self.consensus_fields
        )


class ApplyPreferenceAction(_Action):
    action_type: Literal["apply_preference"] = "apply_preference"
    category: str = Field(min_length=1)
    key: str = Field(min_length=1)
    current_value: PreferenceValue | None = None
    new_value: PreferenceValue
    suggestion_id: str | None = None

    consensus_fields: ClassVar[tuple[str, ...]] = ("category", "key", "new_value")

    @property
    def preference_key(self) -> str:
        return f"{self.category}.{self.key}"

    def default_target(self) -> TargetRef:
        return TargetRef(type=TargetType.PREFERENCE, id=self.preference_key, key=self.key)

    def proposed_value(self) -> Any:
        return self.new_value


class RescheduleTaskAction(_Action):
    action_type: Literal["reschedule_task"] = "reschedule_task"
    task_id: str = Field(min_length=1)
    new_start: datetime
    new_end: datetime | None = None

    consensus_fields: ClassVar[tuple[str, ...]] = ("task_id", "new_start", "new_end")

    @model_validator(mode="after")
    def validate_window(self) -> Self:
        if self.new_end is not None and self.new_end <= self.new_start:
            raise ValueError("new_end must be after new_start")
        return self

    def default_target(self) -> TargetRef:
        return TargetRef(type=TargetType.TASK, id=self.task_id)


class CreateTaskAction(_Action):
    action_type: Literal["create_task"] = "create_task"
    title: str = Field(min_length=1)
    goal_id: str | None = None
    due_at: datetime | None = None

    consensus_fields: ClassVar[tuple[str, ...]] = ("title", "goal_id", "due_at")

    def default_target(self) -> TargetRef:
        if self.goal_id:
            return TargetRef(type=TargetType.GOAL, id=self.goal_id, key="tasks")
        return TargetRef(type=TargetType.TASK, id=f"new:{self.title.lower()}")


class CreateSuggestionAction(_Action):
    action_type: Literal["create_suggestion"] = "create_suggestion"
    message: str = Field(min_length=1)
    suggestion_type: str = "general"

    consensus_fields: ClassVar[tuple[str, ...]] = ("suggestion_type", "message")

    def default_target(self) -> TargetRef:
        return TargetRef(type=TargetType.NOTIFICATION, id="suggestions", key=self.suggestion_type)


class SendNotificationAction(_Action):
    action_type: Literal["send_notification"] = "send_notification"
    channel: str = Field(min_length=1)
    message: str = Field(min_length=1)

    consensus_fields: ClassVar[tuple[str, ...]] = ("channel", "message")

    def default_target(self) -> TargetRef:
        return TargetRef(type=TargetType.NOTIFICATION, id=self.channel)


class UpdateScheduleAction(_Action):
    action_type: Literal["update_schedule"] = "update_schedule"
    block_id: str = Field(min_length=1)
    start: datetime
    end: datetime

    consensus_fields: ClassVar[tuple[str, ...]] = ("block_id", "start", "end")

    @model_validator(mode="after")
    def validate_window(self) -> Self:
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self

    def default_target(self) -> TargetRef:
        return TargetRef(type=TargetType.SCHEDULE, id=self.block_id)


class ModifyGoalAction(_Action):
    action_type: Literal["modify_goal"] = "modify_goal"
    goal_id: str = Field(min_length=1)
    changes: dict[str, Any] = Field(min_length=1)

    consensus_fields: ClassVar[tuple[str, ...]] = ("goal_id", "changes")

    def default_target(self) -> TargetRef:
        return TargetRef(type=TargetType.GOAL, id=self.goal_id)


ProposalAction = Annotated[
    ApplyPreferenceAction
    | RescheduleTaskAction
    | CreateTaskAction
    | CreateSuggestionAction
    | SendNotificationAction
    | UpdateScheduleAction
    | ModifyGoalAction,
    Field(discriminator="action_type"),
]


# Legal status moves; PENDING -> PENDING only attaches an escalated decision
_TRANSITIONS: dict[ProposalStatus, frozenset[ProposalStatus]] = {
    ProposalStatus.PENDING: frozenset(
        {ProposalStatus.PENDING, ProposalStatus.WON, ProposalStatus.SUPPRESSED, ProposalStatus.VETOED}
    ),
    ProposalStatus.WON: frozenset({ProposalStatus.EXECUTED}),
    ProposalStatus.SUPPRESSED: frozenset(),
    ProposalStatus.VETOED: frozenset(),
    ProposalStatus.EXECUTED: frozenset(),
}


class Proposal(BaseModel):
    """A candidate action an agent wants applied to a target."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    agent_name: str = Field(min_length=1)
    action: ProposalAction
    target_ref: TargetRef

    # None while the external confidence score is outstanding
    confidence_score: float | None = Field(default=None, ge=0.0, le=1.0)
    cost_estimate: float = Field(default=0.0, ge=0.0)
    risk_level: RiskLevel = RiskLevel.LOW
    priority: int | None = None
    originating_event_id: str | None = None

    status: ProposalStatus = ProposalStatus.PENDING
    arbitration_decision_id: str | None = None
    processed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def action_type(self) -> ActionType:
        return ActionType(self.action.action_type)

    @property
    def is_scored(self) -> bool:
        return self.confidence_score is not None

    @property
    def confidence(self) -> float:
        return self.confidence_score if self.confidence_score is not None else 0.0

    @property
    def is_eligible(self) -> bool:
        """Pending, scored and not yet claimed by any decision."""
        return (
            self.status == ProposalStatus.PENDING
            and self.is_scored
            and self.arbitration_decision_id is None
        )

    def with_score(self, confidence: float) -> "Proposal":
        return self.model_copy(update={"confidence_score": min(1.0, max(0.0, confidence))})

    def with_status(
        self,
        status: ProposalStatus,
        decision_id: str,
        at: datetime | None = None,
    ) -> "Proposal":
        """Move to ``status`` under ``decision_id``. Re-applying the same move is a no-op."""
        if self.status == status and self.arbitration_decision_id == decision_id:
            return self
        if self.arbitration_decision_id not in (None, decision_id):
            raise InvalidStateError(
                f"proposal {self.id} already belongs to decision {self.arbitration_decision_id}"
            )
        if status not in _TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"proposal {self.id} cannot move from {self.status.value} to {status.value}"
            )
        processed_at = self.processed_at
        if status != ProposalStatus.PENDING:
            processed_at = at or datetime.now(UTC)
        return self.model_copy(
            update={
                "status": status,
                "arbitration_decision_id": decision_id,
                "processed_at": processed_at,
            }
        )


def create_proposal(
    agent_name: str,
    action: Mapping[str, Any] | BaseModel,
    *,
    target_ref: TargetRef | None = None,
    confidence_score: float | None = None,
    cost_estimate: float = 0.0,
    risk_level: RiskLevel | str = RiskLevel.LOW,
    priority: int | None = None,
    originating_event_id: str | None = None,
) -> Result[Proposal]:
    """
    Build a validated proposal.

    Confidence is clamped into [0, 1] and cost to be non-negative. The target
    defaults to the one implied by the action payload. Missing or malformed
    fields are reported as an ``Err`` rather than raised.
    """
    errors: list[str] = []
    if not agent_name:
        errors.append("agent_name is required")
    if not action:
        errors.append("action is required")
    if errors:
        return Err(tuple(errors))

    if confidence_score is not None:
        confidence_score = min(1.0, max(0.0, confidence_score))
    payload = action.model_dump() if isinstance(action, BaseModel) else dict(action)

    try:
        proposal = Proposal.model_validate({
            "agent_name": agent_name,
            "action": payload,
            "target_ref": target_ref or _target_for(payload),
            "confidence_score": confidence_score,
            "cost_estimate": max(0.0, cost_estimate),
            "risk_level": RiskLevel(risk_level),
            "priority": priority,
            "originating_event_id": originating_event_id,
        })
    except (ValidationError, ValueError) as exc:
        return Err(_describe(exc))
    return Ok(proposal)


def _target_for(payload: dict[str, Any]) -> TargetRef:
    # Validate the action alone first so the target can be derived from it
    holder = _ActionHolder.model_validate({"action": payload})
    return holder.action.default_target()


class _ActionHolder(BaseModel):
    action: ProposalAction


def _describe(exc: Exception) -> tuple[str, ...]:
    if isinstance(exc, ValidationError):
        return tuple(
            f"{'.'.join(str(p) for p in err['loc']) or 'proposal'}: {err['msg']}"
            for err in exc.errors()
        )
    return (str(exc),)
