"""
Domain events and the typed dispatcher that routes them.

Events form a closed union discriminated by ``kind``. Each kind maps to
exactly one bus topic, so handlers are registered per kind and never
inspect payload classes at runtime.
"""

from collections.abc import Callable, Coroutine, Sequence
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from ulid import ULID

from arbiter.bus.message import Message
from arbiter.bus.message_bus import MessageBus
from arbiter.bus.topics import AdaptationTopics, ArbitrationTopics, Topic
from arbiter.core.proposal import PreferenceValue, Proposal

logger = structlog.get_logger()


class EventKind(Enum):
    AGENT_CONFLICT_DETECTED = "agent_conflict_detected"
    ACTION_SUPPRESSED = "action_suppressed"
    ARBITRATION_RESOLVED = "arbitration_resolved"
    ARBITRATION_ESCALATED = "arbitration_escalated"
    ESCALATION_APPROVED = "escalation_approved"
    ESCALATION_REJECTED = "escalation_rejected"
    DECISION_EXECUTED = "decision_executed"
    PREFERENCE_AUTO_APPLIED = "preference_auto_applied"
    PREFERENCE_AUTO_BLOCKED = "preference_auto_blocked"
    PREFERENCE_AUTO_SKIPPED = "preference_auto_skipped"
    PREFERENCE_ROLLED_BACK = "preference_rolled_back"


TOPIC_BY_KIND: dict[EventKind, Topic] = {
    EventKind.AGENT_CONFLICT_DETECTED: ArbitrationTopics.CONFLICT_DETECTED,
    EventKind.ACTION_SUPPRESSED: ArbitrationTopics.ACTION_SUPPRESSED,
    EventKind.ARBITRATION_RESOLVED: ArbitrationTopics.RESOLVED,
    EventKind.ARBITRATION_ESCALATED: ArbitrationTopics.ESCALATED,
    EventKind.ESCALATION_APPROVED: ArbitrationTopics.ESCALATION_APPROVED,
    EventKind.ESCALATION_REJECTED: ArbitrationTopics.ESCALATION_REJECTED,
    EventKind.DECISION_EXECUTED: ArbitrationTopics.DECISION_EXECUTED,
    EventKind.PREFERENCE_AUTO_APPLIED: AdaptationTopics.AUTO_APPLIED,
    EventKind.PREFERENCE_AUTO_BLOCKED: AdaptationTopics.AUTO_BLOCKED,
    EventKind.PREFERENCE_AUTO_SKIPPED: AdaptationTopics.AUTO_SKIPPED,
    EventKind.PREFERENCE_ROLLED_BACK: AdaptationTopics.ROLLED_BACK,
}


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: str = Field(default_factory=lambda: str(ULID()))
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def event_kind(self) -> EventKind:
        return EventKind(self.kind)  # type: ignore[attr-defined]


class ProposalSummary(BaseModel):
    """Compact view of a proposal carried on events."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    proposal_id: str
    agent_name: str
    action_type: str
    proposed_value: Any
    confidence: float | None
    cost_estimate: float
    risk_level: str

    @classmethod
    def of(cls, proposal: Proposal) -> "ProposalSummary":
        return cls(
            proposal_id=proposal.id,
            agent_name=proposal.agent_name,
            action_type=proposal.action_type.value,
            proposed_value=proposal.action.proposed_value(),
            confidence=proposal.confidence_score,
            cost_estimate=proposal.cost_estimate,
            risk_level=proposal.risk_level.value,
        )


class AgentConflictDetected(_Event):
    kind: Literal["agent_conflict_detected"] = "agent_conflict_detected"
    conflict_id: str
    target_key: str
    conflict_type: str
    proposal_ids: tuple[str, ...]
    agent_names: tuple[str, ...]


class ActionSuppressed(_Event):
    kind: Literal["action_suppressed"] = "action_suppressed"
    decision_id: str
    proposal_id: str
    agent_name: str
    action_type: str
    reason: str
    explanation: str
    winning_proposal_id: str | None = None
    winning_agent: str | None = None
    comparison: dict[str, Any] = Field(default_factory=dict)


class ArbitrationResolved(_Event):
    kind: Literal["arbitration_resolved"] = "arbitration_resolved"
    decision_id: str
    conflict_id: str
    outcome: str
    strategy: str
    policy_id: str
    winning_proposal_id: str | None = None
    winning_agent: str | None = None
    suppressed_proposal_ids: tuple[str, ...] = ()
    vetoed_proposal_ids: tuple[str, ...] = ()
    reasoning: str = ""


class ArbitrationEscalated(_Event):
    kind: Literal["arbitration_escalated"] = "arbitration_escalated"
    decision_id: str
    conflict_id: str
    reason: str
    proposals: tuple[ProposalSummary, ...]
    context_summary: str
    # Advisory only, the approver is free to pick any proposal
    suggested_resolution: ProposalSummary | None = None


class EscalationApproved(_Event):
    kind: Literal["escalation_approved"] = "escalation_approved"
    decision_id: str
    approved_by: str
    selected_proposal_id: str


class EscalationRejected(_Event):
    kind: Literal["escalation_rejected"] = "escalation_rejected"
    decision_id: str
    rejected_by: str
    reason: str


class DecisionExecuted(_Event):
    kind: Literal["decision_executed"] = "decision_executed"
    decision_id: str
    proposal_id: str
    agent_name: str
    action_type: str


class PreferenceAutoApplied(_Event):
    kind: Literal["preference_auto_applied"] = "preference_auto_applied"
    attempt_id: str
    agent_name: str
    suggestion_id: str
    category: str
    key: str
    previous_value: PreferenceValue | None
    new_value: PreferenceValue
    confidence: float


class PreferenceAutoBlocked(_Event):
    kind: Literal["preference_auto_blocked"] = "preference_auto_blocked"
    attempt_id: str
    agent_name: str
    suggestion_id: str
    category: str
    key: str
    block_reason: str
    explanation: str


class PreferenceAutoSkipped(_Event):
    kind: Literal["preference_auto_skipped"] = "preference_auto_skipped"
    attempt_id: str
    agent_name: str
    suggestion_id: str
    category: str
    key: str
    skip_reason: str


class PreferenceRolledBack(_Event):
    kind: Literal["preference_rolled_back"] = "preference_rolled_back"
    agent_name: str
    category: str
    key: str
    previous_value: PreferenceValue | None  # value before the rollback
    restored_value: PreferenceValue
    reason: str
    source_decision_id: str | None = None
    source_attempt_id: str | None = None


Event = (
    AgentConflictDetected
    | ActionSuppressed
    | ArbitrationResolved
    | ArbitrationEscalated
    | EscalationApproved
    | EscalationRejected
    | DecisionExecuted
    | PreferenceAutoApplied
    | PreferenceAutoBlocked
    | PreferenceAutoSkipped
    | PreferenceRolledBack
)
DomainEvent = Annotated[Event, Field(discriminator="kind")]

_domain_events = TypeAdapter(DomainEvent)

EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


class EventDispatcher:
    """
    Typed publish/subscribe over the message bus.

    Handlers are registered per ``EventKind``. Publishing never raises on
    handler failure; events are a side channel and do not gate control flow.
    """

    def __init__(self, bus: MessageBus | None = None, source: str = "arbiter") -> None:
        self._bus = bus or MessageBus()
        self._source = source
        self._log = logger.bind(component="event_dispatcher")

    @property
    def bus(self) -> MessageBus:
        return self._bus

    def subscribe(self, kind: EventKind, handler: EventHandler) -> str:
        async def on_message(message: Message) -> None:
            await handler(message.payload)

        return self._bus.subscribe(TOPIC_BY_KIND[kind], on_message)

    def subscribe_all(self, handler: EventHandler) -> list[str]:
        return [self.subscribe(kind, handler) for kind in EventKind]

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._bus.unsubscribe(subscription_id)

    async def publish(self, event: Event, correlation_id: str | None = None) -> int:
        """Publish one event. Anything outside the event union is rejected."""
        event = _domain_events.validate_python(event)
        kind = event.event_kind
        message = Message.event(
            topic=str(TOPIC_BY_KIND[kind]),
            source=self._source,
            payload=event,
            correlation_id=correlation_id,
        )
        delivered = await self._bus.publish(message)
        self._log.debug("event_published", kind=kind.value, delivered=delivered)
        return delivered

    async def publish_many(self, events: Sequence[Event], correlation_id: str | None = None) -> int:
        total = 0
        for event in events:
            total += await self.publish(event, correlation_id=correlation_id)
        return total
