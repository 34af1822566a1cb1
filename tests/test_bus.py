"""Tests for the message bus and the typed event dispatcher."""

import pytest
from pydantic import ValidationError

from arbiter.bus import (
    AdaptationTopics,
    ArbitrationTopics,
    EventDispatcher,
    EventKind,
    Message,
    MessageBus,
    MessageType,
    Topic,
)
from arbiter.bus.events import (
    DecisionExecuted,
    EscalationRejected,
    PreferenceRolledBack,
)


class TestTopic:
    def test_topic_matching(self) -> None:
        topic = Topic("arbitration.escalated")
        assert topic.matches("arbitration.escalated")
        assert topic.matches("arbitration.*")
        assert topic.matches("arbitration.#")
        assert topic.matches("#")
        assert not topic.matches("adaptation.escalated")
        assert not topic.matches("arbitration")

    def test_topic_segments(self) -> None:
        topic = Topic("adaptation.auto_applied")
        assert topic.segments == ["adaptation", "auto_applied"]
        assert topic.area == "adaptation"

    def test_area_topics_match_their_wildcards(self) -> None:
        assert ArbitrationTopics.RESOLVED.matches(str(ArbitrationTopics.ALL))
        assert AdaptationTopics.ROLLED_BACK.matches(str(AdaptationTopics.ALL))
        assert not AdaptationTopics.ROLLED_BACK.matches(str(ArbitrationTopics.ALL))


class TestMessageBus:
    @pytest.mark.asyncio
    async def test_publish_subscribe(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        bus.subscribe("test.topic", handler)

        message = Message(
            type=MessageType.EVENT,
            topic="test.topic",
            payload="test data",
            source="test",
        )
        delivered = await bus.publish(message)

        assert delivered == 1
        assert len(received) == 1
        assert received[0].payload == "test data"

    @pytest.mark.asyncio
    async def test_wildcard_subscription(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        bus.subscribe("test.#", handler)

        await bus.publish(Message.event("test.a", "src", "data1"))
        await bus.publish(Message.event("test.b.c", "src", "data2"))
        await bus.publish(Message.event("other.x", "src", "data3"))

        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        sub_id = bus.subscribe("test", handler)
        assert bus.unsubscribe(sub_id)
        assert not bus.unsubscribe(sub_id)

        await bus.publish(Message.event("test", "src", "data"))
        assert len(received) == 0

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def broken(msg: Message) -> None:
            raise RuntimeError("boom")

        async def handler(msg: Message) -> None:
            received.append(msg)

        bus.subscribe("test", broken)
        bus.subscribe("test", handler)

        delivered = await bus.publish(Message.event("test", "src", "data"))

        assert delivered == 1
        assert len(received) == 1
        assert bus.stats.total_errors == 1

    def test_clear(self) -> None:
        bus = MessageBus()

        async def handler(msg: Message) -> None:
            pass

        bus.subscribe("a", handler)
        bus.subscribe("b", handler)
        assert bus.stats.total_subscriptions == 2

        bus.clear()
        assert bus.stats.total_subscriptions == 0
        assert bus.get_subscriptions() == []


class TestEventDispatcher:
    @pytest.mark.asyncio
    async def test_routes_by_kind(self) -> None:
        dispatcher = EventDispatcher()
        executed: list[DecisionExecuted] = []
        rejected: list[EscalationRejected] = []

        async def on_executed(event: DecisionExecuted) -> None:
            executed.append(event)

        async def on_rejected(event: EscalationRejected) -> None:
            rejected.append(event)

        dispatcher.subscribe(EventKind.DECISION_EXECUTED, on_executed)
        dispatcher.subscribe(EventKind.ESCALATION_REJECTED, on_rejected)

        await dispatcher.publish(
            DecisionExecuted(decision_id="d1", proposal_id="p1", agent_name="CoachAgent", action_type="create_task")
        )

        assert len(executed) == 1
        assert executed[0].decision_id == "d1"
        assert rejected == []

    @pytest.mark.asyncio
    async def test_subscribe_all_receives_every_kind(self) -> None:
        dispatcher = EventDispatcher()
        seen: list[EventKind] = []

        async def handler(event: object) -> None:
            seen.append(event.event_kind)  # type: ignore[attr-defined]

        ids = dispatcher.subscribe_all(handler)
        assert len(ids) == len(EventKind)

        await dispatcher.publish_many([
            EscalationRejected(decision_id="d1", rejected_by="user", reason="no"),
            PreferenceRolledBack(
                agent_name="CoachAgent",
                category="communication",
                key="tone",
                previous_value="direct",
                restored_value="encouraging",
                reason="undo",
            ),
        ])

        assert seen == [EventKind.ESCALATION_REJECTED, EventKind.PREFERENCE_ROLLED_BACK]

    @pytest.mark.asyncio
    async def test_handler_error_does_not_propagate(self) -> None:
        dispatcher = EventDispatcher()

        async def broken(event: object) -> None:
            raise ValueError("handler bug")

        dispatcher.subscribe(EventKind.ESCALATION_REJECTED, broken)
        delivered = await dispatcher.publish(
            EscalationRejected(decision_id="d1", rejected_by="user", reason="")
        )
        assert delivered == 0

    @pytest.mark.asyncio
    async def test_publish_rejects_non_events(self) -> None:
        dispatcher = EventDispatcher()

        with pytest.raises(ValidationError):
            await dispatcher.publish(Message.event("arbitration.resolved", "src", "data"))  # type: ignore[arg-type]
        assert dispatcher.bus.stats.total_messages_published == 0

    @pytest.mark.asyncio
    async def test_publish_accepts_event_payloads(self) -> None:
        dispatcher = EventDispatcher()
        received: list[object] = []

        async def handler(event: object) -> None:
            received.append(event)

        dispatcher.subscribe(EventKind.ESCALATION_REJECTED, handler)
        await dispatcher.publish(
            {"kind": "escalation_rejected", "decision_id": "d1", "rejected_by": "user", "reason": ""}  # type: ignore[arg-type]
        )

        assert isinstance(received[0], EscalationRejected)
