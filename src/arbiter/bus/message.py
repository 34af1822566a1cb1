"""
Message envelope carried on the bus.

Domain events travel as the payload of an EVENT message; the topic is
derived from the event kind.
"""

from datetime import UTC, datetime
from enum import Enum, auto
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID


class MessageType(Enum):
    """Types of messages on the message bus."""

    EVENT = auto()  # Domain event notification


class Message(BaseModel):
    """Carrier for payloads on the pub/sub message bus."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    type: MessageType
    topic: str
    payload: Any
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Routing
    source: str  # Publishing component
    correlation_id: str | None = None

    @classmethod
    def event(
        cls,
        topic: str,
        source: str,
        payload: Any,
        correlation_id: str | None = None,
    ) -> "Message":
        """Create an event message."""
        return cls(
            type=MessageType.EVENT,
            topic=topic,
            payload=payload,
            source=source,
            correlation_id=correlation_id,
        )
