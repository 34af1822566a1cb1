"""Audit ledger entries."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID


class AuditKind(Enum):
    DECISION = "decision"
    EXECUTION = "execution"
    ESCALATION_RESOLVED = "escalation_resolved"
    ADAPTATION_ATTEMPT = "adaptation_attempt"
    ROLLBACK = "rollback"


class AuditEntry(BaseModel):
    """One immutable line of the audit trail."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    kind: AuditKind
    subject_id: str  # decision, attempt or rollback subject
    agent_name: str | None = None
    summary: str
    details: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
