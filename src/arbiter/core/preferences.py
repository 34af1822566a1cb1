"""
Preference definitions, the registry that validates them, and learning records.

The registry is an explicit configuration value: it is built once at
startup and handed to every service that needs it.
"""

from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID

from arbiter.core.proposal import PreferenceValue
from arbiter.core.types import RiskLevel
from arbiter.errors import NotFoundError, ValidationFailure

logger = structlog.get_logger()


class ChangeSource(Enum):
    """Who changed a preference."""

    USER = "user"
    SYSTEM = "system"
    LEARNING = "learning"
    ARBITRATION = "arbitration"


class SuggestionStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PreferenceDefinition(BaseModel):
    """A named, typed, agent-scoped preference subject to learning."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    category: str
    key: str
    agent_name: str
    allowed_values: tuple[PreferenceValue, ...]
    default: PreferenceValue
    risk_level: RiskLevel = RiskLevel.LOW
    adaptive: bool = True
    description: str = ""

    @property
    def full_key(self) -> str:
        return f"{self.category}.{self.key}"


class RiskThresholds(BaseModel):
    """Minimum suggestion confidence per preference risk level."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    low: float = Field(default=0.70, ge=0.0, le=1.0)
    medium: float = Field(default=0.85, ge=0.0, le=1.0)
    high: float = Field(default=1.0, ge=0.0, le=1.0)

    def for_level(self, level: RiskLevel) -> float:
        return {RiskLevel.LOW: self.low, RiskLevel.MEDIUM: self.medium, RiskLevel.HIGH: self.high}[level]


class PreferenceRegistry:
    """Catalogue of known preferences with value validation."""

    def __init__(
        self,
        definitions: Iterable[PreferenceDefinition] = (),
        thresholds: RiskThresholds | None = None,
    ) -> None:
        self._definitions: dict[str, PreferenceDefinition] = {}
        self._thresholds = thresholds or RiskThresholds()
        self._log = logger.bind(component="preference_registry")
        for definition in definitions:
            self.register(definition)

    @property
    def thresholds(self) -> RiskThresholds:
        return self._thresholds

    def register(self, definition: PreferenceDefinition) -> None:
        if definition.default not in definition.allowed_values:
            raise ValidationFailure(definition.full_key, definition.default, definition.allowed_values)
        self._definitions[definition.full_key] = definition
        self._log.debug("preference_registered", key=definition.full_key, agent=definition.agent_name)

    def get(self, category: str, key: str) -> PreferenceDefinition | None:
        return self._definitions.get(f"{category}.{key}")

    def require(self, category: str, key: str) -> PreferenceDefinition:
        definition = self.get(category, key)
        if definition is None:
            raise NotFoundError("preference", f"{category}.{key}")
        return definition

    def is_valid_value(self, category: str, key: str, value: Any) -> bool:
        definition = self.get(category, key)
        return definition is not None and value in definition.allowed_values

    def validate(self, category: str, key: str, value: Any) -> None:
        """Raise ValidationFailure unless ``value`` is allowed for the preference."""
        definition = self.require(category, key)
        if value not in definition.allowed_values:
            raise ValidationFailure(definition.full_key, value, definition.allowed_values)

    def default_value(self, category: str, key: str) -> PreferenceValue:
        return self.require(category, key).default

    def threshold_for(self, level: RiskLevel) -> float:
        return self._thresholds.for_level(level)

    def definitions_for_agent(self, agent_name: str) -> list[PreferenceDefinition]:
        return [d for d in self._definitions.values() if d.agent_name == agent_name]

    def resolve_key(self, agent_name: str, key: str) -> PreferenceDefinition:
        """Find a preference by "category.key" or by a bare key owned by the agent."""
        if "." in key:
            category, _, name = key.partition(".")
            return self.require(category, name)
        for definition in self.definitions_for_agent(agent_name):
            if definition.key == key:
                return definition
        raise NotFoundError("preference", f"{agent_name}:{key}")

    def __iter__(self) -> Iterator[PreferenceDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)


def standard_registry(thresholds: RiskThresholds | None = None) -> PreferenceRegistry:
    """Registry with the preferences owned by the coach, planner and logger agents."""
    return PreferenceRegistry(
        [
            PreferenceDefinition(
                category="communication",
                key="tone",
                agent_name="CoachAgent",
                allowed_values=("encouraging", "neutral", "direct", "gentle"),
                default="encouraging",
                risk_level=RiskLevel.LOW,
                description="Tone used in coaching messages",
            ),
            PreferenceDefinition(
                category="scheduling",
                key="aggressiveness",
                agent_name="PlannerAgent",
                allowed_values=("conservative", "moderate", "aggressive"),
                default="moderate",
                risk_level=RiskLevel.MEDIUM,
                description="How densely the planner packs the schedule",
            ),
            PreferenceDefinition(
                category="logging",
                key="summarization_depth",
                agent_name="LoggerAgent",
                allowed_values=("minimal", "standard", "detailed"),
                default="standard",
                risk_level=RiskLevel.LOW,
                description="Level of detail in activity summaries",
            ),
        ],
        thresholds=thresholds,
    )


class UserPreference(BaseModel):
    """Current value of a preference for an agent."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    agent_name: str
    category: str
    key: str
    value: PreferenceValue
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    learned_from: tuple[str, ...] = Field(default_factory=tuple)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PreferenceChangeRecord(BaseModel):
    """One entry of a preference's change history."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    change_id: str = Field(default_factory=lambda: str(ULID()))
    agent_name: str
    category: str
    key: str
    previous_value: PreferenceValue | None
    new_value: PreferenceValue
    changed_by: ChangeSource
    reason: str = ""
    suggestion_id: str | None = None
    changed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LearnedSuggestion(BaseModel):
    """A preference change proposed by feedback analysis."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    agent_name: str
    category: str
    key: str
    suggested_value: PreferenceValue
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = ""
    status: SuggestionStatus = SuggestionStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    processed_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == SuggestionStatus.PENDING

    def with_status(self, status: SuggestionStatus, at: datetime | None = None) -> "LearnedSuggestion":
        return self.model_copy(update={"status": status, "processed_at": at or datetime.now(UTC)})


class FeedbackEntry(BaseModel):
    """User reaction to an agent decision."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    decision_record_id: str
    decision_type: str
    user_accepted: bool | None = None
    user_feedback: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class FeedbackPattern(BaseModel):
    """Aggregate discovered over feedback entries."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    pattern_id: str = Field(default_factory=lambda: str(ULID()))
    description: str
    decision_type: str
    context_conditions: dict[str, Any] = Field(default_factory=dict)
    acceptance_rate: float = Field(ge=0.0, le=1.0)
    sample_size: int = Field(ge=0)
    confidence: float = Field(ge=0.0, le=1.0)
    discovered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
