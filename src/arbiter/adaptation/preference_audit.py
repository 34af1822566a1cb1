"""
PreferenceAuditService: the user's view of how preferences changed.

Summaries, comparison against registry defaults, resets, undo and a
JSON-ready export of an agent's change history. All writes go through the
learning repository with the ``user`` change source.
"""

from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from pydantic import BaseModel, ConfigDict, Field

from arbiter.core.preferences import ChangeSource, PreferenceChangeRecord, PreferenceRegistry
from arbiter.core.proposal import PreferenceValue, values_match
from arbiter.observability import ObservabilityContext
from arbiter.ports import LearningRepository

logger = structlog.get_logger()


class PreferenceAuditSummary(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    agent_name: str
    total_changes: int
    changes_by_category: dict[str, int]
    changes_by_source: dict[str, int]
    most_recent_change: datetime | None = None
    oldest_change: datetime | None = None


class PreferenceAuditExport(BaseModel):
    """Everything known about an agent's preferences, ready for ``model_dump_json``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    agent_name: str
    exported_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    summary: PreferenceAuditSummary
    current_preferences: dict[str, PreferenceValue]
    change_history: tuple[PreferenceChangeRecord, ...]


@dataclass(frozen=True)
class DefaultComparison:
    category: str
    key: str
    current_value: PreferenceValue
    default_value: PreferenceValue
    is_different: bool

    @property
    def full_key(self) -> str:
        return f"{self.category}.{self.key}"


@dataclass(frozen=True)
class ResetAllResult:
    agent_name: str
    changes: list[PreferenceChangeRecord]

    @property
    def reset_count(self) -> int:
        return len(self.changes)


class PreferenceAuditService:
    def __init__(
        self,
        learning: LearningRepository,
        registry: PreferenceRegistry,
        observability: ObservabilityContext | None = None,
    ) -> None:
        self._learning = learning
        self._registry = registry
        self._observability = observability or ObservabilityContext()
        self._log = logger.bind(component="preference_audit")

    async def audit_summary(self, agent_name: str) -> PreferenceAuditSummary:
        history = await self._learning.agent_history(agent_name)
        return PreferenceAuditSummary(
            agent_name=agent_name,
            total_changes=len(history),
            changes_by_category=dict(Counter(r.category for r in history)),
            changes_by_source=dict(Counter(r.changed_by.value for r in history)),
            most_recent_change=history[0].changed_at if history else None,
            oldest_change=history[-1].changed_at if history else None,
        )

    async def preference_changes(
        self,
        agent_name: str,
        category: str | None = None,
        key: str | None = None,
        limit: int | None = None,
    ) -> list[PreferenceChangeRecord]:
        """Changes most recent first, optionally narrowed to a category or one preference."""
        history = [
            r for r in await self._learning.agent_history(agent_name)
            if (category is None or r.category == category) and (key is None or r.key == key)
        ]
        return history if limit is None else history[:limit]

    async def compare_to_defaults(self, agent_name: str) -> list[DefaultComparison]:
        stored = {(p.category, p.key): p.value for p in await self._learning.list_preferences(agent_name)}
        comparisons = []
        for definition in self._registry.definitions_for_agent(agent_name):
            current = stored.get((definition.category, definition.key), definition.default)
            comparisons.append(
                DefaultComparison(
                    category=definition.category,
                    key=definition.key,
                    current_value=current,
                    default_value=definition.default,
                    is_different=not values_match(current, definition.default),
                )
            )
        return comparisons

    async def reset_to_default(self, agent_name: str, category: str, key: str) -> PreferenceChangeRecord | None:
        """Reset one preference. None when it already holds its default."""
        default = self._registry.default_value(category, key)
        current = await self._learning.get_preference(agent_name, category, key)
        if current is None or values_match(current.value, default):
            return None
        record = await self._learning.reset_preference(agent_name, category, key)
        self._log.info("preference_reset", agent=agent_name, preference=f"{category}.{key}")
        return record

    async def reset_all_to_defaults(self, agent_name: str) -> ResetAllResult:
        changes = await self._learning.reset_all_preferences(agent_name)
        self._log.info("preferences_reset", agent=agent_name, count=len(changes))
        return ResetAllResult(agent_name=agent_name, changes=changes)

    async def rollback_to_change(self, agent_name: str, change_id: str) -> PreferenceChangeRecord:
        """Restore the value a preference held before ``change_id``."""
        record = await self._learning.rollback_to_change(agent_name, change_id)
        self._observability.record_rollback(agent_name)
        self._log.info(
            "preference_change_rolled_back",
            agent=agent_name,
            change_id=change_id,
            preference=f"{record.category}.{record.key}",
        )
        return record

    async def undo_last_change(self, agent_name: str) -> PreferenceChangeRecord | None:
        """
        Undo the agent's most recent preference change and return it.

        A change with no previous value (the first write to a preference)
        is undone by resetting to the default. None when there is nothing
        to undo.
        """
        history = await self._learning.agent_history(agent_name, limit=1)
        if not history:
            return None

        last = history[0]
        if last.previous_value is None:
            await self._learning.set_preference(
                agent_name,
                last.category,
                last.key,
                self._registry.default_value(last.category, last.key),
                ChangeSource.USER,
                reason=f"Undid change {last.change_id}",
            )
        else:
            await self._learning.rollback_to_change(agent_name, last.change_id)
        self._observability.record_rollback(agent_name)
        self._log.info("preference_change_undone", agent=agent_name, change_id=last.change_id)
        return last

    async def export_audit_trail(self, agent_name: str) -> PreferenceAuditExport:
        preferences = await self._learning.list_preferences(agent_name)
        return PreferenceAuditExport(
            agent_name=agent_name,
            summary=await self.audit_summary(agent_name),
            current_preferences={f"{p.category}.{p.key}": p.value for p in preferences},
            change_history=tuple(await self._learning.agent_history(agent_name)),
        )
