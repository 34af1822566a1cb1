"""
SuggestionReviewService: the manual side of preference learning.

Users approve or reject learned suggestions, set and reset preferences
directly, and feedback and discovered patterns are recorded for the
analysis that produces new suggestions.
"""

from typing import Any

import structlog
from pydantic import ValidationError

from arbiter.core.preferences import (
    ChangeSource,
    FeedbackEntry,
    FeedbackPattern,
    LearnedSuggestion,
    PreferenceChangeRecord,
    PreferenceRegistry,
    SuggestionStatus,
)
from arbiter.core.proposal import PreferenceValue
from arbiter.errors import Err, InvalidStateError, NotFoundError, Ok, Result
from arbiter.observability import ObservabilityContext
from arbiter.ports import LearningRepository

logger = structlog.get_logger()


class SuggestionReviewService:
    """User-driven approval of suggestions and direct preference edits."""

    def __init__(
        self,
        learning: LearningRepository,
        registry: PreferenceRegistry,
        observability: ObservabilityContext | None = None,
    ) -> None:
        self._learning = learning
        self._registry = registry
        self._observability = observability or ObservabilityContext()
        self._log = logger.bind(component="suggestion_review")

    async def submit_suggestion(
        self,
        agent_name: str,
        category: str,
        key: str,
        suggested_value: PreferenceValue,
        confidence: float,
        rationale: str = "",
    ) -> Result[LearnedSuggestion]:
        """
        Store a suggestion produced by feedback analysis.

        Only the shape is checked here. Whether the value is acceptable is
        the adaptation policy's call, so unknown preferences and disallowed
        values are stored and later blocked with a reason.
        """
        try:
            suggestion = LearnedSuggestion(
                agent_name=agent_name,
                category=category,
                key=key,
                suggested_value=suggested_value,
                confidence=confidence,
                rationale=rationale,
            )
        except ValidationError as exc:
            return Err(tuple(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()))

        await self._learning.save_suggestion(suggestion)
        self._log.info(
            "suggestion_submitted",
            suggestion_id=suggestion.id,
            agent=agent_name,
            preference=f"{category}.{key}",
            confidence=confidence,
        )
        return Ok(suggestion)

    async def pending(self, agent_name: str | None = None) -> list[LearnedSuggestion]:
        return await self._learning.pending_suggestions(agent_name)

    async def approve(self, suggestion_id: str) -> PreferenceChangeRecord:
        suggestion = await self._require_pending(suggestion_id)
        self._registry.validate(suggestion.category, suggestion.key, suggestion.suggested_value)

        record = await self._learning.set_preference(
            suggestion.agent_name,
            suggestion.category,
            suggestion.key,
            suggestion.suggested_value,
            ChangeSource.USER,
            reason=f"Approved suggestion: {suggestion.rationale}" if suggestion.rationale else "Approved suggestion",
            suggestion_id=suggestion.id,
        )
        await self._learning.set_suggestion_status(suggestion_id, SuggestionStatus.APPROVED)
        self._observability.record_suggestion(approved=True)
        self._log.info("suggestion_approved", suggestion_id=suggestion_id, change_id=record.change_id)
        return record

    async def reject(self, suggestion_id: str, reason: str = "") -> LearnedSuggestion:
        await self._require_pending(suggestion_id)
        rejected = await self._learning.set_suggestion_status(suggestion_id, SuggestionStatus.REJECTED)
        self._observability.record_suggestion(approved=False)
        self._log.info("suggestion_rejected", suggestion_id=suggestion_id, reason=reason)
        return rejected

    async def set_preference(
        self,
        agent_name: str,
        category: str,
        key: str,
        value: PreferenceValue,
        reason: str = "",
    ) -> PreferenceChangeRecord:
        self._registry.validate(category, key, value)
        return await self._learning.set_preference(
            agent_name, category, key, value, ChangeSource.USER, reason=reason or "Set by user"
        )

    async def reset_preference(self, agent_name: str, category: str, key: str) -> PreferenceChangeRecord:
        return await self._learning.reset_preference(agent_name, category, key)

    async def preferences(self, agent_name: str) -> dict[str, Any]:
        """Effective values for every preference the agent owns."""
        stored = {f"{p.category}.{p.key}": p.value for p in await self._learning.list_preferences(agent_name)}
        return {
            d.full_key: stored.get(d.full_key, d.default)
            for d in self._registry.definitions_for_agent(agent_name)
        }

    async def history(self, agent_name: str, category: str, key: str) -> list[PreferenceChangeRecord]:
        return await self._learning.preference_history(agent_name, category, key)

    async def record_feedback(self, agent_name: str, entry: FeedbackEntry) -> None:
        await self._learning.add_feedback(agent_name, entry)
        self._log.debug("feedback_recorded", agent=agent_name, decision_type=entry.decision_type)

    async def record_pattern(self, agent_name: str, pattern: FeedbackPattern) -> None:
        await self._learning.add_pattern(agent_name, pattern)
        self._log.debug("pattern_recorded", agent=agent_name, pattern_id=pattern.pattern_id)

    async def feedback(self, agent_name: str) -> list[FeedbackEntry]:
        return await self._learning.feedback(agent_name)

    async def patterns(self, agent_name: str) -> list[FeedbackPattern]:
        return await self._learning.patterns(agent_name)

    async def _require_pending(self, suggestion_id: str) -> LearnedSuggestion:
        suggestion = await self._learning.find_suggestion(suggestion_id)
        if suggestion is None:
            raise NotFoundError("suggestion", suggestion_id)
        if not suggestion.is_pending:
            raise InvalidStateError(f"suggestion {suggestion_id} is already {suggestion.status.value}")
        return suggestion
