"""Tests for the preference audit service: summaries, resets, undo and export."""

import pytest
from prometheus_client import CollectorRegistry

from arbiter.config import ArbiterSettings
from arbiter.core import ChangeSource, PreferenceDefinition, PreferenceRegistry, standard_registry
from arbiter.errors import NotFoundError
from arbiter.runtime import ArbiterRuntime, create_runtime


def _runtime(registry: PreferenceRegistry | None = None) -> ArbiterRuntime:
    return create_runtime(settings=ArbiterSettings(), metrics_registry=CollectorRegistry(), registry=registry)


def _with_emoji() -> PreferenceRegistry:
    registry = standard_registry()
    registry.register(
        PreferenceDefinition(
            category="communication",
            key="emoji",
            agent_name="CoachAgent",
            allowed_values=("none", "some", "lots"),
            default="some",
        )
    )
    return registry


async def _set(runtime: ArbiterRuntime, value: str, source: ChangeSource = ChangeSource.USER, key: str = "tone"):
    return await runtime.repositories.learning.set_preference(
        "CoachAgent", "communication", key, value, source, reason="test"
    )


class TestAuditSummary:
    @pytest.mark.asyncio
    async def test_counts_by_category_and_source(self) -> None:
        runtime = _runtime()
        first = await _set(runtime, "direct", ChangeSource.LEARNING)
        last = await _set(runtime, "gentle")
        await runtime.repositories.learning.set_preference(
            "PlannerAgent", "scheduling", "aggressiveness", "aggressive", ChangeSource.USER
        )

        summary = await runtime.preference_audit.audit_summary("CoachAgent")

        assert summary.total_changes == 2
        assert summary.changes_by_category == {"communication": 2}
        assert summary.changes_by_source == {"learning": 1, "user": 1}
        assert summary.most_recent_change == last.changed_at
        assert summary.oldest_change == first.changed_at

    @pytest.mark.asyncio
    async def test_empty_history(self) -> None:
        summary = await _runtime().preference_audit.audit_summary("CoachAgent")

        assert summary.total_changes == 0
        assert summary.changes_by_source == {}
        assert summary.most_recent_change is None

    @pytest.mark.asyncio
    async def test_preference_changes_filters_and_limits(self) -> None:
        runtime = _runtime(_with_emoji())
        await _set(runtime, "direct")
        await _set(runtime, "lots", key="emoji")
        await _set(runtime, "gentle")
        audit = runtime.preference_audit

        assert [r.new_value for r in await audit.preference_changes("CoachAgent")] == ["gentle", "lots", "direct"]
        tone = await audit.preference_changes("CoachAgent", category="communication", key="tone")
        assert [r.new_value for r in tone] == ["gentle", "direct"]
        assert [r.new_value for r in await audit.preference_changes("CoachAgent", limit=1)] == ["gentle"]
        assert await audit.preference_changes("CoachAgent", category="scheduling") == []


class TestDefaults:
    @pytest.mark.asyncio
    async def test_compare_to_defaults(self) -> None:
        runtime = _runtime(_with_emoji())
        await _set(runtime, "direct")

        comparisons = {c.full_key: c for c in await runtime.preference_audit.compare_to_defaults("CoachAgent")}

        assert comparisons["communication.tone"].is_different
        assert comparisons["communication.tone"].current_value == "direct"
        assert comparisons["communication.tone"].default_value == "encouraging"
        assert not comparisons["communication.emoji"].is_different
        assert comparisons["communication.emoji"].current_value == "some"

    @pytest.mark.asyncio
    async def test_reset_to_default(self) -> None:
        runtime = _runtime()
        audit = runtime.preference_audit
        assert await audit.reset_to_default("CoachAgent", "communication", "tone") is None

        await _set(runtime, "direct")
        record = await audit.reset_to_default("CoachAgent", "communication", "tone")

        assert record.previous_value == "direct"
        assert record.new_value == "encouraging"
        assert record.changed_by == ChangeSource.USER
        assert await audit.reset_to_default("CoachAgent", "communication", "tone") is None

    @pytest.mark.asyncio
    async def test_reset_all_only_touches_changed_preferences(self) -> None:
        runtime = _runtime(_with_emoji())
        await _set(runtime, "direct")
        await _set(runtime, "some", key="emoji")

        result = await runtime.preference_audit.reset_all_to_defaults("CoachAgent")

        assert result.reset_count == 1
        assert result.changes[0].key == "tone"
        preferences = await runtime.suggestions.preferences("CoachAgent")
        assert preferences["communication.tone"] == "encouraging"
        assert preferences["communication.emoji"] == "some"


class TestUndo:
    @pytest.mark.asyncio
    async def test_rollback_to_change(self) -> None:
        runtime = _runtime()
        await _set(runtime, "direct")
        change = await _set(runtime, "gentle")

        record = await runtime.preference_audit.rollback_to_change("CoachAgent", change.change_id)

        assert record.new_value == "direct"
        assert (await runtime.repositories.learning.get_preference("CoachAgent", "communication", "tone")).value == "direct"
        assert runtime.observability.counter_value("rollback_preference", agent="CoachAgent") == 1

    @pytest.mark.asyncio
    async def test_rollback_to_unknown_change(self) -> None:
        with pytest.raises(NotFoundError):
            await _runtime().preference_audit.rollback_to_change("CoachAgent", "missing")

    @pytest.mark.asyncio
    async def test_undo_restores_previous_value(self) -> None:
        runtime = _runtime()
        await _set(runtime, "direct")
        change = await _set(runtime, "gentle")

        undone = await runtime.preference_audit.undo_last_change("CoachAgent")

        assert undone.change_id == change.change_id
        assert (await runtime.repositories.learning.get_preference("CoachAgent", "communication", "tone")).value == "direct"
        assert runtime.observability.counter_value("rollback_preference", agent="CoachAgent") == 1

    @pytest.mark.asyncio
    async def test_undo_of_first_write_restores_default(self) -> None:
        runtime = _runtime()
        await _set(runtime, "direct", ChangeSource.LEARNING)

        await runtime.preference_audit.undo_last_change("CoachAgent")

        history = await runtime.repositories.learning.preference_history("CoachAgent", "communication", "tone")
        assert history[0].new_value == "encouraging"
        assert history[0].changed_by == ChangeSource.USER

    @pytest.mark.asyncio
    async def test_nothing_to_undo(self) -> None:
        runtime = _runtime()

        assert await runtime.preference_audit.undo_last_change("CoachAgent") is None
        assert runtime.observability.counter_value("rollback_preference", agent="CoachAgent") == 0


class TestExport:
    @pytest.mark.asyncio
    async def test_export_is_json_ready(self) -> None:
        runtime = _runtime()
        await _set(runtime, "direct", ChangeSource.LEARNING)
        await _set(runtime, "gentle")

        exported = (await runtime.preference_audit.export_audit_trail("CoachAgent")).model_dump(mode="json")

        assert exported["agent_name"] == "CoachAgent"
        assert exported["current_preferences"] == {"communication.tone": "gentle"}
        assert exported["summary"]["total_changes"] == 2
        assert [c["new_value"] for c in exported["change_history"]] == ["gentle", "direct"]
        assert exported["change_history"][0]["changed_by"] == "user"
        assert isinstance(exported["exported_at"], str)
