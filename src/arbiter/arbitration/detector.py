"""
ConflictDetector: groups eligible proposals by target and classifies collisions.

Detection is pure. It reads a snapshot of proposals and returns conflicts;
persisting them and emitting events is the service's job.
"""

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

import structlog

from arbiter.core.decision import Conflict
from arbiter.core.proposal import Proposal
from arbiter.core.types import ActionType, ConflictType, TargetType

logger = structlog.get_logger()

# Returns a description of the violated invariant, or None
InvariantCheck = Callable[[Sequence[Proposal]], str | None]


@dataclass(frozen=True)
class ConflictRules:
    """Declared domain knowledge used to classify collisions."""

    # Pairs of action types that cannot both be applied to one target
    exclusive_actions: frozenset[frozenset[ActionType]] = frozenset()
    # Target types (or canonical target keys) with limited capacity
    capacity_limited: frozenset[str] = frozenset()
    invariants: tuple[InvariantCheck, ...] = ()

    def is_exclusive(self, a: ActionType, b: ActionType) -> bool:
        return frozenset({a, b}) in self.exclusive_actions


@dataclass
class DetectionResult:
    """Conflicts found in one detection pass."""

    conflicts: list[Conflict] = field(default_factory=list)
    singletons: list[Conflict] = field(default_factory=list)
    ignored_unscored: list[str] = field(default_factory=list)

    @property
    def all(self) -> list[Conflict]:
        return [*self.conflicts, *self.singletons]


def default_rules() -> ConflictRules:
    """Rules for the standard coach/planner/logger domain."""
    return ConflictRules(
        exclusive_actions=frozenset({
            frozenset({ActionType.RESCHEDULE_TASK, ActionType.CREATE_TASK}),
            frozenset({ActionType.UPDATE_SCHEDULE, ActionType.RESCHEDULE_TASK}),
        }),
        capacity_limited=frozenset({TargetType.SCHEDULE.value, TargetType.NOTIFICATION.value}),
    )


class ConflictDetector:
    """Detects conflicts among pending proposals."""

    def __init__(self, rules: ConflictRules | None = None) -> None:
        self._rules = rules or ConflictRules()
        self._log = logger.bind(component="conflict_detector")

    @property
    def rules(self) -> ConflictRules:
        return self._rules

    def detect(self, proposals: Iterable[Proposal]) -> DetectionResult:
        """Group eligible proposals by canonical target key."""
        result = DetectionResult()
        groups: dict[str, list[Proposal]] = defaultdict(list)

        for proposal in proposals:
            if proposal.is_eligible:
                groups[proposal.target_ref.canonical_key].append(proposal)
            elif proposal.arbitration_decision_id is None and not proposal.is_scored:
                result.ignored_unscored.append(proposal.id)

        for target_key in sorted(groups):
            group = sorted(groups[target_key], key=lambda p: p.id)
            conflict = self.classify(group)
            if conflict.is_singleton:
                result.singletons.append(conflict)
            else:
                result.conflicts.append(conflict)

        self._log.debug(
            "detection_complete",
            conflicts=len(result.conflicts),
            singletons=len(result.singletons),
            unscored=len(result.ignored_unscored),
        )
        return result

    def classify(self, group: Sequence[Proposal]) -> Conflict:
        """Build the conflict for proposals sharing one target."""
        target = group[0].target_ref
        ids = frozenset(p.id for p in group)
        if len(group) == 1:
            return Conflict(
                proposal_ids=ids,
                target_ref=target,
                description=f"Single proposal from {group[0].agent_name}",
            )

        conflict_type, description = self._classify_group(group)
        return Conflict(
            proposal_ids=ids,
            conflict_type=conflict_type,
            target_ref=target,
            description=description,
        )

    def _classify_group(self, group: Sequence[Proposal]) -> tuple[ConflictType, str]:
        agents = ", ".join(sorted({p.agent_name for p in group}))
        target_key = group[0].target_ref.canonical_key

        for check in self._rules.invariants:
            violation = check(group)
            if violation:
                return ConflictType.INVARIANT_VIOLATION, violation

        for i, first in enumerate(group):
            for second in group[i + 1:]:
                if self._rules.is_exclusive(first.action_type, second.action_type):
                    return (
                        ConflictType.MUTUALLY_EXCLUSIVE,
                        f"{first.action_type.value} and {second.action_type.value} "
                        f"cannot both apply to {target_key}",
                    )

        target = group[0].target_ref
        if target.type.value in self._rules.capacity_limited or target_key in self._rules.capacity_limited:
            return ConflictType.RESOURCE_COMPETITION, f"{agents} compete for {target_key}"

        return ConflictType.SAME_TARGET, f"{agents} target {target_key}"
