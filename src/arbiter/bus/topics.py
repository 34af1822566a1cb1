"""
Topic definitions for the message bus.

Topics are hierarchical, dot-separated paths:
  <area>.<event>

Wildcards are supported in subscription patterns:
  * - matches any single segment
  # - matches zero or more segments
"""

from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class Topic:
    """A hierarchical topic with wildcard matching."""

    path: str

    WILDCARD_SINGLE: ClassVar[str] = "*"
    WILDCARD_MULTI: ClassVar[str] = "#"

    @property
    def segments(self) -> list[str]:
        return self.path.split(".")

    @property
    def area(self) -> str:
        return self.segments[0] if self.segments else ""

    def matches(self, pattern: str) -> bool:
        """
        Check if this topic matches a pattern.

        '*' matches exactly one segment, '#' matches zero or more.
        """
        return self._match_parts(self.segments, pattern.split("."))

    def _match_parts(self, topic: list[str], pattern: list[str]) -> bool:
        if not pattern:
            return not topic

        if pattern[0] == self.WILDCARD_MULTI:
            if len(pattern) == 1:
                return True
            return any(
                self._match_parts(topic[i:], pattern[1:]) for i in range(len(topic) + 1)
            )

        if not topic:
            return False

        if pattern[0] in (self.WILDCARD_SINGLE, topic[0]):
            return self._match_parts(topic[1:], pattern[1:])

        return False

    def __str__(self) -> str:
        return self.path


class ArbitrationTopics:
    """Topics published by the arbitration flow."""

    CONFLICT_DETECTED = Topic("arbitration.conflict_detected")
    RESOLVED = Topic("arbitration.resolved")
    ESCALATED = Topic("arbitration.escalated")
    ACTION_SUPPRESSED = Topic("arbitration.action_suppressed")
    ESCALATION_APPROVED = Topic("arbitration.escalation_approved")
    ESCALATION_REJECTED = Topic("arbitration.escalation_rejected")
    DECISION_EXECUTED = Topic("arbitration.decision_executed")

    ALL = Topic("arbitration.#")


class AdaptationTopics:
    """Topics published by the adaptation flow."""

    AUTO_APPLIED = Topic("adaptation.auto_applied")
    AUTO_BLOCKED = Topic("adaptation.auto_blocked")
    AUTO_SKIPPED = Topic("adaptation.auto_skipped")
    ROLLED_BACK = Topic("adaptation.rolled_back")

    ALL = Topic("adaptation.#")
