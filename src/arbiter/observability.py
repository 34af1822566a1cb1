"""
Prometheus counters as a side channel.

Nothing here influences control flow: services report what happened and
carry on. Each context owns its own ``CollectorRegistry`` so that separate
runtimes (and tests) do not share counts.
"""

from prometheus_client import CollectorRegistry, Counter


class ObservabilityContext:
    """Prometheus counters for arbitration and adaptation activity."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        self.conflicts_detected_total = Counter(
            name="conflicts_detected",
            documentation="Conflicts between two or more proposals detected",
            registry=self._registry,
        )
        self.conflicts_resolved_total = Counter(
            name="conflicts_resolved",
            documentation="Arbitration decisions committed, by outcome",
            labelnames=["outcome"],
            registry=self._registry,
        )
        self.escalations_total = Counter(
            name="escalations",
            documentation="Arbitrations deferred to a human, by reason",
            labelnames=["reason"],
            registry=self._registry,
        )
        self.rollback_preference_total = Counter(
            name="rollback_preference",
            documentation="Preference rollbacks performed, by agent",
            labelnames=["agent"],
            registry=self._registry,
        )
        self.suggestion_approved_total = Counter(
            name="suggestion_approved",
            documentation="Learned suggestions approved by the user",
            registry=self._registry,
        )
        self.suggestion_rejected_total = Counter(
            name="suggestion_rejected",
            documentation="Learned suggestions rejected by the user",
            registry=self._registry,
        )
        self.adaptation_attempts_total = Counter(
            name="adaptation_attempts",
            documentation="Auto-adaptation evaluations, by result",
            labelnames=["result"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_conflict_detected(self) -> None:
        self.conflicts_detected_total.inc()

    def record_conflict_resolved(self, outcome: str) -> None:
        self.conflicts_resolved_total.labels(outcome=outcome).inc()

    def record_escalation(self, reason: str) -> None:
        self.escalations_total.labels(reason=reason).inc()

    def record_rollback(self, agent_name: str) -> None:
        self.rollback_preference_total.labels(agent=agent_name).inc()

    def record_suggestion(self, approved: bool) -> None:
        if approved:
            self.suggestion_approved_total.inc()
        else:
            self.suggestion_rejected_total.inc()

    def record_attempt(self, result: str) -> None:
        self.adaptation_attempts_total.labels(result=result).inc()

    def counter_value(self, name: str, **labels: str) -> float:
        """Current value of a counter sample, 0 if never incremented."""
        value = self._registry.get_sample_value(f"{name}_total", labels or None)
        return value or 0.0
