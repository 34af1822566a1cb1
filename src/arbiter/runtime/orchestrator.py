"""
ArbiterRuntime: wiring and lifecycle for a complete set of services.

Builds every service over one set of repositories, one event dispatcher
and one observability context, and replays interrupted decision commits on
start.
"""

from collections.abc import Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, auto
from typing import Any, AsyncIterator

import structlog
from prometheus_client import CollectorRegistry

from arbiter.adaptation import (
    AdaptationEffectApplier,
    AdaptationPolicyEngine,
    AdaptationPolicyService,
    AutoAdaptationService,
    PreferenceAuditService,
    SuggestionReviewService,
)
from arbiter.arbitration import (
    ArbitrationService,
    ConflictDetector,
    ConflictRules,
    DecisionCommitter,
    EscalationApprovalService,
    ExecutionGate,
    PreferenceEffectApplier,
    default_rules,
)
from arbiter.audit import AuditTrail, DecisionExplainer
from arbiter.bus import EventDispatcher, MessageBus
from arbiter.config import ArbiterSettings, configure_logging, get_settings
from arbiter.core.policy import ArbitrationPolicy, EscalationThresholds, fallback_policy
from arbiter.core.preferences import PreferenceRegistry, standard_registry
from arbiter.core.types import ActionType, PolicyScope
from arbiter.observability import ObservabilityContext
from arbiter.ports import (
    AdaptationPolicyRepository,
    AttemptRepository,
    AuditRepository,
    CommitJournal,
    ConfidenceScorer,
    ConflictRepository,
    DecisionRepository,
    EffectApplier,
    LearningRepository,
    PolicyRepository,
    ProposalRepository,
)
from arbiter.rollback import RollbackCoordinator
from arbiter.storage import (
    InMemoryAdaptationPolicyRepository,
    InMemoryAttemptRepository,
    InMemoryAuditRepository,
    InMemoryCommitJournal,
    InMemoryConflictRepository,
    InMemoryDecisionRepository,
    InMemoryLearningRepository,
    InMemoryPolicyRepository,
    InMemoryProposalRepository,
)

logger = structlog.get_logger()

DEFAULT_POLICY_ID = "default-arbitration-policy"


class RuntimeState(Enum):
    CREATED = auto()
    STARTING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()
    FAILED = auto()


@dataclass
class Repositories:
    """Storage behind a runtime. Defaults to in-memory implementations."""

    proposals: ProposalRepository = field(default_factory=InMemoryProposalRepository)
    policies: PolicyRepository = field(default_factory=InMemoryPolicyRepository)
    conflicts: ConflictRepository = field(default_factory=InMemoryConflictRepository)
    decisions: DecisionRepository = field(default_factory=InMemoryDecisionRepository)
    journal: CommitJournal = field(default_factory=InMemoryCommitJournal)
    learning: LearningRepository | None = None
    attempts: AttemptRepository = field(default_factory=InMemoryAttemptRepository)
    adaptation_policies: AdaptationPolicyRepository = field(default_factory=InMemoryAdaptationPolicyRepository)
    audit: AuditRepository = field(default_factory=InMemoryAuditRepository)


class ArbiterRuntime:
    """
    Owns the wired services and their lifecycle.

    Services are usable as soon as the runtime is built; ``start`` performs
    recovery (commit replay) and seeds the default arbitration policy.
    """

    def __init__(
        self,
        settings: ArbiterSettings,
        registry: PreferenceRegistry,
        repositories: Repositories,
        observability: ObservabilityContext,
        scorer: ConfidenceScorer | None = None,
        rules: ConflictRules | None = None,
        appliers: Mapping[ActionType, EffectApplier] | None = None,
    ) -> None:
        self._state = RuntimeState.CREATED
        self._started_at: datetime | None = None
        self._stopped_at: datetime | None = None
        self._log = logger.bind(component="arbiter_runtime")

        self.settings = settings
        self.registry = registry
        if repositories.learning is None:
            repositories.learning = InMemoryLearningRepository(registry)
        learning = repositories.learning
        self.repositories = repositories
        self.observability = observability
        self.bus = MessageBus(max_concurrent_handlers=settings.bus_max_concurrent_handlers)
        self.dispatcher = EventDispatcher(self.bus)
        self.audit = AuditTrail(repositories.audit)

        self.committer = DecisionCommitter(
            repositories.proposals,
            repositories.decisions,
            repositories.journal,
            self.audit,
            conflicts=repositories.conflicts,
        )
        self.arbitration = ArbitrationService(
            proposals=repositories.proposals,
            policies=repositories.policies,
            committer=self.committer,
            dispatcher=self.dispatcher,
            observability=observability,
            detector=ConflictDetector(rules or default_rules()),
            scorer=scorer,
            fallback=fallback_policy(settings.default_strategy, settings.priority_order),
        )
        self.execution = ExecutionGate(
            repositories.decisions,
            repositories.proposals,
            self.audit,
            self.dispatcher,
        )
        self.approvals = EscalationApprovalService(
            repositories.decisions,
            repositories.proposals,
            self.committer,
            self.dispatcher,
            gate=self.execution,
        )
        self.explainer = DecisionExplainer(repositories.decisions, repositories.proposals, repositories.attempts)

        self.adaptation_policies = AdaptationPolicyService(
            repositories.adaptation_policies,
            repositories.attempts,
            default_factory=settings.default_adaptation_policy,
        )
        self.adaptation = AutoAdaptationService(
            engine=AdaptationPolicyEngine(registry),
            policies=self.adaptation_policies,
            learning=learning,
            attempts=repositories.attempts,
            audit=self.audit,
            dispatcher=self.dispatcher,
            observability=observability,
            arbitration=self.arbitration,
        )
        self.execution.register_applier(
            ActionType.APPLY_PREFERENCE,
            AdaptationEffectApplier(self.adaptation, PreferenceEffectApplier(learning, registry)),
        )
        for action_type, applier in (appliers or {}).items():
            self.execution.register_applier(action_type, applier)
        self.suggestions = SuggestionReviewService(learning, registry, observability)
        self.preference_audit = PreferenceAuditService(learning, registry, observability)
        self.rollback = RollbackCoordinator(
            learning=learning,
            attempts=repositories.attempts,
            decisions=repositories.decisions,
            proposals=repositories.proposals,
            registry=registry,
            audit=self.audit,
            dispatcher=self.dispatcher,
            observability=observability,
        )

    @property
    def state(self) -> RuntimeState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == RuntimeState.RUNNING

    @property
    def uptime_seconds(self) -> float | None:
        if not self._started_at:
            return None
        end_time = self._stopped_at or datetime.now(UTC)
        return (end_time - self._started_at).total_seconds()

    def default_policy(self) -> ArbitrationPolicy:
        return ArbitrationPolicy(
            id=DEFAULT_POLICY_ID,
            name="Default arbitration policy",
            scope=PolicyScope.DEFAULT,
            resolution_strategy=self.settings.default_strategy,
            priority_order=tuple(self.settings.priority_order),
            escalation=EscalationThresholds(
                risk_threshold=self.settings.escalation_risk_threshold,
                confidence_threshold=self.settings.escalation_confidence_threshold,
            ),
        )

    async def start(self) -> None:
        if self._state != RuntimeState.CREATED:
            raise RuntimeError(f"Cannot start runtime in state {self._state}")

        self._state = RuntimeState.STARTING
        self._started_at = datetime.now(UTC)
        self._log.info("runtime_starting")

        try:
            replayed = await self.committer.replay_pending()
            if await self.repositories.policies.find_default() is None:
                await self.repositories.policies.save(self.default_policy())
                self._log.info("default_policy_seeded", policy_id=DEFAULT_POLICY_ID)

            self._state = RuntimeState.RUNNING
            self._log.info(
                "runtime_started",
                replayed_commits=len(replayed),
                preferences=len(self.registry),
            )
        except Exception:
            self._state = RuntimeState.FAILED
            self._log.exception("runtime_start_failed")
            raise

    async def stop(self) -> None:
        if self._state != RuntimeState.RUNNING:
            return

        self._state = RuntimeState.STOPPING
        self._log.info("runtime_stopping")
        self.bus.clear()
        self._stopped_at = datetime.now(UTC)
        self._state = RuntimeState.STOPPED
        self._log.info("runtime_stopped", uptime_seconds=self.uptime_seconds)

    @asynccontextmanager
    async def run_context(self) -> AsyncIterator["ArbiterRuntime"]:
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    def get_health(self) -> dict[str, Any]:
        arbitration = self.arbitration.get_stats()
        adaptation = self.adaptation.get_stats()
        return {
            "state": self._state.name,
            "uptime_seconds": self.uptime_seconds,
            "arbitration": {
                "proposals_submitted": arbitration.proposals_submitted,
                "decisions_made": arbitration.decisions_made,
                "escalations": arbitration.escalations,
                "by_outcome": dict(arbitration.by_outcome),
            },
            "execution": {
                "executed": self.execution.get_stats().total_executed,
            },
            "adaptation": {
                "evaluated": adaptation.total_evaluated,
                "by_result": dict(adaptation.by_result),
            },
            "commits": {
                "total": self.committer.stats.total_commits,
                "replayed": self.committer.stats.total_replayed,
            },
            "message_bus": {
                "subscriptions": self.bus.stats.total_subscriptions,
                "messages_published": self.bus.stats.total_messages_published,
                "messages_delivered": self.bus.stats.total_messages_delivered,
            },
        }


def create_runtime(
    settings: ArbiterSettings | None = None,
    registry: PreferenceRegistry | None = None,
    repositories: Repositories | None = None,
    scorer: ConfidenceScorer | None = None,
    metrics_registry: CollectorRegistry | None = None,
    rules: ConflictRules | None = None,
    appliers: Mapping[ActionType, EffectApplier] | None = None,
) -> ArbiterRuntime:
    """Build a runtime from settings, with in-memory storage unless given."""
    settings = settings or get_settings()
    configure_logging(settings)
    registry = registry or standard_registry(settings.risk_thresholds())
    repositories = repositories or Repositories()

    return ArbiterRuntime(
        settings=settings,
        registry=registry,
        repositories=repositories,
        observability=ObservabilityContext(metrics_registry),
        scorer=scorer,
        rules=rules,
        appliers=appliers,
    )
