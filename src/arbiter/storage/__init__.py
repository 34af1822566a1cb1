"""In-memory implementations of the repository ports."""

from arbiter.storage.memory import (
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

__all__ = [
    "InMemoryAdaptationPolicyRepository",
    "InMemoryAttemptRepository",
    "InMemoryAuditRepository",
    "InMemoryCommitJournal",
    "InMemoryConflictRepository",
    "InMemoryDecisionRepository",
    "InMemoryLearningRepository",
    "InMemoryPolicyRepository",
    "InMemoryProposalRepository",
]
