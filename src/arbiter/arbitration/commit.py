"""
DecisionCommitter: writes a decision's full state transition.

The store is not assumed to offer multi-record transactions. A journal
entry holding the decision, its conflict and its audit entry is opened
first; each step is idempotent; the journal entry is closed last.
``replay_pending`` rolls any commit that was interrupted part way
forward to completion.
"""

from dataclasses import dataclass

import structlog

from arbiter.audit import AuditTrail
from arbiter.core.audit import AuditEntry
from arbiter.core.decision import ArbitrationDecision, Conflict
from arbiter.core.types import ProposalStatus
from arbiter.errors import InvalidStateError
from arbiter.ports import CommitJournal, ConflictRepository, DecisionRepository, PendingCommit, ProposalRepository

logger = structlog.get_logger()


def status_plan(decision: ArbitrationDecision) -> list[tuple[str, ProposalStatus]]:
    """Proposal status each participant ends up in under this decision."""
    plan: list[tuple[str, ProposalStatus]] = []
    if decision.winning_proposal_id and not decision.executed:
        plan.append((decision.winning_proposal_id, ProposalStatus.WON))
    plan.extend((pid, ProposalStatus.SUPPRESSED) for pid in decision.suppressed_proposal_ids)
    plan.extend((pid, ProposalStatus.VETOED) for pid in decision.vetoed_proposal_ids)
    plan.extend((pid, ProposalStatus.PENDING) for pid in decision.awaiting_proposal_ids)
    return plan


@dataclass
class CommitStats:
    total_commits: int = 0
    total_replayed: int = 0


class DecisionCommitter:
    """Atomic-by-replay writer for decision records, conflicts, proposal statuses and audit."""

    def __init__(
        self,
        proposals: ProposalRepository,
        decisions: DecisionRepository,
        journal: CommitJournal,
        audit: AuditTrail,
        conflicts: ConflictRepository | None = None,
    ) -> None:
        self._proposals = proposals
        self._decisions = decisions
        self._journal = journal
        self._audit = audit
        self._conflicts = conflicts
        self._stats = CommitStats()
        self._log = logger.bind(component="decision_committer")

    @property
    def stats(self) -> CommitStats:
        return self._stats

    async def commit(
        self,
        decision: ArbitrationDecision,
        entry: AuditEntry,
        conflict: Conflict | None = None,
    ) -> ArbitrationDecision:
        existing = await self._decisions.find_by_conflict(decision.conflict_id)
        if existing is not None and existing.id != decision.id:
            raise InvalidStateError(
                f"conflict {decision.conflict_id} already decided by {existing.id}"
            )

        pending = PendingCommit(decision, entry, conflict)
        await self._journal.open(pending)
        await self._apply(pending)
        await self._journal.close(decision.id)

        self._stats.total_commits += 1
        self._log.debug("decision_committed", decision_id=decision.id, outcome=decision.outcome.value)
        return decision

    async def replay_pending(self, target_key: str | None = None) -> list[str]:
        """
        Complete commits whose journal entry is still open.

        With ``target_key`` only fresh arbitrations of that target are
        replayed, so a retry never decides proposals a journaled decision
        already claimed.
        """
        replayed: list[str] = []
        for pending in await self._journal.pending():
            if target_key is not None and (
                pending.conflict is None or pending.conflict.target_ref.canonical_key != target_key
            ):
                continue
            await self._apply(pending)
            await self._journal.close(pending.decision.id)
            replayed.append(pending.decision.id)
            self._stats.total_replayed += 1
            self._log.info("decision_commit_replayed", decision_id=pending.decision.id)
        return replayed

    async def _apply(self, pending: PendingCommit) -> None:
        decision = pending.decision
        await self._decisions.save(decision)
        if pending.conflict is not None and self._conflicts is not None:
            await self._conflicts.save(pending.conflict)
        for proposal_id, status in status_plan(decision):
            await self._proposals.update_status(proposal_id, status, decision.id)
        await self._audit.record_once(pending.entry)
