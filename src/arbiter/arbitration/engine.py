"""
ArbitrationEngine: turns a conflict and its policy into a decision.

``decide`` is pure and synchronous. Evaluation order:

1. veto screening (a rule flagged ``escalate_on_veto`` escalates at once,
   and if nothing survives the outcome is ``all_vetoed``)
2. escalation thresholds over the surviving proposals
3. the policy's resolution strategy, or the no-conflict path for a
   single proposal
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from arbiter.arbitration.strategies import STRATEGIES, StrategySelection
from arbiter.core.decision import ArbitrationDecision, Conflict, DecisionFactor, Suppression
from arbiter.core.policy import ArbitrationPolicy, VetoRule
from arbiter.core.proposal import Proposal
from arbiter.core.types import (
    ArbitrationOutcome,
    EscalationReason,
    FactorImpact,
    SuppressionReason,
)
from arbiter.errors import InvalidStateError

logger = structlog.get_logger()


@dataclass(frozen=True)
class EscalationTrigger:
    reason: EscalationReason
    detail: str


class ArbitrationEngine:
    """Applies arbitration policies to conflicts."""

    def __init__(self) -> None:
        self._log = logger.bind(component="arbitration_engine")

    def decide(
        self,
        conflict: Conflict,
        proposals: Sequence[Proposal],
        policy: ArbitrationPolicy,
        now: datetime | None = None,
    ) -> ArbitrationDecision:
        now = now or datetime.now(UTC)
        proposals = sorted(proposals, key=lambda p: p.id)
        if {p.id for p in proposals} != set(conflict.proposal_ids):
            raise InvalidStateError(f"proposals do not match conflict {conflict.id}")

        contenders: list[Proposal] = []
        vetoed: list[tuple[Proposal, VetoRule]] = []
        for proposal in proposals:
            rule = policy.matching_veto(proposal)
            if rule is None:
                contenders.append(proposal)
            else:
                vetoed.append((proposal, rule))

        veto_factors = [
            DecisionFactor(
                proposal_id=p.id,
                agent_name=p.agent_name,
                factor="veto_rule",
                value=rule.name,
                impact=FactorImpact.NEGATIVE,
            )
            for p, rule in vetoed
        ]

        escalating_veto = next(((p, r) for p, r in vetoed if r.escalate_on_veto), None)
        if escalating_veto is not None:
            proposal, rule = escalating_veto
            trigger = EscalationTrigger(
                EscalationReason.VETO_ESCALATION,
                f"veto rule '{rule.name}' matched {proposal.agent_name} and requires review",
            )
            # Every proposal is held, the approver reviews the veto itself
            return self._escalate(conflict, policy, proposals, [], trigger, veto_factors, now)

        veto_suppressions = [
            Suppression(
                proposal_id=p.id,
                agent_name=p.agent_name,
                reason=SuppressionReason.VETOED,
                explanation=rule.describe(p),
            )
            for p, rule in vetoed
        ]

        if not contenders:
            self._log.info("all_vetoed", conflict_id=conflict.id, count=len(vetoed))
            return ArbitrationDecision(
                conflict_id=conflict.id,
                policy_id=policy.id,
                strategy_used=policy.resolution_strategy,
                outcome=ArbitrationOutcome.ALL_VETOED,
                vetoed_proposal_ids=tuple(p.id for p, _ in vetoed),
                suppressions=tuple(veto_suppressions),
                decision_factors=tuple(veto_factors),
                reasoning_summary=f"All {len(vetoed)} proposal(s) matched veto rules; no winner selected.",
                resolved_at=now,
                created_at=now,
            )

        trigger = self.check_escalation(contenders, policy, multi_proposal=not conflict.is_singleton)
        if trigger is not None:
            return self._escalate(
                conflict, policy, contenders, veto_suppressions, trigger, veto_factors, now
            )

        if conflict.is_singleton:
            winner = contenders[0]
            return ArbitrationDecision(
                conflict_id=conflict.id,
                policy_id=policy.id,
                strategy_used=policy.resolution_strategy,
                outcome=ArbitrationOutcome.NO_CONFLICT,
                winning_proposal_id=winner.id,
                reasoning_summary=f"{winner.agent_name} was the only proposal for its target; no arbitration required.",
                decision_factors=(
                    DecisionFactor(
                        proposal_id=winner.id,
                        agent_name=winner.agent_name,
                        factor="uncontested",
                        value=True,
                        impact=FactorImpact.POSITIVE,
                    ),
                ),
                resolved_at=now,
                created_at=now,
            )

        selection = STRATEGIES[policy.resolution_strategy](contenders, policy)
        if selection.winner is None:
            trigger = EscalationTrigger(EscalationReason.NO_CLEAR_WINNER, selection.summary)
            return self._escalate(
                conflict,
                policy,
                contenders,
                veto_suppressions,
                trigger,
                [*veto_factors, *selection.factors],
                now,
            )
        return self._select(conflict, policy, selection, veto_suppressions, veto_factors, now)

    def check_escalation(
        self,
        contenders: Sequence[Proposal],
        policy: ArbitrationPolicy,
        multi_proposal: bool = True,
    ) -> EscalationTrigger | None:
        """First matching escalation threshold, checked rule by rule across all contenders."""
        rules = policy.escalation

        for p in contenders:
            if p.agent_name in rules.always_escalate_agents:
                return EscalationTrigger(
                    EscalationReason.AGENT_ALWAYS_ESCALATE,
                    f"{p.agent_name} is configured to always escalate",
                )

        agents = {p.agent_name for p in contenders}
        if rules.on_multi_agent_conflict and multi_proposal and len(agents) > 1:
            return EscalationTrigger(
                EscalationReason.MULTI_AGENT_CONFLICT,
                f"{len(agents)} agents disagree: {', '.join(sorted(agents))}",
            )

        if rules.risk_threshold is not None:
            for p in contenders:
                if p.risk_level.at_least(rules.risk_threshold):
                    return EscalationTrigger(
                        EscalationReason.RISK_THRESHOLD,
                        f"{p.agent_name} risk {p.risk_level.value} reaches threshold {rules.risk_threshold.value}",
                    )

        if rules.cost_threshold is not None:
            for p in contenders:
                if p.cost_estimate >= rules.cost_threshold:
                    return EscalationTrigger(
                        EscalationReason.COST_THRESHOLD,
                        f"{p.agent_name} cost {p.cost_estimate} reaches threshold {rules.cost_threshold}",
                    )

        if rules.confidence_threshold is not None:
            for p in contenders:
                if p.confidence < rules.confidence_threshold:
                    return EscalationTrigger(
                        EscalationReason.CONFIDENCE_TOO_LOW,
                        f"{p.agent_name} confidence {p.confidence:.2f} below {rules.confidence_threshold}",
                    )

        return None

    def _escalate(
        self,
        conflict: Conflict,
        policy: ArbitrationPolicy,
        held: Sequence[Proposal],
        veto_suppressions: list[Suppression],
        trigger: EscalationTrigger,
        factors: list[DecisionFactor],
        now: datetime,
    ) -> ArbitrationDecision:
        suggested = sorted(held, key=lambda p: (-p.confidence, p.id))[0]
        self._log.info(
            "arbitration_escalated",
            conflict_id=conflict.id,
            reason=trigger.reason.value,
            held=len(held),
        )
        return ArbitrationDecision(
            conflict_id=conflict.id,
            policy_id=policy.id,
            strategy_used=policy.resolution_strategy,
            outcome=ArbitrationOutcome.ESCALATED,
            vetoed_proposal_ids=tuple(s.proposal_id for s in veto_suppressions),
            awaiting_proposal_ids=tuple(p.id for p in held),
            suppressions=tuple(veto_suppressions),
            decision_factors=tuple(factors),
            escalation_reason=trigger.reason,
            suggested_resolution_id=suggested.id,
            requires_human_approval=True,
            reasoning_summary=(
                f"Escalated ({trigger.reason.value}): {trigger.detail}. "
                f"Suggested resolution: {suggested.agent_name} (advisory)."
            ),
            created_at=now,
        )

    def _select(
        self,
        conflict: Conflict,
        policy: ArbitrationPolicy,
        selection: StrategySelection,
        veto_suppressions: list[Suppression],
        veto_factors: list[DecisionFactor],
        now: datetime,
    ) -> ArbitrationDecision:
        if selection.winner is None:
            raise InvalidStateError(f"strategy {selection.strategy.value} selected no winner for {conflict.id}")
        self._log.info(
            "winner_selected",
            conflict_id=conflict.id,
            strategy=selection.strategy.value,
            winner=selection.winner.id,
            suppressed=len(selection.suppressions),
            vetoed=len(veto_suppressions),
        )
        summary = selection.summary
        if veto_suppressions:
            summary += f" {len(veto_suppressions)} proposal(s) vetoed before scoring."
        return ArbitrationDecision(
            conflict_id=conflict.id,
            policy_id=policy.id,
            strategy_used=selection.strategy,
            outcome=ArbitrationOutcome.WINNER_SELECTED,
            winning_proposal_id=selection.winner.id,
            suppressed_proposal_ids=tuple(s.proposal_id for s in selection.suppressions),
            vetoed_proposal_ids=tuple(s.proposal_id for s in veto_suppressions),
            suppressions=(*veto_suppressions, *selection.suppressions),
            decision_factors=(*veto_factors, *selection.factors),
            reasoning_summary=summary,
            resolved_at=now,
            created_at=now,
        )
