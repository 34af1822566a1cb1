"""
Resolution strategies.

Each strategy receives the proposals still in contention (veto screening
and escalation checks have already run) and returns the winner, if any,
plus a suppression for every loser. Strategies are deterministic: ties
always break on the lexicographically smallest proposal id.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from arbiter.core.decision import DecisionFactor, Suppression
from arbiter.core.policy import ArbitrationPolicy
from arbiter.core.proposal import Proposal
from arbiter.core.types import FactorImpact, ResolutionStrategy, SuppressionReason

TIE_BREAK_RULE = "Ties break on the lexicographically smallest proposal id."


@dataclass
class StrategySelection:
    """Outcome of running one strategy over the contenders."""

    strategy: ResolutionStrategy
    winner: Proposal | None
    suppressions: list[Suppression] = field(default_factory=list)
    factors: list[DecisionFactor] = field(default_factory=list)
    summary: str = ""


def _factor(proposal: Proposal, name: str, value: object, won: bool) -> DecisionFactor:
    return DecisionFactor(
        proposal_id=proposal.id,
        agent_name=proposal.agent_name,
        factor=name,
        value=value,
        impact=FactorImpact.POSITIVE if won else FactorImpact.NEGATIVE,
    )


def _summary(winner: Proposal, strategy: ResolutionStrategy, factors: list[str], tied: bool) -> str:
    text = f"{winner.agent_name} selected using {strategy.value} strategy. Factors: {', '.join(factors)}."
    if tied:
        text += f" {TIE_BREAK_RULE}"
    return text


def select_by_priority(contenders: Sequence[Proposal], policy: ArbitrationPolicy) -> StrategySelection:
    """Highest effective priority wins."""
    ranked = sorted(contenders, key=lambda p: (-policy.effective_priority(p), p.id))
    winner = ranked[0]
    win_priority = policy.effective_priority(winner)
    selection = StrategySelection(ResolutionStrategy.PRIORITY, winner)
    tied = False

    for proposal in ranked:
        priority = policy.effective_priority(proposal)
        selection.factors.append(_factor(proposal, "priority", priority, proposal is winner))
        if proposal is winner:
            continue
        explanation = (
            f"{proposal.agent_name} priority {priority} lost to "
            f"{winner.agent_name} priority {win_priority}"
        )
        if priority == win_priority:
            tied = True
            explanation += " (tie broken by smallest proposal id)"
        selection.suppressions.append(
            Suppression(
                proposal_id=proposal.id,
                agent_name=proposal.agent_name,
                reason=SuppressionReason.LOST_PRIORITY,
                explanation=explanation,
            )
        )

    selection.summary = _summary(
        winner,
        ResolutionStrategy.PRIORITY,
        [f"{p.agent_name}.priority={policy.effective_priority(p)}" for p in ranked],
        tied,
    )
    return selection


def select_by_weight(contenders: Sequence[Proposal], policy: ArbitrationPolicy) -> StrategySelection:
    """Highest weighted score wins; the summary lists every score."""
    weights = policy.weights
    scores = {p.id: weights.score(p) for p in contenders}
    ranked = sorted(contenders, key=lambda p: (-scores[p.id], p.id))
    winner = ranked[0]
    selection = StrategySelection(ResolutionStrategy.WEIGHTED, winner)
    tied = False

    for proposal in ranked:
        score = round(scores[proposal.id], 6)
        selection.factors.append(_factor(proposal, "weighted_score", score, proposal is winner))
        if proposal is winner:
            continue
        tied = tied or scores[proposal.id] == scores[winner.id]
        selection.suppressions.append(
            Suppression(
                proposal_id=proposal.id,
                agent_name=proposal.agent_name,
                reason=SuppressionReason.LOWER_SCORE,
                explanation=(
                    f"{proposal.agent_name} score {scores[proposal.id]:.3f} did not beat "
                    f"{winner.agent_name} score {scores[winner.id]:.3f}"
                ),
            )
        )

    formula = (
        f"score = confidence*{weights.confidence_weight} - cost*{weights.cost_weight} "
        f"- risk*{weights.risk_weight}"
    )
    selection.summary = _summary(
        winner,
        ResolutionStrategy.WEIGHTED,
        [f"{p.agent_name}.score={scores[p.id]:.3f}" for p in ranked],
        tied,
    ) + f" ({formula})"
    return selection


def select_by_veto(contenders: Sequence[Proposal], policy: ArbitrationPolicy) -> StrategySelection:
    """After veto screening, the most confident remaining proposal wins."""
    ranked = sorted(contenders, key=lambda p: (-p.confidence, p.id))
    winner = ranked[0]
    selection = StrategySelection(ResolutionStrategy.VETO, winner)
    tied = False

    for proposal in ranked:
        selection.factors.append(_factor(proposal, "confidence", proposal.confidence, proposal is winner))
        if proposal is winner:
            continue
        tied = tied or proposal.confidence == winner.confidence
        selection.suppressions.append(
            Suppression(
                proposal_id=proposal.id,
                agent_name=proposal.agent_name,
                reason=SuppressionReason.LOWER_SCORE,
                explanation=(
                    f"{proposal.agent_name} passed veto screening but confidence "
                    f"{proposal.confidence:.2f} did not beat {winner.agent_name} {winner.confidence:.2f}"
                ),
            )
        )

    selection.summary = _summary(
        winner,
        ResolutionStrategy.VETO,
        [f"{p.agent_name}.confidence={p.confidence:.2f}" for p in ranked],
        tied,
    )
    return selection


def select_by_consensus(contenders: Sequence[Proposal], policy: ArbitrationPolicy) -> StrategySelection:
    """
    Winner must be backed by a quorum of agents proposing equivalent actions.

    Returns a selection without a winner when no class of equivalent
    proposals reaches the quorum, or when two classes tie for support.
    """
    rule = policy.consensus
    ordered = sorted(contenders, key=lambda p: p.id)
    classes: list[list[Proposal]] = []
    for proposal in ordered:
        for members in classes:
            if members[0].action.equivalent(proposal.action, rule.tolerance):
                members.append(proposal)
                break
        else:
            classes.append([proposal])

    def support(members: list[Proposal]) -> int:
        return len({p.agent_name for p in members})

    required = rule.quorum or len({p.agent_name for p in ordered})
    qualifying = sorted((m for m in classes if support(m) >= required), key=support, reverse=True)
    selection = StrategySelection(ResolutionStrategy.CONSENSUS, None)
    for members in classes:
        for proposal in members:
            selection.factors.append(
                DecisionFactor(
                    proposal_id=proposal.id,
                    agent_name=proposal.agent_name,
                    factor="agreeing_agents",
                    value=support(members),
                    impact=FactorImpact.NEUTRAL,
                )
            )

    if not qualifying or (len(qualifying) > 1 and support(qualifying[0]) == support(qualifying[1])):
        best = max((support(m) for m in classes), default=0)
        selection.summary = (
            f"No consensus: largest agreement was {best} agent(s), {required} required"
        )
        return selection

    agreed = qualifying[0]
    winner = sorted(agreed, key=lambda p: (-p.confidence, p.id))[0]
    selection.winner = winner
    for proposal in ordered:
        if proposal is winner:
            continue
        if proposal in agreed:
            explanation = (
                f"{proposal.agent_name} agreed with the consensus; "
                f"{winner.agent_name} carries it with higher confidence"
            )
        else:
            explanation = (
                f"{proposal.agent_name} proposed a different action than the "
                f"{support(agreed)} agreeing agent(s)"
            )
        selection.suppressions.append(
            Suppression(
                proposal_id=proposal.id,
                agent_name=proposal.agent_name,
                reason=SuppressionReason.LOST_CONSENSUS,
                explanation=explanation,
            )
        )
    selection.summary = _summary(
        winner,
        ResolutionStrategy.CONSENSUS,
        [f"agreeing_agents={support(agreed)}", f"quorum={required}", f"tolerance={rule.tolerance}"],
        False,
    )
    return selection


Strategy = Callable[[Sequence[Proposal], ArbitrationPolicy], StrategySelection]

STRATEGIES: dict[ResolutionStrategy, Strategy] = {
    ResolutionStrategy.PRIORITY: select_by_priority,
    ResolutionStrategy.WEIGHTED: select_by_weight,
    ResolutionStrategy.VETO: select_by_veto,
    ResolutionStrategy.CONSENSUS: select_by_consensus,
}
