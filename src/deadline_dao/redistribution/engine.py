"""Redistribution engine: proportional payout plans for one resolution cohort (Phase 2).

Every winner receives their own stake back plus a share of the losers' pooled
stake proportional to ``stake / total_winners_stake``. Arithmetic runs on
integer ledger units; each reward is floored and the leftover units go to a
single winner picked by the policy, so the rewards always sum to the losers'
total exactly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Sequence

from .contracts import (
    DEFAULT_UNIT_DECIMALS,
    GOAL_COMPLETED,
    GOAL_FAILED,
    Goal,
    PayoutPlan,
    RedistributionContractError,
    from_units,
    parse_amount,
    render_amount,
    to_units,
)
from .policy import (
    REMAINDER_ASSIGNMENTS,
    REMAINDER_LARGEST_STAKE,
    REMAINDER_LOWEST_GOAL_ID,
    RedistributionPolicy,
)


PROPORTION_DECIMALS = 12


@dataclass(frozen=True)
class StakeTotals:
    total_winners_stake: Decimal
    total_losers_stake: Decimal


def compute_payout_plans(
    winners: Sequence[Goal],
    losers: Sequence[Goal],
    *,
    unit_decimals: int = DEFAULT_UNIT_DECIMALS,
    remainder_assignment: str = REMAINDER_LARGEST_STAKE,
) -> tuple[PayoutPlan, ...]:
    _require_status(winners, GOAL_COMPLETED, "winners")
    _require_status(losers, GOAL_FAILED, "losers")
    _require_unique_ids([*winners, *losers])
    if remainder_assignment not in REMAINDER_ASSIGNMENTS:
        raise RedistributionContractError(f"unsupported remainder_assignment: {remainder_assignment!r}")

    winner_units = {goal.goal_id: to_units(goal.stake_amount, unit_decimals) for goal in winners}
    total_winners = sum(winner_units.values())
    total_losers = sum(to_units(goal.stake_amount, unit_decimals) for goal in losers)
    if not winners or total_winners == 0:
        return tuple()

    rewards = {
        goal_id: stake * total_losers // total_winners
        for goal_id, stake in winner_units.items()
    }
    remainder = total_losers - sum(rewards.values())
    if remainder:
        rewards[_remainder_recipient(winner_units, remainder_assignment)] += remainder

    proportion_quantum = Decimal(1).scaleb(-PROPORTION_DECIMALS)
    plans: list[PayoutPlan] = []
    for goal in sorted(winners, key=lambda item: item.goal_id):
        stake = winner_units[goal.goal_id]
        reward = rewards[goal.goal_id]
        plans.append(
            PayoutPlan(
                goal_id=goal.goal_id,
                recipient=goal.owner,
                original_stake=from_units(stake, unit_decimals),
                proportion_of_winners=(Decimal(stake) / Decimal(total_winners)).quantize(proportion_quantum),
                reward_share=from_units(reward, unit_decimals),
                total_payout=from_units(stake + reward, unit_decimals),
            )
        )
    return tuple(plans)


def stake_totals(
    winners: Iterable[Goal],
    losers: Iterable[Goal],
    *,
    unit_decimals: int = DEFAULT_UNIT_DECIMALS,
) -> StakeTotals:
    return StakeTotals(
        total_winners_stake=from_units(sum(to_units(g.stake_amount, unit_decimals) for g in winners), unit_decimals),
        total_losers_stake=from_units(sum(to_units(g.stake_amount, unit_decimals) for g in losers), unit_decimals),
    )


def simulate_redistribution(
    winners: Sequence[tuple[str, object]],
    losers: Sequence[tuple[str, object]],
    *,
    unit_decimals: int = DEFAULT_UNIT_DECIMALS,
) -> list[dict[str, str]]:
    """What-if payouts over bare ``(address, stake)`` pairs; no goal records needed."""
    placeholder_deadline = datetime(1970, 1, 1, tzinfo=timezone.utc)
    winner_goals = [
        Goal(
            goal_id=f"simulated-{index:06d}",
            owner=address,
            stake_amount=parse_amount(stake, "stake"),
            deadline=placeholder_deadline,
            status=GOAL_COMPLETED,
        )
        for index, (address, stake) in enumerate(winners)
    ]
    loser_goals = [
        Goal(
            goal_id=f"simulated-loser-{index:06d}",
            owner=address,
            stake_amount=parse_amount(stake, "stake"),
            deadline=placeholder_deadline,
            status=GOAL_FAILED,
        )
        for index, (address, stake) in enumerate(losers)
    ]
    plans = compute_payout_plans(winner_goals, loser_goals, unit_decimals=unit_decimals)
    return [
        {
            "wallet": plan.recipient,
            "original_stake": render_amount(plan.original_stake),
            "reward": render_amount(plan.reward_share),
            "total": render_amount(plan.total_payout),
        }
        for plan in plans
    ]


@dataclass
class RedistributionEngine:
    policy: RedistributionPolicy = field(default_factory=RedistributionPolicy)

    def plan(self, winners: Sequence[Goal], losers: Sequence[Goal]) -> tuple[PayoutPlan, ...]:
        return compute_payout_plans(
            winners,
            losers,
            unit_decimals=self.policy.unit_decimals,
            remainder_assignment=self.policy.remainder_assignment,
        )

    def totals(self, winners: Sequence[Goal], losers: Sequence[Goal]) -> StakeTotals:
        return stake_totals(winners, losers, unit_decimals=self.policy.unit_decimals)


def _remainder_recipient(winner_units: dict[str, int], remainder_assignment: str) -> str:
    if remainder_assignment == REMAINDER_LOWEST_GOAL_ID:
        return min(winner_units)
    return sorted(winner_units.items(), key=lambda item: (-item[1], item[0]))[0][0]


def _require_status(goals: Sequence[Goal], status: str, name: str) -> None:
    for goal in goals:
        if goal.status != status:
            raise RedistributionContractError(
                f"{name} must all have status {status!r}; goal {goal.goal_id!r} is {goal.status!r}"
            )


def _require_unique_ids(goals: Sequence[Goal]) -> None:
    seen: set[str] = set()
    for goal in goals:
        if goal.goal_id in seen:
            raise RedistributionContractError(f"duplicate goal_id in cohort: {goal.goal_id!r}")
        seen.add(goal.goal_id)
