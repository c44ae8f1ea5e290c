"""Participant-facing earnings estimates and escrow/wallet summaries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timezone, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Protocol

from .contracts import (
    GOAL_COMPLETED,
    GOAL_FAILED,
    PAYOUT_TYPE_COMPLETION_REWARD,
    Goal,
    PayoutRecord,
    RedistributionContractError,
    parse_amount,
    render_amount,
)
from .ledger import LedgerClient


DEFAULT_COMPLETION_RATE = Decimal("0.5")
DEFAULT_HEALTHY_RATIO = Decimal("0.95")

_DISPLAY_QUANTUM = Decimal("0.0001")
_PERCENT_QUANTUM = Decimal("0.01")
_RATIO_QUANTUM = Decimal("0.000001")


class PayoutHistory(Protocol):
    def list_payouts_by_recipient(self, address: str) -> Iterable[PayoutRecord]:
        ...


@dataclass(frozen=True)
class EarningsEstimate:
    min_payout: Decimal
    max_payout: Decimal
    expected_payout: Decimal

    def as_dict(self) -> dict[str, Any]:
        return {
            "min_payout": render_amount(self.min_payout),
            "max_payout": render_amount(self.max_payout),
            "expected_payout": render_amount(self.expected_payout),
        }


@dataclass(frozen=True)
class PayoutBreakdown:
    original_stake: str
    reward: str
    total: str
    reward_percentage: str

    def as_dict(self) -> dict[str, str]:
        return {
            "original_stake": self.original_stake,
            "reward": self.reward,
            "total": self.total,
            "reward_percentage": self.reward_percentage,
        }


@dataclass(frozen=True)
class EscrowHealth:
    balance: Decimal
    total_staked: Decimal
    health_ratio: Decimal
    is_healthy: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "balance": render_amount(self.balance),
            "total_staked": render_amount(self.total_staked),
            "health_ratio": render_amount(self.health_ratio),
            "is_healthy": self.is_healthy,
        }


@dataclass(frozen=True)
class WalletPayoutStats:
    wallet: str
    total_payouts: Decimal
    total_rewards: Decimal
    total_stake_returns: Decimal
    payout_count: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "wallet": self.wallet,
            "total_payouts": render_amount(self.total_payouts),
            "total_rewards": render_amount(self.total_rewards),
            "total_stake_returns": render_amount(self.total_stake_returns),
            "payout_count": self.payout_count,
        }


def estimate_potential_earnings(
    user_stake: Any,
    total_active_stake: Any,
    estimated_completion_rate: Any = DEFAULT_COMPLETION_RATE,
) -> EarningsEstimate:
    """Range of what a participant could receive when their cohort resolves.

    The floor is the stake itself (every goal in the cohort completes); the
    ceiling is the whole active pool (only this goal completes). The expected
    figure assumes ``estimated_completion_rate`` of the pool completes and the
    rest is redistributed proportionally.
    """
    stake = parse_amount(user_stake, "user_stake")
    pool = parse_amount(total_active_stake, "total_active_stake")
    rate = parse_amount(estimated_completion_rate, "estimated_completion_rate")
    if stake < 0 or pool < 0:
        raise RedistributionContractError("stakes must be >= 0")
    if not 0 <= rate <= 1:
        raise RedistributionContractError("estimated_completion_rate must be in [0, 1]")

    estimated_winners = rate * pool
    estimated_losers = (1 - rate) * pool
    reward = Decimal(0)
    if estimated_winners > 0:
        reward = stake / estimated_winners * estimated_losers
    return EarningsEstimate(
        min_payout=stake,
        max_payout=pool,
        expected_payout=stake + reward,
    )


def build_payout_breakdown(original_stake: Any, reward: Any) -> PayoutBreakdown:
    stake = parse_amount(original_stake, "original_stake")
    bonus = parse_amount(reward, "reward")
    percentage = Decimal(0)
    if stake > 0:
        percentage = bonus / stake * 100
    return PayoutBreakdown(
        original_stake=_fixed(stake, _DISPLAY_QUANTUM),
        reward=_fixed(bonus, _DISPLAY_QUANTUM),
        total=_fixed(stake + bonus, _DISPLAY_QUANTUM),
        reward_percentage=_fixed(percentage, _PERCENT_QUANTUM),
    )


def outstanding_stake(
    goals: Iterable[Goal],
    payouts: Iterable[PayoutRecord] = (),
    *,
    tz: tzinfo = timezone.utc,
) -> Decimal:
    """Stake escrow still owes: unresolved goals plus resolved goals not yet paid out.

    A completed goal stays owed until it has a payout record. A failed goal
    stays owed until every completed goal of its cohort date is paid; with no
    winners that never happens and the stake remains in escrow.
    """
    goal_list = list(goals)
    paid_goal_ids = {record.goal_id for record in payouts}
    winner_cohorts: set[date] = set()
    unpaid_cohorts: set[date] = set()
    for goal in goal_list:
        if goal.status == GOAL_COMPLETED:
            winner_cohorts.add(goal.cohort_date(tz))
            if goal.goal_id not in paid_goal_ids:
                unpaid_cohorts.add(goal.cohort_date(tz))
    settled_cohorts = winner_cohorts - unpaid_cohorts

    total = Decimal(0)
    for goal in goal_list:
        if goal.status == GOAL_COMPLETED and goal.goal_id in paid_goal_ids:
            continue
        if goal.status == GOAL_FAILED and goal.cohort_date(tz) in settled_cohorts:
            continue
        total += goal.stake_amount
    return total


def evaluate_escrow_health(
    ledger: LedgerClient,
    total_staked: Any,
    *,
    healthy_ratio: Any = DEFAULT_HEALTHY_RATIO,
) -> EscrowHealth:
    staked = parse_amount(total_staked, "total_staked")
    threshold = parse_amount(healthy_ratio, "healthy_ratio")
    balance = ledger.get_balance()
    ratio = Decimal(1)
    if staked > 0:
        ratio = (balance / staked).quantize(_RATIO_QUANTUM)
    return EscrowHealth(
        balance=balance,
        total_staked=staked,
        health_ratio=ratio,
        is_healthy=ratio >= threshold,
    )


def summarize_wallet_payouts(store: PayoutHistory, address: str) -> WalletPayoutStats:
    total = Decimal(0)
    rewards = Decimal(0)
    stake_returns = Decimal(0)
    count = 0
    for record in store.list_payouts_by_recipient(address):
        total += record.amount
        count += 1
        if record.payout_type == PAYOUT_TYPE_COMPLETION_REWARD:
            rewards += record.amount
        else:
            stake_returns += record.amount
    return WalletPayoutStats(
        wallet=address,
        total_payouts=total,
        total_rewards=rewards,
        total_stake_returns=stake_returns,
        payout_count=count,
    )


def _fixed(value: Decimal, quantum: Decimal) -> str:
    return format(value.quantize(quantum, rounding=ROUND_HALF_UP), "f")
