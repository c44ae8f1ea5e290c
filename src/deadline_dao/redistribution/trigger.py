"""Resolution trigger: cohort selection, preview, and resolve (Phase 5)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal
import logging
from typing import Any, Protocol, Sequence

from .contracts import (
    GOAL_ACTIVE,
    GOAL_COMPLETED,
    GOAL_FAILED,
    GOAL_PENDING_VALIDATION,
    PAYOUT_TYPE_COMPLETION_REWARD,
    Goal,
    PayoutPlan,
    RedistributionContractError,
    parse_deadline,
    render_amount,
)
from .engine import RedistributionEngine
from .execution import REASON_ALREADY_PAID_AMOUNT_MISMATCH, ExecutionResult, PayoutExecutor
from .observability import RedistributionRunMetrics


logger = logging.getLogger("deadline_dao.redistribution.trigger")

STATE_COMPUTED = "COMPUTED"
STATE_EXECUTING = "EXECUTING"
STATE_SETTLED = "SETTLED"
STATE_PARTIALLY_SETTLED = "PARTIALLY_SETTLED"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"

NOTE_NO_WINNERS = "no completed goals, nothing to distribute"
NOTE_NO_LOSERS = "no failed stakes; winners would receive stake return only"
NOTE_READY = "ready to distribute rewards"


class GoalRepository(Protocol):
    def list_goals(
        self,
        *,
        deadline_date: date | None = None,
        status: str | None = None,
        tz: tzinfo = timezone.utc,
    ) -> Sequence[Goal]:
        ...


@dataclass(frozen=True)
class ResolutionCohort:
    deadline_date: date
    winners: tuple[Goal, ...]
    losers: tuple[Goal, ...]
    others: tuple[Goal, ...]

    @property
    def total_goals(self) -> int:
        return len(self.winners) + len(self.losers) + len(self.others)

    def count_status(self, status: str) -> int:
        return sum(1 for goal in self.others if goal.status == status)


@dataclass(frozen=True)
class CohortStats:
    total_goals: int = 0
    completed: int = 0
    failed: int = 0
    active: int = 0
    pending_validation: int = 0
    total_completed_stake: Decimal = Decimal(0)
    total_failed_stake: Decimal = Decimal(0)
    unclaimed_stake: Decimal = Decimal(0)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_goals": self.total_goals,
            "completed": self.completed,
            "failed": self.failed,
            "active": self.active,
            "pending_validation": self.pending_validation,
            "total_completed_stake": render_amount(self.total_completed_stake),
            "total_failed_stake": render_amount(self.total_failed_stake),
            "unclaimed_stake": render_amount(self.unclaimed_stake),
        }


@dataclass(frozen=True)
class CohortSummary:
    deadline: str
    stats: CohortStats
    plans: tuple[PayoutPlan, ...]
    can_distribute: bool
    note: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "deadline": self.deadline,
            "stats": self.stats.as_dict(),
            "plans": [plan.as_dict() for plan in self.plans],
            "can_distribute": self.can_distribute,
            "note": self.note,
        }


@dataclass(frozen=True)
class PayoutOutcome:
    goal_id: str
    recipient: str
    original_stake: Decimal
    reward_amount: Decimal
    total_payout: Decimal
    proportion: Decimal
    status: str
    transaction_id: str | None = None
    error: str | None = None
    already_paid: bool = False

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "goal_id": self.goal_id,
            "recipient": self.recipient,
            "original_stake": render_amount(self.original_stake),
            "reward_amount": render_amount(self.reward_amount),
            "total_payout": render_amount(self.total_payout),
            "proportion": render_amount(self.proportion),
            "status": self.status,
            "already_paid": self.already_paid,
        }
        if self.transaction_id:
            payload["transaction_id"] = self.transaction_id
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class ResolutionReport:
    deadline: str
    state: str
    stats: CohortStats
    outcomes: tuple[PayoutOutcome, ...] = ()
    errors: tuple[str, ...] = ()
    note: str = ""
    rewards_distributed: Decimal = Decimal(0)

    @property
    def successful_payouts(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == OUTCOME_SUCCESS)

    @property
    def failed_payouts(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == OUTCOME_FAILED)

    @property
    def already_paid(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.already_paid)

    def as_dict(self) -> dict[str, Any]:
        stats = self.stats.as_dict()
        stats.update(
            {
                "rewards_distributed": render_amount(self.rewards_distributed),
                "successful_payouts": self.successful_payouts,
                "failed_payouts": self.failed_payouts,
                "already_paid": self.already_paid,
            }
        )
        return {
            "deadline": self.deadline,
            "state": self.state,
            "stats": stats,
            "outcomes": [outcome.as_dict() for outcome in self.outcomes],
            "errors": list(self.errors),
            "note": self.note,
        }


def parse_deadline_date(value: Any) -> date:
    """Accept a date, a datetime, ``YYYY-MM-DD`` or an ISO-8601 timestamp."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not text:
        raise RedistributionContractError("invalid deadline: value is empty")
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return parse_deadline(text).date()
    except (RedistributionContractError, ValueError) as exc:
        raise RedistributionContractError(f"invalid deadline: {value!r}") from exc


@dataclass
class ResolutionTrigger:
    goal_store: GoalRepository
    executor: PayoutExecutor
    engine: RedistributionEngine = field(default_factory=RedistributionEngine)
    metrics: RedistributionRunMetrics | None = None

    def select_cohort(self, deadline_date: date) -> ResolutionCohort:
        goals = self.goal_store.list_goals(deadline_date=deadline_date, tz=self.engine.policy.cohort_tz)
        winners: list[Goal] = []
        losers: list[Goal] = []
        others: list[Goal] = []
        for goal in sorted(goals, key=lambda item: item.goal_id):
            if goal.cohort_date(self.engine.policy.cohort_tz) != deadline_date:
                continue
            if goal.status == GOAL_COMPLETED:
                winners.append(goal)
            elif goal.status == GOAL_FAILED:
                losers.append(goal)
            else:
                others.append(goal)
        return ResolutionCohort(
            deadline_date=deadline_date,
            winners=tuple(winners),
            losers=tuple(losers),
            others=tuple(others),
        )

    def preview(self, deadline_date: Any) -> CohortSummary:
        try:
            target = parse_deadline_date(deadline_date)
        except RedistributionContractError as exc:
            summary = CohortSummary(
                deadline=str(deadline_date),
                stats=CohortStats(),
                plans=(),
                can_distribute=False,
                note=str(exc),
            )
            self._record_preview(summary)
            return summary

        cohort = self.select_cohort(target)
        plans, note = self._plan(cohort)
        summary = CohortSummary(
            deadline=target.isoformat(),
            stats=self._stats(cohort),
            plans=plans,
            can_distribute=bool(plans),
            note=note,
        )
        logger.info(
            "Redistribution preview deadline=%s winners=%s losers=%s plans=%s",
            summary.deadline,
            len(cohort.winners),
            len(cohort.losers),
            len(plans),
        )
        self._record_preview(summary)
        return summary

    def resolve(self, deadline_date: Any) -> ResolutionReport:
        try:
            target = parse_deadline_date(deadline_date)
        except RedistributionContractError as exc:
            report = ResolutionReport(
                deadline=str(deadline_date),
                state=STATE_COMPUTED,
                stats=CohortStats(),
                note=str(exc),
            )
            self._record_resolve(report, plan_count=0)
            return report

        cohort = self.select_cohort(target)
        stats = self._stats(cohort)
        plans, note = self._plan(cohort)
        if not plans:
            report = ResolutionReport(deadline=target.isoformat(), state=STATE_COMPUTED, stats=stats, note=note)
            self._record_resolve(report, plan_count=0)
            return report

        logger.info(
            "Redistribution resolve deadline=%s state=%s plans=%s",
            target.isoformat(),
            STATE_EXECUTING,
            len(plans),
        )
        result = self.executor.execute(plans, cohort_date=target.isoformat())
        outcomes = _compose_outcomes(plans, result)
        errors: list[str] = []
        if result.batch_error:
            errors.append(result.batch_error)
        else:
            errors.extend(f"goal {failure.goal_id}: {failure.reason} {failure.message}".strip() for failure in result.failed)
        errors.extend(_mismatch_errors(plans, result))

        if result.batch_failed:
            state = STATE_COMPUTED
        elif result.failed:
            state = STATE_PARTIALLY_SETTLED
        else:
            state = STATE_SETTLED

        rewards_distributed = sum(
            (outcome.reward_amount for outcome in outcomes if outcome.status == OUTCOME_SUCCESS),
            Decimal(0),
        )
        report = ResolutionReport(
            deadline=target.isoformat(),
            state=state,
            stats=stats,
            outcomes=outcomes,
            errors=tuple(errors),
            note=note,
            rewards_distributed=rewards_distributed,
        )
        log = logger.warning if state != STATE_SETTLED else logger.info
        log(
            "Redistribution resolve deadline=%s state=%s succeeded=%s failed=%s already_paid=%s",
            report.deadline,
            state,
            report.successful_payouts,
            report.failed_payouts,
            report.already_paid,
        )
        self._record_resolve(report, plan_count=len(plans))
        return report

    def _plan(self, cohort: ResolutionCohort) -> tuple[tuple[PayoutPlan, ...], str]:
        try:
            plans = self.engine.plan(cohort.winners, cohort.losers)
        except RedistributionContractError as exc:
            logger.warning(
                "Redistribution cohort cannot be planned deadline=%s: %s",
                cohort.deadline_date.isoformat(),
                exc,
            )
            return (), f"invalid cohort: {exc}"
        return plans, _cohort_note(cohort)

    def _stats(self, cohort: ResolutionCohort) -> CohortStats:
        completed_stake = sum((goal.stake_amount for goal in cohort.winners), Decimal(0))
        failed_stake = sum((goal.stake_amount for goal in cohort.losers), Decimal(0))
        # No winners: losers' stakes stay in escrow.
        unclaimed = failed_stake if not cohort.winners else Decimal(0)
        return CohortStats(
            total_goals=cohort.total_goals,
            completed=len(cohort.winners),
            failed=len(cohort.losers),
            active=cohort.count_status(GOAL_ACTIVE),
            pending_validation=cohort.count_status(GOAL_PENDING_VALIDATION),
            total_completed_stake=completed_stake,
            total_failed_stake=failed_stake,
            unclaimed_stake=unclaimed,
        )

    def _record_preview(self, summary: CohortSummary) -> None:
        if self.metrics is not None:
            self.metrics.record_preview(deadline=summary.deadline, plan_count=len(summary.plans), note=summary.note)

    def _record_resolve(self, report: ResolutionReport, *, plan_count: int) -> None:
        if self.metrics is not None:
            self.metrics.record_resolve(
                deadline=report.deadline,
                state=report.state,
                plan_count=plan_count,
                errors=list(report.errors),
            )


def _cohort_note(cohort: ResolutionCohort) -> str:
    if not cohort.winners:
        return NOTE_NO_WINNERS
    if not cohort.losers:
        return NOTE_NO_LOSERS
    return NOTE_READY


def _compose_outcomes(plans: Sequence[PayoutPlan], result: ExecutionResult) -> tuple[PayoutOutcome, ...]:
    succeeded = {record.goal_id: record for record in result.succeeded}
    failed = {failure.goal_id: failure for failure in result.failed}
    already_paid = set(result.already_paid)
    outcomes: list[PayoutOutcome] = []
    for plan in plans:
        record = succeeded.get(plan.goal_id)
        failure = failed.get(plan.goal_id)
        if record is not None:
            total_payout = record.amount
            reward_amount = plan.reward_share
            if plan.goal_id in already_paid:
                # Report what was actually sent, not what this run would send.
                reward_amount = (
                    max(record.amount - plan.original_stake, Decimal(0))
                    if record.payout_type == PAYOUT_TYPE_COMPLETION_REWARD
                    else Decimal(0)
                )
            outcomes.append(
                PayoutOutcome(
                    goal_id=plan.goal_id,
                    recipient=record.recipient,
                    original_stake=plan.original_stake,
                    reward_amount=reward_amount,
                    total_payout=total_payout,
                    proportion=plan.proportion_of_winners,
                    status=OUTCOME_SUCCESS,
                    transaction_id=record.ledger_transaction_id,
                    already_paid=plan.goal_id in already_paid,
                )
            )
            continue
        error = "not executed"
        transaction_id = None
        if failure is not None:
            error = f"{failure.reason}: {failure.message}" if failure.message else failure.reason
            transaction_id = failure.transaction_id
        outcomes.append(
            PayoutOutcome(
                goal_id=plan.goal_id,
                recipient=plan.recipient,
                original_stake=plan.original_stake,
                reward_amount=plan.reward_share,
                total_payout=plan.total_payout,
                proportion=plan.proportion_of_winners,
                status=OUTCOME_FAILED,
                transaction_id=transaction_id,
                error=error,
            )
        )
    return tuple(outcomes)


def _mismatch_errors(plans: Sequence[PayoutPlan], result: ExecutionResult) -> list[str]:
    recorded = {record.goal_id: record for record in result.succeeded}
    planned = {plan.goal_id: plan for plan in plans}
    errors: list[str] = []
    for goal_id in result.amount_mismatches:
        errors.append(
            f"goal {goal_id}: {REASON_ALREADY_PAID_AMOUNT_MISMATCH} "
            f"recorded {render_amount(recorded[goal_id].amount)} planned {render_amount(planned[goal_id].total_payout)}"
        )
    return errors
