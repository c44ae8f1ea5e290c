from __future__ import annotations

from datetime import date, timezone, tzinfo
from decimal import Decimal
from pathlib import Path

import pytest

from deadline_dao.redistribution.contracts import (
    GOAL_ACTIVE,
    GOAL_COMPLETED,
    GOAL_FAILED,
    GOAL_PENDING_VALIDATION,
    Goal,
)
from deadline_dao.redistribution.execution import (
    REASON_INSUFFICIENT_ESCROW_BALANCE,
    PayoutExecutor,
)
from deadline_dao.redistribution.ledger import TransferResult
from deadline_dao.redistribution.observability import RedistributionRunMetrics
from deadline_dao.redistribution.storage import GoalStore, PayoutLedgerStore, RedistributionStoreError
from deadline_dao.redistribution.trigger import (
    NOTE_NO_LOSERS,
    NOTE_NO_WINNERS,
    NOTE_READY,
    STATE_COMPUTED,
    STATE_PARTIALLY_SETTLED,
    STATE_SETTLED,
    ResolutionTrigger,
    parse_deadline_date,
)


class FakeLedger:
    def __init__(self, balance: str, *, reject: set[str] | None = None) -> None:
        self.balance = Decimal(balance)
        self.reject = set(reject or ())
        self.sent: list[tuple[str, Decimal]] = []

    def get_balance(self) -> Decimal:
        return self.balance

    def send_value(self, recipient: str, amount: Decimal) -> TransferResult:
        self.sent.append((recipient, amount))
        if recipient in self.reject:
            return TransferResult.rejected("GATEWAY_HTTP_400:invalid account")
        self.balance -= amount
        return TransferResult.committed(f"sig-{len(self.sent)}")


class BrokenGoalStore:
    def list_goals(
        self,
        *,
        deadline_date: date | None = None,
        status: str | None = None,
        tz: tzinfo = timezone.utc,
    ) -> tuple[Goal, ...]:
        raise RedistributionStoreError("list goals failed: connection reset")


def _goal(goal_id: str, stake: str, status: str, deadline: str = "2026-03-01T12:00:00Z") -> Goal:
    return Goal.from_payload(
        {
            "goal_id": goal_id,
            "owner": f"wallet-{goal_id}",
            "stake_amount": stake,
            "deadline": deadline,
            "status": status,
        }
    )


def _seed(store: GoalStore, *goals: Goal) -> None:
    for goal in goals:
        store.upsert_goal(goal)


def _standard_cohort(store: GoalStore) -> None:
    _seed(
        store,
        _goal("goal-a", "0.5", GOAL_COMPLETED, "2026-03-01T06:00:00Z"),
        _goal("goal-b", "1.5", GOAL_COMPLETED, "2026-03-01T21:30:00Z"),
        _goal("goal-c", "1.0", GOAL_FAILED, "2026-03-01T09:15:00Z"),
        _goal("goal-d", "2.0", GOAL_ACTIVE),
        _goal("goal-e", "0.3", GOAL_PENDING_VALIDATION),
        _goal("goal-z", "5.0", GOAL_FAILED, "2026-03-02T09:00:00Z"),
    )


def _trigger(tmp_path: Path, ledger: FakeLedger, metrics: RedistributionRunMetrics | None = None) -> tuple[
    ResolutionTrigger, GoalStore, PayoutLedgerStore
]:
    goal_store = GoalStore(locator=str(tmp_path / "goals.sqlite"))
    payout_store = PayoutLedgerStore(locator=str(tmp_path / "payouts.sqlite"))
    executor = PayoutExecutor(ledger=ledger, payout_store=payout_store, metrics=metrics)
    return ResolutionTrigger(goal_store=goal_store, executor=executor, metrics=metrics), goal_store, payout_store


def test_parse_deadline_date_accepts_dates_and_timestamps() -> None:
    assert parse_deadline_date("2026-03-01") == date(2026, 3, 1)
    assert parse_deadline_date("2026-03-01T23:59:59Z") == date(2026, 3, 1)
    assert parse_deadline_date(date(2026, 3, 1)) == date(2026, 3, 1)


def test_select_cohort_partitions_by_status(tmp_path: Path) -> None:
    trigger, goal_store, _ = _trigger(tmp_path, FakeLedger("10"))
    _standard_cohort(goal_store)

    cohort = trigger.select_cohort(date(2026, 3, 1))

    assert [goal.goal_id for goal in cohort.winners] == ["goal-a", "goal-b"]
    assert [goal.goal_id for goal in cohort.losers] == ["goal-c"]
    assert [goal.goal_id for goal in cohort.others] == ["goal-d", "goal-e"]
    assert cohort.total_goals == 5


def test_preview_computes_plans_without_side_effects(tmp_path: Path) -> None:
    ledger = FakeLedger("10")
    trigger, goal_store, payout_store = _trigger(tmp_path, ledger)
    _standard_cohort(goal_store)

    summary = trigger.preview("2026-03-01")
    payload = summary.as_dict()

    assert payload["deadline"] == "2026-03-01"
    assert payload["can_distribute"] is True
    assert payload["note"] == NOTE_READY
    assert payload["stats"] == {
        "total_goals": 5,
        "completed": 2,
        "failed": 1,
        "active": 1,
        "pending_validation": 1,
        "total_completed_stake": "2",
        "total_failed_stake": "1",
        "unclaimed_stake": "0",
    }
    assert [(plan["goal_id"], plan["reward_share"], plan["total_payout"]) for plan in payload["plans"]] == [
        ("goal-a", "0.25", "0.75"),
        ("goal-b", "0.75", "2.25"),
    ]
    assert ledger.sent == []
    assert payout_store.list_payouts() == ()


def test_preview_reports_invalid_deadline_as_note(tmp_path: Path) -> None:
    trigger, _, _ = _trigger(tmp_path, FakeLedger("10"))

    summary = trigger.preview("03/01/2026")

    assert summary.note.startswith("invalid deadline")
    assert summary.plans == ()
    assert summary.can_distribute is False
    assert summary.stats.total_goals == 0


def test_preview_with_no_winners_reports_unclaimed_stake(tmp_path: Path) -> None:
    trigger, goal_store, _ = _trigger(tmp_path, FakeLedger("10"))
    _seed(goal_store, _goal("goal-x", "0.4", GOAL_FAILED), _goal("goal-y", "0.6", GOAL_FAILED))

    summary = trigger.preview(date(2026, 3, 1))

    assert summary.note == NOTE_NO_WINNERS
    assert summary.plans == ()
    assert summary.can_distribute is False
    assert summary.stats.unclaimed_stake == Decimal("1.0")


def test_preview_with_no_losers_returns_stake_only_plans(tmp_path: Path) -> None:
    trigger, goal_store, _ = _trigger(tmp_path, FakeLedger("10"))
    _seed(goal_store, _goal("goal-x", "0.4", GOAL_COMPLETED))

    summary = trigger.preview("2026-03-01")

    assert summary.note == NOTE_NO_LOSERS
    assert len(summary.plans) == 1
    assert summary.plans[0].reward_share == Decimal("0")
    assert summary.plans[0].total_payout == Decimal("0.4")


def test_resolve_settles_cohort_and_reports_outcomes(tmp_path: Path) -> None:
    ledger = FakeLedger("10")
    trigger, goal_store, payout_store = _trigger(tmp_path, ledger)
    _standard_cohort(goal_store)

    report = trigger.resolve("2026-03-01")
    payload = report.as_dict()

    assert report.state == STATE_SETTLED
    assert payload["errors"] == []
    assert payload["stats"]["rewards_distributed"] == "1"
    assert payload["stats"]["successful_payouts"] == 2
    assert payload["stats"]["failed_payouts"] == 0
    assert payload["outcomes"] == [
        {
            "goal_id": "goal-a",
            "recipient": "wallet-goal-a",
            "original_stake": "0.5",
            "reward_amount": "0.25",
            "total_payout": "0.75",
            "proportion": "0.25",
            "status": "success",
            "transaction_id": "sig-1",
            "already_paid": False,
        },
        {
            "goal_id": "goal-b",
            "recipient": "wallet-goal-b",
            "original_stake": "1.5",
            "reward_amount": "0.75",
            "total_payout": "2.25",
            "proportion": "0.75",
            "status": "success",
            "transaction_id": "sig-2",
            "already_paid": False,
        },
    ]
    assert payout_store.find_payout_by_goal_id("goal-b").cohort_date == "2026-03-01"


def test_resolve_stats_extend_preview_stats(tmp_path: Path) -> None:
    trigger, goal_store, _ = _trigger(tmp_path, FakeLedger("10"))
    _standard_cohort(goal_store)

    preview_stats = trigger.preview("2026-03-01").as_dict()["stats"]
    resolve_stats = trigger.resolve("2026-03-01").as_dict()["stats"]

    assert {key: resolve_stats[key] for key in preview_stats} == preview_stats


def test_resolve_twice_is_idempotent(tmp_path: Path) -> None:
    ledger = FakeLedger("10")
    trigger, goal_store, payout_store = _trigger(tmp_path, ledger)
    _standard_cohort(goal_store)
    trigger.resolve("2026-03-01")
    records_after_first = payout_store.list_payouts()

    second = trigger.resolve("2026-03-01")

    assert len(ledger.sent) == 2
    assert second.state == STATE_SETTLED
    assert second.already_paid == 2
    assert all(outcome.already_paid for outcome in second.outcomes)
    assert payout_store.list_payouts() == records_after_first


def test_resolve_reports_partial_failure(tmp_path: Path) -> None:
    ledger = FakeLedger("10", reject={"wallet-goal-a"})
    trigger, goal_store, payout_store = _trigger(tmp_path, ledger)
    _standard_cohort(goal_store)

    report = trigger.resolve("2026-03-01")

    assert report.state == STATE_PARTIALLY_SETTLED
    outcomes = {outcome.goal_id: outcome for outcome in report.outcomes}
    assert outcomes["goal-a"].status == "failed"
    assert outcomes["goal-a"].error.startswith("TRANSFER_REJECTED")
    assert outcomes["goal-b"].status == "success"
    assert report.errors == ("goal goal-a: TRANSFER_REJECTED GATEWAY_HTTP_400:invalid account",)
    assert report.rewards_distributed == Decimal("0.75")
    assert payout_store.find_payout_by_goal_id("goal-a") is None


def test_resolve_insufficient_balance_stays_computed(tmp_path: Path) -> None:
    ledger = FakeLedger("2.9")
    trigger, goal_store, payout_store = _trigger(tmp_path, ledger)
    _standard_cohort(goal_store)

    report = trigger.resolve("2026-03-01")

    assert report.state == STATE_COMPUTED
    assert ledger.sent == []
    assert len(report.errors) == 1
    assert report.errors[0].startswith(REASON_INSUFFICIENT_ESCROW_BALANCE)
    assert {outcome.status for outcome in report.outcomes} == {"failed"}
    assert report.rewards_distributed == Decimal("0")
    assert payout_store.list_payouts() == ()


def test_resolve_without_winners_does_nothing(tmp_path: Path) -> None:
    ledger = FakeLedger("10")
    trigger, goal_store, _ = _trigger(tmp_path, ledger)
    _seed(goal_store, _goal("goal-x", "1", GOAL_FAILED), _goal("goal-y", "1", GOAL_ACTIVE))

    report = trigger.resolve("2026-03-01")

    assert report.state == STATE_COMPUTED
    assert report.note == NOTE_NO_WINNERS
    assert report.outcomes == ()
    assert report.as_dict()["stats"]["unclaimed_stake"] == "1"
    assert ledger.sent == []


def test_resolve_invalid_deadline_is_not_an_exception(tmp_path: Path) -> None:
    trigger, _, _ = _trigger(tmp_path, FakeLedger("10"))

    report = trigger.resolve("")

    assert report.state == STATE_COMPUTED
    assert report.note.startswith("invalid deadline")


def test_goal_store_failure_propagates(tmp_path: Path) -> None:
    payout_store = PayoutLedgerStore(locator=str(tmp_path / "payouts.sqlite"))
    trigger = ResolutionTrigger(
        goal_store=BrokenGoalStore(),
        executor=PayoutExecutor(ledger=FakeLedger("10"), payout_store=payout_store),
    )
    with pytest.raises(RedistributionStoreError, match="connection reset"):
        trigger.resolve("2026-03-01")


def test_trigger_records_metrics(tmp_path: Path) -> None:
    metrics = RedistributionRunMetrics(platform_run_id="platform_20260302T000000Z")
    trigger, goal_store, _ = _trigger(tmp_path, FakeLedger("10"), metrics)
    _standard_cohort(goal_store)

    trigger.preview("2026-03-01")
    trigger.resolve("2026-03-01")

    assert metrics.counters["preview_total"] == 1
    assert metrics.counters["resolve_total"] == 1
    assert metrics.counters["plans_total"] == 2
    assert metrics.counters["payouts_succeeded_total"] == 2
    assert [event["event_type"] for event in metrics.recent_events][-1] == "resolve"


def test_stake_finer_than_ledger_unit_is_reported_not_raised(tmp_path: Path) -> None:
    ledger = FakeLedger("10")
    trigger, goal_store, payout_store = _trigger(tmp_path, ledger)
    _seed(
        goal_store,
        _goal("goal-a", "0.5", GOAL_COMPLETED),
        _goal("goal-b", "0.0000000001", GOAL_FAILED),
    )

    summary = trigger.preview("2026-03-01")
    assert summary.plans == ()
    assert summary.can_distribute is False
    assert summary.note.startswith("invalid cohort:")
    assert "finer than one ledger unit" in summary.note
    assert summary.stats.failed == 1
    assert summary.stats.total_failed_stake == Decimal("0.0000000001")

    report = trigger.resolve("2026-03-01")
    assert report.state == STATE_COMPUTED
    assert report.outcomes == ()
    assert report.note.startswith("invalid cohort:")
    assert ledger.sent == []
    assert payout_store.list_payouts() == ()


def test_rerun_after_status_change_reports_recorded_payout(tmp_path: Path) -> None:
    ledger = FakeLedger("10")
    metrics = RedistributionRunMetrics(platform_run_id="platform_20260302T000000Z")
    trigger, goal_store, payout_store = _trigger(tmp_path, ledger, metrics)
    _seed(
        goal_store,
        _goal("goal-a", "1.0", GOAL_COMPLETED),
        _goal("goal-c", "1.0", GOAL_FAILED),
        _goal("goal-d", "1.0", GOAL_ACTIVE),
    )
    first = trigger.resolve("2026-03-01")
    assert first.state == STATE_SETTLED
    assert payout_store.find_payout_by_goal_id("goal-a").amount == Decimal("2")

    goal_store.update_goal_status("goal-d", GOAL_FAILED)
    second = trigger.resolve("2026-03-01")

    assert len(ledger.sent) == 1
    assert second.state == STATE_SETTLED
    outcome = second.outcomes[0]
    assert outcome.already_paid is True
    assert outcome.total_payout == Decimal("2")
    assert outcome.reward_amount == Decimal("1")
    assert second.rewards_distributed == Decimal("1")
    assert second.errors == ("goal goal-a: ALREADY_PAID_AMOUNT_MISMATCH recorded 2 planned 3",)
    assert metrics.counters["already_paid_amount_mismatch_total"] == 1
