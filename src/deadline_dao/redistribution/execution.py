"""Payout executor: sequential, idempotent, write-after-send (Phase 4)."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Sequence

from .contracts import PayoutFailure, PayoutPlan, PayoutRecord, RedistributionContractError, render_amount
from .ledger import (
    TRANSFER_ERROR_KINDS,
    TRANSFER_REJECTED,
    TRANSFER_TIMEOUT,
    LedgerClient,
    LedgerClientError,
    TransferResult,
)
from .observability import RedistributionRunMetrics
from .storage import WRITE_HASH_MISMATCH, PayoutLedgerStore, RedistributionStoreError


logger = logging.getLogger("deadline_dao.redistribution.executor")

REASON_INSUFFICIENT_ESCROW_BALANCE = "INSUFFICIENT_ESCROW_BALANCE"
REASON_ESCROW_BALANCE_UNAVAILABLE = "ESCROW_BALANCE_UNAVAILABLE"
REASON_TRANSFER_REJECTED = TRANSFER_REJECTED
REASON_TRANSFER_TIMEOUT = TRANSFER_TIMEOUT
REASON_PAYOUT_LEDGER_UNAVAILABLE = "PAYOUT_LEDGER_UNAVAILABLE"
REASON_RECORD_WRITE_FAILED = "RECORD_WRITE_FAILED"
REASON_DUPLICATE_PAYOUT_DETECTED = "DUPLICATE_PAYOUT_DETECTED"
REASON_ALREADY_PAID = "ALREADY_PAID"
REASON_ALREADY_PAID_AMOUNT_MISMATCH = "ALREADY_PAID_AMOUNT_MISMATCH"

BATCH_FAILURE_REASONS: set[str] = {
    REASON_INSUFFICIENT_ESCROW_BALANCE,
    REASON_ESCROW_BALANCE_UNAVAILABLE,
}


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class ExecutionResult:
    succeeded: tuple[PayoutRecord, ...]
    failed: tuple[PayoutFailure, ...]
    already_paid: tuple[str, ...] = ()
    transfers_attempted: int = 0
    batch_error: str | None = None
    amount_mismatches: tuple[str, ...] = ()

    @property
    def batch_failed(self) -> bool:
        return self.batch_error is not None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "succeeded": [record.as_dict() for record in self.succeeded],
            "failed": [failure.as_dict() for failure in self.failed],
            "already_paid": list(self.already_paid),
            "transfers_attempted": self.transfers_attempted,
        }
        if self.amount_mismatches:
            payload["amount_mismatches"] = list(self.amount_mismatches)
        if self.batch_error:
            payload["batch_error"] = self.batch_error
        return payload


@dataclass
class PayoutExecutor:
    """Sends each plan's total payout from escrow and records it once settled.

    A goal with a stored payout record is never paid again. Transfers run one at
    a time in goal id order, and a failure on one goal never stops the rest.
    """

    ledger: LedgerClient
    payout_store: PayoutLedgerStore
    metrics: RedistributionRunMetrics | None = None
    clock: Callable[[], datetime] = _utc_now

    def execute(self, plans: Sequence[PayoutPlan], *, cohort_date: str | None = None) -> ExecutionResult:
        ordered = sorted(plans, key=lambda plan: plan.goal_id)
        _require_unique_goal_ids(ordered)

        succeeded: list[PayoutRecord] = []
        failed: list[PayoutFailure] = []
        already_paid: list[str] = []
        amount_mismatches: list[str] = []
        pending: list[PayoutPlan] = []

        for plan in ordered:
            try:
                existing = self.payout_store.find_payout_by_goal_id(plan.goal_id)
            except RedistributionStoreError as exc:
                failed.append(self._fail(plan, REASON_PAYOUT_LEDGER_UNAVAILABLE, str(exc)))
                continue
            if existing is not None:
                mismatch = existing.amount != plan.total_payout
                if mismatch:
                    # Recorded amount wins; the cohort changed after this goal was paid.
                    logger.warning(
                        "Redistribution payout already recorded with different amount goal_id=%s tx=%s recorded=%s planned=%s",
                        plan.goal_id,
                        existing.ledger_transaction_id,
                        render_amount(existing.amount),
                        render_amount(plan.total_payout),
                    )
                    amount_mismatches.append(plan.goal_id)
                else:
                    logger.info(
                        "Redistribution payout already recorded goal_id=%s tx=%s",
                        plan.goal_id,
                        existing.ledger_transaction_id,
                    )
                succeeded.append(existing)
                already_paid.append(plan.goal_id)
                if self.metrics is not None:
                    self.metrics.record_already_paid(goal_id=plan.goal_id, amount_mismatch=mismatch)
                continue
            pending.append(plan)

        if not pending:
            return ExecutionResult(
                succeeded=tuple(succeeded),
                failed=tuple(failed),
                already_paid=tuple(already_paid),
                amount_mismatches=tuple(amount_mismatches),
            )

        required = sum((plan.total_payout for plan in pending), Decimal(0))
        batch_error = self._check_balance(required)
        if batch_error is not None:
            reason, message = batch_error
            logger.warning("Redistribution batch halted reason=%s %s", reason, message)
            if self.metrics is not None:
                self.metrics.record_batch_failure(reason=reason, pending_count=len(pending))
            failed.extend(
                PayoutFailure(
                    goal_id=plan.goal_id,
                    recipient=plan.recipient,
                    amount=plan.total_payout,
                    reason=reason,
                    message=message,
                )
                for plan in pending
            )
            return ExecutionResult(
                succeeded=tuple(succeeded),
                failed=tuple(sorted(failed, key=lambda item: item.goal_id)),
                already_paid=tuple(already_paid),
                amount_mismatches=tuple(amount_mismatches),
                batch_error=f"{reason}: {message}",
            )

        attempted = 0
        for plan in pending:
            attempted += 1
            if self.metrics is not None:
                self.metrics.record_transfer_attempt()
            transfer = self._send(plan)
            if not transfer.ok:
                reason = str(transfer.error_kind)
                if reason == REASON_TRANSFER_TIMEOUT:
                    logger.error(
                        "Redistribution transfer outcome unknown goal_id=%s recipient=%s amount=%s: %s",
                        plan.goal_id,
                        plan.recipient,
                        render_amount(plan.total_payout),
                        transfer.message,
                    )
                failed.append(self._fail(plan, reason, transfer.message))
                continue
            transaction_id = str(transfer.transaction_id)
            failure = self._record(plan, transaction_id, cohort_date, succeeded)
            if failure is not None:
                failed.append(failure)

        return ExecutionResult(
            succeeded=tuple(sorted(succeeded, key=lambda item: item.goal_id)),
            failed=tuple(sorted(failed, key=lambda item: item.goal_id)),
            already_paid=tuple(already_paid),
                amount_mismatches=tuple(amount_mismatches),
            transfers_attempted=attempted,
        )

    def _check_balance(self, required: Decimal) -> tuple[str, str] | None:
        try:
            balance = self.ledger.get_balance()
        except LedgerClientError as exc:
            return REASON_ESCROW_BALANCE_UNAVAILABLE, str(exc)
        if balance < required:
            return (
                REASON_INSUFFICIENT_ESCROW_BALANCE,
                f"escrow balance {render_amount(balance)} is below required {render_amount(required)}",
            )
        return None

    def _send(self, plan: PayoutPlan) -> TransferResult:
        try:
            return self.ledger.send_value(plan.recipient, plan.total_payout)
        except LedgerClientError as exc:
            kind = exc.error_kind if exc.error_kind in TRANSFER_ERROR_KINDS else REASON_TRANSFER_TIMEOUT
            return TransferResult(error_kind=kind, message=str(exc))

    def _record(
        self,
        plan: PayoutPlan,
        transaction_id: str,
        cohort_date: str | None,
        succeeded: list[PayoutRecord],
    ) -> PayoutFailure | None:
        record = PayoutRecord.from_plan(
            plan,
            ledger_transaction_id=transaction_id,
            recorded_at_utc=self.clock().isoformat(),
            cohort_date=cohort_date,
        )
        try:
            write = self.payout_store.save_payout_record(record)
        except RedistributionStoreError as exc:
            # Funds moved but nothing durable says so; operators reconcile by tx id.
            logger.error(
                "Redistribution payout sent but not recorded goal_id=%s tx=%s: %s",
                plan.goal_id,
                transaction_id,
                exc,
            )
            return self._fail(plan, REASON_RECORD_WRITE_FAILED, str(exc), transaction_id=transaction_id)
        if write.status == WRITE_HASH_MISMATCH:
            logger.error(
                "Redistribution duplicate payout goal_id=%s tx=%s existing_tx=%s",
                plan.goal_id,
                transaction_id,
                write.record.ledger_transaction_id,
            )
            return self._fail(
                plan,
                REASON_DUPLICATE_PAYOUT_DETECTED,
                f"payout already recorded with tx {write.record.ledger_transaction_id}",
                transaction_id=transaction_id,
            )
        logger.info(
            "Redistribution payout sent goal_id=%s recipient=%s amount=%s tx=%s",
            plan.goal_id,
            plan.recipient,
            render_amount(plan.total_payout),
            transaction_id,
        )
        succeeded.append(write.record)
        if self.metrics is not None:
            self.metrics.record_payout_succeeded(goal_id=plan.goal_id, transaction_id=transaction_id)
        return None

    def _fail(
        self,
        plan: PayoutPlan,
        reason: str,
        message: str,
        *,
        transaction_id: str | None = None,
    ) -> PayoutFailure:
        if self.metrics is not None:
            self.metrics.record_payout_failed(goal_id=plan.goal_id, reason=reason, message=message)
        return PayoutFailure(
            goal_id=plan.goal_id,
            recipient=plan.recipient,
            amount=plan.total_payout,
            reason=reason,
            message=message,
            transaction_id=transaction_id,
        )


def _require_unique_goal_ids(plans: Sequence[PayoutPlan]) -> None:
    seen: set[str] = set()
    for plan in plans:
        if plan.goal_id in seen:
            raise RedistributionContractError(f"duplicate goal_id in payout batch: {plan.goal_id!r}")
        seen.add(plan.goal_id)
