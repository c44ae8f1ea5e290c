"""Redistribution contract types and amount helpers (Phase 1)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping


GOAL_ACTIVE = "active"
GOAL_PENDING_VALIDATION = "pending_validation"
GOAL_COMPLETED = "completed"
GOAL_FAILED = "failed"
GOAL_STATUSES: set[str] = {GOAL_ACTIVE, GOAL_PENDING_VALIDATION, GOAL_COMPLETED, GOAL_FAILED}
TERMINAL_GOAL_STATUSES: set[str] = {GOAL_COMPLETED, GOAL_FAILED}

PAYOUT_TYPE_ORIGINAL_STAKE = "original_stake"
PAYOUT_TYPE_COMPLETION_REWARD = "completion_reward"
PAYOUT_TYPES: set[str] = {PAYOUT_TYPE_ORIGINAL_STAKE, PAYOUT_TYPE_COMPLETION_REWARD}

# 1 SOL = 10**9 lamports
DEFAULT_UNIT_DECIMALS = 9


class RedistributionContractError(ValueError):
    """Raised when goal/payout payloads violate redistribution contracts."""


@dataclass(frozen=True)
class Goal:
    goal_id: str
    owner: str
    stake_amount: Decimal
    deadline: datetime
    status: str
    title: str = ""
    description: str = ""
    category: str = ""

    def __post_init__(self) -> None:
        _as_non_empty_string(self.goal_id, "goal_id")
        _as_non_empty_string(self.owner, "owner")
        if not isinstance(self.stake_amount, Decimal):
            raise RedistributionContractError("stake_amount must be a Decimal")
        if not self.stake_amount.is_finite() or self.stake_amount <= 0:
            raise RedistributionContractError(f"stake_amount must be > 0 for goal {self.goal_id!r}")
        if not isinstance(self.deadline, datetime) or self.deadline.tzinfo is None:
            raise RedistributionContractError("deadline must be a timezone-aware datetime")
        if self.status not in GOAL_STATUSES:
            raise RedistributionContractError(f"status must be one of {sorted(GOAL_STATUSES)}")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Goal":
        if not isinstance(payload, Mapping):
            raise RedistributionContractError("Goal must be a mapping")
        goal_id = _as_non_empty_string(payload.get("goal_id") or payload.get("id"), "goal_id")
        owner = _as_non_empty_string(payload.get("owner") or payload.get("wallet_address"), "owner")
        status = _as_non_empty_string(payload.get("status"), "status").lower()
        return cls(
            goal_id=goal_id,
            owner=owner,
            stake_amount=parse_amount(payload.get("stake_amount"), "stake_amount"),
            deadline=parse_deadline(payload.get("deadline")),
            status=status,
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            category=str(payload.get("category") or ""),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_GOAL_STATUSES

    def cohort_date(self, tz: tzinfo = timezone.utc) -> date:
        return self.deadline.astimezone(tz).date()

    def as_dict(self) -> dict[str, Any]:
        return {
            "goal_id": self.goal_id,
            "owner": self.owner,
            "stake_amount": render_amount(self.stake_amount),
            "deadline": self.deadline.isoformat(),
            "status": self.status,
            "title": self.title,
            "description": self.description,
            "category": self.category,
        }


@dataclass(frozen=True)
class PayoutPlan:
    """Computed, not yet executed payout for one winning goal."""

    goal_id: str
    recipient: str
    original_stake: Decimal
    proportion_of_winners: Decimal
    reward_share: Decimal
    total_payout: Decimal

    @property
    def payout_type(self) -> str:
        if self.reward_share > 0:
            return PAYOUT_TYPE_COMPLETION_REWARD
        return PAYOUT_TYPE_ORIGINAL_STAKE

    def as_dict(self) -> dict[str, Any]:
        return {
            "goal_id": self.goal_id,
            "recipient": self.recipient,
            "original_stake": render_amount(self.original_stake),
            "proportion_of_winners": render_amount(self.proportion_of_winners),
            "reward_share": render_amount(self.reward_share),
            "total_payout": render_amount(self.total_payout),
            "payout_type": self.payout_type,
        }


@dataclass(frozen=True)
class PayoutRecord:
    """Settled outcome of one successful ledger transfer. Never mutated."""

    goal_id: str
    recipient: str
    amount: Decimal
    ledger_transaction_id: str
    payout_type: str
    recorded_at_utc: str
    cohort_date: str | None = None

    def __post_init__(self) -> None:
        _as_non_empty_string(self.goal_id, "goal_id")
        _as_non_empty_string(self.recipient, "recipient")
        _as_non_empty_string(self.ledger_transaction_id, "ledger_transaction_id")
        if self.payout_type not in PAYOUT_TYPES:
            raise RedistributionContractError(f"payout_type must be one of {sorted(PAYOUT_TYPES)}")
        if not isinstance(self.amount, Decimal) or self.amount <= 0:
            raise RedistributionContractError("amount must be a positive Decimal")

    @classmethod
    def from_plan(
        cls,
        plan: PayoutPlan,
        *,
        ledger_transaction_id: str,
        recorded_at_utc: str,
        cohort_date: str | None = None,
    ) -> "PayoutRecord":
        return cls(
            goal_id=plan.goal_id,
            recipient=plan.recipient,
            amount=plan.total_payout,
            ledger_transaction_id=ledger_transaction_id,
            payout_type=plan.payout_type,
            recorded_at_utc=recorded_at_utc,
            cohort_date=cohort_date,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "goal_id": self.goal_id,
            "recipient": self.recipient,
            "amount": render_amount(self.amount),
            "ledger_transaction_id": self.ledger_transaction_id,
            "payout_type": self.payout_type,
            "recorded_at_utc": self.recorded_at_utc,
            "cohort_date": self.cohort_date,
        }


@dataclass(frozen=True)
class PayoutFailure:
    goal_id: str
    recipient: str
    amount: Decimal
    reason: str
    message: str = ""
    transaction_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "goal_id": self.goal_id,
            "recipient": self.recipient,
            "amount": render_amount(self.amount),
            "reason": self.reason,
            "message": self.message,
        }
        if self.transaction_id:
            payload["transaction_id"] = self.transaction_id
        return payload


def parse_amount(value: Any, name: str = "amount") -> Decimal:
    if isinstance(value, bool) or value is None:
        raise RedistributionContractError(f"{name} must be a decimal amount")
    if isinstance(value, Decimal):
        parsed = value
    else:
        try:
            parsed = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise RedistributionContractError(f"{name} must be a decimal amount") from exc
    if not parsed.is_finite():
        raise RedistributionContractError(f"{name} must be finite")
    return parsed


def to_units(amount: Decimal, unit_decimals: int = DEFAULT_UNIT_DECIMALS) -> int:
    """Convert a native amount to integer ledger units, refusing sub-unit precision."""
    scaled = parse_amount(amount).scaleb(unit_decimals)
    integral = scaled.to_integral_value()
    if scaled != integral:
        raise RedistributionContractError(
            f"amount {amount} is finer than one ledger unit (decimals={unit_decimals})"
        )
    return int(integral)


def from_units(units: int, unit_decimals: int = DEFAULT_UNIT_DECIMALS) -> Decimal:
    quantum = Decimal(1).scaleb(-unit_decimals)
    return Decimal(int(units)).scaleb(-unit_decimals).quantize(quantum)


def render_amount(amount: Decimal) -> str:
    if amount == 0:
        return "0"
    return format(amount.normalize(), "f")


def parse_deadline(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = _as_non_empty_string(value, "deadline")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise RedistributionContractError(f"deadline is not an ISO-8601 timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_non_empty_string(value: Any, name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise RedistributionContractError(f"{name} must be a non-empty string")
    return text
