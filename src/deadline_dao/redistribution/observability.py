"""Redistribution observability, health, and redaction helpers (Phase 6)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any, Mapping

from deadline_dao.platform_runtime import RUNS_ROOT


HEALTH_GREEN = "GREEN"
HEALTH_AMBER = "AMBER"
HEALTH_RED = "RED"


class RedistributionObservabilityError(ValueError):
    """Raised when redistribution observability inputs are invalid."""


@dataclass(frozen=True)
class RedistributionHealthThresholds:
    amber_failure_rate: float = 0.05
    red_failure_rate: float = 0.20
    amber_timeouts: int = 1
    red_timeouts: int = 5


@dataclass(frozen=True)
class RedistributionHealthStatus:
    state: str
    reason_codes: tuple[str, ...]
    signals: dict[str, float]


@dataclass
class RedistributionRunMetrics:
    platform_run_id: str
    counters: dict[str, int] = field(default_factory=dict)
    recent_events: list[dict[str, Any]] = field(default_factory=list)
    max_recent_events: int = 25

    def __post_init__(self) -> None:
        self.platform_run_id = _non_empty(self.platform_run_id, "platform_run_id")
        if self.max_recent_events <= 0:
            raise RedistributionObservabilityError("max_recent_events must be > 0")
        for key in _REQUIRED_COUNTERS:
            self.counters.setdefault(key, 0)

    def record_preview(self, *, deadline: str, plan_count: int, note: str) -> None:
        self.counters["preview_total"] += 1
        self._append_event("preview", {"deadline": deadline, "plan_count": plan_count, "note": note})

    def record_resolve(self, *, deadline: str, state: str, plan_count: int, errors: list[str]) -> None:
        self.counters["resolve_total"] += 1
        self.counters["plans_total"] += plan_count
        self._append_event(
            "resolve",
            {"deadline": deadline, "state": state, "plan_count": plan_count, "errors": list(errors)},
        )

    def record_transfer_attempt(self) -> None:
        self.counters["transfers_attempted_total"] += 1

    def record_payout_succeeded(self, *, goal_id: str, transaction_id: str) -> None:
        self.counters["payouts_succeeded_total"] += 1
        self._append_event("payout_succeeded", {"goal_id": goal_id, "transaction_id": transaction_id})

    def record_already_paid(self, *, goal_id: str, amount_mismatch: bool = False) -> None:
        self.counters["already_paid_total"] += 1
        if amount_mismatch:
            self.counters["already_paid_amount_mismatch_total"] += 1
        self._append_event("already_paid", {"goal_id": goal_id, "amount_mismatch": amount_mismatch})

    def record_payout_failed(self, *, goal_id: str, reason: str, message: str = "") -> None:
        self.counters["payouts_failed_total"] += 1
        counter = _REASON_COUNTERS.get(reason)
        if counter:
            self.counters[counter] += 1
        self._append_event("payout_failed", {"goal_id": goal_id, "reason": reason, "message": message})

    def record_batch_failure(self, *, reason: str, pending_count: int) -> None:
        self.counters["batch_failures_total"] += 1
        self.counters["payouts_failed_total"] += pending_count
        counter = _REASON_COUNTERS.get(reason)
        if counter:
            self.counters[counter] += 1
        self._append_event("batch_failure", {"reason": reason, "pending_count": pending_count})

    def snapshot(self, *, generated_at_utc: str | None = None) -> dict[str, Any]:
        return {
            "generated_at_utc": generated_at_utc or _utc_now(),
            "platform_run_id": self.platform_run_id,
            "metrics": dict(self.counters),
            "recent_events": list(self.recent_events),
        }

    def evaluate_health(
        self,
        *,
        thresholds: RedistributionHealthThresholds | None = None,
    ) -> RedistributionHealthStatus:
        policy = thresholds or RedistributionHealthThresholds()
        succeeded = int(self.counters.get("payouts_succeeded_total", 0))
        failed = int(self.counters.get("payouts_failed_total", 0))
        timeouts = int(self.counters.get("transfer_timeout_total", 0))
        batch_failures = int(self.counters.get("batch_failures_total", 0))
        failure_rate = float(failed) / float(max(1, succeeded + failed))

        reasons: set[str] = set()
        state = HEALTH_GREEN

        if failure_rate >= policy.red_failure_rate:
            state = HEALTH_RED
            reasons.add("FAILURE_RATE_RED")
        elif failure_rate >= policy.amber_failure_rate:
            state = HEALTH_AMBER
            reasons.add("FAILURE_RATE_AMBER")

        # Timeouts leave transfers in an unknown state and need reconciliation.
        if timeouts >= policy.red_timeouts:
            state = HEALTH_RED
            reasons.add("TIMEOUTS_RED")
        elif timeouts >= policy.amber_timeouts and state != HEALTH_RED:
            state = HEALTH_AMBER
            reasons.add("TIMEOUTS_AMBER")

        if batch_failures and state != HEALTH_RED:
            state = HEALTH_AMBER
            reasons.add("BATCH_FAILURES")

        if state == HEALTH_AMBER:
            self.counters["health_amber_total"] += 1
        elif state == HEALTH_RED:
            self.counters["health_red_total"] += 1

        return RedistributionHealthStatus(
            state=state,
            reason_codes=tuple(sorted(reasons)),
            signals={
                "failure_rate": failure_rate,
                "payouts_failed_total": float(failed),
                "payouts_succeeded_total": float(succeeded),
                "transfer_timeout_total": float(timeouts),
                "batch_failures_total": float(batch_failures),
            },
        )

    def export(self, *, output_path: str | Path | None = None, generated_at_utc: str | None = None) -> dict[str, Any]:
        payload = self.snapshot(generated_at_utc=generated_at_utc)
        path = Path(output_path) if output_path else _default_metrics_path(self.platform_run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, sort_keys=True, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
        return payload

    def _append_event(self, event_type: str, payload: Mapping[str, Any]) -> None:
        record = {
            "event_type": str(event_type),
            "ts_utc": _utc_now(),
            "payload": redact_sensitive_fields(payload),
        }
        self.recent_events.append(record)
        if len(self.recent_events) > self.max_recent_events:
            self.recent_events = self.recent_events[-self.max_recent_events :]


def redact_sensitive_fields(value: Any) -> Any:
    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for key_raw, item in value.items():
            key = str(key_raw)
            if _looks_sensitive_key(key):
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = redact_sensitive_fields(item)
        return redacted
    if isinstance(value, (list, tuple)):
        return [redact_sensitive_fields(item) for item in value]
    return value


def _looks_sensitive_key(key: str) -> bool:
    lowered = key.strip().lower()
    if not lowered:
        return False
    return any(marker in lowered for marker in _SENSITIVE_KEY_MARKERS)


def _default_metrics_path(platform_run_id: str) -> Path:
    return RUNS_ROOT / platform_run_id / "redistribution" / "observability" / "last_metrics.json"


def _non_empty(value: str, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise RedistributionObservabilityError(f"{field_name} is required")
    return text


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


_REQUIRED_COUNTERS: tuple[str, ...] = (
    "preview_total",
    "resolve_total",
    "plans_total",
    "transfers_attempted_total",
    "payouts_succeeded_total",
    "payouts_failed_total",
    "already_paid_total",
    "already_paid_amount_mismatch_total",
    "batch_failures_total",
    "insufficient_balance_total",
    "balance_unavailable_total",
    "transfer_rejected_total",
    "transfer_timeout_total",
    "ledger_unavailable_total",
    "record_write_failed_total",
    "duplicate_payout_total",
    "health_amber_total",
    "health_red_total",
)

_REASON_COUNTERS: dict[str, str] = {
    "INSUFFICIENT_ESCROW_BALANCE": "insufficient_balance_total",
    "ESCROW_BALANCE_UNAVAILABLE": "balance_unavailable_total",
    "TRANSFER_REJECTED": "transfer_rejected_total",
    "TRANSFER_TIMEOUT": "transfer_timeout_total",
    "PAYOUT_LEDGER_UNAVAILABLE": "ledger_unavailable_total",
    "RECORD_WRITE_FAILED": "record_write_failed_total",
    "DUPLICATE_PAYOUT_DETECTED": "duplicate_payout_total",
}

_SENSITIVE_KEY_MARKERS: tuple[str, ...] = (
    "token",
    "secret",
    "password",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
    "keypair",
    "seed",
)
