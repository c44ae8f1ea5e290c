from __future__ import annotations

import json
from pathlib import Path

import pytest

from deadline_dao.redistribution.observability import (
    HEALTH_AMBER,
    HEALTH_GREEN,
    HEALTH_RED,
    RedistributionHealthThresholds,
    RedistributionObservabilityError,
    RedistributionRunMetrics,
    redact_sensitive_fields,
)


def _metrics(**kwargs: object) -> RedistributionRunMetrics:
    return RedistributionRunMetrics(platform_run_id="platform_20260302T000000Z", **kwargs)


def test_metrics_initialize_required_counters() -> None:
    metrics = _metrics()
    snapshot = metrics.snapshot(generated_at_utc="2026-03-02T00:00:00+00:00")
    assert snapshot["platform_run_id"] == "platform_20260302T000000Z"
    assert snapshot["generated_at_utc"] == "2026-03-02T00:00:00+00:00"
    assert snapshot["metrics"]["resolve_total"] == 0
    assert snapshot["metrics"]["transfer_timeout_total"] == 0
    assert snapshot["recent_events"] == []


def test_metrics_require_run_id_and_positive_event_cap() -> None:
    with pytest.raises(RedistributionObservabilityError, match="platform_run_id"):
        RedistributionRunMetrics(platform_run_id=" ")
    with pytest.raises(RedistributionObservabilityError, match="max_recent_events"):
        _metrics(max_recent_events=0)


def test_recent_events_are_bounded() -> None:
    metrics = _metrics(max_recent_events=3)
    for index in range(5):
        metrics.record_payout_succeeded(goal_id=f"goal-{index}", transaction_id=f"tx-{index}")
    assert metrics.counters["payouts_succeeded_total"] == 5
    assert [event["payload"]["goal_id"] for event in metrics.recent_events] == ["goal-2", "goal-3", "goal-4"]


def test_failure_reasons_map_to_counters() -> None:
    metrics = _metrics()
    metrics.record_payout_failed(goal_id="goal-1", reason="TRANSFER_TIMEOUT", message="read timed out")
    metrics.record_payout_failed(goal_id="goal-2", reason="RECORD_WRITE_FAILED")
    metrics.record_batch_failure(reason="INSUFFICIENT_ESCROW_BALANCE", pending_count=4)
    assert metrics.counters["transfer_timeout_total"] == 1
    assert metrics.counters["record_write_failed_total"] == 1
    assert metrics.counters["insufficient_balance_total"] == 1
    assert metrics.counters["batch_failures_total"] == 1
    assert metrics.counters["payouts_failed_total"] == 6


def test_redaction_masks_secrets_recursively() -> None:
    payload = {
        "ledger": {"ledger_api_key": "k-123", "url": "http://gateway"},
        "headers": [{"Authorization": "Bearer abc"}],
        "escrow_keypair": "[1,2,3]",
        "goal_id": "goal-1",
    }
    redacted = redact_sensitive_fields(payload)
    assert redacted == {
        "ledger": {"ledger_api_key": "[REDACTED]", "url": "http://gateway"},
        "headers": [{"Authorization": "[REDACTED]"}],
        "escrow_keypair": "[REDACTED]",
        "goal_id": "goal-1",
    }


def test_health_is_green_for_clean_runs() -> None:
    metrics = _metrics()
    for index in range(10):
        metrics.record_payout_succeeded(goal_id=f"goal-{index}", transaction_id=f"tx-{index}")
    status = metrics.evaluate_health()
    assert status.state == HEALTH_GREEN
    assert status.reason_codes == ()
    assert status.signals["failure_rate"] == 0.0


def test_health_turns_amber_on_single_timeout() -> None:
    metrics = _metrics()
    for index in range(30):
        metrics.record_payout_succeeded(goal_id=f"goal-{index}", transaction_id=f"tx-{index}")
    metrics.record_payout_failed(goal_id="goal-x", reason="TRANSFER_TIMEOUT")
    status = metrics.evaluate_health()
    assert status.state == HEALTH_AMBER
    assert status.reason_codes == ("TIMEOUTS_AMBER",)
    assert metrics.counters["health_amber_total"] == 1


def test_health_turns_red_on_high_failure_rate() -> None:
    metrics = _metrics()
    metrics.record_payout_succeeded(goal_id="goal-1", transaction_id="tx-1")
    metrics.record_payout_failed(goal_id="goal-2", reason="TRANSFER_REJECTED")
    status = metrics.evaluate_health(thresholds=RedistributionHealthThresholds(red_failure_rate=0.5))
    assert status.state == HEALTH_RED
    assert "FAILURE_RATE_RED" in status.reason_codes
    assert metrics.counters["health_red_total"] == 1


def test_export_writes_snapshot_json(tmp_path: Path) -> None:
    metrics = _metrics()
    metrics.record_preview(deadline="2026-03-01", plan_count=2, note="ready to distribute rewards")
    output = tmp_path / "observability" / "last_metrics.json"

    payload = metrics.export(output_path=output, generated_at_utc="2026-03-02T00:00:00+00:00")

    written = json.loads(output.read_text(encoding="utf-8"))
    assert written == payload
    assert written["metrics"]["preview_total"] == 1
    assert written["recent_events"][0]["event_type"] == "preview"


def test_export_defaults_under_run_root(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    _metrics().export()
    expected = tmp_path / "runs/deadline-dao/platform_20260302T000000Z/redistribution/observability/last_metrics.json"
    assert expected.exists()
