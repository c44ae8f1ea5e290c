"""CLI and profile wiring for cohort redistribution runs."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
import os
from pathlib import Path
import re
from typing import Any, Mapping

import yaml

from deadline_dao.logging_utils import configure_logging
from deadline_dao.platform_runtime import append_session_event, redistribution_log_paths, resolve_platform_run_id

from .earnings import evaluate_escrow_health, outstanding_stake, summarize_wallet_payouts
from .engine import RedistributionEngine
from .execution import PayoutExecutor
from .ledger import HttpEscrowLedgerClient, LedgerClient
from .observability import RedistributionRunMetrics
from .policy import RedistributionPolicy, load_redistribution_policy
from .storage import GoalStore, PayoutLedgerStore, build_storage_layout
from .trigger import ResolutionTrigger


logger = logging.getLogger("deadline_dao.redistribution.cli")

_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")

DEFAULT_PROFILE_PATH = "config/redistribution/profile_local.yaml"


class RedistributionConfigError(ValueError):
    """Raised when redistribution profile payloads are invalid."""


@dataclass(frozen=True)
class RedistributionProfile:
    profile_path: Path
    policy_ref: Path
    goals_locator: str
    payouts_locator: str
    ledger_url: str
    ledger_api_key: str | None
    ledger_api_key_header: str
    ledger_timeout_seconds: float


@dataclass
class RedistributionRuntime:
    profile: RedistributionProfile
    policy: RedistributionPolicy
    goal_store: GoalStore
    payout_store: PayoutLedgerStore
    ledger: LedgerClient
    metrics: RedistributionRunMetrics
    trigger: ResolutionTrigger


def load_profile(profile_path: Path) -> RedistributionProfile:
    payload = yaml.safe_load(Path(profile_path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise RedistributionConfigError("redistribution profile must be a mapping")
    section = payload.get("redistribution")
    if not isinstance(section, Mapping):
        raise RedistributionConfigError("redistribution profile requires a 'redistribution' mapping")

    policy_ref = str(_env(section.get("policy_ref")) or "").strip()
    if not policy_ref:
        raise RedistributionConfigError("redistribution.policy_ref is required")
    ledger_url = str(_env(section.get("ledger_url")) or "").strip()
    if not ledger_url:
        raise RedistributionConfigError("redistribution.ledger_url is required")
    timeout_raw = _env(section.get("ledger_timeout_seconds", 30))
    try:
        timeout_seconds = float(timeout_raw)
    except (TypeError, ValueError) as exc:
        raise RedistributionConfigError("redistribution.ledger_timeout_seconds must be a number") from exc
    if timeout_seconds <= 0:
        raise RedistributionConfigError("redistribution.ledger_timeout_seconds must be > 0")

    layout = build_storage_layout(
        {
            "goals_locator": _env(section.get("goals_dsn")),
            "payouts_locator": _env(section.get("payouts_dsn")),
        }
    )
    api_key = str(_env(section.get("ledger_api_key")) or "").strip() or None
    api_key_header = str(_env(section.get("ledger_api_key_header")) or "X-Escrow-Api-Key").strip()
    return RedistributionProfile(
        profile_path=Path(profile_path),
        policy_ref=Path(policy_ref),
        goals_locator=layout.goals_locator,
        payouts_locator=layout.payouts_locator,
        ledger_url=ledger_url,
        ledger_api_key=api_key,
        ledger_api_key_header=api_key_header,
        ledger_timeout_seconds=timeout_seconds,
    )


def build_runtime(profile: RedistributionProfile, *, ledger: LedgerClient | None = None) -> RedistributionRuntime:
    policy = load_redistribution_policy(profile.policy_ref)
    platform_run_id = resolve_platform_run_id(create_if_missing=True)
    if not platform_run_id:
        raise RedistributionConfigError("platform run id could not be resolved")
    goal_store = GoalStore(locator=profile.goals_locator)
    payout_store = PayoutLedgerStore(locator=profile.payouts_locator)
    ledger_client: LedgerClient = ledger or HttpEscrowLedgerClient(
        base_url=profile.ledger_url,
        api_key=profile.ledger_api_key,
        api_key_header=profile.ledger_api_key_header,
        timeout_seconds=profile.ledger_timeout_seconds,
        unit_decimals=policy.unit_decimals,
    )
    metrics = RedistributionRunMetrics(
        platform_run_id=platform_run_id,
        max_recent_events=policy.max_recent_events,
    )
    executor = PayoutExecutor(ledger=ledger_client, payout_store=payout_store, metrics=metrics)
    trigger = ResolutionTrigger(
        goal_store=goal_store,
        executor=executor,
        engine=RedistributionEngine(policy=policy),
        metrics=metrics,
    )
    return RedistributionRuntime(
        profile=profile,
        policy=policy,
        goal_store=goal_store,
        payout_store=payout_store,
        ledger=ledger_client,
        metrics=metrics,
        trigger=trigger,
    )


def run_command(
    runtime: RedistributionRuntime,
    command: str,
    *,
    deadline: str | None = None,
    wallet: str | None = None,
) -> dict[str, Any]:
    if command == "preview":
        return runtime.trigger.preview(deadline).as_dict()
    if command == "resolve":
        return runtime.trigger.resolve(deadline).as_dict()
    if command == "escrow-health":
        staked = outstanding_stake(
            runtime.goal_store.list_goals(),
            runtime.payout_store.list_payouts(),
            tz=runtime.policy.cohort_tz,
        )
        health = evaluate_escrow_health(
            runtime.ledger,
            staked,
            healthy_ratio=str(runtime.policy.escrow_healthy_ratio),
        )
        return health.as_dict()
    if command == "wallet-stats":
        if not wallet:
            raise RedistributionConfigError("wallet-stats requires --wallet")
        return summarize_wallet_payouts(runtime.payout_store, wallet).as_dict()
    raise RedistributionConfigError(f"unsupported command: {command!r}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Deadline DAO cohort stake redistribution")
    parser.add_argument("--profile", default=DEFAULT_PROFILE_PATH)
    parser.add_argument("--metrics-path", default=None)
    subparsers = parser.add_subparsers(dest="command", required=True)
    preview = subparsers.add_parser("preview", help="Compute payouts for a deadline cohort without sending")
    preview.add_argument("--deadline", required=True, help="Cohort deadline date (YYYY-MM-DD)")
    resolve = subparsers.add_parser("resolve", help="Compute and send payouts for a deadline cohort")
    resolve.add_argument("--deadline", required=True, help="Cohort deadline date (YYYY-MM-DD)")
    subparsers.add_parser("escrow-health", help="Compare escrow balance with outstanding stake")
    wallet_stats = subparsers.add_parser("wallet-stats", help="Summarize recorded payouts for one wallet")
    wallet_stats.add_argument("--wallet", required=True)
    args = parser.parse_args(argv)

    configure_logging(log_paths=redistribution_log_paths(create_if_missing=True))
    profile = load_profile(Path(args.profile))
    runtime = build_runtime(profile)
    payload = run_command(
        runtime,
        args.command,
        deadline=getattr(args, "deadline", None),
        wallet=getattr(args, "wallet", None),
    )
    runtime.metrics.export(output_path=args.metrics_path)
    append_session_event(
        "redistribution",
        args.command.replace("-", "_"),
        {
            "deadline": getattr(args, "deadline", None),
            "state": payload.get("state"),
            "policy_digest": runtime.policy.content_digest,
        },
        create_if_missing=True,
    )
    logger.info("Redistribution %s complete", args.command)
    print(json.dumps(payload, sort_keys=True))


def _env(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    return os.getenv(match.group(1), match.group(2) or "")


if __name__ == "__main__":
    main()
