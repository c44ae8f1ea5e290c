"""Redistribution policy loader (Phase 1)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone, tzinfo
import hashlib
import json
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .contracts import DEFAULT_UNIT_DECIMALS


REMAINDER_LARGEST_STAKE = "LARGEST_STAKE"
REMAINDER_LOWEST_GOAL_ID = "LOWEST_GOAL_ID"
REMAINDER_ASSIGNMENTS: set[str] = {REMAINDER_LARGEST_STAKE, REMAINDER_LOWEST_GOAL_ID}

UNCLAIMED_RETAIN_IN_ESCROW = "RETAIN_IN_ESCROW"
UNCLAIMED_STAKE_DISPOSITIONS: set[str] = {UNCLAIMED_RETAIN_IN_ESCROW}


class RedistributionPolicyError(ValueError):
    """Raised when redistribution policy payloads are invalid."""


@dataclass(frozen=True)
class RedistributionPolicy:
    version: str = "v0"
    policy_id: str = "redistribution.policy.v0"
    revision: str = "default"
    unit_decimals: int = DEFAULT_UNIT_DECIMALS
    remainder_assignment: str = REMAINDER_LARGEST_STAKE
    cohort_timezone: str = "UTC"
    unclaimed_stake_disposition: str = UNCLAIMED_RETAIN_IN_ESCROW
    escrow_healthy_ratio: float = 0.95
    max_recent_events: int = 25
    content_digest: str = ""

    def __post_init__(self) -> None:
        if self.unit_decimals < 0 or self.unit_decimals > 18:
            raise RedistributionPolicyError("amounts.unit_decimals must be between 0 and 18")
        if self.remainder_assignment not in REMAINDER_ASSIGNMENTS:
            raise RedistributionPolicyError(
                f"amounts.remainder_assignment must be one of {sorted(REMAINDER_ASSIGNMENTS)}"
            )
        if self.unclaimed_stake_disposition not in UNCLAIMED_STAKE_DISPOSITIONS:
            raise RedistributionPolicyError(
                f"unclaimed_stake.disposition must be one of {sorted(UNCLAIMED_STAKE_DISPOSITIONS)}"
            )
        if not 0 < self.escrow_healthy_ratio <= 1:
            raise RedistributionPolicyError("escrow.healthy_ratio must be in (0, 1]")
        if self.max_recent_events <= 0:
            raise RedistributionPolicyError("observability.max_recent_events must be > 0")
        _resolve_timezone(self.cohort_timezone)

    @property
    def cohort_tz(self) -> tzinfo:
        return _resolve_timezone(self.cohort_timezone)

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "policy_id": self.policy_id,
            "revision": self.revision,
            "amounts": {
                "unit_decimals": self.unit_decimals,
                "remainder_assignment": self.remainder_assignment,
            },
            "cohort": {"timezone": self.cohort_timezone},
            "unclaimed_stake": {"disposition": self.unclaimed_stake_disposition},
            "escrow": {"healthy_ratio": self.escrow_healthy_ratio},
            "observability": {"max_recent_events": self.max_recent_events},
        }


def load_redistribution_policy(path: Path) -> RedistributionPolicy:
    payload = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise RedistributionPolicyError("redistribution policy must be a mapping")
    return build_redistribution_policy(payload)


def build_redistribution_policy(payload: Mapping[str, Any]) -> RedistributionPolicy:
    version = _require_non_empty_str(payload.get("version"), "version")
    policy_id = _require_non_empty_str(payload.get("policy_id"), "policy_id")
    revision = _require_non_empty_str(payload.get("revision"), "revision")

    amounts = _optional_mapping(payload.get("amounts"), "amounts")
    cohort = _optional_mapping(payload.get("cohort"), "cohort")
    unclaimed = _optional_mapping(payload.get("unclaimed_stake"), "unclaimed_stake")
    escrow = _optional_mapping(payload.get("escrow"), "escrow")
    observability = _optional_mapping(payload.get("observability"), "observability")

    unit_decimals = _to_int(amounts.get("unit_decimals", DEFAULT_UNIT_DECIMALS), "amounts.unit_decimals")
    remainder = str(amounts.get("remainder_assignment") or REMAINDER_LARGEST_STAKE).strip().upper()
    cohort_timezone = str(cohort.get("timezone") or "UTC").strip()
    disposition = str(unclaimed.get("disposition") or UNCLAIMED_RETAIN_IN_ESCROW).strip().upper()
    try:
        healthy_ratio = float(escrow.get("healthy_ratio", 0.95))
    except (TypeError, ValueError) as exc:
        raise RedistributionPolicyError("escrow.healthy_ratio must be a number") from exc
    max_recent_events = _to_int(observability.get("max_recent_events", 25), "observability.max_recent_events")

    draft = RedistributionPolicy(
        version=version,
        policy_id=policy_id,
        revision=revision,
        unit_decimals=unit_decimals,
        remainder_assignment=remainder,
        cohort_timezone=cohort_timezone,
        unclaimed_stake_disposition=disposition,
        escrow_healthy_ratio=healthy_ratio,
        max_recent_events=max_recent_events,
    )
    canonical = json.dumps(draft.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))
    content_digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return RedistributionPolicy(
        version=draft.version,
        policy_id=draft.policy_id,
        revision=draft.revision,
        unit_decimals=draft.unit_decimals,
        remainder_assignment=draft.remainder_assignment,
        cohort_timezone=draft.cohort_timezone,
        unclaimed_stake_disposition=draft.unclaimed_stake_disposition,
        escrow_healthy_ratio=draft.escrow_healthy_ratio,
        max_recent_events=draft.max_recent_events,
        content_digest=content_digest,
    )


def _resolve_timezone(name: str) -> tzinfo:
    text = str(name or "").strip()
    if text.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RedistributionPolicyError(f"cohort.timezone is not a known IANA zone: {name!r}") from exc


def _optional_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise RedistributionPolicyError(f"{field_name} must be a mapping when provided")
    return value


def _require_non_empty_str(value: Any, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise RedistributionPolicyError(f"{field_name} must be a non-empty string")
    return text


def _to_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise RedistributionPolicyError(f"{field_name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise RedistributionPolicyError(f"{field_name} must be an integer") from exc
