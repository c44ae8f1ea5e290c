"""Cohort stake redistribution surfaces."""

from .contracts import (
    GOAL_STATUSES,
    PAYOUT_TYPES,
    Goal,
    PayoutFailure,
    PayoutPlan,
    PayoutRecord,
    RedistributionContractError,
)
from .engine import RedistributionEngine, compute_payout_plans, simulate_redistribution
from .execution import ExecutionResult, PayoutExecutor
from .ledger import HttpEscrowLedgerClient, LedgerClient, LedgerClientError, TransferResult
from .observability import RedistributionRunMetrics
from .policy import RedistributionPolicy, RedistributionPolicyError, load_redistribution_policy
from .storage import (
    GoalStore,
    PayoutLedgerStore,
    PayoutWriteResult,
    RedistributionStoreError,
    build_storage_layout,
)
from .trigger import CohortSummary, ResolutionReport, ResolutionTrigger

__all__ = [
    "GOAL_STATUSES",
    "PAYOUT_TYPES",
    "Goal",
    "PayoutFailure",
    "PayoutPlan",
    "PayoutRecord",
    "RedistributionContractError",
    "RedistributionEngine",
    "compute_payout_plans",
    "simulate_redistribution",
    "ExecutionResult",
    "PayoutExecutor",
    "HttpEscrowLedgerClient",
    "LedgerClient",
    "LedgerClientError",
    "TransferResult",
    "RedistributionRunMetrics",
    "RedistributionPolicy",
    "RedistributionPolicyError",
    "load_redistribution_policy",
    "GoalStore",
    "PayoutLedgerStore",
    "PayoutWriteResult",
    "RedistributionStoreError",
    "build_storage_layout",
    "CohortSummary",
    "ResolutionReport",
    "ResolutionTrigger",
]
