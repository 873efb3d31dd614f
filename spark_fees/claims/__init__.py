"""Fee claims: pool state, instruction building, amount resolution and orchestration."""

from spark_fees.claims.lifecycle import ActionRun, ActionState, ClaimResult
from spark_fees.claims.orchestrator import ClaimOrchestrator, ClaimTarget, SweepReport, TargetReport
from spark_fees.claims.resolver import ClaimContext, ClaimedAmountResolver, ResolutionMethod, ResolvedAmount

__all__ = [
    "ActionRun", "ActionState", "ClaimResult",
    "ClaimOrchestrator", "ClaimTarget", "SweepReport", "TargetReport",
    "ClaimContext", "ClaimedAmountResolver", "ResolutionMethod", "ResolvedAmount",
]
