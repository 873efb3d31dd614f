"""Stakeholder split of claimed fees and treasury wallet assignment."""

from spark_fees.distribution.allocator import Distribution, DistributionAllocator, compute_allocation
from spark_fees.distribution.treasury import TreasuryAssigner, project_hash, select_treasury_wallet

__all__ = [
    "Distribution", "DistributionAllocator", "compute_allocation",
    "TreasuryAssigner", "project_hash", "select_treasury_wallet",
]
