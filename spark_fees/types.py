"""Type definitions shared across the fee engine."""
from enum import Enum
from typing import List, TypedDict


LAMPORTS_PER_SOL = 1_000_000_000
BPS_DENOMINATOR = 10_000

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDC_DEVNET_MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"


class PoolKind(str, Enum):
    AMM = "amm"
    BONDING_CURVE = "bonding_curve"


class ClaimAction(str, Enum):
    CREATOR_FEE = "creator_trading_fee"
    PARTNER_FEE = "partner_trading_fee"
    POSITION_FEE = "position_fee"
    SURPLUS = "surplus_withdrawal"
    MIGRATION_FEE = "migration_fee_withdrawal"


class ClaimStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class DistributionStatus(str, Enum):
    PLANNED = "planned"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class TransferDirection(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


# Fixed action order per pool kind
BONDING_CURVE_ACTIONS = (
    ClaimAction.CREATOR_FEE,
    ClaimAction.PARTNER_FEE,
    ClaimAction.SURPLUS,
    ClaimAction.MIGRATION_FEE,
)
AMM_ACTIONS = (
    ClaimAction.PARTNER_FEE,
    ClaimAction.POSITION_FEE,
)


class TokenFeeDict(TypedDict):
    token_mint: str
    total_earned: int
    total_claimed: int
    available: int


class CreatorFeeSummaryDict(TypedDict):
    creator_id: str
    total_earned: int
    total_claimed: int
    available: int
    per_token: List[TokenFeeDict]
