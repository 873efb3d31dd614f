"""
Claimed-Amount Resolver.

Works out how much a confirmed claim transaction actually paid out. Sources
are tried from most to least trustworthy and the first plausible candidate
wins:

    1. decoded program events (self-CPI, ``Program data:`` logs, meta.events)
    2. fee key/value patterns in the log text
    3. native balance deltas around the claimant account

When nothing plausible is found the result is ``Unresolved`` with amount 0.
The claim itself still counts as a success because the transaction confirmed.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Pattern, Tuple

from spark_fees.chain.models import TransactionView
from spark_fees.claims.events import event_amounts, iter_transaction_events
from spark_fees.config import DEFAULT_PLAUSIBILITY, PlausibilityRange
from spark_fees.errors import ErrorKind
from spark_fees.types import ClaimAction

logger = logging.getLogger(__name__)


class ResolutionMethod(str, Enum):
    EVENT = "event"
    LOG_MATCH = "log_match"
    BALANCE_DELTA = "balance_delta"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class ResolvedAmount:
    """Tagged result: the method says which variant it is."""
    method: ResolutionMethod
    amount: int
    detail: Optional[str] = None

    @classmethod
    def event(cls, amount: int, detail: Optional[str] = None) -> "ResolvedAmount":
        return cls(ResolutionMethod.EVENT, amount, detail)

    @classmethod
    def log_match(cls, amount: int, detail: Optional[str] = None) -> "ResolvedAmount":
        return cls(ResolutionMethod.LOG_MATCH, amount, detail)

    @classmethod
    def balance_delta(cls, amount: int, detail: Optional[str] = None) -> "ResolvedAmount":
        return cls(ResolutionMethod.BALANCE_DELTA, amount, detail)

    @classmethod
    def unresolved(cls, reason: str) -> "ResolvedAmount":
        return cls(ResolutionMethod.UNRESOLVED, 0, reason)

    @property
    def is_resolved(self) -> bool:
        return self.method != ResolutionMethod.UNRESOLVED


@dataclass
class ClaimContext:
    action: ClaimAction
    claimant: str
    pool_address: Optional[str] = None
    token_mint: Optional[str] = None
    program_id: Optional[str] = None


# JSON-style fields some program versions print verbatim
FEE_LOG_PATTERNS: List[Pattern[str]] = [
    re.compile(r'"feeBClaimed":"(\d+)"'),
    re.compile(r'"feeAClaimed":"(\d+)"'),
    re.compile(r'"feeB":"(\d+)"'),
    re.compile(r'"feeA":"(\d+)"'),
]

# Patterns checked in the few log lines after the claim's token transfer
TRANSFER_WINDOW_PATTERNS: List[Pattern[str]] = [
    re.compile(r"amount[:\s]*(\d+)", re.IGNORECASE),
    re.compile(r"transfer[:\s]*(\d+)", re.IGNORECASE),
    re.compile(r"fee[:\s]*(\d+)", re.IGNORECASE),
]
TRANSFER_WINDOW_SIZE = 5

ACTION_INSTRUCTION_NAMES: Dict[ClaimAction, Tuple[str, ...]] = {
    ClaimAction.CREATOR_FEE: ("ClaimCreatorTradingFee",),
    ClaimAction.PARTNER_FEE: ("ClaimTradingFee", "ClaimPartnerFee"),
    ClaimAction.POSITION_FEE: ("ClaimPositionFee",),
    ClaimAction.SURPLUS: ("CreatorWithdrawSurplus", "PartnerWithdrawSurplus"),
    ClaimAction.MIGRATION_FEE: ("WithdrawMigrationFee",),
}


class ClaimedAmountResolver:
    """Resolve the amount a claim transaction paid out."""

    def __init__(
        self,
        plausibility: Optional[Dict[ClaimAction, PlausibilityRange]] = None,
        default_range: PlausibilityRange = DEFAULT_PLAUSIBILITY,
    ):
        self.plausibility = dict(plausibility or {})
        self.default_range = default_range

    def range_for(self, action: ClaimAction) -> PlausibilityRange:
        return self.plausibility.get(action, self.default_range)

    def resolve(self, tx: TransactionView, ctx: ClaimContext) -> ResolvedAmount:
        bounds = self.range_for(ctx.action)
        strategies = (
            (ResolutionMethod.EVENT, self._event_candidates),
            (ResolutionMethod.LOG_MATCH, self._log_candidates),
            (ResolutionMethod.BALANCE_DELTA, self._balance_candidates),
        )

        rejected: List[str] = []
        for method, strategy in strategies:
            for amount, detail in strategy(tx, ctx):
                if bounds.contains(amount):
                    logger.debug(f"Resolved {ctx.action.value} amount {amount} via {method.value} ({detail})")
                    return ResolvedAmount(method, amount, detail)
                rejected.append(f"{method.value}:{amount}")

        reason = "no plausible amount found"
        if rejected:
            reason = f"{reason} (rejected {', '.join(rejected)})"
        logger.warning(
            f"{ErrorKind.AMOUNT_UNRESOLVED.value}: {ctx.action.value} on pool {ctx.pool_address} "
            f"tx {tx.signature}: {reason}"
        )
        return ResolvedAmount.unresolved(reason)

    # =========================================================================
    # STRATEGIES
    # =========================================================================

    def _event_candidates(self, tx: TransactionView, ctx: ClaimContext) -> List[Tuple[int, str]]:
        candidates = []
        for event in iter_transaction_events(tx, ctx.program_id):
            if ctx.pool_address and event.fields.get("pool") not in (None, ctx.pool_address):
                continue
            for amount in event_amounts(event, ctx.action):
                candidates.append((amount, f"{event.source}:{event.name or 'unnamed'}"))
        return candidates

    def _log_candidates(self, tx: TransactionView, ctx: ClaimContext) -> List[Tuple[int, str]]:
        candidates = []
        logs = tx.log_messages

        for line in logs:
            for pattern in FEE_LOG_PATTERNS:
                match = pattern.search(line)
                if match:
                    candidates.append((int(match.group(1)), f"pattern:{pattern.pattern}"))

        instruction_names = ACTION_INSTRUCTION_NAMES.get(ctx.action, ())
        for index, line in enumerate(logs):
            if not any(f"Instruction: {name}" in line for name in instruction_names):
                continue
            transfer_at = self._next_transfer_line(logs, index + 1)
            if transfer_at is None:
                break
            window = logs[transfer_at:transfer_at + TRANSFER_WINDOW_SIZE]
            for offset, nearby in enumerate(window):
                if "consumed" in nearby or "compute units" in nearby:
                    continue
                for pattern in TRANSFER_WINDOW_PATTERNS:
                    match = pattern.search(nearby)
                    if match:
                        candidates.append((int(match.group(1)), f"window:{transfer_at + offset}"))
            break

        return candidates

    @staticmethod
    def _next_transfer_line(logs: List[str], start: int) -> Optional[int]:
        for index in range(start, len(logs)):
            if "Instruction: TransferChecked" in logs[index] or "Instruction: Transfer" in logs[index]:
                return index
        return None

    def _balance_candidates(self, tx: TransactionView, ctx: ClaimContext) -> List[Tuple[int, str]]:
        deltas = tx.native_deltas()
        if not deltas:
            return []

        claimant_index = tx.account_index(ctx.claimant)
        if claimant_index >= 0:
            for index in range(claimant_index + 1, len(deltas)):
                if deltas[index] < 0:
                    return [(-deltas[index], f"account:{index}")]
            return []

        # Claimant not in the key list: the second changed account is the fee source
        changed = [(index, delta) for index, delta in enumerate(deltas) if delta != 0]
        if len(changed) >= 2 and changed[1][1] < 0:
            index, delta = changed[1]
            return [(-delta, f"account:{index}")]
        return []
