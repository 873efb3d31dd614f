"""
Distribution Allocator.

Splits a claimed amount across the stakeholder table and pays each share as
its own SOL transfer. The first five shares are floored; the treasury gets
whatever is left so the legs always add up to the claimed total.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from solders.keypair import Keypair

from spark_fees.chain.gateway import ChainGateway
from spark_fees.chain.keys import parse_pubkey
from spark_fees.chain.transactions import build_transaction, transfer_lamports_ix
from spark_fees.config import StakeholderShare
from spark_fees.errors import FeeEngineError, RpcTransientError
from spark_fees.types import BPS_DENOMINATOR, DistributionStatus

logger = logging.getLogger(__name__)


@dataclass
class Distribution:
    stakeholder_id: str
    address: Optional[str]
    percentage_bps: int
    amount: int
    rent_topup: int = 0
    tx_signature: Optional[str] = None
    status: DistributionStatus = DistributionStatus.PLANNED
    error_detail: Optional[str] = None

    @property
    def transfer_amount(self) -> int:
        return self.amount + self.rent_topup

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stakeholder_id": self.stakeholder_id,
            "address": self.address,
            "percentage_bps": self.percentage_bps,
            "amount": self.amount,
            "rent_topup": self.rent_topup,
            "tx_signature": self.tx_signature,
            "status": self.status.value,
            "error_detail": self.error_detail,
        }


def compute_allocation(
    total: int,
    stakeholders: Sequence[StakeholderShare],
    treasury_address: Optional[str],
    dust_floor: int = 10_000,
) -> List[Distribution]:
    """
    Pure split of ``total`` lamports.

    Returns an empty list below the dust floor. Zero-amount legs are kept in
    the plan marked Skipped; a missing treasury address skips that leg.
    """
    if total < dust_floor or total <= 0:
        return []

    fixed, treasury = list(stakeholders[:-1]), stakeholders[-1]
    legs: List[Distribution] = []
    allocated = 0
    for share in fixed:
        amount = total * share.bps // BPS_DENOMINATOR
        allocated += amount
        leg = Distribution(
            stakeholder_id=share.stakeholder_id,
            address=share.address,
            percentage_bps=share.bps,
            amount=amount,
        )
        if amount == 0:
            leg.status = DistributionStatus.SKIPPED
            leg.error_detail = "zero amount"
        legs.append(leg)

    treasury_leg = Distribution(
        stakeholder_id=treasury.stakeholder_id,
        address=treasury_address,
        percentage_bps=treasury.bps,
        amount=total - allocated,
    )
    if not treasury_address:
        treasury_leg.status = DistributionStatus.SKIPPED
        treasury_leg.error_detail = "no treasury address"
    elif treasury_leg.amount == 0:
        treasury_leg.status = DistributionStatus.SKIPPED
        treasury_leg.error_detail = "zero amount"
    legs.append(treasury_leg)
    return legs


class DistributionAllocator:
    """Plans and executes stakeholder transfers for one claimed total."""

    def __init__(
        self,
        gateway: ChainGateway,
        payer: Keypair,
        stakeholders: Sequence[StakeholderShare],
        dust_floor: int = 10_000,
        transfer_delay: float = 2.0,
        confirm_timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.payer = payer
        self.stakeholders = list(stakeholders)
        self.dust_floor = dust_floor
        self.transfer_delay = transfer_delay
        self.confirm_timeout = confirm_timeout
        self._sleep = sleep

    def plan(self, total: int, treasury_address: Optional[str]) -> List[Distribution]:
        return compute_allocation(total, self.stakeholders, treasury_address, self.dust_floor)

    async def _rent_topup(self, address: str) -> int:
        """Rent-exempt minimum when the account is missing or under-funded, else 0."""
        try:
            rent_minimum = await self.gateway.get_minimum_balance_for_rent_exemption(0)
            account = await self.gateway.get_account_info(address)
        except RpcTransientError as exc:
            logger.warning(f"Could not check treasury account {address}: {exc}")
            return 0
        if account is None or account.lamports < rent_minimum:
            logger.info(f"Treasury {address} needs funding, adding rent minimum {rent_minimum}")
            return rent_minimum
        return 0

    async def _send_leg(self, leg: Distribution) -> None:
        try:
            recipient = parse_pubkey(leg.address)
            blockhash = await self.gateway.get_latest_blockhash()
            tx = build_transaction(
                [transfer_lamports_ix(self.payer.pubkey(), recipient, leg.transfer_amount)],
                self.payer,
                blockhash,
            )
            leg.tx_signature = await self.gateway.submit(tx)
            confirmation = await self.gateway.confirm(leg.tx_signature, timeout=self.confirm_timeout)
        except (FeeEngineError, ValueError) as exc:
            leg.status = DistributionStatus.FAILED
            leg.error_detail = str(exc)
            logger.error(f"Transfer to {leg.stakeholder_id} failed: {exc}")
            return

        if confirmation.confirmed:
            leg.status = DistributionStatus.SENT
            logger.info(
                f"Sent {leg.transfer_amount} lamports to {leg.stakeholder_id} ({leg.address}): "
                f"{leg.tx_signature[:16]}..."
            )
        else:
            leg.status = DistributionStatus.FAILED
            leg.error_detail = f"confirmation {confirmation.status.value}: {confirmation.error}"
            logger.error(f"Transfer to {leg.stakeholder_id} not confirmed: {leg.error_detail}")

    async def distribute(self, total: int, treasury_address: Optional[str]) -> List[Distribution]:
        legs = self.plan(total, treasury_address)
        if not legs:
            logger.info(f"Claimed total {total} below dust floor {self.dust_floor}, nothing distributed")
            return []

        treasury_leg = legs[-1]
        if treasury_leg.status == DistributionStatus.PLANNED:
            treasury_leg.rent_topup = await self._rent_topup(treasury_leg.address)

        sent_any = False
        for leg in legs:
            if leg.status != DistributionStatus.PLANNED:
                continue
            if sent_any and self.transfer_delay > 0:
                await self._sleep(self.transfer_delay)
            await self._send_leg(leg)
            sent_any = True

        sent = sum(1 for leg in legs if leg.status == DistributionStatus.SENT)
        logger.info(f"Distributed {total} lamports: {sent}/{len(legs)} legs sent")
        return legs
