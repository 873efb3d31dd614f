"""
Transaction Verifier.

Checks that an externally supplied transaction signature really moved the
claimed amount for the claimed wallet before the caller mutates any state.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from spark_fees.chain.gateway import ChainGateway
from spark_fees.chain.models import TokenBalance, TransactionView
from spark_fees.errors import ChainRejectedError, RpcTransientError
from spark_fees.types import USDC_DEVNET_MINT, USDC_MINT, TransferDirection

logger = logging.getLogger(__name__)

DEFAULT_ACCEPTED_MINTS = (USDC_MINT, USDC_DEVNET_MINT)


@dataclass
class VerifiedTransfer:
    signer: str
    token_delta: Optional[Decimal]
    succeeded: bool
    mint: Optional[str] = None
    decimals: Optional[int] = None


@dataclass
class VerificationResult:
    valid: bool
    reason: Optional[str] = None
    transfer: Optional[VerifiedTransfer] = None

    @classmethod
    def ok(cls, transfer: VerifiedTransfer) -> "VerificationResult":
        return cls(valid=True, transfer=transfer)

    @classmethod
    def invalid(cls, reason: str, transfer: Optional[VerifiedTransfer] = None) -> "VerificationResult":
        return cls(valid=False, reason=reason, transfer=transfer)

    def to_dict(self) -> Dict[str, Any]:
        transfer = None
        if self.transfer:
            transfer = {
                "signer": self.transfer.signer,
                "token_delta": str(self.transfer.token_delta) if self.transfer.token_delta is not None else None,
                "succeeded": self.transfer.succeeded,
                "mint": self.transfer.mint,
            }
        return {"valid": self.valid, "reason": self.reason, "transfer": transfer}


def _find_balance(balances: List[TokenBalance], owner: str, mints: Sequence[str]) -> Optional[TokenBalance]:
    for balance in balances:
        if balance.owner == owner and balance.mint in mints:
            return balance
    return None


class TransactionVerifier:
    """Validates signer, success and token movement of a confirmed transaction."""

    def __init__(
        self,
        gateway: ChainGateway,
        accepted_mints: Sequence[str] = DEFAULT_ACCEPTED_MINTS,
        tolerance: Union[Decimal, str] = Decimal("0.99"),
        retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.accepted_mints = list(accepted_mints)
        self.tolerance = Decimal(str(tolerance))
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def _fetch(self, signature: str) -> Optional[TransactionView]:
        tx = await self.gateway.get_transaction(signature, encoding="jsonParsed")
        if tx is None:
            # Freshly sent transactions can take a moment to be queryable
            await self._sleep(self.retry_delay)
            tx = await self.gateway.get_transaction(signature, encoding="jsonParsed")
        return tx

    async def verify(
        self,
        signature: str,
        expected_signer: str,
        expected_amount: Union[Decimal, int, float, str],
        direction: Union[TransferDirection, str] = TransferDirection.DEPOSIT,
        mint: Optional[str] = None,
    ) -> VerificationResult:
        try:
            direction = TransferDirection(direction)
        except ValueError:
            return VerificationResult.invalid(f"Unknown direction: {direction}")
        expected = Decimal(str(expected_amount))

        try:
            tx = await self._fetch(signature)
        except RpcTransientError as exc:
            logger.warning(f"Verification of {signature[:16]}... could not reach RPC: {exc}")
            return VerificationResult.invalid(f"RPC unavailable: {exc.message}")
        except ChainRejectedError as exc:
            return VerificationResult.invalid(f"Transaction lookup rejected: {exc.message}")

        if tx is None:
            return VerificationResult.invalid("Transaction not found on-chain (after retry)")

        transfer = VerifiedTransfer(signer=expected_signer, token_delta=None, succeeded=tx.succeeded)
        if not tx.succeeded:
            return VerificationResult.invalid("Transaction failed on-chain", transfer)

        if expected_signer not in tx.signers:
            return VerificationResult.invalid("Transaction signer does not match expected wallet", transfer)

        mints = [mint] if mint else self.accepted_mints
        pre = _find_balance(tx.pre_token_balances, expected_signer, mints)
        post = _find_balance(tx.post_token_balances, expected_signer, mints)

        if pre is None and post is None:
            logger.info(f"No token balances for {expected_signer} in {signature[:16]}..., amount not checked")
            return VerificationResult.ok(transfer)

        # An account created or closed inside the transaction has only one side
        pre_amount = pre.ui_amount if pre else Decimal(0)
        post_amount = post.ui_amount if post else Decimal(0)
        reference = pre or post
        transfer.mint = reference.mint
        transfer.decimals = reference.decimals

        if direction == TransferDirection.DEPOSIT:
            delta = pre_amount - post_amount
        else:
            delta = post_amount - pre_amount
        transfer.token_delta = delta

        minimum = expected * self.tolerance
        if delta < minimum:
            verb = "decreased" if direction == TransferDirection.DEPOSIT else "increased"
            return VerificationResult.invalid(
                f"Balance {verb} by {delta}, expected at least {minimum}", transfer
            )

        logger.info(f"Verified {direction.value} of {delta} by {expected_signer} in {signature[:16]}...")
        return VerificationResult.ok(transfer)
