"""
Fee Engine facade.

The operations external collaborators call: claim sweeps, single-pool claims,
creator fee summaries and payouts, treasury assignment, and verification of
investor transfers.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from solders.keypair import Keypair

from spark_fees.chain.endpoints import SUPPORTED_CLUSTERS
from spark_fees.chain.gateway import ChainGateway
from spark_fees.chain.keys import load_keypair, parse_pubkey
from spark_fees.chain.models import ConfirmationStatus
from spark_fees.chain.transactions import build_transaction, transfer_lamports_ix
from spark_fees.claims.instructions import ClaimInstructionBuilder
from spark_fees.claims.lifecycle import ClaimResult
from spark_fees.claims.orchestrator import ClaimOrchestrator, SweepReport
from spark_fees.claims.pool_state import PoolStateReader
from spark_fees.claims.resolver import ClaimedAmountResolver
from spark_fees.config import EngineConfig, load_engine_config
from spark_fees.distribution.allocator import DistributionAllocator
from spark_fees.distribution.treasury import TreasuryAssigner
from spark_fees.errors import (
    ChainRejectedError,
    ConfigurationError,
    LedgerOverdrawError,
    PayoutError,
    VerificationFailedError,
)
from spark_fees.ledger.registry import SqliteTokenRegistry, TokenRegistry
from spark_fees.ledger.store import LedgerStore
from spark_fees.logging_config import CorrelationContext
from spark_fees.types import CreatorFeeSummaryDict, PoolKind, TransferDirection
from spark_fees.verification.verifier import TransactionVerifier, VerificationResult

logger = logging.getLogger(__name__)


@dataclass
class PayoutReceipt:
    creator_id: str
    destination: str
    tx_signature: str
    amount_paid: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "creator_id": self.creator_id,
            "destination": self.destination,
            "tx_signature": self.tx_signature,
            "amount_paid": self.amount_paid,
        }


@dataclass
class InvestmentRecord:
    project_id: str
    signature: str
    investor: str
    amount: int
    direction: TransferDirection
    recorded: bool
    raised_total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "signature": self.signature,
            "investor": self.investor,
            "amount": self.amount,
            "direction": self.direction.value,
            "recorded": self.recorded,
            "raised_total": self.raised_total,
        }


def to_base_units(amount: Union[Decimal, str, int, float], decimals: int) -> int:
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


class FeeEngine:
    """Wires configuration, chain access, ledger and registry into the public operations."""

    def __init__(
        self,
        config: EngineConfig,
        ledger: Optional[LedgerStore] = None,
        registry: Optional[TokenRegistry] = None,
        claimer: Optional[Keypair] = None,
        payer: Optional[Keypair] = None,
        gateways: Optional[Dict[str, ChainGateway]] = None,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self.ledger = ledger or LedgerStore(config.db_path)
        self.registry = registry or SqliteTokenRegistry(config.db_path)
        self.treasury = TreasuryAssigner(self.ledger, config.treasury_wallets, config.admin_addresses)
        self.resolver = ClaimedAmountResolver(config.plausibility)
        self._claimer = claimer
        self._payer = payer
        self._gateways: Dict[str, ChainGateway] = dict(gateways or {})
        self._pool_readers: Dict[str, PoolStateReader] = {}
        self._payout_locks: Dict[str, asyncio.Lock] = {}
        self._sleep = sleep

    @classmethod
    def from_config(cls, overrides: Optional[Dict[str, Any]] = None) -> "FeeEngine":
        return cls(load_engine_config(overrides))

    async def __aenter__(self) -> "FeeEngine":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        for gateway in self._gateways.values():
            await gateway.close()
        self._gateways.clear()

    # =========================================================================
    # WIRING
    # =========================================================================

    @property
    def claimer(self) -> Keypair:
        if self._claimer is None:
            self._claimer = load_keypair(self.config.claimer_private_key)
        return self._claimer

    @property
    def payer(self) -> Keypair:
        """Wallet that pays creators; defaults to the claimer wallet."""
        if self._payer is None:
            if self.config.payer_private_key:
                self._payer = load_keypair(self.config.payer_private_key)
            else:
                self._payer = self.claimer
        return self._payer

    def gateway(self, network: Optional[str] = None) -> ChainGateway:
        network = network or self.config.network
        if network not in self._gateways:
            if network not in SUPPORTED_CLUSTERS:
                raise ConfigurationError(f"Unknown network {network!r}, expected one of {SUPPORTED_CLUSTERS}")
            endpoints = [endpoint.for_cluster(network) for endpoint in self.config.rpc_endpoints]
            self._gateways[network] = ChainGateway(
                endpoints,
                commitment=self.config.commitment,
                max_attempts=self.config.rpc_max_attempts,
                backoff_base=self.config.rpc_backoff_base,
                backoff_max=self.config.rpc_backoff_max,
                cache_ttl_seconds=self.config.cache_ttl_seconds,
                poll_interval=self.config.confirm_poll_interval,
                sleep=self._sleep,
            )
        return self._gateways[network]

    def _pool_reader(self, network: str, gateway: ChainGateway) -> PoolStateReader:
        if network not in self._pool_readers:
            self._pool_readers[network] = PoolStateReader(gateway, sleep=self._sleep)
        return self._pool_readers[network]

    def orchestrator(self, network: Optional[str] = None, distribute: bool = True) -> ClaimOrchestrator:
        network = network or self.config.network
        gateway = self.gateway(network)
        allocator = None
        if distribute:
            allocator = DistributionAllocator(
                gateway,
                self.claimer,
                self.config.stakeholders,
                dust_floor=self.config.dust_floor_lamports,
                transfer_delay=self.config.transfer_delay,
                confirm_timeout=self.config.confirm_timeout_seconds,
                sleep=self._sleep,
            )
        return ClaimOrchestrator(
            gateway,
            self.claimer,
            self.ledger,
            self.registry,
            self.resolver,
            pool_reader=self._pool_reader(network, gateway),
            builder=ClaimInstructionBuilder(self.config.max_base_amount, self.config.max_quote_amount),
            allocator=allocator,
            treasury=self.treasury,
            batch_size=self.config.batch_size,
            inter_action_delay=self.config.inter_action_delay,
            inter_batch_delay=self.config.inter_batch_delay,
            tx_index_delay=self.config.tx_index_delay,
            confirm_timeout=self.config.confirm_timeout_seconds,
            creator_share_bps=self.config.creator_share_bps,
            sleep=self._sleep,
        )

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def run_claim_sweep(
        self,
        network: Optional[str] = None,
        batch_size: Optional[int] = None,
        max_targets: Optional[int] = None,
    ) -> SweepReport:
        orchestrator = self.orchestrator(network)
        return await orchestrator.run_sweep(
            batch_size=batch_size or self.config.batch_size,
            max_targets=max_targets or self.config.max_targets,
        )

    async def claim_single_pool(
        self,
        pool_address: str,
        max_base_amount: Optional[int] = None,
        max_quote_amount: Optional[int] = None,
        network: Optional[str] = None,
        pool_kind: Optional[PoolKind] = None,
    ) -> List[ClaimResult]:
        orchestrator = self.orchestrator(network, distribute=False)
        return await orchestrator.claim_single_pool(
            pool_address,
            max_base_amount=max_base_amount,
            max_quote_amount=max_quote_amount,
            pool_kind=pool_kind,
        )

    def get_creator_fee_summary(self, creator_id: str) -> CreatorFeeSummaryDict:
        return self.ledger.get_available(creator_id)

    async def pay_creator(
        self,
        creator_id: str,
        destination_wallet: str,
        network: Optional[str] = None,
    ) -> PayoutReceipt:
        """
        Transfer everything the creator has available and debit it from the ledger.

        The network fee is paid by the payer wallet on top of the transfer, so
        the ledger is debited by exactly the amount the creator receives.

        The signed transfer is stored as pending before it is sent. A later
        call settles that transfer first and only sends a new one once it has
        failed or its blockhash has expired.
        """
        try:
            destination = parse_pubkey(destination_wallet)
        except ValueError as exc:
            raise PayoutError(str(exc), {"destination": destination_wallet}) from exc

        lock = self._payout_locks.setdefault(creator_id, asyncio.Lock())
        async with lock:
            with CorrelationContext(creator_id=creator_id):
                gateway = self.gateway(network)
                pending = self.ledger.get_pending_payout(creator_id)
                if pending:
                    receipt = await self._settle_pending_payout(gateway, pending)
                    if receipt is not None:
                        return receipt

                available = self.ledger.get_available(creator_id)["available"]
                if available <= 0:
                    raise PayoutError(f"No fees available for creator {creator_id}", {"available": available})

                payer = self.payer
                balance = await gateway.get_balance(str(payer.pubkey()))
                required = available + self.config.payout_fee_reserve_lamports
                if balance < required:
                    raise PayoutError(
                        f"Payer balance {balance} below required {required}",
                        {"balance": balance, "required": required},
                    )

                blockhash, last_valid_height = await gateway.get_latest_blockhash_info()
                tx = build_transaction([transfer_lamports_ix(payer.pubkey(), destination, available)], payer, blockhash)
                signature = str(tx.signatures[0])
                self.ledger.save_pending_payout(creator_id, destination_wallet, available, signature, last_valid_height)

                try:
                    await gateway.submit(tx)
                except ChainRejectedError:
                    self.ledger.clear_pending_payout(creator_id, signature)
                    raise

                confirmation = await gateway.confirm(signature, timeout=self.config.confirm_timeout_seconds)
                if confirmation.status == ConfirmationStatus.FAILED:
                    self.ledger.clear_pending_payout(creator_id, signature)
                    raise PayoutError(f"Payout {signature} failed on chain: {confirmation.error}", {"signature": signature})
                if confirmation.status == ConfirmationStatus.TIMED_OUT:
                    # Status polling can miss a landed transaction; ask for it directly
                    tx_view = await gateway.get_transaction(signature)
                    if tx_view is not None and not tx_view.succeeded:
                        self.ledger.clear_pending_payout(creator_id, signature)
                        raise PayoutError(f"Payout {signature} failed on chain", {"signature": signature})
                    if tx_view is None:
                        raise PayoutError(
                            f"Payout {signature} not confirmed; pending until block height {last_valid_height}",
                            {"signature": signature, "last_valid_block_height": last_valid_height},
                        )

                return self._record_payout(creator_id, destination_wallet, available, signature)

    async def _settle_pending_payout(self, gateway: ChainGateway, pending: Dict[str, Any]) -> Optional[PayoutReceipt]:
        """
        Resolve a payout left unconfirmed by an earlier call.

        Returns its receipt when it landed, None once it can no longer land,
        and raises PayoutError while its blockhash is still valid.
        """
        creator_id = pending["creator_id"]
        signature = pending["tx_signature"]
        tx_view = await gateway.get_transaction(signature)
        if tx_view is not None:
            if tx_view.succeeded:
                logger.info(f"Pending payout {signature[:16]}... landed for creator {creator_id}")
                return self._record_payout(creator_id, pending["destination"], pending["amount"], signature)
            logger.warning(f"Pending payout {signature[:16]}... failed on chain for creator {creator_id}")
            self.ledger.clear_pending_payout(creator_id, signature)
            return None

        height = await gateway.get_block_height()
        if height > pending["last_valid_block_height"]:
            logger.info(f"Pending payout {signature[:16]}... expired at block height {height}")
            self.ledger.clear_pending_payout(creator_id, signature)
            return None

        raise PayoutError(
            f"Payout {signature} for creator {creator_id} still pending",
            {
                "signature": signature,
                "block_height": height,
                "last_valid_block_height": pending["last_valid_block_height"],
            },
        )

    def _record_payout(self, creator_id: str, destination: str, amount: int, signature: str) -> PayoutReceipt:
        try:
            self.ledger.record_payout(creator_id, destination, amount, signature)
        except LedgerOverdrawError:
            logger.critical(f"Payout {signature} sent but ledger debit was rejected for {creator_id}")
            raise

        logger.info(f"Paid creator {creator_id} {amount} lamports to {destination}: {signature}")
        return PayoutReceipt(
            creator_id=creator_id,
            destination=destination,
            tx_signature=signature,
            amount_paid=amount,
        )

    def assign_treasury(self, project_id: str) -> str:
        return self.treasury.assign(project_id)

    def verifier(self, network: Optional[str] = None) -> TransactionVerifier:
        return TransactionVerifier(
            self.gateway(network),
            accepted_mints=self.config.accepted_mints,
            tolerance=self.config.verify_tolerance,
            retry_delay=self.config.verify_retry_delay,
            sleep=self._sleep,
        )

    async def verify_external_transfer(
        self,
        signature: str,
        signer: str,
        amount: Union[Decimal, int, float, str],
        direction: Union[TransferDirection, str] = TransferDirection.DEPOSIT,
        mint: Optional[str] = None,
        network: Optional[str] = None,
    ) -> VerificationResult:
        return await self.verifier(network).verify(signature, signer, amount, direction, mint=mint)

    async def record_investment(
        self,
        project_id: str,
        signature: str,
        investor: str,
        amount: Union[Decimal, int, float, str],
        direction: Union[TransferDirection, str] = TransferDirection.DEPOSIT,
        mint: Optional[str] = None,
        network: Optional[str] = None,
    ) -> InvestmentRecord:
        """Verify an investor transfer, then move the project's raised total."""
        direction = TransferDirection(direction)
        result = await self.verify_external_transfer(signature, investor, amount, direction, mint, network)
        if not result.valid:
            raise VerificationFailedError(result.reason or "verification failed", signature)

        decimals = 6
        if result.transfer and result.transfer.decimals is not None:
            decimals = result.transfer.decimals
        base_units = to_base_units(amount, decimals)

        recorded = self.ledger.record_investment(project_id, signature, investor, base_units, direction)
        return InvestmentRecord(
            project_id=project_id,
            signature=signature,
            investor=investor,
            amount=base_units,
            direction=direction,
            recorded=recorded,
            raised_total=self.ledger.get_project_raised(project_id),
        )
