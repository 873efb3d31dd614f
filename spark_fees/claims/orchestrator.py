"""
Claim Orchestrator.

Drives every registered pool through its claim actions, resolves what each
confirmed claim paid, credits the creator ledger and hands the per-token total
to the allocator. Action and target failures are recorded and the sweep moves
on; only registry or ledger failures abort the run.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from solders.keypair import Keypair

from spark_fees.chain.gateway import ChainGateway
from spark_fees.chain.models import ConfirmationStatus, TransactionView
from spark_fees.chain.transactions import build_transaction
from spark_fees.claims.instructions import ClaimInstructionBuilder
from spark_fees.claims.lifecycle import ActionRun, ClaimResult
from spark_fees.claims.pool_state import PoolState, PoolStateReader, PositionState
from spark_fees.claims.resolver import ClaimContext, ClaimedAmountResolver, ResolvedAmount
from spark_fees.distribution.allocator import Distribution, DistributionAllocator
from spark_fees.distribution.treasury import TreasuryAssigner
from spark_fees.errors import ConfigurationError, ErrorKind, FeeEngineError, SweepAbortedError
from spark_fees.ledger.registry import RegisteredToken, TokenRegistry
from spark_fees.ledger.store import LedgerStore
from spark_fees.logging_config import CorrelationContext
from spark_fees.types import (
    AMM_ACTIONS,
    BONDING_CURVE_ACTIONS,
    BPS_DENOMINATOR,
    ClaimAction,
    ClaimStatus,
    PoolKind,
)

logger = logging.getLogger(__name__)

# Actions the pool creator signs; the rest are signed by the partner / fee claimer
CREATOR_SIGNED_ACTIONS = (ClaimAction.CREATOR_FEE, ClaimAction.SURPLUS, ClaimAction.MIGRATION_FEE)


@dataclass
class ClaimTarget:
    creator_id: str
    token_mint: str
    pool_address: str
    pool_kind: PoolKind
    claimable_actions: Tuple[ClaimAction, ...]
    project_id: Optional[str] = None
    treasury_address: Optional[str] = None
    name: str = ""

    @classmethod
    def from_registered(cls, token: RegisteredToken) -> List["ClaimTarget"]:
        targets = []
        common = dict(
            creator_id=token.creator_id,
            token_mint=token.token_mint,
            project_id=token.project_id,
            treasury_address=token.dao_treasury,
            name=token.name,
        )
        if token.dbc_pool_address:
            targets.append(cls(
                pool_address=token.dbc_pool_address,
                pool_kind=PoolKind.BONDING_CURVE,
                claimable_actions=BONDING_CURVE_ACTIONS,
                **common,
            ))
        if token.damm_pool_address:
            targets.append(cls(
                pool_address=token.damm_pool_address,
                pool_kind=PoolKind.AMM,
                claimable_actions=AMM_ACTIONS,
                **common,
            ))
        return targets


@dataclass
class TargetReport:
    target: ClaimTarget
    results: List[ClaimResult] = field(default_factory=list)
    distributions: List[Distribution] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def total_claimed(self) -> int:
        return sum(r.resolved_amount for r in self.results if r.status == ClaimStatus.SUCCESS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "creator_id": self.target.creator_id,
            "token_mint": self.target.token_mint,
            "name": self.target.name,
            "pool_address": self.target.pool_address,
            "pool_kind": self.target.pool_kind.value,
            "results": [r.to_dict() for r in self.results],
            "total_claimed": self.total_claimed,
            "distributions": [d.to_dict() for d in self.distributions],
            "error": self.error,
        }


@dataclass
class SweepReport:
    run_id: str
    started_at: str
    per_target: List[TargetReport] = field(default_factory=list)
    finished_at: Optional[str] = None

    @property
    def totals(self) -> Dict[str, int]:
        results = [r for report in self.per_target for r in report.results]
        return {
            "successful": sum(1 for r in results if r.status == ClaimStatus.SUCCESS),
            "failed": sum(1 for r in results if r.status == ClaimStatus.FAILED),
            "total_claimed": sum(report.total_claimed for report in self.per_target),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "per_target": [report.to_dict() for report in self.per_target],
            "totals": self.totals,
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ClaimOrchestrator:
    """Runs claim actions for registered pools and feeds the results downstream."""

    def __init__(
        self,
        gateway: ChainGateway,
        signer: Keypair,
        ledger: LedgerStore,
        registry: TokenRegistry,
        resolver: ClaimedAmountResolver,
        pool_reader: Optional[PoolStateReader] = None,
        builder: Optional[ClaimInstructionBuilder] = None,
        allocator: Optional[DistributionAllocator] = None,
        treasury: Optional[TreasuryAssigner] = None,
        *,
        batch_size: int = 5,
        inter_action_delay: float = 0.5,
        inter_batch_delay: float = 2.0,
        tx_index_delay: float = 2.0,
        confirm_timeout: float = 30.0,
        creator_share_bps: int = BPS_DENOMINATOR,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.signer = signer
        self.signer_address = str(signer.pubkey())
        self.ledger = ledger
        self.registry = registry
        self.resolver = resolver
        self.pool_reader = pool_reader or PoolStateReader(gateway, sleep=sleep)
        self.builder = builder or ClaimInstructionBuilder()
        self.allocator = allocator
        self.treasury = treasury
        self.batch_size = batch_size
        self.inter_action_delay = inter_action_delay
        self.inter_batch_delay = inter_batch_delay
        self.tx_index_delay = tx_index_delay
        self.confirm_timeout = confirm_timeout
        self.creator_share_bps = creator_share_bps
        self._sleep = sleep

    # =========================================================================
    # SWEEP
    # =========================================================================

    def build_targets(self, max_targets: Optional[int] = None) -> List[ClaimTarget]:
        tokens = self.registry.list_tokens(limit=max_targets)
        targets: List[ClaimTarget] = []
        for token in tokens:
            targets.extend(ClaimTarget.from_registered(token))
        if max_targets is not None:
            targets = targets[:max_targets]
        return targets

    async def run_sweep(
        self,
        batch_size: Optional[int] = None,
        max_targets: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> SweepReport:
        batch_size = batch_size or self.batch_size
        with CorrelationContext(run_id=run_id) as ctx:
            report = SweepReport(run_id=ctx.run_id, started_at=_now())
            try:
                targets = self.build_targets(max_targets)
            except (sqlite3.Error, OSError) as exc:
                raise SweepAbortedError(f"Token registry unavailable: {exc}", partial_report=report) from exc

            logger.info(f"Sweep {ctx.run_id[:8]} starting: {len(targets)} targets in batches of {batch_size}")

            for start in range(0, len(targets), batch_size):
                batch = targets[start:start + batch_size]
                if start > 0 and self.inter_batch_delay > 0:
                    await self._sleep(self.inter_batch_delay)
                try:
                    reports = await asyncio.gather(*(self.process_target(t, ctx.run_id) for t in batch))
                except (sqlite3.Error, OSError) as exc:
                    report.finished_at = _now()
                    raise SweepAbortedError(f"Ledger unavailable: {exc}", partial_report=report) from exc
                report.per_target.extend(reports)

            report.finished_at = _now()
            totals = report.totals
            logger.info(
                f"Sweep {ctx.run_id[:8]} finished: {totals['successful']} successful, "
                f"{totals['failed']} failed, {totals['total_claimed']} lamports claimed"
            )
            return report

    async def process_target(self, target: ClaimTarget, run_id: Optional[str] = None) -> TargetReport:
        """Claim every action on one target, credit the ledger, then distribute."""
        with CorrelationContext(run_id=run_id, creator_id=target.creator_id, token_mint=target.token_mint):
            report = TargetReport(target=target)
            try:
                pool = await self.pool_reader.fetch_pool(target.pool_address, target.pool_kind)
            except (FeeEngineError, LookupError, ValueError) as exc:
                kind = exc.kind if isinstance(exc, FeeEngineError) else ErrorKind.INTERNAL
                logger.error(f"Pool {target.pool_address} unavailable: {exc}")
                report.error = f"pool state unavailable: {exc}"
                report.results = [
                    ClaimResult(action=a, status=ClaimStatus.FAILED, error_kind=kind, error_detail=report.error)
                    for a in target.claimable_actions
                ]
                return report

            report.results = await self.claim_pool(pool, target.claimable_actions)
            self.record_earned(target.creator_id, target.token_mint, pool.address, report.results)

            total = report.total_claimed
            if self.allocator and total > 0:
                treasury_address = self._treasury_for(target)
                report.distributions = await self.allocator.distribute(total, treasury_address)
                if report.distributions:
                    self.ledger.record_distributions(
                        target.token_mint, [d.to_dict() for d in report.distributions], run_id
                    )
            return report

    def _treasury_for(self, target: ClaimTarget) -> Optional[str]:
        if target.treasury_address:
            return target.treasury_address
        if self.treasury is None:
            return None
        try:
            return self.treasury.assign(target.project_id or target.token_mint)
        except ConfigurationError as exc:
            logger.warning(f"No treasury for {target.token_mint}: {exc}")
            return None

    def record_earned(self, creator_id: str, token_mint: str, pool_address: str, results: Sequence[ClaimResult]) -> int:
        """Credit the creator for each successful claim; returns the amount newly credited."""
        credited = 0
        for result in results:
            if result.status != ClaimStatus.SUCCESS or result.resolved_amount <= 0:
                continue
            earned = result.resolved_amount * self.creator_share_bps // BPS_DENOMINATOR
            added = self.ledger.increase_earned(
                creator_id,
                token_mint,
                earned,
                source_signature=result.tx_signature,
                claimed_amount=result.resolved_amount,
                pool_address=pool_address,
                action=result.action.value,
                method=result.method.value if result.method else None,
            )
            if added:
                credited += earned
        return credited

    # =========================================================================
    # ACTIONS
    # =========================================================================

    async def claim_pool(
        self,
        pool: PoolState,
        actions: Sequence[ClaimAction],
        max_base_amount: Optional[int] = None,
        max_quote_amount: Optional[int] = None,
    ) -> List[ClaimResult]:
        results: List[ClaimResult] = []
        for index, action in enumerate(actions):
            if index > 0 and self.inter_action_delay > 0:
                await self._sleep(self.inter_action_delay)

            if action == ClaimAction.POSITION_FEE:
                results.extend(await self._claim_positions(pool))
                continue
            results.append(await self.run_action(action, pool, None, max_base_amount, max_quote_amount))
        return results

    async def _claim_positions(self, pool: PoolState) -> List[ClaimResult]:
        try:
            positions = await self.pool_reader.fetch_positions(pool.address, self.signer_address)
        except FeeEngineError as exc:
            run = ActionRun(ClaimAction.POSITION_FEE)
            run.failed(exc.kind, f"position lookup failed: {exc}")
            return [run.to_result()]

        if not positions:
            run = ActionRun(ClaimAction.POSITION_FEE)
            run.skipped(None, "no positions held by signer")
            return [run.to_result()]

        results = []
        for index, position in enumerate(positions):
            if index > 0 and self.inter_action_delay > 0:
                await self._sleep(self.inter_action_delay)
            results.append(await self.run_action(ClaimAction.POSITION_FEE, pool, position))
        return results

    def expected_claimant(self, action: ClaimAction, pool: PoolState) -> Optional[str]:
        if action == ClaimAction.POSITION_FEE:
            # Positions are discovered by the signer's NFT holdings
            return self.signer_address
        if action in CREATOR_SIGNED_ACTIONS:
            return pool.creator
        return pool.fee_claimer

    async def run_action(
        self,
        action: ClaimAction,
        pool: PoolState,
        position: Optional[PositionState] = None,
        max_base_amount: Optional[int] = None,
        max_quote_amount: Optional[int] = None,
    ) -> ClaimResult:
        run = ActionRun(action)

        if action == ClaimAction.MIGRATION_FEE and not pool.is_migrated:
            run.skipped(None, "Pool has not migrated yet")
            logger.info(f"{action.value} skipped for {pool.address}: not migrated")
            return run.to_result()

        expected = self.expected_claimant(action, pool)
        if expected != self.signer_address:
            run.skipped(ErrorKind.NOT_AUTHORIZED, f"signer {self.signer_address} is not claimant {expected}")
            logger.warning(f"{action.value} on {pool.address}: NotAuthorized (claimant {expected})")
            return run.to_result()

        try:
            instructions = self.builder.build(
                action,
                pool,
                self.signer.pubkey(),
                position=position,
                max_base_amount=max_base_amount,
                max_quote_amount=max_quote_amount,
            )
            blockhash = await self.gateway.get_latest_blockhash()
            tx = build_transaction(instructions, self.signer, blockhash)
            run.submitted(await self.gateway.submit(tx))

            run.confirming()
            confirmation = await self.gateway.confirm(run.tx_signature, timeout=self.confirm_timeout)
            if confirmation.status == ConfirmationStatus.FAILED:
                run.failed(ErrorKind.CHAIN_REJECTED, f"transaction failed on chain: {confirmation.error}")
                return run.to_result()
            if confirmation.status == ConfirmationStatus.TIMED_OUT:
                run.failed(ErrorKind.RPC_TRANSIENT, "confirmation timed out")
                return run.to_result()

            tx_view = await self._fetch_confirmed(run.tx_signature)
            if tx_view is None:
                resolution = ResolvedAmount.unresolved("transaction not available from RPC")
            else:
                resolution = self.resolver.resolve(
                    tx_view,
                    ClaimContext(
                        action=action,
                        claimant=self.signer_address,
                        pool_address=pool.address,
                        token_mint=pool.quote_mint,
                        program_id=pool.program_id,
                    ),
                )
            run.resolved(resolution)
            logger.info(
                f"{action.value} on {pool.address} confirmed: {resolution.amount} via {resolution.method.value}"
            )
        except FeeEngineError as exc:
            logger.error(f"{action.value} on {pool.address} failed: {exc}")
            run.failed(exc.kind, exc.message)
        except ValueError as exc:
            logger.error(f"{action.value} on {pool.address} could not be built: {exc}")
            run.failed(ErrorKind.INTERNAL, str(exc))

        return run.to_result()

    async def _fetch_confirmed(self, signature: str) -> Optional[TransactionView]:
        """getTransaction lags confirmation; wait, then retry once."""
        for attempt in range(2):
            if self.tx_index_delay > 0:
                await self._sleep(self.tx_index_delay)
            try:
                tx_view = await self.gateway.get_transaction(signature)
            except FeeEngineError as exc:
                logger.warning(f"getTransaction {signature[:16]}... failed (attempt {attempt + 1}): {exc}")
                continue
            if tx_view is not None:
                return tx_view
        return None

    # =========================================================================
    # SINGLE POOL
    # =========================================================================

    async def claim_single_pool(
        self,
        pool_address: str,
        max_base_amount: Optional[int] = None,
        max_quote_amount: Optional[int] = None,
        pool_kind: Optional[PoolKind] = None,
    ) -> List[ClaimResult]:
        """Claim one pool without distributing; credits the ledger when the pool is registered."""
        token = self.registry.find_by_pool(pool_address)
        if pool_kind is None:
            if token is not None:
                pool_kind = PoolKind.AMM if token.damm_pool_address == pool_address else PoolKind.BONDING_CURVE
            else:
                pool_kind = await self.pool_reader.detect_kind(pool_address)

        actions = AMM_ACTIONS if pool_kind == PoolKind.AMM else BONDING_CURVE_ACTIONS
        creator_id = token.creator_id if token else None
        token_mint = token.token_mint if token else None

        with CorrelationContext(creator_id=creator_id, token_mint=token_mint):
            pool = await self.pool_reader.fetch_pool(pool_address, pool_kind, force_refresh=True)
            results = await self.claim_pool(pool, actions, max_base_amount, max_quote_amount)
            if token is not None:
                self.record_earned(token.creator_id, token.token_mint, pool_address, results)
            else:
                logger.info(f"Pool {pool_address} is not registered, ledger not updated")
        return results
