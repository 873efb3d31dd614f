"""
Spark Fee Engine Test Configuration

Shared fixtures: temporary ledgers, a mocked chain gateway, keypairs and
builders for confirmed-transaction views.
"""

import os
import sys

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

from solders.hash import Hash
from solders.keypair import Keypair

from spark_fees.chain.gateway import ChainGateway
from spark_fees.chain.models import (
    Confirmation,
    ConfirmationStatus,
    InstructionView,
    TokenBalance,
    TransactionView,
)
from spark_fees.config import DEFAULT_STAKEHOLDERS, EngineConfig, StakeholderShare
from spark_fees.ledger.registry import SqliteTokenRegistry
from spark_fees.ledger.store import LedgerStore

BLOCKHASH = str(Hash.default())

# Stakeholder wallets used across allocation tests
STAKEHOLDER_ADDRESSES = [row["address"] for row in DEFAULT_STAKEHOLDERS[:5]]
TREASURY_WALLETS = [
    "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU",
    "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH",
    "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM",
]


# ============================================================================
# Storage
# ============================================================================

@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "fee_engine.db"


@pytest.fixture
def ledger(db_path) -> LedgerStore:
    return LedgerStore(db_path)


@pytest.fixture
def registry(db_path) -> SqliteTokenRegistry:
    return SqliteTokenRegistry(db_path)


# ============================================================================
# Chain
# ============================================================================

@pytest.fixture
def signer() -> Keypair:
    return Keypair()


@pytest.fixture
def no_sleep():
    """Replacement for asyncio.sleep that records delays without waiting."""
    return AsyncMock(return_value=None)


@pytest.fixture
def mock_gateway():
    """ChainGateway double whose every call lands and confirms."""
    gateway = AsyncMock(spec=ChainGateway)
    gateway.get_latest_blockhash.return_value = BLOCKHASH
    gateway.get_latest_blockhash_info.return_value = (BLOCKHASH, 1_000)
    gateway.get_block_height.return_value = 900
    counter = {"n": 0}

    async def _submit(tx, skip_preflight=False):
        counter["n"] += 1
        return f"sig{counter['n']}"

    gateway.submit.side_effect = _submit
    gateway.confirm.side_effect = lambda signature, timeout=30.0, poll_interval=None: Confirmation(
        signature, ConfirmationStatus.CONFIRMED, slot=1
    )
    gateway.get_minimum_balance_for_rent_exemption.return_value = 890_880
    gateway.get_account_info.return_value = None
    gateway.get_transaction.return_value = None
    return gateway


def token_balance(
    owner: str, mint: str, ui_amount: str, decimals: int = 6, account_index: int = 1
) -> TokenBalance:
    ui = Decimal(ui_amount)
    return TokenBalance(
        account_index=account_index,
        mint=mint,
        owner=owner,
        amount=int(ui * (Decimal(10) ** decimals)),
        decimals=decimals,
        ui_amount=ui,
    )


def make_tx_view(
    signature: str = "sig1",
    account_keys: Optional[List[str]] = None,
    signers: Optional[List[str]] = None,
    err: Any = None,
    pre_balances: Optional[List[int]] = None,
    post_balances: Optional[List[int]] = None,
    pre_token_balances: Optional[List[TokenBalance]] = None,
    post_token_balances: Optional[List[TokenBalance]] = None,
    log_messages: Optional[List[str]] = None,
    inner_instructions: Optional[List[InstructionView]] = None,
    meta_events: Optional[List[Dict[str, Any]]] = None,
) -> TransactionView:
    keys = account_keys or []
    return TransactionView(
        signature=signature,
        slot=100,
        err=err,
        account_keys=keys,
        signers=signers if signers is not None else keys[:1],
        pre_balances=pre_balances or [],
        post_balances=post_balances or [],
        pre_token_balances=pre_token_balances or [],
        post_token_balances=post_token_balances or [],
        log_messages=log_messages or [],
        instructions=[],
        inner_instructions=inner_instructions or [],
        meta_events=meta_events or [],
    )


@pytest.fixture
def tx_factory():
    return make_tx_view


# ============================================================================
# Configuration
# ============================================================================

@pytest.fixture
def engine_config(db_path) -> EngineConfig:
    ids = ["pool_traders", "referrer", "voters", "dao", "launcher"]
    bps = [500, 500, 500, 3500, 500]
    stakeholders = [
        StakeholderShare(stakeholder_id=i, address=a, bps=b)
        for i, a, b in zip(ids, STAKEHOLDER_ADDRESSES, bps)
    ]
    stakeholders.append(StakeholderShare(stakeholder_id="treasury", address=None, bps=4500))
    config = EngineConfig(
        stakeholders=stakeholders,
        treasury_wallets=list(TREASURY_WALLETS),
        db_path=db_path,
        inter_action_delay=0,
        inter_batch_delay=0,
        tx_index_delay=0,
        transfer_delay=0,
        verify_retry_delay=0,
    )
    config.validate()
    return config


# Environment setup
@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    for key in ("RPC_URL", "TREASURY_WALLETS", "ADMIN_ADDRESSES", "FEE_ENGINE_DB_PATH", "PRIVATE_KEY"):
        monkeypatch.delenv(key, raising=False)
