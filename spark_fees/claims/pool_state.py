"""
On-chain pool and position state for Meteora DBC and DAMM v2.

Only the fields the claim instructions need are decoded. Byte offsets live in
``AccountLayout`` tables so a program upgrade that moves a field is a data
change rather than a code change.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from solders.pubkey import Pubkey

from spark_fees.cache import TtlCache
from spark_fees.chain.gateway import ChainGateway
from spark_fees.chain.models import AccountInfo
from spark_fees.chain.transactions import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from spark_fees.types import SOL_MINT, PoolKind

logger = logging.getLogger(__name__)

DBC_PROGRAM_ID = Pubkey.from_string("dbcij3LWUppWqq96dh6gJWwBifmcGfLSB5D4DuSMaqN")
DAMM_V2_PROGRAM_ID = Pubkey.from_string("cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG")

POOL_FETCH_ATTEMPTS = 3


@dataclass(frozen=True)
class AccountLayout:
    """Byte offsets of 32-byte pubkey fields plus optional single-byte flags."""
    pubkeys: Dict[str, int]
    flags: Dict[str, int] = field(default_factory=dict)

    def pubkey(self, data: bytes, name: str) -> str:
        offset = self.pubkeys[name]
        return str(Pubkey.from_bytes(data[offset:offset + 32]))

    def flag(self, data: bytes, name: str) -> bool:
        offset = self.flags[name]
        return offset < len(data) and data[offset] != 0

    @property
    def min_size(self) -> int:
        ends = [offset + 32 for offset in self.pubkeys.values()] + [offset + 1 for offset in self.flags.values()]
        return max(ends) if ends else 0


DBC_VIRTUAL_POOL_LAYOUT = AccountLayout(
    pubkeys={
        "config": 72,
        "creator": 104,
        "base_mint": 136,
        "base_vault": 168,
        "quote_vault": 200,
    },
    flags={"is_migrated": 305},
)
DBC_CONFIG_LAYOUT = AccountLayout(pubkeys={"quote_mint": 8, "fee_claimer": 40})
DAMM_POOL_LAYOUT = AccountLayout(
    pubkeys={
        "token_a_mint": 168,
        "token_b_mint": 200,
        "token_a_vault": 232,
        "token_b_vault": 264,
        "partner": 328,
    },
)
DAMM_POSITION_LAYOUT = AccountLayout(pubkeys={"pool": 8, "nft_mint": 40})


def pda(seeds: List[bytes], program_id: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(seeds, program_id)
    return address


def pool_authority(program_id: Pubkey) -> Pubkey:
    return pda([b"pool_authority"], program_id)


def event_authority(program_id: Pubkey) -> Pubkey:
    return pda([b"__event_authority"], program_id)


def position_address(nft_mint: Pubkey) -> Pubkey:
    return pda([b"position", bytes(nft_mint)], DAMM_V2_PROGRAM_ID)


@dataclass
class PoolState:
    address: str
    kind: PoolKind
    program_id: str
    creator: Optional[str]
    fee_claimer: Optional[str]
    base_mint: str
    quote_mint: str
    base_vault: str
    quote_vault: str
    config: Optional[str] = None
    is_migrated: bool = False
    base_token_program: str = str(TOKEN_PROGRAM_ID)
    quote_token_program: str = str(TOKEN_PROGRAM_ID)

    def claimant_for(self, partner: bool) -> Optional[str]:
        return self.fee_claimer if partner else self.creator


@dataclass
class PositionState:
    address: str
    pool: str
    nft_mint: str
    nft_account: str


def decode_dbc_pool(address: str, data: bytes, config_data: Optional[bytes]) -> PoolState:
    layout = DBC_VIRTUAL_POOL_LAYOUT
    if len(data) < layout.min_size:
        raise ValueError(f"DBC pool account {address} too short ({len(data)} bytes)")

    quote_mint = None
    fee_claimer = None
    if config_data and len(config_data) >= DBC_CONFIG_LAYOUT.min_size:
        quote_mint = DBC_CONFIG_LAYOUT.pubkey(config_data, "quote_mint")
        fee_claimer = DBC_CONFIG_LAYOUT.pubkey(config_data, "fee_claimer")

    return PoolState(
        address=address,
        kind=PoolKind.BONDING_CURVE,
        program_id=str(DBC_PROGRAM_ID),
        creator=layout.pubkey(data, "creator"),
        fee_claimer=fee_claimer,
        base_mint=layout.pubkey(data, "base_mint"),
        quote_mint=quote_mint or SOL_MINT,
        base_vault=layout.pubkey(data, "base_vault"),
        quote_vault=layout.pubkey(data, "quote_vault"),
        config=layout.pubkey(data, "config"),
        is_migrated=layout.flag(data, "is_migrated"),
    )


def decode_damm_pool(address: str, data: bytes) -> PoolState:
    layout = DAMM_POOL_LAYOUT
    if len(data) < layout.min_size:
        raise ValueError(f"DAMM pool account {address} too short ({len(data)} bytes)")
    return PoolState(
        address=address,
        kind=PoolKind.AMM,
        program_id=str(DAMM_V2_PROGRAM_ID),
        creator=None,
        fee_claimer=layout.pubkey(data, "partner"),
        base_mint=layout.pubkey(data, "token_a_mint"),
        quote_mint=layout.pubkey(data, "token_b_mint"),
        base_vault=layout.pubkey(data, "token_a_vault"),
        quote_vault=layout.pubkey(data, "token_b_vault"),
    )


class PoolStateReader:
    """Fetches and decodes pool and position accounts, with a short TTL cache."""

    def __init__(self, gateway: ChainGateway, cache: Optional[TtlCache] = None, sleep=asyncio.sleep):
        self.gateway = gateway
        self.cache = cache or TtlCache(ttl_seconds=30.0)
        self._sleep = sleep

    async def _fetch_account(self, address: str) -> AccountInfo:
        """Fetch an account that should exist, tolerating indexing lag."""
        for attempt in range(1, POOL_FETCH_ATTEMPTS + 1):
            account = await self.gateway.get_account_info(address)
            if account is not None:
                return account
            if attempt < POOL_FETCH_ATTEMPTS:
                delay = min(1.0 * (2 ** (attempt - 1)), 5.0)
                logger.debug(f"Account {address} not found, retrying in {delay:.1f}s")
                await self._sleep(delay)
        raise LookupError(f"Account {address} not found after {POOL_FETCH_ATTEMPTS} attempts")

    async def _token_program(self, mint: str) -> str:
        async def _load() -> str:
            account = await self.gateway.get_account_info(mint)
            if account and account.owner == str(TOKEN_2022_PROGRAM_ID):
                return str(TOKEN_2022_PROGRAM_ID)
            return str(TOKEN_PROGRAM_ID)

        return await self.cache.get_or_load(("token_program", mint), _load)

    async def detect_kind(self, address: str) -> PoolKind:
        """Infer the pool kind from the owning program of the account."""
        account = await self._fetch_account(address)
        if account.owner == str(DBC_PROGRAM_ID):
            return PoolKind.BONDING_CURVE
        if account.owner == str(DAMM_V2_PROGRAM_ID):
            return PoolKind.AMM
        raise ValueError(f"Account {address} is owned by {account.owner}, not a supported pool program")

    async def fetch_pool(self, address: str, kind: PoolKind, force_refresh: bool = False) -> PoolState:
        async def _load() -> PoolState:
            account = await self._fetch_account(address)
            if kind == PoolKind.BONDING_CURVE:
                config_data = None
                if len(account.data) >= DBC_VIRTUAL_POOL_LAYOUT.min_size:
                    config_address = DBC_VIRTUAL_POOL_LAYOUT.pubkey(account.data, "config")
                    config_account = await self.gateway.get_account_info(config_address)
                    config_data = config_account.data if config_account else None
                state = decode_dbc_pool(address, account.data, config_data)
            else:
                state = decode_damm_pool(address, account.data)

            state.base_token_program = await self._token_program(state.base_mint)
            state.quote_token_program = await self._token_program(state.quote_mint)
            return state

        return await self.cache.get_or_load(("pool", kind.value, address), _load, force_refresh=force_refresh)

    async def fetch_positions(self, pool_address: str, owner: str) -> List[PositionState]:
        """Positions in ``pool_address`` whose NFT is held by ``owner``."""
        token_accounts = await self.gateway.get_token_accounts_by_owner(owner, str(TOKEN_2022_PROGRAM_ID))

        nft_accounts: Dict[str, str] = {}
        for entry in token_accounts:
            info = (((entry.get("account") or {}).get("data") or {}).get("parsed") or {}).get("info") or {}
            amount = (info.get("tokenAmount") or {})
            if amount.get("amount") == "1" and int(amount.get("decimals", 0)) == 0 and info.get("mint"):
                nft_accounts[info["mint"]] = entry.get("pubkey")

        if not nft_accounts:
            return []

        mints = list(nft_accounts)
        addresses = [str(position_address(Pubkey.from_string(mint))) for mint in mints]
        accounts = await self.gateway.get_multiple_accounts(addresses)

        positions = []
        for mint, address, account in zip(mints, addresses, accounts):
            if account is None or len(account.data) < DAMM_POSITION_LAYOUT.min_size:
                continue
            pool = DAMM_POSITION_LAYOUT.pubkey(account.data, "pool")
            if pool != pool_address:
                continue
            positions.append(
                PositionState(address=address, pool=pool, nft_mint=mint, nft_account=nft_accounts[mint])
            )

        logger.debug(f"Found {len(positions)} positions in pool {pool_address} for {owner}")
        return positions
