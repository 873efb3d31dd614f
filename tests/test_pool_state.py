"""Tests for pool account decoding and claim instruction assembly."""

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from spark_fees.chain.models import AccountInfo
from spark_fees.chain.transactions import TOKEN_2022_PROGRAM_ID, instruction_discriminator
from spark_fees.claims.instructions import ClaimInstructionBuilder
from spark_fees.claims.pool_state import (
    DAMM_POOL_LAYOUT,
    DAMM_POSITION_LAYOUT,
    DAMM_V2_PROGRAM_ID,
    DBC_CONFIG_LAYOUT,
    DBC_PROGRAM_ID,
    DBC_VIRTUAL_POOL_LAYOUT,
    PoolStateReader,
    decode_damm_pool,
    decode_dbc_pool,
    position_address,
)
from spark_fees.types import SOL_MINT, ClaimAction, PoolKind


def pubkey() -> Pubkey:
    return Keypair().pubkey()


def encode(layout, values, size=None, flags=None) -> bytes:
    data = bytearray(size or layout.min_size)
    for name, key in values.items():
        offset = layout.pubkeys[name]
        data[offset:offset + 32] = bytes(key)
    for name, value in (flags or {}).items():
        data[layout.flags[name]] = 1 if value else 0
    return bytes(data)


@pytest.fixture
def dbc_fields():
    return {name: pubkey() for name in DBC_VIRTUAL_POOL_LAYOUT.pubkeys}


@pytest.fixture
def config_fields():
    return {"quote_mint": Pubkey.from_string(SOL_MINT), "fee_claimer": pubkey()}


class TestDecode:

    def test_dbc_pool(self, dbc_fields, config_fields):
        data = encode(DBC_VIRTUAL_POOL_LAYOUT, dbc_fields, flags={"is_migrated": True})
        config = encode(DBC_CONFIG_LAYOUT, config_fields)

        state = decode_dbc_pool("pool1", data, config)

        assert state.kind == PoolKind.BONDING_CURVE
        assert state.creator == str(dbc_fields["creator"])
        assert state.config == str(dbc_fields["config"])
        assert state.fee_claimer == str(config_fields["fee_claimer"])
        assert state.quote_mint == SOL_MINT
        assert state.is_migrated

    def test_dbc_pool_without_config_defaults_to_sol(self, dbc_fields):
        state = decode_dbc_pool("pool1", encode(DBC_VIRTUAL_POOL_LAYOUT, dbc_fields), None)

        assert state.quote_mint == SOL_MINT
        assert state.fee_claimer is None
        assert not state.is_migrated

    def test_short_account_rejected(self):
        with pytest.raises(ValueError):
            decode_dbc_pool("pool1", b"\x00" * 100, None)
        with pytest.raises(ValueError):
            decode_damm_pool("pool2", b"\x00" * 100)

    def test_damm_pool(self):
        fields = {name: pubkey() for name in DAMM_POOL_LAYOUT.pubkeys}

        state = decode_damm_pool("pool2", encode(DAMM_POOL_LAYOUT, fields))

        assert state.kind == PoolKind.AMM
        assert state.creator is None
        assert state.fee_claimer == str(fields["partner"])
        assert state.base_vault == str(fields["token_a_vault"])


class TestPoolStateReader:

    @pytest.mark.asyncio
    async def test_fetch_dbc_pool_resolves_token_programs(self, mock_gateway, no_sleep, dbc_fields, config_fields):
        pool_data = encode(DBC_VIRTUAL_POOL_LAYOUT, dbc_fields)
        accounts = {
            "pool1": AccountInfo("pool1", 1, str(DBC_PROGRAM_ID), pool_data),
            str(dbc_fields["config"]): AccountInfo("cfg", 1, str(DBC_PROGRAM_ID), encode(DBC_CONFIG_LAYOUT, config_fields)),
            str(dbc_fields["base_mint"]): AccountInfo("mint", 1, str(TOKEN_2022_PROGRAM_ID), b""),
        }
        mock_gateway.get_account_info.side_effect = lambda address: accounts.get(address)
        reader = PoolStateReader(mock_gateway, sleep=no_sleep)

        state = await reader.fetch_pool("pool1", PoolKind.BONDING_CURVE)
        again = await reader.fetch_pool("pool1", PoolKind.BONDING_CURVE)

        assert again is state
        assert state.base_token_program == str(TOKEN_2022_PROGRAM_ID)
        assert state.quote_token_program != str(TOKEN_2022_PROGRAM_ID)

    @pytest.mark.asyncio
    async def test_missing_account_retries_then_raises(self, mock_gateway, no_sleep):
        reader = PoolStateReader(mock_gateway, sleep=no_sleep)

        with pytest.raises(LookupError):
            await reader.fetch_pool("ghost", PoolKind.AMM)

        assert mock_gateway.get_account_info.await_count == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_detect_kind(self, mock_gateway, no_sleep):
        mock_gateway.get_account_info.return_value = AccountInfo("p", 1, str(DAMM_V2_PROGRAM_ID), b"")
        reader = PoolStateReader(mock_gateway, sleep=no_sleep)

        assert await reader.detect_kind("p") == PoolKind.AMM

        mock_gateway.get_account_info.return_value = AccountInfo("p", 1, "11111111111111111111111111111111", b"")
        with pytest.raises(ValueError):
            await reader.detect_kind("p")

    @pytest.mark.asyncio
    async def test_fetch_positions_filters_by_pool(self, mock_gateway, no_sleep):
        owner = str(pubkey())
        pool = pubkey()
        mine, elsewhere = pubkey(), pubkey()

        def nft(mint):
            return {
                "pubkey": f"ata-{mint}",
                "account": {"data": {"parsed": {"info": {
                    "mint": str(mint), "tokenAmount": {"amount": "1", "decimals": 0},
                }}}},
            }

        mock_gateway.get_token_accounts_by_owner.return_value = [nft(mine), nft(elsewhere)]
        mock_gateway.get_multiple_accounts.return_value = [
            AccountInfo("a", 1, str(DAMM_V2_PROGRAM_ID), encode(DAMM_POSITION_LAYOUT, {"pool": pool, "nft_mint": mine})),
            AccountInfo("b", 1, str(DAMM_V2_PROGRAM_ID), encode(DAMM_POSITION_LAYOUT, {"pool": pubkey(), "nft_mint": elsewhere})),
        ]
        reader = PoolStateReader(mock_gateway, sleep=no_sleep)

        positions = await reader.fetch_positions(str(pool), owner)

        assert len(positions) == 1
        assert positions[0].address == str(position_address(mine))
        assert positions[0].nft_account == f"ata-{mine}"


class TestInstructionBuilder:

    def _pool(self, dbc_fields, config_fields):
        data = encode(DBC_VIRTUAL_POOL_LAYOUT, dbc_fields)
        return decode_dbc_pool(str(pubkey()), data, encode(DBC_CONFIG_LAYOUT, config_fields))

    def test_creator_fee_sequence(self, dbc_fields, config_fields):
        pool = self._pool(dbc_fields, config_fields)
        claimant = dbc_fields["creator"]

        instructions = ClaimInstructionBuilder().build(ClaimAction.CREATOR_FEE, pool, claimant, max_quote_amount=7)

        # base ATA, quote ATA, claim, WSOL close
        assert len(instructions) == 4
        claim = instructions[2]
        assert claim.program_id == DBC_PROGRAM_ID
        assert bytes(claim.data)[:8] == instruction_discriminator("claim_creator_trading_fee")
        assert int.from_bytes(bytes(claim.data)[16:24], "little") == 7
        assert [m.pubkey for m in claim.accounts if m.is_signer] == [claimant]

    def test_surplus_is_quote_only(self, dbc_fields, config_fields):
        pool = self._pool(dbc_fields, config_fields)

        instructions = ClaimInstructionBuilder().build(ClaimAction.SURPLUS, pool, dbc_fields["creator"])

        assert len(instructions) == 3
        assert bytes(instructions[1].data)[:8] == instruction_discriminator("creator_withdraw_surplus")

    def test_action_must_match_pool_kind(self, dbc_fields, config_fields):
        pool = self._pool(dbc_fields, config_fields)

        with pytest.raises(ValueError):
            ClaimInstructionBuilder().build(ClaimAction.POSITION_FEE, pool, dbc_fields["creator"])
