"""Claim instruction builders for Meteora DBC and DAMM v2."""

import struct
from typing import List, Optional

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from spark_fees.chain.transactions import (
    NATIVE_MINT,
    close_account_ix,
    create_ata_idempotent_ix,
    get_associated_token_address,
    instruction_discriminator,
)
from spark_fees.claims.pool_state import PoolState, PositionState, event_authority, pool_authority
from spark_fees.types import ClaimAction, PoolKind

# withdraw_migration_fee flag values
MIGRATION_FEE_PARTNER = 0
MIGRATION_FEE_CREATOR = 1


def _ro(key: Pubkey) -> AccountMeta:
    return AccountMeta(key, is_signer=False, is_writable=False)


def _rw(key: Pubkey) -> AccountMeta:
    return AccountMeta(key, is_signer=False, is_writable=True)


def _signer(key: Pubkey) -> AccountMeta:
    return AccountMeta(key, is_signer=True, is_writable=True)


def _event_cpi_accounts(program: Pubkey) -> List[AccountMeta]:
    return [_ro(event_authority(program)), _ro(program)]


class ClaimInstructionBuilder:
    """
    Builds the full instruction list for one claim action.

    The list is: idempotent ATA creation for every token the claim can pay
    into, the claim itself, then a close of the claimant's WSOL account so
    quote proceeds land as native SOL.
    """

    def __init__(self, max_base_amount: int = 1_000_000_000, max_quote_amount: int = 1_000_000_000):
        self.max_base_amount = max_base_amount
        self.max_quote_amount = max_quote_amount

    def build(
        self,
        action: ClaimAction,
        pool: PoolState,
        claimant: Pubkey,
        position: Optional[PositionState] = None,
        max_base_amount: Optional[int] = None,
        max_quote_amount: Optional[int] = None,
    ) -> List[Instruction]:
        max_base = self.max_base_amount if max_base_amount is None else max_base_amount
        max_quote = self.max_quote_amount if max_quote_amount is None else max_quote_amount

        base_mint = Pubkey.from_string(pool.base_mint)
        quote_mint = Pubkey.from_string(pool.quote_mint)
        base_program = Pubkey.from_string(pool.base_token_program)
        quote_program = Pubkey.from_string(pool.quote_token_program)

        quote_only = action in (ClaimAction.SURPLUS, ClaimAction.MIGRATION_FEE)
        instructions: List[Instruction] = []
        if not quote_only:
            instructions.append(create_ata_idempotent_ix(claimant, claimant, base_mint, base_program))
        instructions.append(create_ata_idempotent_ix(claimant, claimant, quote_mint, quote_program))

        if pool.kind == PoolKind.BONDING_CURVE:
            if action == ClaimAction.CREATOR_FEE:
                instructions.append(self.dbc_claim_creator_trading_fee(pool, claimant, max_base, max_quote))
            elif action == ClaimAction.PARTNER_FEE:
                instructions.append(self.dbc_claim_partner_trading_fee(pool, claimant, max_base, max_quote))
            elif action == ClaimAction.SURPLUS:
                instructions.append(self.dbc_creator_withdraw_surplus(pool, claimant))
            elif action == ClaimAction.MIGRATION_FEE:
                instructions.append(self.dbc_withdraw_migration_fee(pool, claimant, MIGRATION_FEE_CREATOR))
            else:
                raise ValueError(f"{action.value} is not a bonding curve action")
        else:
            if action == ClaimAction.PARTNER_FEE:
                instructions.append(self.damm_claim_partner_fee(pool, claimant, max_base, max_quote))
            elif action == ClaimAction.POSITION_FEE:
                if position is None:
                    raise ValueError("position_fee requires a position")
                instructions.append(self.damm_claim_position_fee(pool, position, claimant))
            else:
                raise ValueError(f"{action.value} is not an AMM action")

        if quote_mint == NATIVE_MINT:
            wsol_account = get_associated_token_address(claimant, quote_mint, quote_program)
            instructions.append(close_account_ix(wsol_account, claimant, claimant, quote_program))

        return instructions

    # =========================================================================
    # DBC
    # =========================================================================

    @staticmethod
    def dbc_claim_creator_trading_fee(pool: PoolState, creator: Pubkey, max_base: int, max_quote: int) -> Instruction:
        program = Pubkey.from_string(pool.program_id)
        base_mint = Pubkey.from_string(pool.base_mint)
        quote_mint = Pubkey.from_string(pool.quote_mint)
        base_program = Pubkey.from_string(pool.base_token_program)
        quote_program = Pubkey.from_string(pool.quote_token_program)
        accounts = [
            _ro(pool_authority(program)),
            _rw(Pubkey.from_string(pool.address)),
            _rw(get_associated_token_address(creator, base_mint, base_program)),
            _rw(get_associated_token_address(creator, quote_mint, quote_program)),
            _rw(Pubkey.from_string(pool.base_vault)),
            _rw(Pubkey.from_string(pool.quote_vault)),
            _ro(base_mint),
            _ro(quote_mint),
            _signer(creator),
            _ro(base_program),
            _ro(quote_program),
        ] + _event_cpi_accounts(program)
        data = instruction_discriminator("claim_creator_trading_fee") + struct.pack("<QQ", max_base, max_quote)
        return Instruction(program, data, accounts)

    @staticmethod
    def dbc_claim_partner_trading_fee(pool: PoolState, fee_claimer: Pubkey, max_base: int, max_quote: int) -> Instruction:
        program = Pubkey.from_string(pool.program_id)
        base_mint = Pubkey.from_string(pool.base_mint)
        quote_mint = Pubkey.from_string(pool.quote_mint)
        base_program = Pubkey.from_string(pool.base_token_program)
        quote_program = Pubkey.from_string(pool.quote_token_program)
        accounts = [
            _ro(pool_authority(program)),
            _ro(Pubkey.from_string(pool.config)),
            _rw(Pubkey.from_string(pool.address)),
            _rw(get_associated_token_address(fee_claimer, base_mint, base_program)),
            _rw(get_associated_token_address(fee_claimer, quote_mint, quote_program)),
            _rw(Pubkey.from_string(pool.base_vault)),
            _rw(Pubkey.from_string(pool.quote_vault)),
            _ro(base_mint),
            _ro(quote_mint),
            _signer(fee_claimer),
            _ro(base_program),
            _ro(quote_program),
        ] + _event_cpi_accounts(program)
        data = instruction_discriminator("claim_trading_fee") + struct.pack("<QQ", max_base, max_quote)
        return Instruction(program, data, accounts)

    @staticmethod
    def _dbc_quote_withdrawal(pool: PoolState, sender: Pubkey, data: bytes) -> Instruction:
        program = Pubkey.from_string(pool.program_id)
        quote_mint = Pubkey.from_string(pool.quote_mint)
        quote_program = Pubkey.from_string(pool.quote_token_program)
        accounts = [
            _ro(pool_authority(program)),
            _ro(Pubkey.from_string(pool.config)),
            _rw(Pubkey.from_string(pool.address)),
            _rw(get_associated_token_address(sender, quote_mint, quote_program)),
            _rw(Pubkey.from_string(pool.quote_vault)),
            _ro(quote_mint),
            _signer(sender),
            _ro(quote_program),
        ] + _event_cpi_accounts(program)
        return Instruction(program, data, accounts)

    @classmethod
    def dbc_creator_withdraw_surplus(cls, pool: PoolState, creator: Pubkey) -> Instruction:
        return cls._dbc_quote_withdrawal(pool, creator, instruction_discriminator("creator_withdraw_surplus"))

    @classmethod
    def dbc_withdraw_migration_fee(cls, pool: PoolState, sender: Pubkey, flag: int) -> Instruction:
        data = instruction_discriminator("withdraw_migration_fee") + struct.pack("<B", flag)
        return cls._dbc_quote_withdrawal(pool, sender, data)

    # =========================================================================
    # DAMM v2
    # =========================================================================

    @staticmethod
    def damm_claim_partner_fee(pool: PoolState, partner: Pubkey, max_a: int, max_b: int) -> Instruction:
        program = Pubkey.from_string(pool.program_id)
        mint_a = Pubkey.from_string(pool.base_mint)
        mint_b = Pubkey.from_string(pool.quote_mint)
        program_a = Pubkey.from_string(pool.base_token_program)
        program_b = Pubkey.from_string(pool.quote_token_program)
        accounts = [
            _ro(pool_authority(program)),
            _rw(Pubkey.from_string(pool.address)),
            _rw(get_associated_token_address(partner, mint_a, program_a)),
            _rw(get_associated_token_address(partner, mint_b, program_b)),
            _rw(Pubkey.from_string(pool.base_vault)),
            _rw(Pubkey.from_string(pool.quote_vault)),
            _ro(mint_a),
            _ro(mint_b),
            _signer(partner),
            _ro(program_a),
            _ro(program_b),
        ] + _event_cpi_accounts(program)
        data = instruction_discriminator("claim_partner_fee") + struct.pack("<QQ", max_a, max_b)
        return Instruction(program, data, accounts)

    @staticmethod
    def damm_claim_position_fee(pool: PoolState, position: PositionState, owner: Pubkey) -> Instruction:
        program = Pubkey.from_string(pool.program_id)
        mint_a = Pubkey.from_string(pool.base_mint)
        mint_b = Pubkey.from_string(pool.quote_mint)
        program_a = Pubkey.from_string(pool.base_token_program)
        program_b = Pubkey.from_string(pool.quote_token_program)
        accounts = [
            _ro(pool_authority(program)),
            _ro(Pubkey.from_string(pool.address)),
            _rw(Pubkey.from_string(position.address)),
            _rw(get_associated_token_address(owner, mint_a, program_a)),
            _rw(get_associated_token_address(owner, mint_b, program_b)),
            _rw(Pubkey.from_string(pool.base_vault)),
            _rw(Pubkey.from_string(pool.quote_vault)),
            _ro(mint_a),
            _ro(mint_b),
            _ro(Pubkey.from_string(position.nft_account)),
            _signer(owner),
            _ro(program_a),
            _ro(program_b),
        ] + _event_cpi_accounts(program)
        return Instruction(program, instruction_discriminator("claim_position_fee"), accounts)
