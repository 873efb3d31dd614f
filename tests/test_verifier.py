"""
Tests for the Transaction Verifier.

Scenario C: a 50 USDC deposit that moved 49.6 is within tolerance, 40 is not.
"""

from decimal import Decimal

import pytest
from solders.keypair import Keypair

from spark_fees.errors import RpcTransientError
from spark_fees.types import USDC_MINT, TransferDirection
from spark_fees.verification.verifier import TransactionVerifier

from tests.conftest import make_tx_view, token_balance

INVESTOR = str(Keypair().pubkey())
PROJECT = str(Keypair().pubkey())
OTHER_MINT = str(Keypair().pubkey())


def usdc_transfer(signer=INVESTOR, pre="100", post="50.4", err=None, mint=USDC_MINT):
    return make_tx_view(
        signature="inv-sig",
        account_keys=[signer, PROJECT],
        signers=[signer],
        err=err,
        pre_token_balances=[token_balance(signer, mint, pre)],
        post_token_balances=[token_balance(signer, mint, post)],
    )


@pytest.fixture
def verifier(mock_gateway, no_sleep):
    return TransactionVerifier(mock_gateway, retry_delay=2.0, sleep=no_sleep)


class TestVerify:
    """Tests for TransactionVerifier.verify."""

    @pytest.mark.asyncio
    async def test_scenario_c_within_tolerance(self, verifier, mock_gateway):
        mock_gateway.get_transaction.return_value = usdc_transfer(post="50.4")

        result = await verifier.verify("inv-sig", INVESTOR, 50, "deposit")

        assert result.valid
        assert result.transfer.token_delta == Decimal("49.6")
        assert result.transfer.decimals == 6
        mock_gateway.get_transaction.assert_awaited_with("inv-sig", encoding="jsonParsed")

    @pytest.mark.asyncio
    async def test_scenario_c_short_transfer(self, verifier, mock_gateway):
        mock_gateway.get_transaction.return_value = usdc_transfer(post="60")

        result = await verifier.verify("inv-sig", INVESTOR, 50, TransferDirection.DEPOSIT)

        assert not result.valid
        assert "decreased by 40" in result.reason

    @pytest.mark.asyncio
    async def test_withdraw_checks_increase(self, verifier, mock_gateway):
        mock_gateway.get_transaction.return_value = usdc_transfer(pre="10", post="35")

        assert (await verifier.verify("inv-sig", INVESTOR, 25, "withdraw")).valid
        assert not (await verifier.verify("inv-sig", INVESTOR, 30, "withdraw")).valid

    @pytest.mark.asyncio
    async def test_wrong_signer(self, verifier, mock_gateway):
        mock_gateway.get_transaction.return_value = usdc_transfer()

        result = await verifier.verify("inv-sig", str(Keypair().pubkey()), 50, "deposit")

        assert not result.valid
        assert "signer" in result.reason

    @pytest.mark.asyncio
    async def test_failed_transaction(self, verifier, mock_gateway):
        mock_gateway.get_transaction.return_value = usdc_transfer(err={"InstructionError": [0, "Custom"]})

        result = await verifier.verify("inv-sig", INVESTOR, 50, "deposit")

        assert result.reason == "Transaction failed on-chain"

    @pytest.mark.asyncio
    async def test_retries_once_before_not_found(self, verifier, mock_gateway, no_sleep):
        mock_gateway.get_transaction.return_value = None

        result = await verifier.verify("inv-sig", INVESTOR, 50, "deposit")

        assert result.reason == "Transaction not found on-chain (after retry)"
        assert mock_gateway.get_transaction.await_count == 2
        no_sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_found_on_retry(self, verifier, mock_gateway):
        mock_gateway.get_transaction.side_effect = [None, usdc_transfer()]

        assert (await verifier.verify("inv-sig", INVESTOR, 50, "deposit")).valid

    @pytest.mark.asyncio
    async def test_rpc_outage_is_invalid_not_raised(self, verifier, mock_gateway):
        mock_gateway.get_transaction.side_effect = RpcTransientError("all endpoints down")

        result = await verifier.verify("inv-sig", INVESTOR, 50, "deposit")

        assert not result.valid
        assert "RPC unavailable" in result.reason

    @pytest.mark.asyncio
    async def test_unknown_direction(self, verifier):
        result = await verifier.verify("inv-sig", INVESTOR, 50, "sideways")
        assert not result.valid

    @pytest.mark.asyncio
    async def test_other_mints_are_ignored(self, verifier, mock_gateway):
        mock_gateway.get_transaction.return_value = usdc_transfer(mint=OTHER_MINT)

        result = await verifier.verify("inv-sig", INVESTOR, 50, "deposit")

        # no accepted-mint balances for the signer: signer and success are enough
        assert result.valid
        assert result.transfer.token_delta is None

    @pytest.mark.asyncio
    async def test_account_closed_in_transaction(self, verifier, mock_gateway):
        tx = usdc_transfer()
        tx.post_token_balances = []
        mock_gateway.get_transaction.return_value = tx

        result = await verifier.verify("inv-sig", INVESTOR, 100, "deposit")

        assert result.valid
        assert result.transfer.token_delta == Decimal("100")
