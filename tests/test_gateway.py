"""
Tests for the Chain Gateway.

Covers endpoint rotation, retry classes and signature confirmation.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
from solders.keypair import Keypair

from spark_fees.chain.endpoints import RpcEndpoint
from spark_fees.chain.gateway import ChainGateway, _backoff_delay
from spark_fees.chain.models import ConfirmationStatus
from spark_fees.chain.transactions import build_transaction, transfer_lamports_ix
from spark_fees.errors import ChainRejectedError, RateLimitedError, RpcTimeoutError, RpcTransientError

from tests.conftest import BLOCKHASH


def ok(result):
    return 200, {"jsonrpc": "2.0", "id": 1, "result": result}


@pytest.fixture
def endpoints():
    return [
        RpcEndpoint(name="alpha", url="https://alpha.example/rpc"),
        RpcEndpoint(name="beta", url="https://beta.example/rpc"),
    ]


@pytest.fixture
def gateway(endpoints, no_sleep):
    return ChainGateway(endpoints, max_attempts=3, backoff_base=0.5, backoff_max=8.0, sleep=no_sleep)


def rpc_error(message, code=-32002):
    return 200, {"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}}


@pytest.fixture
def signed_tx():
    payer = Keypair()
    return build_transaction([transfer_lamports_ix(payer.pubkey(), Keypair().pubkey(), 5_000)], payer, BLOCKHASH)


def called_endpoints(post_mock):
    return [call.args[0].name for call in post_mock.await_args_list]


class TestBackoff:
    """Tests for the backoff schedule."""

    def test_exponential_with_bounded_jitter(self):
        for attempt, base_delay in [(0, 0.5), (1, 1.0), (2, 2.0)]:
            delay = _backoff_delay(0.5, attempt, 8.0)
            assert base_delay <= delay <= base_delay * 1.1

    def test_capped_at_max(self):
        assert _backoff_delay(0.5, 10, 8.0) <= 8.8


class TestCall:
    """Tests for ChainGateway.call."""

    @pytest.mark.asyncio
    async def test_round_robin_across_calls(self, gateway):
        post = AsyncMock(side_effect=[ok(1), ok(2), ok(3)])
        with patch.object(gateway, "_post", post):
            assert await gateway.call("getSlot") == 1
            assert await gateway.call("getSlot") == 2
            assert await gateway.call("getSlot") == 3

        assert called_endpoints(post) == ["alpha", "beta", "alpha"]

    @pytest.mark.asyncio
    async def test_rate_limit_rotates_without_backoff(self, gateway, no_sleep):
        post = AsyncMock(side_effect=[(429, None), ok(42)])
        with patch.object(gateway, "_post", post):
            assert await gateway.call("getBalance", ["addr"]) == 42

        assert called_endpoints(post) == ["alpha", "beta"]
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_error_code_rotates(self, gateway, no_sleep):
        limited = (200, {"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "Node is behind"}})
        post = AsyncMock(side_effect=[limited, ok("done")])
        with patch.object(gateway, "_post", post):
            assert await gateway.call("getSlot") == "done"

        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion_raises(self, gateway):
        post = AsyncMock(return_value=(429, None))
        with patch.object(gateway, "_post", post):
            with pytest.raises(RateLimitedError):
                await gateway.call("getSlot")

        # every endpoint gets max_attempts tries
        assert post.await_count == 6

    @pytest.mark.asyncio
    async def test_transient_failure_backs_off_on_same_endpoint(self, gateway, no_sleep):
        post = AsyncMock(side_effect=[(503, None), ok("recovered")])
        with patch.object(gateway, "_post", post):
            assert await gateway.call("getSlot") == "recovered"

        assert called_endpoints(post) == ["alpha", "alpha"]
        no_sleep.assert_awaited_once()
        delay = no_sleep.await_args.args[0]
        assert 0.5 <= delay <= 0.55

    @pytest.mark.asyncio
    async def test_connection_error_is_retried(self, gateway):
        post = AsyncMock(side_effect=[aiohttp.ClientConnectionError("reset"), ok(7)])
        with patch.object(gateway, "_post", post):
            assert await gateway.call("getSlot") == 7

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_to_timeout_error(self, gateway, no_sleep):
        post = AsyncMock(side_effect=asyncio.TimeoutError())
        with patch.object(gateway, "_post", post):
            with pytest.raises(RpcTimeoutError) as exc_info:
                await gateway.call("getTransaction", ["sig"])

        assert post.await_count == 3
        assert no_sleep.await_count == 2
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_simulation_failure_is_not_retried(self, gateway, no_sleep):
        rejected = (200, {
            "jsonrpc": "2.0",
            "id": 1,
            "error": {"code": -32002, "message": "Transaction simulation failed: custom program error: 0x1771"},
        })
        post = AsyncMock(return_value=rejected)
        with patch.object(gateway, "_post", post):
            with pytest.raises(ChainRejectedError):
                await gateway.call("sendTransaction", ["tx"])

        assert post.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_blockhash_is_transient(self, gateway):
        stale = (200, {"jsonrpc": "2.0", "id": 1, "error": {"code": -32002, "message": "Blockhash not found"}})
        post = AsyncMock(side_effect=[stale, stale, stale])
        with patch.object(gateway, "_post", post):
            with pytest.raises(RpcTransientError):
                await gateway.call("sendTransaction", ["tx"])

        assert post.await_count == 3

    def test_requires_an_endpoint(self):
        with pytest.raises(ValueError):
            ChainGateway([])


class TestSubmit:
    """Tests for ChainGateway.submit."""

    @pytest.mark.asyncio
    async def test_returns_node_signature(self, gateway, signed_tx):
        signature = str(signed_tx.signatures[0])
        post = AsyncMock(return_value=ok(signature))
        with patch.object(gateway, "_post", post):
            assert await gateway.submit(signed_tx) == signature

        params = post.await_args.args[1]["params"]
        assert params[1]["encoding"] == "base64"

    @pytest.mark.asyncio
    async def test_resend_after_timeout_already_processed(self, gateway, signed_tx):
        post = AsyncMock(side_effect=[
            asyncio.TimeoutError(),
            rpc_error("Transaction simulation failed: This transaction has already been processed"),
        ])
        with patch.object(gateway, "_post", post):
            signature = await gateway.submit(signed_tx)

        assert signature == str(signed_tx.signatures[0])
        assert post.await_count == 2

    @pytest.mark.asyncio
    async def test_other_rejections_still_raise(self, gateway, signed_tx):
        post = AsyncMock(return_value=rpc_error("Transaction simulation failed: custom program error: 0x1771"))
        with patch.object(gateway, "_post", post):
            with pytest.raises(ChainRejectedError):
                await gateway.submit(signed_tx)


class TestConfirm:
    """Tests for ChainGateway.confirm."""

    @pytest.mark.asyncio
    async def test_confirmed_after_pending_poll(self, gateway):
        call = AsyncMock(side_effect=[
            {"value": [None]},
            {"value": [{"slot": 88, "err": None, "confirmationStatus": "confirmed"}]},
        ])
        with patch.object(gateway, "call", call):
            confirmation = await gateway.confirm("sig-abc", timeout=10)

        assert confirmation.status == ConfirmationStatus.CONFIRMED
        assert confirmation.slot == 88
        assert confirmation.confirmed

    @pytest.mark.asyncio
    async def test_on_chain_error_is_failed(self, gateway):
        err = {"InstructionError": [2, {"Custom": 6001}]}
        call = AsyncMock(return_value={"value": [{"slot": 3, "err": err, "confirmationStatus": "confirmed"}]})
        with patch.object(gateway, "call", call):
            confirmation = await gateway.confirm("sig-abc", timeout=10)

        assert confirmation.status == ConfirmationStatus.FAILED
        assert confirmation.error == err

    @pytest.mark.asyncio
    async def test_times_out_when_never_seen(self, gateway):
        call = AsyncMock(return_value={"value": [None]})
        with patch.object(gateway, "call", call):
            confirmation = await gateway.confirm("sig-abc", timeout=2, poll_interval=0.5)

        assert confirmation.status == ConfirmationStatus.TIMED_OUT
        assert not confirmation.confirmed

    @pytest.mark.asyncio
    async def test_status_errors_keep_polling(self, gateway):
        call = AsyncMock(side_effect=[
            RpcTransientError("flaky"),
            {"value": [{"slot": 9, "err": None, "confirmationStatus": "finalized"}]},
        ])
        with patch.object(gateway, "call", call):
            confirmation = await gateway.confirm("sig-abc", timeout=10)

        assert confirmation.confirmed


class TestTypedReads:
    """Tests for typed read helpers."""

    @pytest.mark.asyncio
    async def test_missing_transaction_is_none(self, gateway):
        with patch.object(gateway, "call", AsyncMock(return_value=None)):
            assert await gateway.get_transaction("sig") is None

    @pytest.mark.asyncio
    async def test_rent_minimum_is_cached(self, gateway):
        call = AsyncMock(return_value=890_880)
        with patch.object(gateway, "call", call):
            assert await gateway.get_minimum_balance_for_rent_exemption(0) == 890_880
            assert await gateway.get_minimum_balance_for_rent_exemption(0) == 890_880
            await gateway.get_minimum_balance_for_rent_exemption(0, force_refresh=True)

        assert call.await_count == 2

    @pytest.mark.asyncio
    async def test_account_info_decodes_base64(self, gateway):
        value = {"lamports": 5, "owner": "11111111111111111111111111111111", "data": ["AQID", "base64"]}
        with patch.object(gateway, "call", AsyncMock(return_value={"value": value})):
            account = await gateway.get_account_info("addr")

        assert account.lamports == 5
        assert account.data == b"\x01\x02\x03"

    def test_stats(self, gateway):
        stats = gateway.get_stats()
        assert stats["endpoints"] == ["alpha", "beta"]
        assert stats["total_requests"] == 0
