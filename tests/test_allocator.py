"""
Tests for the Distribution Allocator.

The split itself is pure and tested without a gateway; transfer behaviour uses
the mocked gateway from conftest.
"""

import pytest

from spark_fees.chain.models import AccountInfo, Confirmation, ConfirmationStatus
from spark_fees.distribution.allocator import DistributionAllocator, compute_allocation
from spark_fees.errors import ChainRejectedError, RpcTransientError
from spark_fees.types import DistributionStatus

from tests.conftest import TREASURY_WALLETS

TREASURY = TREASURY_WALLETS[0]


@pytest.fixture
def stakeholders(engine_config):
    return engine_config.stakeholders


@pytest.fixture
def allocator(mock_gateway, signer, stakeholders, no_sleep):
    return DistributionAllocator(mock_gateway, signer, stakeholders, dust_floor=10_000, transfer_delay=2.0, sleep=no_sleep)


class TestComputeAllocation:
    """Tests for the pure split."""

    def test_scenario_a(self, stakeholders):
        legs = compute_allocation(1_000_000, stakeholders, TREASURY)

        assert [leg.amount for leg in legs] == [50_000, 50_000, 50_000, 350_000, 50_000, 450_000]
        assert [leg.stakeholder_id for leg in legs][-1] == "treasury"
        assert legs[-1].address == TREASURY
        assert all(leg.status == DistributionStatus.PLANNED for leg in legs)

    @pytest.mark.parametrize("total", [10_000, 10_001, 123_457, 999_999_999, 7_777_777_777])
    def test_legs_sum_to_total(self, stakeholders, total):
        legs = compute_allocation(total, stakeholders, TREASURY)

        assert sum(leg.amount for leg in legs) == total
        for leg in legs[:-1]:
            assert leg.amount == total * leg.percentage_bps // 10_000

    def test_below_dust_floor_is_empty(self, stakeholders):
        assert compute_allocation(9_999, stakeholders, TREASURY) == []
        assert compute_allocation(0, stakeholders, TREASURY, dust_floor=0) == []

    def test_zero_legs_are_skipped(self, stakeholders):
        legs = compute_allocation(19, stakeholders, TREASURY, dust_floor=0)

        assert [leg.status for leg in legs[:3]] == [DistributionStatus.SKIPPED] * 3
        assert legs[3].amount == 6
        assert legs[-1].amount == 13

    def test_missing_treasury_is_skipped(self, stakeholders):
        legs = compute_allocation(1_000_000, stakeholders, None)

        assert legs[-1].status == DistributionStatus.SKIPPED
        assert legs[-1].amount == 450_000
        assert legs[-1].error_detail == "no treasury address"


class TestDistribute:
    """Tests for executing transfers."""

    @pytest.mark.asyncio
    async def test_all_legs_sent(self, allocator, mock_gateway, no_sleep):
        mock_gateway.get_account_info.return_value = AccountInfo(
            address=TREASURY, lamports=5_000_000, owner="11111111111111111111111111111111", data=b""
        )

        legs = await allocator.distribute(1_000_000, TREASURY)

        assert [leg.status for leg in legs] == [DistributionStatus.SENT] * 6
        assert [leg.tx_signature for leg in legs] == [f"sig{i}" for i in range(1, 7)]
        assert legs[-1].rent_topup == 0
        assert mock_gateway.submit.await_count == 6
        # paced between transfers, not before the first
        assert no_sleep.await_count == 5

    @pytest.mark.asyncio
    async def test_unfunded_treasury_gets_rent_topup(self, allocator, mock_gateway):
        mock_gateway.get_account_info.return_value = None

        legs = await allocator.distribute(1_000_000, TREASURY)

        assert legs[-1].rent_topup == 890_880
        assert legs[-1].transfer_amount == 450_000 + 890_880
        assert legs[-1].amount == 450_000

    @pytest.mark.asyncio
    async def test_rent_check_failure_sends_without_topup(self, allocator, mock_gateway):
        mock_gateway.get_minimum_balance_for_rent_exemption.side_effect = RpcTransientError("down")

        legs = await allocator.distribute(1_000_000, TREASURY)

        assert legs[-1].rent_topup == 0
        assert legs[-1].status == DistributionStatus.SENT

    @pytest.mark.asyncio
    async def test_failed_leg_does_not_stop_others(self, allocator, mock_gateway):
        calls = {"n": 0}

        async def submit(tx, skip_preflight=False):
            calls["n"] += 1
            if calls["n"] == 2:
                raise ChainRejectedError("insufficient funds")
            return f"sig{calls['n']}"

        mock_gateway.submit.side_effect = submit

        legs = await allocator.distribute(1_000_000, TREASURY)

        assert legs[1].status == DistributionStatus.FAILED
        assert "insufficient funds" in legs[1].error_detail
        assert [leg.status for i, leg in enumerate(legs) if i != 1] == [DistributionStatus.SENT] * 5

    @pytest.mark.asyncio
    async def test_unconfirmed_leg_is_failed(self, allocator, mock_gateway):
        mock_gateway.confirm.side_effect = lambda signature, timeout=30.0, poll_interval=None: Confirmation(
            signature, ConfirmationStatus.TIMED_OUT
        )

        legs = await allocator.distribute(1_000_000, TREASURY)

        assert all(leg.status == DistributionStatus.FAILED for leg in legs)
        assert legs[0].tx_signature == "sig1"

    @pytest.mark.asyncio
    async def test_missing_treasury_sends_fixed_legs_only(self, allocator, mock_gateway):
        legs = await allocator.distribute(1_000_000, None)

        assert mock_gateway.submit.await_count == 5
        assert legs[-1].status == DistributionStatus.SKIPPED
        mock_gateway.get_minimum_balance_for_rent_exemption.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dust_sends_nothing(self, allocator, mock_gateway):
        assert await allocator.distribute(5_000, TREASURY) == []
        mock_gateway.submit.assert_not_awaited()
