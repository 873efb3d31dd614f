"""Tests for the per-action claim state machine."""

import pytest

from spark_fees.claims.lifecycle import ActionRun, ActionState, InvalidTransitionError
from spark_fees.claims.resolver import ResolutionMethod, ResolvedAmount
from spark_fees.errors import ErrorKind
from spark_fees.types import ClaimAction, ClaimStatus


class TestActionRun:
    """Tests for ActionRun transitions."""

    def test_happy_path(self):
        run = ActionRun(ClaimAction.CREATOR_FEE)
        run.submitted("sig1")
        run.confirming()
        run.resolved(ResolvedAmount.event(5_000_000))

        result = run.to_result()

        assert run.history == [
            ActionState.PENDING, ActionState.SUBMITTED, ActionState.CONFIRMING, ActionState.RESOLVED,
        ]
        assert result.status == ClaimStatus.SUCCESS
        assert result.resolved_amount == 5_000_000
        assert result.method == ResolutionMethod.EVENT
        assert result.error_kind is None

    def test_unresolved_amount_is_still_success(self):
        run = ActionRun(ClaimAction.PARTNER_FEE)
        run.submitted("sig1")
        run.confirming()
        run.resolved(ResolvedAmount.unresolved("no plausible amount found"))

        result = run.to_result()

        assert result.status == ClaimStatus.SUCCESS
        assert result.resolved_amount == 0
        assert result.error_kind == ErrorKind.AMOUNT_UNRESOLVED

    def test_skip_from_pending(self):
        run = ActionRun(ClaimAction.MIGRATION_FEE)
        run.skipped(None, "Pool has not migrated yet")

        result = run.to_result()

        assert result.status == ClaimStatus.SKIPPED
        assert result.tx_signature is None
        assert result.error_detail == "Pool has not migrated yet"

    def test_failure_after_submit_keeps_signature(self):
        run = ActionRun(ClaimAction.SURPLUS)
        run.submitted("sig9")
        run.failed(ErrorKind.CHAIN_REJECTED, "custom program error")

        result = run.to_result()

        assert result.status == ClaimStatus.FAILED
        assert result.tx_signature == "sig9"
        assert result.to_dict()["error_kind"] == "ChainRejected"

    def test_cannot_resolve_without_confirming(self):
        run = ActionRun(ClaimAction.CREATOR_FEE)
        run.submitted("sig1")
        with pytest.raises(InvalidTransitionError):
            run.resolved(ResolvedAmount.event(1))

    def test_terminal_states_are_final(self):
        run = ActionRun(ClaimAction.CREATOR_FEE)
        run.skipped(ErrorKind.NOT_AUTHORIZED, "not claimant")
        with pytest.raises(InvalidTransitionError):
            run.submitted("sig1")

    def test_result_requires_terminal_state(self):
        run = ActionRun(ClaimAction.CREATOR_FEE)
        run.submitted("sig1")
        with pytest.raises(InvalidTransitionError):
            run.to_result()
