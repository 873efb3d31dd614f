"""Per-action claim lifecycle: an explicit state machine and its result record."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from spark_fees.claims.resolver import ResolutionMethod, ResolvedAmount
from spark_fees.errors import ErrorKind, FeeEngineError
from spark_fees.types import ClaimAction, ClaimStatus


class ActionState(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMING = "confirming"
    RESOLVED = "resolved"
    FAILED = "failed"
    SKIPPED = "skipped"


TRANSITIONS: Dict[ActionState, FrozenSet[ActionState]] = {
    ActionState.PENDING: frozenset({ActionState.SUBMITTED, ActionState.SKIPPED, ActionState.FAILED}),
    ActionState.SUBMITTED: frozenset({ActionState.CONFIRMING, ActionState.FAILED}),
    ActionState.CONFIRMING: frozenset({ActionState.RESOLVED, ActionState.FAILED}),
    ActionState.RESOLVED: frozenset(),
    ActionState.FAILED: frozenset(),
    ActionState.SKIPPED: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)


class InvalidTransitionError(FeeEngineError):
    """An action tried to move along an edge the lifecycle does not allow."""
    code = "CLAIM_001"


@dataclass
class ClaimResult:
    action: ClaimAction
    status: ClaimStatus
    tx_signature: Optional[str] = None
    resolved_amount: int = 0
    method: Optional[ResolutionMethod] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "status": self.status.value,
            "tx_signature": self.tx_signature,
            "resolved_amount": self.resolved_amount,
            "method": self.method.value if self.method else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_detail": self.error_detail,
        }


@dataclass
class ActionRun:
    """Tracks one claim action through build, submit, confirm and resolve."""
    action: ClaimAction
    state: ActionState = ActionState.PENDING
    tx_signature: Optional[str] = None
    resolution: Optional[ResolvedAmount] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    history: List[ActionState] = field(default_factory=lambda: [ActionState.PENDING])

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, new_state: ActionState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.action.value}: {self.state.value} -> {new_state.value} is not allowed",
                {"action": self.action.value, "from": self.state.value, "to": new_state.value},
            )
        self.state = new_state
        self.history.append(new_state)

    def submitted(self, signature: str) -> None:
        self.tx_signature = signature
        self.advance(ActionState.SUBMITTED)

    def confirming(self) -> None:
        self.advance(ActionState.CONFIRMING)

    def resolved(self, resolution: ResolvedAmount) -> None:
        self.resolution = resolution
        if not resolution.is_resolved:
            self.error_kind = ErrorKind.AMOUNT_UNRESOLVED
            self.error_detail = resolution.detail
        self.advance(ActionState.RESOLVED)

    def failed(self, kind: ErrorKind, detail: str) -> None:
        self.error_kind = kind
        self.error_detail = detail
        self.advance(ActionState.FAILED)

    def skipped(self, kind: Optional[ErrorKind], detail: str) -> None:
        self.error_kind = kind
        self.error_detail = detail
        self.advance(ActionState.SKIPPED)

    def to_result(self) -> ClaimResult:
        if not self.is_terminal:
            raise InvalidTransitionError(f"{self.action.value} is still {self.state.value}")

        if self.state == ActionState.RESOLVED:
            status = ClaimStatus.SUCCESS
        elif self.state == ActionState.SKIPPED:
            status = ClaimStatus.SKIPPED
        else:
            status = ClaimStatus.FAILED

        resolution = self.resolution
        return ClaimResult(
            action=self.action,
            status=status,
            tx_signature=self.tx_signature,
            resolved_amount=resolution.amount if resolution else 0,
            method=resolution.method if resolution else None,
            error_kind=self.error_kind,
            error_detail=self.error_detail,
        )
