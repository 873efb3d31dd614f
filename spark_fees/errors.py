"""Exception hierarchy for the fee engine.

Action-level errors are caught by the orchestrator and allocator and recorded
on the per-action / per-leg result. Run-level errors propagate to the caller.
"""
import re
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Failure taxonomy shared by results, logs and exceptions."""
    NOT_AUTHORIZED = "NotAuthorized"
    RPC_TRANSIENT = "RpcTransient"
    CHAIN_REJECTED = "ChainRejected"
    AMOUNT_UNRESOLVED = "AmountUnresolved"
    LEDGER_OVERDRAW = "LedgerOverdraw"
    VERIFICATION_FAILED = "VerificationFailed"
    CONFIGURATION = "Configuration"
    INTERNAL = "Internal"


class FeeEngineError(Exception):
    """Base exception for all fee engine errors."""
    code: str = "FEE_000"
    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ConfigurationError(FeeEngineError):
    """Invalid or missing configuration."""
    code = "CFG_001"
    kind = ErrorKind.CONFIGURATION


class NotAuthorizedError(FeeEngineError):
    """Signing wallet is not the on-chain claimant for the pool."""
    code = "AUTH_001"
    kind = ErrorKind.NOT_AUTHORIZED

    def __init__(self, message: str, expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(message, {"expected": expected, "actual": actual})
        self.expected = expected
        self.actual = actual


class RpcTransientError(FeeEngineError):
    """RPC call failed for a reason that may succeed later."""
    code = "RPC_001"
    kind = ErrorKind.RPC_TRANSIENT
    retryable = True

    def __init__(self, message: str, endpoint: Optional[str] = None, method: Optional[str] = None):
        super().__init__(message, {"endpoint": endpoint, "method": method})
        self.endpoint = endpoint
        self.method = method


class RpcTimeoutError(RpcTransientError):
    """RPC call exceeded its deadline."""
    code = "RPC_002"


class RateLimitedError(RpcTransientError):
    """Endpoint signalled rate limiting."""
    code = "RPC_003"


class ChainRejectedError(FeeEngineError):
    """Transaction rejected by the cluster or confirmed with an on-chain error."""
    code = "CHAIN_001"
    kind = ErrorKind.CHAIN_REJECTED

    def __init__(self, message: str, signature: Optional[str] = None, chain_error: Any = None):
        super().__init__(message, {"signature": signature, "chain_error": str(chain_error) if chain_error else None})
        self.signature = signature
        self.chain_error = chain_error


class LedgerOverdrawError(FeeEngineError):
    """Requested claimed amount exceeds what is available."""
    code = "LEDGER_001"
    kind = ErrorKind.LEDGER_OVERDRAW

    def __init__(self, creator_id: str, requested: int, available: int, token_mint: Optional[str] = None):
        super().__init__(
            f"Claim of {requested} exceeds available {available} for creator {creator_id}",
            {"creator_id": creator_id, "token_mint": token_mint, "requested": requested, "available": available},
        )
        self.creator_id = creator_id
        self.requested = requested
        self.available = available


class VerificationFailedError(FeeEngineError):
    """Externally supplied transaction did not match chain state."""
    code = "VERIFY_001"
    kind = ErrorKind.VERIFICATION_FAILED

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message, {"signature": signature})
        self.signature = signature


class PayoutError(FeeEngineError):
    """Creator payout could not be performed."""
    code = "PAYOUT_001"


class SweepAbortedError(FeeEngineError):
    """Run-level failure; carries whatever the sweep had already produced."""
    code = "SWEEP_001"

    def __init__(self, message: str, partial_report: Any = None):
        super().__init__(message)
        self.partial_report = partial_report


def is_already_processed(error: Any) -> bool:
    """True when the cluster reports the transaction as already landed."""
    lower = str(error or "").lower()
    return "alreadyprocessed" in lower or "already been processed" in lower


def classify_rpc_error(error: Optional[str]) -> str:
    """Classify RPC error text as rate_limited, permanent, retryable or unknown."""
    if not error:
        return "unknown"

    lower = error.lower()
    if "429" in lower or "too many requests" in lower or "rate limit" in lower or "-32005" in lower:
        return "rate_limited"
    if is_already_processed(lower):
        return "permanent"
    if "simulation failed" in lower or "insufficientfunds" in lower or "insufficient funds" in lower:
        return "permanent"
    if "invalidaccountdata" in lower or "uninitializedaccount" in lower:
        return "permanent"
    if "signatureverificationfailed" in lower or "signature verification failed" in lower:
        return "permanent"
    if "custom program error" in lower or re.search(r"instructionerror", lower):
        return "permanent"
    if "blockhash" in lower or "accountinuse" in lower:
        return "retryable"
    if "timeout" in lower or "timed out" in lower:
        return "retryable"
    if "connection" in lower or "network" in lower or "503" in lower or "502" in lower:
        return "retryable"
    return "unknown"
