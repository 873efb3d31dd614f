"""
Chain Gateway - JSON-RPC access to the Solana cluster.

Every call is routed to the next configured endpoint in round-robin order.
Failures are handled by class:

- rate limited: rotate to the next endpoint at once, no backoff
- transient (timeout, connection, 5xx, stale blockhash): back off and retry
  on the same endpoint up to ``max_attempts``
- permanent (preflight/simulation rejections): raise ChainRejectedError

Exhausted retries surface as RpcTransientError (or RpcTimeoutError when the
last failure was a timeout) so callers can tell them apart from chain errors.
"""

import asyncio
import base64
import logging
import random
import time
from itertools import count
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp
from solders.transaction import Transaction

from spark_fees.cache import TtlCache
from spark_fees.chain.endpoints import RpcEndpoint
from spark_fees.chain.models import AccountInfo, Confirmation, ConfirmationStatus, TransactionView
from spark_fees.errors import (
    ChainRejectedError,
    RateLimitedError,
    RpcTimeoutError,
    RpcTransientError,
    classify_rpc_error,
    is_already_processed,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_CODE = -32005


def _backoff_delay(base: float, attempt: int, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter to prevent thundering herd."""
    delay = min(max_delay, base * (2 ** attempt))
    jitter = delay * 0.1 * random.random()
    return delay + jitter


def _is_rate_limited(status: int) -> bool:
    return status == 429


class ChainGateway:
    """Round-robin JSON-RPC client over a pool of endpoints."""

    def __init__(
        self,
        endpoints: List[RpcEndpoint],
        *,
        commitment: str = "confirmed",
        max_attempts: int = 4,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        cache_ttl_seconds: float = 60.0,
        poll_interval: float = 0.5,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not endpoints:
            raise ValueError("ChainGateway needs at least one endpoint")
        self.endpoints = list(endpoints)
        self.commitment = commitment
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.poll_interval = poll_interval
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        # Shared across concurrent tasks; skipped or repeated slots are harmless
        self._cursor = 0
        self._ids = count(1)
        self._rent_cache = TtlCache(ttl_seconds=cache_ttl_seconds)

        self.total_requests = 0
        self.total_failures = 0

    async def __aenter__(self) -> "ChainGateway":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _next_endpoint(self) -> RpcEndpoint:
        endpoint = self.endpoints[self._cursor % len(self.endpoints)]
        self._cursor = (self._cursor + 1) % len(self.endpoints)
        return endpoint

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def _post(self, endpoint: RpcEndpoint, payload: Dict[str, Any], timeout: float) -> Tuple[int, Any]:
        """POST one JSON-RPC payload. Returns (http_status, decoded_body)."""
        session = self._get_session()
        async with session.post(
            endpoint.url,
            json=payload,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            if resp.status != 200:
                return resp.status, None
            return resp.status, await resp.json(content_type=None)

    async def call(self, method: str, params: Optional[List[Any]] = None, timeout: Optional[float] = None) -> Any:
        """Make a JSON-RPC call and return its ``result``."""
        params = params or []
        endpoint = self._next_endpoint()
        attempt = 0
        rotations = 0
        max_rotations = len(self.endpoints) * self.max_attempts
        last_error: Optional[Exception] = None

        while True:
            payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
            call_timeout = timeout if timeout is not None else endpoint.timeout_seconds
            self.total_requests += 1

            try:
                status, body = await self._post(endpoint, payload, call_timeout)
                failure = self._failure_from_response(endpoint, method, status, body)
                if failure is None:
                    return body.get("result")
                raise failure
            except RateLimitedError as exc:
                last_error = exc
                rotations += 1
                self.total_failures += 1
                if rotations >= max_rotations:
                    break
                logger.warning(f"Rate limited on {endpoint.name} for {method}, rotating endpoint")
                endpoint = self._next_endpoint()
                continue
            except ChainRejectedError:
                self.total_failures += 1
                raise
            except asyncio.TimeoutError:
                last_error = RpcTimeoutError(
                    f"{method} timed out after {call_timeout}s", endpoint=endpoint.name, method=method
                )
            except aiohttp.ClientError as exc:
                last_error = RpcTransientError(f"{method} failed: {exc}", endpoint=endpoint.name, method=method)
            except RpcTransientError as exc:
                last_error = exc

            self.total_failures += 1
            attempt += 1
            if attempt >= self.max_attempts:
                break
            delay = _backoff_delay(self.backoff_base, attempt - 1, self.backoff_max)
            logger.warning(
                f"RPC {method} on {endpoint.name} failed ({last_error}), "
                f"retry {attempt}/{self.max_attempts - 1} in {delay:.2f}s"
            )
            await self._sleep(delay)

        logger.error(f"RPC {method} failed after retries: {last_error}")
        if isinstance(last_error, RpcTransientError):
            raise last_error
        raise RpcTransientError(f"{method} failed: {last_error}", method=method)

    def _failure_from_response(
        self, endpoint: RpcEndpoint, method: str, status: int, body: Any
    ) -> Optional[Exception]:
        if _is_rate_limited(status):
            return RateLimitedError(f"HTTP 429 from {endpoint.name}", endpoint=endpoint.name, method=method)
        if status != 200:
            return RpcTransientError(f"HTTP {status} from {endpoint.name}", endpoint=endpoint.name, method=method)
        if not isinstance(body, dict):
            return RpcTransientError(f"Malformed response from {endpoint.name}", endpoint=endpoint.name, method=method)

        error = body.get("error")
        if not error:
            return None

        code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        text = f"{code} {message}"
        if isinstance(error, dict) and error.get("data"):
            text = f"{text} {error['data']}"

        if code == RATE_LIMIT_CODE:
            return RateLimitedError(message, endpoint=endpoint.name, method=method)
        classification = classify_rpc_error(text)
        if classification == "rate_limited":
            return RateLimitedError(message, endpoint=endpoint.name, method=method)
        if classification == "permanent":
            return ChainRejectedError(message, chain_error=error)
        if classification == "retryable":
            return RpcTransientError(message, endpoint=endpoint.name, method=method)
        # Unrecognised JSON-RPC errors (bad params, unknown method) will not improve on retry
        return ChainRejectedError(message, chain_error=error)

    # =========================================================================
    # GATEWAY CONTRACT
    # =========================================================================

    async def read(self, address: str, query: str = "getAccountInfo", options: Optional[Dict[str, Any]] = None) -> Any:
        """Generic read keyed by address, e.g. getAccountInfo / getBalance."""
        opts = {"commitment": self.commitment}
        if query == "getAccountInfo":
            opts["encoding"] = "base64"
        if options:
            opts.update(options)
        return await self.call(query, [address, opts])

    async def submit(self, tx: Transaction, skip_preflight: bool = False) -> str:
        """
        Send a signed transaction and return its signature.

        A resend of a transaction that already landed (e.g. after a timed-out
        first attempt) is reported by the cluster as already processed; that
        returns the signature and leaves the outcome to ``confirm``.
        """
        signature = str(tx.signatures[0])
        encoded = base64.b64encode(bytes(tx)).decode("ascii")
        try:
            result = await self.call(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": skip_preflight,
                        "preflightCommitment": self.commitment,
                        "maxRetries": 3,
                    },
                ],
            )
        except ChainRejectedError as exc:
            if not is_already_processed(f"{exc.message} {exc.chain_error}"):
                raise
            logger.warning(f"Transaction {signature[:16]}... already processed, deferring to confirmation")
            return signature
        logger.info(f"Submitted transaction {str(result)[:16]}...")
        return str(result)

    async def confirm(
        self,
        signature: str,
        timeout: float = 30.0,
        poll_interval: Optional[float] = None,
    ) -> Confirmation:
        """Poll signature status until confirmed, failed, or timed out."""
        poll_interval = poll_interval or self.poll_interval
        start = time.monotonic()
        poll_count = 0
        waited = 0.0

        while waited < timeout and time.monotonic() - start < timeout:
            try:
                result = await self.call(
                    "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
                )
                values = (result or {}).get("value") or []
                value = values[0] if values else None
                if value:
                    if value.get("err"):
                        logger.warning(f"Transaction {signature[:16]}... failed: {value['err']}")
                        return Confirmation(signature, ConfirmationStatus.FAILED, value.get("slot"), value["err"])
                    status = value.get("confirmationStatus") or ""
                    if status in ("confirmed", "finalized"):
                        logger.info(f"Transaction {signature[:16]}... {status}")
                        return Confirmation(signature, ConfirmationStatus.CONFIRMED, value.get("slot"))
            except RpcTransientError as exc:
                logger.debug(f"Status check failed: {exc}")

            poll_count += 1
            wait_time = min(poll_interval * (1.2 ** min(poll_count, 10)), 2.0)
            await self._sleep(wait_time)
            waited += wait_time

        logger.warning(f"Transaction {signature[:16]}... confirmation timeout after {timeout}s")
        return Confirmation(signature, ConfirmationStatus.TIMED_OUT)

    # =========================================================================
    # TYPED READS
    # =========================================================================

    async def get_account_info(self, address: str) -> Optional[AccountInfo]:
        result = await self.read(address, "getAccountInfo")
        return AccountInfo.from_rpc(address, (result or {}).get("value"))

    async def get_multiple_accounts(self, addresses: List[str]) -> List[Optional[AccountInfo]]:
        result = await self.call(
            "getMultipleAccounts", [addresses, {"commitment": self.commitment, "encoding": "base64"}]
        )
        values = (result or {}).get("value") or [None] * len(addresses)
        return [AccountInfo.from_rpc(addr, value) for addr, value in zip(addresses, values)]

    async def get_balance(self, address: str) -> int:
        result = await self.read(address, "getBalance")
        return int((result or {}).get("value", 0))

    async def get_minimum_balance_for_rent_exemption(self, data_len: int = 0, force_refresh: bool = False) -> int:
        async def _load() -> int:
            return int(await self.call("getMinimumBalanceForRentExemption", [data_len]))

        return await self._rent_cache.get_or_load(("rent_exempt", data_len), _load, force_refresh=force_refresh)

    async def get_latest_blockhash(self) -> str:
        blockhash, _ = await self.get_latest_blockhash_info()
        return blockhash

    async def get_latest_blockhash_info(self) -> Tuple[str, int]:
        """Return (blockhash, last_valid_block_height)."""
        result = await self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = result["value"]
        return value["blockhash"], int(value["lastValidBlockHeight"])

    async def get_block_height(self) -> int:
        return int(await self.call("getBlockHeight", [{"commitment": self.commitment}]))

    async def get_transaction(self, signature: str, encoding: str = "json") -> Optional[TransactionView]:
        result = await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": encoding,
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not result:
            return None
        return TransactionView.from_rpc(result)

    async def get_token_accounts_by_owner(self, owner: str, program_id: str) -> List[Dict[str, Any]]:
        result = await self.call(
            "getTokenAccountsByOwner",
            [owner, {"programId": program_id}, {"commitment": self.commitment, "encoding": "jsonParsed"}],
        )
        return list((result or {}).get("value") or [])

    def get_stats(self) -> Dict[str, Any]:
        return {
            "endpoints": [ep.name for ep in self.endpoints],
            "total_requests": self.total_requests,
            "total_failures": self.total_failures,
        }
