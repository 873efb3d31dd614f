"""Typed views over raw JSON-RPC results."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import base58


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class Confirmation:
    signature: str
    status: ConfirmationStatus
    slot: Optional[int] = None
    error: Any = None

    @property
    def confirmed(self) -> bool:
        return self.status == ConfirmationStatus.CONFIRMED


@dataclass
class AccountInfo:
    address: str
    lamports: int
    owner: str
    data: bytes
    executable: bool = False

    @classmethod
    def from_rpc(cls, address: str, value: Optional[Dict[str, Any]]) -> Optional["AccountInfo"]:
        if not value:
            return None
        raw = value.get("data")
        data = b""
        if isinstance(raw, list) and raw:
            encoded, encoding = raw[0], raw[1] if len(raw) > 1 else "base64"
            if encoding == "base64":
                data = base64.b64decode(encoded)
            elif encoding == "base58":
                data = base58.b58decode(encoded)
        return cls(
            address=address,
            lamports=int(value.get("lamports", 0)),
            owner=str(value.get("owner", "")),
            data=data,
            executable=bool(value.get("executable", False)),
        )


@dataclass
class TokenBalance:
    account_index: int
    mint: str
    owner: Optional[str]
    amount: int
    decimals: int
    ui_amount: Decimal

    @classmethod
    def from_rpc(cls, row: Dict[str, Any]) -> "TokenBalance":
        ui = row.get("uiTokenAmount") or {}
        amount = int(ui.get("amount") or 0)
        decimals = int(ui.get("decimals") or 0)
        ui_string = ui.get("uiAmountString")
        if ui_string is not None:
            ui_amount = Decimal(str(ui_string))
        else:
            ui_amount = Decimal(amount) / (Decimal(10) ** decimals)
        return cls(
            account_index=int(row.get("accountIndex", -1)),
            mint=str(row.get("mint", "")),
            owner=row.get("owner"),
            amount=amount,
            decimals=decimals,
            ui_amount=ui_amount,
        )


@dataclass
class InstructionView:
    """One top-level or inner instruction, normalised across encodings."""
    program_id: Optional[str]
    data: Optional[str]  # base58, absent for jsonParsed instructions
    accounts: List[str] = field(default_factory=list)
    parsed: Optional[Dict[str, Any]] = None


@dataclass
class TransactionView:
    """A confirmed transaction as returned by ``getTransaction``."""
    signature: Optional[str]
    slot: Optional[int]
    err: Any
    account_keys: List[str]
    signers: List[str]
    pre_balances: List[int]
    post_balances: List[int]
    pre_token_balances: List[TokenBalance]
    post_token_balances: List[TokenBalance]
    log_messages: List[str]
    instructions: List[InstructionView]
    inner_instructions: List[InstructionView]
    meta_events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.err is None

    def account_index(self, address: str) -> int:
        try:
            return self.account_keys.index(address)
        except ValueError:
            return -1

    def native_deltas(self) -> List[int]:
        return [post - pre for pre, post in zip(self.pre_balances, self.post_balances)]

    @classmethod
    def from_rpc(cls, result: Dict[str, Any]) -> "TransactionView":
        transaction = result.get("transaction") or {}
        message = transaction.get("message") or {}
        meta = result.get("meta") or {}

        raw_keys = message.get("accountKeys") or []
        account_keys: List[str] = []
        signers: List[str] = []
        for key in raw_keys:
            if isinstance(key, dict):
                pubkey = str(key.get("pubkey", ""))
                account_keys.append(pubkey)
                if key.get("signer"):
                    signers.append(pubkey)
            else:
                account_keys.append(str(key))

        if not signers:
            header = message.get("header") or {}
            required = int(header.get("numRequiredSignatures", 1 if account_keys else 0))
            signers = account_keys[:required]

        # v0 transactions append lookup-table addresses after the static keys
        loaded = meta.get("loadedAddresses") or {}
        account_keys.extend(loaded.get("writable") or [])
        account_keys.extend(loaded.get("readonly") or [])

        def _instruction(raw: Dict[str, Any]) -> InstructionView:
            if "programIdIndex" in raw:
                index = raw["programIdIndex"]
                program_id = account_keys[index] if 0 <= index < len(account_keys) else None
                accounts = [account_keys[i] for i in raw.get("accounts", []) if 0 <= i < len(account_keys)]
            else:
                program_id = raw.get("programId")
                accounts = [str(a) for a in raw.get("accounts", [])]
            data = raw.get("data") if isinstance(raw.get("data"), str) else None
            parsed = raw.get("parsed") if isinstance(raw.get("parsed"), dict) else None
            return InstructionView(program_id=program_id, data=data, accounts=accounts, parsed=parsed)

        instructions = [_instruction(ix) for ix in message.get("instructions") or []]
        inner: List[InstructionView] = []
        for group in meta.get("innerInstructions") or []:
            for ix in group.get("instructions") or []:
                inner.append(_instruction(ix))

        signatures = transaction.get("signatures") or []
        events = meta.get("events") or []
        if isinstance(events, dict):
            events = [events]

        return cls(
            signature=signatures[0] if signatures else None,
            slot=result.get("slot"),
            err=meta.get("err"),
            account_keys=account_keys,
            signers=signers,
            pre_balances=[int(v) for v in meta.get("preBalances") or []],
            post_balances=[int(v) for v in meta.get("postBalances") or []],
            pre_token_balances=[TokenBalance.from_rpc(r) for r in meta.get("preTokenBalances") or []],
            post_token_balances=[TokenBalance.from_rpc(r) for r in meta.get("postTokenBalances") or []],
            log_messages=list(meta.get("logMessages") or []),
            instructions=instructions,
            inner_instructions=inner,
            meta_events=[e for e in events if isinstance(e, dict)],
        )
