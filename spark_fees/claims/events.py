"""
Anchor event decoding for fee-claim transactions.

Meteora programs emit events two ways: the older ``Program data: <base64>``
log line, and a self-CPI into the program's event authority whose
instruction data is ``EVENT_IX_TAG || discriminator || borsh payload``.
Both carry the same payload, so they share one decoder.
"""

import base64
import binascii
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

import base58
from solders.pubkey import Pubkey

from spark_fees.chain.models import TransactionView
from spark_fees.chain.transactions import event_discriminator
from spark_fees.types import ClaimAction

logger = logging.getLogger(__name__)

EVENT_IX_TAG = bytes.fromhex("e445a52e51cb9a1d")
PROGRAM_DATA_PREFIX = "Program data: "


@dataclass(frozen=True)
class EventSchema:
    name: str
    fields: Tuple[Tuple[str, str], ...]  # (field name, borsh type)

    @property
    def discriminator(self) -> bytes:
        return event_discriminator(self.name)


@dataclass
class DecodedEvent:
    name: str
    fields: Dict[str, Any]
    source: str  # "cpi", "log" or "meta"
    program_id: Optional[str] = None


_SCHEMAS = [
    EventSchema("EvtClaimCreatorTradingFee", (
        ("pool", "pubkey"),
        ("token_base_amount", "u64"),
        ("token_quote_amount", "u64"),
    )),
    EventSchema("EvtClaimTradingFee", (
        ("pool", "pubkey"),
        ("fee_claimer", "pubkey"),
        ("token_base_amount", "u64"),
        ("token_quote_amount", "u64"),
    )),
    EventSchema("EvtCreatorWithdrawSurplus", (
        ("pool", "pubkey"),
        ("surplus_amount", "u64"),
    )),
    EventSchema("EvtWithdrawMigrationFee", (
        ("pool", "pubkey"),
        ("fee", "u64"),
        ("flag", "u8"),
    )),
    EventSchema("EvtClaimPartnerFee", (
        ("pool", "pubkey"),
        ("token_a_amount", "u64"),
        ("token_b_amount", "u64"),
    )),
    EventSchema("EvtClaimPositionFee", (
        ("pool", "pubkey"),
        ("position", "pubkey"),
        ("owner", "pubkey"),
        ("fee_a_claimed", "u64"),
        ("fee_b_claimed", "u64"),
    )),
]

SCHEMAS_BY_DISCRIMINATOR: Dict[bytes, EventSchema] = {s.discriminator: s for s in _SCHEMAS}

# Event names accepted per action, and amount fields in priority order
# (quote / token B is the SOL side of every supported pool)
ACTION_EVENTS: Dict[ClaimAction, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    ClaimAction.CREATOR_FEE: (
        ("EvtClaimCreatorTradingFee",),
        ("token_quote_amount", "token_base_amount"),
    ),
    ClaimAction.PARTNER_FEE: (
        ("EvtClaimTradingFee", "EvtClaimPartnerFee"),
        ("token_quote_amount", "token_b_amount", "token_base_amount", "token_a_amount"),
    ),
    ClaimAction.POSITION_FEE: (
        ("EvtClaimPositionFee",),
        ("fee_b_claimed", "fee_a_claimed"),
    ),
    ClaimAction.SURPLUS: (
        ("EvtCreatorWithdrawSurplus",),
        ("surplus_amount",),
    ),
    ClaimAction.MIGRATION_FEE: (
        ("EvtWithdrawMigrationFee",),
        ("fee",),
    ),
}

# Key names seen in RPC-provided meta.events payloads, mapped onto schema fields
META_FIELD_ALIASES = {
    "feeBClaimed": "token_b_amount",
    "feeAClaimed": "token_a_amount",
    "tokenQuoteAmount": "token_quote_amount",
    "tokenBaseAmount": "token_base_amount",
    "tokenAAmount": "token_a_amount",
    "tokenBAmount": "token_b_amount",
    "surplusAmount": "surplus_amount",
    "feeAClaimedAmount": "fee_a_claimed",
    "feeBClaimedAmount": "fee_b_claimed",
}


def _decode_payload(schema: EventSchema, payload: bytes) -> Optional[Dict[str, Any]]:
    values: Dict[str, Any] = {}
    offset = 0
    try:
        for name, kind in schema.fields:
            if kind == "pubkey":
                values[name] = str(Pubkey.from_bytes(payload[offset:offset + 32]))
                offset += 32
            elif kind == "u64":
                values[name] = struct.unpack_from("<Q", payload, offset)[0]
                offset += 8
            elif kind == "u8":
                values[name] = payload[offset]
                offset += 1
            else:
                raise ValueError(f"unsupported field type {kind}")
    except (struct.error, IndexError, ValueError) as exc:
        logger.debug(f"Could not decode {schema.name}: {exc}")
        return None
    return values


def decode_event_bytes(data: bytes, source: str, program_id: Optional[str] = None) -> Optional[DecodedEvent]:
    """Decode ``discriminator || payload``. Unknown discriminators return None."""
    if len(data) < 8:
        return None
    schema = SCHEMAS_BY_DISCRIMINATOR.get(data[:8])
    if schema is None:
        return None
    values = _decode_payload(schema, data[8:])
    if values is None:
        return None
    return DecodedEvent(name=schema.name, fields=values, source=source, program_id=program_id)


def _cpi_events(tx: TransactionView, program_id: Optional[str]) -> Iterator[DecodedEvent]:
    for ix in tx.inner_instructions:
        if not ix.data:
            continue
        if program_id and ix.program_id and ix.program_id != program_id:
            continue
        try:
            raw = base58.b58decode(ix.data)
        except ValueError:
            continue
        if not raw.startswith(EVENT_IX_TAG):
            continue
        event = decode_event_bytes(raw[len(EVENT_IX_TAG):], "cpi", ix.program_id)
        if event:
            yield event


def _log_events(tx: TransactionView) -> Iterator[DecodedEvent]:
    for line in tx.log_messages:
        if not line.startswith(PROGRAM_DATA_PREFIX):
            continue
        try:
            raw = base64.b64decode(line[len(PROGRAM_DATA_PREFIX):].strip(), validate=True)
        except (binascii.Error, ValueError):
            continue
        event = decode_event_bytes(raw, "log")
        if event:
            yield event


def _meta_events(tx: TransactionView) -> Iterator[DecodedEvent]:
    for raw in tx.meta_events:
        name = str(raw.get("name") or raw.get("type") or "")
        body = raw.get("data") if isinstance(raw.get("data"), dict) else raw
        fields: Dict[str, Any] = {}
        for key, value in body.items():
            mapped = META_FIELD_ALIASES.get(key, key)
            try:
                fields[mapped] = int(value)
            except (TypeError, ValueError):
                fields[mapped] = value
        yield DecodedEvent(name=name, fields=fields, source="meta")


def iter_transaction_events(tx: TransactionView, program_id: Optional[str] = None) -> List[DecodedEvent]:
    """All decodable events in a transaction: CPI first, then logs, then meta."""
    events = list(_cpi_events(tx, program_id))
    events.extend(_log_events(tx))
    events.extend(_meta_events(tx))
    return events


def event_amounts(event: DecodedEvent, action: ClaimAction) -> List[int]:
    """Candidate amounts an event carries for ``action``, in priority order."""
    names, amount_fields = ACTION_EVENTS[action]
    # Meta payloads are often unnamed; accept them when they carry a known field
    if event.name and event.name not in names:
        return []
    amounts = []
    for field_name in amount_fields:
        value = event.fields.get(field_name)
        if isinstance(value, int) and value > 0:
            amounts.append(value)
    return amounts


def encode_event(name: str, values: Dict[str, Any]) -> bytes:
    """Serialise an event in the program's wire format: discriminator then borsh fields."""
    schema = next(s for s in _SCHEMAS if s.name == name)
    out = bytearray(schema.discriminator)
    for field_name, kind in schema.fields:
        value = values[field_name]
        if kind == "pubkey":
            out += bytes(Pubkey.from_string(value) if isinstance(value, str) else value)
        elif kind == "u64":
            out += struct.pack("<Q", int(value))
        elif kind == "u8":
            out += struct.pack("<B", int(value))
    return bytes(out)
