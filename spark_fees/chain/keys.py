"""Keypair loading for the claimer and payout wallets."""

import json
import logging
from pathlib import Path
from typing import Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from spark_fees.errors import ConfigurationError

logger = logging.getLogger(__name__)


def keypair_from_secret(secret: str) -> Keypair:
    """
    Decode a secret key given as base58 or as a JSON byte array.

    Accepts the two formats wallets commonly export: the 64-byte base58 string
    and the ``[12, 34, ...]`` array written by ``solana-keygen``.
    """
    value = secret.strip()
    if not value:
        raise ConfigurationError("Empty private key")
    try:
        if value.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(value)))
        return Keypair.from_bytes(base58.b58decode(value))
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f"Unreadable private key: {exc}") from exc


def load_keypair(secret: Optional[str] = None, path: Optional[str] = None) -> Keypair:
    """Load a keypair from an inline secret or a keypair file."""
    if secret:
        return keypair_from_secret(secret)
    if path:
        key_path = Path(path).expanduser()
        if not key_path.exists():
            raise ConfigurationError(f"Keypair file not found: {key_path}")
        return keypair_from_secret(key_path.read_text())
    raise ConfigurationError("No private key configured")


def parse_pubkey(address: str) -> Pubkey:
    """Parse a base58 address, raising ValueError with the offending value."""
    try:
        return Pubkey.from_string(address)
    except ValueError as exc:
        raise ValueError(f"Invalid Solana address: {address!r}") from exc


def is_valid_address(address: Optional[str]) -> bool:
    if not address:
        return False
    try:
        Pubkey.from_string(address)
        return True
    except ValueError:
        return False
