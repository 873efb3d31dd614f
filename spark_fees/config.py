"""
Engine configuration.

Layering, lowest precedence first:
    config/fee_engine.json -> config/fee_engine.local.json -> overrides -> environment

The ``.env`` file at the repository root is loaded with ``override=False`` so
real environment variables always win.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from spark_fees.chain.endpoints import RpcEndpoint, load_rpc_endpoints
from spark_fees.errors import ConfigurationError
from spark_fees.types import BPS_DENOMINATOR, LAMPORTS_PER_SOL, USDC_DEVNET_MINT, USDC_MINT, ClaimAction

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"
BASE_CONFIG = CONFIG_DIR / "fee_engine.json"
LOCAL_CONFIG = CONFIG_DIR / "fee_engine.local.json"
ENV_FILE = ROOT / ".env"

TREASURY_STAKEHOLDER_ID = "treasury"

# Deployment table: five fixed recipients, treasury takes the remainder
DEFAULT_STAKEHOLDERS: List[Dict[str, Any]] = [
    {"stakeholder_id": "pool_traders", "address": "9tXUeLqQ5FDSqbT98EEReBu9f5BU5UsV6FqEuXRLxGM1", "bps": 500},
    {"stakeholder_id": "referrer", "address": "FSKWpwNRi6ruzJ6zzU5kCSkfSXxS5GjZCDUreDL3MMx8", "bps": 500},
    {"stakeholder_id": "voters", "address": "5Cxp3LwQbnPhcZr6i9jkHrSPYTfVdwSBbQvhmqmdexpx", "bps": 500},
    {"stakeholder_id": "dao", "address": "58UMDUdSLLqEkLAJMEJ7juoTxn5CFFXPD7rWuiruAfnZ", "bps": 3500},
    {"stakeholder_id": "launcher", "address": "FeesnLL2qR1thmWhwRVAYta5cjeqYHwNP1i18GtHDkXj", "bps": 500},
    {"stakeholder_id": TREASURY_STAKEHOLDER_ID, "address": None, "bps": 4500},
]


def _load_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
        if isinstance(data, dict):
            return data
        return {}
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {path}: {exc}") from exc


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def resolve_path(path_value: str) -> Path:
    path = Path(path_value)
    if not path.is_absolute():
        return (ROOT / path).resolve()
    return path


def parse_address_list(value: Optional[str]) -> List[str]:
    """Split a comma-delimited wallet list, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class StakeholderShare:
    stakeholder_id: str
    address: Optional[str]
    bps: int

    @property
    def is_treasury(self) -> bool:
        return self.stakeholder_id == TREASURY_STAKEHOLDER_ID


@dataclass
class PlausibilityRange:
    """Inclusive bounds a resolved claim amount must fall within."""
    min_plausible: int
    max_plausible: int

    def contains(self, amount: int) -> bool:
        return self.min_plausible <= amount <= self.max_plausible


DEFAULT_PLAUSIBILITY = PlausibilityRange(min_plausible=1_000, max_plausible=1_000 * LAMPORTS_PER_SOL)


@dataclass
class EngineConfig:
    rpc_endpoints: List[RpcEndpoint] = field(default_factory=list)
    network: str = "mainnet"
    commitment: str = "confirmed"
    rpc_max_attempts: int = 4
    rpc_backoff_base: float = 0.5
    rpc_backoff_max: float = 8.0
    confirm_timeout_seconds: float = 30.0
    confirm_poll_interval: float = 1.0

    stakeholders: List[StakeholderShare] = field(
        default_factory=lambda: [StakeholderShare(**row) for row in DEFAULT_STAKEHOLDERS]
    )
    dust_floor_lamports: int = 10_000
    transfer_delay: float = 2.0

    batch_size: int = 5
    max_targets: int = 1000
    inter_action_delay: float = 0.5
    inter_batch_delay: float = 2.0
    tx_index_delay: float = 2.0
    max_base_amount: int = 1_000_000_000
    max_quote_amount: int = 1_000_000_000
    plausibility: Dict[ClaimAction, PlausibilityRange] = field(default_factory=dict)

    creator_share_bps: int = BPS_DENOMINATOR
    payout_fee_reserve_lamports: int = 5_000

    verify_retry_delay: float = 2.0
    verify_tolerance: str = "0.99"
    accepted_mints: List[str] = field(default_factory=lambda: [USDC_MINT, USDC_DEVNET_MINT])

    treasury_wallets: List[str] = field(default_factory=list)
    admin_addresses: List[str] = field(default_factory=list)

    db_path: Path = ROOT / "data" / "fee_engine.db"
    cache_ttl_seconds: float = 60.0

    claimer_private_key: Optional[str] = field(default=None, repr=False)
    payer_private_key: Optional[str] = field(default=None, repr=False)

    def plausibility_for(self, action: ClaimAction) -> PlausibilityRange:
        return self.plausibility.get(action, DEFAULT_PLAUSIBILITY)

    @property
    def treasury_share(self) -> StakeholderShare:
        return self.stakeholders[-1]

    @property
    def fixed_shares(self) -> List[StakeholderShare]:
        return self.stakeholders[:-1]

    def validate(self) -> None:
        if not self.stakeholders:
            raise ConfigurationError("Stakeholder table is empty")

        total_bps = sum(share.bps for share in self.stakeholders)
        if total_bps != BPS_DENOMINATOR:
            raise ConfigurationError(
                f"Stakeholder bps must sum to {BPS_DENOMINATOR}, got {total_bps}",
                {"total_bps": total_bps},
            )
        if any(share.bps < 0 for share in self.stakeholders):
            raise ConfigurationError("Stakeholder bps must be non-negative")

        treasury_rows = [share for share in self.stakeholders if share.is_treasury]
        if len(treasury_rows) != 1 or not self.stakeholders[-1].is_treasury:
            raise ConfigurationError("Exactly one treasury stakeholder is required and it must be last")
        for share in self.fixed_shares:
            if not share.address:
                raise ConfigurationError(f"Stakeholder {share.stakeholder_id} has no address")

        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")
        if self.max_targets < 1:
            raise ConfigurationError(f"max_targets must be positive, got {self.max_targets}")
        if self.dust_floor_lamports < 0:
            raise ConfigurationError("dust_floor_lamports must be non-negative")
        if not 0 < self.creator_share_bps <= BPS_DENOMINATOR:
            raise ConfigurationError(f"creator_share_bps must be in (0, {BPS_DENOMINATOR}]")
        if self.rpc_max_attempts < 1:
            raise ConfigurationError("rpc_max_attempts must be at least 1")

        for action, bounds in self.plausibility.items():
            if bounds.min_plausible > bounds.max_plausible:
                raise ConfigurationError(f"Plausibility range for {action.value} is inverted")


def _parse_plausibility(raw: Dict[str, Any]) -> Dict[ClaimAction, PlausibilityRange]:
    ranges: Dict[ClaimAction, PlausibilityRange] = {}
    for key, bounds in (raw or {}).items():
        try:
            action = ClaimAction(key)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown claim action in plausibility table: {key}") from exc
        ranges[action] = PlausibilityRange(
            min_plausible=int(bounds.get("min", DEFAULT_PLAUSIBILITY.min_plausible)),
            max_plausible=int(bounds.get("max", DEFAULT_PLAUSIBILITY.max_plausible)),
        )
    return ranges


def _parse_stakeholders(rows: Optional[List[Dict[str, Any]]]) -> List[StakeholderShare]:
    if not rows:
        rows = DEFAULT_STAKEHOLDERS
    shares = []
    for row in rows:
        try:
            shares.append(
                StakeholderShare(
                    stakeholder_id=str(row["stakeholder_id"]),
                    address=row.get("address"),
                    bps=int(row["bps"]),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Malformed stakeholder row: {row}") from exc
    return shares


def load_raw_config(
    base_path: Path = BASE_CONFIG,
    local_path: Path = LOCAL_CONFIG,
) -> Dict[str, Any]:
    base = _load_json(base_path)
    local = _load_json(local_path)
    if local:
        return _deep_merge(base, local)
    return base


def load_engine_config(
    overrides: Optional[Dict[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    base_path: Path = BASE_CONFIG,
    local_path: Path = LOCAL_CONFIG,
    load_env_file: bool = True,
) -> EngineConfig:
    """Load, merge and validate the engine configuration."""
    if load_env_file and env is None and ENV_FILE.exists():
        load_dotenv(ENV_FILE, override=False)
    env = os.environ if env is None else env

    data = load_raw_config(base_path, local_path)
    if overrides:
        data = _deep_merge(data, overrides)

    engine = data.get("engine", {})
    rpc = data.get("rpc", {})
    distribution = data.get("distribution", {})
    claims = data.get("claims", {})
    payouts = data.get("payouts", {})
    verification = data.get("verification", {})
    wallets = data.get("wallets", {})
    ledger = data.get("ledger", {})

    treasury_wallets = parse_address_list(env.get("TREASURY_WALLETS")) or list(wallets.get("treasury", []))
    admin_addresses = parse_address_list(env.get("ADMIN_ADDRESSES")) or list(wallets.get("admin", []))

    db_path_value = env.get("FEE_ENGINE_DB_PATH") or ledger.get("db_path", "data/fee_engine.db")

    try:
        config = EngineConfig(
            rpc_endpoints=load_rpc_endpoints(rpc.get("providers"), env),
            network=str(engine.get("network", "mainnet")),
            commitment=str(rpc.get("commitment", "confirmed")),
            rpc_max_attempts=int(rpc.get("max_attempts", 4)),
            rpc_backoff_base=float(rpc.get("backoff_base", 0.5)),
            rpc_backoff_max=float(rpc.get("backoff_max", 8.0)),
            confirm_timeout_seconds=float(rpc.get("confirm_timeout_seconds", 30.0)),
            confirm_poll_interval=float(rpc.get("confirm_poll_interval", 1.0)),
            stakeholders=_parse_stakeholders(distribution.get("stakeholders")),
            dust_floor_lamports=int(distribution.get("dust_floor_lamports", 10_000)),
            transfer_delay=float(distribution.get("transfer_delay", 2.0)),
            batch_size=int(claims.get("batch_size", 5)),
            max_targets=int(claims.get("max_targets", 1000)),
            inter_action_delay=float(claims.get("inter_action_delay", 0.5)),
            inter_batch_delay=float(claims.get("inter_batch_delay", 2.0)),
            tx_index_delay=float(claims.get("tx_index_delay", 2.0)),
            max_base_amount=int(claims.get("max_base_amount", 1_000_000_000)),
            max_quote_amount=int(claims.get("max_quote_amount", 1_000_000_000)),
            plausibility=_parse_plausibility(claims.get("plausibility", {})),
            creator_share_bps=int(payouts.get("creator_share_bps", BPS_DENOMINATOR)),
            payout_fee_reserve_lamports=int(payouts.get("fee_reserve_lamports", 5_000)),
            verify_retry_delay=float(verification.get("retry_delay", 2.0)),
            verify_tolerance=str(verification.get("tolerance", "0.99")),
            accepted_mints=list(verification.get("accepted_mints", [USDC_MINT, USDC_DEVNET_MINT])),
            treasury_wallets=treasury_wallets,
            admin_addresses=admin_addresses,
            db_path=resolve_path(db_path_value),
            cache_ttl_seconds=float(engine.get("cache_ttl_seconds", 60.0)),
            claimer_private_key=env.get("FEE_CLAIMER_PRIVATE_KEY") or env.get("PRIVATE_KEY"),
            payer_private_key=env.get("FEES_PRIVATE_KEY"),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration value: {exc}") from exc

    config.validate()
    logger.debug(
        f"Engine config loaded: network={config.network} endpoints={len(config.rpc_endpoints)} "
        f"stakeholders={len(config.stakeholders)}"
    )
    return config
