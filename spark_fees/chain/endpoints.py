"""RPC endpoint configuration and cluster selection."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

PUBLIC_MAINNET_RPC = "https://api.mainnet-beta.solana.com"
PUBLIC_DEVNET_RPC = "https://api.devnet.solana.com"

# Extra endpoints are read from RPC_URL2..RPC_URL5 when present
ENV_RPC_KEYS = ("RPC_URL", "RPC_URL2", "RPC_URL3", "RPC_URL4", "RPC_URL5")

SUPPORTED_CLUSTERS = ("mainnet", "devnet")


@dataclass
class RpcEndpoint:
    name: str
    url: str
    timeout_ms: int = 20000
    rate_limit: int = 100  # requests per second (approximate)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    def for_cluster(self, cluster: str) -> "RpcEndpoint":
        return RpcEndpoint(
            name=self.name,
            url=rpc_url_for_cluster(self.url, cluster),
            timeout_ms=self.timeout_ms,
            rate_limit=self.rate_limit,
        )


def rpc_url_for_cluster(rpc_url: str, cluster: str) -> str:
    """Rewrite a provider URL to point at the requested cluster."""
    if cluster not in SUPPORTED_CLUSTERS:
        raise ValueError(f"Unknown cluster {cluster!r}, expected one of {SUPPORTED_CLUSTERS}")

    if cluster == "mainnet":
        return rpc_url.replace("devnet", "mainnet").replace("testnet", "mainnet")
    return rpc_url.replace("mainnet", "devnet").replace("testnet", "devnet")


def _substitute_env(value: str, env: Mapping[str, str]) -> Optional[str]:
    if "${" not in value:
        return value
    start = value.find("${")
    end = value.find("}", start + 2)
    if end == -1:
        return value
    env_name = value[start + 2 : end]
    env_value = env.get(env_name)
    if not env_value:
        return None
    return value.replace(f"${{{env_name}}}", env_value)


def _endpoint_from_entry(entry: Dict[str, Any], default_name: str, env: Mapping[str, str]) -> Optional[RpcEndpoint]:
    raw_url = str(entry.get("url", ""))
    url = _substitute_env(raw_url, env) if raw_url else None
    if not url:
        return None
    return RpcEndpoint(
        name=str(entry.get("name", default_name)),
        url=url,
        timeout_ms=int(entry.get("timeout_ms", 20000)),
        rate_limit=int(entry.get("rate_limit", 100)),
    )


def load_rpc_endpoints(rpc_cfg: Optional[Dict[str, Any]] = None, env: Optional[Mapping[str, str]] = None) -> List[RpcEndpoint]:
    """
    Build the endpoint pool from config and environment.

    Config shape mirrors a provider file: ``{"primary": {...}, "fallback": [...]}``.
    Environment URLs (RPC_URL, RPC_URL2..5) are appended, de-duplicated by URL.
    Falls back to the public mainnet endpoint when nothing is configured.
    """
    env = os.environ if env is None else env
    rpc_cfg = rpc_cfg or {}
    endpoints: List[RpcEndpoint] = []

    primary = rpc_cfg.get("primary") or {}
    if primary:
        endpoint = _endpoint_from_entry(primary, "primary", env)
        if endpoint:
            endpoints.append(endpoint)

    for index, fallback in enumerate(rpc_cfg.get("fallback") or []):
        endpoint = _endpoint_from_entry(fallback, f"fallback_{index}", env)
        if endpoint:
            endpoints.append(endpoint)

    seen = {ep.url for ep in endpoints}
    for key in ENV_RPC_KEYS:
        url = env.get(key)
        if url and url not in seen:
            endpoints.append(RpcEndpoint(name=key.lower(), url=url))
            seen.add(url)

    if not endpoints:
        logger.warning("No RPC endpoints configured, using public endpoint")
        endpoints.append(RpcEndpoint(name="public_solana", url=PUBLIC_MAINNET_RPC, rate_limit=10))

    logger.info(f"Loaded {len(endpoints)} Solana RPC endpoints")
    return endpoints
