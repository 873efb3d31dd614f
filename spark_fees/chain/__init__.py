"""Solana chain access: RPC gateway, transaction views and builders."""

from spark_fees.chain.endpoints import RpcEndpoint, load_rpc_endpoints, rpc_url_for_cluster
from spark_fees.chain.gateway import ChainGateway
from spark_fees.chain.models import (
    AccountInfo,
    Confirmation,
    ConfirmationStatus,
    TokenBalance,
    TransactionView,
)

__all__ = [
    "RpcEndpoint", "load_rpc_endpoints", "rpc_url_for_cluster",
    "ChainGateway",
    "AccountInfo", "Confirmation", "ConfirmationStatus", "TokenBalance", "TransactionView",
]
