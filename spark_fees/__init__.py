"""
Spark Fee Engine.

Claims trading fees from Meteora DBC and DAMM v2 pools, splits them across
stakeholders, keeps the per-creator ledger and verifies investor transfers.
"""

__version__ = "0.3.0"

from spark_fees.config import EngineConfig, load_engine_config
from spark_fees.engine import FeeEngine, PayoutReceipt
from spark_fees.errors import FeeEngineError

__all__ = [
    "__version__",
    "EngineConfig",
    "load_engine_config",
    "FeeEngine",
    "PayoutReceipt",
    "FeeEngineError",
]
