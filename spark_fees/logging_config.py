"""
Structured Logging Configuration

Provides:
- Correlation IDs for sweep / payout tracing
- JSON formatting for the rotating log file
- Colored human-readable console output
- Creator and token context on every record emitted inside a claim run
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


run_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "run_id", default=None
)
creator_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "creator_id", default=None
)
token_mint_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "token_mint", default=None
)


class CorrelationContext:
    """Context manager for setting correlation context."""

    def __init__(
        self,
        run_id: Optional[str] = None,
        creator_id: Optional[str] = None,
        token_mint: Optional[str] = None,
    ):
        self.run_id = run_id or run_id_var.get() or str(uuid4())
        self.creator_id = creator_id
        self.token_mint = token_mint
        self._tokens = []

    def __enter__(self):
        self._tokens.append((run_id_var, run_id_var.set(self.run_id)))
        if self.creator_id:
            self._tokens.append((creator_id_var, creator_id_var.set(self.creator_id)))
        if self.token_mint:
            self._tokens.append((token_mint_var, token_mint_var.set(self.token_mint)))
        return self

    def __exit__(self, *args):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


def _context_fields() -> Dict[str, str]:
    fields = {}
    for name, var in (("run_id", run_id_var), ("creator_id", creator_id_var), ("token_mint", token_mint_var)):
        value = var.get()
        if value:
            fields[name] = value
    return fields


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        include_traceback: bool = True,
        include_context: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.include_traceback = include_traceback
        self.include_context = include_context
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if self.include_context:
            log_data.update(_context_fields())

        log_data.update(self.extra_fields)

        if record.exc_info and self.include_traceback:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_data, default=str)


class StructuredFormatter(logging.Formatter):
    """Human-readable structured formatter for console output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        level = record.levelname
        if self.use_color and sys.stderr.isatty():
            level = f"{self.COLORS.get(level, '')}{level}{self.COLORS['RESET']}"

        parts = [f"[{timestamp}]", f"[{level}]", f"[{record.name}]", record.getMessage()]

        context = _context_fields()
        if context:
            rendered = []
            for key, value in context.items():
                rendered.append(f"{key}={value[:8] if key == 'run_id' else value}")
            parts.append(f"[{', '.join(rendered)}]")

        if record.exc_info:
            parts.append("\n" + "".join(traceback.format_exception(*record.exc_info)))

        return " ".join(parts)


def setup_logging(
    log_dir: Union[str, Path] = "logs",
    log_file: str = "spark_fees.log",
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 10,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Configure structured logging for the engine.

    Args:
        log_dir: Directory for log files
        log_file: Name of the log file
        level: Logging level name or number
        json_format: Use JSON formatting for file logs
        console_output: Enable console output
        max_bytes: Max size of log file before rotation
        backup_count: Number of rotated files to keep
        extra_fields: Additional fields included in every JSON record

    Returns:
        Configured root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    file_handler = logging.handlers.RotatingFileHandler(
        log_path / log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    if json_format:
        file_handler.setFormatter(JSONFormatter(extra_fields=extra_fields))
    else:
        file_handler.setFormatter(StructuredFormatter(use_color=False))
    root_logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(StructuredFormatter(use_color=True))
        root_logger.addHandler(console_handler)

    # aiohttp access logs are noisy at DEBUG
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    return root_logger
