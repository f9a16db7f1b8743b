"""Structured logging configuration using structlog.

Console output in development, one JSON object per line elsewhere. Events use
dotted names (`escrow.funded`, `consensus.submit_failed`) and carry the
request_id bound by the API middleware, so one trade can be followed from the
HTTP call through the ledger submission to a later reconciliation pass.

Operator credentials must never reach a log sink. Any event key that looks
like a secret is masked before rendering.

Usage:
    from tagchain_escrow.logging_config import setup_logging, get_logger
    setup_logging(log_level="INFO", json_logs=True)
    logger = get_logger(__name__)
    logger.info("escrow.created", transaction_id="T1", amount="100")
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.types import EventDict, Processor

SERVICE_NAME = "tagchain-escrow"

_SECRET_KEYS = frozenset(
    {"operator_key", "hedera_operator_key", "private_key", "authorization", "signature"}
)
_MASK = "***"

_THIRD_PARTY_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "httpx",
    "httpcore",
    "aiosqlite",
    "asyncio",
)


def redact_secrets(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
    """Mask values of keys that carry credentials or signatures."""
    for key in event_dict.keys() & _SECRET_KEYS:
        event_dict[key] = _MASK
    return event_dict


def add_service(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Route structlog and stdlib logging through one formatter.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ...).
        json_logs: Render JSON lines instead of the colored console format.
    """
    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_service,
        redact_secrets,
    ]

    if json_logs:
        final: list[Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            # Records from uvicorn/sqlalchemy get the same fields as our own.
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *final],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to `name` (usually the module's __name__)."""
    return structlog.get_logger(name)
