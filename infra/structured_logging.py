from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import structlog


def _stringify_decimals(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    # Decimal is not JSON-serializable; render money as its exact string
    for k, v in event_dict.items():
        if isinstance(v, Decimal):
            event_dict[k] = str(v)
    return event_dict


def configure_logging(level: str = "INFO") -> None:
    """
    Engine events go through structlog into the stdlib root logger, so they
    share its handlers (and the secret redaction filter installed by
    utils.setup_logging).
    """
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            _stringify_decimals,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)
