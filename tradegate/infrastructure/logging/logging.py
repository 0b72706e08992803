"""Logging setup using structlog.

Every component logs snake_case event names with keyword fields
(account_id, command_id, event_id, ...). Secrets are not passed to loggers;
`redact_secrets` masks the usual field names should one slip through.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict

import structlog

SECRET_FIELDS = frozenset({"token", "access_token", "refresh_token", "client_secret", "api_key", "bot_token"})


def redact_secrets(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in SECRET_FIELDS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def configure_logging(log_level: str = "INFO", *, json_logs: bool = True) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_secrets,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **kwargs: Any) -> structlog.BoundLogger:
    return structlog.get_logger().bind(component=component, **kwargs)


def bind_request_context(**kwargs: Any) -> None:
    """Attach fields (request_id, account_id) to every log line of the current task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
