"""structlog setup for the benefit API.

Log lines carry the request context bound by the HTTP middleware (scope,
client key, path) and never carry credentials: keys that look like secrets
are masked before rendering.
"""

import logging
from collections.abc import MutableMapping
from contextlib import AbstractContextManager
from typing import Any

import structlog

REDACTED = "***"

SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "authorization",
        "jwt_secret",
        "request_signature_secret",
        "signature",
        "token",
        "x_cg_demo_api_key",
    }
)

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("uvicorn.access", "aiohttp.access")


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask values of sensitive keys, including one level of nested dicts (e.g. params)."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS and value is not None:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in SENSITIVE_KEYS else v for k, v in value.items()
            }
    return event_dict


def build_renderer(log_format: str) -> structlog.types.Processor:
    if log_format.lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Route structlog and stdlib logging through one handler.

    Args:
        log_level: Root level name; unknown names fall back to INFO.
        log_format: "json" for production, anything else renders for a console.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                build_renderer(log_format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def request_context(**values: Any) -> AbstractContextManager[None]:
    """Bind values to every log line emitted while handling one request."""
    return structlog.contextvars.bound_contextvars(**values)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
