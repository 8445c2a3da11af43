"""structlog setup for leadgate.

Every event is rendered as one JSON object (console rendering when
JSON_LOGS=false). The request id bound by RequestIdMiddleware travels through
structlog's contextvars, so credential and rate-limit events emitted during a
request carry it without being passed around.

Values under secret-looking keys are masked by redact_secrets() as a last line
of defence; callers still mask or project secrets themselves
(mask_for_logging(), ConfigError.to_safe_context()).
"""

import logging
import sys

import structlog
from structlog.types import EventDict, Processor

from leadgate.security.bytestring import mask_for_logging

REQUEST_ID_KEY = "request_id"

# Event keys whose values are always masked before rendering.
SECRET_KEYS = frozenset({
    "passcode",
    "signing_key",
    "session_secret",
    "cron_secret",
    "token",
    "authorization",
})


def redact_secrets(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SECRET_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = mask_for_logging(value)
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """(Re)configure structlog. Safe to call more than once."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        redact_secrets,
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "leadgate") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_request_id(request_id: str) -> None:
    structlog.contextvars.bind_contextvars(**{REQUEST_ID_KEY: request_id})


def unbind_request_id() -> None:
    structlog.contextvars.unbind_contextvars(REQUEST_ID_KEY)


# Defaults until leadgate.main reconfigures from DEBUG / LOG_LEVEL / JSON_LOGS
configure_logging()
