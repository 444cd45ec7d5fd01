from __future__ import annotations

import logging
import os
from typing import Any, Dict

import structlog

# Substrings of event keys whose values are credentials or contact details
_REDACTED_MARKERS = ("password", "secret", "token", "pin", "code", "authorization", "email", "phone")
# Keys that contain a marker but only ever carry non-sensitive values
_REDACTION_EXEMPT = frozenset({"event", "error_code", "email_hash"})


def redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential and contact values before an entry is rendered.

    Values longer than four characters keep their first and last two
    characters so operators can still tell entries apart.
    """
    for key, value in list(event_dict.items()):
        if key in _REDACTION_EXEMPT or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _REDACTED_MARKERS):
            event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(log_level: str = "INFO", *, json_output: bool = True) -> None:
    """Route structlog output through the redaction processor.

    JSON lines are the default; ``json_output=False`` switches to the
    coloured console renderer for local runs.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_credentials,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
