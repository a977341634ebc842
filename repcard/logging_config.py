"""
Structured logging for the transaction engine.

Flow lifecycle events go through the structlog "transaction_flow" logger;
the modules under repcard log through stdlib loggers. Both are routed to
one handler, and both carry the intent fields bound for the running flow.
"""

import logging
import sys
from typing import Optional

import structlog

from .config import settings

FLOW_LOGGER = "transaction_flow"
ENGINE_LOGGERS = ("repcard", FLOW_LOGGER)
FLOW_FIELDS = ("intent", "intent_kind", "signer")

_configured = False


def _flow_fields_first(logger, method_name, event_dict):
    """Render the bound intent fields right after the event name."""
    ordered = {"event": event_dict.pop("event", None)}
    for key in FLOW_FIELDS:
        if key in event_dict:
            ordered[key] = event_dict.pop(key)
    ordered.update(event_dict)
    return ordered


def setup_logging(log_level: Optional[str] = None, json_logs: Optional[bool] = None, force: bool = False) -> None:
    """Attach a structlog handler to the engine's loggers.

    Only the engine's own loggers are touched, so a host application keeps
    its root configuration. Repeated calls are no-ops unless `force` is set.

    Args:
        log_level: Override log level (default: from settings.log_level)
        json_logs: Override the renderer (default: from settings.log_json)
    """
    global _configured
    if _configured and not force:
        return

    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    use_json = settings.log_json if json_logs is None else json_logs

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if use_json:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(sort_keys=False)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # f-string records from module loggers pick up the flow context here
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _flow_fields_first,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    for name in ENGINE_LOGGERS:
        engine_logger = logging.getLogger(name)
        engine_logger.handlers.clear()
        engine_logger.addHandler(handler)
        engine_logger.setLevel(level)
        engine_logger.propagate = False

    # Receipt polling logs every request at INFO
    for name in ("httpcore", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def bind_flow_context(**values: object) -> None:
    """Attach transaction-flow fields (intent fingerprint, kind, signer) to every log line."""
    structlog.contextvars.bind_contextvars(**values)


def clear_flow_context(*keys: str) -> None:
    """Drop flow fields bound by bind_flow_context."""
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()
