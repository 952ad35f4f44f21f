import logging
import sys
from pathlib import Path
from typing import Any

import structlog

from costbook.config import AppConfig, get_config

LOG_FILE = Path("logs/costbook.log")

_installed_handlers: list[logging.Handler] = []

# Applied to structlog events and to records from stdlib loggers alike
SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def build_renderer(log_format: str) -> Any:
    """JSON lines for ``json``, pretty console output for anything else (``text``)."""
    if log_format.lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def configure_logging(config: AppConfig | None = None, level: str | None = None) -> None:
    """Configure structlog and the stdlib root logger from the app config.

    ``LOG_FORMAT`` picks the renderer and ``LOG_LEVEL`` the threshold. The
    service modules log through ``logging.getLogger``; their records go
    through the same processors as structlog events, so one format covers both.

    Args:
        config: Application config (default: ``get_config()``)
        level: Overrides ``config.log_level`` (e.g. from a CLI flag)
    """
    config = config or get_config()
    renderer = build_renderer(config.log_format)

    structlog.configure(
        processors=SHARED_PROCESSORS + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=SHARED_PROCESSORS,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if LOG_FILE.parent.exists():
        handlers.append(logging.FileHandler(LOG_FILE))

    root = logging.getLogger()
    # Re-configuring replaces the handlers installed last time
    for handler in _installed_handlers:
        root.removeHandler(handler)
        handler.close()
    _installed_handlers[:] = handlers
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel((level or config.log_level).upper())


def bind_actor(actor: str) -> None:
    """Attach the acting user to every log line emitted in this context."""
    structlog.contextvars.bind_contextvars(actor=actor)
