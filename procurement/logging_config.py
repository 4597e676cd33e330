import logging
from typing import Optional

import structlog

from procurement.config import Settings, settings as default_settings


def _service_fields(cfg: Settings):
    def add(logger, method_name, event_dict):
        event_dict.setdefault("service", cfg.APP_NAME)
        event_dict.setdefault("env", cfg.ENVIRONMENT)
        return event_dict

    return add


def setup_logging(cfg: Optional[Settings] = None) -> None:
    """Configure structlog once per process (API startup or embedding code)."""
    cfg = cfg or default_settings
    level = logging.getLevelName(cfg.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _service_fields(cfg),
        structlog.processors.StackInfoRenderer(),
    ]
    if cfg.ENVIRONMENT == "development":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        # JSON lines carry the traceback as a string field.
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
