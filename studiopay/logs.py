import logging

import structlog

from . import config

audit = structlog.get_logger("studiopay.audit")


def configure_logging(level: str | None = None, json: bool | None = None):
    level = (level or config.LOG_LEVEL).upper()
    json = config.LOG_JSON if json is None else json
    renderer = (
        structlog.processors.JSONRenderer() if json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
