import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

import structlog
from pythonjsonlogger.json import JsonFormatter


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_logs: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
):
    """
    Configure structured logging for queue processes.

    Console output goes to stdout. When ``log_file`` is given, records are
    also written to a rotating file as one JSON object per line.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
        file_handler.setFormatter(JsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
        logging.getLogger().addHandler(file_handler)

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class ContextLogger:
    """
    Logger with context support for tracing queue operations.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = structlog.get_logger(name)

    def with_context(self, **kwargs) -> structlog.BoundLogger:
        """Add context to logger."""
        return self.logger.bind(**kwargs)

    def info(self, message: str, **kwargs):
        self.logger.info(message, **kwargs)

    def error(self, message: str, **kwargs):
        self.logger.error(message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.logger.warning(message, **kwargs)

    def debug(self, message: str, **kwargs):
        self.logger.debug(message, **kwargs)


def get_logger(name: str) -> ContextLogger:
    """
    Get a context-aware logger instance.
    """
    return ContextLogger(name)
