"""
Logging configuration for the Site Compare Service.
Provides console logging and a per-run execution log.
"""

import logging
import sys
import os
from datetime import datetime
from typing import Optional, Any, List
import structlog
from structlog.types import Processor

_configured = False


def get_log_level() -> str:
    """Get log level from environment."""
    return os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging(level: Optional[str] = None) -> None:
    """Configure structured logging for the application."""
    global _configured

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or get_log_level()).upper(), logging.INFO))

    if _configured:
        return

    # Shared processors for both console and structlog
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    # Configure structlog
    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure standard library logging
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("waitress").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance."""
    return structlog.get_logger(name)


class RunLogger:
    """
    Logger for a single comparison run.

    Logs to the console with the run ID bound as context and mirrors every
    message into the run's execution log, which is persisted with the result.
    """

    def __init__(self, run_id: Optional[str] = None, execution_log: Optional[List[str]] = None):
        self.logger = get_logger("compare")
        self.run_id = run_id
        self.execution_log = execution_log if execution_log is not None else []

    def _log(self, level: str, message: str, **kwargs: Any) -> None:
        """Internal logging method."""
        log_method = getattr(self.logger, level.lower())

        # Add run ID to context
        if self.run_id:
            structlog.contextvars.bind_contextvars(run_id=self.run_id)

        try:
            log_method(message, **kwargs)
        finally:
            # Clear context
            structlog.contextvars.unbind_contextvars("run_id")

        if level != "DEBUG":
            self.execution_log.append(self._format_entry(level, message, kwargs))

    @staticmethod
    def _format_entry(level: str, message: str, context: dict) -> str:
        details = ", ".join(
            f"{k}={v}" for k, v in context.items() if k != "exc_info"
        )
        prefix = "Error: " if level == "ERROR" else ""
        entry = f"[{datetime.now():%H:%M:%S}] {prefix}{message}"
        return f"{entry} ({details})" if details else entry

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("ERROR", message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("DEBUG", message, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log an exception with traceback."""
        self._log("ERROR", message, exc_info=True, **kwargs)


# Initialize logging on module import
setup_logging()
