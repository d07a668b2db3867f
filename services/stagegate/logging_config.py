"""
Centralized Logging Configuration

structlog on top of stdlib logging. Every module gets its logger through
get_logger() and logs an event name plus key/value context:

    logger = get_logger(__name__)
    logger.info("stage_promoted", entity_id=str(entity.id), to_stage="paper")
"""

import logging
import sys
from pathlib import Path
from typing import Any

import structlog


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    json_logs: bool = False
) -> None:
    """
    Configure centralized logging for the entire service.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for logs
        json_logs: Use JSON format for production (better parsing)
    """
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
        logging.getLogger().addHandler(file_handler)


def get_logger(name: str | None = None) -> Any:
    """Get a structlog logger bound to `name`."""
    return structlog.get_logger(name)


def log_error(
    error: Exception,
    context: dict | None = None,
    level: str = "ERROR"
) -> None:
    """Log error with full context and stack trace"""
    logger = get_logger("error_handler")
    log_func = getattr(logger, level.lower(), logger.error)

    log_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
    }

    if context:
        log_data.update(context)

    log_func("error_occurred", **log_data, exc_info=error)


def log_stage_transition(
    entity_id: str,
    from_stage: str,
    to_stage: str,
    reason: str,
    actor: str = "system"
) -> None:
    """Log a stage transition with structured data"""
    logger = get_logger("stage_transition")
    logger.info(
        "stage_transition",
        entity_id=entity_id,
        from_stage=from_stage,
        to_stage=to_stage,
        reason=reason,
        actor=actor,
    )
