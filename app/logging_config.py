"""
Structured logging configuration for the conversation diagram pipeline.

Log records are emitted as JSON so queue transitions, retries and backend
failures can be correlated by job id, message id or subject id.
"""

import logging
import sys
from typing import Optional
from pythonjsonlogger import jsonlogger


class PipelineJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter that adds standard fields to all log records.

    Every record carries timestamp, level, logger, module, function and
    line, plus exception and stack information when present.
    """

    def add_fields(self, log_record, record, message_dict):
        """
        Add the standard fields to the log record.

        Args:
            log_record: The dictionary that will be logged as JSON
            record: The LogRecord instance
            message_dict: Dictionary of message fields
        """
        super(PipelineJsonFormatter, self).add_fields(log_record, record, message_dict)

        # Add standard fields
        log_record['timestamp'] = self.formatTime(record, self.datefmt)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        # Add exception info if present
        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        # Add stack trace if present
        if record.stack_info:
            log_record['stack_trace'] = self.formatStack(record.stack_info)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_json: bool = True
) -> None:
    """
    Configure the root logger for the service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path to write logs to (in addition to stdout)
        use_json: Whether to use JSON formatting (default: True)

    Example:
        >>> setup_logging(log_level="DEBUG", use_json=False)
        >>> get_logger(__name__).info("Queue started")
    """
    level = getattr(logging, log_level.upper())

    # Get root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    root_logger.handlers = []

    # Create formatter
    if use_json:
        formatter = PipelineJsonFormatter(
            '%(timestamp)s %(level)s %(logger)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    # Console handler (stdout)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler (if specified)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Log initial message
    root_logger.info(
        "Logging configured",
        extra={
            "log_level": log_level,
            "use_json": use_json,
            "log_file": log_file
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` (typically ``__name__``)."""
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    job_id: Optional[str] = None,
    message_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    error: Optional[BaseException] = None,
    **kwargs
) -> None:
    """
    Log a message with structured pipeline context.

    Args:
        logger: Logger instance to use
        level: Log level name (debug, info, warning, error, critical)
        message: Log message
        job_id: Optional queue item identifier
        message_id: Optional conversation message identifier
        subject_id: Optional queue subject (message id or joined id set)
        error: Optional exception; adds error_type/error_message and exc_info
        **kwargs: Additional context fields

    Example:
        >>> log_with_context(
        ...     logger,
        ...     "info",
        ...     "Job status updated",
        ...     job_id="4f1c...",
        ...     old_status="pending",
        ...     new_status="processing"
        ... )
    """
    # Build context dictionary
    context = {}

    if job_id:
        context['job_id'] = job_id

    if message_id:
        context['message_id'] = message_id

    if subject_id:
        context['subject_id'] = subject_id

    if error is not None:
        context['error_type'] = type(error).__name__
        context['error_message'] = str(error)

    # Add any additional context
    context.update(kwargs)

    log_method = getattr(logger, level.lower())

    # Log with context
    if error is not None:
        log_method(message, extra=context, exc_info=error)
    else:
        log_method(message, extra=context)
