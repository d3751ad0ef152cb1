"""
Logging for the credential lifecycle engine.

This module provides:
1. ContextAwareLogger for console logs (with pipe-delimited extras)
2. ClusterContextFilter stamping the cluster being worked on
3. AzureQueueHandler for structured queue logs (optional)

Secret material must never be passed in log extras.
"""

import logging
import os
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from azure.storage.queue import QueueClient

from ..config import get_config
from ..constants import QueueName
from .json_utils import dumps

_component_logger = None

_STANDARD_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "cluster_id",
}


class ContextAwareLogger:
    """
    Logger wrapper that formats extra attributes in message while preserving them.

    Extras appear in console output even when a host runtime overrides the formatters.
    """

    def __init__(self, logger):
        self.logger = logger

    def _log_with_formatted_extra(self, level, msg, **kwargs):
        extra = kwargs.pop("extra", {})

        if extra:
            extra_str = " | ".join([f"{k}={v}" for k, v in extra.items()])
            full_msg = f"{msg} | {extra_str}"
        else:
            full_msg = msg

        log_method = getattr(self.logger, level)
        log_method(full_msg, extra=extra, exc_info=kwargs.get("exc_info"))

    def set_level(self, level):
        """Set the logging level of the underlying logger."""
        self.logger.setLevel(level)

    def info(self, msg, **kwargs):
        self._log_with_formatted_extra("info", msg, **kwargs)

    def error(self, msg, **kwargs):
        self._log_with_formatted_extra("error", msg, **kwargs)

    def warning(self, msg, **kwargs):
        self._log_with_formatted_extra("warning", msg, **kwargs)

    def debug(self, msg, **kwargs):
        self._log_with_formatted_extra("debug", msg, **kwargs)

    def critical(self, msg, **kwargs):
        self._log_with_formatted_extra("critical", msg, **kwargs)

    def exception(self, msg, **kwargs):
        kwargs.setdefault("exc_info", True)
        self._log_with_formatted_extra("error", msg, **kwargs)


class ClusterContextFilter(logging.Filter):
    """Adds the cluster id of the active operation scope to log records."""

    def filter(self, record):
        from ..context.operation_context import get_current_cluster_id

        cluster_id = get_current_cluster_id()
        if cluster_id:
            record.cluster_id = cluster_id

        return True


class AzureQueueHandler(logging.Handler):
    """
    Logging handler that sends structured log entries to an Azure Storage Queue.

    Entries are buffered and flushed once ``batch_size`` records accumulate.
    """

    def __init__(
        self,
        queue_name: str = QueueName.LOGS.value,
        connection_string: Optional[str] = None,
        batch_size: int = 10,
    ):
        super().__init__()
        self.queue_name = queue_name
        self.connection_string = connection_string or os.getenv("AzureWebJobsStorage")
        self.batch_size = batch_size
        self.log_buffer: List[Dict[str, Any]] = []

        if not self.connection_string:
            sys.stderr.write("Azure Storage connection string not provided\n")

    def emit(self, record: logging.LogRecord) -> None:
        try:
            log_entry: Dict[str, Any] = {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
                "module": record.module,
                "function": record.funcName,
                "line": record.lineno,
            }

            if hasattr(record, "cluster_id"):
                log_entry["cluster_id"] = record.cluster_id

            context = {
                key: value
                for key, value in record.__dict__.items()
                if key not in _STANDARD_RECORD_FIELDS
                and not key.startswith("__")
                and not callable(value)
            }
            if context:
                log_entry["context"] = context

            if record.exc_info and record.exc_info[0]:
                log_entry["exception"] = {
                    "type": record.exc_info[0].__name__,
                    "message": str(record.exc_info[1]),
                    "traceback": [
                        line.rstrip() for line in traceback.format_exception(*record.exc_info)
                    ],
                }

            self.log_buffer.append(log_entry)

            if len(self.log_buffer) >= self.batch_size:
                self.flush()

        except Exception:
            self.handleError(record)

    def flush(self) -> None:
        """Send any buffered log records to the queue."""
        if not self.log_buffer or not self.connection_string:
            return

        try:
            queue_client = QueueClient.from_connection_string(
                conn_str=self.connection_string, queue_name=self.queue_name
            )
            for log_entry in self.log_buffer:
                queue_client.send_message(dumps(log_entry))
            self.log_buffer.clear()

        except Exception as e:
            sys.stderr.write(f"Error sending logs to Azure Queue: {str(e)}\n")

    def close(self) -> None:
        """Flush any remaining logs before closing."""
        self.flush()
        super().close()


def configure_logging(
    component_name: str,
    log_level: Optional[Union[int, str]] = None,
    enable_queue: Optional[bool] = None,
    queue_name: Optional[str] = None,
    queue_batch_size: int = 10,
    connection_string: Optional[str] = None,
) -> "ContextAwareLogger":
    """
    Configure logging with console and optional queue output.

    Args:
        component_name: Name of the running component (e.g. "rotation-reconciler")
        log_level: Logging level (default: from config)
        enable_queue: Whether to enable queue logging (default: from config)
        queue_name: Name of the queue to send logs to (default: "logs-queue")
        queue_batch_size: Number of logs to batch before sending
        connection_string: Azure Storage connection string (default: from config)

    Returns:
        The configured logger wrapped with ContextAwareLogger
    """
    global _component_logger

    app_config = get_config()

    if log_level is None:
        log_level = app_config.logging.level
    if enable_queue is None:
        enable_queue = app_config.logging.enable_logs_queue
    if connection_string is None:
        connection_string = app_config.logging.queue_connection_string

    if isinstance(log_level, str):
        log_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"pull_secret_core.{component_name}")
    logger.setLevel(log_level)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    cluster_filter = ClusterContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    console_handler.addFilter(cluster_filter)
    logger.addHandler(console_handler)

    if enable_queue:
        queue_name = queue_name or QueueName.LOGS.value
        queue_handler = AzureQueueHandler(
            queue_name=queue_name, connection_string=connection_string, batch_size=queue_batch_size
        )
        queue_handler.setLevel(log_level)
        queue_handler.addFilter(cluster_filter)
        logger.addHandler(queue_handler)

    wrapped_logger = ContextAwareLogger(logger)
    wrapped_logger.info(
        "Component logger configured",
        extra={
            "component_name": component_name,
            "queue_logging": enable_queue,
            "queue_name": queue_name if enable_queue else None,
        },
    )
    _component_logger = wrapped_logger
    return wrapped_logger


def get_logger(log_level: Optional[Union[int, str]] = None) -> "ContextAwareLogger":
    """
    Get the component logger, falling back to a wrapped ``pull_secret_core`` logger.

    Args:
        log_level: Optional log level to set on the fallback logger
    """
    if _component_logger is not None:
        return _component_logger

    logger = logging.getLogger("pull_secret_core")

    if log_level is None:
        log_level = get_config().logging.level

    if isinstance(log_level, str):
        log_level = getattr(logging, log_level.upper(), logging.INFO)
    logger.setLevel(log_level)

    return ContextAwareLogger(logger)


def reset_logging() -> None:
    """Forget the configured component logger."""
    global _component_logger
    _component_logger = None
