"""
Operation context for handling cross-cutting concerns.

This module provides context management for engine operations: correlation
ids, the cluster being worked on (stamped onto log records), and ENTER/EXIT
logging with durations.
"""

import threading
import time
import uuid
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Generator, Optional, TypeVar, Union, cast

from ..exceptions import BaseError, get_correlation_id, set_correlation_id
from ..utils.logger import ContextAwareLogger, get_logger

_cluster_local = threading.local()


def get_current_cluster_id() -> Optional[str]:
    """Cluster id of the innermost active cluster scope on this thread."""
    return getattr(_cluster_local, "cluster_id", None)


@contextmanager
def cluster_scope(cluster_id: Optional[str]) -> Generator[None, None, None]:
    """Mark log records emitted inside the block with ``cluster_id``."""
    previous = get_current_cluster_id()
    _cluster_local.cluster_id = cluster_id
    try:
        yield
    finally:
        _cluster_local.cluster_id = previous


class OperationContext:
    """Context for a specific operation."""

    def __init__(self, operation_name: str, correlation_id: Optional[str] = None, **context):
        self.operation_name = operation_name
        self.operation_id = str(uuid.uuid4())

        self.correlation_id = correlation_id or get_correlation_id() or str(uuid.uuid4())
        set_correlation_id(self.correlation_id)

        self.context = context
        self.context["operation_id"] = self.operation_id
        self.context["correlation_id"] = self.correlation_id

        self.start_time = time.time()

    @property
    def duration_ms(self) -> float:
        """Get the operation duration in milliseconds."""
        return (time.time() - self.start_time) * 1000

    def add_context(self, **kwargs) -> None:
        self.context.update(kwargs)


class OperationHandler:
    """Handles operation logging and error enrichment."""

    def __init__(self, logger: Optional[ContextAwareLogger] = None):
        self.logger = logger if logger is not None else get_logger()

    @contextmanager
    def operation(self, name: str, **context):
        """Context manager for operations."""
        cluster_id = get_current_cluster_id()
        if cluster_id and "cluster_id" not in context:
            context["cluster_id"] = cluster_id

        op_ctx = OperationContext(name, **context)

        self.logger.debug(
            f"ENTER: {name}",
            extra={
                **context,
                "operation_id": op_ctx.operation_id,
                "correlation_id": op_ctx.correlation_id,
            },
        )

        try:
            yield op_ctx

            self.logger.info(
                f"EXIT: {name}",
                extra={
                    **context,
                    "operation_id": op_ctx.operation_id,
                    "correlation_id": op_ctx.correlation_id,
                    "duration_ms": round(op_ctx.duration_ms, 2),
                    "status": "success",
                },
            )

        except BaseError as e:
            # BaseError already logged itself; add where it happened
            e.add_context(
                operation_name=name,
                operation_id=op_ctx.operation_id,
                operation_duration_ms=op_ctx.duration_ms,
            )
            self.logger.warning(
                f"ERROR: {name} -> {e.error_code.value}: {e.message}",
                extra={
                    **context,
                    "operation_id": op_ctx.operation_id,
                    "correlation_id": op_ctx.correlation_id,
                    "duration_ms": round(op_ctx.duration_ms, 2),
                    "error_id": e.error_id,
                    "error_code": e.error_code.value,
                    "status": "error",
                },
            )
            raise

        except Exception as e:
            self.logger.exception(
                f"ERROR: {name} -> {type(e).__name__}: {str(e)}",
                extra={
                    **context,
                    "operation_id": op_ctx.operation_id,
                    "correlation_id": op_ctx.correlation_id,
                    "duration_ms": round(op_ctx.duration_ms, 2),
                    "error_type": type(e).__name__,
                    "status": "error",
                },
            )
            raise


F = TypeVar("F", bound=Callable[..., Any])


def operation(name: Union[Optional[str], Callable] = None):
    """
    Decorator for operations.

    Arguments are deliberately not logged: several engine operations handle
    secret material.

    Args:
        name: Optional operation name. Defaults to ``module.Class.method``.
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            if name is not None:
                op_name = name
            else:
                op_name = func.__name__
                if args and hasattr(args[0], "__class__"):
                    op_name = f"{args[0].__class__.__name__}.{op_name}"
                op_name = f"{func.__module__.split('.')[-1]}.{op_name}"

            handler = OperationHandler()
            with handler.operation(op_name, source_module=func.__module__):
                return func(*args, **kwargs)

        return cast(F, wrapper)

    # Decorator used without parentheses
    if callable(name):
        func, name = name, None
        return decorator(func)

    return decorator
