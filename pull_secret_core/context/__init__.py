"""Execution context helpers (operation logging, cluster scope)."""

from .operation_context import (
    OperationContext,
    OperationHandler,
    cluster_scope,
    get_current_cluster_id,
    operation,
)

__all__ = [
    "OperationContext",
    "OperationHandler",
    "cluster_scope",
    "get_current_cluster_id",
    "operation",
]
