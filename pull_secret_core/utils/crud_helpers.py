"""
Generic CRUD helpers shared by the credential store.

These functions work with any SQLAlchemy model and translate database
failures into RepositoryError so callers see one error family.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar

from sqlalchemy.orm import Session

from ..exceptions import ErrorCode, RepositoryError, not_found
from ..utils.logger import get_logger

T = TypeVar("T")


def create_record(session: Session, model_class: Type[T], data: Dict[str, Any]) -> T:
    """
    Generic create operation for any model.

    Args:
        session: Database session
        model_class: SQLAlchemy model class
        data: Column values

    Returns:
        Created record instance

    Raises:
        RepositoryError: If creation fails
    """
    logger = get_logger()

    try:
        now = datetime.now(timezone.utc)
        if hasattr(model_class, "created_at") and "created_at" not in data:
            data["created_at"] = now
        if hasattr(model_class, "updated_at") and "updated_at" not in data:
            data["updated_at"] = now

        record = model_class(**data)
        session.add(record)
        session.commit()

        logger.debug(
            f"Created {model_class.__name__}",
            extra={"model": model_class.__name__, "record_id": getattr(record, "id", None)},
        )

        return record

    except Exception as e:
        session.rollback()
        raise RepositoryError(
            f"Failed to create {model_class.__name__}: {str(e)}",
            error_code=ErrorCode.DATABASE_ERROR,
            cause=e,
            model=model_class.__name__,
        ) from e


def get_record(session: Session, model_class: Type[T], filters: Dict[str, Any]) -> Optional[T]:
    """
    Generic get operation for any model.

    Filters whose value is None are ignored.

    Returns:
        Record instance or None
    """
    query = session.query(model_class)

    for key, value in filters.items():
        if hasattr(model_class, key) and value is not None:
            query = query.filter(getattr(model_class, key) == value)

    return query.first()


def get_record_by_id(session: Session, model_class: Type[T], record_id: str) -> Optional[T]:
    """Generic get by ID operation."""
    return get_record(session, model_class, {"id": record_id})


def update_record(
    session: Session, model_class: Type[T], record_id: str, data: Dict[str, Any]
) -> T:
    """
    Generic update operation for any model.

    Keys present in ``data`` are written as given, including None.

    Raises:
        NotFoundError: If the record does not exist
        RepositoryError: If the update fails
    """
    logger = get_logger()

    record = get_record_by_id(session, model_class, record_id)
    if not record:
        raise not_found(model_class.__name__, record_id=record_id)

    try:
        for key, value in data.items():
            if hasattr(record, key):
                setattr(record, key, value)

        if hasattr(record, "updated_at"):
            record.updated_at = datetime.now(timezone.utc)

        session.commit()

        logger.debug(
            f"Updated {model_class.__name__}",
            extra={"model": model_class.__name__, "record_id": record_id},
        )

        return record

    except Exception as e:
        session.rollback()
        raise RepositoryError(
            f"Failed to update {model_class.__name__}: {str(e)}",
            error_code=ErrorCode.DATABASE_ERROR,
            cause=e,
            model=model_class.__name__,
            record_id=record_id,
        ) from e


def delete_record(session: Session, model_class: Type[T], record_id: str) -> bool:
    """
    Generic delete operation for any model.

    Returns:
        True if deleted, False if not found

    Raises:
        RepositoryError: If delete fails
    """
    logger = get_logger()

    try:
        record = get_record_by_id(session, model_class, record_id)
        if not record:
            return False

        session.delete(record)
        session.commit()

        logger.debug(
            f"Deleted {model_class.__name__}",
            extra={"model": model_class.__name__, "record_id": record_id},
        )

        return True

    except Exception as e:
        session.rollback()
        raise RepositoryError(
            f"Failed to delete {model_class.__name__}: {str(e)}",
            error_code=ErrorCode.DATABASE_ERROR,
            cause=e,
            model=model_class.__name__,
            record_id=record_id,
        ) from e


def list_records(
    session: Session,
    model_class: Type[T],
    filters: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    order_by: Optional[str] = None,
) -> List[T]:
    """
    Generic list operation for any model.

    Filters whose value is None are ignored. Without ``order_by`` the
    newest records come first.
    """
    query = session.query(model_class)

    if filters:
        for key, value in filters.items():
            if hasattr(model_class, key) and value is not None:
                query = query.filter(getattr(model_class, key) == value)

    if order_by and hasattr(model_class, order_by):
        query = query.order_by(getattr(model_class, order_by))
    elif hasattr(model_class, "created_at"):
        query = query.order_by(model_class.created_at.desc())  # type: ignore[attr-defined]

    if limit:
        query = query.limit(limit)

    return query.all()


def count_records(
    session: Session, model_class: Type[T], filters: Optional[Dict[str, Any]] = None
) -> int:
    """Generic count operation for any model."""
    query = session.query(model_class)

    if filters:
        for key, value in filters.items():
            if hasattr(model_class, key) and value is not None:
                query = query.filter(getattr(model_class, key) == value)

    return query.count()
