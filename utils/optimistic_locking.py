"""
Optimistic Locking Infrastructure
Version-based concurrency control for contended rows (account counters, selection cursors)
"""

import logging
import time
from typing import Any, Optional, Dict, Type
from functools import wraps
from sqlalchemy import update, select
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from models import Base, utcnow

logger = logging.getLogger(__name__)


class OptimisticLockingError(Exception):
    """Raised when optimistic locking fails due to version conflict"""
    pass


class OptimisticLockManager:
    """
    Manager for optimistic locking operations.
    Performs compare-and-swap updates keyed on a ``version`` column.
    """

    def __init__(self, session: Session):
        self.session = session

    def versioned_update(
        self,
        model_class: Type[Base],
        entity_id: Any,
        updates: Dict[str, Any],
        current_version: Optional[int] = None,
        id_column: str = "id",
    ) -> int:
        """
        Perform version-controlled update.

        Args:
            model_class: SQLAlchemy model class with a ``version`` column
            entity_id: Primary key value
            updates: Column values to set (may contain SQL expressions)
            current_version: Expected current version (fetched if not provided)
            id_column: Name of the key column

        Returns:
            int: the new version

        Raises:
            OptimisticLockingError: If the row was modified by another process
        """
        key = getattr(model_class, id_column)
        try:
            if current_version is None:
                current_version = self.session.execute(
                    select(model_class.version).where(key == entity_id)
                ).scalar_one_or_none()
                if current_version is None:
                    raise ValueError(f"Entity {model_class.__name__} with {id_column}={entity_id} not found")

            values = {**updates, "version": current_version + 1}
            if hasattr(model_class, "updated_at"):
                values["updated_at"] = utcnow()

            stmt = (
                update(model_class)
                .where(key == entity_id, model_class.version == current_version)
                .values(values)
                .execution_options(synchronize_session=False)
            )
            result = self.session.execute(stmt)

            if result.rowcount == 0:
                logger.warning(
                    f"🔒 Optimistic lock conflict: {model_class.__name__} {id_column}={entity_id} "
                    f"expected_version={current_version}"
                )
                raise OptimisticLockingError(
                    f"Version conflict for {model_class.__name__} {id_column}={entity_id}. "
                    f"Expected version {current_version} but entity was modified by another process."
                )

            logger.debug(
                f"✅ Versioned update successful: {model_class.__name__} {id_column}={entity_id} "
                f"v{current_version} → v{current_version + 1}"
            )
            return current_version + 1

        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during versioned update: {e}")
            raise

    def get_with_version(self, model_class: Type[Base], entity_id: Any) -> Optional[tuple]:
        """Return (entity, version) or None if not found"""
        entity = self.session.get(model_class, entity_id)
        if entity is None:
            return None
        return entity, entity.version


def with_optimistic_locking(max_retries: int = 3, retry_delay: float = 0.05, backoff_factor: float = 2.0):
    """
    Decorator that re-runs the wrapped function on OptimisticLockingError.
    The wrapped function must re-read the row on every call.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            delay = retry_delay
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except OptimisticLockingError as e:
                    if attempt >= max_retries:
                        logger.error(f"❌ VERSION_CONFLICT_EXHAUSTED: {func.__name__} gave up after {attempt} retries: {e}")
                        raise
                    logger.info(f"🔄 VERSION_CONFLICT_RETRY: {func.__name__} {attempt + 1}/{max_retries}")
                    time.sleep(delay)
                    delay *= backoff_factor
        return wrapper
    return decorator
