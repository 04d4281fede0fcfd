"""Atomic scopes and row locking for lifecycle operations."""
import logging
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from workwear.services.errors import ConflictError, LifecycleError, PersistenceError

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for the check-then-write of an operation.

    NOTE: SQLite ignores SELECT ... FOR UPDATE. The version counter on
    items and transactions still rejects a lost race at flush time.
    """
    return query.with_for_update()


@contextmanager
def atomic(db: Session, operation: str):
    """
    Run the body as one database transaction and commit at the end.

    Everything is rolled back on any error. A concurrent writer that got
    there first (stale version, duplicate open transaction) becomes a
    ConflictError; any other database failure becomes a PersistenceError.
    Nothing is retried here.
    """
    try:
        yield
        db.commit()
    except LifecycleError:
        db.rollback()
        raise
    except (StaleDataError, IntegrityError) as exc:
        db.rollback()
        logger.info("%s lost a concurrent update: %s", operation, exc)
        raise ConflictError(
            f"{operation} conflicted with a concurrent change; reload and retry"
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("%s failed to commit", operation)
        raise PersistenceError(f"{operation} could not be saved") from exc
