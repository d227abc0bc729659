# Overview: Service-layer operations for concurrency; encapsulates locking and retry around database work.

from __future__ import annotations

import logging
import time
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, PosError, StorageError
from ..extensions import db

logger = logging.getLogger(__name__)

CONCURRENCY_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write_transaction()
    covers it there by taking the database write lock up-front.
    """
    return query.with_for_update()


def begin_write_transaction() -> None:
    """
    Start the unit of work so that reads inside it see the state the writes
    will be applied to.

    On SQLite the reserved lock is taken immediately (BEGIN IMMEDIATE), which
    serialises writers. Other dialects rely on lock_for_update().
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, retry_on=CONCURRENCY_ERRORS):
    """
    Execute a DB operation, rolling back and retrying on the given errors.

    The whole callable is re-run from scratch on each attempt; it must open
    its own transaction. The last error is re-raised once attempts run out.
    """
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            logger.info("Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** attempt))


@contextmanager
def translate_db_errors(conflict_message: str = "Concurrent update detected; retry the request"):
    """
    Roll back and map database failures onto the error taxonomy.

    - PosError passes through unchanged (after rollback)
    - lock timeouts, deadlocks and optimistic version conflicts -> ConflictError
    - lost connections and any other SQLAlchemyError -> StorageError
    - anything else (including cancellation) is rolled back and re-raised
    """
    try:
        yield
    except PosError:
        db.session.rollback()
        raise
    except CONCURRENCY_ERRORS as exc:
        db.session.rollback()
        if isinstance(exc, OperationalError) and exc.connection_invalidated:
            logger.error("Database connection lost: %s", exc)
            raise StorageError() from exc
        raise ConflictError(conflict_message) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Unexpected database error")
        raise StorageError() from exc
    except BaseException:
        db.session.rollback()
        raise
