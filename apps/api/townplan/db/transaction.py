"""Scoped unit of work for multi-step mutations."""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from townplan.core.exceptions import ConflictError, InternalError

logger = logging.getLogger(__name__)


@contextmanager
def transactional(db: Session) -> Iterator[Session]:
    """
    Run a block as one atomic unit.

    Commits when the block exits normally. Any exception rolls the whole
    session back, including rows flushed earlier in the block (system chat
    messages, counters, decisions), and is re-raised. Unique-constraint
    violations surface as ConflictError, other store errors as InternalError;
    domain errors propagate unchanged.

    Usage:
        with transactional(db):
            ...mutations...
        broadcaster.broadcast_to_thread(...)  # only after commit
    """
    try:
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Transaction rolled back on integrity violation: %s", exc.orig)
        raise ConflictError("Conflicting update, the record already exists") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Transaction rolled back after store error")
        raise InternalError("Database operation failed") from exc
    except BaseException:
        db.rollback()
        raise
