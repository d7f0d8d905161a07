"""Dialect-aware statements the ORM does not express portably."""

from typing import Any

from sqlalchemy.orm import Session


def insert_ignore(db: Session, model: type, values: dict[str, Any]) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING.

    Returns True when a row was inserted, False when a unique constraint
    already held an equal row. Safe under concurrent callers.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")

    stmt = insert(model).values(**values).on_conflict_do_nothing()
    result = db.execute(stmt)
    return result.rowcount == 1
