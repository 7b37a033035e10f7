"""Dialect-specific ``INSERT ... ON CONFLICT DO NOTHING``."""
from typing import Iterable

from sqlalchemy.orm import Session


def insert_ignore_conflict(db: Session, model, values: dict, index_elements: Iterable[str]) -> bool:
    """Insert ``values`` unless a row with the same unique key exists.

    Returns True when this call inserted the row. Concurrent callers racing on
    the same key see exactly one True.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"upsert not supported for dialect {dialect!r}")

    stmt = insert(model).values(**values).on_conflict_do_nothing(
        index_elements=list(index_elements)
    )
    result = db.execute(stmt)
    return result.rowcount == 1
