"""
Database Query Helpers

Utility functions shared by the database services.

Key Features:
- Naive-UTC timestamp normalization (the storage convention of all tables)
- Dialect-aware single-row upsert keyed by a unique constraint
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Sequence

from sqlalchemy import and_
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Dialects supporting INSERT ... ON CONFLICT DO UPDATE
_ON_CONFLICT_INSERTS = {
    'sqlite': sqlite_insert,
    'postgresql': postgresql_insert,
}


def utc_now() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def upsert_row(session: Session, model, row: Dict[str, Any], key_columns: Sequence[str]) -> None:
    """
    Insert a row or overwrite the non-key columns of the row sharing its key.

    Uses ON CONFLICT DO UPDATE where the dialect supports it and falls back
    to select-then-update elsewhere. The caller commits.

    Args:
        session: Active session
        model: Mapped class
        row: Column values, including the key columns
        key_columns: Columns of the unique constraint identifying the row
    """
    updates = {k: v for k, v in row.items() if k not in key_columns}
    dialect = session.get_bind().dialect.name
    insert = _ON_CONFLICT_INSERTS.get(dialect)

    if insert is not None:
        stmt = insert(model).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key_columns),
            set_={k: stmt.excluded[k] for k in updates}
        )
        session.execute(stmt)
        return

    existing = session.query(model).filter(
        and_(*[getattr(model, k) == row[k] for k in key_columns])
    ).one_or_none()
    if existing is None:
        session.add(model(**row))
    else:
        for key, value in updates.items():
            setattr(existing, key, value)
