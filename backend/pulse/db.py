"""
Database engine, session handling and atomic insert helpers.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Sequence

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pulse.config import settings
from pulse.models import Base

logger = logging.getLogger(__name__)


def make_engine(url: str | None = None) -> Engine:
    """
    Create an engine for the configured database.

    In-memory SQLite gets a single shared connection so every session
    (and every thread of the HTTP server) sees the same data.
    """
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    Base.metadata.create_all(engine)
    logger.info("Database schema ready (%s)", engine.url.get_backend_name())


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Provide a transactional scope: commit on success, roll back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def commit_pending(session: Session) -> None:
    """
    Commit the work done so far before awaiting a scraper, classifier or pause.

    SQLite admits a single writer, so no write transaction may stay open
    across an external call.
    """
    session.commit()


def _dialect_insert(session: Session, model):
    name = session.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Atomic upserts are not supported on {name}")
    return insert(model.__table__)


def insert_if_absent(
    session: Session,
    model,
    values: Mapping[str, Any],
    conflict_columns: Sequence[str],
) -> bool:
    """
    Insert one row unless a row with the same natural key exists.

    Args:
        session: Active session
        model: Mapped class
        values: Column values for the new row
        conflict_columns: Columns of the unique constraint to key on

    Returns:
        True if a row was inserted, False if it already existed
    """
    stmt = (
        _dialect_insert(session, model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
    )
    result = session.execute(stmt)
    return bool(result.rowcount)


def upsert(
    session: Session,
    model,
    values: Mapping[str, Any],
    conflict_columns: Sequence[str],
) -> None:
    """Insert one row or, on a natural-key conflict, overwrite the other columns."""
    stmt = _dialect_insert(session, model).values(**values)
    updates = {key: stmt.excluded[key] for key in values if key not in conflict_columns}
    stmt = stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=updates)
    session.execute(stmt)


__all__ = [
    "commit_pending",
    "init_db",
    "insert_if_absent",
    "make_engine",
    "make_session_factory",
    "session_scope",
    "upsert",
]
