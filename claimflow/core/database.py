"""SQLAlchemy engine & session factory."""

from __future__ import annotations

from typing import Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from claimflow.core.config import settings


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


def _configure_sqlite(engine: Engine) -> None:
    """
    Make pysqlite behave transactionally.

    The driver's own BEGIN handling defers locking until the first write and
    breaks SAVEPOINT. We take over: every transaction starts with
    BEGIN IMMEDIATE, so concurrent writers queue on the busy timeout instead
    of failing on lock upgrade.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str | None = None, **kwargs) -> Engine:
    """Build an engine for *url* (defaults to settings.database_url)."""
    url = url or settings.database_url
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("timeout", settings.database_busy_timeout_seconds)
        connect_args.setdefault("check_same_thread", False)
        engine = create_engine(url, connect_args=connect_args, **kwargs)
        _configure_sqlite(engine)
        return engine
    kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


engine = create_db_engine(echo=False)

SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    """FastAPI dependency: yields a scoped DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def insert_ignoring_conflicts(session: Session, model, rows: list[dict], index_elements: list[str]):
    """
    Build ``INSERT … ON CONFLICT (index_elements) DO NOTHING`` for *model*.

    Only PostgreSQL and SQLite are supported; both enforce the conflict
    target through the unique constraint the rows are keyed on.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        insert = postgresql.insert
    elif dialect == "sqlite":
        insert = sqlite.insert
    else:
        raise NotImplementedError(f"ON CONFLICT DO NOTHING not available for dialect {dialect!r}")
    return insert(model).values(rows).on_conflict_do_nothing(index_elements=index_elements)
