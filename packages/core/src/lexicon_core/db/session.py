from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from lexicon_core.db.base import Base
from lexicon_core.settings import settings


def sqlite_url(path: Path | str) -> str:
    path = str(path)
    if path == ":memory:":
        return "sqlite://"
    return f"sqlite:///{path}"


def make_engine(path: Path | str, *, echo: bool = False) -> Engine:
    """
    Engine for a lexical index file. The parent directory is created if needed.

    Foreign keys are off by default in SQLite; they are switched on for every connection so
    that the ON DELETE CASCADE on `surface_variant` holds.

    pysqlite's own transaction handling defers BEGIN and breaks SAVEPOINT, which the store
    relies on for per-entry rollback. The driver is put in autocommit mode and SQLAlchemy
    emits BEGIN itself.
    """
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(sqlite_url(path), echo=echo, future=True)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if str(path) != ":memory:":
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    return engine


def create_schema(engine: Engine) -> None:
    # Import registers the tables on Base.metadata.
    from lexicon_core.db import models  # noqa: F401

    Base.metadata.create_all(engine)


@contextmanager
def session_scope(path: Path | str | None = None) -> Iterator[Session]:
    """Session on the index at `path` (default: settings.database_path); the engine is disposed on exit."""
    engine = make_engine(path if path is not None else settings.database_path, echo=settings.database_echo)
    create_schema(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    try:
        with factory() as session:
            yield session
    finally:
        engine.dispose()
