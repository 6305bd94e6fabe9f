from collections.abc import Generator
from time import perf_counter

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ledgerlink.core.config import settings
from ledgerlink.infrastructure.observability.metrics import observe_db_query

_TIMED_OPERATIONS = {"select", "insert", "update", "delete"}


def _statement_operation(statement: str) -> str:
    verb = statement.lstrip().split(None, 1)[0].lower() if statement.strip() else ""
    return verb if verb in _TIMED_OPERATIONS else "other"


def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_started_at_stack", []).append(perf_counter())


def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    stack = conn.info.get("query_started_at_stack", [])
    if not stack:
        return
    started_at = stack.pop(-1)
    observe_db_query(perf_counter() - started_at, operation=_statement_operation(statement))


def build_engine(database_uri: str) -> Engine:
    """Create an engine with query timing attached.

    SQLite connections are shared across the request threadpool, so the
    same-thread check is turned off for them.
    """
    connect_args = {"check_same_thread": False} if database_uri.startswith("sqlite") else {}
    new_engine = create_engine(database_uri, pool_pre_ping=True, connect_args=connect_args)
    event.listen(new_engine, "before_cursor_execute", _before_cursor_execute)
    event.listen(new_engine, "after_cursor_execute", _after_cursor_execute)
    return new_engine


engine = build_engine(settings.sqlalchemy_database_uri)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
