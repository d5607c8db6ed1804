from __future__ import annotations

from functools import lru_cache
from time import perf_counter
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import Depends
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from etcdcluster.config import Settings, get_settings
from etcdcluster.logger import get_logger
from etcdcluster.services.status import EtcdClusterStatusReconciler

_DB_LOGGER = get_logger("db")
_DB_SESSION_LOGGER = get_logger("db.session")
_QUERY_STACK_KEY = "etcdcluster_query_stack"
_SLOW_QUERY_MS = 200


def _truncate(value: str, max_length: int) -> str:
    if max_length <= 0 or len(value) <= max_length:
        return value
    if max_length <= 3:
        return value[:max_length]
    return f"{value[: max_length - 3]}..."


def _one_line(value: Any, max_length: int) -> str:
    return _truncate(" ".join(str(value or "").split()), max_length)


def _query_stack(connection: Any) -> list[dict[str, Any]]:
    return connection.info.setdefault(_QUERY_STACK_KEY, [])


def _install_query_logging(engine: AsyncEngine, *, settings: Settings) -> None:
    sync_engine = engine.sync_engine
    dialect = sync_engine.dialect.name

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _before_cursor_execute(
        conn: Any,
        cursor: Any,
        statement: Any,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        _query_stack(conn).append(
            {"start": perf_counter(), "statement": statement, "parameters": parameters}
        )

    @event.listens_for(sync_engine, "after_cursor_execute")
    def _after_cursor_execute(
        conn: Any,
        cursor: Any,
        statement: Any,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        stack = _query_stack(conn)
        query = stack.pop() if stack else {}
        duration_ms = (perf_counter() - float(query.get("start", perf_counter()))) * 1000
        sql = _one_line(query.get("statement"), settings.log_sql_max_length)

        if settings.log_db_queries:
            fields: dict[str, Any] = {
                "duration_ms": round(duration_ms, 1),
                "rowcount": getattr(cursor, "rowcount", None),
                "sql": sql,
                "db": dialect,
            }
            if settings.log_db_query_params:
                fields["params"] = _one_line(repr(query.get("parameters")), settings.log_sql_max_length)
            _DB_LOGGER.info("query.execute", "Executed SQL statement", **fields)

        if duration_ms >= _SLOW_QUERY_MS:
            _DB_LOGGER.warning("query.slow", "Slow SQL statement", duration_ms=round(duration_ms, 1), sql=sql)

    @event.listens_for(sync_engine, "handle_error")
    def _handle_error(exception_context: Any) -> None:
        connection = exception_context.connection
        if connection is not None:
            stack = _query_stack(connection)
            if stack:
                stack.pop()
        _DB_LOGGER.error(
            "query.error",
            "SQL execution failed",
            error_type=type(exception_context.original_exception).__name__,
            error=str(exception_context.original_exception),
            sql=_one_line(exception_context.statement, settings.log_sql_max_length),
        )


@lru_cache
def get_engine(database_url: str) -> AsyncEngine:
    engine = create_async_engine(database_url, pool_pre_ping=True)

    if database_url.startswith("sqlite"):

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    _install_query_logging(engine, settings=get_settings())
    return engine


@lru_cache
def get_sessionmaker(database_url: str) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=get_engine(database_url), expire_on_commit=False)


async def get_db_session(
    settings: Settings = Depends(get_settings),
) -> AsyncIterator[AsyncSession]:
    sessionmaker = get_sessionmaker(settings.database_url)
    session_id = uuid4().hex[:12]
    start = perf_counter()

    with _DB_SESSION_LOGGER.context(db_session_id=session_id):
        _DB_SESSION_LOGGER.debug("session.open", "Opened DB session")
        async with sessionmaker() as session:
            try:
                yield session
            except Exception as exc:
                if session.in_transaction():
                    await session.rollback()
                    _DB_SESSION_LOGGER.warning(
                        "session.rollback",
                        "Rolled back DB transaction after error",
                        error_type=type(exc).__name__,
                    )
                raise
            finally:
                _DB_SESSION_LOGGER.debug(
                    "session.close",
                    "Closed DB session",
                    duration_ms=round((perf_counter() - start) * 1000, 1),
                )


@lru_cache
def get_status_reconciler() -> EtcdClusterStatusReconciler:
    """Process-wide reconciler; its health client cache lives as long as the app."""
    return EtcdClusterStatusReconciler.from_settings(get_settings())
