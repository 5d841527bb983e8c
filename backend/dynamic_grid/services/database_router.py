from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Mapping, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.dialects import registry as _sa_dialect_registry
from sqlalchemy.engine import Connection, Engine, create_engine, make_url
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from dynamic_grid.services.exceptions import DatabaseError, GridError
from dynamic_grid.utils.logger import logger, mask_url

# Target databases on SQL Server go through the pure-Python pytds dialect; make
# sure "mssql+pytds" resolves even when entry points are not discovered.
_sa_dialect_registry.register("mssql.pytds", "sqlalchemy_pytds", "MSDialect_pytds")

DEFAULT_DATABASE_ID = "default"

_TIMEOUT_MARKERS = ("timeout", "timed out", "canceling statement", "interrupted")
# SQLite VM instructions between deadline checks.
_SQLITE_PROGRESS_STEPS = 1000
_UNAVAILABLE_MARKERS = ("could not connect", "connection refused", "server closed", "unable to connect", "login failed")


def _engine_kwargs(url: str, timeout_seconds: float) -> dict:
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if make_url(url).database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        return kwargs

    kwargs = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 3600,
        "pool_timeout": 30,
    }
    if backend == "postgresql":
        kwargs["connect_args"] = {
            "connect_timeout": 10,
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
        }
    elif backend == "mssql":
        kwargs["connect_args"] = {"timeout": timeout_seconds, "login_timeout": 10}
    return kwargs


def classify_error(exc: SQLAlchemyError, database_id: str) -> DatabaseError:
    message = str(getattr(exc, "orig", None) or exc)
    lowered = message.lower()
    if any(marker in lowered for marker in _TIMEOUT_MARKERS):
        code = "DB_TIMEOUT"
    elif (isinstance(exc, DBAPIError) and exc.connection_invalidated) or any(
        marker in lowered for marker in _UNAVAILABLE_MARKERS
    ):
        code = "DB_UNAVAILABLE"
    else:
        code = "DB_ERROR"
    return DatabaseError(f"Database call failed on '{database_id}': {message.strip()}", code=code, database=database_id)


class DatabaseRouter:
    """Maps a procedure's database id to a pooled SQLAlchemy engine.

    Ids are matched case-insensitively against ``databases``. A missing or
    unconfigured id uses the default connection (with a warning for the
    latter); only a missing default URL is fatal.
    """

    def __init__(
        self,
        default_url: str,
        databases: Optional[Mapping[str, str]] = None,
        timeout_seconds: float = 30,
        default_engine: Optional[Engine] = None,
    ):
        if not default_url and default_engine is None:
            raise RuntimeError("Default database connection is not configured (DATABASE_URL).")
        self._default_url = default_url or default_engine.url.render_as_string(hide_password=False)
        self._timeout_seconds = timeout_seconds
        self._databases: Dict[str, Tuple[str, str]] = {
            name.lower(): (name, url) for name, url in (databases or {}).items() if url
        }
        self._engines: Dict[str, Engine] = {}
        if default_engine is not None:
            self._engines[DEFAULT_DATABASE_ID] = default_engine
        self._lock = threading.Lock()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def known_databases(self):
        return [name for name, _ in self._databases.values()]

    def resolve_target(self, database_id: Optional[str]) -> Tuple[str, str]:
        """(engine key, url) for ``database_id``."""
        if database_id:
            match = self._databases.get(database_id.strip().lower())
            if match is not None:
                return "db:" + match[0].lower(), match[1]
            logger.warning(
                "database_router.fallback database_id=%s reason=not_configured using=default", database_id
            )
        return DEFAULT_DATABASE_ID, self._default_url

    def engine_for(self, database_id: Optional[str] = None) -> Engine:
        key, url = self.resolve_target(database_id)
        engine = self._engines.get(key)
        if engine is not None:
            return engine
        with self._lock:
            engine = self._engines.get(key)
            if engine is None:
                logger.info("database_router.create_engine id=%s url=%s", key, mask_url(url))
                engine = create_engine(url, echo=False, **_engine_kwargs(url, self._timeout_seconds))
                self._engines[key] = engine
        return engine

    @contextmanager
    def _bounded(self, conn: Connection, timeout: Optional[float]) -> Iterator[None]:
        """Bound every statement on ``conn`` by ``timeout`` (or the router's default).

        PostgreSQL gets a transaction-local ``statement_timeout``. SQL Server
        sessions get ``LOCK_TIMEOUT`` on top of the pytds socket timeout set on
        the engine. SQLite has no statement timeout, so a progress handler
        interrupts the query once the deadline passes.
        """
        seconds = self._timeout_seconds if timeout is None else min(timeout, self._timeout_seconds)
        ms = max(int(seconds * 1000), 1)
        dialect = conn.dialect.name
        if dialect == "postgresql":
            conn.execute(text("SELECT set_config('statement_timeout', :ms, true)"), {"ms": str(ms)})
            yield
        elif dialect == "mssql":
            conn.exec_driver_sql(f"SET LOCK_TIMEOUT {ms}")
            yield
        elif dialect == "sqlite":
            deadline = time.monotonic() + seconds
            raw = conn.connection.driver_connection
            raw.set_progress_handler(lambda: int(time.monotonic() > deadline), _SQLITE_PROGRESS_STEPS)
            try:
                yield
            finally:
                raw.set_progress_handler(None, _SQLITE_PROGRESS_STEPS)
        else:
            yield

    @contextmanager
    def connection_for(
        self,
        database_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transactional: bool = False,
    ) -> Iterator[Connection]:
        """Scoped connection on the routed database.

        ``transactional=True`` commits on success and rolls back on error.
        SQLAlchemy failures raised inside the block come out as ``DatabaseError``.
        """
        engine = self.engine_for(database_id)
        label = database_id or DEFAULT_DATABASE_ID
        try:
            scope = engine.begin() if transactional else engine.connect()
            with scope as conn:
                with self._bounded(conn, timeout):
                    yield conn
        except GridError:
            raise
        except SQLAlchemyError as exc:
            error = classify_error(exc, label)
            logger.error("database_router.error id=%s code=%s error=%s", label, error.code, exc)
            raise error from exc

    def check_default(self) -> None:
        with self.connection_for(None) as conn:
            conn.execute(text("SELECT 1"))

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
