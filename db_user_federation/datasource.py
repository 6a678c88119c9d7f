from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from urllib.parse import parse_qsl, urlsplit

from sqlalchemy import create_engine, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import URL, Connection, Engine, make_url
from sqlalchemy.pool import StaticPool

from db_user_federation import error_codes
from db_user_federation.dialects import Dialect
from db_user_federation.errors import (
    ConfigurationError,
    DataSourceConnectionError,
    FederationError,
    QueryExecutionError,
)

# Module-level logger for helpers
LOG = logging.getLogger(__name__)

# JDBC sub-protocol -> dialects it may legitimately be paired with
_SUBPROTOCOL_DIALECTS = {
    "postgresql": {Dialect.POSTGRESQL},
    "mysql": {Dialect.MYSQL, Dialect.MARIADB},
    "mariadb": {Dialect.MARIADB, Dialect.MYSQL},
    "sqlserver": {Dialect.SQL_SERVER},
    "jtds": {Dialect.SQL_SERVER},
    "oracle": {Dialect.ORACLE, Dialect.ORACLE_LEGACY},
    "db2": {Dialect.DB2},
    "sqlite": {Dialect.SQLITE},
}

# ============================== URL translation ===============================

def _bad_url(url: str, reason: str) -> ConfigurationError:
    return ConfigurationError(
        f"Cannot use connection URL {url!r}: {reason}",
        subcode=error_codes.CONFIG_BAD_URL,
    )


def _split_host_port(hostport: str, url: str) -> tuple[Optional[str], Optional[int]]:
    if not hostport:
        return None, None
    host, _, port = hostport.partition(":")
    if not port:
        return host, None
    try:
        return host, int(port)
    except ValueError:
        raise _bad_url(url, f"invalid port {port!r}") from None


def _sqlserver_url(rest: str, url: str, dialect: Dialect, jtds: bool) -> URL:
    # sqlserver://host[\instance][:port][;prop=value]*
    # jtds:sqlserver://host[:port][/database][;prop=value]*
    body = rest[len("sqlserver://"):]
    head, *props = body.split(";")
    options = {k.strip().lower(): v.strip() for k, _, v in (p.partition("=") for p in props if p.strip())}
    database = options.get("databasename") or options.get("database")
    if jtds and "/" in head:
        head, _, database_from_path = head.partition("/")
        database = database or database_from_path or None
    host, port = _split_host_port(head, url)
    instance = options.get("instance") or options.get("instancename")
    if host and "\\" in host:
        host, _, instance = host.partition("\\")
    if instance:
        host = f"{host}\\{instance}"
    return URL.create(dialect.driver, host=host, port=port, database=database)


def _oracle_url(rest: str, url: str, dialect: Dialect) -> URL:
    # oracle:thin:@host:port:SID | oracle:thin:@//host:port/service | oracle:thin:@host:port/service
    _, at, target = rest.partition("@")
    if not at or not target:
        raise _bad_url(url, "expected oracle:thin:@host:port:SID or oracle:thin:@//host:port/service")
    if target.startswith("("):
        raise _bad_url(url, "TNS descriptors are not supported; use host:port/service")
    target = target[2:] if target.startswith("//") else target
    if "/" in target:
        hostport, _, service = target.partition("/")
        host, port = _split_host_port(hostport, url)
        return URL.create(dialect.driver, host=host, port=port, query={"service_name": service})
    parts = target.split(":")
    if len(parts) != 3:
        raise _bad_url(url, "expected host:port:SID")
    host, port = _split_host_port(f"{parts[0]}:{parts[1]}", url)
    return URL.create(dialect.driver, host=host, port=port, database=parts[2])


def to_sqlalchemy_url(url: str, dialect: Dialect, user: Optional[str] = None, password: Optional[str] = None) -> URL:
    """
    Translate a JDBC-style connection string into a SQLAlchemy URL for ``dialect``.
    Non-JDBC strings are taken as SQLAlchemy URLs already. Credentials given
    separately win over credentials embedded in the URL.
    """
    raw = (url or "").strip()
    if not raw:
        raise _bad_url(url, "empty URL")

    if not raw.lower().startswith("jdbc:"):
        try:
            sa_url = make_url(raw)
        except sa_exc.ArgumentError as e:
            raise _bad_url(url, str(e)) from e
    else:
        rest = raw[len("jdbc:"):]
        subprotocol = rest.split(":", 1)[0].lower()
        allowed = _SUBPROTOCOL_DIALECTS.get(subprotocol)
        if allowed is None:
            raise _bad_url(url, f"unknown JDBC sub-protocol {subprotocol!r}")
        if dialect not in allowed:
            raise _bad_url(url, f"JDBC sub-protocol {subprotocol!r} does not match dialect {dialect.description!r}")

        if subprotocol == "sqlite":
            path = rest[len("sqlite:"):]
            sa_url = URL.create(dialect.driver, database=None if path in ("", ":memory:") else path)
        elif subprotocol == "oracle":
            sa_url = _oracle_url(rest, url, dialect)
        elif subprotocol == "sqlserver":
            sa_url = _sqlserver_url(rest, url, dialect, jtds=False)
        elif subprotocol == "jtds":
            sa_url = _sqlserver_url(rest[len("jtds:"):], url, dialect, jtds=True)
        else:
            parts = urlsplit(rest)
            if not parts.hostname:
                raise _bad_url(url, "missing host")
            dropped = [k for k, _ in parse_qsl(parts.query)]
            if dropped:
                LOG.warning("Ignoring JDBC-only URL parameters for %s: %s", dialect.name, dropped)
            try:
                port = parts.port
            except ValueError:
                raise _bad_url(url, "invalid port") from None
            sa_url = URL.create(
                dialect.driver,
                host=parts.hostname,
                port=port,
                database=parts.path.lstrip("/") or None,
            )

    if user:
        sa_url = sa_url.set(username=user)
    if password:
        sa_url = sa_url.set(password=password)
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Translated URL %r -> %s", url, sa_url.render_as_string(hide_password=True))
    return sa_url


# ============================== Error translation ===============================

def translate_db_error(exc: sa_exc.SQLAlchemyError, action: str, *, connecting: bool = False) -> FederationError:
    """
    Map a SQLAlchemy/DBAPI failure onto the bridge's error taxonomy. Anything
    raised while opening a connection, or that invalidated the connection, is
    a (transient) connection error; everything else is a statement failure.
    """
    if isinstance(exc, sa_exc.TimeoutError):
        return DataSourceConnectionError(
            f"{action}: connection pool exhausted", subcode=error_codes.CONNECTION_POOL_EXHAUSTED
        )
    if connecting or (isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated):
        return DataSourceConnectionError(
            f"{action}: database unreachable ({exc.__class__.__name__})",
            subcode=error_codes.CONNECTION_UNREACHABLE,
        )
    return QueryExecutionError(f"{action}: statement failed ({exc.__class__.__name__})")


# ============================== Connection provider ===============================

class DataSourceProvider:
    """
    Owns the pooled engine of one configured instance.

    ``configure`` builds and proves a new engine before swapping it in, then
    disposes the old one. Connections already borrowed from the old engine
    finish their work; borrowing after ``close`` fails.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self.log = logger or LOG
        self._lock = threading.Lock()
        self._engine: Optional[Engine] = None
        self._dialect: Optional[Dialect] = None
        self._pool_id: Optional[str] = None
        self._closed = False

    # ------------------------ configuration ------------------------

    @staticmethod
    def _engine_kwargs(sa_url: URL, dialect: Dialect, pool_id: str, pool_size: int, max_overflow: int,
                       pool_timeout: float, statement_timeout: Optional[int]) -> Dict[str, Any]:
        connect_args: Dict[str, Any] = {}
        kwargs: Dict[str, Any] = {"pool_pre_ping": True}

        if dialect is Dialect.SQLITE:
            connect_args["check_same_thread"] = False
            if statement_timeout:
                connect_args["timeout"] = statement_timeout
            if sa_url.database in (None, "", ":memory:"):
                # one shared connection, otherwise every checkout sees a fresh empty database
                kwargs["poolclass"] = StaticPool
                kwargs["connect_args"] = connect_args
                return kwargs
        elif dialect is Dialect.POSTGRESQL:
            connect_args["application_name"] = pool_id
            if statement_timeout:
                connect_args["options"] = f"-c statement_timeout={int(statement_timeout) * 1000}"
        elif dialect in (Dialect.MYSQL, Dialect.MARIADB):
            if statement_timeout:
                connect_args["read_timeout"] = statement_timeout
        elif statement_timeout:
            LOG.debug("statement_timeout not supported for %s; relying on driver defaults", dialect.name)

        kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            connect_args=connect_args,
        )
        return kwargs

    def configure(
        self,
        url: str,
        dialect: "Dialect | str",
        user: Optional[str],
        password: Optional[str],
        pool_id: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: float = 30.0,
        statement_timeout: Optional[int] = None,
    ) -> None:
        t0 = time.perf_counter()
        dialect = Dialect.resolve(dialect)
        sa_url = to_sqlalchemy_url(url, dialect, user, password)
        safe_url = sa_url.render_as_string(hide_password=True)
        self.log.info("Configuring datasource %s: dialect=%s url=%s", pool_id, dialect.name, safe_url)

        kwargs = self._engine_kwargs(sa_url, dialect, pool_id, pool_size, max_overflow, pool_timeout, statement_timeout)
        try:
            engine = create_engine(sa_url, **kwargs)
        except (sa_exc.ArgumentError, sa_exc.NoSuchModuleError, ImportError) as e:
            self.log.error("Cannot create engine for %s (%s)", pool_id, safe_url, exc_info=True)
            raise ConfigurationError(
                f"Cannot create connection pool for {safe_url}: {e}",
                subcode=error_codes.CONFIG_BAD_URL,
            ) from e

        try:
            with engine.connect() as conn:
                conn.execute(text(dialect.validation_query))
        except sa_exc.SQLAlchemyError as e:
            engine.dispose()
            self.log.error("Validation query failed for %s (%s)", pool_id, safe_url, exc_info=True)
            raise ConfigurationError(
                f"Database at {safe_url} is not usable: {e.__class__.__name__}",
                subcode=error_codes.CONFIG_BACKEND_UNUSABLE,
            ) from e

        with self._lock:
            old = self._engine
            self._engine = engine
            self._dialect = dialect
            self._pool_id = pool_id
            self._closed = False

        if old is not None:
            old.dispose()
            self.log.info("Disposed previous pool for %s", pool_id)
        self.log.info("✅ Datasource %s ready (%.3fs)", pool_id, time.perf_counter() - t0)

    def configure_from(self, settings) -> None:
        """Configure from a :class:`~db_user_federation.QueryConfig.ConnectionSettings`."""
        self.configure(
            settings.url,
            settings.dialect,
            settings.user,
            settings.password,
            settings.pool_id,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
            statement_timeout=settings.statement_timeout,
        )

    # ------------------------ state ------------------------

    @property
    def is_configured(self) -> bool:
        return self._engine is not None

    @property
    def dialect(self) -> Optional[Dialect]:
        return self._dialect

    @property
    def pool_id(self) -> Optional[str]:
        return self._pool_id

    def _current_engine(self) -> Engine:
        with self._lock:
            if self._closed:
                raise DataSourceConnectionError(
                    f"Datasource {self._pool_id} is closed",
                    subcode=error_codes.CONNECTION_PROVIDER_CLOSED,
                )
            if self._engine is None:
                raise ConfigurationError(
                    "Datasource has not been configured",
                    subcode=error_codes.CONFIG_NOT_CONFIGURED,
                )
            return self._engine

    # ------------------------ borrowing ------------------------

    @contextmanager
    def acquire(self) -> Iterator[Connection]:
        """
        Borrow a pooled connection; it goes back to the pool on every exit path.

        A connection opened while ``close`` or ``configure`` swapped the engine
        out is discarded. After ``close`` the borrow fails; after a swap it is
        retried on the new engine.
        """
        while True:
            engine = self._current_engine()
            try:
                conn = engine.connect()
            except sa_exc.SQLAlchemyError as e:
                err = translate_db_error(e, f"Cannot acquire connection from {self._pool_id}", connecting=True)
                self.log.warning("%s", err.message)
                raise err from e
            with self._lock:
                current = self._engine
            if current is engine:
                break
            # the pool it came from has been disposed; drop the DBAPI connection too
            conn.invalidate()
            conn.close()
            self.log.debug("Engine of %s changed during borrow; discarded connection", self._pool_id)
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------ teardown ------------------------

    def close(self) -> None:
        with self._lock:
            engine, self._engine = self._engine, None
            already = self._closed
            self._closed = True
        if engine is not None:
            engine.dispose()
            self.log.info("Datasource %s closed", self._pool_id)
        elif not already:
            self.log.debug("close() on unconfigured datasource")

    def __enter__(self) -> "DataSourceProvider":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
