from __future__ import annotations

import logging
from enum import Enum
from typing import Dict

from db_user_federation import error_codes
from db_user_federation.errors import ConfigurationError

LOG = logging.getLogger(__name__)


class PagingStyle(str, Enum):
    LIMIT_OFFSET = "limit_offset"      # ... LIMIT k OFFSET o
    OFFSET_FETCH = "offset_fetch"      # ... OFFSET o ROWS FETCH NEXT k ROWS ONLY
    ROW_NUMBER = "row_number"          # wrapper with ROW_NUMBER() OVER ()
    ROWNUM = "rownum"                  # Oracle < 12c wrapper with ROWNUM


class Dialect(Enum):
    """Closed set of relational backends the bridge can talk to.

    Each member carries the description shown to deployers, the SQLAlchemy
    driver used to reach it, the query used to prove a new pool is usable,
    its pagination style and its identifier quote characters.
    """

    POSTGRESQL = ("PostgreSQL 12+", "postgresql+psycopg2", "SELECT 1", PagingStyle.LIMIT_OFFSET, '"', '"')
    MYSQL = ("MySQL 8", "mysql+pymysql", "SELECT 1", PagingStyle.LIMIT_OFFSET, "`", "`")
    MARIADB = ("MariaDB 10+", "mariadb+pymysql", "SELECT 1", PagingStyle.LIMIT_OFFSET, "`", "`")
    SQL_SERVER = ("MS SQL Server 2012+", "mssql+pymssql", "SELECT 1", PagingStyle.OFFSET_FETCH, "[", "]")
    ORACLE = ("Oracle 12c+", "oracle+oracledb", "SELECT 1 FROM DUAL", PagingStyle.OFFSET_FETCH, '"', '"')
    ORACLE_LEGACY = ("Oracle 11g", "oracle+oracledb", "SELECT 1 FROM DUAL", PagingStyle.ROWNUM, '"', '"')
    DB2 = ("DB2 10.1+", "db2+ibm_db", "SELECT 1 FROM SYSIBM.SYSDUMMY1", PagingStyle.ROW_NUMBER, '"', '"')
    SQLITE = ("SQLite 3", "sqlite", "SELECT 1", PagingStyle.LIMIT_OFFSET, '"', '"')

    def __init__(self, description: str, driver: str, validation_query: str,
                 paging: PagingStyle, quote_open: str, quote_close: str):
        self.description = description
        self.driver = driver
        self.validation_query = validation_query
        self.paging = paging
        self.quote_open = quote_open
        self.quote_close = quote_close

    def quote_identifier(self, ident: str) -> str:
        escaped = ident.replace(self.quote_close, self.quote_close * 2)
        q = f"{self.quote_open}{escaped}{self.quote_close}"
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Quoted identifier (%s): raw=%r quoted=%r", self.name, ident, q)
        return q

    @classmethod
    def all_descriptions(cls) -> list[str]:
        return [d.description for d in cls]

    @classmethod
    def resolve(cls, value: "Dialect | str | None") -> "Dialect":
        """Resolve a member name, description or common alias, case-insensitively."""
        if isinstance(value, Dialect):
            return value
        key = _norm(value or "")
        dialect = _LOOKUP.get(key)
        if dialect is None:
            raise ConfigurationError(
                f"Unsupported dialect {value!r}; expected one of: {', '.join(cls.all_descriptions())}",
                subcode=error_codes.CONFIG_UNKNOWN_DIALECT,
                details={"dialect": value},
            )
        return dialect


def _norm(text: str) -> str:
    return "".join(ch for ch in text.strip().lower() if ch.isalnum())


_ALIASES: Dict[str, Dialect] = {
    "postgres": Dialect.POSTGRESQL,
    "pg": Dialect.POSTGRESQL,
    "mssql": Dialect.SQL_SERVER,
    "sqlserver": Dialect.SQL_SERVER,
    "jtds": Dialect.SQL_SERVER,
    "oracle11": Dialect.ORACLE_LEGACY,
    "ibmdb2": Dialect.DB2,
    "sqlite3": Dialect.SQLITE,
}

_LOOKUP: Dict[str, Dialect] = {}
for _d in Dialect:
    _LOOKUP[_norm(_d.name)] = _d
    _LOOKUP[_norm(_d.description)] = _d
for _alias, _d in _ALIASES.items():
    _LOOKUP[_norm(_alias)] = _d
