from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from db_user_federation import error_codes
from db_user_federation.dialects import Dialect
from db_user_federation.errors import ConfigurationError
from db_user_federation.hashing import (
    DEFAULT_BCRYPT_ROUNDS,
    DEFAULT_PBKDF2_ITERATIONS,
    CredentialVerifier,
    HashAlgorithm,
)
from db_user_federation.templates import count_placeholders

LOG = logging.getLogger(__name__)

# ============================== Defaults ===============================

_USER_COLUMNS = '"id", "username", "email", "firstName", "lastName", "fullName"'

DEFAULT_COUNT = "select count(*) from users"
DEFAULT_LIST_ALL = f"select {_USER_COLUMNS} from users"
DEFAULT_FIND_BY_ID = f'select {_USER_COLUMNS} from users where "id" = ?'
DEFAULT_FIND_BY_USERNAME = f'select {_USER_COLUMNS} from users where "username" = ?'
DEFAULT_FIND_BY_EMAIL = f'select {_USER_COLUMNS} from users where "email" = ?'
DEFAULT_FIND_BY_SEARCH_TERM = (
    f'select {_USER_COLUMNS} from users '
    'where upper("username") like (?) or upper("email") like (?) or upper("fullName") like (?)'
)
DEFAULT_FIND_PASSWORD_HASH = 'select hash_pwd from users where "username" = ?'

_TRUE = {"true", "1", "yes", "y", "on"}
_FALSE = {"false", "0", "no", "n", "off", ""}


def _parse_bool(key: str, value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    v = str(value).strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigurationError(f"Invalid boolean for {key!r}: {value!r}", subcode=error_codes.CONFIG_BAD_VALUE)


def _parse_int(key: str, value: Any, default: Optional[int]) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid integer for {key!r}: {value!r}", subcode=error_codes.CONFIG_BAD_VALUE) from e


def _parse_float(key: str, value: Any, default: Optional[float]) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid number for {key!r}: {value!r}", subcode=error_codes.CONFIG_BAD_VALUE) from e


def _first(mapping: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in mapping and mapping[k] is not None:
            return mapping[k]
    return default


# ============================== Config models ===============================

@dataclass(frozen=True)
class ConnectionSettings:
    url: str
    dialect: Dialect
    user: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    pool_id: str = "db-user-federation"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: float = 30.0
    statement_timeout: Optional[int] = None   # seconds, handed to the driver

    def __post_init__(self):
        object.__setattr__(self, "dialect", Dialect.resolve(self.dialect))
        if not self.url or not str(self.url).strip():
            raise ConfigurationError("Connection URL is required", subcode=error_codes.CONFIG_BAD_URL)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], *, pool_id: Optional[str] = None) -> "ConnectionSettings":
        return cls(
            url=str(_first(mapping, "url", default="")).strip(),
            dialect=_first(mapping, "dialect", "rdbms"),
            user=_first(mapping, "user", "username"),
            password=_first(mapping, "password"),
            pool_id=pool_id or str(_first(mapping, "poolId", "pool_id", "name", default="db-user-federation")),
            pool_size=_parse_int("poolSize", _first(mapping, "poolSize", "pool_size"), 5),
            max_overflow=_parse_int("maxOverflow", _first(mapping, "maxOverflow", "max_overflow"), 10),
            pool_timeout=_parse_float("poolTimeout", _first(mapping, "poolTimeout", "pool_timeout"), 30.0),
            statement_timeout=_parse_int("statementTimeout", _first(mapping, "statementTimeout", "statement_timeout"), None),
        )


# template attribute -> (min placeholders, max placeholders or None for unbounded)
_ARITY = {
    "count": (0, 0),
    "list_all": (0, 0),
    "find_by_id": (1, 1),
    "find_by_username": (1, 1),
    "find_by_email": (1, 1),
    "find_by_search_term": (1, None),
    "find_password_hash": (1, 1),
    "list_all_for_sync": (0, 0),
    "update_password_hash": (2, 2),
}
_OPTIONAL_TEMPLATES = {"list_all_for_sync", "update_password_hash"}


@dataclass(frozen=True)
class QueryConfig:
    """
    Everything one instance needs to query the external user table: SQL
    templates with positional ``?`` placeholders, the dialect, the password
    hash algorithm and the policy flags. Validated on construction.
    """

    count: str = DEFAULT_COUNT
    list_all: str = DEFAULT_LIST_ALL
    find_by_id: str = DEFAULT_FIND_BY_ID
    find_by_username: str = DEFAULT_FIND_BY_USERNAME
    find_by_email: str = DEFAULT_FIND_BY_EMAIL
    find_by_search_term: str = DEFAULT_FIND_BY_SEARCH_TERM
    find_password_hash: str = DEFAULT_FIND_PASSWORD_HASH
    list_all_for_sync: Optional[str] = None      # falls back to list_all
    update_password_hash: Optional[str] = None   # "update ... set hash = ? where username = ?"

    dialect: Dialect = Dialect.POSTGRESQL
    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA_1
    pbkdf2_iterations: int = DEFAULT_PBKDF2_ITERATIONS
    bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS

    allow_overwrite: bool = False
    sync_enabled: bool = False
    allow_local_delete: bool = False
    unlink_enabled: bool = False
    sync_new_users_on_login: bool = False
    sync_creates_users: bool = True

    verifier: CredentialVerifier = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "dialect", Dialect.resolve(self.dialect))
        object.__setattr__(self, "hash_algorithm", HashAlgorithm.resolve(self.hash_algorithm))

        for name, (lo, hi) in _ARITY.items():
            template = getattr(self, name)
            if template is None and name in _OPTIONAL_TEMPLATES:
                continue
            if not isinstance(template, str) or not template.strip():
                raise ConfigurationError(
                    f"SQL template {name!r} is required",
                    subcode=error_codes.CONFIG_TEMPLATE_MISSING,
                    details={"template": name},
                )
            n = count_placeholders(template)
            if n < lo or (hi is not None and n > hi):
                expected = f"{lo}" if lo == hi else f"at least {lo}"
                raise ConfigurationError(
                    f"SQL template {name!r} has {n} '?' placeholder(s); expected {expected}",
                    subcode=error_codes.CONFIG_TEMPLATE_ARITY,
                    details={"template": name, "placeholders": n},
                )

        object.__setattr__(
            self,
            "verifier",
            CredentialVerifier(self.hash_algorithm, pbkdf2_iterations=self.pbkdf2_iterations, bcrypt_rounds=self.bcrypt_rounds),
        )
        LOG.debug("QueryConfig validated: dialect=%s hash=%s", self.dialect.name, self.hash_algorithm.label)

    @property
    def sync_template(self) -> str:
        return self.list_all_for_sync or self.list_all

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "QueryConfig":
        """Build from a flat property mapping; the original property names are accepted."""
        def tpl(*keys: str, default: Optional[str]) -> Optional[str]:
            v = _first(mapping, *keys)
            if v is None or (isinstance(v, str) and not v.strip()):
                return default
            return str(v)

        return cls(
            count=tpl("count", default=DEFAULT_COUNT),
            list_all=tpl("listAll", "list_all", default=DEFAULT_LIST_ALL),
            find_by_id=tpl("findById", "find_by_id", default=DEFAULT_FIND_BY_ID),
            find_by_username=tpl("findByUsername", "find_by_username", default=DEFAULT_FIND_BY_USERNAME),
            find_by_email=tpl("findByEmail", "find_by_email", default=DEFAULT_FIND_BY_EMAIL),
            find_by_search_term=tpl("findBySearchTerm", "find_by_search_term", default=DEFAULT_FIND_BY_SEARCH_TERM),
            find_password_hash=tpl("findPasswordHash", "find_password_hash", default=DEFAULT_FIND_PASSWORD_HASH),
            list_all_for_sync=tpl("listAllForSync", "list_all_for_sync", default=None),
            update_password_hash=tpl("updatePasswordHash", "update_password_hash", default=None),
            dialect=_first(mapping, "dialect", "rdbms", default=Dialect.POSTGRESQL),
            hash_algorithm=_first(mapping, "hashFunction", "hash_function", "hash_algorithm", default=HashAlgorithm.SHA_1),
            pbkdf2_iterations=_parse_int("pbkdf2Iterations", _first(mapping, "pbkdf2Iterations", "pbkdf2_iterations"), DEFAULT_PBKDF2_ITERATIONS),
            bcrypt_rounds=_parse_int("bcryptRounds", _first(mapping, "bcryptRounds", "bcrypt_rounds"), DEFAULT_BCRYPT_ROUNDS),
            allow_overwrite=_parse_bool(
                "allowOverwrite",
                _first(mapping, "allowDatabaseToOverwriteKeycloak", "allowOverwrite", "allow_overwrite"),
                False,
            ),
            sync_enabled=_parse_bool("syncEnabled", _first(mapping, "syncEnabled", "sync_enabled"), False),
            allow_local_delete=_parse_bool(
                "allowLocalDelete",
                _first(mapping, "allowKeycloakDelete", "allowLocalDelete", "allow_local_delete"),
                False,
            ),
            unlink_enabled=_parse_bool("unlinkEnabled", _first(mapping, "unlinkEnabled", "unlink_enabled"), False),
            sync_new_users_on_login=_parse_bool(
                "syncNewUsersOnLogin", _first(mapping, "syncNewUsersOnLogin", "sync_new_users_on_login"), False
            ),
            sync_creates_users=_parse_bool(
                "syncCreatesUsers", _first(mapping, "syncCreatesUsers", "sync_creates_users"), True
            ),
        )
