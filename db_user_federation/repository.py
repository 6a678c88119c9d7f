from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import exc as sa_exc
from sqlalchemy import text

from db_user_federation.QueryConfig import QueryConfig
from db_user_federation.datasource import DataSourceProvider, translate_db_error
from db_user_federation.errors import QueryExecutionError, RowMappingError
from db_user_federation.paging import ROW_NUMBER_COLUMN, PageRequest, paginate
from db_user_federation.records import ExternalUserRecord
from db_user_federation.templates import count_placeholders, to_named_binds

LOG = logging.getLogger(__name__)

# search terms the host uses to mean "everyone"
_MATCH_ALL_TERMS = {"", "*"}


def _search_pattern(term: str) -> str:
    return f"%{term.strip().upper()}%"


def _is_search(term: Optional[str]) -> bool:
    return term is not None and term.strip() not in _MATCH_ALL_TERMS


class UserRepository:
    """
    Runs the configured SQL templates for one instance.

    Bound to a single (datasource, config) snapshot; every call borrows its
    own connection. Lookups are all-or-nothing: a row that cannot be mapped
    aborts the whole call with :class:`RowMappingError`.
    """

    def __init__(self, datasource: DataSourceProvider, config: QueryConfig, logger: logging.Logger | None = None):
        self.datasource = datasource
        self.config = config
        self.log = logger or LOG

    # ------------------------ statement execution ------------------------

    def _bind(self, template: str, params: Sequence[Any], page: Optional[PageRequest]) -> tuple[str, Dict[str, Any]]:
        sql = paginate(template, page, self.config.dialect) if page is not None else template
        sql, names = to_named_binds(sql)
        if len(names) != len(params):
            raise QueryExecutionError(
                f"Template expects {len(names)} parameter(s), got {len(params)}",
                details={"placeholders": len(names), "params": len(params)},
            )
        return sql, dict(zip(names, params))

    def _fetch(self, action: str, template: str, params: Sequence[Any] = (),
               page: Optional[PageRequest] = None) -> List[Dict[str, Any]]:
        t0 = time.perf_counter()
        sql, binds = self._bind(template, params, page)
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("%s SQL: %s", action, sql)
        try:
            with self.datasource.acquire() as conn:
                result = conn.execute(text(sql), binds)
                rows = [dict(r) for r in result.mappings()]
        except sa_exc.SQLAlchemyError as e:
            err = translate_db_error(e, action)
            self.log.error("%s failed: %s", action, err.message, exc_info=True)
            raise err from e
        self.log.info("%s returned %d row(s) (%.3fs)", action, len(rows), time.perf_counter() - t0)
        return rows

    def _execute_write(self, action: str, template: str, params: Sequence[Any]) -> int:
        t0 = time.perf_counter()
        sql, binds = self._bind(template, params, None)
        try:
            with self.datasource.acquire() as conn:
                result = conn.execute(text(sql), binds)
                conn.commit()
                affected = result.rowcount
        except sa_exc.SQLAlchemyError as e:
            err = translate_db_error(e, action)
            self.log.error("%s failed: %s", action, err.message, exc_info=True)
            raise err from e
        self.log.info("%s affected %s row(s) (%.3fs)", action, affected, time.perf_counter() - t0)
        return affected

    # ------------------------ row mapping ------------------------

    def _to_records(self, action: str, rows: List[Dict[str, Any]]) -> List[ExternalUserRecord]:
        records: List[ExternalUserRecord] = []
        for i, row in enumerate(rows):
            cleaned = {k: v for k, v in row.items() if str(k).lower() != ROW_NUMBER_COLUMN}
            try:
                records.append(ExternalUserRecord(cleaned))
            except RowMappingError as e:
                e.details["row_index"] = i
                self.log.error("%s aborted: row %d unusable (%s)", action, i, e.message)
                raise
        return records

    def _single(self, action: str, template: str, value: str) -> Optional[ExternalUserRecord]:
        records = self._to_records(action, self._fetch(action, template, (value,)))
        if not records:
            return None
        if len(records) > 1:
            self.log.warning("%s matched %d rows; using the first one", action, len(records))
        return records[0]

    # ------------------------ lookups ------------------------

    def count(self, search_term: Optional[str] = None) -> int:
        """
        Number of users. With a search term the count is the size of the
        unpaged search result, so it always agrees with ``find_users``.
        """
        if _is_search(search_term):
            return len(self.find_users(search_term))
        rows = self._fetch("count", self.config.count)
        if not rows:
            return 0
        value = next(iter(rows[0].values()))
        return int(value or 0)

    def find_by_id(self, user_id: str) -> Optional[ExternalUserRecord]:
        return self._single("find_by_id", self.config.find_by_id, user_id)

    def find_by_username(self, username: str) -> Optional[ExternalUserRecord]:
        return self._single("find_by_username", self.config.find_by_username, username)

    def find_by_email(self, email: str) -> Optional[ExternalUserRecord]:
        return self._single("find_by_email", self.config.find_by_email, email)

    def find_users(self, search_term: Optional[str] = None, page: Optional[PageRequest] = None) -> List[ExternalUserRecord]:
        if _is_search(search_term):
            template = self.config.find_by_search_term
            pattern = _search_pattern(search_term)
            params = [pattern] * count_placeholders(template)
            rows = self._fetch("find_users(search)", template, params, page)
            return self._to_records("find_users(search)", rows)
        return self._to_records("find_users", self._fetch("find_users", self.config.list_all, (), page))

    def get_all_users_for_sync(self) -> List[ExternalUserRecord]:
        return self._to_records("list_all_for_sync", self._fetch("list_all_for_sync", self.config.sync_template))

    # ------------------------ credentials ------------------------

    def find_password_hash(self, username: str) -> Optional[str]:
        rows = self._fetch("find_password_hash", self.config.find_password_hash, (username,))
        if not rows:
            return None
        if len(rows) > 1:
            self.log.warning("find_password_hash matched %d rows; using the first one", len(rows))
        value = next(iter(rows[0].values()), None)
        if value is None:
            return None
        stored = str(value).strip()
        return stored or None

    def validate_credentials(self, username: str, plaintext: str) -> bool:
        stored = self.find_password_hash(username)
        if stored is None:
            self.log.info("No password hash found for user %s", username)
            return False
        ok = self.config.verifier.verify(stored, plaintext)
        self.log.info("Credential check for user %s: %s", username, "valid" if ok else "invalid")
        return ok

    def update_credentials(self, username: str, new_plaintext: str) -> bool:
        """Best-effort write-back of a new password; False when no write template is configured."""
        template = self.config.update_password_hash
        if not template:
            self.log.info("No update_password_hash template configured; not updating %s", username)
            return False
        new_hash = self.config.verifier.hash(new_plaintext)
        affected = self._execute_write("update_password_hash", template, (new_hash, username))
        return affected is not None and affected > 0
