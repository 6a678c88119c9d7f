from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from db_user_federation.dialects import Dialect, PagingStyle

LOG = logging.getLogger(__name__)

# Helper column added by the row-numbering wrappers; stripped again by the repository.
ROW_NUMBER_COLUMN = "paging_row_number"

# "No limit" spellings for dialects whose LIMIT clause cannot be omitted when an OFFSET is present.
_UNBOUNDED_LIMIT = {
    Dialect.SQLITE: "-1",
    Dialect.MYSQL: "18446744073709551615",
    Dialect.MARIADB: "18446744073709551615",
}


@dataclass(frozen=True)
class PageRequest:
    """One page of a result set. ``limit == 0`` means unbounded."""

    offset: int = 0
    limit: int = 0

    def __post_init__(self):
        if self.offset < 0:
            raise ValueError(f"offset must be >= 0, got {self.offset}")
        if self.limit < 0:
            raise ValueError(f"limit must be >= 0, got {self.limit}")

    @property
    def unbounded(self) -> bool:
        return self.limit == 0

    @classmethod
    def of(cls, first: Optional[int], max_results: Optional[int]) -> "PageRequest | None":
        """Build from the host's (firstResult, maxResults) pair; both absent means no paging."""
        if first is None and max_results is None:
            return None
        return cls(offset=max(first or 0, 0), limit=max(max_results or 0, 0))


def _strip_terminator(sql: str) -> str:
    s = sql.strip()
    while s.endswith(";"):
        s = s[:-1].rstrip()
    return s


def paginate(sql: str, page: PageRequest, dialect: Dialect) -> str:
    """
    Return ``sql`` restricted to ``page`` using the dialect's pagination syntax.
    The wrapped query is not inspected; stable pages need a deterministic
    ORDER BY in the query itself (SQL Server additionally requires one for
    OFFSET/FETCH).
    """
    base = _strip_terminator(sql)
    o, k = page.offset, page.limit

    if dialect.paging is PagingStyle.LIMIT_OFFSET:
        if not page.unbounded:
            paged = f"{base} LIMIT {k} OFFSET {o}"
        elif dialect in _UNBOUNDED_LIMIT:
            paged = f"{base} LIMIT {_UNBOUNDED_LIMIT[dialect]} OFFSET {o}"
        else:
            paged = f"{base} OFFSET {o}"

    elif dialect.paging is PagingStyle.OFFSET_FETCH:
        paged = f"{base} OFFSET {o} ROWS"
        if not page.unbounded:
            paged += f" FETCH NEXT {k} ROWS ONLY"

    elif dialect.paging is PagingStyle.ROW_NUMBER:
        rn = dialect.quote_identifier(ROW_NUMBER_COLUMN)
        upper = "" if page.unbounded else f" AND {rn} <= {o + k}"
        paged = (
            f"SELECT * FROM (SELECT paged_inner.*, ROW_NUMBER() OVER () AS {rn} "
            f"FROM ({base}) paged_inner) paged_outer WHERE {rn} > {o}{upper}"
        )

    elif dialect.paging is PagingStyle.ROWNUM:
        rn = dialect.quote_identifier(ROW_NUMBER_COLUMN)
        upper = "" if page.unbounded else f" WHERE ROWNUM <= {o + k}"
        paged = (
            f"SELECT * FROM (SELECT paged_inner.*, ROWNUM AS {rn} "
            f"FROM ({base}) paged_inner{upper}) WHERE {rn} > {o}"
        )

    else:  # pragma: no cover - closed enum
        raise ValueError(f"Unhandled paging style: {dialect.paging}")

    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Paginated SQL (%s, offset=%d, limit=%d): %s", dialect.name, o, k, paged)
    return paged
