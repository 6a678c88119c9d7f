from __future__ import annotations

import logging
from typing import List, Tuple

LOG = logging.getLogger(__name__)

PLACEHOLDER = "?"
BIND_PREFIX = "p"
CAST = "::"
ESCAPED_CAST = r"\:\:"   # sqlalchemy.text() unescapes to "::"


def _scan(sql: str) -> List[int]:
    """Positions of ``?`` placeholders, ignoring those inside quoted literals/identifiers."""
    positions: List[int] = []
    quote: str | None = None
    for i, ch in enumerate(sql):
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == PLACEHOLDER:
            positions.append(i)
    return positions


def count_placeholders(sql: str) -> int:
    return len(_scan(sql))


def to_named_binds(sql: str) -> Tuple[str, List[str]]:
    """
    Rewrite positional ``?`` placeholders as ``:p0, :p1, ...`` so the statement
    can go through ``sqlalchemy.text`` and be rendered in whatever paramstyle
    the driver wants. Returns the rewritten SQL and the bind names in order.

    A PostgreSQL cast right after a placeholder (``?::integer``) is emitted
    with escaped colons, otherwise ``text()`` would not see the bind name.
    """
    positions = _scan(sql)
    if not positions:
        return sql, []
    out: List[str] = []
    names: List[str] = []
    last = 0
    for n, pos in enumerate(positions):
        name = f"{BIND_PREFIX}{n}"
        out.append(sql[last:pos])
        names.append(name)
        if sql.startswith(CAST, pos + 1):
            out.append(f":{name}{ESCAPED_CAST}")
            last = pos + 1 + len(CAST)
        else:
            out.append(f":{name}")
            last = pos + 1
    out.append(sql[last:])
    rewritten = "".join(out)
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Rewrote %d placeholder(s): %s", len(names), rewritten)
    return rewritten, names
