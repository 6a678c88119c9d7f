from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Dict, Iterator, Optional

from db_user_federation import error_codes
from db_user_federation.errors import RowMappingError

ID = "id"
USERNAME = "username"
EMAIL = "email"
FIRST_NAME = "firstName"
LAST_NAME = "lastName"

REQUIRED_COLUMNS = (ID, USERNAME)
MAPPED_COLUMNS = frozenset({ID, USERNAME, EMAIL, FIRST_NAME, LAST_NAME})


class ExternalUserRecord(Mapping):
    """
    One row of the external user table as an ordered, read-only mapping of
    column name to trimmed string value. Null and blank values are dropped.
    Always carries ``id`` and ``username``.
    """

    __slots__ = ("_data",)

    def __init__(self, row: Mapping[str, Any]):
        data: Dict[str, str] = {}
        for key, value in row.items():
            if value is None:
                continue
            text = str(value).strip()
            if text:
                data[str(key)] = text
        for col, subcode in ((ID, error_codes.ROW_MISSING_ID), (USERNAME, error_codes.ROW_MISSING_USERNAME)):
            if col not in data:
                raise RowMappingError(
                    f"Returned row has no {col!r} column value",
                    subcode=subcode,
                    details={"columns": sorted(str(k) for k in row.keys())},
                )
        self._data = MappingProxyType(data)

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __setattr__(self, name, value):
        if name in self.__slots__ and not hasattr(self, name):
            object.__setattr__(self, name, value)
            return
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __hash__(self) -> int:
        return hash(tuple(self._data.items()))

    def __repr__(self) -> str:
        return f"ExternalUserRecord({dict(self._data)!r})"

    @property
    def id(self) -> str:
        return self._data[ID]

    @property
    def username(self) -> str:
        return self._data[USERNAME]

    @property
    def email(self) -> Optional[str]:
        return self._data.get(EMAIL)

    @property
    def first_name(self) -> Optional[str]:
        return self._data.get(FIRST_NAME)

    @property
    def last_name(self) -> Optional[str]:
        return self._data.get(LAST_NAME)

    def extra_attributes(self) -> Dict[str, str]:
        """Columns beyond the ones mapped onto the host user's own fields."""
        return {k: v for k, v in self._data.items() if k not in MAPPED_COLUMNS}
