"""
What the bridge needs from the host platform's local identity store.

The host owns its users; the bridge only reads them by username/id/email,
creates them during import and writes a handful of fields back.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol, runtime_checkable


@runtime_checkable
class LocalUser(Protocol):
    id: str
    username: str
    email: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    enabled: bool
    # id of the bridge instance that owns this user, None for purely local users
    federation_link: Optional[str]

    def get_attributes(self) -> Dict[str, List[str]]: ...

    def set_attribute(self, name: str, values: List[str]) -> None: ...


@runtime_checkable
class LocalUserStore(Protocol):
    def get_user_by_id(self, user_id: str) -> Optional[LocalUser]: ...

    def get_user_by_username(self, username: str) -> Optional[LocalUser]: ...

    def get_user_by_email(self, email: str) -> Optional[LocalUser]: ...

    def add_user(self, username: str) -> LocalUser: ...
