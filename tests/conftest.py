"""
Shared pytest fixtures for the user federation tests.

A file-backed SQLite database stands in for the external user table, and a
small in-memory store stands in for the host platform's local users.
"""

import hashlib
import itertools
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine, text

from db_user_federation.QueryConfig import QueryConfig
from db_user_federation.datasource import DataSourceProvider
from db_user_federation.provider import ProviderRegistry
from db_user_federation.repository import UserRepository

INSTANCE_ID = "main"

# id, username, email, firstName, lastName, fullName, plaintext password
USERS = [
    ("1", "alice", "alice@example.com", "Alice", "Anders", "Alice Anders", "pw-alice"),
    ("2", "bob", "bob@example.com", "Bob", "Berg", "Bob Berg", "pw-bob"),
    ("3", "carol", "carol@example.com", "Carol", "Chen", "Carol Chen", "pw-carol"),
    ("4", "dave", "dave@example.com", "Dave", "Dietz", "Dave Dietz", "pw-dave"),
    ("5", "erin", "erin@example.com", "Erin", "Eklund", "Erin Eklund", "pw-erin"),
    ("6", "frank", None, "Frank", None, "Frank", "pw-frank"),
    ("7", "grace", "grace@example.com", "Grace", "  ", "Grace Hopper", "pw-grace"),
]

COLUMNS = '"id", "username", "email", "firstName", "lastName", "fullName"'


def sha1_hex(plaintext: str) -> str:
    return hashlib.sha1(plaintext.encode("utf-8")).hexdigest()


def seed_users(db_file, rows=USERS) -> None:
    engine = create_engine(f"sqlite:///{db_file}")
    with engine.begin() as conn:
        conn.execute(text(
            'create table users ("id" text, "username" text, "email" text, "firstName" text, '
            '"lastName" text, "fullName" text, hash_pwd text)'
        ))
        for uid, username, email, first, last, full, pw in rows:
            conn.execute(
                text('insert into users values (:id, :username, :email, :first, :last, :full, :pwd)'),
                {"id": uid, "username": username, "email": email, "first": first,
                 "last": last, "full": full, "pwd": sha1_hex(pw)},
            )
    engine.dispose()


# ------------------------ Local store double ------------------------

class InMemoryUser:
    def __init__(self, user_id: str, username: str):
        self.id = user_id
        self.username = username
        self.email: Optional[str] = None
        self.first_name: Optional[str] = None
        self.last_name: Optional[str] = None
        self.enabled = True
        self.federation_link: Optional[str] = None
        self._attributes: Dict[str, List[str]] = {}

    def get_attributes(self) -> Dict[str, List[str]]:
        return {k: list(v) for k, v in self._attributes.items()}

    def set_attribute(self, name: str, values: List[str]) -> None:
        self._attributes[name] = list(values)


class InMemoryUserStore:
    def __init__(self):
        self.users: Dict[str, InMemoryUser] = {}
        self._ids = itertools.count(1)

    def get_user_by_id(self, user_id):
        return self.users.get(user_id)

    def get_user_by_username(self, username):
        return next((u for u in self.users.values() if u.username == username), None)

    def get_user_by_email(self, email):
        return next((u for u in self.users.values() if u.email == email), None)

    def add_user(self, username):
        user = InMemoryUser(f"local-{next(self._ids)}", username)
        self.users[user.id] = user
        return user


# ------------------------ Fixtures ------------------------

@pytest.fixture
def db_file(tmp_path):
    path = tmp_path / "users.db"
    seed_users(path)
    return path


@pytest.fixture
def settings(db_file):
    """Instance settings using the original property names."""
    return {
        "url": f"jdbc:sqlite:{db_file}",
        "rdbms": "SQLite 3",
        "hashFunction": "SHA-1",
        "count": "select count(*) from users",
        "listAll": f'select {COLUMNS} from users order by "id"',
        "findById": f'select {COLUMNS} from users where "id" = ?',
        "findByUsername": f'select {COLUMNS} from users where "username" = ?',
        "findByEmail": f'select {COLUMNS} from users where "email" = ?',
        "findBySearchTerm": (
            f'select {COLUMNS} from users where upper("username") like (?) '
            'or upper("email") like (?) or upper("fullName") like (?) order by "id"'
        ),
        "findPasswordHash": 'select hash_pwd from users where "username" = ?',
        "updatePasswordHash": 'update users set hash_pwd = ? where "username" = ?',
    }


@pytest.fixture
def query_config(settings):
    return QueryConfig.from_mapping(settings)


@pytest.fixture
def datasource(settings):
    ds = DataSourceProvider()
    ds.configure(settings["url"], "sqlite", None, None, "test-pool")
    yield ds
    ds.close()


@pytest.fixture
def repository(datasource, query_config):
    return UserRepository(datasource, query_config)


@pytest.fixture
def make_repository(datasource, settings):
    """Repository over the seeded database with some settings overridden."""
    def _make(**overrides):
        return UserRepository(datasource, QueryConfig.from_mapping({**settings, **overrides}))
    return _make


@pytest.fixture
def store():
    return InMemoryUserStore()


@pytest.fixture
def registry():
    reg = ProviderRegistry()
    yield reg
    reg.close()
