from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from db_user_federation import error_codes
from db_user_federation.QueryConfig import ConnectionSettings, QueryConfig
from db_user_federation.datasource import DataSourceProvider
from db_user_federation.engine import SyncEngine, SyncResult, apply_record
from db_user_federation.errors import ConfigurationError, UnlinkError
from db_user_federation.paging import PageRequest
from db_user_federation.records import ExternalUserRecord
from db_user_federation.repository import UserRepository
from db_user_federation.store import LocalUser, LocalUserStore

LOG = logging.getLogger(__name__)

STORAGE_ID_PREFIX = "f"

UserView = Union[LocalUser, ExternalUserRecord]


def external_id(instance_id: str, record_id: str) -> str:
    """Host-visible id of a federated user: ``f:<instance>:<external id>``."""
    return f"{STORAGE_ID_PREFIX}:{instance_id}:{record_id}"


def split_storage_id(user_id: str) -> tuple[Optional[str], str]:
    """``f:<instance>:<id>`` -> (instance, id); anything else -> (None, user_id)."""
    if user_id and user_id.startswith(STORAGE_ID_PREFIX + ":"):
        parts = user_id.split(":", 2)
        if len(parts) == 3:
            return parts[1], parts[2]
    return None, user_id


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable snapshot of one instance: validated queries plus its live datasource."""

    query_config: QueryConfig
    datasource: DataSourceProvider
    # shared by every provider built from this snapshot so sync runs never overlap
    sync_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


# ============================== Facade ===============================

class DatabaseUserProvider:
    """
    What the host platform talks to for one instance: lookups, search,
    credential checks, unlink and sync. Cheap to build; construct one per
    call context from a registry snapshot.
    """

    def __init__(
        self,
        instance_id: str,
        config: ProviderConfig,
        store: LocalUserStore,
        logger: logging.Logger | None = None,
    ):
        self.instance_id = instance_id
        self.config = config
        self.store = store
        self.log = logger or LOG
        self.repository = UserRepository(config.datasource, config.query_config, logger=self.log)

    @property
    def query_config(self) -> QueryConfig:
        return self.config.query_config

    def _is_federated_here(self, local: Optional[LocalUser]) -> bool:
        return local is not None and local.federation_link == self.instance_id

    # ------------------------ lookups ------------------------

    def get_user_by_id(self, user_id: str) -> Optional[UserView]:
        instance, ext_id = split_storage_id(user_id)
        if instance is None:
            local = self.store.get_user_by_id(user_id)
            if local is not None and not local.federation_link:
                return local
        elif instance != self.instance_id:
            self.log.debug("Id %s belongs to instance %s, not %s", user_id, instance, self.instance_id)
            return None
        return self.repository.find_by_id(ext_id)

    def get_user_by_username(self, username: str) -> Optional[UserView]:
        local = self.store.get_user_by_username(username)
        if local is not None and not local.federation_link:
            return local
        return self.repository.find_by_username(username)

    def get_user_by_email(self, email: str) -> Optional[UserView]:
        local = self.store.get_user_by_email(email)
        if local is not None and not local.federation_link:
            return local
        return self.repository.find_by_email(email)

    def search_users(self, term: Optional[str] = None, first: Optional[int] = None,
                     max_results: Optional[int] = None) -> List[ExternalUserRecord]:
        return self.repository.find_users(term, PageRequest.of(first, max_results))

    def count_users(self, term: Optional[str] = None) -> int:
        return self.repository.count(term)

    # ------------------------ credentials ------------------------

    def _on_login(self, username: str) -> None:
        qc = self.query_config
        local = self.store.get_user_by_username(username)
        if local is None:
            if not qc.sync_new_users_on_login:
                return
            record = self.repository.find_by_username(username)
            if record is None:
                return
            created = self.store.add_user(record.username)
            apply_record(created, record, self.instance_id)
            self.log.info("Imported user %s on login", username)
        elif self._is_federated_here(local) and qc.allow_overwrite:
            record = self.repository.find_by_username(username)
            if record is not None and apply_record(local, record, self.instance_id):
                self.log.info("Refreshed user %s on login", username)

    def is_valid(self, username: str, password: Optional[str]) -> bool:
        if not username or password is None:
            return False
        t0 = time.perf_counter()
        ok = self.repository.validate_credentials(username, password)
        if ok:
            try:
                self._on_login(username)
            except Exception:
                # import problems never change the credential check result
                self.log.warning("Login-time import failed for user %s", username, exc_info=True)
        self.log.debug("is_valid(%s) -> %s (%.3fs)", username, ok, time.perf_counter() - t0)
        return ok

    def update_credential(self, local_user: LocalUser, plaintext: str) -> bool:
        """False means the host keeps the credential itself."""
        if not self._is_federated_here(local_user):
            return False
        return self.repository.update_credentials(local_user.username, plaintext)

    # ------------------------ lifecycle ------------------------

    def remove_user(self, local_user: LocalUser) -> bool:
        allowed = self.query_config.allow_local_delete
        self.log.info("Removal of local user %s %s", local_user.username, "allowed" if allowed else "refused")
        return allowed

    def unlink_user(self, user_id: str) -> LocalUser:
        if not self.query_config.unlink_enabled:
            raise UnlinkError("Unlinking users is disabled for this instance", subcode=error_codes.UNLINK_DISABLED)
        local = self.store.get_user_by_id(user_id)
        if local is None:
            raise UnlinkError(
                f"User {user_id} not found",
                subcode=error_codes.UNLINK_USER_NOT_FOUND,
                details={"user_id": user_id},
            )
        if not self._is_federated_here(local):
            raise UnlinkError(
                f"User {local.username} is not federated by instance {self.instance_id}",
                subcode=error_codes.UNLINK_USER_NOT_FEDERATED,
                details={"user_id": user_id, "federation_link": local.federation_link},
            )
        local.federation_link = None
        self.log.info("Unlinked user %s from instance %s", local.username, self.instance_id)
        return local

    def sync(self) -> SyncResult:
        qc = self.query_config
        if not qc.sync_enabled:
            self.log.info("Sync disabled for instance %s", self.instance_id)
            return SyncResult.empty()
        engine = SyncEngine(
            self.repository,
            self.store,
            self.instance_id,
            allow_overwrite=qc.allow_overwrite,
            create_missing=qc.sync_creates_users,
            lock=self.config.sync_lock,
            logger=self.log,
        )
        return engine.sync()


# ============================== Registry ===============================

class ProviderRegistry:
    """
    Per-instance cache of :class:`ProviderConfig`. Reconfiguration builds and
    validates the new snapshot first, swaps it in, then closes the old pool.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self.log = logger or LOG
        self._lock = threading.Lock()
        self._entries: Dict[str, ProviderConfig] = {}

    def _build(self, instance_id: str, settings: Mapping[str, Any]) -> ProviderConfig:
        query_config = QueryConfig.from_mapping(settings)
        connection = ConnectionSettings.from_mapping(settings, pool_id=instance_id)
        datasource = DataSourceProvider(logger=self.log)
        datasource.configure_from(connection)
        return ProviderConfig(query_config=query_config, datasource=datasource)

    def get(self, instance_id: str) -> Optional[ProviderConfig]:
        with self._lock:
            return self._entries.get(instance_id)

    def get_or_configure(self, instance_id: str, settings: Mapping[str, Any]) -> ProviderConfig:
        existing = self.get(instance_id)
        if existing is not None:
            return existing
        built = self._build(instance_id, settings)
        with self._lock:
            winner = self._entries.setdefault(instance_id, built)
        if winner is not built:
            built.datasource.close()
        return winner

    def validate_configuration(self, instance_id: str, settings: Mapping[str, Any]) -> ProviderConfig:
        """Build and prove a new snapshot; on failure the current one stays in place."""
        built = self._build(instance_id, settings)
        with self._lock:
            old = self._entries.get(instance_id)
            self._entries[instance_id] = built
        if old is not None:
            old.datasource.close()
            self.log.info("Replaced configuration of instance %s", instance_id)
        return built

    def create(self, instance_id: str, store: LocalUserStore,
               settings: Optional[Mapping[str, Any]] = None) -> DatabaseUserProvider:
        entry = self.get_or_configure(instance_id, settings) if settings is not None else self.get(instance_id)
        if entry is None:
            raise ConfigurationError(
                f"Instance {instance_id} has not been configured",
                subcode=error_codes.CONFIG_NOT_CONFIGURED,
                details={"instance_id": instance_id},
            )
        return DatabaseUserProvider(instance_id, entry, store, logger=self.log)

    def remove(self, instance_id: str) -> None:
        with self._lock:
            entry = self._entries.pop(instance_id, None)
        if entry is not None:
            entry.datasource.close()

    def close(self) -> None:
        with self._lock:
            entries, self._entries = list(self._entries.values()), {}
        for entry in entries:
            entry.datasource.close()
        self.log.info("Provider registry closed (%d instance(s))", len(entries))

    def __enter__(self) -> "ProviderRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
