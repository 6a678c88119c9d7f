from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple

from db_user_federation import error_codes
from db_user_federation.errors import FederationError, SyncAlreadyRunningError, SyncItemError
from db_user_federation.records import ExternalUserRecord
from db_user_federation.repository import UserRepository
from db_user_federation.store import LocalUser, LocalUserStore

# Module-level logger for helpers
LOG = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class SyncResult:
    added: int = 0
    updated: int = 0
    failed: int = 0
    errors: Tuple[SyncItemError, ...] = ()

    @property
    def total(self) -> int:
        return self.added + self.updated + self.failed

    @classmethod
    def empty(cls) -> "SyncResult":
        return cls()


# ============================== Helpers (module-level; stateless) ===============================

def apply_record(local: LocalUser, record: ExternalUserRecord, instance_id: str) -> bool:
    """
    Copy the external record onto a local user and (re)assert the federation
    link. Returns True when anything on the local user actually changed.
    """
    changed = False
    for attr, value in (("email", record.email), ("first_name", record.first_name), ("last_name", record.last_name)):
        if getattr(local, attr, None) != value:
            setattr(local, attr, value)
            changed = True

    current = local.get_attributes()
    for name, value in record.extra_attributes().items():
        if current.get(name) != [value]:
            local.set_attribute(name, [value])
            changed = True

    if local.federation_link != instance_id:
        local.federation_link = instance_id
        changed = True

    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Applied record id=%s onto local user %s: changed=%s", record.id, record.username, changed)
    return changed


# ============================== Engine ===============================

class SyncEngine:
    """
    One full import of the external user table into the local store.

    Never deletes local users. A run that cannot fetch the external records
    is ABORTED and the error propagates; per-record problems are counted in
    ``failed`` and the run carries on.
    """

    def __init__(
        self,
        repository: UserRepository,
        store: LocalUserStore,
        instance_id: str,
        *,
        allow_overwrite: bool = False,
        create_missing: bool = True,
        lock: Optional[threading.Lock] = None,
        logger: logging.Logger | None = None,
    ):
        self.repository = repository
        self.store = store
        self.instance_id = instance_id
        self.allow_overwrite = allow_overwrite
        self.create_missing = create_missing
        self.state = SyncState.IDLE
        self._lock = lock or threading.Lock()
        self.log = logger or logging.getLogger(__name__)
        self.log.debug("SyncEngine initialized for instance=%s", instance_id)

    # ------------------------ Per-record reconciliation ------------------------

    def _create(self, record: ExternalUserRecord) -> None:
        try:
            local = self.store.add_user(record.username)
            apply_record(local, record, self.instance_id)
        except Exception as e:
            raise SyncItemError(
                f"Could not create local user: {e}",
                username=record.username,
                subcode=error_codes.SYNC_CREATE_FAILED,
            ) from e
        self.log.info("Imported user %s", record.username)

    def _update(self, local: LocalUser, record: ExternalUserRecord) -> bool:
        try:
            return apply_record(local, record, self.instance_id)
        except Exception as e:
            raise SyncItemError(
                f"Could not update local user: {e}",
                username=record.username,
                subcode=error_codes.SYNC_UPDATE_FAILED,
            ) from e

    def _reconcile(self, record: ExternalUserRecord) -> str:
        username = record.get("username")
        if not username:
            raise SyncItemError("External record has no username", subcode=error_codes.SYNC_MISSING_USERNAME)

        try:
            local = self.store.get_user_by_username(username)
        except Exception as e:
            raise SyncItemError(
                f"Local lookup failed: {e}", username=username, subcode=error_codes.SYNC_UPDATE_FAILED
            ) from e

        if local is None:
            if not self.create_missing:
                return "skipped"
            self._create(record)
            return "added"
        if not self.allow_overwrite:
            return "untouched"
        return "updated" if self._update(local, record) else "unchanged"

    # ------------------------ Run ------------------------

    def _run(self, records: Iterable[ExternalUserRecord]) -> SyncResult:
        added = updated = 0
        errors = []
        for record in records:
            try:
                outcome = self._reconcile(record)
            except SyncItemError as e:
                errors.append(e)
                self.log.warning("Sync failed for user %s: %s", e.username, e.message)
                continue
            if outcome == "added":
                added += 1
            elif outcome == "updated":
                updated += 1
        return SyncResult(added=added, updated=updated, failed=len(errors), errors=tuple(errors))

    def sync(self) -> SyncResult:
        if not self._lock.acquire(blocking=False):
            raise SyncAlreadyRunningError(
                f"A sync is already running for instance {self.instance_id}",
                details={"instance_id": self.instance_id},
            )
        try:
            self.state = SyncState.RUNNING
            t0 = time.perf_counter()
            self.log.info("Starting sync for instance %s (overwrite=%s, create=%s)",
                          self.instance_id, self.allow_overwrite, self.create_missing)
            try:
                records = self.repository.get_all_users_for_sync()
            except FederationError:
                self.state = SyncState.ABORTED
                self.log.error("Sync aborted for instance %s: fetch failed", self.instance_id, exc_info=True)
                raise

            result = self._run(records)
            self.state = SyncState.COMPLETED
            self.log.info(
                "✅ Sync finished for instance %s: fetched=%d added=%d updated=%d failed=%d (%.3fs)",
                self.instance_id, len(records), result.added, result.updated, result.failed,
                time.perf_counter() - t0,
            )
            return result
        finally:
            self._lock.release()
