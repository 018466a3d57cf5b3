"""
Offline-first Reconciler
========================
Keeps the Local Cache and the remote document in agreement and publishes
SyncState for whatever screen is watching.

Two triggers drive it:

  A. ``save(key, record)``: a local mutation. The Local Cache is written
     synchronously first, then (cloud sync on) every entry changed here and
     not yet confirmed by the remote is merge-upserted into the remote
     document. Sibling entries written by other devices are left alone.
  B. ``handle_remote_snapshot(document)``: the subscription fired. Exactly
     one side is copied onto the other per call:
       - first snapshot since (re)subscribing and local has data:
         local wins, the remote payload is discarded and local is pushed up;
       - otherwise a non-empty remote document overwrites local;
       - an absent/empty remote document gets local pushed up, or nothing
         happens when both sides are empty.

There is no field-level merge of divergent records and no automatic retry.
Store failures never propagate to callers; they land in ``local_status`` /
``cloud_status`` and the log.

Deleting a day record leaves a Tombstone in both stores so another device
cannot write the old record back. Tombstones are hidden from the read
accessors and purged after TOMBSTONE_RETENTION_DAYS.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from errors import CacheWriteError, RecordValidationError, SnapshotImportError
from local_cache import LocalCache
from records import (
    ConfigRecord,
    DayRecord,
    Record,
    Tombstone,
    decode_dataset,
    decode_entry,
    encode_dataset,
)
from remote_store import RemoteStore, Subscription
from shared import (
    CLOUD_ENABLED_KEY,
    CLOUD_SYNC_DEFAULT,
    CONFIG_KEY,
    DB_VERSION,
    EMPTY_DATASET,
    MACHINE_TYPES,
    REMOTE_DOC_ID,
    STORAGE_KEY,
    TOMBSTONE_RETENTION_DAYS,
    dates_in_range,
    day_key,
)

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"
    DISABLED = "disabled"


@dataclass(frozen=True)
class SyncState:
    local_status: SyncStatus = SyncStatus.SUCCESS
    cloud_status: SyncStatus = SyncStatus.DISABLED
    last_sync_timestamp: str | None = None
    cloud_enabled: bool = False
    first_snapshot_seen: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_status": self.local_status.value,
            "cloud_status": self.cloud_status.value,
            "last_sync_timestamp": self.last_sync_timestamp,
            "cloud_enabled": self.cloud_enabled,
            "first_snapshot_seen": self.first_snapshot_seen,
        }


StatusListener = Callable[[SyncState], None]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialize(entries: Mapping[str, Any]) -> str:
    return json.dumps(entries, sort_keys=True, ensure_ascii=False)


def _parse_time(value: str | None) -> datetime | None:
    """ISO-8601 text to an aware datetime (naive values are taken as UTC)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class Reconciler:
    """Owns the in-memory dataset, the Local Cache and the remote subscription."""

    def __init__(self, cache: LocalCache, remote: RemoteStore | None = None,
                 doc_id: str = REMOTE_DOC_ID, clock: Callable[[], str] | None = None):
        self.cache = cache
        self.remote = remote
        self.doc_id = doc_id
        self._clock = clock or _utc_now
        self._listeners: list[StatusListener] = []
        self._subscription: Subscription | None = None
        self._state = SyncState()

        try:
            if self.cache.check_and_migrate(DB_VERSION):
                logger.info("Local database rebuilt for version %s", DB_VERSION)
        except CacheWriteError as exc:
            logger.error("Could not stamp local data version: %s", exc)
            self._state = replace(self._state, local_status=SyncStatus.ERROR)

        self._entries: dict[str, Record] = self._load_local()
        # Keys changed locally that the remote has not confirmed yet
        self._pending: set[str] = set()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def _load_local(self) -> dict[str, Record]:
        """Decode the cached dataset; malformed JSON yields an empty dataset."""
        raw = self.cache.get_item(STORAGE_KEY)
        if raw is None:
            return {}
        try:
            data = json.loads(raw)
        except ValueError as exc:
            logger.warning("Cached dataset is not valid JSON, starting empty: %s", exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Cached dataset is not a keyed map, starting empty")
            return {}

        entries: dict[str, Record] = {}
        for key, payload in data.items():
            try:
                entries[key] = decode_entry(key, payload)
            except RecordValidationError as exc:
                logger.warning("Dropping cached entry: %s", exc)
        return entries

    def cloud_preference(self) -> bool:
        """The persisted cloud-sync preference, falling back to PRODUCTION_CLOUD_SYNC."""
        stored = self.cache.get_item(CLOUD_ENABLED_KEY)
        if stored is None:
            return CLOUD_SYNC_DEFAULT
        return stored != "false"

    def start(self) -> SyncState:
        """Attach the remote subscription if the stored preference asks for it."""
        if self.cloud_preference() and self.remote is not None:
            self._attach()
        else:
            self._update(cloud_enabled=False, cloud_status=SyncStatus.DISABLED)
        self.purge_tombstones()
        return self._state

    # ------------------------------------------------------------------
    # Status surface
    # ------------------------------------------------------------------
    def status(self) -> SyncState:
        return self._state

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Call ``listener`` with every new SyncState. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _update(self, **changes: Any) -> None:
        new_state = replace(self._state, **changes)
        if new_state == self._state:
            return
        self._state = new_state
        for listener in list(self._listeners):
            listener(new_state)

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------
    @property
    def entries(self) -> dict[str, Record]:
        """Live entries; deleted records are left out."""
        return {k: v for k, v in self._entries.items() if not isinstance(v, Tombstone)}

    def get(self, key: str) -> Record | None:
        record = self._entries.get(key)
        return None if isinstance(record, Tombstone) else record

    def day_record(self, date: str, machine_type: str) -> DayRecord:
        """The stored DayRecord, or a fresh empty one (not saved until ``save``)."""
        record = self._entries.get(day_key(date, machine_type))
        if isinstance(record, DayRecord):
            return record
        return DayRecord(date=date, machine_type=machine_type)

    @property
    def config(self) -> ConfigRecord:
        record = self._entries.get(CONFIG_KEY)
        return record if isinstance(record, ConfigRecord) else ConfigRecord()

    # ------------------------------------------------------------------
    # Local side
    # ------------------------------------------------------------------
    def _has_local_data(self) -> bool:
        raw = self.cache.get_item(STORAGE_KEY)
        return raw is not None and raw.strip() not in ("", EMPTY_DATASET)

    def _persist_local(self) -> bool:
        try:
            self.cache.set_item(STORAGE_KEY, _serialize(encode_dataset(self._entries)))
        except CacheWriteError as exc:
            logger.error("Local cache write failed, keeping data in memory only: %s", exc)
            self._update(local_status=SyncStatus.ERROR)
            return False
        self._update(local_status=SyncStatus.SUCCESS)
        return True

    # ------------------------------------------------------------------
    # Remote side
    # ------------------------------------------------------------------
    def _cloud_active(self) -> bool:
        return self._state.cloud_enabled and self.remote is not None

    def _write_dataset(self, now: str) -> None:
        """Merge-upsert the full dataset. Raises whatever the store raises."""
        self.remote.merge_upsert(self.doc_id, encode_dataset(self._entries), now)
        self._pending.clear()

    def _write_pending(self, now: str) -> None:
        """Merge-upsert only the entries changed here since the remote last confirmed them.

        Unchanged entries are not re-sent, so a stale copy held by this
        device never overwrites a newer remote value or tombstone.
        """
        keys = sorted(self._pending)
        changed = {k: self._entries[k].to_dict() for k in keys if k in self._entries}
        self.remote.merge_upsert(self.doc_id, changed, now)
        self._pending.difference_update(keys)

    def _sync_up(self, write: Callable[[str], None]) -> bool:
        """Run one remote write with the syncing/success/error bookkeeping."""
        if not self._cloud_active():
            self._update(cloud_status=SyncStatus.DISABLED)
            return False
        self._update(cloud_status=SyncStatus.SYNCING)
        now = self._clock()
        try:
            write(now)
        except Exception as exc:
            logger.error("Remote sync of %s failed, local cache stays authoritative: %s", self.doc_id, exc)
            self._update(cloud_status=SyncStatus.ERROR)
            return False
        self._update(cloud_status=SyncStatus.SUCCESS, last_sync_timestamp=now)
        return True

    # ------------------------------------------------------------------
    # Trigger A: local mutation
    # ------------------------------------------------------------------
    def save(self, key: str, record: Record | Mapping[str, Any]) -> None:
        """Store ``record`` under ``key`` locally, then push the change up.

        A record that does not belong under ``key`` is logged and rejected
        with ``local_status = error``; nothing is written in that case.
        """
        payload = record.to_dict() if hasattr(record, "to_dict") else record
        try:
            typed = decode_entry(key, payload)
        except RecordValidationError as exc:
            logger.error("Rejected save: %s", exc)
            self._update(local_status=SyncStatus.ERROR)
            return

        self._entries[key] = typed
        self._pending.add(key)
        self._persist_local()
        self._sync_up(self._write_pending)

    def resync(self) -> bool:
        """Manual re-attempt: push the whole local dataset again."""
        return self._sync_up(self._write_dataset)

    def delete(self, key: str) -> bool:
        """Replace one live entry with a tombstone in both stores.

        Returns False if there was no live entry under ``key``.
        """
        return bool(self._delete_keys([key]))

    def clear_range(self, start_date: str, end_date: str) -> list[str]:
        """Delete the IM and BM day records of every date in the inclusive range."""
        keys = [day_key(d, mt) for d in dates_in_range(start_date, end_date) for mt in MACHINE_TYPES]
        return self._delete_keys(keys)

    def _delete_keys(self, keys: list[str]) -> list[str]:
        removed = [k for k in keys if k in self._entries and not isinstance(self._entries[k], Tombstone)]
        if not removed:
            return []
        deleted_at = self._clock()
        for key in removed:
            self._entries[key] = Tombstone(deleted_at=deleted_at)
            self._pending.add(key)
        self._persist_local()
        self._sync_up(self._write_pending)
        return removed

    def purge_tombstones(self, retention_days: int = TOMBSTONE_RETENTION_DAYS) -> list[str]:
        """Drop tombstones older than ``retention_days`` from both stores."""
        tombstones = {k: v for k, v in self._entries.items() if isinstance(v, Tombstone)}
        if not tombstones:
            return []
        cutoff = _parse_time(self._clock())
        if cutoff is None:
            return []
        cutoff -= timedelta(days=retention_days)
        expired = []
        for key, tombstone in tombstones.items():
            deleted_at = _parse_time(tombstone.deleted_at)
            if deleted_at is not None and deleted_at < cutoff:
                expired.append(key)
        if not expired:
            return []

        logger.info("Purging %d expired tombstones", len(expired))
        for key in expired:
            del self._entries[key]
            self._pending.discard(key)
        self._persist_local()
        self._sync_up(lambda now: self.remote.delete_keys(self.doc_id, expired, now))
        return expired

    # ------------------------------------------------------------------
    # Trigger B: remote notification
    # ------------------------------------------------------------------
    def handle_remote_snapshot(self, document: Mapping[str, Any] | None) -> None:
        first_load = not self._state.first_snapshot_seen
        try:
            local_has_data = self._has_local_data()
            remote_entries = (document or {}).get("entries") or {}

            if remote_entries:
                if first_load and local_has_data:
                    logger.info("First snapshot since subscribing: local data wins, pushing it up")
                    now = self._clock()
                    self._write_dataset(now)
                    self._update(cloud_status=SyncStatus.SUCCESS, last_sync_timestamp=now)
                else:
                    self._adopt_remote(remote_entries, document.get("last_sync"))
            elif local_has_data:
                logger.info("Remote document %s is empty, pushing local data up", self.doc_id)
                now = self._clock()
                self._write_dataset(now)
                self._update(cloud_status=SyncStatus.SUCCESS, last_sync_timestamp=now)
            else:
                self._update(cloud_status=SyncStatus.SUCCESS)
        except Exception as exc:
            logger.error("Reconciling remote snapshot failed: %s", exc)
            self._update(cloud_status=SyncStatus.ERROR)
        finally:
            if first_load:
                self._update(first_snapshot_seen=True)

    def _adopt_remote(self, remote_entries: Mapping[str, Any], last_sync: str | None) -> None:
        """Overwrite local with the remote entries. Validates before touching anything."""
        decoded = decode_dataset(remote_entries)
        local_status = SyncStatus.SUCCESS
        try:
            self.cache.set_item(STORAGE_KEY, _serialize(remote_entries))
        except CacheWriteError as exc:
            logger.error("Could not cache remote snapshot, holding it in memory only: %s", exc)
            local_status = SyncStatus.ERROR
        self._entries = decoded
        self._pending.clear()
        self._update(
            local_status=local_status,
            cloud_status=SyncStatus.SUCCESS,
            last_sync_timestamp=last_sync or self._state.last_sync_timestamp,
        )

    def _on_subscription_error(self, exc: Exception) -> None:
        logger.error("Remote subscription for %s failed: %s", self.doc_id, exc)
        self._update(cloud_status=SyncStatus.ERROR)

    def poll(self) -> int:
        """Let the remote store deliver pending change notifications."""
        if self._subscription is None or self.remote is None:
            return 0
        try:
            return self.remote.poll()
        except Exception as exc:
            self._on_subscription_error(exc)
            return 0

    # ------------------------------------------------------------------
    # Cloud toggle
    # ------------------------------------------------------------------
    def set_cloud_enabled(self, enabled: bool) -> None:
        try:
            self.cache.set_item(CLOUD_ENABLED_KEY, "true" if enabled else "false")
        except CacheWriteError as exc:
            logger.warning("Could not persist cloud-sync preference: %s", exc)

        if not enabled:
            self._detach()
            self._update(cloud_enabled=False, cloud_status=SyncStatus.DISABLED)
            return
        if self.remote is None:
            logger.warning("Cloud sync requested but no remote store is configured")
            self._update(cloud_enabled=False, cloud_status=SyncStatus.DISABLED)
            return
        self._attach()

    def _attach(self) -> None:
        self._detach()
        self._update(cloud_enabled=True, first_snapshot_seen=False, cloud_status=SyncStatus.SYNCING)
        try:
            self._subscription = self.remote.subscribe(
                self.doc_id, self.handle_remote_snapshot, on_error=self._on_subscription_error)
        except Exception as exc:
            self._subscription = None
            self._on_subscription_error(exc)

    def _detach(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    # ------------------------------------------------------------------
    # Manual backup / restore
    # ------------------------------------------------------------------
    def export_snapshot(self) -> dict[str, Any]:
        """JSON-serializable copy of the live entries (tombstones are left out)."""
        return encode_dataset(self.entries)

    def import_snapshot(self, snapshot: Any) -> None:
        """Fully replace both stores with ``snapshot`` (no merge).

        Every entry is validated first; SnapshotImportError is raised before
        anything is written if one of them is malformed.
        """
        try:
            decoded = decode_dataset(snapshot)
        except RecordValidationError as exc:
            raise SnapshotImportError(f"import aborted: {exc}") from exc

        self._entries = decoded
        self._pending = set(decoded)
        self._persist_local()
        self._sync_up(self._replace_remote)

    def _replace_remote(self, now: str) -> None:
        self.remote.replace(self.doc_id, encode_dataset(self._entries), now)
        self._pending.clear()
