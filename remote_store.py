"""
Remote document store for the Production Log
=============================================
One document per dataset: ``{"entries": {...}, "last_sync": ISO-8601}``.
The Supabase store keeps each entry in its own row.

Writes are merge-upserts: only the submitted entry keys change and sibling
keys already in the document survive. Subscribers get the current document
as soon as they subscribe, then again from ``poll()`` whenever it changed.
Notifications are never delivered from inside a write.

Connection: set SUPABASE_URL and SUPABASE_KEY as environment variables.
Without them ``get_client()`` returns None and callers stay local-only.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable

from errors import RemoteStoreError
from shared import REMOTE_TABLE

logger = logging.getLogger(__name__)

_UNSEEN = object()

Document = dict[str, Any]
SnapshotCallback = Callable[[Document | None], None]
ErrorCallback = Callable[[Exception], None]

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------
_client = None


def get_client():
    """Get Supabase client. Returns None if not configured."""
    global _client
    if _client is not None:
        return _client

    url = os.environ.get("SUPABASE_URL", "")
    key = os.environ.get("SUPABASE_KEY", "")
    if not url or not key:
        return None

    try:
        from supabase import create_client
        _client = create_client(url, key)
    except Exception as exc:
        logger.error("Could not create Supabase client: %s", exc)
        return None
    return _client


def is_connected():
    """Check if the remote store is available."""
    return get_client() is not None


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------
@dataclass(eq=False)
class Subscription:
    store: "RemoteStore"
    doc_id: str
    callback: SnapshotCallback
    on_error: ErrorCallback | None = None
    last_seen: Any = field(default=_UNSEEN, repr=False)
    active: bool = True

    def close(self) -> None:
        """Detach from the store; no further callbacks are delivered."""
        if not self.active:
            return
        self.active = False
        self.store._subscriptions.remove(self)


class RemoteStore:
    """Base class: subscription bookkeeping on top of fetch/write primitives."""

    def __init__(self):
        self._subscriptions: list[Subscription] = []

    # -- primitives ----------------------------------------------------
    def fetch(self, doc_id: str) -> Document | None:
        raise NotImplementedError

    def merge_upsert(self, doc_id: str, entries: dict[str, Any], last_sync: str) -> None:
        raise NotImplementedError

    def replace(self, doc_id: str, entries: dict[str, Any], last_sync: str) -> None:
        raise NotImplementedError

    def delete_keys(self, doc_id: str, keys: list[str], last_sync: str) -> None:
        raise NotImplementedError

    # -- subscription --------------------------------------------------
    def subscribe(self, doc_id: str, callback: SnapshotCallback,
                  on_error: ErrorCallback | None = None) -> Subscription:
        """Register ``callback`` and deliver the current document right away."""
        sub = Subscription(store=self, doc_id=doc_id, callback=callback, on_error=on_error)
        self._subscriptions.append(sub)
        self._deliver(sub, force=True)
        return sub

    def poll(self) -> int:
        """Deliver changed documents to subscribers. Returns the number delivered."""
        delivered = 0
        for sub in list(self._subscriptions):
            if self._deliver(sub):
                delivered += 1
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _deliver(self, sub: Subscription, force: bool = False) -> bool:
        if not sub.active:
            return False
        try:
            doc = self.fetch(sub.doc_id)
        except Exception as exc:
            logger.warning("Fetching %s for subscriber failed: %s", sub.doc_id, exc)
            if sub.on_error is None:
                raise
            sub.on_error(exc)
            return False
        if not force and doc == sub.last_seen:
            return False
        sub.last_seen = copy.deepcopy(doc)
        sub.callback(copy.deepcopy(doc))
        return True


# ---------------------------------------------------------------------------
# In-process store
# ---------------------------------------------------------------------------
class MemoryRemoteStore(RemoteStore):
    """Document store held in memory. Used for tests and offline demos."""

    def __init__(self, documents: dict[str, Document] | None = None):
        super().__init__()
        self.documents: dict[str, Document] = copy.deepcopy(documents or {})
        self.write_count = 0

    def fetch(self, doc_id):
        doc = self.documents.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def merge_upsert(self, doc_id, entries, last_sync):
        doc = self.documents.setdefault(doc_id, {"entries": {}, "last_sync": None})
        doc.setdefault("entries", {}).update(copy.deepcopy(entries))
        doc["last_sync"] = last_sync
        self.write_count += 1

    def replace(self, doc_id, entries, last_sync):
        self.documents[doc_id] = {"entries": copy.deepcopy(entries), "last_sync": last_sync}
        self.write_count += 1

    def delete_keys(self, doc_id, keys, last_sync):
        doc = self.documents.get(doc_id)
        if doc is None:
            return
        for key in keys:
            doc.get("entries", {}).pop(key, None)
        doc["last_sync"] = last_sync
        self.write_count += 1


# ---------------------------------------------------------------------------
# Supabase-backed store
# ---------------------------------------------------------------------------
class SupabaseRemoteStore(RemoteStore):
    """Documents kept one row per entry in
    ``production_data(doc_id, entry_key, payload jsonb, last_sync)``.

    A merge-upsert writes only the submitted rows, keyed on
    ``(doc_id, entry_key)``, so concurrent writers touching different keys
    never overwrite each other. The document's ``last_sync`` is the newest
    row stamp.
    """

    def __init__(self, client=None, table: str = REMOTE_TABLE):
        super().__init__()
        self.client = client if client is not None else get_client()
        if self.client is None:
            raise RemoteStoreError("Supabase is not configured (set SUPABASE_URL and SUPABASE_KEY)")
        self.table = table

    def fetch(self, doc_id):
        try:
            resp = self.client.table(self.table).select("*").eq("doc_id", doc_id).execute()
        except Exception as exc:
            raise RemoteStoreError(f"fetch {doc_id} failed: {exc}") from exc
        if not resp.data:
            return None
        entries = {row["entry_key"]: row.get("payload") for row in resp.data}
        stamps = [row["last_sync"] for row in resp.data if row.get("last_sync")]
        return {"entries": entries, "last_sync": max(stamps) if stamps else None}

    def merge_upsert(self, doc_id, entries, last_sync):
        if not entries:
            return
        rows = [
            {"doc_id": doc_id, "entry_key": key, "payload": payload, "last_sync": last_sync}
            for key, payload in entries.items()
        ]
        try:
            self.client.table(self.table).upsert(rows, on_conflict="doc_id,entry_key").execute()
        except Exception as exc:
            raise RemoteStoreError(f"upsert {doc_id} failed: {exc}") from exc

    def replace(self, doc_id, entries, last_sync):
        current = self.fetch(doc_id) or {}
        stale = [k for k in (current.get("entries") or {}) if k not in entries]
        self.delete_keys(doc_id, stale, last_sync)
        self.merge_upsert(doc_id, entries, last_sync)

    def delete_keys(self, doc_id, keys, last_sync):
        if not keys:
            return
        try:
            (
                self.client.table(self.table)
                .delete()
                .eq("doc_id", doc_id)
                .in_("entry_key", list(keys))
                .execute()
            )
        except Exception as exc:
            raise RemoteStoreError(f"delete from {doc_id} failed: {exc}") from exc
