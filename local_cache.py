"""
Local Cache for the Production Log
===================================
Synchronous string key-value store that survives restarts, kept in one JSON
file next to the code (or wherever PRODUCTION_CACHE_FILE points).

Writes go through a temp file and os.replace, so a crash mid-write leaves
the previous file intact. A write that would push the file past
``quota_bytes`` raises CacheWriteError and changes nothing.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile

from errors import CacheWriteError
from shared import CACHE_FILE, CLOUD_ENABLED_KEY, VERSION_KEY

logger = logging.getLogger(__name__)


class LocalCache:
    def __init__(self, path: str | os.PathLike | None = None, quota_bytes: int | None = None):
        self.path = os.fspath(path or CACHE_FILE)
        self.quota_bytes = quota_bytes
        self._items: dict[str, str] = self._read_file()

    def _read_file(self) -> dict[str, str]:
        if not os.path.exists(self.path) or os.path.getsize(self.path) == 0:
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Local cache %s unreadable, starting empty: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Local cache %s is not a key-value object, starting empty", self.path)
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _write_file(self, items: dict[str, str]) -> None:
        try:
            payload = json.dumps(items, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise CacheWriteError(f"cannot serialize cache: {exc}") from exc

        size = len(payload.encode("utf-8"))
        if self.quota_bytes is not None and size > self.quota_bytes:
            raise CacheWriteError(f"cache quota exceeded ({size} > {self.quota_bytes} bytes)")

        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".cache_", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise CacheWriteError(f"cannot write {self.path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Key-value surface
    # ------------------------------------------------------------------
    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise CacheWriteError(f"{key}: cache values must be strings")
        items = dict(self._items)
        items[key] = value
        self._write_file(items)
        self._items = items

    def remove_item(self, key: str) -> None:
        if key not in self._items:
            return
        items = {k: v for k, v in self._items.items() if k != key}
        self._write_file(items)
        self._items = items

    def keys(self) -> list[str]:
        return list(self._items)

    def size_bytes(self) -> int:
        """Approximate on-disk size of the cache."""
        return len(json.dumps(self._items, ensure_ascii=False).encode("utf-8"))

    # ------------------------------------------------------------------
    # Schema version
    # ------------------------------------------------------------------
    def check_and_migrate(self, version: int) -> bool:
        """Wipe every stored key when the stamped version differs from ``version``.

        An unstamped cache is stamped in place without wiping. Returns True
        when a reset happened. The cloud-sync preference is re-enabled on
        reset so the next reconciliation repopulates from remote.
        """
        stored = self._items.get(VERSION_KEY)
        if stored == str(version):
            return False
        if stored is None:
            self.set_item(VERSION_KEY, str(version))
            return False
        logger.info("Local data version %s -> %s, clearing cached entries", stored or "none", version)
        items = {VERSION_KEY: str(version), CLOUD_ENABLED_KEY: "true"}
        self._write_file(items)
        self._items = items
        return True
