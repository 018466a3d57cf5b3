"""
Tests for the file-backed local cache.

Run: python -m pytest test_local_cache.py -v
"""

import json

import pytest

from errors import CacheWriteError
from local_cache import LocalCache
from shared import CLOUD_ENABLED_KEY, VERSION_KEY


class TestLocalCache:

    def test_set_and_get(self, tmp_path):
        cache = LocalCache(tmp_path / "cache.json")
        cache.set_item("a", "1")
        assert cache.get_item("a") == "1"
        assert cache.get_item("missing") is None

    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "cache.json"
        LocalCache(path).set_item("production_db", '{"x": 1}')
        assert LocalCache(path).get_item("production_db") == '{"x": 1}'

    def test_remove_item(self, tmp_path):
        cache = LocalCache(tmp_path / "cache.json")
        cache.set_item("a", "1")
        cache.remove_item("a")
        cache.remove_item("never-set")
        assert cache.keys() == []

    def test_non_string_value_rejected(self, tmp_path):
        cache = LocalCache(tmp_path / "cache.json")
        with pytest.raises(CacheWriteError):
            cache.set_item("a", {"not": "a string"})

    def test_quota_exceeded_leaves_cache_unchanged(self, tmp_path):
        path = tmp_path / "cache.json"
        cache = LocalCache(path, quota_bytes=64)
        cache.set_item("small", "ok")
        with pytest.raises(CacheWriteError):
            cache.set_item("big", "x" * 200)
        assert cache.get_item("big") is None
        assert json.loads(path.read_text()) == {"small": "ok"}

    def test_malformed_file_starts_empty(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text("{not json")
        assert LocalCache(path).keys() == []

    def test_non_object_file_starts_empty(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text('["a", "b"]')
        assert LocalCache(path).keys() == []

    def test_no_temp_files_left_behind(self, tmp_path):
        cache = LocalCache(tmp_path / "cache.json")
        cache.set_item("a", "1")
        cache.set_item("b", "2")
        assert [p.name for p in tmp_path.iterdir()] == ["cache.json"]


# =====================================================================
# Schema version
# =====================================================================

class TestCheckAndMigrate:

    def test_fresh_cache_is_stamped(self, tmp_path):
        cache = LocalCache(tmp_path / "cache.json")
        assert cache.check_and_migrate(1) is False
        assert cache.get_item(VERSION_KEY) == "1"

    def test_unstamped_data_is_kept(self, tmp_path):
        cache = LocalCache(tmp_path / "cache.json")
        cache.set_item("production_db", "{}")
        assert cache.check_and_migrate(1) is False
        assert cache.get_item("production_db") == "{}"

    def test_same_version_is_a_no_op(self, tmp_path):
        cache = LocalCache(tmp_path / "cache.json")
        cache.check_and_migrate(1)
        cache.set_item("production_db", '{"k": 1}')
        assert cache.check_and_migrate(1) is False
        assert cache.get_item("production_db") == '{"k": 1}'

    def test_version_change_wipes_and_reenables_cloud(self, tmp_path):
        cache = LocalCache(tmp_path / "cache.json")
        cache.check_and_migrate(1)
        cache.set_item("production_db", '{"k": 1}')
        cache.set_item(CLOUD_ENABLED_KEY, "false")

        assert cache.check_and_migrate(2) is True
        assert cache.get_item("production_db") is None
        assert cache.get_item(VERSION_KEY) == "2"
        assert cache.get_item(CLOUD_ENABLED_KEY) == "true"
