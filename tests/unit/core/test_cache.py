"""Tests for plugctl.core.cache module."""

import json
import os
import shutil
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from plugctl.config.schemas import CacheIndex, EvictionReason, Settings
from plugctl.core.cache import CacheService
from plugctl.core.errors import ErrorKind, IOFailureError
from plugctl.core.workspace import TempWorkspace
from plugctl.utils.filesystem import StorageAdapter


def _promote(cache: CacheService, stage_dir, version: str, plugin_id: str = "alpha", **kw):
    staged = stage_dir(kw.pop("files", None))
    result = cache.promote_artifacts(plugin_id, version, staged, **kw)
    assert result.success, result.error
    return result.data


class TestStaging:
    """Tests for CacheService.stage_artifacts()."""

    def test_stage_creates_workspace_without_touching_index(
        self, cache: CacheService, settings: Settings
    ):
        """Staging allocates tmp/<tx> and leaves the index alone."""
        result = cache.stage_artifacts("alpha", "1.0.0", "tx-1-aaaaaaaa")

        assert result.success
        assert result.data.staging_path == settings.plugin_dir / "tmp" / "tx-1-aaaaaaaa"
        assert result.data.staging_path.is_dir()
        assert not cache.index_path.exists()

    def test_stage_generates_transaction_id(self, cache: CacheService):
        """A transaction id is generated when none is given."""
        result = cache.stage_artifacts("alpha", "1.0.0")
        assert result.data.transaction_id.startswith("tx-")

    def test_duplicate_staging_fails(self, cache: CacheService):
        """Re-staging an existing transaction is a StagingFailure."""
        cache.stage_artifacts("alpha", "1.0.0", "tx-1-aaaaaaaa")
        result = cache.stage_artifacts("alpha", "1.0.0", "tx-1-aaaaaaaa")

        assert not result.success
        assert result.error.kind == ErrorKind.STAGING_FAILURE


class TestPromotion:
    """Tests for CacheService.promote_artifacts()."""

    def test_promote_moves_tree_and_records_entry(self, cache: CacheService, stage_dir):
        """The staged tree moves into cache/<id>/<version> and is indexed."""
        staged = stage_dir({"a.txt": "hello"})

        result = cache.promote_artifacts("alpha", "1.0.0", staged)

        assert result.success
        entry = result.data.entry
        assert Path(entry.cache_path) == cache.path_for("alpha", "1.0.0")
        assert (Path(entry.cache_path) / "a.txt").read_text() == "hello"
        assert not staged.exists()
        assert entry.size_bytes == 5
        assert entry.checksum is not None

        index = json.loads(cache.index_path.read_text())
        assert index["entries"]["alpha"][0]["version"] == "1.0.0"
        assert index["totalSizeBytes"] == 5

    def test_checksum_mismatch_leaves_cache_untouched(self, cache: CacheService, stage_dir):
        """A bad checksum fails before anything is moved."""
        staged = stage_dir()

        result = cache.promote_artifacts("alpha", "1.0.0", staged, expected_checksum="0" * 64)

        assert not result.success
        assert result.error.code == "CHECKSUM_MISMATCH"
        assert staged.exists()
        assert cache.get_entry("alpha", "1.0.0") is None
        assert not cache.path_for("alpha", "1.0.0").exists()

    def test_missing_staging_path_fails(self, cache: CacheService, temp_dir: Path):
        """Promoting a missing directory is a StagingFailure."""
        result = cache.promote_artifacts("alpha", "1.0.0", temp_dir / "missing")

        assert not result.success
        assert result.error.code == "STAGING_FAILED"

    def test_failed_index_write_leaves_no_partial_entry(self, cache: CacheService, stage_dir):
        """If the index cannot be written, no entry is visible afterwards."""
        _promote(cache, stage_dir, "1.0.0")
        before = cache.index_path.read_text()

        with patch.object(
            StorageAdapter, "write_json_atomic", side_effect=IOFailureError("disk", "x")
        ):
            staged = stage_dir()
            result = cache.promote_artifacts("alpha", "1.1.0", staged)

        assert not result.success
        assert cache.index_path.read_text() == before
        assert cache.get_entry("alpha", "1.1.0") is None
        assert not cache.path_for("alpha", "1.1.0").exists()
        assert (staged / "a.txt").exists()

    def test_repromotion_keeps_flags(self, cache: CacheService, stage_dir):
        """Re-promoting a version preserves its pin and current flags."""
        _promote(cache, stage_dir, "1.0.0")
        cache.pin_version("alpha", "1.0.0")
        cache.set_current_version("alpha", "1.0.0")

        promotion = _promote(cache, stage_dir, "1.0.0", files={"b.txt": "new"})

        assert promotion.entry.pinned
        assert promotion.entry.is_current_version
        assert (cache.path_for("alpha", "1.0.0") / "b.txt").exists()
        assert not (cache.path_for("alpha", "1.0.0") / "a.txt").exists()


class TestEvictionAfterPromotion:
    """Size-limit eviction after promotion."""

    def test_promotion_over_limit_evicts_oldest_only(
        self, settings: Settings, storage: StorageAdapter, clock, stage_dir
    ):
        """Cache 500 units, three 150-unit versions, promoting a fourth evicts only 1.0."""
        cache = CacheService(
            settings.cache_dir,
            storage,
            TempWorkspace(settings.plugin_dir, storage),
            max_size_mb=0.0005,
            max_versions=10,
            clock=clock,
        )
        body = {"blob.bin": "x" * 150}
        for version in ("1.0", "1.1", "1.2"):
            _promote(cache, stage_dir, version, files=body)
        cache.set_current_version("alpha", "1.2")

        promotion = _promote(cache, stage_dir, "1.3", files=body)

        eviction = promotion.eviction
        assert eviction is not None
        assert eviction.eviction_triggered
        assert eviction.reason == EvictionReason.SIZE_LIMIT
        assert eviction.entries_evicted == 1
        assert [e.version for e in eviction.evicted_entries] == ["1.0"]
        assert eviction.size_before_bytes == 600
        assert eviction.size_after_bytes == 450
        assert [e.version for e in cache.list_entries("alpha")] == ["1.1", "1.2", "1.3"]
        assert not cache.path_for("alpha", "1.0").exists()

        log = cache.load_index().eviction_log
        assert [(e.version, e.reason) for e in log] == [("1.0", EvictionReason.SIZE_LIMIT)]
        assert log[0].bytes_freed == 150

    def test_new_entry_is_never_evicted(
        self, settings: Settings, storage: StorageAdapter, clock, stage_dir
    ):
        """The just-promoted entry survives even when it alone exceeds the limit."""
        cache = CacheService(
            settings.cache_dir,
            storage,
            TempWorkspace(settings.plugin_dir, storage),
            max_size_mb=0.0001,
            clock=clock,
        )

        promotion = _promote(cache, stage_dir, "1.0.0", files={"big": "x" * 500})

        assert cache.get_entry("alpha", "1.0.0") is not None
        assert promotion.eviction.entries_evicted == 0

    def test_eviction_failure_does_not_fail_promotion(self, cache: CacheService, stage_dir):
        """A failing eviction pass is reported on the result; the new entry stays."""
        with patch.object(
            CacheService, "_evict_locked", side_effect=IOFailureError("disk full", "index.json")
        ):
            promotion = _promote(cache, stage_dir, "1.0.0")

        assert promotion.eviction is None
        assert promotion.eviction_error.kind == ErrorKind.IO_FAILURE
        assert cache.get_entry("alpha", "1.0.0") is not None
        assert cache.path_for("alpha", "1.0.0").is_dir()

    def test_pinned_versions_survive_and_pin_protection_logged(
        self, settings: Settings, storage: StorageAdapter, clock, stage_dir
    ):
        """Pins are never evicted; a missed target logs PIN_PROTECTED."""
        cache = CacheService(
            settings.cache_dir,
            storage,
            TempWorkspace(settings.plugin_dir, storage),
            max_size_mb=0.0002,
            clock=clock,
        )
        body = {"blob": "x" * 150}
        _promote(cache, stage_dir, "1.0.0", files=body, skip_eviction=True)
        cache.pin_version("alpha", "1.0.0")

        _promote(cache, stage_dir, "1.1.0", files=body)

        assert cache.get_entry("alpha", "1.0.0") is not None
        log = cache.load_index().eviction_log
        assert [(e.version, e.reason) for e in log] == [("1.0.0", EvictionReason.PIN_PROTECTED)]
        assert log[0].was_pinned

    def test_evict_cache_with_override_and_protected(self, cache: CacheService, stage_dir):
        """evict_cache honors an explicit limit and protected keys."""
        for version in ("1.0.0", "1.1.0", "1.2.0"):
            _promote(cache, stage_dir, version, files={"f": "x" * 100}, skip_eviction=True)

        result = cache.evict_cache(max_size_mb=0.00015, protected={("alpha", "1.0.0")})

        assert result.success
        assert [e.version for e in result.data.evicted_entries] == ["1.1.0", "1.2.0"]
        assert [e.version for e in cache.list_entries()] == ["1.0.0"]

    def test_version_limit_applies_below_size_limit(self, cache: CacheService, stage_dir):
        """A fourth version evicts the oldest even when size is fine."""
        for version in ("1.0.0", "1.1.0", "1.2.0", "1.3.0"):
            _promote(cache, stage_dir, version)

        assert [e.version for e in cache.list_entries("alpha")] == ["1.1.0", "1.2.0", "1.3.0"]
        assert cache.load_index().eviction_log[-1].reason == EvictionReason.VERSION_LIMIT


class TestRetrieval:
    """Tests for retrieve_artifacts() and lookups."""

    def test_retrieve_updates_access_time(self, cache: CacheService, stage_dir):
        """Retrieving moves an entry to most-recently-used."""
        _promote(cache, stage_dir, "1.0.0")
        before = cache.get_entry("alpha", "1.0.0").last_access_time

        result = cache.retrieve_artifacts("alpha", "1.0.0")

        assert result.success
        assert result.data == cache.path_for("alpha", "1.0.0")
        assert cache.get_entry("alpha", "1.0.0").last_access_time > before

    def test_retrieve_missing_is_not_cached(self, cache: CacheService):
        """Unknown versions fail with NotCached."""
        result = cache.retrieve_artifacts("alpha", "9.9.9")

        assert not result.success
        assert result.error.kind == ErrorKind.NOT_CACHED
        assert result.error.code == "VERSION_NOT_CACHED"

    def test_retrieve_vanished_directory_is_corruption(self, cache: CacheService, stage_dir):
        """An indexed entry whose directory is gone reports corruption."""
        _promote(cache, stage_dir, "1.0.0")
        os.rename(cache.path_for("alpha", "1.0.0"), cache.cache_dir / "elsewhere")

        result = cache.retrieve_artifacts("alpha", "1.0.0")

        assert result.error.kind == ErrorKind.CORRUPTION

    def test_list_entries_sorted_by_version(self, cache: CacheService, stage_dir):
        """Entries come back in version order."""
        for version in ("1.10.0", "1.2.0", "1.9.0"):
            _promote(cache, stage_dir, version, skip_eviction=True)

        assert [e.version for e in cache.list_entries("alpha")] == ["1.2.0", "1.9.0", "1.10.0"]


class TestFlags:
    """Tests for pin and current-version flags."""

    def test_pin_is_idempotent(self, cache: CacheService, stage_dir):
        """Pinning twice reports a change only once."""
        _promote(cache, stage_dir, "1.0.0")

        assert cache.pin_version("alpha", "1.0.0").data is True
        assert cache.pin_version("alpha", "1.0.0").data is False
        assert cache.unpin_version("alpha", "1.0.0").data is True
        assert cache.unpin_version("alpha", "1.0.0").data is False

    def test_pin_unknown_version_fails(self, cache: CacheService):
        """Pinning an uncached version fails with NotCached."""
        assert cache.pin_version("alpha", "1.0.0").error.kind == ErrorKind.NOT_CACHED

    def test_single_current_version(self, cache: CacheService, stage_dir):
        """Setting a current version clears the previous one."""
        _promote(cache, stage_dir, "1.0.0")
        _promote(cache, stage_dir, "1.1.0")
        cache.set_current_version("alpha", "1.0.0")
        cache.set_current_version("alpha", "1.1.0")

        current = [e.version for e in cache.list_entries("alpha") if e.is_current_version]
        assert current == ["1.1.0"]

        cache.clear_current_version("alpha")
        assert not any(e.is_current_version for e in cache.list_entries("alpha"))


class TestRemoval:
    """Tests for remove_entry() and orphan cleanup."""

    def test_remove_pinned_requires_force(self, cache: CacheService, stage_dir):
        """Pinned entries are refused unless forced."""
        _promote(cache, stage_dir, "1.0.0")
        cache.pin_version("alpha", "1.0.0")

        refused = cache.remove_entry("alpha", "1.0.0")
        assert refused.error.code == "PIN_PROTECTED"

        forced = cache.remove_entry("alpha", "1.0.0", force=True)
        assert forced.success
        assert cache.get_entry("alpha", "1.0.0") is None
        assert cache.load_index().eviction_log[-1].was_pinned

    def test_remove_drops_empty_plugin_directory(self, cache: CacheService, stage_dir):
        """Removing the last version removes cache/<plugin_id>."""
        _promote(cache, stage_dir, "1.0.0")

        cache.remove_entry("alpha", "1.0.0", EvictionReason.MANUAL_CLEANUP)

        assert not (cache.cache_dir / "alpha").exists()
        assert cache.load_index().eviction_log[-1].reason == EvictionReason.MANUAL_CLEANUP

    def test_cleanup_orphaned_temp(self, cache: CacheService):
        """Old staging directories are reclaimed and reported."""
        staging = cache.stage_artifacts("alpha", "1.0.0", "tx-1-aaaaaaaa").data.staging_path
        (staging / "f").write_text("12345")
        old = time.time() - 7200
        os.utime(staging, (old, old))

        result = cache.cleanup_orphaned_temp(max_age_seconds=3600)

        assert result.success
        assert result.data.reason == EvictionReason.ORPHANED_TEMP
        assert result.data.entries_evicted == 1
        assert result.data.bytes_freed == 5
        assert not staging.exists()


class TestRecovery:
    """Tests for index rebuild and integrity checks."""

    def test_rebuild_preserves_flags_for_surviving_entries(self, cache: CacheService, stage_dir):
        """Pins and current flags carry over; vanished entries are dropped."""
        _promote(cache, stage_dir, "1.0.0")
        _promote(cache, stage_dir, "1.1.0")
        cache.pin_version("alpha", "1.0.0")
        cache.set_current_version("alpha", "1.1.0")
        shutil.rmtree(cache.path_for("alpha", "1.1.0"))

        result = cache.rebuild_index()

        assert result.success
        entries = result.data.iter_entries()
        assert [e.version for e in entries] == ["1.0.0"]
        assert entries[0].pinned

    def test_rebuild_matches_disk_after_interrupted_promotion(
        self, cache: CacheService, stage_dir
    ):
        """Unindexed directories are picked up and stale entries dropped."""
        _promote(cache, stage_dir, "1.0.0")
        _promote(cache, stage_dir, "1.1.0")
        # Moved into place but the index write never happened
        shutil.copytree(stage_dir({"b.txt": "late"}), cache.path_for("alpha", "1.2.0"))
        shutil.copytree(stage_dir(), cache.path_for("beta", "0.1.0"))
        # Indexed but the directory is gone
        shutil.rmtree(cache.path_for("alpha", "1.1.0"))
        # Leftover of a replaced tree that was never discarded
        shutil.copytree(stage_dir(), cache.cache_dir / "alpha" / ".1.0.0.replaced-0badc0de")

        result = cache.rebuild_index()

        assert result.success
        on_disk = {
            (plugin_dir.name, version_dir.name)
            for plugin_dir in cache.cache_dir.iterdir()
            if plugin_dir.is_dir() and not plugin_dir.name.startswith(".")
            for version_dir in plugin_dir.iterdir()
            if not version_dir.name.startswith(".")
        }
        indexed = {(e.plugin_id, e.version) for e in cache.list_entries()}
        assert indexed == on_disk == {("alpha", "1.0.0"), ("alpha", "1.2.0"), ("beta", "0.1.0")}
        for entry in cache.list_entries():
            assert Path(entry.cache_path).is_dir()
            assert entry.checksum == cache.storage.calculate_checksum(Path(entry.cache_path))
        persisted = CacheIndex.model_validate(json.loads(cache.index_path.read_text()))
        assert {(e.plugin_id, e.version) for e in persisted.iter_entries()} == indexed

    def test_corrupted_index_is_rebuilt_on_load(self, cache: CacheService, stage_dir):
        """A damaged index is rebuilt from disk instead of failing."""
        _promote(cache, stage_dir, "1.0.0")
        cache.index_path.write_text("{broken")

        entries = cache.list_entries("alpha")

        assert [e.version for e in entries] == ["1.0.0"]
        CacheIndex.model_validate(json.loads(cache.index_path.read_text()))

    def test_missing_index_with_artifacts_is_rebuilt(self, cache: CacheService, stage_dir):
        """Artifacts on disk without an index are re-indexed."""
        _promote(cache, stage_dir, "1.0.0")
        cache.index_path.unlink()

        assert cache.get_entry("alpha", "1.0.0") is not None

    def test_validate_integrity_reports_and_evicts(self, cache: CacheService, stage_dir):
        """Tampered entries are reported; unprotected ones can be evicted."""
        _promote(cache, stage_dir, "1.0.0")
        _promote(cache, stage_dir, "1.1.0")
        cache.set_current_version("alpha", "1.1.0")
        (cache.path_for("alpha", "1.0.0") / "a.txt").write_text("tampered")
        (cache.path_for("alpha", "1.1.0") / "a.txt").write_text("tampered")

        report = cache.validate_integrity()
        assert sorted(e.version for e in report.data) == ["1.0.0", "1.1.0"]

        cache.validate_integrity(evict_corrupted=True)

        assert [e.version for e in cache.list_entries("alpha")] == ["1.1.0"]
        assert cache.load_index().eviction_log[-1].reason == EvictionReason.CORRUPTION

    def test_verify_entry(self, cache: CacheService, stage_dir):
        """verify_entry passes for intact entries and fails after tampering."""
        _promote(cache, stage_dir, "1.0.0")
        assert cache.verify_entry("alpha", "1.0.0").success

        (cache.path_for("alpha", "1.0.0") / "extra").write_text("x")
        assert cache.verify_entry("alpha", "1.0.0").error.kind == ErrorKind.CORRUPTION


class TestStats:
    """Tests for get_stats()."""

    def test_stats(self, cache: CacheService, stage_dir):
        """Counts and usage are reported."""
        _promote(cache, stage_dir, "1.0.0", files={"f": "x" * 10})
        _promote(cache, stage_dir, "1.0.0", plugin_id="beta", files={"f": "x" * 20})
        cache.pin_version("beta", "1.0.0")

        stats = cache.get_stats().data

        assert stats.total_size_bytes == 30
        assert stats.plugin_count == 2
        assert stats.entry_count == 2
        assert stats.pinned_count == 1
        assert stats.max_size_mb == 500
        assert not stats.over_limit


@pytest.mark.parametrize("size_mb, expected", [(0.00003, True), (1, False)])
def test_over_limit_flag(cache: CacheService, stage_dir, size_mb, expected):
    """over_limit compares the total against the configured limit."""
    _promote(cache, stage_dir, "1.0.0", files={"f": "x" * 40}, skip_eviction=True)
    cache.max_size_mb = size_mb
    assert cache.get_stats().data.over_limit is expected
