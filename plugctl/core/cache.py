"""On-disk artifact cache with a JSON index and bounded eviction.

Layout below the cache directory::

    <cache_dir>/<plugin_id>/<version>/   artifact tree
    <cache_dir>/index.json               CacheIndex

Every mutation reloads the index from disk, applies the change in memory and
writes the whole document back atomically while holding the index lock.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from plugctl.config.schemas import (
    CacheEntry,
    CacheIndex,
    EvictionLogEntry,
    EvictionReason,
    Settings,
    utc_now,
)
from plugctl.core.errors import (
    ConflictError,
    CorruptionError,
    IOFailureError,
    NotCachedError,
    OperationResult,
    PlugctlError,
    StagingError,
)
from plugctl.core.eviction import DEFAULT_MAX_VERSIONS, EvictionPolicy
from plugctl.core.workspace import (
    DEFAULT_ORPHAN_MAX_AGE_SECONDS,
    TempWorkspace,
    generate_transaction_id,
)
from plugctl.utils.filesystem import StorageAdapter
from plugctl.utils.locking import FileLock
from plugctl.utils.version import VersionKey

logger = logging.getLogger(__name__)

NEAR_LIMIT_PERCENT = 90.0


@dataclass
class StagingInfo:
    """A staging directory allocated for one transaction."""

    plugin_id: str
    version: str
    staging_path: Path
    transaction_id: str


@dataclass
class EvictionResult:
    """Summary of one eviction or cleanup pass."""

    eviction_triggered: bool = False
    reason: EvictionReason | None = None
    entries_evicted: int = 0
    bytes_freed: int = 0
    evicted_entries: list[CacheEntry] = field(default_factory=list)
    failed_entries: list[CacheEntry] = field(default_factory=list)
    removed_paths: list[Path] = field(default_factory=list)
    size_before_bytes: int = 0
    size_after_bytes: int = 0
    evicted_at: datetime = field(default_factory=utc_now)


@dataclass
class PromotionResult:
    entry: CacheEntry
    eviction: EvictionResult | None = None
    eviction_error: PlugctlError | None = None


@dataclass
class CacheStats:
    """Usage summary for the whole cache."""

    total_size_bytes: int
    max_size_mb: float
    plugin_count: int
    entry_count: int
    pinned_count: int
    current_count: int

    @property
    def total_size_mb(self) -> float:
        return self.total_size_bytes / 1_000_000

    @property
    def usage_percent(self) -> float:
        if self.max_size_mb <= 0:
            return 0.0
        return self.total_size_mb / self.max_size_mb * 100

    @property
    def near_limit(self) -> bool:
        return self.usage_percent >= NEAR_LIMIT_PERCENT

    @property
    def over_limit(self) -> bool:
        return self.total_size_mb > self.max_size_mb


class CacheService:
    """Stores immutable per-version artifact trees and bounds their disk usage.

    Args:
        cache_dir: Root of the cache (``<plugin_dir>/cache``)
        storage: Storage adapter used for all filesystem access
        workspace: Staging workspace manager
        max_size_mb: Size limit in decimal megabytes
        max_versions: Cached versions kept per plugin
        eviction_enabled: Run eviction automatically after promotion
        lock_timeout: Seconds to wait for the index lock
        clock: Source of "now" for access times
    """

    def __init__(
        self,
        cache_dir: Path,
        storage: StorageAdapter,
        workspace: TempWorkspace,
        max_size_mb: float = 500,
        max_versions: int = DEFAULT_MAX_VERSIONS,
        eviction_enabled: bool = True,
        lock_timeout: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.cache_dir = cache_dir
        self.storage = storage
        self.workspace = workspace
        self.max_size_mb = max_size_mb
        self.max_versions = max_versions
        self.eviction_enabled = eviction_enabled
        self.clock = clock
        self._index_path = cache_dir / "index.json"
        self._lock = FileLock(self._index_path, timeout=lock_timeout)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        storage: StorageAdapter,
        clock: Callable[[], datetime] = utc_now,
    ) -> CacheService:
        return cls(
            cache_dir=settings.cache_dir,
            storage=storage,
            workspace=TempWorkspace(settings.plugin_dir, storage),
            max_size_mb=settings.max_cache_size_mb,
            max_versions=settings.max_versions_per_plugin,
            eviction_enabled=settings.flags.enable_cache_eviction,
            lock_timeout=settings.lock_timeout_seconds,
            clock=clock,
        )

    @property
    def index_path(self) -> Path:
        return self._index_path

    def path_for(self, plugin_id: str, version: str) -> Path:
        return self.cache_dir / plugin_id / version

    # -------------------------------------------------------------------------
    # Index persistence
    # -------------------------------------------------------------------------

    def _read_index(self) -> CacheIndex | None:
        """Read the persisted index.

        Raises:
            CorruptionError: If the file is unreadable JSON or fails validation
        """
        data = self.storage.read_json(self._index_path)
        if data is None:
            return None
        try:
            return CacheIndex.model_validate(data)
        except PydanticValidationError as e:
            raise CorruptionError(
                f"Invalid cache index: {e}", "INDEX_CORRUPTED", {"path": str(self._index_path)}
            ) from e

    def _load_index(self) -> CacheIndex:
        """Load the index, rebuilding it from disk when missing or damaged.

        Must be called with the index lock held.
        """
        try:
            index = self._read_index()
        except CorruptionError as e:
            logger.warning("Cache index is corrupted, rebuilding: %s", e.message)
            return self._rebuild_locked(None)

        if index is None:
            if self._scan_version_dirs():
                logger.info("Cache index missing but artifacts present, rebuilding")
                return self._rebuild_locked(None)
            return CacheIndex()
        return index

    def _save_index(self, index: CacheIndex) -> None:
        index.recompute_total()
        index.last_updated = self.clock()
        self.storage.write_json_atomic(self._index_path, index.to_document())

    def _scan_version_dirs(self) -> list[tuple[str, Path]]:
        """List (plugin_id, version_dir) pairs present on disk."""
        found = []
        for plugin_dir in self.storage.list_directory(self.cache_dir):
            if not plugin_dir.is_dir() or plugin_dir.name.startswith("."):
                continue
            for version_dir in self.storage.list_directory(plugin_dir):
                if version_dir.is_dir() and not version_dir.name.startswith("."):
                    found.append((plugin_dir.name, version_dir))
        return found

    def _rebuild_locked(self, previous: CacheIndex | None) -> CacheIndex:
        index = CacheIndex(eviction_log=list(previous.eviction_log) if previous else [])
        for plugin_id, version_dir in self._scan_version_dirs():
            version = version_dir.name
            old = previous.get_entry(plugin_id, version) if previous else None
            if old is not None:
                last_access = old.last_access_time
            else:
                mtime = self.storage.modified_time(version_dir)
                last_access = datetime.fromtimestamp(mtime, timezone.utc)
            index.upsert(
                CacheEntry(
                    plugin_id=plugin_id,
                    version=version,
                    cache_path=str(version_dir),
                    size_bytes=self.storage.calculate_directory_size(version_dir),
                    last_access_time=last_access,
                    pinned=old.pinned if old else False,
                    is_current_version=old.is_current_version if old else False,
                    checksum=self.storage.calculate_checksum(version_dir),
                )
            )
        self._save_index(index)
        logger.info(
            "Rebuilt cache index: %d entries, %d bytes",
            len(index.iter_entries()),
            index.total_size_bytes,
        )
        return index

    # -------------------------------------------------------------------------
    # Staging and promotion
    # -------------------------------------------------------------------------

    def stage_artifacts(
        self, plugin_id: str, version: str, transaction_id: str | None = None
    ) -> OperationResult[StagingInfo]:
        """Allocate a staging directory; the index is not touched.

        Args:
            plugin_id: Plugin being staged
            version: Version being staged
            transaction_id: Existing transaction id, or None to generate one

        Returns:
            Result carrying the StagingInfo
        """
        transaction_id = transaction_id or generate_transaction_id()
        try:
            path = self.workspace.provision(transaction_id)
        except PlugctlError as e:
            logger.error("Staging %s@%s failed: %s", plugin_id, version, e.message)
            return OperationResult.fail(e)
        logger.info("Staging %s@%s in %s", plugin_id, version, path)
        return OperationResult.ok(StagingInfo(plugin_id, version, path, transaction_id))

    def promote_artifacts(
        self,
        plugin_id: str,
        version: str,
        staging_path: Path,
        *,
        expected_checksum: str | None = None,
        skip_eviction: bool = False,
        transaction_id: str | None = None,
    ) -> OperationResult[PromotionResult]:
        """Move a staged tree into the cache and record it in the index.

        Args:
            plugin_id: Plugin being promoted
            version: Version being promoted
            staging_path: Directory holding the staged artifacts
            expected_checksum: Tree checksum the staged content must match
            skip_eviction: Do not run eviction afterwards
            transaction_id: Correlation id for logging

        Returns:
            Result carrying the new CacheEntry and any eviction performed.
            Fails with STAGING_FAILED or CHECKSUM_MISMATCH. An eviction failure
            after the entry is indexed does not fail the promotion; it is
            reported on ``eviction_error``.
        """
        try:
            if not staging_path.is_dir():
                raise StagingError(
                    f"Staging path is missing or not a directory: {staging_path}",
                    details={"path": str(staging_path)},
                )

            checksum = self.storage.calculate_checksum(staging_path)
            if expected_checksum and checksum != expected_checksum.removeprefix("sha256:").lower():
                raise StagingError(
                    f"Checksum mismatch for {plugin_id}@{version}",
                    "CHECKSUM_MISMATCH",
                    {"expected": expected_checksum, "actual": checksum},
                )
            size = self.storage.calculate_directory_size(staging_path)
            target = self.path_for(plugin_id, version)

            with self._lock:
                index = self._load_index()
                displaced = self._move_into_place(staging_path, target)

                existing = index.get_entry(plugin_id, version)
                entry = CacheEntry(
                    plugin_id=plugin_id,
                    version=version,
                    cache_path=str(target),
                    size_bytes=size,
                    last_access_time=self.clock(),
                    pinned=existing.pinned if existing else False,
                    is_current_version=existing.is_current_version if existing else False,
                    checksum=checksum,
                )
                index.upsert(entry)
                try:
                    self._save_index(index)
                except PlugctlError:
                    self._undo_move(staging_path, target, displaced)
                    raise
                self._discard(displaced)
                logger.info(
                    "Promoted %s@%s into cache (%d bytes, tx=%s)",
                    plugin_id,
                    version,
                    size,
                    transaction_id,
                )

                promotion = PromotionResult(entry)
                if not skip_eviction and self.eviction_enabled:
                    try:
                        promotion.eviction = self._evict_locked(index, protected={entry.key})
                    except PlugctlError as e:
                        logger.warning(
                            "Eviction after promoting %s@%s failed: %s",
                            plugin_id,
                            version,
                            e.message,
                        )
                        promotion.eviction_error = e
        except PlugctlError as e:
            logger.error("Promotion of %s@%s failed: %s", plugin_id, version, e.message)
            return OperationResult.fail(e)

        return OperationResult.ok(promotion)

    def _move_into_place(self, staging_path: Path, target: Path) -> Path | None:
        """Rename the staged tree to ``target``.

        An older copy already at ``target`` is renamed aside first and its new
        location returned, so the caller can restore or discard it.
        """
        displaced = None
        if self.storage.exists(target):
            displaced = target.with_name(f".{target.name}.replaced-{secrets.token_hex(4)}")
            self.storage.move_directory(target, displaced)
        try:
            self.storage.move_directory(staging_path, target)
        except PlugctlError:
            if displaced is not None:
                self.storage.move_directory(displaced, target)
            raise
        return displaced

    def _undo_move(self, staging_path: Path, target: Path, displaced: Path | None) -> None:
        """Put the staged tree back after the index could not be written."""
        try:
            self.storage.move_directory(target, staging_path)
            if displaced is not None:
                self.storage.move_directory(displaced, target)
        except PlugctlError as e:
            logger.error("Could not undo promotion into %s: %s", target, e.message)

    def _discard(self, displaced: Path | None) -> None:
        if displaced is None:
            return
        try:
            self.storage.remove_directory(displaced)
        except PlugctlError as e:
            logger.warning("Could not remove replaced artifacts %s: %s", displaced, e.message)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_entry(self, plugin_id: str, version: str) -> CacheEntry | None:
        with self._lock:
            return self._load_index().get_entry(plugin_id, version)

    def list_entries(self, plugin_id: str | None = None) -> list[CacheEntry]:
        """List cache entries, optionally for a single plugin, sorted by version."""
        with self._lock:
            index = self._load_index()
        if plugin_id is None:
            entries = index.iter_entries()
        else:
            entries = list(index.entries.get(plugin_id, []))
        return sorted(entries, key=lambda e: (e.plugin_id, VersionKey(e.version)))

    def retrieve_artifacts(self, plugin_id: str, version: str) -> OperationResult[Path]:
        """Return a cached version's path and mark it as recently used.

        Returns:
            Result carrying the cache path; fails with VERSION_NOT_CACHED when
            absent, or CACHE_CORRUPTED when its directory has vanished
        """
        try:
            with self._lock:
                index = self._load_index()
                entry = index.get_entry(plugin_id, version)
                if entry is None:
                    raise NotCachedError(
                        f"{plugin_id}@{version} is not cached",
                        details={"pluginId": plugin_id, "version": version},
                    )
                path = Path(entry.cache_path)
                if not self.storage.exists(path):
                    raise CorruptionError(
                        f"Cache directory for {plugin_id}@{version} is missing: {path}",
                        details={"pluginId": plugin_id, "version": version},
                    )
                entry.last_access_time = self.clock()
                self.storage.touch_file(path)
                self._save_index(index)
        except PlugctlError as e:
            logger.debug("Retrieve %s@%s failed: %s", plugin_id, version, e.message)
            return OperationResult.fail(e)
        return OperationResult.ok(path)

    # -------------------------------------------------------------------------
    # Flags
    # -------------------------------------------------------------------------

    def _set_flag(
        self, plugin_id: str, version: str, apply: Callable[[CacheIndex, CacheEntry], bool]
    ) -> OperationResult[bool]:
        try:
            with self._lock:
                index = self._load_index()
                entry = index.get_entry(plugin_id, version)
                if entry is None:
                    raise NotCachedError(
                        f"{plugin_id}@{version} is not cached",
                        details={"pluginId": plugin_id, "version": version},
                    )
                changed = apply(index, entry)
                if changed:
                    self._save_index(index)
        except PlugctlError as e:
            return OperationResult.fail(e)
        return OperationResult.ok(changed)

    def pin_version(self, plugin_id: str, version: str) -> OperationResult[bool]:
        """Pin a cached version. The result's data is True if anything changed."""

        def _pin(index: CacheIndex, entry: CacheEntry) -> bool:
            if entry.pinned:
                return False
            entry.pinned = True
            return True

        result = self._set_flag(plugin_id, version, _pin)
        if result.success and result.data:
            logger.info("Pinned %s@%s in cache", plugin_id, version)
        return result

    def unpin_version(self, plugin_id: str, version: str) -> OperationResult[bool]:
        """Unpin a cached version. The result's data is True if anything changed."""

        def _unpin(index: CacheIndex, entry: CacheEntry) -> bool:
            if not entry.pinned:
                return False
            entry.pinned = False
            return True

        result = self._set_flag(plugin_id, version, _unpin)
        if result.success and result.data:
            logger.info("Unpinned %s@%s in cache", plugin_id, version)
        return result

    def set_current_version(self, plugin_id: str, version: str) -> OperationResult[bool]:
        """Mark ``version`` as the plugin's current version, clearing the others."""

        def _set(index: CacheIndex, entry: CacheEntry) -> bool:
            changed = False
            for other in index.entries[plugin_id]:
                want = other.version == version
                if other.is_current_version != want:
                    other.is_current_version = want
                    changed = True
            return changed

        return self._set_flag(plugin_id, version, _set)

    def clear_current_version(self, plugin_id: str) -> OperationResult[bool]:
        try:
            with self._lock:
                index = self._load_index()
                changed = False
                for entry in index.entries.get(plugin_id, []):
                    if entry.is_current_version:
                        entry.is_current_version = False
                        changed = True
                if changed:
                    self._save_index(index)
        except PlugctlError as e:
            return OperationResult.fail(e)
        return OperationResult.ok(changed)

    # -------------------------------------------------------------------------
    # Removal and eviction
    # -------------------------------------------------------------------------

    def _remove_locked(self, index: CacheIndex, entry: CacheEntry, reason: EvictionReason) -> bool:
        """Remove one entry's directory, then its index record.

        The index is only written once the directory is gone, so a crash
        leaves at worst a stale entry that the next rebuild drops.
        """
        path = Path(entry.cache_path)
        try:
            self.storage.remove_directory(path)
        except PlugctlError as e:
            logger.warning(
                "Could not remove %s@%s (%s): %s", entry.plugin_id, entry.version, path, e.message
            )
            return False

        plugin_dir = path.parent
        if plugin_dir.parent == self.cache_dir and not self.storage.list_directory(plugin_dir):
            try:
                self.storage.remove_directory(plugin_dir)
            except PlugctlError as e:
                logger.debug("Could not remove empty plugin dir %s: %s", plugin_dir, e.message)

        index.remove(entry.plugin_id, entry.version)
        index.append_log(
            EvictionLogEntry(
                plugin_id=entry.plugin_id,
                version=entry.version,
                reason=reason,
                bytes_freed=entry.size_bytes,
                evicted_at=self.clock(),
                was_pinned=entry.pinned,
            )
        )
        self._save_index(index)
        logger.info(
            "Evicted %s@%s (%s, %d bytes)",
            entry.plugin_id,
            entry.version,
            reason.value,
            entry.size_bytes,
        )
        return True

    def _evict_locked(
        self,
        index: CacheIndex,
        max_size_mb: float | None = None,
        protected: Collection[tuple[str, str]] = (),
    ) -> EvictionResult:
        policy = EvictionPolicy.from_megabytes(
            self.max_size_mb if max_size_mb is None else max_size_mb, self.max_versions
        )
        size_before = index.recompute_total()
        outcome = policy.run(
            index, lambda entry, reason: self._remove_locked(index, entry, reason), protected
        )

        if outcome.blocked_by_pins:
            now = self.clock()
            for entry, _reason in outcome.blocked_by_pins:
                index.append_log(
                    EvictionLogEntry(
                        plugin_id=entry.plugin_id,
                        version=entry.version,
                        reason=EvictionReason.PIN_PROTECTED,
                        bytes_freed=0,
                        evicted_at=now,
                        was_pinned=True,
                    )
                )
            self._save_index(index)

        evicted = [entry for entry, _reason in outcome.removed]
        return EvictionResult(
            eviction_triggered=outcome.triggered,
            reason=outcome.reason,
            entries_evicted=len(evicted),
            bytes_freed=sum(e.size_bytes for e in evicted),
            evicted_entries=evicted,
            failed_entries=outcome.failed,
            size_before_bytes=size_before,
            size_after_bytes=index.recompute_total(),
            evicted_at=self.clock(),
        )

    def evict_cache(
        self,
        max_size_mb: float | None = None,
        protected: Collection[tuple[str, str]] = (),
    ) -> OperationResult[EvictionResult]:
        """Run the eviction policy now.

        Args:
            max_size_mb: Override the configured size limit for this run
            protected: Extra (plugin_id, version) keys to keep this run

        Returns:
            Result carrying the EvictionResult
        """
        try:
            with self._lock:
                index = self._load_index()
                result = self._evict_locked(index, max_size_mb, protected)
        except PlugctlError as e:
            logger.error("Eviction failed: %s", e.message)
            return OperationResult.fail(e)
        return OperationResult.ok(result)

    def remove_entry(
        self,
        plugin_id: str,
        version: str,
        reason: EvictionReason = EvictionReason.MANUAL_CLEANUP,
        force: bool = False,
    ) -> OperationResult[CacheEntry]:
        """Remove a single cached version.

        Pinned entries are refused with PIN_PROTECTED unless ``force`` is set.
        """
        try:
            with self._lock:
                index = self._load_index()
                entry = index.get_entry(plugin_id, version)
                if entry is None:
                    raise NotCachedError(
                        f"{plugin_id}@{version} is not cached",
                        details={"pluginId": plugin_id, "version": version},
                    )
                if entry.pinned and not force:
                    raise ConflictError(
                        f"{plugin_id}@{version} is pinned", "PIN_PROTECTED", {"pluginId": plugin_id}
                    )
                if not self._remove_locked(index, entry, reason):
                    raise IOFailureError(
                        f"Failed to remove cached {plugin_id}@{version}", entry.cache_path
                    )
        except PlugctlError as e:
            return OperationResult.fail(e)
        return OperationResult.ok(entry)

    def cleanup_orphaned_temp(
        self,
        max_age_seconds: float = DEFAULT_ORPHAN_MAX_AGE_SECONDS,
        active_transactions: Collection[str] = (),
    ) -> OperationResult[EvictionResult]:
        """Reclaim staging directories left behind by interrupted transactions."""
        try:
            orphans = self.workspace.list_orphaned(max_age_seconds, active_transactions)
            sizes = {path: self.storage.calculate_directory_size(path) for path in orphans}
            removed = self.workspace.cleanup_orphaned(max_age_seconds, active_transactions)
        except PlugctlError as e:
            return OperationResult.fail(e)

        freed = sum(sizes.get(path, 0) for path in removed)
        if removed:
            logger.info("Removed %d orphaned workspaces (%d bytes)", len(removed), freed)
        return OperationResult.ok(
            EvictionResult(
                eviction_triggered=bool(removed),
                reason=EvictionReason.ORPHANED_TEMP,
                entries_evicted=len(removed),
                bytes_freed=freed,
                removed_paths=removed,
                evicted_at=self.clock(),
            )
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def rebuild_index(self) -> OperationResult[CacheIndex]:
        """Reconstruct the index from the directories actually present.

        Pin, current-version and access-time metadata is carried over from the
        previous index for entries that still exist on disk.
        """
        try:
            with self._lock:
                try:
                    previous = self._read_index()
                except CorruptionError as e:
                    logger.warning("Discarding corrupted cache index: %s", e.message)
                    previous = None
                index = self._rebuild_locked(previous)
        except PlugctlError as e:
            return OperationResult.fail(e)
        return OperationResult.ok(index)

    def validate_integrity(
        self, evict_corrupted: bool = False
    ) -> OperationResult[list[CacheEntry]]:
        """Recompute checksums and report entries that fail verification.

        Args:
            evict_corrupted: Also remove corrupted entries that are neither
                pinned nor current (logged as CORRUPTION)

        Returns:
            Result carrying the corrupted entries
        """
        try:
            with self._lock:
                index = self._load_index()
                corrupted = []
                for entry in index.iter_entries():
                    path = Path(entry.cache_path)
                    if not self.storage.exists(path):
                        logger.warning("Cache entry %s@%s has no directory", *entry.key)
                        corrupted.append(entry)
                    elif entry.checksum and self.storage.calculate_checksum(path) != entry.checksum:
                        logger.warning("Checksum mismatch for cached %s@%s", *entry.key)
                        corrupted.append(entry)

                if evict_corrupted:
                    for entry in corrupted:
                        if entry.pinned or entry.is_current_version:
                            logger.warning(
                                "Keeping corrupted %s@%s: entry is pinned or current", *entry.key
                            )
                            continue
                        self._remove_locked(index, entry, EvictionReason.CORRUPTION)
        except PlugctlError as e:
            return OperationResult.fail(e)
        return OperationResult.ok(corrupted)

    def verify_entry(self, plugin_id: str, version: str) -> OperationResult[CacheEntry]:
        """Check one entry's directory and checksum without modifying anything."""
        try:
            with self._lock:
                entry = self._load_index().get_entry(plugin_id, version)
            if entry is None:
                raise NotCachedError(
                    f"{plugin_id}@{version} is not cached",
                    details={"pluginId": plugin_id, "version": version},
                )
            path = Path(entry.cache_path)
            if not self.storage.exists(path):
                raise CorruptionError(f"Cache directory missing for {plugin_id}@{version}: {path}")
            if entry.checksum and self.storage.calculate_checksum(path) != entry.checksum:
                raise CorruptionError(
                    f"Checksum mismatch for cached {plugin_id}@{version}",
                    details={"expected": entry.checksum},
                )
        except PlugctlError as e:
            return OperationResult.fail(e)
        return OperationResult.ok(entry)

    def get_stats(self) -> OperationResult[CacheStats]:
        try:
            with self._lock:
                index = self._load_index()
        except PlugctlError as e:
            return OperationResult.fail(e)
        entries = index.iter_entries()
        return OperationResult.ok(
            CacheStats(
                total_size_bytes=index.recompute_total(),
                max_size_mb=self.max_size_mb,
                plugin_count=len(index.entries),
                entry_count=len(entries),
                pinned_count=sum(1 for e in entries if e.pinned),
                current_count=sum(1 for e in entries if e.is_current_version),
            )
        )

    def load_index(self) -> CacheIndex:
        """Return a snapshot of the current index."""
        with self._lock:
            return self._load_index()
