"""Deterministic cache eviction policy.

The policy decides *which* entry goes next; the cache service performs the
actual removal through a callback, so the same ordering rules apply whether
entries are removed from disk or from an in-memory fixture.

Rules:
1. SIZE_LIMIT runs when the total size exceeds the byte limit.
2. VERSION_LIMIT runs for each plugin holding more than ``max_versions``
   entries, whatever the total size.
3. Pinned and current entries are never candidates.
4. Candidates go least-recently-used first, ties broken by ascending version.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field

from plugctl.config.schemas import CacheEntry, CacheIndex, EvictionReason
from plugctl.utils.version import VersionKey

logger = logging.getLogger(__name__)

DEFAULT_MAX_VERSIONS = 3

# Removes one entry (directory first, then index); False when the removal failed.
RemoveCallback = Callable[[CacheEntry, EvictionReason], bool]


def eviction_order(entries: Iterable[CacheEntry]) -> list[CacheEntry]:
    """Sort entries least-recently-used first, oldest version first on ties."""
    return sorted(entries, key=lambda e: (e.last_access_time, VersionKey(e.version)))


def is_evictable(entry: CacheEntry, protected: Collection[tuple[str, str]] = ()) -> bool:
    """Whether an entry may be removed by eviction."""
    return not entry.pinned and not entry.is_current_version and entry.key not in protected


@dataclass
class EvictionOutcome:
    """What a policy run did to an index."""

    size_triggered: bool = False
    version_triggered: list[str] = field(default_factory=list)
    removed: list[tuple[CacheEntry, EvictionReason]] = field(default_factory=list)
    failed: list[CacheEntry] = field(default_factory=list)
    # Pinned entries in scope of a pass that could not reach its target
    blocked_by_pins: list[tuple[CacheEntry, EvictionReason]] = field(default_factory=list)

    @property
    def triggered(self) -> bool:
        return self.size_triggered or bool(self.version_triggered)

    @property
    def reason(self) -> EvictionReason | None:
        if self.size_triggered:
            return EvictionReason.SIZE_LIMIT
        if self.version_triggered:
            return EvictionReason.VERSION_LIMIT
        return None


class EvictionPolicy:
    """Size- and version-bounded LRU eviction with pin protection."""

    def __init__(self, max_size_bytes: int, max_versions: int = DEFAULT_MAX_VERSIONS):
        """Initialize the policy.

        Args:
            max_size_bytes: Upper bound on the cache's total size
            max_versions: Upper bound on cached versions per plugin
        """
        self.max_size_bytes = max_size_bytes
        self.max_versions = max_versions

    @classmethod
    def from_megabytes(cls, max_size_mb: float, max_versions: int = DEFAULT_MAX_VERSIONS):
        """Build a policy from a decimal megabyte limit (1 MB = 1,000,000 bytes)."""
        return cls(int(max_size_mb * 1_000_000), max_versions)

    def over_size_limit(self, index: CacheIndex) -> bool:
        return index.recompute_total() > self.max_size_bytes

    def plugins_over_version_limit(self, index: CacheIndex) -> list[str]:
        limit = self.max_versions
        return sorted(pid for pid, entries in index.entries.items() if len(entries) > limit)

    def next_candidate(
        self,
        entries: Iterable[CacheEntry],
        protected: Collection[tuple[str, str]] = (),
        skip: Collection[tuple[str, str]] = (),
    ) -> CacheEntry | None:
        """Return the next entry to evict from ``entries``, or None."""
        for entry in eviction_order(entries):
            if is_evictable(entry, protected) and entry.key not in skip:
                return entry
        return None

    def run(
        self,
        index: CacheIndex,
        remove: RemoveCallback,
        protected: Collection[tuple[str, str]] = (),
    ) -> EvictionOutcome:
        """Evict from ``index`` until both limits hold or no candidates remain.

        ``remove`` is expected to drop the entry from ``index`` when it
        returns True. Entries whose removal fails are skipped for the rest
        of the run.

        Args:
            index: Cache index to evict from (mutated through ``remove``)
            remove: Callback performing one removal
            protected: Extra (plugin_id, version) keys to keep this run

        Returns:
            EvictionOutcome describing the run
        """
        outcome = EvictionOutcome()
        skip: set[tuple[str, str]] = set()

        if self.over_size_limit(index):
            outcome.size_triggered = True
            logger.info(
                "Cache size %d exceeds limit %d, evicting",
                index.total_size_bytes,
                self.max_size_bytes,
            )
            while index.recompute_total() > self.max_size_bytes:
                candidate = self.next_candidate(index.iter_entries(), protected, skip)
                if candidate is None:
                    break
                self._remove_one(candidate, EvictionReason.SIZE_LIMIT, remove, outcome, skip)

            if index.recompute_total() > self.max_size_bytes:
                logger.warning(
                    "Cache remains over limit (%d > %d bytes); remaining entries are protected",
                    index.total_size_bytes,
                    self.max_size_bytes,
                )
                outcome.blocked_by_pins.extend(
                    (e, EvictionReason.SIZE_LIMIT) for e in index.iter_entries() if e.pinned
                )

        for plugin_id in self.plugins_over_version_limit(index):
            outcome.version_triggered.append(plugin_id)
            logger.info(
                "Plugin '%s' has %d cached versions (limit %d), evicting",
                plugin_id,
                len(index.entries[plugin_id]),
                self.max_versions,
            )
            while len(index.entries.get(plugin_id, [])) > self.max_versions:
                candidate = self.next_candidate(index.entries[plugin_id], protected, skip)
                if candidate is None:
                    break
                self._remove_one(candidate, EvictionReason.VERSION_LIMIT, remove, outcome, skip)

            if len(index.entries.get(plugin_id, [])) > self.max_versions:
                outcome.blocked_by_pins.extend(
                    (e, EvictionReason.VERSION_LIMIT) for e in index.entries[plugin_id] if e.pinned
                )

        return outcome

    @staticmethod
    def _remove_one(
        candidate: CacheEntry,
        reason: EvictionReason,
        remove: RemoveCallback,
        outcome: EvictionOutcome,
        skip: set[tuple[str, str]],
    ) -> None:
        if remove(candidate, reason):
            outcome.removed.append((candidate, reason))
        else:
            outcome.failed.append(candidate)
            skip.add(candidate.key)
