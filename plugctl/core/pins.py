"""Keeps registry pins and cache pins in agreement."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from plugctl.config.schemas import InstalledPlugin
from plugctl.core.cache import CacheService
from plugctl.core.errors import NotFoundError, OperationResult, PlugctlError
from plugctl.core.registry import RegistryService

logger = logging.getLogger(__name__)


@dataclass
class PinResult:
    plugin_id: str
    version: str | None
    pinned: bool
    was_no_op: bool


class PinService:
    """Pins and unpins plugins in both the registry and the cache.

    A pin protects the installed version's cache entry from eviction. The
    cache is changed first; if the registry write then fails, the cache
    change is undone so the two never disagree.
    """

    def __init__(self, registry: RegistryService, cache: CacheService):
        self.registry = registry
        self.cache = cache

    def pin(self, plugin_id: str) -> OperationResult[PinResult]:
        """Pin an installed plugin's active version.

        Returns:
            Result carrying a PinResult; fails with PLUGIN_NOT_FOUND for an
            unknown plugin or VERSION_NOT_CACHED when its version is not cached
        """
        try:
            plugin = self.registry.get_plugin(plugin_id)
        except PlugctlError as e:
            return OperationResult.fail(e)
        if plugin is None:
            return OperationResult.fail(
                NotFoundError(
                    f"Plugin {plugin_id} is not installed", details={"pluginId": plugin_id}
                )
            )

        cache_result = self.cache.pin_version(plugin_id, plugin.version)
        if not cache_result.success:
            return OperationResult.fail(cache_result.error)  # type: ignore[arg-type]

        registry_result = self.registry.pin_plugin(plugin_id)
        if not registry_result.success:
            if cache_result.data:
                self._undo(self.cache.unpin_version, plugin_id, plugin.version)
            return OperationResult.fail(registry_result.error)  # type: ignore[arg-type]

        was_no_op = not cache_result.data and not registry_result.data
        if not was_no_op:
            logger.info("Pinned %s@%s", plugin_id, plugin.version)
        return OperationResult.ok(PinResult(plugin_id, plugin.version, True, was_no_op))

    def unpin(self, plugin_id: str) -> OperationResult[PinResult]:
        """Unpin a plugin; unknown plugins succeed as a no-op."""
        try:
            plugin = self.registry.get_plugin(plugin_id)
        except PlugctlError as e:
            return OperationResult.fail(e)
        if plugin is None:
            registry_result = self.registry.unpin_plugin(plugin_id)
            if not registry_result.success:
                return OperationResult.fail(registry_result.error)  # type: ignore[arg-type]
            return OperationResult.ok(
                PinResult(plugin_id, None, False, was_no_op=not registry_result.data)
            )

        cache_changed = False
        if self.cache.get_entry(plugin_id, plugin.version) is not None:
            cache_result = self.cache.unpin_version(plugin_id, plugin.version)
            if not cache_result.success:
                return OperationResult.fail(cache_result.error)  # type: ignore[arg-type]
            cache_changed = bool(cache_result.data)

        registry_result = self.registry.unpin_plugin(plugin_id)
        if not registry_result.success:
            if cache_changed:
                self._undo(self.cache.pin_version, plugin_id, plugin.version)
            return OperationResult.fail(registry_result.error)  # type: ignore[arg-type]

        was_no_op = not cache_changed and not registry_result.data
        if not was_no_op:
            logger.info("Unpinned %s@%s", plugin_id, plugin.version)
        return OperationResult.ok(PinResult(plugin_id, plugin.version, False, was_no_op))

    def list_pins(self) -> list[InstalledPlugin]:
        return self.registry.query_plugins(pinned=True)

    def check_consistency(self) -> list[str]:
        """Return plugin ids whose registry pin disagrees with their cache entry."""
        mismatched = []
        for plugin in self.registry.list_plugins():
            entry = self.cache.get_entry(plugin.plugin_id, plugin.version)
            cache_pinned = entry.pinned if entry is not None else False
            if plugin.pinned != cache_pinned:
                mismatched.append(plugin.plugin_id)
        return mismatched

    @staticmethod
    def _undo(action, plugin_id: str, version: str) -> None:
        try:
            result = action(plugin_id, version)
        except PlugctlError as e:
            logger.error(
                "Could not restore cache pin for %s@%s: %s", plugin_id, version, e.message
            )
            return
        if not result.success:
            logger.error(
                "Could not restore cache pin for %s@%s: %s", plugin_id, version, result.error
            )
