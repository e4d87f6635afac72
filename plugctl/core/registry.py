"""Durable record of installed plugins (registry.json)."""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import ValidationError as PydanticValidationError

from plugctl.config.schemas import (
    InstalledPlugin,
    InstalledPluginRegistry,
    InstallState,
    Settings,
    TelemetrySnapshot,
    utc_now,
)
from plugctl.core.errors import (
    ConflictError,
    CorruptionError,
    NotFoundError,
    OperationResult,
    PlugctlError,
    ValidationError,
)
from plugctl.utils.filesystem import StorageAdapter
from plugctl.utils.locking import FileLock

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields that identify a record and may not be changed through update_plugin
IMMUTABLE_FIELDS = frozenset({"plugin_id"})


@dataclass
class RegistryUpdateOptions:
    """Options shared by registry mutations."""

    transaction_id: str | None = None
    create_backup: bool = False
    validate_after_update: bool = False
    telemetry: TelemetrySnapshot | None = None


@dataclass
class RegistryBackup:
    path: Path
    created_at: datetime
    reason: str
    plugin_count: int


@dataclass
class RegistryStats:
    total_plugins: int
    total_installations: int
    pinned_count: int
    by_state: dict[str, int] = field(default_factory=dict)
    oldest_install: datetime | None = None
    newest_install: datetime | None = None


def compute_registry_checksum(registry: InstalledPluginRegistry) -> str:
    """Compute the checksum stored in ``metadata.checksum``.

    Covers the plugin records and pins, not the metadata or telemetry.
    """
    payload = {
        "plugins": [p.to_document() for p in registry.plugins],
        "activePins": sorted(registry.active_pins),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def find_violations(registry: InstalledPluginRegistry, check_checksum: bool = True) -> list[str]:
    """Check a registry's internal invariants.

    Returns:
        Human-readable violations; empty when the registry is consistent
    """
    violations: list[str] = []

    seen: set[str] = set()
    for plugin in registry.plugins:
        if plugin.plugin_id in seen:
            violations.append(f"Duplicate plugin entry: {plugin.plugin_id}")
        seen.add(plugin.plugin_id)
        if plugin.install_state == InstallState.INSTALLED and not plugin.cache_path:
            violations.append(f"Installed plugin {plugin.plugin_id} has no cache path")

    pinned = {p.plugin_id for p in registry.plugins if p.pinned}
    active = set(registry.active_pins)
    if len(active) != len(registry.active_pins):
        violations.append("activePins contains duplicates")
    for plugin_id in sorted(active - seen):
        violations.append(f"activePins references unknown plugin: {plugin_id}")
    for plugin_id in sorted((active & seen) - pinned):
        violations.append(f"Plugin {plugin_id} is in activePins but not marked pinned")
    for plugin_id in sorted(pinned - active):
        violations.append(f"Plugin {plugin_id} is marked pinned but missing from activePins")

    if check_checksum and registry.metadata.checksum is not None:
        if compute_registry_checksum(registry) != registry.metadata.checksum:
            violations.append("Registry checksum does not match its contents")

    return violations


def _not_installed(plugin_id: str) -> NotFoundError:
    return NotFoundError(f"Plugin {plugin_id} is not installed", details={"pluginId": plugin_id})


class RegistryService:
    """Reads and atomically rewrites the installed plugin registry.

    Every mutation reloads the document under the registry lock, applies the
    change in memory and writes the whole file back via temp-file-and-rename.
    """

    def __init__(
        self,
        registry_path: Path,
        storage: StorageAdapter,
        backups_dir: Path | None = None,
        lock_timeout: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the registry service.

        Args:
            registry_path: Path to registry.json
            storage: Storage adapter for all filesystem access
            backups_dir: Where backups are written (default: ``<dir>/backups``)
            lock_timeout: Seconds to wait for the registry lock
            clock: Source of "now" for timestamps
        """
        self.registry_path = registry_path
        self.storage = storage
        self.backups_dir = backups_dir or registry_path.parent / "backups"
        self.clock = clock
        self._lock = FileLock(registry_path, timeout=lock_timeout)

    @classmethod
    def from_settings(
        cls, settings: Settings, storage: StorageAdapter, clock: Callable[[], datetime] = utc_now
    ) -> RegistryService:
        return cls(
            registry_path=settings.registry_path,
            storage=storage,
            backups_dir=settings.backups_dir,
            lock_timeout=settings.lock_timeout_seconds,
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Loading and saving
    # -------------------------------------------------------------------------

    def _parse(self, data: Any, path: Path) -> InstalledPluginRegistry:
        try:
            return InstalledPluginRegistry.model_validate(data)
        except PydanticValidationError as e:
            raise CorruptionError(
                f"Invalid registry document {path}: {e}", "REGISTRY_CORRUPTED", {"path": str(path)}
            ) from e

    def load_registry(self) -> InstalledPluginRegistry:
        """Load the registry, returning an empty default if the file is missing.

        Raises:
            CorruptionError: If the file is not valid JSON or fails the schema
        """
        try:
            data = self.storage.read_json(self.registry_path)
        except CorruptionError as e:
            raise CorruptionError(e.message, "REGISTRY_CORRUPTED", e.details) from e
        if data is None:
            return InstalledPluginRegistry()
        return self._parse(data, self.registry_path)

    def _write(self, registry: InstalledPluginRegistry) -> None:
        registry.metadata.last_updated = self.clock()
        registry.metadata.checksum = compute_registry_checksum(registry)
        self.storage.write_json_atomic(self.registry_path, registry.to_document())

    def _mutate(
        self,
        operation: str,
        apply: Callable[[InstalledPluginRegistry], tuple[T, bool]],
        options: RegistryUpdateOptions | None = None,
        backup_reason: str | None = None,
    ) -> OperationResult[T]:
        """Run one read-modify-write cycle.

        ``apply`` returns the operation's value and whether the registry
        changed; unchanged registries are not written.
        """
        options = options or RegistryUpdateOptions()
        try:
            with self._lock:
                registry = self.load_registry()
                snapshot = registry.model_copy(deep=True) if options.create_backup else None
                value, changed = apply(registry)
                if changed or options.telemetry is not None:
                    if snapshot is not None and self.storage.exists(self.registry_path):
                        self._backup(snapshot, backup_reason or operation)
                    if options.telemetry is not None:
                        registry.telemetry[options.telemetry.transaction_id] = options.telemetry
                    self._write(registry)
                    logger.debug(
                        "Registry %s committed (tx=%s)", operation, options.transaction_id
                    )
                if options.validate_after_update:
                    violations = self.validate_registry()
                    if violations:
                        raise ValidationError(
                            f"Registry validation failed after {operation}",
                            details={"violations": violations},
                        )
        except PlugctlError as e:
            logger.error("Registry %s failed: %s", operation, e.message)
            return OperationResult.fail(e)
        return OperationResult.ok(value)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_plugin(self, plugin_id: str) -> InstalledPlugin | None:
        return self.load_registry().get_plugin(plugin_id)

    def list_plugins(self) -> list[InstalledPlugin]:
        return sorted(self.load_registry().plugins, key=lambda p: p.plugin_id)

    def query_plugins(
        self,
        install_state: InstallState | None = None,
        pinned: bool | None = None,
        plugin_ids: Collection[str] | None = None,
    ) -> list[InstalledPlugin]:
        """Filter installed plugins; None filters match everything."""
        results = []
        for plugin in self.list_plugins():
            if install_state is not None and plugin.install_state != install_state:
                continue
            if pinned is not None and plugin.pinned != pinned:
                continue
            if plugin_ids is not None and plugin.plugin_id not in plugin_ids:
                continue
            results.append(plugin)
        return results

    def get_stats(self) -> RegistryStats:
        registry = self.load_registry()
        by_state: dict[str, int] = {}
        for plugin in registry.plugins:
            by_state[plugin.install_state.value] = by_state.get(plugin.install_state.value, 0) + 1
        install_dates = [p.installed_at for p in registry.plugins]
        return RegistryStats(
            total_plugins=len(registry.plugins),
            total_installations=registry.metadata.total_installations,
            pinned_count=len(registry.active_pins),
            by_state=by_state,
            oldest_install=min(install_dates) if install_dates else None,
            newest_install=max(install_dates) if install_dates else None,
        )

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def add_plugin(
        self, plugin: InstalledPlugin, options: RegistryUpdateOptions | None = None
    ) -> OperationResult[InstalledPlugin]:
        """Add a new plugin record.

        Fails with PLUGIN_EXISTS if the plugin is already registered.
        """

        def _add(registry: InstalledPluginRegistry) -> tuple[InstalledPlugin, bool]:
            if registry.get_plugin(plugin.plugin_id) is not None:
                raise ConflictError(
                    f"Plugin {plugin.plugin_id} is already registered",
                    "PLUGIN_EXISTS",
                    {"pluginId": plugin.plugin_id},
                )
            registry.plugins.append(plugin)
            registry.metadata.total_installations += 1
            registry.sync_active_pins()
            return plugin, True

        result = self._mutate("add", _add, options, f"Before adding plugin {plugin.plugin_id}")
        if result.success:
            logger.info("Registered %s@%s", plugin.plugin_id, plugin.version)
        return result

    def update_plugin(
        self,
        plugin_id: str,
        updates: dict[str, Any],
        options: RegistryUpdateOptions | None = None,
    ) -> OperationResult[InstalledPlugin]:
        """Apply field updates to an existing plugin record.

        Args:
            plugin_id: Plugin to update
            updates: Field names (snake_case) mapped to new values
            options: Mutation options

        Returns:
            Result carrying the updated record; fails with PLUGIN_NOT_FOUND
        """
        unknown = set(updates) - set(InstalledPlugin.model_fields)
        bad = IMMUTABLE_FIELDS.intersection(updates) | unknown
        if bad:
            return OperationResult.fail(
                ValidationError(f"Cannot update fields: {', '.join(sorted(bad))}")
            )

        def _update(registry: InstalledPluginRegistry) -> tuple[InstalledPlugin, bool]:
            current = registry.get_plugin(plugin_id)
            if current is None:
                raise _not_installed(plugin_id)
            data = current.model_dump()
            data.update(updates)
            data["updated_at"] = self.clock()
            try:
                updated = InstalledPlugin.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid update for {plugin_id}: {e}") from e
            registry.plugins[registry.plugins.index(current)] = updated
            registry.sync_active_pins()
            return updated, True

        return self._mutate("update", _update, options, f"Before updating plugin {plugin_id}")

    def replace_plugin(
        self, plugin: InstalledPlugin, options: RegistryUpdateOptions | None = None
    ) -> OperationResult[InstalledPlugin]:
        """Overwrite a plugin record wholesale, used to restore a prior state."""

        def _replace(registry: InstalledPluginRegistry) -> tuple[InstalledPlugin, bool]:
            current = registry.get_plugin(plugin.plugin_id)
            if current is None:
                registry.plugins.append(plugin)
            else:
                registry.plugins[registry.plugins.index(current)] = plugin
            registry.sync_active_pins()
            return plugin, True

        return self._mutate("replace", _replace, options)

    def remove_plugin(
        self, plugin_id: str, options: RegistryUpdateOptions | None = None
    ) -> OperationResult[InstalledPlugin]:
        """Remove a plugin record (and its pin).

        Fails with PLUGIN_NOT_FOUND if the plugin is not registered.
        """

        def _remove(registry: InstalledPluginRegistry) -> tuple[InstalledPlugin, bool]:
            current = registry.get_plugin(plugin_id)
            if current is None:
                raise _not_installed(plugin_id)
            registry.plugins.remove(current)
            registry.active_pins = [p for p in registry.active_pins if p != plugin_id]
            return current, True

        result = self._mutate("remove", _remove, options, f"Before removing plugin {plugin_id}")
        if result.success:
            logger.info("Unregistered %s", plugin_id)
        return result

    def pin_plugin(
        self, plugin_id: str, options: RegistryUpdateOptions | None = None
    ) -> OperationResult[bool]:
        """Pin a plugin; the result's data is True if the registry changed.

        The pinned flag and ``activePins`` are written together.
        """

        def _pin(registry: InstalledPluginRegistry) -> tuple[bool, bool]:
            plugin = registry.get_plugin(plugin_id)
            if plugin is None:
                raise _not_installed(plugin_id)
            if plugin.pinned and plugin_id in registry.active_pins:
                return False, False
            plugin.pinned = True
            registry.sync_active_pins()
            return True, True

        return self._mutate("pin", _pin, options)

    def unpin_plugin(
        self, plugin_id: str, options: RegistryUpdateOptions | None = None
    ) -> OperationResult[bool]:
        """Unpin a plugin; unknown plugins are a successful no-op."""

        def _unpin(registry: InstalledPluginRegistry) -> tuple[bool, bool]:
            plugin = registry.get_plugin(plugin_id)
            if plugin is None:
                if plugin_id in registry.active_pins:
                    registry.sync_active_pins()
                    return True, True
                return False, False
            if not plugin.pinned and plugin_id not in registry.active_pins:
                return False, False
            plugin.pinned = False
            registry.sync_active_pins()
            return True, True

        return self._mutate("unpin", _unpin, options)

    def record_telemetry(self, snapshot: TelemetrySnapshot) -> OperationResult[TelemetrySnapshot]:
        return self._mutate(
            "telemetry",
            lambda registry: (snapshot, False),
            RegistryUpdateOptions(transaction_id=snapshot.transaction_id, telemetry=snapshot),
        )

    # -------------------------------------------------------------------------
    # Validation and recovery
    # -------------------------------------------------------------------------

    def validate_registry(self) -> list[str]:
        """Check schema, checksum and pin consistency without raising.

        Returns:
            List of violations; empty when the registry is healthy
        """
        try:
            data = self.storage.read_json(self.registry_path)
        except PlugctlError as e:
            return [f"Registry unreadable: {e.message}"]
        if data is None:
            return []
        try:
            registry = InstalledPluginRegistry.model_validate(data)
        except PydanticValidationError as e:
            return [f"Schema: {err['loc']}: {err['msg']}" for err in e.errors()]
        return find_violations(registry)

    def _backup(self, registry_snapshot: InstalledPluginRegistry, reason: str) -> RegistryBackup:
        created_at = self.clock()
        path = self.backups_dir / f"registry-{created_at.strftime('%Y%m%dT%H%M%S%f')}.json"
        self.storage.write_json_atomic(path, registry_snapshot.to_document())
        logger.info("Registry backup written to %s (%s)", path, reason)
        return RegistryBackup(path, created_at, reason, len(registry_snapshot.plugins))

    def create_backup(self, reason: str) -> OperationResult[RegistryBackup]:
        """Snapshot the current registry to ``backups/registry-<timestamp>.json``."""
        try:
            with self._lock:
                backup = self._backup(self.load_registry(), reason)
        except PlugctlError as e:
            return OperationResult.fail(e)
        return OperationResult.ok(backup)

    def list_backups(self) -> list[Path]:
        return [
            p
            for p in self.storage.list_directory(self.backups_dir)
            if p.name.startswith("registry-") and p.suffix == ".json"
        ]

    def restore_from_backup(self, backup_path: Path) -> OperationResult[InstalledPluginRegistry]:
        """Replace the registry with a validated backup.

        The current registry is itself backed up first.

        Returns:
            Result carrying the restored registry; fails with PLUGIN_NOT_FOUND
            for a missing backup or VALIDATION_FAILED for an inconsistent one
        """
        try:
            data = self.storage.read_json(backup_path)
            if data is None:
                raise NotFoundError(f"Backup not found: {backup_path}", "BACKUP_NOT_FOUND")
            restored = self._parse(data, backup_path)
            violations = find_violations(restored)
            if violations:
                raise ValidationError(
                    f"Backup {backup_path} failed validation", details={"violations": violations}
                )
            with self._lock:
                if self.storage.exists(self.registry_path):
                    self._backup(self.load_registry(), "pre-restore")
                self._write(restored)
        except PlugctlError as e:
            logger.error("Restore from %s failed: %s", backup_path, e.message)
            return OperationResult.fail(e)
        logger.info("Registry restored from %s", backup_path)
        return OperationResult.ok(restored)
