"""Pydantic schemas for plugctl documents.

This module defines the data models for:
- cache/index.json (cache index)
- registry.json (installed plugin registry)
- plugin.json (plugin manifest shipped inside each artifact)
- marketplace.json (local artifact source index)
- config.yaml (settings)
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# =============================================================================
# Common Types
# =============================================================================

PlatformOS = Literal["windows", "linux", "macos", "unix"]
LifecycleHook = Literal["install", "uninstall"]

CACHE_INDEX_VERSION = "1.0"
REGISTRY_VERSION = "1.0"
MAX_EVICTION_LOG = 100


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base for persisted documents, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        """Dump to a JSON-ready dict using camelCase aliases."""
        return self.model_dump(mode="json", by_alias=True)


class EvictionReason(str, Enum):
    """Why an entry left the cache, or was recorded as protected."""

    SIZE_LIMIT = "SIZE_LIMIT"
    VERSION_LIMIT = "VERSION_LIMIT"
    PIN_PROTECTED = "PIN_PROTECTED"
    MANUAL_CLEANUP = "MANUAL_CLEANUP"
    ORPHANED_TEMP = "ORPHANED_TEMP"
    CORRUPTION = "CORRUPTION"


class InstallState(str, Enum):
    """Lifecycle state of an installed plugin."""

    STAGING = "STAGING"
    INSTALLED = "INSTALLED"
    FAILED = "FAILED"
    UNINSTALLING = "UNINSTALLING"
    DISABLED = "DISABLED"


# =============================================================================
# Cache Index Models
# =============================================================================


class CacheEntry(CamelModel):
    """One cached artifact set, keyed by (plugin_id, version)."""

    plugin_id: str
    version: str
    cache_path: str
    size_bytes: int = Field(ge=0)
    last_access_time: datetime = Field(default_factory=utc_now)
    pinned: bool = False
    is_current_version: bool = False
    checksum: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.plugin_id, self.version)


class EvictionLogEntry(CamelModel):
    """A record in the cache index's eviction log."""

    plugin_id: str
    version: str
    reason: EvictionReason
    bytes_freed: int = 0
    evicted_at: datetime = Field(default_factory=utc_now)
    was_pinned: bool = False


class CacheIndex(CamelModel):
    """The cache/index.json document."""

    version: str = CACHE_INDEX_VERSION
    last_updated: datetime = Field(default_factory=utc_now)
    total_size_bytes: int = 0
    entries: dict[str, list[CacheEntry]] = Field(default_factory=dict)
    eviction_log: list[EvictionLogEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_entries(self) -> "CacheIndex":
        """Reject duplicate versions and multiple current versions per plugin."""
        for plugin_id, entries in self.entries.items():
            versions = [e.version for e in entries]
            if len(versions) != len(set(versions)):
                raise ValueError(f"Duplicate cache entries for plugin '{plugin_id}'")
            if sum(1 for e in entries if e.is_current_version) > 1:
                raise ValueError(f"Plugin '{plugin_id}' has more than one current version")
            for entry in entries:
                if entry.plugin_id != plugin_id:
                    raise ValueError(
                        f"Entry {entry.plugin_id}@{entry.version} filed under '{plugin_id}'"
                    )
        return self

    def iter_entries(self) -> list[CacheEntry]:
        """All entries, ordered by plugin id then insertion order."""
        return [entry for plugin_id in sorted(self.entries) for entry in self.entries[plugin_id]]

    def get_entry(self, plugin_id: str, version: str) -> CacheEntry | None:
        for entry in self.entries.get(plugin_id, []):
            if entry.version == version:
                return entry
        return None

    def upsert(self, entry: CacheEntry) -> None:
        entries = self.entries.setdefault(entry.plugin_id, [])
        for i, existing in enumerate(entries):
            if existing.version == entry.version:
                entries[i] = entry
                return
        entries.append(entry)

    def remove(self, plugin_id: str, version: str) -> CacheEntry | None:
        entries = self.entries.get(plugin_id, [])
        for i, existing in enumerate(entries):
            if existing.version == version:
                removed = entries.pop(i)
                if not entries:
                    del self.entries[plugin_id]
                return removed
        return None

    def recompute_total(self) -> int:
        self.total_size_bytes = sum(e.size_bytes for e in self.iter_entries())
        return self.total_size_bytes

    def append_log(self, entry: EvictionLogEntry) -> None:
        """Append to the eviction log, keeping only the newest records."""
        self.eviction_log.append(entry)
        if len(self.eviction_log) > MAX_EVICTION_LOG:
            del self.eviction_log[: len(self.eviction_log) - MAX_EVICTION_LOG]


# =============================================================================
# Registry Models
# =============================================================================


class LifecycleConsentRef(CamelModel):
    """Record that a lifecycle script with a given digest was approved."""

    hook: LifecycleHook
    digest: str
    consented_at: datetime = Field(default_factory=utc_now)


class ErrorDetails(CamelModel):
    code: str
    message: str
    failed_phase: str | None = None


class InstalledPlugin(CamelModel):
    """One row of the installed plugin registry."""

    plugin_id: str
    version: str
    source: str
    install_state: InstallState = InstallState.STAGING
    installed_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime | None = None
    cache_path: str
    symlink_target: str | None = None
    transaction_id: str
    pinned: bool = False
    telemetry_ref: str | None = None
    lifecycle_consents: list[LifecycleConsentRef] = Field(default_factory=list)
    error_details: ErrorDetails | None = None

    @field_validator("plugin_id")
    @classmethod
    def validate_plugin_id(cls, v: str) -> str:
        """Plugin ids become directory names, so path separators are rejected."""
        if not v or "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError(f"Invalid plugin id: {v!r}")
        return v


class TelemetrySnapshot(CamelModel):
    """Outcome of one transaction, kept in the registry for diagnostics."""

    transaction_id: str
    command_type: str
    plugin_id: str
    duration_ms: int = 0
    success: bool
    error_code: str | None = None
    captured_at: datetime = Field(default_factory=utc_now)
    context: dict[str, Any] = Field(default_factory=dict)


class RegistryMetadata(CamelModel):
    registry_version: str = REGISTRY_VERSION
    last_updated: datetime = Field(default_factory=utc_now)
    total_installations: int = 0
    checksum: str | None = None


class InstalledPluginRegistry(CamelModel):
    """The registry.json document."""

    metadata: RegistryMetadata = Field(default_factory=RegistryMetadata)
    plugins: list[InstalledPlugin] = Field(default_factory=list)
    active_pins: list[str] = Field(default_factory=list)
    telemetry: dict[str, TelemetrySnapshot] = Field(default_factory=dict)

    def get_plugin(self, plugin_id: str) -> InstalledPlugin | None:
        for plugin in self.plugins:
            if plugin.plugin_id == plugin_id:
                return plugin
        return None

    def sync_active_pins(self) -> None:
        """Rebuild active_pins from the per-plugin pinned flags."""
        self.active_pins = sorted(p.plugin_id for p in self.plugins if p.pinned)


# =============================================================================
# Plugin Manifest Models
# =============================================================================


class LifecycleSpec(BaseModel):
    """Relative paths to lifecycle scripts inside the artifact tree."""

    install: str | None = None
    uninstall: str | None = None


class CompatibilitySpec(BaseModel):
    """Host requirements declared by a plugin."""

    python: str | None = None
    platforms: list[PlatformOS] | None = None
    plugin_manager: str | None = Field(default=None, alias="pluginManager")

    model_config = {"populate_by_name": True}


class PluginManifest(BaseModel):
    """The plugin.json manifest shipped inside each artifact."""

    name: str
    version: str
    description: str = ""
    permissions: list[str] = Field(default_factory=list)
    lifecycle: LifecycleSpec | None = None
    compatibility: CompatibilitySpec | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or "/" in v or "\\" in v:
            raise ValueError(f"Invalid plugin name: {v!r}")
        return v


# =============================================================================
# Marketplace Models
# =============================================================================


class MarketplaceVersion(BaseModel):
    checksum: str | None = None
    path: str | None = None


class MarketplacePlugin(BaseModel):
    latest: str | None = None
    versions: dict[str, MarketplaceVersion] = Field(default_factory=dict)


class MarketplaceIndex(BaseModel):
    """Optional marketplace.json at the root of a local artifact source."""

    name: str = "local"
    plugins: dict[str, MarketplacePlugin] = Field(default_factory=dict)


# =============================================================================
# Settings Models
# =============================================================================


class FeatureFlags(BaseModel):
    enable_rollback: bool = True
    enable_lifecycle_hooks: bool = True
    enable_compatibility_checks: bool = True
    enable_cache_eviction: bool = True


class Settings(BaseModel):
    """Runtime settings.

    Directory fields are stored as given; ``load_settings`` resolves them
    against the project root.
    """

    plugin_dir: Path = Path(".claude-plugin")
    install_dir: Path = Path(".claude/plugins")
    source: str | None = None
    max_cache_size_mb: float = Field(default=500, gt=0)
    max_versions_per_plugin: int = Field(default=3, ge=1)
    telemetry_enabled: bool = False
    lifecycle_timeout_ms: int = Field(default=30_000, gt=0)
    lock_timeout_seconds: float = Field(default=10.0, gt=0)
    orphan_max_age_hours: float = Field(default=24, gt=0)
    max_workers: int = Field(default=4, ge=1)
    flags: FeatureFlags = Field(default_factory=FeatureFlags)

    @property
    def cache_dir(self) -> Path:
        return self.plugin_dir / "cache"

    @property
    def cache_index_path(self) -> Path:
        return self.cache_dir / "index.json"

    @property
    def registry_path(self) -> Path:
        return self.plugin_dir / "registry.json"

    @property
    def backups_dir(self) -> Path:
        return self.plugin_dir / "backups"

    @property
    def audit_dir(self) -> Path:
        return self.plugin_dir / "audit"

    @property
    def max_cache_size_bytes(self) -> int:
        return int(self.max_cache_size_mb * 1_000_000)

    @property
    def lifecycle_timeout_seconds(self) -> float:
        return self.lifecycle_timeout_ms / 1000
