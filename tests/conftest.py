"""Shared fixtures for plugctl tests."""

import json
import shutil
import tempfile
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from plugctl.config.parser import load_settings
from plugctl.config.schemas import InstalledPlugin, InstallState, Settings
from plugctl.core.cache import CacheService
from plugctl.core.orchestrator import InstallOrchestrator
from plugctl.core.pins import PinService
from plugctl.core.registry import RegistryService
from plugctl.sources.local import LocalArtifactSource
from plugctl.utils.filesystem import StorageAdapter


class FakeClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class Marketplace:
    """Builds a local artifact source on disk."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def add(
        self,
        plugin_id: str,
        version: str,
        files: dict[str, str] | None = None,
        permissions: list[str] | None = None,
        lifecycle: dict[str, str] | None = None,
        compatibility: dict[str, Any] | None = None,
        name: str | None = None,
        manifest_version: str | None = None,
    ) -> Path:
        """Write ``<root>/<plugin_id>/<version>/`` with a plugin.json manifest."""
        version_dir = self.root / plugin_id / version
        manifest: dict[str, Any] = {
            "name": name or plugin_id,
            "version": manifest_version or version,
            "description": f"{plugin_id} test plugin",
            "permissions": permissions or [],
        }
        if lifecycle:
            manifest["lifecycle"] = lifecycle
        if compatibility:
            manifest["compatibility"] = compatibility
        write_tree(version_dir, files or {"README.md": f"# {plugin_id} {version}\n"})
        write_tree(version_dir, {".claude-plugin/plugin.json": json.dumps(manifest)})
        return version_dir


def write_tree(root: Path, files: dict[str, str]) -> Path:
    """Create files below ``root`` from a relative-path mapping."""
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory."""
    path = Path(tempfile.mkdtemp(prefix="plugctl_test_"))
    yield path
    if path.exists():
        shutil.rmtree(path)


@pytest.fixture
def project_dir(temp_dir: Path) -> Path:
    """Create a temporary project directory."""
    path = temp_dir / "project"
    path.mkdir()
    return path


@pytest.fixture
def settings(project_dir: Path) -> Settings:
    """Default settings rooted at the test project, ignoring the real environment."""
    return load_settings(project_dir, {"lock_timeout_seconds": 2}, environ={})


@pytest.fixture
def storage() -> StorageAdapter:
    return StorageAdapter()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(settings: Settings, storage: StorageAdapter, clock: FakeClock) -> CacheService:
    return CacheService.from_settings(settings, storage, clock)


@pytest.fixture
def registry(settings: Settings, storage: StorageAdapter, clock: FakeClock) -> RegistryService:
    return RegistryService.from_settings(settings, storage, clock)


@pytest.fixture
def pins(registry: RegistryService, cache: CacheService) -> PinService:
    return PinService(registry, cache)


@pytest.fixture
def marketplace(temp_dir: Path) -> Marketplace:
    """Empty local marketplace; tests add plugin versions as needed."""
    return Marketplace(temp_dir / "marketplace")


@pytest.fixture
def source(marketplace: Marketplace, storage: StorageAdapter) -> LocalArtifactSource:
    return LocalArtifactSource(str(marketplace.root), storage)


@pytest.fixture
def orchestrator(
    settings: Settings,
    storage: StorageAdapter,
    cache: CacheService,
    registry: RegistryService,
    source: LocalArtifactSource,
    clock: FakeClock,
) -> InstallOrchestrator:
    return InstallOrchestrator(settings, storage, cache, registry, source, clock=clock)


@pytest.fixture
def stage_dir(temp_dir: Path):
    """Factory creating a staged artifact tree outside the cache."""
    counter = {"n": 0}

    def _stage(files: dict[str, str] | None = None) -> Path:
        counter["n"] += 1
        return write_tree(temp_dir / "staged" / str(counter["n"]), files or {"a.txt": "a"})

    return _stage


@pytest.fixture
def make_record():
    """Factory for registry records."""

    def _make(plugin_id: str, version: str = "1.0.0", **overrides: Any) -> InstalledPlugin:
        data: dict[str, Any] = {
            "plugin_id": plugin_id,
            "version": version,
            "source": "file:///marketplace",
            "install_state": InstallState.INSTALLED,
            "cache_path": f"/cache/{plugin_id}/{version}",
            "transaction_id": "tx-1-abcdef01",
        }
        data.update(overrides)
        return InstalledPlugin(**data)

    return _make
