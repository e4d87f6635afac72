"""Local file system artifact source."""

from __future__ import annotations

import logging
import re
import tarfile
from pathlib import Path
from urllib.parse import urlparse

from plugctl.config.parser import ConfigError, load_marketplace_index
from plugctl.config.schemas import MarketplaceIndex, MarketplacePlugin
from plugctl.core.errors import PlugctlError, StagingError
from plugctl.sources.base import ArtifactSource, ResolvedArtifact, SourcePluginInfo
from plugctl.utils.filesystem import StorageAdapter
from plugctl.utils.version import find_best_version, sort_versions

logger = logging.getLogger(__name__)

TARBALL_PATTERN = re.compile(
    r"^(?P<plugin_id>.+?)-(?P<version>\d+(?:\.\d+)*(?:-[0-9A-Za-z.]+)?)\.tar\.gz$"
)


class LocalSourceError(StagingError):
    """Error reading from a local artifact source."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message, "SOURCE_ERROR", {"path": path} if path else None)


class LocalArtifactSource(ArtifactSource):
    """Artifact source backed by a local marketplace directory.

    Layout::

        <root>/marketplace.json                  optional version/checksum index
        <root>/<plugin_id>/<version>/            unpacked artifact tree
        <root>/<plugin_id>-<version>.tar.gz      packed artifact tree

    URL format:
    - file:///path/to/marketplace
    - file:../relative/path
    - a plain path
    """

    def __init__(self, url: str | Path, storage: StorageAdapter | None = None):
        """Initialize the local source.

        Args:
            url: Local file URL (file:// or file:) or a path
            storage: Storage adapter used to copy and extract artifacts
        """
        self._url = str(url)
        self._path = self._parse_url(self._url)
        self.storage = storage or StorageAdapter()

        logger.info("Initializing local artifact source for %s", self._path)

    def _parse_url(self, url: str) -> Path:
        """Parse a file URL to a Path."""
        if url.startswith("file://"):
            return Path(urlparse(url).path)
        elif url.startswith("file:"):
            return Path(url[5:]).resolve()
        else:
            return Path(url).resolve()

    @property
    def protocol(self) -> str:
        return "file"

    @property
    def path(self) -> Path:
        """Get the local path this source points to."""
        return self._path

    def describe(self) -> str:
        return f"file://{self._path}"

    def _marketplace(self) -> MarketplaceIndex | None:
        """Load marketplace.json.

        Raises:
            LocalSourceError: If marketplace.json exists but is invalid
        """
        try:
            return load_marketplace_index(self._path)
        except ConfigError as e:
            raise LocalSourceError(str(e), path=str(e.path or self._path)) from e

    def _scan_versions(self, plugin_id: str) -> list[str]:
        """Find versions on disk, from version directories and tarballs."""
        versions = set()
        plugin_dir = self._path / plugin_id
        if plugin_dir.is_dir():
            for child in self.storage.list_directory(plugin_dir):
                if child.is_dir() and not child.name.startswith("."):
                    versions.add(child.name)
        for child in self.storage.list_directory(self._path):
            match = TARBALL_PATTERN.match(child.name)
            if match and match.group("plugin_id") == plugin_id and child.is_file():
                versions.add(match.group("version"))
        return sort_versions(versions)

    def _locate(
        self, plugin_id: str, version: str, listing: MarketplacePlugin | None = None
    ) -> Path | None:
        if listing is not None:
            entry = listing.versions.get(version)
            if entry is not None and entry.path:
                candidate = self._path / entry.path
                return candidate if candidate.exists() else None

        version_dir = self._path / plugin_id / version
        if version_dir.is_dir():
            return version_dir
        tarball = self._path / f"{plugin_id}-{version}.tar.gz"
        if tarball.is_file():
            return tarball
        return None

    def get_plugin_info(self, plugin_id: str) -> SourcePluginInfo | None:
        """Get plugin info from marketplace.json, falling back to the directory layout.

        Raises:
            LocalSourceError: If marketplace.json cannot be read or parsed
        """
        logger.debug("Getting plugin info for '%s' from %s", plugin_id, self._path)
        index = self._marketplace()
        listing = index.plugins.get(plugin_id) if index else None

        if listing is not None and listing.versions:
            versions = sort_versions(listing.versions)
            latest = listing.latest or versions[-1]
        else:
            versions = self._scan_versions(plugin_id)
            if not versions:
                return None
            latest = versions[-1]

        return SourcePluginInfo(plugin_id=plugin_id, versions=versions, latest=latest)

    def resolve(self, plugin_id: str, version_spec: str = "latest") -> ResolvedArtifact | None:
        """Resolve a plugin to a directory or tarball in the source.

        Args:
            plugin_id: Plugin identifier
            version_spec: Version specifier ('latest', exact, or semver range)

        Returns:
            ResolvedArtifact with local path, or None if plugin/version not found

        Raises:
            LocalSourceError: If there's an error reading the source
        """
        logger.info("Resolving plugin '%s' version '%s' from local", plugin_id, version_spec)
        info = self.get_plugin_info(plugin_id)
        if info is None:
            logger.warning("Plugin '%s' not found in %s", plugin_id, self._path)
            return None

        resolved_version: str | None
        if version_spec == "latest":
            resolved_version = info.latest
        elif version_spec in info.versions:
            resolved_version = version_spec
        else:
            try:
                resolved_version = find_best_version(version_spec, info.versions)
            except ValueError:
                resolved_version = None

        if resolved_version is None:
            logger.warning("Version '%s' not found for plugin '%s'", version_spec, plugin_id)
            return None

        index = self._marketplace()
        listing = index.plugins.get(plugin_id) if index else None
        local_path = self._locate(plugin_id, resolved_version, listing)
        if local_path is None:
            logger.warning(
                "Artifacts for %s@%s not found in %s", plugin_id, resolved_version, self._path
            )
            return None

        checksum = None
        if listing is not None and resolved_version in listing.versions:
            checksum = listing.versions[resolved_version].checksum

        logger.info(
            "Resolved plugin '%s' to version %s at %s", plugin_id, resolved_version, local_path
        )
        return ResolvedArtifact(
            plugin_id=plugin_id,
            version=resolved_version,
            source_uri=f"file://{local_path}",
            local_path=local_path,
            checksum=checksum,
        )

    def fetch(self, resolved: ResolvedArtifact, dest_dir: Path) -> Path:
        """Copy or extract an artifact into ``dest_dir``.

        Raises:
            LocalSourceError: If the artifact is missing or has an unknown format
        """
        logger.info(
            "Fetching plugin '%s' v%s to %s", resolved.plugin_id, resolved.version, dest_dir
        )
        if resolved.local_path is None:
            raise LocalSourceError("Resolved artifact has no local path")

        local_path = resolved.local_path

        if local_path.is_dir():
            logger.debug("Copying directory from %s", local_path)
            result = self.storage.copy_directory(local_path, dest_dir / resolved.plugin_id)
        elif local_path.name.endswith(".tar.gz"):
            logger.debug("Extracting tarball from %s", local_path)
            try:
                result = self.storage.extract_tarball(local_path, dest_dir)
            except PlugctlError:
                raise
            except (ValueError, OSError, tarfile.TarError) as e:
                raise LocalSourceError(f"Cannot extract {local_path}: {e}", str(local_path)) from e
        else:
            logger.error("Unknown artifact format: %s", local_path)
            raise LocalSourceError(f"Unknown artifact format: {local_path}", str(local_path))

        logger.info("Plugin '%s' staged at %s", resolved.plugin_id, result)
        return result

    def list_plugins(self) -> list[str]:
        """List all plugin ids in the source.

        Raises:
            LocalSourceError: If marketplace.json cannot be read
        """
        plugin_ids = set()
        index = self._marketplace()
        if index is not None:
            plugin_ids.update(index.plugins)
        for child in self.storage.list_directory(self._path):
            if child.is_dir() and not child.name.startswith("."):
                plugin_ids.add(child.name)
                continue
            match = TARBALL_PATTERN.match(child.name)
            if match:
                plugin_ids.add(match.group("plugin_id"))
        return sorted(plugin_ids)


def create_artifact_source(url: str, storage: StorageAdapter | None = None) -> ArtifactSource:
    """Create an artifact source for the given URL.

    Args:
        url: Source URL (file://, file:, or a local path)
        storage: Storage adapter passed to the source

    Returns:
        ArtifactSource instance

    Raises:
        LocalSourceError: If the protocol is not supported
    """
    logger.debug("Creating artifact source for URL: %s", url)
    protocol = urlparse(url).scheme.lower()
    if url.startswith("file:") or protocol == "" or (len(url) > 2 and url[1] == ":"):
        return LocalArtifactSource(url, storage)
    logger.error("Unsupported protocol: %s in URL %s", protocol, url)
    raise LocalSourceError(f"Unsupported source protocol: {protocol} (in {url})")
