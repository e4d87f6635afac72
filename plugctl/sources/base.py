"""Abstract base class for artifact sources."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


@dataclass
class SourcePluginInfo:
    """Information about a plugin available from a source."""

    plugin_id: str
    versions: list[str]
    latest: str


@dataclass
class ResolvedArtifact:
    """A plugin version resolved to a fetchable location."""

    plugin_id: str
    version: str
    source_uri: str
    local_path: Path | None = None
    checksum: str | None = None


class ArtifactSource(ABC):
    """Abstract base class for artifact sources.

    Sources resolve a plugin id and version specifier to a concrete version
    and copy that version's artifact tree into a staging directory.
    """

    @property
    @abstractmethod
    def protocol(self) -> str:
        """Get the protocol this source handles (e.g., "file")."""
        ...

    @abstractmethod
    def get_plugin_info(self, plugin_id: str) -> SourcePluginInfo | None:
        """Get information about a plugin.

        Args:
            plugin_id: Plugin identifier

        Returns:
            SourcePluginInfo if found, None otherwise
        """
        ...

    @abstractmethod
    def resolve(self, plugin_id: str, version_spec: str = "latest") -> ResolvedArtifact | None:
        """Resolve a plugin to a fetchable artifact.

        Args:
            plugin_id: Plugin identifier
            version_spec: "latest", an exact version or a semver range

        Returns:
            ResolvedArtifact if found, None otherwise
        """
        ...

    @abstractmethod
    def fetch(self, resolved: ResolvedArtifact, dest_dir: Path) -> Path:
        """Fetch an artifact into a local directory.

        Args:
            resolved: Resolved artifact
            dest_dir: Staging directory to fetch into

        Returns:
            Path to the artifact root (the directory holding plugin.json)
        """
        ...

    def list_plugins(self) -> list[str]:
        """List all plugin ids available from the source.

        Default implementation returns empty list.
        """
        return []

    def describe(self) -> str:
        return self.protocol
