"""Compatibility gate consumed before staging and after manifest validation.

Host fingerprinting lives outside plugctl; callers plug it in through the
:class:`CompatibilityChecker` protocol. The built-in checks only cover what a
manifest declares about the running interpreter, OS and plugctl version.
"""

from __future__ import annotations

import platform
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from plugctl import __version__
from plugctl.config.schemas import InstalledPluginRegistry, PluginManifest
from plugctl.utils.platform import get_os, platform_matches
from plugctl.utils.version import VersionRange, is_compatible


class CompatibilityStatus(str, Enum):
    COMPATIBLE = "compatible"
    WARN = "warn"
    BLOCK = "block"


@dataclass
class CompatibilityVerdict:
    """Outcome of a compatibility evaluation."""

    status: CompatibilityStatus = CompatibilityStatus.COMPATIBLE
    reasons: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.status == CompatibilityStatus.BLOCK

    @classmethod
    def compatible(cls) -> CompatibilityVerdict:
        return cls()

    @classmethod
    def block(cls, *reasons: str) -> CompatibilityVerdict:
        return cls(CompatibilityStatus.BLOCK, list(reasons))

    @classmethod
    def warn(cls, *reasons: str) -> CompatibilityVerdict:
        return cls(CompatibilityStatus.WARN, list(reasons))


class CompatibilityChecker(Protocol):
    """Evaluates whether a plugin version may be installed on this host."""

    def evaluate(
        self, plugin_id: str, version: str, registry: InstalledPluginRegistry
    ) -> CompatibilityVerdict: ...


class PermissiveCompatibilityChecker:
    """Default checker that allows every install."""

    def evaluate(
        self, plugin_id: str, version: str, registry: InstalledPluginRegistry
    ) -> CompatibilityVerdict:
        return CompatibilityVerdict.compatible()


def check_manifest_requirements(
    manifest: PluginManifest,
    python_version: str | None = None,
    host_os: str | None = None,
    manager_version: str = __version__,
) -> CompatibilityVerdict:
    """Check the host against the requirements a manifest declares.

    Args:
        manifest: Plugin manifest to check
        python_version: Interpreter version (defaults to the running one)
        host_os: Host OS name (defaults to the detected one)
        manager_version: plugctl version to check against

    Returns:
        BLOCK with one reason per unmet requirement, WARN for requirements
        that could not be parsed, COMPATIBLE otherwise
    """
    spec = manifest.compatibility
    if spec is None:
        return CompatibilityVerdict.compatible()

    python_version = python_version or platform.python_version()
    host_os = host_os or get_os()
    blocked: list[str] = []
    warnings: list[str] = []

    if spec.python:
        if not _range_parses(spec.python):
            warnings.append(f"Unparseable python requirement: {spec.python}")
        elif not is_compatible(spec.python, python_version):
            blocked.append(f"Requires Python {spec.python}, running {python_version}")

    if spec.platforms:
        if not platform_matches(host_os, spec.platforms):
            blocked.append(f"Supports {', '.join(spec.platforms)}, host is {host_os}")

    if spec.plugin_manager:
        if not _range_parses(spec.plugin_manager):
            warnings.append(f"Unparseable plugctl requirement: {spec.plugin_manager}")
        elif not is_compatible(spec.plugin_manager, manager_version):
            blocked.append(f"Requires plugctl {spec.plugin_manager}, running {manager_version}")

    if blocked:
        return CompatibilityVerdict(CompatibilityStatus.BLOCK, blocked + warnings)
    if warnings:
        return CompatibilityVerdict(CompatibilityStatus.WARN, warnings)
    return CompatibilityVerdict.compatible()


def _range_parses(spec: str) -> bool:
    try:
        VersionRange(spec)
    except ValueError:
        return False
    return True

