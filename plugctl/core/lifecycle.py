"""Lifecycle script discovery, consent and time-bounded execution.

Plugins may ship install and uninstall scripts (declared under ``lifecycle``
in plugin.json). A script only runs after the operator approved its exact
sha256 digest, and always under a timeout; a timeout counts as a failure.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from pathlib import Path

from plugctl.config.schemas import LifecycleHook, PluginManifest
from plugctl.core.errors import LifecycleError
from plugctl.utils.filesystem import StorageAdapter

logger = logging.getLogger(__name__)

MAX_PREVIEW_CHARS = 4000
STDERR_TAIL_CHARS = 2000


@dataclass
class LifecycleScript:
    """A lifecycle script located inside an artifact tree."""

    hook: LifecycleHook
    path: Path
    relative_path: str
    digest: str
    preview: str
    size_bytes: int

    @property
    def truncated(self) -> bool:
        return self.size_bytes > len(self.preview.encode("utf-8"))


@dataclass
class LifecycleExecution:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int


def load_lifecycle_script(
    root: Path,
    manifest: PluginManifest,
    hook: LifecycleHook,
    storage: StorageAdapter,
) -> LifecycleScript | None:
    """Locate and fingerprint the script a manifest declares for ``hook``.

    Args:
        root: Artifact directory the manifest belongs to
        manifest: Parsed plugin manifest
        hook: "install" or "uninstall"
        storage: Storage adapter used to read the script

    Returns:
        LifecycleScript, or None if the manifest declares no script for the hook

    Raises:
        LifecycleError: If the declared script escapes ``root`` or is missing
    """
    relative = getattr(manifest.lifecycle, hook, None) if manifest.lifecycle else None
    if not relative:
        return None

    base = root.resolve()
    path = (base / relative).resolve()
    if not path.is_relative_to(base):
        raise LifecycleError(
            f"{hook} script path escapes the plugin directory: {relative}",
            "LIFECYCLE_SCRIPT_INVALID",
            script=relative,
        )
    if not path.is_file():
        raise LifecycleError(
            f"{hook} script declared but not found: {relative}",
            "LIFECYCLE_SCRIPT_MISSING",
            script=relative,
        )

    content = storage.read_text(path)
    return LifecycleScript(
        hook=hook,
        path=path,
        relative_path=relative,
        digest=storage.file_digest(path),
        preview=content[:MAX_PREVIEW_CHARS],
        size_bytes=len(content.encode("utf-8")),
    )


def require_consent(script: LifecycleScript, approved_digests: Collection[str]) -> None:
    """Ensure the operator approved this exact script.

    Raises:
        LifecycleError: LIFECYCLE_CONSENT_REQUIRED if the digest is not approved
    """
    approved = {d.removeprefix("sha256:").lower() for d in approved_digests}
    if script.digest not in approved:
        raise LifecycleError(
            f"{script.hook} script {script.relative_path} requires consent "
            f"(sha256:{script.digest})",
            "LIFECYCLE_CONSENT_REQUIRED",
            {"digest": script.digest, "preview": script.preview, "hook": script.hook},
            script=script.relative_path,
        )


class LifecycleRunner:
    """Runs lifecycle scripts in a subprocess with a timeout."""

    def __init__(self, timeout_seconds: float, extra_env: Mapping[str, str] | None = None):
        self.timeout_seconds = timeout_seconds
        self.extra_env = dict(extra_env or {})

    def command_for(self, script: LifecycleScript) -> list[str]:
        suffix = script.path.suffix.lower()
        if suffix == ".py":
            return [sys.executable, str(script.path)]
        if suffix in (".js", ".mjs", ".cjs"):
            return ["node", str(script.path)]
        if suffix == ".ps1":
            return ["powershell", "-File", str(script.path)]
        return ["sh", str(script.path)]

    def run(
        self, script: LifecycleScript, cwd: Path, plugin_id: str, version: str
    ) -> LifecycleExecution:
        """Execute a script and wait for it.

        Args:
            script: Script to run
            cwd: Working directory (the plugin's artifact tree)
            plugin_id: Exposed as PLUGCTL_PLUGIN_ID
            version: Exposed as PLUGCTL_PLUGIN_VERSION

        Returns:
            LifecycleExecution for a zero exit status

        Raises:
            LifecycleError: LIFECYCLE_TIMEOUT when the timeout elapses,
                LIFECYCLE_SCRIPT_FAILED on a non-zero exit or spawn failure
        """
        cmd = self.command_for(script)
        env = {
            **os.environ,
            **self.extra_env,
            "PLUGCTL_PLUGIN_ID": plugin_id,
            "PLUGCTL_PLUGIN_VERSION": version,
            "PLUGCTL_LIFECYCLE_HOOK": script.hook,
        }
        logger.info("Running %s script for %s@%s: %s", script.hook, plugin_id, version, cmd)
        started = time.monotonic()
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            logger.error("%s script timed out after %.1fs", script.hook, self.timeout_seconds)
            raise LifecycleError(
                f"{script.hook} script timed out after {self.timeout_seconds:g}s",
                "LIFECYCLE_TIMEOUT",
                {"timeoutSeconds": self.timeout_seconds},
                script=script.relative_path,
            ) from e
        except OSError as e:
            raise LifecycleError(
                f"Could not start {script.hook} script: {e}",
                details={"command": cmd},
                script=script.relative_path,
            ) from e

        duration_ms = int((time.monotonic() - started) * 1000)
        if result.returncode != 0:
            logger.error(
                "%s script exited with %d: %s",
                script.hook,
                result.returncode,
                result.stderr.strip(),
            )
            raise LifecycleError(
                f"{script.hook} script exited with status {result.returncode}",
                details={
                    "exitCode": result.returncode,
                    "stderr": result.stderr[-STDERR_TAIL_CHARS:],
                },
                script=script.relative_path,
            )

        logger.debug("%s script finished in %dms", script.hook, duration_ms)
        return LifecycleExecution(result.returncode, result.stdout, result.stderr, duration_ms)
