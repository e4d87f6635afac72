"""Install transaction orchestrator.

Install, update, rollback and uninstall run as a fixed sequence of named
phases. Each phase either completes or fails with a structured error; on
failure the effects of earlier phases are compensated so the registry, the
cache and the activation symlink stay consistent with each other.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from plugctl.config.parser import ConfigError, load_plugin_manifest
from plugctl.config.schemas import (
    CacheEntry,
    ErrorDetails,
    EvictionReason,
    InstallState,
    InstalledPlugin,
    LifecycleConsentRef,
    PluginManifest,
    Settings,
    TelemetrySnapshot,
    utc_now,
)
from plugctl.core.cache import CacheService
from plugctl.core.compatibility import (
    CompatibilityChecker,
    CompatibilityVerdict,
    PermissiveCompatibilityChecker,
    check_manifest_requirements,
)
from plugctl.core.errors import (
    CompatibilityBlockedError,
    ConflictError,
    IOFailureError,
    NotFoundError,
    OperationError,
    OperationResult,
    PlugctlError,
    StagingError,
    TransactionAbortedError,
    ValidationError,
)
from plugctl.core.lifecycle import (
    LifecycleRunner,
    LifecycleScript,
    load_lifecycle_script,
    require_consent,
)
from plugctl.core.registry import RegistryService
from plugctl.core.workspace import generate_transaction_id
from plugctl.sources.base import ArtifactSource, ResolvedArtifact
from plugctl.utils.filesystem import StorageAdapter
from plugctl.utils.version import VersionKey, highest_below

logger = logging.getLogger(__name__)

MessageLevel = Literal["info", "warning", "error"]


# =============================================================================
# Phases
# =============================================================================


class TransactionPhase(str, Enum):
    VALIDATE_COMPATIBILITY = "VALIDATE_COMPATIBILITY"
    STAGE_ARTIFACTS = "STAGE_ARTIFACTS"
    VALIDATE_MANIFEST = "VALIDATE_MANIFEST"
    LIFECYCLE_CONSENT = "LIFECYCLE_CONSENT"
    PROMOTE_AND_REGISTER = "PROMOTE_AND_REGISTER"
    ACTIVATE_SYMLINK = "ACTIVATE_SYMLINK"
    TELEMETRY_CLEANUP = "TELEMETRY_CLEANUP"
    VALIDATE_REGISTRY_ENTRY = "VALIDATE_REGISTRY_ENTRY"
    REMOVE_SYMLINK = "REMOVE_SYMLINK"
    REMOVE_REGISTRY_ENTRY = "REMOVE_REGISTRY_ENTRY"
    APPLY_CACHE_RETENTION = "APPLY_CACHE_RETENTION"
    TELEMETRY = "TELEMETRY"
    VALIDATE_ROLLBACK_TARGET = "VALIDATE_ROLLBACK_TARGET"
    UPDATE_REGISTRY = "UPDATE_REGISTRY"

    @property
    def code(self) -> str:
        """Error code reported when a failure carries no more specific code."""
        return PHASE_ERROR_CODES[self]


PHASE_ERROR_CODES: dict[TransactionPhase, str] = {
    TransactionPhase.VALIDATE_COMPATIBILITY: "ERR-COMPAT",
    TransactionPhase.STAGE_ARTIFACTS: "ERR-STAGE",
    TransactionPhase.VALIDATE_MANIFEST: "ERR-MANIFEST",
    TransactionPhase.LIFECYCLE_CONSENT: "ERR-LIFECYCLE",
    TransactionPhase.PROMOTE_AND_REGISTER: "ERR-PROMOTE",
    TransactionPhase.ACTIVATE_SYMLINK: "ERR-ACTIVATE",
    TransactionPhase.TELEMETRY_CLEANUP: "ERR-TELEMETRY",
    TransactionPhase.VALIDATE_REGISTRY_ENTRY: "ERR-REGISTRY",
    TransactionPhase.REMOVE_SYMLINK: "ERR-SYMLINK",
    TransactionPhase.REMOVE_REGISTRY_ENTRY: "ERR-UNREGISTER",
    TransactionPhase.APPLY_CACHE_RETENTION: "ERR-RETENTION",
    TransactionPhase.TELEMETRY: "ERR-TELEMETRY",
    TransactionPhase.VALIDATE_ROLLBACK_TARGET: "ERR-ROLLBACK",
    TransactionPhase.UPDATE_REGISTRY: "ERR-REGISTRY",
}

INSTALL_PHASES = (
    TransactionPhase.VALIDATE_COMPATIBILITY,
    TransactionPhase.STAGE_ARTIFACTS,
    TransactionPhase.VALIDATE_MANIFEST,
    TransactionPhase.LIFECYCLE_CONSENT,
    TransactionPhase.PROMOTE_AND_REGISTER,
    TransactionPhase.ACTIVATE_SYMLINK,
    TransactionPhase.TELEMETRY_CLEANUP,
)

ROLLBACK_PHASES = (
    TransactionPhase.VALIDATE_ROLLBACK_TARGET,
    TransactionPhase.ACTIVATE_SYMLINK,
    TransactionPhase.UPDATE_REGISTRY,
    TransactionPhase.TELEMETRY_CLEANUP,
)

UNINSTALL_PHASES = (
    TransactionPhase.VALIDATE_REGISTRY_ENTRY,
    TransactionPhase.LIFECYCLE_CONSENT,
    TransactionPhase.REMOVE_SYMLINK,
    TransactionPhase.REMOVE_REGISTRY_ENTRY,
    TransactionPhase.APPLY_CACHE_RETENTION,
    TransactionPhase.TELEMETRY,
)


class CacheRetentionPolicy(str, Enum):
    """What happens to a plugin's cached versions when it is uninstalled."""

    KEEP_ALL = "keep-all"
    KEEP_LAST_N = "keep-last-n"
    PURGE = "purge"


# =============================================================================
# Requests
# =============================================================================


@dataclass
class InstallRequest:
    plugin_id: str
    version: str | None = None
    force: bool = False
    dry_run: bool = False
    correlation_id: str | None = None
    skip_lifecycle: bool = False
    lifecycle_consent: list[str] = field(default_factory=list)


@dataclass
class UpdateRequest(InstallRequest):
    """Same fields as an install; ``version`` defaults to the latest available."""


@dataclass
class RollbackRequest:
    plugin_id: str
    target_version: str | None = None
    dry_run: bool = False
    correlation_id: str | None = None


@dataclass
class UninstallRequest:
    plugin_id: str
    cache_retention: CacheRetentionPolicy = CacheRetentionPolicy.KEEP_LAST_N
    keep_last_n: int = 3
    force: bool = False
    dry_run: bool = False
    correlation_id: str | None = None
    skip_lifecycle: bool = False
    lifecycle_consent: list[str] = field(default_factory=list)


# =============================================================================
# Results
# =============================================================================


@dataclass
class PhaseMessage:
    phase: TransactionPhase | None
    level: MessageLevel
    text: str


@dataclass
class VersionTransition:
    """What changes when a plugin moves between two versions."""

    from_version: str
    to_version: str
    permissions_added: list[str] = field(default_factory=list)
    permissions_removed: list[str] = field(default_factory=list)
    compatibility_changed: bool = False


@dataclass
class TransactionResult:
    """Outcome of one orchestrated transaction.

    Failed results always name the transaction, the failed phase and the
    error, and list the compensating actions that were applied.
    """

    operation: str
    plugin_id: str
    transaction_id: str
    success: bool = False
    version: str | None = None
    correlation_id: str | None = None
    messages: list[PhaseMessage] = field(default_factory=list)
    completed_phases: list[TransactionPhase] = field(default_factory=list)
    error: OperationError | None = None
    compensations: list[str] = field(default_factory=list)
    dry_run: bool = False
    preview: dict[str, Any] | None = None
    duration_ms: int = 0
    plugin: InstalledPlugin | None = None
    transition: VersionTransition | None = None

    @property
    def failed_phase(self) -> TransactionPhase | None:
        if self.error is None or self.error.phase is None:
            return None
        return TransactionPhase(self.error.phase)

    @property
    def warnings(self) -> list[str]:
        return [m.text for m in self.messages if m.level == "warning"]

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready summary used for audit records and ``--json`` output."""
        data = {
            "operation": self.operation,
            "pluginId": self.plugin_id,
            "transactionId": self.transaction_id,
            "correlationId": self.correlation_id,
            "success": self.success,
            "version": self.version,
            "dryRun": self.dry_run,
            "durationMs": self.duration_ms,
            "completedPhases": [p.value for p in self.completed_phases],
            "messages": [
                {"phase": m.phase.value if m.phase else None, "level": m.level, "text": m.text}
                for m in self.messages
            ],
            "compensations": list(self.compensations),
            "error": None,
            "preview": self.preview,
            "transition": asdict(self.transition) if self.transition else None,
        }
        if self.error is not None:
            data["error"] = {
                "kind": self.error.kind.value,
                "code": self.error.code,
                "message": self.error.message,
                "phase": self.error.phase,
                "details": self.error.details,
            }
        return data


@dataclass
class InstallResult(TransactionResult):
    pass


@dataclass
class UninstallResult(TransactionResult):
    removed_versions: list[str] = field(default_factory=list)
    retained_versions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["removedVersions"] = list(self.removed_versions)
        data["retainedVersions"] = list(self.retained_versions)
        return data


@dataclass
class VerificationReport:
    plugin_id: str
    valid: bool = False
    version: str | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class RollbackTarget:
    version: str
    cache_path: str
    size_bytes: int
    last_access_time: datetime
    pinned: bool


@dataclass
class UpdateCheck:
    plugin_id: str
    installed_version: str | None
    latest_version: str | None
    update_available: bool
    error: str | None = None


@dataclass
class _Transaction:
    """Mutable state of a running transaction, used for compensation."""

    operation: str
    plugin_id: str
    transaction_id: str
    started: float
    existing: InstalledPlugin | None = None
    resolved: ResolvedArtifact | None = None
    staging_root: Path | None = None
    artifact_root: Path | None = None
    manifest: PluginManifest | None = None
    consents: list[LifecycleConsentRef] = field(default_factory=list)
    entry: CacheEntry | None = None
    target_path: Path | None = None
    registered: bool = False
    previous_link: Path | None = None
    link_changed: bool = False
    current_set: bool = False
    committed: bool = False


Step = Callable[[_Transaction, Any, TransactionResult], bool | None]


# =============================================================================
# Orchestrator
# =============================================================================


class InstallOrchestrator:
    """Drives plugin transactions through the cache, registry and symlinks.

    Args:
        settings: Resolved settings
        storage: Storage adapter used for symlinks and audit files
        cache: Cache service
        registry: Registry service
        source: Where artifacts are resolved and fetched from (needed by
            install, update and check_updates)
        compatibility: Host compatibility gate (default: allow everything)
        lifecycle: Lifecycle script runner (default: built from settings)
        clock: Source of "now" for timestamps
    """

    def __init__(
        self,
        settings: Settings,
        storage: StorageAdapter,
        cache: CacheService,
        registry: RegistryService,
        source: ArtifactSource | None = None,
        compatibility: CompatibilityChecker | None = None,
        lifecycle: LifecycleRunner | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.storage = storage
        self.cache = cache
        self.registry = registry
        self.source = source
        self.compatibility = compatibility or PermissiveCompatibilityChecker()
        self.lifecycle = lifecycle or LifecycleRunner(settings.lifecycle_timeout_seconds)
        self.clock = clock
        self._inflight: set[tuple[str, str]] = set()
        self._inflight_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        source: ArtifactSource | None = None,
        compatibility: CompatibilityChecker | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> InstallOrchestrator:
        storage = StorageAdapter()
        return cls(
            settings=settings,
            storage=storage,
            cache=CacheService.from_settings(settings, storage, clock),
            registry=RegistryService.from_settings(settings, storage, clock),
            source=source,
            compatibility=compatibility,
            clock=clock,
        )

    def link_path(self, plugin_id: str) -> Path:
        """Activation symlink for a plugin."""
        return self.settings.install_dir / plugin_id

    def _require_source(self) -> ArtifactSource:
        if self.source is None:
            raise NotFoundError("No artifact source configured", "SOURCE_NOT_CONFIGURED")
        return self.source

    # -------------------------------------------------------------------------
    # Phase driver
    # -------------------------------------------------------------------------

    def _begin(self, operation: str, plugin_id: str) -> _Transaction:
        tx = _Transaction(operation, plugin_id, generate_transaction_id(), time.monotonic())
        logger.info("[%s] Starting %s of %s", tx.transaction_id, operation, plugin_id)
        return tx

    def _run_phases(
        self,
        tx: _Transaction,
        request: Any,
        result: TransactionResult,
        steps: Sequence[tuple[TransactionPhase, Step]],
    ) -> bool:
        """Run steps in order until one fails or asks to stop.

        Returns:
            False if a phase failed (``result.error`` is set), True otherwise
        """
        for phase, step in steps:
            logger.debug("[%s] %s", tx.transaction_id, phase.value)
            try:
                stop = step(tx, request, result)
            except PlugctlError as e:
                self._record_failure(tx, result, phase, e)
                return False
            except OSError as e:
                error = IOFailureError(str(e), getattr(e, "filename", None), phase.code)
                self._record_failure(tx, result, phase, error)
                return False
            except Exception as e:
                logger.exception("[%s] Unexpected error at %s", tx.transaction_id, phase.value)
                error = TransactionAbortedError(
                    f"{type(e).__name__}: {e}", phase.code, {"exceptionType": type(e).__name__}
                )
                self._record_failure(tx, result, phase, error)
                return False
            result.completed_phases.append(phase)
            if stop:
                break
        return True

    def _record_failure(
        self,
        tx: _Transaction,
        result: TransactionResult,
        phase: TransactionPhase,
        exc: PlugctlError,
    ) -> None:
        error = exc.to_operation_error(phase.value)
        if error.code == PlugctlError.default_code:
            error.code = phase.code
        error.details.setdefault("phaseCode", phase.code)
        error.details.setdefault("transactionId", tx.transaction_id)
        result.error = error
        result.success = False
        self._note(result, phase, "error", exc.message)
        logger.error(
            "[%s] %s of %s failed at %s: %s (%s)",
            tx.transaction_id,
            tx.operation,
            tx.plugin_id,
            phase.value,
            exc.message,
            error.code,
        )

    def _complete(self, tx: _Transaction, result: TransactionResult, ok: bool) -> None:
        result.success = ok and result.error is None
        result.duration_ms = self._elapsed_ms(tx)
        if result.success:
            logger.info(
                "[%s] %s of %s finished in %dms",
                tx.transaction_id,
                tx.operation,
                tx.plugin_id,
                result.duration_ms,
            )

    @staticmethod
    def _elapsed_ms(tx: _Transaction) -> int:
        return int((time.monotonic() - tx.started) * 1000)

    @staticmethod
    def _note(
        result: TransactionResult, phase: TransactionPhase | None, level: MessageLevel, text: str
    ) -> None:
        result.messages.append(PhaseMessage(phase, level, text))
        if level == "warning":
            logger.warning(text)
        elif level == "info":
            logger.info(text)

    def _track(self, key: tuple[str, str], active: bool) -> None:
        with self._inflight_lock:
            if active:
                self._inflight.add(key)
            else:
                self._inflight.discard(key)

    def _protected_keys(self, *extra: tuple[str, str]) -> set[tuple[str, str]]:
        with self._inflight_lock:
            return set(self._inflight).union(extra)

    # -------------------------------------------------------------------------
    # install / update
    # -------------------------------------------------------------------------

    def install(self, request: InstallRequest) -> InstallResult:
        """Install a plugin from the artifact source.

        Args:
            request: Install request

        Returns:
            InstallResult; on failure ``error`` names the failed phase
        """
        return self._install(request, "install")

    def update(self, request: UpdateRequest) -> InstallResult:
        """Move an installed plugin to another version (latest by default)."""
        return self._install(request, "update")

    def _install(self, request: InstallRequest, operation: str) -> InstallResult:
        tx = self._begin(operation, request.plugin_id)
        result = InstallResult(
            operation=operation,
            plugin_id=request.plugin_id,
            transaction_id=tx.transaction_id,
            version=request.version,
            correlation_id=request.correlation_id,
            dry_run=request.dry_run,
        )
        steps: list[tuple[TransactionPhase, Step]] = [
            (TransactionPhase.VALIDATE_COMPATIBILITY, self._validate_install),
            (TransactionPhase.STAGE_ARTIFACTS, self._stage),
            (TransactionPhase.VALIDATE_MANIFEST, self._validate_manifest),
            (TransactionPhase.LIFECYCLE_CONSENT, self._install_consent),
            (TransactionPhase.PROMOTE_AND_REGISTER, self._promote_and_register),
            (TransactionPhase.ACTIVATE_SYMLINK, self._activate_install),
            (TransactionPhase.TELEMETRY_CLEANUP, self._telemetry_cleanup),
        ]
        try:
            ok = self._run_phases(tx, request, result, steps)
            if not ok:
                self._compensate(tx, result)
                self._finish(tx, result, compensating=True)
        finally:
            if tx.resolved is not None:
                self._track((tx.plugin_id, tx.resolved.version), False)
        self._complete(tx, result, ok)
        return result

    def _validate_install(
        self, tx: _Transaction, request: InstallRequest, result: TransactionResult
    ) -> bool:
        phase = TransactionPhase.VALIDATE_COMPATIBILITY
        registry = self.registry.load_registry()
        existing = registry.get_plugin(request.plugin_id)
        if tx.operation == "install" and existing is not None and not request.force:
            raise ConflictError(
                f"{request.plugin_id} is already installed (version {existing.version})",
                "ALREADY_INSTALLED",
                {"pluginId": request.plugin_id, "version": existing.version},
            )
        if tx.operation == "update" and existing is None:
            raise NotFoundError(
                f"Plugin {request.plugin_id} is not installed",
                details={"pluginId": request.plugin_id},
            )
        tx.existing = existing

        spec = request.version or "latest"
        source = self._require_source()
        resolved = source.resolve(request.plugin_id, spec)
        if resolved is None:
            raise NotFoundError(
                f"{request.plugin_id}@{spec} not found in {source.describe()}",
                details={"pluginId": request.plugin_id, "versionSpec": spec},
            )
        tx.resolved = resolved
        result.version = resolved.version

        if (
            tx.operation == "update"
            and existing is not None
            and existing.version == resolved.version
            and existing.install_state == InstallState.INSTALLED
            and not request.force
        ):
            self._note(
                result,
                phase,
                "info",
                f"{request.plugin_id} is already up to date ({existing.version})",
            )
            result.plugin = existing
            return True

        if self.settings.flags.enable_compatibility_checks:
            verdict = self.compatibility.evaluate(request.plugin_id, resolved.version, registry)
            self._apply_verdict(verdict, result, phase)
        else:
            self._note(result, phase, "info", "Compatibility checks are disabled")

        if request.dry_run:
            result.preview = {
                "pluginId": request.plugin_id,
                "version": resolved.version,
                "fromVersion": existing.version if existing else None,
                "reinstall": existing is not None and existing.version == resolved.version,
                "source": resolved.source_uri,
                "phases": [p.value for p in INSTALL_PHASES],
                "cachedVersions": [e.version for e in self.cache.list_entries(request.plugin_id)],
            }
            self._note(
                result,
                phase,
                "info",
                f"Dry run: would {tx.operation} {request.plugin_id}@{resolved.version}",
            )
            return True

        self._track((request.plugin_id, resolved.version), True)
        return False

    def _apply_verdict(
        self, verdict: CompatibilityVerdict, result: TransactionResult, phase: TransactionPhase
    ) -> None:
        if verdict.blocked:
            raise CompatibilityBlockedError(
                "; ".join(verdict.reasons) or "Blocked by compatibility policy",
                details={"reasons": list(verdict.reasons)},
            )
        for reason in verdict.reasons:
            self._note(result, phase, "warning", reason)

    def _stage(self, tx: _Transaction, request: InstallRequest, result: TransactionResult) -> None:
        assert tx.resolved is not None
        staging = self.cache.stage_artifacts(
            tx.plugin_id, tx.resolved.version, tx.transaction_id
        ).unwrap()
        tx.staging_root = staging.staging_path
        try:
            tx.artifact_root = self._require_source().fetch(tx.resolved, staging.staging_path)
        except (OSError, ValueError) as e:
            raise StagingError(
                f"Failed to fetch {tx.plugin_id}@{tx.resolved.version}: {e}",
                details={"source": tx.resolved.source_uri},
            ) from e

        if tx.resolved.checksum and not self.cache.workspace.verify_checksum(
            tx.artifact_root, tx.resolved.checksum
        ):
            raise StagingError(
                f"Checksum mismatch for staged {tx.plugin_id}@{tx.resolved.version}",
                "CHECKSUM_MISMATCH",
                {"expected": tx.resolved.checksum},
            )

    def _validate_manifest(
        self, tx: _Transaction, request: InstallRequest, result: TransactionResult
    ) -> None:
        assert tx.resolved is not None and tx.artifact_root is not None
        phase = TransactionPhase.VALIDATE_MANIFEST
        try:
            manifest = load_plugin_manifest(tx.artifact_root)
        except ConfigError as e:
            raise ValidationError(str(e), "MANIFEST_INVALID", {"path": str(e.path)}) from e

        if manifest.name != tx.plugin_id:
            raise ValidationError(
                f"Manifest name {manifest.name!r} does not match {tx.plugin_id!r}",
                "MANIFEST_MISMATCH",
            )
        if manifest.version != tx.resolved.version:
            raise ValidationError(
                f"Manifest version {manifest.version} does not match {tx.resolved.version}",
                "MANIFEST_MISMATCH",
            )
        tx.manifest = manifest

        if self.settings.flags.enable_compatibility_checks:
            self._apply_verdict(check_manifest_requirements(manifest), result, phase)

        if tx.existing is not None:
            result.transition = self._transition(tx.existing, manifest, result)
            if result.transition.permissions_added:
                self._note(
                    result,
                    phase,
                    "warning",
                    "New permissions requested: " + ", ".join(result.transition.permissions_added),
                )

    def _transition(
        self, existing: InstalledPlugin, manifest: PluginManifest, result: TransactionResult
    ) -> VersionTransition:
        """Compare the installed version's manifest with ``manifest``."""
        old_manifest = None
        old_path = Path(existing.cache_path)
        if self.storage.exists(old_path):
            try:
                old_manifest = load_plugin_manifest(old_path)
            except ConfigError as e:
                self._note(result, None, "warning", f"Cannot read installed manifest: {e}")

        old_permissions = set(old_manifest.permissions) if old_manifest else set()
        new_permissions = set(manifest.permissions)
        old_compat = old_manifest.compatibility if old_manifest else None
        return VersionTransition(
            from_version=existing.version,
            to_version=manifest.version,
            permissions_added=sorted(new_permissions - old_permissions),
            permissions_removed=sorted(old_permissions - new_permissions),
            compatibility_changed=old_compat != manifest.compatibility,
        )

    def _install_consent(
        self, tx: _Transaction, request: InstallRequest, result: TransactionResult
    ) -> None:
        assert tx.resolved is not None and tx.artifact_root is not None
        assert tx.manifest is not None
        script = load_lifecycle_script(tx.artifact_root, tx.manifest, "install", self.storage)
        if script is not None:
            self._run_lifecycle(script, tx, request, result, tx.artifact_root, tx.resolved.version)

    def _run_lifecycle(
        self,
        script: LifecycleScript,
        tx: _Transaction,
        request: InstallRequest | UninstallRequest,
        result: TransactionResult,
        cwd: Path,
        version: str,
    ) -> None:
        phase = TransactionPhase.LIFECYCLE_CONSENT
        if request.skip_lifecycle:
            self._note(
                result, phase, "warning", f"Skipped {script.hook} script {script.relative_path}"
            )
            return
        if not self.settings.flags.enable_lifecycle_hooks:
            self._note(
                result,
                phase,
                "warning",
                f"Lifecycle hooks are disabled; {script.hook} script "
                f"{script.relative_path} not run",
            )
            return
        if not request.force:
            require_consent(script, request.lifecycle_consent)

        execution = self.lifecycle.run(script, cwd, tx.plugin_id, version)
        tx.consents.append(
            LifecycleConsentRef(hook=script.hook, digest=script.digest, consented_at=self.clock())
        )
        self._note(
            result,
            phase,
            "info",
            f"{script.hook} script {script.relative_path} completed in {execution.duration_ms}ms",
        )

    def _promote_and_register(
        self, tx: _Transaction, request: InstallRequest, result: TransactionResult
    ) -> None:
        assert tx.resolved is not None and tx.artifact_root is not None
        version = tx.resolved.version
        promotion = self.cache.promote_artifacts(
            tx.plugin_id,
            version,
            tx.artifact_root,
            expected_checksum=tx.resolved.checksum,
            skip_eviction=True,
            transaction_id=tx.transaction_id,
        ).unwrap()
        tx.entry = promotion.entry
        tx.target_path = Path(promotion.entry.cache_path)

        existing = tx.existing
        now = self.clock()
        record = InstalledPlugin(
            plugin_id=tx.plugin_id,
            version=version,
            source=tx.resolved.source_uri,
            install_state=InstallState.STAGING,
            installed_at=existing.installed_at if existing else now,
            updated_at=now if existing else None,
            cache_path=promotion.entry.cache_path,
            symlink_target=existing.symlink_target if existing else None,
            transaction_id=tx.transaction_id,
            pinned=existing.pinned if existing else False,
            telemetry_ref=existing.telemetry_ref if existing else None,
            lifecycle_consents=list(tx.consents),
        )
        if existing is None:
            self.registry.add_plugin(record).unwrap()
        else:
            self.registry.replace_plugin(record).unwrap()
        tx.registered = True

    def _activate_install(
        self, tx: _Transaction, request: InstallRequest, result: TransactionResult
    ) -> None:
        assert tx.resolved is not None and tx.target_path is not None
        phase = TransactionPhase.ACTIVATE_SYMLINK
        version = tx.resolved.version
        self._swap_link(tx, tx.target_path)
        self.cache.set_current_version(tx.plugin_id, version).unwrap()
        tx.current_set = True

        updates: dict[str, Any] = {
            "install_state": InstallState.INSTALLED,
            "symlink_target": str(tx.target_path),
            "lifecycle_consents": list(tx.consents),
            "error_details": None,
        }
        if self.settings.telemetry_enabled:
            updates["telemetry_ref"] = tx.transaction_id
        result.plugin = self.registry.update_plugin(tx.plugin_id, updates).unwrap()

        if tx.existing is not None and tx.existing.pinned:
            self._move_pin(tx.plugin_id, tx.existing.version, version, result, phase)

        if self.settings.flags.enable_cache_eviction:
            protected = self._protected_keys((tx.plugin_id, version))
            eviction = self.cache.evict_cache(protected=protected)
            if not eviction.success:
                self._note(result, phase, "warning", f"Cache eviction failed: {eviction.error}")
            elif eviction.data is not None and eviction.data.entries_evicted:
                self._note(
                    result,
                    phase,
                    "info",
                    f"Evicted {eviction.data.entries_evicted} cached versions "
                    f"({eviction.data.bytes_freed} bytes)",
                )

    def _swap_link(self, tx: _Transaction, target: Path) -> None:
        link = self.link_path(tx.plugin_id)
        tx.previous_link = self.storage.read_symlink(link)
        self.storage.create_symlink_atomic(link, target)
        tx.link_changed = True
        logger.info("[%s] Activated %s -> %s", tx.transaction_id, link, target)

    def _move_pin(
        self,
        plugin_id: str,
        old_version: str,
        new_version: str,
        result: TransactionResult,
        phase: TransactionPhase,
    ) -> None:
        """Carry a plugin pin over to the newly active cache entry."""
        if old_version == new_version:
            return
        pinned = self.cache.pin_version(plugin_id, new_version)
        if not pinned.success:
            self._note(
                result, phase, "warning", f"Could not pin {plugin_id}@{new_version}: {pinned.error}"
            )
            return
        if self.cache.get_entry(plugin_id, old_version) is not None:
            unpinned = self.cache.unpin_version(plugin_id, old_version)
            if not unpinned.success:
                self._note(
                    result,
                    phase,
                    "warning",
                    f"Could not unpin {plugin_id}@{old_version}: {unpinned.error}",
                )

    def _telemetry_cleanup(
        self, tx: _Transaction, request: Any, result: TransactionResult
    ) -> None:
        self._finish(tx, result, compensating=False)

    # -------------------------------------------------------------------------
    # Compensation and telemetry
    # -------------------------------------------------------------------------

    def _compensate(self, tx: _Transaction, result: TransactionResult) -> None:
        """Undo the effects of completed phases after a failure."""
        if tx.committed:
            self._note(
                result,
                None,
                "warning",
                f"{tx.plugin_id} was already removed from the registry; nothing rolled back",
            )
            return

        link = self.link_path(tx.plugin_id)
        if tx.link_changed:
            if tx.previous_link is not None:
                previous = tx.previous_link
                self._apply_compensation(
                    result,
                    f"Restored symlink {link} -> {previous}",
                    lambda: self.storage.create_symlink_atomic(link, previous),
                )
            else:
                self._apply_compensation(
                    result, f"Removed symlink {link}", lambda: self.storage.remove_symlink(link)
                )

        if tx.current_set:
            existing = tx.existing
            if existing is not None and self.cache.get_entry(tx.plugin_id, existing.version):
                self._apply_compensation(
                    result,
                    f"Restored current cache version {existing.version}",
                    lambda: self.cache.set_current_version(tx.plugin_id, existing.version),
                )
            else:
                self._apply_compensation(
                    result,
                    "Cleared current cache version",
                    lambda: self.cache.clear_current_version(tx.plugin_id),
                )

        if tx.registered:
            if tx.existing is not None:
                previous_record = tx.existing
                self._apply_compensation(
                    result,
                    f"Restored registry record for {tx.plugin_id}@{previous_record.version}",
                    lambda: self.registry.replace_plugin(previous_record),
                )
            else:
                error = result.error
                details = ErrorDetails(
                    code=error.code if error else "ERR-UNKNOWN",
                    message=error.message if error else "",
                    failed_phase=error.phase if error else None,
                )
                self._apply_compensation(
                    result,
                    f"Marked {tx.plugin_id} as FAILED in registry",
                    lambda: self.registry.update_plugin(
                        tx.plugin_id,
                        {"install_state": InstallState.FAILED, "error_details": details},
                    ),
                )

        if tx.entry is not None:
            self._note(
                result,
                None,
                "info",
                f"Cached {tx.entry.plugin_id}@{tx.entry.version} kept for reuse",
            )

    def _apply_compensation(
        self, result: TransactionResult, description: str, action: Callable[[], Any]
    ) -> None:
        try:
            outcome = action()
            if isinstance(outcome, OperationResult):
                outcome.unwrap()
        except PlugctlError as e:
            self._note(result, None, "error", f"Compensation failed ({description}): {e.message}")
            logger.error("Compensation failed (%s): %s", description, e.message)
            return
        except OSError as e:
            self._note(result, None, "error", f"Compensation failed ({description}): {e}")
            logger.error("Compensation failed (%s): %s", description, e)
            return
        result.compensations.append(description)
        logger.info("Compensation applied: %s", description)

    def _finish(self, tx: _Transaction, result: TransactionResult, compensating: bool) -> None:
        """Remove the staging directory and record telemetry; failures are warnings."""
        phase = None if compensating else TransactionPhase.TELEMETRY_CLEANUP
        if tx.staging_root is not None:
            staging_root = tx.staging_root
            if self.cache.workspace.cleanup(staging_root):
                if compensating:
                    result.compensations.append(f"Removed staging directory {staging_root}")
            else:
                self._note(
                    result, phase, "warning", f"Could not remove staging directory {staging_root}"
                )
            tx.staging_root = None

        if self.settings.telemetry_enabled:
            self._emit_telemetry(tx, result, phase)

    def _emit_telemetry(
        self, tx: _Transaction, result: TransactionResult, phase: TransactionPhase | None
    ) -> None:
        result.duration_ms = self._elapsed_ms(tx)
        error = result.error
        snapshot = TelemetrySnapshot(
            transaction_id=tx.transaction_id,
            command_type=tx.operation,
            plugin_id=tx.plugin_id,
            duration_ms=result.duration_ms,
            success=error is None,
            error_code=error.code if error else None,
            captured_at=self.clock(),
            context={
                "version": result.version,
                "correlationId": result.correlation_id,
                "failedPhase": error.phase if error else None,
                "transition": asdict(result.transition) if result.transition else None,
            },
        )
        recorded = self.registry.record_telemetry(snapshot)
        if not recorded.success:
            self._note(result, phase, "warning", f"Could not record telemetry: {recorded.error}")

        audit_path = self.settings.audit_dir / f"{tx.operation}-{tx.transaction_id}.json"
        try:
            self.storage.write_json_atomic(audit_path, result.to_dict())
        except PlugctlError as e:
            self._note(result, phase, "warning", f"Could not write audit record: {e.message}")

    # -------------------------------------------------------------------------
    # rollback
    # -------------------------------------------------------------------------

    def rollback(self, request: RollbackRequest) -> InstallResult:
        """Re-activate a cached older version of an installed plugin.

        Rollback only switches which cached version is active; it never
        changes cache contents.
        """
        tx = self._begin("rollback", request.plugin_id)
        result = InstallResult(
            operation="rollback",
            plugin_id=request.plugin_id,
            transaction_id=tx.transaction_id,
            version=request.target_version,
            correlation_id=request.correlation_id,
            dry_run=request.dry_run,
        )
        steps: list[tuple[TransactionPhase, Step]] = [
            (TransactionPhase.VALIDATE_ROLLBACK_TARGET, self._validate_rollback),
            (TransactionPhase.ACTIVATE_SYMLINK, self._activate_rollback),
            (TransactionPhase.UPDATE_REGISTRY, self._update_registry_rollback),
            (TransactionPhase.TELEMETRY_CLEANUP, self._telemetry_cleanup),
        ]
        ok = self._run_phases(tx, request, result, steps)
        if not ok:
            self._compensate(tx, result)
            self._finish(tx, result, compensating=True)
        self._complete(tx, result, ok)
        return result

    def _validate_rollback(
        self, tx: _Transaction, request: RollbackRequest, result: TransactionResult
    ) -> bool:
        phase = TransactionPhase.VALIDATE_ROLLBACK_TARGET
        if not self.settings.flags.enable_rollback:
            raise ValidationError("Rollback is disabled", "ROLLBACK_DISABLED")

        existing = self.registry.get_plugin(request.plugin_id)
        if existing is None:
            raise NotFoundError(
                f"Plugin {request.plugin_id} is not installed",
                details={"pluginId": request.plugin_id},
            )
        tx.existing = existing

        target = request.target_version
        if target is None:
            cached = [e.version for e in self.cache.list_entries(request.plugin_id)]
            target = highest_below(cached, existing.version)
            if target is None:
                raise NotFoundError(
                    f"No cached version of {request.plugin_id} older than {existing.version}",
                    "NO_ROLLBACK_TARGET",
                    {"pluginId": request.plugin_id, "activeVersion": existing.version},
                )
        result.version = target

        entry = self.cache.verify_entry(request.plugin_id, target).unwrap()
        if target == existing.version:
            raise ConflictError(
                f"{request.plugin_id}@{target} is already active",
                "ALREADY_ACTIVE",
                {"pluginId": request.plugin_id, "version": target},
            )
        tx.entry = entry

        target_manifest = None
        try:
            target_manifest = load_plugin_manifest(Path(entry.cache_path))
        except ConfigError as e:
            self._note(result, phase, "warning", f"Cannot read manifest of {target}: {e}")
        if target_manifest is not None:
            result.transition = self._transition(existing, target_manifest, result)
        else:
            result.transition = VersionTransition(existing.version, target)

        if request.dry_run:
            result.preview = {
                "pluginId": request.plugin_id,
                "fromVersion": existing.version,
                "toVersion": target,
                "cachePath": entry.cache_path,
                "phases": [p.value for p in ROLLBACK_PHASES],
            }
            self._note(result, phase, "info", f"Dry run: would roll back to {target}")
            return True
        return False

    def _activate_rollback(
        self, tx: _Transaction, request: RollbackRequest, result: TransactionResult
    ) -> None:
        assert result.version is not None
        tx.target_path = self.cache.retrieve_artifacts(tx.plugin_id, result.version).unwrap()
        self._swap_link(tx, tx.target_path)
        self.cache.set_current_version(tx.plugin_id, result.version).unwrap()
        tx.current_set = True

    def _update_registry_rollback(
        self, tx: _Transaction, request: RollbackRequest, result: TransactionResult
    ) -> None:
        assert tx.existing is not None and tx.target_path is not None
        assert result.version is not None
        result.plugin = self.registry.update_plugin(
            tx.plugin_id,
            {
                "version": result.version,
                "cache_path": str(tx.target_path),
                "symlink_target": str(tx.target_path),
                "transaction_id": tx.transaction_id,
            },
        ).unwrap()
        if tx.existing.pinned:
            self._move_pin(
                tx.plugin_id,
                tx.existing.version,
                result.version,
                result,
                TransactionPhase.UPDATE_REGISTRY,
            )

    # -------------------------------------------------------------------------
    # uninstall
    # -------------------------------------------------------------------------

    def uninstall(self, request: UninstallRequest) -> UninstallResult:
        """Remove a plugin's activation and registry record, then apply cache retention."""
        tx = self._begin("uninstall", request.plugin_id)
        result = UninstallResult(
            operation="uninstall",
            plugin_id=request.plugin_id,
            transaction_id=tx.transaction_id,
            correlation_id=request.correlation_id,
            dry_run=request.dry_run,
        )
        steps: list[tuple[TransactionPhase, Step]] = [
            (TransactionPhase.VALIDATE_REGISTRY_ENTRY, self._validate_uninstall),
            (TransactionPhase.LIFECYCLE_CONSENT, self._uninstall_consent),
            (TransactionPhase.REMOVE_SYMLINK, self._remove_symlink),
            (TransactionPhase.REMOVE_REGISTRY_ENTRY, self._remove_registry_entry),
            (TransactionPhase.APPLY_CACHE_RETENTION, self._apply_retention),
            (TransactionPhase.TELEMETRY, self._telemetry),
        ]
        ok = self._run_phases(tx, request, result, steps)
        if not ok:
            self._compensate(tx, result)
            self._finish(tx, result, compensating=True)
        self._complete(tx, result, ok)
        return result

    def _validate_uninstall(
        self, tx: _Transaction, request: UninstallRequest, result: UninstallResult
    ) -> bool:
        existing = self.registry.get_plugin(request.plugin_id)
        if existing is None:
            raise NotFoundError(
                f"Plugin {request.plugin_id} is not installed",
                details={"pluginId": request.plugin_id},
            )
        tx.existing = existing
        result.version = existing.version

        if request.dry_run:
            remove, keep = self._plan_retention(request)
            result.preview = {
                "pluginId": request.plugin_id,
                "version": existing.version,
                "cacheRetention": request.cache_retention.value,
                "wouldRemove": [e.version for e in remove],
                "wouldRetain": [e.version for e in keep],
                "phases": [p.value for p in UNINSTALL_PHASES],
            }
            self._note(
                result,
                TransactionPhase.VALIDATE_REGISTRY_ENTRY,
                "info",
                f"Dry run: would uninstall {request.plugin_id}@{existing.version}",
            )
            return True
        return False

    def _plan_retention(
        self, request: UninstallRequest
    ) -> tuple[list[CacheEntry], list[CacheEntry]]:
        """Split a plugin's cache entries into (to remove, to keep)."""
        entries = self.cache.list_entries(request.plugin_id)
        policy = request.cache_retention
        if policy == CacheRetentionPolicy.KEEP_ALL:
            return [], entries

        if policy == CacheRetentionPolicy.KEEP_LAST_N:
            recent = sorted(
                entries, key=lambda e: (e.last_access_time, VersionKey(e.version)), reverse=True
            )
            kept = {e.version for e in recent[: max(request.keep_last_n, 0)]}
        else:
            kept = set()

        remove = [e for e in entries if e.version not in kept and not e.pinned]
        keep = [e for e in entries if e.version in kept or e.pinned]
        return remove, keep

    def _uninstall_consent(
        self, tx: _Transaction, request: UninstallRequest, result: UninstallResult
    ) -> None:
        assert tx.existing is not None
        phase = TransactionPhase.LIFECYCLE_CONSENT
        cache_path = Path(tx.existing.cache_path)
        if not self.storage.exists(cache_path):
            self._note(result, phase, "warning", f"Cached artifacts missing at {cache_path}")
            return
        try:
            manifest = load_plugin_manifest(cache_path)
        except ConfigError as e:
            self._note(
                result, phase, "warning", f"Cannot read manifest, no uninstall script run: {e}"
            )
            return
        script = load_lifecycle_script(cache_path, manifest, "uninstall", self.storage)
        if script is not None:
            self._run_lifecycle(script, tx, request, result, cache_path, tx.existing.version)

    def _remove_symlink(
        self, tx: _Transaction, request: UninstallRequest, result: UninstallResult
    ) -> None:
        link = self.link_path(tx.plugin_id)
        tx.previous_link = self.storage.read_symlink(link)
        if self.storage.remove_symlink(link):
            tx.link_changed = True
            logger.info("[%s] Removed symlink %s", tx.transaction_id, link)
        else:
            self._note(
                result,
                TransactionPhase.REMOVE_SYMLINK,
                "warning",
                f"No activation symlink at {link}",
            )

    def _remove_registry_entry(
        self, tx: _Transaction, request: UninstallRequest, result: UninstallResult
    ) -> None:
        result.plugin = self.registry.remove_plugin(tx.plugin_id).unwrap()
        tx.committed = True

    def _apply_retention(
        self, tx: _Transaction, request: UninstallRequest, result: UninstallResult
    ) -> None:
        phase = TransactionPhase.APPLY_CACHE_RETENTION
        cleared = self.cache.clear_current_version(tx.plugin_id)
        if not cleared.success:
            self._note(
                result, phase, "warning", f"Could not clear current version: {cleared.error}"
            )

        remove, keep = self._plan_retention(request)
        retained = [e.version for e in keep]
        for entry in remove:
            removal = self.cache.remove_entry(
                tx.plugin_id, entry.version, EvictionReason.MANUAL_CLEANUP
            )
            if removal.success:
                result.removed_versions.append(entry.version)
            else:
                retained.append(entry.version)
                self._note(
                    result,
                    phase,
                    "warning",
                    f"Could not remove cached {entry.version}: {removal.error}",
                )
        result.retained_versions = sorted(retained, key=VersionKey)

    def _telemetry(
        self, tx: _Transaction, request: UninstallRequest, result: UninstallResult
    ) -> None:
        if self.settings.telemetry_enabled:
            self._emit_telemetry(tx, result, TransactionPhase.TELEMETRY)

    # -------------------------------------------------------------------------
    # Read-only queries
    # -------------------------------------------------------------------------

    def verify(self, plugin_id: str) -> VerificationReport:
        """Check that registry, cache and symlink agree for one plugin."""
        report = VerificationReport(plugin_id=plugin_id)
        try:
            plugin = self.registry.get_plugin(plugin_id)
        except PlugctlError as e:
            report.errors.append(f"Registry unreadable: {e.message}")
            return report
        if plugin is None:
            report.errors.append(f"Plugin {plugin_id} is not installed")
            return report

        report.version = plugin.version
        if plugin.install_state != InstallState.INSTALLED:
            report.errors.append(f"Install state is {plugin.install_state.value}")

        verified = self.cache.verify_entry(plugin_id, plugin.version)
        entry = verified.data if verified.success else None
        if entry is None:
            report.errors.append(str(verified.error))
        else:
            if Path(entry.cache_path) != Path(plugin.cache_path):
                report.warnings.append(
                    f"Registry cache path {plugin.cache_path} differs from cache {entry.cache_path}"
                )
            if not entry.is_current_version:
                report.warnings.append(f"Cache does not mark {plugin.version} as current")
            if entry.pinned != plugin.pinned:
                report.errors.append(
                    f"Pin mismatch: registry pinned={plugin.pinned}, cache pinned={entry.pinned}"
                )

        link = self.link_path(plugin_id)
        target = self.storage.read_symlink(link)
        if target is None:
            report.errors.append(f"Activation symlink missing: {link}")
        elif target.resolve() != Path(plugin.cache_path).resolve():
            report.errors.append(f"Symlink {link} points to {target}, expected {plugin.cache_path}")

        report.valid = not report.errors
        return report

    def list_rollback_targets(self, plugin_id: str) -> list[RollbackTarget]:
        """Cached versions other than the active one, newest first."""
        plugin = self.registry.get_plugin(plugin_id)
        if plugin is None:
            return []
        entries = [e for e in self.cache.list_entries(plugin_id) if e.version != plugin.version]
        entries.sort(key=lambda e: VersionKey(e.version), reverse=True)
        return [
            RollbackTarget(
                version=e.version,
                cache_path=e.cache_path,
                size_bytes=e.size_bytes,
                last_access_time=e.last_access_time,
                pinned=e.pinned,
            )
            for e in entries
        ]

    # -------------------------------------------------------------------------
    # Batch operations
    # -------------------------------------------------------------------------

    def batch_update(
        self, requests: Sequence[UpdateRequest], max_workers: int | None = None
    ) -> list[InstallResult]:
        """Update several distinct plugins concurrently.

        Returns:
            One result per request, in request order

        Raises:
            ValueError: If a plugin appears in more than one request
        """
        plugin_ids = [r.plugin_id for r in requests]
        duplicates = sorted({p for p in plugin_ids if plugin_ids.count(p) > 1})
        if duplicates:
            raise ValueError(f"Duplicate plugins in batch update: {', '.join(duplicates)}")
        if not requests:
            return []

        workers = max_workers or self.settings.max_workers
        logger.info("Updating %d plugins with %d workers", len(requests), workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self.update, r) for r in requests]
            return [f.result() for f in futures]

    def check_updates(
        self, plugin_ids: Iterable[str] | None = None, max_workers: int | None = None
    ) -> list[UpdateCheck]:
        """Resolve the latest available version for installed plugins."""
        installed = {p.plugin_id: p for p in self.registry.list_plugins()}
        wanted = sorted(installed) if plugin_ids is None else list(plugin_ids)

        def _check(plugin_id: str) -> UpdateCheck:
            plugin = installed.get(plugin_id)
            if plugin is None:
                return UpdateCheck(plugin_id, None, None, False, "not installed")
            try:
                resolved = self._require_source().resolve(plugin_id, "latest")
            except PlugctlError as e:
                return UpdateCheck(plugin_id, plugin.version, None, False, e.message)
            if resolved is None:
                return UpdateCheck(plugin_id, plugin.version, None, False, "not found in source")
            return UpdateCheck(
                plugin_id,
                plugin.version,
                resolved.version,
                VersionKey(resolved.version) > VersionKey(plugin.version),
            )

        if not wanted:
            return []
        with ThreadPoolExecutor(max_workers=max_workers or self.settings.max_workers) as pool:
            return list(pool.map(_check, wanted))
