"""Transaction-scoped staging workspaces.

Each install or update stages its artifacts under
``<plugin_dir>/tmp/<transaction_id>`` before anything is trusted. A crash
mid-transaction leaves that directory behind; ``cleanup_orphaned`` reclaims
such leftovers once they are older than the staleness threshold.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Collection
from pathlib import Path

from plugctl.core.errors import PlugctlError, StagingError
from plugctl.utils.filesystem import StorageAdapter

logger = logging.getLogger(__name__)

DEFAULT_ORPHAN_MAX_AGE_SECONDS = 24 * 60 * 60


def generate_transaction_id() -> str:
    """Return a new id of the form ``tx-<epoch ms>-<8 hex chars>``."""
    return f"tx-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class TempWorkspace:
    """Provisions and reclaims staging directories below ``<base_dir>/tmp``."""

    def __init__(self, base_dir: Path, storage: StorageAdapter):
        """Initialize the workspace manager.

        Args:
            base_dir: Plugin directory that holds ``tmp/``
            storage: Storage adapter for all filesystem access
        """
        self.base_dir = base_dir
        self.storage = storage

    @property
    def tmp_root(self) -> Path:
        return self.base_dir / "tmp"

    def path_for(self, transaction_id: str) -> Path:
        return self.tmp_root / transaction_id

    def provision(self, transaction_id: str) -> Path:
        """Create the staging directory for a transaction.

        Args:
            transaction_id: Transaction the directory belongs to

        Returns:
            Path to the new, empty staging directory

        Raises:
            StagingError: If the directory cannot be created or already exists
        """
        try:
            path = self.storage.create_temp_directory(self.base_dir, transaction_id)
        except PlugctlError as e:
            raise StagingError(
                f"Cannot provision staging area for {transaction_id}: {e.message}",
                details={"transactionId": transaction_id, "cause": e.code},
            ) from e
        logger.debug("Provisioned staging workspace %s", path)
        return path

    def cleanup(self, path: Path) -> bool:
        """Remove a staging directory, never raising.

        Returns:
            True if the path is gone afterwards, False if removal failed
        """
        try:
            removed = self.storage.remove_directory(path)
        except PlugctlError as e:
            logger.warning("Failed to clean up workspace %s: %s", path, e.message)
            return False
        if removed:
            logger.debug("Removed workspace %s", path)
        return True

    def list_orphaned(
        self,
        max_age_seconds: float = DEFAULT_ORPHAN_MAX_AGE_SECONDS,
        active_transactions: Collection[str] = (),
        now: float | None = None,
    ) -> list[Path]:
        """Find staging directories older than ``max_age_seconds``.

        Args:
            max_age_seconds: Minimum age (by mtime) for a directory to count
            active_transactions: Transaction ids still in flight; never orphans
            now: Reference time in epoch seconds (defaults to the current time)

        Returns:
            Orphaned directories sorted by name
        """
        if now is None:
            now = time.time()
        orphaned = []
        for path in self.storage.list_temp_directories(self.base_dir):
            if path.name in active_transactions:
                continue
            try:
                age = now - self.storage.modified_time(path)
            except PlugctlError as e:
                logger.warning("Cannot stat workspace %s: %s", path, e.message)
                continue
            if age > max_age_seconds:
                orphaned.append(path)
        return orphaned

    def cleanup_orphaned(
        self,
        max_age_seconds: float = DEFAULT_ORPHAN_MAX_AGE_SECONDS,
        active_transactions: Collection[str] = (),
        now: float | None = None,
    ) -> list[Path]:
        """Remove orphaned staging directories.

        Returns:
            Paths that were removed
        """
        removed = []
        for path in self.list_orphaned(max_age_seconds, active_transactions, now):
            if self.cleanup(path):
                logger.info("Reclaimed orphaned workspace %s", path)
                removed.append(path)
        return removed

    def compute_checksum(self, path: Path) -> str:
        return self.storage.calculate_checksum(path)

    def verify_checksum(self, path: Path, expected: str) -> bool:
        """Check staged content against an expected tree checksum.

        Args:
            path: Staged directory or file
            expected: Expected hex digest (an optional ``sha256:`` prefix is ignored)

        Returns:
            True if the checksum matches
        """
        actual = self.compute_checksum(path)
        return actual == expected.removeprefix("sha256:").lower()
