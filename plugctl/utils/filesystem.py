"""Filesystem utilities and the storage adapter used by every plugctl service."""

from __future__ import annotations

import errno
import hashlib
import json
import logging
import os
import shutil
import tarfile
import tempfile
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from plugctl.core.errors import (
    ConflictError,
    CorruptionError,
    IOFailureError,
    PermissionDeniedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# errno values worth one more attempt before surfacing the failure
TRANSIENT_ERRNOS = frozenset({errno.EAGAIN, errno.EBUSY, errno.EINTR, errno.ETIMEDOUT})


def ensure_directory(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path to ensure exists

    Returns:
        The directory path
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def copy_directory(src: Path, dest: Path) -> Path:
    """Copy a directory recursively.

    Args:
        src: Source directory path
        dest: Destination directory path

    Returns:
        Path to the copied directory
    """
    if dest.exists():
        shutil.rmtree(dest)
    shutil.copytree(src, dest, symlinks=True)
    return dest


def remove_directory(path: Path) -> bool:
    """Remove a directory and its contents.

    Args:
        path: Directory path to remove

    Returns:
        True if the directory was removed, False if it didn't exist
    """
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True


def extract_tarball(tarball_path: Path, dest_dir: Path) -> Path:
    """Extract a tarball to a destination directory.

    Args:
        tarball_path: Path to the .tar.gz file
        dest_dir: Destination directory

    Returns:
        Path to the extracted content directory
    """
    dest_dir.mkdir(parents=True, exist_ok=True)

    with tarfile.open(tarball_path, "r:gz") as tar:
        # Security: prevent path traversal
        for member in tar.getmembers():
            member_path = Path(member.name)
            if member_path.is_absolute() or ".." in member_path.parts:
                raise ValueError(f"Unsafe path in tarball: {member.name}")
        tar.extractall(dest_dir, filter="data")

    # If there's a single top-level directory, return its path
    # Ignore macOS metadata files (._*) and other hidden files
    contents = [
        p for p in dest_dir.iterdir() if not p.name.startswith("._") and not p.name.startswith(".")
    ]
    if len(contents) == 1 and contents[0].is_dir():
        return contents[0]
    return dest_dir


def compute_file_hash(path: Path, algorithm: str = "sha256") -> str:
    """Compute the hash of a file.

    Args:
        path: Path to the file
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Hex-encoded hash string
    """
    hasher = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def compute_tree_checksum(root: Path) -> str:
    """Compute a deterministic sha256 over a directory tree.

    Files are visited in sorted order of their POSIX relative paths; each
    contributes its relative path followed by its contents. Directory
    entries themselves and symlinks are not hashed, so the digest only
    depends on file names and bytes.

    Args:
        root: Directory (or single file) to hash

    Returns:
        Hex-encoded sha256 digest
    """
    if root.is_file():
        return compute_file_hash(root)

    files = sorted(
        (p for p in root.rglob("*") if p.is_file() and not p.is_symlink()),
        key=lambda p: p.relative_to(root).as_posix(),
    )
    hasher = hashlib.sha256()
    for file_path in files:
        hasher.update(file_path.relative_to(root).as_posix().encode("utf-8"))
        hasher.update(b"\0")
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                hasher.update(chunk)
        hasher.update(b"\0")
    return hasher.hexdigest()


def directory_size(root: Path) -> int:
    """Sum the sizes of all regular files below ``root``."""
    if root.is_file():
        return root.stat().st_size
    total = 0
    for p in root.rglob("*"):
        if p.is_file() and not p.is_symlink():
            total += p.stat().st_size
    return total


def _translate_os_error(exc: OSError, path: Path | None) -> Exception:
    """Map an OSError onto the plugctl error taxonomy."""
    where = str(path) if path is not None else None
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
        return PermissionDeniedError(f"Permission denied: {where or exc}", where)
    if exc.errno == errno.ENOSPC:
        return IOFailureError(f"No space left on device: {where or exc}", where, "DISK_FULL")
    return IOFailureError(f"I/O failure on {where or 'unknown path'}: {exc}", where)


class StorageAdapter:
    """Filesystem primitives used by the cache, registry and orchestrator.

    An instance is passed to each service at construction time. Every method
    maps ``OSError`` onto :class:`PermissionDeniedError` or
    :class:`IOFailureError`; transient errors (EAGAIN, EBUSY, EINTR,
    ETIMEDOUT) are retried once before being surfaced.
    """

    def __init__(self, retries: int = 1):
        """Initialize the adapter.

        Args:
            retries: Extra attempts for transient I/O errors
        """
        self.retries = retries

    def _run(self, path: Path | None, func: Callable[..., T], *args: Any) -> T:
        """Run ``func`` with transient-retry and error translation."""
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return func(*args)
            except OSError as e:
                if e.errno in TRANSIENT_ERRNOS and attempt < attempts:
                    logger.debug("Transient I/O error on %s, retrying: %s", path, e)
                    continue
                raise _translate_os_error(e, path) from e
        raise AssertionError("unreachable")

    # -------------------------------------------------------------------------
    # Directories
    # -------------------------------------------------------------------------

    def ensure_directory(self, path: Path) -> Path:
        return self._run(path, ensure_directory, path)

    def exists(self, path: Path) -> bool:
        """Check whether a path exists (broken symlinks count as existing)."""
        return os.path.lexists(path)

    def list_directory(self, path: Path) -> list[Path]:
        """List the direct children of a directory, sorted by name.

        Returns:
            Child paths, or an empty list if the directory does not exist
        """
        if not path.is_dir():
            return []
        return self._run(path, lambda: sorted(path.iterdir(), key=lambda p: p.name))

    def calculate_directory_size(self, path: Path) -> int:
        if not path.exists():
            return 0
        return self._run(path, directory_size, path)

    def remove_directory(self, path: Path) -> bool:
        """Remove a directory tree.

        Returns:
            True if removed, False if it did not exist
        """
        return self._run(path, remove_directory, path)

    def move_directory(self, src: Path, dest: Path) -> Path:
        """Atomically rename ``src`` to ``dest``.

        Falls back to a copy-and-delete move when the paths live on different
        filesystems.

        Raises:
            ConflictError: If ``dest`` already exists
        """
        if self.exists(dest):
            raise ConflictError(f"Destination already exists: {dest}", details={"path": str(dest)})

        def _move() -> Path:
            dest.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.rename(src, dest)
            except OSError as e:
                if e.errno != errno.EXDEV:
                    raise
                shutil.move(str(src), str(dest))
            return dest

        return self._run(src, _move)

    def copy_directory(self, src: Path, dest: Path) -> Path:
        return self._run(src, copy_directory, src, dest)

    def extract_tarball(self, tarball_path: Path, dest_dir: Path) -> Path:
        return self._run(tarball_path, extract_tarball, tarball_path, dest_dir)

    def modified_time(self, path: Path) -> float:
        return self._run(path, lambda: path.stat().st_mtime)

    def touch_file(self, path: Path) -> None:
        """Update a path's modification time, creating a file if needed."""

        def _touch() -> None:
            if path.is_dir():
                os.utime(path, None)
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.touch(exist_ok=True)

        self._run(path, _touch)

    # -------------------------------------------------------------------------
    # Temp directories
    # -------------------------------------------------------------------------

    def create_temp_directory(self, base_dir: Path, name: str) -> Path:
        """Create ``<base_dir>/tmp/<name>``.

        Raises:
            ConflictError: If the directory already exists
        """
        path = base_dir / "tmp" / name

        def _create() -> Path:
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                path.mkdir()
            except FileExistsError as e:
                raise ConflictError(
                    f"Temp directory already exists: {path}", details={"path": str(path)}
                ) from e
            return path

        return self._run(path, _create)

    def list_temp_directories(self, base_dir: Path) -> list[Path]:
        tmp_root = base_dir / "tmp"
        return [p for p in self.list_directory(tmp_root) if p.is_dir() and not p.is_symlink()]

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def read_text(self, path: Path) -> str:
        return self._run(path, lambda: path.read_text(encoding="utf-8"))

    def read_json(self, path: Path) -> Any | None:
        """Load a JSON document.

        Returns:
            Parsed JSON, or None if the file does not exist

        Raises:
            CorruptionError: If the file is not valid JSON
        """
        if not path.exists():
            return None

        def _load() -> Any:
            with open(path, encoding="utf-8") as f:
                return json.load(f)

        try:
            return self._run(path, _load)
        except json.JSONDecodeError as e:
            raise CorruptionError(
                f"Invalid JSON in {path}: {e}", "JSON_CORRUPTED", {"path": str(path)}
            ) from e

    def write_json_atomic(self, path: Path, data: Any, indent: int = 2) -> None:
        """Write JSON via temp-file, fsync and rename.

        Readers never observe a partially written file: the document is
        written next to its destination and swapped in with ``os.replace``.
        """

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=indent, default=str)
                    f.write("\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                with_suppressed_unlink(Path(tmp_name))
                raise

        self._run(path, _write)

    def calculate_checksum(self, path: Path) -> str:
        return self._run(path, compute_tree_checksum, path)

    def file_digest(self, path: Path) -> str:
        return self._run(path, compute_file_hash, path)

    # -------------------------------------------------------------------------
    # Symlinks
    # -------------------------------------------------------------------------

    def read_symlink(self, link: Path) -> Path | None:
        """Return the target of ``link``, or None if it is not a symlink."""
        if not link.is_symlink():
            return None
        return self._run(link, lambda: Path(os.readlink(link)))

    def create_symlink_atomic(self, link: Path, target: Path) -> None:
        """Point ``link`` at ``target``, replacing any existing symlink atomically.

        Raises:
            ConflictError: If ``link`` exists and is not a symlink
        """
        if link.exists() and not link.is_symlink():
            raise ConflictError(
                f"Refusing to replace non-symlink path: {link}", details={"path": str(link)}
            )

        def _swap() -> None:
            link.parent.mkdir(parents=True, exist_ok=True)
            tmp_link = link.with_name(f".{link.name}.{uuid.uuid4().hex[:8]}.tmp")
            os.symlink(target, tmp_link, target_is_directory=True)
            try:
                os.replace(tmp_link, link)
            except BaseException:
                with_suppressed_unlink(tmp_link)
                raise

        self._run(link, _swap)

    def remove_symlink(self, link: Path) -> bool:
        """Remove a symlink.

        Returns:
            True if removed, False if nothing was there

        Raises:
            ConflictError: If ``link`` is a real file or directory
        """
        if not link.is_symlink():
            if link.exists():
                raise ConflictError(f"Not a symlink: {link}", details={"path": str(link)})
            return False
        self._run(link, link.unlink)
        return True


def with_suppressed_unlink(path: Path) -> None:
    """Remove a leftover temp file, logging instead of raising."""
    try:
        if os.path.lexists(path):
            path.unlink()
    except OSError as e:
        logger.warning("Could not remove temp file %s: %s", path, e)
