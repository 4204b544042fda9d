"""Backup archives of instance data directories and their JSON index."""
from __future__ import annotations

import fcntl
import hashlib
import json
import os
import subprocess
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

ARCHIVE_SUFFIX = ".tar.gz"


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def backup_timestamp(now: datetime | None = None) -> str:
    """Return a filename-safe UTC timestamp with microsecond resolution."""
    moment = now or datetime.now(tz=UTC)
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


@dataclass(slots=True)
class BackupsRegistry:
    """Manage archives and the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def archive_path(self, identifier: str, timestamp: str) -> Path:
        """Return the archive location for *identifier* taken at *timestamp*."""
        normalised = _normalise_identifier(identifier, label="Instance identifier")
        return self.root / f"{normalised}_{timestamp}{ARCHIVE_SUFFIX}"

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            text = self.index.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index under an exclusive lock."""
        with self._locked():
            data = self.read()
            backups = data.get("backups")
            if isinstance(backups, list):
                updated: list[object] = list(backups)
            else:
                updated = []
            updated.append(dict(entry))
            self.write({"backups": updated})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        data = self.read()
        backups = data.get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def entries_for_instance(self, identifier: str) -> list[dict[str, object]]:
        """Return entries associated with *identifier*."""
        normalized = _normalise_identifier(identifier, label="Instance identifier")
        return [
            entry
            for entry in self.list_entries()
            if str(entry.get("instance", "")).strip() == normalized
        ]

    @contextmanager
    def _locked(self) -> Iterator[None]:
        lock_path = self.index.with_name(f"{self.index.name}.lock")
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = lock_path.open("a+", encoding="utf-8")
        except OSError as exc:
            raise BackupRegistryError(f"Failed to open backup index lock {lock_path}: {exc}") from exc
        with handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@dataclass(slots=True)
class BackupEntryBuilder:
    """Helper for constructing backup index entries."""

    identifier: str
    archive_path: Path
    checksum: str
    size_bytes: int
    timestamp: str
    source: Path | None = None

    def build(self) -> dict[str, object]:
        """Return the JSON-serialisable entry for the backup index."""
        entry: dict[str, object] = {
            "id": self.archive_path.name[: -len(ARCHIVE_SUFFIX)],
            "instance": self.identifier,
            "created_at": _now_iso(),
            "timestamp": self.timestamp,
            "path": str(self.archive_path),
            "algorithm": "gzip",
            "size_bytes": self.size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "status": "available",
        }
        if self.source is not None:
            entry["source"] = str(self.source)
        return entry


def create_archive(
    source_dir: Path,
    archive_path: Path,
    *,
    tar_bin: str = "tar",
    timeout: float | None = None,
) -> None:
    """Write the contents of *source_dir* to a gzip tarball at *archive_path*.

    Members are stored relative to *source_dir* so extracting the archive
    reproduces the directory tree without a leading path component.
    """
    if not source_dir.is_dir():
        raise BackupError(f"Backup source {source_dir} is not a directory.")
    if archive_path.exists():
        raise BackupError(f"Backup archive {archive_path} already exists.")
    archive_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [tar_bin, "-czf", str(archive_path), "-C", str(source_dir), "."]
    try:
        result = subprocess.run(  # noqa: S603, S607 - controlled command execution
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise BackupError(f"{tar_bin} not found: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        archive_path.unlink(missing_ok=True)
        raise BackupError(f"tar timed out after {exc.timeout}s while archiving {source_dir}.") from exc
    if result.returncode != 0:
        archive_path.unlink(missing_ok=True)
        message = result.stderr or result.stdout or "tar command failed"
        raise BackupError(message.strip())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = [
    "BackupEntryBuilder",
    "BackupError",
    "BackupRegistryError",
    "BackupsRegistry",
    "backup_timestamp",
    "compute_checksum",
    "create_archive",
]
