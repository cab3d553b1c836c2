"""State snapshots taken before every state mutation.

A snapshot is the output of ``terraform state pull`` written to
``<root>/<environment>/state-backup-before-<operation>-<timestamp>.tfstate``,
recorded in a JSON index and optionally mirrored to a backup blob container.
Any failure while taking it raises :class:`~tfstatectl.errors.BackendUnavailable`
so that callers never mutate state without a fresh copy on disk.
"""
from __future__ import annotations

import hashlib
import json
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from .config import SnapshotConfig
from .errors import BackendUnavailable
from .logging import iso_timestamp
from .models import Environment, StateSnapshot
from .providers.azure import AzureCliError


class SnapshotRegistryError(RuntimeError):
    """Raised when the snapshot index cannot be read or written."""


class StatePuller(Protocol):
    """Anything that can produce the current remote state document."""

    def state_pull(self) -> str:
        """Return the raw state document."""


class BlobUploader(Protocol):
    """Anything that can copy a local file into blob storage."""

    def blob_upload(
        self,
        *,
        account: str,
        container: str,
        name: str,
        source: Path,
        overwrite: bool = False,
    ) -> str:
        """Upload *source* and return a reference to the blob."""


@dataclass(slots=True)
class SnapshotRegistry:
    """Manage the JSON snapshot index."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    def ensure_root(self) -> None:
        """Ensure the snapshot root exists with restrictive permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise SnapshotRegistryError(
                f"Failed to prepare snapshot root {self.root}: {exc}"
            ) from exc

    def directory_for(self, environment: Environment) -> Path:
        """Return the directory holding snapshots for *environment*."""
        return self.root / environment.value

    def list_entries(self) -> list[dict[str, object]]:
        """Return every index entry."""
        if not self.index.exists():
            return []
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SnapshotRegistryError(
                f"Snapshot index corrupted ({self.index}): {exc}"
            ) from exc
        raw = data.get("snapshots", []) if isinstance(data, Mapping) else []
        return [dict(item) for item in raw if isinstance(item, Mapping)]

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the index."""
        entries = self.list_entries()
        entries.append(dict(entry))
        self._write({"snapshots": entries})

    def _write(self, payload: Mapping[str, object]) -> None:
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise SnapshotRegistryError(f"Failed to write snapshot index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def snapshot_name(operation: str, timestamp: datetime) -> str:
    """Return the file name for a snapshot taken before *operation*."""
    safe = "".join(char if char.isalnum() or char == "-" else "-" for char in operation)
    return f"state-backup-before-{safe}-{timestamp:%Y%m%d-%H%M%S}.tfstate"


@dataclass(slots=True)
class StateSnapshotter:
    """Pull remote state and persist it before a mutation proceeds."""

    registry: SnapshotRegistry
    config: SnapshotConfig
    uploader: BlobUploader | None = None

    def take(
        self,
        environment: Environment,
        puller: StatePuller,
        *,
        operation: str = "import",
        run_label: str | None = None,
    ) -> StateSnapshot:
        """Create and persist a snapshot of *environment*'s state."""
        taken_at = datetime.now(tz=UTC)
        payload = puller.state_pull()

        directory = self.registry.directory_for(environment)
        path = _unique_path(directory, snapshot_name(operation, taken_at))
        data = payload.encode("utf-8")
        try:
            self.registry.ensure_root()
            directory.mkdir(parents=True, exist_ok=True)
            _write_durably(path, data)
        except (OSError, SnapshotRegistryError) as exc:
            raise BackendUnavailable(f"Unable to persist state snapshot {path}: {exc}") from exc

        remote: str | None = None
        if self.uploader is not None and self.config.remote_enabled:
            try:
                remote = self.uploader.blob_upload(
                    account=str(self.config.backup_account),
                    container=str(self.config.backup_container),
                    name=f"{environment.value}/{path.name}",
                    source=path,
                )
            except AzureCliError as exc:
                raise BackendUnavailable(f"Unable to upload state snapshot: {exc}") from exc

        snapshot = StateSnapshot(
            name=path.name,
            timestamp=iso_timestamp(taken_at),
            environment=environment,
            path=path,
            checksum=hashlib.sha256(data).hexdigest(),
            size_bytes=len(data),
            remote=remote,
        )
        entry = snapshot.to_dict()
        entry.update(
            {
                "operation": operation,
                "recorded_at": iso_timestamp(),
                "retention_days": self.config.retention_days,
            }
        )
        if run_label:
            entry["run"] = run_label
        try:
            self.registry.append(entry)
        except SnapshotRegistryError as exc:
            raise BackendUnavailable(str(exc)) from exc
        return snapshot


def _unique_path(directory: Path, name: str) -> Path:
    candidate = directory / name
    counter = 1
    while candidate.exists():
        stem = name.removesuffix(".tfstate")
        candidate = directory / f"{stem}-{counter}.tfstate"
        counter += 1
    return candidate


def _write_durably(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())


__all__ = [
    "SnapshotRegistry",
    "SnapshotRegistryError",
    "StateSnapshotter",
    "snapshot_name",
]
