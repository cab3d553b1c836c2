"""State maintenance operations: list, show, remove, backup, restore, unlock.

Mutating operations (``remove`` and ``restore``) hold the environment lock
and take a snapshot before touching remote state. Every operation sends one
notification describing its result.
"""
from __future__ import annotations

import logging
import tempfile
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from .batch import validate_address
from .config import AppConfig
from .errors import BackendUnavailable, TfStateCtlError, ValidationError
from .locking import LockManager
from .models import Environment, StateSnapshot
from .providers.azure import AzureCliError
from .providers.notifier import (
    NotificationError,
    NotificationResult,
    NotificationStatus,
    WebhookNotifier,
)
from .providers.terraform import TerraformError
from .reporting import ReportError, Reporter
from .snapshots import StateSnapshotter

LOGGER = logging.getLogger(__name__)

ALL_ENVIRONMENTS = "all"


class StateBackend(Protocol):
    """Terraform commands used by the state operations."""

    def ensure_version(self, pinned: Any) -> Any: ...

    def init(self, backend: Any = None) -> Any: ...

    def state_list(self) -> list[str]: ...

    def state_show(self, address: str) -> str: ...

    def state_pull(self) -> str: ...

    def state_rm(self, address: str) -> Any: ...

    def force_unlock(self, lock_id: str) -> Any: ...


class BlobStore(Protocol):
    """Blob storage used to restore a backup over remote state."""

    def blob_download(
        self, *, account: str, container: str, name: str, destination: Path
    ) -> Path: ...

    def blob_upload(
        self,
        *,
        account: str,
        container: str,
        name: str,
        source: Path,
        overwrite: bool = False,
    ) -> str: ...


@dataclass(slots=True)
class StateOpResult:
    """Result of a state operation, as reported to the CLI."""

    operation: str
    environment: str
    message: str
    changed: int = 0
    details: dict[str, object] = field(default_factory=dict)
    artifacts: list[Path] = field(default_factory=list)
    snapshots: list[StateSnapshot] = field(default_factory=list)
    notification: NotificationResult | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "operation": self.operation,
            "environment": self.environment,
            "message": self.message,
            "changed": self.changed,
            "details": dict(self.details),
            "artifacts": [str(path) for path in self.artifacts],
            "snapshots": [snapshot.to_dict() for snapshot in self.snapshots],
            "notification": (
                {
                    "sent": self.notification.sent,
                    "skipped": self.notification.skipped,
                    "detail": self.notification.detail,
                }
                if self.notification
                else None
            ),
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class StateOperations:
    """Run state maintenance commands against configured environments."""

    config: AppConfig
    backend_factory: Callable[[Environment], StateBackend]
    storage: BlobStore
    snapshotter: StateSnapshotter
    reporter: Reporter
    notifier: WebhookNotifier
    locks: LockManager | None = None

    # Read-only --------------------------------------------------------
    def list_resources(self, environment: Environment) -> StateOpResult:
        """List every address in *environment*'s state."""

        def action() -> StateOpResult:
            backend = self._prepare(environment)
            addresses = backend.state_list()
            artifact = self._write_artifact(
                environment, f"state-list-{environment.value}.txt", addresses
            )
            return StateOpResult(
                operation="list",
                environment=environment.value,
                message=f"Found {len(addresses)} resources in {environment.value} state.",
                details={"addresses": addresses, "count": len(addresses)},
                artifacts=[artifact] if artifact else [],
            )

        return self._notified("list", environment.value, action)

    def show(self, environment: Environment, address: str) -> StateOpResult:
        """Show the state of one bound address."""
        resolved = validate_address(address, label="resource address")

        def action() -> StateOpResult:
            backend = self._prepare(environment)
            self._require_bound(backend, environment, resolved)
            rendered = _terraform(lambda: backend.state_show(resolved))
            artifact = self._write_artifact(
                environment,
                f"resource-details-{environment.value}.txt",
                rendered.splitlines(),
            )
            return StateOpResult(
                operation="show",
                environment=environment.value,
                message=f"Showing details for resource: {resolved}",
                details={"address": resolved, "state": rendered},
                artifacts=[artifact] if artifact else [],
            )

        return self._notified("show", environment.value, action)

    # Mutating ---------------------------------------------------------
    def remove(self, environment: Environment, address: str) -> StateOpResult:
        """Remove *address* from state after snapshotting it."""
        resolved = validate_address(address, label="resource address")

        def action() -> StateOpResult:
            with self._locked(environment):
                backend = self._prepare(environment)
                self._require_bound(backend, environment, resolved)
                snapshot = self.snapshotter.take(environment, backend, operation="remove")
                rendered = _terraform(lambda: backend.state_show(resolved))
                stamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
                artifact = self._write_artifact(
                    environment,
                    f"removed-resource-details-{stamp}.txt",
                    rendered.splitlines(),
                )
                _terraform(lambda: backend.state_rm(resolved))
                remaining = backend.state_list()
            return StateOpResult(
                operation="remove",
                environment=environment.value,
                message=f"Resource {resolved} removed from state.",
                changed=1,
                details={"address": resolved, "remaining": remaining},
                artifacts=[artifact] if artifact else [],
                snapshots=[snapshot],
            )

        return self._notified("remove", environment.value, action, subject=resolved)

    def backup(self, environment: Environment | None = None) -> StateOpResult:
        """Snapshot one environment, or every configured one when *environment* is ``None``."""
        targets = [environment] if environment else sorted(
            self.config.environments, key=lambda env: env.value
        )
        label = environment.value if environment else ALL_ENVIRONMENTS

        def action() -> StateOpResult:
            snapshots: list[StateSnapshot] = []
            for target in targets:
                backend = self._prepare(target)
                snapshots.append(self.snapshotter.take(target, backend, operation="backup"))
            names = ", ".join(snapshot.name for snapshot in snapshots)
            return StateOpResult(
                operation="backup",
                environment=label,
                message=f"Backed up {len(snapshots)} state file(s): {names}",
                changed=len(snapshots),
                snapshots=snapshots,
            )

        return self._notified("backup", label, action)

    def restore(
        self,
        environment: Environment,
        backup_name: str,
        *,
        confirmed: bool = False,
    ) -> StateOpResult:
        """Overwrite *environment*'s remote state with a backup blob."""
        name = (backup_name or "").strip()
        if not name:
            raise ValidationError("A backup name is required for restore.")
        if not confirmed:
            raise ValidationError(
                "Restoring overwrites remote state; re-run with --yes to confirm."
            )
        snapshots_config = self.config.snapshots
        if not snapshots_config.remote_enabled:
            raise ValidationError(
                "snapshots.backup_account and snapshots.backup_container must be configured "
                "to restore from backup storage."
            )
        backend_config = self.config.environment(environment).backend
        if backend_config is None:
            raise ValidationError(
                f"environments.{environment.value}.backend must be configured to restore state."
            )
        blob_name = name if "/" in name else f"{environment.value}/{name}"

        def action() -> StateOpResult:
            with self._locked(environment):
                backend = self._prepare(environment)
                safety = self.snapshotter.take(environment, backend, operation="restore")
                with tempfile.TemporaryDirectory(prefix="tfstatectl-restore-") as tmp:
                    restored = Path(tmp) / "restored.tfstate"
                    try:
                        self.storage.blob_download(
                            account=str(snapshots_config.backup_account),
                            container=str(snapshots_config.backup_container),
                            name=blob_name,
                            destination=restored,
                        )
                        target = self.storage.blob_upload(
                            account=backend_config.storage_account_name,
                            container=backend_config.container_name,
                            name=backend_config.key,
                            source=restored,
                            overwrite=True,
                        )
                    except AzureCliError as exc:
                        raise BackendUnavailable(str(exc)) from exc
            return StateOpResult(
                operation="restore",
                environment=environment.value,
                message=f"Restored {blob_name} over {target}.",
                changed=1,
                details={"backup": blob_name, "target": target},
                snapshots=[safety],
            )

        return self._notified("restore", environment.value, action, subject=blob_name)

    def unlock(self, environment: Environment, lock_id: str) -> StateOpResult:
        """Release a stuck backend lock."""
        resolved = (lock_id or "").strip()
        if not resolved:
            raise ValidationError("A lock id is required for unlock (see the lock error output).")

        def action() -> StateOpResult:
            backend = self._prepare(environment)
            _terraform(lambda: backend.force_unlock(resolved))
            return StateOpResult(
                operation="unlock",
                environment=environment.value,
                message=f"Released state lock {resolved}.",
                changed=1,
                details={"lock_id": resolved},
            )

        return self._notified("unlock", environment.value, action, subject=resolved)

    # Helpers ----------------------------------------------------------
    def _prepare(self, environment: Environment) -> StateBackend:
        backend = self.backend_factory(environment)
        backend.ensure_version(self.config.terraform.pinned_version)
        backend.init(self.config.environment(environment).backend)
        return backend

    def _require_bound(self, backend: StateBackend, environment: Environment, address: str) -> None:
        addresses = backend.state_list()
        if address not in addresses:
            raise ValidationError(
                f"Resource '{address}' not found in {environment.value} state "
                f"({len(addresses)} resources present)."
            )

    @contextmanager
    def _locked(self, environment: Environment) -> Iterator[None]:
        if self.locks is None:
            yield
            return
        with self.locks.environment_lock(environment.value):
            yield

    def _write_artifact(
        self, environment: Environment, name: str, lines: Iterable[str]
    ) -> Path | None:
        try:
            return self.reporter.write_lines(environment, name, lines)
        except ReportError as exc:
            LOGGER.warning("%s", exc)
            return None

    def _notified(
        self,
        operation: str,
        environment: str,
        action: Callable[[], StateOpResult],
        *,
        subject: str | None = None,
    ) -> StateOpResult:
        suffix = f" ({subject})" if subject else ""
        try:
            result = action()
        except TfStateCtlError as exc:
            self._notify(
                NotificationStatus.FAILURE,
                environment,
                f"State {operation} operation failed{suffix}: {exc}",
                {"Operation": operation},
            )
            raise
        notification, warning = self._notify(
            NotificationStatus.SUCCESS,
            environment,
            f"State {operation} operation completed successfully{suffix}.",
            {"Operation": operation, "Changed": result.changed},
        )
        result.notification = notification
        if warning:
            result.warnings.append(warning)
        return result

    def _notify(
        self,
        status: NotificationStatus,
        environment: str,
        message: str,
        metadata: dict[str, object],
    ) -> tuple[NotificationResult, str | None]:
        try:
            return self.notifier.notify(status, environment, message, metadata), None
        except NotificationError as exc:
            warning = f"Notification not delivered: {exc}"
            LOGGER.warning("%s", warning)
            return NotificationResult(sent=False, detail=str(exc)), warning


def _terraform(call: Callable[[], Any]) -> Any:
    try:
        return call()
    except TerraformError as exc:
        raise BackendUnavailable(str(exc)) from exc


__all__ = ["ALL_ENVIRONMENTS", "StateOpResult", "StateOperations"]
