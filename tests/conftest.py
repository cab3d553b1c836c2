"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from tfstatectl.errors import BackendUnavailable
from tfstatectl.providers.azure import ResourceExistence
from tfstatectl.providers.terraform import PlanStatus, TerraformError


class FakeTerraform:
    """In-memory stand-in for :class:`~tfstatectl.providers.TerraformProvider`."""

    def __init__(
        self,
        bound: list[str] | None = None,
        *,
        import_errors: dict[str, str] | None = None,
        plan_status: PlanStatus = PlanStatus.NO_CHANGES,
        pull_error: Exception | None = None,
        plan_error: str | None = None,
        state_document: str = '{"version": 4, "resources": []}',
    ) -> None:
        """Record the canned behaviour for each terraform command."""
        self.bound = list(bound or [])
        self.import_errors = dict(import_errors or {})
        self.plan_status = plan_status
        self.pull_error = pull_error
        self.plan_error = plan_error
        self.state_document = state_document
        self.calls: list[tuple[str, ...]] = []

    def ensure_version(self, pinned: object) -> object:
        """Accept any pinned version."""
        self.calls.append(("ensure_version",))
        return pinned

    def init(self, backend: object = None) -> None:
        """Pretend to initialise the working directory."""
        self.calls.append(("init",))

    def state_list(self) -> list[str]:
        """Return the bound addresses."""
        self.calls.append(("state_list",))
        return list(self.bound)

    def is_bound(self, address: str) -> bool:
        """Return whether *address* is bound."""
        self.calls.append(("is_bound", address))
        return address in self.bound

    def state_show(self, address: str) -> str:
        """Render a minimal state entry."""
        self.calls.append(("state_show", address))
        return f"# {address}:\nresource {{\n  id = \"fake\"\n}}\n"

    def state_pull(self) -> str:
        """Return the state document or raise the configured error."""
        self.calls.append(("state_pull",))
        if self.pull_error is not None:
            raise self.pull_error
        return self.state_document

    def import_resource(self, address: str, external_id: str) -> None:
        """Bind *address* unless an error was configured for it."""
        self.calls.append(("import", address, external_id))
        if address in self.import_errors:
            raise TerraformError(
                f"terraform import {address} failed (exit 1)",
                output=self.import_errors[address],
            )
        self.bound.append(address)

    def state_rm(self, address: str) -> None:
        """Forget *address*."""
        self.calls.append(("state_rm", address))
        self.bound.remove(address)

    def force_unlock(self, lock_id: str) -> None:
        """Record the unlock request."""
        self.calls.append(("force_unlock", lock_id))

    def refresh(self) -> None:
        """Record a refresh."""
        self.calls.append(("refresh",))

    def validate(self) -> None:
        """Record a validate."""
        self.calls.append(("validate",))

    def plan(self, out: Path | None = None) -> PlanStatus:
        """Return the configured plan status or fail."""
        self.calls.append(("plan",))
        if self.plan_error is not None:
            raise TerraformError(self.plan_error, returncode=1, output=self.plan_error)
        return self.plan_status

    def mutating_calls(self) -> list[tuple[str, ...]]:
        """Return the calls that would change remote state."""
        return [call for call in self.calls if call[0] in {"import", "state_rm"}]


class FakeInventory:
    """In-memory stand-in for :class:`~tfstatectl.providers.AzureCliProvider`."""

    def __init__(
        self,
        existing: set[str] | None = None,
        *,
        forbidden: set[str] | None = None,
    ) -> None:
        """Record which ids exist and which are forbidden."""
        self.existing = set(existing or set())
        self.forbidden = set(forbidden or set())
        self.uploads: list[dict[str, object]] = []
        self.downloads: list[dict[str, object]] = []
        self.blobs: dict[str, bytes] = {}

    def resource_exists(self, resource_id: str) -> ResourceExistence:
        """Answer from the canned sets."""
        if resource_id in self.forbidden:
            return ResourceExistence.FORBIDDEN
        if resource_id in self.existing:
            return ResourceExistence.EXISTS
        return ResourceExistence.NOT_FOUND

    def blob_upload(
        self,
        *,
        account: str,
        container: str,
        name: str,
        source: Path,
        overwrite: bool = False,
    ) -> str:
        """Store the uploaded bytes."""
        self.uploads.append(
            {"account": account, "container": container, "name": name, "overwrite": overwrite}
        )
        self.blobs[f"{account}/{container}/{name}"] = source.read_bytes()
        return f"{account}/{container}/{name}"

    def blob_download(
        self,
        *,
        account: str,
        container: str,
        name: str,
        destination: Path,
    ) -> Path:
        """Write a stored blob to *destination*."""
        self.downloads.append({"account": account, "container": container, "name": name})
        key = f"{account}/{container}/{name}"
        if key not in self.blobs:
            raise BackendUnavailable(f"blob {key} not found")
        destination.write_bytes(self.blobs[key])
        return destination


@pytest.fixture
def make_terraform() -> Callable[..., FakeTerraform]:
    """Return a factory for fake terraform backends."""
    return FakeTerraform


@pytest.fixture
def make_inventory() -> Callable[..., FakeInventory]:
    """Return a factory for fake cloud inventories."""
    return FakeInventory


@pytest.fixture
def config_env(tmp_path: Path) -> dict[str, str]:
    """Return environment variables pointing every directory into *tmp_path*."""
    return {
        "TFSTATECTL_CONFIG_FILE": str(tmp_path / "missing-config.yml"),
        "TFSTATECTL_STATE_DIR": str(tmp_path / "state"),
        "TFSTATECTL_LOGS_DIR": str(tmp_path / "logs"),
        "TFSTATECTL_RUNTIME_DIR": str(tmp_path / "run"),
        "TFSTATECTL_LOCK_TIMEOUT": "1",
    }
