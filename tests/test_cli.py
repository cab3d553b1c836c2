"""Tests for the tfstatectl command line interface."""
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from tfstatectl import __version__
from tfstatectl import cli as cli_module
from tfstatectl.cli import app
from tfstatectl.errors import BackendUnavailable
from tfstatectl.exit_codes import ExitCode

runner = CliRunner()

RG = "/subscriptions/0000/resourceGroups"


def _extract_json(output: str) -> dict[str, Any]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _last_operation(tmp_path: Path) -> dict[str, Any]:
    lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


@pytest.fixture
def fakes(
    monkeypatch: pytest.MonkeyPatch,
    make_terraform: Callable[..., Any],
    make_inventory: Callable[..., Any],
) -> tuple[Any, Any]:
    """Route the CLI's terraform and az providers to in-memory fakes."""
    terraform = make_terraform(bound=["azurerm_storage_account.logs"])
    inventory = make_inventory(existing={f"{RG}/ready"})
    monkeypatch.setattr(cli_module, "TerraformProvider", lambda **kwargs: terraform)
    monkeypatch.setattr(cli_module, "AzureCliProvider", lambda **kwargs: inventory)
    return terraform, inventory


def test_version_option_outputs_package_version(config_env: dict[str, str]) -> None:
    """CLI ``--version`` flag emits the package version."""
    result = runner.invoke(app, ["--version"], env=config_env)

    assert result.exit_code == 0
    assert f"tfstatectl {__version__}" in result.stdout


def test_invocation_without_subcommand_shows_help(config_env: dict[str, str]) -> None:
    """Calling the CLI without a subcommand shows help output."""
    result = runner.invoke(app, env=config_env)

    assert result.exit_code == 0
    assert "Terraform import orchestrator" in result.stdout


def test_config_show_json(config_env: dict[str, str], tmp_path: Path) -> None:
    """`config show --json` emits the resolved configuration."""
    result = runner.invoke(app, ["config", "show", "--json"], env=config_env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state_dir"] == str(tmp_path / "state")
    assert payload["lock_timeout"] == 1.0
    assert payload["notifications"]["webhook_url"] is None


def test_invalid_config_exits_with_validation_code(
    config_env: dict[str, str],
    tmp_path: Path,
) -> None:
    """Configuration errors stop the CLI before any command runs."""
    config_file = tmp_path / "config.yml"
    config_file.write_text("bogus: true\n", encoding="utf-8")

    result = runner.invoke(
        app,
        ["--config-file", str(config_file), "config", "show"],
        env=config_env,
    )

    assert result.exit_code == ExitCode.VALIDATION
    assert "Unknown configuration keys: bogus" in result.stdout


def test_empty_environment_exits_with_validation_code(
    config_env: dict[str, str],
    fakes: tuple[Any, Any],
    tmp_path: Path,
) -> None:
    """An environment configured as null is rejected before any terraform call."""
    terraform, _ = fakes
    config_file = tmp_path / "config.yml"
    config_file.write_text("environments:\n  staging: null\n", encoding="utf-8")

    result = runner.invoke(
        app,
        [
            "--config-file",
            str(config_file),
            "import",
            "dry-run",
            "--env",
            "staging",
            "--address",
            "azurerm_resource_group.main",
            "--id",
            f"{RG}/main",
        ],
        env=config_env,
    )

    assert result.exit_code == ExitCode.VALIDATION
    assert "environments.staging must be a mapping" in result.stdout
    assert terraform.calls == []


def test_import_individual_success(
    config_env: dict[str, str],
    fakes: tuple[Any, Any],
    tmp_path: Path,
) -> None:
    """A single import runs end to end and is logged."""
    terraform, _ = fakes

    result = runner.invoke(
        app,
        [
            "import",
            "individual",
            "--env",
            "staging",
            "--address",
            "azurerm_resource_group.main",
            "--id",
            f"{RG}/main",
        ],
        env=config_env,
    )

    assert result.exit_code == 0, result.stdout
    assert "import-individual completed successfully." in result.stdout
    assert ("import", "azurerm_resource_group.main", f"{RG}/main") in terraform.calls
    record = _last_operation(tmp_path)
    assert record["command"] == "import individual"
    assert record["result"]["status"] == "success"
    assert record["result"]["changed"] == 1
    assert [step["name"] for step in record["steps"]][:3] == ["validate", "init", "snapshot"]


def test_import_individual_requires_id(
    config_env: dict[str, str],
    fakes: tuple[Any, Any],
    tmp_path: Path,
) -> None:
    """Missing parameters exit with the validation code and touch nothing."""
    terraform, _ = fakes

    result = runner.invoke(
        app,
        ["import", "individual", "-e", "staging", "-a", "azurerm_resource_group.main"],
        env=config_env,
    )

    assert result.exit_code == ExitCode.VALIDATION
    assert "Both resource address and resource id" in result.stdout
    assert terraform.calls == []
    assert _last_operation(tmp_path)["result"]["rc"] == ExitCode.VALIDATION


def test_import_bulk_partial_failure(
    config_env: dict[str, str],
    fakes: tuple[Any, Any],
    tmp_path: Path,
) -> None:
    """Bulk runs exit 1 when any import fails."""
    terraform, _ = fakes
    terraform.import_errors["azurerm_resource_group.b"] = (
        "Error: Cannot import non-existent remote object"
    )
    batch_file = tmp_path / "imports.yml"
    batch_file.write_text(
        "imports:\n"
        "  - resource_address: azurerm_resource_group.a\n"
        f"    resource_id: {RG}/a\n"
        "  - resource_address: azurerm_resource_group.b\n"
        f"    resource_id: {RG}/b\n"
        "  - resource_address: azurerm_storage_account.logs\n"
        f"    resource_id: {RG}/logs\n",
        encoding="utf-8",
    )

    result = runner.invoke(
        app,
        ["import", "bulk", "--env", "STAGING", "--batch-file", str(batch_file)],
        env=config_env,
    )

    assert result.exit_code == ExitCode.FAILED
    assert "1 of 3 import(s) failed." in result.stdout
    record = _last_operation(tmp_path)
    assert record["result"]["errors"] == ["azurerm_resource_group.b: failed-not-found"]
    report_dir = tmp_path / "state" / "reports" / "staging"
    reports = list(report_dir.glob("import-operation-report-*.json"))
    assert len(reports) == 1
    assert json.loads(reports[0].read_text(encoding="utf-8"))["exit_code"] == 1


def test_import_dry_run_json(
    config_env: dict[str, str],
    fakes: tuple[Any, Any],
) -> None:
    """Dry runs report readiness as JSON without mutating state."""
    terraform, _ = fakes

    result = runner.invoke(
        app,
        [
            "import",
            "dry-run",
            "-e",
            "staging",
            "-a",
            "azurerm_resource_group.ready",
            "--id",
            f"{RG}/ready",
            "--json",
        ],
        env=config_env,
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["operation"] == "import-dry-run"
    assert payload["results"][0]["outcome"] == "ready"
    assert payload["snapshot"] is None
    assert terraform.mutating_calls() == []


def test_import_aborts_when_backend_unreachable(
    config_env: dict[str, str],
    fakes: tuple[Any, Any],
) -> None:
    """Backend failures exit with the backend code."""
    terraform, _ = fakes
    terraform.pull_error = BackendUnavailable("backend unreachable")

    result = runner.invoke(
        app,
        ["import", "individual", "-e", "staging", "-a", "azurerm_resource_group.x", "--id", "1"],
        env=config_env,
    )

    assert result.exit_code == ExitCode.BACKEND
    assert "backend unreachable" in result.stdout
    assert terraform.mutating_calls() == []


def test_state_list_json(config_env: dict[str, str], fakes: tuple[Any, Any]) -> None:
    """`state list --json` returns the bound addresses."""
    result = runner.invoke(app, ["state", "list", "--env", "staging", "--json"], env=config_env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["details"]["addresses"] == ["azurerm_storage_account.logs"]


def test_state_show_unknown_address(config_env: dict[str, str], fakes: tuple[Any, Any]) -> None:
    """Showing an unbound address exits with the validation code."""
    result = runner.invoke(
        app,
        ["state", "show", "azurerm_resource_group.other", "--env", "staging"],
        env=config_env,
    )

    assert result.exit_code == ExitCode.VALIDATION
    assert "not found in staging state" in result.stdout


def test_state_remove_cancelled(config_env: dict[str, str], fakes: tuple[Any, Any]) -> None:
    """Declining the confirmation prompt leaves state untouched."""
    terraform, _ = fakes

    result = runner.invoke(
        app,
        ["state", "remove", "azurerm_storage_account.logs", "--env", "staging"],
        env=config_env,
        input="n\n",
    )

    assert result.exit_code == ExitCode.VALIDATION
    assert "Removal cancelled." in result.stdout
    assert terraform.mutating_calls() == []


def test_state_remove_with_yes(
    config_env: dict[str, str],
    fakes: tuple[Any, Any],
    tmp_path: Path,
) -> None:
    """`--yes` skips the prompt and snapshots before removing."""
    terraform, _ = fakes

    result = runner.invoke(
        app,
        ["state", "remove", "azurerm_storage_account.logs", "--env", "staging", "--yes"],
        env=config_env,
    )

    assert result.exit_code == 0, result.stdout
    assert terraform.bound == []
    snapshots = list((tmp_path / "state" / "snapshots" / "staging").glob("*.tfstate"))
    assert len(snapshots) == 1
    assert _last_operation(tmp_path)["result"]["snapshots"][0]["name"] == snapshots[0].name


def test_state_backup_requires_one_target(
    config_env: dict[str, str],
    fakes: tuple[Any, Any],
) -> None:
    """Backups take exactly one of --env or --all."""
    neither = runner.invoke(app, ["state", "backup"], env=config_env)
    both = runner.invoke(app, ["state", "backup", "--env", "staging", "--all"], env=config_env)

    assert neither.exit_code == ExitCode.VALIDATION
    assert both.exit_code == ExitCode.VALIDATION


def test_state_backup_all(config_env: dict[str, str], fakes: tuple[Any, Any]) -> None:
    """`state backup --all` snapshots every configured environment."""
    result = runner.invoke(app, ["state", "backup", "--all", "--json"], env=config_env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["environment"] == "all"
    assert [snapshot["environment"] for snapshot in payload["snapshots"]] == [
        "production",
        "staging",
    ]


def test_state_restore_requires_yes(config_env: dict[str, str], fakes: tuple[Any, Any]) -> None:
    """Restores refuse to run without --yes."""
    result = runner.invoke(
        app,
        ["state", "restore", "old.tfstate", "--env", "production"],
        env=config_env,
    )

    assert result.exit_code == ExitCode.VALIDATION
    assert "--yes" in result.stdout


def test_state_unlock(config_env: dict[str, str], fakes: tuple[Any, Any]) -> None:
    """`state unlock` forwards the lock id to terraform."""
    terraform, _ = fakes

    result = runner.invoke(app, ["state", "unlock", "abc-123", "--env", "staging"], env=config_env)

    assert result.exit_code == 0, result.stdout
    assert ("force_unlock", "abc-123") in terraform.calls
