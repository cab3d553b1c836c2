"""Tests for the import request parse-and-validate boundary."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from tfstatectl.batch import (
    load_batch,
    parse_batch,
    resolve_request,
    validate_address,
    validate_individual,
)
from tfstatectl.errors import ValidationError
from tfstatectl.exit_codes import ExitCode
from tfstatectl.models import Environment, OperationKind

RG_ID = "/subscriptions/0000/resourceGroups/my-rg"


def _write_json(path: Path, payload: object) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.mark.parametrize(
    "address",
    [
        "azurerm_resource_group.main",
        "module.network.azurerm_virtual_network.hub",
        'module.apps["web"].azurerm_linux_web_app.site[0]',
        "azurerm_storage_account.logs[3]",
        "module.data.azurerm_resource_group.main",
    ],
)
def test_validate_address_accepts_resource_addresses(address: str) -> None:
    """Well-formed resource addresses pass through unchanged."""
    assert validate_address(f"  {address} ") == address


@pytest.mark.parametrize(
    ("address", "fragment"),
    [
        ("", "is required"),
        ("data.azurerm_client_config.current", "data source"),
        ("module.network.data.azurerm_subnet.app", "data source"),
        ('module.apps["web"].data.azurerm_client_config.current', "data source"),
        ("azurerm_resource_group", "not a valid resource address"),
        ("azurerm resource group.main", "not a valid resource address"),
    ],
)
def test_validate_address_rejects_malformed(address: str, fragment: str) -> None:
    """Malformed addresses raise a ValidationError."""
    with pytest.raises(ValidationError, match=fragment):
        validate_address(address)


def test_validate_individual_requires_both_parameters() -> None:
    """A missing external id is rejected before anything else happens."""
    with pytest.raises(ValidationError, match="Both resource address and resource id") as excinfo:
        validate_individual("azurerm_resource_group.main", None)

    assert excinfo.value.exit_code == ExitCode.VALIDATION


def test_validate_individual_builds_spec() -> None:
    """Valid parameters produce an ImportSpec."""
    spec = validate_individual("azurerm_resource_group.main", f" {RG_ID} ", " primary ")

    assert spec.resource_address == "azurerm_resource_group.main"
    assert spec.external_id == RG_ID
    assert spec.description == "primary"


def test_load_batch_reads_json(tmp_path: Path) -> None:
    """JSON batch files become ordered ImportBatch values."""
    source = _write_json(
        tmp_path / "imports.json",
        {
            "description": "adopt legacy groups",
            "environment": "staging",
            "imports": [
                {"resource_address": "azurerm_resource_group.a", "resource_id": f"{RG_ID}-a"},
                {
                    "resource_address": "azurerm_resource_group.b",
                    "resource_id": f"{RG_ID}-b",
                    "description": "second",
                },
            ],
        },
    )

    batch = load_batch(source, Environment.STAGING)

    assert batch.environment is Environment.STAGING
    assert batch.description == "adopt legacy groups"
    assert batch.source == source
    assert [spec.resource_address for spec in batch.imports] == [
        "azurerm_resource_group.a",
        "azurerm_resource_group.b",
    ]
    assert batch.imports[1].description == "second"


def test_load_batch_reads_yaml(tmp_path: Path) -> None:
    """YAML batch files are accepted as well."""
    source = tmp_path / "imports.yml"
    source.write_text(
        "imports:\n"
        "  - resource_address: azurerm_resource_group.main\n"
        f"    resource_id: {RG_ID}\n",
        encoding="utf-8",
    )

    batch = load_batch(source, Environment.PRODUCTION)

    assert batch.imports[0].external_id == RG_ID


def test_load_batch_requires_path() -> None:
    """Bulk imports need a batch file."""
    with pytest.raises(ValidationError, match="config file is required"):
        load_batch(None, Environment.STAGING)


def test_load_batch_missing_file_shows_example(tmp_path: Path) -> None:
    """A missing file is reported together with the expected format."""
    with pytest.raises(ValidationError, match="resource_address"):
        load_batch(tmp_path / "absent.json", Environment.STAGING)


def test_load_batch_rejects_invalid_json(tmp_path: Path) -> None:
    """Syntactically invalid JSON is a validation failure."""
    source = tmp_path / "imports.json"
    source.write_text("{not json", encoding="utf-8")

    with pytest.raises(ValidationError, match="Invalid JSON format"):
        load_batch(source, Environment.STAGING)


@pytest.mark.parametrize(
    ("payload", "fragment"),
    [
        ([], "object at the top level"),
        ({"imports": [], "extra": 1}, "unknown keys: extra"),
        ({"imports": {}}, "'imports' list"),
        ({"imports": []}, "does not list any imports"),
        ({"imports": ["x"]}, r"imports\[0\] must be an object"),
        (
            {"imports": [{"resource_address": "azurerm_resource_group.a"}]},
            "resource_id must be a non-empty string",
        ),
        (
            {
                "imports": [
                    {"resource_address": "azurerm_resource_group.a", "resource_id": "1"},
                    {"resource_address": "azurerm_resource_group.a", "resource_id": "2"},
                ]
            },
            "repeats resource address",
        ),
        (
            {
                "environment": "production",
                "imports": [{"resource_address": "azurerm_resource_group.a", "resource_id": "1"}],
            },
            "targets environment 'production'",
        ),
    ],
)
def test_parse_batch_rejects_malformed_documents(payload: object, fragment: str) -> None:
    """Malformed batch documents never produce a batch."""
    with pytest.raises(ValidationError, match=fragment):
        parse_batch(payload, Environment.STAGING)


def test_resolve_request_dry_run_accepts_either_form(tmp_path: Path) -> None:
    """Dry runs take a batch file or an individual pair."""
    source = _write_json(
        tmp_path / "imports.json",
        {"imports": [{"resource_address": "azurerm_resource_group.a", "resource_id": "1"}]},
    )

    from_file = resolve_request(OperationKind.DRY_RUN, Environment.STAGING, config_file=source)
    from_pair = resolve_request(
        OperationKind.DRY_RUN,
        Environment.STAGING,
        resource_address="azurerm_resource_group.b",
        external_id="2",
    )

    assert [spec.resource_address for spec in from_file.imports] == ["azurerm_resource_group.a"]
    assert [spec.resource_address for spec in from_pair.imports] == ["azurerm_resource_group.b"]


def test_resolve_request_dry_run_without_input_fails() -> None:
    """A dry run with nothing to check is rejected."""
    with pytest.raises(ValidationError, match="--batch-file"):
        resolve_request(OperationKind.DRY_RUN, Environment.STAGING)
