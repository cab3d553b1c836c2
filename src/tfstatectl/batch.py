"""Parse-and-validate boundary for import requests.

Nothing in this module has side effects: it turns command line parameters or
a batch file into an :class:`~tfstatectl.models.ImportBatch`, or raises
:class:`~tfstatectl.errors.ValidationError` before anything touches state.

Batch files look like::

    {
      "description": "Adopt the legacy resource groups",
      "environment": "staging",
      "imports": [
        {
          "resource_address": "azurerm_resource_group.main",
          "resource_id": "/subscriptions/.../resourceGroups/my-rg",
          "description": "Primary resource group"
        }
      ]
    }

YAML with the same shape is accepted as well.
"""
from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import Path

import yaml

from .errors import ValidationError
from .models import Environment, ImportBatch, ImportSpec, OperationKind

_NAME = r"[A-Za-z_][A-Za-z0-9_-]*"
_INDEX = r"\[(?:\d+|\"[^\"]*\")\]"
ADDRESS_PATTERN = re.compile(
    rf"^(?:module\.{_NAME}(?:{_INDEX})?\.)*[A-Za-z][A-Za-z0-9_]*\.{_NAME}(?:{_INDEX})?$"
)
_MODULE_PREFIX = re.compile(rf"^(?:module\.{_NAME}(?:{_INDEX})?\.)*")

_BATCH_KEYS = {"description", "environment", "imports"}
_ENTRY_KEYS = {"resource_address", "resource_id", "description"}

BATCH_EXAMPLE = """{
  "imports": [
    {
      "resource_address": "azurerm_resource_group.main",
      "resource_id": "/subscriptions/.../resourceGroups/my-rg"
    }
  ]
}"""


def validate_address(address: str | None, *, label: str = "resource_address") -> str:
    """Return *address* stripped, or raise when it is not a Terraform resource address."""
    value = (address or "").strip()
    if not value:
        raise ValidationError(f"{label} is required (e.g. azurerm_resource_group.main).")
    if _MODULE_PREFIX.sub("", value, count=1).startswith("data."):
        raise ValidationError(
            f"{label} '{value}' refers to a data source; only resources can be imported."
        )
    if not ADDRESS_PATTERN.match(value):
        raise ValidationError(
            f"{label} '{value}' is not a valid resource address "
            "(expected [module.<name>.]<type>.<name>[<index>])."
        )
    return value


def validate_individual(
    resource_address: str | None,
    external_id: str | None,
    description: str | None = None,
) -> ImportSpec:
    """Validate the parameters of an individual import."""
    if not (resource_address or "").strip() or not (external_id or "").strip():
        raise ValidationError(
            "Both resource address and resource id are required for individual imports "
            "(e.g. azurerm_resource_group.main /subscriptions/.../resourceGroups/my-rg)."
        )
    return ImportSpec(
        resource_address=validate_address(resource_address),
        external_id=str(external_id).strip(),
        description=(description or "").strip() or None,
    )


def load_batch(path: str | Path | None, environment: Environment) -> ImportBatch:
    """Read and validate the batch file at *path* for *environment*."""
    if path is None or not str(path).strip():
        raise ValidationError("An import config file is required for bulk imports.")
    source = Path(path).expanduser()
    if not source.is_file():
        raise ValidationError(
            f"Import configuration file not found: {source}\n"
            f"Expected a document like:\n{BATCH_EXAMPLE}"
        )
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"Unable to read import configuration {source}: {exc}") from exc
    return parse_batch(_decode(text, source), environment, source=source)


def parse_batch(
    data: object,
    environment: Environment,
    *,
    source: Path | None = None,
) -> ImportBatch:
    """Validate an already-decoded batch document."""
    label = str(source) if source else "import configuration"
    if not isinstance(data, Mapping):
        raise ValidationError(f"{label} must contain an object at the top level.")
    unknown = {str(key) for key in data.keys()} - _BATCH_KEYS
    if unknown:
        raise ValidationError(f"{label} has unknown keys: {', '.join(sorted(unknown))}.")

    declared = data.get("environment")
    if declared is not None and str(declared).strip() != environment.value:
        raise ValidationError(
            f"{label} targets environment '{declared}' but '{environment.value}' was selected."
        )

    raw_imports = data.get("imports")
    if not isinstance(raw_imports, list):
        raise ValidationError(f"{label} must define an 'imports' list.")
    if not raw_imports:
        raise ValidationError(f"{label} does not list any imports.")

    specs: list[ImportSpec] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw_imports):
        spec = _parse_entry(entry, f"{label}: imports[{index}]")
        if spec.resource_address in seen:
            raise ValidationError(
                f"{label}: imports[{index}] repeats resource address '{spec.resource_address}'."
            )
        seen.add(spec.resource_address)
        specs.append(spec)

    description = data.get("description")
    return ImportBatch(
        environment=environment,
        imports=tuple(specs),
        description=str(description).strip() if description else None,
        source=source,
    )


def resolve_request(
    operation: OperationKind,
    environment: Environment,
    *,
    resource_address: str | None = None,
    external_id: str | None = None,
    config_file: str | Path | None = None,
    description: str | None = None,
) -> ImportBatch:
    """Turn command line parameters for *operation* into a validated batch."""
    if operation is OperationKind.INDIVIDUAL:
        spec = validate_individual(resource_address, external_id, description)
        return ImportBatch(environment=environment, imports=(spec,))
    if operation is OperationKind.BULK:
        return load_batch(config_file, environment)
    if config_file:
        return load_batch(config_file, environment)
    if resource_address or external_id:
        spec = validate_individual(resource_address, external_id, description)
        return ImportBatch(environment=environment, imports=(spec,))
    raise ValidationError(
        "A dry run needs either --address/--id or --batch-file to describe the imports."
    )


def _decode(text: str, source: Path) -> object:
    if source.suffix.lower() == ".json":
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid JSON format in {source}: {exc}") from exc
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError(f"Invalid YAML format in {source}: {exc}") from exc


def _parse_entry(entry: object, label: str) -> ImportSpec:
    if not isinstance(entry, Mapping):
        raise ValidationError(f"{label} must be an object.")
    unknown = {str(key) for key in entry.keys()} - _ENTRY_KEYS
    if unknown:
        raise ValidationError(f"{label} has unknown keys: {', '.join(sorted(unknown))}.")
    address = entry.get("resource_address")
    resource_id = entry.get("resource_id")
    if not isinstance(address, str):
        raise ValidationError(f"{label}.resource_address must be a string.")
    if not isinstance(resource_id, str) or not resource_id.strip():
        raise ValidationError(f"{label}.resource_id must be a non-empty string.")
    description = entry.get("description")
    if description is not None and not isinstance(description, str):
        raise ValidationError(f"{label}.description must be a string when provided.")
    return ImportSpec(
        resource_address=validate_address(address, label=f"{label}.resource_address"),
        external_id=resource_id.strip(),
        description=description.strip() if description else None,
    )


__all__ = [
    "ADDRESS_PATTERN",
    "load_batch",
    "parse_batch",
    "resolve_request",
    "validate_address",
    "validate_individual",
]
