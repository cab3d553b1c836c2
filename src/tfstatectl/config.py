"""Configuration loader for tfstatectl.

Configuration values are resolved once per invocation from these sources, in
increasing precedence:

1. Built-in defaults.
2. ``/etc/tfstatectl/config.yml`` (or an override path). JSON documents are
   accepted as well since they are valid YAML.
3. Environment variables prefixed with ``TFSTATECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export TFSTATECTL_TERRAFORM__VERSION=1.6.6
    export TFSTATECTL_NOTIFICATIONS__WEBHOOK_URL=https://example.invalid/hook

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The result is a tree of frozen dataclasses which the CLI
passes explicitly into every component; nothing reads configuration globally.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

from packaging.version import InvalidVersion, Version

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load tfstatectl configuration. Install with "
        "`pip install tfstatectl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .models import Environment

ENV_PREFIX = "TFSTATECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

WEBHOOK_PLACEHOLDER = "REPLACE_WITH_YOUR_TEAMS_WEBHOOK_URL"
LATEST_TERRAFORM = "latest"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class TerraformConfig:
    """Terraform CLI settings shared by every environment."""

    version: str = LATEST_TERRAFORM
    bin: str = "terraform"
    timeout: float | None = None

    @property
    def pinned_version(self) -> Version | None:
        """Return the pinned version, or ``None`` when tracking ``latest``."""
        if self.version == LATEST_TERRAFORM:
            return None
        return Version(self.version)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"version": self.version, "bin": self.bin, "timeout": self.timeout}


@dataclass(frozen=True)
class AzureConfig:
    """Azure CLI settings."""

    bin: str = "az"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin": self.bin}


@dataclass(frozen=True)
class BackendConfig:
    """Remote state location for one environment (azurerm backend)."""

    storage_account_name: str
    container_name: str
    resource_group_name: str
    key: str

    def init_args(self) -> list[str]:
        """Return ``-backend-config`` arguments for ``terraform init``."""
        return [
            f"-backend-config=storage_account_name={self.storage_account_name}",
            f"-backend-config=container_name={self.container_name}",
            f"-backend-config=resource_group_name={self.resource_group_name}",
            f"-backend-config=key={self.key}",
        ]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "storage_account_name": self.storage_account_name,
            "container_name": self.container_name,
            "resource_group_name": self.resource_group_name,
            "key": self.key,
        }


@dataclass(frozen=True)
class EnvironmentConfig:
    """Terraform working directory and backend for an environment."""

    name: Environment
    working_dir: Path
    backend: BackendConfig | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "working_dir": str(self.working_dir),
            "backend": self.backend.to_dict() if self.backend else None,
        }


@dataclass(frozen=True)
class SnapshotConfig:
    """Local snapshot storage and optional remote backup container."""

    root: Path
    index: Path
    retention_days: int = 90
    backup_account: str | None = None
    backup_container: str | None = None

    @property
    def remote_enabled(self) -> bool:
        """Return ``True`` when snapshots are mirrored to blob storage."""
        return bool(self.backup_account and self.backup_container)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "retention_days": self.retention_days,
            "backup_account": self.backup_account,
            "backup_container": self.backup_container,
        }


@dataclass(frozen=True)
class NotificationsConfig:
    """Webhook notification settings."""

    webhook_url: str | None = None
    timeout: float = 10.0

    @property
    def enabled(self) -> bool:
        """Return ``True`` when a real webhook URL is configured."""
        url = (self.webhook_url or "").strip()
        return bool(url) and url != WEBHOOK_PLACEHOLDER

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (URL redacted)."""
        return {
            "webhook_url": "<configured>" if self.enabled else None,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for tfstatectl."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    reports_dir: Path
    lock_timeout: float
    terraform: TerraformConfig
    azure: AzureConfig
    snapshots: SnapshotConfig
    notifications: NotificationsConfig
    environments: Mapping[Environment, EnvironmentConfig] = field(default_factory=dict)

    def environment(self, name: Environment | str) -> EnvironmentConfig:
        """Return the configuration for *name* or raise :class:`ConfigError`."""
        try:
            key = Environment(name)
        except ValueError as exc:
            raise ConfigError(f"Unknown environment '{name}'.") from exc
        try:
            return self.environments[key]
        except KeyError as exc:
            raise ConfigError(f"Environment '{key.value}' is not configured.") from exc

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "reports_dir": str(self.reports_dir),
            "lock_timeout": self.lock_timeout,
            "terraform": self.terraform.to_dict(),
            "azure": self.azure.to_dict(),
            "snapshots": self.snapshots.to_dict(),
            "notifications": self.notifications.to_dict(),
            "environments": {
                env.value: env_config.to_dict()
                for env, env_config in self.environments.items()
            },
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/tfstatectl/config.yml",
    "state_dir": "/var/lib/tfstatectl",
    "logs_dir": "/var/log/tfstatectl",
    "runtime_dir": "/run/tfstatectl",
    "reports_dir": None,  # derived from state_dir when absent
    "lock_timeout": 30.0,
    "terraform": {
        "version": LATEST_TERRAFORM,
        "bin": "terraform",
        "timeout": None,
    },
    "azure": {
        "bin": "az",
    },
    "snapshots": {
        "root": None,
        "index": None,
        "retention_days": 90,
        "backup_account": None,
        "backup_container": None,
    },
    "notifications": {
        "webhook_url": None,
        "timeout": 10.0,
    },
    "environments": {
        "staging": {"working_dir": "terraform/environments/staging", "backend": None},
        "production": {"working_dir": "terraform/environments/production", "backend": None},
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "terraform": {"version", "bin", "timeout"},
    "azure": {"bin"},
    "snapshots": {"root", "index", "retention_days", "backup_account", "backup_container"},
    "notifications": {"webhook_url", "timeout"},
}
_ENVIRONMENT_KEYS = {"working_dir", "backend"}
_BACKEND_KEYS = ("storage_account_name", "container_name", "resource_group_name", "key")


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(DEFAULTS["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    version = _as_dict(raw.get("terraform"), "terraform").get("version")
    if version is not None and str(version) != LATEST_TERRAFORM:
        try:
            Version(str(version))
        except InvalidVersion as exc:
            raise ConfigError(
                f"terraform.version must be 'latest' or a version number. Got {version!r}."
            ) from exc

    environments = _as_dict(raw.get("environments"), "environments")
    allowed_envs = {env.value for env in Environment}
    unknown_envs = set(environments.keys()) - allowed_envs
    if unknown_envs:
        joined = ", ".join(sorted(unknown_envs))
        raise ConfigError(f"Unknown environments: {joined}.")
    for name, value in environments.items():
        if value is None:
            raise ConfigError(
                f"environments.{name} must be a mapping; remove the entry to use the defaults."
            )
        env_map = _as_dict(value, f"environments.{name}")
        unknown = set(env_map.keys()) - _ENVIRONMENT_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for environments.{name}: {joined}.")
        backend = env_map.get("backend")
        if backend is not None:
            backend_map = _as_dict(backend, f"environments.{name}.backend")
            unknown_backend = set(backend_map.keys()) - set(_BACKEND_KEYS)
            if unknown_backend:
                joined = ", ".join(sorted(unknown_backend))
                raise ConfigError(f"Unknown keys for environments.{name}.backend: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))
    reports_value = raw.get("reports_dir")
    reports_dir = _to_path(reports_value) if reports_value else state_dir / "reports"
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    terraform_map = _as_dict(raw.get("terraform"), "terraform")
    timeout_value = terraform_map.get("timeout")
    terraform = TerraformConfig(
        version=str(terraform_map.get("version") or LATEST_TERRAFORM),
        bin=str(terraform_map.get("bin") or "terraform"),
        timeout=(
            _expect_positive_float(timeout_value, "terraform.timeout", default=60.0)
            if timeout_value is not None
            else None
        ),
    )

    azure_map = _as_dict(raw.get("azure"), "azure")
    azure = AzureConfig(bin=str(azure_map.get("bin") or "az"))

    snapshots_map = _as_dict(raw.get("snapshots"), "snapshots")
    snapshots_root_value = snapshots_map.get("root")
    snapshots_root = (
        _to_path(snapshots_root_value) if snapshots_root_value else state_dir / "snapshots"
    )
    index_value = snapshots_map.get("index")
    retention_days = _expect_int(
        snapshots_map.get("retention_days"), "snapshots.retention_days", default=90
    )
    if retention_days <= 0:
        raise ConfigError("snapshots.retention_days must be greater than zero.")
    snapshots = SnapshotConfig(
        root=snapshots_root,
        index=_to_path(index_value) if index_value else snapshots_root / "snapshots.json",
        retention_days=retention_days,
        backup_account=_optional_str(snapshots_map.get("backup_account")),
        backup_container=_optional_str(snapshots_map.get("backup_container")),
    )

    notifications_map = _as_dict(raw.get("notifications"), "notifications")
    notifications = NotificationsConfig(
        webhook_url=_optional_str(notifications_map.get("webhook_url")),
        timeout=_expect_positive_float(
            notifications_map.get("timeout"), "notifications.timeout", default=10.0
        ),
    )

    environments: dict[Environment, EnvironmentConfig] = {}
    for name, value in _as_dict(raw.get("environments"), "environments").items():
        env_map = _as_dict(value, f"environments.{name}")
        environment = Environment(name)
        environments[environment] = EnvironmentConfig(
            name=environment,
            working_dir=_to_path(
                env_map.get("working_dir") or f"terraform/environments/{name}"
            ),
            backend=_build_backend(env_map.get("backend"), f"environments.{name}.backend"),
        )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        state_dir=state_dir,
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        reports_dir=reports_dir,
        lock_timeout=lock_timeout,
        terraform=terraform,
        azure=azure,
        snapshots=snapshots,
        notifications=notifications,
        environments=environments,
    )


def _build_backend(value: object, label: str) -> BackendConfig | None:
    if value is None:
        return None
    mapping = _as_dict(value, label)
    values: dict[str, str] = {}
    missing: list[str] = []
    for key in _BACKEND_KEYS:
        item = _optional_str(mapping.get(key))
        if item is None:
            missing.append(key)
        else:
            values[key] = item
    if missing:
        joined = ", ".join(missing)
        raise ConfigError(f"{label} is missing required keys: {joined}.")
    return BackendConfig(**values)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        segments = [segment.lower() for segment in key[len(ENV_PREFIX) :].split("__") if segment]
        if segments:
            _assign_nested(overrides, segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            child: MutableMapping[str, object] = {}
            current[segment] = child
            current = child
        elif isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
        else:
            raise ConfigError(
                "Environment overrides conflict with existing scalar value at "
                f"{'.'.join(path)}"
            )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
        else:
            target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    return {
        key: _deep_copy(_as_dict(value, key)) if isinstance(value, Mapping) else value
        for key, value in source.items()
    }


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_path(value: object) -> Path:
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "AzureConfig",
    "BackendConfig",
    "ConfigError",
    "EnvironmentConfig",
    "NotificationsConfig",
    "SnapshotConfig",
    "TerraformConfig",
    "WEBHOOK_PLACEHOLDER",
    "load_config",
]
