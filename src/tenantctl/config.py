"""Configuration loader for tenantctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/tenantctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``TENANTCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export TENANTCTL_PORTS__START=15000
    export TENANTCTL_PROXY__VERIFY_TLS=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load tenantctl configuration. Install with "
        "`pip install tenantctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "TENANTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DatabaseConfig:
    """Catalog connection settings."""

    url: str
    echo: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"url": self.url, "echo": self.echo}


@dataclass(frozen=True)
class PortsConfig:
    """Bounds of the port pool handed out to instances."""

    start: int = 14000
    end: int = 14999

    @property
    def size(self) -> int:
        """Return the number of ports in the pool."""
        return self.end - self.start + 1

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage defaults."""

    root: Path
    index: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "index": str(self.index)}


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime integration settings."""

    docker_bin: str = "docker"
    timeout: float = 300.0
    data_owner: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "timeout": self.timeout,
            "data_owner": self.data_owner,
        }


@dataclass(frozen=True)
class ProxyConfig:
    """Reverse-proxy control plane settings."""

    url: str = "https://127.0.0.1:8888"
    username: str | None = None
    password: str | None = None
    owner_id: int = 4
    server_ip: str | None = None
    ssl_email: str | None = None
    verify_tls: bool = False
    timeout: float = 30.0
    propagation_delay: float = 5.0
    token_refresh_margin: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (the password is masked)."""
        return {
            "url": self.url,
            "username": self.username,
            "password": "********" if self.password else None,
            "owner_id": self.owner_id,
            "server_ip": self.server_ip,
            "ssl_email": self.ssl_email,
            "verify_tls": self.verify_tls,
            "timeout": self.timeout,
            "propagation_delay": self.propagation_delay,
            "token_refresh_margin": self.token_refresh_margin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for tenantctl."""

    config_file: Path
    instance_root: Path
    state_dir: Path
    logs_dir: Path
    templates_dir: Path
    base_domain: str
    database: DatabaseConfig
    ports: PortsConfig
    backups: BackupConfig
    runtime: RuntimeConfig
    proxy: ProxyConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "instance_root": str(self.instance_root),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "base_domain": self.base_domain,
            "database": self.database.to_dict(),
            "ports": self.ports.to_dict(),
            "backups": self.backups.to_dict(),
            "runtime": self.runtime.to_dict(),
            "proxy": self.proxy.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/tenantctl/config.yml",
    "instance_root": "/srv/tenants",
    "state_dir": "/var/lib/tenantctl",
    "logs_dir": "/var/log/tenantctl",
    "templates_dir": "/etc/tenantctl/services",
    "base_domain": "example.com",
    "database": {
        "url": None,  # derived from state_dir when absent
        "echo": False,
    },
    "ports": {
        "start": 14000,
        "end": 14999,
    },
    "backups": {
        "root": "/srv/tenants-backups",
        "index": None,
    },
    "runtime": {
        "docker_bin": "docker",
        "timeout": 300.0,
        "data_owner": None,
    },
    "proxy": {
        "url": "https://127.0.0.1:8888",
        "username": None,
        "password": None,
        "owner_id": 4,
        "server_ip": None,
        "ssl_email": None,
        "verify_tls": False,
        "timeout": 30.0,
        "propagation_delay": 5.0,
        "token_refresh_margin": 300.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

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

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    base_domain = raw.get("base_domain")
    if not isinstance(base_domain, str) or not base_domain.strip():
        raise ConfigError("base_domain must be a non-empty string.")

    data_owner = _as_dict(raw.get("runtime"), "runtime").get("data_owner")
    if data_owner not in (None, ""):
        _parse_owner(data_owner)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    instance_root = _to_path(raw.get("instance_root"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    base_domain = str(raw.get("base_domain")).strip()

    database_mapping = _as_dict(raw.get("database"), "database")
    url_value = database_mapping.get("url")
    database_url = str(url_value) if url_value else f"sqlite:///{state_dir / 'catalog.db'}"
    database = DatabaseConfig(url=database_url, echo=bool(database_mapping.get("echo", False)))

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        start=_expect_int(ports_mapping.get("start"), "ports.start", default=14000),
        end=_expect_int(ports_mapping.get("end"), "ports.end", default=14999),
    )
    if not 1 <= ports.start <= 65535 or not 1 <= ports.end <= 65535:
        raise ConfigError("ports.start and ports.end must be valid TCP ports (1-65535).")
    if ports.start > ports.end:
        raise ConfigError(
            f"ports.start ({ports.start}) must not be greater than ports.end ({ports.end})."
        )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_mapping.get("root", "/srv/tenants-backups"))
    backups_index_value = backups_mapping.get("index")
    backups_index = (
        _to_path(backups_index_value) if backups_index_value else backups_root / "backups.json"
    )
    backups = BackupConfig(root=backups_root, index=backups_index)

    runtime_mapping = _as_dict(raw.get("runtime"), "runtime")
    data_owner_value = runtime_mapping.get("data_owner")
    runtime = RuntimeConfig(
        docker_bin=str(runtime_mapping.get("docker_bin", "docker")),
        timeout=_expect_positive_float(
            runtime_mapping.get("timeout"), "runtime.timeout", default=300.0
        ),
        data_owner=str(data_owner_value) if data_owner_value not in (None, "") else None,
    )

    proxy_mapping = _as_dict(raw.get("proxy"), "proxy")
    propagation_delay = _expect_float(
        proxy_mapping.get("propagation_delay"), "proxy.propagation_delay", default=5.0
    )
    if propagation_delay < 0:
        raise ConfigError("proxy.propagation_delay must be non-negative.")
    refresh_margin = _expect_float(
        proxy_mapping.get("token_refresh_margin"), "proxy.token_refresh_margin", default=300.0
    )
    if refresh_margin < 0:
        raise ConfigError("proxy.token_refresh_margin must be non-negative.")
    proxy = ProxyConfig(
        url=str(proxy_mapping.get("url", "https://127.0.0.1:8888")).rstrip("/"),
        username=_optional_str(proxy_mapping.get("username")),
        password=_optional_str(proxy_mapping.get("password")),
        owner_id=_expect_int(proxy_mapping.get("owner_id"), "proxy.owner_id", default=4),
        server_ip=_optional_str(proxy_mapping.get("server_ip")),
        ssl_email=_optional_str(proxy_mapping.get("ssl_email")),
        verify_tls=bool(proxy_mapping.get("verify_tls", False)),
        timeout=_expect_positive_float(proxy_mapping.get("timeout"), "proxy.timeout", default=30.0),
        propagation_delay=propagation_delay,
        token_refresh_margin=refresh_margin,
    )

    return AppConfig(
        config_file=config_file,
        instance_root=instance_root,
        state_dir=state_dir,
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        base_domain=base_domain,
        database=database,
        ports=ports,
        backups=backups,
        runtime=runtime,
        proxy=proxy,
    )


def parse_owner(value: str) -> tuple[int, int]:
    """Parse a ``uid:gid`` string into numeric ids."""
    return _parse_owner(value)


def _parse_owner(value: object) -> tuple[int, int]:
    text = str(value).strip()
    uid_text, sep, gid_text = text.partition(":")
    if not sep:
        gid_text = uid_text
    try:
        return int(uid_text), int(gid_text)
    except ValueError as exc:
        raise ConfigError(
            f"runtime.data_owner must look like '<uid>:<gid>'. Got {value!r}."
        ) from exc


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
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
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


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


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_float(value, label, default=default)
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
    "BackupConfig",
    "ConfigError",
    "DatabaseConfig",
    "PortsConfig",
    "ProxyConfig",
    "RuntimeConfig",
    "load_config",
    "parse_owner",
]
