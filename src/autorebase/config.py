from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


DEFAULT_LABEL = "autorebase"
DEFAULT_AUTHORIZED_PERMISSIONS: frozenset[str] = frozenset({"admin", "write"})


@dataclass(frozen=True)
class RuntimeConfig:
    mergeable_state_poll_seconds: float = 0.5
    mergeable_state_max_attempts: int = 120
    search_delay_seconds: float = 0.0

    @property
    def mergeable_state_attempt_limit(self) -> int | None:
        if self.mergeable_state_max_attempts == 0:
            return None
        return self.mergeable_state_max_attempts


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    label: str = DEFAULT_LABEL
    authorized_permissions: frozenset[str] = DEFAULT_AUTHORIZED_PERMISSIONS

    def authorizes(self, permission: str) -> bool:
        return permission.strip().lower() in self.authorized_permissions


@dataclass(frozen=True)
class AppConfig:
    repo: RepoConfig
    runtime: RuntimeConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    repo_data = _require_table(data, "repo")
    runtime_data = _optional_table(data, "runtime") or {}

    repo = RepoConfig(
        owner=_require_str(repo_data, "owner"),
        name=_require_str(repo_data, "name"),
        label=_str_with_default(repo_data, "label", DEFAULT_LABEL),
        authorized_permissions=_permissions_with_default(
            repo_data, "authorized_permissions", DEFAULT_AUTHORIZED_PERMISSIONS
        ),
    )
    runtime = RuntimeConfig(
        mergeable_state_poll_seconds=_float_with_default(
            runtime_data, "mergeable_state_poll_seconds", 0.5
        ),
        mergeable_state_max_attempts=_int_with_default(
            runtime_data, "mergeable_state_max_attempts", 120
        ),
        search_delay_seconds=_float_with_default(runtime_data, "search_delay_seconds", 0.0),
    )

    if runtime.mergeable_state_poll_seconds < 0.5:
        raise ConfigError("runtime.mergeable_state_poll_seconds must be >= 0.5")
    if runtime.mergeable_state_max_attempts < 0:
        raise ConfigError("runtime.mergeable_state_max_attempts must be >= 0")
    if runtime.search_delay_seconds < 0:
        raise ConfigError("runtime.search_delay_seconds must be >= 0")

    return AppConfig(repo=repo, runtime=runtime)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value.strip()


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _permissions_with_default(
    data: dict[str, object], key: str, default: frozenset[str]
) -> frozenset[str]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{key} must be a non-empty list of strings")
    out: set[str] = set()
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} must be a non-empty list of strings")
        out.add(item.strip().lower())
    return frozenset(out)
