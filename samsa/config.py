"""Layered configuration: built-in defaults, optional files, then environment."""

from __future__ import annotations

import json
import os
import time
import tomllib
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, ClassVar

from samsa.errors import ConfigError

_U16_MAX = 0xFFFF
_U64_MAX = 2**64 - 1


class _ExtractError(ValueError):
    """A value in the merged configuration has the wrong shape."""


def _uuid7() -> uuid.UUID:
    """Return a time-ordered version 7 UUID."""
    millis = time.time_ns() // 1_000_000
    value = ((millis & ((1 << 48) - 1)) << 80) | int.from_bytes(os.urandom(10), "big")
    value = (value & ~(0xF << 76)) | (7 << 76)
    value = (value & ~(0x3 << 62)) | (0x2 << 62)
    return uuid.UUID(int=value)


def _deep_merge(base: Mapping[str, Any], layer: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in layer.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _to_int(value: Any, name: str, upper: int) -> int:
    if isinstance(value, bool):
        raise _ExtractError(f"invalid type for `{name}`: expected an integer")
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise _ExtractError(f"invalid value for `{name}`: expected an integer") from None
    if not isinstance(value, int):
        raise _ExtractError(f"invalid type for `{name}`: expected an integer")
    if not 0 <= value <= upper:
        raise _ExtractError(f"invalid value for `{name}`: {value} does not fit")
    return value


def _to_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise _ExtractError(f"invalid type for `{name}`: expected a boolean")


def _to_str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise _ExtractError(f"invalid type for `{name}`: expected a string")
    return value


def _to_str_list(value: Any, name: str) -> list[str]:
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("[") and text.endswith("]"):
            text = text[1:-1]
        return [item.strip().strip("\"'") for item in text.split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [_to_str(item, name) for item in value]
    raise _ExtractError(f"invalid type for `{name}`: expected a sequence of strings")


def _to_uuid(value: Any, name: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        try:
            return uuid.UUID(value.strip())
        except ValueError:
            raise _ExtractError(f"invalid value for `{name}`: not a UUID") from None
    raise _ExtractError(f"invalid type for `{name}`: expected a UUID string")


def _convert(kind: Any, value: Any, name: str) -> Any:
    if isinstance(kind, type):
        if not isinstance(value, Mapping):
            raise _ExtractError(f"invalid type for `{name}`: expected a table")
        return kind._extract(value)
    match kind:
        case "uuid":
            return _to_uuid(value, name)
        case "str":
            return _to_str(value, name)
        case "opt_str":
            return None if value is None else _to_str(value, name)
        case "u16":
            return _to_int(value, name, _U16_MAX)
        case "u64":
            return _to_int(value, name, _U64_MAX)
        case "bool":
            return _to_bool(value, name)
        case "str_list":
            return _to_str_list(value, name)
    raise _ExtractError(f"unknown kind for `{name}`")


def _read_file(path: Path) -> dict[str, Any]:
    try:
        if path.suffix == ".toml":
            with path.open("rb") as handle:
                return tomllib.load(handle)
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Failed to extract configuration: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Failed to extract configuration: {path}: expected a table")
    return data


class _Layered:
    """Shared loading, extraction and validation for configuration sections."""

    _KINDS: ClassVar[dict[str, Any]] = {}
    _RANGES: ClassVar[dict[str, tuple[int, int]]] = {}
    _NON_EMPTY: ClassVar[tuple[str, ...]] = ()
    _DEFAULT_FILES: ClassVar[tuple[str, ...]] = ()
    _ENV_PREFIX: ClassVar[str | None] = None

    @classmethod
    def _extract(cls, data: Mapping[str, Any]):
        values = {}
        for item in fields(cls):
            if item.name not in data:
                raise _ExtractError(f"missing field `{item.name}`")
            values[item.name] = _convert(cls._KINDS[item.name], data[item.name], item.name)
        return cls(**values)

    def _problems(self) -> list[str]:
        problems = []
        for name, (low, high) in self._RANGES.items():
            value = getattr(self, name)
            if not low <= value <= high:
                problems.append(f"{name}: {value} is outside the range {low}..={high}")
        for name in self._NON_EMPTY:
            if len(getattr(self, name)) < 1:
                problems.append(f"{name}: length must be at least 1")
        for name, kind in self._KINDS.items():
            if isinstance(kind, type):
                problems.extend(f"{name}.{p}" for p in getattr(self, name)._problems())
        return problems

    def validate(self) -> None:
        """Raise ConfigError if any field is outside its permitted range."""
        problems = self._problems()
        if problems:
            raise ConfigError("Configuration validation failed: " + "; ".join(problems))

    def _to_mapping(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, _Layered):
                value = value._to_mapping()
            elif isinstance(value, uuid.UUID):
                value = str(value)
            elif isinstance(value, list):
                value = list(value)
            result[item.name] = value
        return result

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]):
        """Build a configuration from a complete mapping and validate it."""
        if not isinstance(data, Mapping):
            raise ConfigError("Failed to extract configuration: expected a table")
        try:
            config = cls._extract(data)
        except _ExtractError as exc:
            raise ConfigError(f"Failed to extract configuration: {exc}") from exc
        config.validate()
        return config

    @classmethod
    def _env_layer(cls, environ: Mapping[str, str]) -> dict[str, Any]:
        names = {item.name for item in fields(cls)}
        prefix = cls._ENV_PREFIX
        layer = {}
        for key, value in environ.items():
            if prefix is not None:
                if not key.upper().startswith(prefix):
                    continue
                key = key[len(prefix):]
            name = key.lower()
            if name in names:
                layer[name] = value
        return layer

    @classmethod
    def _load_from_sources(cls, paths: Iterable[str], environ: Mapping[str, str]):
        merged = cls()._to_mapping()
        for raw in paths:
            path = Path(raw)
            if not path.exists():
                continue
            if path.suffix not in (".toml", ".json"):
                raise ConfigError(f"Unsupported config file format: {raw}")
            merged = _deep_merge(merged, _read_file(path))
        merged = _deep_merge(merged, cls._env_layer(environ))
        return cls.from_mapping(merged)

    @classmethod
    def load(cls):
        """Load from the default files, if present, and the environment."""
        return cls._load_from_sources(cls._DEFAULT_FILES, os.environ)

    @classmethod
    def load_from_file(cls, path):
        """Load from one file, if present, and the environment."""
        return cls._load_from_sources([os.fspath(path)], os.environ)


@dataclass
class ServerConfig(_Layered):
    """Network identity and cluster membership settings of a server node."""

    node_id: uuid.UUID = field(default_factory=_uuid7)
    address: str = "0.0.0.0"
    port: int = 50052
    etcd_endpoints: list[str] = field(default_factory=lambda: ["http://localhost:2379"])
    heartbeat_interval_secs: int = 30
    lease_ttl_secs: int = 60

    _KINDS: ClassVar[dict[str, Any]] = {
        "node_id": "uuid",
        "address": "str",
        "port": "u16",
        "etcd_endpoints": "str_list",
        "heartbeat_interval_secs": "u64",
        "lease_ttl_secs": "u64",
    }
    _RANGES: ClassVar[dict[str, tuple[int, int]]] = {
        "port": (1024, 65535),
        "heartbeat_interval_secs": (5, 300),
        "lease_ttl_secs": (10, 600),
    }
    _NON_EMPTY: ClassVar[tuple[str, ...]] = ("address", "etcd_endpoints")
    _DEFAULT_FILES: ClassVar[tuple[str, ...]] = ("config/server.toml", "config/server.json")
    _ENV_PREFIX: ClassVar[str | None] = "SERVER_"

    def validate(self) -> None:
        """Raise ConfigError if any field is outside its permitted range."""
        super().validate()

    @classmethod
    def from_mapping(cls, data):
        """Build from a complete mapping, validate it and check lease against heartbeat."""
        config = super().from_mapping(data)
        if config.lease_ttl_secs <= config.heartbeat_interval_secs:
            raise ConfigError("Lease TTL must be greater than heartbeat interval")
        return config

    @classmethod
    def load(cls):
        """Load from the default files, if present, and the environment."""
        return super().load()

    @classmethod
    def load_from_file(cls, path):
        """Load from one file, if present, and the environment."""
        return super().load_from_file(path)

    @classmethod
    def from_env(cls, environ=None):
        """Build from defaults overlaid with SERVER_-prefixed variables."""
        environ = os.environ if environ is None else environ
        merged = _deep_merge(cls()._to_mapping(), cls._env_layer(environ))
        return cls.from_mapping(merged)

    def endpoint(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass
class ObservabilityConfig(_Layered):
    """Metrics, logging and tracing settings."""

    metrics_port: int = 9090
    log_level: str = "info"
    service_name: str = "samsa-server"
    node_id: str = "unknown"
    enable_otel_tracing: bool = False
    otel_endpoint: str | None = None

    _KINDS: ClassVar[dict[str, Any]] = {
        "metrics_port": "u16",
        "log_level": "str",
        "service_name": "str",
        "node_id": "str",
        "enable_otel_tracing": "bool",
        "otel_endpoint": "opt_str",
    }
    _RANGES: ClassVar[dict[str, tuple[int, int]]] = {"metrics_port": (1024, 65535)}
    _NON_EMPTY: ClassVar[tuple[str, ...]] = ("log_level", "service_name", "node_id")
    _DEFAULT_FILES: ClassVar[tuple[str, ...]] = (
        "config/observability.toml",
        "config/observability.json",
    )
    _ENV_PREFIX: ClassVar[str | None] = None

    def validate(self) -> None:
        """Raise ConfigError if any field is outside its permitted range."""
        super().validate()

    @classmethod
    def from_mapping(cls, data):
        """Build a configuration from a complete mapping and validate it."""
        return super().from_mapping(data)

    @classmethod
    def load(cls):
        """Load from the default files, if present, and the environment."""
        return super().load()

    @classmethod
    def load_from_file(cls, path):
        """Load from one file, if present, and the environment."""
        return super().load_from_file(path)

    @classmethod
    def from_env(cls):
        """Load as load() does, falling back to defaults on any error."""
        try:
            return cls.load()
        except ConfigError:
            return cls()

    def with_otel_tracing(self, endpoint: str) -> ObservabilityConfig:
        return replace(self, enable_otel_tracing=True, otel_endpoint=endpoint)


@dataclass
class StorageConfig(_Layered):
    """Batching and cleanup settings of the storage layer."""

    node_id: str = field(default_factory=lambda: str(_uuid7()))
    batch_size: int = 100
    batch_max_bytes: int = 1024 * 1024
    batch_flush_interval_ms: int = 5000
    cleanup_interval_secs: int = 3600
    cleanup_grace_period_secs: int = 86400

    _KINDS: ClassVar[dict[str, Any]] = {
        "node_id": "str",
        "batch_size": "u64",
        "batch_max_bytes": "u64",
        "batch_flush_interval_ms": "u64",
        "cleanup_interval_secs": "u64",
        "cleanup_grace_period_secs": "u64",
    }
    _RANGES: ClassVar[dict[str, tuple[int, int]]] = {
        "batch_size": (1, 10000),
        "batch_max_bytes": (1024, 104857600),
        "batch_flush_interval_ms": (100, 300000),
        "cleanup_interval_secs": (10, 86400),
        "cleanup_grace_period_secs": (3600, 2592000),
    }
    _NON_EMPTY: ClassVar[tuple[str, ...]] = ("node_id",)
    _DEFAULT_FILES: ClassVar[tuple[str, ...]] = ("config/storage.toml", "config/storage.json")
    _ENV_PREFIX: ClassVar[str | None] = "STORAGE_"

    def validate(self) -> None:
        """Raise ConfigError if any field is outside its permitted range."""
        super().validate()

    @classmethod
    def from_mapping(cls, data):
        """Build a configuration from a complete mapping and validate it."""
        return super().from_mapping(data)

    @classmethod
    def load(cls):
        """Load from the default files, if present, and the environment."""
        return super().load()

    @classmethod
    def load_from_file(cls, path):
        """Load from one file, if present, and the environment."""
        return super().load_from_file(path)

    @classmethod
    def from_env(cls, environ=None):
        """Build from defaults overlaid with STORAGE_-prefixed variables."""
        environ = os.environ if environ is None else environ
        merged = _deep_merge(cls()._to_mapping(), cls._env_layer(environ))
        return cls.from_mapping(merged)


@dataclass
class AppConfig(_Layered):
    """Server, observability and storage settings together."""

    server: ServerConfig = field(default_factory=ServerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    _KINDS: ClassVar[dict[str, Any]] = {
        "server": ServerConfig,
        "observability": ObservabilityConfig,
        "storage": StorageConfig,
    }
    _DEFAULT_FILES: ClassVar[tuple[str, ...]] = (
        "config/app.toml",
        "config/app.json",
        "samsa.toml",
        "samsa.json",
    )
    _ENV_PREFIX: ClassVar[str | None] = None

    def validate(self) -> None:
        """Raise ConfigError if any nested field is outside its permitted range."""
        super().validate()

    @classmethod
    def from_mapping(cls, data):
        """Build a configuration from a complete mapping and validate it."""
        return super().from_mapping(data)

    @classmethod
    def load(cls):
        """Load from the default files, if present, and the environment."""
        return super().load()

    @classmethod
    def load_from_file(cls, path):
        """Load from one file, if present, and the environment."""
        return super().load_from_file(path)