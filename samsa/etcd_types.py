"""Node registration records, membership events and retry settings for etcd."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

from samsa.errors import SerializationError

_U16_MAX = 0xFFFF
_U64_MAX = 2**64 - 1


class NodeStatus(Enum):
    """Lifecycle state a node advertises in its registration record."""

    STARTING = "Starting"
    READY = "Ready"
    UNHEALTHY = "Unhealthy"


def current_timestamp_millis() -> int:
    """Milliseconds since the Unix epoch."""
    return time.time_ns() // 1_000_000


def _require_int(data: dict[str, Any], name: str, upper: int) -> int:
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise SerializationError(f"invalid type for `{name}`: expected an integer")
    if not 0 <= value <= upper:
        raise SerializationError(f"invalid value for `{name}`: {value} does not fit")
    return value


def _require_str(data: dict[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str):
        raise SerializationError(f"invalid type for `{name}`: expected a string")
    return value


@dataclass
class NodeInfo:
    """A server node as registered under /samsa/servers/<id>."""

    id: uuid.UUID
    address: str
    port: int
    status: NodeStatus = NodeStatus.STARTING
    last_heartbeat: int = field(default_factory=current_timestamp_millis)

    def __hash__(self) -> int:
        return hash((self.id, self.address, self.port, self.status, self.last_heartbeat))

    @classmethod
    def create(cls, id: uuid.UUID, address: str, port: int) -> NodeInfo:
        """A freshly started node with its heartbeat stamped now."""
        return cls(
            id=id,
            address=address,
            port=port,
            status=NodeStatus.STARTING,
            last_heartbeat=current_timestamp_millis(),
        )

    def endpoint(self) -> str:
        return f"{self.address}:{self.port}"

    def to_json(self) -> str:
        """The compact JSON document stored in etcd for this node."""
        return json.dumps(
            {
                "id": str(self.id),
                "address": self.address,
                "port": self.port,
                "status": self.status.value,
                "last_heartbeat": self.last_heartbeat,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> NodeInfo:
        """Parse a stored node document; raise SerializationError if malformed."""
        try:
            doc = json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            raise SerializationError(str(exc)) from exc
        if not isinstance(doc, dict):
            raise SerializationError("expected a JSON object")
        missing = [
            name
            for name in ("id", "address", "port", "status", "last_heartbeat")
            if name not in doc
        ]
        if missing:
            raise SerializationError(f"missing field `{missing[0]}`")
        try:
            node_id = uuid.UUID(_require_str(doc, "id"))
        except ValueError as exc:
            raise SerializationError(f"invalid value for `id`: {exc}") from exc
        try:
            status = NodeStatus(_require_str(doc, "status"))
        except ValueError as exc:
            raise SerializationError(f"unknown variant for `status`: {doc['status']}") from exc
        return cls(
            id=node_id,
            address=_require_str(doc, "address"),
            port=_require_int(doc, "port", _U16_MAX),
            status=status,
            last_heartbeat=_require_int(doc, "last_heartbeat", _U64_MAX),
        )


class EtcdEventKind(Enum):
    """Kinds of state change the etcd client reports to the application."""

    NODE_REGISTERED = "node_registered"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_RECOVERED = "connection_recovered"
    REGISTRATION_FAILED = "registration_failed"
    STATUS_UPDATED = "status_updated"


_NEEDS_MESSAGE = {EtcdEventKind.CONNECTION_LOST, EtcdEventKind.REGISTRATION_FAILED}


@dataclass(frozen=True)
class EtcdEvent:
    """A membership event; lost/failed events carry a message, status updates a status."""

    kind: EtcdEventKind
    message: str | None = None
    status: NodeStatus | None = None

    def __post_init__(self) -> None:
        if self.kind in _NEEDS_MESSAGE:
            if self.message is None:
                raise ValueError(f"{self.kind.name} event requires a message")
        elif self.message is not None:
            raise ValueError(f"{self.kind.name} event takes no message")
        if self.kind is EtcdEventKind.STATUS_UPDATED:
            if self.status is None:
                raise ValueError("STATUS_UPDATED event requires a status")
        elif self.status is not None:
            raise ValueError(f"{self.kind.name} event takes no status")


@dataclass
class EtcdConfig:
    """Connection, heartbeat and recovery settings of the etcd client."""

    endpoints: list[str] = field(default_factory=lambda: ["localhost:2379"])
    heartbeat_interval: timedelta = timedelta(seconds=10)
    lease_ttl: timedelta = timedelta(seconds=30)
    max_retry_attempts: int = 5
    retry_backoff_base: timedelta = timedelta(milliseconds=500)
    max_retry_backoff: timedelta = timedelta(seconds=30)
    recovery_timeout: timedelta = timedelta(seconds=300)
    max_consecutive_heartbeat_failures: int = 10


def calculate_backoff(attempt: int, config: EtcdConfig) -> timedelta:
    """Exponential backoff for a 1-based attempt, capped at the configured maximum."""
    if attempt < 1:
        raise ValueError(f"attempt must be at least 1, got {attempt}")
    backoff = config.retry_backoff_base * (2 ** (attempt - 1))
    return min(backoff, config.max_retry_backoff)


def is_node_healthy(node: NodeInfo, now_millis: int, lease_ttl: timedelta) -> bool:
    """A node is healthy when Ready and heartbeating within twice the lease TTL."""
    timeout_millis = (lease_ttl // timedelta(milliseconds=1)) * 2
    heartbeat_age = max(0, now_millis - node.last_heartbeat)
    return node.status is NodeStatus.READY and heartbeat_age < timeout_millis