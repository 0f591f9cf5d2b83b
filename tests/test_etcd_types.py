import asyncio
import json
import uuid
from datetime import timedelta

import pytest

from samsa.errors import SerializationError
from samsa.etcd_types import (
    EtcdConfig,
    EtcdEvent,
    EtcdEventKind,
    NodeInfo,
    NodeStatus,
    calculate_backoff,
    current_timestamp_millis,
    is_node_healthy,
)


def test_etcd_config_defaults():
    config = EtcdConfig()
    assert config.endpoints == ["localhost:2379"]
    assert config.heartbeat_interval == timedelta(seconds=10)
    assert config.lease_ttl == timedelta(seconds=30)
    assert config.max_retry_attempts == 5
    assert config.retry_backoff_base == timedelta(milliseconds=500)
    assert config.max_retry_backoff == timedelta(seconds=30)
    assert config.recovery_timeout == timedelta(seconds=300)
    assert config.max_consecutive_heartbeat_failures == 10


def test_default_endpoints_are_not_shared():
    first = EtcdConfig()
    first.endpoints.append("other:2379")
    assert EtcdConfig().endpoints == ["localhost:2379"]


def test_backoff_calculation():
    config = EtcdConfig()
    assert calculate_backoff(1, config) == timedelta(milliseconds=500)
    assert calculate_backoff(2, config) == timedelta(seconds=1)
    assert calculate_backoff(3, config) == timedelta(seconds=2)
    assert calculate_backoff(10, config) == config.max_retry_backoff


def test_backoff_is_monotonic_and_capped():
    config = EtcdConfig()
    values = [calculate_backoff(n, config) for n in range(1, 40)]
    assert values == sorted(values)
    assert max(values) == config.max_retry_backoff


def test_backoff_rejects_attempt_zero():
    with pytest.raises(ValueError):
        calculate_backoff(0, EtcdConfig())


def test_node_info_creation():
    node_id = uuid.uuid4()
    node = NodeInfo.create(node_id, "192.168.1.100", 9090)
    assert node.id == node_id
    assert node.address == "192.168.1.100"
    assert node.port == 9090
    assert node.status is NodeStatus.STARTING
    assert node.endpoint() == "192.168.1.100:9090"
    now = current_timestamp_millis()
    assert now >= node.last_heartbeat
    assert now - node.last_heartbeat < 10000


def test_node_info_json_round_trip():
    node = NodeInfo(uuid.uuid4(), "10.0.0.1", 50052, NodeStatus.READY, 1234567)
    assert NodeInfo.from_json(node.to_json()) == node
    assert NodeInfo.from_json(node.to_json().encode()) == node


def test_node_info_json_shape():
    node_id = uuid.UUID("00000000-0000-4000-8000-000000000001")
    node = NodeInfo(node_id, "h", 2000, NodeStatus.UNHEALTHY, 7)
    assert json.loads(node.to_json()) == {
        "id": "00000000-0000-4000-8000-000000000001",
        "address": "h",
        "port": 2000,
        "status": "Unhealthy",
        "last_heartbeat": 7,
    }
    assert " " not in node.to_json()


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        "[]",
        '{"id":"x","address":"a","port":1,"status":"Ready","last_heartbeat":1}',
        '{"id":"00000000-0000-4000-8000-000000000001","address":"a","port":1,'
        '"status":"Gone","last_heartbeat":1}',
        '{"id":"00000000-0000-4000-8000-000000000001","address":"a","port":70000,'
        '"status":"Ready","last_heartbeat":1}',
        '{"id":"00000000-0000-4000-8000-000000000001","address":"a","port":1,'
        '"status":"Ready"}',
    ],
)
def test_node_info_from_json_rejects_malformed(payload):
    with pytest.raises(SerializationError):
        NodeInfo.from_json(payload)


def test_etcd_event_types():
    events = [
        EtcdEvent(EtcdEventKind.NODE_REGISTERED),
        EtcdEvent(EtcdEventKind.CONNECTION_LOST, message="test error"),
        EtcdEvent(EtcdEventKind.CONNECTION_RECOVERED),
        EtcdEvent(EtcdEventKind.REGISTRATION_FAILED, message="test failure"),
        EtcdEvent(EtcdEventKind.STATUS_UPDATED, status=NodeStatus.READY),
    ]
    assert [e.kind for e in events] == list(EtcdEventKind)
    assert events[1].message == "test error"
    assert events[4].status is NodeStatus.READY


@pytest.mark.parametrize(
    "kwargs",
    [
        {"kind": EtcdEventKind.CONNECTION_LOST},
        {"kind": EtcdEventKind.REGISTRATION_FAILED},
        {"kind": EtcdEventKind.STATUS_UPDATED},
        {"kind": EtcdEventKind.NODE_REGISTERED, "message": "x"},
        {"kind": EtcdEventKind.CONNECTION_RECOVERED, "status": NodeStatus.READY},
    ],
)
def test_etcd_event_rejects_inconsistent_payload(kwargs):
    with pytest.raises(ValueError):
        EtcdEvent(**kwargs)


@pytest.mark.asyncio
async def test_etcd_event_handling_simulation():
    queue: asyncio.Queue[EtcdEvent] = asyncio.Queue()
    events = [
        EtcdEvent(EtcdEventKind.NODE_REGISTERED),
        EtcdEvent(EtcdEventKind.STATUS_UPDATED, status=NodeStatus.READY),
        EtcdEvent(EtcdEventKind.CONNECTION_LOST, message="Network timeout"),
        EtcdEvent(EtcdEventKind.CONNECTION_RECOVERED),
        EtcdEvent(EtcdEventKind.STATUS_UPDATED, status=NodeStatus.UNHEALTHY),
    ]
    for event in events:
        queue.put_nowait(event)
    received = [queue.get_nowait() for _ in range(queue.qsize())]
    assert received == events


def test_application_event_response_patterns():
    healthy = connected = False
    status = NodeStatus.STARTING
    events = [
        EtcdEvent(EtcdEventKind.NODE_REGISTERED),
        EtcdEvent(EtcdEventKind.STATUS_UPDATED, status=NodeStatus.READY),
        EtcdEvent(EtcdEventKind.CONNECTION_LOST, message="Network partition"),
        EtcdEvent(EtcdEventKind.CONNECTION_RECOVERED),
        EtcdEvent(EtcdEventKind.STATUS_UPDATED, status=NodeStatus.UNHEALTHY),
    ]
    for event in events:
        match event.kind:
            case EtcdEventKind.NODE_REGISTERED | EtcdEventKind.CONNECTION_RECOVERED:
                healthy = connected = True
            case EtcdEventKind.CONNECTION_LOST | EtcdEventKind.REGISTRATION_FAILED:
                healthy = connected = False
            case EtcdEventKind.STATUS_UPDATED:
                status = event.status
    assert healthy
    assert connected
    assert status is NodeStatus.UNHEALTHY


def test_is_node_healthy_ready_and_recent():
    node = NodeInfo(uuid.uuid4(), "a", 1, NodeStatus.READY, 100_000)
    assert is_node_healthy(node, 100_000 + 59_999, timedelta(seconds=30))
    assert not is_node_healthy(node, 100_000 + 60_000, timedelta(seconds=30))


def test_is_node_healthy_requires_ready():
    node = NodeInfo(uuid.uuid4(), "a", 1, NodeStatus.STARTING, 100_000)
    assert not is_node_healthy(node, 100_000, timedelta(seconds=30))


def test_is_node_healthy_future_heartbeat_counts_as_fresh():
    node = NodeInfo(uuid.uuid4(), "a", 1, NodeStatus.READY, 500_000)
    assert is_node_healthy(node, 100_000, timedelta(seconds=1))


def test_current_timestamp_millis_is_monotone_enough():
    first = current_timestamp_millis()
    second = current_timestamp_millis()
    assert second >= first
    assert first > 1_600_000_000_000