"""Node registration, heartbeating and recovery against an etcd cluster."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import dataclasses
import logging
from collections.abc import Callable, Sequence
from datetime import timedelta
from typing import Any

import httpx

from samsa.errors import EtcdError, InternalError, SamsaError, SerializationError
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

_log = logging.getLogger(__name__)

_SERVERS_PREFIX = "/samsa/servers/"


def _b64(data: str | bytes) -> str:
    raw = data.encode("utf-8") if isinstance(data, str) else data
    return base64.b64encode(raw).decode("ascii")


def _unb64(text: str) -> bytes:
    return base64.b64decode(text)


def _prefix_range_end(prefix: bytes) -> bytes:
    """The smallest key greater than every key starting with ``prefix``."""
    end = bytearray(prefix)
    while end and end[-1] == 0xFF:
        end.pop()
    if not end:
        return b"\0"
    end[-1] += 1
    return bytes(end)


def _normalise_endpoint(endpoint: str) -> str:
    endpoint = endpoint.rstrip("/")
    return endpoint if "://" in endpoint else f"http://{endpoint}"


def _whole_seconds(duration: timedelta) -> int:
    return duration // timedelta(seconds=1)


class EtcdGateway:
    """Thin async access to the etcd v3 JSON gateway, trying endpoints in order."""

    def __init__(
        self,
        endpoints: Sequence[str],
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoints = [_normalise_endpoint(e) for e in endpoints]
        if not self._endpoints:
            raise EtcdError("no etcd endpoints configured")
        self._owns_client = client is None
        self._http = client if client is not None else httpx.AsyncClient(timeout=timeout)

    async def _call(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        failures = []
        for base in self._endpoints:
            try:
                response = await self._http.post(f"{base}{path}", json=payload)
            except httpx.TransportError as exc:
                failures.append(f"{base}: {exc}")
                continue
            if response.status_code >= 400:
                raise EtcdError(
                    f"{path} failed with HTTP {response.status_code}: {response.text}"
                )
            try:
                body = response.json()
            except ValueError as exc:
                raise EtcdError(f"{path} returned invalid JSON: {exc}") from exc
            if not isinstance(body, dict):
                raise EtcdError(f"{path} returned an unexpected document")
            if "error" in body:
                raise EtcdError(f"{path}: {body.get('message') or body['error']}")
            return body
        raise EtcdError("no etcd endpoint reachable: " + "; ".join(failures))

    async def lease_grant(self, ttl_seconds: int) -> int:
        """Grant a lease and return its id."""
        body = await self._call("/v3/lease/grant", {"TTL": ttl_seconds, "ID": 0})
        try:
            return int(body["ID"])
        except (KeyError, TypeError, ValueError) as exc:
            raise EtcdError("lease grant response carries no lease id") from exc

    async def lease_keep_alive(self, lease_id: int) -> int:
        """Refresh a lease and return its remaining TTL in seconds."""
        body = await self._call("/v3/lease/keepalive", {"ID": lease_id})
        result = body.get("result", body)
        try:
            ttl = int(result.get("TTL", 0)) if isinstance(result, dict) else 0
        except (TypeError, ValueError) as exc:
            raise EtcdError("keep-alive response carries an invalid TTL") from exc
        if ttl <= 0:
            raise EtcdError(f"lease {lease_id} has expired")
        return ttl

    async def put(self, key: str, value: str | bytes, lease_id: int | None = None) -> None:
        """Store a value, attached to a lease when one is given."""
        payload: dict[str, Any] = {"key": _b64(key), "value": _b64(value)}
        if lease_id is not None:
            payload["lease"] = lease_id
        await self._call("/v3/kv/put", payload)

    async def get_prefix(self, prefix: str) -> list[tuple[str, bytes]]:
        """All keys starting with ``prefix`` and their values."""
        raw = prefix.encode("utf-8")
        body = await self._call(
            "/v3/kv/range",
            {"key": _b64(raw), "range_end": _b64(_prefix_range_end(raw))},
        )
        entries = []
        for kv in body.get("kvs", []):
            try:
                key = _unb64(kv["key"]).decode("utf-8", errors="replace")
                value = _unb64(kv.get("value", ""))
            except (KeyError, TypeError, ValueError) as exc:
                raise EtcdError("range response holds a malformed entry") from exc
            entries.append((key, value))
        return entries

    async def delete(self, key: str) -> None:
        await self._call("/v3/kv/deleterange", {"key": _b64(key)})

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


class EtcdClient:
    """Keeps this node registered in etcd and reports connectivity changes as events."""

    def __init__(
        self,
        config: EtcdConfig,
        node_info: NodeInfo,
        gateway: EtcdGateway,
        *,
        connector: Callable[[EtcdConfig], EtcdGateway] | None = None,
    ) -> None:
        self._config = config
        self._node_info = node_info
        self._gateway: EtcdGateway | None = gateway
        self._connector = connector or (lambda cfg: EtcdGateway(cfg.endpoints))
        self._lease_id: int | None = None
        self._events: asyncio.Queue[EtcdEvent] = asyncio.Queue()
        self._healthy = False
        self._consecutive_failures = 0
        self._heartbeat_task: asyncio.Task[None] | None = None

    @classmethod
    async def connect(cls, config: EtcdConfig, node_info: NodeInfo) -> EtcdClient:
        """Open a gateway to the configured endpoints for this node."""
        return cls(config, node_info, EtcdGateway(config.endpoints))

    def _require_gateway(self) -> EtcdGateway:
        if self._gateway is None:
            raise InternalError("etcd client not connected")
        return self._gateway

    def _node_key(self) -> str:
        return f"{_SERVERS_PREFIX}{self._node_info.id}"

    def _emit(self, event: EtcdEvent) -> None:
        self._events.put_nowait(event)

    async def register_and_start_heartbeat(self) -> None:
        """Register the node under a fresh lease and start the heartbeat task."""
        await self._register_node()
        self._start_heartbeat()

    async def _register_node(self) -> None:
        gateway = self._require_gateway()
        lease_id = await gateway.lease_grant(_whole_seconds(self._config.lease_ttl))
        self._lease_id = lease_id
        await gateway.put(self._node_key(), self._node_info.to_json(), lease_id)
        self._healthy = True
        self._emit(EtcdEvent(EtcdEventKind.NODE_REGISTERED))
        _log.info("Node %s registered with etcd", self._node_info.id)

    def _start_heartbeat(self) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            _log.warning("Heartbeat task is already running, skipping start")
            return
        if self._config.heartbeat_interval <= timedelta(0):
            raise ValueError("heartbeat interval must be positive")
        self._heartbeat_task = asyncio.create_task(self._run_heartbeat())

    async def _run_heartbeat(self) -> None:
        try:
            await self._heartbeat_loop()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # the task must report any crash as lost connectivity
            _log.error(
                "Heartbeat task crashed: %s. This is critical - etcd connectivity lost!", exc
            )
            self._healthy = False
            self._emit(
                EtcdEvent(
                    EtcdEventKind.CONNECTION_LOST,
                    message=f"Heartbeat task panicked: {exc}",
                )
            )
        else:
            _log.info("Heartbeat task completed normally")
        finally:
            _log.warning("Heartbeat task exited")

    async def _heartbeat_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._config.heartbeat_interval.total_seconds()
        next_tick = loop.time()
        degraded_logged = False
        while True:
            delay = next_tick - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            next_tick += interval
            try:
                await self._send_heartbeat()
            except SamsaError as exc:
                degraded_logged = await self._handle_heartbeat_failure(exc, degraded_logged)
            else:
                previous = self._consecutive_failures
                self._consecutive_failures = 0
                if previous > 0:
                    _log.info("Heartbeat recovered after %d consecutive failures", previous)
                    self._emit(EtcdEvent(EtcdEventKind.CONNECTION_RECOVERED))
                    degraded_logged = False
                self._healthy = True
                _log.debug("Heartbeat successful")

    async def _handle_heartbeat_failure(self, error: SamsaError, degraded_logged: bool) -> bool:
        self._consecutive_failures += 1
        failures = self._consecutive_failures
        self._healthy = False
        limit = self._config.max_consecutive_heartbeat_failures

        if failures <= 3:
            _log.warning("Heartbeat failed (attempt %d): %s", failures, error)
        elif failures <= limit:
            if not degraded_logged:
                _log.error(
                    "Heartbeat entering degraded state after %d failures: %s. "
                    "Node connectivity compromised.",
                    failures,
                    error,
                )
                degraded_logged = True
            else:
                _log.debug("Heartbeat still failing (attempt %d): %s", failures, error)
        else:
            _log.error(
                "Heartbeat failed %d times, exceeding maximum. This is critical: %s",
                failures,
                error,
            )

        if failures == 1 or failures % 5 == 0:
            self._emit(
                EtcdEvent(
                    EtcdEventKind.CONNECTION_LOST,
                    message=f"Heartbeat failed {failures} times: {error}",
                )
            )

        try:
            await self._attempt_recovery()
        except SamsaError as recovery_error:
            if failures % 10 == 0:
                _log.error("Failed to recover etcd connection: %s", recovery_error)
                self._emit(
                    EtcdEvent(EtcdEventKind.REGISTRATION_FAILED, message=str(recovery_error))
                )
            if failures >= limit:
                _log.error(
                    "Exceeded max heartbeat failures (%d). Node should be considered unhealthy.",
                    limit,
                )
                extended = max(self._config.heartbeat_interval, timedelta(seconds=60))
                await asyncio.sleep(extended.total_seconds())
            else:
                backoff = calculate_backoff(failures, self._config)
                await asyncio.sleep(backoff.total_seconds())
            return degraded_logged

        self._consecutive_failures = 0
        self._healthy = True
        self._emit(EtcdEvent(EtcdEventKind.CONNECTION_RECOVERED))
        _log.info("Successfully recovered etcd connection during heartbeat")
        return False

    async def _send_heartbeat(self) -> None:
        if self._lease_id is None:
            raise InternalError("No lease ID available")
        lease_id = self._lease_id
        await self._require_gateway().lease_keep_alive(lease_id)
        self._node_info.last_heartbeat = current_timestamp_millis()
        await self._require_gateway().put(self._node_key(), self._node_info.to_json(), lease_id)

    async def _attempt_recovery(self) -> None:
        _log.info("Attempting to recover etcd connection...")
        for attempt in range(1, self._config.max_retry_attempts + 1):
            backoff = calculate_backoff(attempt, self._config)
            _log.debug("Recovery attempt %d after %s", attempt, backoff)
            await asyncio.sleep(backoff.total_seconds())
            try:
                new_gateway = self._connector(self._config)
            except SamsaError as exc:
                _log.warning("Failed to reconnect to etcd on attempt %d: %s", attempt, exc)
                continue
            old_gateway, self._gateway = self._gateway, new_gateway
            if old_gateway is not None and old_gateway is not new_gateway:
                await old_gateway.aclose()
            try:
                await self._re_register_node()
            except SamsaError as exc:
                _log.warning("Re-registration failed on attempt %d: %s", attempt, exc)
                continue
            _log.info("Successfully recovered and re-registered with etcd")
            return
        raise InternalError("Failed to recover etcd connection after all retry attempts")

    async def _re_register_node(self) -> None:
        gateway = self._require_gateway()
        lease_id = await gateway.lease_grant(_whole_seconds(self._config.lease_ttl))
        self._lease_id = lease_id
        await gateway.put(self._node_key(), self._node_info.to_json(), lease_id)

    async def update_status(self, status: NodeStatus) -> None:
        """Record a new status, publish it to etcd when healthy, and report it."""
        self._node_info.status = status
        self._node_info.last_heartbeat = current_timestamp_millis()
        if self._healthy:
            if self._lease_id is not None and self._gateway is not None:
                await self._gateway.put(
                    self._node_key(), self._node_info.to_json(), self._lease_id
                )
        else:
            _log.warning("Skipping etcd status update - client is not healthy")
        self._emit(EtcdEvent(EtcdEventKind.STATUS_UPDATED, status=status))

    async def unregister_node(self) -> None:
        """Remove the node's registration; failures are logged, not raised."""
        if self._gateway is not None:
            try:
                await self._gateway.delete(self._node_key())
            except SamsaError as exc:
                _log.warning("Failed to unregister node from etcd: %s", exc)
            else:
                _log.info("Node %s unregistered from etcd", self._node_info.id)
        self._healthy = False

    async def list_servers(self) -> list[NodeInfo]:
        """Every registered node whose record parses."""
        entries = await self._require_gateway().get_prefix(_SERVERS_PREFIX)
        nodes = []
        for _key, value in entries:
            try:
                nodes.append(NodeInfo.from_json(value))
            except SerializationError:
                continue
        return nodes

    async def get_healthy_servers(self) -> list[NodeInfo]:
        """Registered nodes that are Ready and heartbeating recently."""
        nodes = await self.list_servers()
        now = current_timestamp_millis()
        healthy = [n for n in nodes if is_node_healthy(n, now, self._config.lease_ttl)]
        _log.debug("Found %d healthy servers out of %d total", len(healthy), len(nodes))
        return healthy

    def is_healthy(self) -> bool:
        """Whether the node is currently connected and registered."""
        return self._healthy

    def get_node_info(self) -> NodeInfo:
        """A copy of this node's current registration record."""
        return dataclasses.replace(self._node_info)

    async def force_re_register(self) -> None:
        """Register again under a fresh lease and report the recovery."""
        await self._re_register_node()
        self._healthy = True
        self._emit(EtcdEvent(EtcdEventKind.CONNECTION_RECOVERED))

    async def next_event(self) -> EtcdEvent:
        """Wait for the next connectivity event."""
        return await self._events.get()

    async def close(self) -> None:
        """Stop heartbeating and release the connection."""
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        gateway, self._gateway = self._gateway, None
        if gateway is not None:
            await gateway.aclose()