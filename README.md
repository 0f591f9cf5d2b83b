# samsa

Building blocks for the nodes of a distributed streaming cluster:

- `samsa.config`: validated server, observability and storage settings,
  built from defaults, TOML or JSON files and environment variables.
- `samsa.errors`: the error hierarchy and `status_code`, which maps an error
  to the RPC status code and message it is reported with.
- `samsa.etcd_types`: node records (`NodeInfo`, `NodeStatus`), connectivity
  events (`EtcdEvent`, `EtcdEventKind`), the client settings (`EtcdConfig`),
  the retry rule `calculate_backoff` and the health rule `is_node_healthy`.
- `samsa.etcd_client`: `EtcdGateway`, a small async client for the etcd v3
  JSON gateway, and `EtcdClient`, which registers a node under a lease, keeps
  it alive with heartbeats, recovers after connection loss and lists the
  healthy nodes of the cluster.

## Installation

```
pip install samsa
```

Running the tests needs the `test` extra:

```
pip install "samsa[test]"
pytest
```

## Configuration

```python
from samsa.config import AppConfig, ObservabilityConfig, ServerConfig, StorageConfig

server = ServerConfig.load()          # config/server.toml, config/server.json, SERVER_* variables
print(server.endpoint())              # "0.0.0.0:50052" by default

storage = StorageConfig.from_env({"STORAGE_BATCH_SIZE": "200"})
app = AppConfig.load_from_file("samsa.toml")
tracing = ObservabilityConfig().with_otel_tracing("http://localhost:4317")
```

Each section is built in layers: its defaults, then every listed file that
exists (`.toml` or `.json`), then environment variables. `ServerConfig` reads
variables prefixed `SERVER_`, `StorageConfig` those prefixed `STORAGE_`;
`ObservabilityConfig` and `AppConfig` read unprefixed variables named after
their fields. `from_mapping` builds a section from a complete mapping.

Loaders validate the result and raise `samsa.errors.ConfigError` when a value
is missing, of the wrong type or out of range, when an existing file has an
unsupported extension, or, for `ServerConfig`, when the lease TTL is not longer
than the heartbeat interval. `ObservabilityConfig.from_env()` falls back to the
defaults instead of raising.

## Registering a node

```python
import asyncio
import uuid

from samsa.etcd_client import EtcdClient
from samsa.etcd_types import EtcdConfig, NodeInfo, NodeStatus


async def main():
    node = NodeInfo.create(uuid.uuid4(), "127.0.0.1", 50052)
    client = await EtcdClient.connect(EtcdConfig(endpoints=["localhost:2379"]), node)
    await client.register_and_start_heartbeat()
    await client.update_status(NodeStatus.READY)

    print(await client.get_healthy_servers())
    print(client.is_healthy(), client.get_node_info())
    event = await client.next_event()
    print(event.kind, event.message, event.status)

    await client.unregister_node()
    await client.close()


asyncio.run(main())
```

Nodes are stored under `/samsa/servers/<node id>` as compact JSON
(`NodeInfo.to_json` / `NodeInfo.from_json`). A node counts as healthy when its
status is `READY` and its last heartbeat is younger than twice the lease TTL.
While heartbeats fail, the client reconnects with exponential backoff
(`calculate_backoff`) and reports what happens through `EtcdEvent` values read
with `next_event()`. `force_re_register()` registers the node again under a
fresh lease.

Endpoints without a scheme are reached over `http://`; they are tried in order
until one answers.

## Errors

```python
from samsa.errors import NotFoundError, StatusCode, status_code

code, message = status_code(NotFoundError("stream missing"))
assert code is StatusCode.NOT_FOUND and message == "stream missing"
```

Not-found, already-exists, validation, configuration and unauthorized errors
keep their own codes; every other error is reported as `INTERNAL` with its full
text.

## What this package does not do

It provides no command-line tool, no RPC server and no record storage, batching
or database access. `ObservabilityConfig` only holds settings; nothing here
sets up logging, metrics export or tracing. The etcd client speaks to etcd's
HTTP JSON gateway, not to its native gRPC interface.