# majula

Building blocks for a small overlay network: typed messages, link records,
channels that measure link cost between peers, reliable stream stubs that
tunnel TCP connections or files across nodes, and a WebSocket client for
talking to a node's client gateway.

## Installation

```
pip install .
```

For running the tests:

```
pip install .[test]
pytest
```

## Modules

- `majula.constants` – timing periods in seconds, such as
  `COST_CHECK_TIME_PERIOD`, `RETRY_LOOP_PERIOD` and `DEFAULT_RPC_OVERTIME`,
  and the `DEBUG` switch for channel trace output.
- `majula.message` – `MessageType`, the `Message` dataclass and
  `is_broadcast()`, which tells whether a message type is flooded to every
  peer. `Message.describe()` renders a message as text,
  `Message.is_important()` is false only for `OTHER` traffic and
  `Message.is_frp()` is true for the four stream message types.
- `majula.link` – `Link`, a directed, versioned edge with a measured cost.
  `Link.add_version()` increments the version, `Link.touch()` stamps the
  update time, `Link.is_stale()` reports links not refreshed for more than
  ten seconds and `costs_equal()` compares two costs.
- `majula.channel` – `Channel` keeps a `Connection` record per peer reachable
  over a `ChannelWorker`. It answers `HELLO` with a cost probe, answers cost
  probes with acknowledgements, turns acknowledgements into `Link` updates
  for its `HostNode`, and hands all other messages to the host.
  `Channel.check_cost()` drops peers silent for twenty cost-check periods and
  probes the rest; `Channel.on_connect_changed()` broadcasts a `HELLO` once
  the worker connects.
- `majula.window` – `WindowBuffer`, a fixed-size sliding window keyed by
  sequence number, with a retry count and send time per stored payload.
- `majula.stream` – `StreamStub`, a reliable, ordered byte stream carried in
  node messages, with cumulative acknowledgements and resend requests.
  Payloads are `DataPayload`, `AckPayload` and `ResendRequestPayload`, each
  with `to_json()` and `from_json()` (which raises `ValueError` on malformed
  input). The local end is any `StreamConnection` (`read`, `write`, `close`).
- `majula.stubs` – `StubManager` registers `FRPConfig` forwarding rules
  (`register`, `register_code`), opens tunnels (`connect_tcp`,
  `run_from_local`, `start_listener`), transfers files
  (`transfer_file_to_remote`, `download_file_from_remote`), routes incoming
  stream messages to their stub (`handle_message`) and exposes the
  `_connect_tcp`, `_frp_connect`, `_open_file` and `_close_file` services
  through `register_rpc_handlers()`. `FileConnection` presents a binary file
  as a stream end. Failures raise `FRPError`.
- `majula.client` – `MajulaClient`, a WebSocket client that reconnects until
  it succeeds, then subscribes, publishes, registers and calls RPCs, sends
  heartbeats and exchanges private messages. Frames are `ClientPackage`
  objects; `RpcMeta` describes a registered RPC.

## Example

```python
from majula.client import MajulaClient

client = MajulaClient("http://localhost:8080", "sensor-1")

client.subscribe("weather", lambda topic, args: print(topic, args))
client.publish("weather", {"temp": 21})

try:
    result = client.call_rpc("add", "node-a", "default", {"a": 1, "b": 2}, timeout=5.0)
    print(result)
except TimeoutError:
    print("no answer")

client.quit()
```

`MajulaClient.ws_url()` turns an `http://` or `https://` address into the
matching `ws://` or `wss://` URL with the entity appended under `/ws/`.
Passing `autostart=False` creates a client that does not connect; packages
passed to `send()` then stay in its `outbox` queue.

## What this package does not do

- There is no node: routing tables, link-state flooding, topic and RPC
  registries are not included. `Channel` needs a `HostNode`, `StreamStub`
  a `SendingNode`, and `StubManager` an `RpcNode` supplied by the caller.
- There is no transport worker: `Channel` needs a `ChannelWorker` that
  actually moves messages between machines.
- There is no gateway server for `MajulaClient` to connect to, and no
  command-line program.