"""Management of tunnelled streams: TCP forwarding and remote file transfer."""

from __future__ import annotations

import itertools
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Protocol

from .message import Message, MessageType
from .stream import AckPayload, DataPayload, ResendRequestPayload, StreamStub

logger = logging.getLogger(__name__)

RPC_PROVIDER = "init"

RpcHandler = Callable[[str, dict, str, str, int], Any]


class FRPError(Exception):
    """Raised when a forwarding tunnel or file transfer cannot be set up."""


@dataclass
class FRPConfig:
    """A named forwarding rule between a local and a remote endpoint."""

    code: str
    local_target: str
    remote_node_id: str
    peer_target: str


class FileConnection:
    """Presents a binary file as the local end of a stream."""

    def __init__(self, file: BinaryIO):
        self._file = file

    def read(self, size: int) -> bytes:
        return self._file.read(size)

    def write(self, data: bytes) -> int:
        written = self._file.write(data)
        self._file.flush()
        return written

    def close(self) -> None:
        self._file.close()


class _SocketConnection:
    """Presents a connected socket as the local end of a stream."""

    def __init__(self, sock: socket.socket):
        self._sock = sock

    def read(self, size: int) -> bytes:
        return self._sock.recv(size)

    def write(self, data: bytes) -> None:
        self._sock.sendall(data)

    def close(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


class RpcNode(Protocol):
    """The node services that stream management relies on."""

    id: str

    def send_to(self, node_id: str, msg: Message) -> None: ...

    def make_rpc_request(
        self, target_node: str, provider: str, fun: str, params: dict
    ) -> Any:
        """Return the remote result, or None if the call failed or timed out."""
        ...

    def register_rpc_service(self, fun: str, provider: str, handler: RpcHandler) -> None: ...


def _split_address(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    return host.strip("[]"), int(port)


def _dial(addr: str) -> _SocketConnection:
    sock = socket.create_connection(_split_address(addr))
    sock.settimeout(None)
    return _SocketConnection(sock)


class StubManager:
    """Owns every stream stub of a node and the forwarding rules they follow."""

    def __init__(self, node: RpcNode, my_node_id: str):
        self.node = node
        self.my_node_id = my_node_id
        self._stubs: dict[str, StreamStub] = {}
        self._stubs_lock = threading.Lock()
        self._configs: dict[str, FRPConfig] = {}
        self._configs_lock = threading.Lock()
        self._counter = itertools.count(1)
        self._counter_lock = threading.Lock()
        self._listeners: list[socket.socket] = []

    # -- bookkeeping -------------------------------------------------------

    def _next_id(self) -> str:
        with self._counter_lock:
            return f"stub-{next(self._counter)}"

    def _config(self, code: str) -> FRPConfig:
        with self._configs_lock:
            config = self._configs.get(code)
        if config is None:
            raise FRPError(f"FRP code '{code}' not registered")
        return config

    def _add(self, stub_id: str, conn: Any, peer_node_id: str, peer_stub_id: str) -> StreamStub:
        stub = StreamStub(self.node, conn, stub_id, peer_node_id, peer_stub_id, self.my_node_id)
        with self._stubs_lock:
            self._stubs[stub_id] = stub
        return stub

    def register(self, config: FRPConfig) -> None:
        """Add or replace a forwarding rule."""
        with self._configs_lock:
            self._configs[config.code] = config

    def register_code(
        self, code: str, local_target: str, remote_node_id: str, peer_target: str
    ) -> FRPConfig:
        """Build and register a forwarding rule; every field is required."""
        if not (code and local_target and remote_node_id and peer_target):
            raise FRPError("all fields must be non-empty")
        config = FRPConfig(code, local_target, remote_node_id, peer_target)
        self.register(config)
        return config

    def unregister(self, stub_id: str) -> None:
        """Close and forget a stub; unknown ids are ignored."""
        with self._stubs_lock:
            stub = self._stubs.pop(stub_id, None)
        if stub is not None:
            stub.close()

    def get(self, stub_id: str) -> StreamStub | None:
        """Return the stub with this id, or None."""
        with self._stubs_lock:
            return self._stubs.get(stub_id)

    def close_all(self) -> None:
        """Close every stub and every listener."""
        with self._stubs_lock:
            stubs = list(self._stubs.values())
            self._stubs.clear()
        for stub in stubs:
            stub.close()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener.close()

    # -- tunnels -----------------------------------------------------------

    def connect_tcp(self, dst: str, peer_stub_id: str) -> str:
        """Dial ``dst`` and bind the connection to a new stub; return its id."""
        stub_id = self._next_id()
        try:
            conn = _dial(dst)
        except (OSError, ValueError) as exc:
            raise FRPError(f"failed to connect to target {dst}: {exc}") from exc
        stub = self._add(stub_id, conn, "", peer_stub_id)
        stub.start_send_loop()
        stub.start_recv_loop()
        return stub_id

    def _request_peer_stub(self, config: FRPConfig, stub_id: str) -> str:
        params = {"code": config.code, "stub_id": stub_id}
        result = self.node.make_rpc_request(
            config.remote_node_id, RPC_PROVIDER, "_frp_connect", params
        )
        if result is None:
            raise FRPError(f"RPC _frp_connect failed: {result}")
        if not isinstance(result, dict):
            raise FRPError("unexpected RPC response format")
        if "peer_stub_id" not in result:
            raise FRPError("RPC response missing 'peer_stub_id'")
        peer_stub_id = result["peer_stub_id"]
        if not isinstance(peer_stub_id, str) or not peer_stub_id:
            raise FRPError("invalid 'peer_stub_id' in RPC response")
        return peer_stub_id

    def _bind_remote(self, stub: StreamStub, config: FRPConfig) -> None:
        try:
            stub.peer_stub_id = self._request_peer_stub(config, stub.id)
        except FRPError:
            self.unregister(stub.id)
            raise
        stub.start_send_loop()
        stub.start_recv_loop()

    def run_from_local(self, code: str) -> str:
        """Connect the rule's local target to its remote peer; return the stub id."""
        config = self._config(code)
        try:
            conn = _dial(config.local_target)
        except (OSError, ValueError) as exc:
            raise FRPError(
                f"failed to connect to local target {config.local_target}: {exc}"
            ) from exc
        stub = self._add(self._next_id(), conn, config.remote_node_id, "")
        self._bind_remote(stub, config)
        return stub.id

    def start_listener(self, code: str, listen_addr: str) -> socket.socket:
        """Accept connections on ``listen_addr`` and tunnel each to the rule's peer."""
        try:
            host, port = _split_address(listen_addr)
            listener = socket.create_server((host, port))
        except (OSError, ValueError) as exc:
            raise FRPError(f"failed to listen on {listen_addr}: {exc}") from exc
        self._listeners.append(listener)
        threading.Thread(
            target=self._accept_loop, args=(listener, code), name=f"listen-{code}", daemon=True
        ).start()
        logger.info("started listener on %s for code %s", listen_addr, code)
        return listener

    def _accept_loop(self, listener: socket.socket, code: str) -> None:
        while True:
            try:
                client, _ = listener.accept()
            except OSError as exc:
                if listener.fileno() == -1:
                    return
                logger.warning("listener accept error: %s", exc)
                continue
            threading.Thread(
                target=self._serve_client, args=(client, code), daemon=True
            ).start()

    def _serve_client(self, client: socket.socket, code: str) -> None:
        conn = _SocketConnection(client)
        stub_id = self._next_id()
        try:
            config = self._config(code)
        except FRPError as exc:
            logger.warning("%s", exc)
            conn.close()
            return
        stub = self._add(stub_id, conn, config.remote_node_id, "")
        try:
            self._bind_remote(stub, config)
        except FRPError as exc:
            logger.warning("tunnel setup failed: %s", exc)

    # -- file transfer -----------------------------------------------------

    def _open_remote_file(self, config: FRPConfig, stub: StreamStub, path: str, mode: str) -> None:
        params = {"code": config.code, "stub_id": stub.id, "filename": path, "mode": mode}
        result = self.node.make_rpc_request(
            config.remote_node_id, RPC_PROVIDER, "_open_file", params
        )
        if result is None:
            self.unregister(stub.id)
            raise FRPError(f"RPC _open_file failed: {result}")
        if not isinstance(result, dict) or result.get("ok") is not True:
            self.unregister(stub.id)
            raise FRPError(f"remote file open failed: {result}")
        peer_stub_id = result.get("peer_stub_id")
        stub.peer_stub_id = peer_stub_id if isinstance(peer_stub_id, str) else ""

    def transfer_file_to_remote(self, code: str, local_path: str, remote_path: str) -> str:
        """Stream a local file to ``remote_path`` on the rule's peer; return the stub id."""
        try:
            file = open(local_path, "rb")
        except OSError as exc:
            raise FRPError(f"failed to open local file: {exc}") from exc
        stub_id = self._next_id()
        try:
            config = self._config(code)
        except FRPError:
            file.close()
            raise
        stub = self._add(stub_id, FileConnection(file), config.remote_node_id, "")
        self._open_remote_file(config, stub, remote_path, "w")
        stub.start_send_loop()
        return stub_id

    def download_file_from_remote(self, code: str, remote_path: str, local_path: str) -> str:
        """Stream ``remote_path`` from the rule's peer into a local file; return the stub id."""
        try:
            file = open(local_path, "wb")
        except OSError as exc:
            raise FRPError(f"failed to create local file: {exc}") from exc
        stub_id = self._next_id()
        try:
            config = self._config(code)
        except FRPError:
            file.close()
            raise
        stub = self._add(stub_id, FileConnection(file), config.remote_node_id, "")
        self._open_remote_file(config, stub, remote_path, "r")
        stub.start_recv_loop()
        return stub_id

    # -- message dispatch --------------------------------------------------

    def handle_message(self, msg: Message) -> bool:
        """Route a stream message to its stub; return False if it was not delivered."""
        parsers = {
            MessageType.FRP_DATA: DataPayload.from_json,
            MessageType.FRP_ACK: AckPayload.from_json,
            MessageType.FRP_RESEND_REQUEST: ResendRequestPayload.from_json,
        }
        if msg.type == MessageType.FRP_CLOSE:
            stub_id = msg.data
        elif msg.type in parsers:
            try:
                stub_id = parsers[msg.type](msg.data).stub_id
            except ValueError as exc:
                logger.warning("%s unmarshal error: %s", msg.type.name, exc)
                return False
        else:
            logger.warning("unhandled stream message type: %s", msg.type)
            return False
        stub = self.get(stub_id)
        if stub is None:
            logger.warning("stub not found for %s (type %s)", stub_id, msg.type.name)
            return False
        return stub.deliver(msg.type, msg.data)

    # -- RPC services ------------------------------------------------------

    def register_rpc_handlers(self) -> None:
        """Expose the tunnel and file services to remote nodes."""
        self.node.register_rpc_service("_connect_tcp", RPC_PROVIDER, self._rpc_connect_tcp)
        self.node.register_rpc_service("_frp_connect", RPC_PROVIDER, self._rpc_frp_connect)
        self.node.register_rpc_service("_open_file", RPC_PROVIDER, self._rpc_open_file)
        self.node.register_rpc_service("_close_file", RPC_PROVIDER, self._rpc_close_file)

    def _rpc_connect_tcp(self, fun: str, params: dict, sender: str, to: str, invoke_id: int) -> dict:
        dst = params.get("dst")
        if not isinstance(dst, str):
            return {"error": "invalid or missing 'dst'"}
        peer_stub_id = params.get("stub_id")
        if not isinstance(peer_stub_id, str):
            return {"error": "invalid or missing 'stub_id'"}
        try:
            local_id = self.connect_tcp(dst, peer_stub_id)
        except FRPError as exc:
            return {"error": str(exc)}
        return {"ok": True, "peer_stub_id": local_id}

    def _rpc_frp_connect(self, fun: str, params: dict, sender: str, to: str, invoke_id: int) -> dict:
        code = params.get("code")
        if not isinstance(code, str) or not code:
            return {"error": "missing or invalid 'code'"}
        peer_stub_id = params.get("stub_id")
        if not isinstance(peer_stub_id, str) or not peer_stub_id:
            return {"error": "missing or invalid 'stub_id'"}
        try:
            config = self._config(code)
        except FRPError as exc:
            return {"error": str(exc)}
        try:
            conn = _dial(config.peer_target)
        except (OSError, ValueError) as exc:
            return {"error": f"failed to connect to PeerTarget: {exc}"}
        stub = self._add(self._next_id(), conn, sender, peer_stub_id)
        stub.start_send_loop()
        stub.start_recv_loop()
        return {"peer_stub_id": stub.id}

    def _rpc_open_file(self, fun: str, params: dict, sender: str, to: str, invoke_id: int) -> dict:
        def text(name: str) -> str:
            value = params.get(name)
            return value if isinstance(value, str) else ""

        code, peer_stub_id, filename, mode = (
            text("code"), text("stub_id"), text("filename"), text("mode")
        )
        try:
            self._config(code)
        except FRPError as exc:
            return {"error": str(exc)}
        if not filename or not peer_stub_id or mode not in ("r", "w"):
            return {"error": "invalid parameters"}
        try:
            file = open(filename, "rb" if mode == "r" else "wb")
        except OSError as exc:
            return {"error": f"file open error: {exc}"}
        stub = self._add(self._next_id(), FileConnection(file), sender, peer_stub_id)
        if mode == "r":
            stub.start_send_loop()
        else:
            stub.start_recv_loop()
        return {"ok": True, "peer_stub_id": stub.id}

    def _rpc_close_file(self, fun: str, params: dict, sender: str, to: str, invoke_id: int) -> dict:
        stub_id = params.get("stub_id")
        if not isinstance(stub_id, str) or not stub_id:
            return {"error": "missing stub_id"}
        self.unregister(stub_id)
        return {"ok": True}