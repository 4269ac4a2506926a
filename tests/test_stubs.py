import socket
import threading
import time

import pytest

from majula.message import Message, MessageType
from majula.stream import AckPayload, DataPayload
from majula.stubs import FileConnection, FRPConfig, FRPError, StubManager


class FakeNode:
    def __init__(self, node_id="local"):
        self.id = node_id
        self.sent = []
        self.calls = []
        self.responses = {}
        self.handlers = {}
        self._lock = threading.Lock()

    def send_to(self, node_id, msg):
        with self._lock:
            self.sent.append((node_id, msg))

    def make_rpc_request(self, target_node, provider, fun, params):
        self.calls.append((target_node, provider, fun, dict(params)))
        return self.responses.get(fun)

    def register_rpc_service(self, fun, provider, handler):
        self.handlers[fun] = (provider, handler)

    def messages(self, message_type):
        with self._lock:
            return [m for _, m in self.sent if m.type == message_type]


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def node():
    return FakeNode()


@pytest.fixture
def manager(node):
    mgr = StubManager(node, node.id)
    mgr.register_code("code", "127.0.0.1:1", "peer", "127.0.0.1:2")
    yield mgr
    mgr.close_all()


@pytest.fixture
def server():
    sock = socket.create_server(("127.0.0.1", 0))
    yield sock
    sock.close()


def test_register_code_requires_every_field(node):
    mgr = StubManager(node, node.id)
    with pytest.raises(FRPError):
        mgr.register_code("code", "", "peer", "127.0.0.1:2")


def test_register_code_returns_config(node):
    mgr = StubManager(node, node.id)
    config = mgr.register_code("c", "a:1", "peer", "b:2")
    assert config == FRPConfig("c", "a:1", "peer", "b:2")


def test_run_from_local_unknown_code(manager):
    with pytest.raises(FRPError, match="not registered"):
        manager.run_from_local("missing")


def test_run_from_local_rejects_empty_peer_stub(node, server):
    mgr = StubManager(node, node.id)
    port = server.getsockname()[1]
    mgr.register_code("c", f"127.0.0.1:{port}", "peer", "127.0.0.1:2")
    node.responses["_frp_connect"] = {"peer_stub_id": ""}
    with pytest.raises(FRPError, match="peer_stub_id"):
        mgr.run_from_local("c")
    assert mgr.get("stub-1") is None
    mgr.close_all()


def test_run_from_local_binds_peer(node, server):
    mgr = StubManager(node, node.id)
    port = server.getsockname()[1]
    mgr.register_code("c", f"127.0.0.1:{port}", "peer", "127.0.0.1:2")
    node.responses["_frp_connect"] = {"peer_stub_id": "remote-3"}
    stub_id = mgr.run_from_local("c")
    stub = mgr.get(stub_id)
    assert stub.peer_stub_id == "remote-3"
    assert stub.peer_node_id == "peer"
    assert node.calls[0] == ("peer", "init", "_frp_connect", {"code": "c", "stub_id": stub_id})
    mgr.close_all()


def test_connect_tcp_forwards_data(manager, node, server):
    port = server.getsockname()[1]
    stub_id = manager.connect_tcp(f"127.0.0.1:{port}", "peer-7")
    accepted, _ = server.accept()
    with accepted:
        accepted.sendall(b"data")
        msgs = wait_for(lambda: node.messages(MessageType.FRP_DATA))
        assert DataPayload.from_json(msgs[0].data) == DataPayload("peer-7", 1, b"data")
    assert manager.get(stub_id).id == stub_id


def test_connect_tcp_refused(manager):
    probe = socket.create_server(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    with pytest.raises(FRPError):
        manager.connect_tcp(f"127.0.0.1:{port}", "peer-7")


def test_transfer_file_sends_contents_then_close(manager, node, tmp_path):
    local = tmp_path / "in.bin"
    local.write_bytes(b"hello")
    node.responses["_open_file"] = {"ok": True, "peer_stub_id": "remote-1"}
    stub_id = manager.transfer_file_to_remote("code", str(local), "out.bin")
    data_msgs = wait_for(lambda: node.messages(MessageType.FRP_DATA))
    assert DataPayload.from_json(data_msgs[0].data) == DataPayload("remote-1", 1, b"hello")
    close_msgs = wait_for(lambda: node.messages(MessageType.FRP_CLOSE))
    assert close_msgs[0].data == "remote-1"
    assert node.calls[0][3] == {
        "code": "code",
        "stub_id": stub_id,
        "filename": "out.bin",
        "mode": "w",
    }


def test_transfer_file_rejected_by_remote(manager, node, tmp_path):
    local = tmp_path / "in.bin"
    local.write_bytes(b"x")
    node.responses["_open_file"] = {"error": "denied"}
    with pytest.raises(FRPError, match="remote file open failed"):
        manager.transfer_file_to_remote("code", str(local), "out.bin")
    assert manager.get("stub-1") is None


def test_transfer_missing_local_file(manager, tmp_path):
    with pytest.raises(FRPError, match="failed to open local file"):
        manager.transfer_file_to_remote("code", str(tmp_path / "nope"), "out.bin")


def test_download_writes_received_data(manager, node, tmp_path):
    local = tmp_path / "dl.bin"
    node.responses["_open_file"] = {"ok": True, "peer_stub_id": "remote-2"}
    stub_id = manager.download_file_from_remote("code", "remote.bin", str(local))
    msg = Message(type=MessageType.FRP_DATA, data=DataPayload(stub_id, 1, b"abc").to_json())
    assert manager.handle_message(msg) is True
    assert wait_for(lambda: local.read_bytes() == b"abc")
    acks = wait_for(lambda: node.messages(MessageType.FRP_ACK))
    assert AckPayload.from_json(acks[0].data) == AckPayload("remote-2", 1)


def test_handle_message_unknown_stub(manager):
    msg = Message(type=MessageType.FRP_ACK, data=AckPayload("nobody", 1).to_json())
    assert manager.handle_message(msg) is False


def test_handle_message_malformed(manager):
    assert manager.handle_message(Message(type=MessageType.FRP_DATA, data="not json")) is False


def test_handle_message_other_type(manager):
    assert manager.handle_message(Message(type=MessageType.OTHER, data="x")) is False


def test_close_message_cancels_stub(manager, node, tmp_path):
    node.responses["_open_file"] = {"ok": True, "peer_stub_id": "remote-2"}
    stub_id = manager.download_file_from_remote("code", "r", str(tmp_path / "f"))
    stub = manager.get(stub_id)
    assert manager.handle_message(Message(type=MessageType.FRP_CLOSE, data=stub_id)) is True
    assert wait_for(lambda: stub.cancelled)


def test_unregister_and_close_all(manager, node, tmp_path):
    node.responses["_open_file"] = {"ok": True, "peer_stub_id": "remote-2"}
    first = manager.download_file_from_remote("code", "r", str(tmp_path / "a"))
    second = manager.download_file_from_remote("code", "r", str(tmp_path / "b"))
    stub = manager.get(first)
    manager.unregister(first)
    assert manager.get(first) is None
    assert stub.cancelled
    manager.close_all()
    assert manager.get(second) is None


def test_rpc_handlers_registered(manager, node, tmp_path):
    manager.register_rpc_handlers()
    assert set(node.handlers) == {"_connect_tcp", "_frp_connect", "_open_file", "_close_file"}
    assert all(provider == "init" for provider, _ in node.handlers.values())
    node.responses["_open_file"] = {"ok": True, "peer_stub_id": "remote-2"}
    stub_id = manager.download_file_from_remote("code", "r", str(tmp_path / "f"))
    assert manager.get(stub_id).peer_stub_id == "remote-2"
    node.handlers["_close_file"][1]("_close_file", {"stub_id": stub_id}, "peer", "local", 1)
    assert manager.get(stub_id) is None


def test_rpc_close_file_requires_stub_id(manager, node, tmp_path):
    manager.register_rpc_handlers()
    handler = node.handlers["_close_file"][1]
    assert handler("_close_file", {}, "peer", "local", 1) == {"error": "missing stub_id"}
    node.responses["_open_file"] = {"ok": True, "peer_stub_id": "remote-2"}
    stub_id = manager.download_file_from_remote("code", "r", str(tmp_path / "f"))
    stub = manager.get(stub_id)
    assert stub.peer_stub_id == "remote-2"
    assert handler("_close_file", {"stub_id": stub_id}, "peer", "local", 1) == {"ok": True}
    assert manager.get(stub_id) is None
    assert stub.cancelled


def test_rpc_open_file_validation(manager, node, tmp_path):
    manager.register_rpc_handlers()
    handler = node.handlers["_open_file"][1]
    unknown = handler("_open_file", {"code": "zzz"}, "peer", "local", 1)
    assert "not registered" in unknown["error"]
    bad_mode = handler(
        "_open_file",
        {"code": "code", "stub_id": "s", "filename": str(tmp_path / "f"), "mode": "x"},
        "peer",
        "local",
        1,
    )
    assert bad_mode == {"error": "invalid parameters"}
    assert manager.get("stub-1") is None
    assert not (tmp_path / "f").exists()


def test_rpc_open_file_creates_stub(manager, node, tmp_path):
    manager.register_rpc_handlers()
    handler = node.handlers["_open_file"][1]
    params = {"code": "code", "stub_id": "remote-5", "filename": str(tmp_path / "f"), "mode": "w"}
    result = handler("_open_file", params, "peer", "local", 1)
    assert result["ok"] is True
    stub = manager.get(result["peer_stub_id"])
    assert stub.peer_stub_id == "remote-5"
    assert stub.peer_node_id == "peer"


def test_rpc_connect_tcp_missing_dst(manager, node):
    manager.register_rpc_handlers()
    handler = node.handlers["_connect_tcp"][1]
    assert handler("_connect_tcp", {"stub_id": "s"}, "peer", "local", 1) == {
        "error": "invalid or missing 'dst'"
    }
    assert manager.get("stub-1") is None


def test_rpc_frp_connect_missing_code(manager, node):
    manager.register_rpc_handlers()
    handler = node.handlers["_frp_connect"][1]
    assert handler("_frp_connect", {"stub_id": "s"}, "peer", "local", 1) == {
        "error": "missing or invalid 'code'"
    }
    assert manager.get("stub-1") is None


def test_listener_tunnels_client(manager, node):
    node.responses["_frp_connect"] = {"peer_stub_id": "remote-9"}
    listener = manager.start_listener("code", "127.0.0.1:0")
    port = listener.getsockname()[1]
    with socket.create_connection(("127.0.0.1", port)) as client:
        assert wait_for(lambda: manager.get("stub-1") is not None
                        and manager.get("stub-1").peer_stub_id == "remote-9")
        client.sendall(b"ping")
        msgs = wait_for(lambda: node.messages(MessageType.FRP_DATA))
        assert DataPayload.from_json(msgs[0].data) == DataPayload("remote-9", 1, b"ping")


def test_file_connection_round_trip(tmp_path):
    path = tmp_path / "f.bin"
    with open(path, "wb") as handle:
        writer = FileConnection(handle)
        writer.write(b"abc")
        assert path.read_bytes() == b"abc"
    reader = FileConnection(open(path, "rb"))
    assert reader.read(2) == b"ab"
    assert reader.read(10) == b"c"
    reader.close()
    with pytest.raises(ValueError):
        reader.read(1)