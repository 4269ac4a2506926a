import time

import pytest

from majula.channel import Channel, Connection
from majula.constants import COST_CHECK_TIME_PERIOD
from majula.message import Message, MessageType


class FakeWorker:
    def __init__(self):
        self.sent = []
        self.broadcasts = []

    def node_id(self):
        return "worker"

    def send_to(self, peer_id, msg):
        self.sent.append((peer_id, msg))

    def broadcast(self, msg):
        self.broadcasts.append(msg)

    def close(self):
        pass


class FakeHost:
    def __init__(self, node_id="me"):
        self.id = node_id
        self.my_links_version = 3
        self.received = []
        self.links = []

    def on_recv(self, source, msg):
        self.received.append((source, msg))

    def link_update_from_channel(self, link):
        self.links.append(link)


@pytest.fixture
def parts():
    host = FakeHost()
    worker = FakeWorker()
    return Channel("ch1", host, worker), host, worker


def test_node_id(parts):
    channel, host, _ = parts
    assert channel.node_id() == host.id


def test_message_from_self_ignored(parts):
    channel, host, _ = parts
    channel.on_recv(host.id, Message(MessageType.OTHER, data="x"))
    assert host.received == []
    assert channel.peers == {}


def test_other_message_forwarded_and_peer_tracked(parts):
    channel, host, _ = parts
    msg = Message(MessageType.OTHER, data="x")
    channel.on_recv("peer", msg)
    assert host.received == [("peer", msg)]
    assert "peer" in channel.peers


def test_heartbeat_forwarded(parts):
    channel, host, worker = parts
    msg = Message(MessageType.HEARTBEAT)
    channel.on_recv("peer", msg)
    assert host.received == [("peer", msg)]
    assert worker.sent == []


def test_hello_sends_cost_request(parts):
    channel, host, worker = parts
    hello = Message(MessageType.HELLO, data="peer")
    channel.on_recv("peer", hello)
    assert host.received == [("peer", hello)]
    assert "peer" in channel.peers
    assert len(worker.sent) == 1
    target, request = worker.sent[0]
    assert target == "peer"
    assert request.type == MessageType.COST_REQUEST
    assert request.to == "peer" and request.route == "peer"
    assert request.sender == host.id and request.last_sender == host.id
    assert request.ttl == 1
    assert int(request.data) <= time.time_ns()


def test_cost_request_answered_with_same_data(parts):
    channel, host, worker = parts
    channel.on_recv("peer", Message(MessageType.COST_REQUEST, data="12345"))
    assert len(worker.sent) == 1
    target, ack = worker.sent[0]
    assert target == "peer"
    assert ack.type == MessageType.COST_ACK
    assert ack.data == "12345"
    assert host.received == []


def test_cost_ack_updates_link(parts):
    channel, host, _ = parts
    sent_at = time.time_ns()
    channel.on_recv("peer", Message(MessageType.COST_ACK, data=str(sent_at)))
    assert len(host.links) == 1
    link = host.links[0]
    assert link.source == host.id
    assert link.target == "peer"
    assert link.channel == "ch1"
    assert link.version == host.my_links_version
    assert link.cost >= 0


def test_cost_ack_with_bad_data_ignored(parts):
    channel, host, _ = parts
    channel.on_recv("peer", Message(MessageType.COST_ACK, data="nonsense"))
    assert host.links == []


def test_add_peer_refreshes_existing(parts):
    channel, _, _ = parts
    channel.peers["peer"] = Connection(last_recv=0.0, last_send=0.0)
    channel.add_peer("peer")
    conn = channel.peers["peer"]
    assert conn.last_recv > 0.0 and conn.last_send > 0.0


def test_send_updates_send_time(parts):
    channel, _, worker = parts
    channel.peers["peer"] = Connection(last_recv=0.0, last_send=0.0)
    msg = Message(MessageType.OTHER)
    channel.send("peer", msg)
    assert worker.sent == [("peer", msg)]
    assert channel.peers["peer"].last_send > 0.0
    assert channel.peers["peer"].last_recv == 0.0


def test_broadcast_updates_all_peers(parts):
    channel, _, worker = parts
    channel.peers["a"] = Connection(last_recv=0.0, last_send=0.0)
    channel.peers["b"] = Connection(last_recv=0.0, last_send=0.0)
    msg = Message(MessageType.TOPIC_PUBLISH)
    channel.broadcast(msg)
    assert worker.broadcasts == [msg]
    assert all(c.last_send > 0.0 for c in channel.peers.values())


def test_check_cost_drops_stale_and_probes_rest(parts):
    channel, _, worker = parts
    channel.add_peer("fresh")
    old = time.monotonic() - COST_CHECK_TIME_PERIOD * 20 - 5
    channel.peers["stale"] = Connection(last_recv=old, last_send=old)
    channel.check_cost()
    assert set(channel.peers) == {"fresh"}
    assert [target for target, _ in worker.sent] == ["fresh"]
    assert worker.sent[0][1].type == MessageType.COST_REQUEST


def test_on_connect_changed_broadcasts_hello(parts):
    channel, host, _ = parts
    other = FakeWorker()
    channel.on_connect_changed(other, True)
    assert len(other.broadcasts) == 1
    hello = other.broadcasts[0]
    assert hello.type == MessageType.HELLO
    assert hello.data == host.id
    assert hello.ttl == 1


def test_on_connect_changed_disconnect_does_nothing(parts):
    channel, _, _ = parts
    other = FakeWorker()
    channel.on_connect_changed(other, False)
    assert other.broadcasts == []