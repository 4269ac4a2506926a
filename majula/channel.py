"""Channels: per-transport peer bookkeeping and link-cost probing."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Protocol

from .constants import COST_CHECK_TIME_PERIOD, DEBUG
from .link import Link
from .message import Message, MessageType


@dataclass
class Connection:
    """Last send and receive times for one peer, in monotonic seconds."""

    last_recv: float = field(default_factory=time.monotonic)
    last_send: float = field(default_factory=time.monotonic)


class ChannelWorker(Protocol):
    """The transport that actually moves messages for a channel."""

    def node_id(self) -> str: ...

    def send_to(self, peer_id: str, msg: Message) -> None: ...

    def broadcast(self, msg: Message) -> None: ...

    def close(self) -> None: ...


class HostNode(Protocol):
    """The node a channel belongs to."""

    id: str
    my_links_version: int

    def on_recv(self, source: str, msg: Message) -> None: ...

    def link_update_from_channel(self, link: Link) -> None: ...


class Channel:
    """Tracks peers reachable over one worker and measures link costs."""

    def __init__(self, channel_id: str, host: HostNode, worker: ChannelWorker):
        self.id = channel_id
        self.host = host
        self.worker = worker
        # Keyed by the peer node id, not by channel id.
        self.peers: dict[str, Connection] = {}
        self._lock = threading.Lock()

    def _debug(self, name: str, message: str) -> None:
        if DEBUG:
            print(f"{{{self.id}: {name}}} {message}")

    def node_id(self) -> str:
        """Return the id of the host node."""
        return self.host.id

    def _touch(self, peer_id: str, *, send: bool) -> None:
        now = time.monotonic()
        with self._lock:
            conn = self.peers.get(peer_id)
            if conn is None:
                self.peers[peer_id] = Connection(last_recv=now, last_send=now)
            elif send:
                conn.last_send = now
            else:
                conn.last_recv = now

    def add_peer(self, peer_id: str) -> None:
        """Add a peer, or refresh both timestamps of a known one."""
        now = time.monotonic()
        with self._lock:
            conn = self.peers.get(peer_id)
            if conn is None:
                self._debug("addChannel", "Add Channel Peer " + peer_id)
                self.peers[peer_id] = Connection(last_recv=now, last_send=now)
            else:
                self._debug("addChannel", "Update Channel Peer " + peer_id)
                conn.last_recv = now
                conn.last_send = now

    def broadcast(self, msg: Message) -> None:
        """Send a message to every peer through the worker."""
        self._debug("broadCast", msg.describe())
        with self._lock:
            peers = list(self.peers)
        for peer_id in peers:
            self._touch(peer_id, send=True)
        self.worker.broadcast(msg)

    def send(self, next_hop: str, msg: Message) -> None:
        """Send a message to one neighbouring node."""
        self._debug("send", msg.describe())
        self._touch(next_hop, send=True)
        self.worker.send_to(next_hop, msg)

    def on_recv(self, source: str, msg: Message) -> None:
        """Handle a message arriving from a neighbour."""
        self._debug("onRecv", msg.describe())
        if source == self.host.id:
            return
        self._touch(source, send=False)
        handlers = {
            MessageType.COST_REQUEST: self._handle_cost_request,
            MessageType.COST_ACK: self._handle_cost_ack,
            MessageType.HELLO: self._handle_hello,
            MessageType.HEARTBEAT: self._handle_heartbeat,
        }
        handler = handlers.get(msg.type)
        if handler is None:
            self.host.on_recv(source, msg)
        else:
            handler(source, msg)

    def _direct(self, message_type: MessageType, target: str, data: str) -> Message:
        return Message(
            type=message_type,
            data=data,
            sender=self.host.id,
            to=target,
            route=target,
            ttl=1,
            lost=False,
            last_sender=self.host.id,
        )

    def _handle_heartbeat(self, source: str, msg: Message) -> None:
        self._debug("handleHeartbeat", msg.describe())
        self.host.on_recv(source, msg)

    def _handle_hello(self, source: str, msg: Message) -> None:
        self._debug("handleHello", msg.describe())
        self.host.on_recv(source, msg)
        self.add_peer(source)
        request = self._direct(MessageType.COST_REQUEST, source, str(time.time_ns()))
        self._debug("handleHello-sendCostRequest", request.describe())
        self.send(source, request)

    def check_cost(self) -> None:
        """Drop silent peers and probe the remaining ones for link cost."""
        self._debug("checkCost", "start the check cost action")
        now = time.monotonic()
        limit = COST_CHECK_TIME_PERIOD * 20
        with self._lock:
            expired = [p for p, c in self.peers.items() if now - c.last_recv > limit]
            for peer_id in expired:
                del self.peers[peer_id]
            remaining = list(self.peers)
        for peer_id in remaining:
            request = self._direct(MessageType.COST_REQUEST, peer_id, str(time.time_ns()))
            self.send(peer_id, request)
        self._debug("checkCost", "finish the check cost action")

    def _handle_cost_request(self, source: str, msg: Message) -> None:
        self._debug("handleCostRequest", msg.describe())
        ack = self._direct(MessageType.COST_ACK, source, msg.data)
        self._debug("handleCostRequest-sendACK", ack.describe())
        self.send(source, ack)

    def _handle_cost_ack(self, source: str, msg: Message) -> None:
        self._debug("handleCostAck", msg.describe())
        try:
            sent_at = int(msg.data)
        except ValueError:
            return
        link = Link(
            source=self.host.id,
            target=source,
            cost=time.time_ns() - sent_at,
            version=self.host.my_links_version,
            channel=self.id,
        )
        self.host.link_update_from_channel(link)

    def on_connect_changed(self, worker: ChannelWorker, connected: bool) -> None:
        """Announce this node with a HELLO once the worker connects."""
        if not connected:
            return
        hello = Message(
            type=MessageType.HELLO,
            data=self.host.id,
            sender=self.host.id,
            ttl=1,
            lost=False,
            last_sender=self.host.id,
        )
        self._debug("onConnectedChanged", "BroadCast Hello")
        worker.broadcast(hello)