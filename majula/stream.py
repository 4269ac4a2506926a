"""Reliable, ordered byte streams tunnelled through node messages."""

from __future__ import annotations

import base64
import itertools
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from .constants import RETRY_LOOP_PERIOD
from .message import Message, MessageType
from .window import WindowBuffer

logger = logging.getLogger(__name__)

MAX_WINDOW_SIZE = 1024
MAX_RETRY_COUNT = 5
ACK_TIMEOUT = 5.0
RECV_ACK_THRESHOLD = 128
RECV_ACK_TIMEOUT = 0.2
SEND_RESEND_TIMEOUT = 0.2
MAX_RESEND_PER_CALL = 10
IDLE_CHECK_PERIOD = 5.0
IDLE_TIMEOUT = 30.0
READ_CHUNK_SIZE = 65535
QUEUE_SIZE = 1024
STREAM_TTL = 100

_POLL = 0.1


class StreamConnection(Protocol):
    """The local end of a stream: a socket, a file or anything alike."""

    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> Any: ...

    def close(self) -> None: ...


class SendingNode(Protocol):
    """The node that routes stream messages to their destination."""

    def send_to(self, node_id: str, msg: Message) -> None: ...


def _decode(text: str | bytes) -> dict[str, Any]:
    obj = json.loads(text)
    if not isinstance(obj, dict):
        raise ValueError("payload must be a JSON object")
    stub_id = obj.get("stub_id", "")
    if not isinstance(stub_id, str):
        raise ValueError("stub_id must be a string")
    return obj


def _int_field(obj: dict[str, Any], name: str) -> int:
    value = obj.get(name, 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer")
    return value


def _dumps(obj: dict[str, Any]) -> str:
    return json.dumps(obj, separators=(",", ":"))


@dataclass(frozen=True)
class DataPayload:
    """A chunk of stream data addressed to a stub."""

    stub_id: str
    seq: int
    data: bytes

    def to_json(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return _dumps({"stub_id": self.stub_id, "seq": self.seq, "data": encoded})

    @classmethod
    def from_json(cls, text: str | bytes) -> DataPayload:
        obj = _decode(text)
        raw = obj.get("data") or ""
        if not isinstance(raw, str):
            raise ValueError("data must be a base64 string")
        return cls(obj.get("stub_id", ""), _int_field(obj, "seq"), base64.b64decode(raw, validate=True))


@dataclass(frozen=True)
class AckPayload:
    """Cumulative acknowledgement: everything up to ``ack`` has arrived."""

    stub_id: str
    ack: int

    def to_json(self) -> str:
        return _dumps({"stub_id": self.stub_id, "ack": self.ack})

    @classmethod
    def from_json(cls, text: str | bytes) -> AckPayload:
        obj = _decode(text)
        return cls(obj.get("stub_id", ""), _int_field(obj, "ack"))


@dataclass(frozen=True)
class ResendRequestPayload:
    """A request to send one missing sequence number again."""

    stub_id: str
    seq: int

    def to_json(self) -> str:
        return _dumps({"stub_id": self.stub_id, "seq": self.seq})

    @classmethod
    def from_json(cls, text: str | bytes) -> ResendRequestPayload:
        obj = _decode(text)
        return cls(obj.get("stub_id", ""), _int_field(obj, "seq"))


class StreamStub:
    """One end of a tunnelled stream between a local connection and a peer stub."""

    def __init__(
        self,
        node: SendingNode,
        conn: StreamConnection,
        stub_id: str,
        peer_node_id: str,
        peer_stub_id: str,
        my_node_id: str,
    ):
        self.node = node
        self.conn = conn
        self.id = stub_id
        self.peer_node_id = peer_node_id
        self.peer_stub_id = peer_stub_id
        self.my_node_id = my_node_id

        self.send_seq = 0
        self.last_acked_seq = 0
        self.recv_seq = 0
        self.send_window = WindowBuffer(1, MAX_WINDOW_SIZE)
        self.recv_window = WindowBuffer(1, MAX_WINDOW_SIZE)

        self._recv_lock = threading.Lock()
        self._window_cond = threading.Condition(threading.Lock())
        self._resend_lock = threading.Lock()
        self._cancelled = threading.Event()

        self.ack_mode = "immediate"
        self._recv_since_ack = 0
        self._last_ack_time = time.monotonic()
        self._resend_requested_at: dict[int, float] = {}

        self.fast_connect = False
        self.delayed_resend = False
        self.delayed_resend_request = False

        self.last_activity = time.monotonic()
        self._writes: queue.Queue[bytes] = queue.Queue(maxsize=QUEUE_SIZE)
        self._inbox: queue.Queue[tuple[MessageType, bytes] | None] = queue.Queue(
            maxsize=QUEUE_SIZE
        )
        self._handlers: dict[MessageType, Callable[[bytes], None]] = {
            MessageType.FRP_DATA: self._on_data,
            MessageType.FRP_ACK: self._on_ack,
            MessageType.FRP_RESEND_REQUEST: self._on_resend_request,
            MessageType.FRP_CLOSE: self._on_close,
        }
        self._spawn(self._message_loop, "messages")

    @property
    def cancelled(self) -> bool:
        """True once the stub has been cancelled or closed."""
        return self._cancelled.is_set()

    def _spawn(self, target: Callable[[], None], role: str) -> None:
        threading.Thread(target=target, name=f"{self.id}-{role}", daemon=True).start()

    def _mark_active(self) -> None:
        self.last_activity = time.monotonic()

    def _message(self, message_type: MessageType, data: str, *, with_sender: bool = True) -> Message:
        return Message(
            type=message_type,
            data=data,
            sender=self.my_node_id,
            to=self.peer_node_id,
            ttl=STREAM_TTL,
            last_sender=self.my_node_id if with_sender else "",
        )

    # -- incoming messages -------------------------------------------------

    def deliver(self, msg_type: MessageType, payload: str | bytes) -> bool:
        """Queue an incoming stream message; return False if it had to be dropped."""
        if isinstance(payload, str):
            payload = payload.encode()
        try:
            self._inbox.put_nowait((MessageType(msg_type), payload))
        except queue.Full:
            logger.warning("inbox full for stub %s, dropping message", self.id)
            return False
        return True

    def _message_loop(self) -> None:
        while not self._cancelled.is_set():
            item = self._inbox.get()
            if item is None:
                continue
            msg_type, payload = item
            handler = self._handlers.get(msg_type)
            if handler is None:
                logger.warning("unknown stream message type %s", msg_type)
                continue
            handler(payload)

    def _on_data(self, content: bytes) -> None:
        self._mark_active()
        try:
            payload = DataPayload.from_json(content)
        except ValueError:
            logger.debug("stub %s: malformed data", self.id)
            return
        if payload.stub_id != self.id:
            return
        with self._recv_lock:
            if payload.seq > self.recv_seq:
                if not self.recv_window.put(payload.seq, payload.data):
                    return
                progress = False
                while (chunk := self.recv_window.get(self.recv_seq + 1)) is not None:
                    self.recv_window.advance()
                    self.recv_seq += 1
                    self._enqueue_write(chunk)
                    progress = True
                if not progress:
                    missing = (
                        seq
                        for seq in range(self.recv_seq + 1, payload.seq)
                        if not self.recv_window.is_filled(seq)
                    )
                    for seq in itertools.islice(missing, MAX_RESEND_PER_CALL):
                        self._send_resend_request(seq)
            self._maybe_ack()

    def _maybe_ack(self) -> None:
        if self.ack_mode != "delayed":
            self._send_ack()
            return
        now = time.monotonic()
        self._recv_since_ack += 1
        if self._recv_since_ack >= RECV_ACK_THRESHOLD or now - self._last_ack_time >= RECV_ACK_TIMEOUT:
            self._send_ack()
            self._recv_since_ack = 0
            self._last_ack_time = now

    def _on_ack(self, content: bytes) -> None:
        self._mark_active()
        try:
            payload = AckPayload.from_json(content)
        except ValueError:
            logger.debug("stub %s: malformed ack", self.id)
            return
        if payload.stub_id != self.id:
            return
        with self._window_cond:
            self.send_window.remove_up_to(payload.ack)
            self.last_acked_seq = payload.ack
            self._window_cond.notify_all()

    def _on_resend_request(self, content: bytes) -> None:
        self._mark_active()
        try:
            payload = ResendRequestPayload.from_json(content)
        except ValueError:
            logger.debug("stub %s: malformed resend request", self.id)
            return
        if payload.stub_id != self.id:
            return
        meta = self.send_window.get_with_meta(payload.seq)
        if meta is None:
            return
        data, _, sent_at = meta
        if self.delayed_resend and time.monotonic() - sent_at < ACK_TIMEOUT:
            return
        self._send_data(payload.seq, data)

    def _on_close(self, _content: bytes) -> None:
        self.close()

    # -- outgoing messages -------------------------------------------------

    def _send_data(self, seq: int, data: bytes) -> None:
        payload = DataPayload(self.peer_stub_id, seq, data).to_json()
        self.node.send_to(self.peer_node_id, self._message(MessageType.FRP_DATA, payload))

    def _send_ack(self) -> None:
        payload = AckPayload(self.peer_stub_id, self.recv_seq).to_json()
        self.node.send_to(self.peer_node_id, self._message(MessageType.FRP_ACK, payload))

    def _send_resend_request(self, seq: int) -> None:
        now = time.monotonic()
        with self._resend_lock:
            last = self._resend_requested_at.get(seq)
            if self.delayed_resend_request and last is not None and now - last < SEND_RESEND_TIMEOUT:
                return
            self._resend_requested_at[seq] = now
        payload = ResendRequestPayload(self.peer_stub_id, seq).to_json()
        self.node.send_to(self.peer_node_id, self._message(MessageType.FRP_RESEND_REQUEST, payload))

    def _send_close_message(self) -> None:
        msg = self._message(MessageType.FRP_CLOSE, self.peer_stub_id, with_sender=False)
        self.node.send_to(self.peer_node_id, msg)

    def _enqueue_write(self, data: bytes) -> None:
        try:
            self._writes.put_nowait(data)
        except queue.Full:
            logger.warning("write queue full for stub %s, dropping data", self.id)

    # -- loops -------------------------------------------------------------

    def _reserve(self, chunk: bytes) -> int | None:
        with self._window_cond:
            self.send_seq += 1
            seq = self.send_seq
            while not self.send_window.can_put(seq):
                if seq < self.send_window.start_seq:
                    logger.error(
                        "send seq %d is behind window start %d", seq, self.send_window.start_seq
                    )
                    return None
                if self._cancelled.is_set():
                    return None
                self._window_cond.wait()
            self.send_window.put(seq, chunk)
            return seq

    def _send_loop(self) -> None:
        try:
            while not self._cancelled.is_set():
                chunk = self.conn.read(READ_CHUNK_SIZE)
                if not chunk:
                    return
                self._mark_active()
                seq = self._reserve(chunk)
                if seq is None:
                    return
                self._send_data(seq, chunk)
        except (OSError, ValueError) as exc:
            logger.info("stub %s: read failed: %s", self.id, exc)
        finally:
            self._send_close_message()

    def _write_loop(self) -> None:
        while not self._cancelled.is_set():
            try:
                data = self._writes.get(timeout=_POLL)
            except queue.Empty:
                continue
            try:
                self.conn.write(data)
            except (OSError, ValueError) as exc:
                logger.info("stub %s: write failed: %s", self.id, exc)
                self.cancel()
                return
            self._mark_active()

    def _retry_loop(self) -> None:
        while not self._cancelled.wait(RETRY_LOOP_PERIOD):
            self.resend_unacked()

    def _idle_loop(self) -> None:
        while not self._cancelled.wait(IDLE_CHECK_PERIOD):
            if self.fast_connect and time.monotonic() - self.last_activity > IDLE_TIMEOUT:
                logger.info("idle timeout, closing stream %s", self.id)
                self.cancel()
                return

    def start_send_loop(self) -> None:
        """Start forwarding data read from the local connection to the peer."""
        self._spawn(self._send_loop, "send")

    def start_recv_loop(self) -> None:
        """Start writing data received from the peer to the local connection."""
        self._spawn(self._write_loop, "write")

    def start_retry_loop(self) -> None:
        """Periodically resend unacknowledged data."""
        self._spawn(self._retry_loop, "retry")

    def start_idle_monitor(self) -> None:
        """Cancel the stream after a long idle period when fast_connect is on."""
        self._spawn(self._idle_loop, "idle")

    def resend_unacked(self) -> None:
        """Send again every chunk still waiting for an acknowledgement."""
        give_up = False
        with self._window_cond:
            for seq in range(self.send_window.start_seq, self.send_seq + 1):
                meta = self.send_window.get_with_meta(seq)
                if meta is None:
                    continue
                data, retries, sent_at = meta
                if self.fast_connect and retries >= MAX_RETRY_COUNT:
                    logger.warning("too many retries, closing stream %s", self.id)
                    give_up = True
                    break
                if self.delayed_resend and time.monotonic() - sent_at < ACK_TIMEOUT:
                    continue
                self.send_window.increment_retry(seq)
                self._send_data(seq, data)
        if give_up:
            self.close()

    def cancel(self) -> None:
        """Stop every loop of this stub."""
        self._cancelled.set()
        with self._window_cond:
            self._window_cond.notify_all()
        try:
            self._inbox.put_nowait(None)
        except queue.Full:
            pass

    def close(self) -> None:
        """Cancel the stub and close its local connection."""
        self.cancel()
        try:
            self.conn.close()
        except OSError as exc:
            logger.debug("stub %s: close failed: %s", self.id, exc)