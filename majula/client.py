"""WebSocket client for talking to a node's client gateway."""

from __future__ import annotations

import itertools
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import websocket

from .constants import DEFAULT_RPC_OVERTIME

logger = logging.getLogger(__name__)

SEND_QUEUE_SIZE = 1024
PRIVATE_TOPIC = "__private__"

_POLL = 0.1

RpcCallback = Callable[[str, dict], Any]
SubCallback = Callable[[str, dict], None]


@dataclass
class ClientPackage:
    """One JSON frame exchanged between a client and the gateway."""

    method: str = ""
    topic: str = ""
    fun: str = ""
    args: dict[str, Any] | None = None
    invoke_id: int = 0
    result: Any = None

    def to_json(self) -> str:
        """Encode the package, leaving out empty optional fields."""
        obj: dict[str, Any] = {"method": self.method}
        if self.topic:
            obj["topic"] = self.topic
        if self.fun:
            obj["fun"] = self.fun
        if self.args:
            obj["args"] = self.args
        if self.invoke_id:
            obj["invokeid"] = self.invoke_id
        if self.result is not None:
            obj["result"] = self.result
        return json.dumps(obj, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str | bytes) -> ClientPackage:
        """Decode a package; raise ValueError if it is malformed."""
        obj = json.loads(text)
        if not isinstance(obj, dict):
            raise ValueError("package must be a JSON object")
        strings = {}
        for name in ("method", "topic", "fun"):
            value = obj.get(name) or ""
            if not isinstance(value, str):
                raise ValueError(f"{name} must be a string")
            strings[name] = value
        args = obj.get("args")
        if args is not None and not isinstance(args, dict):
            raise ValueError("args must be an object")
        invoke_id = obj.get("invokeid") or 0
        if isinstance(invoke_id, bool) or not isinstance(invoke_id, int):
            raise ValueError("invokeid must be an integer")
        return cls(
            method=strings["method"],
            topic=strings["topic"],
            fun=strings["fun"],
            args=args,
            invoke_id=invoke_id,
            result=obj.get("result"),
        )


@dataclass
class RpcMeta:
    """Description of a registered RPC, shown to callers that list services."""

    parameters: list[dict[str, str]] = field(default_factory=list)
    results: list[dict[str, str]] = field(default_factory=list)
    note: str = ""


class MajulaClient:
    """Connects to a gateway over WebSocket, reconnecting until it succeeds."""

    def __init__(self, addr: str, entity: str, autostart: bool = True):
        self.addr = addr
        self.entity = entity
        self.connected = False
        self.outbox: queue.Queue[ClientPackage] = queue.Queue(maxsize=SEND_QUEUE_SIZE)
        self._cancelled = threading.Event()
        self._lock = threading.RLock()
        self._rpc_results: dict[int, queue.Queue[Any]] = {}
        self._rpc_funcs: dict[str, RpcCallback] = {}
        self._sub_funcs: dict[str, SubCallback] = {}
        self._ids = itertools.count(1)
        self._conn: Any = None
        if autostart:
            self._spawn(self._main_loop, "main")

    @property
    def cancelled(self) -> bool:
        """True once the client has quit or lost its connection."""
        return self._cancelled.is_set()

    def _spawn(self, target: Callable[[], None], role: str) -> None:
        threading.Thread(target=target, name=f"{self.entity}-{role}", daemon=True).start()

    # -- connection --------------------------------------------------------

    def ws_url(self) -> str:
        """Return the WebSocket URL for this client's entity."""
        url = self.addr
        if url.startswith("http://"):
            url = "ws://" + url[len("http://"):]
        elif url.startswith("https://"):
            url = "wss://" + url[len("https://"):]
        return url + "/ws/" + self.entity

    def _main_loop(self) -> None:
        url = self.ws_url()
        failures = 0
        while not self._cancelled.is_set():
            try:
                conn = websocket.create_connection(url)
            except (websocket.WebSocketException, OSError):
                failures += 1
                if failures % 10 == 0:
                    logger.warning("dial failed %d times", failures)
                delay = min(3000, 100 + failures * 100) / 1000
                if self._cancelled.wait(delay):
                    return
                continue
            self._conn = conn
            self.connected = True
            self._register_client_id()
            logger.info("connected to %s", url)
            self._spawn(self._read_loop, "read")
            self._spawn(self._send_loop, "send")
            self._restore_state()
            self._cancelled.wait()
            self.connected = False
            try:
                conn.close()
            except (websocket.WebSocketException, OSError):
                pass
            return

    def _register_client_id(self) -> None:
        self.send(ClientPackage(method="REGISTER_CLIENT", args={"client_id": self.entity}))

    def _read_loop(self) -> None:
        while self.connected:
            try:
                data = self._conn.recv()
            except (websocket.WebSocketException, OSError):
                self.connected = False
                self._cancelled.set()
                break
            try:
                package = ClientPackage.from_json(data)
            except (ValueError, TypeError):
                continue
            self.handle_message(package)

    def _send_loop(self) -> None:
        while self.connected and not self._cancelled.is_set():
            try:
                package = self.outbox.get(timeout=_POLL)
            except queue.Empty:
                continue
            try:
                self._conn.send(package.to_json())
            except (websocket.WebSocketException, OSError):
                self.connected = False
                return
        self.connected = False

    def _restore_state(self) -> None:
        with self._lock:
            topics = list(self._sub_funcs)
            funs = list(self._rpc_funcs)
        for topic in topics:
            self.send(ClientPackage(method="SUBSCRIBE", topic=topic))
        for fun in funs:
            self.send(ClientPackage(method="REGISTER_RPC", fun=fun))

    # -- incoming ----------------------------------------------------------

    def handle_message(self, package: ClientPackage) -> None:
        """Dispatch one package received from the gateway."""
        if package.method == "RPC":
            with self._lock:
                handler = self._rpc_funcs.get(package.fun)
            if handler is not None:
                result = handler(package.fun, package.args or {})
                self.send(ClientPackage(fun=package.fun, invoke_id=package.invoke_id, result=result))
        elif package.method == "" and package.invoke_id != 0:
            with self._lock:
                waiter = self._rpc_results.pop(package.invoke_id, None)
            if waiter is not None:
                try:
                    waiter.put_nowait(package.result)
                except queue.Full:
                    pass
        elif package.method == "PRIVATE_MESSAGE":
            with self._lock:
                handler = self._sub_funcs.get(PRIVATE_TOPIC)
            args = package.args or {}
            if handler is not None:
                handler(PRIVATE_TOPIC, args)
            else:
                logger.info("[P2P] message from %s: %s", args.get("from_node"), args.get("message"))
        else:
            with self._lock:
                callback = self._sub_funcs.get(package.topic)
            if callback is not None:
                callback(package.topic, package.args or {})

    # -- outgoing ----------------------------------------------------------

    def send(self, package: ClientPackage) -> None:
        """Queue a package for the gateway."""
        self.outbox.put(package)

    def register_rpc(self, fun: str, handler: RpcCallback, meta: RpcMeta | None = None) -> None:
        """Serve ``fun`` from this client."""
        with self._lock:
            self._rpc_funcs[fun] = handler
        args: dict[str, Any] = {}
        if meta is not None:
            args = {"parameters": meta.parameters, "results": meta.results, "note": meta.note}
        self.send(ClientPackage(method="REGISTER_RPC", fun=fun, args=args))

    def call_rpc(
        self,
        fun: str,
        target_node: str,
        provider: str,
        args: dict[str, Any] | None = None,
        timeout: float = DEFAULT_RPC_OVERTIME,
    ) -> Any:
        """Call ``fun`` on ``provider`` at ``target_node``; raise TimeoutError if no answer."""
        with self._lock:
            invoke_id = next(self._ids)
            waiter: queue.Queue[Any] = queue.Queue(maxsize=1)
            self._rpc_results[invoke_id] = waiter
        call_args = dict(args or {})
        call_args["target_node"] = target_node
        call_args["provider"] = provider
        self.send(ClientPackage(method="RPC", fun=fun, args=call_args, invoke_id=invoke_id))
        try:
            return waiter.get(timeout=timeout)
        except queue.Empty:
            with self._lock:
                self._rpc_results.pop(invoke_id, None)
            raise TimeoutError(f"RPC {fun} on {target_node} timed out") from None

    def subscribe(self, topic: str, callback: SubCallback) -> None:
        """Receive messages published on ``topic``."""
        with self._lock:
            self._sub_funcs[topic] = callback
        self.send(ClientPackage(method="SUBSCRIBE", topic=topic))

    def unsubscribe(self, topic: str) -> None:
        """Stop receiving messages on ``topic``."""
        with self._lock:
            self._sub_funcs.pop(topic, None)
        self.send(ClientPackage(method="UNSUBSCRIBE", topic=topic))

    def publish(self, topic: str, content: dict[str, Any]) -> None:
        """Publish ``content`` on ``topic``."""
        self.send(ClientPackage(method="PUBLISH", topic=topic, args=content))

    def publish_event(self, topic: str, event: dict[str, Any]) -> None:
        """Publish a structured event."""
        self.publish(topic, event)

    def publish_raw(self, topic: str, base64_data: str) -> None:
        """Publish base64-encoded binary content."""
        self.publish(topic, {"base64_content_": base64_data})

    def start_heartbeat(self, interval: float) -> None:
        """Send a heartbeat every ``interval`` seconds until the client quits."""

        def beat() -> None:
            while not self._cancelled.wait(interval):
                self.send(
                    ClientPackage(
                        method="HEARTBEAT",
                        args={"client_id": self.entity, "timestamp": int(time.time())},
                    )
                )

        self._spawn(beat, "heartbeat")

    def quit(self) -> None:
        """Tell the gateway this client leaves, then stop."""
        self.send(ClientPackage(method="QUIT", args={"client_id": self.entity}))
        self._cancelled.set()

    def send_private_message(
        self, target_node: str, target_client: str, payload: dict[str, Any] | None = None
    ) -> None:
        """Send ``payload`` directly to one client on ``target_node``."""
        encoded = json.dumps({"payload": payload or {}}, separators=(",", ":"))
        self.send(
            ClientPackage(
                method="SEND",
                args={
                    "target_node": target_node,
                    "content": encoded,
                    "target_client": target_client,
                },
            )
        )

    def on_private_message(self, callback: SubCallback) -> None:
        """Handle private messages with ``callback``."""
        with self._lock:
            self._sub_funcs[PRIVATE_TOPIC] = callback