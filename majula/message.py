"""Message types and the message envelope routed between nodes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum


class MessageType(IntEnum):
    """Kinds of message exchanged by nodes."""

    HEARTBEAT = 0
    COST_REQUEST = 1
    COST_ACK = 2
    QUIT = 3
    HELLO = 4
    TCP_REGISTER = 5
    OTHER = 6
    TOPIC_INIT = 7
    TOPIC_EXIT = 8
    TOPIC_PUBLISH = 9
    TOPIC_SUBSCRIBE_FLOOD = 10
    RPC_REQUEST = 11
    RPC_RESPONSE = 12
    RPC_SERVICE_FLOOD = 13
    P2P_MESSAGE = 14
    FRP_DATA = 15
    FRP_ACK = 16
    FRP_CLOSE = 17
    FRP_RESEND_REQUEST = 18


_BROADCAST_TYPES = frozenset(
    {
        MessageType.HEARTBEAT,
        MessageType.HELLO,
        MessageType.TOPIC_INIT,
        MessageType.TOPIC_EXIT,
        MessageType.TOPIC_PUBLISH,
        MessageType.TOPIC_SUBSCRIBE_FLOOD,
        MessageType.RPC_SERVICE_FLOOD,
    }
)

_FRP_TYPES = frozenset(
    {
        MessageType.FRP_DATA,
        MessageType.FRP_ACK,
        MessageType.FRP_CLOSE,
        MessageType.FRP_RESEND_REQUEST,
    }
)


def is_broadcast(message_type: MessageType) -> bool:
    """Return True if messages of this type are flooded to every peer."""
    return message_type in _BROADCAST_TYPES


@dataclass
class Message:
    """A message travelling through the overlay network."""

    type: MessageType
    data: str = ""
    bundle_to: list[str] = field(default_factory=list)
    entity: str = ""
    sender: str = ""
    to: str = ""
    route: str = ""
    ttl: int = 0
    lost: bool = False
    version_seq: int = 0
    last_sender: str = ""
    invoke_id: int = 0

    def describe(self) -> str:
        """Return a multi-line human readable rendering of the message."""
        bundle = "[" + " ".join(self.bundle_to) + "]"
        return (
            "[Message]\n"
            f"  Type       : {int(self.type)}\n"
            f"  Data       : {self.data}\n"
            f"  Entity     : {self.entity}\n"
            f"  BundleTo   : {bundle}\n"
            f"  From       : {self.sender}\n"
            f"  To         : {self.to}\n"
            f"  Route      : {self.route}\n"
            f"  TTL        : {self.ttl}\n"
            f"  Lost       : {'true' if self.lost else 'false'}\n"
            f"  VersionSeq : {self.version_seq}\n"
            f"  LastSender : {self.last_sender}\n"
            f"  InvokeId   : {self.invoke_id}\n"
        )

    def is_important(self) -> bool:
        """Everything except plain OTHER traffic is important."""
        return self.type != MessageType.OTHER

    def is_frp(self) -> bool:
        """Return True for stream-forwarding messages."""
        return self.type in _FRP_TYPES