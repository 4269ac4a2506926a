"""Directed, weighted links between nodes."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

_EPOCH_ZERO = datetime(1, 1, 1, tzinfo=timezone.utc)
_STALE_AFTER = timedelta(seconds=10)


def costs_equal(cost1: int, cost2: int) -> bool:
    """Return True if two link costs are considered equal."""
    return cost1 == cost2


def _rfc3339(moment: datetime) -> str:
    text = moment.isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


@dataclass
class Link:
    """A link from ``source`` to ``target`` with an estimated cost."""

    source: str
    target: str
    cost: int = 0
    version: int = 0
    channel: str = ""
    last_update: datetime = _EPOCH_ZERO
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def add_version(self) -> int:
        """Atomically increment the version and return the new value."""
        with self._lock:
            self.version += 1
            return self.version

    def touch(self) -> None:
        """Record that the link was updated now."""
        self.last_update = datetime.now().astimezone()

    def is_stale(self) -> bool:
        """Return True if the link was last updated more than 10 seconds ago."""
        return datetime.now(timezone.utc) - self.last_update > _STALE_AFTER

    def describe(self) -> str:
        """Return a multi-line human readable rendering of the link."""
        with self._lock:
            version = self.version
        return (
            "Link:\n"
            f"  Source:         {self.source}\n"
            f"  Target:         {self.target}\n"
            f"  Cost:           {self.cost}\n"
            f"  Version:        {version}\n"
            f"  Channel:        {self.channel}\n"
            f"  LastUpdateTime: {_rfc3339(self.last_update)}\n"
        )