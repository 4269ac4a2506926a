"""A fixed-size sliding window of sequence-numbered payloads."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field


@dataclass
class _Slot:
    data: bytes
    retries: int = 0
    sent_at: float = field(default_factory=time.monotonic)


class WindowBuffer:
    """Holds payloads for sequence numbers in ``[start_seq, start_seq + size)``.

    Each stored payload carries a retry counter and the monotonic time it
    was stored or last retried.
    """

    def __init__(self, start_seq: int, size: int):
        if size <= 0:
            raise ValueError("window size must be positive")
        self._start = start_seq
        self._size = size
        self._slots: dict[int, _Slot] = {}
        self._lock = threading.Lock()

    @property
    def start_seq(self) -> int:
        """The lowest sequence number the window currently accepts."""
        with self._lock:
            return self._start

    @property
    def size(self) -> int:
        """The number of slots in the window."""
        return self._size

    def _in_range(self, seq: int) -> bool:
        return self._start <= seq < self._start + self._size

    def put(self, seq: int, value: bytes) -> bool:
        """Store ``value`` at ``seq``; return False if ``seq`` is outside the window."""
        with self._lock:
            if not self._in_range(seq):
                return False
            self._slots[seq] = _Slot(bytes(value))
            return True

    def get(self, seq: int) -> bytes | None:
        """Return the payload stored at ``seq``, or None."""
        with self._lock:
            if not self._in_range(seq):
                return None
            slot = self._slots.get(seq)
            return None if slot is None else slot.data

    def advance(self) -> bool:
        """Drop the first slot and slide forward by one, if that slot is filled."""
        with self._lock:
            if self._start not in self._slots:
                return False
            del self._slots[self._start]
            self._start += 1
            return True

    def is_filled(self, seq: int) -> bool:
        """Return True if a payload is stored at ``seq``."""
        with self._lock:
            return self._in_range(seq) and seq in self._slots

    def get_with_meta(self, seq: int) -> tuple[bytes, int, float] | None:
        """Return ``(data, retries, sent_at)`` for ``seq``, or None."""
        with self._lock:
            if not self._in_range(seq):
                return None
            slot = self._slots.get(seq)
            if slot is None:
                return None
            return slot.data, slot.retries, slot.sent_at

    def increment_retry(self, seq: int) -> None:
        """Count one more retry for ``seq`` and restamp its send time."""
        with self._lock:
            slot = self._slots.get(seq) if self._in_range(seq) else None
            if slot is not None:
                slot.retries += 1
                slot.sent_at = time.monotonic()

    def remove_up_to(self, seq: int) -> None:
        """Drop every payload up to and including ``seq`` and slide past it."""
        with self._lock:
            for stored in [s for s in self._slots if s <= seq]:
                del self._slots[stored]
            self._start = max(self._start, seq + 1)

    def is_full(self) -> bool:
        """Return True if every slot holds a payload."""
        return self.count() >= self._size

    def count(self) -> int:
        """Return the number of stored payloads."""
        with self._lock:
            return len(self._slots)

    def can_put(self, seq: int) -> bool:
        """Return True if ``seq`` currently falls inside the window."""
        with self._lock:
            return self._in_range(seq)