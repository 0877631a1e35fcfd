from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock

KEYSPACE_CONTACT = 'contact'
KEYSPACE_ROOM = 'room'
KEYSPACE_UPDATE = 'update'
KEYSPACE_MESSAGE = 'message'
KEYSPACE_SYSMESSAGE = 'sysmessage'
KEYSPACE_CALLBACK = 'callback'


def _now_ms() -> int:
    return int(time.time() * 1000.0)


@dataclass
class _Sequence:
    last: int
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)


class IdAllocator:
    """Clock-seeded id generator, one independent sequence per key-space.

    The clock is read once, when a key-space is first used; the sequence
    starts there and every call issues `last + 1` under the key-space lock.
    Ids are strictly increasing and gapless within a key-space, and a new
    process starts above everything a previous one issued at normal rates.
    """

    def __init__(self, *, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._lock = Lock()
        self._sequences: dict[str, _Sequence] = {}

    def _sequence(self, keyspace: str) -> _Sequence:
        with self._lock:
            seq = self._sequences.get(keyspace)
            if seq is None:
                seq = _Sequence(last=int(self._clock()) - 1)
                self._sequences[keyspace] = seq
            return seq

    def allocate(self, keyspace: str) -> int:
        seq = self._sequence(keyspace)
        with seq.lock:
            seq.last += 1
            return seq.last

    def last(self, keyspace: str) -> int:
        return self._sequence(keyspace).last
