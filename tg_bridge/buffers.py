from __future__ import annotations

from collections.abc import Callable, Hashable, Mapping
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from .ids import KEYSPACE_CONTACT, KEYSPACE_MESSAGE, KEYSPACE_ROOM

DEFAULT_CAPACITIES: dict[str, int] = {
    KEYSPACE_CONTACT: 65536,
    KEYSPACE_ROOM: 65536,
    KEYSPACE_MESSAGE: 1048576,
}

NativeKey = Callable[[Any], Hashable | None]


@dataclass
class _Buffer:
    capacity: int
    native_key: NativeKey | None = None
    entries: dict[int, Any] = field(default_factory=dict)
    # native key -> id, only for live entries
    index: dict[Hashable, int] = field(default_factory=dict)
    newest: int = 0

    def _key_of(self, obj: Any) -> Hashable | None:
        if self.native_key is None or obj is None:
            return None
        try:
            return self.native_key(obj)
        except Exception:
            return None

    def _drop(self, item_id: int) -> None:
        obj = self.entries.pop(item_id, None)
        key = self._key_of(obj)
        if key is not None and self.index.get(key) == item_id:
            del self.index[key]

    def put(self, item_id: int, obj: Any) -> None:
        if item_id in self.entries:
            self._drop(item_id)
        self.entries[item_id] = obj
        key = self._key_of(obj)
        if key is not None:
            self.index[key] = item_id
        if item_id > self.newest:
            self.newest = item_id
        self._drop(item_id - self.capacity)
        # Ids are gapless per key-space, the loop only runs if a caller
        # remembered ids out of sequence.
        while len(self.entries) > self.capacity:
            self._drop(next(iter(self.entries)))

    def get(self, item_id: int) -> Any | None:
        if item_id <= self.newest - self.capacity:
            return None
        return self.entries.get(item_id)


class RecencyBuffers:
    """Bounded id -> object memory, one buffer per key-space.

    Only key-spaces with a configured capacity keep anything. Inserting id `n`
    evicts id `n - capacity`; `recall` of an evicted or unknown id returns
    None, which callers treat as "fall back to the authoritative source".
    """

    def __init__(
        self,
        capacities: Mapping[str, int] | None = None,
        *,
        native_keys: Mapping[str, NativeKey] | None = None,
    ) -> None:
        caps = dict(DEFAULT_CAPACITIES if capacities is None else capacities)
        keys = dict(native_keys or {})
        self._lock = Lock()
        self._buffers: dict[str, _Buffer] = {}
        for keyspace, capacity in caps.items():
            if int(capacity or 0) <= 0:
                continue
            self._buffers[keyspace] = _Buffer(capacity=int(capacity), native_key=keys.get(keyspace))

    def capacity(self, keyspace: str) -> int | None:
        buf = self._buffers.get(keyspace)
        return buf.capacity if buf is not None else None

    def remember(self, keyspace: str, item_id: int, obj: Any) -> None:
        buf = self._buffers.get(keyspace)
        if buf is None:
            return
        with self._lock:
            buf.put(int(item_id), obj)

    def recall(self, keyspace: str, item_id: int) -> Any | None:
        buf = self._buffers.get(keyspace)
        if buf is None:
            return None
        try:
            iid = int(item_id)
        except (TypeError, ValueError):
            return None
        with self._lock:
            return buf.get(iid)

    def replace(self, keyspace: str, item_id: int, obj: Any) -> bool:
        """Swap the object of a live entry (e.g. a fresher copy of the same contact)."""
        buf = self._buffers.get(keyspace)
        if buf is None:
            return False
        with self._lock:
            if buf.get(int(item_id)) is None:
                return False
            buf.put(int(item_id), obj)
            return True

    def find(self, keyspace: str, native_key: Hashable) -> int | None:
        buf = self._buffers.get(keyspace)
        if buf is None or native_key is None:
            return None
        with self._lock:
            return buf.index.get(native_key)

    def size(self, keyspace: str) -> int:
        buf = self._buffers.get(keyspace)
        if buf is None:
            return 0
        with self._lock:
            return len(buf.entries)
