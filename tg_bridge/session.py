from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .buffers import DEFAULT_CAPACITIES, RecencyBuffers
from .driver import DriverMessage, native_key
from .ids import KEYSPACE_CONTACT, KEYSPACE_ROOM, IdAllocator, _now_ms


@dataclass
class BufferedMessage:
    """A message kept in the `message` key-space.

    `raw` is the driver message (or an outbound stand-in), `envelope` the
    Telegram message dict built for it.
    """

    raw: DriverMessage | None
    envelope: dict[str, Any]


class BridgeSession:
    """Id sequences and recency buffers owned by one bot.

    Two bots in one process never share id spaces.
    """

    def __init__(
        self,
        *,
        capacities: Mapping[str, int] | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.allocator = IdAllocator(clock=clock)
        self.buffers = RecencyBuffers(
            DEFAULT_CAPACITIES if capacities is None else capacities,
            native_keys={KEYSPACE_CONTACT: native_key, KEYSPACE_ROOM: native_key},
        )

    def next_id(self, keyspace: str, obj: Any = None) -> int:
        item_id = self.allocator.allocate(keyspace)
        if obj is not None:
            self.buffers.remember(keyspace, item_id, obj)
        return item_id

    def recall(self, keyspace: str, item_id: int) -> Any | None:
        return self.buffers.recall(keyspace, item_id)
