from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, Protocol

# Events delivered by a chat driver.
EVENT_MESSAGE = 'message'
EVENT_FRIEND = 'friend'  # (contact, request | None)
EVENT_ROOM_JOIN = 'room-join'  # (room, invitees, inviter)
EVENT_ROOM_LEAVE = 'room-leave'  # (room, leavers)
EVENT_ROOM_TOPIC = 'room-topic'  # (room, new_topic, old_topic, changer)
EVENT_ERROR = 'error'  # (exception)

DRIVER_EVENTS = (
    EVENT_MESSAGE,
    EVENT_FRIEND,
    EVENT_ROOM_JOIN,
    EVENT_ROOM_LEAVE,
    EVENT_ROOM_TOPIC,
    EVENT_ERROR,
)


class Contact(Protocol):
    @property
    def id(self) -> str: ...

    def name(self) -> str: ...

    def alias(self) -> str | None: ...

    def set_alias(self, alias: str) -> bool:
        """Persist `alias` on the contact; False when the platform refuses."""
        ...

    def say(self, text: str, reply_to: Contact | None = None) -> bool: ...


class Room(Protocol):
    @property
    def id(self) -> str: ...

    def topic(self) -> str: ...

    def alias(self) -> str | None:
        """The bot's own annotation for this room (may be None)."""
        ...

    def set_alias(self, alias: str) -> bool: ...

    def say(self, text: str, reply_to: Contact | None = None) -> bool: ...


class DriverMessage(Protocol):
    def from_contact(self) -> Contact: ...

    def room(self) -> Room | None: ...

    def content(self) -> str: ...

    def mentioned(self) -> Sequence[Contact]: ...

    def is_self(self) -> bool: ...


class FriendRequest(Protocol):
    def accept(self) -> Any: ...


class ChatDriver(Protocol):
    def on(self, event: str, handler: Callable[..., Any]) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def is_ready(self) -> bool: ...

    def self_contact(self) -> Contact: ...

    def find_contact_by_alias(self, alias: str) -> Contact | None: ...

    def find_all_rooms(self) -> Sequence[Room]: ...


def native_key(obj: Any) -> str | None:
    """Driver-native identity of a contact or room."""
    raw = getattr(obj, 'id', None)
    if raw is None:
        return None
    s = str(raw).strip()
    return s or None
