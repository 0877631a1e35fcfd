from __future__ import annotations

import time
from collections.abc import Sequence
from typing import Any

from .driver import Contact, DriverMessage, Room
from .identity import IdentityResolver
from .ids import KEYSPACE_MESSAGE, KEYSPACE_SYSMESSAGE, KEYSPACE_UPDATE
from .session import BridgeSession, BufferedMessage


def _now_date() -> int:
    return int(time.time())


class EnvelopeNormalizer:
    """Turns chat-driver events into Telegram `Update` dicts.

    Organic messages take ids from the `message` key-space and are buffered
    (replies and forwards need them later); synthetic service messages
    (friend, join, leave, topic) use the unbuffered `sysmessage` key-space.
    """

    def __init__(self, *, session: BridgeSession, resolver: IdentityResolver) -> None:
        self._session = session
        self._resolver = resolver

    def _update(self, message: dict[str, Any]) -> dict[str, Any]:
        return {
            'update_id': self._session.next_id(KEYSPACE_UPDATE),
            'message': message,
        }

    def _service_message(self, *, sender: Contact, chat: dict[str, Any]) -> dict[str, Any]:
        return {
            'message_id': self._session.next_id(KEYSPACE_SYSMESSAGE),
            'from': self._resolver.resolve_user(sender),
            'date': _now_date(),
            'chat': chat,
        }

    def build_message(self, message: DriverMessage) -> dict[str, Any]:
        """Telegram message dict for a driver message (allocates and buffers it)."""
        # Offsets of mentions are not exposed by the driver, so 0/0 is emitted.
        entities = [
            {
                'type': 'text_mention',
                'offset': 0,
                'length': 0,
                'user': self._resolver.resolve_user(contact),
            }
            for contact in (message.mentioned() or [])
        ]

        message_id = self._session.allocator.allocate(KEYSPACE_MESSAGE)
        sender = message.from_contact()
        room = message.room()
        envelope: dict[str, Any] = {
            'message_id': message_id,
            'from': self._resolver.resolve_user(sender),
            'date': _now_date(),
            'chat': self._resolver.resolve_room(room) if room is not None else self._resolver.resolve_private_chat(sender),
            'text': message.content(),
            'entities': entities,
        }
        self._session.buffers.remember(KEYSPACE_MESSAGE, message_id, BufferedMessage(raw=message, envelope=envelope))
        return envelope

    def normalize_message(self, message: DriverMessage) -> dict[str, Any] | None:
        # Never feed the bot's own output back into dispatch.
        if message.is_self():
            return None
        return self._update(self.build_message(message))

    def normalize_friend(self, contact: Contact) -> dict[str, Any]:
        msg = self._service_message(sender=contact, chat=self._resolver.resolve_private_chat(contact))
        msg['text'] = '/start'
        msg['entities'] = [{'type': 'bot_command', 'offset': 0, 'length': 6}]
        return self._update(msg)

    def normalize_room_join(self, room: Room, invitees: Sequence[Contact], inviter: Contact) -> dict[str, Any]:
        members = [self._resolver.resolve_user(c) for c in invitees]
        msg = self._service_message(sender=inviter, chat=self._resolver.resolve_room(room))
        if members:
            msg['new_chat_member'] = members[0]
        msg['new_chat_members'] = members
        return self._update(msg)

    def normalize_room_leave(self, room: Room, leavers: Sequence[Contact]) -> list[dict[str, Any]]:
        # Kicks cannot be told apart from leaving: `from` is always the leaver.
        updates: list[dict[str, Any]] = []
        for leaver in leavers:
            msg = self._service_message(sender=leaver, chat=self._resolver.resolve_room(room))
            msg['left_chat_member'] = self._resolver.resolve_user(leaver)
            updates.append(self._update(msg))
        return updates

    def normalize_room_topic(
        self, room: Room, new_title: str, old_title: str | None, changer: Contact
    ) -> dict[str, Any]:
        msg = self._service_message(sender=changer, chat=self._resolver.resolve_room(room))
        msg['new_chat_title'] = new_title
        return self._update(msg)
