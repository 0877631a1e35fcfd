from __future__ import annotations

import re
import time
from pathlib import Path
from threading import RLock
from typing import Any

from .driver import ChatDriver, Contact, Room, native_key
from .errors import NotFoundError
from .ids import KEYSPACE_CONTACT, KEYSPACE_ROOM
from .session import BridgeSession

_ALIAS_ID_RE = re.compile(r'^#(\d+)')

# Upper bound on rooms inspected per reverse room lookup.
DEFAULT_ROOM_SCAN_LIMIT = 5000


def alias_tag(item_id: int) -> str:
    return f'#{int(item_id)}'


def _as_chat_id(value: Any, what: str) -> int:
    # Bot API chat ids may also be '@channelname' strings; those are never bridged.
    try:
        return int(value)
    except (TypeError, ValueError):
        raise NotFoundError(f'Bad Request: {what} not found') from None


def parse_alias_tag(alias: object) -> int | None:
    if alias is None:
        return None
    m = _ALIAS_ID_RE.match(str(alias))
    if not m:
        return None
    value = int(m.group(1))
    return value if value > 0 else None


class IdentityResolver:
    """Maps driver contacts/rooms to Telegram ids and back.

    Users get the allocated id, rooms its negation. An alias tag `#<id>` on the
    driver object is the fast path; untagged objects are matched against the
    recency buffer by their native key before a fresh id is allocated.
    """

    def __init__(
        self,
        *,
        driver: ChatDriver,
        session: BridgeSession,
        auto_alias: bool = True,
        room_scan_limit: int = DEFAULT_ROOM_SCAN_LIMIT,
        log_path: Path | None = None,
    ) -> None:
        self._driver = driver
        self._session = session
        self.auto_alias = bool(auto_alias)
        self.room_scan_limit = max(1, int(room_scan_limit))
        self.log_path = log_path
        # Serializes first resolution of untagged objects (no duplicate ids).
        self._lock = RLock()

    def _log(self, line: str) -> None:
        if self.log_path is None:
            return
        try:
            ts = time.strftime('%Y-%m-%d %H:%M:%S')
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as f:
                f.write(f'[{ts}] [identity] {line}\n')
        except Exception:
            pass

    def _read_alias(self, obj: Contact | Room) -> int | None:
        try:
            return parse_alias_tag(obj.alias())
        except Exception as e:
            self._log(f'alias read failed key={native_key(obj)} err={str(e)[:200]}')
            return None

    def _resolve(self, keyspace: str, obj: Contact | Room) -> int:
        tagged = self._read_alias(obj)
        if tagged is not None:
            return tagged

        buffers = self._session.buffers
        with self._lock:
            key = native_key(obj)
            found = buffers.find(keyspace, key) if key is not None else None
            if found is not None:
                buffers.replace(keyspace, found, obj)
                return int(found)

            item_id = self._session.next_id(keyspace, obj)
            if self.auto_alias:
                try:
                    ok = bool(obj.set_alias(alias_tag(item_id)))
                except Exception as e:
                    ok = False
                    self._log(f'alias write failed {keyspace} key={key} err={str(e)[:200]}')
                if not ok:
                    self._log(f'alias not persisted {keyspace} key={key} id={item_id}')
            return item_id

    # Forward path

    def user_id(self, contact: Contact) -> int:
        return self._resolve(KEYSPACE_CONTACT, contact)

    def room_id(self, room: Room) -> int:
        return -self._resolve(KEYSPACE_ROOM, room)

    def resolve_user(self, contact: Contact) -> dict[str, Any]:
        return {
            'id': self.user_id(contact),
            'first_name': contact.name(),
        }

    def resolve_private_chat(self, contact: Contact) -> dict[str, Any]:
        chat = self.resolve_user(contact)
        chat['type'] = 'private'
        return chat

    def resolve_room(self, room: Room) -> dict[str, Any]:
        return {
            'id': self.room_id(room),
            'type': 'group',
            'title': room.topic(),
            'all_members_are_administrators': False,
        }

    # Reverse path

    def find_user_by_id(self, user_id: int) -> Contact:
        uid = _as_chat_id(user_id, 'contact')
        if uid <= 0:
            raise NotFoundError('Bad Request: contact not found')
        try:
            contact = self._driver.find_contact_by_alias(alias_tag(uid))
        except Exception as e:
            self._log(f'directory lookup failed user_id={uid} err={str(e)[:200]}')
            contact = None
        if contact is not None:
            return contact
        # Buffered copy may be out of date.
        buffered = self._session.recall(KEYSPACE_CONTACT, uid)
        if buffered is not None:
            return buffered
        raise NotFoundError('Bad Request: contact not found')

    def find_room_by_id(self, chat_id: int) -> Room:
        cid = _as_chat_id(chat_id, 'room')
        rid = -cid
        if rid <= 0:
            raise NotFoundError('Bad Request: room not found')
        tag = alias_tag(rid)
        try:
            rooms = list(self._driver.find_all_rooms() or [])
        except Exception as e:
            self._log(f'directory lookup failed chat_id={cid} err={str(e)[:200]}')
            rooms = []
        if len(rooms) > self.room_scan_limit:
            self._log(f'room scan truncated chat_id={cid} rooms={len(rooms)} limit={self.room_scan_limit}')
            rooms = rooms[: self.room_scan_limit]
        for scanned, room in enumerate(rooms, start=1):
            try:
                alias = room.alias()
            except Exception:
                continue
            if alias == tag:
                if scanned > 100:
                    self._log(f'slow room scan chat_id={cid} scanned={scanned}')
                return room
        if rooms:
            self._log(f'room scan miss chat_id={cid} scanned={len(rooms)}')
        buffered = self._session.recall(KEYSPACE_ROOM, rid)
        if buffered is not None:
            return buffered
        raise NotFoundError('Bad Request: room not found')

    def find_chat(self, chat_id: int) -> tuple[str, Contact | Room]:
        """Return ('private', contact) or ('group', room) for a Telegram chat id."""
        cid = _as_chat_id(chat_id, 'chat')
        if cid > 0:
            return ('private', self.find_user_by_id(cid))
        if cid < 0:
            return ('group', self.find_room_by_id(cid))
        raise NotFoundError('Bad Request: chat not found')
