from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from re import Pattern
from threading import Lock
from typing import Any

from .ids import KEYSPACE_CALLBACK
from .session import BridgeSession

# Message fields that get their own event when present.
MESSAGE_TYPES = (
    'audio',
    'channel_chat_created',
    'contact',
    'delete_chat_photo',
    'document',
    'game',
    'group_chat_created',
    'invoice',
    'left_chat_member',
    'location',
    'migrate_from_chat_id',
    'migrate_to_chat_id',
    'new_chat_members',
    'new_chat_photo',
    'new_chat_title',
    'photo',
    'pinned_message',
    'sticker',
    'successful_payment',
    'supergroup_chat_created',
    'text',
    'video',
    'video_note',
    'voice',
)

# Update variants that only emit their own event.
_PLAIN_UPDATE_KINDS = (
    'channel_post',
    'inline_query',
    'chosen_inline_result',
    'callback_query',
    'shipping_query',
    'pre_checkout_query',
)

Listener = Callable[..., Any]


def _present(value: Any) -> bool:
    # Empty lists and dicts still count: a join with no resolvable invitees
    # carries `new_chat_members: []` and must emit its event.
    if isinstance(value, (list, dict)):
        return True
    return bool(value)


@dataclass(frozen=True)
class TextListener:
    pattern: Pattern[str]
    callback: Callable[[dict[str, Any], re.Match[str]], Any]


@dataclass(frozen=True)
class ReplyListener:
    id: int
    chat_id: int
    message_id: int
    callback: Callable[[dict[str, Any]], Any]


class Dispatcher:
    """Fans Telegram updates out to event, text-pattern and reply listeners.

    Listener exceptions are not caught here; they propagate to whoever called
    `emit` / `process_update`.
    """

    def __init__(self, *, session: BridgeSession, only_first_match: bool = False) -> None:
        self._session = session
        self.only_first_match = bool(only_first_match)
        self._lock = Lock()
        self._listeners: dict[str, list[tuple[Listener, bool]]] = {}
        self._text_listeners: list[TextListener] = []
        self._reply_listeners: list[ReplyListener] = []

    # -----------------------------
    # Generic events
    # -----------------------------
    def on(self, event: str, callback: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(event, []).append((callback, False))

    def once(self, event: str, callback: Listener) -> None:
        with self._lock:
            self._listeners.setdefault(event, []).append((callback, True))

    def off(self, event: str, callback: Listener) -> bool:
        with self._lock:
            items = self._listeners.get(event) or []
            for i, (cb, _) in enumerate(items):
                if cb == callback:
                    del items[i]
                    return True
            return False

    def listeners(self, event: str) -> list[Listener]:
        with self._lock:
            return [cb for cb, _ in self._listeners.get(event) or []]

    def emit(self, event: str, *args: Any) -> bool:
        with self._lock:
            items = list(self._listeners.get(event) or [])
            if any(one_shot for _, one_shot in items):
                self._listeners[event] = [it for it in self._listeners.get(event) or [] if not it[1]]
        for cb, _ in items:
            cb(*args)
        return bool(items)

    # -----------------------------
    # Text patterns
    # -----------------------------
    def on_text(self, pattern: Pattern[str] | str, callback: Callable[[dict[str, Any], re.Match[str]], Any]) -> None:
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            self._text_listeners.append(TextListener(pattern=compiled, callback=callback))

    def remove_text_listener(self, pattern: Pattern[str] | str) -> TextListener | None:
        with self._lock:
            for i, item in enumerate(self._text_listeners):
                if item.pattern is pattern or item.pattern == pattern or item.pattern.pattern == pattern:
                    return self._text_listeners.pop(i)
            return None

    # -----------------------------
    # Reply correlation
    # -----------------------------
    def on_reply_to_message(self, chat_id: int, message_id: int, callback: Callable[[dict[str, Any]], Any]) -> int:
        listener_id = self._session.next_id(KEYSPACE_CALLBACK)
        with self._lock:
            self._reply_listeners.append(
                ReplyListener(id=listener_id, chat_id=int(chat_id), message_id=int(message_id), callback=callback)
            )
        return listener_id

    def remove_reply_listener(self, listener_id: int) -> ReplyListener | None:
        with self._lock:
            for i, item in enumerate(self._reply_listeners):
                if item.id == listener_id:
                    return self._reply_listeners.pop(i)
            return None

    # -----------------------------
    # Updates
    # -----------------------------
    def _process_text(self, message: dict[str, Any], text: str) -> None:
        with self._lock:
            listeners = list(self._text_listeners)
        for item in listeners:
            m = item.pattern.search(text)
            if m is None:
                continue
            item.callback(message, m)
            if self.only_first_match:
                break

    def _process_reply(self, message: dict[str, Any], reply_to: dict[str, Any]) -> None:
        chat = message.get('chat') or {}
        chat_id = chat.get('id') if isinstance(chat, dict) else None
        reply_mid = reply_to.get('message_id')
        with self._lock:
            listeners = list(self._reply_listeners)
        for item in listeners:
            if item.chat_id == chat_id and item.message_id == reply_mid:
                item.callback(message)

    def _process_edited(self, kind: str, message: dict[str, Any]) -> None:
        self.emit(kind, message)
        if message.get('text'):
            self.emit(f'{kind}_text', message)
        if message.get('caption'):
            self.emit(f'{kind}_caption', message)

    def process_update(self, update: dict[str, Any]) -> None:
        message = update.get('message')
        if message:
            self.emit('message', message)
            for message_type in MESSAGE_TYPES:
                if _present(message.get(message_type)):
                    self.emit(message_type, message)

            text = message.get('text')
            if text and isinstance(text, str):
                self._process_text(message, text)

            reply_to = message.get('reply_to_message')
            if reply_to and isinstance(reply_to, dict):
                self._process_reply(message, reply_to)
            return

        for kind in ('edited_message', 'edited_channel_post'):
            edited = update.get(kind)
            if edited:
                self._process_edited(kind, edited)
                return

        for kind in _PLAIN_UPDATE_KINDS:
            payload = update.get(kind)
            if payload:
                self.emit(kind, payload)
                return
