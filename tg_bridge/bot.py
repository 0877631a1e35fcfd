from __future__ import annotations

import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from re import Pattern
from threading import Lock
from typing import Any

from .config import BridgeConfig
from .dispatcher import MESSAGE_TYPES, Dispatcher, ReplyListener, TextListener
from .driver import (
    DRIVER_EVENTS,
    EVENT_ERROR,
    EVENT_FRIEND,
    EVENT_MESSAGE,
    EVENT_ROOM_JOIN,
    EVENT_ROOM_LEAVE,
    EVENT_ROOM_TOPIC,
    ChatDriver,
    Contact,
    DriverMessage,
    FriendRequest,
    Room,
)
from .errors import (
    BridgeError,
    FatalError,
    NotFoundError,
    NotImplementedYetError,
    SendError,
    UnavailableError,
    UnsupportedError,
)
from .identity import IdentityResolver
from .ids import KEYSPACE_MESSAGE
from .normalizer import EnvelopeNormalizer
from .session import BridgeSession, BufferedMessage

MODE_STANDBY = 'standby'
MODE_POLLING = 'polling'
MODE_WEBHOOK = 'webhook'


@dataclass
class _SentMessage:
    """Stand-in driver message for text the bot itself sent."""

    text: str
    sender: Contact
    target_room: Room | None = None
    mentions: list[Contact] = field(default_factory=list)

    def from_contact(self) -> Contact:
        return self.sender

    def room(self) -> Room | None:
        return self.target_room

    def content(self) -> str:
        return self.text

    def mentioned(self) -> Sequence[Contact]:
        return list(self.mentions)

    def is_self(self) -> bool:
        return True


def _unsupported(method: str) -> Callable[..., dict[str, Any]]:
    def call(self: TelegramBridgeBot, *args: Any, **kwargs: Any) -> dict[str, Any]:
        return self._fail(UnsupportedError(f'{method} is not supported by the chat platform'))

    call.__name__ = method
    return call


def _not_implemented(method: str) -> Callable[..., dict[str, Any]]:
    def call(self: TelegramBridgeBot, *args: Any, **kwargs: Any) -> dict[str, Any]:
        return self._fail(NotImplementedYetError(f'{method} is not implemented'))

    call.__name__ = method
    return call


class TelegramBridgeBot:
    """Telegram Bot API surface on top of a chat driver.

    Driver events are normalized into Telegram updates and dispatched to the
    listeners registered here. Outbound methods return Telegram-style
    responses: `{'ok': True, 'result': ...}` or `{'ok': False, 'error_code',
    'description', 'kind'}`; they do not raise on bridge failures.
    """

    message_types = MESSAGE_TYPES

    def __init__(
        self,
        driver: ChatDriver,
        cfg: BridgeConfig | None = None,
        *,
        session: BridgeSession | None = None,
    ) -> None:
        self.cfg = cfg or BridgeConfig()
        self.driver = driver
        self.log_path: Path | None = self.cfg.log_path
        self.session = session or BridgeSession(capacities=self.cfg.buffer_capacities())
        self.resolver = IdentityResolver(
            driver=driver,
            session=self.session,
            auto_alias=self.cfg.auto_alias,
            room_scan_limit=self.cfg.room_scan_limit,
            log_path=self.log_path,
        )
        self.normalizer = EnvelopeNormalizer(session=self.session, resolver=self.resolver)
        self.dispatcher = Dispatcher(session=self.session, only_first_match=self.cfg.only_first_match)

        self._mode = MODE_STANDBY
        self._mode_lock = Lock()

        handlers: dict[str, Callable[..., Any]] = {
            EVENT_MESSAGE: self._on_driver_message,
            EVENT_FRIEND: self._on_driver_friend,
            EVENT_ROOM_JOIN: self._on_driver_room_join,
            EVENT_ROOM_LEAVE: self._on_driver_room_leave,
            EVENT_ROOM_TOPIC: self._on_driver_room_topic,
            EVENT_ERROR: self._on_driver_error,
        }
        for event in DRIVER_EVENTS:
            driver.on(event, handlers[event])

        if self.cfg.polling and self.cfg.polling_auto_start:
            self.start_polling()
        if self.cfg.web_hook and self.cfg.web_hook_auto_open:
            self.open_web_hook()

    # -----------------------------
    # Logging
    # -----------------------------
    def _log(self, line: str) -> None:
        if self.log_path is None:
            return
        try:
            ts = time.strftime('%Y-%m-%d %H:%M:%S')
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as f:
                f.write(f'[{ts}] [bridge] {line}\n')
        except Exception:
            pass

    def _fail(self, error: BridgeError) -> dict[str, Any]:
        self._log(f'{error.kind}: {error.description}')
        return error.to_response()

    def _respond(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            result = fn(*args, **kwargs)
        except BridgeError as e:
            return self._fail(e)
        return {'ok': True, 'result': result}

    # -----------------------------
    # Driver events
    # -----------------------------
    def _handle(self, event: str, fn: Callable[..., Any], *args: Any) -> None:
        # A failing normalization or listener only loses this one event.
        try:
            fn(*args)
        except Exception as e:
            self._log(f'{event} handler failed: {type(e).__name__}: {str(e)[:300]}')
            self._on_driver_error(e)

    def _on_driver_error(self, err: BaseException) -> None:
        mode = self.mode
        if mode == MODE_POLLING:
            self.dispatcher.emit('polling_error', err)
        elif mode == MODE_WEBHOOK:
            self.dispatcher.emit('webhook_error', err)
        else:
            self.dispatcher.emit('standby_error', err)

    def _on_driver_friend(self, contact: Contact, request: FriendRequest | None = None) -> None:
        def run() -> None:
            if request is not None and self.cfg.auto_friend:
                request.accept()
            self.process_update(self.normalizer.normalize_friend(contact))

        self._handle(EVENT_FRIEND, run)

    def _on_driver_message(self, message: DriverMessage) -> None:
        def run() -> None:
            update = self.normalizer.normalize_message(message)
            if update is not None:
                self.process_update(update)

        self._handle(EVENT_MESSAGE, run)

    def _on_driver_room_join(self, room: Room, invitees: Sequence[Contact], inviter: Contact) -> None:
        self._handle(
            EVENT_ROOM_JOIN, lambda: self.process_update(self.normalizer.normalize_room_join(room, invitees, inviter))
        )

    def _on_driver_room_leave(self, room: Room, leavers: Sequence[Contact]) -> None:
        def run() -> None:
            for update in self.normalizer.normalize_room_leave(room, leavers):
                self.process_update(update)

        self._handle(EVENT_ROOM_LEAVE, run)

    def _on_driver_room_topic(
        self, room: Room, new_title: str, old_title: str | None = None, changer: Contact | None = None
    ) -> None:
        def run() -> None:
            self.process_update(
                self.normalizer.normalize_room_topic(room, new_title, old_title, changer or self.driver.self_contact())
            )

        self._handle(EVENT_ROOM_TOPIC, run)

    # -----------------------------
    # Polling / web hook
    # -----------------------------
    @property
    def mode(self) -> str:
        with self._mode_lock:
            return self._mode

    def _set_mode(self, mode: str) -> None:
        with self._mode_lock:
            self._mode = mode

    def start_polling(self, *, restart: bool = False) -> None:
        if self.has_open_web_hook():
            raise FatalError('polling and webhook are mutually exclusive')
        if restart:
            self.stop_polling()
        self.driver.start()
        self._set_mode(MODE_POLLING)
        self._log('polling started')

    def stop_polling(self) -> None:
        self._set_mode(MODE_STANDBY)
        self.driver.stop()
        self._log('polling stopped')

    def is_polling(self) -> bool:
        return self.mode == MODE_POLLING and self.driver.is_ready()

    def get_updates(self, **_: Any) -> list[dict[str, Any]]:
        # Updates are pushed by the driver, there is nothing to pull.
        return []

    def open_web_hook(self) -> None:
        if self.is_polling():
            raise FatalError('polling and webhook are mutually exclusive')
        self.driver.start()
        self._set_mode(MODE_WEBHOOK)
        self._log('web hook opened')

    def close_web_hook(self) -> None:
        self._set_mode(MODE_STANDBY)
        self.driver.stop()
        self._log('web hook closed')

    def has_open_web_hook(self) -> bool:
        return self.mode == MODE_WEBHOOK and self.driver.is_ready()

    def set_web_hook(self, url: str, **_: Any) -> bool:
        return True

    def delete_web_hook(self) -> bool:
        return True

    def get_web_hook_info(self) -> dict[str, Any]:
        return {
            'url': '',
            'has_custom_certificate': False,
            'pending_update_count': 0,
        }

    # -----------------------------
    # Listeners / dispatch
    # -----------------------------
    def on(self, event: str, callback: Callable[..., Any]) -> None:
        self.dispatcher.on(event, callback)

    def once(self, event: str, callback: Callable[..., Any]) -> None:
        self.dispatcher.once(event, callback)

    def off(self, event: str, callback: Callable[..., Any]) -> bool:
        return self.dispatcher.off(event, callback)

    def emit(self, event: str, *args: Any) -> bool:
        return self.dispatcher.emit(event, *args)

    def on_text(self, pattern: Pattern[str] | str, callback: Callable[[dict[str, Any], re.Match[str]], Any]) -> None:
        self.dispatcher.on_text(pattern, callback)

    def remove_text_listener(self, pattern: Pattern[str] | str) -> TextListener | None:
        return self.dispatcher.remove_text_listener(pattern)

    def on_reply_to_message(self, chat_id: int, message_id: int, callback: Callable[[dict[str, Any]], Any]) -> int:
        return self.dispatcher.on_reply_to_message(chat_id, message_id, callback)

    def remove_reply_listener(self, listener_id: int) -> ReplyListener | None:
        return self.dispatcher.remove_reply_listener(listener_id)

    def process_update(self, update: dict[str, Any]) -> None:
        self.dispatcher.process_update(update)

    # -----------------------------
    # Methods: basic
    # -----------------------------
    def _self_contact(self) -> Contact:
        try:
            return self.driver.self_contact()
        except BridgeError:
            raise
        except RuntimeError as e:
            raise UnavailableError(f'chat driver is not ready: {e}') from e

    def get_me(self) -> dict[str, Any]:
        return self._respond(lambda: self.resolver.resolve_user(self._self_contact()))

    def _send_text(self, chat_id: int, text: str, reply_to_message_id: int | None) -> dict[str, Any]:
        kind, target = self.resolver.find_chat(chat_id)
        me = self._self_contact()

        reply_entry: BufferedMessage | None = None
        if reply_to_message_id:
            reply_entry = self.session.recall(KEYSPACE_MESSAGE, reply_to_message_id)
        reply_contact: Contact | None = None
        if reply_entry is not None and reply_entry.raw is not None:
            reply_contact = reply_entry.raw.from_contact()

        try:
            ok = bool(target.say(text, reply_contact))
        except Exception as e:
            raise SendError(f'failed to send message: {e}') from e
        if not ok:
            raise SendError('failed to send message')

        room: Any = target if kind == 'group' else None
        message_id = self.session.allocator.allocate(KEYSPACE_MESSAGE)
        message: dict[str, Any] = {
            'message_id': message_id,
            'from': self.resolver.resolve_user(me),
            'date': int(time.time()),
            'chat': self.resolver.resolve_room(room) if room is not None else self.resolver.resolve_private_chat(target),
            'text': text,
            'entities': [],
        }
        if reply_entry is not None:
            message['reply_to_message'] = reply_entry.envelope
        self.session.buffers.remember(
            KEYSPACE_MESSAGE,
            message_id,
            BufferedMessage(raw=_SentMessage(text=text, sender=me, target_room=room), envelope=message),
        )
        return message

    def send_message(
        self, chat_id: int, text: str, *, reply_to_message_id: int | None = None, **_: Any
    ) -> dict[str, Any]:
        # parse_mode and reply_markup have no counterpart and are ignored.
        return self._respond(self._send_text, chat_id, text, reply_to_message_id)

    def _forward(self, chat_id: int, message_id: int) -> dict[str, Any]:
        entry: BufferedMessage | None = self.session.recall(KEYSPACE_MESSAGE, message_id)
        if entry is None or entry.raw is None:
            raise NotFoundError('Bad Request: message to forward not found')
        original = entry.envelope
        message = self._send_text(
            chat_id, entry.raw.content(), message_id if self.cfg.forward_with_at else None
        )
        message['forward_from'] = original.get('from')
        message['forward_from_chat'] = original.get('chat')
        message['forward_from_message_id'] = original.get('message_id')
        message['forward_date'] = original.get('date')
        return message

    def forward_message(self, chat_id: int, from_chat_id: int, message_id: int, **_: Any) -> dict[str, Any]:
        return self._respond(self._forward, chat_id, message_id)

    send_photo = _not_implemented('sendPhoto')
    send_audio = _not_implemented('sendAudio')
    send_document = _not_implemented('sendDocument')
    send_sticker = _not_implemented('sendSticker')
    send_video = _not_implemented('sendVideo')
    send_voice = _not_implemented('sendVoice')
    send_video_note = _unsupported('sendVideoNote')
    send_location = _unsupported('sendLocation')
    send_venue = _unsupported('sendVenue')
    send_contact = _unsupported('sendContact')
    send_chat_action = _unsupported('sendChatAction')
    get_user_profile_photos = _unsupported('getUserProfilePhotos')
    get_file = _unsupported('getFile')
    kick_chat_member = _not_implemented('kickChatMember')
    unban_chat_member = _not_implemented('unbanChatMember')
    restrict_chat_member = _unsupported('restrictChatMember')
    promote_chat_member = _unsupported('promoteChatMember')
    export_chat_invite_link = _unsupported('exportChatInviteLink')
    set_chat_photo = _unsupported('setChatPhoto')
    delete_chat_photo = _unsupported('deleteChatPhoto')
    set_chat_title = _not_implemented('setChatTitle')
    set_chat_description = _unsupported('setChatDescription')
    pin_chat_message = _unsupported('pinChatMessage')
    unpin_chat_message = _unsupported('unpinChatMessage')
    leave_chat = _not_implemented('leaveChat')
    get_chat = _not_implemented('getChat')
    get_chat_administrators = _not_implemented('getChatAdministrators')
    get_chat_members_count = _not_implemented('getChatMembersCount')
    get_chat_member = _not_implemented('getChatMember')
    answer_callback_query = _unsupported('answerCallbackQuery')

    # Methods: updating messages
    edit_message_text = _unsupported('editMessageText')
    edit_message_caption = _unsupported('editMessageCaption')
    edit_message_reply_markup = _unsupported('editMessageReplyMarkup')
    delete_message = _unsupported('deleteMessage')

    # Methods: inline mode, payments, games
    answer_inline_query = _unsupported('answerInlineQuery')
    send_invoice = _unsupported('sendInvoice')
    answer_shipping_query = _unsupported('answerShippingQuery')
    answer_pre_checkout_query = _unsupported('answerPreCheckoutQuery')
    send_game = _unsupported('sendGame')
    set_game_score = _unsupported('setGameScore')
    get_game_high_scores = _unsupported('getGameHighScores')

    # -----------------------------
    # File downloading
    # -----------------------------
    def get_file_link(self, file_id: str) -> dict[str, Any]:
        return self.get_file(file_id)

    def download_file(self, file_id: str, download_dir: Path | str) -> dict[str, Any]:
        return self.get_file(file_id)
