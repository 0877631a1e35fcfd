from __future__ import annotations

import json
import os
import re
import threading
import time
import urllib.parse
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any

from mattermostdriver import Driver

from .config import BridgeConfig
from .driver import (
    EVENT_ERROR,
    EVENT_FRIEND,
    EVENT_MESSAGE,
    EVENT_ROOM_JOIN,
    EVENT_ROOM_LEAVE,
    EVENT_ROOM_TOPIC,
)
from .ids import _now_ms

_JOIN_TYPES = {'system_join_channel', 'system_add_to_channel'}
_LEAVE_TYPES = {'system_leave_channel', 'system_remove_from_channel'}
_TOPIC_TYPES = {'system_displayname_change'}

_MENTION_RE = re.compile(r'(?<![\w.@-])@([a-z0-9][a-z0-9._-]*[a-z0-9_]|[a-z0-9])', re.IGNORECASE)


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + '.tmp')
    tmp.write_text(content, encoding='utf-8')
    os.replace(tmp, path)


def _mm_display_name(user: dict[str, Any]) -> str:
    first = str(user.get('first_name') or '').strip()
    last = str(user.get('last_name') or '').strip()
    full_name = ' '.join([x for x in [first, last] if x]).strip()
    if full_name:
        return full_name
    nickname = str(user.get('nickname') or '').strip()
    if nickname:
        return nickname
    return str(user.get('username') or user.get('id') or '').strip()


def _post_create_at(post: dict[str, Any]) -> int:
    try:
        return int(post.get('create_at') or 0)
    except (TypeError, ValueError):
        return 0


def _ordered_posts(raw: object) -> list[dict[str, Any]]:
    """Posts of a `{order, posts}` page, oldest first."""
    if not isinstance(raw, dict):
        return []
    posts_raw = raw.get('posts')
    order_raw = raw.get('order')
    if not isinstance(posts_raw, dict):
        return []
    keys = order_raw if isinstance(order_raw, list) else list(posts_raw.keys())
    out: list[dict[str, Any]] = []
    seen: set[str] = set()
    for pid in keys:
        key = str(pid or '').strip()
        if not key or key in seen:
            continue
        p = posts_raw.get(key)
        if isinstance(p, dict):
            out.append(dict(p))
            seen.add(key)
    out.sort(key=_post_create_at)
    return out


@dataclass
class AliasStore:
    """Aliases the bridge wrote onto Mattermost users and channels.

    Mattermost has no per-viewer alias field, so the driver keeps them in a
    JSON file; that file is what makes bridged ids survive restarts.
    """

    path: Path | None = None
    users: dict[str, str] = field(default_factory=dict)
    rooms: dict[str, str] = field(default_factory=dict)
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def _table(self, kind: str) -> dict[str, str]:
        return self.rooms if kind == 'room' else self.users

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding='utf-8') or '{}')
        except (OSError, json.JSONDecodeError):
            return
        if not isinstance(data, dict):
            return
        with self.lock:
            for kind in ('user', 'room'):
                raw = data.get(kind)
                if not isinstance(raw, dict):
                    continue
                table = self._table(kind)
                for k, v in raw.items():
                    if isinstance(k, str) and isinstance(v, str) and k.strip() and v.strip():
                        table[k.strip()] = v.strip()

    def _save(self) -> None:
        if self.path is None:
            return
        payload = {'version': 1, 'user': dict(self.users), 'room': dict(self.rooms)}
        _atomic_write(self.path, json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + '\n')

    def get(self, kind: str, key: str) -> str | None:
        with self.lock:
            return self._table(kind).get(str(key))

    def set(self, kind: str, key: str, alias: str) -> None:
        with self.lock:
            self._table(kind)[str(key)] = str(alias)
            self._save()

    def find(self, kind: str, alias: str) -> str | None:
        with self.lock:
            for key, value in self._table(kind).items():
                if value == alias:
                    return key
        return None


class MattermostContact:
    def __init__(self, chat: MattermostChatDriver, user: dict[str, Any]) -> None:
        self._chat = chat
        self._user = dict(user)

    @property
    def id(self) -> str:
        return str(self._user.get('id') or '').strip()

    @property
    def username(self) -> str:
        return str(self._user.get('username') or '').strip()

    def name(self) -> str:
        return _mm_display_name(self._user)

    def alias(self) -> str | None:
        return self._chat.aliases.get('user', self.id)

    def set_alias(self, alias: str) -> bool:
        self._chat.aliases.set('user', self.id, alias)
        return True

    def say(self, text: str, reply_to: Any = None) -> bool:
        return self._chat.post_direct(self.id, text, reply_to=reply_to)

    def __repr__(self) -> str:
        return f'MattermostContact(id={self.id!r}, username={self.username!r})'


class MattermostRoom:
    def __init__(self, chat: MattermostChatDriver, channel_id: str) -> None:
        self._chat = chat
        self._channel_id = str(channel_id)

    @property
    def id(self) -> str:
        return self._channel_id

    def topic(self) -> str:
        ch = self._chat.channel(self._channel_id) or {}
        return str(ch.get('display_name') or '').strip() or str(ch.get('name') or '').strip()

    def alias(self) -> str | None:
        return self._chat.aliases.get('room', self._channel_id)

    def set_alias(self, alias: str) -> bool:
        self._chat.aliases.set('room', self._channel_id, alias)
        return True

    def say(self, text: str, reply_to: Any = None) -> bool:
        return self._chat.post_to_channel(self._channel_id, text, reply_to=reply_to)

    def __repr__(self) -> str:
        return f'MattermostRoom(id={self._channel_id!r})'


class MattermostMessage:
    def __init__(self, chat: MattermostChatDriver, post: dict[str, Any]) -> None:
        self._chat = chat
        self.post = dict(post)

    def from_contact(self) -> MattermostContact:
        return self._chat.contact(str(self.post.get('user_id') or ''))

    def room(self) -> MattermostRoom | None:
        return self._chat.room(str(self.post.get('channel_id') or ''))

    def content(self) -> str:
        return str(self.post.get('message') or '')

    def mentioned(self) -> Sequence[MattermostContact]:
        out: list[MattermostContact] = []
        seen: set[str] = set()
        for m in _MENTION_RE.finditer(self.content()):
            username = m.group(1).lower()
            if username in seen:
                continue
            seen.add(username)
            contact = self._chat.contact_by_username(username)
            if contact is not None:
                out.append(contact)
        return out

    def is_self(self) -> bool:
        return str(self.post.get('user_id') or '').strip() == self._chat.me_id()


class MattermostChatDriver:
    """Chat driver over the Mattermost REST API (`mattermostdriver`).

    Users are contacts; open, private and group-message channels are rooms;
    direct channels are private chats with the peer. New posts are polled per
    channel and delivered as driver events from a single poll thread, in
    `create_at` order.
    """

    def __init__(
        self, cfg: BridgeConfig, *, client: Any | None = None, clock: Callable[[], int] = _now_ms
    ) -> None:
        self._cfg = cfg
        self._clock = clock
        self._client: Any | None = client
        self.log_path: Path | None = cfg.log_path
        self.aliases = AliasStore(path=cfg.alias_store_path)
        self.aliases.load()

        self._handlers: dict[str, list[Callable[..., Any]]] = {}
        self._me: dict[str, Any] | None = None
        self._user_by_id: dict[str, dict[str, Any]] = {}
        self._user_id_by_name: dict[str, str] = {}
        self._channel_by_id: dict[str, dict[str, Any]] = {}
        self._cursor_by_channel: dict[str, int] = {}
        self._primed = False
        # Local clock (ms) at the start of the last completed poll.
        self._last_poll_started_ms = 0

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._ready = False

    def _log(self, line: str) -> None:
        if self.log_path is None:
            return
        try:
            ts = time.strftime('%Y-%m-%d %H:%M:%S')
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as f:
                f.write(f'[{ts}] [mm] {line}\n')
        except Exception:
            pass

    # -----------------------------
    # Events
    # -----------------------------
    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event) or []):
            handler(*args)

    # -----------------------------
    # Connection
    # -----------------------------
    def _parse_url(self) -> tuple[str, str, int, str]:
        raw = (self._cfg.mm_url or '').strip()
        scheme = (self._cfg.mm_scheme or 'https').strip() or 'https'
        port = int(self._cfg.mm_port or (443 if scheme == 'https' else 80))
        basepath = (self._cfg.mm_basepath or '').strip()
        host = raw

        if raw and '://' in raw:
            u = urllib.parse.urlparse(raw)
            if u.scheme:
                scheme = u.scheme
            if u.hostname:
                host = u.hostname
            if u.port:
                port = int(u.port)
            if u.path and u.path != '/' and not basepath:
                basepath = u.path

        if '/' in host and '://' not in raw:
            # Allow MM_URL="host/path" as a shorthand.
            host_part, _, path_part = host.partition('/')
            host = host_part.strip()
            if path_part and not basepath:
                basepath = '/' + path_part.strip()

        basepath = basepath.strip().rstrip('/')
        if basepath and not basepath.startswith('/'):
            basepath = '/' + basepath
        if basepath.endswith('/api/v4'):
            basepath = basepath[: -len('/api/v4')].rstrip('/')

        return (host.strip(), scheme.strip(), int(port), basepath)

    def _driver_options(self) -> dict[str, Any]:
        host, scheme, port, basepath = self._parse_url()
        if not host:
            raise RuntimeError('Mattermost URL is empty (MM_URL)')
        opts: dict[str, Any] = {
            'url': host,
            'scheme': scheme,
            'port': int(port),
            'basepath': (basepath or '') + '/api/v4',
            'verify': bool(self._cfg.mm_verify),
            'timeout': int(self._cfg.mm_timeout_seconds),
        }
        if (self._cfg.mm_token or '').strip():
            opts['token'] = str(self._cfg.mm_token)
        elif (self._cfg.mm_login_id or '').strip() and (self._cfg.mm_password or '').strip():
            opts['login_id'] = str(self._cfg.mm_login_id)
            opts['password'] = str(self._cfg.mm_password)
        else:
            raise RuntimeError('Mattermost credentials missing (MM_TOKEN or MM_LOGIN_ID/MM_PASSWORD)')
        return opts

    def connect(self) -> None:
        if self._client is None:
            client = Driver(self._driver_options())
            client.login()
            self._client = client
        me = self._client.users.get_user('me')
        if not isinstance(me, dict) or not str(me.get('id') or '').strip():
            raise RuntimeError(f'Mattermost login failed: {me!r}')
        self._me = dict(me)
        self._user_by_id[self.me_id()] = dict(me)
        self._log(f'connected as {me.get("username") or self.me_id()}')

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        if self._me is None:
            self.connect()
        self._stop.clear()
        self._ready = True
        self._thread = threading.Thread(target=self._poll_loop, name='mm-driver-poll', daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._ready = False
        t = self._thread
        if t is not None and t.is_alive() and t is not threading.current_thread():
            t.join(timeout=max(5.0, float(self._cfg.mm_timeout_seconds)))
        self._thread = None

    def is_ready(self) -> bool:
        return bool(self._ready and self._me is not None)

    def me_id(self) -> str:
        if not isinstance(self._me, dict):
            return ''
        return str(self._me.get('id') or '').strip()

    # -----------------------------
    # Directory
    # -----------------------------
    def _user(self, user_id: str) -> dict[str, Any] | None:
        uid = str(user_id or '').strip()
        if not uid:
            return None
        cached = self._user_by_id.get(uid)
        if cached is not None:
            return cached
        if self._client is None:
            return None
        try:
            raw = self._client.users.get_user(uid)
        except Exception as e:
            self._log(f'get_user failed user_id={uid} err={str(e)[:200]}')
            return None
        if not isinstance(raw, dict):
            return None
        self._user_by_id[uid] = dict(raw)
        username = str(raw.get('username') or '').strip().lower()
        if username:
            self._user_id_by_name[username] = uid
        return self._user_by_id[uid]

    def contact(self, user_id: str) -> MattermostContact:
        uid = str(user_id or '').strip()
        user = self._user(uid) or {'id': uid, 'username': uid}
        return MattermostContact(self, user)

    def contact_by_username(self, username: str) -> MattermostContact | None:
        name = str(username or '').strip().lstrip('@').lower()
        if not name:
            return None
        uid = self._user_id_by_name.get(name)
        if uid:
            return self.contact(uid)
        if self._client is None:
            return None
        try:
            raw = self._client.users.get_user_by_username(name)
        except Exception:
            return None
        if not isinstance(raw, dict) or not str(raw.get('id') or '').strip():
            return None
        uid = str(raw.get('id')).strip()
        self._user_by_id[uid] = dict(raw)
        self._user_id_by_name[name] = uid
        return MattermostContact(self, raw)

    def channel(self, channel_id: str) -> dict[str, Any] | None:
        cid = str(channel_id or '').strip()
        if not cid:
            return None
        cached = self._channel_by_id.get(cid)
        if cached is not None:
            return cached
        if self._client is None:
            return None
        try:
            raw = self._client.channels.get_channel(cid)
        except Exception as e:
            self._log(f'get_channel failed channel_id={cid} err={str(e)[:200]}')
            return None
        if not isinstance(raw, dict):
            return None
        self._channel_by_id[cid] = dict(raw)
        return self._channel_by_id[cid]

    def room(self, channel_id: str) -> MattermostRoom | None:
        ch = self.channel(channel_id)
        if ch is None:
            return None
        if str(ch.get('type') or '').strip().upper() == 'D':
            return None
        return MattermostRoom(self, str(ch.get('id') or channel_id))

    def _direct_peer_id(self, ch: dict[str, Any]) -> str:
        me = self.me_id()
        parts = [p for p in str(ch.get('name') or '').split('__') if p]
        peers = [p for p in parts if p != me]
        return peers[0] if peers else me

    def _list_channels(self) -> list[dict[str, Any]]:
        if self._client is None:
            return []
        user_id = self.me_id()
        if not user_id:
            return []
        max_channels = int(self._cfg.mm_max_channels)

        out: list[dict[str, Any]] = []
        seen: set[str] = set()

        def _add(ch: object) -> None:
            if not isinstance(ch, dict) or len(out) >= max_channels:
                return
            cid = str(ch.get('id') or '').strip()
            if not cid or cid in seen:
                return
            seen.add(cid)
            cached = self._channel_by_id.setdefault(cid, dict(ch))
            out.append(cached)

        team_ids: list[str] = []
        if self._cfg.mm_team_names:
            for name in self._cfg.mm_team_names:
                team = self._client.teams.get_team_by_name(name)
                if isinstance(team, dict) and str(team.get('id') or '').strip():
                    team_ids.append(str(team.get('id')).strip())
        else:
            teams = self._client.teams.get_user_teams(user_id)
            for t in teams if isinstance(teams, list) else []:
                if isinstance(t, dict) and str(t.get('id') or '').strip():
                    team_ids.append(str(t.get('id')).strip())

        for tid in team_ids:
            channels = self._client.channels.get_channels_for_user(user_id, tid)
            for ch in channels if isinstance(channels, list) else []:
                _add(ch)

        # Direct and group messages are not scoped to a team.
        channels_all = self._client.client.get(f'/users/{user_id}/channels')
        for ch in channels_all if isinstance(channels_all, list) else []:
            if isinstance(ch, dict) and str(ch.get('type') or '').strip().upper() in {'D', 'G'}:
                _add(ch)
        return out

    def self_contact(self) -> MattermostContact:
        if self._me is None:
            raise RuntimeError('Mattermost driver is not connected')
        return MattermostContact(self, self._me)

    def find_contact_by_alias(self, alias: str) -> MattermostContact | None:
        uid = self.aliases.find('user', alias)
        if not uid:
            return None
        user = self._user(uid)
        if user is None:
            return None
        return MattermostContact(self, user)

    def find_all_rooms(self) -> list[MattermostRoom]:
        rooms: list[MattermostRoom] = []
        for ch in self._list_channels():
            if str(ch.get('type') or '').strip().upper() == 'D':
                continue
            rooms.append(MattermostRoom(self, str(ch.get('id'))))
        return rooms

    # -----------------------------
    # Sending
    # -----------------------------
    def post_to_channel(self, channel_id: str, text: str, *, reply_to: Any = None) -> bool:
        if self._client is None:
            return False
        message = str(text or '')
        username = str(getattr(reply_to, 'username', '') or '').strip()
        if username:
            message = f'@{username} {message}'
        try:
            res = self._client.posts.create_post({'channel_id': str(channel_id), 'message': message})
        except Exception as e:
            self._log(f'create_post failed channel_id={channel_id} err={str(e)[:200]}')
            return False
        return isinstance(res, dict) and bool(str(res.get('id') or '').strip())

    def post_direct(self, user_id: str, text: str, *, reply_to: Any = None) -> bool:
        if self._client is None:
            return False
        try:
            ch = self._client.channels.create_direct_message_channel([self.me_id(), str(user_id)])
        except Exception as e:
            self._log(f'create_direct_message_channel failed user_id={user_id} err={str(e)[:200]}')
            return False
        cid = str((ch or {}).get('id') or '').strip() if isinstance(ch, dict) else ''
        if not cid:
            return False
        self._channel_by_id.setdefault(cid, dict(ch))
        # A channel the bot opened itself is not a friend request.
        try:
            baseline = int(ch.get('last_post_at') or 0)
        except (TypeError, ValueError):
            baseline = 0
        self._cursor_by_channel.setdefault(cid, baseline)
        return self.post_to_channel(cid, text, reply_to=reply_to)

    # -----------------------------
    # Polling
    # -----------------------------
    def _dispatch_post(self, ch: dict[str, Any], post: dict[str, Any]) -> None:
        if int(post.get('delete_at') or 0) > 0:
            return
        ptype = str(post.get('type') or '').strip()
        author = str(post.get('user_id') or '').strip()
        props = post.get('props') if isinstance(post.get('props'), dict) else {}

        if not ptype:
            self._emit(EVENT_MESSAGE, MattermostMessage(self, post))
            return

        room = self.room(str(ch.get('id') or ''))
        if room is None:
            return

        if ptype in _JOIN_TYPES:
            invitee = str(props.get('addedUserId') or author)
            inviter = str(props.get('userId') or author)
            self._emit(EVENT_ROOM_JOIN, room, [self.contact(invitee)], self.contact(inviter))
        elif ptype in _LEAVE_TYPES:
            leaver = str(props.get('removedUserId') or author)
            self._emit(EVENT_ROOM_LEAVE, room, [self.contact(leaver)])
        elif ptype in _TOPIC_TYPES:
            new_title = str(props.get('new_displayname') or '').strip()
            old_title = str(props.get('old_displayname') or '').strip()
            if new_title:
                ch['display_name'] = new_title
            self._emit(EVENT_ROOM_TOPIC, room, new_title, old_title, self.contact(author))

    def _poll_channel(self, ch: dict[str, Any]) -> None:
        cid = str(ch.get('id') or '').strip()
        if not cid:
            return
        since = self._cursor_by_channel.get(cid)
        if since is None:
            if not self._primed:
                # Channels present at startup: start after the last existing post, no backlog.
                try:
                    baseline = int(ch.get('last_post_at') or 0)
                except (TypeError, ValueError):
                    baseline = 0
                self._cursor_by_channel[cid] = baseline
                if baseline > 0:
                    return
                since = baseline
            else:
                # Appeared since the last poll: whatever created it (a first DM, the
                # bot being added to a room) was posted after that poll started.
                since = self._last_poll_started_ms
                self._cursor_by_channel[cid] = since
                if str(ch.get('type') or '').strip().upper() == 'D':
                    self._emit(EVENT_FRIEND, self.contact(self._direct_peer_id(ch)), None)

        raw = self._client.posts.get_posts_for_channel(cid, params={'since': int(since)}) if self._client else None
        cursor = int(since)
        for post in _ordered_posts(raw):
            create_at = _post_create_at(post)
            # `since` also returns edits of older posts.
            if create_at <= int(since):
                continue
            cursor = max(cursor, create_at)
            self._cursor_by_channel[cid] = cursor
            self._dispatch_post(ch, post)

    def poll_once(self) -> None:
        started = int(self._clock())
        for ch in self._list_channels():
            self._poll_channel(ch)
        self._last_poll_started_ms = started
        self._primed = True

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception as e:
                self._log(f'poll failed: {type(e).__name__}: {str(e)[:300]}')
                self._emit(EVENT_ERROR, e)
            self._stop.wait(float(self._cfg.mm_poll_interval_seconds))
