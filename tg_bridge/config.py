from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .buffers import DEFAULT_CAPACITIES
from .identity import DEFAULT_ROOM_SCAN_LIMIT
from .ids import KEYSPACE_CONTACT, KEYSPACE_MESSAGE, KEYSPACE_ROOM


def _load_dotenv(path: Path) -> None:
    """Best-effort .env loader (no dependencies).

    Supports:
      - KEY=VALUE
      - export KEY=VALUE

    Does not override already-set env vars.
    """
    try:
        if not path.exists():
            return
        content = path.read_text(encoding='utf-8', errors='replace')
    except OSError:
        return

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export ') :].strip()
        if '=' not in line:
            continue
        key, value = line.split('=', 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        value = value.strip().strip("'").strip('"')
        os.environ[key] = value


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip().lower()
    if v in {'1', 'true', 'yes', 'y', 'on'}:
        return True
    if v in {'0', 'false', 'no', 'n', 'off'}:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_list_str(name: str) -> list[str]:
    v = os.getenv(name)
    if not v:
        return []
    out: list[str] = []
    for part in v.split(','):
        s = part.strip()
        if s:
            out.append(s)
    return out


def _env_path(name: str, *, repo_root: Path, default: Path) -> Path:
    raw = (os.getenv(name) or '').strip()
    if not raw:
        return default.resolve()
    p = Path(raw)
    return (p if p.is_absolute() else (repo_root / p)).resolve()


@dataclass(frozen=True)
class BridgeConfig:
    repo_root: Path = field(default_factory=Path.cwd)

    # Bot surface
    only_first_match: bool = False
    polling: bool = False
    polling_auto_start: bool = True
    web_hook: bool = False
    web_hook_auto_open: bool = True

    # Bridge behaviour
    auto_alias: bool = True
    auto_friend: bool = True
    forward_with_at: bool = True
    contact_buffer_size: int = DEFAULT_CAPACITIES[KEYSPACE_CONTACT]
    room_buffer_size: int = DEFAULT_CAPACITIES[KEYSPACE_ROOM]
    message_buffer_size: int = DEFAULT_CAPACITIES[KEYSPACE_MESSAGE]
    room_scan_limit: int = DEFAULT_ROOM_SCAN_LIMIT

    log_path: Path | None = None
    alias_store_path: Path | None = None

    # Mattermost chat driver
    mm_url: str = ''
    mm_scheme: str = 'https'
    mm_port: int = 443
    mm_basepath: str = ''
    mm_verify: bool = True
    mm_timeout_seconds: int = 20
    mm_token: str = ''
    mm_login_id: str = ''
    mm_password: str = ''
    mm_team_names: list[str] = field(default_factory=list)
    mm_poll_interval_seconds: int = 5
    mm_max_channels: int = 100

    def buffer_capacities(self) -> dict[str, int]:
        return {
            KEYSPACE_CONTACT: int(self.contact_buffer_size),
            KEYSPACE_ROOM: int(self.room_buffer_size),
            KEYSPACE_MESSAGE: int(self.message_buffer_size),
        }

    @staticmethod
    def default_repo_root() -> Path:
        # If tg_bridge/ sits at repo root, parents[1] is repo root.
        here = Path(__file__).resolve()
        return Path(os.getenv('TG_BRIDGE_ROOT', str(here.parents[1]))).resolve()

    @classmethod
    def from_env(cls) -> BridgeConfig:
        repo_root = cls.default_repo_root()

        # Load optional env files (if present).
        _load_dotenv(repo_root / 'tg_bridge' / '.env')
        _load_dotenv(repo_root / '.env.tg_bridge')

        only_first_match = _env_bool('TG_ONLY_FIRST_MATCH', False)
        polling = _env_bool('TG_POLLING', False)
        polling_auto_start = _env_bool('TG_POLLING_AUTO_START', True)
        web_hook = _env_bool('TG_WEBHOOK', False)
        web_hook_auto_open = _env_bool('TG_WEBHOOK_AUTO_OPEN', True)

        auto_alias = _env_bool('BRIDGE_AUTO_ALIAS', True)
        auto_friend = _env_bool('BRIDGE_AUTO_FRIEND', True)
        forward_with_at = _env_bool('BRIDGE_FORWARD_WITH_AT', True)
        contact_buffer_size = max(
            1, min(1 << 24, _env_int('BRIDGE_CONTACT_BUFFER_SIZE', DEFAULT_CAPACITIES[KEYSPACE_CONTACT]))
        )
        room_buffer_size = max(1, min(1 << 24, _env_int('BRIDGE_ROOM_BUFFER_SIZE', DEFAULT_CAPACITIES[KEYSPACE_ROOM])))
        message_buffer_size = max(
            1, min(1 << 26, _env_int('BRIDGE_MESSAGE_BUFFER_SIZE', DEFAULT_CAPACITIES[KEYSPACE_MESSAGE]))
        )
        room_scan_limit = max(1, min(100000, _env_int('BRIDGE_ROOM_SCAN_LIMIT', DEFAULT_ROOM_SCAN_LIMIT)))

        log_path = _env_path(
            'BRIDGE_LOG_PATH', repo_root=repo_root, default=repo_root / 'logs' / 'tg-bridge' / 'bridge.log'
        )
        alias_store_path = _env_path(
            'BRIDGE_ALIAS_STORE_PATH', repo_root=repo_root, default=repo_root / 'logs' / 'tg-bridge' / 'aliases.json'
        )

        mm_url = (os.getenv('MM_URL') or '').strip()
        mm_scheme = (os.getenv('MM_SCHEME') or 'https').strip() or 'https'
        mm_port = _env_int('MM_PORT', 443)
        mm_basepath = (os.getenv('MM_BASEPATH') or '').strip()
        mm_verify = _env_bool('MM_VERIFY', True)
        mm_timeout_seconds = max(1, min(120, _env_int('MM_TIMEOUT_SECONDS', 20)))
        mm_token = (os.getenv('MM_TOKEN') or '').strip()
        mm_login_id = (os.getenv('MM_LOGIN_ID') or '').strip()
        mm_password = (os.getenv('MM_PASSWORD') or '').strip()
        mm_team_names = _env_list_str('MM_TEAM_NAMES')
        mm_poll_interval_seconds = max(1, min(3600, _env_int('MM_POLL_INTERVAL_SECONDS', 5)))
        mm_max_channels = max(1, min(5000, _env_int('MM_MAX_CHANNELS', 100)))

        return cls(
            repo_root=repo_root,
            only_first_match=only_first_match,
            polling=polling,
            polling_auto_start=polling_auto_start,
            web_hook=web_hook,
            web_hook_auto_open=web_hook_auto_open,
            auto_alias=auto_alias,
            auto_friend=auto_friend,
            forward_with_at=forward_with_at,
            contact_buffer_size=contact_buffer_size,
            room_buffer_size=room_buffer_size,
            message_buffer_size=message_buffer_size,
            room_scan_limit=room_scan_limit,
            log_path=log_path,
            alias_store_path=alias_store_path,
            mm_url=mm_url,
            mm_scheme=mm_scheme,
            mm_port=mm_port,
            mm_basepath=mm_basepath,
            mm_verify=mm_verify,
            mm_timeout_seconds=mm_timeout_seconds,
            mm_token=mm_token,
            mm_login_id=mm_login_id,
            mm_password=mm_password,
            mm_team_names=mm_team_names,
            mm_poll_interval_seconds=mm_poll_interval_seconds,
            mm_max_channels=mm_max_channels,
        )
