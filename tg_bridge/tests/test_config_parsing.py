import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from tg_bridge.config import BridgeConfig
from tg_bridge.ids import KEYSPACE_CONTACT, KEYSPACE_MESSAGE, KEYSPACE_ROOM


class TestConfigParsing(unittest.TestCase):
    def _base_env(self, *, repo_root: Path) -> dict[str, str]:
        return {
            'TG_BRIDGE_ROOT': str(repo_root),
            'MM_URL': 'https://mm.example.com',
            'MM_TOKEN': 'test-token',
        }

    def test_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            with patch.dict(os.environ, self._base_env(repo_root=root), clear=False):
                cfg = BridgeConfig.from_env()
            self.assertEqual(cfg.repo_root, root.resolve())
            self.assertFalse(cfg.only_first_match)
            self.assertTrue(cfg.auto_alias)
            self.assertEqual(cfg.room_scan_limit, 5000)
            self.assertTrue(cfg.forward_with_at)
            self.assertEqual(
                cfg.buffer_capacities(),
                {KEYSPACE_CONTACT: 65536, KEYSPACE_ROOM: 65536, KEYSPACE_MESSAGE: 1048576},
            )
            self.assertEqual(cfg.log_path, (root / 'logs' / 'tg-bridge' / 'bridge.log').resolve())
            self.assertEqual(cfg.alias_store_path, (root / 'logs' / 'tg-bridge' / 'aliases.json').resolve())

    def test_bool_flags(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = {
                **self._base_env(repo_root=Path(td)),
                'TG_ONLY_FIRST_MATCH': 'yes',
                'TG_POLLING': '1',
                'BRIDGE_AUTO_ALIAS': 'off',
                'BRIDGE_FORWARD_WITH_AT': 'garbage',
            }
            with patch.dict(os.environ, env, clear=False):
                cfg = BridgeConfig.from_env()
            self.assertTrue(cfg.only_first_match)
            self.assertTrue(cfg.polling)
            self.assertFalse(cfg.auto_alias)
            self.assertTrue(cfg.forward_with_at)

    def test_clamps(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env = {
                **self._base_env(repo_root=Path(td)),
                'BRIDGE_MESSAGE_BUFFER_SIZE': '0',
                'BRIDGE_ROOM_BUFFER_SIZE': 'abc',
                'MM_TIMEOUT_SECONDS': '999',
                'MM_POLL_INTERVAL_SECONDS': '0',
                'MM_MAX_CHANNELS': '100000',
            }
            with patch.dict(os.environ, env, clear=False):
                cfg = BridgeConfig.from_env()
            self.assertEqual(cfg.message_buffer_size, 1)
            self.assertEqual(cfg.room_buffer_size, 65536)
            self.assertEqual(cfg.mm_timeout_seconds, 120)
            self.assertEqual(cfg.mm_poll_interval_seconds, 1)
            self.assertEqual(cfg.mm_max_channels, 5000)

    def test_relative_paths_resolve_against_repo_root(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            env = {
                **self._base_env(repo_root=root),
                'BRIDGE_LOG_PATH': 'var/bridge.log',
                'MM_TEAM_NAMES': 'core, ops ,,',
            }
            with patch.dict(os.environ, env, clear=False):
                cfg = BridgeConfig.from_env()
            self.assertEqual(cfg.log_path, (root / 'var' / 'bridge.log').resolve())
            self.assertEqual(cfg.mm_team_names, ['core', 'ops'])

    def test_dotenv_does_not_override_env(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / '.env.tg_bridge').write_text(
                'export MM_LOGIN_ID="bot@example.com"\nMM_TOKEN=from-file\n', encoding='utf-8'
            )
            with patch.dict(os.environ, self._base_env(repo_root=root), clear=False):
                os.environ.pop('MM_LOGIN_ID', None)
                cfg = BridgeConfig.from_env()
            self.assertEqual(cfg.mm_token, 'test-token')
            self.assertEqual(cfg.mm_login_id, 'bot@example.com')


if __name__ == '__main__':
    unittest.main()
