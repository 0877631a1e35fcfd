from __future__ import annotations

import re
import threading
import time
from typing import Any

from .bot import TelegramBridgeBot
from .config import BridgeConfig
from .mattermost import MattermostChatDriver


def register_default_commands(bot: TelegramBridgeBot) -> None:
    """`/start` greets, `/id` reports the bridged chat and user ids."""

    def _start(message: dict[str, Any], _m: re.Match[str]) -> None:
        chat = message.get('chat') or {}
        sender = message.get('from') or {}
        name = str(sender.get('first_name') or '').strip() or 'there'
        bot.send_message(int(chat.get('id') or 0), f'Hi {name}! Send /id to see your bridged ids.')

    def _id(message: dict[str, Any], _m: re.Match[str]) -> None:
        chat = message.get('chat') or {}
        sender = message.get('from') or {}
        lines = [
            f'chat_id: {chat.get("id")}',
            f'chat_type: {chat.get("type") or "?"}',
            f'user_id: {sender.get("id")}',
        ]
        bot.send_message(
            int(chat.get('id') or 0), '\n'.join(lines), reply_to_message_id=int(message.get('message_id') or 0)
        )

    bot.on_text(re.compile(r'^/start(?:\s|$)'), _start)
    bot.on_text(re.compile(r'^/id(?:\s|$)'), _id)


def main() -> int:
    cfg = BridgeConfig.from_env()

    driver = MattermostChatDriver(cfg)
    bot = TelegramBridgeBot(driver, cfg)
    register_default_commands(bot)

    stop = threading.Event()

    def _on_error(err: BaseException) -> None:
        print(f'tg_bridge: {type(err).__name__}: {str(err)[:300]}')

    for event in ('polling_error', 'webhook_error', 'standby_error'):
        bot.on(event, _on_error)

    if not bot.is_polling() and not bot.has_open_web_hook():
        bot.start_polling()

    me = bot.get_me()
    me_result = me.get('result') if me.get('ok') else None
    name = str((me_result or {}).get('first_name') or '?')
    # Print a minimal startup line for logs.
    print(f'tg_bridge running as {name} (mode={bot.mode}, repo_root={cfg.repo_root})')

    try:
        while not stop.is_set():
            time.sleep(1.0)
    except KeyboardInterrupt:
        stop.set()
    finally:
        if bot.has_open_web_hook():
            bot.close_web_hook()
        else:
            bot.stop_polling()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
