from __future__ import annotations

from typing import Any


class BridgeError(RuntimeError):
    """Failure of a bridged Telegram method.

    Outbound methods of the bot never let these escape: they are turned into a
    Telegram-style failure response via `to_response()`.
    """

    kind = 'failed'
    error_code = 400

    def __init__(self, description: str) -> None:
        super().__init__(description)
        self.description = description

    def to_response(self) -> dict[str, Any]:
        return {
            'ok': False,
            'error_code': int(self.error_code),
            'description': str(self.description),
            'kind': self.kind,
        }


class NotFoundError(BridgeError):
    kind = 'not_found'
    error_code = 400


class UnsupportedError(BridgeError):
    """The chat platform has no representation for the operation."""

    kind = 'unsupported'
    error_code = 501


class NotImplementedYetError(BridgeError):
    """Representable on the chat platform, but not built yet."""

    kind = 'not_implemented'
    error_code = 501


class SendError(BridgeError):
    kind = 'send_failed'
    error_code = 502


class FatalError(BridgeError):
    kind = 'fatal'
    error_code = 500


class UnavailableError(BridgeError):
    """The chat driver is not connected (yet)."""

    kind = 'unavailable'
    error_code = 503
