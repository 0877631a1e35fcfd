import unittest
from typing import Any

from tg_bridge.identity import IdentityResolver
from tg_bridge.ids import KEYSPACE_MESSAGE, KEYSPACE_SYSMESSAGE
from tg_bridge.normalizer import EnvelopeNormalizer
from tg_bridge.session import BridgeSession


class _Contact:
    def __init__(self, cid: str, name: str, alias: str | None = None) -> None:
        self.id = cid
        self._name = name
        self._alias = alias

    def name(self) -> str:
        return self._name

    def alias(self) -> str | None:
        return self._alias

    def set_alias(self, alias: str) -> bool:
        self._alias = alias
        return True

    def say(self, text: str, reply_to: Any = None) -> bool:
        return True


class _Room(_Contact):
    def topic(self) -> str:
        return self._name


class _Message:
    def __init__(
        self,
        sender: _Contact,
        text: str,
        *,
        room: _Room | None = None,
        mentioned: list[_Contact] | None = None,
        is_self: bool = False,
    ) -> None:
        self._sender = sender
        self._text = text
        self._room = room
        self._mentioned = mentioned or []
        self._is_self = is_self

    def from_contact(self) -> _Contact:
        return self._sender

    def room(self) -> _Room | None:
        return self._room

    def content(self) -> str:
        return self._text

    def mentioned(self) -> list[_Contact]:
        return list(self._mentioned)

    def is_self(self) -> bool:
        return self._is_self


class _Driver:
    def find_contact_by_alias(self, alias: str) -> None:
        return None

    def find_all_rooms(self) -> list[_Room]:
        return []


class TestEnvelopeNormalizer(unittest.TestCase):
    def setUp(self) -> None:
        self.session = BridgeSession()
        self.resolver = IdentityResolver(driver=_Driver(), session=self.session)
        self.normalizer = EnvelopeNormalizer(session=self.session, resolver=self.resolver)
        self.alice = _Contact('u1', 'Alice', alias='#11')
        self.bob = _Contact('u2', 'Bob', alias='#12')
        self.room = _Room('r1', 'Ops', alias='#21')

    def test_private_message(self) -> None:
        update = self.normalizer.normalize_message(_Message(self.alice, 'hello'))
        assert update is not None
        self.assertGreater(update['update_id'], 0)
        msg = update['message']
        self.assertEqual(msg['from'], {'id': 11, 'first_name': 'Alice'})
        self.assertEqual(msg['chat'], {'id': 11, 'first_name': 'Alice', 'type': 'private'})
        self.assertEqual(msg['text'], 'hello')
        self.assertEqual(msg['entities'], [])
        self.assertIsInstance(msg['date'], int)

        buffered = self.session.recall(KEYSPACE_MESSAGE, msg['message_id'])
        self.assertIsNotNone(buffered)
        self.assertIs(buffered.envelope, msg)

    def test_room_message_with_mentions(self) -> None:
        update = self.normalizer.normalize_message(
            _Message(self.alice, '@Bob ping', room=self.room, mentioned=[self.bob])
        )
        assert update is not None
        msg = update['message']
        self.assertEqual(msg['chat']['id'], -21)
        self.assertEqual(msg['chat']['title'], 'Ops')
        self.assertEqual(
            msg['entities'],
            [{'type': 'text_mention', 'offset': 0, 'length': 0, 'user': {'id': 12, 'first_name': 'Bob'}}],
        )

    def test_self_message_is_dropped(self) -> None:
        self.assertIsNone(self.normalizer.normalize_message(_Message(self.alice, 'me', is_self=True)))

    def test_friend_becomes_start_command(self) -> None:
        update = self.normalizer.normalize_friend(self.alice)
        msg = update['message']
        self.assertEqual(msg['text'], '/start')
        self.assertEqual(msg['entities'], [{'type': 'bot_command', 'offset': 0, 'length': 6}])
        self.assertEqual(msg['chat']['type'], 'private')
        # Service messages are not buffered.
        self.assertIsNone(self.session.recall(KEYSPACE_MESSAGE, msg['message_id']))
        self.assertIsNone(self.session.recall(KEYSPACE_SYSMESSAGE, msg['message_id']))

    def test_room_join(self) -> None:
        update = self.normalizer.normalize_room_join(self.room, [self.bob, self.alice], self.alice)
        msg = update['message']
        self.assertEqual(msg['from']['id'], 11)
        self.assertEqual(msg['new_chat_member'], {'id': 12, 'first_name': 'Bob'})
        self.assertEqual([m['id'] for m in msg['new_chat_members']], [12, 11])

    def test_room_join_without_invitees(self) -> None:
        msg = self.normalizer.normalize_room_join(self.room, [], self.alice)['message']
        self.assertNotIn('new_chat_member', msg)
        self.assertEqual(msg['new_chat_members'], [])

    def test_room_leave_one_update_per_leaver(self) -> None:
        updates = self.normalizer.normalize_room_leave(self.room, [self.alice, self.bob])
        self.assertEqual(len(updates), 2)
        self.assertEqual(updates[0]['message']['from']['id'], 11)
        self.assertEqual(updates[0]['message']['left_chat_member']['id'], 11)
        self.assertEqual(updates[1]['message']['left_chat_member']['id'], 12)
        self.assertLess(updates[0]['update_id'], updates[1]['update_id'])

    def test_room_topic(self) -> None:
        msg = self.normalizer.normalize_room_topic(self.room, 'New', 'Old', self.bob)['message']
        self.assertEqual(msg['new_chat_title'], 'New')
        self.assertEqual(msg['from']['id'], 12)


if __name__ == '__main__':
    unittest.main()
