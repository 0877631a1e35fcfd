import unittest
from types import SimpleNamespace

from tg_bridge.buffers import DEFAULT_CAPACITIES, RecencyBuffers
from tg_bridge.driver import native_key
from tg_bridge.ids import KEYSPACE_CONTACT, KEYSPACE_MESSAGE, KEYSPACE_ROOM, KEYSPACE_UPDATE


class TestRecencyBuffers(unittest.TestCase):
    def test_defaults(self) -> None:
        bufs = RecencyBuffers()
        self.assertEqual(bufs.capacity(KEYSPACE_CONTACT), DEFAULT_CAPACITIES[KEYSPACE_CONTACT])
        self.assertEqual(bufs.capacity(KEYSPACE_ROOM), 65536)
        self.assertEqual(bufs.capacity(KEYSPACE_MESSAGE), 1048576)
        self.assertIsNone(bufs.capacity(KEYSPACE_UPDATE))

    def test_recall_window_after_sequential_inserts(self) -> None:
        cap = 4
        bufs = RecencyBuffers({KEYSPACE_MESSAGE: cap})
        first = 1000
        last = first + 9
        for i in range(first, last + 1):
            bufs.remember(KEYSPACE_MESSAGE, i, f'm{i}')

        for i in range(first, last + 1):
            got = bufs.recall(KEYSPACE_MESSAGE, i)
            if last - cap < i <= last:
                self.assertEqual(got, f'm{i}')
            else:
                self.assertIsNone(got)
        self.assertEqual(bufs.size(KEYSPACE_MESSAGE), cap)

    def test_unbuffered_keyspace_keeps_nothing(self) -> None:
        bufs = RecencyBuffers({KEYSPACE_MESSAGE: 8})
        bufs.remember(KEYSPACE_UPDATE, 1, 'x')
        self.assertIsNone(bufs.recall(KEYSPACE_UPDATE, 1))
        self.assertEqual(bufs.size(KEYSPACE_UPDATE), 0)

    def test_unknown_and_bad_ids(self) -> None:
        bufs = RecencyBuffers({KEYSPACE_MESSAGE: 8})
        bufs.remember(KEYSPACE_MESSAGE, 10, 'x')
        self.assertIsNone(bufs.recall(KEYSPACE_MESSAGE, 11))
        self.assertIsNone(bufs.recall(KEYSPACE_MESSAGE, 'nope'))  # type: ignore[arg-type]

    def test_find_by_native_key_and_replace(self) -> None:
        bufs = RecencyBuffers({KEYSPACE_CONTACT: 8}, native_keys={KEYSPACE_CONTACT: native_key})
        old = SimpleNamespace(id='u1', name='old')
        bufs.remember(KEYSPACE_CONTACT, 500, old)
        self.assertEqual(bufs.find(KEYSPACE_CONTACT, 'u1'), 500)
        self.assertIsNone(bufs.find(KEYSPACE_CONTACT, 'u2'))

        fresh = SimpleNamespace(id='u1', name='fresh')
        self.assertTrue(bufs.replace(KEYSPACE_CONTACT, 500, fresh))
        self.assertIs(bufs.recall(KEYSPACE_CONTACT, 500), fresh)
        self.assertFalse(bufs.replace(KEYSPACE_CONTACT, 501, fresh))

    def test_evicted_entries_leave_the_index(self) -> None:
        bufs = RecencyBuffers({KEYSPACE_CONTACT: 2}, native_keys={KEYSPACE_CONTACT: native_key})
        bufs.remember(KEYSPACE_CONTACT, 1, SimpleNamespace(id='a'))
        bufs.remember(KEYSPACE_CONTACT, 2, SimpleNamespace(id='b'))
        bufs.remember(KEYSPACE_CONTACT, 3, SimpleNamespace(id='c'))
        self.assertIsNone(bufs.find(KEYSPACE_CONTACT, 'a'))
        self.assertEqual(bufs.find(KEYSPACE_CONTACT, 'c'), 3)

    def test_zero_capacity_disables_keyspace(self) -> None:
        bufs = RecencyBuffers({KEYSPACE_MESSAGE: 0})
        self.assertIsNone(bufs.capacity(KEYSPACE_MESSAGE))
        bufs.remember(KEYSPACE_MESSAGE, 1, 'x')
        self.assertIsNone(bufs.recall(KEYSPACE_MESSAGE, 1))


if __name__ == '__main__':
    unittest.main()
