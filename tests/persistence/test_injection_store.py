import asyncio
import unittest

from sitechat.persistence import InMemoryPendingInjectionStore, MemoryStore, SqlitePendingInjectionStore
from tests.persistence.base import MemoryStoreTestCase


class _Clock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class InMemoryPendingInjectionStoreTests(unittest.TestCase):
    def test_take_once(self) -> None:
        store = InMemoryPendingInjectionStore()

        async def scenario():
            await store.put("s1", {"files": {"a": "b"}})
            return await store.take_once("s1"), await store.take_once("s1"), await store.take_once("other")

        first, second, missing = asyncio.run(scenario())

        self.assertEqual({"files": {"a": "b"}}, first)
        self.assertIsNone(second)
        self.assertIsNone(missing)

    def test_expired_entries_are_not_returned(self) -> None:
        clock = _Clock()
        store = InMemoryPendingInjectionStore(clock=clock)

        async def scenario():
            await store.put("s1", {"x": 1}, ttl=10)
            await store.put("s2", {"x": 2}, ttl=100)
            clock.now += 11
            purged = await store.purge_expired()
            return purged, await store.take_once("s1"), await store.take_once("s2")

        purged, expired, alive = asyncio.run(scenario())

        self.assertEqual(1, purged)
        self.assertIsNone(expired)
        self.assertEqual({"x": 2}, alive)
        self.assertEqual(0, len(store))

    def test_concurrent_takers_get_one_payload(self) -> None:
        store = InMemoryPendingInjectionStore()

        async def scenario():
            await store.put("s1", {"x": 1})
            return await asyncio.gather(*(store.take_once("s1") for _ in range(5)))

        results = asyncio.run(scenario())
        self.assertEqual(1, sum(r is not None for r in results))


class SqlitePendingInjectionStoreTests(MemoryStoreTestCase):
    def test_take_once_deletes_on_read(self) -> None:
        store = SqlitePendingInjectionStore(self._store)

        async def scenario():
            await store.put("s1", {"files": {"index.html": "<html></html>"}})
            return await store.take_once("s1"), await store.take_once("s1")

        first, second = asyncio.run(scenario())

        self.assertEqual({"files": {"index.html": "<html></html>"}}, first)
        self.assertIsNone(second)
        row = self._store.execute("SELECT COUNT(*) AS c FROM pending_injections").fetchone()
        self.assertEqual(0, int(row["c"]))

    def test_expired_payload_is_dropped(self) -> None:
        clock = _Clock()
        store = SqlitePendingInjectionStore(self._store, clock=clock)

        async def scenario():
            await store.put("s1", {"x": 1}, ttl=5)
            clock.now += 6
            return await store.take_once("s1")

        self.assertIsNone(asyncio.run(scenario()))

    def test_replacing_payload_keeps_latest(self) -> None:
        store = SqlitePendingInjectionStore(MemoryStore(":memory:"))

        async def scenario():
            await store.put("s1", {"v": 1})
            await store.put("s1", {"v": 2})
            return await store.take_once("s1")

        self.assertEqual({"v": 2}, asyncio.run(scenario()))


if __name__ == "__main__":
    unittest.main()
