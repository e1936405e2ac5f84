import asyncio
import unittest

from taskflow.events import EventBus, Events, SequenceCounter


class SequenceCounterTests(unittest.TestCase):
    def test_next_is_monotonic(self) -> None:
        counter = SequenceCounter()
        self.assertEqual([counter.next(), counter.next(), counter.next()], [1, 2, 3])
        self.assertEqual(counter.current, 3)

    def test_injected_counter_is_shared(self) -> None:
        counter = SequenceCounter(start=100)
        bus_a = EventBus(counter)
        bus_b = EventBus(counter)
        self.assertEqual(bus_a.emit("x")["seq"], 101)
        self.assertEqual(bus_b.emit("x")["seq"], 102)


class EventBusTests(unittest.IsolatedAsyncioTestCase):
    async def test_emit_stamps_seq_unless_present(self) -> None:
        bus = EventBus()
        first = bus.emit(Events.FILE_UPDATED, {"path": "a.md"})
        second = bus.emit(Events.FILE_UPDATED, {"path": "a.md", "seq": 42})
        self.assertEqual(first["seq"], 1)
        self.assertEqual(second["seq"], 42)

    async def test_sync_handlers_run_inline(self) -> None:
        bus = EventBus()
        seen: list[str] = []
        bus.subscribe(Events.FILE_UPDATED, lambda p: seen.append(p["path"]))
        bus.emit(Events.FILE_UPDATED, {"path": "a.md"})
        self.assertEqual(seen, ["a.md"])

    async def test_unsubscribe_stops_delivery(self) -> None:
        bus = EventBus()
        seen: list[dict] = []
        unsubscribe = bus.subscribe(Events.CACHE_READY, seen.append)
        unsubscribe()
        unsubscribe()
        bus.emit(Events.CACHE_READY, {})
        self.assertEqual(seen, [])
        self.assertEqual(bus.subscriber_count(Events.CACHE_READY), 0)

    async def test_failing_handler_does_not_block_others(self) -> None:
        bus = EventBus()
        seen: list[int] = []

        def broken(payload: dict) -> None:
            raise RuntimeError("boom")

        bus.subscribe("x", broken)
        bus.subscribe("x", lambda p: seen.append(p["seq"]))
        bus.emit("x")
        self.assertEqual(seen, [1])

    async def test_async_handler_sees_events_in_emission_order(self) -> None:
        bus = EventBus()
        seen: list[int] = []

        async def slow(payload: dict) -> None:
            # Earlier events sleep longer; order must still hold
            await asyncio.sleep(0.01 * (5 - payload["n"]))
            seen.append(payload["n"])

        bus.subscribe("x", slow)
        for n in range(5):
            bus.emit("x", {"n": n})
        self.assertEqual(bus.pending_count, 5)
        await bus.drain()
        self.assertEqual(seen, [0, 1, 2, 3, 4])
        self.assertEqual(bus.pending_count, 0)

    async def test_async_failure_is_contained(self) -> None:
        bus = EventBus()
        seen: list[int] = []

        async def handler(payload: dict) -> None:
            if payload["n"] == 0:
                raise ValueError("bad")
            seen.append(payload["n"])

        bus.subscribe("x", handler)
        bus.emit("x", {"n": 0})
        bus.emit("x", {"n": 1})
        await bus.drain()
        self.assertEqual(seen, [1])


if __name__ == "__main__":
    unittest.main()
