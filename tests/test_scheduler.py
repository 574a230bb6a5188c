import asyncio
import unittest

from discord_bot.core.scheduler import PollScheduler


class Summary:
    def summary(self):
        return "all good"


class PollSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def run_until(self, scheduler, ticks, timeout=2.0):
        async def wait():
            while scheduler.tick_count < ticks:
                await asyncio.sleep(0.005)

        scheduler.start()
        try:
            await asyncio.wait_for(wait(), timeout)
        finally:
            await scheduler.stop()

    async def test_keeps_ticking_after_a_failure(self):
        calls = 0

        async def callback():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("boom")
            return Summary()

        scheduler = PollScheduler("test", callback, interval=0.01, precision=0.005)
        await self.run_until(scheduler, 2)

        self.assertGreaterEqual(calls, 2)
        self.assertTrue(scheduler.last_outcome.ok)
        self.assertEqual(scheduler.last_outcome.detail, "all good")

    async def test_failure_is_recorded(self):
        async def callback():
            raise RuntimeError("boom")

        scheduler = PollScheduler("test", callback, interval=0.01, precision=0.005)
        await self.run_until(scheduler, 1)

        self.assertFalse(scheduler.last_outcome.ok)
        self.assertEqual(scheduler.last_outcome.error, "RuntimeError: boom")

    async def test_stalled_tick_is_abandoned(self):
        calls = 0

        async def callback():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(10)

        scheduler = PollScheduler(
            "test", callback, interval=0.01, precision=0.005, stall_timeout=0.05
        )
        await self.run_until(scheduler, 2)

        self.assertGreaterEqual(calls, 2)
        self.assertTrue(scheduler.last_outcome.ok)

    async def test_stall_is_reported(self):
        async def callback():
            await asyncio.sleep(10)

        scheduler = PollScheduler(
            "test", callback, interval=0.01, precision=0.005, stall_timeout=0.02
        )
        await self.run_until(scheduler, 1)

        self.assertFalse(scheduler.last_outcome.ok)
        self.assertIn("stalled", scheduler.last_outcome.error)

    async def test_ticks_never_overlap(self):
        running = 0
        peak = 0

        async def callback():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1

        scheduler = PollScheduler("test", callback, interval=0.001, precision=0.001)
        await self.run_until(scheduler, 3)

        self.assertEqual(peak, 1)

    async def test_stop(self):
        async def callback():
            return None

        scheduler = PollScheduler("test", callback, interval=60)
        await self.run_until(scheduler, 1)

        self.assertFalse(scheduler.running)
        self.assertEqual(scheduler.tick_count, 1)
        self.assertEqual(scheduler.last_outcome.as_dict()["ok"], True)
        await scheduler.stop()
