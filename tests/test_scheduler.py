# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
import asyncio
import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from clear_lode.scheduler import Scheduler, SchedulerError, TeardownList


class TestScheduler(unittest.TestCase):
    def setUp(self):
        self.scheduler = Scheduler()
        self.fired = []

    def test_virtual_clock_starts_at_zero(self):
        self.assertTrue(self.scheduler.is_virtual)
        self.assertEqual(self.scheduler.now(), 0.0)
        self.scheduler.advance(250)
        self.assertEqual(self.scheduler.now(), 250.0)

    def test_after_fires_once_at_deadline(self):
        self.scheduler.after(100, lambda: self.fired.append("a"))
        self.scheduler.advance(99)
        self.assertEqual(self.fired, [])
        self.scheduler.advance(1)
        self.assertEqual(self.fired, ["a"])
        self.scheduler.advance(1000)
        self.assertEqual(self.fired, ["a"])

    def test_callbacks_see_their_own_deadline(self):
        seen = []
        self.scheduler.after(40, lambda: seen.append(self.scheduler.now()))
        self.scheduler.advance(100)
        self.assertEqual(seen, [40.0])

    def test_every_repeats_until_cancelled(self):
        handle = self.scheduler.every(100, lambda: self.fired.append(self.scheduler.now()))
        self.scheduler.advance(350)
        self.assertEqual(self.fired, [100.0, 200.0, 300.0])
        handle.cancel()
        self.scheduler.advance(1000)
        self.assertEqual(len(self.fired), 3)

    def test_deadline_order(self):
        self.scheduler.after(50, lambda: self.fired.append("late"))
        self.scheduler.after(20, lambda: self.fired.append("early"))
        self.scheduler.after(20, lambda: self.fired.append("early-2"))
        self.scheduler.advance(60)
        self.assertEqual(self.fired, ["early", "early-2", "late"])

    def test_cancelled_timer_never_fires(self):
        h = self.scheduler.after(10, lambda: self.fired.append("x"))
        h.cancel()
        self.assertEqual(self.scheduler.pending(), 0)
        self.scheduler.advance(20)
        self.assertEqual(self.fired, [])

    def test_failing_callback_does_not_stop_others(self):
        def boom():
            raise ValueError("boom")

        self.scheduler.after(10, boom)
        self.scheduler.after(10, lambda: self.fired.append("ok"))
        with self.assertLogs("clear_lode.scheduler", level="ERROR"):
            self.scheduler.advance(10)
        self.assertEqual(self.fired, ["ok"])

    def test_advance_requires_virtual_clock(self):
        real = Scheduler(clock=lambda: 0.0)
        with self.assertRaises(SchedulerError):
            real.advance(10)

    def test_run_pending_with_injected_clock(self):
        t = [0.0]
        sched = Scheduler(clock=lambda: t[0])
        sched.after(30, lambda: self.fired.append("due"))
        self.assertEqual(sched.run_pending(), 0)
        t[0] = 30.0
        self.assertEqual(sched.run_pending(), 1)
        self.assertEqual(self.fired, ["due"])

    def test_cancel_all(self):
        self.scheduler.after(10, lambda: self.fired.append(1))
        self.scheduler.every(10, lambda: self.fired.append(2))
        self.scheduler.cancel_all()
        self.assertIsNone(self.scheduler.next_deadline())
        self.scheduler.advance(100)
        self.assertEqual(self.fired, [])

    def test_run_forever_until_stopped(self):
        async def scenario():
            stop = asyncio.Event()
            self.scheduler.after(5, stop.set)
            await self.scheduler.run_forever(stop, poll_ms=10)

        asyncio.run(scenario())
        self.assertGreaterEqual(self.scheduler.now(), 5.0)


class TestTeardownList(unittest.TestCase):
    def test_release_is_lifo_and_once(self):
        order = []
        td = TeardownList("test")
        td.register(lambda: order.append("first"))
        td.register(lambda: order.append("second"))
        self.assertEqual(td.release_all(), 2)
        self.assertEqual(order, ["second", "first"])
        self.assertEqual(td.release_all(), 0)
        self.assertTrue(td.released)

    def test_register_after_release_runs_immediately(self):
        order = []
        td = TeardownList("test")
        td.release_all()
        with self.assertLogs("clear_lode.scheduler", level="WARNING"):
            td.register(lambda: order.append("late"), label="late")
        self.assertEqual(order, ["late"])
        self.assertEqual(len(td), 0)

    def test_failing_cleanup_is_logged(self):
        order = []
        td = TeardownList("test")
        td.register(lambda: order.append("kept"))
        td.register(lambda: 1 / 0, label="broken")
        with self.assertLogs("clear_lode.scheduler", level="ERROR"):
            td.release_all()
        self.assertEqual(order, ["kept"])

    def test_timer_registration_cancels_handle(self):
        sched = Scheduler()
        td = TeardownList("test")
        h = td.timer(sched.every(10, lambda: None, label="tick"))
        td.release_all()
        self.assertFalse(h.active)
        self.assertEqual(sched.pending(), 0)


if __name__ == '__main__':
    unittest.main()
