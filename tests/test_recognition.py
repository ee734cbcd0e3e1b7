# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from clear_lode.config import RecognitionConfig
from clear_lode.event_bridge import (
    EventBridge,
    ATTACHMENT,
    ATTEMPT,
    FAILED,
    SUCCEEDED,
    TIME_EXTENDED,
    TIMEOUT_WARNING,
    WINDOW_OPENED,
)
from clear_lode.karma import InMemoryKarmaLedger
from clear_lode.monitor import SyncMonitor
from clear_lode.recognition import RecognitionWindow, WindowState
from clear_lode.scheduler import Scheduler


class TestRecognitionWindow(unittest.TestCase):
    def setUp(self):
        self.scheduler = Scheduler()
        self.bridge = EventBridge(clock=self.scheduler.now)
        self.ledger = InMemoryKarmaLedger()
        self.monitor = SyncMonitor()
        self.window = RecognitionWindow(self.bridge, self.scheduler, ledger=self.ledger,
                                        monitor=self.monitor)
        self.events = []
        for topic in (WINDOW_OPENED, ATTEMPT, TIME_EXTENDED, TIMEOUT_WARNING, SUCCEEDED, FAILED, ATTACHMENT):
            self.bridge.subscribe(topic, lambda p, t=topic: self.events.append((t, p)))

    def tearDown(self):
        self.window.destroy()

    def topics(self):
        return [t for t, _ in self.events]

    def test_idle_until_opened(self):
        self.assertEqual(self.window.state, WindowState.IDLE)
        self.assertFalse(self.window.record_attempt("click", 0.9))
        self.assertFalse(self.window.complete("click"))
        self.assertEqual(self.events, [])

    def test_open_emits_and_times_out_at_base_duration(self):
        self.window.open()
        self.assertEqual(self.topics(), [WINDOW_OPENED])
        self.scheduler.advance(14999)
        self.assertNotIn(FAILED, self.topics())
        self.scheduler.advance(1)
        self.assertEqual(self.topics()[-1], FAILED)
        self.assertEqual(self.window.state, WindowState.TIMED_OUT)

    def test_warning_before_timeout(self):
        self.window.open()
        self.scheduler.advance(11250)
        warnings = [p for t, p in self.events if t == TIMEOUT_WARNING]
        self.assertEqual(warnings, [{"remainingMs": 3750.0}])

    def test_attempt_below_threshold_does_not_extend(self):
        self.window.open()
        self.assertFalse(self.window.record_attempt("click", 0.5))
        self.assertEqual(self.topics(), [WINDOW_OPENED, ATTEMPT])
        self.assertEqual(self.events[-1][1], {"method": "click", "progress": 0.5})

    def test_late_attempt_extends_deadline(self):
        self.window.open()
        self.scheduler.advance(12000)
        self.assertTrue(self.window.record_attempt("click", 0.8))
        self.assertIn((TIME_EXTENDED, {"extensionMs": 5000.0}), self.events)
        self.assertEqual(self.window.session.deadline_ms, 20000.0)
        self.scheduler.advance(7999)
        self.assertNotIn(FAILED, self.topics())
        self.scheduler.advance(1)
        self.assertIn(FAILED, self.topics())

    def test_extensions_are_capped(self):
        self.window.open()
        self.assertTrue(self.window.record_attempt("click", 0.8))
        self.assertTrue(self.window.record_attempt("click", 0.9))
        with self.assertLogs("clear_lode.recognition", level="INFO"):
            self.assertFalse(self.window.record_attempt("click", 0.95))
        self.assertEqual(self.topics().count(TIME_EXTENDED), 2)
        self.assertEqual(self.window.session.total_duration_ms, RecognitionConfig().max_duration_ms())
        self.scheduler.advance(24999)
        self.assertNotIn(FAILED, self.topics())
        self.scheduler.advance(1)
        self.assertIn(FAILED, self.topics())

    def test_same_period_needs_a_fresh_crossing(self):
        self.window.open(RecognitionConfig(max_extensions=0))
        self.window.record_attempt("click", 0.8)
        self.window.record_attempt("click", 0.9)
        self.assertEqual(self.window.session.last_progress, 0.9)
        self.assertNotIn(TIME_EXTENDED, self.topics())

    def test_complete_emits_success_and_cancels_timeout(self):
        self.window.open()
        self.scheduler.advance(4000)
        self.assertTrue(self.window.complete("gaze"))
        self.assertEqual(self.events[-1], (SUCCEEDED, {"method": "gaze", "elapsedMs": 4000.0}))
        self.scheduler.advance(30000)
        self.assertNotIn(FAILED, self.topics())
        self.assertEqual(self.scheduler.pending(), 0)
        self.assertFalse(self.window.complete("gaze"))

    def test_perfect_timing_karma(self):
        self.window.open()
        self.scheduler.advance(4000)
        self.window.complete("click")
        s = self.ledger.get_state()
        self.assertEqual((s.computational, s.emotional, s.void), (10.0, 5.0, -10.0))

    def test_delayed_timing_karma(self):
        self.window.open()
        self.scheduler.advance(1000)
        self.window.complete("click")
        s = self.ledger.get_state()
        self.assertEqual((s.computational, s.emotional, s.temporal), (5.0, 3.0, -2.0))

    def test_timeout_karma_and_metrics(self):
        self.window.open()
        self.scheduler.advance(15000)
        s = self.ledger.get_state()
        self.assertEqual((s.void, s.temporal), (5.0, -5.0))
        self.assertEqual(
            self.monitor.sample("clear_lode_recognition_outcomes_total", {"outcome": "timed_out"}), 1.0
        )
        self.assertFalse(self.window.complete("click"))

    def test_karma_can_be_disabled(self):
        window = RecognitionWindow(self.bridge, self.scheduler, ledger=self.ledger,
                                   config=RecognitionConfig(apply_karma=False))
        window.open()
        window.record_attachment("memory_fragment")
        window.complete("click")
        self.assertEqual(self.ledger.get_state().total(), 0.0)
        window.destroy()

    def test_per_session_config_controls_karma(self):
        self.window.open(RecognitionConfig(apply_karma=False))
        self.window.record_attachment("premature_click")
        self.scheduler.advance(4000)
        self.window.complete("click")
        self.assertEqual(self.ledger.get_state().total(), 0.0)

        self.window.open(RecognitionConfig(apply_karma=False, base_duration_ms=1000))
        self.scheduler.advance(1000)
        self.assertEqual(self.window.state, WindowState.TIMED_OUT)
        self.assertEqual(self.ledger.get_state().as_dict(),
                         {"computational": 0.0, "emotional": 0.0, "temporal": 0.0, "void": 0.0})

    def test_per_session_perfect_band(self):
        self.window.open(RecognitionConfig(perfect_min_ms=0.0, perfect_max_ms=1000.0))
        self.scheduler.advance(500)
        self.window.complete("click")
        self.assertEqual(self.ledger.get_state().computational, 10.0)

    def test_open_after_destroy_is_noop(self):
        self.window.destroy()
        with self.assertLogs("clear_lode.recognition", level="WARNING"):
            self.assertIsNone(self.window.open())
        self.assertEqual(self.window.state, WindowState.IDLE)
        self.assertEqual(self.scheduler.pending(), 0)
        self.assertNotIn(WINDOW_OPENED, self.topics())

    def test_reopen_while_open_is_noop(self):
        first = self.window.open()
        self.scheduler.advance(1000)
        self.assertIs(self.window.open(), first)
        self.assertEqual(self.topics().count(WINDOW_OPENED), 1)

    def test_open_after_outcome_starts_new_session(self):
        first = self.window.open()
        self.window.complete("click")
        second = self.window.open({"base_duration_ms": 1000})
        self.assertNotEqual(first.session_id, second.session_id)
        self.assertEqual(self.window.state, WindowState.OPEN)
        self.scheduler.advance(1000)
        self.assertEqual(self.window.state, WindowState.TIMED_OUT)

    def test_attachment(self):
        self.window.open()
        self.assertTrue(self.window.record_attachment("hover", {"fragment": "f1"}))
        self.assertEqual(self.events[-1], (ATTACHMENT, {"type": "hover", "detail": {"fragment": "f1"}}))
        s = self.ledger.get_state()
        self.assertEqual((s.emotional, s.computational), (-2.0, -1.0))

    def test_subscriber_may_complete_during_attempt(self):
        self.bridge.subscribe(ATTEMPT, lambda p: self.window.complete(p["method"]))
        self.window.open()
        self.assertFalse(self.window.record_attempt("click", 0.9))
        self.assertEqual(self.window.state, WindowState.RECOGNIZED)
        self.assertNotIn(TIME_EXTENDED, self.topics())

    def test_progress_is_clamped(self):
        self.window.open()
        self.window.record_attempt("click", 7.0)
        self.assertEqual(self.window.session.attempts, 1)
        attempt = [p for t, p in self.events if t == ATTEMPT][0]
        self.assertEqual(attempt["progress"], 1.0)

    def test_remaining_ms(self):
        self.assertEqual(self.window.remaining_ms(), 0.0)
        self.window.open()
        self.scheduler.advance(5000)
        self.assertEqual(self.window.remaining_ms(), 10000.0)

    def test_destroy_cancels_timers(self):
        self.window.open()
        self.window.destroy()
        self.assertEqual(self.scheduler.pending(), 0)


if __name__ == '__main__':
    unittest.main()
