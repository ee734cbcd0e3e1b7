# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
import logging
import os
import sys

# src layout: make the package importable without installing
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from clear_lode import ClearLodeSession, load_config
from clear_lode.event_bridge import AUDIO_DEGRADATION_CHANGED, AUDIO_SUSPENDED, AUDIO_RESUMED
from clear_lode.interfaces import RecordingAudioChannel, RecordingPresentationSink
from clear_lode.karma import InMemoryKarmaLedger

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s - %(message)s")

FRAGMENTS = {
    "f1": "the kitchen light in winter",
    "f2": "a name you used to answer to",
    "f3": "someone laughing in the next room",
}


def demo():
    # 1. Initialize
    cfg = load_config()
    ledger = InMemoryKarmaLedger({"void": -40.0})
    audio = RecordingAudioChannel()
    sink = RecordingPresentationSink()

    with ClearLodeSession(config=cfg, ledger=ledger, audio=audio, sink=sink) as s:
        for fid, text in FRAGMENTS.items():
            s.corruption.track_fragment(fid, text)

        # 2. Scenario
        print("🌫️ [t=0s] Recognition window opens")
        s.window.open()

        print("🔊 [t=2s] Audio degrades to 'moderate'")
        s.scheduler.advance(2000)
        audio.set_degradation_level(0.5)
        s.bridge.emit(AUDIO_DEGRADATION_CHANGED, {"level": "moderate", "source": "demo",
                                                  "timestamp": s.scheduler.now()})

        print("🖱️ [t=6s] Hesitant click on a fragment")
        s.scheduler.advance(4000)
        s.window.record_attachment("premature_click", {"fragment": "f2"})

        print("🔇 [t=8s] Audio context suspended -> visual fallback")
        s.scheduler.advance(2000)
        s.bridge.emit(AUDIO_SUSPENDED, {})
        s.scheduler.advance(2000)
        s.bridge.emit(AUDIO_RESUMED, {})

        print("⏳ [t=12s] Late attempt crosses the warning threshold")
        s.scheduler.advance(2000)
        s.window.record_attempt("click", 0.8)

        print("✨ [t=14s] Recognition")
        s.scheduler.advance(2000)
        s.window.complete("click")

        # 3. Report
        for fid, rec in s.corruption.records.items():
            print(f"   {fid}: level={rec.corruption_level:.3f} tier={rec.tier} text={rec.current_content!r}")
        print(f"   karma: {ledger.get_state().as_dict()}")
        print(f"   sync healthy: {s.sync.status()['is_healthy']}")
        print(s.monitor.render().decode("utf-8"))


if __name__ == "__main__":
    demo()
