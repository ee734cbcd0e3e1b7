# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
# ==============================================================================
# File: sync.py
# Audio/visual degradation synchronization.
#
# - Keeps the visual degradation level slaved to the audio level
# - Periodic health check corrects drift once the last sync goes stale
# - Maps karma-driven audio parameters onto named visual intensity signals
# - Normal <-> Fallback when the audio channel is missing or suspended
# - Paired (audio, visual) responses to recognition attempt/success/failure
# ==============================================================================
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Deque, Dict, Mapping, Optional, Set, Tuple

from . import _clip, _finite
from .config import SyncConfig
from .corruption import CorruptionEngine, parse_level
from .event_bridge import (
    EventBridge,
    ATTEMPT,
    SUCCEEDED,
    FAILED,
    AUDIO_DEGRADATION_CHANGED,
    AUDIO_KARMA_PARAMETERS,
    AUDIO_INIT_FAILED,
    AUDIO_SUSPENDED,
    AUDIO_RESUMED,
    LEVEL_CHANGED,
    FALLBACK_ACTIVATED,
    FALLBACK_DEACTIVATED,
    VISUAL_RHYTHM,
    KARMA_EVENT_PREFIX,
)
from .interfaces import AudioChannel, PresentationSink, NullPresentationSink, audio_ready
from .karma import CHANNELS, KarmaLedger, as_karma_state
from .monitor import SyncMonitor
from .scheduler import Scheduler, TeardownList, TimerHandle

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# State
# ------------------------------------------------------------------------------
@dataclass
class SyncState:
    audio_level: float = 0.0
    visual_level: float = 0.0
    # last mean fragment corruption reported by the engine
    corruption_level: float = 0.0
    last_sync_ms: float = 0.0
    sync_threshold: float = 0.05
    sync_interval_ms: float = 100.0
    stale_after_ms: float = 1000.0
    karma_state: Optional[Dict[str, float]] = None

    @property
    def drift(self) -> float:
        return abs(self.audio_level - self.visual_level)


@dataclass
class AudioFallbackState:
    is_active: bool = False
    visual_guidance_level: float = 1.0
    reason: Optional[str] = None
    effects: Set[str] = field(default_factory=set)


@dataclass
class SyncMetrics:
    missed_syncs: int = 0
    drift_corrections: int = 0
    fallback_activations: int = 0
    sync_latency_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=100))


@dataclass(frozen=True)
class FeedbackResponse:
    action: str
    intensity: float
    duration_ms: float
    effects: Tuple[str, ...] = ()


@dataclass
class RecognitionFeedback:
    kind: str                 # attempt, success, failure
    method: Optional[str]
    progress: float
    audio: Optional[FeedbackResponse]
    visual: Optional[FeedbackResponse]
    timestamp_ms: float


# kind -> (action, intensity scale on progress or fixed, duration ms)
AUDIO_RESPONSES = {
    "attempt": ("burst", 0.3, 100.0),
    "success": ("achieveResonance", 1.0, 4000.0),
    "failure": ("accelerateDegradation", 0.2, 1000.0),
}

VISUAL_RESPONSES = {
    "attempt": ("progressFeedback", 1.0, 500.0, ("pulse", "highlight")),
    "success": ("successCelebration", 1.0, 3000.0, ("purification", "lightBurst", "restoration")),
    "failure": ("failureFeedback", 0.8, 2000.0, ("corruption", "fade", "distortion")),
}

KARMA_EVENTS = (
    "attachment_formed",
    "recognition_achieved",
    "degradation_choice",
    "consciousness_degradation_started",
)

# event -> (audio intensity, visual intensity, effects)
KARMA_EVENT_RESPONSES = {
    "attachment_formed": (0.3, 0.4, ("corruption", "distortion")),
    "recognition_achieved": (1.0, 1.0, ("purification", "light")),
    "degradation_choice": (0.6, 0.7, ("transition", "fade")),
}
DEFAULT_KARMA_EVENT_RESPONSE = (0.5, 0.5, ("default",))

# signals scaled by the fallback guidance multiplier
GUIDED_SIGNALS = ("visualJitter", "corruptionIntensity", "chromaticAberrationPx", "visualGrain")


# ------------------------------------------------------------------------------
# Pure mappings
# ------------------------------------------------------------------------------
def map_audio_to_visual(params: Optional[Mapping[str, Any]]) -> Dict[str, float]:
    """Fixed ratios from the audio parameter vector to visual intensity signals."""
    p = params or {}
    return {
        "visualJitter": _finite(p.get("pitchInstability", 0.0)) / 15.0,
        "visualComplexity": min(1.0, _finite(p.get("harmonicCount", 1.0), 1.0) / 16.0),
        "corruptionIntensity": _finite(p.get("noiseLevel", 0.0)),
        "animationSpeedMultiplier": _finite(p.get("timeStretch", 1.0), 1.0),
        "chromaticAberrationPx": _finite(p.get("harmonicJitter", 0.0)) * 10.0,
        "visualGrain": _finite(p.get("granularSize", 0.01), 0.01) * 100.0,
    }


def karma_visual_response(karma: Any) -> Dict[str, Any]:
    state = as_karma_state(karma)
    return {
        "karmaIntensity": _clip(state.total() / 200.0, 0.0, 1.0),
        "dominant": state.dominant(),
        "effects": {
            "jitter": _clip(state.computational / 100.0, 0.0, 1.0),
            "complexity": _clip(state.emotional / 100.0, 0.0, 1.0),
            "corruption": _clip(state.void / 100.0, 0.0, 1.0),
            "distortion": _clip(state.temporal / 100.0, 0.0, 1.0),
        },
    }


# ------------------------------------------------------------------------------
# Controller
# ------------------------------------------------------------------------------
class SyncController:
    def __init__(
        self,
        bridge: EventBridge,
        scheduler: Scheduler,
        corruption: Optional[CorruptionEngine] = None,
        audio: Optional[AudioChannel] = None,
        sink: Optional[PresentationSink] = None,
        ledger: Optional[KarmaLedger] = None,
        config: Optional[SyncConfig] = None,
        monitor: Optional[SyncMonitor] = None,
    ):
        self.bridge = bridge
        self.scheduler = scheduler
        self.corruption = corruption
        self.audio = audio
        self.sink = sink or NullPresentationSink()
        self.ledger = ledger
        self.cfg = config or SyncConfig()
        self.monitor = monitor

        self.state = SyncState(
            last_sync_ms=scheduler.now(),
            sync_threshold=self.cfg.sync_threshold,
            sync_interval_ms=self.cfg.sync_interval_ms,
            stale_after_ms=self.cfg.stale_after_ms,
        )
        self.fallback = AudioFallbackState()
        self.metrics = SyncMetrics(sync_latency_ms=deque(maxlen=max(1, self.cfg.latency_window)))
        self.visual_params: Dict[str, float] = {}
        self.last_feedback: Optional[RecognitionFeedback] = None

        self._rhythm: Optional[TimerHandle] = None
        self._beat = 0
        self._teardown = TeardownList("SyncController")
        # registered first so it runs last, whether or not start() ran
        self._teardown.register(self._stop_rhythm, label="fallback rhythm")
        self._started = False

    # -----------------------------
    # lifecycle
    # -----------------------------
    def start(self) -> None:
        if self._started:
            return
        self._started = True
        td, on = self._teardown, self.bridge.subscribe

        td.register(on(AUDIO_DEGRADATION_CHANGED, self._on_audio_degradation), label=AUDIO_DEGRADATION_CHANGED)
        td.register(on(AUDIO_KARMA_PARAMETERS, self._on_audio_karma_parameters), label=AUDIO_KARMA_PARAMETERS)
        td.register(on(LEVEL_CHANGED, self._on_level_changed), label=LEVEL_CHANGED)
        td.register(on(AUDIO_INIT_FAILED, self._on_audio_init_failed), label=AUDIO_INIT_FAILED)
        td.register(on(AUDIO_SUSPENDED, lambda _p: self.activate_fallback("Audio context suspended")),
                    label=AUDIO_SUSPENDED)
        td.register(on(AUDIO_RESUMED, lambda _p: self.deactivate_fallback()), label=AUDIO_RESUMED)
        td.register(on(ATTEMPT, self._on_attempt), label=ATTEMPT)
        td.register(on(SUCCEEDED, self._on_succeeded), label=SUCCEEDED)
        td.register(on(FAILED, self._on_failed), label=FAILED)
        for event_type in KARMA_EVENTS:
            td.register(
                on(KARMA_EVENT_PREFIX + event_type, lambda p, et=event_type: self.on_karma_event(et, p)),
                label=KARMA_EVENT_PREFIX + event_type,
            )
        if self.ledger is not None:
            for channel in CHANNELS:
                td.register(self.ledger.subscribe(channel, self.on_karma_changed), label=f"ledger:{channel}")

        td.timer(self.scheduler.every(self.cfg.sync_interval_ms, self.check_health, label="sync.health"))
        if not audio_ready(self.audio):
            td.timer(self.scheduler.after(self.cfg.audio_init_timeout_ms, self._on_audio_init_timeout,
                                          label="sync.audio_watchdog"))
        logger.info("SyncController started")

    def destroy(self) -> None:
        released = self._teardown.release_all()
        logger.info(f"SyncController destroyed ({released} resources released)")

    # -----------------------------
    # audio -> visual
    # -----------------------------
    def _on_audio_degradation(self, payload: Dict[str, Any]) -> None:
        self.on_audio_degradation_changed(payload.get("level"), payload.get("source", "unknown"),
                                          sent_at_ms=payload.get("timestamp"))

    def on_audio_degradation_changed(self, level: Any, source: str = "unknown",
                                     sent_at_ms: Optional[float] = None) -> float:
        numeric = parse_level(level)
        now = self.scheduler.now()
        self.state.audio_level = numeric
        if self.corruption is not None:
            self.corruption.sync_with_level(numeric)
        else:
            logger.warning("No corruption engine attached; visual level synced without fragments")
        self.state.visual_level = numeric
        self.state.last_sync_ms = now
        if sent_at_ms is not None:
            self.metrics.sync_latency_ms.append(max(0.0, now - _finite(sent_at_ms, now)))
        self.sink.set_intensity("corruptionIntensity", self._guided(numeric))
        self._report_levels()
        logger.debug(f"Audio degradation changed: {level!r} ({numeric:.3f}) from {source}")
        return numeric

    def _on_level_changed(self, payload: Dict[str, Any]) -> None:
        level = _clip(_finite(payload.get("level")), 0.0, 1.0)
        self.state.corruption_level = level
        if self.fallback.is_active:
            # no audio to follow: visual tracks corruption directly
            self.state.visual_level = level
            self.sink.set_intensity("corruptionIntensity", self._guided(level))
            self._report_levels()

    def check_health(self) -> bool:
        """Returns True when drift was detected and corrected."""
        if self.fallback.is_active:
            return False
        now = self.scheduler.now()
        if now - self.state.last_sync_ms <= self.cfg.stale_after_ms:
            return False

        self._refresh_audio_level()
        drift = self.state.drift
        if drift <= self.cfg.sync_threshold:
            return False

        logger.warning(f"Sync drift detected: {drift:.3f}")
        target = self.state.audio_level
        visual = self.state.visual_level
        self.state.visual_level = _clip(visual + (target - visual) * self.cfg.drift_blend_rate, 0.0, 1.0)
        if self.corruption is not None:
            self.corruption.sync_with_level(target)
        self.state.last_sync_ms = now
        self.metrics.missed_syncs += 1
        self.metrics.drift_corrections += 1
        if self.monitor is not None:
            self.monitor.missed_sync()
        self.sink.set_intensity("corruptionIntensity", self._guided(self.state.visual_level))
        self._report_levels()
        return True

    def _refresh_audio_level(self) -> None:
        if not audio_ready(self.audio):
            return
        try:
            self.state.audio_level = parse_level(self.audio.get_degradation_level())
        except Exception as e:
            logger.warning(f"Audio level unreadable, keeping last known {self.state.audio_level:.3f}: {e}")

    def _report_levels(self) -> None:
        if self.monitor is not None:
            self.monitor.set_levels(self.state.audio_level, self.state.visual_level)

    # -----------------------------
    # karma -> audio -> visual
    # -----------------------------
    def _on_audio_karma_parameters(self, payload: Dict[str, Any]) -> None:
        self.apply_audio_parameters(payload.get("parameters"), payload.get("karmaState"))

    def apply_audio_parameters(self, params: Optional[Mapping[str, Any]],
                               karma: Any = None) -> Dict[str, float]:
        visual = map_audio_to_visual(params)
        if self.sink.is_reduced_motion_preferred():
            visual["visualJitter"] = 0.0
            visual["animationSpeedMultiplier"] = min(1.0, visual["animationSpeedMultiplier"])
        for name in GUIDED_SIGNALS:
            visual[name] = self._guided(visual[name])
        for name, value in visual.items():
            self.sink.set_intensity(name, value)
        self.visual_params = visual
        if karma is not None:
            self.on_karma_changed(karma)
        return visual

    def on_karma_changed(self, karma: Any) -> Dict[str, Any]:
        response = karma_visual_response(karma)
        self.state.karma_state = as_karma_state(karma).as_dict()
        self.sink.set_intensity("karmaIntensity", response["karmaIntensity"])
        return response

    def on_karma_event(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        audio_i, visual_i, effects = KARMA_EVENT_RESPONSES.get(event_type, DEFAULT_KARMA_EVENT_RESPONSE)
        if self._audio_usable() and audio_i > 0:
            try:
                self.audio.accelerate_degradation(audio_i * 0.1)
            except Exception as e:
                logger.warning(f"Audio response to karma event {event_type} failed: {e}")
        response = {
            "action": f"karma:{event_type}",
            "intensity": self._guided(visual_i),
            "duration_ms": 2000.0,
            "effects": list(effects),
        }
        self._show(response)
        return response

    # -----------------------------
    # recognition feedback
    # -----------------------------
    def _on_attempt(self, payload: Dict[str, Any]) -> None:
        fb = self.build_feedback("attempt", payload.get("method"), payload.get("progress", 0.0))
        self.dispatch_feedback(fb)

    def _on_succeeded(self, payload: Dict[str, Any]) -> None:
        self.dispatch_feedback(self.build_feedback("success", payload.get("method"), 1.0))

    def _on_failed(self, payload: Dict[str, Any]) -> None:
        self.dispatch_feedback(self.build_feedback("failure", None, 0.0))

    def build_feedback(self, kind: str, method: Optional[str], progress: Any) -> RecognitionFeedback:
        p = _clip(_finite(progress), 0.0, 1.0)
        audio = None
        if self._audio_usable() and kind in AUDIO_RESPONSES:
            action, scale, duration = AUDIO_RESPONSES[kind]
            intensity = p * scale if kind == "attempt" else scale
            audio = FeedbackResponse(action, intensity, duration)
        visual = None
        if kind in VISUAL_RESPONSES:
            action, scale, duration, effects = VISUAL_RESPONSES[kind]
            intensity = p if kind == "attempt" else scale
            visual = FeedbackResponse(action, self._guided(intensity), duration, effects)
        return RecognitionFeedback(kind, method, p, audio, visual, self.scheduler.now())

    def dispatch_feedback(self, fb: RecognitionFeedback) -> None:
        self.last_feedback = fb
        if fb.audio is not None:
            try:
                self._play(fb.audio)
            except Exception as e:
                logger.warning(f"Audio feedback failed ({fb.audio.action}): {e}")
        if fb.visual is not None:
            self._show(asdict(fb.visual))

    def _play(self, r: FeedbackResponse) -> None:
        if r.action == "burst":
            self.audio.burst(r.intensity, r.duration_ms / 1000.0)
        elif r.action == "achieveResonance":
            self.audio.achieve_resonance()
        elif r.action == "accelerateDegradation":
            self.audio.accelerate_degradation(r.intensity)

    def _show(self, response: Dict[str, Any]) -> None:
        try:
            self.sink.show_feedback(response)
        except Exception as e:
            logger.warning(f"Visual feedback failed ({response.get('action')}): {e}")

    # -----------------------------
    # fallback FSM
    # -----------------------------
    def _on_audio_init_failed(self, payload: Dict[str, Any]) -> None:
        self.activate_fallback(str((payload or {}).get("error") or "Audio initialization failed"))

    def _on_audio_init_timeout(self) -> None:
        if not audio_ready(self.audio):
            self.activate_fallback("Audio not initialized after timeout")

    def activate_fallback(self, reason: str) -> bool:
        if self.fallback.is_active:
            return False
        if self._teardown.released:
            logger.warning(f"Fallback not activated on destroyed controller: {reason}")
            return False
        fb = self.fallback
        fb.is_active = True
        fb.reason = reason
        fb.visual_guidance_level = self.cfg.visual_guidance_level
        fb.effects = {"audioIndicator", "rhythmIndicator", "rhythmAnimation"}
        self.metrics.fallback_activations += 1
        if self.monitor is not None:
            self.monitor.fallback_activated()

        self._beat = 0
        self._rhythm = self.scheduler.every(self.cfg.rhythm_interval_ms, self._on_rhythm,
                                            label="fallback.rhythm")
        self.sink.set_fallback_indicator(True)
        self.sink.set_intensity("visualFeedbackIntensity", fb.visual_guidance_level)
        logger.warning(f"Activating audio fallback: {reason}")
        self.bridge.emit(FALLBACK_ACTIVATED, {"reason": reason})
        return True

    def deactivate_fallback(self) -> bool:
        if not self.fallback.is_active:
            return False
        fb = self.fallback
        fb.is_active = False
        fb.reason = None
        fb.visual_guidance_level = 1.0
        fb.effects.clear()
        self._stop_rhythm()
        self.sink.set_fallback_indicator(False)
        self.sink.set_intensity("visualFeedbackIntensity", 1.0)
        logger.info("Deactivating audio fallback - audio restored")
        self.bridge.emit(FALLBACK_DEACTIVATED, {})
        return True

    def _on_rhythm(self) -> None:
        self._beat += 1
        self.bridge.emit(VISUAL_RHYTHM, {"beat": self._beat})

    def _stop_rhythm(self) -> None:
        if self._rhythm is not None:
            self._rhythm.cancel()
            self._rhythm = None

    # -----------------------------
    # helpers
    # -----------------------------
    def _audio_usable(self) -> bool:
        return audio_ready(self.audio) and not self.fallback.is_active

    def _guided(self, value: float) -> float:
        return float(value) * self.fallback.visual_guidance_level

    def status(self) -> Dict[str, Any]:
        latencies = list(self.metrics.sync_latency_ms)
        return {
            "sync_state": {**asdict(self.state), "drift": self.state.drift},
            "audio_fallback": {**asdict(self.fallback), "effects": sorted(self.fallback.effects)},
            "metrics": {
                "missed_syncs": self.metrics.missed_syncs,
                "drift_corrections": self.metrics.drift_corrections,
                "fallback_activations": self.metrics.fallback_activations,
                "sync_latency_ms": latencies,
            },
            "is_healthy": self.metrics.missed_syncs < self.cfg.healthy_missed_syncs,
        }
