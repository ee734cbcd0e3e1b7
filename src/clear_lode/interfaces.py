# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
# clear_lode/interfaces.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

# Named intensity signals written to the presentation layer.
INTENSITY_SIGNALS = (
    "visualJitter",
    "visualComplexity",
    "corruptionIntensity",
    "animationSpeedMultiplier",
    "chromaticAberrationPx",
    "visualGrain",
    "karmaIntensity",
    "visualFeedbackIntensity",
)


# -----------------------------
# 1) Audio collaborator
# -----------------------------
class AudioChannel(Protocol):
    is_initialized: bool

    def set_degradation_level(self, level: float) -> None: ...
    def burst(self, intensity: float, duration_sec: float) -> None: ...
    def achieve_resonance(self) -> None: ...
    def accelerate_degradation(self, amount: float) -> None: ...
    def get_degradation_level(self) -> float: ...


# -----------------------------
# 2) Presentation collaborator
# -----------------------------
class PresentationSink(Protocol):
    def is_reduced_motion_preferred(self) -> bool: ...
    def set_intensity(self, name: str, value: float) -> None: ...
    def set_fragment_tier(self, fragment_id: str, tier: str, effects: Sequence[str]) -> None: ...
    def show_feedback(self, response: Dict[str, Any]) -> None: ...
    def set_fallback_indicator(self, active: bool) -> None: ...


class NullPresentationSink:
    def __init__(self, reduced_motion: bool = False):
        self.reduced_motion = reduced_motion

    def is_reduced_motion_preferred(self) -> bool:
        return self.reduced_motion

    def set_intensity(self, name: str, value: float) -> None:
        pass

    def set_fragment_tier(self, fragment_id: str, tier: str, effects: Sequence[str]) -> None:
        pass

    def show_feedback(self, response: Dict[str, Any]) -> None:
        pass

    def set_fallback_indicator(self, active: bool) -> None:
        pass


@dataclass
class RecordingPresentationSink:
    """Keeps the last value of every signal plus a call log; used by tests and the demo."""

    reduced_motion: bool = False
    intensities: Dict[str, float] = field(default_factory=dict)
    tiers: Dict[str, Tuple[str, Tuple[str, ...]]] = field(default_factory=dict)
    feedback: List[Dict[str, Any]] = field(default_factory=list)
    fallback_indicator: bool = False

    def is_reduced_motion_preferred(self) -> bool:
        return self.reduced_motion

    def set_intensity(self, name: str, value: float) -> None:
        self.intensities[name] = float(value)

    def set_fragment_tier(self, fragment_id: str, tier: str, effects: Sequence[str]) -> None:
        self.tiers[fragment_id] = (tier, tuple(effects))

    def show_feedback(self, response: Dict[str, Any]) -> None:
        self.feedback.append(dict(response))

    def set_fallback_indicator(self, active: bool) -> None:
        self.fallback_indicator = bool(active)


@dataclass
class RecordingAudioChannel:
    """In-memory audio stand-in recording every command it receives."""

    is_initialized: bool = True
    level: float = 0.0
    calls: List[Tuple[str, Tuple[Any, ...]]] = field(default_factory=list)
    fail_commands: bool = False

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.fail_commands:
            raise RuntimeError(f"audio command failed: {name}")

    def set_degradation_level(self, level: float) -> None:
        self._record("set_degradation_level", level)
        self.level = float(level)

    def burst(self, intensity: float, duration_sec: float) -> None:
        self._record("burst", intensity, duration_sec)

    def achieve_resonance(self) -> None:
        self._record("achieve_resonance")

    def accelerate_degradation(self, amount: float) -> None:
        self._record("accelerate_degradation", amount)
        self.level = min(1.0, self.level + float(amount))

    def get_degradation_level(self) -> float:
        return self.level

    def command_names(self) -> List[str]:
        return [name for name, _ in self.calls]


def audio_ready(audio: Optional[AudioChannel]) -> bool:
    return audio is not None and bool(getattr(audio, "is_initialized", False))
