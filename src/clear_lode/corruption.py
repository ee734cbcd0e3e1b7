# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
# ==============================================================================
# File: corruption.py
# Progressive fragment corruption driven by elapsed time and net karma.
#
# - Fragments start clean (level 0) and only grow through tick()
# - purify() is the bounded decrease applied on recognition success
# - sync_with_level() blends every fragment toward the audio degradation level
# - Text corruption is a pure function of (content, level) so results replay
# ==============================================================================
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import numpy as np

from . import _clip, _finite
from .config import CorruptionConfig
from .event_bridge import EventBridge, LEVEL_CHANGED, SUCCEEDED
from .interfaces import PresentationSink, NullPresentationSink
from .karma import KarmaLedger, KarmaState, as_karma_state
from .monitor import SyncMonitor
from .scheduler import Scheduler, TeardownList

logger = logging.getLogger(__name__)

RngFactory = Callable[[int], np.random.Generator]


# ------------------------------------------------------------------------------
# Tiers & effect profiles
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class EffectProfile:
    char_substitution: float
    truncation: float
    marker_insertion: float
    visual_intensity: float


TIER_ORDER = ("minimal", "moderate", "severe", "complete")

TIER_PROFILES: Dict[str, EffectProfile] = {
    "minimal": EffectProfile(0.05, 0.05, 0.01, 0.2),
    "moderate": EffectProfile(0.20, 0.25, 0.05, 0.5),
    "severe": EffectProfile(0.40, 0.50, 0.15, 0.8),
    "complete": EffectProfile(1.0, 1.0, 0.50, 1.0),
}

# (min visual intensity, flag)
EFFECT_LADDER = (
    (0.3, "corrupted-text"),
    (0.5, "chromatic-aberration"),
    (0.7, "zalgo"),
    (0.9, "digital-noise"),
)

AUDIO_LEVEL_NAMES = {"minimal": 0.2, "moderate": 0.5, "severe": 0.8, "complete": 1.0}

GLITCH_CHARS = ("▓", "▒", "░", "█", "◆", "◇", "◊", "○", "●", "∆", "¥", "€", "¢")
MARKERS = ("☠", "☢", "⚠", "☹")


def tier_for(level: float) -> str:
    if level >= 0.75:
        return "complete"
    if level >= 0.5:
        return "severe"
    if level >= 0.25:
        return "moderate"
    return "minimal"


def effect_flags(intensity: float) -> List[str]:
    return [flag for threshold, flag in EFFECT_LADDER if intensity >= threshold]


def parse_level(level: Union[float, int, str, None]) -> float:
    """Numeric levels clamp to [0, 1]; tier names map to fixed levels; anything else is 'minimal'."""
    if isinstance(level, str):
        return AUDIO_LEVEL_NAMES.get(level, AUDIO_LEVEL_NAMES["minimal"])
    return _clip(_finite(level), 0.0, 1.0)


def corruption_seed(content: str, level: float) -> int:
    return len(content) + int(math.floor(level * 1000))


def corrupt_text(text: str, level: float, profile: EffectProfile, rng: np.random.Generator,
                 substitution_threshold: float = 0.05) -> str:
    if level <= 0 or not text:
        return text
    chars = list(text)

    # character substitution
    if level > substitution_threshold or rng.random() < profile.char_substitution:
        count = max(1, int(len(text) * profile.char_substitution * level))
        for _ in range(count):
            pos = int(rng.integers(len(chars)))
            chars[pos] = GLITCH_CHARS[int(rng.integers(len(GLITCH_CHARS)))]

    # truncation
    if level > 0.3 and rng.random() < profile.truncation:
        cut = int(len(chars) * (0.4 + rng.random() * 0.4))
        chars = chars[:cut] + list("...")

    # marker insertion
    if rng.random() < profile.marker_insertion:
        at = int(rng.integers(len(chars) + 1))
        chars.insert(at, MARKERS[int(rng.integers(len(MARKERS)))])

    return "".join(chars)


# ------------------------------------------------------------------------------
# Records
# ------------------------------------------------------------------------------
@dataclass
class FragmentCorruptionRecord:
    fragment_id: str
    original_content: str
    current_content: str
    corruption_level: float = 0.0
    last_update_ms: float = 0.0
    tier: str = "minimal"
    karma_influence: Dict[str, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ------------------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------------------
class CorruptionEngine:
    def __init__(
        self,
        bridge: EventBridge,
        scheduler: Scheduler,
        ledger: Optional[KarmaLedger] = None,
        config: Optional[CorruptionConfig] = None,
        sink: Optional[PresentationSink] = None,
        monitor: Optional[SyncMonitor] = None,
        rng_factory: Optional[RngFactory] = None,
    ):
        self.bridge = bridge
        self.scheduler = scheduler
        self.ledger = ledger
        self.cfg = config or CorruptionConfig()
        self.sink = sink or NullPresentationSink()
        self.monitor = monitor
        self.rng_factory: RngFactory = rng_factory or np.random.default_rng

        self.records: Dict[str, FragmentCorruptionRecord] = {}
        self.global_level = 0.0
        self._teardown = TeardownList("CorruptionEngine")
        self._started = False

    # -----------------------------
    # lifecycle
    # -----------------------------
    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._teardown.timer(
            self.scheduler.every(self.cfg.tick_interval_ms, self._on_timer, label="corruption.tick")
        )
        self._teardown.register(
            self.bridge.subscribe(SUCCEEDED, lambda _payload: self.purify_all()),
            label="unsubscribe recognition:succeeded",
        )
        logger.info(f"CorruptionEngine started (tick={self.cfg.tick_interval_ms:.0f}ms)")

    def destroy(self) -> None:
        self.records.clear()
        released = self._teardown.release_all()
        logger.info(f"CorruptionEngine destroyed ({released} resources released)")

    def _on_timer(self) -> None:
        if not self.records:
            return
        snapshot = self.ledger.get_state() if self.ledger is not None else KarmaState()
        self.tick(snapshot)

    # -----------------------------
    # fragments
    # -----------------------------
    def track_fragment(self, fragment_id: str, content: Optional[str]) -> FragmentCorruptionRecord:
        text = content or ""
        rec = FragmentCorruptionRecord(
            fragment_id=str(fragment_id),
            original_content=text,
            current_content=text,
            corruption_level=0.0,
            last_update_ms=self.scheduler.now(),
        )
        self.records[rec.fragment_id] = rec
        self.sink.set_fragment_tier(rec.fragment_id, rec.tier, [])
        logger.debug(f"Fragment {rec.fragment_id} tracked clean ({len(text)} chars)")
        return rec

    def remove_fragment(self, fragment_id: str) -> bool:
        if self.records.pop(fragment_id, None) is None:
            logger.warning(f"remove_fragment: unknown fragment {fragment_id}")
            return False
        return True

    def get(self, fragment_id: str) -> Optional[FragmentCorruptionRecord]:
        return self.records.get(fragment_id)

    # -----------------------------
    # growth
    # -----------------------------
    def tick(self, karma_snapshot: Any, elapsed_seconds: Optional[float] = None) -> Dict[str, float]:
        karma = as_karma_state(karma_snapshot)
        total = karma.total()
        karma_influence = max(0.0, -total * self.cfg.karma_multiplier)
        rate = self.cfg.base_corruption_rate + karma_influence * self.cfg.karma_scale
        now = self.scheduler.now()

        levels: Dict[str, float] = {}
        for rec in self.records.values():
            if elapsed_seconds is None:
                elapsed = (now - rec.last_update_ms) / 1000.0
            else:
                elapsed = elapsed_seconds
            elapsed = max(0.0, _finite(elapsed))
            rec.corruption_level = _clip(
                min(self.cfg.max_corruption_level, rec.corruption_level + rate * elapsed),
                0.0, self.cfg.max_corruption_level,
            )
            rec.karma_influence = karma.as_dict()
            rec.last_update_ms = now
            self._render(rec)
            levels[rec.fragment_id] = rec.corruption_level

        if levels:
            self._publish_level()
        return levels

    # -----------------------------
    # purification
    # -----------------------------
    def purify(self, fragment_ids: Iterable[str]) -> int:
        if isinstance(fragment_ids, str):
            fragment_ids = [fragment_ids]
        purified = 0
        for fid in fragment_ids:
            rec = self.records.get(fid)
            if rec is None:
                logger.warning(f"purify: unknown fragment {fid}")
                continue
            old = rec.corruption_level
            rec.corruption_level = max(0.0, old - self.cfg.purification_strength)
            rec.last_update_ms = self.scheduler.now()
            self._render(rec, restore=True)
            purified += 1
            logger.debug(f"Fragment {fid} purified: {old:.3f} -> {rec.corruption_level:.3f}")
        if purified:
            self._publish_level()
        return purified

    def purify_all(self) -> int:
        count = self.purify(list(self.records.keys()))
        logger.info(f"Recognition purification complete: {count} fragments")
        return count

    # -----------------------------
    # audio join point
    # -----------------------------
    def sync_with_level(self, level: Union[float, str]) -> float:
        target = parse_level(level)
        self.global_level = target
        blend = self.cfg.sync_blend_rate
        for rec in self.records.values():
            moved = rec.corruption_level + (target - rec.corruption_level) * blend
            rec.corruption_level = _clip(moved, 0.0, self.cfg.max_corruption_level)
            rec.last_update_ms = self.scheduler.now()
            self._render(rec)
        if self.records:
            self._publish_level()
        return target

    # -----------------------------
    # rendering
    # -----------------------------
    def derive_content(self, original: str, level: float) -> str:
        profile = TIER_PROFILES[tier_for(level)]
        rng = self.rng_factory(corruption_seed(original, level))
        return corrupt_text(original, level, profile, rng, self.cfg.substitution_threshold)

    def _render(self, rec: FragmentCorruptionRecord, restore: bool = False) -> None:
        level = rec.corruption_level
        content = self.derive_content(rec.original_content, level)
        floor = self.cfg.restoration_floor
        if restore and level < floor and content != rec.original_content:
            keep = int(len(rec.original_content) * (1.0 - level / floor))
            content = rec.original_content[:keep] + content[keep:]
        rec.current_content = content
        rec.tier = tier_for(level)
        profile = TIER_PROFILES[rec.tier]
        self.sink.set_fragment_tier(rec.fragment_id, rec.tier, effect_flags(profile.visual_intensity))

    def mean_level(self) -> float:
        if not self.records:
            return 0.0
        return float(np.mean([r.corruption_level for r in self.records.values()]))

    def _publish_level(self) -> None:
        level = self.mean_level()
        if self.monitor is not None:
            self.monitor.set_mean_corruption(level)
        self.bridge.emit(LEVEL_CHANGED, {"level": level})

    def stats(self) -> Dict[str, Any]:
        levels = np.array([r.corruption_level for r in self.records.values()], dtype=float)
        if levels.size == 0:
            return {
                "total_fragments": 0,
                "average_corruption": 0.0,
                "max_corruption": 0.0,
                "min_corruption": 0.0,
                "global_level": self.global_level,
            }
        return {
            "total_fragments": int(levels.size),
            "average_corruption": float(levels.mean()),
            "max_corruption": float(levels.max()),
            "min_corruption": float(levels.min()),
            "global_level": self.global_level,
        }
