# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
# clear_lode/config.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "CLEAR_LODE_"


class ConfigError(ValueError):
    pass


# -----------------------------
# helpers
# -----------------------------
def _deep_update(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in (update or {}).items():
        if isinstance(base.get(k), dict) and isinstance(v, dict):
            base[k] = _deep_update(base[k], v)
        else:
            base[k] = v
    return base


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"YAML root must be a mapping/dict: {path}")
    return data


# -----------------------------
# dataclasses (single source of truth)
# -----------------------------
@dataclass
class RecognitionConfig:
    base_duration_ms: float = 15000.0
    extension_duration_ms: float = 5000.0
    max_extensions: int = 2
    warning_threshold: float = 0.75
    # success inside this band counts as "perfect" for karma purposes
    perfect_min_ms: float = 3000.0
    perfect_max_ms: float = 5000.0
    apply_karma: bool = True

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "RecognitionConfig":
        d = d or {}
        return RecognitionConfig(
            base_duration_ms=float(d.get("base_duration_ms", 15000.0)),
            extension_duration_ms=float(d.get("extension_duration_ms", 5000.0)),
            max_extensions=int(d.get("max_extensions", 2)),
            warning_threshold=float(d.get("warning_threshold", 0.75)),
            perfect_min_ms=float(d.get("perfect_min_ms", 3000.0)),
            perfect_max_ms=float(d.get("perfect_max_ms", 5000.0)),
            apply_karma=bool(d.get("apply_karma", True)),
        )

    def max_duration_ms(self) -> float:
        return self.base_duration_ms + self.max_extensions * self.extension_duration_ms


@dataclass
class CorruptionConfig:
    base_corruption_rate: float = 0.001   # per second
    karma_multiplier: float = 0.5
    karma_scale: float = 0.001
    max_corruption_level: float = 1.0
    purification_strength: float = 0.3
    sync_blend_rate: float = 0.1
    substitution_threshold: float = 0.05
    restoration_floor: float = 0.3
    tick_interval_ms: float = 1000.0

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "CorruptionConfig":
        d = d or {}
        return CorruptionConfig(
            base_corruption_rate=float(d.get("base_corruption_rate", 0.001)),
            karma_multiplier=float(d.get("karma_multiplier", 0.5)),
            karma_scale=float(d.get("karma_scale", 0.001)),
            max_corruption_level=float(d.get("max_corruption_level", 1.0)),
            purification_strength=float(d.get("purification_strength", 0.3)),
            sync_blend_rate=float(d.get("sync_blend_rate", 0.1)),
            substitution_threshold=float(d.get("substitution_threshold", 0.05)),
            restoration_floor=float(d.get("restoration_floor", 0.3)),
            tick_interval_ms=float(d.get("tick_interval_ms", 1000.0)),
        )


@dataclass
class SyncConfig:
    sync_threshold: float = 0.05
    sync_interval_ms: float = 100.0
    stale_after_ms: float = 1000.0
    # 1.0 snaps visual onto audio during drift correction
    drift_blend_rate: float = 1.0
    audio_init_timeout_ms: float = 5000.0
    visual_guidance_level: float = 1.5
    rhythm_interval_ms: float = 1000.0
    healthy_missed_syncs: int = 5
    latency_window: int = 100

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "SyncConfig":
        d = d or {}
        return SyncConfig(
            sync_threshold=float(d.get("sync_threshold", 0.05)),
            sync_interval_ms=float(d.get("sync_interval_ms", 100.0)),
            stale_after_ms=float(d.get("stale_after_ms", 1000.0)),
            drift_blend_rate=float(d.get("drift_blend_rate", 1.0)),
            audio_init_timeout_ms=float(d.get("audio_init_timeout_ms", 5000.0)),
            visual_guidance_level=float(d.get("visual_guidance_level", 1.5)),
            rhythm_interval_ms=float(d.get("rhythm_interval_ms", 1000.0)),
            healthy_missed_syncs=int(d.get("healthy_missed_syncs", 5)),
            latency_window=int(d.get("latency_window", 100)),
        )


@dataclass
class EngineConfig:
    recognition: RecognitionConfig = field(default_factory=RecognitionConfig)
    corruption: CorruptionConfig = field(default_factory=CorruptionConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    event_history: int = 5000

    # merged source dict, kept for debugging
    raw: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "EngineConfig":
        d = d or {}
        cfg = EngineConfig(
            recognition=RecognitionConfig.from_dict(d.get("recognition", {}) or {}),
            corruption=CorruptionConfig.from_dict(d.get("corruption", {}) or {}),
            sync=SyncConfig.from_dict(d.get("sync", {}) or {}),
            event_history=int(d.get("event_history", 5000)),
            raw=dict(d),
        )
        cfg.validate()
        return cfg

    def as_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out.pop("raw", None)
        return out

    def validate(self) -> None:
        r, c, s = self.recognition, self.corruption, self.sync
        if r.base_duration_ms <= 0:
            raise ConfigError("recognition.base_duration_ms must be > 0")
        if r.extension_duration_ms < 0 or r.max_extensions < 0:
            raise ConfigError("recognition extensions must be >= 0")
        if not (0.0 < r.warning_threshold <= 1.0):
            raise ConfigError("recognition.warning_threshold must be in (0, 1]")
        if not (0.0 < c.max_corruption_level <= 1.0):
            raise ConfigError("corruption.max_corruption_level must be in (0, 1]")
        if c.base_corruption_rate < 0 or c.karma_multiplier < 0:
            raise ConfigError("corruption rates must be >= 0")
        if not (0.0 <= c.purification_strength <= 1.0):
            raise ConfigError("corruption.purification_strength must be in [0, 1]")
        if not (0.0 < c.sync_blend_rate <= 1.0):
            raise ConfigError("corruption.sync_blend_rate must be in (0, 1]")
        if c.tick_interval_ms <= 0:
            raise ConfigError("corruption.tick_interval_ms must be > 0")
        if not (0.0 <= s.sync_threshold < 1.0):
            raise ConfigError("sync.sync_threshold must be in [0, 1)")
        if s.sync_interval_ms <= 0 or s.rhythm_interval_ms <= 0:
            raise ConfigError("sync intervals must be > 0")
        if not (0.0 < s.drift_blend_rate <= 1.0):
            raise ConfigError("sync.drift_blend_rate must be in (0, 1]")
        if s.visual_guidance_level < 1.0:
            raise ConfigError("sync.visual_guidance_level must be >= 1")


# -----------------------------
# loader: yaml + env overrides
# -----------------------------
DEFAULT_PATH = Path("config") / "clear_lode.yaml"

_ENV_OVERRIDES = {
    "BASE_DURATION_MS": ("recognition", "base_duration_ms", float),
    "MAX_EXTENSIONS": ("recognition", "max_extensions", int),
    "KARMA_MULTIPLIER": ("corruption", "karma_multiplier", float),
    "PURIFICATION_STRENGTH": ("corruption", "purification_strength", float),
    "SYNC_THRESHOLD": ("sync", "sync_threshold", float),
}


def _apply_env_overrides(merged: Dict[str, Any]) -> None:
    for suffix, (section, key, cast) in _ENV_OVERRIDES.items():
        raw = os.getenv(ENV_PREFIX + suffix)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError as e:
            raise ConfigError(f"{ENV_PREFIX}{suffix}={raw!r} is not a valid {cast.__name__}") from e
        merged.setdefault(section, {})
        merged[section][key] = value


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> EngineConfig:
    """
    Priority: overrides > environment > YAML file > defaults.

    The file path falls back to $CLEAR_LODE_CONFIG, then config/clear_lode.yaml.
    A missing file is not an error.
    """
    cfg_path = Path(path or os.getenv(ENV_PREFIX + "CONFIG") or DEFAULT_PATH).expanduser()

    merged: Dict[str, Any] = {}
    merged = _deep_update(merged, _read_yaml(cfg_path))
    if cfg_path.exists():
        logger.info(f"Loaded config from: {cfg_path}")
    else:
        logger.info(f"Config file not found: {cfg_path}. Using defaults.")

    _apply_env_overrides(merged)
    merged = _deep_update(merged, overrides or {})
    return EngineConfig.from_dict(merged)
