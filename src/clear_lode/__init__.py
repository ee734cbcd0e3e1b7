# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
import math
import time

__version__ = "0.3.0"


def wall_ms() -> float:
    return float(time.monotonic() * 1000.0)


def fmt_ms(ms: float) -> str:
    try:
        return f"{float(ms) / 1000.0:.3f}s"
    except Exception:
        return str(ms)


def _finite(x, default: float = 0.0) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return default
    return v if math.isfinite(v) else default


def _clip(x: float, lo: float, hi: float) -> float:
    if x < lo:
        return lo
    if x > hi:
        return hi
    return x


from .config import EngineConfig, load_config  # noqa: E402
from .session import ClearLodeSession  # noqa: E402

__all__ = ["EngineConfig", "load_config", "ClearLodeSession", "wall_ms", "fmt_ms"]
