# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

logger = logging.getLogger(__name__)


class SyncMonitor:
    """
    Prometheus metrics for one session.

    Each monitor owns its registry so several sessions (or tests) never collide
    on metric names.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.metrics = {
            "missed_syncs": Counter(
                "clear_lode_missed_syncs",
                "Health checks that found audio/visual drift above threshold",
                registry=self.registry,
            ),
            "fallback_activations": Counter(
                "clear_lode_fallback_activations",
                "Audio fallback activations",
                registry=self.registry,
            ),
            "recognition_outcomes": Counter(
                "clear_lode_recognition_outcomes",
                "Recognition window outcomes",
                ["outcome"],
                registry=self.registry,
            ),
            "audio_level": Gauge(
                "clear_lode_audio_level",
                "Last reported audio degradation level (0-1)",
                registry=self.registry,
            ),
            "visual_level": Gauge(
                "clear_lode_visual_level",
                "Current visual degradation level (0-1)",
                registry=self.registry,
            ),
            "mean_corruption": Gauge(
                "clear_lode_mean_corruption",
                "Mean corruption level over tracked fragments",
                registry=self.registry,
            ),
        }

    def missed_sync(self) -> None:
        self.metrics["missed_syncs"].inc()

    def fallback_activated(self) -> None:
        self.metrics["fallback_activations"].inc()

    def recognition_outcome(self, outcome: str) -> None:
        self.metrics["recognition_outcomes"].labels(outcome=outcome).inc()

    def set_levels(self, audio: float, visual: float) -> None:
        self.metrics["audio_level"].set(audio)
        self.metrics["visual_level"].set(visual)

    def set_mean_corruption(self, value: float) -> None:
        self.metrics["mean_corruption"].set(value)

    def sample(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        return self.registry.get_sample_value(name, labels or {})

    def render(self) -> bytes:
        return generate_latest(self.registry)
