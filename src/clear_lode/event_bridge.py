# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, asdict, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Topics
WINDOW_OPENED = "recognition:windowOpened"
ATTEMPT = "recognition:attempt"
TIME_EXTENDED = "recognition:timeExtended"
TIMEOUT_WARNING = "recognition:timeoutWarning"
SUCCEEDED = "recognition:succeeded"
FAILED = "recognition:failed"
ATTACHMENT = "recognition:attachment"

AUDIO_DEGRADATION_CHANGED = "audio:degradationChanged"
AUDIO_KARMA_PARAMETERS = "audio:karmaParametersUpdated"
AUDIO_INIT_FAILED = "audio:initializationFailed"
AUDIO_SUSPENDED = "audio:contextSuspended"
AUDIO_RESUMED = "audio:contextResumed"

LEVEL_CHANGED = "degradation:levelChanged"
FALLBACK_ACTIVATED = "degradation:audioFallbackActivated"
FALLBACK_DEACTIVATED = "degradation:audioFallbackDeactivated"
VISUAL_RHYTHM = "degradation:visualRhythm"

KARMA_EVENT_PREFIX = "karma:"

Subscriber = Callable[[Dict[str, Any]], None]


@dataclass
class BridgeEvent:
    ts: float
    seq: int
    topic: str
    payload: Dict[str, Any] = field(default_factory=dict)
    delivered: int = 0
    errors: int = 0


class EventBridge:
    """
    Named-topic publish/subscribe.

    Delivery is synchronous and in subscription order. A subscriber that raises
    is logged and skipped; the remaining subscribers still run.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None, maxlen: int = 5000):
        self._subs: Dict[str, List[Subscriber]] = {}
        self._clock = clock
        self._seq = 0
        self.buf = deque(maxlen=int(maxlen))

    def subscribe(self, topic: str, cb: Subscriber) -> Callable[[], None]:
        self._subs.setdefault(topic, []).append(cb)
        return lambda: self.unsubscribe(topic, cb)

    def unsubscribe(self, topic: str, cb: Subscriber) -> None:
        subs = self._subs.get(topic)
        if not subs:
            return
        try:
            subs.remove(cb)
        except ValueError:
            return
        if not subs:
            del self._subs[topic]

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._subs.get(topic, []))
        return sum(len(v) for v in self._subs.values())

    def emit(self, topic: str, payload: Optional[Dict[str, Any]] = None) -> BridgeEvent:
        self._seq += 1
        ts = float(self._clock()) if self._clock else 0.0
        ev = BridgeEvent(ts=ts, seq=self._seq, topic=topic, payload=dict(payload or {}))
        for cb in list(self._subs.get(topic, [])):
            try:
                cb(ev.payload)
                ev.delivered += 1
            except Exception:
                ev.errors += 1
                logger.exception(f"Subscriber failed for {topic}")
        self.buf.append(asdict(ev))
        return ev

    def list_recent(self, limit: int = 50, topic: Optional[str] = None) -> List[Dict[str, Any]]:
        limit = int(limit)
        events = list(self.buf)
        if topic:
            events = [e for e in events if e.get("topic") == topic]
        return events[-limit:] if limit > 0 else []

    def destroy(self) -> None:
        self._subs.clear()
        logger.debug("EventBridge destroyed")
