# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from . import _finite

logger = logging.getLogger(__name__)

CHANNELS = ("computational", "emotional", "temporal", "void")

# Named deltas the core may request from the ledger (channel -> amount).
KARMA_DELTAS: Dict[str, Dict[str, float]] = {
    "perfect_recognition": {"computational": 10.0, "emotional": 5.0, "void": -10.0},
    "delayed_recognition": {"computational": 5.0, "emotional": 3.0, "temporal": -2.0},
    "missed_recognition": {"void": 5.0, "temporal": -5.0},
    "attachment_click": {"emotional": -2.0, "computational": -1.0},
    "full_degradation": {"void": 10.0, "computational": -5.0, "emotional": -5.0},
}


@dataclass(frozen=True)
class KarmaState:
    computational: float = 0.0
    emotional: float = 0.0
    temporal: float = 0.0
    void: float = 0.0

    @staticmethod
    def from_mapping(d: Optional[Mapping[str, Any]]) -> "KarmaState":
        d = d or {}
        return KarmaState(**{ch: _finite(d.get(ch, 0.0)) for ch in CHANNELS})

    def total(self) -> float:
        return self.computational + self.emotional + self.temporal + self.void

    def dominant(self) -> str:
        best, best_val = "computational", 0.0
        for ch in CHANNELS:
            v = getattr(self, ch)
            if v > best_val:
                best, best_val = ch, v
        return best

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


def as_karma_state(snapshot: Any) -> KarmaState:
    if isinstance(snapshot, KarmaState):
        return snapshot
    return KarmaState.from_mapping(snapshot)


class KarmaLedger(Protocol):
    def get_state(self) -> KarmaState: ...
    def add_karma(self, channel: str, amount: float) -> None: ...
    def subscribe(self, channel: str, cb: Callable[[KarmaState], None]) -> Callable[[], None]: ...


class InMemoryKarmaLedger:
    """
    Reference ledger: four unbounded channels, per-channel subscribers.

    Subscribing to "*" receives every change.
    """

    def __init__(self, initial: Optional[Mapping[str, float]] = None):
        self._values: Dict[str, float] = {ch: 0.0 for ch in CHANNELS}
        for ch, v in (initial or {}).items():
            if ch in self._values:
                self._values[ch] = _finite(v)
        self._subs: Dict[str, List[Callable[[KarmaState], None]]] = {}

    def get_state(self) -> KarmaState:
        return KarmaState(**self._values)

    def add_karma(self, channel: str, amount: float) -> None:
        if channel not in self._values:
            logger.warning(f"Unknown karma channel ignored: {channel}")
            return
        self._values[channel] += _finite(amount)
        state = self.get_state()
        for cb in list(self._subs.get(channel, [])) + list(self._subs.get("*", [])):
            try:
                cb(state)
            except Exception:
                logger.exception(f"Karma subscriber failed on channel={channel}")

    def subscribe(self, channel: str, cb: Callable[[KarmaState], None]) -> Callable[[], None]:
        self._subs.setdefault(channel, []).append(cb)

        def _unsubscribe() -> None:
            subs = self._subs.get(channel, [])
            if cb in subs:
                subs.remove(cb)

        return _unsubscribe


def apply_named_delta(ledger: Optional[KarmaLedger], name: str) -> Dict[str, float]:
    delta = KARMA_DELTAS.get(name)
    if delta is None:
        logger.warning(f"Unknown karma delta: {name}")
        return {}
    if ledger is None:
        return {}
    for channel, amount in delta.items():
        ledger.add_karma(channel, amount)
    logger.info(f"Karma delta applied: {name} {delta}")
    return dict(delta)
